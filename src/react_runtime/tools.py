# tools.py
# Builtin capabilities: sample implementations of the Capability contract.
# The runtime never imports this module; callers opt in via default_registry().

import ast
import operator
import os
from pathlib import Path
from typing import Any

import httpx

from react_runtime.capabilities import Capability, CapabilityRegistry, FunctionCapability
from react_runtime.errors import CapabilityError, CapabilityErrorKind

_MAX_BODY = 4000

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPS = {ast.UAdd: operator.pos, ast.USub: operator.neg}


def _text_arg(args: Any, *keys: str) -> str:
    """Pull the first present key out of a payload, accepting a bare string too."""
    if isinstance(args, str):
        return args
    if not isinstance(args, dict):
        raise CapabilityError(CapabilityErrorKind.INVALID_INPUT, "payload must be an object")
    for key in keys + ("input",):
        if key in args:
            return str(args[key])
    raise CapabilityError(CapabilityErrorKind.INVALID_INPUT, f"missing '{keys[0]}' field")


# ---------------------------------------------------------------------------
# Calculator
# ---------------------------------------------------------------------------


def _evaluate(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return _evaluate(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        left, right = _evaluate(node.left), _evaluate(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > 100:
            raise CapabilityError(CapabilityErrorKind.INVALID_INPUT, "exponent too large")
        return _BINARY_OPS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_evaluate(node.operand))
    raise CapabilityError(
        CapabilityErrorKind.INVALID_INPUT,
        f"unsupported expression element '{type(node).__name__}'",
    )


def _tool_calculator(args: Any) -> str:
    """Evaluate arithmetic with + - * / // % ** and parentheses."""
    expression = _text_arg(args, "expression").strip()
    if not expression:
        raise CapabilityError(CapabilityErrorKind.INVALID_INPUT, "no expression provided")
    try:
        tree = ast.parse(expression, mode="eval")
        result = _evaluate(tree)
    except SyntaxError as exc:
        raise CapabilityError(CapabilityErrorKind.INVALID_INPUT, f"cannot parse '{expression}'") from exc
    except ZeroDivisionError as exc:
        raise CapabilityError(CapabilityErrorKind.INVALID_INPUT, "division by zero") from exc

    if isinstance(result, float) and result.is_integer():
        result = int(result)
    return str(result)


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------

_STRING_OPS = {
    "upper": str.upper,
    "lower": str.lower,
    "reverse": lambda s: s[::-1],
    "length": lambda s: str(len(s)),
    "trim": str.strip,
}


def _tool_string(args: Any) -> str:
    """Apply a text operation: upper, lower, reverse, length, trim."""
    if not isinstance(args, dict) or "operation" not in args:
        raise CapabilityError(
            CapabilityErrorKind.INVALID_INPUT,
            'expected {"operation": ..., "text": ...}',
        )
    operation = args["operation"]
    if operation not in _STRING_OPS:
        raise CapabilityError(
            CapabilityErrorKind.INVALID_INPUT,
            f"unknown operation '{operation}', expected one of {sorted(_STRING_OPS)}",
        )
    return _STRING_OPS[operation](str(args.get("text", "")))


def _tool_echo(args: Any) -> str:
    """Return the message unchanged."""
    return _text_arg(args, "message")


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------


class HttpGetCapability(Capability):
    """Fetch a URL and return the status line and a truncated body."""

    name = "http_get"
    description = "Fetch a URL with HTTP GET and return status and body."

    def __init__(self, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._timeout = timeout
        self._transport = transport

    async def invoke(self, payload: Any) -> str:
        url = _text_arg(payload, "url").strip()
        if not url.startswith(("http://", "https://")):
            raise CapabilityError(CapabilityErrorKind.INVALID_INPUT, f"not an http(s) URL: '{url}'")

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = await client.get(url)
            except httpx.TimeoutException as exc:
                raise CapabilityError(CapabilityErrorKind.TIMEOUT, f"GET {url} timed out") from exc
            except httpx.HTTPError as exc:
                raise CapabilityError(CapabilityErrorKind.EXECUTION_FAILED, f"GET {url} failed: {exc}") from exc

        body = response.text
        if len(body) > _MAX_BODY:
            body = body[:_MAX_BODY] + "…"
        return f"GET {url} → {response.status_code}\n{body}"


# ---------------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------------


class _Workspace:
    """Resolves relative paths inside a base directory and refuses traversal."""

    def __init__(self, base_dir: str | os.PathLike) -> None:
        self.base = Path(base_dir).resolve()

    def resolve(self, raw: str) -> Path:
        if not raw:
            raise CapabilityError(CapabilityErrorKind.INVALID_INPUT, "no path provided")
        target = (self.base / raw).resolve()
        if not target.is_relative_to(self.base):
            raise CapabilityError(
                CapabilityErrorKind.INVALID_INPUT, f"path '{raw}' escapes the workspace"
            )
        return target


class FileReadCapability(Capability):
    name = "file_read"
    description = "Read a text file inside the workspace."

    def __init__(self, base_dir: str | os.PathLike) -> None:
        self._workspace = _Workspace(base_dir)

    async def invoke(self, payload: Any) -> str:
        path = self._workspace.resolve(_text_arg(payload, "path").strip())
        if not path.is_file():
            raise CapabilityError(CapabilityErrorKind.INVALID_INPUT, f"no such file: '{path.name}'")
        try:
            return path.read_text(encoding="utf-8")[:_MAX_BODY]
        except OSError as exc:
            raise CapabilityError(CapabilityErrorKind.EXECUTION_FAILED, str(exc)) from exc


class FileWriteCapability(Capability):
    name = "file_write"
    description = 'Write text to a file inside the workspace. Payload: {"path": ..., "content": ...}'

    def __init__(self, base_dir: str | os.PathLike) -> None:
        self._workspace = _Workspace(base_dir)

    async def invoke(self, payload: Any) -> str:
        if not isinstance(payload, dict):
            raise CapabilityError(CapabilityErrorKind.INVALID_INPUT, "payload must be an object")
        path = self._workspace.resolve(str(payload.get("path", "")).strip())
        content = str(payload.get("content", ""))
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise CapabilityError(CapabilityErrorKind.EXECUTION_FAILED, str(exc)) from exc
        return f"Wrote {len(content.encode('utf-8'))} bytes to {path.relative_to(self._workspace.base)}."


def default_registry(workspace: str | os.PathLike = "./workspace") -> CapabilityRegistry:
    return CapabilityRegistry(
        [
            FunctionCapability("calculator", _tool_calculator),
            FunctionCapability("string", _tool_string),
            FunctionCapability("echo", _tool_echo),
            HttpGetCapability(),
            FileReadCapability(workspace),
            FileWriteCapability(workspace),
        ]
    )
