# directives.py
# Turns free-form model text into exactly one actionable directive.
#
# Grammar (line-oriented, case-sensitive):
#   TOOL: <name>(<argument>)
#   ANSWER: <text>
#
# The first TOOL: line wins. Otherwise the first ANSWER: line wins. Otherwise
# any non-blank text is an implicit final answer. Only blank text is
# malformed.

import json
import re
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict

_TOOL_LINE = re.compile(r"TOOL:\s*(?P<name>[^\s(]+)\s*\((?P<argument>.*)\)")
_ANSWER_LINE = re.compile(r"ANSWER:")


class InvokeCapability(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["invoke"] = "invoke"
    name: str
    argument: str


class FinalAnswer(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["answer"] = "answer"
    text: str


class Malformed(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["malformed"] = "malformed"
    raw: str


Directive = Union[InvokeCapability, FinalAnswer, Malformed]


def _find_tool(lines: list[str]) -> InvokeCapability | None:
    for line in lines:
        # Greedy match: argument runs from the first "(" to the last ")".
        match = _TOOL_LINE.search(line)
        if match:
            return InvokeCapability(
                name=match.group("name"),
                argument=match.group("argument").strip(),
            )
    return None


def _find_answer(text: str) -> FinalAnswer | None:
    offset = 0
    for line in text.splitlines(keepends=True):
        match = _ANSWER_LINE.search(line)
        if match:
            return FinalAnswer(text=text[offset + match.end():].strip())
        offset += len(line)
    return None


def parse_directive(text: str) -> Directive:
    """
    Classify a raw model response. Total and deterministic: every input maps
    to exactly one variant.
    """
    if not text or not text.strip():
        return Malformed(raw=text or "")

    tool = _find_tool(text.splitlines())
    if tool is not None:
        return tool

    answer = _find_answer(text)
    if answer is not None:
        return answer

    return FinalAnswer(text=text.strip())


def argument_payload(argument: str) -> Any:
    """
    Convert a directive's argument text into a capability payload.

    A JSON object is passed through as-is. Anything else is wrapped as
    {"input": argument}.
    """
    if argument.startswith("{"):
        try:
            payload = json.loads(argument, strict=False)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            return payload
    return {"input": argument}
