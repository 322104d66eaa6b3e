# capabilities.py
# Capability contract and the registry the strategy resolves names against.
#
# The registry is built once, before any run starts, and is read-only after
# that. Concurrent runs share it by reference without locking.

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping
from types import MappingProxyType
from typing import Any

from react_runtime.errors import CapabilityError, CapabilityErrorKind

logger = logging.getLogger(__name__)


class Capability(ABC):
    """
    A named, invocable external action.

    Subclasses set `name` (and optionally `description`) and implement
    `invoke`. Failures are reported by raising CapabilityError.
    """

    name: str = ""
    description: str = ""

    @abstractmethod
    async def invoke(self, payload: Any) -> Any:
        """Run the capability against a structured payload."""


class FunctionCapability(Capability):
    """
    Adapts a plain callable to the Capability contract.

    Coroutine functions are awaited. Blocking functions run in a worker
    thread so they never stall the event loop.
    """

    def __init__(self, name: str, func: Callable[[Any], Any], description: str = "") -> None:
        if not name:
            raise ValueError("Capability name must be non-empty.")
        self.name = name
        self.description = description or (inspect.getdoc(func) or "").split("\n")[0]
        self._func = func

    async def invoke(self, payload: Any) -> Any:
        if inspect.iscoroutinefunction(self._func):
            return await self._func(payload)
        return await asyncio.to_thread(self._func, payload)

    def __repr__(self) -> str:
        return f"FunctionCapability(name={self.name!r})"


class CapabilityRegistry:
    """Immutable name → Capability mapping."""

    def __init__(self, capabilities: Iterable[Capability] = ()) -> None:
        entries: dict[str, Capability] = {}
        for capability in capabilities:
            if not capability.name:
                raise ValueError(f"Capability {capability!r} has no name.")
            if capability.name in entries:
                raise ValueError(f"Duplicate capability name '{capability.name}'.")
            entries[capability.name] = capability
        self._entries: Mapping[str, Capability] = MappingProxyType(entries)
        logger.debug("Capability registry built with %d entries: %s", len(entries), list(entries))

    @classmethod
    def from_functions(cls, functions: Mapping[str, Callable[[Any], Any]]) -> "CapabilityRegistry":
        return cls(FunctionCapability(name, func) for name, func in functions.items())

    def lookup(self, name: str) -> Capability | None:
        return self._entries.get(name)

    def names(self) -> list[str]:
        return list(self._entries)

    def describe(self) -> str:
        """One line per capability, for inclusion in a system prompt."""
        lines = []
        for name, capability in self._entries.items():
            if capability.description:
                lines.append(f"- {name}: {capability.description}")
            else:
                lines.append(f"- {name}")
        return "\n".join(lines)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries.values())


async def invoke_capability(
    capability: Capability, payload: Any, timeout: float | None = None
) -> Any:
    """
    Invoke a capability, normalising every failure into CapabilityError.

    A per-invocation timeout surfaces as kind TIMEOUT. Any other exception
    escaping the implementation is classified as EXECUTION_FAILED.
    """
    try:
        if timeout is None:
            return await capability.invoke(payload)
        return await asyncio.wait_for(capability.invoke(payload), timeout=timeout)
    except CapabilityError:
        raise
    except (asyncio.TimeoutError, TimeoutError) as exc:
        if timeout is None:
            message = str(exc) or f"'{capability.name}' timed out"
        else:
            message = f"'{capability.name}' did not finish within {timeout:g}s"
        raise CapabilityError(CapabilityErrorKind.TIMEOUT, message) from exc
    except Exception as exc:
        raise CapabilityError(CapabilityErrorKind.EXECUTION_FAILED, str(exc) or repr(exc)) from exc
