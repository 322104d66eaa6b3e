# strategy.py
# ReAct strategy: Reason + Act against a single model gateway.
#
# The strategy owns all control flow. The model is a passive responder: it
# emits text, the parser turns that text into a directive, and the strategy
# decides what happens next.
#
# Control flow, per iteration:
#   budget checks → THINK (model call) → ACT (parse directive)
#   → OBSERVE (invoke capability, append observation) → loop
#
# Capability and directive failures are recovered here and fed back to the
# model. Gateway failures end the run.

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from pydantic import BaseModel

from react_runtime.capabilities import CapabilityRegistry, invoke_capability
from react_runtime.config import AgentConfig, parse_timeout
from react_runtime.context import ExecutionContext
from react_runtime.directives import (
    Directive,
    FinalAnswer,
    InvokeCapability,
    Malformed,
    argument_payload,
    parse_directive,
)
from react_runtime.errors import (
    CapabilityError,
    CapabilityErrorKind,
    ConfigError,
    DirectiveError,
    GatewayError,
)
from react_runtime.gateway import ModelGateway
from react_runtime.models import Message, ModelRequest, ModelResponse, StopReason

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

DIRECTIVE_PROMPT = """\
You solve tasks step by step. Think briefly, then end every reply with exactly \
one directive on its own line:

TOOL: <capability_name>(<argument>)
    Invoke a capability. The argument is plain text or a JSON object.
ANSWER: <final answer>
    Finish and give the user your answer.

Use at most one TOOL: line per reply. Capability results come back to you as \
observations.

Available capabilities:
{capabilities}\
"""

CORRECTIVE_OBSERVATION = """\
Your reply was empty. End your reply with exactly one directive:
  TOOL: <capability_name>(<argument>)
  ANSWER: <final answer>\
"""


def build_system_prompt(base: str, registry: CapabilityRegistry) -> str:
    listing = registry.describe() if len(registry) else "(none, answer directly)"
    instructions = DIRECTIVE_PROMPT.format(capabilities=listing)
    return f"{base.strip()}\n\n{instructions}" if base.strip() else instructions


# ---------------------------------------------------------------------------
# States and outcomes
# ---------------------------------------------------------------------------


class LoopState(str, Enum):
    START = "start"
    THINKING = "thinking"
    ACTING = "acting"
    ANSWERING = "answering"
    OBSERVING = "observing"
    DONE = "done"
    TIMED_OUT = "timed_out"
    EXHAUSTED = "exhausted"
    FAILED = "failed"
    CANCELLED = "cancelled"


_STOP_REASONS = {
    LoopState.DONE: StopReason.COMPLETED,
    LoopState.EXHAUSTED: StopReason.MAX_ITERATIONS,
    LoopState.TIMED_OUT: StopReason.TIMEOUT,
    LoopState.FAILED: StopReason.ERROR,
    LoopState.CANCELLED: StopReason.USER_CANCELLED,
}


class StrategyOutcome(BaseModel):
    """Terminal state of a strategy run."""

    state: LoopState
    final_text: str = ""
    error: str | None = None

    @property
    def stop_reason(self) -> StopReason:
        return _STOP_REASONS[self.state]

    @property
    def success(self) -> bool:
        return self.state is LoopState.DONE


class StrategySettings(BaseModel):
    """Generation parameters and loop policy, flattened out of AgentConfig."""

    model: str
    temperature: float = 0.7
    max_tokens: int = 4096
    stream: bool = False
    capability_timeout: float | None = None
    act_on_final_iteration: bool = True

    @classmethod
    def from_config(cls, config: AgentConfig) -> "StrategySettings":
        execution = config.execution
        return cls(
            model=config.llm.model,
            temperature=config.llm.temperature,
            max_tokens=config.llm.max_tokens,
            stream=config.llm.stream,
            capability_timeout=(
                parse_timeout(execution.capability_timeout) if execution.capability_timeout else None
            ),
            act_on_final_iteration=execution.act_on_final_iteration,
        )


class Strategy(ABC):
    """Drives one run from seeded context to a terminal outcome."""

    name: str = ""

    @abstractmethod
    async def run(
        self,
        context: ExecutionContext,
        gateway: ModelGateway,
        registry: CapabilityRegistry,
        settings: StrategySettings,
        cancel: asyncio.Event | None = None,
    ) -> StrategyOutcome:
        """Run until a terminal state. Never raises for run outcomes."""


def _render_output(output: Any) -> str:
    if isinstance(output, str):
        return output
    try:
        return json.dumps(output, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(output)


# ---------------------------------------------------------------------------
# ReAct
# ---------------------------------------------------------------------------


class ReActStrategy(Strategy):
    """
    Alternates THINK → ACT → OBSERVE until the model answers or a budget runs out.

    `iterations_used` counts model calls. A TOOL: directive returned on the
    last allowed iteration is still executed unless
    `settings.act_on_final_iteration` is False.
    """

    name = "react"

    async def run(
        self,
        context: ExecutionContext,
        gateway: ModelGateway,
        registry: CapabilityRegistry,
        settings: StrategySettings,
        cancel: asyncio.Event | None = None,
    ) -> StrategyOutcome:
        cancel = cancel or asyncio.Event()
        state = LoopState.START

        while True:
            # ── Budget: checked before every model call ──────────────────
            if cancel.is_set():
                return self._stop(context, state, LoopState.CANCELLED, error="Run cancelled.")
            if context.time_remaining() <= 0:
                return self._stop(
                    context, state, LoopState.TIMED_OUT,
                    error=f"Timed out after {context.timeout:g}s.",
                )
            if context.iterations_remaining() == 0:
                return self._stop(
                    context, state, LoopState.EXHAUSTED,
                    error=f"Max iterations reached ({context.max_iterations}).",
                )

            # ── Think ────────────────────────────────────────────────────
            iteration = context.advance_iteration()
            state = self._transition(state, LoopState.THINKING, iteration)
            try:
                response = await self._think(context, gateway, settings, cancel)
            except (GatewayError, ConfigError) as exc:
                logger.error("Model call failed on iteration %d: %s", iteration, exc)
                return self._stop(context, state, LoopState.FAILED, error=str(exc))

            if response is None:
                return self._stop(
                    context, state, LoopState.CANCELLED, error="Run cancelled mid-stream."
                )

            # ── Act ──────────────────────────────────────────────────────
            try:
                directive = self._require_directive(response.text)
            except DirectiveError as exc:
                state = self._transition(state, LoopState.OBSERVING, iteration)
                logger.warning("Iteration %d: %s", iteration, exc)
                context.append_message(Message.observation(CORRECTIVE_OBSERVATION))
                continue

            if isinstance(directive, FinalAnswer):
                state = self._transition(state, LoopState.ANSWERING, iteration)
                return self._stop(context, state, LoopState.DONE, final_text=directive.text)

            state = self._transition(state, LoopState.ACTING, iteration)
            if not settings.act_on_final_iteration and context.iterations_remaining() == 0:
                return self._stop(
                    context, state, LoopState.EXHAUSTED,
                    error=(
                        f"Max iterations reached ({context.max_iterations}) "
                        f"before '{directive.name}' could run."
                    ),
                )

            # ── Observe ──────────────────────────────────────────────────
            state = self._transition(state, LoopState.OBSERVING, iteration)
            await self._observe(context, registry, directive, settings)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _think(
        self,
        context: ExecutionContext,
        gateway: ModelGateway,
        settings: StrategySettings,
        cancel: asyncio.Event,
    ) -> ModelResponse | None:
        """
        One model call. Returns None if cancelled mid-stream, in which case
        the partial text is dropped and nothing is recorded.
        """
        request = ModelRequest(
            messages=context.transcript,
            model=settings.model,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            stream=settings.stream,
        )

        if settings.stream:
            async with gateway.stream(request) as stream:
                async for _ in stream:
                    if cancel.is_set():
                        logger.info("Cancelled mid-stream, discarding %d chars", len(stream.text))
                        return None
                response = stream.response
        else:
            response = await gateway.generate(request)

        cost = gateway.cost(settings.model, response.usage)
        context.add_usage(response.usage, cost)
        context.record_reasoning(response.text)
        context.append_message(Message.assistant(response.text))

        logger.debug(
            "Iteration %d response: %d chars, %d tokens, finish=%s",
            context.iteration,
            len(response.text),
            response.usage.total_tokens,
            response.finish_reason.value,
        )
        return response

    @staticmethod
    def _require_directive(text: str) -> Directive:
        directive = parse_directive(text)
        if isinstance(directive, Malformed):
            raise DirectiveError(directive.raw)
        return directive

    async def _observe(
        self,
        context: ExecutionContext,
        registry: CapabilityRegistry,
        directive: InvokeCapability,
        settings: StrategySettings,
    ) -> None:
        """Invoke the capability and record exactly one invocation for it."""
        name = directive.name
        payload = argument_payload(directive.argument)
        capability = registry.lookup(name)
        started = time.perf_counter()

        try:
            if capability is None:
                raise CapabilityError(
                    CapabilityErrorKind.NOT_FOUND,
                    f"capability '{name}' not found. Available: {', '.join(registry.names()) or 'none'}",
                )
            logger.info("Invoking %s with %s", name, _render_output(payload))
            output = await invoke_capability(capability, payload, settings.capability_timeout)
        except CapabilityError as exc:
            latency = time.perf_counter() - started
            logger.warning("Capability %s failed (%s): %s", name, exc.kind.value, exc.message)
            context.record_invocation(
                name, payload, exc.message, success=False, latency=latency, error_kind=exc.kind.value
            )
            context.append_message(
                Message.observation(f"Error from {name} ({exc.kind.value}): {exc.message}")
            )
            return
        except asyncio.CancelledError:
            context.record_invocation(
                name,
                payload,
                "invocation interrupted by cancellation",
                success=False,
                latency=time.perf_counter() - started,
                error_kind=CapabilityErrorKind.TIMEOUT.value,
            )
            raise

        text = _render_output(output)
        context.record_invocation(
            name, payload, text, success=True, latency=time.perf_counter() - started
        )
        context.append_message(Message.observation(f"Result from {name}: {text}"))

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    @staticmethod
    def _transition(current: LoopState, new: LoopState, iteration: int) -> LoopState:
        logger.debug("Iteration %d: %s → %s", iteration, current.value, new.value)
        return new

    def _stop(
        self,
        context: ExecutionContext,
        current: LoopState,
        terminal: LoopState,
        final_text: str = "",
        error: str | None = None,
    ) -> StrategyOutcome:
        self._transition(current, terminal, context.iteration)
        if terminal is LoopState.DONE:
            logger.info("Run %s completed after %d iteration(s)", context.run_id, context.iteration)
        elif terminal is LoopState.FAILED:
            logger.error("Run %s failed: %s", context.run_id, error)
        else:
            logger.warning("Run %s stopped (%s): %s", context.run_id, terminal.value, error)
        return StrategyOutcome(state=terminal, final_text=final_text, error=error)
