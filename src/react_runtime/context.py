# context.py
# Per-run mutable state: transcript, budget, usage and audit trail.
#
# One context per run, written only by the strategy that owns it. Nothing
# here is shared between runs, so nothing here is locked.

import time
import uuid
from collections.abc import Callable
from typing import Any

from react_runtime.models import CapabilityInvocationRecord, Message, TokenUsage


class ExecutionContext:
    """
    Accumulates everything that happens during one run.

    `clock` must be monotonic. It is injectable so budget behaviour can be
    tested without sleeping.
    """

    def __init__(
        self,
        max_iterations: int,
        timeout: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if timeout <= 0:
            raise ValueError("timeout must be positive")

        self.run_id = uuid.uuid4().hex
        self.max_iterations = max_iterations
        self.timeout = timeout
        self._clock = clock
        self.started_at = clock()
        self.deadline = self.started_at + timeout

        self.iteration = 0
        self.input_tokens = 0
        self.output_tokens = 0
        self.cost = 0.0

        self._messages: list[Message] = []
        self._invocations: list[CapabilityInvocationRecord] = []
        self._reasoning: list[str] = []

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def append_message(self, message: Message) -> None:
        self._messages.append(message)

    def record_invocation(
        self,
        name: str,
        input: Any,
        output: str,
        success: bool,
        latency: float,
        error_kind: str | None = None,
    ) -> CapabilityInvocationRecord:
        record = CapabilityInvocationRecord(
            name=name,
            input=input,
            output=output,
            success=success,
            latency=max(latency, 0.0),
            sequence_index=len(self._invocations),
            error_kind=error_kind,
        )
        self._invocations.append(record)
        return record

    def record_reasoning(self, text: str) -> None:
        self._reasoning.append(text)

    def advance_iteration(self) -> int:
        if self.iteration >= self.max_iterations:
            raise RuntimeError(
                f"Iteration budget exhausted ({self.iteration}/{self.max_iterations})."
            )
        self.iteration += 1
        return self.iteration

    def add_usage(self, usage: TokenUsage, cost: float) -> None:
        if cost < 0:
            raise ValueError(f"cost must be non-negative, got {cost}")
        self.input_tokens += usage.input_tokens
        self.output_tokens += usage.output_tokens
        self.cost += cost

    # ------------------------------------------------------------------
    # Budget
    # ------------------------------------------------------------------

    def time_remaining(self) -> float:
        return self.deadline - self._clock()

    def iterations_remaining(self) -> int:
        return self.max_iterations - self.iteration

    def elapsed(self) -> float:
        return self._clock() - self.started_at

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def transcript(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def invocations(self) -> tuple[CapabilityInvocationRecord, ...]:
        return tuple(self._invocations)

    @property
    def reasoning(self) -> tuple[str, ...]:
        return tuple(self._reasoning)

    @property
    def last_reasoning(self) -> str | None:
        return self._reasoning[-1] if self._reasoning else None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens
