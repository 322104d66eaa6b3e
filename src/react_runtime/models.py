# models.py
# Data contracts for the agent runtime.
# Schema and validation only. No business logic.

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    OBSERVATION = "observation"


class Message(BaseModel):
    """A single transcript entry. Never mutated once appended."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(role=Role.ASSISTANT, content=content)

    @classmethod
    def observation(cls, content: str) -> "Message":
        return cls(role=Role.OBSERVATION, content=content)


# ---------------------------------------------------------------------------
# Model calls
# ---------------------------------------------------------------------------


class FinishReason(str, Enum):
    STOP = "stop"
    LENGTH = "length"
    TOOL_USE = "tool_use"
    STOP_SEQUENCE = "stop_sequence"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"


class TokenUsage(BaseModel):
    model_config = ConfigDict(frozen=True)

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


class ModelRequest(BaseModel):
    """Everything a gateway needs for one call. `messages` is a snapshot."""

    model_config = ConfigDict(frozen=True)

    messages: tuple[Message, ...]
    model: str
    temperature: float = 0.7
    max_tokens: int = 4096
    stream: bool = False


class ModelResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    finish_reason: FinishReason = FinishReason.STOP
    usage: TokenUsage = Field(default_factory=TokenUsage)


# ---------------------------------------------------------------------------
# Run records
# ---------------------------------------------------------------------------


class CapabilityInvocationRecord(BaseModel):
    """Immutable log entry, one per attempted capability invocation."""

    model_config = ConfigDict(frozen=True)

    name: str
    input: Any = None
    output: str = Field(default="", description="Output text, or the failure reason.")
    success: bool
    latency: float = Field(default=0.0, ge=0.0, description="Seconds spent invoking.")
    sequence_index: int = Field(..., ge=0)
    error_kind: str | None = None


class StopReason(str, Enum):
    COMPLETED = "completed"
    MAX_ITERATIONS = "max_iterations"
    TIMEOUT = "timeout"
    ERROR = "error"
    USER_CANCELLED = "user_cancelled"


class ExecutionResult(BaseModel):
    """Terminal snapshot of one run, handed to whatever consumes it."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    success: bool
    final_text: str = ""
    iterations_used: int = Field(..., ge=0)
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    total_cost: float = Field(default=0.0, ge=0.0)
    elapsed: float = Field(default=0.0, description="Wall-clock seconds.")
    invocations: tuple[CapabilityInvocationRecord, ...] = ()
    reasoning: tuple[str, ...] = ()
    stop_reason: StopReason
    error: str | None = None

    @property
    def last_reasoning(self) -> str | None:
        return self.reasoning[-1] if self.reasoning else None
