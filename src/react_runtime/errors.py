# errors.py
# Error taxonomy for the runtime.
#
# Gateway errors abort a run. Capability and directive errors are recovered
# inside the loop and turned into observations. Config errors are raised
# before a run ever starts.

from enum import Enum


class AgentRuntimeError(Exception):
    """Base class for every error raised by react_runtime."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigError(AgentRuntimeError):
    """Raised when an executor or gateway cannot be assembled from config."""


class UnknownModelError(ConfigError):
    """Raised when a model id has no entry in the price table."""

    def __init__(self, model: str) -> None:
        super().__init__(f"No pricing known for model '{model}'.")
        self.model = model


# ---------------------------------------------------------------------------
# Model gateway
# ---------------------------------------------------------------------------


class GatewayErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    INVALID_REQUEST = "invalid_request"
    BACKEND_ERROR = "backend_error"
    NETWORK_ERROR = "network_error"
    PROTOCOL_VIOLATION = "protocol_violation"


class GatewayError(AgentRuntimeError):
    """
    Raised by a model gateway when a call cannot produce a response.

    Never retried inside the runtime. Retry policy belongs to the caller.
    """

    def __init__(self, kind: GatewayErrorKind, message: str, status: int | None = None) -> None:
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
        self.message = message
        self.status = status


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


class CapabilityErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"
    EXECUTION_FAILED = "execution_failed"
    TIMEOUT = "timeout"


class CapabilityError(AgentRuntimeError):
    """Raised by a capability when an invocation fails. Always recoverable."""

    def __init__(self, kind: CapabilityErrorKind, message: str) -> None:
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
        self.message = message


# ---------------------------------------------------------------------------
# Directives
# ---------------------------------------------------------------------------


class DirectiveError(AgentRuntimeError):
    """Raised when a model response carries no usable directive."""

    def __init__(self, raw: str) -> None:
        super().__init__("Response contained neither a TOOL: nor an ANSWER: directive.")
        self.raw = raw
