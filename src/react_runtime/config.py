# config.py
# Typed run configuration.
#
# Loading these from YAML or TOML is somebody else's job. The runtime only
# ever sees validated instances.

import re

from pydantic import BaseModel, Field

from react_runtime.errors import ConfigError

_DURATION = re.compile(r"^(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>ms|s|m|h)?$")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_timeout(expression: str) -> float:
    """
    Parse a human-readable duration ("500ms", "30s", "5m", "1h", "45") into seconds.

    A bare number is read as seconds. Raises ConfigError on anything else.
    """
    match = _DURATION.match(expression.strip())
    if not match:
        raise ConfigError(f"Invalid timeout format: '{expression}'")

    seconds = float(match.group("value")) * _UNIT_SECONDS[match.group("unit") or "s"]
    if seconds <= 0:
        raise ConfigError(f"Timeout must be positive, got '{expression}'")
    return seconds


class LLMConfig(BaseModel):
    """Which backend to talk to and how to sample from it."""

    provider: str = Field(default="anthropic", description="anthropic | openai | openrouter")
    model: str = Field(..., min_length=1)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4096, ge=1)
    stream: bool = False
    base_url: str | None = None
    api_key_env: str | None = Field(
        default=None, description="Environment variable holding the API key."
    )
    request_timeout: float = Field(default=120.0, gt=0.0, description="Per-request seconds.")


class ExecutionConfig(BaseModel):
    max_iterations: int = Field(default=10, ge=1)
    timeout: str = Field(default="300s", description="Wall-clock budget for the whole run.")
    capability_timeout: str | None = Field(
        default=None, description="Optional limit for a single capability invocation."
    )
    act_on_final_iteration: bool = Field(
        default=True,
        description="Run a TOOL: directive returned on the last allowed iteration.",
    )
    deadline_grace: float = Field(
        default=5.0, ge=0.0, description="Seconds past the timeout before a run is hard-stopped."
    )


class AgentConfig(BaseModel):
    """Complete, already-validated configuration for one agent."""

    name: str = Field(..., min_length=1, max_length=64)
    version: str = "0.1.0"
    description: str | None = None
    system_prompt: str = ""
    llm: LLMConfig
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    capabilities: list[str] = Field(
        default_factory=list, description="Capability names this agent requires."
    )
