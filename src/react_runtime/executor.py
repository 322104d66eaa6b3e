# executor.py
# Top-level entry point: assemble, run, snapshot.
#
# The builder fails fast on anything that would make every run fail.
# execute() never raises for run outcomes. Timeouts, exhausted budgets and
# gateway failures all come back as an ExecutionResult.

import asyncio
import logging

from react_runtime.capabilities import CapabilityRegistry
from react_runtime.config import AgentConfig, parse_timeout
from react_runtime.context import ExecutionContext
from react_runtime.errors import ConfigError
from react_runtime.gateway import ModelGateway, build_gateway
from react_runtime.models import ExecutionResult, Message
from react_runtime.strategy import (
    LoopState,
    ReActStrategy,
    Strategy,
    StrategyOutcome,
    StrategySettings,
    build_system_prompt,
)

logger = logging.getLogger(__name__)


class Executor:
    """
    Runs one agent configuration against user inputs.

    Safe to call execute() concurrently: each run gets its own context and
    shares only the read-only registry and price table.

    Example:
        executor = (
            ExecutorBuilder()
            .config(config)
            .registry(default_registry())
            .build()
        )
        result = executor.execute_sync("What is 2 + 2?")
    """

    def __init__(
        self,
        config: AgentConfig,
        gateway: ModelGateway,
        registry: CapabilityRegistry,
        strategy: Strategy,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.registry = registry
        self.strategy = strategy
        self.timeout = parse_timeout(config.execution.timeout)
        self.settings = StrategySettings.from_config(config)
        self._system_prompt = build_system_prompt(config.system_prompt, registry)

    def new_context(self, user_input: str) -> ExecutionContext:
        context = ExecutionContext(self.config.execution.max_iterations, self.timeout)
        context.append_message(Message.system(self._system_prompt))
        context.append_message(Message.user(user_input))
        return context

    async def execute(self, user_input: str, cancel: asyncio.Event | None = None) -> ExecutionResult:
        context = self.new_context(user_input)
        logger.info(
            "Run %s started: agent=%s strategy=%s model=%s",
            context.run_id,
            self.config.name,
            self.strategy.name,
            self.settings.model,
        )

        hard_limit = self.timeout + self.config.execution.deadline_grace
        try:
            outcome = await asyncio.wait_for(
                self.strategy.run(context, self.gateway, self.registry, self.settings, cancel),
                timeout=hard_limit,
            )
        except asyncio.TimeoutError:
            logger.warning("Run %s hit the hard deadline of %.1fs", context.run_id, hard_limit)
            outcome = StrategyOutcome(
                state=LoopState.TIMED_OUT,
                error=f"Timed out after {self.timeout:g}s (in-flight call abandoned).",
            )

        result = self.snapshot(context, outcome)
        logger.info(
            "Run %s finished: stop_reason=%s iterations=%d tokens=%d cost=%.6f elapsed=%.2fs",
            result.run_id,
            result.stop_reason.value,
            result.iterations_used,
            result.total_tokens,
            result.total_cost,
            result.elapsed,
        )
        return result

    def execute_sync(self, user_input: str) -> ExecutionResult:
        """Blocking wrapper around execute() for callers without an event loop."""
        return asyncio.run(self.execute(user_input))

    @staticmethod
    def snapshot(context: ExecutionContext, outcome: StrategyOutcome) -> ExecutionResult:
        return ExecutionResult(
            run_id=context.run_id,
            success=outcome.success,
            final_text=outcome.final_text,
            iterations_used=context.iteration,
            input_tokens=context.input_tokens,
            output_tokens=context.output_tokens,
            total_tokens=context.total_tokens,
            total_cost=context.cost,
            elapsed=context.elapsed(),
            invocations=context.invocations,
            reasoning=context.reasoning,
            stop_reason=outcome.stop_reason,
            error=outcome.error,
        )


class ExecutorBuilder:
    """
    Assembles an Executor. Only the config is mandatory: the gateway defaults
    to build_gateway(config.llm), the registry to an empty one and the
    strategy to ReActStrategy.
    """

    def __init__(self) -> None:
        self._config: AgentConfig | None = None
        self._gateway: ModelGateway | None = None
        self._registry: CapabilityRegistry | None = None
        self._strategy: Strategy | None = None

    def config(self, config: AgentConfig) -> "ExecutorBuilder":
        self._config = config
        return self

    def gateway(self, gateway: ModelGateway) -> "ExecutorBuilder":
        self._gateway = gateway
        return self

    def registry(self, registry: CapabilityRegistry) -> "ExecutorBuilder":
        self._registry = registry
        return self

    def strategy(self, strategy: Strategy) -> "ExecutorBuilder":
        self._strategy = strategy
        return self

    def build(self) -> Executor:
        if self._config is None:
            raise ConfigError("Missing agent config.")
        config = self._config

        registry = self._registry if self._registry is not None else CapabilityRegistry()
        if config.capabilities and len(registry) == 0:
            raise ConfigError(
                f"Agent '{config.name}' declares capabilities {config.capabilities} "
                "but the registry is empty."
            )
        missing = [name for name in config.capabilities if name not in registry]
        if missing:
            raise ConfigError(f"Declared capabilities missing from registry: {missing}")

        # Surfaces malformed durations before any run starts.
        StrategySettings.from_config(config)
        parse_timeout(config.execution.timeout)

        gateway = self._gateway if self._gateway is not None else build_gateway(config.llm)
        gateway.prices.lookup(config.llm.model)

        strategy = self._strategy if self._strategy is not None else ReActStrategy()
        return Executor(config, gateway, registry, strategy)
