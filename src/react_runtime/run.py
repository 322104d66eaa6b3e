# run.py
# Entry point. Config and wiring only.
#
# Swap the LLM block for any provider build_gateway() knows about. The API
# key is read from the environment (or a .env file).

import logging

from react_runtime import display
from react_runtime.config import AgentConfig, ExecutionConfig, LLMConfig
from react_runtime.executor import ExecutorBuilder
from react_runtime.tools import default_registry

CONFIG = AgentConfig(
    name="demo-agent",
    system_prompt="You are a careful assistant. Use capabilities instead of guessing.",
    llm=LLMConfig(provider="anthropic", model="claude-3-5-haiku-latest", stream=True),
    execution=ExecutionConfig(max_iterations=6, timeout="60s", capability_timeout="10s"),
    capabilities=["calculator", "string"],
)

PROMPTS = [
    # Single capability call, then an answer.
    "What is (17 * 23) + 4?",

    # Two chained calls.
    "Reverse the word 'runtime', then tell me how many characters it has.",

    # No capability needed.
    "In one sentence, what is the ReAct prompting pattern?",
]


def main() -> None:
    display.configure_logging(logging.INFO)
    display.banner(CONFIG.name, CONFIG.llm.model)

    executor = ExecutorBuilder().config(CONFIG).registry(default_registry()).build()

    for prompt in PROMPTS:
        display.console.rule(f"[cyan]{prompt}[/cyan]")
        result = executor.execute_sync(prompt)
        display.render_result(result)


if __name__ == "__main__":
    main()
