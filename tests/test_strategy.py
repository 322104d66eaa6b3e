import asyncio
import json

import httpx
import pytest

from conftest import REPLY_USAGE, TEST_MODEL, TEST_PRICES, ScriptedGateway
from react_runtime.capabilities import Capability, CapabilityRegistry, FunctionCapability
from react_runtime.context import ExecutionContext
from react_runtime.errors import GatewayError, GatewayErrorKind
from react_runtime.gateway import AnthropicGateway, ModelGateway, StreamCompleted, TextDelta
from react_runtime.models import Message, Role, StopReason, TokenUsage
from react_runtime.strategy import (
    CORRECTIVE_OBSERVATION,
    LoopState,
    ReActStrategy,
    StrategySettings,
    build_system_prompt,
)

CALL_COST = (REPLY_USAGE.input_tokens * 1.0 + REPLY_USAGE.output_tokens * 2.0) / 1_000_000


async def run(gateway, registry, max_iterations=5, timeout=60.0, clock=None, cancel=None, **settings):
    kwargs = {"clock": clock} if clock is not None else {}
    context = ExecutionContext(max_iterations, timeout, **kwargs)
    context.append_message(Message.system("You are a test agent."))
    context.append_message(Message.user("What is 2+2?"))
    outcome = await ReActStrategy().run(
        context, gateway, registry, StrategySettings(model=TEST_MODEL, **settings), cancel
    )
    return outcome, context


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class Sleeper(Capability):
    name = "sleeper"
    description = "Sleeps for a second."

    async def invoke(self, payload):
        await asyncio.sleep(1)
        return "woke"


# ---------------------------------------------------------------------------
# System prompt
# ---------------------------------------------------------------------------


def test_system_prompt_lists_capabilities(calculator_registry):
    prompt = build_system_prompt("You are helpful.", calculator_registry)
    assert prompt.startswith("You are helpful.")
    assert "- calculator" in prompt
    assert "TOOL: <capability_name>(<argument>)" in prompt


def test_system_prompt_without_capabilities():
    assert "(none, answer directly)" in build_system_prompt("", CapabilityRegistry())


# ---------------------------------------------------------------------------
# Core loop
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("stream", [False, True])
@pytest.mark.asyncio
async def test_single_tool_then_answer(calculator_registry, stream):
    gateway = ScriptedGateway(["I need to calculate. TOOL: calculator(2+2)", "ANSWER: 4"])
    outcome, context = await run(gateway, calculator_registry, stream=stream)

    assert outcome.state is LoopState.DONE
    assert outcome.stop_reason is StopReason.COMPLETED
    assert outcome.final_text == "4"
    assert context.iteration == 2

    (record,) = context.invocations
    assert record.name == "calculator"
    assert record.input == {"input": "2+2"}
    assert record.output == "4"
    assert record.success and record.sequence_index == 0

    assert context.total_tokens == 2 * REPLY_USAGE.total_tokens
    assert context.cost == pytest.approx(2 * CALL_COST)
    assert context.reasoning == ("I need to calculate. TOOL: calculator(2+2)", "ANSWER: 4")

    second_request = gateway.requests[1]
    assert second_request.messages[-1] == Message.observation("Result from calculator: 4")
    assert second_request.stream is stream
    if stream:
        assert gateway.closed_streams == 2


@pytest.mark.asyncio
async def test_direct_answer(calculator_registry):
    gateway = ScriptedGateway(["ANSWER: hello"])
    outcome, context = await run(gateway, calculator_registry)

    assert outcome.success
    assert outcome.final_text == "hello"
    assert context.iteration == 1
    assert context.invocations == ()


@pytest.mark.asyncio
async def test_free_text_reply_is_the_answer(calculator_registry):
    outcome, _ = await run(ScriptedGateway(["It is 4."]), calculator_registry)
    assert outcome.success
    assert outcome.final_text == "It is 4."


# ---------------------------------------------------------------------------
# Iteration budget
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_tool_on_last_iteration_still_runs(calculator_registry):
    gateway = ScriptedGateway(["TOOL: calculator(1+1)"])
    outcome, context = await run(gateway, calculator_registry, max_iterations=1)

    assert outcome.stop_reason is StopReason.MAX_ITERATIONS
    assert not outcome.success
    assert context.iteration == 1
    assert len(context.invocations) == 1
    assert context.invocations[0].output == "2"


@pytest.mark.asyncio
async def test_tool_on_last_iteration_skipped_when_disabled(calculator_registry):
    gateway = ScriptedGateway(["TOOL: calculator(1+1)"])
    outcome, context = await run(
        gateway, calculator_registry, max_iterations=1, act_on_final_iteration=False
    )

    assert outcome.stop_reason is StopReason.MAX_ITERATIONS
    assert "calculator" in outcome.error
    assert context.invocations == ()


@pytest.mark.asyncio
async def test_iterations_never_exceed_cap(calculator_registry):
    gateway = ScriptedGateway(["TOOL: calculator(1+1)"] * 3)
    outcome, context = await run(gateway, calculator_registry, max_iterations=3)

    assert outcome.stop_reason is StopReason.MAX_ITERATIONS
    assert len(gateway.requests) == 3
    assert context.iteration == 3
    assert [r.sequence_index for r in context.invocations] == [0, 1, 2]


@pytest.mark.asyncio
async def test_blank_replies_get_corrective_observation(calculator_registry):
    gateway = ScriptedGateway(["", "   "])
    outcome, context = await run(gateway, calculator_registry, max_iterations=2)

    assert outcome.stop_reason is StopReason.MAX_ITERATIONS
    observations = [m for m in context.transcript if m.role is Role.OBSERVATION]
    assert observations == [Message.observation(CORRECTIVE_OBSERVATION)] * 2
    assert context.invocations == ()


@pytest.mark.asyncio
async def test_blank_reply_then_answer_recovers(calculator_registry):
    outcome, context = await run(ScriptedGateway(["", "ANSWER: 4"]), calculator_registry)
    assert outcome.success
    assert context.iteration == 2


# ---------------------------------------------------------------------------
# Capability failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_capability_failure_is_fed_back(calculator_registry):
    gateway = ScriptedGateway(["TOOL: calculator(1/0)", "ANSWER: cannot divide by zero"])
    outcome, context = await run(gateway, calculator_registry)

    assert outcome.success
    (record,) = context.invocations
    assert not record.success
    assert record.error_kind == "invalid_input"
    assert gateway.requests[1].messages[-1] == Message.observation(
        "Error from calculator (invalid_input): division by zero"
    )


@pytest.mark.asyncio
async def test_unknown_capability(calculator_registry):
    gateway = ScriptedGateway(["TOOL: search(python)", "ANSWER: no search available"])
    outcome, context = await run(gateway, calculator_registry)

    assert outcome.success
    (record,) = context.invocations
    assert record.name == "search"
    assert record.error_kind == "not_found"
    assert "Available: calculator" in record.output


@pytest.mark.asyncio
async def test_capability_timeout():
    registry = CapabilityRegistry([Sleeper()])
    gateway = ScriptedGateway(["TOOL: sleeper(now)", "ANSWER: too slow"])
    outcome, context = await run(gateway, registry, capability_timeout=0.01)

    assert outcome.success
    (record,) = context.invocations
    assert record.error_kind == "timeout"
    assert not record.success


@pytest.mark.asyncio
async def test_structured_output_is_json_encoded():
    registry = CapabilityRegistry.from_functions({"lookup": lambda args: {"value": args["key"]}})
    gateway = ScriptedGateway(['TOOL: lookup({"key": "a"})', "ANSWER: a"])
    _, context = await run(gateway, registry)

    (record,) = context.invocations
    assert record.input == {"key": "a"}
    assert json.loads(record.output) == {"value": "a"}


# ---------------------------------------------------------------------------
# Gateway failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_gateway_error_fails_run(calculator_registry):
    gateway = ScriptedGateway([GatewayError(GatewayErrorKind.RATE_LIMITED, "slow down", 429)])
    outcome, context = await run(gateway, calculator_registry)

    assert outcome.stop_reason is StopReason.ERROR
    assert "rate_limited" in outcome.error
    assert context.iteration == 1
    assert context.total_tokens == 0


@pytest.mark.asyncio
async def test_stream_without_usage_fails_run(calculator_registry):
    body = (
        'event: message_start\ndata: {"type": "message_start", "message": {"usage": {"input_tokens": 5}}}\n\n'
        'event: content_block_delta\ndata: {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "ANSWER: 4"}}\n\n'
    ).encode()
    gateway = AnthropicGateway(
        "test-key",
        prices=TEST_PRICES,
        transport=httpx.MockTransport(
            lambda request: httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})
        ),
    )
    outcome, context = await run(gateway, calculator_registry, stream=True)

    assert outcome.stop_reason is StopReason.ERROR
    assert "protocol_violation" in outcome.error
    assert context.total_tokens == 0
    assert context.reasoning == ()


# ---------------------------------------------------------------------------
# Cancellation and wall clock
# ---------------------------------------------------------------------------


class CancellingGateway(ModelGateway):
    """Streams two chunks and trips the cancel event between them."""

    def __init__(self, cancel):
        super().__init__(TEST_PRICES)
        self.cancel = cancel
        self.closed = False

    async def generate(self, request):
        raise AssertionError("streaming only")

    async def _stream_events(self, request):
        try:
            yield TextDelta(text="ANSWER: ")
            self.cancel.set()
            yield TextDelta(text="partial")
            yield StreamCompleted(usage=TokenUsage(input_tokens=10, output_tokens=2))
        finally:
            self.closed = True


@pytest.mark.asyncio
async def test_cancel_mid_stream_discards_partial_text(calculator_registry):
    cancel = asyncio.Event()
    gateway = CancellingGateway(cancel)
    outcome, context = await run(gateway, calculator_registry, cancel=cancel, stream=True)

    assert outcome.stop_reason is StopReason.USER_CANCELLED
    assert gateway.closed
    assert context.reasoning == ()
    assert context.total_tokens == 0
    assert all(m.role is not Role.ASSISTANT for m in context.transcript)


@pytest.mark.asyncio
async def test_cancel_before_first_call(calculator_registry):
    cancel = asyncio.Event()
    cancel.set()
    gateway = ScriptedGateway([])
    outcome, context = await run(gateway, calculator_registry, cancel=cancel)

    assert outcome.stop_reason is StopReason.USER_CANCELLED
    assert context.iteration == 0
    assert gateway.requests == []


@pytest.mark.asyncio
async def test_wall_clock_checked_before_each_call():
    clock = FakeClock()

    def slow(args):
        clock.now += 31
        return "done"

    registry = CapabilityRegistry([FunctionCapability("slow", slow)])
    gateway = ScriptedGateway(["TOOL: slow(x)", "ANSWER: never reached"])
    outcome, context = await run(gateway, registry, timeout=30.0, clock=clock)

    assert outcome.stop_reason is StopReason.TIMEOUT
    assert context.iteration == 1
    assert len(gateway.requests) == 1
    assert len(context.invocations) == 1
