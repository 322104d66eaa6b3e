import pytest

from react_runtime.capabilities import CapabilityRegistry
from react_runtime.config import AgentConfig, ExecutionConfig, LLMConfig
from react_runtime.gateway import ModelGateway, PriceTable, StreamCompleted, TextDelta
from react_runtime.models import ModelResponse, TokenUsage
from react_runtime.tools import _tool_calculator

TEST_MODEL = "test-model"
TEST_PRICES = PriceTable({TEST_MODEL: (1.0, 2.0)})
REPLY_USAGE = TokenUsage(input_tokens=10, output_tokens=5)


class ScriptedGateway(ModelGateway):
    """
    Replays a fixed list of replies, one per model call.

    A reply may be a string (wrapped with REPLY_USAGE), a ModelResponse, or an
    exception instance to raise. Streaming splits each reply into word chunks.
    """

    provider = "scripted"

    def __init__(self, replies, prices=None) -> None:
        super().__init__(prices or TEST_PRICES)
        self._replies = list(replies)
        self.requests = []
        self.closed_streams = 0

    def _next(self, request) -> ModelResponse:
        self.requests.append(request)
        if not self._replies:
            raise AssertionError("ScriptedGateway ran out of replies")
        reply = self._replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, str):
            return ModelResponse(text=reply, usage=REPLY_USAGE)
        return reply

    async def generate(self, request):
        return self._next(request)

    async def _stream_events(self, request):
        response = self._next(request)
        try:
            words = response.text.split(" ")
            for index, word in enumerate(words):
                yield TextDelta(text=word if index == len(words) - 1 else word + " ")
            yield StreamCompleted(usage=response.usage, finish_reason=response.finish_reason)
        finally:
            self.closed_streams += 1


@pytest.fixture
def calculator_registry():
    return CapabilityRegistry.from_functions({"calculator": _tool_calculator})


@pytest.fixture
def make_config():
    def _make(stream=False, capabilities=(), **execution):
        return AgentConfig(
            name="test-agent",
            system_prompt="You are a test agent.",
            llm=LLMConfig(provider="anthropic", model=TEST_MODEL, stream=stream),
            execution=ExecutionConfig(**execution),
            capabilities=list(capabilities),
        )

    return _make
