# gateway.py
# Model gateway: one contract in front of a language-model backend.
#
#   generate(request) -> ModelResponse        one suspension for the whole reply
#   stream(request)   -> ModelStream          one suspension per text delta
#
# Streams are single-pass. Text comes only from recognised content-delta
# events. Every other event type is skipped. A stream must end with exactly
# one usage-bearing completion event, which is authoritative for token
# counts. A stream that ends without one, or carries two, is a protocol
# violation. So is any backend payload that cannot be decoded.

import logging
import os
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from typing import Any, Union

import anthropic
import httpx
import openai
from anthropic import AsyncAnthropic
from dotenv import load_dotenv
from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict

from react_runtime.config import LLMConfig
from react_runtime.errors import ConfigError, GatewayError, GatewayErrorKind, UnknownModelError
from react_runtime.models import FinishReason, Message, ModelRequest, ModelResponse, Role, TokenUsage

logger = logging.getLogger(__name__)

ANTHROPIC_API_BASE = "https://api.anthropic.com"
OPENROUTER_API_BASE = "https://openrouter.ai/api/v1"

PRICE_UNIT = 1_000_000

# Payload shapes the backend should never send. Raised while decoding.
_DECODE_ERRORS = (ValueError, KeyError, TypeError, AttributeError, httpx.DecodingError)


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


class PriceTable:
    """
    Per-model (input_price, output_price), in currency per `unit` tokens.

    Models resolve by exact id first, then by the longest prefix, so dated
    snapshots ("claude-3-5-sonnet-20241022") share their family's price.
    Unknown models raise UnknownModelError rather than costing nothing.
    """

    def __init__(self, prices: Mapping[str, tuple[float, float]], unit: int = PRICE_UNIT) -> None:
        self._prices = dict(prices)
        self.unit = unit

    def lookup(self, model: str) -> tuple[float, float]:
        if model in self._prices:
            return self._prices[model]
        candidates = [key for key in self._prices if model.startswith(key)]
        if not candidates:
            raise UnknownModelError(model)
        return self._prices[max(candidates, key=len)]

    def cost(self, model: str, usage: TokenUsage) -> float:
        input_price, output_price = self.lookup(model)
        return (usage.input_tokens * input_price + usage.output_tokens * output_price) / self.unit


DEFAULT_PRICES = PriceTable(
    {
        "claude-3-haiku": (0.25, 1.25),
        "claude-3-sonnet": (3.0, 15.0),
        "claude-3-opus": (15.0, 75.0),
        "claude-3-5-haiku": (0.80, 4.0),
        "claude-3-5-sonnet": (3.0, 15.0),
        "claude-3-7-sonnet": (3.0, 15.0),
        "claude-sonnet-4": (3.0, 15.0),
        "claude-opus-4": (15.0, 75.0),
        "gpt-4o": (2.50, 10.0),
        "gpt-4o-mini": (0.15, 0.60),
        "gpt-4.1": (2.0, 8.0),
        "gpt-4.1-mini": (0.40, 1.60),
        "anthropic/claude-3.5-haiku": (0.80, 4.0),
        "anthropic/claude-3.5-sonnet": (3.0, 15.0),
        "openai/gpt-4o-mini": (0.15, 0.60),
    }
)


def estimate_tokens(text: str) -> int:
    """Rough running estimate (4 chars per token). Replaced by real usage."""
    return (len(text) + 3) // 4


# ---------------------------------------------------------------------------
# Finish reasons
# ---------------------------------------------------------------------------

_FINISH_REASONS = {
    # Anthropic
    "end_turn": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "tool_use": FinishReason.TOOL_USE,
    "stop_sequence": FinishReason.STOP_SEQUENCE,
    "refusal": FinishReason.CONTENT_FILTER,
    # OpenAI
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_USE,
    "function_call": FinishReason.TOOL_USE,
    "content_filter": FinishReason.CONTENT_FILTER,
    "error": FinishReason.ERROR,
}


def classify_finish_reason(raw: str | None) -> FinishReason:
    """Map a backend stop indicator onto FinishReason. Unknown values are STOP."""
    if raw is None:
        return FinishReason.STOP
    return _FINISH_REASONS.get(raw, FinishReason.STOP)


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class TextDelta(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str


class StreamCompleted(BaseModel):
    model_config = ConfigDict(frozen=True)

    usage: TokenUsage
    finish_reason: FinishReason = FinishReason.STOP


StreamEvent = Union[TextDelta, StreamCompleted]


class ModelStream:
    """
    Lazy, single-pass sequence of text deltas.

    Nothing touches the network until iteration begins. Once the iterator is
    exhausted, `response` holds the assembled ModelResponse with the
    backend's authoritative usage. Use as an async context manager (or call
    `aclose()`) so that abandoning a stream early closes the connection.
    """

    def __init__(self, events: AsyncIterator[StreamEvent]) -> None:
        self._events = events
        self._iterator: AsyncIterator[str] | None = None
        self._chunks: list[str] = []
        self._completed: StreamCompleted | None = None
        self.estimated_output_tokens = 0

    def __aiter__(self) -> AsyncIterator[str]:
        if self._iterator is not None:
            raise RuntimeError("ModelStream can only be iterated once.")
        self._iterator = self._iterate()
        return self._iterator

    async def _iterate(self) -> AsyncIterator[str]:
        async for event in self._events:
            if isinstance(event, TextDelta):
                self._chunks.append(event.text)
                self.estimated_output_tokens += estimate_tokens(event.text)
                yield event.text
            elif isinstance(event, StreamCompleted):
                if self._completed is not None:
                    raise GatewayError(
                        GatewayErrorKind.PROTOCOL_VIOLATION,
                        "stream carried more than one terminal usage event",
                    )
                self._completed = event

        if self._completed is None:
            raise GatewayError(
                GatewayErrorKind.PROTOCOL_VIOLATION,
                "stream ended without a terminal usage event",
            )
        if self._completed.usage.output_tokens != self.estimated_output_tokens:
            logger.debug(
                "Stream usage %d output tokens (estimated %d)",
                self._completed.usage.output_tokens,
                self.estimated_output_tokens,
            )

    @property
    def text(self) -> str:
        return "".join(self._chunks)

    @property
    def completed(self) -> bool:
        return self._completed is not None

    @property
    def response(self) -> ModelResponse:
        if self._completed is None:
            raise RuntimeError("ModelStream has not finished.")
        return ModelResponse(
            text=self.text,
            finish_reason=self._completed.finish_reason,
            usage=self._completed.usage,
        )

    async def aclose(self) -> None:
        if self._iterator is not None:
            await self._iterator.aclose()
        aclose = getattr(self._events, "aclose", None)
        if aclose is not None:
            await aclose()

    async def __aenter__(self) -> "ModelStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


# ---------------------------------------------------------------------------
# Gateway contract
# ---------------------------------------------------------------------------


class ModelGateway(ABC):
    """Single language-model backend behind generate() / stream()."""

    provider: str = ""

    def __init__(self, prices: PriceTable | None = None) -> None:
        self.prices = prices or DEFAULT_PRICES

    @abstractmethod
    async def generate(self, request: ModelRequest) -> ModelResponse:
        """Block until the complete response is available."""

    @abstractmethod
    def _stream_events(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        """Yield decoded stream events for one request."""

    def stream(self, request: ModelRequest) -> ModelStream:
        return ModelStream(self._stream_events(request))

    def cost(self, model: str, usage: TokenUsage) -> float:
        return self.prices.cost(model, usage)


def _status_error(status: int | None, body: str) -> GatewayError:
    if status in (401, 403):
        return GatewayError(GatewayErrorKind.UNAUTHORIZED, body or "invalid credentials", status)
    if status == 429:
        return GatewayError(GatewayErrorKind.RATE_LIMITED, body or "rate limited", status)
    if status in (400, 404, 413, 422):
        return GatewayError(GatewayErrorKind.INVALID_REQUEST, body, status)
    return GatewayError(GatewayErrorKind.BACKEND_ERROR, body or f"HTTP {status}", status)


def _protocol_error(exc: Exception) -> GatewayError:
    return GatewayError(
        GatewayErrorKind.PROTOCOL_VIOLATION, f"undecodable backend payload: {exc!r}"
    )


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


def _anthropic_error(exc: anthropic.APIError) -> GatewayError:
    if isinstance(exc, anthropic.APIStatusError):
        return _status_error(exc.status_code, exc.message)
    if isinstance(exc, anthropic.APIConnectionError):
        return GatewayError(GatewayErrorKind.NETWORK_ERROR, exc.message)
    if isinstance(exc, anthropic.APIResponseValidationError):
        return GatewayError(GatewayErrorKind.PROTOCOL_VIOLATION, exc.message, exc.status_code)
    return GatewayError(GatewayErrorKind.BACKEND_ERROR, exc.message)


class AnthropicGateway(ModelGateway):
    """Messages API through the anthropic SDK. Decodes the raw event stream itself."""

    provider = "anthropic"

    def __init__(
        self,
        api_key: str,
        base_url: str = ANTHROPIC_API_BASE,
        timeout: float = 120.0,
        prices: PriceTable | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(prices)
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> AsyncAnthropic:
        # Retry policy belongs to the caller, so the SDK must not retry.
        kwargs: dict[str, Any] = {}
        if self._transport is not None:
            kwargs["http_client"] = httpx.AsyncClient(transport=self._transport)
        return AsyncAnthropic(
            api_key=self._api_key,
            base_url=self._base_url,
            timeout=self._timeout,
            max_retries=0,
            **kwargs,
        )

    @staticmethod
    def convert_messages(messages: tuple[Message, ...]) -> tuple[str | None, list[dict]]:
        """
        Split out the system prompt and fold the rest into alternating turns.

        Observations are sent as user turns. Blank turns are dropped and
        adjacent turns with the same role are merged, because the API
        rejects both.
        """
        system_parts: list[str] = []
        converted: list[dict] = []
        for message in messages:
            if not message.content.strip():
                continue
            if message.role is Role.SYSTEM:
                system_parts.append(message.content)
                continue
            if message.role is Role.OBSERVATION:
                role, content = "user", f"Observation: {message.content}"
            else:
                role, content = message.role.value, message.content
            if converted and converted[-1]["role"] == role:
                converted[-1]["content"] += "\n\n" + content
            else:
                converted.append({"role": role, "content": content})
        system = "\n\n".join(system_parts) if system_parts else None
        return system, converted

    def _kwargs(self, request: ModelRequest) -> dict:
        system, messages = self.convert_messages(request.messages)
        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        if system:
            kwargs["system"] = system
        return kwargs

    async def generate(self, request: ModelRequest) -> ModelResponse:
        logger.debug("anthropic generate model=%s messages=%d", request.model, len(request.messages))
        try:
            async with self._client() as client:
                message = await client.messages.create(**self._kwargs(request))
            text = "".join(block.text for block in message.content if block.type == "text")
            usage = TokenUsage(
                input_tokens=message.usage.input_tokens,
                output_tokens=message.usage.output_tokens,
            )
            finish_reason = classify_finish_reason(message.stop_reason)
        except anthropic.APIError as exc:
            raise _anthropic_error(exc) from exc
        except httpx.TransportError as exc:
            raise GatewayError(GatewayErrorKind.NETWORK_ERROR, str(exc) or repr(exc)) from exc
        except _DECODE_ERRORS as exc:
            raise _protocol_error(exc) from exc

        return ModelResponse(text=text, finish_reason=finish_reason, usage=usage)

    async def _stream_events(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        logger.debug("anthropic stream model=%s messages=%d", request.model, len(request.messages))
        try:
            async with self._client() as client:
                stream = await client.messages.create(**self._kwargs(request), stream=True)
                try:
                    input_tokens = 0
                    async for event in stream:
                        if event.type == "content_block_delta":
                            if event.delta.type == "text_delta":
                                yield TextDelta(text=event.delta.text)
                        elif event.type == "message_start":
                            input_tokens = event.message.usage.input_tokens
                        elif event.type == "message_delta" and event.usage is not None:
                            reported = getattr(event.usage, "input_tokens", None)
                            yield StreamCompleted(
                                usage=TokenUsage(
                                    input_tokens=input_tokens if reported is None else reported,
                                    output_tokens=event.usage.output_tokens,
                                ),
                                finish_reason=classify_finish_reason(event.delta.stop_reason),
                            )
                        else:
                            logger.debug("Skipping stream event '%s'", event.type)
                finally:
                    await stream.close()
        except anthropic.APIError as exc:
            raise _anthropic_error(exc) from exc
        except httpx.TransportError as exc:
            raise GatewayError(GatewayErrorKind.NETWORK_ERROR, str(exc) or repr(exc)) from exc
        except _DECODE_ERRORS as exc:
            raise _protocol_error(exc) from exc


# ---------------------------------------------------------------------------
# OpenAI-compatible (OpenRouter by default)
# ---------------------------------------------------------------------------


def _openai_error(exc: openai.APIError) -> GatewayError:
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        kind = GatewayErrorKind.UNAUTHORIZED
    elif isinstance(exc, openai.RateLimitError):
        kind = GatewayErrorKind.RATE_LIMITED
    elif isinstance(exc, (openai.BadRequestError, openai.NotFoundError, openai.UnprocessableEntityError)):
        kind = GatewayErrorKind.INVALID_REQUEST
    elif isinstance(exc, openai.APIConnectionError):
        kind = GatewayErrorKind.NETWORK_ERROR
    elif isinstance(exc, openai.APIResponseValidationError):
        kind = GatewayErrorKind.PROTOCOL_VIOLATION
    else:
        kind = GatewayErrorKind.BACKEND_ERROR
    return GatewayError(kind, exc.message, getattr(exc, "status_code", None))


class OpenAIGateway(ModelGateway):
    """Chat Completions through the openai SDK, against any compatible base URL."""

    provider = "openai"

    def __init__(
        self,
        api_key: str,
        base_url: str | None = OPENROUTER_API_BASE,
        timeout: float = 120.0,
        prices: PriceTable | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        super().__init__(prices)
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout
        self._client = client

    def _new_client(self) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=self._api_key, base_url=self._base_url, timeout=self._timeout, max_retries=0
        )

    @staticmethod
    def convert_messages(messages: tuple[Message, ...]) -> list[dict]:
        converted = []
        for message in messages:
            if message.role is Role.OBSERVATION:
                converted.append({"role": "user", "content": f"Observation: {message.content}"})
            else:
                converted.append({"role": message.role.value, "content": message.content})
        return converted

    def _kwargs(self, request: ModelRequest) -> dict:
        return {
            "model": request.model,
            "messages": self.convert_messages(request.messages),
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }

    async def generate(self, request: ModelRequest) -> ModelResponse:
        logger.debug("openai generate model=%s messages=%d", request.model, len(request.messages))
        client = self._client or self._new_client()
        try:
            response = await client.chat.completions.create(**self._kwargs(request))
        except openai.APIError as exc:
            raise _openai_error(exc) from exc
        finally:
            if self._client is None:
                await client.close()

        try:
            if not response.choices or response.usage is None:
                raise GatewayError(
                    GatewayErrorKind.PROTOCOL_VIOLATION, "response missing choices or usage"
                )
            choice = response.choices[0]
            return ModelResponse(
                text=(choice.message.content or "").strip(),
                finish_reason=classify_finish_reason(choice.finish_reason),
                usage=TokenUsage(
                    input_tokens=response.usage.prompt_tokens,
                    output_tokens=response.usage.completion_tokens,
                ),
            )
        except _DECODE_ERRORS as exc:
            raise _protocol_error(exc) from exc

    async def _stream_events(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        logger.debug("openai stream model=%s messages=%d", request.model, len(request.messages))
        client = self._client or self._new_client()
        stream = None
        try:
            stream = await client.chat.completions.create(
                **self._kwargs(request),
                stream=True,
                stream_options={"include_usage": True},
            )
            finish_reason: str | None = None
            usage: TokenUsage | None = None
            async for chunk in stream:
                for choice in chunk.choices or []:
                    if choice.delta is not None and choice.delta.content:
                        yield TextDelta(text=choice.delta.content)
                    if choice.finish_reason:
                        finish_reason = choice.finish_reason
                if chunk.usage is not None:
                    usage = TokenUsage(
                        input_tokens=chunk.usage.prompt_tokens,
                        output_tokens=chunk.usage.completion_tokens,
                    )
            if usage is not None:
                yield StreamCompleted(usage=usage, finish_reason=classify_finish_reason(finish_reason))
        except openai.APIError as exc:
            raise _openai_error(exc) from exc
        except httpx.TransportError as exc:
            raise GatewayError(GatewayErrorKind.NETWORK_ERROR, str(exc) or repr(exc)) from exc
        except _DECODE_ERRORS as exc:
            raise _protocol_error(exc) from exc
        finally:
            if stream is not None:
                await stream.close()
            if self._client is None:
                await client.close()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_gateway(llm: LLMConfig, prices: PriceTable | None = None) -> ModelGateway:
    """
    Construct the gateway named by `llm.provider`, reading its API key from
    the environment. Raises ConfigError when the provider is unknown or the
    credential is missing.
    """
    load_dotenv()
    provider = llm.provider.lower()

    if provider == "anthropic":
        env_var = llm.api_key_env or "ANTHROPIC_API_KEY"
    elif provider == "openrouter":
        env_var = llm.api_key_env or "OPENROUTER_API_KEY"
    elif provider == "openai":
        env_var = llm.api_key_env or "OPENAI_API_KEY"
    else:
        raise ConfigError(f"Unsupported LLM provider '{llm.provider}'")

    api_key = os.getenv(env_var)
    if not api_key:
        raise ConfigError(f"Missing credential: environment variable {env_var} is not set")

    if provider == "anthropic":
        return AnthropicGateway(
            api_key,
            base_url=llm.base_url or ANTHROPIC_API_BASE,
            timeout=llm.request_timeout,
            prices=prices,
        )
    base_url = llm.base_url or (OPENROUTER_API_BASE if provider == "openrouter" else None)
    return OpenAIGateway(api_key, base_url=base_url, timeout=llm.request_timeout, prices=prices)
