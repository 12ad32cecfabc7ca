# nexus_records/llm_api/engine_handler.py

import asyncio
import os
import traceback
from typing import AsyncIterator, List, Optional, Protocol, Sequence, Tuple, Union

import logfire
from aiolimiter import AsyncLimiter

# Pydantic AI imports
from pydantic_ai import Agent, BinaryContent
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior, UserError
from pydantic_ai.messages import (
    ModelMessage,
    ModelRequest,
    ModelResponse,
    TextPart as AgentTextPart,
    UserPromptPart,
)
from pydantic_ai.models import Model, infer_model
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider
from pydantic_ai.settings import ModelSettings

try:
    # Anthropic is optional, so only import if available
    from pydantic_ai.models.anthropic import AnthropicModel
    from pydantic_ai.providers.anthropic import AnthropicProvider
except ImportError:
    AnthropicModel = None
    AnthropicProvider = None

from nexus_records.config import EngineConfig
from nexus_records.errors import TransportError
from nexus_records.llm_api.ark_client import ARK_BASE_URL, ArkEngine
from nexus_records.schemas.engine_schema import EngineMessage, EngineResponse, ImagePart

logfire.configure(send_to_logfire="if-token-present")


class ReasoningEngine(Protocol):
    """What the pipeline needs from any reasoning backend."""

    async def process(self, messages: Sequence[EngineMessage]) -> EngineResponse:
        ...

    def stream(self, messages: Sequence[EngineMessage]) -> AsyncIterator[str]:
        ...


def _user_content(message: EngineMessage) -> List[Union[str, BinaryContent]]:
    content = []
    for part in message.parts:
        if isinstance(part, ImagePart):
            content.append(BinaryContent(data=part.data, media_type=part.media_type))
        else:
            content.append(part.text)
    return content


def to_agent_inputs(
    messages: Sequence[EngineMessage],
) -> Tuple[str, List[Union[str, BinaryContent]], List[ModelMessage]]:
    """
    Split role-tagged messages into (instructions, current user prompt,
    prior history) the way pydantic-ai's Agent.run expects them.
    """
    instructions = "\n\n".join(m.plain_text for m in messages if m.role == "system")
    turns = [m for m in messages if m.role != "system"]
    if not turns or turns[-1].role != "user":
        raise UserError("The last non-system message must come from the user.")

    history: List[ModelMessage] = []
    for message in turns[:-1]:
        if message.role == "user":
            history.append(ModelRequest(parts=[UserPromptPart(content=_user_content(message))]))
        else:
            history.append(ModelResponse(parts=[AgentTextPart(content=message.plain_text)]))
    return instructions, _user_content(turns[-1]), history


class UnifiedEngineHandler:
    """
    Reasoning engine backed by pydantic-ai, so any provider it supports can
    drive extraction, insights and chat. Buffered calls return an
    EngineResponse envelope; streaming calls yield text deltas.
    """

    # Known short-hands => provider. This is used if we have "gpt-4o" etc.
    MODEL_PREFIXES = {
        "gpt-4o": "openai",
        "gpt-4o-mini": "openai",
        "gpt-4.1": "openai",
        "gpt-4.1-mini": "openai",
        "doubao-pro-32k": "ark",
        "doubao-vision-pro-32k": "ark",
        "doubao-seed-1-6-250615": "ark",
        "deepseek-chat": "deepseek",
        "deepseek-reasoner": "deepseek",
    }

    def __init__(
        self,
        model: Union[str, Model],
        *,
        requests_per_minute: Optional[int] = None,
        request_timeout: float = 120.0,
        stream_idle_timeout: float = 60.0,
        temperature: float = 0.1,
        retries: int = 1,
        openai_api_key: Optional[str] = None,
        ark_api_key: Optional[str] = None,
        deepseek_api_key: Optional[str] = None,
        anthropic_api_key: Optional[str] = None,
        base_url: Optional[str] = None,
    ):
        """
        :param model: pydantic-ai Model instance or a "provider:model" string.
        :param requests_per_minute: If specified, an AsyncLimiter is used to throttle requests.
        :param request_timeout: Seconds allowed for one buffered call.
        :param stream_idle_timeout: Seconds allowed between two stream deltas.
        :param base_url: Overrides the endpoint of OpenAI-compatible providers.
        """
        # If the user doesn't provide the key, fallback to env variable
        self.openai_api_key = openai_api_key or os.getenv("OPENAI_API_KEY")
        self.ark_api_key = ark_api_key or os.getenv("ARK_API_KEY")
        self.deepseek_api_key = deepseek_api_key or os.getenv("DEEPSEEK_API_KEY")
        self.anthropic_api_key = anthropic_api_key or os.getenv("ANTHROPIC_API_KEY")
        self.base_url = base_url

        self.model = model
        self.request_timeout = request_timeout
        self.stream_idle_timeout = stream_idle_timeout
        self.retries = retries
        self.model_settings = ModelSettings(temperature=temperature)
        self.rate_limiter = (
            AsyncLimiter(requests_per_minute, 60) if requests_per_minute else None
        )
        self._model_instance: Optional[Model] = model if isinstance(model, Model) else None

    @classmethod
    def _map_short_model_name(cls, model_name: str) -> str:
        """
        If the model has no "provider:" prefix and is a known short-hand,
        add the prefix: "gpt-4o-mini" => "openai:gpt-4o-mini".
        """
        if ":" in model_name:
            return model_name
        prefix = cls.MODEL_PREFIXES.get(model_name)
        return model_name if prefix is None else f"{prefix}:{model_name}"

    def _build_model_instance(self, full_model_str: str) -> Model:
        """Pick a pydantic-ai Model for a "provider:model" string."""
        provider, _, real_model = full_model_str.partition(":")

        if provider == "ark":
            if not self.ark_api_key:
                raise UserError("No Ark API key found. Set ARK_API_KEY or pass ark_api_key=")
            return OpenAIChatModel(
                real_model,
                provider=OpenAIProvider(base_url=self.base_url or ARK_BASE_URL, api_key=self.ark_api_key),
            )

        if provider == "deepseek":
            if not self.deepseek_api_key:
                raise UserError("No DeepSeek API key found. Set DEEPSEEK_API_KEY or pass deepseek_api_key=")
            return OpenAIChatModel(
                real_model,
                provider=OpenAIProvider(base_url="https://api.deepseek.com", api_key=self.deepseek_api_key),
            )

        if provider == "anthropic":
            if AnthropicModel is None:
                raise UserError(
                    "AnthropicModel not available. Please install pydantic-ai-slim with the `[anthropic]` extra."
                )
            if not self.anthropic_api_key:
                raise UserError("No Anthropic API key found. Set ANTHROPIC_API_KEY or pass anthropic_api_key=")
            return AnthropicModel(real_model, provider=AnthropicProvider(api_key=self.anthropic_api_key))

        if provider == "openai" and (self.openai_api_key or self.base_url):
            return OpenAIChatModel(
                real_model,
                provider=OpenAIProvider(base_url=self.base_url, api_key=self.openai_api_key),
            )

        # Otherwise let pydantic-ai resolve it from its own environment handling
        return infer_model(full_model_str)

    def _resolve_model(self) -> Model:
        if self._model_instance is None:
            if not isinstance(self.model, str):
                raise UserError(f"Invalid model parameter: {self.model!r}")
            self._model_instance = self._build_model_instance(self._map_short_model_name(self.model))
        return self._model_instance

    def _agent(self, instructions: str) -> Agent:
        return Agent(
            self._resolve_model(),
            output_type=str,
            instructions=instructions or None,
            model_settings=self.model_settings,
            retries=self.retries,
        )

    async def process(self, messages: Sequence[EngineMessage]) -> EngineResponse:
        """
        Buffered call. Engine failures come back as an unsuccessful
        envelope, never as an exception.
        """
        with logfire.span("llm_processing"):
            try:
                instructions, prompt, history = to_agent_inputs(messages)
                agent = self._agent(instructions)
                if self.rate_limiter:
                    async with self.rate_limiter:
                        result = await asyncio.wait_for(
                            agent.run(prompt, message_history=history), self.request_timeout
                        )
                else:
                    result = await asyncio.wait_for(
                        agent.run(prompt, message_history=history), self.request_timeout
                    )
                return EngineResponse(success=True, text=result.output)

            except UserError as e:
                with logfire.span("error_handling", error=str(e), error_type="user_error"):
                    return EngineResponse(success=False, error=f"UserError: {e}", error_type="usage")
            except ModelHTTPError as e:
                with logfire.span("error_handling", error=str(e), error_type="http_error"):
                    return EngineResponse(
                        success=False, error=str(e), error_type="transport", status_code=e.status_code
                    )
            except UnexpectedModelBehavior as e:
                with logfire.span("error_handling", error=str(e), error_type="malformed"):
                    return EngineResponse(success=False, error=str(e), error_type="malformed")
            except asyncio.TimeoutError:
                error = f"Engine call timed out after {self.request_timeout:g}s."
                with logfire.span("error_handling", error=error, error_type="timeout"):
                    return EngineResponse(success=False, error=error, error_type="transport")
            except Exception as e:
                with logfire.span(
                    "error_handling", error=str(e), error_type="unexpected_error",
                    traceback=traceback.format_exc(),
                ):
                    return EngineResponse(
                        success=False, error=f"Unexpected error: {e}", error_type="transport"
                    )

    async def stream(self, messages: Sequence[EngineMessage]) -> AsyncIterator[str]:
        """
        Streaming call yielding text deltas in arrival order. Any engine
        failure is raised as TransportError.
        """
        try:
            instructions, prompt, history = to_agent_inputs(messages)
            agent = self._agent(instructions)
        except UserError as e:
            raise TransportError(f"UserError: {e}") from e

        if self.rate_limiter:
            await self.rate_limiter.acquire()
        with logfire.span("llm_streaming"):
            try:
                async with agent.run_stream(prompt, message_history=history) as result:
                    deltas = result.stream_text(delta=True, debounce_by=None).__aiter__()
                    while True:
                        try:
                            delta = await asyncio.wait_for(
                                deltas.__anext__(), timeout=self.stream_idle_timeout
                            )
                        except StopAsyncIteration:
                            break
                        yield delta
            except ModelHTTPError as e:
                raise TransportError(str(e), status_code=e.status_code) from e
            except asyncio.TimeoutError as e:
                raise TransportError(
                    f"No stream data for {self.stream_idle_timeout:g}s."
                ) from e
            except (UserError, UnexpectedModelBehavior) as e:
                raise TransportError(str(e)) from e
            except Exception as e:
                raise TransportError(f"Unexpected error: {e}") from e


def build_engine(config: EngineConfig, model: Optional[str] = None) -> ReasoningEngine:
    """
    Construct the engine named by `config.provider` for `model`
    (defaults to the extraction model).
    """
    model = model or config.extraction_model
    if config.provider == "ark":
        return ArkEngine(
            model.partition(":")[2] if model.startswith("ark:") else model,
            api_key=config.api_key,
            base_url=config.base_url,
            request_timeout=config.request_timeout,
            stream_idle_timeout=config.stream_idle_timeout,
            requests_per_minute=config.requests_per_minute,
            temperature=config.temperature,
        )
    prefix = UnifiedEngineHandler._map_short_model_name(model).partition(":")[0]
    keys = {
        "openai": "openai_api_key",
        "ark": "ark_api_key",
        "deepseek": "deepseek_api_key",
        "anthropic": "anthropic_api_key",
    }
    extra = {keys[prefix]: config.api_key} if prefix in keys and config.api_key else {}
    return UnifiedEngineHandler(
        model,
        requests_per_minute=config.requests_per_minute,
        request_timeout=config.request_timeout,
        stream_idle_timeout=config.stream_idle_timeout,
        temperature=config.temperature,
        base_url=config.base_url,
        **extra,
    )
