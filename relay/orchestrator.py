import base64
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from .anthropic import AnthropicClient
from .code_agent import CodeAgent
from .config import AppSettings
from .elevenlabs import ElevenLabsClient
from .errors import (
    MissingImageData,
    MissingUserMessage,
    OrchestrationError,
    ProviderUnavailable,
    UnknownModel,
)
from .gemini import GeminiClient
from .llm import GenerationOptions, OpenAICompatibleClient, TextProvider
from .perplexity import PerplexityClient, format_with_citations
from .research import DeepResearch
from .schemas import (
    AudioEvent,
    ChatMessage,
    ChunkEvent,
    DoneEvent,
    ErrorEvent,
    OrchestrationRequest,
    StatusEvent,
    VoiceSettings,
)
from .transport import EventStream, pace


logger = logging.getLogger("uvicorn.error")

GENERIC_ERROR_MESSAGE = "Internal error while processing the request"


class ModelFamily(str, Enum):
    GROK = "grok"
    GEMINI = "gemini"
    CLAUDE = "claude"
    OPENAI = "openai"


def resolve_model_family(model: str, routes: Dict[str, str]) -> ModelFamily:
    """First route whose key is a substring of ``model`` wins."""
    lowered = (model or "").lower()
    if lowered:
        for needle, family in routes.items():
            if needle.lower() not in lowered:
                continue
            try:
                return ModelFamily(family)
            except ValueError:
                logger.warning("Ignoring model route %r -> %r: unknown family", needle, family)
    raise UnknownModel(model)


def chunk_text(text: str, size: int) -> List[str]:
    size = max(1, size)
    return [text[i : i + size] for i in range(0, len(text), size)]


@dataclass
class ProviderRegistry:
    text: Dict[ModelFamily, TextProvider]
    search: PerplexityClient
    speech: ElevenLabsClient
    vision: GeminiClient

    async def close(self) -> None:
        seen = set()
        for client in [*self.text.values(), self.search, self.speech, self.vision]:
            if id(client) in seen:
                continue
            seen.add(id(client))
            await client.close()


def build_providers(settings: AppSettings) -> ProviderRegistry:
    timeout = settings.request_timeout_s
    gemini = GeminiClient(settings.gemini_api_key, settings.gemini_base_url, timeout=timeout)
    return ProviderRegistry(
        text={
            ModelFamily.OPENAI: OpenAICompatibleClient(
                "OpenAI", settings.openai_api_key, settings.openai_base_url, timeout=timeout
            ),
            ModelFamily.GROK: OpenAICompatibleClient(
                "Grok", settings.grok_api_key, settings.grok_base_url, timeout=timeout
            ),
            ModelFamily.CLAUDE: AnthropicClient(
                settings.anthropic_api_key, settings.anthropic_base_url, timeout=timeout
            ),
            ModelFamily.GEMINI: gemini,
        },
        search=PerplexityClient(settings.perplexity_api_key, settings.perplexity_base_url),
        speech=ElevenLabsClient(
            settings.elevenlabs_api_key,
            settings.elevenlabs_base_url,
            voice_id=settings.speech_voice_id,
            model_id=settings.speech_model,
            timeout=timeout,
        ),
        vision=gemini,
    )


class Orchestrator:
    """Routes one request per call to the right back-end.

    ``process_request`` returns the full text or raises; ``run`` wraps it and is
    the only place a terminal event is written.
    """

    def __init__(self, settings: AppSettings, providers: ProviderRegistry):
        self.settings = settings
        self.providers = providers

    def upstream_model(self, model: str) -> str:
        return self.settings.model_aliases.get(model, model)

    def text_provider(self, family: ModelFamily) -> TextProvider:
        provider = self.providers.text.get(family)
        if provider is None:
            raise ProviderUnavailable(family.value, "no client registered")
        return provider

    def _options(self, request: OrchestrationRequest, model: str, default_temperature: float) -> GenerationOptions:
        temperature = request.temperature if request.temperature is not None else default_temperature
        max_tokens = request.max_tokens if request.max_tokens is not None else self.settings.default_max_tokens
        return GenerationOptions(model=self.upstream_model(model), temperature=temperature, max_tokens=max_tokens)

    async def run(self, request: OrchestrationRequest, transport: EventStream) -> Optional[str]:
        try:
            full_text = await self.process_request(request, transport)
        except OrchestrationError as exc:
            logger.warning("Request failed (mode=%s model=%s): %s", request.mode, request.model, exc.message)
            await transport.send(ErrorEvent(message=exc.message))
            return None
        except Exception:
            logger.exception("Unexpected failure (mode=%s model=%s)", request.mode, request.model)
            await transport.send(ErrorEvent(message=GENERIC_ERROR_MESSAGE))
            return None
        if not await transport.send(DoneEvent()):
            logger.info(
                "Run for conversation %s ended before done was delivered: consumer closed", request.conversation_id
            )
            return None
        return full_text

    async def process_request(self, request: OrchestrationRequest, transport: EventStream) -> str:
        logger.info("Dispatching request mode=%s model=%s", request.mode, request.model or "-")
        if request.mode == "search":
            return await self.handle_search(request, transport)
        if request.mode == "research":
            return await self.handle_research(request, transport)
        if request.mode == "code":
            return await self.handle_code(request, transport)
        if request.mode == "voice":
            return await self.handle_voice(request, transport)
        if request.mode == "vision":
            return await self.handle_vision(request, transport)
        family = resolve_model_family(request.model, self.settings.model_routes)
        return await self.handle_chat(family, request, transport)

    async def handle_chat(self, family: ModelFamily, request: OrchestrationRequest, transport: EventStream) -> str:
        provider = self.text_provider(family)
        provider.require_key()

        async def forward(text: str) -> None:
            await transport.send(ChunkEvent(content=text))

        return await provider.generate(
            request.messages,
            self._options(request, request.model, self.settings.default_temperature),
            on_chunk=forward,
            should_stop=lambda: transport.closed,
        )

    async def handle_search(self, request: OrchestrationRequest, transport: EventStream) -> str:
        await transport.send(StatusEvent(message="🔍 Searching the web..."))
        result = await self.providers.search.search(
            request.messages,
            model=self.settings.search_model,
            search_recency_filter=self.settings.search_recency_filter,
        )
        formatted = format_with_citations(result)
        pacing = self.settings.pacing
        for piece in chunk_text(formatted, pacing.search_chunk_size):
            if transport.closed:
                break
            await transport.send(ChunkEvent(content=piece))
            await pace(pacing.search_chunk_delay_ms)
        return formatted

    async def handle_research(self, request: OrchestrationRequest, transport: EventStream) -> str:
        question = request.last_user_message()
        if question is None:
            raise MissingUserMessage("research")
        model = request.model or self.settings.research_model
        provider = self.text_provider(resolve_model_family(model, self.settings.model_routes))
        options = self._options(request, model, self.settings.default_temperature)
        research = DeepResearch(
            provider,
            max_steps=self.settings.research_max_steps,
            step_delay_ms=self.settings.pacing.research_step_delay_ms,
            answer_delay_ms=self.settings.pacing.research_answer_delay_ms,
        )
        result = await research.perform_research(
            question.content, transport, model=options.model, temperature=options.temperature
        )
        return result.content

    async def handle_code(self, request: OrchestrationRequest, transport: EventStream) -> str:
        code_request = request.last_user_message()
        if code_request is None:
            raise MissingUserMessage("code")
        model = request.model or self.settings.code_model
        provider = self.text_provider(resolve_model_family(model, self.settings.model_routes))
        options = self._options(request, model, self.settings.code_temperature)
        agent = CodeAgent(provider, file_delay_ms=self.settings.pacing.file_emit_delay_ms)
        result = await agent.process_code_request(
            code_request.content,
            request.files,
            transport,
            model=options.model,
            temperature=options.temperature,
            operation=request.operation,
        )
        return result.content

    def voice_family(self, model: str) -> ModelFamily:
        # Voice answers always come from some text model; unmatched ids fall back to OpenAI.
        try:
            family = resolve_model_family(model, self.settings.model_routes)
        except UnknownModel:
            return ModelFamily.OPENAI
        if family in (ModelFamily.CLAUDE, ModelFamily.GEMINI):
            return family
        return ModelFamily.OPENAI

    async def handle_voice(self, request: OrchestrationRequest, transport: EventStream) -> str:
        speech = self.providers.speech
        if not speech.available():
            raise ProviderUnavailable(speech.name)
        await transport.send(StatusEvent(message="🎤 Processing voice..."))
        model = request.model or self.settings.voice_model
        provider = self.text_provider(self.voice_family(model))
        text = await provider.generate(
            request.messages,
            self._options(request, model, self.settings.default_temperature),
            should_stop=lambda: transport.closed,
        )
        if transport.closed:
            return text
        await transport.send(StatusEvent(message="🔊 Generating speech..."))
        audio = await speech.text_to_speech(text, request.voice_settings)
        await transport.send(AudioEvent(data=base64.b64encode(audio).decode("ascii"), text=text))
        return text

    async def handle_vision(self, request: OrchestrationRequest, transport: EventStream) -> str:
        vision = self.providers.vision
        last: Optional[ChatMessage] = request.messages[-1] if request.messages else None
        if last is None or not last.image_data:
            raise MissingImageData()
        vision.require_key()
        await transport.send(StatusEvent(message="🖼️ Analyzing image..."))

        async def forward(text: str) -> None:
            await transport.send(ChunkEvent(content=text))

        temperature = request.temperature if request.temperature is not None else self.settings.default_temperature
        options = GenerationOptions(
            model=self.settings.vision_model,
            temperature=temperature,
            max_tokens=request.max_tokens if request.max_tokens is not None else self.settings.vision_max_tokens,
        )
        return await vision.process_image(
            last.image_data, last.content, options, on_chunk=forward, should_stop=lambda: transport.closed
        )

    def providers_status(self) -> Dict[str, bool]:
        status = {family.value: provider.available() for family, provider in self.providers.text.items()}
        status["perplexity"] = self.providers.search.available()
        status["elevenlabs"] = self.providers.speech.available()
        return status

    async def synthesize_speech(self, text: str, voice_settings: Optional[VoiceSettings] = None) -> bytes:
        speech = self.providers.speech
        if not speech.available():
            raise ProviderUnavailable(speech.name)
        return await speech.text_to_speech(text, voice_settings)

    async def list_voices(self) -> List[Dict[str, Any]]:
        speech = self.providers.speech
        if not speech.available():
            raise ProviderUnavailable(speech.name)
        return await speech.list_voices()

    async def close(self) -> None:
        await self.providers.close()
