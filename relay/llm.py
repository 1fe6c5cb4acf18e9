import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional

import httpx

from .errors import ProviderUnavailable
from .schemas import ChatMessage
from .streaming import iter_sse_json, raise_for_upstream


logger = logging.getLogger("uvicorn.error")

ChunkCallback = Callable[[str], Awaitable[None]]
StopCheck = Callable[[], bool]


@dataclass
class GenerationOptions:
    model: str
    temperature: float = 0.7
    max_tokens: int = 4096


class TextProvider:
    """Base for streaming text-generation adapters.

    Subclasses implement ``stream_chat``; ``generate`` drives it, forwards each
    chunk to ``on_chunk`` and returns the concatenated text.
    """

    name = "text"

    def __init__(self, api_key: Optional[str], base_url: str, timeout: float = 120.0):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=timeout)

    def available(self) -> bool:
        return bool(self.api_key)

    def require_key(self) -> str:
        if not self.api_key:
            raise ProviderUnavailable(self.name)
        return self.api_key

    def stream_chat(self, messages: List[ChatMessage], options: GenerationOptions) -> AsyncGenerator[str, None]:
        raise NotImplementedError

    async def generate(
        self,
        messages: List[ChatMessage],
        options: GenerationOptions,
        on_chunk: Optional[ChunkCallback] = None,
        should_stop: Optional[StopCheck] = None,
    ) -> str:
        return await self.collect(self.stream_chat(messages, options), on_chunk, should_stop)

    async def collect(
        self,
        stream: AsyncGenerator[str, None],
        on_chunk: Optional[ChunkCallback] = None,
        should_stop: Optional[StopCheck] = None,
    ) -> str:
        parts: List[str] = []
        try:
            async for chunk in stream:
                if should_stop and should_stop():
                    logger.info("%s stream abandoned: consumer closed", self.name)
                    break
                parts.append(chunk)
                if on_chunk:
                    await on_chunk(chunk)
        finally:
            await stream.aclose()
        return "".join(parts)

    async def complete(self, prompt: str, options: GenerationOptions) -> str:
        return await self.generate([ChatMessage(role="user", content=prompt)], options)

    async def _post_stream(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
    ) -> AsyncGenerator[Dict[str, Any], None]:
        try:
            async with self.client.stream("POST", url, json=payload, headers=headers) as response:
                await raise_for_upstream(response, self.name)
                async for frame in iter_sse_json(response.aiter_text(), self.name):
                    yield frame
        except httpx.RequestError as exc:
            raise ProviderUnavailable(self.name, str(exc) or exc.__class__.__name__) from exc

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


class OpenAICompatibleClient(TextProvider):
    """Chat completions over the OpenAI wire format (OpenAI, x.ai Grok)."""

    def __init__(self, name: str, api_key: Optional[str], base_url: str, timeout: float = 120.0):
        super().__init__(api_key, base_url, timeout=timeout)
        self.name = name

    def build_payload(self, messages: List[ChatMessage], options: GenerationOptions) -> Dict[str, Any]:
        return {
            "model": options.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages if m.content],
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            "stream": True,
        }

    async def stream_chat(
        self, messages: List[ChatMessage], options: GenerationOptions
    ) -> AsyncGenerator[str, None]:
        api_key = self.require_key()
        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        url = f"{self.base_url}/chat/completions"
        async for frame in self._post_stream(url, self.build_payload(messages, options), headers):
            choices = frame.get("choices") or [{}]
            delta = (choices[0] or {}).get("delta") or {}
            content = delta.get("content")
            if content:
                yield content
