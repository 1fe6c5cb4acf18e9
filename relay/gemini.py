import base64
import re
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

import httpx

from .errors import ProviderUnavailable
from .llm import ChunkCallback, GenerationOptions, StopCheck, TextProvider
from .schemas import ChatMessage


_DATA_URL_RE = re.compile(r"^data:([^;,]+)?(?:;[^,]*)?,(.*)$", re.DOTALL)
DEFAULT_IMAGE_MIME = "image/jpeg"


def _extract_text(frame: Dict[str, Any]) -> str:
    candidates = frame.get("candidates") or []
    if not candidates:
        return ""
    content = (candidates[0] or {}).get("content") or {}
    parts = content.get("parts") or []
    return "".join(part.get("text", "") for part in parts if isinstance(part, dict))


class GeminiClient(TextProvider):
    """Gemini text chat and image understanding over streamGenerateContent."""

    name = "Gemini"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 120.0,
    ):
        super().__init__(api_key, base_url, timeout=timeout)

    def _generation_config(self, options: GenerationOptions) -> Dict[str, Any]:
        return {"temperature": options.temperature, "maxOutputTokens": options.max_tokens}

    def build_payload(self, messages: List[ChatMessage], options: GenerationOptions) -> Dict[str, Any]:
        system_parts = [m.content for m in messages if m.role == "system" and m.content]
        payload: Dict[str, Any] = {
            "contents": [
                {
                    "role": "model" if m.role == "assistant" else "user",
                    "parts": [{"text": m.content}],
                }
                for m in messages
                if m.role != "system" and m.content
            ],
            "generationConfig": self._generation_config(options),
        }
        if system_parts:
            payload["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_parts)}]}
        return payload

    async def _stream_contents(self, payload: Dict[str, Any], model: str) -> AsyncGenerator[str, None]:
        api_key = self.require_key()
        headers = {"x-goog-api-key": api_key, "Content-Type": "application/json"}
        url = f"{self.base_url}/models/{model}:streamGenerateContent?alt=sse"
        async for frame in self._post_stream(url, payload, headers):
            text = _extract_text(frame)
            if text:
                yield text

    async def stream_chat(
        self, messages: List[ChatMessage], options: GenerationOptions
    ) -> AsyncGenerator[str, None]:
        async for text in self._stream_contents(self.build_payload(messages, options), options.model):
            yield text

    async def load_image(self, image_data: str) -> Tuple[str, str]:
        """Resolve image input to ``(mime_type, base64_data)``.

        Accepts a ``data:`` URL, an http(s) URL (fetched) or bare base64.
        """
        match = _DATA_URL_RE.match(image_data)
        if match:
            return match.group(1) or DEFAULT_IMAGE_MIME, match.group(2)
        if image_data.startswith(("http://", "https://")):
            try:
                resp = await self.client.get(image_data)
                resp.raise_for_status()
            except httpx.HTTPError as exc:
                raise ProviderUnavailable(self.name, f"image fetch failed: {exc}") from exc
            mime = resp.headers.get("content-type", DEFAULT_IMAGE_MIME).split(";")[0].strip()
            return mime or DEFAULT_IMAGE_MIME, base64.b64encode(resp.content).decode("ascii")
        return DEFAULT_IMAGE_MIME, image_data

    async def stream_image(
        self, image_data: str, prompt: str, options: GenerationOptions
    ) -> AsyncGenerator[str, None]:
        mime_type, data = await self.load_image(image_data)
        payload = {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": prompt},
                        {"inline_data": {"mime_type": mime_type, "data": data}},
                    ],
                }
            ],
            "generationConfig": self._generation_config(options),
        }
        async for text in self._stream_contents(payload, options.model):
            yield text

    async def process_image(
        self,
        image_data: str,
        prompt: str,
        options: GenerationOptions,
        on_chunk: Optional[ChunkCallback] = None,
        should_stop: Optional[StopCheck] = None,
    ) -> str:
        return await self.collect(self.stream_image(image_data, prompt, options), on_chunk, should_stop)
