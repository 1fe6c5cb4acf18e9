from typing import Any, AsyncGenerator, Dict, List, Optional

from .errors import ProviderUnavailable
from .llm import GenerationOptions, TextProvider
from .schemas import ChatMessage


ANTHROPIC_VERSION = "2023-06-01"


class AnthropicClient(TextProvider):
    name = "Anthropic"

    def __init__(self, api_key: Optional[str], base_url: str = "https://api.anthropic.com/v1", timeout: float = 120.0):
        super().__init__(api_key, base_url, timeout=timeout)

    def build_payload(self, messages: List[ChatMessage], options: GenerationOptions) -> Dict[str, Any]:
        # The messages API takes system prompts out of band.
        system_parts = [m.content for m in messages if m.role == "system" and m.content]
        payload: Dict[str, Any] = {
            "model": options.model,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "messages": [
                {"role": m.role, "content": m.content}
                for m in messages
                if m.role != "system" and m.content
            ],
            "stream": True,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        return payload

    async def stream_chat(
        self, messages: List[ChatMessage], options: GenerationOptions
    ) -> AsyncGenerator[str, None]:
        api_key = self.require_key()
        headers = {
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }
        url = f"{self.base_url}/messages"
        async for frame in self._post_stream(url, self.build_payload(messages, options), headers):
            event_type = frame.get("type")
            if event_type == "content_block_delta":
                delta = frame.get("delta") or {}
                if delta.get("type") == "text_delta" and delta.get("text"):
                    yield delta["text"]
            elif event_type == "error":
                error = frame.get("error") or {}
                raise ProviderUnavailable(self.name, str(error.get("message") or error or "stream error"))
            elif event_type == "message_stop":
                return
