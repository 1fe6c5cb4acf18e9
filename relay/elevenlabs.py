import logging
from typing import Any, Dict, List, Optional

import httpx

from .errors import ProviderUnavailable
from .schemas import VoiceSettings
from .streaming import extract_error_detail


logger = logging.getLogger("uvicorn.error")

DEFAULT_VOICE_ID = "21m00Tcm4TlvDq8ikWAM"
DEFAULT_MODEL_ID = "eleven_turbo_v2_5"
DEFAULT_OUTPUT_FORMAT = "mp3_44100_128"


def audio_mime_type(output_format: str) -> str:
    return "audio/mpeg" if output_format.startswith("mp3") else "audio/wav"


class ElevenLabsClient:
    name = "ElevenLabs"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.elevenlabs.io/v1",
        voice_id: str = DEFAULT_VOICE_ID,
        model_id: str = DEFAULT_MODEL_ID,
        timeout: float = 120.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.voice_id = voice_id
        self.model_id = model_id
        self.client = httpx.AsyncClient(timeout=timeout)

    def available(self) -> bool:
        return bool(self.api_key)

    def _headers(self, accept: Optional[str] = None) -> Dict[str, str]:
        if not self.api_key:
            raise ProviderUnavailable(self.name)
        headers = {"xi-api-key": self.api_key}
        if accept:
            headers["Accept"] = accept
            headers["Content-Type"] = "application/json"
        return headers

    async def text_to_speech(
        self,
        text: str,
        voice_settings: Optional[VoiceSettings] = None,
        output_format: str = DEFAULT_OUTPUT_FORMAT,
    ) -> bytes:
        settings = voice_settings or VoiceSettings()
        headers = self._headers(accept=audio_mime_type(output_format))
        voice_id = settings.voice_id or self.voice_id
        payload = {
            "text": text,
            "model_id": self.model_id,
            "voice_settings": {
                "stability": settings.stability,
                "similarity_boost": settings.similarity_boost,
                "style": settings.style,
                "use_speaker_boost": settings.use_speaker_boost,
            },
        }
        url = f"{self.base_url}/text-to-speech/{voice_id}/stream"
        try:
            resp = await self.client.post(
                url, json=payload, headers=headers, params={"output_format": output_format}
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = extract_error_detail(exc.response)
            logger.warning("ElevenLabs TTS error %s: %.500s", exc.response.status_code, detail)
            raise ProviderUnavailable(self.name, detail, status_code=exc.response.status_code) from exc
        except httpx.RequestError as exc:
            raise ProviderUnavailable(self.name, str(exc) or exc.__class__.__name__) from exc
        return resp.content

    async def list_voices(self) -> List[Dict[str, Any]]:
        headers = self._headers()
        try:
            resp = await self.client.get(f"{self.base_url}/voices", headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ProviderUnavailable(
                self.name, "Failed to fetch voices", status_code=exc.response.status_code
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderUnavailable(self.name, str(exc) or exc.__class__.__name__) from exc
        return resp.json().get("voices") or []

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
