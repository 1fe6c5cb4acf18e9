import json

import pytest
import respx
from httpx import Response

from relay.elevenlabs import DEFAULT_VOICE_ID, ElevenLabsClient, audio_mime_type
from relay.errors import ProviderUnavailable
from relay.schemas import VoiceSettings


BASE = "http://elevenlabs.test/v1"


@pytest.mark.asyncio
async def test_text_to_speech_defaults():
    client = ElevenLabsClient("test-key", BASE)
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                captured["params"] = dict(request.url.params)
                return Response(200, content=b"ID3audio")

            respx_mock.post(f"{BASE}/text-to-speech/{DEFAULT_VOICE_ID}/stream").mock(side_effect=handler)
            audio = await client.text_to_speech("Hello there")
        assert audio == b"ID3audio"
        assert captured["params"] == {"output_format": "mp3_44100_128"}
        assert captured["headers"]["xi-api-key"] == "test-key"
        assert captured["headers"]["Accept"] == "audio/mpeg"
        payload = captured["json"]
        assert payload["text"] == "Hello there"
        assert payload["model_id"] == "eleven_turbo_v2_5"
        assert payload["voice_settings"] == {
            "stability": 0.5,
            "similarity_boost": 0.75,
            "style": 0.5,
            "use_speaker_boost": True,
        }
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_text_to_speech_uses_requested_voice():
    client = ElevenLabsClient("test-key", BASE)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.post(f"{BASE}/text-to-speech/custom-voice/stream").mock(
                return_value=Response(200, content=b"x")
            )
            settings = VoiceSettings.model_validate({"voiceId": "custom-voice", "stability": 0.9})
            await client.text_to_speech("hi", settings)
            sent = json.loads(route.calls.last.request.content.decode("utf-8"))
        assert sent["voice_settings"]["stability"] == 0.9
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_text_to_speech_error_and_missing_key():
    client = ElevenLabsClient("test-key", BASE)
    keyless = ElevenLabsClient(None, BASE)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(f"{BASE}/text-to-speech/{DEFAULT_VOICE_ID}/stream").mock(
                return_value=Response(429, json={"detail": "quota"})
            )
            with pytest.raises(ProviderUnavailable) as excinfo:
                await client.text_to_speech("hi")
        assert excinfo.value.status_code == 429
        with pytest.raises(ProviderUnavailable, match="ElevenLabs API key not configured"):
            await keyless.text_to_speech("hi")
    finally:
        await client.close()
        await keyless.close()


@pytest.mark.asyncio
async def test_list_voices():
    client = ElevenLabsClient("test-key", BASE)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(f"{BASE}/voices").mock(
                return_value=Response(200, json={"voices": [{"voice_id": "a", "name": "Adam"}]})
            )
            voices = await client.list_voices()
        assert voices == [{"voice_id": "a", "name": "Adam"}]
    finally:
        await client.close()


def test_audio_mime_type():
    assert audio_mime_type("mp3_44100_128") == "audio/mpeg"
    assert audio_mime_type("pcm_16000") == "audio/wav"
