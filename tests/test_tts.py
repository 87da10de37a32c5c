"""Tests for remote synthesis clients."""
import io
import json

import httpx
import numpy as np
import pytest
import soundfile as sf

from components import AudioClip, FallbackSignal, SynthesisRequest
from errors import SynthesisFailed
from tts import CartesiaTTS, HttpTTS, decode_audio


def wav_bytes(samples, sample_rate=22050):
    out = io.BytesIO()
    sf.write(out, samples, sample_rate, format="WAV", subtype="PCM_16")
    return out.getvalue()


def http_tts(handler):
    return HttpTTS("https://tts.test/api/tts", transport=httpx.MockTransport(handler))


class TestHttpTTS:
    @pytest.mark.asyncio
    async def test_audio_body_decoded(self):
        body = wav_bytes(np.zeros(2205, dtype=np.float32))

        def handler(request):
            return httpx.Response(200, content=body, headers={"content-type": "audio/wav"})

        result = await http_tts(handler).synthesize(SynthesisRequest("Hello"))

        assert isinstance(result, AudioClip)
        assert result.sample_rate == 22050
        assert result.duration == pytest.approx(0.1)

    @pytest.mark.asyncio
    async def test_payload_fields(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"useBrowserTTS": True, "text": "Hi"})

        await http_tts(handler).synthesize(SynthesisRequest("Hi", voice_id="voice-9", persona_id=3))

        assert seen == [{"text": "Hi", "voiceId": "voice-9", "doctorId": 3}]

    @pytest.mark.asyncio
    async def test_fallback_signal(self):
        def handler(request):
            return httpx.Response(200, json={"useBrowserTTS": True, "text": "Hello", "error": "quota"})

        result = await http_tts(handler).synthesize(SynthesisRequest("Hello"))

        assert result == FallbackSignal("Hello", "quota")

    @pytest.mark.asyncio
    async def test_json_without_fallback_flag_is_invalid(self):
        def handler(request):
            return httpx.Response(200, json={"status": "ok"})

        with pytest.raises(SynthesisFailed, match="Invalid TTS response"):
            await http_tts(handler).synthesize(SynthesisRequest("Hello"))

    @pytest.mark.asyncio
    async def test_server_error(self):
        def handler(request):
            return httpx.Response(503, text="unavailable")

        with pytest.raises(SynthesisFailed):
            await http_tts(handler).synthesize(SynthesisRequest("Hello"))


def test_decode_audio_downmixes_stereo():
    stereo = np.stack([np.full(100, 0.5), np.full(100, -0.5)], axis=1).astype(np.float32)
    clip = decode_audio(wav_bytes(stereo, 16000))
    assert clip.samples.ndim == 1
    assert len(clip.samples) == 100
    np.testing.assert_allclose(clip.samples, 0.0, atol=1e-4)


def test_decode_audio_rejects_garbage():
    with pytest.raises(SynthesisFailed):
        decode_audio(b"definitely not audio")


class TestCartesiaTTS:
    @pytest.mark.asyncio
    async def test_missing_key_requests_local_fallback(self, monkeypatch):
        monkeypatch.delenv("CARTESIA_API_KEY", raising=False)
        result = await CartesiaTTS(api_key=None).synthesize(SynthesisRequest("Hello there"))

        assert isinstance(result, FallbackSignal)
        assert result.text == "Hello there"

    def test_voice_resolution_order(self, monkeypatch):
        monkeypatch.delenv("CARTESIA_API_KEY", raising=False)
        tts = CartesiaTTS(api_key=None, voice_id="default-voice", persona_voices={4: "persona-voice"})

        assert tts.resolve_voice(SynthesisRequest("x", voice_id="explicit", persona_id=4)) == "persona-voice"
        assert tts.resolve_voice(SynthesisRequest("x", voice_id="explicit", persona_id=5)) == "explicit"
        assert tts.resolve_voice(SynthesisRequest("x")) == "default-voice"


@pytest.mark.asyncio
async def test_cartesia_aclose_closes_sdk_client(monkeypatch):
    class FakeSDKClient:
        closed = False

        async def close(self):
            self.closed = True

    monkeypatch.delenv("CARTESIA_API_KEY", raising=False)
    tts = CartesiaTTS(api_key=None)
    await tts.aclose()

    tts.client = FakeSDKClient()
    await tts.aclose()
    assert tts.client.closed is True
