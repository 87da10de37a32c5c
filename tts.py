# tts.py - Remote Text-to-Speech synthesis
"""
This module implements the remote half of speech synthesis. Each synthesizer
turns a SynthesisRequest into either decoded audio (AudioClip) or a
FallbackSignal telling the caller to speak the text with on-device synthesis.

- CartesiaTTS: Cartesia's Sonic model over the SDK websocket, raw float32 PCM
- HttpTTS: a synthesis endpoint that answers with an audio body, or with a JSON
  body {"useBrowserTTS": true, "text": ...} when it cannot synthesize
"""

import io
import logging
import os
from typing import Dict, Optional

import httpx
import numpy as np
import soundfile as sf
from cartesia import AsyncCartesia

from components import AudioClip, FallbackSignal, SynthesisRequest, SynthesisResult, TTSInterface
from errors import SynthesisFailed

logger = logging.getLogger(__name__)


class CartesiaTTS(TTSInterface):
    """
    Cartesia-powered Text-to-Speech synthesis.

    A persona's voice is resolved in order: persona id mapping, explicit voice
    id, default voice.
    """

    def __init__(self,
                 api_key: Optional[str] = None,
                 model_id: str = "sonic-2",
                 sample_rate: int = 24000,
                 voice_id: str = "a0e99841-438c-4a64-b679-ae501e7d6091",
                 persona_voices: Optional[Dict[int, str]] = None):
        """
        Args:
            model_id: Cartesia synthesis model
            sample_rate: Output audio sample rate in Hz (24kHz for high quality)
            voice_id: Default Cartesia voice ID
            persona_voices: Persona id -> Cartesia voice ID
        """
        self.api_key = api_key or os.getenv("CARTESIA_API_KEY")
        self.model_id = model_id
        self.sample_rate = sample_rate
        self.voice_id = voice_id
        self.persona_voices = dict(persona_voices or {})
        self.client = AsyncCartesia(api_key=self.api_key) if self.api_key else None

    def resolve_voice(self, request: SynthesisRequest) -> str:
        if request.persona_id is not None and request.persona_id in self.persona_voices:
            return self.persona_voices[request.persona_id]
        return request.voice_id or self.voice_id

    async def synthesize(self, request: SynthesisRequest) -> SynthesisResult:
        if self.client is None:
            logger.error("[TTS] Cartesia API key is not configured")
            return FallbackSignal(request.text, "Cartesia API key is missing")

        voice = self.resolve_voice(request)
        logger.info("[TTS] Synthesizing %d chars with voice %s", len(request.text), voice)

        chunks = []
        ws = await self.client.tts.websocket()
        try:
            async for output in await ws.send(
                model_id=self.model_id,
                transcript=request.text,
                voice={"id": voice},
                stream=True,
                output_format={
                    "container": "raw",
                    "encoding": "pcm_f32le",  # 32-bit float PCM little-endian
                    "sample_rate": self.sample_rate,
                },
            ):
                if output.audio:
                    chunks.append(output.audio)
        finally:
            await ws.close()

        if not chunks:
            return FallbackSignal(request.text, "No audio returned")
        samples = np.frombuffer(b"".join(chunks), dtype='<f4').astype(np.float32)
        return AudioClip(samples, self.sample_rate)

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.close()


class HttpTTS(TTSInterface):
    """Client for a synthesis endpoint speaking the audio-or-fallback contract."""

    def __init__(self,
                 endpoint: str,
                 timeout: float = 15.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.endpoint = endpoint
        self.timeout = timeout
        self.transport = transport

    async def synthesize(self, request: SynthesisRequest) -> SynthesisResult:
        payload = {"text": request.text, "voiceId": request.voice_id, "doctorId": request.persona_id}
        async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
            response = await client.post(self.endpoint, json=payload)

        if response.status_code >= 500:
            raise SynthesisFailed(f"Synthesis endpoint returned {response.status_code}")

        content_type = response.headers.get("content-type", "")
        if "audio" in content_type:
            logger.info("[TTS] Received %d bytes of %s", len(response.content), content_type)
            return decode_audio(response.content)

        try:
            data = response.json()
        except ValueError as e:
            raise SynthesisFailed(f"Invalid synthesis response ({content_type or 'no content type'})") from e

        if isinstance(data, dict) and data.get("error"):
            logger.warning("[TTS] Synthesis endpoint error: %s", data["error"])
        if isinstance(data, dict) and data.get("useBrowserTTS"):
            return FallbackSignal(data.get("text") or request.text, data.get("error"))
        raise SynthesisFailed("Invalid TTS response")


def decode_audio(data: bytes) -> AudioClip:
    """Decode an encoded audio body (wav, mp3, flac, ogg) to a mono clip."""
    try:
        samples, sample_rate = sf.read(io.BytesIO(data), dtype="float32", always_2d=True)
    except RuntimeError as e:
        raise SynthesisFailed(f"Could not decode synthesized audio: {e}") from e
    return AudioClip(samples.mean(axis=1).astype(np.float32), int(sample_rate))
