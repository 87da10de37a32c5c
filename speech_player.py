# speech_player.py - Speaks agent replies with remote synthesis and local fallback
"""
SpeechSynthesisPlayer speaks the latest agent reply.

Each utterance walks an ordered fallback chain:
1. remote synthesis (TTSInterface), played on the AudioPlayer
2. on-device synthesis (LocalSpeechEngine) when the remote stage returns a
   FallbackSignal, errors, times out, or its audio cannot be played

Only one utterance is active at a time. A new utterance cancels the current
one instead of queueing behind it, and exactly one of the two playback
mechanisms runs at any moment.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

from components import AudioClip, AudioPlayer, FallbackSignal, LocalSpeechEngine, SynthesisRequest, TTSInterface
from errors import AudioPlaybackError, SynthesisFailed

logger = logging.getLogger(__name__)


class SpeechOutcome(Enum):
    REMOTE_AUDIO = "remote_audio"
    LOCAL_FALLBACK = "local_fallback"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class SpeechSynthesisPlayer:
    def __init__(self,
                 tts: TTSInterface,
                 audio_output: AudioPlayer,
                 local_engine: LocalSpeechEngine,
                 on_speaking_start: Optional[Callable[[], None]] = None,
                 on_speaking_end: Optional[Callable[[], None]] = None,
                 on_error: Optional[Callable[[Exception], None]] = None,
                 request_timeout: float = 15.0):
        self.tts = tts
        self.audio_output = audio_output
        self.local_engine = local_engine
        self.on_speaking_start = on_speaking_start
        self.on_speaking_end = on_speaking_end
        self.on_error = on_error
        self.request_timeout = request_timeout

        self.speaking = False
        self.pending_text = ""
        self._task: Optional[asyncio.Task] = None

        # Stats
        self.remote_calls = 0
        self.local_fallbacks = 0
        self.last_api_error: Optional[str] = None

    async def speak(self, text: str, voice_id: Optional[str] = None,
                    persona_id: Optional[int] = None) -> SpeechOutcome:
        """Speak text, preempting whatever is playing. Returns how it ended."""
        if not text or not text.strip():
            return SpeechOutcome.SKIPPED

        self.stop_speaking()
        request = SynthesisRequest(text, voice_id, persona_id)
        self.pending_text = text
        self.speaking = True
        if self.on_speaking_start:
            self.on_speaking_start()

        task = asyncio.create_task(self._run(request))
        self._task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            if self._task is task:
                self.stop_speaking()
            raise
        if task.cancelled():
            return SpeechOutcome.CANCELLED
        return task.result()

    async def _run(self, request: SynthesisRequest) -> SpeechOutcome:
        outcome = await self._run_chain(request)
        # Not reached when cancelled, so a preempted utterance never signals its end.
        if self._task is asyncio.current_task():
            self._task = None
            self.speaking = False
            self.pending_text = ""
            logger.info("[Speech] Finished speaking (%s)", outcome.value)
            if self.on_speaking_end:
                self.on_speaking_end()
        return outcome

    async def _run_chain(self, request: SynthesisRequest) -> SpeechOutcome:
        try:
            result = await asyncio.wait_for(self.tts.synthesize(request), timeout=self.request_timeout)
        except asyncio.TimeoutError:
            return await self._remote_failed(request, SynthesisFailed("Speech synthesis timed out"))
        except Exception as e:
            return await self._remote_failed(request, e)

        if isinstance(result, FallbackSignal):
            logger.info("[Speech] Remote synthesis requested local fallback")
            if result.error:
                self.last_api_error = result.error
            return await self._play_local(result.text or request.text)

        if isinstance(result, AudioClip):
            self.remote_calls += 1
            self.last_api_error = None
            self.local_engine.stop()
            try:
                await self.audio_output.play_clip(result)
                return SpeechOutcome.REMOTE_AUDIO
            except AudioPlaybackError as e:
                logger.error("[Speech] Error playing synthesized audio: %s", e)
                return await self._play_local(request.text)

        return await self._remote_failed(request, SynthesisFailed(f"Invalid synthesis result: {result!r}"))

    async def _remote_failed(self, request: SynthesisRequest, error: Exception) -> SpeechOutcome:
        logger.error("[Speech] Failed to generate speech: %s", error)
        self.last_api_error = str(error)
        if self.on_error:
            notice = SynthesisFailed("Failed to generate speech. Using local TTS instead.")
            notice.__cause__ = error
            self.on_error(notice)
        return await self._play_local(request.text)

    async def _play_local(self, text: str) -> SpeechOutcome:
        self.audio_output.stop()
        self.local_fallbacks += 1
        try:
            await self.local_engine.speak(text)
        except Exception as e:
            logger.error("[Speech] Local speech synthesis failed: %s", e)
            return SpeechOutcome.FAILED
        return SpeechOutcome.LOCAL_FALLBACK

    def stop_speaking(self) -> None:
        """Halt both playback mechanisms and drop pending text. Idempotent."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        try:
            self.audio_output.stop()
        finally:
            self.local_engine.stop()
            self.pending_text = ""
            self.speaking = False
