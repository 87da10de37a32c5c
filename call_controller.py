# call_controller.py - Call lifecycle and turn-taking orchestration
"""
VoiceCall is the top-level state machine of a conversation with a persona.

Lifecycle: IDLE -> ACTIVE -> ENDED. A new start() after ENDED begins a fresh
call with nothing carried over.

While ACTIVE the call alternates between listening (microphone frames flow to
the recognition channel) and speaking (the agent's reply is played). The two
are never on together: speech start closes the microphone gate at once, speech
end reopens it after a short grace delay.

stop() releases every resource the call opened. Each release step runs even
when an earlier one fails, so the call can always be restarted cleanly.
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple

from asr import TranscriptionChannel
from components import (ASRInterface, AudioPlayer, AudioSource, BatchASRInterface, CallSession,
                        LLMInterface, LocalSpeechEngine, PersonaProfile, Role, TranscriptEvent,
                        TTSInterface, Turn)
from config import VoiceAgentConfig
from conversation_manager import ConversationManager
from errors import DeviceUnavailable, PermissionDenied, TranscriptionFailed, TranscriptionTimeout
from speech_player import SpeechSynthesisPlayer

logger = logging.getLogger(__name__)


class CallState(Enum):
    IDLE = "idle"
    ACTIVE = "active"
    ENDED = "ended"


class VoiceCall:
    def __init__(self,
                 persona: PersonaProfile,
                 audio_source: AudioSource,
                 asr: ASRInterface,
                 llm: LLMInterface,
                 tts: TTSInterface,
                 audio_output: AudioPlayer,
                 local_engine: LocalSpeechEngine,
                 batch_asr: Optional[BatchASRInterface] = None,
                 config: Optional[VoiceAgentConfig] = None,
                 on_error: Optional[Callable[[Exception], None]] = None,
                 on_new_turn: Optional[Callable[[Turn], None]] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.config = config or VoiceAgentConfig()
        self.persona = persona
        self.audio_source = audio_source
        self.batch_asr = batch_asr
        self.on_error = on_error
        self.on_new_turn = on_new_turn
        self._sleep = sleep

        self.channel = TranscriptionChannel(
            asr,
            on_transcript=self._handle_transcript,
            on_error=self._handle_error,
            on_connection_change=self._handle_connection_change,
            reconnect_delay=self.config.reconnect_delay,
            max_reconnect_attempts=self.config.max_reconnect_attempts,
            sleep=sleep,
        )
        self.conversation = ConversationManager(
            llm,
            system_prompt=persona.agent_prompt,
            on_new_turn=self._handle_new_turn,
            on_error=self._handle_error,
            silence_timeout=self.config.silence_timeout,
            sleep=sleep,
        )
        self.speech = SpeechSynthesisPlayer(
            tts,
            audio_output,
            local_engine,
            on_speaking_start=self._handle_speaking_start,
            on_speaking_end=self._handle_speaking_end,
            on_error=self._handle_error,
            request_timeout=self.config.synthesis_timeout,
        )

        self.state = CallState.IDLE
        self.elapsed_seconds = 0
        self.listening = False
        self.speaking = False
        self.connected = False
        self.is_transcribing = False
        self.user_caption = ""
        self.agent_caption = ""
        self.last_error: Optional[str] = None

        self._call_id = 0
        self._audio_queue: Optional[asyncio.Queue] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._grace_task: Optional[asyncio.Task] = None
        self._speech_task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self.state is CallState.ACTIVE

    @property
    def turns(self) -> Tuple[Turn, ...]:
        return self.conversation.turns

    @property
    def session(self) -> CallSession:
        return CallSession(
            active=self.active,
            elapsed_seconds=self.elapsed_seconds,
            listening=self.listening,
            speaking=self.speaking,
            processing_transcript=self.conversation.processing_transcript,
            user_caption=self.user_caption,
            agent_caption=self.agent_caption,
        )

    async def start(self) -> None:
        """
        Open the microphone and recognition channel and greet the user.

        Raises PermissionDenied or DeviceUnavailable when the microphone
        cannot be opened; the call then stays IDLE with nothing held.
        """
        if self.active:
            return

        self._call_id += 1
        logger.info("[Call] Starting call with %s", self.persona.specialist)
        try:
            self.audio_source.start()
        except (PermissionDenied, DeviceUnavailable) as e:
            self._handle_error(e)
            await self.stop()
            self.state = CallState.IDLE
            raise

        self.state = CallState.ACTIVE
        self.elapsed_seconds = 0
        self.last_error = None
        self._audio_queue = asyncio.Queue(maxsize=50)
        self._pump_task = asyncio.create_task(self._pump_audio(self._audio_queue))
        self.channel.start(self._audio_queue)
        self._timer_task = asyncio.create_task(self._tick())
        self.conversation.start()

    async def stop(self) -> None:
        """End the call and release everything it holds. Idempotent."""
        logger.info("[Call] Stopping call and resetting all components")
        self._call_id += 1
        if self.state is CallState.ACTIVE:
            self.state = CallState.ENDED

        steps = (
            ("speech playback", self.speech.stop_speaking),
            ("speech task", lambda: self._cancel_task("_speech_task")),
            ("listening grace timer", lambda: self._cancel_task("_grace_task")),
            ("transcription channel", self.channel.close),
            ("audio pump", lambda: self._cancel_task("_pump_task")),
            ("microphone", self.audio_source.stop),
            ("call timer", lambda: self._cancel_task("_timer_task")),
            ("conversation", self.conversation.reset),
        )
        for name, step in steps:
            try:
                result = step()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("[Call] Error releasing %s: %s", name, e)

        self._audio_queue = None
        self.listening = False
        self.speaking = False
        self.connected = False
        self.is_transcribing = False
        self.user_caption = ""
        self.agent_caption = ""
        self.elapsed_seconds = 0
        logger.info("[Call] Call stopped and all components reset")

    async def aclose(self) -> None:
        """Stop the call, then close the backends' SDK clients for good."""
        await self.stop()
        for backend in (self.channel.asr, self.speech.tts):
            close = getattr(backend, "aclose", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.error("[Call] Error closing %s: %s", type(backend).__name__, e)

    async def __aenter__(self) -> "VoiceCall":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def transcribe_recording(self, audio: bytes) -> Optional[str]:
        """
        Feed a finished recording through batch transcription as one final
        transcript. Failures are reported, not raised.
        """
        if self.batch_asr is None:
            self._handle_error(TranscriptionFailed("Batch transcription is not configured"))
            return None

        call_id = self._call_id
        self.is_transcribing = True
        try:
            text = await self.batch_asr.transcribe(audio)
        except (TranscriptionFailed, TranscriptionTimeout) as e:
            if call_id == self._call_id:
                self._handle_error(e)
            return None
        finally:
            if call_id == self._call_id:
                self.is_transcribing = False

        if call_id != self._call_id or not self.active:
            logger.info("[Call] Discarding transcription from an ended call")
            return None
        logger.info("[Call] Transcription result: %r", text)
        self._handle_transcript(TranscriptEvent(text, is_final=True))
        return text

    async def record_and_transcribe(self, duration_seconds: float) -> Optional[str]:
        audio = await self.audio_source.record_clip(duration_seconds)
        return await self.transcribe_recording(audio)

    async def _pump_audio(self, queue: asyncio.Queue) -> None:
        async for frame in self.audio_source.stream_audio():
            if queue.full():
                # Keep the newest audio when the channel falls behind
                queue.get_nowait()
            queue.put_nowait(frame)

    async def _tick(self) -> None:
        while True:
            await self._sleep(1.0)
            self.elapsed_seconds += 1

    def _handle_transcript(self, event: TranscriptEvent) -> None:
        if not self.active:
            return
        self.user_caption = event.text
        self.conversation.handle_transcript(event)

    def _handle_new_turn(self, turn: Turn) -> None:
        if turn.role is Role.AGENT:
            self.agent_caption = turn.content
            logger.info("[Call] Agent reply received (%d chars), sending to speech", len(turn.content))
            if self.active:
                self._speech_task = asyncio.create_task(
                    self.speech.speak(turn.content, self.persona.voice_id, self.persona.id))
        if self.on_new_turn:
            self.on_new_turn(turn)

    def _handle_speaking_start(self) -> None:
        grace, self._grace_task = self._grace_task, None
        if grace is not None:
            grace.cancel()
        self._set_listening(False)
        self.speaking = True

    def _handle_speaking_end(self) -> None:
        self.speaking = False
        if self.active:
            self._grace_task = asyncio.create_task(self._resume_listening(self._call_id))

    async def _resume_listening(self, call_id: int) -> None:
        await self._sleep(self.config.speaking_grace)
        if self.active and call_id == self._call_id and not self.speaking:
            self._set_listening(True)

    def _set_listening(self, listening: bool) -> None:
        self.listening = listening
        self.audio_source.set_listening(listening)
        self.channel.set_listening(listening)

    def _handle_connection_change(self, connected: bool) -> None:
        self.connected = connected

    def _handle_error(self, error: Exception) -> None:
        self.last_error = str(error)
        logger.warning("[Call] %s: %s", type(error).__name__, error)
        if self.on_error:
            self.on_error(error)

    async def _cancel_task(self, attr: str) -> None:
        task = getattr(self, attr)
        setattr(self, attr, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
