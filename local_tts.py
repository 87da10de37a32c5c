# local_tts.py - On-device speech synthesis fallback
import asyncio
import logging
import threading
from typing import Optional

import pyttsx3

from components import LocalSpeechEngine

logger = logging.getLogger(__name__)


class Pyttsx3SpeechEngine(LocalSpeechEngine):
    """
    Speaks text with the platform's own synthesizer through pyttsx3.

    pyttsx3 blocks in runAndWait(), so each utterance runs in a worker thread.
    Each utterance carries its own cancel flag; stop() sets it, so an
    utterance whose thread has not reached runAndWait() yet never starts, and
    one already speaking is halted through engine.stop().
    """

    def __init__(self, rate: int = 200, volume: float = 1.0):
        self.rate = rate
        self.volume = volume
        self._engine = None
        self._cancelled: Optional[threading.Event] = None
        # _state_lock guards _engine/_cancelled; _run_lock serializes utterances
        self._state_lock = threading.Lock()
        self._run_lock = threading.Lock()

    def _speak_blocking(self, text: str, cancelled: threading.Event) -> None:
        with self._run_lock:
            if cancelled.is_set():
                return
            engine = pyttsx3.init()
            engine.setProperty('rate', self.rate)
            engine.setProperty('volume', self.volume)

            def halt_if_cancelled(name=None, **kwargs):
                if cancelled.is_set():
                    engine.stop()

            engine.connect('started-utterance', halt_if_cancelled)
            engine.connect('started-word', halt_if_cancelled)

            with self._state_lock:
                if cancelled.is_set():
                    logger.debug("[LocalTTS] Utterance cancelled before it started")
                    return
                self._engine = engine
            try:
                engine.say(text)
                if not cancelled.is_set():
                    engine.runAndWait()
            finally:
                with self._state_lock:
                    if self._engine is engine:
                        self._engine = None

    async def speak(self, text: str) -> None:
        cancelled = threading.Event()
        with self._state_lock:
            previous, self._cancelled = self._cancelled, cancelled
        if previous is not None:
            previous.set()

        logger.info("[LocalTTS] Speaking %d chars", len(text))
        try:
            await asyncio.to_thread(self._speak_blocking, text, cancelled)
        except asyncio.CancelledError:
            # The worker thread outlives the task; make it stand down.
            self._halt(cancelled)
            raise
        finally:
            with self._state_lock:
                if self._cancelled is cancelled:
                    self._cancelled = None

    def _halt(self, cancelled: threading.Event) -> None:
        cancelled.set()
        with self._state_lock:
            engine = self._engine if self._cancelled is cancelled else None
        if engine is not None:
            engine.stop()

    def stop(self) -> None:
        with self._state_lock:
            cancelled, engine = self._cancelled, self._engine
        if cancelled is not None:
            cancelled.set()
        if engine is not None:
            engine.stop()
