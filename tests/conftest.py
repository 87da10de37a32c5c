"""Shared fakes for the voice pipeline tests."""
import asyncio

import numpy as np
import pytest

from asr import CartesiaSTTConnection
from components import (ASRInterface, AudioClip, AudioPlayer, AudioSource, BatchASRInterface,
                        LLMInterface, LocalSpeechEngine, TTSInterface)
from config import VoiceAgentConfig


def make_clip(seconds: float = 0.02, sample_rate: int = 16000) -> AudioClip:
    return AudioClip(np.zeros(int(seconds * sample_rate), dtype=np.float32), sample_rate)


class OutputMeter:
    """Counts how many playback mechanisms are producing sound at once."""

    def __init__(self):
        self.current = 0
        self.peak = 0

    def enter(self):
        self.current += 1
        self.peak = max(self.peak, self.current)

    def leave(self):
        self.current -= 1


class FakeLLM(LLMInterface):
    def __init__(self, replies=None, error=None, delay=0.0):
        self.replies = list(replies or [])
        self.error = error
        self.delay = delay
        self.calls = []

    async def generate_reply(self, turns, system_prompt):
        self.calls.append((list(turns), system_prompt))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.replies.pop(0) if self.replies else "How long have you felt this way?"


class FakeTTS(TTSInterface):
    def __init__(self, result=None, error=None, delay=0.0):
        self.result = result if result is not None else make_clip()
        self.error = error
        self.delay = delay
        self.requests = []

    async def synthesize(self, request):
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


class FakeAudioOutput(AudioPlayer):
    def __init__(self, meter=None, error=None):
        self.meter = meter or OutputMeter()
        self.error = error
        self.played = []
        self.stop_calls = 0
        self._interrupt = None

    async def play_clip(self, clip):
        if self.error is not None:
            raise self.error
        self.played.append(clip)
        interrupt = asyncio.Event()
        self._interrupt = interrupt
        self.meter.enter()
        try:
            await asyncio.wait_for(interrupt.wait(), timeout=clip.duration)
        except asyncio.TimeoutError:
            pass
        finally:
            self.meter.leave()

    def stop(self):
        self.stop_calls += 1
        if self._interrupt is not None:
            self._interrupt.set()


class FakeLocalEngine(LocalSpeechEngine):
    def __init__(self, meter=None, duration=0.02, error=None):
        self.meter = meter or OutputMeter()
        self.duration = duration
        self.error = error
        self.spoken = []
        self.stop_calls = 0

    async def speak(self, text):
        if self.error is not None:
            raise self.error
        self.spoken.append(text)
        self.meter.enter()
        try:
            await asyncio.sleep(self.duration)
        finally:
            self.meter.leave()

    def stop(self):
        self.stop_calls += 1


class FakeWebSocket:
    """Stands in for the SDK websocket: queue payloads, push None to close."""

    def __init__(self):
        self.sent = []
        self.incoming = asyncio.Queue()
        self.closed = False

    async def send(self, data):
        self.sent.append(data)

    async def receive(self):
        while True:
            payload = await self.incoming.get()
            if payload is None:
                return
            yield payload

    async def close(self):
        self.closed = True


class FakeASR(ASRInterface):
    def __init__(self, failures=0):
        self.failures = failures
        self.attempts = 0
        self.sockets = []
        self.connected = asyncio.Event()

    async def connect(self):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("connection refused")
        ws = FakeWebSocket()
        self.sockets.append(ws)
        self.connected.set()
        return CartesiaSTTConnection(ws)


class FakeSource(AudioSource):
    def __init__(self, start_error=None, stop_error=None):
        self.start_error = start_error
        self.stop_error = stop_error
        self.started = False
        self.listening = False
        self.start_calls = 0
        self.stop_calls = 0
        self.frames = asyncio.Queue()

    def start(self):
        self.start_calls += 1
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    def stop(self):
        self.stop_calls += 1
        self.started = False
        self.listening = False
        if self.stop_error is not None:
            raise self.stop_error

    def set_listening(self, listening):
        self.listening = listening

    async def stream_audio(self):
        while self.started:
            try:
                frame = await asyncio.wait_for(self.frames.get(), timeout=0.01)
            except asyncio.TimeoutError:
                continue
            if self.listening:
                yield frame

    async def record_clip(self, duration_seconds):
        return b"RIFF-recording"


class FakeBatchASR(BatchASRInterface):
    def __init__(self, text="I have had a sore throat for two days", error=None, delay=0.0):
        self.text = text
        self.error = error
        self.delay = delay
        self.clips = []

    async def transcribe(self, audio):
        self.clips.append(audio)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.text


async def wait_until(predicate, timeout=1.0, interval=0.005):
    """Poll until predicate() is true; fail the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def fast_config():
    return VoiceAgentConfig(
        silence_timeout=0.05,
        reconnect_delay=0.01,
        max_reconnect_attempts=5,
        speaking_grace=0.02,
        synthesis_timeout=0.5,
    )
