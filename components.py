# components.py - Shared data types and abstract interfaces for the voice pipeline
"""
This module defines the data that flows through the voice conversation pipeline
and the abstract interfaces every pluggable component implements.

The interfaces define the contract for:
- Audio input sources
- Streaming speech recognition backends and their connections
- Batch (record then transcribe) recognition
- Reply generation
- Remote text-to-speech synthesis
- Audio output and on-device speech synthesis
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncGenerator, AsyncIterator, List, Optional, Sequence, Union

import numpy as np


class Role(Enum):
    USER = "user"
    AGENT = "agent"


@dataclass(frozen=True)
class Turn:
    """One entry of the conversation transcript."""
    role: Role
    content: str
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class TranscriptEvent:
    text: str
    is_final: bool = False


@dataclass(frozen=True)
class PersonaProfile:
    """The specialist the user is talking to. Read-only for the pipeline."""
    id: Optional[int] = None
    specialist: str = "AI Medical Agent"
    voice_id: Optional[str] = None
    agent_prompt: str = ""
    image: Optional[str] = None


@dataclass(frozen=True)
class SynthesisRequest:
    text: str
    voice_id: Optional[str] = None
    persona_id: Optional[int] = None


@dataclass(frozen=True, eq=False)
class AudioClip:
    """Decoded mono audio, float32 samples in [-1.0, 1.0]."""
    samples: np.ndarray
    sample_rate: int

    @property
    def duration(self) -> float:
        return len(self.samples) / float(self.sample_rate) if self.sample_rate else 0.0


@dataclass(frozen=True)
class FallbackSignal:
    """The remote synthesizer asks the caller to speak the text locally."""
    text: str
    error: Optional[str] = None


SynthesisResult = Union[AudioClip, FallbackSignal]


@dataclass(frozen=True)
class CallSession:
    """Runtime snapshot of a call. Never persisted."""
    active: bool = False
    elapsed_seconds: int = 0
    listening: bool = False
    speaking: bool = False
    processing_transcript: bool = False
    user_caption: str = ""
    agent_caption: str = ""


class AudioSource(ABC):
    """
    Abstract base class for audio input sources.

    Implementations capture audio from a device and expose it as 16-bit PCM
    frames at the rate the recognition backend expects.
    """

    @abstractmethod
    def start(self) -> None:
        """Acquire the device. Raises PermissionDenied or DeviceUnavailable."""

    @abstractmethod
    def stop(self) -> None:
        """Release the device. Safe to call when not started."""

    @abstractmethod
    def set_listening(self, listening: bool) -> None:
        """Gate frame emission on the call's listening flag."""

    @abstractmethod
    async def stream_audio(self) -> AsyncGenerator[bytes, None]:
        """
        Stream audio data as chunks.

        Yields:
            bytes: 16-bit little-endian PCM frames
        """

    async def record_clip(self, duration_seconds: float) -> bytes:
        """Record a fixed-length clip and return it as WAV bytes."""
        raise NotImplementedError


class STTConnection(ABC):
    """One open duplex session with a streaming recognition backend."""

    @abstractmethod
    async def send_audio(self, frame: bytes) -> None:
        pass

    @abstractmethod
    def receive(self) -> AsyncIterator[Any]:
        """Iterate raw server payloads until the server closes the session."""

    @abstractmethod
    def parse(self, payload: Any) -> Optional[TranscriptEvent]:
        """
        Turn a raw payload into a transcript event.

        Returns None for payloads that carry no transcript. Raises
        SpeechRecognitionError for error messages and malformed payloads.
        """

    @abstractmethod
    async def close(self) -> None:
        pass


class ASRInterface(ABC):
    """
    Abstract base class for streaming Automatic Speech Recognition backends.

    Implementations open authenticated duplex connections; reconnection and
    turn-taking are handled by TranscriptionChannel.
    """

    @abstractmethod
    async def connect(self) -> STTConnection:
        pass


class BatchASRInterface(ABC):
    """Transcribes a complete recorded clip in one request."""

    @abstractmethod
    async def transcribe(self, audio: bytes) -> str:
        pass


class LLMInterface(ABC):
    """
    Abstract base class for reply generators.

    Implementations receive the whole ordered transcript plus the persona's
    system prompt and return the agent's next reply.
    """

    @abstractmethod
    async def generate_reply(self, turns: Sequence[Turn], system_prompt: str) -> str:
        pass


class TTSInterface(ABC):
    """
    Abstract base class for remote Text-to-Speech synthesis.

    Implementations return decoded audio, or a FallbackSignal when the
    service asks the caller to speak the text with on-device synthesis.
    """

    @abstractmethod
    async def synthesize(self, request: SynthesisRequest) -> SynthesisResult:
        pass


class AudioPlayer(ABC):
    """
    Abstract base class for audio output players.

    One clip plays at a time; stop() halts it immediately.
    """

    @abstractmethod
    async def play_clip(self, clip: AudioClip) -> None:
        """Play a clip to completion. Raises AudioPlaybackError."""

    @abstractmethod
    def stop(self) -> None:
        pass


class LocalSpeechEngine(ABC):
    """On-device speech synthesis used when the remote synthesizer fails."""

    @abstractmethod
    async def speak(self, text: str) -> None:
        pass

    @abstractmethod
    def stop(self) -> None:
        pass


def turns_as_messages(turns: Sequence[Turn]) -> List[dict]:
    """Plain role/content dicts in chat API vocabulary."""
    return [
        {"role": "user" if turn.role is Role.USER else "assistant", "content": turn.content}
        for turn in turns
    ]
