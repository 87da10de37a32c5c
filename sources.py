# sources.py - Microphone capture for the voice agent pipeline
"""
This module implements the audio input source for capturing real-time audio data.

RealTimeMicrophoneSource captures audio from the system microphone at the
device's native rate using sounddevice, downsamples it to the rate the
recognition backend expects, and provides it as a stream of 16-bit PCM frames.

Key features:
- Capture at the device rate (44.1kHz by default), block-averaged down to 16kHz
- Frames are only emitted while the call is listening
- Thread-safe buffering between the PortAudio callback thread and asyncio
- Fixed-length clip recording for the record-then-transcribe path
"""

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import AsyncGenerator, Optional

import numpy as np
import sounddevice as sd

from audio_utils import encode_pcm_frame, pcm16_to_wav
from components import AudioSource
from errors import DeviceUnavailable, PermissionDenied

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureConstraints:
    """Processing requested from the input device."""
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True


class RealTimeMicrophoneSource(AudioSource):
    """
    Real-time microphone audio source implementation.

    The audio is captured in the PortAudio callback thread, converted to the
    backend format and buffered in a thread-safe deque for consumption by the
    async pipeline.
    """

    def __init__(self,
                 device_sample_rate: int = 44100,
                 target_sample_rate: int = 16000,
                 channels: int = 1,
                 blocksize: int = 4096,
                 device: Optional[int] = None,
                 constraints: CaptureConstraints = CaptureConstraints(),
                 max_buffered_frames: int = 64):
        """
        Args:
            device_sample_rate: Rate the device is opened at
            target_sample_rate: Rate the recognition backend expects
            channels: Number of input channels; only the first one is used
            blocksize: Samples per callback block at the device rate
            device: Audio device ID (None for system default)
            constraints: Echo cancellation / noise suppression / auto gain request
            max_buffered_frames: Oldest frames are dropped beyond this
        """
        self.device_sample_rate = device_sample_rate
        self.target_sample_rate = target_sample_rate
        self.channels = channels
        self.blocksize = blocksize
        self.device = device
        self.constraints = constraints

        self.audio_buffer = deque(maxlen=max_buffered_frames)
        self.buffer_lock = threading.Lock()
        self.recording = False
        self.listening = False
        self.stream = None

        # Raw 16 kHz frames collected for record_clip, independent of listening.
        self._clip_frames = None

    def _audio_callback(self, indata, frames, time_info, status):
        if status:
            logger.debug("[MicSource] Recording status: %s", status)

        if not self.recording:
            return

        frame = encode_pcm_frame(indata[:, 0], self.device_sample_rate, self.target_sample_rate)
        with self.buffer_lock:
            if self._clip_frames is not None:
                self._clip_frames.append(frame)
            if self.listening:
                self.audio_buffer.append(frame)

    def start(self) -> None:
        if self.stream is not None:
            return

        logger.info("[MicSource] Requesting microphone: %dHz -> %dHz, echo_cancellation=%s, "
                    "noise_suppression=%s, auto_gain_control=%s",
                    self.device_sample_rate, self.target_sample_rate,
                    self.constraints.echo_cancellation, self.constraints.noise_suppression,
                    self.constraints.auto_gain_control)
        try:
            stream = sd.InputStream(
                samplerate=self.device_sample_rate,
                channels=self.channels,
                dtype=np.float32,
                callback=self._audio_callback,
                blocksize=self.blocksize,
                device=self.device,
                latency='low'
            )
            stream.start()
        except sd.PortAudioError as e:
            message = str(e)
            if "permission" in message.lower() or "access" in message.lower():
                raise PermissionDenied(f"Could not access microphone: {message}") from e
            raise DeviceUnavailable(f"No usable microphone: {message}") from e
        except ValueError as e:
            # sounddevice raises ValueError for unknown device ids
            raise DeviceUnavailable(f"No usable microphone: {e}") from e

        self.stream = stream
        self.recording = True
        logger.info("[MicSource] Started recording")

    def set_listening(self, listening: bool) -> None:
        self.listening = listening
        if not listening:
            with self.buffer_lock:
                self.audio_buffer.clear()

    async def stream_audio(self) -> AsyncGenerator[bytes, None]:
        """
        Yield captured frames while the device is open.

        Yields:
            bytes: 16-bit PCM frames at the target rate
        """
        while self.recording:
            chunk = None
            with self.buffer_lock:
                if self.audio_buffer:
                    chunk = self.audio_buffer.popleft()
            if chunk is not None:
                yield chunk
                continue

            # Small delay to prevent busy waiting
            await asyncio.sleep(0.01)

    async def record_clip(self, duration_seconds: float) -> bytes:
        """
        Record audio for a fixed duration and return it as WAV bytes.

        Used by the manual record-then-transcribe path. The device must be
        started; recording does not depend on the listening flag.
        """
        if not self.recording:
            raise DeviceUnavailable("Microphone is not started")

        with self.buffer_lock:
            self._clip_frames = []
        try:
            start_time = time.monotonic()
            while self.recording and time.monotonic() - start_time < duration_seconds:
                await asyncio.sleep(0.05)
        finally:
            with self.buffer_lock:
                frames, self._clip_frames = self._clip_frames, None

        logger.info("[MicSource] Recorded clip: %d frames", len(frames))
        return pcm16_to_wav(b"".join(frames), self.target_sample_rate)

    def stop(self) -> None:
        """
        Stop audio recording and release the device.

        Idempotent: safe to call when the source was never started.
        """
        self.recording = False
        self.listening = False
        stream, self.stream = self.stream, None
        with self.buffer_lock:
            self.audio_buffer.clear()
        if stream is not None:
            try:
                stream.stop()
            finally:
                stream.close()
            logger.info("[MicSource] Recording stopped")
