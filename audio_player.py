# audio_player.py - Speech playback using SoundDevice
"""
This module plays synthesized speech clips on the output device.

SoundDeviceAudioPlayer plays one clip at a time through a sounddevice output
stream. The PortAudio callback thread feeds samples from the clip; when the
clip is drained the callback stops the stream and the awaiting coroutine is
woken through the event loop. stop() halts playback immediately.
"""

import asyncio
import logging
import threading
from typing import Optional

import numpy as np
import sounddevice as sd

from components import AudioClip, AudioPlayer
from errors import AudioPlaybackError

logger = logging.getLogger(__name__)


class SoundDeviceAudioPlayer(AudioPlayer):
    def __init__(self,
                 channels: int = 1,
                 buffer_size: int = 2048,
                 device: Optional[int] = None):
        """
        Args:
            channels: Number of output channels; mono clips are duplicated
            buffer_size: Size of sounddevice callback buffer
            device: Audio device ID (None for system default)
        """
        self.channels = channels
        self.buffer_size = buffer_size
        self.device = device

        self.buffer_lock = threading.Lock()
        self.stream = None
        self.is_playing = False
        self._samples = np.zeros(0, dtype=np.float32)
        self._position = 0
        self._done: Optional[asyncio.Event] = None

    def _audio_callback(self, outdata, frames, time, status):
        if status:
            logger.debug("[AudioPlayer] Status: %s", status)

        with self.buffer_lock:
            chunk = self._samples[self._position:self._position + frames]
            self._position += len(chunk)

        outdata[:len(chunk)] = chunk.reshape(-1, 1)
        if len(chunk) < frames:
            # Clip drained: pad with silence and let the stream finish
            outdata[len(chunk):] = 0
            raise sd.CallbackStop

    async def play_clip(self, clip: AudioClip) -> None:
        """Play a clip to completion, or until stop() is called."""
        self.stop()
        if len(clip.samples) == 0:
            return

        loop = asyncio.get_running_loop()
        done = asyncio.Event()
        self._done = done
        with self.buffer_lock:
            self._samples = np.asarray(clip.samples, dtype=np.float32).reshape(-1)
            self._position = 0

        def finished():
            loop.call_soon_threadsafe(done.set)

        try:
            self.stream = sd.OutputStream(
                samplerate=clip.sample_rate,
                channels=self.channels,
                dtype='float32',
                callback=self._audio_callback,
                finished_callback=finished,
                blocksize=self.buffer_size,
                device=self.device,
            )
            self.stream.start()
        except sd.PortAudioError as e:
            self.stream = None
            raise AudioPlaybackError(f"Failed to start audio stream: {e}") from e

        self.is_playing = True
        logger.info("[AudioPlayer] Playing %.2fs at %dHz", clip.duration, clip.sample_rate)
        try:
            await done.wait()
        finally:
            if self._done is done:
                self._close_stream()

    def stop(self) -> None:
        """Halt playback immediately. Idempotent."""
        with self.buffer_lock:
            self._samples = np.zeros(0, dtype=np.float32)
            self._position = 0
        self._close_stream()
        done, self._done = self._done, None
        if done is not None:
            done.set()

    def _close_stream(self):
        stream, self.stream = self.stream, None
        self.is_playing = False
        if stream is not None:
            try:
                stream.abort()
            finally:
                stream.close()
            logger.debug("[AudioPlayer] Audio stream stopped")
