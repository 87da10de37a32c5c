# audio_utils.py - Sample-rate conversion and PCM encoding for captured audio
import io
import wave

import numpy as np


def downsample_buffer(buffer: np.ndarray, sample_rate: int, out_sample_rate: int) -> np.ndarray:
    """
    Downsample by block averaging.

    Each output sample is the mean of the input window
    [round(i * ratio), round((i + 1) * ratio)), rounding halves up, so window
    sizes alternate around the ratio instead of drifting. Output length is
    round(len(buffer) / ratio).
    """
    buffer = np.asarray(buffer, dtype=np.float32).reshape(-1)
    if out_sample_rate == sample_rate:
        return buffer
    if out_sample_rate > sample_rate:
        raise ValueError("Downsampling rate must be lower than the original sample rate")

    ratio = sample_rate / out_sample_rate
    new_length = int(np.floor(len(buffer) / ratio + 0.5))
    if new_length == 0:
        return np.zeros(0, dtype=np.float32)

    boundaries = np.floor(np.arange(new_length + 1) * ratio + 0.5).astype(np.int64)
    boundaries = np.minimum(boundaries, len(buffer))
    starts, ends = boundaries[:-1], boundaries[1:]
    counts = ends - starts

    cumulative = np.concatenate(([0.0], np.cumsum(buffer, dtype=np.float64)))
    sums = cumulative[ends] - cumulative[starts]
    # Windows past the end of the buffer are empty; they average to 0.
    result = np.divide(sums, counts, out=np.zeros(new_length, dtype=np.float64), where=counts > 0)
    return result.astype(np.float32)


def float32_to_int16(buffer: np.ndarray) -> np.ndarray:
    """Clamp to [-1, 1] and scale by 32767."""
    clipped = np.clip(np.asarray(buffer, dtype=np.float32), -1.0, 1.0)
    return (clipped * 32767).astype(np.int16)


def encode_pcm_frame(block: np.ndarray, sample_rate: int, out_sample_rate: int) -> bytes:
    """Captured float32 block -> 16-bit little-endian PCM at the backend rate."""
    return float32_to_int16(downsample_buffer(block, sample_rate, out_sample_rate)).astype("<i2").tobytes()


def pcm16_to_wav(frames: bytes, sample_rate: int, channels: int = 1) -> bytes:
    out = io.BytesIO()
    with wave.open(out, "wb") as wav_file:
        wav_file.setnchannels(channels)
        wav_file.setsampwidth(2)
        wav_file.setframerate(sample_rate)
        wav_file.writeframes(frames)
    return out.getvalue()
