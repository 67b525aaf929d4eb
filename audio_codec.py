"""Conversions between float audio, PCM16 wire bytes and playable buffers.

Wire format in both directions is little-endian signed 16-bit mono PCM. The
microphone side runs at 16kHz, the speaker side at 24kHz; nothing in here
resamples. All functions copy their inputs, so callers may reuse their arrays.
"""

import base64
import binascii
from dataclasses import dataclass

import numpy as np

INPUT_SAMPLE_RATE = 16000
OUTPUT_SAMPLE_RATE = 24000
CHANNELS = 1
BYTES_PER_SAMPLE = 2  # 16-bit PCM

_PCM_DTYPE = np.dtype("<i2")
_PCM_SCALE = 32768.0

# RMS is tiny for normal speech; scale it up so the UI meter moves.
VOLUME_GAIN = 10.0


@dataclass(frozen=True)
class PlayableBuffer:
    """Decoded audio ready for the output device.

    samples has shape (frames, channels) and dtype float32.
    """
    samples: np.ndarray
    sample_rate: int
    channels: int

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        return self.frames / float(self.sample_rate)


def encode(samples) -> bytes:
    """Quantize float samples in [-1, 1] to PCM16 bytes.

    NaN becomes silence and anything outside [-1, 1] (including inf) is
    clamped, so a glitchy capture frame never aborts streaming.
    """
    data = np.array(samples, dtype=np.float64, copy=True).reshape(-1)
    data = np.nan_to_num(data, nan=0.0, posinf=1.0, neginf=-1.0)
    np.clip(data, -1.0, 1.0, out=data)
    pcm = np.clip(np.round(data * _PCM_SCALE), -32768, 32767).astype(_PCM_DTYPE)
    return pcm.tobytes()


def decode(payload: bytes) -> np.ndarray:
    """Inverse of encode(): PCM16 bytes to float32 samples in [-1, 1)."""
    usable = len(payload) - (len(payload) % BYTES_PER_SAMPLE)
    pcm = np.frombuffer(payload[:usable], dtype=_PCM_DTYPE)
    return pcm.astype(np.float32) / _PCM_SCALE


def build_playable_buffer(samples, sample_rate: int = OUTPUT_SAMPLE_RATE,
                          channels: int = CHANNELS) -> PlayableBuffer:
    """Allocate a (frames, channels) buffer and copy interleaved samples in."""
    if channels < 1:
        raise ValueError(f"channels must be >= 1, got {channels}")
    if sample_rate <= 0:
        raise ValueError(f"sample_rate must be positive, got {sample_rate}")

    flat = np.asarray(samples, dtype=np.float32).reshape(-1)
    frames = len(flat) // channels
    buffer = np.empty((frames, channels), dtype=np.float32)
    for ch in range(channels):
        buffer[:, ch] = flat[ch:frames * channels:channels]
    return PlayableBuffer(samples=buffer, sample_rate=sample_rate, channels=channels)


def compute_volume(samples) -> float:
    """RMS loudness of a frame scaled into [0, 1] for the UI meter."""
    data = np.asarray(samples, dtype=np.float64).reshape(-1)
    if data.size == 0:
        return 0.0
    data = np.nan_to_num(data, nan=0.0, posinf=1.0, neginf=-1.0)
    rms = float(np.sqrt(np.mean(data * data)))
    return max(0.0, min(rms * VOLUME_GAIN, 1.0))


def to_base64(data: bytes) -> str:
    return base64.b64encode(bytes(data)).decode("ascii")


def from_base64(text: str) -> bytes:
    """Decode base64 text, raising ValueError on malformed input."""
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, TypeError) as e:
        raise ValueError(f"invalid base64 payload: {e}") from e
