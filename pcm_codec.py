"""PCM conversion between host float samples and the 16-bit wire format.

Outbound (microphone -> Gemini): float32 in [-1, 1] at 16kHz -> int16 little-endian.
Inbound (Gemini -> speaker): int16 little-endian at 24kHz -> float32 PlaybackBuffer.

No resampling happens here. Callers capture at CAPTURE_SAMPLE_RATE and
play at PLAYBACK_SAMPLE_RATE.
"""

import base64
from dataclasses import dataclass

import numpy as np

CAPTURE_SAMPLE_RATE = 16000
PLAYBACK_SAMPLE_RATE = 24000
CAPTURE_MIME_TYPE = f"audio/pcm;rate={CAPTURE_SAMPLE_RATE}"

# Asymmetric int16 range: -32768 .. 32767
_NEGATIVE_SCALE = 32768.0
_POSITIVE_SCALE = 32767.0
_DECODE_SCALE = 32768.0

_WIRE_DTYPE = np.dtype('<i2')


@dataclass
class PlaybackBuffer:
    """Decoded audio ready to be scheduled on a playback context.

    channels has shape (channel_count, frame_count), dtype float32.
    """
    channels: np.ndarray
    sample_rate: int

    @property
    def channel_count(self) -> int:
        return self.channels.shape[0]

    @property
    def frame_count(self) -> int:
        return self.channels.shape[1]

    @property
    def duration(self) -> float:
        """Length in seconds."""
        return self.frame_count / self.sample_rate

    def mono(self) -> np.ndarray:
        """Mix down to a single float32 channel for a mono output device."""
        if self.channel_count == 1:
            return self.channels[0]
        return self.channels.mean(axis=0, dtype=np.float32)


def encode_outbound(samples) -> bytes:
    """Convert float samples to raw 16-bit signed little-endian PCM.

    Samples are clamped to [-1, 1]. Negative values scale by 32768 and
    non-negative values by 32767, then truncate toward zero.
    """
    s = np.asarray(samples, dtype=np.float64)
    s = np.nan_to_num(s, nan=0.0)
    s = np.clip(s, -1.0, 1.0)
    scaled = np.where(s < 0, s * _NEGATIVE_SCALE, s * _POSITIVE_SCALE)
    return np.trunc(scaled).astype(_WIRE_DTYPE).tobytes()


def decode_inbound(data: bytes, sample_rate: int = PLAYBACK_SAMPLE_RATE,
                   channel_count: int = 1) -> PlaybackBuffer:
    """Convert raw 16-bit PCM from the wire into a PlaybackBuffer.

    An odd trailing byte is dropped. Input with no complete frame yields a
    single frame of silence instead of failing.
    """
    if len(data) % 2:
        data = data[:-1]

    ints = np.frombuffer(data, dtype=_WIRE_DTYPE)
    frame_count = len(ints) // channel_count

    if frame_count == 0:
        return PlaybackBuffer(
            channels=np.zeros((channel_count, 1), dtype=np.float32),
            sample_rate=sample_rate,
        )

    interleaved = ints[:frame_count * channel_count].reshape(frame_count, channel_count)
    channels = (interleaved.T.astype(np.float32) / _DECODE_SCALE).astype(np.float32)
    return PlaybackBuffer(channels=np.ascontiguousarray(channels), sample_rate=sample_rate)


def base64_encode(data: bytes) -> str:
    """Raw bytes -> ASCII base64 text for JSON transport."""
    return base64.b64encode(data).decode('ascii')


def base64_decode(text: str) -> bytes:
    """Inverse of base64_encode."""
    return base64.b64decode(text)
