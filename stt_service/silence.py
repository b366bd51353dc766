from __future__ import annotations

import time
from typing import Callable, Optional

import numpy as np

MAX_AMPLITUDE = 32768.0


def whole_samples(pcm_bytes: bytes) -> bytes:
    """Drop a trailing odd byte so the buffer holds complete 16-bit samples."""
    return pcm_bytes[: len(pcm_bytes) - (len(pcm_bytes) % 2)]


def frame_level(pcm_bytes: bytes) -> float:
    """Mean absolute amplitude of 16-bit little-endian PCM, normalized to 0..1."""
    samples = np.frombuffer(whole_samples(pcm_bytes), dtype="<i2")
    if samples.size == 0:
        return 0.0
    return float(np.abs(samples.astype(np.int32)).mean()) / MAX_AMPLITUDE


def frame_duration_ms(pcm_bytes: bytes, sample_rate: int = 16000) -> float:
    return (len(pcm_bytes) // 2) / sample_rate * 1000.0


class SilenceDetector:
    """Tracks continuous silence across frames.

    ``update`` returns True once silence has lasted longer than
    ``duration_ms``; the timer is then reset so the next boundary needs a
    fresh stretch of silence.
    """

    def __init__(
        self,
        threshold: float = 0.005,
        duration_ms: int = 800,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.duration_s = duration_ms / 1000.0
        self._clock = clock
        self.silence_start: Optional[float] = None

    def update(self, level: float) -> bool:
        if level >= self.threshold:
            self.silence_start = None
            return False

        now = self._clock()
        if self.silence_start is None:
            self.silence_start = now
            return False
        if now - self.silence_start > self.duration_s:
            self.silence_start = None
            return True
        return False

    def reset(self) -> None:
        self.silence_start = None
