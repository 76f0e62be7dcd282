from __future__ import annotations

from collections import deque
from dataclasses import dataclass

# Previous 20 samples plus the newest one.
DEFAULT_HISTORY_CAPACITY = 21


@dataclass(frozen=True)
class ConfidenceSample:
    """Confidence of one accepted cycle, in percent."""

    timestamp: float
    value: float


class HistoryWindow:
    """Fixed-capacity FIFO of recent accepted confidence samples."""

    def __init__(self, capacity: int = DEFAULT_HISTORY_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("History capacity must be at least 1")
        self._samples: deque[ConfidenceSample] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._samples.maxlen or 0

    def append(self, sample: ConfidenceSample) -> None:
        # deque drops the oldest entry once maxlen is reached
        self._samples.append(sample)

    def snapshot(self) -> tuple[ConfidenceSample, ...]:
        return tuple(self._samples)

    def reset(self) -> None:
        self._samples.clear()

    def __len__(self) -> int:
        return len(self._samples)


__all__ = ["ConfidenceSample", "HistoryWindow", "DEFAULT_HISTORY_CAPACITY"]
