"""
Adaptive match threshold.

Single Responsibility: Track recent similarity scores and derive the
threshold a live block must reach to count as a match.
"""
from collections import deque
from typing import Iterable, List, Tuple

import numpy as np

MIN_HISTORY = 10
IQR_MULTIPLIER = 1.2
THRESHOLD_BOUNDS = (0.70, 0.95)
HISTORY_CAPACITY = 50


class RingBuffer:
    """Fixed-capacity FIFO of floats; appending to a full buffer evicts the oldest."""

    def __init__(self, capacity: int = HISTORY_CAPACITY, values: Iterable[float] = ()):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._values = deque(values, maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._values.maxlen

    def append(self, value: float) -> None:
        self._values.append(float(value))

    def snapshot(self) -> List[float]:
        return list(self._values)

    def clear(self) -> None:
        self._values.clear()

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self):
        return iter(list(self._values))


def update_and_get_threshold(
    history: Iterable[float],
    baseline: float,
    min_history: int = MIN_HISTORY,
    multiplier: float = IQR_MULTIPLIER,
    bounds: Tuple[float, float] = THRESHOLD_BOUNDS
) -> float:
    """
    Robust threshold from recent similarities.

    With fewer than min_history values the baseline is returned unchanged.
    Otherwise median + multiplier * IQR, clamped to bounds. Quartiles are
    read straight from the sorted snapshot (no interpolation).

    Args:
        history: Recent similarity scores, oldest first
        baseline: Configured threshold used during cold start
        min_history: Values required before adapting
        multiplier: IQR scale factor
        bounds: (low, high) clamp for the adapted threshold

    Returns:
        Threshold to apply to the next comparison
    """
    values = sorted(float(v) for v in history)
    n = len(values)
    if n < min_history:
        return baseline

    median = values[n // 2]
    q25 = values[n // 4]
    q75 = values[(n * 3) // 4]
    threshold = median + (q75 - q25) * multiplier

    low, high = bounds
    return float(max(low, min(high, threshold)))


class AdaptiveThreshold:
    """
    Owns the similarity history for one detection session.

    When disabled, threshold() always returns the baseline but the
    history is still recorded so it can be inspected.
    """

    def __init__(
        self,
        baseline: float,
        enabled: bool = True,
        capacity: int = HISTORY_CAPACITY,
        min_history: int = MIN_HISTORY,
        multiplier: float = IQR_MULTIPLIER,
        bounds: Tuple[float, float] = THRESHOLD_BOUNDS
    ):
        self.baseline = baseline
        self.enabled = enabled
        self.min_history = min_history
        self.multiplier = multiplier
        self.bounds = bounds
        self.history = RingBuffer(capacity)

    def record(self, similarity: float) -> None:
        if not np.isfinite(similarity):
            raise ValueError(f"Similarity must be finite, got {similarity}")
        self.history.append(similarity)

    def threshold(self) -> float:
        if not self.enabled:
            return self.baseline
        return update_and_get_threshold(
            self.history.snapshot(), self.baseline, self.min_history, self.multiplier, self.bounds
        )

    def update(self, similarity: float) -> float:
        """Record one similarity and return the threshold to judge it by."""
        self.record(similarity)
        return self.threshold()

    def reset(self) -> None:
        self.history.clear()
