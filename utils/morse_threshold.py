"""Adaptive on/off threshold for normalized brightness samples."""

from __future__ import annotations

from collections import deque

from config import DEFAULT_DETECTION_THRESHOLD

HISTORY_SIZE = 30
MIN_HISTORY = 10
HYSTERESIS = 0.08

INITIAL_NOISE_FLOOR = 0.05
INITIAL_SIGNAL_PEAK = 0.5


def _clamp(value: float, lo: float, hi: float) -> float:
    return min(hi, max(lo, value))


class AdaptiveThreshold:
    """Track noise floor and signal peak and turn levels into on/off decisions.

    The noise floor follows low readings, the signal peak follows high
    readings, and the decision threshold sits between them at a point set
    by the user's sensitivity. Until enough samples have been seen (or when
    auto sensitivity is off) the fixed ``detection_threshold`` is used.
    """

    def __init__(
        self,
        detection_threshold: float = DEFAULT_DETECTION_THRESHOLD,
        auto_sensitivity: bool = True,
    ):
        self.detection_threshold = _clamp(float(detection_threshold), 0.0, 1.0)
        self.auto_sensitivity = bool(auto_sensitivity)

        self.noise_floor = INITIAL_NOISE_FLOOR
        self.signal_peak = INITIAL_SIGNAL_PEAK
        self.threshold = self.detection_threshold
        self.is_high = False
        self._history: deque[float] = deque(maxlen=HISTORY_SIZE)

    def set_detection_threshold(self, value: float) -> None:
        self.detection_threshold = _clamp(float(value), 0.0, 1.0)

    def reset(self) -> None:
        self.noise_floor = INITIAL_NOISE_FLOOR
        self.signal_peak = INITIAL_SIGNAL_PEAK
        self.threshold = self.detection_threshold
        self.is_high = False
        self._history.clear()

    @property
    def has_enough_data(self) -> bool:
        return len(self._history) >= MIN_HISTORY

    def update(self, level: float, detected: bool | None = None) -> bool:
        """Feed one sample; return True when the light is considered on.

        *detected* is the caller's debounced on/off state. The hysteresis
        band is placed around it, falling back to this tracker's previous
        decision when it is not given.
        """
        level = _clamp(float(level), 0.0, 1.0)

        if level < self.noise_floor * 1.5 or not self.has_enough_data:
            self.noise_floor = self.noise_floor * 0.95 + level * 0.05
        if level > self.signal_peak * 0.7:
            self.signal_peak = self.signal_peak * 0.9 + level * 0.1

        self._history.append(level)

        if self.auto_sensitivity and self.has_enough_data:
            span = max(0.1, self.signal_peak - self.noise_floor)
            self.threshold = self.noise_floor + span * (0.2 + self.detection_threshold * 0.4)
        else:
            self.threshold = self.detection_threshold

        reference = self.is_high if detected is None else detected
        # Different on/off levels keep a borderline reading from chattering.
        if reference:
            self.is_high = level > (self.threshold - HYSTERESIS)
        else:
            self.is_high = level > (self.threshold + HYSTERESIS)
        return self.is_high
