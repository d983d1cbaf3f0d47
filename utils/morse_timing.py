"""Timing analysis for received Morse pulses and gaps.

Online: `update_timing_estimates` runs a 2-means split over the recent
pulse window to track the dot length, and `classify_gap` /
`compute_gap_thresholds` run a 3-means split over recent gaps.

Offline: `analyze_signal_sequence` re-decodes the whole recorded
pulse/gap sequence once reception stops.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Iterable, Sequence

import numpy as np

# Dot duration bounds: ~40 WPM .. ~3 WPM.
MIN_DOT_DURATION = 0.03
MAX_DOT_DURATION = 0.4

# Dot estimate used before any pulse has been seen (~24 WPM).
DEFAULT_DOT_DURATION = 0.05

DASH_DOT_RATIO = 2.0
LETTER_GAP_RATIO = 1.8
WORD_GAP_RATIO = 5.0
MIN_WORD_GAP_RATIO = 4.5
MIN_GAP_SAMPLES = 5


class TimingConfidence(IntEnum):
    """How well the current dot estimate is supported by the data."""
    LEARNING = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3

    @property
    def label(self) -> str:
        return 'Learning...' if self is TimingConfidence.LEARNING else self.name.title()


class GapType(Enum):
    ELEMENT = 'element'
    LETTER = 'letter'
    WORD = 'word'


class PulseType(Enum):
    DOT = '.'
    DASH = '-'


@dataclass(frozen=True)
class SignalEvent:
    """A measured pulse (light on) or gap (light off) in seconds."""
    is_pulse: bool
    duration: float

    @classmethod
    def pulse(cls, duration: float) -> SignalEvent:
        return cls(True, float(duration))

    @classmethod
    def gap(cls, duration: float) -> SignalEvent:
        return cls(False, float(duration))


@dataclass(frozen=True)
class GapThresholds:
    letter_threshold: float
    word_threshold: float


@dataclass(frozen=True)
class TimingEstimate:
    dot_duration: float
    confidence: TimingConfidence
    wpm: float


@dataclass(frozen=True)
class VerificationResult:
    """Authoritative decode of a complete signal sequence."""
    morse: str
    signals: list[PulseType]
    dot_duration: float
    wpm: float
    confidence: TimingConfidence
    gap_info: str
    preamble_found: bool = True


def clamp_dot_duration(duration: float) -> float:
    return float(min(MAX_DOT_DURATION, max(MIN_DOT_DURATION, duration)))


def wpm_for_dot(dot_duration: float) -> float:
    """Words per minute for a dot length, rounded and clamped to 3-40."""
    return float(min(40.0, max(3.0, round(1.2 / max(dot_duration, 1e-6)))))


def classify_pulse(duration: float, dot_duration: float) -> PulseType:
    return PulseType.DOT if duration < dot_duration * DASH_DOT_RATIO else PulseType.DASH


def _two_means(samples: np.ndarray, iterations: int) -> tuple[float, float, int, int]:
    """Split pulse durations into short/long clusters.

    Centroids start at the min/max sample; each round reassigns samples to
    the nearer centroid.
    """
    dot_centroid = float(samples.min())
    dash_centroid = float(samples.max())
    dot_count = dash_count = 0

    for _ in range(iterations):
        midpoint = (dot_centroid + dash_centroid) / 2.0
        short = samples[samples < midpoint]
        long = samples[samples >= midpoint]
        dot_count = int(short.size)
        dash_count = int(long.size)
        if dot_count:
            dot_centroid = float(short.mean())
        if dash_count:
            dash_centroid = float(long.mean())

    return dot_centroid, dash_centroid, dot_count, dash_count


def _lower_half_median(sorted_samples: np.ndarray) -> float:
    lower = sorted_samples[: sorted_samples.size // 2 + 1]
    return float(lower[lower.size // 2])


def update_timing_estimates(
    pulse_durations: Sequence[float],
    current_estimate: float,
) -> TimingEstimate:
    """Re-estimate the dot duration from the recent pulse window."""
    if len(pulse_durations) < 3:
        dot = current_estimate if current_estimate > 0 else DEFAULT_DOT_DURATION
        dot = clamp_dot_duration(dot)
        return TimingEstimate(dot, TimingConfidence.LEARNING, wpm_for_dot(dot))

    samples = np.sort(np.asarray(pulse_durations, dtype=np.float64))
    dot_centroid, dash_centroid, dot_count, dash_count = _two_means(samples, iterations=5)

    ratio = dash_centroid / max(0.001, dot_centroid)
    separated = dot_count > 0 and dash_count > 0 and 1.5 < ratio < 5.0
    count = int(samples.size)

    if separated:
        dot = dot_centroid
        if count >= 10 and 2.0 < ratio < 5.0:
            confidence = TimingConfidence.HIGH
        elif count >= 5:
            confidence = TimingConfidence.MEDIUM
        else:
            confidence = TimingConfidence.LOW
    else:
        dot = _lower_half_median(samples)
        confidence = TimingConfidence.LOW

    dot = clamp_dot_duration(dot)
    return TimingEstimate(dot, confidence, wpm_for_dot(dot))


def compute_gap_thresholds(gap_durations: Sequence[float], dot_duration: float) -> GapThresholds:
    """Find element/letter/word boundaries with a 3-means split.

    Centroids are seeded at 1x, 3x and 7x the dot length and kept in
    order after every round. Thresholds never drop below 1.8 / 4.5 units.
    """
    if len(gap_durations) < MIN_GAP_SAMPLES:
        return GapThresholds(
            letter_threshold=dot_duration * LETTER_GAP_RATIO,
            word_threshold=dot_duration * WORD_GAP_RATIO,
        )

    gaps = np.sort(np.asarray(gap_durations, dtype=np.float64))
    centroids = np.array([dot_duration * 1.0, dot_duration * 3.0, dot_duration * 7.0])

    for _ in range(10):
        distances = np.abs(gaps[:, None] - centroids[None, :])
        # argmin picks the first (shortest) cluster on ties.
        assignment = np.argmin(distances, axis=1)
        for idx in range(3):
            members = gaps[assignment == idx]
            if members.size:
                centroids[idx] = float(members.mean())

        if centroids[1] <= centroids[0]:
            centroids[1] = centroids[0] * 2.5
        if centroids[2] <= centroids[1]:
            centroids[2] = centroids[1] * 2.0

    letter_threshold = (centroids[0] + centroids[1]) / 2.0
    word_threshold = (centroids[1] + centroids[2]) / 2.0

    return GapThresholds(
        letter_threshold=float(max(letter_threshold, dot_duration * LETTER_GAP_RATIO)),
        word_threshold=float(max(word_threshold, dot_duration * MIN_WORD_GAP_RATIO)),
    )


def classify_gap_with(duration: float, thresholds: GapThresholds) -> GapType:
    if duration >= thresholds.word_threshold:
        return GapType.WORD
    if duration >= thresholds.letter_threshold:
        return GapType.LETTER
    return GapType.ELEMENT


def classify_gap(duration: float, gap_durations: Sequence[float], dot_duration: float) -> GapType:
    """Classify a gap against thresholds learned from recent gaps."""
    return classify_gap_with(duration, compute_gap_thresholds(gap_durations, dot_duration))


def compute_optimal_dot_duration(pulses: Sequence[float]) -> float:
    """Best single dot length for a complete set of pulses."""
    if len(pulses) == 0:
        return 0.1
    if len(pulses) < 2:
        return clamp_dot_duration(pulses[0])

    samples = np.sort(np.asarray(pulses, dtype=np.float64))
    dot_centroid, dash_centroid, _, _ = _two_means(samples, iterations=10)

    ratio = dash_centroid / max(0.001, dot_centroid)
    if 1.5 < ratio < 5.0:
        return clamp_dot_duration(dot_centroid)
    return clamp_dot_duration(_lower_half_median(samples))


def _letter_ratio_from_jumps(ratios: np.ndarray) -> float:
    """Letter boundary at the largest relative jump between sorted gap ratios."""
    if ratios.size < 2:
        return LETTER_GAP_RATIO

    jumps = ratios[1:] / np.maximum(0.1, ratios[:-1])
    jump_index = int(np.argmax(jumps))
    if float(jumps[jump_index]) > 1.5:
        return float((ratios[jump_index] + ratios[jump_index + 1]) / 2.0)
    return LETTER_GAP_RATIO


def append_separator(morse: str, gap_type: GapType) -> str:
    """Append a letter/word separator unless one is already pending."""
    if gap_type is GapType.ELEMENT or not morse or morse.endswith((' ', '/')):
        return morse
    return morse + (' / ' if gap_type is GapType.WORD else ' ')


def render_sequence(
    sequence: Iterable[SignalEvent],
    dot_duration: float,
    gap_classifier,
) -> str:
    """Rebuild a Morse string from pulse/gap events.

    *gap_classifier* maps a gap duration to a `GapType`.
    """
    morse = ''
    for event in sequence:
        if event.is_pulse:
            morse += classify_pulse(event.duration, dot_duration).value
        else:
            morse = append_separator(morse, gap_classifier(event.duration))
    return morse


def strip_preamble(morse: str, pattern: str) -> str | None:
    """Return the text after *pattern*, or None when it is absent."""
    idx = morse.find(pattern)
    if idx < 0:
        return None
    return morse[idx + len(pattern):].strip()


def analyze_signal_sequence(
    sequence: Sequence[SignalEvent],
    dedicated_source_mode: bool = False,
    preamble_pattern: str = '',
) -> VerificationResult:
    """Authoritative decode of a complete pulse/gap sequence.

    Uses one dot length for all pulses and a data-driven letter/word
    boundary instead of the fixed online ratios.
    """
    pulses = [ev.duration for ev in sequence if ev.is_pulse]
    gaps = [ev.duration for ev in sequence if not ev.is_pulse]

    if not pulses:
        return VerificationResult(
            morse='',
            signals=[],
            dot_duration=0.1,
            wpm=12.0,
            confidence=TimingConfidence.LEARNING,
            gap_info='',
            preamble_found=not dedicated_source_mode,
        )

    dot = compute_optimal_dot_duration(pulses)
    ratios = np.sort(np.asarray(gaps, dtype=np.float64) / dot)

    if ratios.size >= 2:
        letter_ratio = _letter_ratio_from_jumps(ratios)
        word_ratio = max(WORD_GAP_RATIO, letter_ratio * 2.5)
    else:
        letter_ratio = LETTER_GAP_RATIO
        word_ratio = WORD_GAP_RATIO

    thresholds = GapThresholds(letter_ratio * dot, word_ratio * dot)
    morse = render_sequence(sequence, dot, lambda d: classify_gap_with(d, thresholds))

    preamble_found = True
    if dedicated_source_mode and preamble_pattern:
        remainder = strip_preamble(morse, preamble_pattern)
        preamble_found = remainder is not None
        morse = remainder or ''

    signals = [classify_pulse(duration, dot) for duration in pulses]

    if len(pulses) >= 10:
        confidence = TimingConfidence.HIGH
    elif len(pulses) >= 5:
        confidence = TimingConfidence.MEDIUM
    else:
        confidence = TimingConfidence.LOW

    gap_info = format_gap_info(thresholds, dot)

    return VerificationResult(
        morse=morse.strip(),
        signals=signals,
        dot_duration=dot,
        wpm=wpm_for_dot(dot),
        confidence=confidence,
        gap_info=gap_info,
        preamble_found=preamble_found,
    )


def format_gap_info(thresholds: GapThresholds, dot_duration: float) -> str:
    """Human-readable gap thresholds for the debug readout."""
    letter_ms = int(thresholds.letter_threshold * 1000)
    word_ms = int(thresholds.word_threshold * 1000)
    letter_ratio = thresholds.letter_threshold / max(dot_duration, 1e-6)
    return f'Letter: {letter_ms}ms ({letter_ratio:.1f}x), Word: {word_ms}ms'
