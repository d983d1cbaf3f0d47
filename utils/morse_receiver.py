"""Optical Morse receiver.

Signal chain (receive side):
- normalized brightness samples from the camera collaborator
- adaptive threshold + hysteresis (`utils.morse_threshold`)
- 2-sample debounce and pulse/gap segmentation (this module)
- online dot/dash and gap classification (`utils.morse_timing`)
- final verification over the full pulse/gap sequence on stop

`MorseReceiver` is not thread-safe: exactly one decode context owns it.
`light_decoder_thread` is that context for the web service, fed through a
single FIFO so samples and control commands keep their relative order.
"""

from __future__ import annotations

import contextlib
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable

from config import (
    DEFAULT_DETECTION_THRESHOLD,
    GAP_HISTORY_SIZE,
    PULSE_HISTORY_SIZE,
)
from utils.logging import get_logger
from utils.morse import (
    PREAMBLE_PATTERN,
    MessageDirection,
    MessageHistory,
    MorseMessage,
    decode_morse,
)
from utils.morse_preamble import PreambleSynchronizer
from utils.morse_threshold import AdaptiveThreshold
from utils.morse_timing import (
    DEFAULT_DOT_DURATION,
    LETTER_GAP_RATIO,
    WORD_GAP_RATIO,
    GapThresholds,
    GapType,
    PulseType,
    SignalEvent,
    TimingConfidence,
    VerificationResult,
    analyze_signal_sequence,
    append_separator,
    classify_gap_with,
    classify_pulse,
    compute_gap_thresholds,
    format_gap_info,
    render_sequence,
    strip_preamble,
    update_timing_estimates,
)

logger = get_logger('flashmorse.receiver')

# Consecutive samples required before a high/low transition is accepted.
MIN_SAMPLES_FOR_TRANSITION = 2

MIN_PULSE_DURATION = 0.015
MIN_PULSE_DOT_FRACTION = 0.15


class DetectorPhase(Enum):
    IDLE = 'idle'
    WAITING = 'waiting_for_signal'
    IN_PULSE = 'in_pulse'
    IN_GAP = 'in_gap'


@dataclass(frozen=True, eq=False)
class DetectorState:
    """Segmenter state. Compared by identity so each gap is a distinct occurrence."""
    phase: DetectorPhase
    start_time: float = 0.0
    last_pulse_duration: float = 0.0

    @classmethod
    def idle(cls) -> DetectorState:
        return cls(DetectorPhase.IDLE)

    @classmethod
    def waiting(cls) -> DetectorState:
        return cls(DetectorPhase.WAITING)

    @classmethod
    def in_pulse(cls, start_time: float) -> DetectorState:
        return cls(DetectorPhase.IN_PULSE, start_time)

    @classmethod
    def in_gap(cls, start_time: float, last_pulse_duration: float) -> DetectorState:
        return cls(DetectorPhase.IN_GAP, start_time, last_pulse_duration)


@dataclass
class _GapTimer:
    """Pending re-check of a trailing gap, bound to one `IN_GAP` state."""
    state: DetectorState
    thresholds: GapThresholds
    letter_due: float
    word_due: float
    letter_checked: bool = False


class MorseReceiver:
    """Real-time brightness-to-Morse decoder with self-calibrating timing."""

    def __init__(
        self,
        detection_threshold: float = DEFAULT_DETECTION_THRESHOLD,
        auto_sensitivity: bool = True,
        dedicated_source_mode: bool = False,
        history: MessageHistory | None = None,
        pulse_history_size: int = PULSE_HISTORY_SIZE,
        gap_history_size: int = GAP_HISTORY_SIZE,
    ):
        self._tracker = AdaptiveThreshold(detection_threshold, auto_sensitivity)
        self._sync = PreambleSynchronizer(PREAMBLE_PATTERN)
        self._pulse_history_size = max(3, int(pulse_history_size))
        self._gap_history_size = max(5, int(gap_history_size))

        self.history = history if history is not None else MessageHistory()
        self.dedicated_source_mode = bool(dedicated_source_mode)
        self.is_receiving = False
        self.state = DetectorState.idle()

        self._reset_session()

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    def start_receiving(self) -> None:
        self.is_receiving = True
        self._reset_session()
        logger.info(
            'Receiving started (dedicated=%s, threshold=%.2f, auto=%s)',
            self.dedicated_source_mode,
            self._tracker.detection_threshold,
            self._tracker.auto_sensitivity,
        )

    def stop_receiving(self) -> MorseMessage | None:
        """Stop, run the final verification pass and record the message.

        Returns None when nothing was decoded.
        """
        self.is_receiving = False
        self._gap_timer = None
        self.state = DetectorState.idle()
        self.light_detected = False

        self.perform_final_verification()

        morse = self.detected_morse.strip()
        if not morse:
            logger.info('Receiving stopped, nothing decoded')
            return None

        message = MorseMessage(
            text=self.decoded_text,
            morse=morse,
            direction=MessageDirection.RECEIVED,
        )
        self.history.add(message)
        logger.info('Receiving stopped: %r (%s)', message.text, message.morse)
        return message

    def clear(self) -> None:
        """Drop everything decoded so far; keep receiving if active."""
        self._reset_session()

    def reset(self) -> None:
        """Drop the session and restore default detection settings.

        Receiving carries on if it was active; the detector goes back to
        waiting for a signal. Nothing is verified or added to history.
        """
        self._tracker.set_detection_threshold(DEFAULT_DETECTION_THRESHOLD)
        self._tracker.auto_sensitivity = True
        self.dedicated_source_mode = False
        self._reset_session()

    def set_dedicated_source_mode(self, enabled: bool) -> None:
        self.dedicated_source_mode = bool(enabled)
        self._sync.reset()
        self.preamble_detected = not self.dedicated_source_mode

    def set_detection_threshold(self, value: float) -> None:
        self._tracker.set_detection_threshold(value)

    def set_auto_sensitivity(self, enabled: bool) -> None:
        self._tracker.auto_sensitivity = bool(enabled)

    def _reset_session(self) -> None:
        self._gap_timer: _GapTimer | None = None
        self._sequence: list[SignalEvent] = []
        self._pulse_history: deque[float] = deque(maxlen=self._pulse_history_size)
        self._gap_history: deque[float] = deque(maxlen=self._gap_history_size)
        self._high_count = 0
        self._low_count = 0
        self._tracker.reset()
        self._sync.reset()

        self.detected_morse = ''
        self.signals: list[PulseType] = []
        self.estimated_dot_duration = DEFAULT_DOT_DURATION
        self.confidence = TimingConfidence.LEARNING
        self.estimated_wpm = 0.0
        self.gap_info = ''
        self.level = 0.0
        self.light_detected = False
        self.preamble_detected = not self.dedicated_source_mode
        self.state = DetectorState.waiting() if self.is_receiving else DetectorState.idle()

    # ------------------------------------------------------------------
    # Observed state
    # ------------------------------------------------------------------

    @property
    def decoded_text(self) -> str:
        return decode_morse(self.detected_morse.strip())

    @property
    def signal_sequence(self) -> tuple[SignalEvent, ...]:
        return tuple(self._sequence)

    @property
    def detection_threshold(self) -> float:
        return self._tracker.detection_threshold

    @property
    def auto_sensitivity(self) -> bool:
        return self._tracker.auto_sensitivity

    def snapshot(self) -> dict[str, Any]:
        """Read-only view of everything the UI displays."""
        return {
            'receiving': self.is_receiving,
            'level': round(self.level, 4),
            'light_detected': self.light_detected,
            'detector_state': self.state.phase.value,
            'detected_morse': self.detected_morse,
            'decoded_text': self.decoded_text,
            'preamble_detected': self.preamble_detected,
            'dedicated_source_mode': self.dedicated_source_mode,
            'detection_threshold': self._tracker.detection_threshold,
            'auto_sensitivity': self._tracker.auto_sensitivity,
            'confidence': self.confidence.label,
            'wpm': self.estimated_wpm,
            'dot_ms': round(self.estimated_dot_duration * 1000.0, 1),
            'gap_info': self.gap_info,
            'threshold': round(self._tracker.threshold, 4),
            'noise_floor': round(self._tracker.noise_floor, 4),
            'signal_peak': round(self._tracker.signal_peak, 4),
            'pulse_count': sum(1 for ev in self._sequence if ev.is_pulse),
            'gap_count': sum(1 for ev in self._sequence if not ev.is_pulse),
        }

    def _update_event(self) -> dict[str, Any]:
        return {
            'type': 'morse_update',
            'morse': self.detected_morse,
            'text': self.decoded_text,
            'confidence': self.confidence.label,
            'wpm': self.estimated_wpm,
            'preamble_detected': self.preamble_detected,
        }

    # ------------------------------------------------------------------
    # Sample processing
    # ------------------------------------------------------------------

    def on_sample(self, level: float, timestamp: float) -> list[dict[str, Any]]:
        """Process one brightness sample and return UI events."""
        self.level = float(level)
        events: list[dict[str, Any]] = []
        if not self.is_receiving:
            return events

        self._service_gap_timer(timestamp, events)

        is_high = self._tracker.update(level, self.light_detected)
        if is_high:
            self._high_count += 1
            self._low_count = 0
        else:
            self._low_count += 1
            self._high_count = 0

        self._advance(is_high, timestamp, events)
        return events

    def tick(self, now: float) -> list[dict[str, Any]]:
        """Service the gap timer when no sample has arrived (same clock as samples)."""
        events: list[dict[str, Any]] = []
        if self.is_receiving:
            self._service_gap_timer(now, events)
        return events

    def _advance(self, is_high: bool, timestamp: float, events: list[dict[str, Any]]) -> None:
        phase = self.state.phase

        if phase is DetectorPhase.IDLE:
            self.state = DetectorState.waiting()

        elif phase is DetectorPhase.WAITING:
            if is_high and self._high_count >= MIN_SAMPLES_FOR_TRANSITION:
                self.light_detected = True
                self.state = DetectorState.in_pulse(timestamp)
                self._gap_timer = None

        elif phase is DetectorPhase.IN_PULSE:
            if not is_high and self._low_count >= MIN_SAMPLES_FOR_TRANSITION:
                self.light_detected = False
                duration = timestamp - self.state.start_time

                min_duration = max(MIN_PULSE_DURATION, self.estimated_dot_duration * MIN_PULSE_DOT_FRACTION)
                if duration >= min_duration:
                    self._process_pulse(duration, events)
                else:
                    logger.debug('Rejected %.1fms pulse as noise', duration * 1000.0)

                self.state = DetectorState.in_gap(timestamp, duration)
                self._start_gap_timer(timestamp)

        elif phase is DetectorPhase.IN_GAP:
            if is_high and self._high_count >= MIN_SAMPLES_FOR_TRANSITION:
                self.light_detected = True
                self._process_gap(timestamp - self.state.start_time, events)
                self.state = DetectorState.in_pulse(timestamp)
                self._gap_timer = None

    def _process_pulse(self, duration: float, events: list[dict[str, Any]]) -> None:
        self._sequence.append(SignalEvent.pulse(duration))
        self._pulse_history.append(duration)

        previous = self.confidence
        estimate = update_timing_estimates(list(self._pulse_history), self.estimated_dot_duration)
        self.estimated_dot_duration = estimate.dot_duration
        self.confidence = estimate.confidence
        self.estimated_wpm = estimate.wpm

        symbol = classify_pulse(duration, self.estimated_dot_duration)
        self.signals.append(symbol)
        events.append({
            'type': 'morse_element',
            'element': symbol.value,
            'duration_ms': round(duration * 1000.0, 1),
        })

        if previous < TimingConfidence.MEDIUM <= self.confidence:
            self._reclassify(events)
            return

        if self.dedicated_source_mode and not self.preamble_detected:
            remainder = self._sync.feed(symbol.value)
            if remainder is None:
                return
            self._mark_synchronized(remainder, events)
        else:
            self.detected_morse += symbol.value
        events.append(self._update_event())

    def _process_gap(self, duration: float, events: list[dict[str, Any]]) -> None:
        self._sequence.append(SignalEvent.gap(duration))
        self._gap_history.append(duration)

        dot = self.estimated_dot_duration
        if duration >= dot * WORD_GAP_RATIO:
            gap_type = GapType.WORD
        elif duration >= dot * LETTER_GAP_RATIO:
            gap_type = GapType.LETTER
        else:
            gap_type = GapType.ELEMENT

        events.append({
            'type': 'morse_gap',
            'gap': gap_type.value,
            'duration_ms': round(duration * 1000.0, 1),
        })
        self._apply_separator(gap_type, events)

    def _apply_separator(self, gap_type: GapType, events: list[dict[str, Any]]) -> None:
        if self.dedicated_source_mode and not self.preamble_detected:
            return

        current = self.detected_morse
        if gap_type is GapType.WORD and current.endswith(' ') and not current.endswith('/ '):
            # A letter separator is already pending for this gap; widen it.
            updated = current[:-1] + ' / '
        else:
            updated = append_separator(current, gap_type)

        if updated != current:
            self.detected_morse = updated
            events.append(self._update_event())

    def _mark_synchronized(self, remainder: str, events: list[dict[str, Any]]) -> None:
        self.preamble_detected = True
        self.detected_morse = remainder
        logger.info('Preamble %s detected, decoding message', PREAMBLE_PATTERN)
        events.append({'type': 'morse_sync', 'preamble_detected': True})

    # ------------------------------------------------------------------
    # Gap finalization timer
    # ------------------------------------------------------------------

    def _start_gap_timer(self, start_time: float) -> None:
        thresholds = compute_gap_thresholds(list(self._gap_history), self.estimated_dot_duration)
        letter_due = start_time + thresholds.letter_threshold
        word_due = letter_due + max(0.1, thresholds.word_threshold - thresholds.letter_threshold)
        self._gap_timer = _GapTimer(self.state, thresholds, letter_due, word_due)
        self.gap_info = format_gap_info(thresholds, self.estimated_dot_duration)

    def _service_gap_timer(self, now: float, events: list[dict[str, Any]]) -> None:
        timer = self._gap_timer
        if timer is None:
            return
        # Only act on the exact gap occurrence the timer was armed for.
        if timer.state is not self.state:
            self._gap_timer = None
            return

        start = self.state.start_time
        gap = now - start

        if not timer.letter_checked and now >= timer.letter_due:
            timer.letter_checked = True
            elapsed = max(gap, timer.letter_due - start)
            if classify_gap_with(elapsed, timer.thresholds) is not GapType.ELEMENT:
                self._apply_separator(GapType.LETTER, events)

        if timer.letter_checked and now >= timer.word_due:
            self._gap_timer = None
            elapsed = max(gap, timer.word_due - start)
            if classify_gap_with(elapsed, timer.thresholds) is GapType.WORD:
                self._apply_separator(GapType.WORD, events)

    # ------------------------------------------------------------------
    # Reclassification / verification
    # ------------------------------------------------------------------

    def _reclassify(self, events: list[dict[str, Any]]) -> None:
        """Re-derive every symbol and separator with the improved dot estimate."""
        dot = self.estimated_dot_duration
        thresholds = compute_gap_thresholds(list(self._gap_history), dot)
        morse = render_sequence(self._sequence, dot, lambda d: classify_gap_with(d, thresholds))
        self.signals = [classify_pulse(ev.duration, dot) for ev in self._sequence if ev.is_pulse]

        if self.dedicated_source_mode:
            self._sync.reset()
            remainder = strip_preamble(morse, PREAMBLE_PATTERN)
            if remainder is None:
                remainder = self._sync.feed(''.join(sym.value for sym in self.signals))
            if remainder is None:
                self.preamble_detected = False
                self.detected_morse = ''
            else:
                self._sync.synchronized = True
                if self.preamble_detected:
                    self.detected_morse = remainder
                else:
                    self._mark_synchronized(remainder, events)
        else:
            self.detected_morse = morse

        logger.debug(
            'Reclassified %d events at %.1fms dot (%s)',
            len(self._sequence), dot * 1000.0, self.confidence.label,
        )
        events.append({
            'type': 'morse_reclassified',
            'dot_ms': round(dot * 1000.0, 1),
            'confidence': self.confidence.label,
        })
        events.append(self._update_event())

    def perform_final_verification(self) -> VerificationResult | None:
        """Re-decode the complete sequence; the result replaces the online decode."""
        if len(self._sequence) < 2:
            return None

        result = analyze_signal_sequence(
            self._sequence,
            dedicated_source_mode=self.dedicated_source_mode,
            preamble_pattern=PREAMBLE_PATTERN,
        )
        self.estimated_dot_duration = result.dot_duration
        self.estimated_wpm = result.wpm
        self.confidence = result.confidence
        self.gap_info = result.gap_info
        self.detected_morse = result.morse
        self.signals = list(result.signals)
        if self.dedicated_source_mode:
            self.preamble_detected = result.preamble_found
        return result

    def reprocess_recording(self, samples: Iterable[tuple[float, float]]) -> VerificationResult | None:
        """Replay recorded ``(level, timestamp)`` pairs through `on_sample`."""
        samples = list(samples)
        if len(samples) < 2:
            return None

        was_receiving = self.is_receiving
        self.is_receiving = True
        self._reset_session()

        for level, timestamp in samples:
            self.on_sample(float(level), float(timestamp))

        self.is_receiving = was_receiving
        self._gap_timer = None
        result = self.perform_final_verification()
        self.state = DetectorState.waiting() if was_receiving else DetectorState.idle()
        self.light_detected = False
        logger.info('Reprocessed %d samples: %r', len(samples), self.decoded_text)
        return result


# ---------------------------------------------------------------------------
# Decode context
# ---------------------------------------------------------------------------

SCOPE_INTERVAL = 0.10


def coerce_bool(value: Any, default: bool = False) -> bool:
    """Convert arbitrary JSON-ish values to bool."""
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    text = str(value).strip().lower()
    if text in {'1', 'true', 'yes', 'on'}:
        return True
    if text in {'0', 'false', 'no', 'off'}:
        return False
    return default


def _put_event(output_queue: queue.Queue, event: dict[str, Any]) -> None:
    with contextlib.suppress(queue.Full):
        output_queue.put_nowait(event)


def _reply(cmd: dict[str, Any], payload: dict[str, Any]) -> None:
    reply_queue = cmd.get('reply')
    if reply_queue is not None:
        with contextlib.suppress(queue.Full):
            reply_queue.put_nowait(payload)


def apply_receiver_config(receiver: MorseReceiver, cfg: dict[str, Any]) -> None:
    """Apply whichever detection settings are present in *cfg*."""
    if 'detection_threshold' in cfg:
        receiver.set_detection_threshold(float(cfg['detection_threshold']))
    if 'auto_sensitivity' in cfg:
        receiver.set_auto_sensitivity(coerce_bool(cfg['auto_sensitivity'], True))
    if 'dedicated_source_mode' in cfg:
        receiver.set_dedicated_source_mode(coerce_bool(cfg['dedicated_source_mode'], False))


def _handle_command(
    receiver: MorseReceiver,
    cmd: dict[str, Any],
    output_queue: queue.Queue,
) -> bool:
    """Run one control command; return False to request shutdown."""
    action = str(cmd.get('cmd', '')).strip().lower()

    if action in {'shutdown', 'exit'}:
        _reply(cmd, {'status': 'shutdown'})
        return False

    message: MorseMessage | None = None
    result: VerificationResult | None = None

    if action == 'start':
        apply_receiver_config(receiver, cmd)
        receiver.start_receiving()
    elif action == 'stop':
        message = receiver.stop_receiving()
        if message is not None:
            _put_event(output_queue, {'type': 'morse_message', 'message': message.to_dict()})
    elif action == 'clear':
        receiver.clear()
    elif action == 'reset':
        receiver.reset()
    elif action == 'config':
        apply_receiver_config(receiver, cmd)
    elif action == 'replay':
        result = receiver.reprocess_recording(cmd.get('samples') or [])
    elif action != 'snapshot':
        logger.warning('Unknown receiver command: %s', action)
        _reply(cmd, {'status': 'error', 'message': f'unknown command {action!r}'})
        return True

    snapshot = receiver.snapshot()
    _put_event(output_queue, {'type': 'morse_state', 'command': action, **snapshot})
    _reply(cmd, {
        'status': 'ok',
        'message': message.to_dict() if message else None,
        'verified': result is not None,
        'snapshot': snapshot,
    })
    return True


def light_decoder_thread(
    inbox: queue.Queue,
    output_queue: queue.Queue,
    stop_event: threading.Event,
    decoder_config: dict[str, Any] | None = None,
    history: MessageHistory | None = None,
    on_snapshot: Callable[[dict[str, Any]], None] | None = None,
) -> None:
    """Own a `MorseReceiver` and feed it from *inbox* in arrival order.

    Inbox items are ``(level, timestamp)`` samples or ``{'cmd': ...}``
    control dicts (with an optional ``reply`` queue).
    """
    cfg = dict(decoder_config or {})
    receiver = MorseReceiver(
        detection_threshold=float(cfg.get('detection_threshold', DEFAULT_DETECTION_THRESHOLD)),
        auto_sensitivity=coerce_bool(cfg.get('auto_sensitivity', True), True),
        dedicated_source_mode=coerce_bool(cfg.get('dedicated_source_mode', False), False),
        history=history,
    )

    last_scope = 0.0
    # Maps wall time onto the sample clock so idle ticks stay in the
    # timestamps' own time base.
    last_sample_ts: float | None = None
    last_sample_wall = 0.0

    def _publish(events: list[dict[str, Any]], force_scope: bool = False) -> None:
        nonlocal last_scope
        for event in events:
            _put_event(output_queue, event)
        now = time.monotonic()
        if force_scope or now - last_scope >= SCOPE_INTERVAL:
            last_scope = now
            snapshot = receiver.snapshot()
            if on_snapshot is not None:
                on_snapshot(snapshot)
            _put_event(output_queue, {'type': 'scope', **snapshot})

    try:
        while not stop_event.is_set():
            try:
                item = inbox.get(timeout=0.20)
            except queue.Empty:
                if last_sample_ts is not None:
                    now_ts = last_sample_ts + (time.monotonic() - last_sample_wall)
                    _publish(receiver.tick(now_ts))
                else:
                    _publish([])
                continue

            if isinstance(item, dict):
                keep_running = _handle_command(receiver, item, output_queue)
                if str(item.get('cmd', '')).lower() in {'start', 'clear', 'reset', 'replay'}:
                    last_sample_ts = None
                _publish([], force_scope=True)
                if not keep_running:
                    break
                continue

            try:
                level, timestamp = item
                level = float(level)
                timestamp = float(timestamp)
            except (TypeError, ValueError):
                logger.warning('Dropping malformed sample: %r', item)
                continue

            last_sample_ts = timestamp
            last_sample_wall = time.monotonic()
            _publish(receiver.on_sample(level, timestamp))

    except Exception as e:  # pragma: no cover - runtime safety
        logger.exception('Light decoder thread error: %s', e)
        _put_event(output_queue, {
            'type': 'info',
            'text': f'[receiver] decoder thread error: {e}',
        })
    finally:
        stop_event.set()
        snapshot = receiver.snapshot()
        if on_snapshot is not None:
            on_snapshot(snapshot)
        _put_event(output_queue, {
            'type': 'status',
            'status': 'stopped',
            'snapshot': snapshot,
        })
