"""Tests for the optical Morse receiver and its decode thread."""

from __future__ import annotations

import queue
import threading

import numpy as np
import pytest

from utils.morse import (
    FlashEvent,
    MessageDirection,
    TimingModel,
    build_flash_plan,
    build_flash_sequence,
    encode_text,
)
from utils.morse_receiver import (
    DetectorPhase,
    MorseReceiver,
    light_decoder_thread,
)
from utils.morse_timing import MAX_DOT_DURATION, MIN_DOT_DURATION, TimingConfidence

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SAMPLE_RATE = 200
OFF_LEVEL = 0.05
ON_LEVEL = 0.95


def generate_light_trace(
    events: list[FlashEvent],
    sample_rate: int = SAMPLE_RATE,
    lead_in: float = 0.3,
    tail: float = 1.5,
    jitter: float = 0.0,
    level_noise: float = 0.0,
    seed: int = 0,
    start: float = 0.0,
) -> list[tuple[float, float]]:
    """Render flash events as ``(level, timestamp)`` brightness samples."""
    rng = np.random.default_rng(seed)
    segments = [FlashEvent.pause(lead_in)] + list(events) + [FlashEvent.pause(tail)]

    samples: list[tuple[float, float]] = []
    index = 0
    for segment in segments:
        duration = segment.duration
        if jitter:
            duration *= rng.uniform(1.0 - jitter, 1.0 + jitter)
        count = int(round(duration * sample_rate))
        base = ON_LEVEL if segment.is_on else OFF_LEVEL
        for _ in range(count):
            level = base
            if level_noise:
                level = float(np.clip(base + rng.uniform(-level_noise, level_noise), 0.0, 1.0))
            samples.append((level, start + index / sample_rate))
            index += 1
    return samples


def message_trace(text: str, wpm: float = 15.0, preamble: bool = False, **kwargs) -> list[tuple[float, float]]:
    return generate_light_trace(build_flash_plan(text, wpm=wpm, preamble=preamble).events, **kwargs)


def run_receiver(samples, **receiver_kwargs):
    """Run a full live session over *samples*."""
    receiver = MorseReceiver(**receiver_kwargs)
    receiver.start_receiving()
    events = []
    for level, timestamp in samples:
        events.extend(receiver.on_sample(level, timestamp))
    message = receiver.stop_receiving()
    return receiver, events, message


# ---------------------------------------------------------------------------
# Decoding scenarios
# ---------------------------------------------------------------------------

class TestReceiverDecoding:
    def test_clean_sos(self):
        receiver, _, message = run_receiver(message_trace('SOS'))

        assert receiver.detected_morse == '... --- ...'
        assert receiver.decoded_text == 'SOS'
        assert message is not None
        assert message.text == 'SOS'
        assert message.direction is MessageDirection.RECEIVED
        assert receiver.estimated_wpm == 15

    def test_online_decode_before_stop(self):
        receiver = MorseReceiver()
        receiver.start_receiving()
        for level, timestamp in message_trace('SOS'):
            receiver.on_sample(level, timestamp)

        # Trailing silence lets the gap timer close the word.
        assert receiver.detected_morse.strip() in {'... --- ...', '... --- ... /'}
        assert receiver.decoded_text == 'SOS'

    def test_words_are_separated(self):
        receiver, _, _ = run_receiver(message_trace('HI THERE'))
        assert receiver.detected_morse == encode_text('HI THERE')
        assert receiver.decoded_text == 'HI THERE'

    @pytest.mark.parametrize('seed', [1, 2, 3])
    def test_jittered_timing_decodes(self, seed):
        samples = message_trace(
            'PARIS PARIS PARIS',
            wpm=15,
            sample_rate=1000,
            jitter=0.10,
            level_noise=0.02,
            seed=seed,
        )
        receiver, _, _ = run_receiver(samples)
        assert receiver.decoded_text == 'PARIS PARIS PARIS'

    @pytest.mark.parametrize('seed', [1, 2, 3, 4, 5])
    def test_camera_rate_sos_with_jitter(self, seed):
        samples = message_trace('SOS', wpm=15, sample_rate=60, jitter=0.10, seed=seed)
        receiver, _, message = run_receiver(samples)
        assert receiver.decoded_text == 'SOS'
        assert message is not None

    def test_camera_rate_sos_at_30hz(self):
        receiver, _, _ = run_receiver(message_trace('SOS', sample_rate=30))
        assert receiver.decoded_text == 'SOS'

    def test_slow_sender_is_learned(self):
        receiver, _, _ = run_receiver(message_trace('SOS', wpm=6))
        assert receiver.decoded_text == 'SOS'
        assert receiver.estimated_dot_duration == pytest.approx(0.2, abs=0.01)

    def test_history_records_received_message(self):
        receiver, _, _ = run_receiver(message_trace('E E'))
        messages = receiver.history.get_messages()
        assert [m.text for m in messages] == ['E E']

    def test_nothing_decoded_returns_none(self):
        samples = [(OFF_LEVEL, i / SAMPLE_RATE) for i in range(200)]
        receiver, _, message = run_receiver(samples)
        assert message is None
        assert len(receiver.history) == 0


class TestDedicatedSource:
    def test_preamble_then_message(self):
        receiver, events, _ = run_receiver(message_trace('HI', preamble=True), dedicated_source_mode=True)

        assert receiver.preamble_detected is True
        assert receiver.decoded_text == 'HI'
        assert any(e['type'] == 'morse_sync' for e in events)

    def test_noise_before_preamble_is_discarded(self):
        timing = TimingModel.from_wpm(15)
        noise = build_flash_sequence(encode_text('T E'), timing)
        plan = build_flash_plan('HI', wpm=15, preamble=True)
        events = noise + [FlashEvent.pause(timing.word_gap)] + plan.events

        receiver, _, _ = run_receiver(generate_light_trace(events), dedicated_source_mode=True)

        assert receiver.preamble_detected is True
        assert receiver.detected_morse == '.... ..'
        assert receiver.decoded_text == 'HI'

    def test_without_preamble_output_stays_empty(self):
        receiver, events, message = run_receiver(message_trace('HI'), dedicated_source_mode=True)

        assert receiver.preamble_detected is False
        assert receiver.decoded_text == ''
        assert message is None
        assert not any(e['type'] == 'morse_sync' for e in events)

    def test_nothing_shown_before_sync(self):
        receiver = MorseReceiver(dedicated_source_mode=True)
        receiver.start_receiving()
        for level, timestamp in message_trace('EEE'):
            receiver.on_sample(level, timestamp)
        assert receiver.detected_morse == ''
        assert receiver.snapshot()['pulse_count'] == 3


class TestSegmenter:
    def test_short_flicker_is_rejected(self):
        # 5ms flash sampled at 1kHz passes the debounce but not the length check.
        samples = generate_light_trace(
            [FlashEvent.on(0.005)],
            sample_rate=1000,
            tail=0.5,
        )
        receiver, events, message = run_receiver(samples)

        assert receiver.snapshot()['pulse_count'] == 0
        assert receiver.decoded_text == ''
        assert message is None
        assert not any(e['type'] == 'morse_element' for e in events)

    def test_single_sample_spike_is_debounced(self):
        receiver = MorseReceiver()
        receiver.start_receiving()
        for i in range(60):
            receiver.on_sample(OFF_LEVEL, i / SAMPLE_RATE)
        receiver.on_sample(ON_LEVEL, 60 / SAMPLE_RATE)
        receiver.on_sample(OFF_LEVEL, 61 / SAMPLE_RATE)

        assert receiver.state.phase is DetectorPhase.WAITING
        assert receiver.light_detected is False

    def test_one_frame_dip_keeps_pulse(self):
        receiver = MorseReceiver(detection_threshold=0.5, auto_sensitivity=False)
        receiver.start_receiving()
        index = 0
        for level in [OFF_LEVEL] * 60 + [ON_LEVEL] * 20:
            receiver.on_sample(level, index / SAMPLE_RATE)
            index += 1
        assert receiver.state.phase is DetectorPhase.IN_PULSE

        # A single dark frame, then a reading inside the hysteresis band.
        receiver.on_sample(0.1, index / SAMPLE_RATE)
        receiver.on_sample(0.55, (index + 1) / SAMPLE_RATE)
        assert receiver.state.phase is DetectorPhase.IN_PULSE
        assert receiver.light_detected is True

        receiver.on_sample(OFF_LEVEL, (index + 2) / SAMPLE_RATE)
        receiver.on_sample(OFF_LEVEL, (index + 3) / SAMPLE_RATE)
        assert receiver.state.phase is DetectorPhase.IN_GAP

    def test_samples_ignored_when_not_receiving(self):
        receiver = MorseReceiver()
        assert receiver.on_sample(ON_LEVEL, 0.0) == []
        assert receiver.state.phase is DetectorPhase.IDLE

    def test_states_follow_the_light(self):
        receiver = MorseReceiver()
        receiver.start_receiving()
        assert receiver.state.phase is DetectorPhase.WAITING

        samples = message_trace('T', tail=0.1)
        on_start = next(i for i, (level, _) in enumerate(samples) if level == ON_LEVEL)
        for level, timestamp in samples[:on_start + 2]:
            receiver.on_sample(level, timestamp)
        assert receiver.state.phase is DetectorPhase.IN_PULSE
        assert receiver.light_detected is True

        for level, timestamp in samples[on_start + 2:]:
            receiver.on_sample(level, timestamp)
        assert receiver.state.phase is DetectorPhase.IN_GAP
        assert receiver.state.last_pulse_duration == pytest.approx(0.24)

    @pytest.mark.parametrize('duration', [0.02, 1.0])
    def test_dot_estimate_stays_in_bounds(self, duration):
        events = []
        for _ in range(8):
            events += [FlashEvent.on(duration), FlashEvent.pause(duration)]
        samples = generate_light_trace(events, sample_rate=1000)

        receiver = MorseReceiver()
        receiver.start_receiving()
        for level, timestamp in samples:
            receiver.on_sample(level, timestamp)
            assert MIN_DOT_DURATION <= receiver.estimated_dot_duration <= MAX_DOT_DURATION
        receiver.stop_receiving()
        assert MIN_DOT_DURATION <= receiver.estimated_dot_duration <= MAX_DOT_DURATION


class TestGapTimer:
    def _receiver_after_dot(self) -> MorseReceiver:
        receiver = MorseReceiver()
        receiver.start_receiving()
        for level, timestamp in message_trace('E', tail=0.01):
            receiver.on_sample(level, timestamp)
        assert receiver.state.phase is DetectorPhase.IN_GAP
        assert receiver.detected_morse == '.'
        return receiver

    def test_letter_then_word_separator(self):
        receiver = self._receiver_after_dot()
        gap_start = receiver.state.start_time

        receiver.tick(gap_start + 0.2)
        assert receiver.detected_morse == '. '

        receiver.tick(gap_start + 1.0)
        assert receiver.detected_morse == '. / '

    def test_timer_is_bound_to_its_gap(self):
        receiver = self._receiver_after_dot()
        gap_start = receiver.state.start_time

        # The light comes back before the letter deadline.
        receiver.on_sample(ON_LEVEL, gap_start + 0.03)
        receiver.on_sample(ON_LEVEL, gap_start + 0.04)
        assert receiver.state.phase is DetectorPhase.IN_PULSE

        receiver.tick(gap_start + 2.0)
        assert receiver.detected_morse == '.'

    def test_tick_does_nothing_when_idle(self):
        receiver = MorseReceiver()
        assert receiver.tick(100.0) == []


class TestReclassification:
    def test_early_symbols_are_rewritten(self):
        # At 6 WPM the default dot estimate reads the first dots as dashes.
        receiver = MorseReceiver()
        receiver.start_receiving()
        events = []
        for level, timestamp in message_trace('SOS', wpm=6):
            events.extend(receiver.on_sample(level, timestamp))

        types = [e['type'] for e in events]
        assert 'morse_reclassified' in types

        idx = types.index('morse_reclassified')
        assert events[idx + 1]['type'] == 'morse_update'
        assert events[idx + 1]['morse'] == '... --'

        first_elements = [e['element'] for e in events[:idx] if e['type'] == 'morse_element']
        assert first_elements[0] == '-'
        assert receiver.decoded_text == 'SOS'

    def test_confidence_rises_with_pulses(self):
        receiver = MorseReceiver()
        receiver.start_receiving()
        for level, timestamp in message_trace('PARIS'):
            receiver.on_sample(level, timestamp)
        assert receiver.confidence is TimingConfidence.HIGH


class TestVerificationAndReplay:
    def test_final_verification_is_idempotent(self):
        receiver, _, _ = run_receiver(message_trace('HELLO WORLD', jitter=0.05, seed=4))
        first = (receiver.detected_morse, receiver.estimated_dot_duration, receiver.gap_info)

        receiver.perform_final_verification()
        second = (receiver.detected_morse, receiver.estimated_dot_duration, receiver.gap_info)
        assert first == second

    def test_replay_matches_live_decode(self):
        samples = message_trace('CQ CQ', jitter=0.05, level_noise=0.03, seed=11)
        live, _, _ = run_receiver(samples)

        replay = MorseReceiver()
        result = replay.reprocess_recording(samples)

        assert result is not None
        assert replay.detected_morse == live.detected_morse
        assert replay.decoded_text == live.decoded_text == 'CQ CQ'
        assert replay.is_receiving is False
        assert len(replay.history) == 0

    def test_replay_is_deterministic(self):
        samples = message_trace('SOS', jitter=0.1, seed=5)
        receiver = MorseReceiver()
        receiver.reprocess_recording(samples)
        first = receiver.snapshot()
        receiver.reprocess_recording(samples)
        assert receiver.snapshot() == first

    def test_replay_of_too_few_samples(self):
        receiver = MorseReceiver()
        assert receiver.reprocess_recording([(0.9, 0.0)]) is None


class TestSessionControl:
    def test_clear_keeps_receiving(self):
        receiver = MorseReceiver()
        receiver.start_receiving()
        for level, timestamp in message_trace('SOS'):
            receiver.on_sample(level, timestamp)
        receiver.clear()

        snap = receiver.snapshot()
        assert snap['receiving'] is True
        assert snap['detected_morse'] == ''
        assert snap['pulse_count'] == 0
        assert snap['detector_state'] == 'waiting_for_signal'

    def test_reset_restores_defaults(self):
        receiver = MorseReceiver(detection_threshold=0.9, auto_sensitivity=False, dedicated_source_mode=True)
        receiver.start_receiving()
        for level, timestamp in message_trace('E'):
            receiver.on_sample(level, timestamp)
        receiver.reset()

        assert receiver.is_receiving is True
        assert receiver.detection_threshold == 0.5
        assert receiver.auto_sensitivity is True
        assert receiver.dedicated_source_mode is False
        assert receiver.preamble_detected is True
        assert receiver.detected_morse == ''
        assert receiver.state.phase is DetectorPhase.WAITING

    def test_decodes_after_reset(self):
        receiver = MorseReceiver()
        receiver.start_receiving()
        for level, timestamp in message_trace('TTT'):
            receiver.on_sample(level, timestamp)
        receiver.reset()
        for level, timestamp in message_trace('SOS', start=100.0):
            receiver.on_sample(level, timestamp)

        message = receiver.stop_receiving()
        assert message is not None
        assert message.text == 'SOS'
        assert len(receiver.history) == 1

    def test_reset_when_idle_stays_idle(self):
        receiver = MorseReceiver()
        receiver.reset()
        assert receiver.is_receiving is False
        assert receiver.state.phase is DetectorPhase.IDLE

    def test_snapshot_keys(self):
        snap = MorseReceiver().snapshot()
        for key in (
            'receiving', 'level', 'light_detected', 'detector_state', 'detected_morse',
            'decoded_text', 'preamble_detected', 'dedicated_source_mode', 'confidence',
            'wpm', 'dot_ms', 'gap_info', 'threshold', 'noise_floor', 'signal_peak',
            'pulse_count', 'gap_count',
        ):
            assert key in snap
        assert snap['confidence'] == 'Learning...'


# ---------------------------------------------------------------------------
# Decode thread
# ---------------------------------------------------------------------------

class TestLightDecoderThread:
    def _start(self, **kwargs):
        inbox: queue.Queue = queue.Queue()
        output_queue: queue.Queue = queue.Queue(maxsize=10000)
        stop_event = threading.Event()
        worker = threading.Thread(
            target=light_decoder_thread,
            args=(inbox, output_queue, stop_event),
            kwargs=kwargs,
            daemon=True,
        )
        worker.start()
        return inbox, output_queue, stop_event, worker

    def test_thread_emits_scope_heartbeat_without_samples(self):
        inbox, output_queue, stop_event, worker = self._start()

        got_scope = False
        try:
            for _ in range(10):
                try:
                    msg = output_queue.get(timeout=0.3)
                except queue.Empty:
                    continue
                if msg.get('type') == 'scope':
                    got_scope = True
                    break
        finally:
            stop_event.set()
            worker.join(timeout=2.0)

        assert got_scope is True
        assert not worker.is_alive()

    def test_stop_is_applied_after_queued_samples(self):
        snapshots = []
        inbox, output_queue, stop_event, worker = self._start(on_snapshot=snapshots.append)

        inbox.put({'cmd': 'start'})
        for sample in message_trace('SOS'):
            inbox.put(sample)
        reply: queue.Queue = queue.Queue()
        inbox.put({'cmd': 'stop', 'reply': reply})

        result = reply.get(timeout=5.0)
        inbox.put({'cmd': 'shutdown'})
        worker.join(timeout=2.0)

        assert result['status'] == 'ok'
        assert result['message']['text'] == 'SOS'
        assert result['snapshot']['receiving'] is False
        assert not worker.is_alive()
        assert snapshots

        events = []
        while not output_queue.empty():
            events.append(output_queue.get_nowait())
        assert any(e['type'] == 'morse_message' for e in events)
        assert events[-1]['type'] == 'status'
        assert events[-1]['status'] == 'stopped'

    def test_replay_command(self):
        inbox, _, stop_event, worker = self._start()
        reply: queue.Queue = queue.Queue()
        inbox.put({'cmd': 'replay', 'samples': message_trace('HI'), 'reply': reply})

        result = reply.get(timeout=5.0)
        stop_event.set()
        worker.join(timeout=2.0)

        assert result['verified'] is True
        assert result['snapshot']['decoded_text'] == 'HI'

    def test_config_command(self):
        inbox, _, stop_event, worker = self._start(decoder_config={'detection_threshold': 0.2})
        reply: queue.Queue = queue.Queue()
        inbox.put({'cmd': 'config', 'dedicated_source_mode': 'true', 'reply': reply})

        result = reply.get(timeout=5.0)
        stop_event.set()
        worker.join(timeout=2.0)

        assert result['snapshot']['dedicated_source_mode'] is True
        assert result['snapshot']['detection_threshold'] == pytest.approx(0.2)

    def test_malformed_samples_are_skipped(self):
        inbox, _, stop_event, worker = self._start()
        reply: queue.Queue = queue.Queue()
        inbox.put({'cmd': 'start'})
        inbox.put('garbage')
        inbox.put((0.1,))
        inbox.put({'cmd': 'snapshot', 'reply': reply})

        result = reply.get(timeout=5.0)
        stop_event.set()
        worker.join(timeout=2.0)

        assert result['status'] == 'ok'
        assert result['snapshot']['receiving'] is True
