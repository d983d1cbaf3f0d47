"""Optical Morse routes: receive session lifecycle, sample intake, send, history."""

from __future__ import annotations

import contextlib
import math
import queue
import threading
import time
from typing import Any, Callable

from flask import Blueprint, Response, jsonify, request

import app as app_module
from config import DEFAULT_DETECTION_THRESHOLD, DEFAULT_SEND_WPM, SAMPLE_QUEUE_SIZE
from utils.logging import morse_logger as logger
from utils.morse import (
    MAX_WPM,
    MIN_WPM,
    MessageDirection,
    build_flash_plan,
    decode_morse,
)
from utils.morse_receiver import MorseReceiver, coerce_bool, light_decoder_thread
from utils.morse_sender import MorseSender
from utils.sse import sse_stream_fanout

morse_bp = Blueprint('morse', __name__)

# Runtime lifecycle state of the receive session.
MORSE_IDLE = 'idle'
MORSE_STARTING = 'starting'
MORSE_RUNNING = 'running'
MORSE_STOPPING = 'stopping'
MORSE_ERROR = 'error'

morse_state = MORSE_IDLE
morse_state_message = 'Idle'
morse_state_since = time.monotonic()
morse_last_error = ''
morse_runtime_config: dict[str, Any] = {}
morse_session_id = 0

morse_decoder_worker: threading.Thread | None = None
morse_stop_event: threading.Event | None = None
morse_inbox: queue.Queue | None = None

morse_snapshot: dict[str, Any] = {}
_snapshot_lock = threading.Lock()

morse_sender: MorseSender | None = None
_torch_handler: Callable[[bool], None] | None = None

COMMAND_TIMEOUT_S = 2.0
STOP_TIMEOUT_S = 5.0
MAX_SAMPLES_PER_REQUEST = 100_000


def _set_state(state: str, message: str = '', *, enqueue: bool = True, extra: dict[str, Any] | None = None) -> None:
    """Update lifecycle state and optionally emit a status queue event."""
    global morse_state, morse_state_message, morse_state_since
    morse_state = state
    morse_state_message = message or state
    morse_state_since = time.monotonic()

    if not enqueue:
        return

    payload: dict[str, Any] = {
        'type': 'status',
        'status': state,
        'state': state,
        'message': morse_state_message,
        'session_id': morse_session_id,
        'timestamp': time.strftime('%H:%M:%S'),
    }
    if extra:
        payload.update(extra)
    _queue_morse_event(payload)


def _queue_morse_event(payload: dict[str, Any]) -> None:
    with contextlib.suppress(queue.Full):
        app_module.morse_queue.put_nowait(payload)


def _store_snapshot(snapshot: dict[str, Any]) -> None:
    global morse_snapshot
    with _snapshot_lock:
        morse_snapshot = dict(snapshot)


def _current_snapshot() -> dict[str, Any]:
    with _snapshot_lock:
        return dict(morse_snapshot)


def _join_thread(worker: threading.Thread | None, timeout_s: float) -> bool:
    if worker is None:
        return True
    worker.join(timeout=timeout_s)
    return not worker.is_alive()


def set_torch_handler(handler: Callable[[bool], None] | None) -> None:
    """Install the callable that switches the physical torch."""
    global _torch_handler, morse_sender
    _torch_handler = handler
    if morse_sender is not None and not morse_sender.is_sending:
        morse_sender = None


def get_sender() -> MorseSender:
    global morse_sender
    with app_module.morse_lock:
        if morse_sender is None:
            morse_sender = MorseSender(
                set_torch=_torch_handler,
                history=app_module.message_history,
                on_event=_queue_morse_event,
            )
        return morse_sender


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------

def _validate_detection_threshold(value: Any) -> float:
    """Parse detection sensitivity, clamped to 0.0-1.0."""
    try:
        threshold = float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f'Invalid detection threshold: {value}') from e
    if not math.isfinite(threshold):
        raise ValueError(f'Invalid detection threshold: {value}')
    return min(1.0, max(0.0, threshold))


def _validate_wpm(value: Any) -> float:
    """Parse words per minute, clamped to the supported range."""
    try:
        wpm = float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f'Invalid WPM: {value}') from e
    if not math.isfinite(wpm):
        raise ValueError(f'Invalid WPM: {value}')
    return min(MAX_WPM, max(MIN_WPM, wpm))


def _validate_text(value: Any) -> str:
    text = str(value or '').strip()
    if not text:
        raise ValueError('text is required')
    if len(text) > 500:
        raise ValueError('text must be at most 500 characters')
    return text


def _validate_samples(value: Any) -> list[tuple[float, float]]:
    """Validate ``[[level, timestamp], ...]`` with finite, ordered timestamps."""
    if not isinstance(value, list):
        raise ValueError('samples must be a list of [level, timestamp] pairs')
    if len(value) > MAX_SAMPLES_PER_REQUEST:
        raise ValueError(f'at most {MAX_SAMPLES_PER_REQUEST} samples per request')

    samples: list[tuple[float, float]] = []
    last_ts = -math.inf
    for idx, pair in enumerate(value):
        try:
            level, timestamp = pair
            level = float(level)
            timestamp = float(timestamp)
        except (TypeError, ValueError) as e:
            raise ValueError(f'Invalid sample at index {idx}: {pair!r}') from e
        if not (math.isfinite(level) and math.isfinite(timestamp)):
            raise ValueError(f'Invalid sample at index {idx}: values must be finite')
        if timestamp < last_ts:
            raise ValueError(f'Invalid sample at index {idx}: timestamps must not decrease')
        last_ts = timestamp
        samples.append((level, timestamp))
    return samples


def _validate_direction(value: Any) -> MessageDirection | None:
    if value in (None, '', 'all'):
        return None
    try:
        return MessageDirection(str(value).strip().lower())
    except ValueError as e:
        raise ValueError('direction must be sent, received or all') from e


def _validate_limit(value: Any) -> int | None:
    if value in (None, ''):
        return None
    try:
        limit = int(value)
        if limit < 0:
            raise ValueError('limit must be non-negative')
        return limit
    except (TypeError, ValueError) as e:
        raise ValueError(f'Invalid limit: {value}') from e


def _receiver_config(data: dict[str, Any], *, partial: bool = False) -> dict[str, Any]:
    cfg: dict[str, Any] = {}
    if not partial or 'detection_threshold' in data:
        cfg['detection_threshold'] = _validate_detection_threshold(
            data.get('detection_threshold', DEFAULT_DETECTION_THRESHOLD)
        )
    if not partial or 'auto_sensitivity' in data:
        cfg['auto_sensitivity'] = coerce_bool(data.get('auto_sensitivity', True), True)
    if not partial or 'dedicated_source' in data or 'dedicated_source_mode' in data:
        raw = data.get('dedicated_source', data.get('dedicated_source_mode', False))
        cfg['dedicated_source_mode'] = coerce_bool(raw, False)
    return cfg


def _send_command(cmd: dict[str, Any], timeout_s: float = COMMAND_TIMEOUT_S) -> dict[str, Any] | None:
    """Queue a control command behind pending samples and wait for its reply."""
    inbox = morse_inbox
    if inbox is None:
        return None
    reply: queue.Queue = queue.Queue(maxsize=1)
    try:
        inbox.put({**cmd, 'reply': reply}, timeout=timeout_s)
    except queue.Full:
        logger.warning('Receiver inbox full, dropped %s command', cmd.get('cmd'))
        return None
    try:
        return reply.get(timeout=timeout_s)
    except queue.Empty:
        logger.warning('Receiver did not answer %s command', cmd.get('cmd'))
        return None


def _not_running() -> tuple[Response, int]:
    return jsonify({
        'status': 'not_running',
        'state': morse_state,
        'message': 'Receiver is not running',
    }), 409


# ---------------------------------------------------------------------------
# Receive session
# ---------------------------------------------------------------------------

@morse_bp.route('/morse/receive/start', methods=['POST'])
def start_receive() -> Response:
    global morse_decoder_worker, morse_stop_event, morse_inbox
    global morse_runtime_config, morse_session_id, morse_last_error

    data = request.get_json(silent=True) or {}
    try:
        cfg = _receiver_config(data)
    except ValueError as e:
        return jsonify({'status': 'error', 'message': str(e)}), 400

    with app_module.morse_lock:
        if morse_state in {MORSE_STARTING, MORSE_RUNNING, MORSE_STOPPING}:
            return jsonify({
                'status': 'error',
                'state': morse_state,
                'message': 'Receiver already running',
            }), 409

        morse_session_id += 1
        morse_last_error = ''
        _set_state(MORSE_STARTING, 'Starting receiver...')

        stop_event = threading.Event()
        inbox: queue.Queue = queue.Queue(maxsize=SAMPLE_QUEUE_SIZE)
        worker = threading.Thread(
            target=light_decoder_thread,
            args=(inbox, app_module.morse_queue, stop_event, cfg),
            kwargs={'history': app_module.message_history, 'on_snapshot': _store_snapshot},
            daemon=True,
            name='morse-light-decoder',
        )
        try:
            worker.start()
        except RuntimeError as e:
            morse_last_error = str(e)
            _set_state(MORSE_ERROR, f'Failed to start receiver: {e}')
            logger.error(f'Failed to start receiver thread: {e}')
            return jsonify({'status': 'error', 'message': morse_last_error}), 500

        inbox.put_nowait({'cmd': 'start'})

        morse_decoder_worker = worker
        morse_stop_event = stop_event
        morse_inbox = inbox
        morse_runtime_config = dict(cfg)
        _set_state(MORSE_RUNNING, 'Receiving', extra={'config': morse_runtime_config})

    logger.info(f'Receive session {morse_session_id} started: {cfg}')
    return jsonify({
        'status': 'started',
        'state': MORSE_RUNNING,
        'session_id': morse_session_id,
        'config': cfg,
    })


@morse_bp.route('/morse/receive/stop', methods=['POST'])
def stop_receive() -> Response:
    global morse_decoder_worker, morse_stop_event, morse_inbox

    with app_module.morse_lock:
        if morse_state == MORSE_STOPPING:
            return jsonify({'status': 'stopping', 'state': MORSE_STOPPING}), 202

        worker = morse_decoder_worker
        stop_event = morse_stop_event
        if worker is None or stop_event is None:
            _set_state(MORSE_IDLE, 'Idle', enqueue=False)
            return jsonify({'status': 'not_running', 'state': MORSE_IDLE})

        _set_state(MORSE_STOPPING, 'Stopping receiver...')

    # Samples already queued are decoded before the stop is applied.
    result = _send_command({'cmd': 'stop'}, timeout_s=STOP_TIMEOUT_S)

    inbox = morse_inbox
    if inbox is not None:
        with contextlib.suppress(queue.Full):
            inbox.put_nowait({'cmd': 'shutdown'})
    stop_event.set()
    joined = _join_thread(worker, COMMAND_TIMEOUT_S)
    if not joined:
        logger.warning('Receiver thread did not exit in time')

    with app_module.morse_lock:
        morse_decoder_worker = None
        morse_stop_event = None
        morse_inbox = None
        _set_state(MORSE_IDLE, 'Idle')

    snapshot = (result or {}).get('snapshot') or _current_snapshot()
    return jsonify({
        'status': 'stopped',
        'state': MORSE_IDLE,
        'message': (result or {}).get('message'),
        'snapshot': snapshot,
    })


@morse_bp.route('/morse/receive/clear', methods=['POST'])
def clear_receive() -> Response:
    if morse_state != MORSE_RUNNING:
        return _not_running()
    result = _send_command({'cmd': 'clear'})
    if result is None:
        return jsonify({'status': 'error', 'message': 'Receiver did not respond'}), 503
    return jsonify({'status': 'ok', 'snapshot': result.get('snapshot')})


@morse_bp.route('/morse/receive/reset', methods=['POST'])
def reset_receive() -> Response:
    global morse_runtime_config
    if morse_state != MORSE_RUNNING:
        return _not_running()
    result = _send_command({'cmd': 'reset'})
    if result is None:
        return jsonify({'status': 'error', 'message': 'Receiver did not respond'}), 503
    snapshot = result.get('snapshot') or {}
    morse_runtime_config = {
        'detection_threshold': snapshot.get('detection_threshold', DEFAULT_DETECTION_THRESHOLD),
        'auto_sensitivity': snapshot.get('auto_sensitivity', True),
        'dedicated_source_mode': snapshot.get('dedicated_source_mode', False),
    }
    return jsonify({'status': 'ok', 'snapshot': snapshot})


@morse_bp.route('/morse/receive/config', methods=['POST'])
def configure_receive() -> Response:
    global morse_runtime_config
    data = request.get_json(silent=True) or {}
    try:
        cfg = _receiver_config(data, partial=True)
    except ValueError as e:
        return jsonify({'status': 'error', 'message': str(e)}), 400
    if not cfg:
        return jsonify({'status': 'error', 'message': 'No settings provided'}), 400

    if morse_state != MORSE_RUNNING:
        return _not_running()
    result = _send_command({'cmd': 'config', **cfg})
    if result is None:
        return jsonify({'status': 'error', 'message': 'Receiver did not respond'}), 503

    morse_runtime_config = {**morse_runtime_config, **cfg}
    return jsonify({'status': 'ok', 'config': morse_runtime_config, 'snapshot': result.get('snapshot')})


@morse_bp.route('/morse/samples', methods=['POST'])
def push_samples() -> Response:
    """Accept brightness samples from the camera client."""
    data = request.get_json(silent=True) or {}
    try:
        samples = _validate_samples(data.get('samples'))
    except ValueError as e:
        return jsonify({'status': 'error', 'message': str(e)}), 400

    inbox = morse_inbox
    if morse_state != MORSE_RUNNING or inbox is None:
        return _not_running()

    accepted = 0
    for sample in samples:
        try:
            inbox.put_nowait(sample)
            accepted += 1
        except queue.Full:
            break

    dropped = len(samples) - accepted
    if dropped:
        logger.warning(f'Receiver inbox full, dropped {dropped} sample(s)')
    return jsonify({'status': 'ok', 'accepted': accepted, 'dropped': dropped})


@morse_bp.route('/morse/replay', methods=['POST'])
def replay_samples() -> Response:
    """Decode a recorded sample trace offline with a fresh receiver."""
    data = request.get_json(silent=True) or {}
    try:
        samples = _validate_samples(data.get('samples'))
        cfg = _receiver_config(data)
    except ValueError as e:
        return jsonify({'status': 'error', 'message': str(e)}), 400

    receiver = MorseReceiver(**cfg)
    result = receiver.reprocess_recording(samples)

    return jsonify({
        'status': 'ok',
        'verified': result is not None,
        'morse': receiver.detected_morse,
        'text': receiver.decoded_text,
        'preamble_detected': receiver.preamble_detected,
        'confidence': receiver.confidence.label,
        'wpm': receiver.estimated_wpm,
        'dot_ms': round(receiver.estimated_dot_duration * 1000.0, 1),
        'gap_info': receiver.gap_info,
        'sample_count': len(samples),
    })


@morse_bp.route('/morse/status')
def morse_status() -> Response:
    with app_module.morse_lock:
        running = (
            morse_decoder_worker is not None
            and morse_decoder_worker.is_alive()
            and morse_state in {MORSE_RUNNING, MORSE_STARTING, MORSE_STOPPING}
        )
        since_ms = round((time.monotonic() - morse_state_since) * 1000.0, 1)
        payload = {
            'running': running,
            'state': morse_state,
            'message': morse_state_message,
            'since_ms': since_ms,
            'session_id': morse_session_id,
            'config': morse_runtime_config,
            'error': morse_last_error,
        }
    payload['snapshot'] = _current_snapshot()
    payload['sender'] = get_sender().status()
    return jsonify(payload)


@morse_bp.route('/morse/stream')
def morse_stream() -> Response:
    response = Response(
        sse_stream_fanout(
            source_queue=app_module.morse_queue,
            channel_key='morse',
            timeout=1.0,
            keepalive_interval=30.0,
        ),
        mimetype='text/event-stream',
    )
    response.headers['Cache-Control'] = 'no-cache'
    response.headers['X-Accel-Buffering'] = 'no'
    response.headers['Connection'] = 'keep-alive'
    return response


# ---------------------------------------------------------------------------
# Send side
# ---------------------------------------------------------------------------

@morse_bp.route('/morse/encode', methods=['GET', 'POST'])
def encode_message() -> Response:
    if request.method == 'POST':
        data = request.get_json(silent=True) or {}
    else:
        data = request.args
    try:
        text = _validate_text(data.get('text'))
        wpm = _validate_wpm(data.get('wpm', DEFAULT_SEND_WPM))
    except ValueError as e:
        return jsonify({'status': 'error', 'message': str(e)}), 400
    preamble = coerce_bool(data.get('preamble'), False)

    plan = build_flash_plan(text, wpm=wpm, preamble=preamble)
    return jsonify({
        'status': 'ok',
        'decoded': decode_morse(plan.message_morse),
        **plan.to_dict(),
    })


@morse_bp.route('/morse/send/start', methods=['POST'])
def start_send() -> Response:
    data = request.get_json(silent=True) or {}
    try:
        text = _validate_text(data.get('text'))
        wpm = _validate_wpm(data.get('wpm', DEFAULT_SEND_WPM))
    except ValueError as e:
        return jsonify({'status': 'error', 'message': str(e)}), 400

    sender = get_sender()
    try:
        plan = sender.start(
            text,
            wpm=wpm,
            loop=coerce_bool(data.get('loop'), False),
            preamble=coerce_bool(data.get('preamble'), False),
        )
    except ValueError as e:
        return jsonify({'status': 'error', 'message': str(e)}), 400
    except RuntimeError as e:
        return jsonify({'status': 'error', 'message': str(e), 'sender': sender.status()}), 409

    return jsonify({'status': 'started', 'plan': plan.to_dict()})


@morse_bp.route('/morse/send/stop', methods=['POST'])
def stop_send() -> Response:
    sender = get_sender()
    if not sender.stop():
        return jsonify({'status': 'not_running', 'sender': sender.status()})
    return jsonify({'status': 'stopped', 'sender': sender.status()})


@morse_bp.route('/morse/send/status')
def send_status() -> Response:
    return jsonify(get_sender().status())


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

@morse_bp.route('/morse/history', methods=['GET'])
def get_history() -> Response:
    try:
        direction = _validate_direction(request.args.get('direction'))
        limit = _validate_limit(request.args.get('limit'))
    except ValueError as e:
        return jsonify({'status': 'error', 'message': str(e)}), 400

    messages = app_module.message_history.get_messages(direction=direction, limit=limit)
    return jsonify({
        'status': 'ok',
        'count': len(messages),
        'messages': [m.to_dict() for m in messages],
    })


@morse_bp.route('/morse/history', methods=['DELETE'])
def clear_history() -> Response:
    try:
        direction = _validate_direction(request.args.get('direction'))
    except ValueError as e:
        return jsonify({'status': 'error', 'message': str(e)}), 400

    removed = app_module.message_history.clear(direction=direction)
    return jsonify({'status': 'ok', 'removed': removed})
