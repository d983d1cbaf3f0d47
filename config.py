"""Runtime configuration for flashmorse.

Values come from ``FLASHMORSE_*`` environment variables with sane defaults.
"""

from __future__ import annotations

import os

VERSION = '1.0.0'


def _get_env(name: str, default: str) -> str:
    return os.environ.get(f'FLASHMORSE_{name}', default)


def _get_env_int(name: str, default: int) -> int:
    try:
        return int(_get_env(name, str(default)))
    except ValueError:
        return default


def _get_env_float(name: str, default: float) -> float:
    try:
        return float(_get_env(name, str(default)))
    except ValueError:
        return default


LOG_LEVEL = _get_env('LOG_LEVEL', 'INFO').upper()

# Sender
DEFAULT_SEND_WPM = _get_env_float('DEFAULT_SEND_WPM', 10.0)

# Receiver
DEFAULT_DETECTION_THRESHOLD = _get_env_float('DEFAULT_DETECTION_THRESHOLD', 0.5)
PULSE_HISTORY_SIZE = _get_env_int('PULSE_HISTORY_SIZE', 20)
GAP_HISTORY_SIZE = _get_env_int('GAP_HISTORY_SIZE', 30)
HISTORY_LIMIT = _get_env_int('HISTORY_LIMIT', 100)

# Queues / SSE
SAMPLE_QUEUE_SIZE = _get_env_int('SAMPLE_QUEUE_SIZE', 4096)
EVENT_QUEUE_SIZE = _get_env_int('EVENT_QUEUE_SIZE', 512)
SSE_QUEUE_TIMEOUT = _get_env_float('SSE_QUEUE_TIMEOUT', 1.0)
SSE_KEEPALIVE_INTERVAL = _get_env_float('SSE_KEEPALIVE_INTERVAL', 30.0)

HOST = _get_env('HOST', '127.0.0.1')
PORT = _get_env_int('PORT', 5050)
