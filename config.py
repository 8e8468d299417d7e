"""Application settings, read from ``TONEWATCH_*`` environment variables."""

from __future__ import annotations

import os


def _get_env(key: str, default: str) -> str:
    return os.environ.get(f'TONEWATCH_{key}', default)


def _get_env_int(key: str, default: int) -> int:
    try:
        return int(_get_env(key, str(default)))
    except ValueError:
        return default


def _get_env_bool(key: str, default: bool) -> bool:
    value = _get_env(key, '').strip().lower()
    if value in {'1', 'true', 'yes', 'on'}:
        return True
    if value in {'0', 'false', 'no', 'off'}:
        return False
    return default


VERSION = '1.0.0'

# Web server
HOST = _get_env('HOST', '0.0.0.0')
PORT = _get_env_int('PORT', 5050)
DEBUG = _get_env_bool('DEBUG', False)

# Logging
LOG_LEVEL = _get_env('LOG_LEVEL', 'INFO')
LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'

# Audio frames
SAMPLE_RATE = _get_env_int('SAMPLE_RATE', 44100)
FRAME_SIZE = _get_env_int('FRAME_SIZE', 2048)

# Tracking
MAX_TRACKS = _get_env_int('MAX_TRACKS', 4)
SUPPRESSION_RADIUS = _get_env_int('SUPPRESSION_RADIUS', 3)
SYMBOL_CAPACITY = _get_env_int('SYMBOL_CAPACITY', 256)

# Persisted parameter snapshot (key=value lines)
CONFIG_PATH = _get_env('CONFIG_PATH', os.path.expanduser('~/.tonewatch.conf'))

# Capture process writing mono S16_LE PCM to stdout; {rate} is substituted.
CAPTURE_COMMAND = _get_env('CAPTURE_COMMAND', 'arecord -q -t raw -f S16_LE -c 1 -r {rate}')

# Event queue / SSE
QUEUE_MAX_SIZE = _get_env_int('QUEUE_MAX_SIZE', 500)
SSE_KEEPALIVE_INTERVAL = 30.0
SSE_QUEUE_TIMEOUT = 1.0
