"""Parameter validation for user-adjustable tone engine settings.

Every helper raises ``ValueError`` with a message naming the offending field;
routes turn those into HTTP 400 responses.
"""

from __future__ import annotations

import math
from typing import Any

MIN_CUTOFF_HZ = 20.0
MAX_CUTOFF_HZ = 20000.0
MIN_PERSISTENCE_MS = 50.0


def coerce_bool(value: Any, default: bool = False) -> bool:
    """Convert arbitrary JSON-ish / form values to bool."""
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


def validate_gain(value: Any) -> float:
    """Validate gain in dB (any finite value)."""
    try:
        gain = float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f'Invalid gain: {value}') from e
    if not math.isfinite(gain):
        raise ValueError(f'Invalid gain: {value}')
    return gain


def validate_cutoff(value: Any, field_name: str) -> float:
    """Validate a single band-pass edge (20-20000 Hz)."""
    try:
        freq = float(value)
        if not MIN_CUTOFF_HZ <= freq <= MAX_CUTOFF_HZ:
            raise ValueError(f'{field_name} must be between 20 and 20000 Hz')
        return freq
    except (TypeError, ValueError) as e:
        raise ValueError(f'Invalid {field_name}: {value}') from e


def validate_band(low: Any, high: Any) -> tuple[float, float]:
    """Validate a band-pass pair; low must be strictly below high."""
    low_hz = validate_cutoff(low, 'low cutoff')
    high_hz = validate_cutoff(high, 'high cutoff')
    if low_hz >= high_hz:
        raise ValueError(f'Low cutoff ({low_hz:g} Hz) must be below high cutoff ({high_hz:g} Hz)')
    return low_hz, high_hz


def validate_persistence(value: Any) -> float:
    """Validate persistence threshold in milliseconds (>= 50)."""
    try:
        ms = float(value)
        if not math.isfinite(ms) or ms < MIN_PERSISTENCE_MS:
            raise ValueError('persistence must be at least 50 ms')
        return ms
    except (TypeError, ValueError) as e:
        raise ValueError(f'Invalid persistence: {value}') from e


def validate_squelch_threshold(value: Any) -> float:
    """Validate normalized squelch threshold (0.0-1.0)."""
    try:
        threshold = float(value)
        if not 0.0 <= threshold <= 1.0:
            raise ValueError('squelch threshold must be between 0.0 and 1.0')
        return threshold
    except (TypeError, ValueError) as e:
        raise ValueError(f'Invalid squelch threshold: {value}') from e
