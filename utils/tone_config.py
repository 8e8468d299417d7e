"""User-adjustable tone engine parameters and their ``key=value`` file format."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from utils.logging import get_logger
from utils.validation import (
    coerce_bool,
    validate_band,
    validate_cutoff,
    validate_gain,
    validate_persistence,
    validate_squelch_threshold,
)

logger = get_logger('tonewatch.config')

DEFAULT_GAIN_DB = 0.0
DEFAULT_LOW_CUTOFF_HZ = 20.0
DEFAULT_HIGH_CUTOFF_HZ = 20000.0
DEFAULT_PERSISTENCE_MS = 100.0
DEFAULT_SQUELCH_THRESHOLD = 0.1


@dataclass(frozen=True)
class ToneConfig:
    """Immutable parameter set read by the engine once per frame."""
    gain_db: float = DEFAULT_GAIN_DB
    low_cutoff_hz: float = DEFAULT_LOW_CUTOFF_HZ
    high_cutoff_hz: float = DEFAULT_HIGH_CUTOFF_HZ
    persistence_ms: float = DEFAULT_PERSISTENCE_MS
    averaging: bool = False
    squelch: bool = False
    squelch_threshold: float = DEFAULT_SQUELCH_THRESHOLD

    @property
    def gain_linear(self) -> float:
        return 10.0 ** (self.gain_db / 20.0)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    def updated(self, values: dict[str, Any]) -> ToneConfig:
        """Return a copy with validated overrides from *values*.

        Unknown keys are ignored. Raises ValueError on the first invalid value.
        """
        changes: dict[str, Any] = {}
        if 'gain_db' in values:
            changes['gain_db'] = validate_gain(values['gain_db'])
        if 'low_cutoff_hz' in values or 'high_cutoff_hz' in values:
            low, high = validate_band(
                values.get('low_cutoff_hz', self.low_cutoff_hz),
                values.get('high_cutoff_hz', self.high_cutoff_hz),
            )
            changes['low_cutoff_hz'] = low
            changes['high_cutoff_hz'] = high
        if 'persistence_ms' in values:
            changes['persistence_ms'] = validate_persistence(values['persistence_ms'])
        if 'averaging' in values:
            changes['averaging'] = coerce_bool(values['averaging'], self.averaging)
        if 'squelch' in values:
            changes['squelch'] = coerce_bool(values['squelch'], self.squelch)
        if 'squelch_threshold' in values:
            changes['squelch_threshold'] = validate_squelch_threshold(values['squelch_threshold'])
        return dataclasses.replace(self, **changes)


def _parse_bool(value: str) -> bool:
    text = value.strip().lower()
    if text in {'1', 'true', 'yes', 'on'}:
        return True
    if text in {'0', 'false', 'no', 'off'}:
        return False
    raise ValueError(f'Invalid boolean: {value}')


_PARSERS: dict[str, Callable[[str], Any]] = {
    'gain_db': validate_gain,
    'low_cutoff_hz': lambda v: validate_cutoff(v, 'low cutoff'),
    'high_cutoff_hz': lambda v: validate_cutoff(v, 'high cutoff'),
    'persistence_ms': validate_persistence,
    'averaging': _parse_bool,
    'squelch': _parse_bool,
    'squelch_threshold': validate_squelch_threshold,
}


def parse_tone_config(text: str) -> ToneConfig:
    """Parse newline-delimited ``key=value`` pairs.

    Any subset of keys may be present. Missing keys, unknown keys and
    unparseable values fall back to the defaults.
    """
    values: dict[str, Any] = {}
    for lineno, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith('#'):
            continue
        key, sep, value = line.partition('=')
        key = key.strip()
        if not sep:
            logger.warning('Ignoring config line %d without "=": %r', lineno, raw_line)
            continue
        parser = _PARSERS.get(key)
        if parser is None:
            logger.debug('Ignoring unknown config key %r', key)
            continue
        try:
            values[key] = parser(value.strip())
        except ValueError as e:
            logger.warning('Using default for %s: %s', key, e)

    config = ToneConfig(**values)
    if config.low_cutoff_hz >= config.high_cutoff_hz:
        logger.warning(
            'Band %.1f-%.1f Hz is empty, using default band',
            config.low_cutoff_hz,
            config.high_cutoff_hz,
        )
        config = dataclasses.replace(
            config,
            low_cutoff_hz=DEFAULT_LOW_CUTOFF_HZ,
            high_cutoff_hz=DEFAULT_HIGH_CUTOFF_HZ,
        )
    return config


def format_tone_config(config: ToneConfig) -> str:
    lines = []
    for key, value in config.to_dict().items():
        if isinstance(value, bool):
            value = 'true' if value else 'false'
        lines.append(f'{key}={value}')
    return '\n'.join(lines) + '\n'


def load_tone_config(path: str | Path) -> ToneConfig:
    """Load parameters from *path*; a missing file yields the defaults."""
    path = Path(path)
    try:
        text = path.read_text(encoding='utf-8')
    except FileNotFoundError:
        logger.info('No config file at %s, using defaults', path)
        return ToneConfig()
    return parse_tone_config(text)


def save_tone_config(config: ToneConfig, path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(format_tone_config(config), encoding='utf-8')
    logger.info('Saved tone parameters to %s', path)
