"""Short/long classification of keyed tone durations."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import Enum

INITIAL_DOT_MS = 120.0
DOT_ALPHA = 0.2
SYMBOL_CAPACITY = 256


class Symbol(Enum):
    """Keyed-tone symbol kinds."""
    SHORT = '.'
    LONG = '-'


@dataclass(frozen=True)
class DecodedSymbol:
    """A classified tone with the context it was decoded in."""
    symbol: Symbol
    duration_ms: float
    slot: int = -1
    frequency_hz: float = 0.0

    def to_dict(self) -> dict:
        return {
            'symbol': self.symbol.value,
            'duration_ms': round(self.duration_ms, 1),
            'slot': self.slot,
            'frequency_hz': round(self.frequency_hz, 2),
        }


class ToneDurationDecoder:
    """Classifies tone durations against an adaptive unit ("dot") estimate.

    Durations under two units are SHORT; anything longer is LONG and counts
    as three units when updating the estimate. Decoded symbols go into a
    bounded buffer that evicts the oldest entry once full.
    """

    def __init__(
        self,
        initial_dot_ms: float = INITIAL_DOT_MS,
        alpha: float = DOT_ALPHA,
        capacity: int = SYMBOL_CAPACITY,
    ):
        self.dot_ms = float(initial_dot_ms)
        self.alpha = float(alpha)
        self.symbols: deque[DecodedSymbol] = deque(maxlen=max(1, int(capacity)))
        self.total_decoded = 0

    @property
    def capacity(self) -> int:
        return self.symbols.maxlen

    def classify(self, duration_ms: float) -> Symbol:
        return Symbol.SHORT if duration_ms < 2.0 * self.dot_ms else Symbol.LONG

    def decode(self, duration_ms: float, slot: int = -1, frequency_hz: float = 0.0) -> DecodedSymbol:
        """Classify *duration_ms*, update the estimate and append the symbol."""
        symbol = self.classify(duration_ms)
        units = duration_ms if symbol is Symbol.SHORT else duration_ms / 3.0
        self.dot_ms = (1.0 - self.alpha) * self.dot_ms + self.alpha * units

        decoded = DecodedSymbol(
            symbol=symbol,
            duration_ms=float(duration_ms),
            slot=slot,
            frequency_hz=float(frequency_hz),
        )
        self.symbols.append(decoded)
        self.total_decoded += 1
        return decoded

    def text(self) -> str:
        return ''.join(s.symbol.value for s in self.symbols)
