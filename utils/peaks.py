"""Multi-peak extraction with non-max suppression."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

# Minimum fraction of total power within +/-1 bin of a peak.
DETECT_THRESHOLD = 0.7


@dataclass(frozen=True)
class Peak:
    """A tonal peak detected in a single frame."""
    index: int
    frequency_hz: float
    purity: float


class PeakExtractor:
    """Finds up to ``max_peaks`` separated local maxima in a power spectrum."""

    def __init__(self, max_peaks: int, suppression_radius: int, freq_resolution: float):
        self.max_peaks = int(max_peaks)
        self.suppression_radius = max(0, int(suppression_radius))
        self.freq_resolution = float(freq_resolution)
        self._used: np.ndarray | None = None

    def _used_mask(self, n_bins: int) -> np.ndarray:
        if self._used is None or len(self._used) != n_bins:
            self._used = np.zeros(n_bins, dtype=bool)
        else:
            self._used.fill(False)
        return self._used

    def extract(self, power: np.ndarray, total_power: float | None = None) -> list[Peak]:
        """Return peaks in selection order (strongest first)."""
        n_bins = len(power)
        if total_power is None:
            total_power = float(np.sum(power))
        if n_bins < 3 or total_power <= 0.0:
            return []

        # Strict rise from the left, plateau-or-fall to the right.
        inner = power[1:-1]
        candidates = (inner > power[:-2]) & (inner >= power[2:]) & (inner > 0.0)
        local_max = np.flatnonzero(candidates) + 1
        if local_max.size == 0:
            return []

        # Highest power first; stable sort keeps lower bins first on ties.
        order = local_max[np.argsort(-power[local_max], kind='stable')]

        used = self._used_mask(n_bins)
        radius = self.suppression_radius
        selected: list[tuple[int, float]] = []
        for index in order:
            if len(selected) >= self.max_peaks:
                break
            index = int(index)
            if used[index]:
                continue
            used[max(0, index - radius):index + radius + 1] = True
            local = float(power[index - 1] + power[index] + power[index + 1])
            selected.append((index, local))

        # Power held by the other selected peaks does not count against a
        # peak's purity; with a single peak this is local / total.
        claimed = sum(local for _, local in selected)
        peaks: list[Peak] = []
        for index, local in selected:
            reference = total_power - (claimed - local)
            purity = min(1.0, local / reference) if reference > 0.0 else 0.0
            peaks.append(Peak(
                index=index,
                frequency_hz=index * self.freq_resolution,
                purity=purity,
            ))
        return peaks


def qualifying_peaks(
    peaks: list[Peak],
    low_hz: float,
    high_hz: float,
    threshold: float = DETECT_THRESHOLD,
) -> list[Peak]:
    """Peaks pure enough and inside the band to feed the track manager."""
    return [
        p for p in peaks
        if p.purity > threshold and low_hz <= p.frequency_hz <= high_hz
    ]
