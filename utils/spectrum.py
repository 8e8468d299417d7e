"""Frame-to-spectrum stages of the tone engine.

Signal chain per frame:
- Hann window and linear gain
- Real FFT (numpy) reduced to per-bin power
- Band-pass mask, optional exponential smoothing, optional squelch gate
"""

from __future__ import annotations

import numpy as np

# Exponential smoothing weight given to the newest frame.
SMOOTHING_ALPHA = 0.1


def hann_window(size: int) -> np.ndarray:
    """Symmetric Hann window: 0.5 * (1 - cos(2*pi*i / (N - 1)))."""
    i = np.arange(size, dtype=np.float64)
    return 0.5 * (1.0 - np.cos(2.0 * np.pi * i / (size - 1)))


class WindowGainStage:
    """Applies the fixed analysis window and the user gain to a frame."""

    def __init__(self, frame_size: int):
        self.frame_size = int(frame_size)
        self.window = hann_window(self.frame_size)
        self._out = np.zeros(self.frame_size, dtype=np.float64)

    def apply(self, samples: np.ndarray, gain_linear: float) -> np.ndarray:
        """Return windowed samples; the returned buffer is reused next frame."""
        if len(samples) != self.frame_size:
            raise ValueError(f'Expected {self.frame_size} samples, got {len(samples)}')
        np.multiply(samples, self.window, out=self._out)
        self._out *= gain_linear
        # Corrupt samples degrade to silence.
        np.nan_to_num(self._out, copy=False, nan=0.0, posinf=0.0, neginf=0.0)
        return self._out


class SpectralTransform:
    """Fixed-size real FFT producing N/2 power bins."""

    def __init__(self, frame_size: int, sample_rate: int):
        frame_size = int(frame_size)
        if frame_size < 8 or frame_size % 2:
            raise ValueError(f'FFT size must be an even number >= 8, got {frame_size}')
        if sample_rate <= 0:
            raise ValueError(f'Invalid sample rate: {sample_rate}')
        self.frame_size = frame_size
        self.sample_rate = int(sample_rate)
        self.n_bins = frame_size // 2
        self.freq_resolution = self.sample_rate / float(frame_size)
        self.frequencies = np.arange(self.n_bins, dtype=np.float64) * self.freq_resolution
        self._power = np.zeros(self.n_bins, dtype=np.float64)

    def power(self, windowed: np.ndarray) -> np.ndarray:
        """Return real**2 + imag**2 for the first N/2 bins."""
        spectrum = np.fft.rfft(windowed, n=self.frame_size)[:self.n_bins]
        np.square(spectrum.real, out=self._power)
        self._power += np.square(spectrum.imag)
        return self._power


class SpectralFilter:
    """Band-pass mask, cross-frame smoothing and squelch.

    Keeps the smoothed power of the previous frame; every other buffer is
    overwritten in place each frame.
    """

    def __init__(self, frequencies: np.ndarray, frame_size: int):
        self.frequencies = frequencies
        self.max_power = (frame_size / 4.0) ** 2
        n_bins = len(frequencies)
        self.raw_power = np.zeros(n_bins, dtype=np.float64)
        self.smoothed_power = np.zeros(n_bins, dtype=np.float64)
        self.magnitudes = np.zeros(n_bins, dtype=np.float64)
        self._detect = np.zeros(n_bins, dtype=np.float64)

    def reset(self) -> None:
        self.raw_power.fill(0.0)
        self.smoothed_power.fill(0.0)
        self.magnitudes.fill(0.0)
        self._detect.fill(0.0)

    def apply(
        self,
        power: np.ndarray,
        low_hz: float,
        high_hz: float,
        averaging: bool = False,
        squelch: bool = False,
        squelch_threshold: float = 0.0,
    ) -> tuple[np.ndarray, np.ndarray]:
        """Filter *power* and return ``(detection_power, normalized_magnitudes)``."""
        out_of_band = (self.frequencies < low_hz) | (self.frequencies > high_hz)
        np.copyto(self.raw_power, power)
        self.raw_power[out_of_band] = 0.0

        if averaging:
            self.smoothed_power *= (1.0 - SMOOTHING_ALPHA)
            self.smoothed_power += SMOOTHING_ALPHA * self.raw_power
        else:
            np.copyto(self.smoothed_power, self.raw_power)
        np.copyto(self._detect, self.smoothed_power)

        np.divide(self._detect, self.max_power, out=self.magnitudes)
        np.minimum(self.magnitudes, 1.0, out=self.magnitudes)

        if squelch:
            if squelch_threshold >= 1.0:
                gated = np.ones(len(self.magnitudes), dtype=bool)
            else:
                gated = self.magnitudes < squelch_threshold
            self.magnitudes[gated] = 0.0
            self._detect[gated] = 0.0

        return self._detect, self.magnitudes
