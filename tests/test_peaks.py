"""Tests for local-maximum peak extraction."""

from __future__ import annotations

import numpy as np
import pytest

from helpers import FRAME_SIZE, SAMPLE_RATE, tone_frame
from utils.peaks import DETECT_THRESHOLD, Peak, PeakExtractor, qualifying_peaks
from utils.spectrum import SpectralTransform, hann_window

RESOLUTION = SAMPLE_RATE / FRAME_SIZE


def _power(freqs, amplitude=1.0):
    transform = SpectralTransform(FRAME_SIZE, SAMPLE_RATE)
    return transform.power(tone_frame(freqs, amplitude=amplitude) * hann_window(FRAME_SIZE)).copy()


class TestPeakExtractor:
    def test_single_tone_is_pure(self):
        extractor = PeakExtractor(4, 3, RESOLUTION)
        peaks = extractor.extract(_power(1000.0))
        assert peaks[0].index == 46
        assert abs(peaks[0].frequency_hz - 1000.0) <= RESOLUTION
        assert peaks[0].purity > DETECT_THRESHOLD

    def test_two_equal_tones_both_qualify(self):
        extractor = PeakExtractor(4, 3, RESOLUTION)
        peaks = extractor.extract(_power([1000.0, 3000.0], amplitude=0.5))
        pure = qualifying_peaks(peaks, 20.0, 20000.0)
        assert sorted(p.index for p in pure) == [46, 139]

    def test_strict_left_plateau_right(self):
        power = np.zeros(12)
        power[4] = 5.0
        power[5] = 5.0
        extractor = PeakExtractor(4, 0, 1.0)
        peaks = extractor.extract(power)
        assert [p.index for p in peaks] == [4]

    def test_edge_bins_never_peak(self):
        power = np.zeros(10)
        power[0] = 10.0
        power[-1] = 10.0
        assert PeakExtractor(4, 3, 1.0).extract(power) == []

    def test_suppression_radius_keeps_strongest(self):
        power = np.zeros(20)
        power[5] = 10.0
        power[8] = 6.0
        power[12] = 4.0
        peaks = PeakExtractor(4, 3, 1.0).extract(power)
        assert [p.index for p in peaks] == [5, 12]

    def test_max_peaks_limit(self):
        power = np.zeros(40)
        for i, idx in enumerate(range(4, 36, 8)):
            power[idx] = 10.0 - i
        peaks = PeakExtractor(2, 3, 1.0).extract(power)
        assert [p.index for p in peaks] == [4, 12]

    def test_silence_has_no_peaks(self):
        assert PeakExtractor(4, 3, 1.0).extract(np.zeros(64)) == []

    def test_purity_never_exceeds_one(self):
        power = np.zeros(10)
        power[4] = 1.0
        peaks = PeakExtractor(4, 3, 1.0).extract(power, total_power=0.5)
        assert peaks[0].purity == 1.0

    def test_broadband_noise_is_impure(self):
        rng = np.random.default_rng(7)
        transform = SpectralTransform(FRAME_SIZE, SAMPLE_RATE)
        noise = rng.uniform(-0.5, 0.5, FRAME_SIZE) * hann_window(FRAME_SIZE)
        peaks = PeakExtractor(4, 3, RESOLUTION).extract(transform.power(noise).copy())
        assert qualifying_peaks(peaks, 20.0, 20000.0) == []


class TestQualifyingPeaks:
    def test_filters_by_band_and_threshold(self):
        peaks = [
            Peak(index=10, frequency_hz=215.3, purity=0.95),
            Peak(index=46, frequency_hz=990.5, purity=0.95),
            Peak(index=60, frequency_hz=1292.0, purity=0.70),
        ]
        kept = qualifying_peaks(peaks, 500.0, 2000.0)
        assert [p.index for p in kept] == [46]

    @pytest.mark.parametrize('purity,expected', [(0.7, False), (0.71, True)])
    def test_threshold_is_exclusive(self, purity, expected):
        peaks = [Peak(index=1, frequency_hz=100.0, purity=purity)]
        assert bool(qualifying_peaks(peaks, 20.0, 20000.0)) is expected
