"""Multi-tone tracking engine.

Signal chain per frame:
- Hann window + user gain
- Real FFT power spectrum (numpy)
- Band-pass mask, optional smoothing, optional squelch
- Up to K separated peaks with purity scoring
- Track slots with start/stop hysteresis
- Short/long classification of released tones with adaptive dot timing

The audio worker calls ``ToneEngine.on_frame``; HTTP handlers and the SSE
stream call ``ToneEngine.snapshot``. Both sides share one lock, held by the
worker only while publishing a finished frame.
"""

from __future__ import annotations

import contextlib
import dataclasses
import os
import queue
import select
import threading
import time
import wave
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np

from utils.logging import get_logger
from utils.peaks import PeakExtractor, qualifying_peaks
from utils.spectrum import SpectralFilter, SpectralTransform, WindowGainStage
from utils.tone_config import ToneConfig
from utils.tone_decoder import SYMBOL_CAPACITY, DecodedSymbol, ToneDurationDecoder
from utils.tone_tracker import Track, TrackManager, TrackView
from utils.validation import (
    coerce_bool,
    validate_band,
    validate_gain,
    validate_persistence,
    validate_squelch_threshold,
)

logger = get_logger('tonewatch.engine')

# Full-scale value of a signed 16-bit sample.
MAX_AMPLITUDE = 32768.0

DEFAULT_SAMPLE_RATE = 44100
DEFAULT_FRAME_SIZE = 2048
DEFAULT_MAX_TRACKS = 4
DEFAULT_SUPPRESSION_RADIUS = 3


def pcm16_to_float(pcm_bytes: bytes) -> np.ndarray:
    """Convert 16-bit little-endian PCM to float samples in [-1, 1)."""
    usable = len(pcm_bytes) - (len(pcm_bytes) % 2)
    return np.frombuffer(pcm_bytes[:usable], dtype='<i2').astype(np.float64) / MAX_AMPLITUDE


def compress_magnitudes(magnitudes: np.ndarray, bins: int) -> list[float]:
    """Max-pool *magnitudes* down to *bins* values for display."""
    if bins <= 0 or len(magnitudes) <= bins:
        return [round(float(m), 4) for m in magnitudes]
    edges = np.linspace(0, len(magnitudes), bins + 1).astype(int)
    return [
        round(float(np.max(magnitudes[lo:hi])), 4) if hi > lo else 0.0
        for lo, hi in zip(edges[:-1], edges[1:])
    ]


@dataclass(frozen=True)
class EngineSnapshot:
    """Consistent copy of everything a display needs for one redraw."""
    tracks: tuple[TrackView, ...]
    magnitudes: np.ndarray
    symbols: tuple[DecodedSymbol, ...]
    dot_ms: float
    freq_resolution: float
    frame_count: int
    timestamp_ms: float | None
    config: ToneConfig

    @property
    def active_tracks(self) -> list[TrackView]:
        return [t for t in self.tracks if t.active]

    @property
    def symbol_text(self) -> str:
        return ''.join(s.symbol.value for s in self.symbols)

    def status_line(self) -> str:
        active = self.active_tracks
        if not active:
            return 'No pure sine wave detected. Listening...'
        parts = [
            f'Freq: {t.frequency_hz:.2f} Hz | Purity: {t.purity:.2f}%'
            for t in active
        ]
        return 'Sine wave detected! ' + ' ; '.join(parts)

    def to_dict(self, bins: int = 0) -> dict[str, Any]:
        return {
            'tracks': [t.to_dict() for t in self.tracks],
            'magnitudes': compress_magnitudes(self.magnitudes, bins),
            'symbols': self.symbol_text,
            'symbol_details': [s.to_dict() for s in self.symbols],
            'dot_ms': round(self.dot_ms, 1),
            'freq_resolution': round(self.freq_resolution, 3),
            'frame_count': self.frame_count,
            'timestamp_ms': self.timestamp_ms,
            'status_line': self.status_line(),
            'config': self.config.to_dict(),
        }


class ToneEngine:
    """Per-frame spectral multi-tone tracking pipeline."""

    def __init__(
        self,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        frame_size: int = DEFAULT_FRAME_SIZE,
        max_tracks: int = DEFAULT_MAX_TRACKS,
        suppression_radius: int = DEFAULT_SUPPRESSION_RADIUS,
        symbol_capacity: int = SYMBOL_CAPACITY,
        config: ToneConfig | None = None,
    ):
        self._transform = SpectralTransform(frame_size, sample_rate)
        self.sample_rate = self._transform.sample_rate
        self.frame_size = self._transform.frame_size
        self.freq_resolution = self._transform.freq_resolution
        self.frame_period_ms = self.frame_size * 1000.0 / self.sample_rate

        self._window = WindowGainStage(self.frame_size)
        self._filter = SpectralFilter(self._transform.frequencies, self.frame_size)
        self._extractor = PeakExtractor(max_tracks, suppression_radius, self.freq_resolution)
        self._tracker = TrackManager(max_tracks)
        self._decoder = ToneDurationDecoder(capacity=symbol_capacity)

        # Shared with consumers; guarded by _lock.
        self._lock = threading.Lock()
        self._config = config or ToneConfig()
        self._tracks: tuple[TrackView, ...] = self._tracker.views()
        self._magnitudes = np.zeros(self._transform.n_bins, dtype=np.float64)
        self._frame_count = 0
        self._last_timestamp: float | None = None

        logger.info(
            'Tone engine ready: %d-point FFT at %d Hz, frequency resolution %.2f Hz, %d tracks',
            self.frame_size, self.sample_rate, self.freq_resolution, max_tracks,
        )

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------

    @property
    def config(self) -> ToneConfig:
        with self._lock:
            return self._config

    def apply_config(self, config: ToneConfig) -> None:
        with self._lock:
            self._config = config

    def _replace_config(self, **changes: Any) -> None:
        with self._lock:
            self._config = dataclasses.replace(self._config, **changes)

    def set_gain(self, gain_db: float) -> None:
        self._replace_config(gain_db=validate_gain(gain_db))

    def set_band(self, low_hz: float, high_hz: float) -> None:
        low, high = validate_band(low_hz, high_hz)
        self._replace_config(low_cutoff_hz=low, high_cutoff_hz=high)

    def set_persistence(self, persistence_ms: float) -> None:
        self._replace_config(persistence_ms=validate_persistence(persistence_ms))

    def set_averaging(self, enabled: bool) -> None:
        self._replace_config(averaging=coerce_bool(enabled))

    def set_squelch(self, enabled: bool, threshold: float | None = None) -> None:
        changes: dict[str, Any] = {'squelch': coerce_bool(enabled)}
        if threshold is not None:
            changes['squelch_threshold'] = validate_squelch_threshold(threshold)
        self._replace_config(**changes)

    # ------------------------------------------------------------------
    # Frame processing
    # ------------------------------------------------------------------

    def on_frame(self, samples: Any, timestamp_ms: float | None = None) -> list[dict[str, Any]]:
        """Process one frame of normalized samples and return its events.

        *samples* is read during the call only. *timestamp_ms* defaults to
        the monotonic clock.
        """
        now = time.monotonic() * 1000.0 if timestamp_ms is None else float(timestamp_ms)
        with self._lock:
            config = self._config

        frame = np.asarray(samples, dtype=np.float64)
        windowed = self._window.apply(frame, config.gain_linear)
        power = self._transform.power(windowed)
        detect, magnitudes = self._filter.apply(
            power,
            config.low_cutoff_hz,
            config.high_cutoff_hz,
            averaging=config.averaging,
            squelch=config.squelch,
            squelch_threshold=config.squelch_threshold,
        )
        peaks = self._extractor.extract(detect, float(np.sum(detect)))
        candidates = qualifying_peaks(peaks, config.low_cutoff_hz, config.high_cutoff_hz)

        released: list[tuple[int, float, float]] = []

        def _on_release(track: Track, duration: float) -> None:
            released.append((track.slot, track.frequency_hz, duration))

        events = self._tracker.update(candidates, now, config.persistence_ms, on_release=_on_release)

        with self._lock:
            events.extend(self._decode_released(released, now))
            self._tracks = self._tracker.views()
            np.copyto(self._magnitudes, magnitudes)
            self._frame_count += 1
            self._last_timestamp = now

        return events

    def flush(self, timestamp_ms: float | None = None) -> list[dict[str, Any]]:
        """Release all active tracks at end-of-stream."""
        now = time.monotonic() * 1000.0 if timestamp_ms is None else float(timestamp_ms)
        released: list[tuple[int, float, float]] = []

        def _on_release(track: Track, duration: float) -> None:
            released.append((track.slot, track.frequency_hz, duration))

        events = self._tracker.release_all(now, on_release=_on_release)
        with self._lock:
            events.extend(self._decode_released(released, now))
            self._tracks = self._tracker.views()
        return events

    def _decode_released(self, released: list[tuple[int, float, float]], now: float) -> list[dict[str, Any]]:
        # Caller holds _lock.
        events = []
        for slot, frequency_hz, duration in released:
            decoded = self._decoder.decode(duration, slot=slot, frequency_hz=frequency_hz)
            events.append({
                'type': 'tone_symbol',
                'symbol': decoded.symbol.value,
                'slot': slot,
                'frequency_hz': round(frequency_hz, 2),
                'duration_ms': round(duration, 1),
                'dot_ms': round(self._decoder.dot_ms, 1),
                'timestamp_ms': now,
            })
        return events

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def snapshot(self) -> EngineSnapshot:
        with self._lock:
            return EngineSnapshot(
                tracks=self._tracks,
                magnitudes=self._magnitudes.copy(),
                symbols=tuple(self._decoder.symbols),
                dot_ms=self._decoder.dot_ms,
                freq_resolution=self.freq_resolution,
                frame_count=self._frame_count,
                timestamp_ms=self._last_timestamp,
                config=self._config,
            )

    def get_metrics(self) -> dict[str, Any]:
        with self._lock:
            return {
                'frame_count': self._frame_count,
                'active_tracks': sum(1 for t in self._tracks if t.active),
                'dot_ms': round(self._decoder.dot_ms, 1),
                'symbols_decoded': self._decoder.total_decoded,
                'freq_resolution': round(self.freq_resolution, 3),
            }


# ----------------------------------------------------------------------
# Offline analysis
# ----------------------------------------------------------------------

# Sample width in bytes -> (numpy dtype, offset, full scale).
_WAV_FORMATS = {
    1: (np.uint8, 128.0, 128.0),
    2: (np.dtype('<i2'), 0.0, MAX_AMPLITUDE),
    4: (np.dtype('<i4'), 0.0, 2147483648.0),
}


def read_wav_mono(path: Path) -> tuple[np.ndarray, int]:
    """Return ``(samples, sample_rate)`` with channels averaged to mono."""
    with wave.open(str(path), 'rb') as wf:
        fmt = _WAV_FORMATS.get(wf.getsampwidth())
        if fmt is None:
            raise ValueError(f'Unsupported WAV sample width: {wf.getsampwidth() * 8} bits')
        channels = wf.getnchannels()
        rate = wf.getframerate()
        raw = wf.readframes(wf.getnframes())

    dtype, offset, scale = fmt
    usable = len(raw) - len(raw) % (np.dtype(dtype).itemsize * channels)
    audio = (np.frombuffer(raw[:usable], dtype=dtype).astype(np.float64) - offset) / scale
    if channels > 1:
        audio = audio.reshape(-1, channels).mean(axis=1)
    return audio, int(rate)


def resample_to(samples: np.ndarray, from_rate: int, to_rate: int) -> np.ndarray:
    """Linear interpolation onto the *to_rate* sample grid."""
    if from_rate == to_rate or len(samples) == 0:
        return samples
    duration_s = len(samples) / float(from_rate)
    target_len = max(1, int(round(duration_s * to_rate)))
    positions = np.arange(target_len, dtype=np.float64) * (from_rate / float(to_rate))
    return np.interp(positions, np.arange(len(samples), dtype=np.float64), samples)


def analyze_samples(engine: ToneEngine, samples: np.ndarray) -> list[dict[str, Any]]:
    """Feed *samples* through *engine* frame by frame on the sample clock."""
    events: list[dict[str, Any]] = []
    n = engine.frame_size
    frame_index = 0
    for start in range(0, len(samples), n):
        frame = samples[start:start + n]
        if len(frame) < n:
            frame = np.pad(frame, (0, n - len(frame)))
        events.extend(engine.on_frame(frame, frame_index * engine.frame_period_ms))
        frame_index += 1
    events.extend(engine.flush(frame_index * engine.frame_period_ms))
    return events


def analyze_wav_file(
    wav_path: str | Path,
    *,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
    frame_size: int = DEFAULT_FRAME_SIZE,
    max_tracks: int = DEFAULT_MAX_TRACKS,
    suppression_radius: int = DEFAULT_SUPPRESSION_RADIUS,
    config: ToneConfig | None = None,
) -> dict[str, Any]:
    """Run the tone engine over a WAV file and return symbols/events/metrics."""
    path = Path(wav_path)
    if not path.is_file():
        raise FileNotFoundError(f'WAV file not found: {path}')

    audio, file_rate = read_wav_mono(path)
    if file_rate != sample_rate:
        audio = resample_to(audio, file_rate, sample_rate)

    engine = ToneEngine(
        sample_rate=sample_rate,
        frame_size=frame_size,
        max_tracks=max_tracks,
        suppression_radius=suppression_radius,
        config=config,
    )
    events = analyze_samples(engine, np.clip(audio, -1.0, 1.0))
    snapshot = engine.snapshot()

    return {
        'symbols': snapshot.symbol_text,
        'events': events,
        'tones': [e for e in events if e['type'] == 'tone_off'],
        'metrics': engine.get_metrics(),
    }


# ----------------------------------------------------------------------
# Live worker
# ----------------------------------------------------------------------

def tone_engine_thread(
    pcm_stdout,
    engine: ToneEngine,
    output_queue: queue.Queue,
    stop_event: threading.Event,
    pcm_ready_event: threading.Event | None = None,
    scope_interval: float = 0.10,
    scope_bins: int = 128,
) -> None:
    """Read S16_LE PCM from *pcm_stdout*, run frames, push events to *output_queue*."""
    CHUNK = 8192
    frame_bytes = engine.frame_size * 2

    raw_queue: queue.Queue[bytes] = queue.Queue(maxsize=64)
    reader_done = threading.Event()
    reader_thread: threading.Thread | None = None
    frame_index = 0
    last_scope = 0.0
    pending = bytearray()

    # Sample-clock timestamps continue from the engine's previous session.
    previous = engine.snapshot().timestamp_ms
    time_base = 0.0 if previous is None else previous + engine.frame_period_ms

    def _put(event: dict[str, Any]) -> None:
        with contextlib.suppress(queue.Full):
            output_queue.put_nowait(event)

    def _reader_loop() -> None:
        try:
            fd = None
            with contextlib.suppress(Exception):
                fd = pcm_stdout.fileno()
            while not stop_event.is_set():
                try:
                    if fd is not None:
                        ready, _, _ = select.select([fd], [], [], 0.20)
                        if not ready:
                            continue
                        data = os.read(fd, CHUNK)
                    elif hasattr(pcm_stdout, 'read1'):
                        data = pcm_stdout.read1(CHUNK)
                    else:
                        data = pcm_stdout.read(CHUNK)
                except (OSError, ValueError) as e:
                    _put({'type': 'info', 'text': f'[pcm] reader error: {e}'})
                    break
                if not data:
                    break
                try:
                    raw_queue.put(data, timeout=0.2)
                except queue.Full:
                    # Drop the oldest chunk rather than stall the capture pipe.
                    with contextlib.suppress(queue.Empty):
                        raw_queue.get_nowait()
                    with contextlib.suppress(queue.Full):
                        raw_queue.put_nowait(data)
        finally:
            reader_done.set()
            with contextlib.suppress(queue.Full):
                raw_queue.put_nowait(b'')

    try:
        reader_thread = threading.Thread(target=_reader_loop, daemon=True, name='tone-pcm-reader')
        reader_thread.start()

        while not stop_event.is_set():
            try:
                data = raw_queue.get(timeout=0.20)
            except queue.Empty:
                if reader_done.is_set():
                    break
                continue
            if not data:
                break

            if pcm_ready_event is not None and not pcm_ready_event.is_set():
                pcm_ready_event.set()
            pending.extend(data)

            while len(pending) >= frame_bytes:
                frame = pcm16_to_float(bytes(pending[:frame_bytes]))
                del pending[:frame_bytes]
                for event in engine.on_frame(frame, time_base + frame_index * engine.frame_period_ms):
                    _put(event)
                frame_index += 1

            now = time.monotonic()
            if now - last_scope >= scope_interval:
                last_scope = now
                scope = engine.snapshot().to_dict(bins=scope_bins)
                scope['type'] = 'scope'
                _put(scope)

    except Exception as e:  # pragma: no cover - runtime guard
        logger.debug(f'Tone engine thread error: {e}')
        _put({'type': 'info', 'text': f'[pcm] engine thread error: {e}'})
    finally:
        stop_event.set()
        if reader_thread is not None:
            reader_thread.join(timeout=0.35)

        for event in engine.flush(time_base + frame_index * engine.frame_period_ms):
            _put(event)

        _put({
            'type': 'status',
            'status': 'stopped',
            'metrics': engine.get_metrics(),
        })
