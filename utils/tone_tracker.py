"""Persistent tone tracks with start/stop hysteresis."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from utils.logging import get_logger
from utils.peaks import Peak

logger = get_logger('tonewatch.tracker')

# Peaks closer than this to a track's frequency update that track.
FREQUENCY_TOLERANCE = 5.0
# Weight of the previous frequency when a track absorbs a new peak.
FREQUENCY_SMOOTHING = 0.9


@dataclass(frozen=True)
class TrackView:
    """Read-only copy of a track slot handed to consumers."""
    slot: int
    frequency_hz: float
    purity: float
    active: bool
    pending: bool

    def to_dict(self) -> dict:
        return {
            'slot': self.slot,
            'frequency_hz': round(self.frequency_hz, 2),
            'purity': round(self.purity, 2),
            'active': self.active,
            'pending': self.pending,
        }


@dataclass
class Track:
    """One tone hypothesis. Timestamps are milliseconds; None means unset."""
    slot: int
    frequency_hz: float = 0.0
    purity: float = 0.0
    pending_since: float | None = None
    last_seen: float | None = None
    tone_start: float | None = None
    active: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.active and self.pending_since is None

    @property
    def is_pending(self) -> bool:
        return not self.active and self.pending_since is not None

    def claim(self, peak: Peak, now: float) -> None:
        self.frequency_hz = peak.frequency_hz
        self.purity = peak.purity * 100.0
        self.pending_since = now
        self.last_seen = now
        self.tone_start = None
        self.active = False

    def absorb(self, peak: Peak, now: float) -> None:
        self.frequency_hz = (
            FREQUENCY_SMOOTHING * self.frequency_hz
            + (1.0 - FREQUENCY_SMOOTHING) * peak.frequency_hz
        )
        self.purity = peak.purity * 100.0
        self.last_seen = now

    def clear(self) -> None:
        self.pending_since = None
        self.last_seen = None
        self.tone_start = None
        self.active = False
        self.purity = 0.0

    def view(self) -> TrackView:
        return TrackView(
            slot=self.slot,
            frequency_hz=self.frequency_hz,
            purity=self.purity,
            active=self.active,
            pending=self.is_pending,
        )


# Called with (track, duration_ms) right before an active track is cleared.
ReleaseCallback = Callable[[Track, float], None]


class TrackManager:
    """Assigns peaks to a fixed number of track slots.

    Matching is first-match-wins in slot order; there is no global
    assignment step.
    """

    def __init__(self, max_tracks: int, tolerance_hz: float = FREQUENCY_TOLERANCE):
        self.max_tracks = int(max_tracks)
        self.tolerance_hz = float(tolerance_hz)
        self.tracks = [Track(slot=i) for i in range(self.max_tracks)]

    def _find_match(self, peak: Peak) -> Track | None:
        for track in self.tracks:
            if track.is_empty:
                continue
            if abs(track.frequency_hz - peak.frequency_hz) <= self.tolerance_hz:
                return track
        return None

    def _first_empty(self) -> Track | None:
        for track in self.tracks:
            if track.is_empty:
                return track
        return None

    def update(
        self,
        peaks: list[Peak],
        now: float,
        persistence_ms: float,
        on_release: ReleaseCallback | None = None,
    ) -> list[dict]:
        """Advance every slot by one frame and return transition events."""
        events: list[dict] = []

        for peak in peaks:
            track = self._find_match(peak)
            if track is not None:
                track.absorb(peak, now)
                continue
            track = self._first_empty()
            if track is not None:
                track.claim(peak, now)

        for track in self.tracks:
            if track.is_empty:
                continue

            if track.active:
                if now - track.last_seen >= persistence_ms:
                    duration = track.last_seen - track.tone_start
                    logger.debug(
                        'Track %d released at %.1f Hz after %.1f ms',
                        track.slot, track.frequency_hz, duration,
                    )
                    events.append({
                        'type': 'tone_off',
                        'slot': track.slot,
                        'frequency_hz': round(track.frequency_hz, 2),
                        'duration_ms': round(duration, 1),
                        'timestamp_ms': now,
                    })
                    if on_release is not None:
                        on_release(track, duration)
                    track.clear()
                continue

            # Pending: drop silently once the peak has been gone for a full window.
            if now - track.last_seen >= persistence_ms:
                track.clear()
                continue
            if track.last_seen - track.pending_since >= persistence_ms:
                track.active = True
                track.tone_start = now
                logger.debug('Track %d active at %.1f Hz', track.slot, track.frequency_hz)
                events.append({
                    'type': 'tone_on',
                    'slot': track.slot,
                    'frequency_hz': round(track.frequency_hz, 2),
                    'purity': round(track.purity, 2),
                    'timestamp_ms': now,
                })

        return events

    def release_all(self, now: float, on_release: ReleaseCallback | None = None) -> list[dict]:
        """Release every active track immediately (end of stream)."""
        events: list[dict] = []
        for track in self.tracks:
            if track.active:
                duration = track.last_seen - track.tone_start
                events.append({
                    'type': 'tone_off',
                    'slot': track.slot,
                    'frequency_hz': round(track.frequency_hz, 2),
                    'duration_ms': round(duration, 1),
                    'timestamp_ms': now,
                })
                if on_release is not None:
                    on_release(track, duration)
            track.clear()
        return events

    def views(self) -> tuple[TrackView, ...]:
        return tuple(track.view() for track in self.tracks)
