"""Synthetic signal helpers shared by the test modules."""

from __future__ import annotations

import wave

import numpy as np

SAMPLE_RATE = 44100
FRAME_SIZE = 2048
FRAME_MS = FRAME_SIZE * 1000.0 / SAMPLE_RATE


def tone_frame(
    freqs: float | list[float],
    amplitude: float = 1.0,
    frame_size: int = FRAME_SIZE,
    sample_rate: int = SAMPLE_RATE,
) -> np.ndarray:
    """One frame holding the sum of sines at *freqs*, each at *amplitude*."""
    if isinstance(freqs, (int, float)):
        freqs = [freqs]
    t = np.arange(frame_size, dtype=np.float64) / sample_rate
    frame = np.zeros(frame_size, dtype=np.float64)
    for freq in freqs:
        frame += amplitude * np.sin(2.0 * np.pi * freq * t)
    return frame


def silence_frame(frame_size: int = FRAME_SIZE) -> np.ndarray:
    return np.zeros(frame_size, dtype=np.float64)


def feed(engine, frames, start_index: int = 0) -> list[dict]:
    """Feed frames on the sample clock and collect the emitted events."""
    events = []
    for offset, frame in enumerate(frames):
        events.extend(engine.on_frame(frame, (start_index + offset) * engine.frame_period_ms))
    return events


def keyed_pattern(freq: float, pattern: list[tuple[bool, int]]) -> np.ndarray:
    """Concatenate frame-aligned on/off segments: [(on, n_frames), ...]."""
    chunks = []
    for on, n_frames in pattern:
        for _ in range(n_frames):
            chunks.append(tone_frame(freq, amplitude=0.8) if on else silence_frame())
    return np.concatenate(chunks)


def to_pcm16(samples: np.ndarray) -> bytes:
    return (np.clip(samples, -1.0, 1.0) * 32767.0).astype('<i2').tobytes()


def write_wav(path, samples: np.ndarray, sample_rate: int = SAMPLE_RATE) -> None:
    with wave.open(str(path), 'wb') as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(to_pcm16(samples))
