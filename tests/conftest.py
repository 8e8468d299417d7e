"""Shared fixtures: Flask test client and a fresh tone engine per test."""

from __future__ import annotations

import os
import tempfile

import pytest

# Keep a developer's real parameter file out of the test run.
os.environ.setdefault(
    'TONEWATCH_CONFIG_PATH',
    os.path.join(tempfile.gettempdir(), 'tonewatch-tests-missing.conf'),
)

import app as app_module  # noqa: E402
from utils.tone_engine import ToneEngine  # noqa: E402


@pytest.fixture
def app():
    app_module.app.config['TESTING'] = True
    return app_module.app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def fresh_engine(monkeypatch):
    """Replace the process-wide engine with a default 2048 @ 44100 Hz one."""
    engine = ToneEngine(sample_rate=44100, frame_size=2048, max_tracks=4, suppression_radius=3)
    monkeypatch.setattr(app_module, 'tone_engine', engine)
    return engine
