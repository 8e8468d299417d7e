"""Tests for the /tones blueprint."""

from __future__ import annotations

import io
import queue
import subprocess
import threading
import time
from unittest.mock import patch

import pytest

import app as app_module
import routes.tones as tones_routes
from helpers import keyed_pattern, to_pcm16, write_wav


class _FakeCapture:
    """Stand-in for the capture subprocess: a finite PCM pipe."""

    def __init__(self, pcm: bytes, stderr: bytes = b''):
        self.stdout = io.BytesIO(pcm)
        self.stderr = io.BytesIO(stderr)
        self.pid = 4242
        self.returncode = None
        self.terminated = False

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.returncode = -15

    def kill(self):
        self.returncode = -9

    def wait(self, timeout=None):
        return self.returncode


@pytest.fixture(autouse=True)
def _reset_tones_state(fresh_engine, tmp_path, monkeypatch):
    monkeypatch.setattr(app_module, 'tone_config_path', str(tmp_path / 'tonewatch.conf'))
    app_module.tone_process = None
    tones_routes.tones_state = tones_routes.TONES_IDLE
    tones_routes.tones_stop_event = None
    tones_routes.tones_engine_worker = None
    tones_routes.tones_stderr_worker = None
    tones_routes.tones_lingering_worker = None
    tones_routes.tones_last_error = ''
    tones_routes._drain_queue(app_module.tone_queue)
    yield
    if tones_routes.tones_stop_event is not None:
        tones_routes.tones_stop_event.set()
    app_module.tone_process = None
    tones_routes.tones_state = tones_routes.TONES_IDLE
    tones_routes._drain_queue(app_module.tone_queue)


def _wait_for_stopped_worker(timeout=5.0) -> list[dict]:
    """Collect queued events until the worker reports its final metrics."""
    events = []
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            event = app_module.tone_queue.get(timeout=0.1)
        except queue.Empty:
            continue
        events.append(event)
        if event.get('type') == 'status' and 'metrics' in event:
            return events
    raise AssertionError('tone worker never reported stopped')


class TestLifecycle:
    def test_stop_when_idle(self, client):
        resp = client.post('/tones/stop')
        assert resp.status_code == 200
        assert resp.get_json()['status'] == 'not_running'

    def test_start_decodes_piped_audio_then_stops(self, client):
        pcm = to_pcm16(keyed_pattern(1000.0, [(True, 10), (False, 4)]))
        fake = _FakeCapture(pcm, stderr=b'Recording raw data\n')

        with patch('routes.tones.subprocess.Popen', return_value=fake) as popen:
            resp = client.post('/tones/start', json={'persistence_ms': 100})
            assert resp.status_code == 200
            data = resp.get_json()
            assert data['status'] == 'started'
            assert data['command'][0] == 'arecord'
            assert data['config']['frame_size'] == 2048
            assert popen.call_args.kwargs['stdout'] is subprocess.PIPE

            events = _wait_for_stopped_worker()

        symbols = [e['symbol'] for e in events if e['type'] == 'tone_symbol']
        assert symbols == ['-']

        busy = client.post('/tones/start', json={})
        assert busy.status_code == 409

        status = client.get('/tones/status').get_json()
        assert status['state'] == 'running'

        stop = client.post('/tones/stop')
        assert stop.status_code == 200
        body = stop.get_json()
        assert body['status'] == 'stopped'
        assert body['metrics']['symbols_decoded'] == 1
        assert fake.terminated
        assert client.get('/tones/status').get_json()['state'] == 'idle'

    def test_missing_capture_binary(self, client):
        with patch('routes.tones.subprocess.Popen', side_effect=FileNotFoundError('arecord')):
            resp = client.post('/tones/start', json={})
        assert resp.status_code == 500
        assert 'arecord' in resp.get_json()['message']
        status = client.get('/tones/status').get_json()
        assert status['state'] == 'idle'
        assert status['error']

    def test_capture_exits_without_audio(self, client, monkeypatch):
        monkeypatch.setattr(tones_routes, 'PCM_READY_TIMEOUT', 0.2)
        fake = _FakeCapture(b'')
        fake.returncode = 1
        with patch('routes.tones.subprocess.Popen', return_value=fake):
            resp = client.post('/tones/start', json={})
        assert resp.status_code == 500
        assert 'exited with code 1' in resp.get_json()['message']
        assert tones_routes.tones_state == tones_routes.TONES_IDLE

    def test_start_refused_while_old_worker_alive(self, client, monkeypatch):
        release = threading.Event()
        old_worker = threading.Thread(target=release.wait, daemon=True)
        old_worker.start()
        monkeypatch.setattr(tones_routes, 'tones_lingering_worker', old_worker)
        try:
            with patch('routes.tones.subprocess.Popen') as popen:
                resp = client.post('/tones/start', json={})
        finally:
            release.set()
            old_worker.join(timeout=1.0)
        assert resp.status_code == 409
        assert 'still shutting down' in resp.get_json()['message']
        popen.assert_not_called()

    def test_start_rejects_bad_parameters(self, client):
        with patch('routes.tones.subprocess.Popen') as popen:
            resp = client.post('/tones/start', json={'low_cutoff_hz': 5000, 'high_cutoff_hz': 100})
        assert resp.status_code == 400
        popen.assert_not_called()


class TestParameters:
    def test_get_config(self, client):
        data = client.get('/tones/config').get_json()
        assert data['status'] == 'ok'
        assert data['parameters']['persistence_ms'] == 100.0
        assert data['freq_resolution'] == pytest.approx(21.533)

    def test_update_config_applies_to_engine(self, client, fresh_engine):
        resp = client.post('/tones/config', json={'gain_db': 6, 'averaging': True})
        assert resp.status_code == 200
        assert resp.get_json()['saved'] is False
        assert fresh_engine.config.gain_db == 6.0
        assert fresh_engine.config.averaging is True

    @pytest.mark.parametrize('payload', [
        {'persistence_ms': 5},
        {'squelch_threshold': -1},
        {'high_cutoff_hz': 'high'},
    ])
    def test_update_config_rejects_invalid(self, client, fresh_engine, payload):
        resp = client.post('/tones/config', json=payload)
        assert resp.status_code == 400
        assert resp.get_json()['status'] == 'error'
        assert fresh_engine.config.persistence_ms == 100.0

    def test_update_config_saves_file(self, client):
        resp = client.post('/tones/config', json={'squelch': True, 'save': True})
        assert resp.get_json()['saved'] is True
        with open(app_module.tone_config_path, encoding='utf-8') as fh:
            assert 'squelch=true' in fh.read().splitlines()


class TestSnapshot:
    def test_idle_snapshot(self, client):
        data = client.get('/tones/snapshot?bins=64').get_json()
        assert len(data['magnitudes']) == 64
        assert data['tracks'][0]['active'] is False
        assert data['status_line'] == 'No pure sine wave detected. Listening...'
        assert data['timestamp_ms'] is None

    def test_health_reports_engine(self, client):
        data = client.get('/health').get_json()
        assert data['status'] == 'ok'
        assert data['tone_engine']['frame_count'] == 0


class TestAnalyzeFile:
    def test_analyze_uploaded_wav(self, client, tmp_path):
        path = tmp_path / 'keyed.wav'
        write_wav(path, keyed_pattern(1000.0, [(True, 5), (False, 10), (True, 12), (False, 10)]))
        with open(path, 'rb') as fh:
            resp = client.post(
                '/tones/analyze-file',
                data={'audio': (fh, 'keyed.wav')},
                content_type='multipart/form-data',
            )
        assert resp.status_code == 200
        data = resp.get_json()
        assert data['symbols'] == '.-'
        assert len(data['tones']) == 2

    def test_analyze_without_overrides_uses_defaults(self, client, tmp_path):
        path = tmp_path / 'plain.wav'
        write_wav(path, keyed_pattern(1000.0, [(True, 12), (False, 10)]))
        with open(path, 'rb') as fh:
            resp = client.post(
                '/tones/analyze-file',
                data={'audio': (fh, 'plain.wav')},
                content_type='multipart/form-data',
            )
        assert resp.status_code == 200
        assert resp.get_json()['symbols'] == '-'

    def test_analyze_requires_file(self, client):
        resp = client.post('/tones/analyze-file', data={}, content_type='multipart/form-data')
        assert resp.status_code == 400

    def test_analyze_rejects_non_wav(self, client):
        resp = client.post(
            '/tones/analyze-file',
            data={'audio': (io.BytesIO(b'not a wav file'), 'junk.wav')},
            content_type='multipart/form-data',
        )
        assert resp.status_code == 400
        assert 'Unreadable' in resp.get_json()['message']

    def test_analyze_rejects_bad_override(self, client, tmp_path):
        path = tmp_path / 'keyed.wav'
        write_wav(path, keyed_pattern(1000.0, [(True, 5)]))
        with open(path, 'rb') as fh:
            resp = client.post(
                '/tones/analyze-file',
                data={'audio': (fh, 'keyed.wav'), 'persistence_ms': '1'},
                content_type='multipart/form-data',
            )
        assert resp.status_code == 400
