"""Live tone tracking routes: lifecycle, parameters, snapshots and SSE."""

from __future__ import annotations

import contextlib
import queue
import shlex
import subprocess
import tempfile
import threading
import time
import wave
from pathlib import Path
from typing import Any

from flask import Blueprint, Response, jsonify, request

import app as app_module
import config
from utils.logging import tone_logger as logger
from utils.process import register_process, safe_terminate, unregister_process
from utils.sse import sse_stream_fanout
from utils.tone_config import ToneConfig, save_tone_config
from utils.tone_engine import analyze_wav_file, tone_engine_thread
from utils.validation import coerce_bool

tones_bp = Blueprint('tones', __name__, url_prefix='/tones')

# Runtime lifecycle state.
TONES_IDLE = 'idle'
TONES_STARTING = 'starting'
TONES_RUNNING = 'running'
TONES_STOPPING = 'stopping'
TONES_ERROR = 'error'

PCM_READY_TIMEOUT = 2.0

tones_state = TONES_IDLE
tones_state_message = 'Idle'
tones_state_since = time.monotonic()
tones_last_error = ''
tones_session_id = 0

tones_engine_worker: threading.Thread | None = None
tones_stderr_worker: threading.Thread | None = None
tones_stop_event: threading.Event | None = None
# Engine worker that outlived its stop timeout; it still owns the engine.
tones_lingering_worker: threading.Thread | None = None


def _set_state(state: str, message: str = '', *, enqueue: bool = True) -> None:
    """Update lifecycle state and optionally emit a status event."""
    global tones_state, tones_state_message, tones_state_since
    tones_state = state
    tones_state_message = message or state
    tones_state_since = time.monotonic()

    if not enqueue:
        return

    with contextlib.suppress(queue.Full):
        app_module.tone_queue.put_nowait({
            'type': 'status',
            'status': state,
            'message': tones_state_message,
            'session_id': tones_session_id,
            'timestamp': time.strftime('%H:%M:%S'),
        })


def _drain_queue(q: queue.Queue) -> None:
    while True:
        try:
            q.get_nowait()
        except queue.Empty:
            break


def _join_thread(worker: threading.Thread | None, timeout_s: float) -> bool:
    if worker is None:
        return True
    worker.join(timeout=timeout_s)
    return not worker.is_alive()


def _close_pipe(pipe_obj: Any) -> None:
    if pipe_obj is None:
        return
    with contextlib.suppress(Exception):
        pipe_obj.close()


def _capture_command(sample_rate: int) -> list[str]:
    return shlex.split(config.CAPTURE_COMMAND.format(rate=sample_rate))


def _stderr_monitor(proc: subprocess.Popen, stop_event: threading.Event) -> None:
    """Relay capture process stderr lines as info events."""
    stderr = getattr(proc, 'stderr', None)
    if stderr is None:
        return
    with contextlib.suppress(OSError, ValueError):
        for raw_line in iter(stderr.readline, b''):
            if stop_event.is_set():
                break
            line = raw_line.decode('utf-8', errors='replace').strip()
            if not line:
                continue
            logger.debug(f'[capture] {line}')
            with contextlib.suppress(queue.Full):
                app_module.tone_queue.put_nowait({'type': 'info', 'text': f'[capture] {line}'})


def _engine_config_payload() -> dict[str, Any]:
    engine = app_module.tone_engine
    return {
        'parameters': engine.config.to_dict(),
        'sample_rate': engine.sample_rate,
        'frame_size': engine.frame_size,
        'freq_resolution': round(engine.freq_resolution, 3),
    }


@tones_bp.route('/start', methods=['POST'])
def start_tones() -> Response:
    global tones_engine_worker, tones_stderr_worker, tones_stop_event
    global tones_last_error, tones_session_id

    data = request.get_json(silent=True) or {}
    engine = app_module.tone_engine

    try:
        parameters = engine.config.updated(data)
    except ValueError as e:
        return jsonify({'status': 'error', 'message': str(e)}), 400

    with app_module.tone_lock:
        if tones_state in {TONES_STARTING, TONES_RUNNING, TONES_STOPPING}:
            return jsonify({
                'status': 'error',
                'message': f'Tone tracker is {tones_state}',
                'state': tones_state,
            }), 409

        if tones_lingering_worker is not None and tones_lingering_worker.is_alive():
            return jsonify({
                'status': 'error',
                'message': 'Previous tone engine worker is still shutting down',
                'state': tones_state,
            }), 409

        tones_last_error = ''
        tones_session_id += 1
        _drain_queue(app_module.tone_queue)
        _set_state(TONES_STARTING, 'Starting capture...')

    engine.apply_config(parameters)
    cmd = _capture_command(engine.sample_rate)
    logger.info('Starting capture: %s', ' '.join(cmd))

    try:
        proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except OSError as e:
        msg = f'Failed to start capture command {cmd[0]!r}: {e}'
        logger.error(msg)
        with app_module.tone_lock:
            tones_last_error = msg
            _set_state(TONES_ERROR, msg)
            _set_state(TONES_IDLE, 'Idle')
        return jsonify({'status': 'error', 'message': msg}), 500

    register_process(proc)
    stop_event = threading.Event()
    pcm_ready = threading.Event()

    worker = threading.Thread(
        target=tone_engine_thread,
        args=(proc.stdout, engine, app_module.tone_queue, stop_event),
        kwargs={'pcm_ready_event': pcm_ready},
        daemon=True,
        name='tone-engine',
    )
    stderr_worker = threading.Thread(
        target=_stderr_monitor,
        args=(proc, stop_event),
        daemon=True,
        name='tone-capture-stderr',
    )

    with app_module.tone_lock:
        app_module.tone_process = proc
        tones_stop_event = stop_event
        tones_engine_worker = worker
        tones_stderr_worker = stderr_worker

    worker.start()
    stderr_worker.start()

    if not pcm_ready.wait(timeout=PCM_READY_TIMEOUT) and proc.poll() is not None:
        msg = f'Capture process exited with code {proc.returncode} before producing audio'
        logger.warning(msg)
        stop_event.set()
        safe_terminate(proc, timeout=0.5)
        unregister_process(proc)
        _join_thread(worker, timeout_s=0.5)
        with app_module.tone_lock:
            app_module.tone_process = None
            tones_stop_event = None
            tones_engine_worker = None
            tones_stderr_worker = None
            tones_last_error = msg
            _set_state(TONES_ERROR, msg)
            _set_state(TONES_IDLE, 'Idle')
        return jsonify({'status': 'error', 'message': msg}), 500

    with app_module.tone_lock:
        _set_state(TONES_RUNNING, 'Listening')

    return jsonify({
        'status': 'started',
        'state': TONES_RUNNING,
        'session_id': tones_session_id,
        'command': cmd,
        'config': _engine_config_payload(),
    })


@tones_bp.route('/stop', methods=['POST'])
def stop_tones() -> Response:
    global tones_engine_worker, tones_stderr_worker, tones_stop_event, tones_lingering_worker

    stop_started = time.perf_counter()

    with app_module.tone_lock:
        if tones_state == TONES_STOPPING:
            return jsonify({'status': 'stopping', 'state': TONES_STOPPING}), 202

        proc = app_module.tone_process
        stop_event = tones_stop_event
        worker = tones_engine_worker
        stderr_worker = tones_stderr_worker

        if not proc and not stop_event and not worker:
            _set_state(TONES_IDLE, 'Idle', enqueue=False)
            return jsonify({'status': 'not_running', 'state': TONES_IDLE})

        _set_state(TONES_STOPPING, 'Stopping capture...')
        app_module.tone_process = None
        tones_stop_event = None
        tones_engine_worker = None
        tones_stderr_worker = None

    if stop_event is not None:
        stop_event.set()

    if proc is not None:
        _close_pipe(getattr(proc, 'stdout', None))
        _close_pipe(getattr(proc, 'stderr', None))
        safe_terminate(proc, timeout=0.6)
        unregister_process(proc)

    alive_after = []
    if not _join_thread(worker, timeout_s=0.5):
        alive_after.append('engine_thread')
        with app_module.tone_lock:
            tones_lingering_worker = worker
    if not _join_thread(stderr_worker, timeout_s=0.3):
        alive_after.append('stderr_thread')
    if proc is not None and proc.poll() is None:
        alive_after.append('capture_process')

    stop_ms = round((time.perf_counter() - stop_started) * 1000.0, 1)

    with app_module.tone_lock:
        _set_state(TONES_IDLE, 'Stopped')

    if alive_after:
        logger.warning('[tones.stop] partial cleanup in %sms: %s', stop_ms, ','.join(alive_after))
    else:
        logger.info('[tones.stop] cleanup complete in %sms', stop_ms)

    return jsonify({
        'status': 'stopped',
        'state': TONES_IDLE,
        'stop_ms': stop_ms,
        'alive': alive_after,
        'metrics': app_module.tone_engine.get_metrics(),
    })


@tones_bp.route('/status')
def tones_status() -> Response:
    with app_module.tone_lock:
        proc = app_module.tone_process
        running = (
            proc is not None
            and proc.poll() is None
            and tones_state in {TONES_RUNNING, TONES_STARTING, TONES_STOPPING}
        )
        return jsonify({
            'running': running,
            'state': tones_state,
            'message': tones_state_message,
            'since_ms': round((time.monotonic() - tones_state_since) * 1000.0, 1),
            'session_id': tones_session_id,
            'error': tones_last_error,
            'config': _engine_config_payload(),
        })


@tones_bp.route('/snapshot')
def tones_snapshot() -> Response:
    bins = request.args.get('bins', default=0, type=int)
    snapshot = app_module.tone_engine.snapshot()
    return jsonify(snapshot.to_dict(bins=max(0, bins or 0)))


@tones_bp.route('/config', methods=['GET'])
def get_tones_config() -> Response:
    return jsonify({'status': 'ok', **_engine_config_payload()})


@tones_bp.route('/config', methods=['POST'])
def update_tones_config() -> Response:
    data = request.get_json(silent=True) or {}
    engine = app_module.tone_engine

    try:
        parameters = engine.config.updated(data)
    except ValueError as e:
        return jsonify({'status': 'error', 'message': str(e)}), 400

    engine.apply_config(parameters)

    saved = False
    if coerce_bool(data.get('save'), False):
        try:
            save_tone_config(parameters, app_module.tone_config_path)
            saved = True
        except OSError as e:
            logger.error(f'Failed to save tone parameters: {e}')
            return jsonify({'status': 'error', 'message': f'Could not save parameters: {e}'}), 500

    return jsonify({'status': 'ok', 'saved': saved, **_engine_config_payload()})


@tones_bp.route('/analyze-file', methods=['POST'])
def analyze_tones_file() -> Response:
    """Run the tone tracker over an uploaded WAV file."""
    if 'audio' not in request.files:
        return jsonify({'status': 'error', 'message': 'No audio file provided'}), 400

    audio_file = request.files['audio']
    if not audio_file.filename:
        return jsonify({'status': 'error', 'message': 'No file selected'}), 400

    try:
        parameters = ToneConfig().updated(request.form.to_dict())
    except ValueError as e:
        return jsonify({'status': 'error', 'message': str(e)}), 400

    engine = app_module.tone_engine
    with tempfile.NamedTemporaryFile(suffix='.wav', delete=False) as tmp:
        audio_file.save(tmp.name)
        tmp_path = Path(tmp.name)

    try:
        result = analyze_wav_file(
            tmp_path,
            sample_rate=engine.sample_rate,
            frame_size=engine.frame_size,
            max_tracks=config.MAX_TRACKS,
            suppression_radius=config.SUPPRESSION_RADIUS,
            config=parameters,
        )
        return jsonify({
            'status': 'ok',
            'symbols': result['symbols'],
            'tones': result['tones'],
            'metrics': result['metrics'],
        })
    except (ValueError, EOFError, wave.Error) as e:
        return jsonify({'status': 'error', 'message': f'Unreadable WAV file: {e}'}), 400
    except Exception as e:
        logger.error(f'Tone analyze-file error: {e}')
        return jsonify({'status': 'error', 'message': str(e)}), 500
    finally:
        with contextlib.suppress(OSError):
            tmp_path.unlink(missing_ok=True)


@tones_bp.route('/stream')
def tones_stream() -> Response:
    response = Response(
        sse_stream_fanout(
            source_queue=app_module.tone_queue,
            channel_key='tones',
            timeout=config.SSE_QUEUE_TIMEOUT,
            keepalive_interval=config.SSE_KEEPALIVE_INTERVAL,
        ),
        mimetype='text/event-stream',
    )
    response.headers['Cache-Control'] = 'no-cache'
    response.headers['X-Accel-Buffering'] = 'no'
    response.headers['Connection'] = 'keep-alive'
    return response
