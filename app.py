"""tonewatch web application.

Holds the process-wide tone engine, the event queue feeding the SSE stream,
and the lifecycle lock shared by the tone routes.
"""

from __future__ import annotations

import argparse
import queue
import subprocess
import threading
import time

from flask import Flask, jsonify

import config
from utils.logging import get_logger
from utils.process import cleanup_all_processes
from utils.tone_config import load_tone_config
from utils.tone_engine import ToneEngine

logger = get_logger('tonewatch.app')

app = Flask(__name__)

_app_start_time = time.time()

# Tone tracker runtime state.
tone_queue: queue.Queue = queue.Queue(maxsize=config.QUEUE_MAX_SIZE)
tone_lock = threading.Lock()
tone_process: subprocess.Popen | None = None
tone_config_path: str = config.CONFIG_PATH


def create_tone_engine(config_path: str | None = None) -> ToneEngine:
    """Build an engine from application settings and the persisted parameters."""
    return ToneEngine(
        sample_rate=config.SAMPLE_RATE,
        frame_size=config.FRAME_SIZE,
        max_tracks=config.MAX_TRACKS,
        suppression_radius=config.SUPPRESSION_RADIUS,
        symbol_capacity=config.SYMBOL_CAPACITY,
        config=load_tone_config(config_path or tone_config_path),
    )


tone_engine: ToneEngine = create_tone_engine()


@app.route('/health')
def health():
    return jsonify({
        'status': 'ok',
        'version': config.VERSION,
        'uptime_seconds': round(time.time() - _app_start_time, 1),
        'tone_engine': tone_engine.get_metrics(),
    })


from routes import register_blueprints  # noqa: E402

register_blueprints(app)


def main(argv: list[str] | None = None) -> None:
    global tone_engine, tone_config_path

    parser = argparse.ArgumentParser(description='tonewatch - live multi-tone tracker')
    parser.add_argument('--host', default=config.HOST, help='Address to bind (default: %(default)s)')
    parser.add_argument('--port', type=int, default=config.PORT, help='Port to bind (default: %(default)s)')
    parser.add_argument('--debug', action='store_true', default=config.DEBUG, help='Enable Flask debug mode')
    parser.add_argument('--config', default=config.CONFIG_PATH, help='Parameter file (key=value lines)')
    args = parser.parse_args(argv)

    if args.config != tone_config_path:
        tone_config_path = args.config
        tone_engine = create_tone_engine(tone_config_path)

    logger.info('tonewatch %s listening on %s:%d', config.VERSION, args.host, args.port)
    try:
        app.run(host=args.host, port=args.port, debug=args.debug, threaded=True, use_reloader=False)
    finally:
        cleanup_all_processes()
