"""Bookkeeping for external helper processes (audio capture)."""

from __future__ import annotations

import atexit
import contextlib
import subprocess
import threading

from utils.logging import get_logger

logger = get_logger('tonewatch.process')

_processes: set[subprocess.Popen] = set()
_processes_lock = threading.Lock()


def register_process(proc: subprocess.Popen) -> None:
    with _processes_lock:
        _processes.add(proc)


def unregister_process(proc: subprocess.Popen) -> None:
    with _processes_lock:
        _processes.discard(proc)


def safe_terminate(proc: subprocess.Popen | None, timeout: float = 2.0) -> None:
    """Terminate *proc*, escalating to kill if it ignores SIGTERM."""
    if proc is None or proc.poll() is not None:
        return
    try:
        proc.terminate()
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning('Process %s ignored terminate, killing', getattr(proc, 'pid', '?'))
        with contextlib.suppress(OSError):
            proc.kill()
        with contextlib.suppress(subprocess.TimeoutExpired):
            proc.wait(timeout=timeout)
    except OSError as e:
        logger.debug(f'Terminate failed: {e}')


def cleanup_all_processes() -> None:
    with _processes_lock:
        procs = list(_processes)
        _processes.clear()
    for proc in procs:
        safe_terminate(proc, timeout=1.0)


atexit.register(cleanup_all_processes)
