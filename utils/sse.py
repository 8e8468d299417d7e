"""Server-Sent Events helpers.

A worker pushes events onto one source queue. Every SSE client subscribes
to a per-channel distributor and gets its own queue, so several browsers
see the same events. With no subscribers the distributor keeps draining
the source, so the worker never backs up and late clients start live.
"""

from __future__ import annotations

import contextlib
import json
import queue
import threading
import time
from typing import Any, Callable, Iterator

from utils.logging import get_logger

logger = get_logger('tonewatch.sse')

SUBSCRIBER_QUEUE_SIZE = 200


def format_sse(data: dict[str, Any], event: str | None = None) -> str:
    """Format a payload as one SSE message."""
    msg = f'data: {json.dumps(data)}\n\n'
    if event:
        msg = f'event: {event}\n{msg}'
    return msg


def _drain(q: queue.Queue) -> int:
    dropped = 0
    while True:
        try:
            q.get_nowait()
        except queue.Empty:
            return dropped
        dropped += 1


class _FanoutChannel:
    """Copies every message from a source queue to all subscriber queues."""

    def __init__(self, source: queue.Queue, channel_key: str, source_timeout: float):
        self.source = source
        self.channel_key = channel_key
        self.source_timeout = source_timeout
        self._lock = threading.Lock()
        # Subscriber queue -> monotonic time it joined.
        self._subscribers: dict[queue.Queue, float] = {}
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f'sse-fanout-{channel_key}',
        )
        self._thread.start()

    def subscribe(self, maxsize: int) -> queue.Queue:
        subscriber: queue.Queue = queue.Queue(maxsize=maxsize)
        with self._lock:
            if not self._subscribers:
                # Anything queued while nobody listened is stale.
                dropped = _drain(self.source)
                if dropped:
                    logger.debug('Dropped %d stale %s events', dropped, self.channel_key)
            self._subscribers[subscriber] = time.monotonic()
        return subscriber

    def unsubscribe(self, subscriber: queue.Queue) -> None:
        with self._lock:
            self._subscribers.pop(subscriber, None)

    def _run(self) -> None:
        while True:
            try:
                msg = self.source.get(timeout=self.source_timeout)
            except queue.Empty:
                continue
            received_at = time.monotonic()
            with self._lock:
                # Clients that joined after the dequeue never see this message.
                targets = [q for q, joined in self._subscribers.items() if joined <= received_at]
            for subscriber in targets:
                try:
                    subscriber.put_nowait(msg)
                except queue.Full:
                    # Slow client: drop its oldest event to make room.
                    with contextlib.suppress(queue.Empty):
                        subscriber.get_nowait()
                    with contextlib.suppress(queue.Full):
                        subscriber.put_nowait(msg)


_channels: dict[str, _FanoutChannel] = {}
_channels_lock = threading.Lock()


def subscribe_fanout_queue(
    source_queue: queue.Queue,
    channel_key: str,
    source_timeout: float = 1.0,
    maxsize: int = SUBSCRIBER_QUEUE_SIZE,
) -> tuple[queue.Queue, Callable[[], None]]:
    """Subscribe to *channel_key*; returns ``(queue, unsubscribe)``.

    The distributor for a channel is created on first use and stays alive
    for the life of the process.
    """
    with _channels_lock:
        channel = _channels.get(channel_key)
        if channel is None or channel.source is not source_queue:
            channel = _FanoutChannel(source_queue, channel_key, source_timeout)
            _channels[channel_key] = channel

    subscriber = channel.subscribe(maxsize)
    return subscriber, lambda: channel.unsubscribe(subscriber)


def sse_stream_fanout(
    source_queue: queue.Queue,
    channel_key: str,
    timeout: float = 1.0,
    keepalive_interval: float = 30.0,
) -> Iterator[str]:
    """Yield this client's copy of the channel as SSE messages, with keepalives."""
    subscriber, unsubscribe = subscribe_fanout_queue(
        source_queue,
        channel_key=channel_key,
        source_timeout=timeout,
    )
    last_keepalive = time.monotonic()
    try:
        while True:
            try:
                msg = subscriber.get(timeout=timeout)
            except queue.Empty:
                now = time.monotonic()
                if now - last_keepalive >= keepalive_interval:
                    last_keepalive = now
                    yield format_sse({'type': 'keepalive'})
                continue
            last_keepalive = time.monotonic()
            yield format_sse(msg)
    finally:
        unsubscribe()
