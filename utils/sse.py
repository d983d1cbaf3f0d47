"""Server-Sent Events helpers.

A single worker queue may feed many browser tabs, so each source queue gets
one distributor thread that copies messages to per-client subscriber
queues. Messages that arrive while nobody is subscribed are dropped.
"""

from __future__ import annotations

import contextlib
import json
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generator

from config import SSE_KEEPALIVE_INTERVAL, SSE_QUEUE_TIMEOUT
from utils.logging import get_logger

logger = get_logger('flashmorse.sse')

SUBSCRIBER_QUEUE_SIZE = 500


def format_sse(data: dict[str, Any] | str, event: str | None = None) -> str:
    """Format one SSE frame."""
    payload = data if isinstance(data, str) else json.dumps(data)
    frame = ''
    if event:
        frame += f'event: {event}\n'
    return frame + f'data: {payload}\n\n'


@dataclass(eq=False)
class _Subscriber:
    queue: queue.Queue
    since: float


@dataclass
class _FanoutChannel:
    source: queue.Queue
    source_timeout: float
    subscribers: list[_Subscriber] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)
    thread: threading.Thread | None = None

    def run(self) -> None:
        while True:
            try:
                msg = self.source.get(timeout=self.source_timeout)
            except queue.Empty:
                continue
            fetched_at = time.monotonic()
            with self.lock:
                targets = [s.queue for s in self.subscribers if s.since <= fetched_at]
            for target in targets:
                with contextlib.suppress(queue.Full):
                    target.put_nowait(msg)


_channels: dict[str, _FanoutChannel] = {}
_channels_lock = threading.Lock()


def _get_channel(source_queue: queue.Queue, channel_key: str, source_timeout: float) -> _FanoutChannel:
    with _channels_lock:
        channel = _channels.get(channel_key)
        if channel is None or channel.source is not source_queue:
            channel = _FanoutChannel(source=source_queue, source_timeout=source_timeout)
            _channels[channel_key] = channel
        if channel.thread is None or not channel.thread.is_alive():
            channel.thread = threading.Thread(
                target=channel.run,
                daemon=True,
                name=f'sse-fanout-{channel_key}',
            )
            channel.thread.start()
        return channel


def subscribe_fanout_queue(
    source_queue: queue.Queue,
    channel_key: str,
    source_timeout: float = SSE_QUEUE_TIMEOUT,
    max_queue_size: int = SUBSCRIBER_QUEUE_SIZE,
) -> tuple[queue.Queue, Callable[[], None]]:
    """Attach a new subscriber queue to *source_queue*.

    Returns the subscriber queue and an idempotent unsubscribe callable.
    Only messages taken from the source after this call are delivered.
    """
    channel = _get_channel(source_queue, channel_key, source_timeout)
    subscriber = _Subscriber(queue=queue.Queue(maxsize=max_queue_size), since=time.monotonic())
    with channel.lock:
        if not channel.subscribers:
            # Nobody was listening; whatever is still queued is stale.
            while True:
                try:
                    source_queue.get_nowait()
                except queue.Empty:
                    break
        channel.subscribers.append(subscriber)
        count = len(channel.subscribers)
    logger.debug('SSE client joined %s (%d connected)', channel_key, count)

    def unsubscribe() -> None:
        with channel.lock:
            if subscriber in channel.subscribers:
                channel.subscribers.remove(subscriber)

    return subscriber.queue, unsubscribe


def sse_stream_fanout(
    source_queue: queue.Queue,
    channel_key: str,
    timeout: float = SSE_QUEUE_TIMEOUT,
    keepalive_interval: float = SSE_KEEPALIVE_INTERVAL,
    on_message: Callable[[dict[str, Any]], None] | None = None,
) -> Generator[str, None, None]:
    """Yield SSE frames for every message on *source_queue*."""
    subscriber, unsubscribe = subscribe_fanout_queue(source_queue, channel_key, source_timeout=timeout)
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
            if on_message is not None and isinstance(msg, dict):
                on_message(msg)
            yield format_sse(msg)
    finally:
        unsubscribe()
