"""Per-session event channels.

Events are delivered at-most-once to whoever is subscribed right now. Each
event is also mirrored to Redis so that an API process can forward events
published by a Celery worker (``RedisEventRelay``) and so that the latest
progress snapshot survives for polling clients.
"""

from __future__ import annotations

import asyncio
import json
import logging
import queue
import threading
import uuid
from datetime import timedelta
from typing import Any, Protocol

from pydantic import ValidationError
from redis import Redis
from redis.exceptions import RedisError

from catalog_importer.schemas.events import (
    CompletedEvent,
    ProgressEvent,
    SessionEvent,
    decode_event,
    encode_event,
    ends_stream,
)

logger = logging.getLogger(__name__)

EVENTS_CHANNEL_PREFIX = "imports:events:"
PROGRESS_PREFIX = "imports:progress:"
PROGRESS_TTL = timedelta(hours=24)


class _EndOfStream:
    def __repr__(self) -> str:
        return "END_OF_STREAM"


END_OF_STREAM = _EndOfStream()


def events_channel(session_id: str) -> str:
    return f"{EVENTS_CHANNEL_PREFIX}{session_id}"


def progress_key(session_id: str) -> str:
    return f"{PROGRESS_PREFIX}{session_id}"


class Subscriber(Protocol):
    def deliver(self, item: SessionEvent | _EndOfStream) -> bool:
        """Hand over one event (or the end sentinel); False when it was dropped."""
        ...


class QueueSubscriber:
    """Bounded thread-safe queue; used by workers, scripts and tests."""

    def __init__(self, maxsize: int = 100) -> None:
        self.queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def deliver(self, item: SessionEvent | _EndOfStream) -> bool:
        try:
            self.queue.put_nowait(item)
        except queue.Full:
            self.dropped += 1
            return False
        return True

    def get(self, timeout: float | None = None) -> SessionEvent | None:
        """Next event, or None once the stream has ended (or on timeout)."""
        try:
            item = self.queue.get(timeout=timeout)
        except queue.Empty:
            return None
        return None if item is END_OF_STREAM else item

    def drain(self) -> list[SessionEvent]:
        events = []
        while True:
            try:
                item = self.queue.get_nowait()
            except queue.Empty:
                return events
            if item is END_OF_STREAM:
                return events
            events.append(item)


class AsyncQueueSubscriber:
    """Feeds an ``asyncio.Queue`` owned by an event loop from any thread."""

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int = 100) -> None:
        self._loop = loop
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def deliver(self, item: SessionEvent | _EndOfStream) -> bool:
        try:
            self._loop.call_soon_threadsafe(self._put, item)
        except RuntimeError:
            # Loop already closed: the client is gone.
            return False
        return True

    def _put(self, item: SessionEvent | _EndOfStream) -> None:
        if item is END_OF_STREAM and self.queue.full():
            self.queue.get_nowait()
        try:
            self.queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.debug("Dropping event for slow subscriber")

    async def next_event(self, timeout: float | None = None) -> SessionEvent | None:
        """Wait for the next event; None once the stream ended.

        Raises ``asyncio.TimeoutError`` when nothing arrived within ``timeout``.
        """
        item = await asyncio.wait_for(self.queue.get(), timeout)
        return None if item is END_OF_STREAM else item


class ConnectionRegistry:
    """Lock-protected map of session id -> live subscribers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, set[Subscriber]] = {}

    def register(self, session_id: str, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.setdefault(session_id, set()).add(subscriber)

    def deregister(self, session_id: str, subscriber: Subscriber) -> None:
        with self._lock:
            handles = self._subscribers.get(session_id)
            if handles is None:
                return
            handles.discard(subscriber)
            if not handles:
                del self._subscribers[session_id]

    def subscribers(self, session_id: str) -> list[Subscriber]:
        with self._lock:
            return list(self._subscribers.get(session_id, ()))

    def close_session(self, session_id: str) -> int:
        """Send the end sentinel to every subscriber and forget them."""
        with self._lock:
            handles = self._subscribers.pop(session_id, set())
        for subscriber in handles:
            subscriber.deliver(END_OF_STREAM)
        return len(handles)

    def active_sessions(self) -> list[str]:
        with self._lock:
            return list(self._subscribers)


class ProgressBroadcaster:
    def __init__(self, registry: ConnectionRegistry | None = None, redis_client: Redis | None = None) -> None:
        self.registry = registry or ConnectionRegistry()
        self.redis = redis_client
        # Tags mirrored messages so our own relay does not deliver them twice.
        self.origin = uuid.uuid4().hex

    def subscribe(
        self,
        session_id: str,
        subscriber: Subscriber,
        snapshot: SessionEvent | None = None,
    ) -> None:
        """Register ``subscriber``; it first receives ``snapshot`` (current state)."""
        if snapshot is not None:
            subscriber.deliver(snapshot)
            if ends_stream(snapshot):
                subscriber.deliver(END_OF_STREAM)
                return
        self.registry.register(session_id, subscriber)

    def unsubscribe(self, session_id: str, subscriber: Subscriber) -> None:
        self.registry.deregister(session_id, subscriber)

    def publish(self, session_id: str, event: SessionEvent) -> int:
        """Deliver to local subscribers and mirror to Redis; returns local deliveries."""
        delivered = self.deliver_local(session_id, event)
        self._mirror(session_id, event)
        return delivered

    def deliver_local(self, session_id: str, event: SessionEvent) -> int:
        delivered = sum(1 for subscriber in self.registry.subscribers(session_id) if subscriber.deliver(event))
        if ends_stream(event):
            self.registry.close_session(session_id)
        return delivered

    def latest_snapshot(self, session_id: str) -> SessionEvent | None:
        if self.redis is None:
            return None
        try:
            raw = self.redis.get(progress_key(session_id))
        except RedisError:
            return None
        if not raw:
            return None
        try:
            return decode_event(raw)
        except ValidationError:
            return None

    def _mirror(self, session_id: str, event: SessionEvent) -> None:
        if self.redis is None:
            return
        encoded = encode_event(event)
        try:
            self.redis.publish(
                events_channel(session_id),
                json.dumps({"origin": self.origin, "event": json.loads(encoded)}),
            )
            if isinstance(event, (ProgressEvent, CompletedEvent)):
                self.redis.set(progress_key(session_id), encoded, ex=int(PROGRESS_TTL.total_seconds()))
        except RedisError as e:
            # Live progress degrades; the import itself carries on.
            logger.warning(f"Failed to mirror {event.type} event for session {session_id}: {e}")


class RedisEventRelay:
    """Forwards events published by other processes to local subscribers."""

    def __init__(self, broadcaster: ProgressBroadcaster, redis_client: Redis, poll_timeout: float = 1.0) -> None:
        self.broadcaster = broadcaster
        self.redis = redis_client
        self.poll_timeout = poll_timeout
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="redis-event-relay", daemon=True)
        self._thread.start()
        logger.info("Redis event relay started")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def handle_message(self, message: dict[str, Any]) -> bool:
        """Deliver one pub/sub message locally; False when it was ignored."""
        if message.get("type") not in ("message", "pmessage"):
            return False
        channel = message.get("channel")
        if isinstance(channel, bytes):
            channel = channel.decode()
        if not channel or not channel.startswith(EVENTS_CHANNEL_PREFIX):
            return False
        try:
            payload = json.loads(message["data"])
            if payload.get("origin") == self.broadcaster.origin:
                return False
            event = decode_event(payload["event"])
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            logger.warning(f"Ignoring malformed relay message on {channel}: {e}")
            return False
        self.broadcaster.deliver_local(channel[len(EVENTS_CHANNEL_PREFIX):], event)
        return True

    def _run(self) -> None:
        backoff = 1.0
        while not self._stop.is_set():
            pubsub = self.redis.pubsub(ignore_subscribe_messages=True)
            try:
                pubsub.psubscribe(f"{EVENTS_CHANNEL_PREFIX}*")
                backoff = 1.0
                while not self._stop.is_set():
                    message = pubsub.get_message(timeout=self.poll_timeout)
                    if message:
                        self.handle_message(message)
            except RedisError as e:
                logger.warning(f"Redis event relay disconnected: {e}; retrying in {backoff:.0f}s")
                self._stop.wait(backoff)
                backoff = min(backoff * 2, 30.0)
            finally:
                pubsub.close()
