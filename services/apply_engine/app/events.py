from __future__ import annotations

from datetime import datetime, timezone
import itertools
import queue
import threading
from typing import Any, Callable

from .models import EVENT_TYPES, StreamEvent
from .session_log import append_session
from .settings import Settings


Listener = Callable[[StreamEvent], None]


class QueueSubscription:
    """Bounded per-subscriber queue; drained by a stream consumer (SSE)."""

    def __init__(self, sub_id: int, maxsize: int) -> None:
        self.id = sub_id
        self.q: "queue.Queue[StreamEvent]" = queue.Queue(maxsize=maxsize)
        self.closed = False

    def deliver(self, event: StreamEvent) -> None:
        if self.closed:
            raise RuntimeError("subscription_closed")
        # Raises queue.Full for a consumer that stopped draining.
        self.q.put_nowait(event)

    def get(self, timeout: float | None = None) -> StreamEvent | None:
        try:
            return self.q.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self.closed = True


class EventNotifier:
    """
    Fire-and-forget fan-out of typed events.

    Delivery failures are isolated per subscriber: a subscriber that raises
    (or whose queue is full/closed) is dropped and the rest still receive the
    event. No replay and no persistence.
    """

    def __init__(self, settings: Settings, *, queue_size: int = 1000) -> None:
        self.settings = settings
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._subscribers: dict[int, Callable[[StreamEvent], None]] = {}

    def subscribe(self, listener: Listener) -> int:
        with self._lock:
            sub_id = next(self._ids)
            self._subscribers[sub_id] = listener
        return sub_id

    def open_queue(self) -> QueueSubscription:
        with self._lock:
            sub = QueueSubscription(next(self._ids), self.queue_size)
            self._subscribers[sub.id] = sub.deliver
        append_session(self.settings, {"type": "events.subscribe", "subscriber": sub.id})
        return sub

    def unsubscribe(self, sub_id: int) -> bool:
        with self._lock:
            return self._subscribers.pop(sub_id, None) is not None

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event_type: str, data: dict[str, Any] | None = None, correlation_id: str | None = None) -> StreamEvent | None:
        payload = dict(data or {})
        cid = correlation_id or str(payload.get("correlationId") or "") or "unknown"
        if event_type not in EVENT_TYPES:
            append_session(self.settings, {"type": "events.rejected", "event_type": event_type, "correlation_id": cid})
            return None
        event = StreamEvent(
            type=event_type,
            data=payload,
            correlation_id=cid,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

        with self._lock:
            targets = list(self._subscribers.items())

        dead: list[int] = []
        for sub_id, deliver in targets:
            try:
                deliver(event)
            except Exception as e:
                append_session(
                    self.settings,
                    {"type": "events.delivery_failed", "subscriber": sub_id, "event_type": event_type, "error": str(e) or type(e).__name__},
                )
                dead.append(sub_id)

        if dead:
            with self._lock:
                for sub_id in dead:
                    self._subscribers.pop(sub_id, None)
        return event

    # Helpers for common event shapes.

    def emit_progress(self, correlation_id: str, progress: float, message: str | None = None) -> None:
        self.publish("apply.progress", {"correlationId": correlation_id, "progress": progress, "message": message}, correlation_id)

    def emit_error(self, correlation_id: str, error: str, context: dict[str, Any] | None = None) -> None:
        self.publish("error", {"correlationId": correlation_id, "error": error, "context": context or {}}, correlation_id)

    def emit_ai_token(self, correlation_id: str, token: str, total_tokens: int | None = None) -> None:
        self.publish("ai.token", {"correlationId": correlation_id, "token": token, "totalTokens": total_tokens}, correlation_id)
