from __future__ import annotations

import threading
import time
from typing import Any, Protocol

from .db import db_conn, jsonb
from .session_log import append_session
from .settings import Settings


class KeyValueStore(Protocol):
    def put(self, key: str, value: dict[str, Any], ttl_s: int | None = None) -> None: ...

    def get(self, key: str) -> dict[str, Any] | None: ...

    def list(self) -> list[dict[str, Any]]: ...

    def delete(self, key: str) -> bool: ...

    def purge_expired(self) -> int: ...


class MemoryStore:
    """In-process store with optional per-entry TTL (checked lazily and by the janitor)."""

    def __init__(self, *, clock: Any = time.time) -> None:
        self._lock = threading.Lock()
        self._items: dict[str, tuple[dict[str, Any], float | None]] = {}
        self._clock = clock

    def _expired(self, expires_at: float | None) -> bool:
        return expires_at is not None and expires_at <= self._clock()

    def put(self, key: str, value: dict[str, Any], ttl_s: int | None = None) -> None:
        expires_at = self._clock() + ttl_s if ttl_s and ttl_s > 0 else None
        with self._lock:
            self._items[key] = (dict(value), expires_at)

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            value, expires_at = item
            if self._expired(expires_at):
                self._items.pop(key, None)
                return None
            return dict(value)

    def list(self) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(v) for v, exp in self._items.values() if not self._expired(exp)]

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def purge_expired(self) -> int:
        with self._lock:
            dead = [k for k, (_, exp) in self._items.items() if self._expired(exp)]
            for k in dead:
                self._items.pop(k, None)
        return len(dead)


class PostgresStore:
    """JSONB rows in apply_engine.kv, namespaced so several stores can share the table."""

    def __init__(self, settings: Settings, namespace: str) -> None:
        if not settings.db_url:
            raise ValueError("missing_db_url")
        self.settings = settings
        self.db_url = settings.db_url
        self.namespace = namespace

    def put(self, key: str, value: dict[str, Any], ttl_s: int | None = None) -> None:
        with db_conn(self.db_url) as conn:
            conn.execute(
                """
                INSERT INTO apply_engine.kv(namespace, key, value, created_at, expires_at)
                VALUES (%s, %s, %s, now(), CASE WHEN %s::int IS NULL THEN NULL ELSE now() + make_interval(secs => %s::int) END)
                ON CONFLICT (namespace, key) DO UPDATE
                  SET value = EXCLUDED.value, expires_at = EXCLUDED.expires_at
                """,
                (self.namespace, key, jsonb(value), ttl_s if ttl_s and ttl_s > 0 else None, ttl_s if ttl_s and ttl_s > 0 else None),
            )

    def get(self, key: str) -> dict[str, Any] | None:
        with db_conn(self.db_url) as conn:
            row = conn.execute(
                """
                SELECT value FROM apply_engine.kv
                WHERE namespace=%s AND key=%s AND (expires_at IS NULL OR expires_at > now())
                """,
                (self.namespace, key),
            ).fetchone()
        if not row:
            return None
        return row[0] if isinstance(row[0], dict) else None

    def list(self) -> list[dict[str, Any]]:
        with db_conn(self.db_url) as conn:
            rows = conn.execute(
                """
                SELECT value FROM apply_engine.kv
                WHERE namespace=%s AND (expires_at IS NULL OR expires_at > now())
                ORDER BY created_at ASC
                """,
                (self.namespace,),
            ).fetchall()
        return [r[0] for r in rows if isinstance(r[0], dict)]

    def delete(self, key: str) -> bool:
        with db_conn(self.db_url) as conn:
            cur = conn.execute("DELETE FROM apply_engine.kv WHERE namespace=%s AND key=%s", (self.namespace, key))
            return (cur.rowcount or 0) > 0

    def purge_expired(self) -> int:
        with db_conn(self.db_url) as conn:
            cur = conn.execute(
                "DELETE FROM apply_engine.kv WHERE namespace=%s AND expires_at IS NOT NULL AND expires_at <= now()",
                (self.namespace,),
            )
            n = cur.rowcount or 0
        if n:
            append_session(self.settings, {"type": "store.purged", "namespace": self.namespace, "count": n})
        return n


def make_plan_store(settings: Settings) -> KeyValueStore:
    if settings.db_url:
        return PostgresStore(settings, "plans")
    return MemoryStore()
