from __future__ import annotations

import contextvars
from datetime import datetime, timezone
import json
import os
import re
import threading
import time
from typing import Any

from .settings import Settings


# Bound by the request middleware so nested log lines carry the ids.
REQ_ID: contextvars.ContextVar[str] = contextvars.ContextVar("apply_req_id", default="")
CORRELATION_ID: contextvars.ContextVar[str] = contextvars.ContextVar("apply_correlation_id", default="")

_MAX_STR = 2000
_WRITE_LOCK = threading.Lock()
_RE_SK = re.compile(r"\bsk-[A-Za-z0-9]{10,}\b")


def _now_ms() -> int:
    return int(time.time() * 1000)


def session_log_path(settings: Settings) -> str:
    return os.path.join(settings.state_dir, "session.ndjson")


def _redact(text: str) -> str:
    return _RE_SK.sub("sk-REDACTED", str(text or ""))


def _truncate(text: str, max_chars: int = _MAX_STR) -> str:
    t = str(text or "")
    if len(t) <= max_chars:
        return t
    return t[:max_chars] + f"\n... (truncated, {len(t)} chars total)"


def _clean(v: Any) -> Any:
    if isinstance(v, str):
        return _truncate(_redact(v))
    if isinstance(v, dict):
        return {str(k): _clean(x) for k, x in v.items()}
    if isinstance(v, (list, tuple)):
        return [_clean(x) for x in v]
    if v is None or isinstance(v, (int, float, bool)):
        return v
    return _truncate(_redact(str(v)))


def append_session(settings: Settings, event: dict[str, Any]) -> None:
    if not settings.session_log_enabled:
        return
    try:
        os.makedirs(settings.state_dir, exist_ok=True)
        ts = _now_ms()
        payload: dict[str, Any] = {
            "ts": ts,
            "ts_iso": datetime.fromtimestamp(ts / 1000.0, tz=timezone.utc).isoformat(timespec="milliseconds"),
        }
        req_id = REQ_ID.get()
        if req_id:
            payload["req_id"] = req_id
        cid = CORRELATION_ID.get()
        if cid and "correlation_id" not in (event or {}):
            payload["correlation_id"] = cid
        payload.update(_clean(event or {}))
        line = json.dumps(payload, ensure_ascii=False) + "\n"
        with _WRITE_LOCK:
            with open(session_log_path(settings), "a", encoding="utf-8") as f:
                f.write(line)
    except Exception:
        # Best-effort logging; never crash the caller.
        return


def read_session_tail(settings: Settings, max_lines: int) -> str:
    try:
        with open(session_log_path(settings), "r", encoding="utf-8") as f:
            raw = f.read()
        lines = raw.strip().split("\n") if raw.strip() else []
        return "\n".join(lines[max(0, len(lines) - max_lines) :])
    except Exception:
        return ""
