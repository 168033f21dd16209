from __future__ import annotations

import os
import re
import subprocess
import threading
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from .errors import BuildProcessError
from .events import EventNotifier
from .models import BuildArtifacts, BuildError, BuildStatus
from .session_log import append_session
from .settings import Settings


# src/App.tsx:10:5 - error TS2322: Type 'string' is not assignable to type 'number'.
_RE_TS_ERROR = re.compile(r"^(.+?):(\d+):(\d+)\s*-\s*(error|warning)\s+TS\d+:\s*(.+)$")
# src/App.tsx:15:3: message (eslint-style)
_RE_LINT_ERROR = re.compile(r"^(.+?):(\d+):(\d+):\s*(.+)$")
_RE_DIST_SIZE = re.compile(r"dist/.*?(\d+(?:\.\d+)?)\s*(kB|MB)")

CANCELLED_MESSAGE = "Build cancelled by user"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_build_errors(text: str, workspace_root: str | None = None) -> list[BuildError]:
    out: list[BuildError] = []
    prefix = (workspace_root.rstrip("/") + "/") if workspace_root else None
    for raw in (text or "").splitlines():
        line = raw.strip()
        if not line:
            continue
        m = _RE_TS_ERROR.match(line)
        if m:
            file, ln, col, sev, msg = m.groups()
        else:
            m = _RE_LINT_ERROR.match(line)
            if not m:
                continue
            file, ln, col, msg = m.groups()
            sev = "warning" if "warning" in line.lower() else "error"
        if prefix and file.startswith(prefix):
            file = file[len(prefix) :]
        out.append(BuildError(file=file, line=int(ln), column=int(col), message=msg.strip(), severity=sev))
    return out


def calculate_build_size(output: str) -> int:
    m = _RE_DIST_SIZE.search(output or "")
    if not m:
        return 0
    size = float(m.group(1))
    return int(size * 1024 * 1024) if m.group(2) == "MB" else int(size * 1024)


class BuildManager:
    """
    Debounced, serialized preview builds.

    trigger_build() queues a build and (re)starts the debounce timer; when it
    fires, queued builds run one at a time via the configured command. Build
    output and status transitions go out as `build.status` events.
    """

    def __init__(self, settings: Settings, notifier: EventNotifier) -> None:
        self.settings = settings
        self.notifier = notifier
        self._lock = threading.RLock()
        self._queue: deque[tuple[str, str]] = deque()
        self._history: dict[str, BuildStatus] = {}
        self._correlation: dict[str, str] = {}
        self._timer: threading.Timer | None = None
        self._building = False
        self._current_id: str | None = None
        self._current_proc: subprocess.Popen | None = None
        self._cancelled: set[str] = set()

    # -----------------------
    # Public API
    # -----------------------

    def trigger_build(self, correlation_id: str) -> str:
        build_id = str(uuid.uuid4())
        status = BuildStatus(id=build_id, status="queued")
        with self._lock:
            self._history[build_id] = status
            self._correlation[build_id] = correlation_id
            self._queue.append((build_id, correlation_id))
            queue_len = len(self._queue)
            snapshot = status.model_copy(deep=True)
        append_session(
            self.settings,
            {"type": "build.queued", "build_id": build_id, "correlation_id": correlation_id, "queue": queue_len},
        )
        self._emit_status(snapshot, correlation_id)

        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.settings.build_debounce_ms / 1000.0, self._drain)
            self._timer.daemon = True
            self._timer.start()
        return build_id

    def get_status(self, build_id: str) -> BuildStatus | None:
        with self._lock:
            st = self._history.get(build_id)
            return st.model_copy(deep=True) if st else None

    def current_status(self) -> BuildStatus:
        with self._lock:
            if self._building and self._current_id:
                return self._history[self._current_id].model_copy(deep=True)
        return BuildStatus(id="none", status="idle")

    def cancel(self, build_id: str) -> bool:
        with self._lock:
            st = self._history.get(build_id)
            if st is None:
                return False

            queued = [b for b in self._queue if b[0] == build_id]
            if queued:
                self._queue.remove(queued[0])
                self._mark_cancelled(st)
            elif self._current_id == build_id and self._current_proc is not None:
                self._cancelled.add(build_id)
                try:
                    self._current_proc.terminate()
                except OSError as e:
                    append_session(self.settings, {"type": "build.cancel.failed", "build_id": build_id, "error": str(e)})
                self._mark_cancelled(st)
            else:
                return False
            snapshot = st.model_copy(deep=True)
            cid = self._correlation.get(build_id, "unknown")

        append_session(self.settings, {"type": "build.cancelled", "build_id": build_id, "correlation_id": cid})
        self._emit_status(snapshot, cid)
        return True

    def preview_info(self) -> dict[str, Any]:
        port = int(self.settings.preview_port)
        return {"url": f"http://localhost:{port}", "port": port}

    def shutdown(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._queue.clear()
            proc = self._current_proc
        if proc is not None and proc.poll() is None:
            proc.terminate()

    # -----------------------
    # Internals
    # -----------------------

    def _mark_cancelled(self, st: BuildStatus) -> None:
        st.status = "failed"
        st.end_time = _now_iso()
        st.errors.append(BuildError(file="build-process", message=CANCELLED_MESSAGE, severity="info"))

    def _emit_status(self, st: BuildStatus, correlation_id: str) -> None:
        self.notifier.publish(
            "build.status",
            {
                "correlationId": correlation_id,
                "buildId": st.id,
                "status": st.status,
                "duration": st.duration,
                "errors": [e.model_dump(by_alias=True) for e in st.errors],
                "artifacts": st.artifacts.model_dump(by_alias=True) if st.artifacts else None,
            },
            correlation_id,
        )

    def _drain(self) -> None:
        while True:
            with self._lock:
                if self._building or not self._queue:
                    return
                build_id, correlation_id = self._queue.popleft()
                self._building = True
                self._current_id = build_id
            try:
                self._run_build(build_id, correlation_id)
            finally:
                with self._lock:
                    self._building = False
                    self._current_id = None
                    self._current_proc = None

    def _run_build(self, build_id: str, correlation_id: str) -> None:
        started = time.time()
        with self._lock:
            st = self._history[build_id]
            st.status = "building"
            st.start_time = _now_iso()
            snapshot = st.model_copy(deep=True)
        append_session(self.settings, {"type": "build.start", "build_id": build_id, "cmd": self.settings.build_cmd})
        self._emit_status(snapshot, correlation_id)

        env = dict(os.environ)
        env["NODE_ENV"] = "production"
        try:
            try:
                p = subprocess.Popen(
                    self.settings.build_cmd,
                    cwd=self.settings.workspace_root,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    env=env,
                    text=True,
                    bufsize=1,
                )
            except OSError as e:
                raise BuildProcessError(f"Failed to start build: {e}", details={"cmd": self.settings.build_cmd}) from e

            with self._lock:
                self._current_proc = p
            output: list[str] = []
            assert p.stdout is not None
            for line in p.stdout:
                output.append(line)
                self.notifier.publish(
                    "build.status",
                    {"correlationId": correlation_id, "buildId": build_id, "type": "output", "data": line},
                    correlation_id,
                )
            rc = p.wait()
            text = "".join(output)

            with self._lock:
                st.end_time = _now_iso()
                st.duration = int((time.time() - started) * 1000)
                st.output = text
                if build_id in self._cancelled:
                    self._cancelled.discard(build_id)
                    return
                st.errors.extend(parse_build_errors(text, self.settings.workspace_root))
                if rc == 0:
                    st.status = "success"
                    st.artifacts = BuildArtifacts(
                        dist_path="dist/",
                        preview_url=self.preview_info()["url"],
                        size=calculate_build_size(text),
                    )
                else:
                    st.status = "failed"
                snapshot = st.model_copy(deep=True)
            append_session(
                self.settings,
                {"type": "build.finished", "build_id": build_id, "status": snapshot.status, "rc": rc, "duration_ms": snapshot.duration},
            )
        except BuildProcessError as e:
            with self._lock:
                st.status = "failed"
                st.end_time = _now_iso()
                st.duration = int((time.time() - started) * 1000)
                st.errors.append(BuildError(file="build-process", message=e.message, severity="error"))
                snapshot = st.model_copy(deep=True)
            append_session(self.settings, {"type": "build.process_error", "build_id": build_id, "error": e.message})

        self._emit_status(snapshot, correlation_id)
