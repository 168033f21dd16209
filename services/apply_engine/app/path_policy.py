from __future__ import annotations

import posixpath
import re


_DRIVE_RE = re.compile(r"^[A-Za-z]:")


def normalize_rel_path(p: str) -> str:
    s = str(p or "").replace("\\", "/").strip()
    if s in ("", ".", "./"):
        return s.rstrip("/") or s
    trailing = s.endswith("/")
    s = posixpath.normpath(s)
    if s == ".":
        return s
    return s + "/" if trailing else s


def _has_parent_segment(p: str) -> bool:
    return any(seg == ".." for seg in p.split("/"))


class PathPolicy:
    """
    Allow-list guard for workspace-relative paths.

    Entries ending in "/" are directory prefixes, other entries match a file
    exactly (or a directory of that name and anything below it), "." allows
    everything. Absolute paths and any ".." segment are always rejected.
    """

    def __init__(self, allowlist: list[str]) -> None:
        self._entries = tuple(normalize_rel_path(e) for e in allowlist if str(e or "").strip())

    @property
    def entries(self) -> tuple[str, ...]:
        return self._entries

    def is_allowed(self, rel_path: str) -> bool:
        raw = str(rel_path or "").replace("\\", "/")
        if not raw.strip() or "\0" in raw:
            return False
        if raw.startswith("/") or _DRIVE_RE.match(raw):
            return False
        if _has_parent_segment(raw):
            return False
        p = normalize_rel_path(raw)
        if not p or p == "." or _has_parent_segment(p) or p.startswith("/"):
            return False
        return self._matches(p)

    def _matches(self, p: str) -> bool:
        for entry in self._entries:
            if entry in (".", "./"):
                return True
            if entry.endswith("/"):
                if p.startswith(entry):
                    return True
                continue
            if p == entry or p.startswith(entry + "/"):
                return True
        return False

    def may_contain_allowed(self, dir_path: str) -> bool:
        """True when a directory is allowed itself or lies on the way to an entry."""
        if self.is_allowed(dir_path):
            return True
        raw = str(dir_path or "").replace("\\", "/")
        if not raw.strip() or raw.startswith("/") or _has_parent_segment(raw):
            return False
        d = normalize_rel_path(raw).rstrip("/")
        for entry in self._entries:
            if entry.startswith(d + "/"):
                return True
        return False
