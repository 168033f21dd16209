from __future__ import annotations

import os
import subprocess
from typing import Protocol

from .settings import Settings


FORMATTABLE_EXTENSIONS = frozenset({".ts", ".tsx", ".js", ".jsx", ".json", ".css", ".scss", ".html"})


def is_formattable(path: str) -> bool:
    return os.path.splitext(path)[1].lower() in FORMATTABLE_EXTENSIONS


class Formatter(Protocol):
    def format_file(self, rel_path: str) -> None: ...


class NoopFormatter:
    def format_file(self, rel_path: str) -> None:
        return None


class CommandFormatter:
    """
    Runs an external formatter in the workspace root, e.g.

      APPLY_FORMAT_CMD="npx prettier --write {path}"

    `{path}` is replaced with the relative path; when absent the path is appended.
    Raises RuntimeError on a non-zero exit; callers decide whether that matters.
    """

    def __init__(self, settings: Settings, cmd: list[str], *, timeout_s: float = 30.0) -> None:
        self.settings = settings
        self.cmd = list(cmd)
        self.timeout_s = timeout_s

    def _argv(self, rel_path: str) -> list[str]:
        if any("{path}" in part for part in self.cmd):
            return [part.replace("{path}", rel_path) for part in self.cmd]
        return [*self.cmd, rel_path]

    def format_file(self, rel_path: str) -> None:
        p = subprocess.run(
            self._argv(rel_path),
            cwd=self.settings.workspace_root,
            capture_output=True,
            text=True,
            timeout=self.timeout_s,
        )
        if p.returncode != 0:
            tail = (p.stderr or p.stdout or "").strip()[-500:]
            raise RuntimeError(f"formatter_failed rc={p.returncode}: {tail}")


def make_formatter(settings: Settings) -> Formatter:
    if settings.format_cmd:
        return CommandFormatter(settings, settings.format_cmd)
    return NoopFormatter()
