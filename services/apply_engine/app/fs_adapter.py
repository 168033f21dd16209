from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import os
import uuid
from typing import Any

from .errors import (
    ApplyEngineError,
    ConcurrentModification,
    FileDeleteFailed,
    FileReadFailed,
    FileRenameFailed,
    FileWriteFailed,
    MaxDepthExceeded,
    PathForbidden,
)
from .locks import PathLockManager
from .models import BatchOp, BatchResult, FileMetadata, FilePermissions, FileTreeNode
from .path_policy import PathPolicy, normalize_rel_path
from .session_log import append_session
from .settings import Settings


# Dependency caches and build output never show up in the tree.
TREE_SKIP_DIRS = frozenset({"node_modules", "bower_components", "__pycache__", "dist"})

MIME_TYPES: dict[str, str] = {
    ".js": "application/javascript",
    ".jsx": "application/javascript",
    ".ts": "application/typescript",
    ".tsx": "application/typescript",
    ".json": "application/json",
    ".html": "text/html",
    ".css": "text/css",
    ".scss": "text/scss",
    ".md": "text/markdown",
    ".txt": "text/plain",
    ".xml": "application/xml",
    ".svg": "image/svg+xml",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
}


def fingerprint_bytes(raw: bytes) -> str:
    return hashlib.sha256(raw).hexdigest()


def fingerprint(content: str) -> str:
    return fingerprint_bytes(content.encode("utf-8"))


def mime_type_for(path: str) -> str:
    return MIME_TYPES.get(os.path.splitext(path)[1].lower(), "text/plain")


class FSAdapter:
    """The only component that touches the workspace filesystem."""

    def __init__(self, settings: Settings, policy: PathPolicy, locks: PathLockManager | None = None) -> None:
        self.settings = settings
        self.policy = policy
        self.locks = locks or PathLockManager()
        self.root = os.path.abspath(settings.workspace_root)

    # -----------------------
    # Resolution
    # -----------------------

    def is_path_allowed(self, rel_path: str) -> bool:
        return self.policy.is_allowed(rel_path)

    def _contained(self, abs_path: str) -> bool:
        real_root = os.path.realpath(self.root)
        return os.path.commonpath([real_root, os.path.realpath(abs_path)]) == real_root

    def resolve(self, rel_path: str) -> str:
        if not self.policy.is_allowed(rel_path):
            append_session(self.settings, {"type": "fs.forbidden", "path": rel_path})
            raise PathForbidden(rel_path)
        abs_path = os.path.abspath(os.path.join(self.root, normalize_rel_path(rel_path)))
        # Symlinks anywhere on the path, the leaf included, must stay inside the workspace.
        if not self._contained(abs_path):
            append_session(self.settings, {"type": "fs.forbidden", "path": rel_path, "reason": "outside_root"})
            raise PathForbidden(rel_path)
        return abs_path

    # -----------------------
    # Single-file operations
    # -----------------------

    def exists(self, rel_path: str) -> bool:
        try:
            return os.path.exists(self.resolve(rel_path))
        except Exception:
            return False

    def read_file(self, rel_path: str) -> str:
        abs_path = self.resolve(rel_path)
        try:
            with open(abs_path, "r", encoding="utf-8", newline="") as f:
                return f.read()
        except FileNotFoundError:
            raise FileReadFailed(f"Failed to read file: {rel_path}", details={"path": rel_path}, status_code=404)
        except Exception as e:
            append_session(self.settings, {"type": "fs.read.failed", "path": rel_path, "error": str(e)})
            raise FileReadFailed(f"Failed to read file: {rel_path}", details={"path": rel_path, "error": str(e)})

    def write_file(self, rel_path: str, content: str) -> None:
        abs_path = self.resolve(rel_path)
        tmp_path = f"{abs_path}.{uuid.uuid4().hex[:8]}.tmp"
        try:
            parent = os.path.dirname(abs_path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8", newline="") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, abs_path)
        except Exception as e:
            try:
                os.remove(tmp_path)
            except OSError:
                pass
            append_session(self.settings, {"type": "fs.write.failed", "path": rel_path, "error": str(e)})
            raise FileWriteFailed(f"Failed to write file: {rel_path}", details={"path": rel_path, "error": str(e)})
        append_session(self.settings, {"type": "fs.write", "path": rel_path, "bytes": len(content.encode("utf-8"))})

    def delete_file(self, rel_path: str) -> None:
        abs_path = self.resolve(rel_path)
        try:
            os.remove(abs_path)
        except FileNotFoundError:
            raise FileDeleteFailed(f"Failed to delete file: {rel_path}", details={"path": rel_path}, status_code=404)
        except Exception as e:
            append_session(self.settings, {"type": "fs.delete.failed", "path": rel_path, "error": str(e)})
            raise FileDeleteFailed(f"Failed to delete file: {rel_path}", details={"path": rel_path, "error": str(e)})
        append_session(self.settings, {"type": "fs.delete", "path": rel_path})

    def rename_file(self, old_path: str, new_path: str) -> None:
        abs_old = self.resolve(old_path)
        abs_new = self.resolve(new_path)
        try:
            os.makedirs(os.path.dirname(abs_new), exist_ok=True)
            os.replace(abs_old, abs_new)
        except Exception as e:
            append_session(self.settings, {"type": "fs.rename.failed", "from": old_path, "to": new_path, "error": str(e)})
            raise FileRenameFailed(
                f"Failed to rename file: {old_path} -> {new_path}",
                details={"from": old_path, "to": new_path, "error": str(e)},
            )
        append_session(self.settings, {"type": "fs.rename", "from": old_path, "to": new_path})

    def save_file(self, rel_path: str, content: str, expected_etag: str | None = None) -> FileMetadata:
        """Single-file save with optional optimistic concurrency check."""
        with self.locks.hold([rel_path]):
            if expected_etag and self.exists(rel_path):
                current = fingerprint(self.read_file(rel_path))
                if current != expected_etag:
                    append_session(
                        self.settings,
                        {"type": "fs.save.conflict", "path": rel_path, "current": current, "expected": expected_etag},
                    )
                    raise ConcurrentModification(rel_path, current_etag=current, expected_etag=expected_etag)
            self.write_file(rel_path, content)
            return self.get_metadata(rel_path)

    # -----------------------
    # Metadata + tree
    # -----------------------

    def _metadata_for(self, rel_path: str, abs_path: str) -> FileMetadata:
        try:
            st = os.stat(abs_path)
        except FileNotFoundError:
            raise FileReadFailed(f"Failed to get metadata for: {rel_path}", details={"path": rel_path}, status_code=404)
        except Exception as e:
            raise FileReadFailed(f"Failed to get metadata for: {rel_path}", details={"path": rel_path, "error": str(e)})
        is_dir = os.path.isdir(abs_path)
        raw = b""
        if not is_dir:
            try:
                with open(abs_path, "rb") as f:
                    raw = f.read()
            except Exception as e:
                raise FileReadFailed(f"Failed to get metadata for: {rel_path}", details={"path": rel_path, "error": str(e)})
        name = os.path.basename(rel_path.rstrip("/")) if rel_path not in ("", ".") else os.path.basename(self.root)
        return FileMetadata(
            path=rel_path or ".",
            name=name,
            type="directory" if is_dir else "file",
            size=int(st.st_size),
            last_modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc).isoformat(),
            etag=fingerprint_bytes(raw),
            mime_type="inode/directory" if is_dir else mime_type_for(rel_path),
            permissions=FilePermissions(
                read=os.access(abs_path, os.R_OK),
                write=os.access(abs_path, os.W_OK),
                execute=(not is_dir) and bool(st.st_mode & 0o111),
            ),
        )

    def get_metadata(self, rel_path: str) -> FileMetadata:
        return self._metadata_for(rel_path, self.resolve(rel_path))

    def _resolve_dir(self, rel_path: str) -> str:
        if rel_path in ("", "."):
            return self.root
        if not self.policy.may_contain_allowed(rel_path):
            raise PathForbidden(rel_path)
        abs_path = os.path.abspath(os.path.join(self.root, normalize_rel_path(rel_path)))
        if not self._contained(abs_path):
            raise PathForbidden(rel_path)
        return abs_path

    def get_file_tree(self, root_path: str = "", max_depth: int = 5) -> FileTreeNode:
        if max_depth <= 0:
            raise MaxDepthExceeded(root_path or ".")

        rel = normalize_rel_path(root_path).rstrip("/") if root_path not in ("", ".") else ""
        abs_path = self._resolve_dir(rel)
        node = FileTreeNode(path=rel or ".", metadata=self._metadata_for(rel, abs_path))
        if node.metadata.type != "directory":
            return node

        try:
            entries = list(os.scandir(abs_path))
        except Exception as e:
            raise FileReadFailed(f"Failed to read directory: {rel or '.'}", details={"path": rel or ".", "error": str(e)})

        children: list[FileTreeNode] = []
        truncated = False
        for e in entries:
            if e.name.startswith(".") or e.name in TREE_SKIP_DIRS:
                continue
            child_rel = f"{rel}/{e.name}" if rel else e.name
            try:
                if e.is_dir(follow_symlinks=False):
                    if not self.policy.may_contain_allowed(child_rel):
                        continue
                    children.append(self.get_file_tree(child_rel, max_depth - 1))
                else:
                    if not self.policy.is_allowed(child_rel):
                        continue
                    if not self._contained(e.path):
                        append_session(self.settings, {"type": "fs.tree.outside_root", "path": child_rel})
                        continue
                    children.append(FileTreeNode(path=child_rel, metadata=self._metadata_for(child_rel, e.path)))
            except MaxDepthExceeded:
                truncated = True
            except ApplyEngineError as err:
                append_session(self.settings, {"type": "fs.tree.child_failed", "path": child_rel, "error": err.message})

        # Stable sort: dirs first then name.
        children.sort(key=lambda c: (0 if c.metadata.type == "directory" else 1, c.metadata.name))
        node.children = children
        node.truncated = truncated
        return node

    # -----------------------
    # Batch
    # -----------------------

    def batch_operation(self, ops: list[BatchOp]) -> list[BatchResult]:
        results: list[BatchResult] = []
        for op in ops:
            try:
                if op.type == "read":
                    results.append(BatchResult(success=True, content=self.read_file(op.path)))
                elif op.type == "write":
                    self.write_file(op.path, op.content or "")
                    results.append(BatchResult(success=True))
                elif op.type == "delete":
                    self.delete_file(op.path)
                    results.append(BatchResult(success=True))
                else:
                    results.append(BatchResult(success=False, error="Unknown operation type"))
            except ApplyEngineError as e:
                results.append(BatchResult(success=False, error=e.message))
        return results

    def describe(self) -> dict[str, Any]:
        return {"root": self.root, "allowlist": list(self.policy.entries)}
