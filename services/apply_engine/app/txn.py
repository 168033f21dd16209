from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from .errors import (
    DiffApplyUnsupported,
    FileDeleteFailed,
    FileRenameFailed,
    FileWriteFailed,
    NoBackupFound,
    TransactionFailed,
    TransactionNotFound,
    ValidationFailed,
)
from .events import EventNotifier
from .formatter import Formatter, NoopFormatter, is_formattable
from .fs_adapter import FSAdapter, fingerprint
from .locks import PathLockManager
from .models import ApplyOptions, FileChange
from .path_policy import normalize_rel_path
from .session_log import append_session
from .settings import Settings
from .validator import PlanValidator


TxnStatus = Literal["pending", "completed", "failed", "rolled_back"]
OpType = Literal["backup", "apply", "rollback"]

UNRECOVERABLE = "no backup captured; file is unrecoverable"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class JournalOperation:
    type: OpType
    file: str
    timestamp: str
    success: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type, "file": self.file, "timestamp": self.timestamp, "success": self.success}
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class TransactionJournal:
    id: str
    plan_id: str
    correlation_id: str
    start_time: str
    started_at: float
    dry_run: bool = False
    status: TxnStatus = "pending"
    end_time: str | None = None
    operations: list[JournalOperation] = field(default_factory=list)
    # Paths whose on-disk state this transaction actually changed.
    touched: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "planId": self.plan_id,
            "correlationId": self.correlation_id,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "dryRun": self.dry_run,
            "status": self.status,
            "operations": [op.to_dict() for op in self.operations],
        }


@dataclass(frozen=True)
class BackupEntry:
    path: str
    content: str
    etag: str
    existed: bool


@dataclass
class TransactionBackup:
    id: str
    timestamp: str
    files: list[BackupEntry] = field(default_factory=list)

    def has(self, path: str) -> bool:
        key = normalize_rel_path(path)
        return any(normalize_rel_path(f.path) == key for f in self.files)


@dataclass(frozen=True)
class TransactionResult:
    success: bool
    applied_files: list[str]
    errors: list[str]
    txn_id: str
    status: TxnStatus


def change_paths(change: FileChange) -> list[str]:
    paths = [change.file]
    if change.op == "rename" and change.new_path:
        paths.append(change.new_path)
    return paths


def diff_looks_valid(diff: str) -> bool:
    # Structural check only: a hunk marker plus at least one added/removed line.
    if "@@" not in diff:
        return False
    return any(line.startswith(("+", "-")) for line in diff.split("\n"))


def insert_at_line(text: str, line_number: int, content: str) -> str:
    lines = text.split("\n")
    lines.insert(line_number - 1, content)
    return "\n".join(lines)


class TransactionEngine:
    """
    All-or-nothing application of a list of FileChanges.

    Phases: backup -> validate -> apply (-> rollback on the first failure).
    Every attempt gets a journal, kept in memory until cleanup_old_transactions.
    """

    def __init__(
        self,
        settings: Settings,
        fs: FSAdapter,
        validator: PlanValidator,
        notifier: EventNotifier,
        *,
        locks: PathLockManager | None = None,
        formatter: Formatter | None = None,
    ) -> None:
        self.settings = settings
        self.fs = fs
        self.validator = validator
        self.notifier = notifier
        self.locks = locks or fs.locks
        self.formatter = formatter or NoopFormatter()
        self._lock = threading.Lock()
        self._journals: dict[str, TransactionJournal] = {}
        self._backups: dict[str, TransactionBackup] = {}

    # -----------------------
    # Journal bookkeeping
    # -----------------------

    def _record(self, journal: TransactionJournal, op: OpType, file: str, success: bool, error: str | None = None) -> None:
        with self._lock:
            journal.operations.append(JournalOperation(type=op, file=file, timestamp=_now_iso(), success=success, error=error))

    def _set_status(self, journal: TransactionJournal, status: TxnStatus) -> None:
        with self._lock:
            journal.status = status
            journal.end_time = _now_iso() if status != "pending" else None

    def _log(self, journal: TransactionJournal, event: dict[str, Any]) -> None:
        append_session(self.settings, {"txn_id": journal.id, "correlation_id": journal.correlation_id, **event})

    # -----------------------
    # Public API
    # -----------------------

    def execute_transaction(
        self,
        plan_id: str,
        changes: list[FileChange],
        options: ApplyOptions | None = None,
        correlation_id: str = "unknown",
    ) -> TransactionResult:
        opts = options or ApplyOptions()
        txn_id = str(uuid.uuid4())
        journal = TransactionJournal(
            id=txn_id,
            plan_id=plan_id,
            correlation_id=correlation_id,
            start_time=_now_iso(),
            started_at=time.time(),
            dry_run=opts.dry_run,
        )
        with self._lock:
            self._journals[txn_id] = journal
        self._log(journal, {"type": "txn.start", "plan_id": plan_id, "changes": len(changes), "dry_run": opts.dry_run})

        lock_paths = [p for c in changes for p in change_paths(c)]
        with self.locks.hold(lock_paths):
            try:
                if opts.create_backups and not opts.dry_run:
                    self._create_backups(journal, changes)

                effective = self._validate_changes(journal, changes)

                if opts.dry_run:
                    applied, errors = self._simulate(journal, effective)
                else:
                    applied, errors = self._apply_all(journal, effective, opts)
            except (ValidationFailed, TransactionFailed):
                raise
            except Exception as e:
                self._set_status(journal, "failed")
                self._log(journal, {"type": "txn.failed", "error": f"{type(e).__name__}: {e}"})
                raise

        self._set_status(journal, "completed")
        self.notifier.publish(
            "apply.progress",
            {"correlationId": correlation_id, "txnId": txn_id, "progress": 100, "completed": True},
            correlation_id,
        )
        self._log(journal, {"type": "txn.completed", "applied": len(applied), "errors": len(errors)})
        return TransactionResult(success=not errors, applied_files=applied, errors=errors, txn_id=txn_id, status="completed")

    def rollback_transaction(self, txn_id: str, correlation_id: str | None = None) -> TransactionJournal:
        with self._lock:
            backup = self._backups.get(txn_id)
            journal = self._journals.get(txn_id)
        if backup is None:
            raise NoBackupFound(txn_id)
        if journal is None:
            raise TransactionNotFound(txn_id)
        cid = correlation_id or journal.correlation_id
        append_session(self.settings, {"type": "txn.rollback.start", "txn_id": txn_id, "correlation_id": cid})

        paths = [f.path for f in backup.files] + list(journal.touched)
        with self.locks.hold(paths):
            for entry in reversed(backup.files):
                try:
                    if entry.existed:
                        self.fs.write_file(entry.path, entry.content)
                    elif self.fs.exists(entry.path):
                        self.fs.delete_file(entry.path)
                    self._record(journal, "rollback", entry.path, True)
                except Exception as e:
                    msg = getattr(e, "message", None) or str(e)
                    append_session(
                        self.settings,
                        {"type": "txn.rollback.file_failed", "txn_id": txn_id, "path": entry.path, "error": msg, "correlation_id": cid},
                    )
                    self._record(journal, "rollback", entry.path, False, msg)

            seen: set[str] = set()
            for path in journal.touched:
                key = normalize_rel_path(path)
                if key in seen or backup.has(path):
                    continue
                seen.add(key)
                self._record(journal, "rollback", path, False, UNRECOVERABLE)
            self._set_status(journal, "rolled_back")

        append_session(self.settings, {"type": "txn.rollback.done", "txn_id": txn_id, "correlation_id": cid})
        return journal

    def get_journal(self, txn_id: str) -> TransactionJournal | None:
        with self._lock:
            return self._journals.get(txn_id)

    def get_backup(self, txn_id: str) -> TransactionBackup | None:
        with self._lock:
            return self._backups.get(txn_id)

    def list_journals(self) -> list[TransactionJournal]:
        with self._lock:
            out = list(self._journals.values())
        out.sort(key=lambda j: j.started_at, reverse=True)
        return out

    def cleanup_old_transactions(self, max_age_s: float | None = None) -> int:
        age = self.settings.txn_max_age_s if max_age_s is None else max_age_s
        cutoff = time.time() - age
        with self._lock:
            old = [tid for tid, j in self._journals.items() if j.started_at < cutoff]
            for tid in old:
                self._journals.pop(tid, None)
                self._backups.pop(tid, None)
        for tid in old:
            append_session(self.settings, {"type": "txn.cleanup", "txn_id": tid})
        return len(old)

    # -----------------------
    # Phase A: backup
    # -----------------------

    def _create_backups(self, journal: TransactionJournal, changes: list[FileChange]) -> None:
        backup = TransactionBackup(id=journal.id, timestamp=_now_iso())
        for change in changes:
            if not change.backup:
                self._log(journal, {"type": "txn.backup.skipped", "path": change.file})
                continue
            for path in change_paths(change):
                if backup.has(path):
                    continue
                try:
                    if self.fs.exists(path):
                        content = self.fs.read_file(path)
                        backup.files.append(BackupEntry(path=path, content=content, etag=fingerprint(content), existed=True))
                    else:
                        # Still guard the path so rollback never touches something forbidden.
                        self.fs.resolve(path)
                        backup.files.append(BackupEntry(path=path, content="", etag="", existed=False))
                    self._record(journal, "backup", path, True)
                except Exception as e:
                    msg = getattr(e, "message", None) or str(e)
                    self._log(journal, {"type": "txn.backup.file_failed", "path": path, "error": msg})
                    self._record(journal, "backup", path, False, msg)
        with self._lock:
            self._backups[journal.id] = backup
        self._log(journal, {"type": "txn.backup", "files": len(backup.files)})

    # -----------------------
    # Phase B: validation
    # -----------------------

    def _validate_changes(self, journal: TransactionJournal, changes: list[FileChange]) -> list[FileChange]:
        effective: list[FileChange] = []
        errors: list[str] = []
        for change in changes:
            check = self.validator.validate_change(change)
            if not check.valid:
                errors.append(f"{change.file}: {check.error}")
                continue

            if change.apply_method == "diff" and change.diff and not diff_looks_valid(change.diff):
                self.notifier.publish(
                    "fs.diffValidated",
                    {"correlationId": journal.correlation_id, "file": change.file, "valid": False, "fallbackToReplace": True},
                    journal.correlation_id,
                )
                if not change.content:
                    errors.append(f"{change.file}: Diff invalid and no fallback content provided")
                    continue
                change = change.model_copy(update={"apply_method": "replaceFile"})

            effective.append(change)

        if errors:
            self._set_status(journal, "failed")
            self._log(journal, {"type": "txn.validation_failed", "errors": errors})
            raise ValidationFailed(errors)
        return effective

    # -----------------------
    # Phase C: apply
    # -----------------------

    def _progress(self, journal: TransactionJournal, i: int, total: int, change: FileChange) -> None:
        self.notifier.publish(
            "apply.progress",
            {
                "correlationId": journal.correlation_id,
                "txnId": journal.id,
                "progress": (i / total) * 100,
                "currentFile": change.file,
                "operation": change.op,
            },
            journal.correlation_id,
        )

    def _apply_all(self, journal: TransactionJournal, changes: list[FileChange], opts: ApplyOptions) -> tuple[list[str], list[str]]:
        applied: list[str] = []
        total = len(changes)
        for i, change in enumerate(changes):
            self._progress(journal, i, total, change)
            try:
                self._apply_change(change)
            except Exception as e:
                reason = getattr(e, "message", None) or str(e)
                error_msg = f"Failed to apply change to {change.file}: {reason}"
                self._record(journal, "apply", change.file, False, error_msg)
                self._log(journal, {"type": "txn.apply.failed", "path": change.file, "error": error_msg})
                self._fail_and_roll_back(journal, error_msg, e)

            with self._lock:
                journal.touched.extend(change_paths(change))
            applied.append(change.file)
            self._record(journal, "apply", change.file, True)

            if opts.format_on_save:
                self._format(journal, change)
            # Let stream consumers drain between changes.
            time.sleep(0)
        return applied, []

    def _fail_and_roll_back(self, journal: TransactionJournal, error_msg: str, cause: Exception) -> None:
        try:
            self.rollback_transaction(journal.id, journal.correlation_id)
        except NoBackupFound as nb:
            self._record(journal, "rollback", "all", False, nb.message)
            self._set_status(journal, "failed")
            raise TransactionFailed(
                f"Transaction failed and could not be rolled back: {error_msg}",
                txn_id=journal.id,
                file_error=error_msg,
                rolled_back=False,
                cause=cause,
            ) from cause
        raise TransactionFailed(
            f"Transaction failed and rolled back: {error_msg}",
            txn_id=journal.id,
            file_error=error_msg,
            rolled_back=True,
            cause=cause,
        ) from cause

    def _apply_change(self, change: FileChange) -> None:
        if change.op == "create":
            self.fs.write_file(change.file, change.content or "")
        elif change.op == "delete":
            self.fs.delete_file(change.file)
        elif change.op == "rename":
            if not change.new_path:
                raise FileRenameFailed("New path required for rename operation", details={"path": change.file})
            self.fs.rename_file(change.file, change.new_path)
        elif change.op == "update":
            self._apply_update(change)
        else:
            raise FileWriteFailed(f"Unknown operation: {change.op}", details={"path": change.file})

    def _apply_update(self, change: FileChange) -> None:
        if change.apply_method == "replaceFile":
            if not change.content:
                raise FileWriteFailed("Content required for replaceFile method", details={"path": change.file})
            self.fs.write_file(change.file, change.content)
        elif change.apply_method == "insertAtLine":
            if change.insert_at_line is None or not change.content:
                raise FileWriteFailed("Line number and content required for insertAtLine method", details={"path": change.file})
            current = self.fs.read_file(change.file)
            self.fs.write_file(change.file, insert_at_line(current, change.insert_at_line, change.content))
        elif change.apply_method == "diff":
            if not change.content:
                raise DiffApplyUnsupported(change.file)
            self.fs.write_file(change.file, change.content)
        else:
            raise FileWriteFailed(f"Unknown apply method: {change.apply_method}", details={"path": change.file})

    def _format(self, journal: TransactionJournal, change: FileChange) -> None:
        if change.op == "delete":
            return
        target = change.new_path if change.op == "rename" and change.new_path else change.file
        if not is_formattable(target):
            return
        try:
            self.formatter.format_file(target)
        except Exception as e:
            self._log(journal, {"type": "txn.format.failed", "path": target, "error": f"{type(e).__name__}: {e}"})

    # -----------------------
    # Dry run
    # -----------------------

    def _simulate(self, journal: TransactionJournal, changes: list[FileChange]) -> tuple[list[str], list[str]]:
        applied: list[str] = []
        errors: list[str] = []
        total = len(changes)
        for i, change in enumerate(changes):
            self._progress(journal, i, total, change)
            try:
                self._simulate_change(change)
            except Exception as e:
                reason = getattr(e, "message", None) or str(e)
                error_msg = f"Failed to apply change to {change.file}: {reason}"
                errors.append(error_msg)
                self._record(journal, "apply", change.file, False, error_msg)
                continue
            applied.append(change.file)
            self._record(journal, "apply", change.file, True)
            time.sleep(0)
        return applied, errors

    def _simulate_change(self, change: FileChange) -> None:
        """Check the read-side preconditions of a change without touching the disk."""
        if change.op == "create":
            self.fs.resolve(change.file)
        elif change.op == "delete":
            if not self.fs.exists(change.file):
                raise FileDeleteFailed(f"Failed to delete file: {change.file}", details={"path": change.file}, status_code=404)
        elif change.op == "rename":
            self.fs.resolve(change.new_path or "")
            if not self.fs.exists(change.file):
                raise FileRenameFailed(
                    f"Failed to rename file: {change.file} -> {change.new_path}",
                    details={"from": change.file, "to": change.new_path},
                )
        elif change.op == "update":
            if change.apply_method == "insertAtLine":
                self.fs.read_file(change.file)
            elif change.apply_method == "diff" and not change.content:
                raise DiffApplyUnsupported(change.file)
            else:
                self.fs.resolve(change.file)
