from __future__ import annotations

import os
import threading
import time

import pytest

from services.apply_engine.app.errors import NoBackupFound, TransactionFailed, ValidationFailed
from services.apply_engine.app.events import EventNotifier
from services.apply_engine.app.fs_adapter import FSAdapter
from services.apply_engine.app.models import ApplyOptions, FileChange, StreamEvent
from services.apply_engine.app.path_policy import PathPolicy
from services.apply_engine.app.settings import Settings
from services.apply_engine.app.locks import PathLockManager
from services.apply_engine.app.txn import UNRECOVERABLE, TransactionEngine, diff_looks_valid, insert_at_line
from services.apply_engine.app.validator import PlanValidator


def _settings_for_tmp(repo_root: str) -> Settings:
    ws = os.path.join(repo_root, "workspace")
    os.makedirs(os.path.join(ws, "src"), exist_ok=True)
    return Settings(workspace_root=ws, allowlist=["src/"], allowed_origins=["http://localhost:3000"])


class _Formatter:
    def __init__(self, fail: bool = False) -> None:
        self.calls: list[str] = []
        self.fail = fail

    def format_file(self, rel_path: str) -> None:
        self.calls.append(rel_path)
        if self.fail:
            raise RuntimeError("formatter exploded")


def _engine(tmp_path, formatter: _Formatter | None = None) -> tuple[TransactionEngine, FSAdapter, list[StreamEvent]]:
    settings = _settings_for_tmp(str(tmp_path))
    fs = FSAdapter(settings, PathPolicy(settings.allowlist))
    notifier = EventNotifier(settings)
    events: list[StreamEvent] = []
    notifier.subscribe(events.append)
    engine = TransactionEngine(settings, fs, PlanValidator(fs), notifier, formatter=formatter)
    return engine, fs, events


def _snapshot(fs: FSAdapter) -> dict[str, str]:
    out: dict[str, str] = {}
    for dirpath, _dirs, files in os.walk(fs.root):
        for name in files:
            p = os.path.join(dirpath, name)
            with open(p, "r", encoding="utf-8") as f:
                out[os.path.relpath(p, fs.root)] = f.read()
    return out


def test_create_single_file(tmp_path) -> None:
    engine, fs, events = _engine(tmp_path)
    res = engine.execute_transaction(
        "p1",
        [FileChange(file="src/a.ts", op="create", apply_method="replaceFile", content="x")],
        ApplyOptions(create_backups=True, format_on_save=False, dry_run=False),
        "c1",
    )
    assert res.success is True
    assert res.applied_files == ["src/a.ts"]
    assert res.errors == []
    assert fs.read_file("src/a.ts") == "x"

    journal = engine.get_journal(res.txn_id)
    assert journal is not None and journal.status == "completed"
    assert [(op.type, op.success) for op in journal.operations] == [("backup", True), ("apply", True)]

    progress = [e.data for e in events if e.type == "apply.progress"]
    assert progress[0] == {"correlationId": "c1", "txnId": res.txn_id, "progress": 0.0, "currentFile": "src/a.ts", "operation": "create"}
    assert progress[-1] == {"correlationId": "c1", "txnId": res.txn_id, "progress": 100, "completed": True}


def test_insert_at_line_update(tmp_path) -> None:
    engine, fs, _ = _engine(tmp_path)
    fs.write_file("src/lines.txt", "L1\nL2\nL3")
    res = engine.execute_transaction(
        "p2",
        [FileChange(file="src/lines.txt", op="update", apply_method="insertAtLine", insert_at_line=2, content="NEW")],
        ApplyOptions(format_on_save=False),
        "c2",
    )
    assert res.success
    assert fs.read_file("src/lines.txt") == "L1\nNEW\nL2\nL3"


def test_insert_at_line_past_end_appends() -> None:
    assert insert_at_line("a\nb", 10, "z") == "a\nb\nz"
    assert insert_at_line("", 1, "z") == "z\n"


def test_create_collision_fails_validation_and_writes_nothing(tmp_path) -> None:
    engine, fs, _ = _engine(tmp_path)
    fs.write_file("src/b.ts", "original")
    before = _snapshot(fs)

    with pytest.raises(ValidationFailed) as e:
        engine.execute_transaction(
            "p3",
            [
                FileChange(file="src/a.ts", op="create", apply_method="replaceFile", content="A"),
                FileChange(file="src/b.ts", op="create", apply_method="replaceFile", content="B"),
            ],
            ApplyOptions(format_on_save=False),
            "c3",
        )
    assert len(e.value.errors) == 1
    assert "src/b.ts" in e.value.errors[0]
    assert _snapshot(fs) == before

    journal = engine.list_journals()[0]
    assert journal.status == "failed"
    assert not any(op.type == "apply" for op in journal.operations)


def test_dry_run_does_not_mutate_or_roll_back(tmp_path) -> None:
    engine, fs, events = _engine(tmp_path)
    fs.write_file("src/keep.ts", "keep")
    before = _snapshot(fs)

    res = engine.execute_transaction(
        "p4",
        [
            FileChange(file="src/new.ts", op="create", apply_method="replaceFile", content="n"),
            FileChange(file="src/keep.ts", op="update", apply_method="diff", diff="@@ -1 +1 @@\n-keep\n+kept"),
            FileChange(file="src/keep.ts", op="update", apply_method="insertAtLine", insert_at_line=1, content="// x"),
        ],
        ApplyOptions(dry_run=True),
        "c4",
    )
    assert _snapshot(fs) == before
    assert res.success is False
    assert res.applied_files == ["src/new.ts", "src/keep.ts"]
    assert len(res.errors) == 1
    assert res.errors[0].startswith("Failed to apply change to src/keep.ts:")
    assert engine.get_backup(res.txn_id) is None

    journal = engine.get_journal(res.txn_id)
    assert journal is not None and journal.status == "completed"
    assert not any(op.type == "rollback" for op in journal.operations)
    assert events[-1].data.get("completed") is True


def test_failure_mid_apply_rolls_back_everything(tmp_path) -> None:
    engine, fs, _ = _engine(tmp_path)
    fs.write_file("src/u.ts", "u-original")
    fs.write_file("src/d.ts", "d-original")
    fs.write_file("src/r.ts", "r-original")
    fs.write_file("src/diff.ts", "diff-original")
    before = _snapshot(fs)

    changes = [
        FileChange(file="src/c.ts", op="create", apply_method="replaceFile", content="created"),
        FileChange(file="src/u.ts", op="update", apply_method="replaceFile", content="u-new"),
        FileChange(file="src/d.ts", op="delete", apply_method="replaceFile", content="-"),
        FileChange(file="src/r.ts", op="rename", apply_method="replaceFile", content="-", new_path="src/renamed/r.ts"),
        # Structurally valid diff with no literal content: cannot be applied.
        FileChange(file="src/diff.ts", op="update", apply_method="diff", diff="@@ -1 +1 @@\n-a\n+b"),
    ]
    with pytest.raises(TransactionFailed) as e:
        engine.execute_transaction("p5", changes, ApplyOptions(format_on_save=False), "c5")

    assert e.value.rolled_back is True
    assert e.value.file_error.startswith("Failed to apply change to src/diff.ts:")
    assert _snapshot(fs) == before
    assert not os.path.isdir(os.path.join(fs.root, "src", "renamed")) or os.listdir(os.path.join(fs.root, "src", "renamed")) == []

    journal = engine.get_journal(e.value.txn_id)
    assert journal is not None and journal.status == "rolled_back"
    rollbacks = [op for op in journal.operations if op.type == "rollback"]
    assert rollbacks and all(op.success for op in rollbacks)


@pytest.mark.parametrize("k", [0, 1, 2])
def test_atomicity_for_kth_failure(tmp_path, k: int) -> None:
    engine, fs, _ = _engine(tmp_path)
    for i in range(3):
        fs.write_file(f"src/f{i}.ts", f"orig{i}")
    before = _snapshot(fs)

    changes = [FileChange(file=f"src/f{i}.ts", op="update", apply_method="replaceFile", content=f"new{i}") for i in range(3)]
    changes[k] = FileChange(file=f"src/f{k}.ts", op="update", apply_method="diff", diff="@@ -1 +1 @@\n-x\n+y")

    with pytest.raises(TransactionFailed):
        engine.execute_transaction("p6", changes, ApplyOptions(format_on_save=False), "c6")
    assert _snapshot(fs) == before


def test_invalid_diff_falls_back_to_content_without_mutating_input(tmp_path) -> None:
    engine, fs, events = _engine(tmp_path)
    fs.write_file("src/f.ts", "old")
    change = FileChange(file="src/f.ts", op="update", apply_method="diff", diff="not a diff", content="replaced")

    res = engine.execute_transaction("p7", [change], ApplyOptions(format_on_save=False), "c7")
    assert res.success
    assert fs.read_file("src/f.ts") == "replaced"
    assert change.apply_method == "diff"

    validated = [e for e in events if e.type == "fs.diffValidated"]
    assert validated and validated[0].data == {"correlationId": "c7", "file": "src/f.ts", "valid": False, "fallbackToReplace": True}


def test_invalid_diff_without_content_fails_validation(tmp_path) -> None:
    engine, fs, _ = _engine(tmp_path)
    fs.write_file("src/f.ts", "old")
    with pytest.raises(ValidationFailed) as e:
        engine.execute_transaction(
            "p8",
            [FileChange(file="src/f.ts", op="update", apply_method="diff", diff="garbage")],
            ApplyOptions(format_on_save=False),
            "c8",
        )
    assert e.value.errors == ["src/f.ts: Diff invalid and no fallback content provided"]


def test_failure_without_backups_reports_not_rolled_back(tmp_path) -> None:
    engine, fs, _ = _engine(tmp_path)
    fs.write_file("src/a.ts", "a")
    fs.write_file("src/b.ts", "b")
    changes = [
        FileChange(file="src/a.ts", op="update", apply_method="replaceFile", content="A"),
        FileChange(file="src/b.ts", op="update", apply_method="diff", diff="@@ -1 +1 @@\n-b\n+B"),
    ]
    with pytest.raises(TransactionFailed) as e:
        engine.execute_transaction("p9", changes, ApplyOptions(create_backups=False, format_on_save=False), "c9")
    assert e.value.rolled_back is False

    journal = engine.get_journal(e.value.txn_id)
    assert journal is not None and journal.status == "failed"
    last = journal.operations[-1]
    assert last.type == "rollback" and last.success is False
    # The first change stays applied: nothing to restore it from.
    assert fs.read_file("src/a.ts") == "A"

    with pytest.raises(NoBackupFound):
        engine.rollback_transaction(e.value.txn_id, "c9")


def test_manual_rollback_restores_completed_transaction(tmp_path) -> None:
    engine, fs, _ = _engine(tmp_path)
    fs.write_file("src/a.ts", "a")
    res = engine.execute_transaction(
        "p10",
        [
            FileChange(file="src/a.ts", op="update", apply_method="replaceFile", content="A"),
            FileChange(file="src/new.ts", op="create", apply_method="replaceFile", content="N"),
        ],
        ApplyOptions(format_on_save=False),
        "c10",
    )
    journal = engine.rollback_transaction(res.txn_id)
    assert journal.status == "rolled_back"
    assert fs.read_file("src/a.ts") == "a"
    assert not fs.exists("src/new.ts")


def test_backups_deduplicate_paths_first_capture_wins(tmp_path) -> None:
    engine, fs, _ = _engine(tmp_path)
    fs.write_file("src/a.ts", "one")
    res = engine.execute_transaction(
        "p11",
        [
            FileChange(file="src/a.ts", op="update", apply_method="replaceFile", content="two"),
            FileChange(file="src/a.ts", op="update", apply_method="replaceFile", content="three"),
        ],
        ApplyOptions(format_on_save=False),
        "c11",
    )
    backup = engine.get_backup(res.txn_id)
    assert backup is not None
    assert [(b.path, b.content, b.existed) for b in backup.files] == [("src/a.ts", "one", True)]
    assert fs.read_file("src/a.ts") == "three"


def test_formatter_runs_for_formattable_files_and_failures_are_ignored(tmp_path) -> None:
    fmt = _Formatter(fail=True)
    engine, fs, _ = _engine(tmp_path, formatter=fmt)
    res = engine.execute_transaction(
        "p12",
        [
            FileChange(file="src/a.ts", op="create", apply_method="replaceFile", content="a"),
            FileChange(file="src/notes.md", op="create", apply_method="replaceFile", content="n"),
        ],
        ApplyOptions(format_on_save=True),
        "c12",
    )
    assert res.success
    assert fmt.calls == ["src/a.ts"]


def test_cleanup_drops_old_journals_and_backups(tmp_path) -> None:
    engine, fs, _ = _engine(tmp_path)
    res = engine.execute_transaction(
        "p13",
        [FileChange(file="src/a.ts", op="create", apply_method="replaceFile", content="a")],
        ApplyOptions(format_on_save=False),
        "c13",
    )
    assert engine.cleanup_old_transactions(max_age_s=3600) == 0
    assert engine.cleanup_old_transactions(max_age_s=-1) == 1
    assert engine.get_journal(res.txn_id) is None
    assert engine.get_backup(res.txn_id) is None


def test_locks_are_released_after_transactions(tmp_path) -> None:
    engine, fs, _ = _engine(tmp_path)
    engine.execute_transaction(
        "p14",
        [FileChange(file="src/a.ts", op="create", apply_method="replaceFile", content="a")],
        ApplyOptions(format_on_save=False),
        "c14",
    )
    with pytest.raises(ValidationFailed):
        engine.execute_transaction(
            "p15",
            [FileChange(file="src/a.ts", op="create", apply_method="replaceFile", content="a")],
            ApplyOptions(format_on_save=False),
            "c15",
        )
    assert engine.locks.held_count() == 0


def test_diff_structural_check() -> None:
    assert diff_looks_valid("@@ -1,2 +1,2 @@\n-a\n+b")
    assert not diff_looks_valid("-a\n+b")
    assert not diff_looks_valid("@@ context only @@")


def _write_bytes(fs: FSAdapter, rel: str, data: bytes) -> None:
    with open(os.path.join(fs.root, rel), "wb") as f:
        f.write(data)


def test_unbackupable_file_is_journaled_as_unrecoverable(tmp_path) -> None:
    engine, fs, _ = _engine(tmp_path)
    _write_bytes(fs, "src/blob.ts", b"\xff\xfe\x00binary")
    fs.write_file("src/diff.ts", "diff-original")

    with pytest.raises(TransactionFailed) as e:
        engine.execute_transaction(
            "p20",
            [
                FileChange(file="src/blob.ts", op="update", apply_method="replaceFile", content="text now"),
                FileChange(file="src/diff.ts", op="update", apply_method="diff", diff="@@ -1 +1 @@\n-a\n+b"),
            ],
            ApplyOptions(format_on_save=False),
            "c20",
        )
    assert e.value.rolled_back is True

    journal = engine.get_journal(e.value.txn_id)
    assert journal is not None
    assert journal.status == "rolled_back"
    backup_ops = [op for op in journal.operations if op.type == "backup" and op.file == "src/blob.ts"]
    assert [op.success for op in backup_ops] == [False]
    unrecoverable = [op for op in journal.operations if op.type == "rollback" and op.file == "src/blob.ts"]
    assert len(unrecoverable) == 1
    assert unrecoverable[0].success is False
    assert unrecoverable[0].error == UNRECOVERABLE
    # The file that did get a backup is restored.
    assert fs.read_file("src/diff.ts") == "diff-original"


def test_per_change_backup_flag_skips_capture(tmp_path) -> None:
    engine, fs, _ = _engine(tmp_path)
    fs.write_file("src/nob.ts", "before")
    fs.write_file("src/diff.ts", "diff-original")

    with pytest.raises(TransactionFailed) as e:
        engine.execute_transaction(
            "p21",
            [
                FileChange(file="src/nob.ts", op="update", apply_method="replaceFile", content="after", backup=False),
                FileChange(file="src/diff.ts", op="update", apply_method="diff", diff="@@ -1 +1 @@\n-a\n+b"),
            ],
            ApplyOptions(format_on_save=False),
            "c21",
        )
    backup = engine.get_backup(e.value.txn_id)
    assert backup is not None
    assert not backup.has("src/nob.ts")
    assert fs.read_file("src/nob.ts") == "after"

    journal = engine.get_journal(e.value.txn_id)
    assert journal is not None
    assert any(op.type == "rollback" and op.file == "src/nob.ts" and op.error == UNRECOVERABLE for op in journal.operations)


def test_transaction_waits_for_a_held_path_lock(tmp_path) -> None:
    engine, fs, _ = _engine(tmp_path)
    release = threading.Event()
    holding = threading.Event()
    done = threading.Event()
    results: list[bool] = []

    def holder() -> None:
        with engine.locks.hold(["src/a.ts"]):
            holding.set()
            release.wait(10)

    def writer() -> None:
        res = engine.execute_transaction(
            "p22",
            [FileChange(file="src/a.ts", op="create", apply_method="replaceFile", content="a")],
            ApplyOptions(format_on_save=False),
            "c22",
        )
        results.append(res.success)
        done.set()

    h = threading.Thread(target=holder, daemon=True)
    h.start()
    assert holding.wait(5)
    w = threading.Thread(target=writer, daemon=True)
    w.start()

    assert not done.wait(0.3)
    assert not fs.exists("src/a.ts")

    release.set()
    assert done.wait(5)
    h.join(5)
    w.join(5)
    assert results == [True]
    assert fs.read_file("src/a.ts") == "a"
    assert engine.locks.held_count() == 0


def test_overlapping_lock_sets_in_opposite_order_do_not_deadlock() -> None:
    locks = PathLockManager()
    counter = {"n": 0}
    guard = threading.Lock()

    def worker(paths: list[str]) -> None:
        for _ in range(200):
            with locks.hold(paths):
                with guard:
                    counter["n"] += 1
                time.sleep(0)

    threads = [
        threading.Thread(target=worker, args=(["src/a.ts", "src/b.ts"],), daemon=True),
        threading.Thread(target=worker, args=(["src/b.ts", "src/a.ts"],), daemon=True),
        threading.Thread(target=worker, args=(["src/b.ts", "src/c.ts", "src/a.ts"],), daemon=True),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=20)
    assert not any(t.is_alive() for t in threads)
    assert counter["n"] == 600
    assert locks.held_count() == 0
