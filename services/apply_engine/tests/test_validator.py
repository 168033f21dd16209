from __future__ import annotations

import os

from services.apply_engine.app.fs_adapter import FSAdapter
from services.apply_engine.app.models import FileChange, Plan, PlanBody, PlanStep
from services.apply_engine.app.path_policy import PathPolicy
from services.apply_engine.app.settings import Settings
from services.apply_engine.app.validator import CIRCULAR_DEPENDENCY_ERROR, PlanValidator, has_circular_dependencies


def _settings_for_tmp(repo_root: str) -> Settings:
    ws = os.path.join(repo_root, "workspace")
    os.makedirs(os.path.join(ws, "src"), exist_ok=True)
    return Settings(workspace_root=ws, allowlist=["src/", "package.json"], allowed_origins=["http://localhost:3000"])


def _validator(tmp_path) -> PlanValidator:
    settings = _settings_for_tmp(str(tmp_path))
    return PlanValidator(FSAdapter(settings, PathPolicy(settings.allowlist)))


def _step(sid: str, deps: list[str] | None = None) -> PlanStep:
    return PlanStep(id=sid, description=f"step {sid}", type="modify", dependencies=deps or [])


def _touch(tmp_path, rel: str, content: str = "x") -> None:
    p = os.path.join(str(tmp_path), "workspace", rel)
    os.makedirs(os.path.dirname(p), exist_ok=True)
    with open(p, "w", encoding="utf-8") as f:
        f.write(content)


def test_valid_plan_has_no_errors(tmp_path) -> None:
    v = _validator(tmp_path)
    _touch(tmp_path, "src/App.tsx")
    plan = Plan(
        id="p1",
        plan=PlanBody(steps=[_step("a"), _step("b", ["a"])]),
        changes=[
            FileChange(file="src/new.ts", op="create", apply_method="replaceFile", content="export {}"),
            FileChange(file="src/App.tsx", op="update", apply_method="insertAtLine", insert_at_line=1, content="// hi"),
        ],
    )
    report = v.validate(plan)
    assert report.valid is True
    assert report.errors == []


def test_change_level_reasons(tmp_path) -> None:
    v = _validator(tmp_path)
    _touch(tmp_path, "src/exists.ts")

    def reason(**kw) -> str | None:
        return v.validate_change(FileChange(**kw)).error

    assert reason(file="../etc/passwd", op="create", apply_method="replaceFile", content="x") == "Path not allowed by security policy"
    assert reason(file="src/exists.ts", op="create", apply_method="replaceFile", content="x") == "File already exists"
    assert reason(file="src/nope.ts", op="update", apply_method="replaceFile", content="x") == "File does not exist"
    assert reason(file="src/nope.ts", op="delete", apply_method="replaceFile", content="x") == "File does not exist"
    assert reason(file="src/nope.ts", op="rename", apply_method="replaceFile", content="x", new_path="src/b.ts") == "Source file does not exist"
    assert reason(file="src/exists.ts", op="rename", apply_method="replaceFile", content="x") == "New path required for rename operation"
    assert reason(file="src/exists.ts", op="rename", apply_method="replaceFile", content="x", new_path="/tmp/x") == "Path not allowed by security policy"
    assert reason(file="src/exists.ts", op="rename", apply_method="replaceFile", content="x", new_path="./src/exists.ts") == "New path must differ from source path"
    assert reason(file="src/exists.ts", op="update", apply_method="diff") == "Diff content required for diff apply method"
    assert reason(file="src/exists.ts", op="update", apply_method="replaceFile", content="") == "Content required for replaceFile apply method"
    assert reason(file="src/exists.ts", op="update", apply_method="insertAtLine", content="x") == "Line number and content required for insertAtLine apply method"
    assert reason(file="src/exists.ts", op="update", apply_method="insertAtLine", insert_at_line=0, content="x") == "Line number must be 1 or greater"


def test_errors_are_prefixed_with_file_and_collected_in_bulk(tmp_path) -> None:
    v = _validator(tmp_path)
    plan = Plan(
        id="p2",
        plan=PlanBody(steps=[_step("a", ["ghost"])]),
        changes=[
            FileChange(file="src/missing.ts", op="update", apply_method="replaceFile", content="x"),
            FileChange(file="secrets/.env", op="create", apply_method="replaceFile", content="x"),
        ],
    )
    report = v.validate(plan)
    assert report.valid is False
    assert report.errors == [
        "src/missing.ts: File does not exist",
        "secrets/.env: Path not allowed by security policy",
        "Step a has invalid dependency: ghost",
    ]


def test_cycle_is_reported_once(tmp_path) -> None:
    v = _validator(tmp_path)
    plan = Plan(id="p3", plan=PlanBody(steps=[_step("A", ["C"]), _step("B", ["A"]), _step("C", ["B"])]))
    report = v.validate(plan)
    assert report.valid is False
    assert report.errors == [CIRCULAR_DEPENDENCY_ERROR]


def test_self_dependency_is_a_cycle() -> None:
    assert has_circular_dependencies([_step("A", ["A"])])


def test_diamond_is_not_a_cycle() -> None:
    steps = [_step("a"), _step("b", ["a"]), _step("c", ["a"]), _step("d", ["b", "c"])]
    assert not has_circular_dependencies(steps)


def test_long_chain_terminates_without_recursion_limit() -> None:
    n = 20_000
    chain = [_step(f"s{i}", [f"s{i + 1}"]) for i in range(n - 1)] + [_step(f"s{n - 1}")]
    assert not has_circular_dependencies(chain)

    looped = chain[:-1] + [_step(f"s{n - 1}", ["s0"])]
    assert has_circular_dependencies(looped)


def test_validate_does_not_mutate_plan(tmp_path) -> None:
    v = _validator(tmp_path)
    plan = Plan(
        id="p4",
        warnings=["w"],
        changes=[FileChange(file="src/missing.ts", op="delete", apply_method="replaceFile", content="x")],
    )
    before = plan.model_dump()
    v.validate(plan)
    assert plan.model_dump() == before
