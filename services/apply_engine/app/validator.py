from __future__ import annotations

from dataclasses import dataclass

from .fs_adapter import FSAdapter
from .models import FileChange, Plan, PlanStep, ValidationReport
from .path_policy import normalize_rel_path


CIRCULAR_DEPENDENCY_ERROR = "Plan contains circular dependencies"


@dataclass(frozen=True)
class ChangeCheck:
    valid: bool
    error: str | None = None


def _present(v: str | None) -> bool:
    # Empty payloads count as missing.
    return bool(v)


def has_circular_dependencies(steps: list[PlanStep]) -> bool:
    """
    Depth-first search with an explicit stack so deep graphs cannot hit the
    interpreter recursion limit. A node seen again while still on the active
    path means a cycle.
    """
    deps: dict[str, list[str]] = {}
    for s in steps:
        deps.setdefault(s.id, []).extend(s.dependencies)

    visited: set[str] = set()
    on_stack: set[str] = set()
    for start in deps:
        if start in visited:
            continue
        visited.add(start)
        on_stack.add(start)
        stack: list[tuple[str, int]] = [(start, 0)]
        while stack:
            node, idx = stack[-1]
            children = deps.get(node, [])
            if idx >= len(children):
                stack.pop()
                on_stack.discard(node)
                continue
            stack[-1] = (node, idx + 1)
            child = children[idx]
            if child in on_stack:
                return True
            if child in visited or child not in deps:
                continue
            visited.add(child)
            on_stack.add(child)
            stack.append((child, 0))
    return False


class PlanValidator:
    def __init__(self, fs: FSAdapter) -> None:
        self.fs = fs

    def validate_change(self, change: FileChange) -> ChangeCheck:
        if not self.fs.is_path_allowed(change.file):
            return ChangeCheck(False, "Path not allowed by security policy")

        if change.op == "create":
            if self.fs.exists(change.file):
                return ChangeCheck(False, "File already exists")
        elif change.op in ("update", "delete"):
            if not self.fs.exists(change.file):
                return ChangeCheck(False, "File does not exist")
        elif change.op == "rename":
            if not self.fs.exists(change.file):
                return ChangeCheck(False, "Source file does not exist")
            if not _present(change.new_path):
                return ChangeCheck(False, "New path required for rename operation")
            if not self.fs.is_path_allowed(change.new_path or ""):
                return ChangeCheck(False, "Path not allowed by security policy")
            if normalize_rel_path(change.new_path or "") == normalize_rel_path(change.file):
                return ChangeCheck(False, "New path must differ from source path")

        if change.apply_method == "diff" and not _present(change.diff):
            return ChangeCheck(False, "Diff content required for diff apply method")
        if change.apply_method == "replaceFile" and not _present(change.content):
            return ChangeCheck(False, "Content required for replaceFile apply method")
        if change.apply_method == "insertAtLine":
            if change.insert_at_line is None or not _present(change.content):
                return ChangeCheck(False, "Line number and content required for insertAtLine apply method")
            if change.insert_at_line < 1:
                return ChangeCheck(False, "Line number must be 1 or greater")

        return ChangeCheck(True)

    def validate(self, plan: Plan) -> ValidationReport:
        errors: list[str] = []

        for change in plan.changes:
            check = self.validate_change(change)
            if not check.valid:
                errors.append(f"{change.file}: {check.error}")

        step_ids = {s.id for s in plan.steps}
        for step in plan.steps:
            for dep_id in step.dependencies:
                if dep_id not in step_ids:
                    errors.append(f"Step {step.id} has invalid dependency: {dep_id}")

        if has_circular_dependencies(plan.steps):
            errors.append(CIRCULAR_DEPENDENCY_ERROR)

        return ValidationReport(valid=not errors, errors=errors)
