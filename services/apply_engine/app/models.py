from __future__ import annotations

import uuid
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


FileOp = Literal["create", "update", "delete", "rename"]
ApplyMethod = Literal["diff", "replaceFile", "insertAtLine"]
StepType = Literal["analyze", "generate", "modify", "test", "deploy"]
StepStatus = Literal["pending", "in_progress", "completed", "failed"]
EventType = Literal[
    "ai.started",
    "ai.token",
    "ai.completed",
    "fs.diffValidated",
    "apply.progress",
    "build.status",
    "error",
]
EVENT_TYPES: tuple[str, ...] = (
    "ai.started",
    "ai.token",
    "ai.completed",
    "fs.diffValidated",
    "apply.progress",
    "build.status",
    "error",
)


class WireModel(BaseModel):
    # camelCase on the wire, snake_case in Python.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -----------------------
# Plans
# -----------------------


class FileChange(WireModel):
    file: str
    op: FileOp
    apply_method: ApplyMethod
    diff: str | None = None
    content: str | None = None
    new_path: str | None = None
    insert_at_line: int | None = None
    backup: bool = True


class PlanStep(WireModel):
    id: str
    description: str
    type: StepType
    dependencies: list[str] = Field(default_factory=list)
    estimated_time: str | None = None
    status: StepStatus = "pending"


class PlanBody(WireModel):
    steps: list[PlanStep] = Field(default_factory=list)
    estimated_duration: str | None = None


class PlanMetadata(WireModel):
    model: str = "unknown"
    tokens: int | None = None
    processing_time: float | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class Plan(WireModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    summary: str = ""
    reasoning: str = ""
    plan: PlanBody = Field(default_factory=PlanBody)
    changes: list[FileChange] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    metadata: PlanMetadata = Field(default_factory=PlanMetadata)

    @property
    def steps(self) -> list[PlanStep]:
        return self.plan.steps


class PlanSummary(WireModel):
    id: str
    summary: str
    changes_count: int
    metadata: PlanMetadata


class ValidationReport(WireModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


# -----------------------
# Apply
# -----------------------


class ApplyOptions(WireModel):
    create_backups: bool = True
    format_on_save: bool = True
    dry_run: bool = False


class ApplyPlanRequest(WireModel):
    plan_id: str | None = None
    selected_files: list[str] | None = None
    options: ApplyOptions = Field(default_factory=ApplyOptions)


class ApplyResult(WireModel):
    success: bool
    applied_files: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    plan_id: str | None = None
    txn_id: str | None = None
    status: str | None = None
    correlation_id: str | None = None
    timestamp: str | None = None


# -----------------------
# Files
# -----------------------


class FilePermissions(WireModel):
    read: bool
    write: bool
    execute: bool


class FileMetadata(WireModel):
    path: str
    name: str
    type: Literal["file", "directory"]
    size: int
    last_modified: str
    etag: str
    mime_type: str
    permissions: FilePermissions


class FileTreeNode(WireModel):
    path: str
    metadata: FileMetadata
    children: list["FileTreeNode"] | None = None
    truncated: bool = False


FileTreeNode.model_rebuild()


class BatchOp(WireModel):
    type: str
    path: str
    content: str | None = None


class BatchResult(WireModel):
    success: bool
    error: str | None = None
    content: str | None = None


class SaveFileRequest(WireModel):
    path: str
    content: str
    expected_etag: str | None = None


class BatchRequest(WireModel):
    operations: list[BatchOp]


# -----------------------
# Events / builds / errors
# -----------------------


class StreamEvent(WireModel):
    type: EventType
    data: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str
    timestamp: str


class BuildError(WireModel):
    file: str
    line: int | None = None
    column: int | None = None
    message: str
    severity: Literal["error", "warning", "info"] = "error"


class BuildArtifacts(WireModel):
    dist_path: str | None = None
    preview_url: str | None = None
    size: int | None = None


class BuildStatus(WireModel):
    id: str
    status: Literal["idle", "queued", "building", "success", "failed"]
    start_time: str | None = None
    end_time: str | None = None
    duration: int | None = None
    output: str | None = None
    errors: list[BuildError] = Field(default_factory=list)
    artifacts: BuildArtifacts | None = None


class CancelBuildRequest(WireModel):
    build_id: str | None = None


class ErrorModel(WireModel):
    code: str
    message: str
    details: dict[str, Any] | None = None
    correlation_id: str
    timestamp: str
    stack: str | None = None
