from __future__ import annotations

from typing import Any


class ApplyEngineError(Exception):
    """Base error: carries a machine-readable code and the HTTP status it maps to."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})
        if status_code is not None:
            self.status_code = status_code


class PathForbidden(ApplyEngineError):
    code = "PATH_FORBIDDEN"
    status_code = 403

    def __init__(self, path: str) -> None:
        super().__init__(f"Path not allowed: {path}", details={"path": path})
        self.path = path


class ValidationFailed(ApplyEngineError):
    code = "VALIDATION_FAILED"
    status_code = 400

    def __init__(self, errors: list[str]) -> None:
        super().__init__(f"Validation failed: {', '.join(errors)}", details={"errors": list(errors)})
        self.errors = list(errors)


class NotFound(ApplyEngineError):
    code = "NOT_FOUND"
    status_code = 404


class PlanNotFound(NotFound):
    code = "PLAN_NOT_FOUND"

    def __init__(self, plan_id: str) -> None:
        super().__init__("Plan not found", details={"planId": plan_id})


class BuildNotFound(NotFound):
    code = "BUILD_NOT_FOUND"

    def __init__(self, build_id: str) -> None:
        super().__init__("Build not found", details={"buildId": build_id})


class TransactionNotFound(NotFound):
    code = "TRANSACTION_NOT_FOUND"

    def __init__(self, txn_id: str) -> None:
        super().__init__("Transaction not found", details={"txnId": txn_id})


class NoBackupFound(NotFound):
    code = "NO_BACKUP_FOUND"

    def __init__(self, txn_id: str) -> None:
        super().__init__(f"No backup found for transaction {txn_id}", details={"txnId": txn_id})
        self.txn_id = txn_id


class FileOperationFailed(ApplyEngineError):
    code = "FILE_OPERATION_FAILED"


class FileReadFailed(FileOperationFailed):
    code = "FILE_READ_FAILED"


class FileWriteFailed(FileOperationFailed):
    code = "FILE_WRITE_FAILED"


class FileDeleteFailed(FileOperationFailed):
    code = "FILE_DELETE_FAILED"


class FileRenameFailed(FileOperationFailed):
    code = "FILE_RENAME_FAILED"


class DiffApplyUnsupported(FileOperationFailed):
    code = "DIFF_APPLY_UNSUPPORTED"
    status_code = 400

    def __init__(self, path: str) -> None:
        super().__init__(
            f"Diff application is not supported for {path}; provide content for replaceFile",
            details={"path": path},
        )


class ConcurrentModification(ApplyEngineError):
    code = "CONCURRENT_MODIFICATION"
    status_code = 409

    def __init__(self, path: str, *, current_etag: str, expected_etag: str) -> None:
        super().__init__(
            "File was modified by another process",
            details={"path": path, "currentEtag": current_etag, "expectedEtag": expected_etag},
        )


class MaxDepthExceeded(ApplyEngineError):
    code = "MAX_DEPTH_EXCEEDED"
    status_code = 400

    def __init__(self, path: str) -> None:
        super().__init__("Maximum depth reached", details={"path": path})


class TransactionFailed(ApplyEngineError):
    code = "TRANSACTION_FAILED"

    def __init__(self, message: str, *, txn_id: str, file_error: str, rolled_back: bool, cause: Exception | None = None) -> None:
        super().__init__(message, details={"txnId": txn_id, "rolledBack": rolled_back, "error": file_error})
        self.txn_id = txn_id
        self.file_error = file_error
        self.rolled_back = rolled_back
        self.cause = cause


class BuildProcessError(ApplyEngineError):
    code = "BUILD_PROCESS_ERROR"


class BadRequest(ApplyEngineError):
    code = "BAD_REQUEST"
    status_code = 400
