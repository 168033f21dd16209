from __future__ import annotations

from datetime import datetime, timezone

from .errors import PlanNotFound, TransactionFailed, ValidationFailed
from .events import EventNotifier
from .models import ApplyPlanRequest, ApplyResult, Plan, PlanSummary, ValidationReport
from .session_log import append_session
from .settings import Settings
from .store import KeyValueStore
from .txn import TransactionEngine
from .validator import PlanValidator


MAX_FILES_WARNING = "Plan exceeds maximum file change limit"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class PlanService:
    """Plan registry plus the apply entrypoint used by the HTTP layer."""

    def __init__(
        self,
        settings: Settings,
        store: KeyValueStore,
        validator: PlanValidator,
        engine: TransactionEngine,
        notifier: EventNotifier,
    ) -> None:
        self.settings = settings
        self.store = store
        self.validator = validator
        self.engine = engine
        self.notifier = notifier

    # -----------------------
    # Registry
    # -----------------------

    def register_plan(self, plan: Plan, correlation_id: str, *, max_files_changed: int | None = None) -> Plan:
        """
        Accept a candidate plan document: validate it, fold any errors into
        `warnings`, store it and announce it on the event stream.
        """
        self.notifier.publish("ai.started", {"correlationId": correlation_id, "planId": plan.id}, correlation_id)

        report = self.validate_plan(plan)
        warnings = list(plan.warnings)
        if not report.valid:
            warnings.extend(report.errors)
        limit = self.settings.max_files_changed if max_files_changed is None else max_files_changed
        if len(plan.changes) > limit:
            warnings.append(MAX_FILES_WARNING)
        registered = plan.model_copy(update={"warnings": warnings})

        self.store_plan(registered)
        self.notifier.publish(
            "ai.completed",
            {
                "correlationId": correlation_id,
                "planId": registered.id,
                "changesCount": len(registered.changes),
                "valid": report.valid,
            },
            correlation_id,
        )
        return registered

    def validate_plan(self, plan: Plan) -> ValidationReport:
        return self.validator.validate(plan)

    def validate_stored(self, plan_id: str) -> ValidationReport:
        return self.validate_plan(self.require_plan(plan_id))

    def store_plan(self, plan: Plan) -> None:
        self.store.put(plan.id, plan.model_dump(by_alias=True), ttl_s=self.settings.plan_ttl_s)
        append_session(self.settings, {"type": "plan.stored", "plan_id": plan.id, "changes": len(plan.changes)})

    def get_plan(self, plan_id: str) -> Plan | None:
        raw = self.store.get(plan_id)
        if raw is None:
            return None
        return Plan.model_validate(raw)

    def require_plan(self, plan_id: str) -> Plan:
        plan = self.get_plan(plan_id)
        if plan is None:
            raise PlanNotFound(plan_id)
        return plan

    def list_plans(self) -> list[PlanSummary]:
        out: list[PlanSummary] = []
        for raw in self.store.list():
            plan = Plan.model_validate(raw)
            out.append(PlanSummary(id=plan.id, summary=plan.summary, changes_count=len(plan.changes), metadata=plan.metadata))
        return out

    def delete_plan(self, plan_id: str) -> bool:
        deleted = self.store.delete(plan_id)
        append_session(self.settings, {"type": "plan.deleted", "plan_id": plan_id, "deleted": deleted})
        return deleted

    def purge_expired(self) -> int:
        return self.store.purge_expired()

    # -----------------------
    # Apply
    # -----------------------

    def apply_plan(self, plan_id: str, request: ApplyPlanRequest, correlation_id: str) -> ApplyResult:
        plan = self.require_plan(plan_id)

        changes = list(plan.changes)
        if request.selected_files:
            selected = set(request.selected_files)
            changes = [c for c in changes if c.file in selected]

        append_session(
            self.settings,
            {
                "type": "plan.apply",
                "plan_id": plan_id,
                "selected": len(request.selected_files or []) or "all",
                "changes": len(changes),
                "options": request.options.model_dump(by_alias=True),
            },
        )

        try:
            result = self.engine.execute_transaction(plan_id, changes, request.options, correlation_id)
        except ValidationFailed as e:
            self.notifier.emit_error(correlation_id, e.message, {"route": "/api/ai/plan/apply", "planId": plan_id})
            return ApplyResult(
                success=False,
                errors=e.errors,
                plan_id=plan_id,
                status="failed",
                correlation_id=correlation_id,
                timestamp=_now_iso(),
            )
        except TransactionFailed as e:
            self.notifier.emit_error(correlation_id, e.message, {"route": "/api/ai/plan/apply", "planId": plan_id, "txnId": e.txn_id})
            return ApplyResult(
                success=False,
                errors=[e.file_error],
                plan_id=plan_id,
                txn_id=e.txn_id,
                status="rolled_back" if e.rolled_back else "failed",
                correlation_id=correlation_id,
                timestamp=_now_iso(),
            )

        if not result.success:
            append_session(self.settings, {"type": "plan.apply.errors", "plan_id": plan_id, "errors": result.errors})
        return ApplyResult(
            success=result.success,
            applied_files=result.applied_files,
            errors=result.errors,
            plan_id=plan_id,
            txn_id=result.txn_id,
            status=result.status,
            correlation_id=correlation_id,
            timestamp=_now_iso(),
        )
