from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request

from ..container import Services
from ..deps import correlation_id, envelope, get_services
from ..errors import PlanNotFound
from ..models import ApplyPlanRequest, Plan


router = APIRouter(prefix="/api/ai", tags=["ai"])


@router.post("/plan")
def register_plan(
    request: Request,
    plan: Plan,
    max_files_changed: int | None = Query(None, alias="maxFilesChanged", ge=0),
    services: Services = Depends(get_services),
) -> Any:
    registered = services.plans.register_plan(plan, correlation_id(request), max_files_changed=max_files_changed)
    return registered.model_dump(by_alias=True)


@router.get("/plans")
def list_plans(request: Request, services: Services = Depends(get_services)) -> Any:
    plans = services.plans.list_plans()
    return envelope(request, {"plans": [p.model_dump(by_alias=True) for p in plans]})


@router.get("/plan/{plan_id}")
def get_plan(plan_id: str, services: Services = Depends(get_services)) -> Any:
    return services.plans.require_plan(plan_id).model_dump(by_alias=True)


@router.delete("/plan/{plan_id}")
def delete_plan(request: Request, plan_id: str, services: Services = Depends(get_services)) -> Any:
    if not services.plans.delete_plan(plan_id):
        raise PlanNotFound(plan_id)
    return envelope(request, {"success": True})


@router.post("/plan/{plan_id}/validate")
def validate_plan(request: Request, plan_id: str, services: Services = Depends(get_services)) -> Any:
    report = services.plans.validate_stored(plan_id)
    return envelope(request, {"planId": plan_id, **report.model_dump(by_alias=True)})


@router.post("/plan/{plan_id}/apply")
def apply_plan(
    request: Request,
    plan_id: str,
    body: ApplyPlanRequest | None = Body(None),
    services: Services = Depends(get_services),
) -> Any:
    req = body or ApplyPlanRequest()
    result = services.plans.apply_plan(plan_id, req, correlation_id(request))
    return result.model_dump(by_alias=True)
