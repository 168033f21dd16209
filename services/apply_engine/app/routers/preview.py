from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request

from ..container import Services
from ..deps import correlation_id, envelope, get_services
from ..errors import BadRequest, BuildNotFound
from ..models import CancelBuildRequest


router = APIRouter(prefix="/api/preview", tags=["preview"])


@router.post("/build")
def trigger_build(request: Request, services: Services = Depends(get_services)) -> Any:
    build_id = services.builds.trigger_build(correlation_id(request))
    return envelope(request, {"buildId": build_id, "status": "queued", "message": "Build queued successfully"})


@router.get("/status")
def build_status(
    request: Request,
    build_id: str | None = Query(None, alias="buildId"),
    services: Services = Depends(get_services),
) -> Any:
    if build_id:
        st = services.builds.get_status(build_id)
        if st is None:
            raise BuildNotFound(build_id)
    else:
        st = services.builds.current_status()
    return envelope(request, {"build": st.model_dump(by_alias=True)})


@router.post("/cancel")
def cancel_build(
    request: Request,
    body: CancelBuildRequest | None = Body(None),
    services: Services = Depends(get_services),
) -> Any:
    build_id = body.build_id if body else None
    if not build_id:
        raise BadRequest("Build ID is required")
    cancelled = services.builds.cancel(build_id)
    return envelope(
        request,
        {
            "success": cancelled,
            "message": "Build cancelled successfully" if cancelled else "Build not found or already completed",
        },
    )


@router.get("/url")
def preview_url(request: Request, services: Services = Depends(get_services)) -> Any:
    info = services.builds.preview_info()
    return envelope(request, {**info, "status": "available"})
