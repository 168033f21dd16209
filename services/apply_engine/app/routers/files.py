from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request

from ..container import Services
from ..deps import envelope, get_services
from ..models import BatchRequest, SaveFileRequest
from ..session_log import append_session


router = APIRouter(prefix="/api/files", tags=["files"])


@router.get("")
def file_tree(
    request: Request,
    path: str = Query(""),
    depth: int = Query(5),
    services: Services = Depends(get_services),
) -> Any:
    tree = services.fs.get_file_tree(path, depth)
    return envelope(request, {"tree": tree.model_dump(by_alias=True)})


@router.get("/content")
def file_content(request: Request, path: str = Query(..., min_length=1), services: Services = Depends(get_services)) -> Any:
    content = services.fs.read_file(path)
    metadata = services.fs.get_metadata(path)
    return envelope(request, {"content": content, "metadata": metadata.model_dump(by_alias=True)})


@router.get("/metadata")
def file_metadata(request: Request, path: str = Query(..., min_length=1), services: Services = Depends(get_services)) -> Any:
    return envelope(request, {"metadata": services.fs.get_metadata(path).model_dump(by_alias=True)})


@router.post("/save")
def save_file(request: Request, req: SaveFileRequest, services: Services = Depends(get_services)) -> Any:
    metadata = services.fs.save_file(req.path, req.content, req.expected_etag)
    return envelope(request, {"success": True, "metadata": metadata.model_dump(by_alias=True)})


@router.post("/batch")
def batch(request: Request, req: BatchRequest, services: Services = Depends(get_services)) -> Any:
    append_session(services.settings, {"type": "files.batch", "operations": len(req.operations)})
    results = services.fs.batch_operation(req.operations)
    ok = sum(1 for r in results if r.success)
    return envelope(
        request,
        {
            "results": [r.model_dump(by_alias=True, exclude_none=True) for r in results],
            "summary": {"total": len(results), "successful": ok, "failed": len(results) - ok},
        },
    )
