from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from ..container import Services
from ..deps import correlation_id, envelope, get_services
from ..errors import TransactionNotFound


router = APIRouter(prefix="/api/txn", tags=["txn"])


@router.get("")
def list_transactions(request: Request, services: Services = Depends(get_services)) -> Any:
    return envelope(request, {"transactions": [j.to_dict() for j in services.engine.list_journals()]})


@router.get("/{txn_id}")
def get_transaction(request: Request, txn_id: str, services: Services = Depends(get_services)) -> Any:
    journal = services.engine.get_journal(txn_id)
    if journal is None:
        raise TransactionNotFound(txn_id)
    return envelope(request, {"transaction": journal.to_dict()})


@router.post("/{txn_id}/rollback")
def rollback_transaction(request: Request, txn_id: str, services: Services = Depends(get_services)) -> Any:
    journal = services.engine.rollback_transaction(txn_id, correlation_id(request))
    return envelope(request, {"success": True, "transaction": journal.to_dict()})
