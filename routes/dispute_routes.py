"""
Dispute Routes
FastAPI routes for opening disputes, adding evidence and admin resolution.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends

from routes.dependencies import Caller, get_caller, get_operations
from services.rift_operations import RiftOperations

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rifts/{rift_id}/dispute", tags=["disputes"])
admin_router = APIRouter(prefix="/admin/disputes", tags=["disputes"])


@router.post("", status_code=201)
async def open_dispute(
    rift_id: str,
    payload: Dict[str, Any] = Body(...),
    caller: Caller = Depends(get_caller),
    ops: RiftOperations = Depends(get_operations),
):
    snapshot = await ops.open_dispute(rift_id, caller.user_id, caller.role, payload)
    return snapshot.to_dict()


@router.get("")
async def get_dispute(rift_id: str, caller: Caller = Depends(get_caller), ops: RiftOperations = Depends(get_operations)):
    return ops.get_dispute(rift_id, caller.user_id, caller.role)


@router.post("/evidence")
async def add_evidence(
    rift_id: str,
    payload: Dict[str, Any] = Body(...),
    caller: Caller = Depends(get_caller),
    ops: RiftOperations = Depends(get_operations),
):
    snapshot = await ops.add_dispute_evidence(rift_id, caller.user_id, caller.role, payload)
    return snapshot.to_dict()


_ADMIN_ACTIONS = {
    "request-info": "request_dispute_info",
    "start-review": "start_dispute_review",
    "resolve-seller": "resolve_dispute_seller",
    "resolve-buyer": "resolve_dispute_buyer",
    "reject": "reject_dispute",
}


def _register_admin_action(path: str, operation_name: str):
    async def endpoint(
        rift_id: str,
        payload: Optional[Dict[str, Any]] = Body(None),
        caller: Caller = Depends(get_caller),
        ops: RiftOperations = Depends(get_operations),
    ):
        operation = getattr(ops, operation_name)
        snapshot = await operation(rift_id, caller.user_id, caller.role, payload or {})
        return snapshot.to_dict()

    endpoint.__name__ = operation_name
    router.add_api_route(f"/{path}", endpoint, methods=["POST"], name=operation_name)


for _path, _operation in _ADMIN_ACTIONS.items():
    _register_admin_action(_path, _operation)


@admin_router.get("/queue")
async def admin_queue(caller: Caller = Depends(get_caller), ops: RiftOperations = Depends(get_operations)):
    queue = ops.admin_queue(caller.user_id, caller.role)
    return {"count": len(queue), "disputes": queue}
