"""
Rift Routes
FastAPI routes for the rift lifecycle, vault access and wallet reads.
Every route delegates to ``RiftOperations``; typed errors are mapped to HTTP
responses by the application's exception handler.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends

from routes.dependencies import Caller, get_caller, get_operations
from services.rift_operations import RiftOperations

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rifts", tags=["rifts"])
vault_router = APIRouter(prefix="/vault", tags=["vault"])
wallet_router = APIRouter(prefix="/wallets", tags=["wallets"])


@router.post("", status_code=201)
async def create_rift(
    payload: Dict[str, Any] = Body(...),
    caller: Caller = Depends(get_caller),
    ops: RiftOperations = Depends(get_operations),
):
    snapshot = await ops.create_rift(caller.user_id, caller.role, payload)
    return snapshot.to_dict()


@router.get("/{rift_id}")
async def get_rift(rift_id: str, caller: Caller = Depends(get_caller), ops: RiftOperations = Depends(get_operations)):
    return ops.get_rift(rift_id, caller.user_id, caller.role)


@router.get("/{rift_id}/events")
async def get_timeline(rift_id: str, caller: Caller = Depends(get_caller), ops: RiftOperations = Depends(get_operations)):
    return {"rift_id": rift_id, "events": ops.get_timeline(rift_id, caller.user_id, caller.role)}


@router.post("/{rift_id}/events")
async def report_event(
    rift_id: str,
    payload: Dict[str, Any] = Body(...),
    caller: Caller = Depends(get_caller),
    ops: RiftOperations = Depends(get_operations),
):
    """Party-reported delivery facts (receipt confirmation, view time, chat activity)"""
    snapshot = await ops.report_event(rift_id, caller.user_id, caller.role, payload)
    return snapshot.to_dict()


# Actions that share the (rift_id, caller, payload) shape
_ACTIONS = {
    "pay": "pay",
    "cancel": "cancel",
    "proof": "upload_proof",
    "proof/additional": "submit_additional_proof",
    "review": "route_to_review",
    "review/approve": "approve_proof",
    "release": "release",
    "milestones/release": "release_milestone",
    "milestones/revision": "request_revision",
    "payout": "schedule_payout",
    "payout/confirm": "confirm_payout",
    "chargebacks": "record_chargeback",
    "processor-refunds": "record_processor_refund",
    "reconcile": "reconcile",
}


def _register_action(path: str, operation_name: str):
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
    router.add_api_route(f"/{{rift_id}}/{path}", endpoint, methods=["POST"], name=operation_name)


for _path, _operation in _ACTIONS.items():
    _register_action(_path, _operation)


@router.get("/{rift_id}/vault")
async def list_vault(rift_id: str, caller: Caller = Depends(get_caller), ops: RiftOperations = Depends(get_operations)):
    return {"rift_id": rift_id, "assets": ops.list_vault(rift_id, caller.user_id, caller.role)}


@vault_router.post("/assets/{asset_id}/reveal")
async def reveal_asset(asset_id: str, caller: Caller = Depends(get_caller), ops: RiftOperations = Depends(get_operations)):
    return await ops.reveal_asset(asset_id, caller.user_id, caller.role)


@vault_router.post("/assets/{asset_id}/scan")
async def record_scan_result(
    asset_id: str,
    payload: Dict[str, Any] = Body(...),
    caller: Caller = Depends(get_caller),
    ops: RiftOperations = Depends(get_operations),
):
    """Malware scanner callback"""
    return ops.record_scan_result(asset_id, caller.user_id, caller.role, payload.get("scan_status", ""))


@wallet_router.get("/{user_id}")
async def get_wallet(
    user_id: str,
    currency: str = "USD",
    caller: Caller = Depends(get_caller),
    ops: RiftOperations = Depends(get_operations),
):
    return ops.get_wallet(user_id, caller.user_id, caller.role, currency)
