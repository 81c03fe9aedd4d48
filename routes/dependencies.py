"""Shared FastAPI dependencies: caller identity and the operations facade"""

import logging
from dataclasses import dataclass

from fastapi import Header, HTTPException, Request

from services.rift_operations import RiftOperations

logger = logging.getLogger(__name__)

VALID_ROLES = ("BUYER", "SELLER", "ADMIN", "SYSTEM")


@dataclass(frozen=True)
class Caller:
    user_id: str
    role: str


def get_caller(
    x_user_id: str = Header(None),
    x_user_role: str = Header(None),
) -> Caller:
    """Identity is established upstream and forwarded as headers"""
    if not x_user_id or not x_user_role:
        logger.warning("Request rejected: missing X-User-Id / X-User-Role headers")
        raise HTTPException(status_code=401, detail="Missing caller identity headers")
    role = x_user_role.strip().upper()
    if role not in VALID_ROLES:
        raise HTTPException(status_code=401, detail=f"Unknown caller role {x_user_role!r}")
    return Caller(user_id=x_user_id.strip(), role=role)


def get_operations(request: Request) -> RiftOperations:
    return request.app.state.operations
