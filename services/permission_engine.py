"""
Rift Permission Engine
======================

The single place where status-to-action eligibility is decided.

Every mutating rift operation, vault read and dispute action calls
``require``/``require_dispute`` (or ``allowed``) with the rift's stored
status; legacy statuses are aliased to their canonical status here and
nowhere else. Decisions are returned as ``PermissionDecision`` objects so
callers can log or display the reasoning without re-deriving it.

Roles:
- BUYER / SELLER: parties to the rift
- ADMIN: dispute resolution and proof review only, never release/cancel/pay
- SYSTEM: background jobs and processor callbacks
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Union

from models import ActorRole, DisputeStatus, RiftStatus
from services.legacy_status_mapper import LegacyStatusMapper
from utils.exception_handler import PermissionDenied

logger = logging.getLogger(__name__)


class RiftAction(Enum):
    """Actions gated on the rift status"""
    PAY = "pay"
    CANCEL = "cancel"
    UPLOAD_PROOF = "upload_proof"
    SUBMIT_ADDITIONAL_PROOF = "submit_additional_proof"
    ROUTE_TO_REVIEW = "route_to_review"
    APPROVE_PROOF = "approve_proof"
    RELEASE = "release"
    AUTO_RELEASE = "auto_release"
    RELEASE_MILESTONE = "release_milestone"
    REQUEST_REVISION = "request_revision"
    OPEN_DISPUTE = "open_dispute"
    ADD_DISPUTE_EVIDENCE = "add_dispute_evidence"
    RESOLVE_DISPUTE = "resolve_dispute"
    ACCESS_VAULT = "access_vault"
    REVEAL_ASSET = "reveal_asset"
    SCHEDULE_PAYOUT = "schedule_payout"
    CONFIRM_PAYOUT = "confirm_payout"
    RECORD_CHARGEBACK = "record_chargeback"
    RECORD_PROCESSOR_REFUND = "record_processor_refund"


class DisputeActionType(Enum):
    """Actions gated on the dispute sub-status"""
    ADD_EVIDENCE = "add_evidence"
    REQUEST_INFO = "request_info"
    START_REVIEW = "start_review"
    RESOLVE_BUYER = "resolve_buyer"
    RESOLVE_SELLER = "resolve_seller"
    REJECT = "reject"


@dataclass(frozen=True)
class PermissionDecision:
    """Outcome of a permission lookup; truthy when allowed"""
    allowed: bool
    status: str
    canonical_status: str
    role: str
    action: str
    reason: str

    def __bool__(self) -> bool:
        return self.allowed

    def to_dict(self) -> Dict[str, object]:
        return {
            "allowed": self.allowed,
            "status": self.status,
            "canonical_status": self.canonical_status,
            "role": self.role,
            "action": self.action,
            "reason": self.reason,
        }


A = RiftAction
R = ActorRole
S = RiftStatus

_VAULT_READ = frozenset({A.ACCESS_VAULT, A.REVEAL_ASSET})
_PROCESSOR_EVENTS = frozenset({A.RECORD_CHARGEBACK, A.RECORD_PROCESSOR_REFUND})
_BUYER_REVIEWING = frozenset({
    A.RELEASE, A.RELEASE_MILESTONE, A.REQUEST_REVISION, A.OPEN_DISPUTE, *_VAULT_READ,
})
_NONE: FrozenSet[RiftAction] = frozenset()

# Canonical status -> role -> allowed actions
PERMISSION_TABLE: Dict[RiftStatus, Dict[ActorRole, FrozenSet[RiftAction]]] = {
    S.DRAFT: {
        R.BUYER: frozenset({A.PAY, A.CANCEL}),
        R.SELLER: _VAULT_READ,
        R.ADMIN: _VAULT_READ,
        R.SYSTEM: _NONE,
    },
    S.FUNDED: {
        R.BUYER: frozenset({A.OPEN_DISPUTE, A.RELEASE_MILESTONE}),
        R.SELLER: frozenset({A.UPLOAD_PROOF, A.OPEN_DISPUTE, *_VAULT_READ}),
        R.ADMIN: _VAULT_READ,
        R.SYSTEM: _NONE,
    },
    S.PROOF_SUBMITTED: {
        R.BUYER: _BUYER_REVIEWING,
        R.SELLER: frozenset({A.SUBMIT_ADDITIONAL_PROOF, A.OPEN_DISPUTE, *_VAULT_READ}),
        R.ADMIN: frozenset({A.ROUTE_TO_REVIEW, *_VAULT_READ}),
        R.SYSTEM: frozenset({A.AUTO_RELEASE, A.ROUTE_TO_REVIEW}),
    },
    S.UNDER_REVIEW: {
        R.BUYER: _BUYER_REVIEWING,
        R.SELLER: frozenset({A.SUBMIT_ADDITIONAL_PROOF, A.OPEN_DISPUTE, *_VAULT_READ}),
        R.ADMIN: frozenset({A.APPROVE_PROOF, *_VAULT_READ}),
        R.SYSTEM: frozenset({A.AUTO_RELEASE}),
    },
    S.RELEASED: {
        R.BUYER: _VAULT_READ,
        R.SELLER: _VAULT_READ,
        R.ADMIN: _VAULT_READ,
        R.SYSTEM: frozenset({A.SCHEDULE_PAYOUT, *_PROCESSOR_EVENTS}),
    },
    S.PAYOUT_SCHEDULED: {
        R.BUYER: _VAULT_READ,
        R.SELLER: _VAULT_READ,
        R.ADMIN: _VAULT_READ,
        R.SYSTEM: frozenset({A.CONFIRM_PAYOUT, *_PROCESSOR_EVENTS}),
    },
    S.PAID_OUT: {
        R.BUYER: _VAULT_READ,
        R.SELLER: _VAULT_READ,
        R.ADMIN: _VAULT_READ,
        R.SYSTEM: _PROCESSOR_EVENTS,
    },
    S.DISPUTED: {
        R.BUYER: frozenset({A.ADD_DISPUTE_EVIDENCE}),
        R.SELLER: frozenset({A.ADD_DISPUTE_EVIDENCE, *_VAULT_READ}),
        R.ADMIN: frozenset({A.RESOLVE_DISPUTE, *_VAULT_READ}),
        R.SYSTEM: _NONE,
    },
    S.RESOLVED: {
        R.BUYER: _NONE,
        R.SELLER: _VAULT_READ,
        R.ADMIN: _VAULT_READ,
        R.SYSTEM: _NONE,
    },
    S.CANCELED: {
        R.BUYER: _NONE,
        R.SELLER: _VAULT_READ,
        R.ADMIN: _VAULT_READ,
        R.SYSTEM: _NONE,
    },
}

# Statuses in which the buyer may see delivery proof
PROOF_VISIBLE_STATUSES: FrozenSet[RiftStatus] = frozenset({
    S.PROOF_SUBMITTED, S.UNDER_REVIEW, S.RELEASED, S.PAYOUT_SCHEDULED, S.PAID_OUT,
})

D = DisputeActionType
_ADMIN_RESOLUTIONS = frozenset({D.RESOLVE_BUYER, D.RESOLVE_SELLER, D.REJECT})
_PARTY_EVIDENCE = frozenset({D.ADD_EVIDENCE})

DISPUTE_PERMISSION_TABLE: Dict[DisputeStatus, Dict[ActorRole, FrozenSet[DisputeActionType]]] = {
    DisputeStatus.SUBMITTED: {
        R.BUYER: _PARTY_EVIDENCE,
        R.SELLER: _PARTY_EVIDENCE,
        R.ADMIN: frozenset({D.REQUEST_INFO, D.START_REVIEW, *_ADMIN_RESOLUTIONS}),
    },
    DisputeStatus.NEEDS_INFO: {
        R.BUYER: _PARTY_EVIDENCE,
        R.SELLER: _PARTY_EVIDENCE,
        R.ADMIN: frozenset({D.START_REVIEW, *_ADMIN_RESOLUTIONS}),
    },
    DisputeStatus.UNDER_REVIEW: {
        R.BUYER: _PARTY_EVIDENCE,
        R.SELLER: _PARTY_EVIDENCE,
        R.ADMIN: frozenset({D.REQUEST_INFO, *_ADMIN_RESOLUTIONS}),
    },
}

ACTIVE_DISPUTE_STATUSES: FrozenSet[DisputeStatus] = frozenset(DISPUTE_PERMISSION_TABLE)


def _parse_role(role: Union[str, ActorRole]) -> ActorRole:
    if isinstance(role, ActorRole):
        return role
    return ActorRole(str(role).strip().upper())


def _name(value) -> str:
    return value.value if isinstance(value, Enum) else str(value)


def allowed(
    status: Union[str, RiftStatus], role: Union[str, ActorRole], action: Union[str, RiftAction]
) -> PermissionDecision:
    """Decide whether ``role`` may perform ``action`` on a rift in ``status``"""
    action = action if isinstance(action, RiftAction) else RiftAction(action)
    canonical = LegacyStatusMapper.to_canonical(status)
    status_name = _name(LegacyStatusMapper.parse(status))
    try:
        parsed_role = _parse_role(role)
    except ValueError:
        return PermissionDecision(
            False, status_name, canonical.value, _name(role), action.value, f"unknown role {role!r}"
        )

    granted = action in PERMISSION_TABLE[canonical].get(parsed_role, _NONE)
    if granted:
        reason = "allowed"
    elif LegacyStatusMapper.is_terminal_status(canonical):
        reason = f"rift is {canonical.value}; no further {parsed_role.value.lower()} actions"
    elif canonical == RiftStatus.DISPUTED:
        reason = "rift is frozen while a dispute is open"
    else:
        reason = f"{action.value} is not available to {parsed_role.value} in {canonical.value}"

    decision = PermissionDecision(granted, status_name, canonical.value, parsed_role.value, action.value, reason)
    logger.debug(f"Permission decision: {decision.to_dict()}")
    return decision


def allowed_actions(status: Union[str, RiftStatus], role: Union[str, ActorRole]) -> FrozenSet[RiftAction]:
    """Every action ``role`` may take in ``status`` (for UI enumeration)"""
    canonical = LegacyStatusMapper.to_canonical(status)
    return PERMISSION_TABLE[canonical].get(_parse_role(role), _NONE)


def require(
    status: Union[str, RiftStatus], role: Union[str, ActorRole], action: Union[str, RiftAction]
) -> PermissionDecision:
    """Like ``allowed`` but raises ``PermissionDenied`` on refusal"""
    decision = allowed(status, role, action)
    if not decision:
        raise PermissionDenied(decision.status, decision.role, decision.action, decision.reason)
    return decision


def is_proof_visible(status: Union[str, RiftStatus]) -> bool:
    return LegacyStatusMapper.to_canonical(status) in PROOF_VISIBLE_STATUSES


def dispute_allowed(
    dispute_status: Union[str, DisputeStatus],
    role: Union[str, ActorRole],
    action: Union[str, DisputeActionType],
) -> PermissionDecision:
    """Decide whether ``role`` may perform a dispute action in ``dispute_status``"""
    status = dispute_status if isinstance(dispute_status, DisputeStatus) else DisputeStatus(dispute_status)
    action = action if isinstance(action, DisputeActionType) else DisputeActionType(action)
    try:
        parsed_role = _parse_role(role)
    except ValueError:
        return PermissionDecision(False, status.value, status.value, _name(role), action.value, "unknown role")

    granted = action in DISPUTE_PERMISSION_TABLE.get(status, {}).get(parsed_role, frozenset())
    if granted:
        reason = "allowed"
    elif status not in ACTIVE_DISPUTE_STATUSES:
        reason = f"dispute is closed ({status.value})"
    else:
        reason = f"{action.value} is not available to {parsed_role.value} while dispute is {status.value}"
    return PermissionDecision(granted, status.value, status.value, parsed_role.value, action.value, reason)


def require_dispute(
    dispute_status: Union[str, DisputeStatus],
    role: Union[str, ActorRole],
    action: Union[str, DisputeActionType],
) -> PermissionDecision:
    decision = dispute_allowed(dispute_status, role, action)
    if not decision:
        raise PermissionDenied(decision.status, decision.role, decision.action, decision.reason)
    return decision


def is_active_dispute(dispute_status: Union[str, DisputeStatus]) -> bool:
    status = dispute_status if isinstance(dispute_status, DisputeStatus) else DisputeStatus(dispute_status)
    return status in ACTIVE_DISPUTE_STATUSES


def role_matches_party(rift, caller_id: str, role: Union[str, ActorRole]) -> Optional[str]:
    """
    Return a refusal reason when a BUYER/SELLER caller is not that party of
    the rift, else None. ADMIN and SYSTEM act on any rift.
    """
    parsed_role = _parse_role(role)
    if parsed_role == ActorRole.BUYER and caller_id != rift.buyer_id:
        return "caller is not the buyer of this rift"
    if parsed_role == ActorRole.SELLER and caller_id != rift.seller_id:
        return "caller is not the seller of this rift"
    return None
