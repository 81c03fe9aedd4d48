"""
Dispute Workflow Service
Submission gates, evidence, admin actions and the admin queue.

Opening a dispute freezes the rift (DISPUTED) and remembers where it was.
Admin resolution either refunds the buyer (rift RESOLVED, terminal) or puts
the rift back where it was so the normal release path applies again. Every
admin action is written as an immutable ``DisputeAction`` row.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from config import Config
from database import managed_session
from models import (
    ActorRole, Dispute, DisputeAction, DisputeEvidence, DisputePriority, DisputeReason, DisputeStatus,
    EvidenceType, Rift, RiftItemType, RiftStatus,
)
from services import permission_engine
from services.api_adapter_retry import call_with_retry
from services.auto_triage import TriageDecision, triage_dispute
from services.legacy_status_mapper import LegacyStatusMapper
from services.permission_engine import ACTIVE_DISPUTE_STATUSES, DisputeActionType, RiftAction
from services.rift_events import RiftEventType, record_event
from services.rift_state_machine import (
    REVIEW_STATUSES, RiftSnapshot, RiftStateMachine, apply_transition, parse_role, review_window_end,
)
from services.vault_service import decode_file_bytes
from services.wallet_service import WalletService
from utils.atomic_transactions import atomic_transaction, locked_rift_operation
from utils.exception_handler import NotFound, PermissionDenied, ValidationFailed
from utils.fee_calculator import FeeCalculator
from utils.helpers import generate_id, to_decimal, utc_now

logger = logging.getLogger(__name__)

FILE_EVIDENCE_TYPES = frozenset({EvidenceType.IMAGE, EvidenceType.PDF, EvidenceType.FILE})
TEXT_EVIDENCE_TYPES = frozenset({EvidenceType.TEXT, EvidenceType.LINK})

# Reasons where the opener must show something, not just describe it
EVIDENCE_REQUIRED_REASONS = frozenset({DisputeReason.NOT_RECEIVED, DisputeReason.NOT_AS_DESCRIBED})

PRIORITY_RANK = {
    DisputePriority.HIGH.value: 0,
    DisputePriority.NORMAL.value: 1,
    DisputePriority.LOW.value: 2,
}


@dataclass
class EligibilityResult:
    urgent: bool = False
    cooldown_warning: bool = False
    notes: List[str] = field(default_factory=list)


@dataclass
class PreparedEvidence:
    evidence_type: EvidenceType
    text_content: Optional[str] = None
    asset_ref: Optional[str] = None
    file_name: Optional[str] = None


def check_eligibility(rift: Rift, reason: DisputeReason, now: Optional[datetime] = None) -> EligibilityResult:
    """
    Item-type specific eligibility.

    Raises ``ValidationFailed`` for a ticket whose event already happened;
    otherwise returns flags for the admin queue.
    """
    now = now or utc_now()
    result = EligibilityResult()

    if rift.item_type == RiftItemType.TICKETS.value and rift.event_date_tz is not None:
        if now >= rift.event_date_tz:
            raise ValidationFailed("event_date", "the event has already taken place; ticket disputes are closed")
        if rift.event_date_tz - now <= timedelta(hours=Config.TICKET_URGENT_WINDOW_HOURS):
            result.urgent = True
            result.notes.append(f"Event starts within {Config.TICKET_URGENT_WINDOW_HOURS}h")

    if rift.item_type == RiftItemType.DIGITAL.value and reason == DisputeReason.NOT_RECEIVED:
        delivery = rift.digital_delivery
        if delivery is not None and now - delivery.uploaded_at < timedelta(hours=Config.DIGITAL_DISPUTE_COOLDOWN_HOURS):
            result.cooldown_warning = True
            result.notes.append(
                f"Delivery was uploaded less than {Config.DIGITAL_DISPUTE_COOLDOWN_HOURS}h ago; buyer may not have checked it"
            )

    return result


def evidence_sufficient(reason: DisputeReason, evidence: List[PreparedEvidence]) -> Tuple[bool, str]:
    if reason not in EVIDENCE_REQUIRED_REASONS:
        return True, "no evidence required for this reason"
    files = sum(1 for e in evidence if e.evidence_type in FILE_EVIDENCE_TYPES)
    texts = sum(1 for e in evidence if e.evidence_type in TEXT_EVIDENCE_TYPES)
    if files >= Config.DISPUTE_MIN_FILE_EVIDENCE or texts >= Config.DISPUTE_MIN_TEXT_EVIDENCE:
        return True, "sufficient"
    return False, (
        f"provide at least {Config.DISPUTE_MIN_FILE_EVIDENCE} file or "
        f"{Config.DISPUTE_MIN_TEXT_EVIDENCE} text/link evidence items"
    )


def dispute_to_dict(dispute: Dispute, include_evidence: bool = True) -> Dict[str, Any]:
    data = {
        "id": dispute.id,
        "rift_id": dispute.rift_id,
        "opened_by": dispute.opened_by,
        "opened_by_role": dispute.opened_by_role,
        "status": dispute.status,
        "reason": dispute.reason,
        "summary": dispute.summary,
        "priority": dispute.priority,
        "flags": dispute.flags or {},
        "auto_triage": dispute.auto_triage or {},
        "category_snapshot": dispute.category_snapshot or {},
        "submitted_at": dispute.submitted_at.isoformat() if dispute.submitted_at else None,
        "resolved_at": dispute.resolved_at.isoformat() if dispute.resolved_at else None,
    }
    if include_evidence:
        data["evidence"] = [
            {
                "type": e.evidence_type,
                "submitted_by": e.submitted_by,
                "text": e.text_content,
                "asset_ref": e.asset_ref,
                "file_name": e.file_name,
                "created_at": e.created_at.isoformat() if e.created_at else None,
            }
            for e in dispute.evidence
        ]
        data["actions"] = [
            {
                "action_type": a.action_type,
                "actor_id": a.actor_id,
                "note": a.note,
                "created_at": a.created_at.isoformat() if a.created_at else None,
            }
            for a in dispute.actions
        ]
    return data


def _active_dispute(rift: Rift) -> Optional[Dispute]:
    return next((d for d in reversed(rift.disputes) if permission_engine.is_active_dispute(d.status)), None)


class DisputeService:
    """Dispute sub-workflow on top of the rift state machine"""

    def __init__(self, state_machine: RiftStateMachine):
        self.state_machine = state_machine
        self.blob_store = state_machine.vault.blob_store

    async def _prepare_evidence(self, rift_id: str, caller_id: str, items: Any) -> List[PreparedEvidence]:
        if items is None:
            return []
        if not isinstance(items, list):
            raise ValidationFailed("evidence", "must be a list")
        prepared = []
        for index, item in enumerate(items):
            try:
                evidence_type = EvidenceType(str(item.get("type", "")).lower())
            except (AttributeError, ValueError):
                raise ValidationFailed(f"evidence[{index}].type", "must be one of image, pdf, file, text, link")

            if evidence_type in FILE_EVIDENCE_TYPES:
                data = decode_file_bytes(item, index, field_prefix="evidence")
                if not data:
                    raise ValidationFailed(f"evidence[{index}]", "file is empty")
                file_name = item.get("file_name") or f"evidence.{evidence_type.value}"
                asset_ref = await call_with_retry(
                    self.blob_store.service_name,
                    self.blob_store.put_asset,
                    data,
                    {"rift_id": rift_id, "uploader_id": caller_id, "file_name": file_name,
                     "content_type": item.get("content_type"), "purpose": "dispute_evidence"},
                )
                prepared.append(PreparedEvidence(evidence_type, asset_ref=asset_ref, file_name=file_name))
            else:
                text = str(item.get("text") or "").strip()
                if not text:
                    raise ValidationFailed(f"evidence[{index}].text", "evidence text is required")
                if evidence_type == EvidenceType.LINK and not text.lower().startswith(("http://", "https://")):
                    raise ValidationFailed(f"evidence[{index}].text", "link must start with http:// or https://")
                prepared.append(PreparedEvidence(evidence_type, text_content=text))
        return prepared

    @staticmethod
    def _store_evidence(session, dispute_id: str, submitted_by: str, evidence: List[PreparedEvidence]) -> None:
        for item in evidence:
            session.add(DisputeEvidence(
                dispute_id=dispute_id,
                evidence_type=item.evidence_type.value,
                submitted_by=submitted_by,
                text_content=item.text_content,
                asset_ref=item.asset_ref,
                file_name=item.file_name,
            ))

    # ------------------------------------------------------------------
    # Party operations
    # ------------------------------------------------------------------

    async def open_dispute(self, rift_id: str, caller_id: str, caller_role, payload: Dict[str, Any]) -> RiftSnapshot:
        """
        Validate every submission gate, run auto-triage and freeze the rift.

        Gate order: reason, item-type eligibility, sworn declaration, summary
        length, evidence sufficiency.
        """
        payload = payload or {}
        role = parse_role(caller_role)

        async with self.state_machine.hold(rift_id):
            # Gates that only read
            with managed_session() as session:
                rift = session.get(Rift, rift_id)
                if rift is None:
                    raise NotFound("rift", rift_id)
                self.state_machine.authorize(rift, caller_id, role, RiftAction.OPEN_DISPUTE)

                try:
                    reason = DisputeReason(str(payload.get("reason", "")).lower())
                except ValueError:
                    raise ValidationFailed("reason", f"unknown dispute reason {payload.get('reason')!r}")

                eligibility = check_eligibility(rift, reason)

            declaration = str(payload.get("declaration_text") or "").strip()
            if not payload.get("sworn_declaration", False) or declaration != Config.DISPUTE_DECLARATION_TEXT:
                raise ValidationFailed(
                    "declaration_text", f"type {Config.DISPUTE_DECLARATION_TEXT!r} to confirm the declaration"
                )

            summary = str(payload.get("summary") or "").strip()
            if len(summary) < Config.DISPUTE_MIN_SUMMARY_LENGTH:
                raise ValidationFailed(
                    "summary",
                    f"summary must be at least {Config.DISPUTE_MIN_SUMMARY_LENGTH} characters (got {len(summary)})",
                )

            raw_evidence = payload.get("evidence") or []
            self._precheck_evidence_counts(reason, raw_evidence)
            evidence = await self._prepare_evidence(rift_id, caller_id, raw_evidence)
            ok, message = evidence_sufficient(reason, evidence)
            if not ok:
                raise ValidationFailed("evidence", message)

            with atomic_transaction() as session:
                with locked_rift_operation(rift_id, session) as rift:
                    self.state_machine.authorize(rift, caller_id, role, RiftAction.OPEN_DISPUTE)
                    if _active_dispute(rift) is not None:
                        raise ValidationFailed("dispute", "rift already has an active dispute")

                    now = utc_now()
                    triage = triage_dispute(session, rift, reason.value, caller_id, now)
                    if triage.decision == TriageDecision.AUTO_REJECT:
                        priority = DisputePriority.LOW
                    elif eligibility.urgent:
                        priority = DisputePriority.HIGH
                    else:
                        priority = DisputePriority.NORMAL

                    previous = LegacyStatusMapper.to_canonical(rift.status)
                    dispute = Dispute(
                        id=generate_id("DP"),
                        rift_id=rift_id,
                        opened_by=caller_id,
                        opened_by_role=role.value,
                        status=DisputeStatus.SUBMITTED.value,
                        reason=reason.value,
                        summary=summary,
                        sworn_declaration=True,
                        declaration_text=declaration,
                        category_snapshot={
                            "item_type": rift.item_type,
                            "subtotal": str(rift.subtotal),
                            "currency": rift.currency,
                            "rift_status": rift.status,
                        },
                        priority=priority.value,
                        flags={
                            "urgent": eligibility.urgent,
                            "cooldown_warning": eligibility.cooldown_warning,
                            "high_abuse_risk": triage.high_abuse_risk,
                            "notes": eligibility.notes,
                        },
                        auto_triage=triage.to_dict(),
                        submitted_at=now,
                    )
                    rift.disputes.append(dispute)
                    session.flush()
                    self._store_evidence(session, dispute.id, caller_id, evidence)

                    apply_transition(session, rift, RiftStatus.DISPUTED, caller_id, role, fields={
                        "status_before_dispute": previous.value,
                    })
                    record_event(session, rift_id, RiftEventType.DISPUTE_OPENED, caller_id, role, {
                        "dispute_id": dispute.id,
                        "reason": reason.value,
                        "priority": priority.value,
                        "triage": triage.decision.value,
                    })
                    session.flush()
                    snapshot = RiftSnapshot.from_rift(rift)

        logger.info(
            f"⚖️ DISPUTE_OPENED: {snapshot.active_dispute['id'] if snapshot.active_dispute else '?'} "
            f"on rift {rift_id} by {role.value}:{caller_id} reason={reason.value} priority={priority.value}"
        )
        return snapshot

    @staticmethod
    def _precheck_evidence_counts(reason: DisputeReason, raw_evidence: Any) -> None:
        """Reject an insufficient submission before uploading anything"""
        if not isinstance(raw_evidence, list):
            raise ValidationFailed("evidence", "must be a list")
        shaped = []
        for item in raw_evidence:
            try:
                shaped.append(PreparedEvidence(EvidenceType(str(item.get("type", "")).lower())))
            except (AttributeError, ValueError):
                continue
        ok, message = evidence_sufficient(reason, shaped)
        if not ok:
            raise ValidationFailed("evidence", message)

    async def add_evidence(self, rift_id: str, caller_id: str, caller_role, payload: Dict[str, Any]) -> RiftSnapshot:
        """Party adds evidence; answering a needs_info request moves the dispute to under_review"""
        role = parse_role(caller_role)
        async with self.state_machine.hold(rift_id):
            self._load_active(rift_id, caller_id, role, DisputeActionType.ADD_EVIDENCE)
            evidence = await self._prepare_evidence(rift_id, caller_id, (payload or {}).get("evidence"))
            if not evidence:
                raise ValidationFailed("evidence", "at least one evidence item is required")

            with atomic_transaction() as session:
                with locked_rift_operation(rift_id, session) as rift:
                    dispute = self._authorize_active(rift, caller_id, role, DisputeActionType.ADD_EVIDENCE)
                    permission_engine.require(rift.status, role, RiftAction.ADD_DISPUTE_EVIDENCE)
                    self._store_evidence(session, dispute.id, caller_id, evidence)
                    if dispute.status == DisputeStatus.NEEDS_INFO.value:
                        dispute.status = DisputeStatus.UNDER_REVIEW.value
                    session.flush()
                    logger.info(f"📎 Evidence added to dispute {dispute.id} by {role.value}:{caller_id} ({len(evidence)})")
                    return RiftSnapshot.from_rift(rift)

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    async def request_info(self, rift_id: str, caller_id: str, caller_role, payload: Optional[Dict] = None):
        return await self._admin_status_change(
            rift_id, caller_id, caller_role, payload, DisputeActionType.REQUEST_INFO, DisputeStatus.NEEDS_INFO
        )

    async def start_review(self, rift_id: str, caller_id: str, caller_role, payload: Optional[Dict] = None):
        return await self._admin_status_change(
            rift_id, caller_id, caller_role, payload, DisputeActionType.START_REVIEW, DisputeStatus.UNDER_REVIEW
        )

    async def _admin_status_change(self, rift_id, caller_id, caller_role, payload, action, new_status):
        role = parse_role(caller_role)
        async with self.state_machine.hold(rift_id):
            with atomic_transaction() as session:
                with locked_rift_operation(rift_id, session) as rift:
                    dispute = self._authorize_active(rift, caller_id, role, action)
                    dispute.status = new_status.value
                    self._record_action(session, dispute, caller_id, role, action, payload)
                    session.flush()
                    logger.info(f"⚖️ Dispute {dispute.id} → {new_status.value} by admin {caller_id}")
                    return RiftSnapshot.from_rift(rift)

    async def resolve_seller(self, rift_id: str, caller_id: str, caller_role, payload: Optional[Dict] = None):
        """Seller wins: rift returns to its pre-dispute status"""
        return await self._restore(
            rift_id, caller_id, caller_role, payload,
            DisputeActionType.RESOLVE_SELLER, DisputeStatus.RESOLVED_SELLER, outcome="seller",
        )

    async def reject(self, rift_id: str, caller_id: str, caller_role, payload: Optional[Dict] = None):
        """Dispute dismissed without a finding; rift returns to its pre-dispute status"""
        return await self._restore(
            rift_id, caller_id, caller_role, payload,
            DisputeActionType.REJECT, DisputeStatus.REJECTED, outcome=None,
        )

    async def _restore(self, rift_id, caller_id, caller_role, payload, action, dispute_status, outcome):
        role = parse_role(caller_role)
        async with self.state_machine.hold(rift_id):
            with atomic_transaction() as session:
                with locked_rift_operation(rift_id, session) as rift:
                    dispute = self._authorize_active(rift, caller_id, role, action)
                    permission_engine.require(rift.status, role, RiftAction.RESOLVE_DISPUTE)

                    now = utc_now()
                    restored = LegacyStatusMapper.to_canonical(rift.status_before_dispute or RiftStatus.FUNDED.value)
                    fields: Dict[str, Any] = {"status_before_dispute": None, "resolution_outcome": outcome}
                    if restored in REVIEW_STATUSES:
                        window_end = review_window_end(rift, now)
                        fields["review_window_ends_at"] = window_end
                        RiftStateMachine._start_milestone_window(rift, window_end)

                    dispute.status = dispute_status.value
                    dispute.resolved_at = now
                    self._record_action(session, dispute, caller_id, role, action, payload)
                    apply_transition(session, rift, restored, caller_id, role, fields=fields,
                                     payload={"dispute_id": dispute.id, "resolution": dispute_status.value})
                    record_event(session, rift_id, RiftEventType.DISPUTE_RESOLVED, caller_id, role,
                                 {"dispute_id": dispute.id, "resolution": dispute_status.value})
                    session.flush()
                    logger.info(
                        f"⚖️ DISPUTE_RESOLVED: {dispute.id} {dispute_status.value}; rift {rift_id} back to {restored.value}"
                    )
                    return RiftSnapshot.from_rift(rift)

    async def resolve_buyer(self, rift_id: str, caller_id: str, caller_role, payload: Optional[Dict] = None):
        """Buyer wins: refund of the unreleased subtotal plus buyer fee, rift RESOLVED"""
        role = parse_role(caller_role)
        action = DisputeActionType.RESOLVE_BUYER
        async with self.state_machine.hold(rift_id):
            with atomic_transaction() as session:
                with locked_rift_operation(rift_id, session) as rift:
                    dispute = self._authorize_active(rift, caller_id, role, action)
                    permission_engine.require(rift.status, role, RiftAction.RESOLVE_DISPUTE)

                    released = sum(
                        (to_decimal(m.amount) for m in rift.milestones if m.released), Decimal("0")
                    )
                    refund = FeeCalculator.calculate_refund_amount(rift.subtotal, rift.buyer_fee, released)
                    WalletService.credit_refund(session, rift.buyer_id, refund, rift.currency, rift_id)

                    now = utc_now()
                    dispute.status = DisputeStatus.RESOLVED_BUYER.value
                    dispute.resolved_at = now
                    self._record_action(session, dispute, caller_id, role, action, payload)
                    apply_transition(session, rift, RiftStatus.RESOLVED, caller_id, role, fields={
                        "status_before_dispute": None,
                        "resolution_outcome": "buyer",
                        "review_window_ends_at": None,
                    }, payload={"dispute_id": dispute.id, "refund": str(refund)})
                    record_event(session, rift_id, RiftEventType.DISPUTE_RESOLVED, caller_id, role, {
                        "dispute_id": dispute.id,
                        "resolution": DisputeStatus.RESOLVED_BUYER.value,
                        "refund": str(refund),
                    })
                    session.flush()
                    logger.info(
                        f"⚖️ DISPUTE_RESOLVED: {dispute.id} for buyer; refunded {refund} {rift.currency} "
                        f"to {rift.buyer_id}"
                    )
                    return RiftSnapshot.from_rift(rift)

    def admin_queue(self, caller_id: str, caller_role, limit: int = 100) -> List[Dict[str, Any]]:
        """Active disputes ordered by priority then age"""
        role = parse_role(caller_role)
        if role != ActorRole.ADMIN:
            raise PermissionDenied("-", role.value, "admin_queue", "admin queue is restricted to admins")
        with managed_session() as session:
            disputes = (
                session.query(Dispute)
                .filter(Dispute.status.in_([s.value for s in ACTIVE_DISPUTE_STATUSES]))
                .all()
            )
            disputes.sort(key=lambda d: (PRIORITY_RANK.get(d.priority, 1), d.submitted_at))
            queue = []
            for dispute in disputes[:limit]:
                item = dispute_to_dict(dispute, include_evidence=False)
                item["triage_rationale"] = (dispute.auto_triage or {}).get("rationale")
                item["evidence_count"] = len(dispute.evidence)
                queue.append(item)
            return queue

    def get_dispute(self, rift_id: str, caller_id: str, caller_role) -> Dict[str, Any]:
        """Latest dispute of a rift, visible to its parties and admins"""
        role = parse_role(caller_role)
        with managed_session() as session:
            rift = session.get(Rift, rift_id)
            if rift is None:
                raise NotFound("rift", rift_id)
            reason = permission_engine.role_matches_party(rift, caller_id, role)
            if reason:
                raise PermissionDenied(rift.status, role.value, "view_dispute", reason)
            if not rift.disputes:
                raise NotFound("dispute", rift_id)
            return dispute_to_dict(rift.disputes[-1])

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_active(self, rift_id: str, caller_id: str, role: ActorRole, action: DisputeActionType) -> None:
        with managed_session() as session:
            rift = session.get(Rift, rift_id)
            if rift is None:
                raise NotFound("rift", rift_id)
            self._authorize_active(rift, caller_id, role, action)

    @staticmethod
    def _authorize_active(rift: Rift, caller_id: str, role: ActorRole, action: DisputeActionType) -> Dispute:
        reason = permission_engine.role_matches_party(rift, caller_id, role)
        if reason:
            raise PermissionDenied(rift.status, role.value, action.value, reason)
        dispute = _active_dispute(rift)
        if dispute is None:
            raise NotFound("active dispute", rift.id)
        permission_engine.require_dispute(dispute.status, role, action)
        return dispute

    @staticmethod
    def _record_action(session, dispute: Dispute, actor_id: str, role: ActorRole, action: DisputeActionType,
                       payload: Optional[Dict]) -> None:
        session.add(DisputeAction(
            dispute_id=dispute.id,
            actor_id=actor_id,
            actor_role=role.value,
            action_type=action.value,
            note=(payload or {}).get("note"),
        ))
