"""
Rift State Machine with Atomic Operations
Lifecycle transitions and the fund-moving side effects that go with them.

Every operation follows the same shape:
1. take the in-process per-rift lock
2. inside one ``atomic_transaction``: lock the row, check the caller against
   the permission engine, validate the transition, write the new status with
   a version check, write ledger entries and the rift event
3. external calls (charge, payout, blob upload) happen outside the database
   unit, before or between units, never while rows are locked

Unknown-outcome external calls leave the rift in its previous status with
``reconciliation_state=needs_reconciliation``; the reconciliation job repeats
the call with the same idempotency key.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from config import Config
from database import managed_session
from models import (
    ActorRole, LedgerEntryType, Milestone, PendingOperation, ReconciliationState, Rift, RiftItemType,
    RiftStatus,
)
from services import permission_engine
from services.api_adapter_retry import call_with_retry
from services.external_services import PaymentProcessor, PayoutStatus
from services.legacy_status_mapper import LegacyStatusMapper
from services.permission_engine import RiftAction
from services.rift_events import CLIENT_REPORTABLE_EVENTS, RiftEventType, record_event
from services.vault_service import VaultService
from services.wallet_service import WalletService
from utils.atomic_transactions import atomic_transaction, locked_rift_operation
from utils.exception_handler import (
    AlreadyProcessed, ConcurrentModification, ExternalServiceError, InvalidTransition, NotFound,
    PermissionDenied, RiftError, ValidationFailed,
)
from utils.fee_calculator import FeeCalculator
from utils.helpers import ensure_naive_datetime, generate_id, quantize_money, to_decimal, utc_now
from utils.optimistic_locking import OptimisticLockManager
from utils.rift_locks import RiftLockRegistry, rift_locks

logger = logging.getLogger(__name__)

SYSTEM_ACTOR_ID = "system"

# Funds already left escrow; a second release is a no-op
RELEASED_STATUSES = frozenset({RiftStatus.RELEASED, RiftStatus.PAYOUT_SCHEDULED, RiftStatus.PAID_OUT})
REVIEW_STATUSES = frozenset({RiftStatus.PROOF_SUBMITTED, RiftStatus.UNDER_REVIEW})


class RiftStateValidator:
    """Validates rift state transitions and prevents invalid changes"""

    # Valid state transition map (canonical statuses only)
    VALID_TRANSITIONS: Dict[RiftStatus, Set[RiftStatus]] = {
        RiftStatus.DRAFT: {RiftStatus.FUNDED, RiftStatus.CANCELED},
        RiftStatus.FUNDED: {RiftStatus.PROOF_SUBMITTED, RiftStatus.DISPUTED},
        RiftStatus.PROOF_SUBMITTED: {RiftStatus.UNDER_REVIEW, RiftStatus.RELEASED, RiftStatus.DISPUTED},
        RiftStatus.UNDER_REVIEW: {RiftStatus.PROOF_SUBMITTED, RiftStatus.RELEASED, RiftStatus.DISPUTED},
        RiftStatus.RELEASED: {RiftStatus.PAYOUT_SCHEDULED},
        RiftStatus.PAYOUT_SCHEDULED: {RiftStatus.PAID_OUT},
        # Dispute resolution: refund to buyer, or back to where the rift was
        RiftStatus.DISPUTED: {
            RiftStatus.RESOLVED,
            RiftStatus.FUNDED,
            RiftStatus.PROOF_SUBMITTED,
            RiftStatus.UNDER_REVIEW,
        },
        # Terminal states (no transitions allowed)
        RiftStatus.RESOLVED: set(),
        RiftStatus.PAID_OUT: set(),
        RiftStatus.CANCELED: set(),
    }

    # Only reachable by releasing the last milestone, never by a plain release
    MILESTONE_COMPLETION_TRANSITIONS: Dict[RiftStatus, Set[RiftStatus]] = {
        RiftStatus.FUNDED: {RiftStatus.RELEASED},
    }

    @classmethod
    def is_valid_transition(
        cls,
        current_status: Union[str, RiftStatus],
        new_status: Union[str, RiftStatus],
        milestone_completion: bool = False,
    ) -> bool:
        """Check a transition; legacy current statuses are read as their canonical alias"""
        current = LegacyStatusMapper.to_canonical(current_status)
        target = LegacyStatusMapper.parse(new_status)
        if target not in LegacyStatusMapper.CANONICAL_STATUSES:
            return False
        if target in cls.VALID_TRANSITIONS.get(current, set()):
            return True
        return milestone_completion and target in cls.MILESTONE_COMPLETION_TRANSITIONS.get(current, set())

    @classmethod
    def get_valid_transitions(cls, current_status: Union[str, RiftStatus]) -> Set[RiftStatus]:
        return cls.VALID_TRANSITIONS.get(LegacyStatusMapper.to_canonical(current_status), set())

    @classmethod
    def is_terminal_state(cls, status: Union[str, RiftStatus]) -> bool:
        return not cls.get_valid_transitions(status)

    @classmethod
    def validate(
        cls,
        current_status: Union[str, RiftStatus],
        new_status: Union[str, RiftStatus],
        milestone_completion: bool = False,
    ) -> None:
        if not cls.is_valid_transition(current_status, new_status, milestone_completion):
            current = LegacyStatusMapper.parse(current_status).value
            target = LegacyStatusMapper.parse(new_status).value
            logger.warning(f"🚫 Invalid rift transition {current} -> {target}")
            raise InvalidTransition(current, target)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def milestone_to_dict(milestone: Milestone) -> Dict[str, Any]:
    return {
        "index": milestone.index,
        "title": milestone.title,
        "amount": str(milestone.amount),
        "released": milestone.released,
        "release_date": _iso(milestone.release_date),
        "review_window_ends_at": _iso(milestone.review_window_ends_at),
        "revision_requests": milestone.revision_requests,
        "revision_limit": milestone.revision_limit,
    }


@dataclass
class RiftSnapshot:
    """Read-only view of a rift returned by every operation"""
    id: str
    rift_number: int
    status: str
    canonical_status: str
    item_type: str
    currency: str
    subtotal: Decimal
    buyer_fee: Decimal
    seller_fee_rate: Decimal
    buyer_id: str
    seller_id: str
    version: int
    allows_partial_release: bool
    title: Optional[str] = None
    event_date_tz: Optional[datetime] = None
    charge_id: Optional[str] = None
    payout_id: Optional[str] = None
    review_window_ends_at: Optional[datetime] = None
    funded_at: Optional[datetime] = None
    proof_submitted_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    payout_scheduled_at: Optional[datetime] = None
    paid_out_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    resolution_outcome: Optional[str] = None
    reconciliation_state: str = ReconciliationState.NONE.value
    pending_operation: Optional[str] = None
    last_error: Optional[str] = None
    milestones: List[Dict[str, Any]] = field(default_factory=list)
    active_dispute: Optional[Dict[str, Any]] = None

    @classmethod
    def from_rift(cls, rift: Rift) -> "RiftSnapshot":
        """Build from a rift still attached to its session"""
        active = next(
            (d for d in reversed(rift.disputes) if permission_engine.is_active_dispute(d.status)), None
        )
        return cls(
            id=rift.id,
            rift_number=rift.rift_number,
            status=rift.status,
            canonical_status=LegacyStatusMapper.to_canonical(rift.status).value,
            item_type=rift.item_type,
            currency=rift.currency,
            subtotal=to_decimal(rift.subtotal),
            buyer_fee=to_decimal(rift.buyer_fee),
            seller_fee_rate=to_decimal(rift.seller_fee_rate),
            buyer_id=rift.buyer_id,
            seller_id=rift.seller_id,
            version=rift.version,
            allows_partial_release=bool(rift.allows_partial_release),
            title=rift.title,
            event_date_tz=rift.event_date_tz,
            charge_id=rift.charge_id,
            payout_id=rift.payout_id,
            review_window_ends_at=rift.review_window_ends_at,
            funded_at=rift.funded_at,
            proof_submitted_at=rift.proof_submitted_at,
            released_at=rift.released_at,
            payout_scheduled_at=rift.payout_scheduled_at,
            paid_out_at=rift.paid_out_at,
            canceled_at=rift.canceled_at,
            created_at=rift.created_at,
            updated_at=rift.updated_at,
            resolution_outcome=rift.resolution_outcome,
            reconciliation_state=rift.reconciliation_state,
            pending_operation=rift.pending_operation,
            last_error=rift.last_error,
            milestones=[milestone_to_dict(m) for m in rift.milestones],
            active_dispute=(
                {"id": active.id, "status": active.status, "reason": active.reason, "priority": active.priority}
                if active is not None else None
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Decimal):
                data[key] = str(value)
            elif isinstance(value, datetime):
                data[key] = value.isoformat()
        return data


def parse_role(role: Union[str, ActorRole]) -> ActorRole:
    if isinstance(role, ActorRole):
        return role
    try:
        return ActorRole(str(role).strip().upper())
    except ValueError:
        raise ValidationFailed("caller_role", f"unknown role {role!r}")


def parse_event_date(value: Any) -> Optional[datetime]:
    """ISO-8601 string or datetime to naive UTC"""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return ensure_naive_datetime(value)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationFailed("event_date", f"not an ISO-8601 datetime: {value!r}")
    return ensure_naive_datetime(parsed)


def review_window_end(rift: Rift, start: datetime) -> datetime:
    return start + timedelta(hours=Config.review_window_hours(rift.item_type))


def active_milestone(rift: Rift) -> Optional[Milestone]:
    """Next unreleased milestone, the one current proof refers to"""
    return next((m for m in rift.milestones if not m.released), None)


def apply_transition(
    session,
    rift: Rift,
    to_status: RiftStatus,
    actor_id: Optional[str],
    actor_role: Union[str, ActorRole],
    fields: Optional[Dict[str, Any]] = None,
    payload: Optional[Dict[str, Any]] = None,
    milestone_completion: bool = False,
) -> int:
    """
    Validate and write one status change with its version bump and event.

    Must run inside the caller's atomic unit with the rift row locked.
    """
    from_status = rift.status
    RiftStateValidator.validate(from_status, to_status, milestone_completion)
    new_version = OptimisticLockManager(session).versioned_update(
        Rift, rift.id, {"status": to_status.value, **(fields or {})}, current_version=rift.version
    )
    record_event(
        session, rift.id, RiftEventType.STATUS_CHANGED, actor_id, actor_role,
        {"from": from_status, "to": to_status.value, **(payload or {})},
    )
    logger.info(f"🔄 RIFT_TRANSITION: {rift.id} {from_status} → {to_status.value} (v{new_version})")
    return new_version


def touch_rift(session, rift: Rift, fields: Dict[str, Any]) -> int:
    """Versioned write without a status change"""
    return OptimisticLockManager(session).versioned_update(Rift, rift.id, fields, current_version=rift.version)


def seller_net_for_rift(session, rift: Rift) -> Decimal:
    """Seller ledger total attributable to this rift (credits minus debits so far)"""
    entries = [e for e in WalletService.get_rift_entries(session, rift.id) if e.user_id == rift.seller_id]
    return quantize_money(sum((to_decimal(e.amount) for e in entries), Decimal("0")))


class RiftStateMachine:
    """Async lifecycle operations for rifts"""

    def __init__(
        self,
        processor: PaymentProcessor,
        vault: VaultService,
        locks: Optional[RiftLockRegistry] = None,
    ):
        self.processor = processor
        self.vault = vault
        self.locks = locks or rift_locks

    @asynccontextmanager
    async def hold(self, rift_id: str):
        async with self.locks.hold(rift_id):
            yield

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    @staticmethod
    def authorize(rift: Rift, caller_id: str, caller_role: Union[str, ActorRole], action: RiftAction) -> None:
        """Party check then status/role/action check"""
        role = parse_role(caller_role)
        reason = permission_engine.role_matches_party(rift, caller_id, role)
        if reason:
            raise PermissionDenied(rift.status, role.value, action.value, reason)
        permission_engine.require(rift.status, role, action)

    def _precheck(self, rift_id: str, caller_id: str, caller_role, action: RiftAction) -> None:
        """Read-only permission check before slow external work"""
        with managed_session() as session:
            rift = session.get(Rift, rift_id)
            if rift is None:
                raise NotFound("rift", rift_id)
            self.authorize(rift, caller_id, caller_role, action)

    def snapshot(self, rift_id: str) -> RiftSnapshot:
        with managed_session() as session:
            rift = session.get(Rift, rift_id)
            if rift is None:
                raise NotFound("rift", rift_id)
            return RiftSnapshot.from_rift(rift)

    # ------------------------------------------------------------------
    # Creation and funding
    # ------------------------------------------------------------------

    async def create_rift(self, caller_id: str, caller_role, payload: Dict[str, Any]) -> RiftSnapshot:
        """Buyer creates a rift in DRAFT"""
        role = parse_role(caller_role)
        if role != ActorRole.BUYER:
            raise PermissionDenied(RiftStatus.DRAFT.value, role.value, "create_rift", "only buyers create rifts")
        payload = payload or {}

        seller_id = str(payload.get("seller_id") or "").strip()
        if not seller_id:
            raise ValidationFailed("seller_id", "seller is required")
        if seller_id == caller_id:
            raise ValidationFailed("seller_id", "buyer and seller must be different users")

        try:
            item_type = RiftItemType(str(payload.get("item_type", "")).upper())
        except ValueError:
            raise ValidationFailed("item_type", f"unknown item type {payload.get('item_type')!r}")

        currency = str(payload.get("currency") or "USD").upper()
        if currency not in Config.SUPPORTED_CURRENCIES:
            raise ValidationFailed("currency", f"{currency} is not supported")

        try:
            subtotal = quantize_money(payload.get("subtotal"))
        except ValueError as e:
            raise ValidationFailed("subtotal", str(e))
        if subtotal <= 0:
            raise ValidationFailed("subtotal", "must be greater than zero")

        event_date = parse_event_date(payload.get("event_date"))
        if item_type == RiftItemType.TICKETS:
            if event_date is None:
                raise ValidationFailed("event_date", "ticket rifts require the event date")
            if event_date <= utc_now():
                raise ValidationFailed("event_date", "event date must be in the future")

        milestones = self._parse_milestones(payload.get("milestones"), subtotal)
        buyer_fee = FeeCalculator.calculate_buyer_fee(subtotal)
        seller_fee_rate = FeeCalculator.get_seller_fee_rate()
        rift_id = generate_id("RF")

        try:
            with atomic_transaction() as session:
                rift_number = (session.query(func.max(Rift.rift_number)).scalar() or 0) + 1
                rift = Rift(
                    id=rift_id,
                    rift_number=rift_number,
                    buyer_id=caller_id,
                    seller_id=seller_id,
                    status=RiftStatus.DRAFT.value,
                    item_type=item_type.value,
                    currency=currency,
                    subtotal=subtotal,
                    buyer_fee=buyer_fee,
                    seller_fee_rate=seller_fee_rate,
                    event_date_tz=event_date,
                    allows_partial_release=bool(milestones),
                    title=payload.get("title"),
                    version=0,
                )
                session.add(rift)
                for index, (title, amount, revision_limit) in enumerate(milestones):
                    rift.milestones.append(
                        Milestone(index=index, title=title, amount=amount, revision_limit=revision_limit)
                    )
                session.flush()
                record_event(session, rift_id, RiftEventType.RIFT_CREATED, caller_id, role, {
                    "rift_number": rift_number,
                    "item_type": item_type.value,
                    "subtotal": str(subtotal),
                    "currency": currency,
                    "milestones": len(milestones),
                })
                snapshot = RiftSnapshot.from_rift(rift)
        except IntegrityError as e:
            logger.warning(f"⚠️ Rift number collision while creating {rift_id}: {e}")
            raise ConcurrentModification(rift_id)

        logger.info(
            f"✅ RIFT_CREATED: {rift_id} #{snapshot.rift_number} {item_type.value} "
            f"{subtotal} {currency} buyer={caller_id} seller={seller_id}"
        )
        return snapshot

    @staticmethod
    def _parse_milestones(raw: Any, subtotal: Decimal) -> List[tuple]:
        if not raw:
            return []
        if not isinstance(raw, list):
            raise ValidationFailed("milestones", "must be a list")
        parsed = []
        for index, item in enumerate(raw):
            try:
                amount = quantize_money(item.get("amount"))
            except (AttributeError, ValueError):
                raise ValidationFailed(f"milestones[{index}].amount", "must be a number")
            if amount <= 0:
                raise ValidationFailed(f"milestones[{index}].amount", "must be greater than zero")
            revision_limit = int(item.get("revision_limit", Config.DEFAULT_REVISION_LIMIT))
            if revision_limit < 0:
                raise ValidationFailed(f"milestones[{index}].revision_limit", "must not be negative")
            parsed.append((str(item.get("title") or f"Milestone {index + 1}"), amount, revision_limit))
        total = sum((amount for _, amount, _ in parsed), Decimal("0"))
        if total != subtotal:
            raise ValidationFailed("milestones", f"milestone amounts sum to {total}, subtotal is {subtotal}")
        return parsed

    async def pay(self, rift_id: str, caller_id: str, caller_role, payload: Optional[Dict] = None) -> RiftSnapshot:
        """Charge the buyer and move DRAFT → FUNDED"""
        async with self.hold(rift_id):
            with atomic_transaction() as session:
                with locked_rift_operation(rift_id, session) as rift:
                    self.authorize(rift, caller_id, caller_role, RiftAction.PAY)
                    touch_rift(session, rift, {"pending_operation": PendingOperation.PAY.value})
                    amount = FeeCalculator.calculate_charge_amount(rift.subtotal, rift.buyer_fee)
                    buyer_id, currency = rift.buyer_id, rift.currency
            return await self._complete_charge(rift_id, buyer_id, amount, currency, caller_id, caller_role)

    async def _complete_charge(
        self, rift_id: str, buyer_id: str, amount: Decimal, currency: str, actor_id: str, actor_role
    ) -> RiftSnapshot:
        try:
            charge_id = await call_with_retry(
                self.processor.service_name, self.processor.charge, buyer_id, amount, currency, f"{rift_id}:pay"
            )
        except ExternalServiceError as e:
            self._record_external_failure(rift_id, PendingOperation.PAY, e)
            raise

        with atomic_transaction() as session:
            with locked_rift_operation(rift_id, session) as rift:
                was_reconciling = rift.reconciliation_state == ReconciliationState.NEEDS_RECONCILIATION.value
                apply_transition(session, rift, RiftStatus.FUNDED, actor_id, parse_role(actor_role), fields={
                    "charge_id": charge_id,
                    "funded_at": utc_now(),
                    "pending_operation": None,
                    "reconciliation_state": ReconciliationState.NONE.value,
                    "last_error": None,
                })
                record_event(session, rift_id, RiftEventType.PAYMENT_CHARGED, actor_id, parse_role(actor_role),
                             {"charge_id": charge_id, "amount": str(amount), "currency": currency})
                if was_reconciling:
                    record_event(session, rift_id, RiftEventType.RECONCILED, SYSTEM_ACTOR_ID, ActorRole.SYSTEM,
                                 {"operation": PendingOperation.PAY.value})
                snapshot = RiftSnapshot.from_rift(rift)
        logger.info(f"💳 PAYMENT_CHARGED: rift {rift_id} {amount} {currency} charge={charge_id}")
        return snapshot

    async def cancel(self, rift_id: str, caller_id: str, caller_role, payload: Optional[Dict] = None) -> RiftSnapshot:
        async with self.hold(rift_id):
            with atomic_transaction() as session:
                with locked_rift_operation(rift_id, session) as rift:
                    self.authorize(rift, caller_id, caller_role, RiftAction.CANCEL)
                    if rift.pending_operation == PendingOperation.PAY.value:
                        raise ValidationFailed("pending_operation", "payment outcome is still being confirmed")
                    apply_transition(session, rift, RiftStatus.CANCELED, caller_id, parse_role(caller_role),
                                     fields={"canceled_at": utc_now()})
                    return RiftSnapshot.from_rift(rift)

    # ------------------------------------------------------------------
    # Proof and review
    # ------------------------------------------------------------------

    async def upload_proof(self, rift_id: str, caller_id: str, caller_role, payload: Dict[str, Any]) -> RiftSnapshot:
        """Seller stores proof assets; FUNDED → PROOF_SUBMITTED and the review window starts"""
        async with self.hold(rift_id):
            self._precheck(rift_id, caller_id, caller_role, RiftAction.UPLOAD_PROOF)
            prepared = await self.vault.prepare_assets(rift_id, caller_id, (payload or {}).get("assets") or [])

            with atomic_transaction() as session:
                with locked_rift_operation(rift_id, session) as rift:
                    self.authorize(rift, caller_id, caller_role, RiftAction.UPLOAD_PROOF)
                    now = utc_now()
                    window_end = review_window_end(rift, now)
                    assets = self.vault.store_prepared(session, rift, caller_id, prepared)
                    apply_transition(session, rift, RiftStatus.PROOF_SUBMITTED, caller_id, ActorRole.SELLER, fields={
                        "proof_submitted_at": now,
                        "review_window_ends_at": window_end,
                    })
                    self._start_milestone_window(rift, window_end)
                    record_event(session, rift_id, RiftEventType.PROOF_SUBMITTED, caller_id, ActorRole.SELLER,
                                 {"asset_ids": [a.id for a in assets], "review_window_ends_at": window_end.isoformat()})
                    return RiftSnapshot.from_rift(rift)

    async def submit_additional_proof(
        self, rift_id: str, caller_id: str, caller_role, payload: Dict[str, Any]
    ) -> RiftSnapshot:
        """Seller appends proof; UNDER_REVIEW returns to PROOF_SUBMITTED and the window restarts"""
        async with self.hold(rift_id):
            self._precheck(rift_id, caller_id, caller_role, RiftAction.SUBMIT_ADDITIONAL_PROOF)
            prepared = await self.vault.prepare_assets(rift_id, caller_id, (payload or {}).get("assets") or [])

            with atomic_transaction() as session:
                with locked_rift_operation(rift_id, session) as rift:
                    self.authorize(rift, caller_id, caller_role, RiftAction.SUBMIT_ADDITIONAL_PROOF)
                    now = utc_now()
                    window_end = review_window_end(rift, now)
                    assets = self.vault.store_prepared(session, rift, caller_id, prepared)
                    fields = {"proof_submitted_at": now, "review_window_ends_at": window_end}
                    if LegacyStatusMapper.to_canonical(rift.status) == RiftStatus.UNDER_REVIEW:
                        apply_transition(session, rift, RiftStatus.PROOF_SUBMITTED, caller_id, ActorRole.SELLER,
                                         fields=fields, payload={"reason": "additional_proof"})
                    else:
                        touch_rift(session, rift, fields)
                    self._start_milestone_window(rift, window_end)
                    record_event(session, rift_id, RiftEventType.PROOF_SUBMITTED, caller_id, ActorRole.SELLER, {
                        "asset_ids": [a.id for a in assets],
                        "additional": True,
                        "review_window_ends_at": window_end.isoformat(),
                    })
                    return RiftSnapshot.from_rift(rift)

    async def route_to_review(
        self, rift_id: str, caller_id: str, caller_role, payload: Optional[Dict] = None
    ) -> RiftSnapshot:
        async with self.hold(rift_id):
            with atomic_transaction() as session:
                with locked_rift_operation(rift_id, session) as rift:
                    self.authorize(rift, caller_id, caller_role, RiftAction.ROUTE_TO_REVIEW)
                    apply_transition(session, rift, RiftStatus.UNDER_REVIEW, caller_id, parse_role(caller_role),
                                     payload={"note": (payload or {}).get("note")})
                    return RiftSnapshot.from_rift(rift)

    async def approve_proof(
        self, rift_id: str, caller_id: str, caller_role, payload: Optional[Dict] = None
    ) -> RiftSnapshot:
        """Admin clears a review; the buyer gets a fresh review window"""
        async with self.hold(rift_id):
            with atomic_transaction() as session:
                with locked_rift_operation(rift_id, session) as rift:
                    self.authorize(rift, caller_id, caller_role, RiftAction.APPROVE_PROOF)
                    window_end = review_window_end(rift, utc_now())
                    apply_transition(session, rift, RiftStatus.PROOF_SUBMITTED, caller_id, ActorRole.ADMIN,
                                     fields={"review_window_ends_at": window_end},
                                     payload={"note": (payload or {}).get("note"), "approved": True})
                    self._start_milestone_window(rift, window_end)
                    return RiftSnapshot.from_rift(rift)

    @staticmethod
    def _start_milestone_window(rift: Rift, window_end: Optional[datetime]) -> None:
        milestone = active_milestone(rift) if rift.allows_partial_release else None
        if milestone is not None:
            milestone.review_window_ends_at = window_end

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release(self, rift_id: str, caller_id: str, caller_role, payload: Optional[Dict] = None) -> RiftSnapshot:
        """
        Buyer release, or SYSTEM auto-release once the review window expired.

        Milestone rifts: a buyer release pays out every remaining milestone,
        an auto-release pays out the active milestone only.
        """
        role = parse_role(caller_role)
        action = RiftAction.AUTO_RELEASE if role == ActorRole.SYSTEM else RiftAction.RELEASE
        async with self.hold(rift_id):
            with atomic_transaction() as session:
                with locked_rift_operation(rift_id, session) as rift:
                    reason = permission_engine.role_matches_party(rift, caller_id, role)
                    if reason:
                        raise PermissionDenied(rift.status, role.value, action.value, reason)
                    if role in (ActorRole.BUYER, ActorRole.SYSTEM) and \
                            LegacyStatusMapper.to_canonical(rift.status) in RELEASED_STATUSES:
                        logger.info(f"ℹ️ Release for rift {rift_id} already processed ({rift.status})")
                        raise AlreadyProcessed(rift_id, "release")
                    permission_engine.require(rift.status, role, action)

                    now = utc_now()
                    if action == RiftAction.AUTO_RELEASE:
                        if rift.review_window_ends_at is None or rift.review_window_ends_at > now:
                            raise ValidationFailed("review_window_ends_at", "review window has not expired")

                    if rift.allows_partial_release:
                        remaining = [m for m in rift.milestones if not m.released]
                        if action == RiftAction.AUTO_RELEASE:
                            remaining = remaining[:1]
                        self._release_milestones(session, rift, remaining, caller_id, role, now)
                    else:
                        self._release_full(session, rift, caller_id, role, now)

                    if role == ActorRole.BUYER:
                        record_event(session, rift_id, RiftEventType.BUYER_CONFIRMED_RECEIPT, caller_id, role,
                                     {"via": "release"})
                    return RiftSnapshot.from_rift(rift)

    async def release_milestone(
        self, rift_id: str, caller_id: str, caller_role, payload: Dict[str, Any]
    ) -> RiftSnapshot:
        role = parse_role(caller_role)
        action = RiftAction.AUTO_RELEASE if role == ActorRole.SYSTEM else RiftAction.RELEASE_MILESTONE
        try:
            index = int((payload or {}).get("milestone_index"))
        except (TypeError, ValueError):
            raise ValidationFailed("milestone_index", "milestone index is required")

        async with self.hold(rift_id):
            with atomic_transaction() as session:
                with locked_rift_operation(rift_id, session) as rift:
                    if not rift.allows_partial_release:
                        raise ValidationFailed("allows_partial_release", "rift does not use milestones")
                    self.authorize(rift, caller_id, role, action)
                    milestones = {m.index: m for m in rift.milestones}
                    if index not in milestones:
                        raise ValidationFailed("milestone_index", f"no milestone {index} on this rift")
                    if milestones[index].released:
                        raise AlreadyProcessed(rift_id, f"milestone {index} release")
                    self._release_milestones(session, rift, [milestones[index]], caller_id, role, utc_now())
                    return RiftSnapshot.from_rift(rift)

    def _release_full(self, session, rift: Rift, actor_id: str, role: ActorRole, now: datetime) -> None:
        payout = FeeCalculator.calculate_seller_payout(rift.subtotal, rift.seller_fee_rate)
        WalletService.credit_release(session, rift.seller_id, payout, rift.currency, rift.id)
        apply_transition(session, rift, RiftStatus.RELEASED, actor_id, role, fields={
            "released_at": now,
            "review_window_ends_at": None,
        })
        record_event(session, rift.id, RiftEventType.FUNDS_RELEASED, actor_id, role, {
            "amount": str(payout),
            "fee": str(FeeCalculator.quantize(to_decimal(rift.subtotal) - payout)),
            "auto": role == ActorRole.SYSTEM,
        })
        logger.info(f"💰 FUNDS_RELEASED: rift {rift.id} credited {payout} {rift.currency} to seller {rift.seller_id}")

    def _release_milestones(
        self, session, rift: Rift, milestones: List[Milestone], actor_id: str, role: ActorRole, now: datetime
    ) -> None:
        """Credit each milestone; the rift becomes RELEASED only when none remain"""
        released_total = Decimal("0")
        for milestone in milestones:
            payout = FeeCalculator.calculate_seller_payout(milestone.amount, rift.seller_fee_rate)
            WalletService.credit_release(
                session, rift.seller_id, payout, rift.currency, rift.id, key_suffix=f"milestone:{milestone.index}"
            )
            milestone.released = True
            milestone.release_date = now
            milestone.review_window_ends_at = None
            released_total += payout
            record_event(session, rift.id, RiftEventType.MILESTONE_RELEASED, actor_id, role, {
                "index": milestone.index,
                "amount": str(milestone.amount),
                "payout": str(payout),
            })
            logger.info(f"🧩 MILESTONE_RELEASED: rift {rift.id} milestone {milestone.index} payout {payout}")

        if all(m.released for m in rift.milestones):
            apply_transition(session, rift, RiftStatus.RELEASED, actor_id, role, fields={
                "released_at": now,
                "review_window_ends_at": None,
            }, milestone_completion=True)
            record_event(session, rift.id, RiftEventType.FUNDS_RELEASED, actor_id, role, {
                "amount": str(released_total),
                "milestones": [m.index for m in milestones],
                "auto": role == ActorRole.SYSTEM,
            })
        else:
            # Next milestone needs its own proof before auto-release applies
            touch_rift(session, rift, {"review_window_ends_at": None})

    async def request_revision(
        self, rift_id: str, caller_id: str, caller_role, payload: Optional[Dict] = None
    ) -> RiftSnapshot:
        """Buyer asks for rework on the active milestone before its window ends"""
        payload = payload or {}
        async with self.hold(rift_id):
            with atomic_transaction() as session:
                with locked_rift_operation(rift_id, session) as rift:
                    self.authorize(rift, caller_id, caller_role, RiftAction.REQUEST_REVISION)
                    if not rift.allows_partial_release:
                        raise ValidationFailed("allows_partial_release", "rift does not use milestones")
                    milestone = active_milestone(rift)
                    if milestone is None:
                        raise ValidationFailed("milestone_index", "every milestone is already released")
                    requested = payload.get("milestone_index")
                    if requested is not None and int(requested) != milestone.index:
                        raise ValidationFailed(
                            "milestone_index", f"only the active milestone ({milestone.index}) can be revised"
                        )
                    deadline = milestone.review_window_ends_at or rift.review_window_ends_at
                    if deadline is None or utc_now() >= deadline:
                        raise ValidationFailed("review_window_ends_at", "review window has ended")
                    if milestone.revision_requests >= milestone.revision_limit:
                        raise ValidationFailed(
                            "revision_limit", f"revision limit of {milestone.revision_limit} reached"
                        )

                    milestone.revision_requests += 1
                    milestone.review_window_ends_at = None
                    touch_rift(session, rift, {"review_window_ends_at": None})
                    record_event(session, rift_id, RiftEventType.MILESTONE_REVISION_REQUESTED, caller_id,
                                 ActorRole.BUYER, {
                                     "index": milestone.index,
                                     "revision_requests": milestone.revision_requests,
                                     "reason": payload.get("reason"),
                                 })
                    logger.info(
                        f"✏️ REVISION_REQUESTED: rift {rift_id} milestone {milestone.index} "
                        f"({milestone.revision_requests}/{milestone.revision_limit})"
                    )
                    return RiftSnapshot.from_rift(rift)

    # ------------------------------------------------------------------
    # Payout
    # ------------------------------------------------------------------

    async def schedule_payout(
        self, rift_id: str, caller_id: str = SYSTEM_ACTOR_ID, caller_role=ActorRole.SYSTEM,
        payload: Optional[Dict] = None,
    ) -> RiftSnapshot:
        """Send the seller's released funds once every credit is available"""
        async with self.hold(rift_id):
            with atomic_transaction() as session:
                with locked_rift_operation(rift_id, session) as rift:
                    self.authorize(rift, caller_id, caller_role, RiftAction.SCHEDULE_PAYOUT)
                    amount, seller_id, currency = self._payout_terms(session, rift)
                    touch_rift(session, rift, {"pending_operation": PendingOperation.PAYOUT.value})
            return await self._complete_payout(rift_id, seller_id, amount, currency, caller_id, caller_role)

    def _payout_terms(self, session, rift: Rift):
        now = utc_now()
        credits = [
            e for e in WalletService.get_rift_entries(session, rift.id)
            if e.entry_type == LedgerEntryType.CREDIT_RELEASE.value
        ]
        if not credits:
            raise ValidationFailed("ledger", "no released funds recorded for this rift")
        if any(e.available_at > now for e in credits):
            raise ValidationFailed("available_at", "seller credit for this rift is still pending")
        amount = seller_net_for_rift(session, rift)
        if amount <= 0:
            raise ValidationFailed("amount", "nothing left to pay out for this rift")
        balance = WalletService.get_balance(session, rift.seller_id, rift.currency, now)
        if balance.available_balance < amount:
            raise ValidationFailed(
                "available_balance", f"seller available balance {balance.available_balance} below payout {amount}"
            )
        return amount, rift.seller_id, rift.currency

    async def _complete_payout(
        self, rift_id: str, seller_id: str, amount: Decimal, currency: str, actor_id: str, actor_role
    ) -> RiftSnapshot:
        try:
            payout_id = await call_with_retry(
                self.processor.service_name, self.processor.payout, seller_id, amount, currency, f"{rift_id}:payout"
            )
        except ExternalServiceError as e:
            self._record_external_failure(rift_id, PendingOperation.PAYOUT, e)
            raise

        try:
            with atomic_transaction() as session:
                with locked_rift_operation(rift_id, session) as rift:
                    was_reconciling = rift.reconciliation_state == ReconciliationState.NEEDS_RECONCILIATION.value
                    WalletService.record_entry(
                        session,
                        user_id=seller_id,
                        entry_type=LedgerEntryType.DEBIT_WITHDRAWAL,
                        amount=amount,
                        currency=currency,
                        idempotency_key=f"{rift_id}:payout",
                        related_rift_id=rift_id,
                        description=f"Payout {payout_id} for rift {rift_id}",
                    )
                    apply_transition(session, rift, RiftStatus.PAYOUT_SCHEDULED, actor_id, parse_role(actor_role),
                                     fields={
                                         "payout_id": payout_id,
                                         "payout_scheduled_at": utc_now(),
                                         "pending_operation": None,
                                         "reconciliation_state": ReconciliationState.NONE.value,
                                         "last_error": None,
                                     })
                    record_event(session, rift_id, RiftEventType.PAYOUT_SCHEDULED, actor_id, parse_role(actor_role),
                                 {"payout_id": payout_id, "amount": str(amount), "currency": currency})
                    if was_reconciling:
                        record_event(session, rift_id, RiftEventType.RECONCILED, SYSTEM_ACTOR_ID, ActorRole.SYSTEM,
                                     {"operation": PendingOperation.PAYOUT.value})
                    snapshot = RiftSnapshot.from_rift(rift)
        except RiftError as e:
            # Processor already accepted the payout; local bookkeeping must catch up
            self._mark_reconciliation(rift_id, PendingOperation.PAYOUT, f"payout {payout_id} not recorded: {e.message}")
            raise

        logger.info(f"🏦 PAYOUT_SCHEDULED: rift {rift_id} {amount} {currency} payout={payout_id}")
        return snapshot

    async def confirm_payout(
        self, rift_id: str, caller_id: str = SYSTEM_ACTOR_ID, caller_role=ActorRole.SYSTEM,
        payload: Optional[Dict] = None,
    ) -> RiftSnapshot:
        """Poll the processor; paid → PAID_OUT, failed → re-credit and flag for reconciliation"""
        async with self.hold(rift_id):
            with managed_session() as session:
                rift = session.get(Rift, rift_id)
                if rift is None:
                    raise NotFound("rift", rift_id)
                self.authorize(rift, caller_id, caller_role, RiftAction.CONFIRM_PAYOUT)
                payout_id = rift.payout_id

            status = await call_with_retry(self.processor.service_name, self.processor.payout_status, payout_id)
            if status == PayoutStatus.PENDING:
                logger.debug(f"Payout {payout_id} for rift {rift_id} still pending")
                return self.snapshot(rift_id)

            with atomic_transaction() as session:
                with locked_rift_operation(rift_id, session) as rift:
                    self.authorize(rift, caller_id, caller_role, RiftAction.CONFIRM_PAYOUT)
                    role = parse_role(caller_role)
                    if status == PayoutStatus.PAID:
                        apply_transition(session, rift, RiftStatus.PAID_OUT, caller_id, role,
                                         fields={"paid_out_at": utc_now()})
                        record_event(session, rift_id, RiftEventType.PAYOUT_COMPLETED, caller_id, role,
                                     {"payout_id": payout_id})
                        logger.info(f"✅ PAYOUT_COMPLETED: rift {rift_id} payout {payout_id}")
                    else:
                        withdrawn = sum(
                            (-to_decimal(e.amount) for e in WalletService.get_rift_entries(session, rift_id)
                             if e.entry_type == LedgerEntryType.DEBIT_WITHDRAWAL.value),
                            Decimal("0"),
                        )
                        WalletService.record_entry(
                            session,
                            user_id=rift.seller_id,
                            entry_type=LedgerEntryType.ADJUSTMENT,
                            amount=withdrawn,
                            currency=rift.currency,
                            idempotency_key=f"{rift_id}:payout_reversal",
                            related_rift_id=rift_id,
                            description=f"Payout {payout_id} failed; funds returned to wallet",
                        )
                        touch_rift(session, rift, {
                            "reconciliation_state": ReconciliationState.NEEDS_RECONCILIATION.value,
                            "last_error": f"payout {payout_id} failed at processor",
                            "reconciliation_attempts": rift.reconciliation_attempts + 1,
                        })
                        record_event(session, rift_id, RiftEventType.PAYOUT_FAILED, caller_id, role,
                                     {"payout_id": payout_id, "returned": str(withdrawn)})
                        logger.error(f"❌ PAYOUT_FAILED: rift {rift_id} payout {payout_id}; {withdrawn} re-credited")
                    return RiftSnapshot.from_rift(rift)

    # ------------------------------------------------------------------
    # Processor events
    # ------------------------------------------------------------------

    async def record_chargeback(
        self, rift_id: str, caller_id: str, caller_role, payload: Dict[str, Any]
    ) -> RiftSnapshot:
        return await self._record_processor_debit(
            rift_id, caller_id, caller_role, payload,
            RiftAction.RECORD_CHARGEBACK, LedgerEntryType.DEBIT_CHARGEBACK, RiftEventType.CHARGEBACK_RECORDED,
            "chargeback",
        )

    async def record_processor_refund(
        self, rift_id: str, caller_id: str, caller_role, payload: Dict[str, Any]
    ) -> RiftSnapshot:
        return await self._record_processor_debit(
            rift_id, caller_id, caller_role, payload,
            RiftAction.RECORD_PROCESSOR_REFUND, LedgerEntryType.DEBIT_REFUND, RiftEventType.PROCESSOR_REFUND_RECORDED,
            "processor_refund",
        )

    async def _record_processor_debit(
        self, rift_id, caller_id, caller_role, payload, action, entry_type, event_type, key_name
    ) -> RiftSnapshot:
        payload = payload or {}
        reference = str(payload.get("reference") or "").strip()
        if not reference:
            raise ValidationFailed("reference", "processor reference is required")
        try:
            amount = quantize_money(payload.get("amount"))
        except ValueError as e:
            raise ValidationFailed("amount", str(e))
        if amount <= 0:
            raise ValidationFailed("amount", "must be greater than zero")

        async with self.hold(rift_id):
            with atomic_transaction() as session:
                with locked_rift_operation(rift_id, session) as rift:
                    self.authorize(rift, caller_id, caller_role, action)
                    WalletService.record_entry(
                        session,
                        user_id=rift.seller_id,
                        entry_type=entry_type,
                        amount=amount,
                        currency=rift.currency,
                        idempotency_key=f"{rift_id}:{key_name}:{reference}",
                        related_rift_id=rift_id,
                        description=f"{key_name.replace('_', ' ')} {reference}",
                    )
                    record_event(session, rift_id, event_type, caller_id, parse_role(caller_role),
                                 {"amount": str(amount), "reference": reference})
                    logger.warning(f"⚠️ {event_type.value}: rift {rift_id} {amount} {rift.currency} ref={reference}")
                    return RiftSnapshot.from_rift(rift)

    # ------------------------------------------------------------------
    # Delivery facts
    # ------------------------------------------------------------------

    async def record_delivery_fact(
        self, rift_id: str, caller_id: str, caller_role, payload: Dict[str, Any]
    ) -> RiftSnapshot:
        """Party-reported facts (receipt confirmation, view time, chat activity)"""
        payload = payload or {}
        try:
            event_type = RiftEventType(str(payload.get("event_type", "")).upper())
        except ValueError:
            raise ValidationFailed("event_type", f"unknown event type {payload.get('event_type')!r}")
        if event_type not in CLIENT_REPORTABLE_EVENTS:
            raise ValidationFailed("event_type", f"{event_type.value} cannot be reported by clients")

        role = parse_role(caller_role)
        async with self.hold(rift_id):
            with atomic_transaction() as session:
                rift = session.get(Rift, rift_id)
                if rift is None:
                    raise NotFound("rift", rift_id)
                reason = permission_engine.role_matches_party(rift, caller_id, role)
                if role not in (ActorRole.BUYER, ActorRole.SELLER):
                    reason = "only rift parties report delivery facts"
                elif event_type != RiftEventType.CHAT_MESSAGE:
                    if role != ActorRole.BUYER:
                        reason = reason or f"only the buyer reports {event_type.value}"
                    elif not permission_engine.is_proof_visible(rift.status) and \
                            LegacyStatusMapper.to_canonical(rift.status) != RiftStatus.DISPUTED:
                        reason = reason or "nothing has been delivered yet"
                if reason:
                    raise PermissionDenied(rift.status, role.value, event_type.value.lower(), reason)

                data: Dict[str, Any] = {}
                if event_type == RiftEventType.DELIVERY_VIEWED:
                    try:
                        data["seconds_viewed"] = max(0, int(payload.get("seconds_viewed", 0)))
                    except (TypeError, ValueError):
                        raise ValidationFailed("seconds_viewed", "must be an integer")
                elif event_type == RiftEventType.CHAT_MESSAGE and payload.get("message_id"):
                    data["message_id"] = str(payload["message_id"])
                record_event(session, rift_id, event_type, caller_id, role, data)
                return RiftSnapshot.from_rift(rift)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _record_external_failure(self, rift_id: str, operation: PendingOperation, error: ExternalServiceError) -> None:
        if error.retryable or error.outcome_unknown or operation == PendingOperation.PAYOUT:
            self._mark_reconciliation(rift_id, operation, error.message)
            return
        # Definitive decline: nothing is in flight any more
        with atomic_transaction() as session:
            with locked_rift_operation(rift_id, session) as rift:
                touch_rift(session, rift, {"pending_operation": None, "last_error": error.message[:500]})
        logger.warning(f"⚠️ {operation.value} declined for rift {rift_id}: {error.message}")

    def _mark_reconciliation(self, rift_id: str, operation: PendingOperation, message: str) -> None:
        """Flag the rift; status is left untouched"""
        try:
            with atomic_transaction() as session:
                with locked_rift_operation(rift_id, session) as rift:
                    touch_rift(session, rift, {
                        "reconciliation_state": ReconciliationState.NEEDS_RECONCILIATION.value,
                        "pending_operation": operation.value,
                        "last_error": (message or "")[:500],
                        "reconciliation_attempts": rift.reconciliation_attempts + 1,
                    })
                    record_event(session, rift_id, RiftEventType.RECONCILIATION_NEEDED, SYSTEM_ACTOR_ID,
                                 ActorRole.SYSTEM, {"operation": operation.value, "error": (message or "")[:500]})
            logger.error(f"❌ RECONCILIATION_NEEDED: rift {rift_id} {operation.value}: {message}")
        except RiftError as e:
            logger.error(f"❌ Could not flag rift {rift_id} for reconciliation ({operation.value}): {e}")

    async def reconcile(
        self, rift_id: str, caller_id: str = SYSTEM_ACTOR_ID, caller_role=ActorRole.SYSTEM,
        payload: Optional[Dict] = None,
    ) -> RiftSnapshot:
        """Repeat an unconfirmed pay/payout with its original idempotency key"""
        if parse_role(caller_role) != ActorRole.SYSTEM:
            raise PermissionDenied("-", parse_role(caller_role).value, "reconcile", "reconciliation is system-only")

        async with self.hold(rift_id):
            with managed_session() as session:
                rift = session.get(Rift, rift_id)
                if rift is None:
                    raise NotFound("rift", rift_id)
                canonical = LegacyStatusMapper.to_canonical(rift.status)
                operation = rift.pending_operation
                if operation == PendingOperation.PAY.value and canonical == RiftStatus.DRAFT:
                    amount = FeeCalculator.calculate_charge_amount(rift.subtotal, rift.buyer_fee)
                    buyer_id, currency = rift.buyer_id, rift.currency
                elif operation == PendingOperation.PAYOUT.value and canonical == RiftStatus.RELEASED:
                    amount, seller_id, currency = self._payout_terms(session, rift)
                elif operation is None:
                    logger.warning(f"⚠️ Rift {rift_id} needs manual reconciliation: {rift.last_error}")
                    return RiftSnapshot.from_rift(rift)

            if operation == PendingOperation.PAY.value and canonical == RiftStatus.DRAFT:
                logger.info(f"🔁 Reconciling charge for rift {rift_id}")
                return await self._complete_charge(rift_id, buyer_id, amount, currency, caller_id, caller_role)
            if operation == PendingOperation.PAYOUT.value and canonical == RiftStatus.RELEASED:
                logger.info(f"🔁 Reconciling payout for rift {rift_id}")
                return await self._complete_payout(rift_id, seller_id, amount, currency, caller_id, caller_role)

            # Status already moved past the pending call; only the markers are stale
            with atomic_transaction() as session:
                with locked_rift_operation(rift_id, session) as rift:
                    touch_rift(session, rift, {
                        "pending_operation": None,
                        "reconciliation_state": ReconciliationState.NONE.value,
                        "last_error": None,
                    })
                    record_event(session, rift_id, RiftEventType.RECONCILED, caller_id, ActorRole.SYSTEM,
                                 {"operation": operation, "stale": True})
                    logger.info(f"✅ Cleared stale {operation} marker on rift {rift_id}")
                    return RiftSnapshot.from_rift(rift)
