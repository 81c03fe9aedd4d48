"""
Dispute Auto-Triage
===================

Evaluates objective, system-recorded facts about a rift (receipt
confirmations, downloads, view time, ticket event date, seller chat activity,
the opener's dispute history) and produces either ``auto_reject`` with a
rationale or ``needs_review``.

``auto_reject`` never closes a dispute by itself: the dispute still goes to
the admin queue, only at a lower priority and with the rationale attached.
Fact gathering reads the database; rule evaluation is a pure function of the
gathered facts.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from config import Config
from models import ActorRole, DigitalDelivery, Dispute, DisputeReason, Rift, RiftEvent, RiftItemType
from services.rift_events import RiftEventType
from utils.helpers import utc_now

logger = logging.getLogger(__name__)


class TriageDecision(Enum):
    AUTO_REJECT = "auto_reject"
    NEEDS_REVIEW = "needs_review"


@dataclass
class TriageFacts:
    buyer_confirmed_receipt: bool = False
    delivery_downloaded: bool = False
    delivery_seconds_viewed: int = 0
    hours_since_delivery: Optional[float] = None
    ticket_event_passed: bool = False
    hours_since_seller_message: Optional[float] = None
    recent_disputes_by_opener: int = 0
    auto_rejected_disputes_by_opener: int = 0


@dataclass
class TriageResult:
    decision: TriageDecision
    rationale: str
    signals: Dict[str, Any] = field(default_factory=dict)

    @property
    def high_abuse_risk(self) -> bool:
        return bool(self.signals.get("high_abuse_risk"))

    def to_dict(self) -> Dict[str, Any]:
        return {"decision": self.decision.value, "rationale": self.rationale, "signals": self.signals}


def _hours_between(earlier: datetime, later: datetime) -> float:
    return round((later - earlier).total_seconds() / 3600, 2)


def gather_facts(session: Session, rift: Rift, opened_by: str, now: Optional[datetime] = None) -> TriageFacts:
    """Collect the facts the triage rules look at"""
    now = now or utc_now()
    facts = TriageFacts()

    events = session.query(RiftEvent).filter(RiftEvent.rift_id == rift.id).all()
    for event in events:
        if event.event_type == RiftEventType.BUYER_CONFIRMED_RECEIPT.value:
            facts.buyer_confirmed_receipt = True
        elif event.event_type in (RiftEventType.FILE_DOWNLOADED.value, RiftEventType.LICENSE_KEY_REVEALED.value):
            if event.actor_role == ActorRole.BUYER.value:
                facts.delivery_downloaded = True
        elif event.event_type == RiftEventType.DELIVERY_VIEWED.value:
            seconds = int((event.payload or {}).get("seconds_viewed") or 0)
            facts.delivery_seconds_viewed = max(facts.delivery_seconds_viewed, seconds)
        elif event.event_type == RiftEventType.CHAT_MESSAGE.value and event.actor_role == ActorRole.SELLER.value:
            hours = _hours_between(event.created_at, now)
            if facts.hours_since_seller_message is None or hours < facts.hours_since_seller_message:
                facts.hours_since_seller_message = hours

    delivery = session.query(DigitalDelivery).filter(DigitalDelivery.rift_id == rift.id).first()
    if delivery is not None:
        facts.hours_since_delivery = _hours_between(delivery.uploaded_at, now)

    if rift.event_date_tz is not None:
        facts.ticket_event_passed = now >= rift.event_date_tz

    lookback_start = now - timedelta(days=Config.ABUSE_LOOKBACK_DAYS)
    opener_disputes = session.query(Dispute).filter(Dispute.opened_by == opened_by).all()
    facts.recent_disputes_by_opener = sum(1 for d in opener_disputes if d.submitted_at >= lookback_start)
    facts.auto_rejected_disputes_by_opener = sum(
        1 for d in opener_disputes
        if (d.auto_triage or {}).get("decision") == TriageDecision.AUTO_REJECT.value
    )
    return facts


def is_high_abuse_risk(facts: TriageFacts) -> bool:
    return (
        facts.recent_disputes_by_opener >= Config.ABUSE_DISPUTE_THRESHOLD
        or facts.auto_rejected_disputes_by_opener >= Config.ABUSE_AUTO_REJECT_THRESHOLD
    )


def evaluate(item_type: str, reason: str, facts: TriageFacts) -> TriageResult:
    """Apply the triage rules for the rift's item type and the dispute reason"""
    signals: Dict[str, Any] = asdict(facts)
    signals["high_abuse_risk"] = is_high_abuse_risk(facts)
    item = RiftItemType(item_type)
    reason = DisputeReason(reason)

    def reject(rationale: str) -> TriageResult:
        return TriageResult(TriageDecision.AUTO_REJECT, rationale, signals)

    if item in (RiftItemType.DIGITAL, RiftItemType.LICENSE_KEYS) and reason == DisputeReason.NOT_RECEIVED:
        if facts.delivery_downloaded:
            return reject("Buyer downloaded or revealed the delivery. Evidence shows access occurred.")
        if facts.delivery_seconds_viewed >= Config.TRIAGE_MIN_VIEW_SECONDS:
            return reject(
                f"Buyer viewed the delivery for {facts.delivery_seconds_viewed}s "
                f"(threshold {Config.TRIAGE_MIN_VIEW_SECONDS}s). Evidence shows access occurred."
            )
        if facts.buyer_confirmed_receipt:
            return reject("Buyer previously confirmed receipt of the digital delivery.")

    elif item == RiftItemType.SERVICES and facts.buyer_confirmed_receipt:
        if reason in (DisputeReason.NOT_RECEIVED, DisputeReason.NOT_AS_DESCRIBED):
            return reject("Buyer previously confirmed service completion. Cannot dispute after confirmation.")
        if reason == DisputeReason.UNAUTHORIZED:
            signals["high_abuse_risk"] = True
            return TriageResult(
                TriageDecision.NEEDS_REVIEW,
                "Buyer confirmed completion but claims unauthorized. Requires review.",
                signals,
            )

    elif item == RiftItemType.TICKETS:
        if facts.ticket_event_passed:
            return reject("Event date has passed. Disputes are not allowed after the event.")
        if facts.buyer_confirmed_receipt and reason == DisputeReason.NOT_RECEIVED:
            return reject("Buyer previously confirmed receipt of the ticket.")

    if reason == DisputeReason.SELLER_NONRESPONSIVE and facts.hours_since_seller_message is not None:
        if facts.hours_since_seller_message <= Config.TRIAGE_SELLER_RESPONSE_HOURS:
            return reject(
                f"Seller sent a message {facts.hours_since_seller_message}h ago "
                f"(within {Config.TRIAGE_SELLER_RESPONSE_HOURS}h)."
            )

    rationale = "Requires manual review. No strong signals for auto-rejection."
    if signals["high_abuse_risk"]:
        rationale = "Requires manual review. Opener flagged as high abuse risk."
    return TriageResult(TriageDecision.NEEDS_REVIEW, rationale, signals)


def triage_dispute(session: Session, rift: Rift, reason: str, opened_by: str, now: Optional[datetime] = None) -> TriageResult:
    facts = gather_facts(session, rift, opened_by, now)
    result = evaluate(rift.item_type, reason, facts)
    logger.info(f"🤖 AUTO_TRIAGE: rift {rift.id} reason={reason} -> {result.decision.value} ({result.rationale})")
    return result
