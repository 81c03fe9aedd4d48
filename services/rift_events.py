"""
Rift event log: append-only timeline of transitions and delivery facts.

Delivery facts (downloads, views, receipt confirmations, chat activity) are
also what dispute auto-triage reads, so they are recorded here rather than in
a separate analytics store.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.orm import Session

from models import ActorRole, RiftEvent

logger = logging.getLogger(__name__)


class RiftEventType(Enum):
    RIFT_CREATED = "RIFT_CREATED"
    STATUS_CHANGED = "STATUS_CHANGED"
    PAYMENT_CHARGED = "PAYMENT_CHARGED"
    PROOF_SUBMITTED = "PROOF_SUBMITTED"
    MILESTONE_RELEASED = "MILESTONE_RELEASED"
    MILESTONE_REVISION_REQUESTED = "MILESTONE_REVISION_REQUESTED"
    FUNDS_RELEASED = "FUNDS_RELEASED"
    PAYOUT_SCHEDULED = "PAYOUT_SCHEDULED"
    PAYOUT_COMPLETED = "PAYOUT_COMPLETED"
    PAYOUT_FAILED = "PAYOUT_FAILED"
    DISPUTE_OPENED = "DISPUTE_OPENED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"
    RECONCILIATION_NEEDED = "RECONCILIATION_NEEDED"
    RECONCILED = "RECONCILED"
    CHARGEBACK_RECORDED = "CHARGEBACK_RECORDED"
    PROCESSOR_REFUND_RECORDED = "PROCESSOR_REFUND_RECORDED"

    # Delivery facts
    BUYER_CONFIRMED_RECEIPT = "BUYER_CONFIRMED_RECEIPT"
    DELIVERY_VIEWED = "DELIVERY_VIEWED"
    FILE_DOWNLOADED = "FILE_DOWNLOADED"
    LICENSE_KEY_REVEALED = "LICENSE_KEY_REVEALED"
    CHAT_MESSAGE = "CHAT_MESSAGE"


# Facts a party may report through the API; everything else is system-written
CLIENT_REPORTABLE_EVENTS = frozenset({
    RiftEventType.BUYER_CONFIRMED_RECEIPT,
    RiftEventType.DELIVERY_VIEWED,
    RiftEventType.CHAT_MESSAGE,
})


def record_event(
    session: Session,
    rift_id: str,
    event_type: Union[RiftEventType, str],
    actor_id: Optional[str],
    actor_role: Union[ActorRole, str],
    payload: Optional[Dict[str, Any]] = None,
    created_at: Optional[datetime] = None,
) -> RiftEvent:
    """Append an event in the caller's unit of work"""
    event = RiftEvent(
        rift_id=rift_id,
        event_type=event_type.value if isinstance(event_type, RiftEventType) else str(event_type),
        actor_id=actor_id,
        actor_role=actor_role.value if isinstance(actor_role, ActorRole) else str(actor_role),
        payload=payload or {},
    )
    if created_at is not None:
        event.created_at = created_at
    session.add(event)
    logger.debug(f"📝 Rift event {event.event_type} on {rift_id} by {event.actor_role}:{actor_id}")
    return event


def get_events(
    session: Session,
    rift_id: str,
    event_types: Optional[List[RiftEventType]] = None,
    since: Optional[datetime] = None,
) -> List[RiftEvent]:
    query = session.query(RiftEvent).filter(RiftEvent.rift_id == rift_id)
    if event_types:
        query = query.filter(RiftEvent.event_type.in_([t.value for t in event_types]))
    if since is not None:
        query = query.filter(RiftEvent.created_at >= since)
    return query.order_by(RiftEvent.created_at, RiftEvent.id).all()


def event_to_dict(event: RiftEvent) -> Dict[str, Any]:
    return {
        "event_type": event.event_type,
        "actor_id": event.actor_id,
        "actor_role": event.actor_role,
        "payload": event.payload or {},
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }
