"""
Auto-release job
Releases rifts whose buyer review window expired without a release,
revision request or dispute. Each candidate goes through the normal
``release`` operation as SYSTEM, so status and window are re-validated
under the rift lock.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from config import Config
from database import managed_session
from models import ActorRole, ReconciliationState, Rift, RiftStatus
from jobs.job_result import JobRunResult
from services.rift_operations import RiftOperations
from services.rift_state_machine import SYSTEM_ACTOR_ID
from utils.exception_handler import (
    AlreadyProcessed, ConcurrentModification, InvalidTransition, PermissionDenied, RiftError, ValidationFailed,
)
from utils.helpers import utc_now

logger = logging.getLogger(__name__)

# Stored statuses (canonical and legacy) that can still be auto-released
AUTO_RELEASE_STATUSES = [
    RiftStatus.PROOF_SUBMITTED.value,
    RiftStatus.UNDER_REVIEW.value,
    RiftStatus.DELIVERED_PENDING_RELEASE.value,
]


def find_expired_review_windows(now: Optional[datetime] = None, limit: Optional[int] = None) -> List[str]:
    now = now or utc_now()
    with managed_session() as session:
        rows = (
            session.query(Rift.id)
            .filter(
                Rift.status.in_(AUTO_RELEASE_STATUSES),
                Rift.review_window_ends_at.isnot(None),
                Rift.review_window_ends_at <= now,
                Rift.reconciliation_state == ReconciliationState.NONE.value,
            )
            .order_by(Rift.review_window_ends_at)
            .limit(limit or Config.JOB_BATCH_SIZE)
            .all()
        )
        return [row.id for row in rows]


async def run_auto_release(operations: RiftOperations, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Release every rift whose review window has expired"""
    result = JobRunResult("auto_release")
    for rift_id in find_expired_review_windows(now):
        result.checked += 1
        try:
            snapshot = await operations.release(rift_id, SYSTEM_ACTOR_ID, ActorRole.SYSTEM)
            result.add_success(rift_id, snapshot.status)
            logger.info(f"⏰ AUTO_RELEASE: rift {rift_id} → {snapshot.status}")
        except (AlreadyProcessed, PermissionDenied, ValidationFailed, InvalidTransition, ConcurrentModification) as e:
            # Status moved under us (buyer released, dispute opened); next run re-reads
            result.add_skip(rift_id, e.message)
        except RiftError as e:
            result.add_failure(rift_id, e.message)
    result.log_summary()
    return result.to_dict()
