"""
Payout job
Schedules payouts for RELEASED rifts whose seller credits are available,
then polls the processor for PAYOUT_SCHEDULED rifts until they settle.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from config import Config
from database import managed_session
from models import ActorRole, PendingOperation, ReconciliationState, Rift, RiftStatus
from jobs.job_result import JobRunResult
from services.rift_operations import RiftOperations
from services.rift_state_machine import SYSTEM_ACTOR_ID
from utils.exception_handler import (
    AlreadyProcessed, ConcurrentModification, ExternalServiceError, PermissionDenied, RiftError, ValidationFailed,
)

logger = logging.getLogger(__name__)


def _rift_ids(status: RiftStatus, limit: Optional[int] = None) -> List[str]:
    with managed_session() as session:
        rows = (
            session.query(Rift.id)
            .filter(
                Rift.status == status.value,
                Rift.reconciliation_state == ReconciliationState.NONE.value,
                Rift.pending_operation.is_(None),
            )
            .order_by(Rift.updated_at)
            .limit(limit or Config.JOB_BATCH_SIZE)
            .all()
        )
        return [row.id for row in rows]


async def schedule_pending_payouts(operations: RiftOperations) -> Dict[str, Any]:
    result = JobRunResult("payout_schedule")
    for rift_id in _rift_ids(RiftStatus.RELEASED):
        result.checked += 1
        try:
            snapshot = await operations.schedule_payout(rift_id, SYSTEM_ACTOR_ID, ActorRole.SYSTEM)
            result.add_success(rift_id, snapshot.payout_id or "")
        except ValidationFailed as e:
            # Credit still pending or balance short; retried next run
            result.add_skip(rift_id, e.message)
        except (AlreadyProcessed, PermissionDenied, ConcurrentModification) as e:
            result.add_skip(rift_id, e.message)
        except ExternalServiceError as e:
            # Rift already flagged for reconciliation
            result.add_failure(rift_id, e.message)
        except RiftError as e:
            result.add_failure(rift_id, e.message)
    result.log_summary()
    return result.to_dict()


async def poll_scheduled_payouts(operations: RiftOperations) -> Dict[str, Any]:
    result = JobRunResult("payout_poll")
    for rift_id in _rift_ids(RiftStatus.PAYOUT_SCHEDULED):
        result.checked += 1
        try:
            snapshot = await operations.confirm_payout(rift_id, SYSTEM_ACTOR_ID, ActorRole.SYSTEM)
            if snapshot.status == RiftStatus.PAYOUT_SCHEDULED.value:
                result.add_skip(rift_id, "payout still pending" if snapshot.reconciliation_state ==
                                ReconciliationState.NONE.value else "payout failed")
            else:
                result.add_success(rift_id, snapshot.status)
        except (PermissionDenied, ConcurrentModification) as e:
            result.add_skip(rift_id, e.message)
        except RiftError as e:
            result.add_failure(rift_id, e.message)
    result.log_summary()
    return result.to_dict()


async def run_payouts(operations: RiftOperations) -> Dict[str, Any]:
    """Schedule new payouts, then confirm the ones already sent"""
    scheduled = await schedule_pending_payouts(operations)
    polled = await poll_scheduled_payouts(operations)
    return {"scheduled": scheduled, "polled": polled}
