"""
Reconciliation job
Retries rifts flagged ``needs_reconciliation`` plus pending pay/payout
markers that outlived ``RECONCILIATION_STALE_MINUTES`` (a crash between the
external call and the local commit). The retry reuses the original
idempotency key, so the processor returns the first outcome instead of
charging or paying again.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_

from config import Config
from database import managed_session
from models import ActorRole, ReconciliationState, Rift
from jobs.job_result import JobRunResult
from services.rift_operations import RiftOperations
from services.rift_state_machine import SYSTEM_ACTOR_ID
from utils.exception_handler import ExternalServiceError, RiftError
from utils.helpers import utc_now

logger = logging.getLogger(__name__)


def find_reconciliation_candidates(now: Optional[datetime] = None, limit: Optional[int] = None) -> List[str]:
    now = now or utc_now()
    stale_before = now - timedelta(minutes=Config.RECONCILIATION_STALE_MINUTES)
    with managed_session() as session:
        rows = (
            session.query(Rift.id)
            .filter(
                Rift.reconciliation_attempts < Config.MAX_RECONCILIATION_ATTEMPTS,
                or_(
                    and_(
                        Rift.reconciliation_state == ReconciliationState.NEEDS_RECONCILIATION.value,
                        Rift.pending_operation.isnot(None),
                    ),
                    and_(
                        Rift.pending_operation.isnot(None),
                        Rift.updated_at <= stale_before,
                    ),
                ),
            )
            .order_by(Rift.updated_at)
            .limit(limit or Config.JOB_BATCH_SIZE)
            .all()
        )
        return [row.id for row in rows]


async def run_reconciliation(operations: RiftOperations, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Repeat unconfirmed external calls for flagged rifts"""
    result = JobRunResult("reconciliation")
    for rift_id in find_reconciliation_candidates(now):
        result.checked += 1
        try:
            snapshot = await operations.reconcile(rift_id, SYSTEM_ACTOR_ID, ActorRole.SYSTEM)
            if snapshot.reconciliation_state == ReconciliationState.NONE.value:
                result.add_success(rift_id, snapshot.status)
                logger.info(f"✅ RECONCILED: rift {rift_id} now {snapshot.status}")
            else:
                result.add_skip(rift_id, snapshot.last_error or "manual reconciliation required")
        except ExternalServiceError as e:
            result.add_failure(rift_id, f"{e.service} still failing: {e.message}")
        except RiftError as e:
            result.add_failure(rift_id, e.message)

    with managed_session() as session:
        exhausted = (
            session.query(Rift.id)
            .filter(
                Rift.reconciliation_state == ReconciliationState.NEEDS_RECONCILIATION.value,
                Rift.reconciliation_attempts >= Config.MAX_RECONCILIATION_ATTEMPTS,
            )
            .count()
        )
    if exhausted:
        logger.error(f"🚨 {exhausted} rift(s) exhausted automatic reconciliation and need manual review")

    result.log_summary()
    return result.to_dict()
