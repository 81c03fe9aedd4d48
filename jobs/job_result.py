"""Result object shared by the background jobs"""

import logging
from datetime import datetime
from typing import Any, Dict, List

from utils.helpers import utc_now

logger = logging.getLogger(__name__)


class JobRunResult:
    """Counters and per-rift outcomes for one job run"""

    def __init__(self, job_name: str):
        self.job_name = job_name
        self.started_at: datetime = utc_now()
        self.checked = 0
        self.succeeded = 0
        self.skipped = 0
        self.failed = 0
        self.outcomes: List[Dict[str, Any]] = []

    def add_success(self, rift_id: str, detail: str = ""):
        self.succeeded += 1
        self.outcomes.append({"rift_id": rift_id, "outcome": "ok", "detail": detail})

    def add_skip(self, rift_id: str, reason: str):
        self.skipped += 1
        self.outcomes.append({"rift_id": rift_id, "outcome": "skipped", "detail": reason})
        logger.debug(f"{self.job_name}: skipped {rift_id} ({reason})")

    def add_failure(self, rift_id: str, error: str):
        self.failed += 1
        self.outcomes.append({"rift_id": rift_id, "outcome": "failed", "detail": error})
        logger.error(f"❌ {self.job_name}: {rift_id} failed: {error}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job_name,
            "checked": self.checked,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "duration_ms": int((utc_now() - self.started_at).total_seconds() * 1000),
            "outcomes": self.outcomes,
        }

    def log_summary(self):
        if self.checked == 0:
            logger.debug(f"{self.job_name}: nothing to do")
            return
        logger.info(
            f"📊 {self.job_name}: checked={self.checked} ok={self.succeeded} "
            f"skipped={self.skipped} failed={self.failed}"
        )
