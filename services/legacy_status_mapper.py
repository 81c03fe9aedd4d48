"""
Legacy Status Mapping System
Maps legacy rift statuses (AWAITING_PAYMENT, IN_TRANSIT, ...) onto the
canonical lifecycle so permission checks see one status vocabulary.
"""

from typing import Any, Dict, Set, Union
import logging

from models import RiftStatus

logger = logging.getLogger(__name__)


class LegacyStatusMapper:
    """
    Mapping from every stored rift status to its canonical status.
    Canonical statuses map to themselves; legacy values are read-only inputs
    and are never written back.
    """

    CANONICAL_STATUSES: Set[RiftStatus] = {
        RiftStatus.DRAFT,
        RiftStatus.FUNDED,
        RiftStatus.PROOF_SUBMITTED,
        RiftStatus.UNDER_REVIEW,
        RiftStatus.RELEASED,
        RiftStatus.PAYOUT_SCHEDULED,
        RiftStatus.PAID_OUT,
        RiftStatus.DISPUTED,
        RiftStatus.RESOLVED,
        RiftStatus.CANCELED,
    }

    LEGACY_TO_CANONICAL: Dict[RiftStatus, RiftStatus] = {
        # Pre-funding
        RiftStatus.AWAITING_PAYMENT: RiftStatus.DRAFT,
        # Funded, awaiting delivery
        RiftStatus.AWAITING_SHIPMENT: RiftStatus.FUNDED,
        RiftStatus.IN_TRANSIT: RiftStatus.FUNDED,
        # Delivered, buyer reviewing
        RiftStatus.DELIVERED_PENDING_RELEASE: RiftStatus.PROOF_SUBMITTED,
        # Terminal
        RiftStatus.REFUNDED: RiftStatus.RESOLVED,
        RiftStatus.CANCELLED: RiftStatus.CANCELED,
    }

    TERMINAL_STATUSES: Set[RiftStatus] = {
        RiftStatus.RELEASED,
        RiftStatus.PAYOUT_SCHEDULED,
        RiftStatus.PAID_OUT,
        RiftStatus.RESOLVED,
        RiftStatus.CANCELED,
    }

    @classmethod
    def parse(cls, status: Union[str, RiftStatus]) -> RiftStatus:
        """Accept an enum member, its value, or its name in any case"""
        if isinstance(status, RiftStatus):
            return status
        if status is None:
            raise ValueError("Rift status is required")
        try:
            return RiftStatus(str(status).strip().upper())
        except ValueError:
            logger.error(f"Unknown rift status: {status!r}")
            raise ValueError(f"Unknown rift status: {status!r}")

    @classmethod
    def to_canonical(cls, status: Union[str, RiftStatus]) -> RiftStatus:
        parsed = cls.parse(status)
        return cls.LEGACY_TO_CANONICAL.get(parsed, parsed)

    @classmethod
    def is_legacy(cls, status: Union[str, RiftStatus]) -> bool:
        return cls.parse(status) in cls.LEGACY_TO_CANONICAL

    @classmethod
    def is_terminal_status(cls, status: Union[str, RiftStatus]) -> bool:
        """Funds already left escrow (released) or the rift closed for good"""
        return cls.to_canonical(status) in cls.TERMINAL_STATUSES

    @classmethod
    def validate_mapping_completeness(cls) -> Dict[str, Any]:
        """Every RiftStatus member must be canonical or have a canonical alias"""
        covered = cls.CANONICAL_STATUSES | set(cls.LEGACY_TO_CANONICAL)
        unmapped = [s.value for s in RiftStatus if s not in covered]
        bad_targets = [
            legacy.value
            for legacy, target in cls.LEGACY_TO_CANONICAL.items()
            if target not in cls.CANONICAL_STATUSES
        ]
        report = {
            "total_statuses": len(RiftStatus),
            "canonical_count": len(cls.CANONICAL_STATUSES),
            "legacy_count": len(cls.LEGACY_TO_CANONICAL),
            "unmapped_statuses": unmapped,
            "non_canonical_targets": bad_targets,
            "validation_passed": not unmapped and not bad_targets,
        }
        if not report["validation_passed"]:
            logger.error(f"❌ Legacy status mapping incomplete: {report}")
        return report
