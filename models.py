"""
Rift Escrow Platform - Database Schema
======================================

Schema for the escrow core:
- Rift transactions and their milestones
- Proof-of-delivery vault assets and access log
- Append-only wallet ledger
- Disputes with evidence and admin action records
- Rift event timeline used for auditing and dispute auto-triage

Statuses and types are stored as their enum string values.
"""

from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON, LargeBinary
)
from sqlalchemy.orm import DeclarativeBase, relationship

from utils.helpers import utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class RiftStatus(Enum):
    """Rift lifecycle states (canonical values first, legacy aliases after)"""
    DRAFT = "DRAFT"
    FUNDED = "FUNDED"
    PROOF_SUBMITTED = "PROOF_SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    RELEASED = "RELEASED"
    PAYOUT_SCHEDULED = "PAYOUT_SCHEDULED"
    PAID_OUT = "PAID_OUT"
    DISPUTED = "DISPUTED"
    RESOLVED = "RESOLVED"
    CANCELED = "CANCELED"

    # Legacy statuses still present on older rows
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    AWAITING_SHIPMENT = "AWAITING_SHIPMENT"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED_PENDING_RELEASE = "DELIVERED_PENDING_RELEASE"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class RiftItemType(Enum):
    """What is being sold"""
    PHYSICAL = "PHYSICAL"
    DIGITAL = "DIGITAL"
    TICKETS = "TICKETS"
    SERVICES = "SERVICES"
    LICENSE_KEYS = "LICENSE_KEYS"


class ActorRole(Enum):
    """Role of the caller as supplied by the identity layer"""
    BUYER = "BUYER"
    SELLER = "SELLER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class ReconciliationState(Enum):
    NONE = "none"
    NEEDS_RECONCILIATION = "needs_reconciliation"


class PendingOperation(Enum):
    """External money movement started but not yet confirmed locally"""
    PAY = "pay"
    PAYOUT = "payout"


class VaultAssetType(Enum):
    FILE = "FILE"
    LICENSE_KEY = "LICENSE_KEY"
    TRACKING = "TRACKING"
    TICKET_PROOF = "TICKET_PROOF"
    URL = "URL"
    TEXT_INSTRUCTIONS = "TEXT_INSTRUCTIONS"


class ScanStatus(Enum):
    PENDING = "PENDING"
    PASS = "PASS"
    FAIL = "FAIL"


class LedgerEntryType(Enum):
    """Balance-affecting ledger events"""
    CREDIT_RELEASE = "CREDIT_RELEASE"
    CREDIT_REFUND = "CREDIT_REFUND"
    DEBIT_WITHDRAWAL = "DEBIT_WITHDRAWAL"
    DEBIT_CHARGEBACK = "DEBIT_CHARGEBACK"
    DEBIT_REFUND = "DEBIT_REFUND"
    ADJUSTMENT = "ADJUSTMENT"


class DisputeStatus(Enum):
    SUBMITTED = "submitted"
    NEEDS_INFO = "needs_info"
    UNDER_REVIEW = "under_review"
    RESOLVED_BUYER = "resolved_buyer"
    RESOLVED_SELLER = "resolved_seller"
    REJECTED = "rejected"


class DisputeReason(Enum):
    NOT_RECEIVED = "not_received"
    NOT_AS_DESCRIBED = "not_as_described"
    UNAUTHORIZED = "unauthorized"
    SELLER_NONRESPONSIVE = "seller_nonresponsive"
    OTHER = "other"


class DisputePriority(Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class EvidenceType(Enum):
    IMAGE = "image"
    PDF = "pdf"
    FILE = "file"
    TEXT = "text"
    LINK = "link"


# ============================================================================
# RIFT TRANSACTIONS
# ============================================================================

class Rift(Base):
    """One escrow-protected buyer/seller deal"""
    __tablename__ = "rifts"

    id = Column(String(40), primary_key=True)
    rift_number = Column(Integer, nullable=False, unique=True)

    buyer_id = Column(String(64), nullable=False)
    seller_id = Column(String(64), nullable=False)

    status = Column(String(40), nullable=False, default=RiftStatus.DRAFT.value)
    item_type = Column(String(20), nullable=False)
    currency = Column(String(10), nullable=False, default="USD")
    subtotal = Column(Numeric(38, 2), nullable=False)
    buyer_fee = Column(Numeric(38, 2), nullable=False, default=0)
    seller_fee_rate = Column(Numeric(10, 6), nullable=False)
    event_date_tz = Column(DateTime, nullable=True)  # tickets only, stored as naive UTC
    allows_partial_release = Column(Boolean, nullable=False, default=False)
    title = Column(String(255), nullable=True)

    # Optimistic lock counter, bumped on every status write
    version = Column(Integer, nullable=False, default=0)

    # External references
    charge_id = Column(String(128), nullable=True)
    payout_id = Column(String(128), nullable=True)

    # Dispute bookkeeping
    status_before_dispute = Column(String(40), nullable=True)
    resolution_outcome = Column(String(20), nullable=True)

    # Unknown-outcome external calls
    reconciliation_state = Column(String(30), nullable=False, default=ReconciliationState.NONE.value)
    pending_operation = Column(String(30), nullable=True)
    last_error = Column(Text, nullable=True)
    reconciliation_attempts = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)
    funded_at = Column(DateTime, nullable=True)
    proof_submitted_at = Column(DateTime, nullable=True)
    review_window_ends_at = Column(DateTime, nullable=True)
    released_at = Column(DateTime, nullable=True)
    payout_scheduled_at = Column(DateTime, nullable=True)
    paid_out_at = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)

    milestones = relationship(
        "Milestone", back_populates="rift", order_by="Milestone.index", cascade="all, delete-orphan"
    )
    vault_assets = relationship("VaultAsset", back_populates="rift", order_by="VaultAsset.created_at")
    disputes = relationship("Dispute", back_populates="rift", order_by="Dispute.submitted_at")
    digital_delivery = relationship("DigitalDelivery", back_populates="rift", uselist=False)

    __table_args__ = (
        CheckConstraint("subtotal > 0", name="ck_rift_subtotal_positive"),
        CheckConstraint("buyer_fee >= 0", name="ck_rift_buyer_fee_non_negative"),
        CheckConstraint("seller_fee_rate >= 0 AND seller_fee_rate < 1", name="ck_rift_seller_fee_rate_range"),
        CheckConstraint("buyer_id != seller_id", name="ck_rift_distinct_parties"),
        Index("ix_rifts_status", "status"),
        Index("ix_rifts_buyer", "buyer_id"),
        Index("ix_rifts_seller", "seller_id"),
        Index("ix_rifts_review_window", "status", "review_window_ends_at"),
        Index("ix_rifts_reconciliation", "reconciliation_state"),
    )

    def __repr__(self):
        return f"<Rift(id={self.id}, number={self.rift_number}, status={self.status})>"


class Milestone(Base):
    """Independently releasable slice of a rift subtotal"""
    __tablename__ = "rift_milestones"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rift_id = Column(String(40), ForeignKey("rifts.id"), nullable=False)
    index = Column(Integer, nullable=False)
    title = Column(String(255), nullable=False, default="")
    amount = Column(Numeric(38, 2), nullable=False)
    released = Column(Boolean, nullable=False, default=False)
    release_date = Column(DateTime, nullable=True)
    review_window_ends_at = Column(DateTime, nullable=True)
    revision_requests = Column(Integer, nullable=False, default=0)
    revision_limit = Column(Integer, nullable=False, default=1)

    rift = relationship("Rift", back_populates="milestones")

    __table_args__ = (
        UniqueConstraint("rift_id", "index", name="uq_milestone_rift_index"),
        CheckConstraint("amount > 0", name="ck_milestone_amount_positive"),
        CheckConstraint("revision_requests <= revision_limit", name="ck_milestone_revision_limit"),
    )

    def __repr__(self):
        return f"<Milestone(rift_id={self.rift_id}, index={self.index}, released={self.released})>"


class RiftEvent(Base):
    """Append-only rift timeline entry"""
    __tablename__ = "rift_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rift_id = Column(String(40), ForeignKey("rifts.id"), nullable=False)
    actor_id = Column(String(64), nullable=True)
    actor_role = Column(String(20), nullable=False)
    event_type = Column(String(60), nullable=False)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_rift_events_rift", "rift_id", "created_at"),
        Index("ix_rift_events_type", "event_type"),
    )


# ============================================================================
# VAULT
# ============================================================================

class VaultAsset(Base):
    """Proof-of-delivery asset attached to a rift"""
    __tablename__ = "vault_assets"

    id = Column(String(40), primary_key=True)
    rift_id = Column(String(40), ForeignKey("rifts.id"), nullable=False)
    asset_type = Column(String(30), nullable=False)
    uploader_id = Column(String(64), nullable=False)

    asset_ref = Column(String(512), nullable=True)  # blob store reference for files
    file_name = Column(String(255), nullable=True)
    sha256 = Column(String(64), nullable=True)
    content_text = Column(Text, nullable=True)  # tracking numbers, URLs, instructions
    secret_ciphertext = Column(LargeBinary, nullable=True)  # license keys, Fernet token

    scan_status = Column(String(10), nullable=False, default=ScanStatus.PENDING.value)
    is_revealed = Column(Boolean, nullable=False, default=False)
    revealed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    rift = relationship("Rift", back_populates="vault_assets")

    __table_args__ = (
        Index("ix_vault_assets_rift", "rift_id"),
    )


class VaultEvent(Base):
    """Access log for vault listing and reveals"""
    __tablename__ = "vault_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rift_id = Column(String(40), ForeignKey("rifts.id"), nullable=False)
    asset_id = Column(String(40), ForeignKey("vault_assets.id"), nullable=True)
    actor_id = Column(String(64), nullable=False)
    actor_role = Column(String(20), nullable=False)
    event_type = Column(String(40), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_vault_events_asset", "asset_id", "event_type"),
    )


class DigitalDelivery(Base):
    """First digital file delivered for a rift"""
    __tablename__ = "digital_deliveries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rift_id = Column(String(40), ForeignKey("rifts.id"), nullable=False, unique=True)
    asset_id = Column(String(40), ForeignKey("vault_assets.id"), nullable=False)
    uploaded_at = Column(DateTime, nullable=False, default=utc_now)

    rift = relationship("Rift", back_populates="digital_delivery")


# ============================================================================
# WALLET LEDGER
# ============================================================================

class Wallet(Base):
    """User wallet per currency; balances are derived from ledger entries"""
    __tablename__ = "wallets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    currency = Column(String(10), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    entries = relationship("LedgerEntry", back_populates="wallet", order_by="LedgerEntry.id")

    __table_args__ = (
        UniqueConstraint("user_id", "currency", name="uq_wallet_user_currency"),
    )

    def __repr__(self):
        return f"<Wallet(user_id={self.user_id}, currency={self.currency})>"


class LedgerEntry(Base):
    """Append-only balance event; never updated or deleted"""
    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_id = Column(Integer, ForeignKey("wallets.id"), nullable=False)
    user_id = Column(String(64), nullable=False)
    entry_type = Column(String(30), nullable=False)
    amount = Column(Numeric(38, 2), nullable=False)  # signed
    currency = Column(String(10), nullable=False)
    related_rift_id = Column(String(40), ForeignKey("rifts.id"), nullable=True)
    idempotency_key = Column(String(160), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    available_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    wallet = relationship("Wallet", back_populates="entries")

    __table_args__ = (
        CheckConstraint("amount != 0", name="ck_ledger_amount_non_zero"),
        Index("ix_ledger_wallet", "wallet_id", "available_at"),
        Index("ix_ledger_rift", "related_rift_id"),
    )

    def __repr__(self):
        return f"<LedgerEntry(user_id={self.user_id}, type={self.entry_type}, amount={self.amount})>"


# ============================================================================
# DISPUTES
# ============================================================================

class Dispute(Base):
    """Dispute attached to a rift"""
    __tablename__ = "disputes"

    id = Column(String(40), primary_key=True)
    rift_id = Column(String(40), ForeignKey("rifts.id"), nullable=False)
    opened_by = Column(String(64), nullable=False)
    opened_by_role = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=DisputeStatus.SUBMITTED.value)
    reason = Column(String(40), nullable=False)
    summary = Column(Text, nullable=False)
    sworn_declaration = Column(Boolean, nullable=False, default=False)
    declaration_text = Column(String(100), nullable=False)
    category_snapshot = Column(JSON, nullable=True)
    priority = Column(String(10), nullable=False, default=DisputePriority.NORMAL.value)
    flags = Column(JSON, nullable=True)
    auto_triage = Column(JSON, nullable=True)

    submitted_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)
    resolved_at = Column(DateTime, nullable=True)

    rift = relationship("Rift", back_populates="disputes")
    evidence = relationship("DisputeEvidence", back_populates="dispute", order_by="DisputeEvidence.id")
    actions = relationship("DisputeAction", back_populates="dispute", order_by="DisputeAction.id")

    __table_args__ = (
        Index("ix_disputes_rift", "rift_id"),
        Index("ix_disputes_status", "status"),
        Index("ix_disputes_opened_by", "opened_by", "submitted_at"),
    )

    def __repr__(self):
        return f"<Dispute(rift_id={self.rift_id}, status={self.status}, reason={self.reason})>"


class DisputeEvidence(Base):
    """Evidence item supplied by a dispute party"""
    __tablename__ = "dispute_evidence"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dispute_id = Column(String(40), ForeignKey("disputes.id"), nullable=False)
    evidence_type = Column(String(10), nullable=False)
    submitted_by = Column(String(64), nullable=False)
    text_content = Column(Text, nullable=True)
    asset_ref = Column(String(512), nullable=True)
    file_name = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    dispute = relationship("Dispute", back_populates="evidence")


class DisputeAction(Base):
    """Immutable admin action record"""
    __tablename__ = "dispute_actions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dispute_id = Column(String(40), ForeignKey("disputes.id"), nullable=False)
    actor_id = Column(String(64), nullable=False)
    actor_role = Column(String(20), nullable=False)
    action_type = Column(String(40), nullable=False)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    dispute = relationship("Dispute", back_populates="actions")
