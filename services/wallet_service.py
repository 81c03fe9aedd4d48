"""
Wallet ledger service.

Balances are never stored. ``available_balance`` and ``pending_balance`` are
sums over the wallet's append-only ``LedgerEntry`` rows, split on each entry's
``available_at``. Writers call into this module inside the same atomic unit
as the status transition that caused the money movement.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from config import Config
from models import LedgerEntry, LedgerEntryType, Wallet
from utils.atomic_transactions import locked_wallet
from utils.exception_handler import AlreadyProcessed, ValidationFailed
from utils.helpers import quantize_money, to_decimal, utc_now

logger = logging.getLogger(__name__)

CREDIT_TYPES = frozenset({LedgerEntryType.CREDIT_RELEASE, LedgerEntryType.CREDIT_REFUND})
DEBIT_TYPES = frozenset({
    LedgerEntryType.DEBIT_WITHDRAWAL,
    LedgerEntryType.DEBIT_CHARGEBACK,
    LedgerEntryType.DEBIT_REFUND,
})


@dataclass(frozen=True)
class WalletBalance:
    user_id: str
    currency: str
    available_balance: Decimal
    pending_balance: Decimal

    @property
    def total_balance(self) -> Decimal:
        return self.available_balance + self.pending_balance

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "currency": self.currency,
            "available_balance": str(self.available_balance),
            "pending_balance": str(self.pending_balance),
            "total_balance": str(self.total_balance),
        }


def derive_balances(entries: Iterable[LedgerEntry], now: Optional[datetime] = None):
    """Pure (available, pending) summation over ledger entries, order-independent"""
    now = now or utc_now()
    available = Decimal("0")
    pending = Decimal("0")
    for entry in entries:
        if entry.available_at <= now:
            available += to_decimal(entry.amount)
        else:
            pending += to_decimal(entry.amount)
    return quantize_money(available), quantize_money(pending)


class WalletService:
    """Append-only ledger writes and balance derivation"""

    @classmethod
    def signed_amount(cls, entry_type: LedgerEntryType, amount: Decimal) -> Decimal:
        """Apply the sign convention of the entry type to a magnitude"""
        value = quantize_money(amount)
        if value == 0:
            raise ValidationFailed("amount", "ledger entries must be non-zero")
        if entry_type in CREDIT_TYPES:
            return abs(value)
        if entry_type in DEBIT_TYPES:
            return -abs(value)
        return value  # ADJUSTMENT keeps the caller's sign

    @classmethod
    def record_entry(
        cls,
        session: Session,
        user_id: str,
        entry_type: LedgerEntryType,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        related_rift_id: Optional[str] = None,
        description: Optional[str] = None,
        available_at: Optional[datetime] = None,
    ) -> LedgerEntry:
        """
        Append one ledger entry.

        ``idempotency_key`` is unique in the store; a second write with the same
        key raises ``AlreadyProcessed`` instead of double-crediting.
        DEBIT_WITHDRAWAL requires enough available balance; chargebacks and
        refunds may drive the balance negative.
        """
        existing = session.query(LedgerEntry.id).filter(LedgerEntry.idempotency_key == idempotency_key).first()
        if existing is not None:
            logger.warning(f"⚠️ Duplicate ledger write blocked: {idempotency_key}")
            raise AlreadyProcessed(related_rift_id or user_id, idempotency_key)

        signed = cls.signed_amount(entry_type, amount)
        wallet = locked_wallet(user_id, currency, session)
        now = utc_now()

        if entry_type == LedgerEntryType.DEBIT_WITHDRAWAL:
            available, _ = cls._sum_wallet(session, wallet.id, now)
            if available + signed < 0:
                raise ValidationFailed(
                    "amount", f"insufficient available balance ({available} {currency}) for withdrawal of {abs(signed)}"
                )

        entry = LedgerEntry(
            wallet_id=wallet.id,
            user_id=user_id,
            entry_type=entry_type.value,
            amount=signed,
            currency=currency,
            related_rift_id=related_rift_id,
            idempotency_key=idempotency_key,
            description=description,
            available_at=available_at or now,
            created_at=now,
        )
        session.add(entry)
        session.flush()
        logger.info(
            f"📒 LEDGER: {entry_type.value} {signed} {currency} for user {user_id}"
            + (f" (rift {related_rift_id})" if related_rift_id else "")
        )
        return entry

    @classmethod
    def credit_release(
        cls, session: Session, seller_id: str, amount: Decimal, currency: str, rift_id: str, key_suffix: str = "release"
    ) -> LedgerEntry:
        """Seller credit for released funds; pending until the payout hold passes"""
        return cls.record_entry(
            session,
            user_id=seller_id,
            entry_type=LedgerEntryType.CREDIT_RELEASE,
            amount=amount,
            currency=currency,
            idempotency_key=f"{rift_id}:{key_suffix}",
            related_rift_id=rift_id,
            description=f"Funds released for rift {rift_id}",
            available_at=utc_now() + timedelta(hours=Config.PAYOUT_HOLD_HOURS),
        )

    @classmethod
    def credit_refund(cls, session: Session, buyer_id: str, amount: Decimal, currency: str, rift_id: str) -> LedgerEntry:
        return cls.record_entry(
            session,
            user_id=buyer_id,
            entry_type=LedgerEntryType.CREDIT_REFUND,
            amount=amount,
            currency=currency,
            idempotency_key=f"{rift_id}:refund",
            related_rift_id=rift_id,
            description=f"Dispute refund for rift {rift_id}",
        )

    @classmethod
    def _sum_wallet(cls, session: Session, wallet_id: int, now: datetime):
        available_sum = func.coalesce(
            func.sum(case((LedgerEntry.available_at <= now, LedgerEntry.amount), else_=0)), 0
        )
        pending_sum = func.coalesce(
            func.sum(case((LedgerEntry.available_at > now, LedgerEntry.amount), else_=0)), 0
        )
        available, pending = session.query(available_sum, pending_sum).filter(
            LedgerEntry.wallet_id == wallet_id
        ).one()
        return quantize_money(available), quantize_money(pending)

    @classmethod
    def get_balance(cls, session: Session, user_id: str, currency: str, now: Optional[datetime] = None) -> WalletBalance:
        """Derive balances from the ledger; no locks taken"""
        now = now or utc_now()
        wallet = session.query(Wallet).filter(Wallet.user_id == user_id, Wallet.currency == currency).first()
        if wallet is None:
            return WalletBalance(user_id, currency, Decimal("0.00"), Decimal("0.00"))
        available, pending = cls._sum_wallet(session, wallet.id, now)
        return WalletBalance(user_id, currency, available, pending)

    @classmethod
    def get_entries(
        cls, session: Session, user_id: str, currency: Optional[str] = None, rift_id: Optional[str] = None
    ) -> List[LedgerEntry]:
        query = session.query(LedgerEntry).filter(LedgerEntry.user_id == user_id)
        if currency:
            query = query.filter(LedgerEntry.currency == currency)
        if rift_id:
            query = query.filter(LedgerEntry.related_rift_id == rift_id)
        return query.order_by(LedgerEntry.id).all()

    @classmethod
    def get_rift_entries(cls, session: Session, rift_id: str) -> List[LedgerEntry]:
        return (
            session.query(LedgerEntry)
            .filter(LedgerEntry.related_rift_id == rift_id)
            .order_by(LedgerEntry.id)
            .all()
        )


def entry_to_dict(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "user_id": entry.user_id,
        "type": entry.entry_type,
        "amount": str(entry.amount),
        "currency": entry.currency,
        "related_rift_id": entry.related_rift_id,
        "description": entry.description,
        "available_at": entry.available_at.isoformat() if entry.available_at else None,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
