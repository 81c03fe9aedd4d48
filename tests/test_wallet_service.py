"""
Wallet ledger tests: sign conventions, idempotency keys and derived balances
"""

from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from database import ImmutableRecordError, managed_session
from models import LedgerEntry, LedgerEntryType
from services.wallet_service import WalletService, derive_balances
from utils.atomic_transactions import atomic_transaction
from utils.exception_handler import AlreadyProcessed, ValidationFailed
from utils.helpers import utc_now

USER = "seller-9"


def credit(session, amount, key, available_at=None):
    return WalletService.record_entry(
        session, user_id=USER, entry_type=LedgerEntryType.CREDIT_RELEASE, amount=Decimal(amount),
        currency="USD", idempotency_key=key, related_rift_id=None, available_at=available_at,
    )


def balance():
    with managed_session() as session:
        return WalletService.get_balance(session, USER, "USD")


class TestDeriveBalances:
    """Pure summation over entries"""

    def test_split_on_available_at(self):
        now = utc_now()
        entries = [
            SimpleNamespace(amount=Decimal("100.00"), available_at=now - timedelta(hours=1)),
            SimpleNamespace(amount=Decimal("-40.00"), available_at=now - timedelta(minutes=5)),
            SimpleNamespace(amount=Decimal("25.50"), available_at=now + timedelta(hours=48)),
        ]
        assert derive_balances(entries, now) == (Decimal("60.00"), Decimal("25.50"))

    def test_order_independent(self):
        now = utc_now()
        entries = [
            SimpleNamespace(amount=Decimal("10.10"), available_at=now),
            SimpleNamespace(amount=Decimal("-3.05"), available_at=now),
            SimpleNamespace(amount=Decimal("7.00"), available_at=now + timedelta(days=1)),
        ]
        assert derive_balances(entries, now) == derive_balances(list(reversed(entries)), now)

    def test_empty_wallet(self):
        assert derive_balances([]) == (Decimal("0.00"), Decimal("0.00"))


class TestSignedAmount:
    """Entry types carry their own sign"""

    def test_credits_positive_debits_negative(self):
        assert WalletService.signed_amount(LedgerEntryType.CREDIT_RELEASE, Decimal("-5")) == Decimal("5.00")
        assert WalletService.signed_amount(LedgerEntryType.CREDIT_REFUND, Decimal("5")) == Decimal("5.00")
        assert WalletService.signed_amount(LedgerEntryType.DEBIT_WITHDRAWAL, Decimal("5")) == Decimal("-5.00")
        assert WalletService.signed_amount(LedgerEntryType.DEBIT_CHARGEBACK, Decimal("5")) == Decimal("-5.00")

    def test_adjustment_keeps_sign(self):
        assert WalletService.signed_amount(LedgerEntryType.ADJUSTMENT, Decimal("-2.50")) == Decimal("-2.50")

    def test_zero_rejected(self):
        with pytest.raises(ValidationFailed):
            WalletService.signed_amount(LedgerEntryType.CREDIT_RELEASE, Decimal("0.004"))


class TestRecordEntry:
    """Append-only writes through the wallet"""

    def test_credit_and_balance(self):
        with atomic_transaction() as session:
            credit(session, "460.00", "r1:release")
        current = balance()
        assert current.available_balance == Decimal("460.00")
        assert current.pending_balance == Decimal("0.00")

    def test_duplicate_key_blocked(self):
        with atomic_transaction() as session:
            credit(session, "460.00", "r1:release")
        with pytest.raises(AlreadyProcessed):
            with atomic_transaction() as session:
                credit(session, "460.00", "r1:release")
        assert balance().available_balance == Decimal("460.00")
        with managed_session() as session:
            assert session.query(LedgerEntry).count() == 1

    def test_pending_credit_not_withdrawable(self):
        with atomic_transaction() as session:
            credit(session, "100.00", "r1:release", available_at=utc_now() + timedelta(hours=48))
        current = balance()
        assert current.available_balance == Decimal("0.00")
        assert current.pending_balance == Decimal("100.00")

        with pytest.raises(ValidationFailed) as exc:
            with atomic_transaction() as session:
                WalletService.record_entry(
                    session, user_id=USER, entry_type=LedgerEntryType.DEBIT_WITHDRAWAL, amount=Decimal("50"),
                    currency="USD", idempotency_key="w1",
                )
        assert exc.value.field == "amount"

    def test_withdrawal_within_available(self):
        with atomic_transaction() as session:
            credit(session, "100.00", "r1:release")
            WalletService.record_entry(
                session, user_id=USER, entry_type=LedgerEntryType.DEBIT_WITHDRAWAL, amount=Decimal("100.00"),
                currency="USD", idempotency_key="w1",
            )
        assert balance().available_balance == Decimal("0.00")

    def test_chargeback_may_go_negative(self):
        with atomic_transaction() as session:
            credit(session, "30.00", "r1:release")
            WalletService.record_entry(
                session, user_id=USER, entry_type=LedgerEntryType.DEBIT_CHARGEBACK, amount=Decimal("80.00"),
                currency="USD", idempotency_key="r1:chargeback:cb_1",
            )
        assert balance().available_balance == Decimal("-50.00")

    def test_wallets_are_per_currency(self):
        with atomic_transaction() as session:
            credit(session, "10.00", "usd-credit")
            WalletService.record_entry(
                session, user_id=USER, entry_type=LedgerEntryType.CREDIT_RELEASE, amount=Decimal("20.00"),
                currency="EUR", idempotency_key="eur-credit",
            )
        with managed_session() as session:
            eur = WalletService.get_balance(session, USER, "EUR")
        assert balance().available_balance == Decimal("10.00")
        assert eur.available_balance == Decimal("20.00")

    def test_unknown_wallet_is_empty(self):
        with managed_session() as session:
            empty = WalletService.get_balance(session, "nobody", "USD")
        assert empty.total_balance == Decimal("0.00")
        assert empty.to_dict()["available_balance"] == "0.00"


class TestAppendOnlyLedger:
    """Recorded entries are never rewritten or removed"""

    def test_entry_cannot_be_edited_or_deleted(self):
        with atomic_transaction() as session:
            entry_id = credit(session, "100.00", "r1:release").id

        with managed_session() as session:
            entry = session.get(LedgerEntry, entry_id)
            entry.amount = Decimal("999.00")
            with pytest.raises(ImmutableRecordError):
                session.flush()
            session.rollback()

            session.delete(session.get(LedgerEntry, entry_id))
            with pytest.raises(ImmutableRecordError):
                session.flush()
            session.rollback()

        with managed_session() as session:
            assert session.query(LedgerEntry).count() == 1
        assert balance().available_balance == Decimal("100.00")
