"""
Shared fixtures for the Rift escrow test suite.

Key Components:
1. In-memory SQLite database, rebuilt for every test
2. Fake payment processor and blob store with scriptable outcomes
3. ``RiftDriver`` that walks a rift through its lifecycle in one call
4. Direct field overrides for clock-dependent scenarios (expired windows, past events)
"""

import os

# Must be set before config/database are imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ["VAULT_ENCRYPTION_KEY"] = "test-vault-passphrase"
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["EXTERNAL_RETRY_BASE_DELAY"] = "0"
os.environ["PAYOUT_HOLD_HOURS"] = "0"
os.environ["SELLER_FEE_RATE"] = "0.08"
os.environ["BUYER_FEE_RATE"] = "0"

import asyncio
import base64
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy import update

from database import create_tables, drop_tables
from models import Milestone, Rift
from services.external_services import BlobStore, PaymentProcessor, PayoutStatus
from services.rift_operations import RiftOperations
from utils.atomic_transactions import atomic_transaction
from utils.helpers import utc_now
from utils.rift_locks import RiftLockRegistry
from utils.vault_encryption import VaultEncryption

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

BUYER_ID = "buyer-1"
SELLER_ID = "seller-1"
ADMIN_ID = "admin-1"
SYSTEM_ID = "system"

LONG_SUMMARY = (
    "I paid for the digital download on the day the rift was created and the seller marked the "
    "delivery as uploaded, but the file link in the vault never opened for me and the seller has "
    "not answered any of my messages since. I am asking for my money back because I never got it."
)


class FakePaymentProcessor(PaymentProcessor):
    """Records every call; outcomes are set per test"""

    def __init__(self):
        self.charges: List[Dict[str, Any]] = []
        self.payouts: List[Dict[str, Any]] = []
        self.charge_error: Optional[Exception] = None
        self.charge_delay: float = 0
        self.payout_error: Optional[Exception] = None
        self.payout_result = PayoutStatus.PENDING

    async def charge(self, user_id: str, amount: Decimal, currency: str, idempotency_key: str) -> str:
        self.charges.append({"user_id": user_id, "amount": amount, "currency": currency, "key": idempotency_key})
        if self.charge_delay:
            await asyncio.sleep(self.charge_delay)
        if self.charge_error:
            raise self.charge_error
        return f"ch_{idempotency_key}"

    async def payout(self, user_id: str, amount: Decimal, currency: str, idempotency_key: str) -> str:
        self.payouts.append({"user_id": user_id, "amount": amount, "currency": currency, "key": idempotency_key})
        if self.payout_error:
            raise self.payout_error
        return f"po_{idempotency_key}"

    async def payout_status(self, payout_id: str) -> PayoutStatus:
        return self.payout_result


class FakeBlobStore(BlobStore):
    """Keeps uploaded bytes in memory"""

    def __init__(self):
        self.assets: Dict[str, bytes] = {}
        self.metadata: Dict[str, Dict[str, Any]] = {}

    async def put_asset(self, data: bytes, metadata: Dict[str, Any]) -> str:
        asset_ref = f"blob-{len(self.assets) + 1}"
        self.assets[asset_ref] = data
        self.metadata[asset_ref] = metadata
        return asset_ref

    async def signed_url(self, asset_ref: str, ttl: int) -> str:
        return f"https://blobs.test/{asset_ref}?ttl={ttl}"


def file_asset(content: bytes = b"%PDF-1.4 ebook", file_name: str = "ebook.pdf", asset_type: str = "FILE") -> Dict:
    return {
        "asset_type": asset_type,
        "file_name": file_name,
        "content_type": "application/pdf",
        "content_base64": base64.b64encode(content).decode("ascii"),
    }


def license_asset(secret: str = "ABCD-EFGH-IJKL-MNOP") -> Dict:
    return {"asset_type": "LICENSE_KEY", "secret": secret}


def text_evidence(count: int = 2) -> List[Dict]:
    return [{"type": "text", "text": f"Chat transcript part {i + 1}: seller never sent the file"} for i in range(count)]


def dispute_payload(reason: str = "not_received", evidence: Optional[List[Dict]] = None, **overrides) -> Dict:
    payload = {
        "reason": reason,
        "summary": LONG_SUMMARY,
        "sworn_declaration": True,
        "declaration_text": "I CONFIRM",
        "evidence": text_evidence() if evidence is None else evidence,
    }
    payload.update(overrides)
    return payload


def force_rift_fields(rift_id: str, **fields):
    """Write fields straight to the row, bypassing the state machine"""
    with atomic_transaction() as session:
        session.execute(update(Rift).where(Rift.id == rift_id).values(**fields))


def expire_review_window(rift_id: str, hours_ago: int = 1):
    past = utc_now() - timedelta(hours=hours_ago)
    with atomic_transaction() as session:
        session.execute(update(Rift).where(Rift.id == rift_id).values(review_window_ends_at=past))
        session.execute(
            update(Milestone)
            .where(Milestone.rift_id == rift_id, Milestone.review_window_ends_at.isnot(None))
            .values(review_window_ends_at=past)
        )


class RiftDriver:
    """Walks rifts through the lifecycle as the real parties would"""

    def __init__(self, operations: RiftOperations):
        self.ops = operations

    async def create(self, item_type: str = "DIGITAL", subtotal: str = "500.00", **extra):
        payload = {"seller_id": SELLER_ID, "item_type": item_type, "subtotal": subtotal, "currency": "USD"}
        if item_type == "TICKETS" and "event_date" not in extra:
            extra["event_date"] = (utc_now() + timedelta(days=7)).isoformat()
        payload.update(extra)
        return await self.ops.create_rift(BUYER_ID, "BUYER", payload)

    async def funded(self, item_type: str = "DIGITAL", subtotal: str = "500.00", **extra):
        snapshot = await self.create(item_type, subtotal, **extra)
        return await self.ops.pay(snapshot.id, BUYER_ID, "BUYER")

    async def with_proof(self, item_type: str = "DIGITAL", subtotal: str = "500.00", assets=None, **extra):
        snapshot = await self.funded(item_type, subtotal, **extra)
        if assets is None:
            assets = [license_asset()] if item_type == "LICENSE_KEYS" else [file_asset()]
        return await self.ops.upload_proof(snapshot.id, SELLER_ID, "SELLER", {"assets": assets})

    async def released(self, item_type: str = "DIGITAL", subtotal: str = "500.00", **extra):
        snapshot = await self.with_proof(item_type, subtotal, **extra)
        return await self.ops.release(snapshot.id, BUYER_ID, "BUYER")

    async def disputed(self, item_type: str = "DIGITAL", subtotal: str = "500.00", proof: bool = True, **extra):
        if proof:
            snapshot = await self.with_proof(item_type, subtotal, **extra)
        else:
            snapshot = await self.funded(item_type, subtotal, **extra)
        return await self.ops.open_dispute(snapshot.id, BUYER_ID, "BUYER", dispute_payload())


@pytest.fixture(autouse=True)
def fresh_database():
    """Every test starts from empty tables"""
    drop_tables()
    create_tables()
    yield
    drop_tables()


@pytest.fixture
def processor():
    return FakePaymentProcessor()


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def operations(processor, blob_store):
    return RiftOperations(
        processor,
        blob_store,
        encryption=VaultEncryption("test-vault-passphrase"),
        locks=RiftLockRegistry(),
    )


@pytest_asyncio.fixture
async def driver(operations):
    return RiftDriver(operations)
