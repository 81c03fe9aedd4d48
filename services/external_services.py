"""
External collaborator contracts and their HTTP adapters.

The core only depends on ``PaymentProcessor`` and ``BlobStore``. Both calls
that move money take an idempotency key of the form ``"{rift_id}:{action}"``
so a retried or reconciled call never charges or pays twice.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from services.api_adapter_retry import APIAdapterRetry
from utils.exception_handler import ExternalServiceError

logger = logging.getLogger(__name__)


class PayoutStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class PaymentProcessor(ABC):
    """Black-box charge/payout capability"""

    service_name = "payment_processor"

    @abstractmethod
    async def charge(self, user_id: str, amount: Decimal, currency: str, idempotency_key: str) -> str:
        """Charge the buyer; returns the processor charge id"""

    @abstractmethod
    async def payout(self, user_id: str, amount: Decimal, currency: str, idempotency_key: str) -> str:
        """Send funds to the seller; returns the processor payout id"""

    @abstractmethod
    async def payout_status(self, payout_id: str) -> PayoutStatus:
        """Poll a payout created earlier"""


class BlobStore(ABC):
    """Black-box file storage with signed URLs"""

    service_name = "blob_store"

    @abstractmethod
    async def put_asset(self, data: bytes, metadata: Dict[str, Any]) -> str:
        """Store bytes; returns an opaque asset reference"""

    @abstractmethod
    async def signed_url(self, asset_ref: str, ttl: int) -> str:
        """Mint a short-lived download URL"""


class HttpPaymentProcessor(APIAdapterRetry, PaymentProcessor):
    """Payment processor reached over its REST API"""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None):
        super().__init__(
            "payment_processor",
            base_url or Config.PAYMENT_PROCESSOR_URL,
            api_key if api_key is not None else Config.PAYMENT_PROCESSOR_API_KEY,
        )

    async def charge(self, user_id: str, amount: Decimal, currency: str, idempotency_key: str) -> str:
        response = await self._make_http_request(
            "POST",
            "/charges",
            headers=self._headers(idempotency_key),
            json={"customer": user_id, "amount": str(amount), "currency": currency},
        )
        return self._require_id(response, "charge")

    async def payout(self, user_id: str, amount: Decimal, currency: str, idempotency_key: str) -> str:
        response = await self._make_http_request(
            "POST",
            "/payouts",
            headers=self._headers(idempotency_key),
            json={"recipient": user_id, "amount": str(amount), "currency": currency},
        )
        return self._require_id(response, "payout")

    async def payout_status(self, payout_id: str) -> PayoutStatus:
        response = await self._make_http_request("GET", f"/payouts/{payout_id}", headers=self._headers())
        raw = str(response.get("status", "")).lower()
        if raw in ("paid", "succeeded", "completed"):
            return PayoutStatus.PAID
        if raw in ("failed", "canceled", "cancelled", "returned"):
            return PayoutStatus.FAILED
        return PayoutStatus.PENDING

    def _require_id(self, response: Dict[str, Any], what: str) -> str:
        object_id = response.get("id")
        if not object_id:
            raise ExternalServiceError(
                self.service_name, retryable=True, outcome_unknown=True,
                message=f"{what} response missing id",
            )
        return str(object_id)


class HttpBlobStore(APIAdapterRetry, BlobStore):
    """Blob store reached over HTTP"""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None):
        super().__init__(
            "blob_store",
            base_url or Config.BLOB_STORE_URL,
            api_key if api_key is not None else Config.BLOB_STORE_API_KEY,
        )

    async def put_asset(self, data: bytes, metadata: Dict[str, Any]) -> str:
        form = aiohttp.FormData()
        form.add_field(
            "file",
            data,
            filename=metadata.get("file_name") or "asset.bin",
            content_type=metadata.get("content_type") or "application/octet-stream",
        )
        for key, value in metadata.items():
            if key not in ("file_name", "content_type") and value is not None:
                form.add_field(key, str(value))
        response = await self._make_http_request("POST", "/assets", headers=self._headers(), data=form)
        asset_ref = response.get("asset_ref") or response.get("id")
        if not asset_ref:
            raise ExternalServiceError(self.service_name, retryable=True, message="upload response missing asset_ref")
        return str(asset_ref)

    async def signed_url(self, asset_ref: str, ttl: int) -> str:
        response = await self._make_http_request(
            "POST", f"/assets/{asset_ref}/signed-url", headers=self._headers(), json={"ttl": ttl}
        )
        url = response.get("url")
        if not url:
            raise ExternalServiceError(self.service_name, retryable=True, message="signed-url response missing url")
        return str(url)
