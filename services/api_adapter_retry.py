"""
Standardized API Adapter with Retry
Base class for external collaborators (payment processor, blob store) plus the
retry helper every caller uses around them.

A timeout is never treated as success or failure: it surfaces as a retryable
``ExternalServiceError`` with ``outcome_unknown=True`` so the caller can park
the rift for reconciliation.
"""

import asyncio
import logging
import time
from abc import ABC
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import aiohttp

from config import Config
from utils.exception_handler import ExternalServiceError

logger = logging.getLogger(__name__)
T = TypeVar("T")

NON_RETRYABLE_HTTP_STATUSES = frozenset({400, 401, 403, 404, 409, 422})


async def call_with_retry(
    service_name: str,
    func: Callable[..., Awaitable[T]],
    *args,
    max_attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    timeout: Optional[float] = None,
    **kwargs,
) -> T:
    """
    Await ``func`` with a timeout per attempt and exponential backoff between
    retryable failures. Non-retryable errors are raised on the first attempt.
    """
    attempts = max_attempts or Config.EXTERNAL_RETRY_ATTEMPTS
    delay = Config.EXTERNAL_RETRY_BASE_DELAY if base_delay is None else base_delay
    timeout = timeout or Config.EXTERNAL_CALL_TIMEOUT_SECONDS
    operation_start = time.monotonic()
    name = getattr(func, "__name__", "call")

    for attempt in range(1, attempts + 1):
        try:
            result = await asyncio.wait_for(func(*args, **kwargs), timeout=timeout)
            if attempt > 1:
                total_time = time.monotonic() - operation_start
                logger.info(f"✅ API_SUCCESS: {service_name}.{name} completed in {total_time:.3f}s after {attempt} attempts")
            return result
        except asyncio.TimeoutError as e:
            error = ExternalServiceError(
                service_name, retryable=True, outcome_unknown=True,
                message=f"{service_name}.{name} timed out after {timeout}s",
            )
            error.__cause__ = e
        except ExternalServiceError as e:
            error = e
        except aiohttp.ClientError as e:
            error = ExternalServiceError(
                service_name, retryable=True, outcome_unknown=True, message=f"{service_name} network error: {e}"
            )
            error.__cause__ = e

        if not error.retryable:
            logger.error(f"❌ API_USER_ERROR: {service_name}.{name} failed with non-retryable error: {error.message}")
            raise error
        if attempt >= attempts:
            logger.error(f"❌ API_MAX_RETRIES: {service_name}.{name} failed after {attempt} attempts: {error.message}")
            raise error

        backoff = delay * (2 ** (attempt - 1))
        logger.warning(f"🔄 API_RETRY: {service_name}.{name} attempt {attempt} failed - retrying in {backoff}s")
        await asyncio.sleep(backoff)

    raise ExternalServiceError(service_name, retryable=False, message="retry loop exhausted")


class APIAdapterRetry(ABC):
    """
    Base class for HTTP integrations: shared aiohttp request handling with
    status-code classification into ``ExternalServiceError``.
    """

    def __init__(self, service_name: str, base_url: str, api_key: str = "", timeout: Optional[float] = None):
        self.service_name = service_name
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout or Config.EXTERNAL_CALL_TIMEOUT_SECONDS
        logger.info(f"🔧 APIAdapterRetry initialized for {service_name}")

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _make_http_request(
        self,
        method: str,
        path: str,
        headers: Optional[Dict] = None,
        params: Optional[Dict] = None,
        json: Optional[Dict] = None,
        data: Optional[Any] = None,
    ) -> Dict:
        """
        Make HTTP request with standardized error handling

        Raises:
            ExternalServiceError: classified by HTTP status or transport failure
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.request(
                    method=method, url=url, headers=headers, params=params, json=json, data=data
                ) as response:
                    if response.status >= 400:
                        error_text = await response.text()
                        retryable = response.status not in NON_RETRYABLE_HTTP_STATUSES
                        raise ExternalServiceError(
                            self.service_name,
                            retryable=retryable,
                            message=f"{self.service_name} HTTP {response.status}: {error_text[:200]}",
                        )
                    return await response.json()
        except asyncio.TimeoutError as e:
            raise ExternalServiceError(
                self.service_name, retryable=True, outcome_unknown=True,
                message=f"{self.service_name} request timed out after {self.timeout}s",
            ) from e
        except aiohttp.ClientError as e:
            raise ExternalServiceError(
                self.service_name, retryable=True, outcome_unknown=True,
                message=f"{self.service_name} network error: {e}",
            ) from e
