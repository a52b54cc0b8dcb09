"""
CRM Migration Hub - CRM API Client

Handles authenticated communication with the CRM platform's REST API
(LeadConnector / GoHighLevel v2). One client instance talks to exactly one
account (location).

Every request:
1. Withdraws a token from the account's shared rate limiter
2. Sends bearer auth plus the fixed API version header
3. Retries throttling (429), 5xx and transport failures with exponential backoff
4. Raises a CRMError subclass once it gives up

API Style: JSON resources, list endpoints return `{<resource>: [...], meta: {total}}`
"""

import os
import asyncio
import logging
import httpx
from dataclasses import dataclass
from typing import Dict, Any, List, Optional, Tuple

from .rate_limiter import RateLimiterRegistry, TokenBucket

logger = logging.getLogger(__name__)

# =============================================================================
# CONFIGURATION
# =============================================================================

CRM_API_BASE = os.environ.get("CRM_API_BASE", "https://services.leadconnectorhq.com")
CRM_API_VERSION = os.environ.get("CRM_API_VERSION", "2021-07-28")

CRM_REQUEST_TIMEOUT = float(os.environ.get("CRM_REQUEST_TIMEOUT", "30"))
CRM_MAX_RETRIES = int(os.environ.get("CRM_MAX_RETRIES", "4"))
CRM_RETRY_BASE_DELAY = float(os.environ.get("CRM_RETRY_BASE_DELAY", "1.0"))  # seconds
CRM_RETRY_MAX_DELAY = float(os.environ.get("CRM_RETRY_MAX_DELAY", "30.0"))

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


# =============================================================================
# ERRORS
# =============================================================================

class CRMError(Exception):
    """Base error for CRM API failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"CRM API error {self.status_code}: {self.message}"
        return f"CRM API error: {self.message}"


class CRMAuthError(CRMError):
    """Credentials rejected (401/403)."""


class CRMValidationError(CRMError):
    """The platform rejected the request payload. Not retried."""


class CRMRateLimitError(CRMError):
    """Still throttled after all retries."""


class CRMTransportError(CRMError):
    """Timeouts, connection failures and 5xx responses after all retries."""


# =============================================================================
# CREDENTIALS
# =============================================================================

@dataclass(frozen=True)
class AccountCredentials:
    """API key + location id for one CRM account."""
    api_key: str
    location_id: str
    account_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AccountCredentials":
        data = data or {}
        api_key = (data.get("apiKey") or "").strip()
        location_id = (data.get("locationId") or "").strip()
        if not api_key or not location_id:
            raise ValueError("apiKey and locationId are required")
        return cls(
            api_key=api_key,
            location_id=location_id,
            account_name=data.get("accountName")
        )

    def to_dict(self, include_secret: bool = False) -> Dict[str, Any]:
        result: Dict[str, Any] = {"locationId": self.location_id}
        if self.account_name:
            result["accountName"] = self.account_name
        if include_secret:
            result["apiKey"] = self.api_key
        return result

    def __repr__(self) -> str:
        return f"AccountCredentials(location_id={self.location_id!r})"


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:300] or resp.reason_phrase
    if isinstance(body, dict):
        message = body.get("message") or body.get("error") or body.get("msg")
        if isinstance(message, list):
            message = "; ".join(str(m) for m in message)
        if message:
            return str(message)[:300]
    return str(body)[:300]


def _extract_total(response: Dict[str, Any]) -> Optional[int]:
    """Total record count as reported by the platform, if any."""
    meta = response.get("meta") or {}
    for value in (meta.get("total"), response.get("total"), response.get("count")):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
    return None


# =============================================================================
# CRM API CLIENT
# =============================================================================

class CRMClient:
    """
    CRM API client for a single account.

    Usage:
        client = CRMClient(credentials, limiter)
        location = await client.get_location()
        contacts, total = await client.fetch_page("/contacts/", "contacts", limit=100, skip=0)
    """

    def __init__(
        self,
        credentials: AccountCredentials,
        rate_limiter: Optional[TokenBucket] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: str = CRM_API_BASE,
        api_version: str = CRM_API_VERSION,
        timeout: float = CRM_REQUEST_TIMEOUT,
        max_retries: int = CRM_MAX_RETRIES,
        retry_base_delay: float = CRM_RETRY_BASE_DELAY,
        retry_max_delay: float = CRM_RETRY_MAX_DELAY
    ):
        self.credentials = credentials
        self.rate_limiter = rate_limiter
        self._http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay

    @property
    def location_id(self) -> str:
        return self.credentials.location_id

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credentials.api_key}",
            "Version": self.api_version,
            "Accept": "application/json",
            "Content-Type": "application/json"
        }

    def _backoff_delay(self, attempt: int, resp: Optional[httpx.Response] = None) -> float:
        if resp is not None:
            retry_after = resp.headers.get("Retry-After")
            if retry_after:
                try:
                    return min(float(retry_after), self.retry_max_delay)
                except ValueError:
                    pass
        return min(self.retry_base_delay * (2 ** attempt), self.retry_max_delay)

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]],
        json_body: Optional[Dict[str, Any]]
    ) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.request(
                method, url, headers=self._headers(), params=params,
                json=json_body, timeout=self.timeout
            )
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(
                method, url, headers=self._headers(), params=params, json=json_body
            )

    async def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Make an authenticated API request.

        Returns parsed JSON (empty dict for empty bodies) or raises CRMError.
        """
        url = f"{self.base_url}{endpoint}"
        last_error: Optional[CRMError] = None

        for attempt in range(self.max_retries):
            if self.rate_limiter is not None:
                await self.rate_limiter.acquire()

            try:
                resp = await self._send(method, url, params, json_body)
            except httpx.TimeoutException as e:
                last_error = CRMTransportError(f"timeout calling {method} {endpoint}: {e}")
                logger.warning("CRM API timeout on attempt %d for %s %s", attempt + 1, method, endpoint)
                await asyncio.sleep(self._backoff_delay(attempt))
                continue
            except httpx.TransportError as e:
                last_error = CRMTransportError(f"transport error calling {method} {endpoint}: {e}")
                logger.warning("CRM API transport error on attempt %d for %s %s: %s",
                               attempt + 1, method, endpoint, str(e))
                await asyncio.sleep(self._backoff_delay(attempt))
                continue

            if resp.is_success:
                if not resp.content:
                    return {}
                try:
                    body = resp.json()
                except ValueError:
                    raise CRMTransportError("invalid JSON in response", resp.status_code)
                return body if isinstance(body, dict) else {"data": body}

            detail = _error_detail(resp)

            if resp.status_code in RETRYABLE_STATUS_CODES:
                if resp.status_code == 429:
                    last_error = CRMRateLimitError(detail, resp.status_code)
                    logger.warning("CRM API rate limited (location %s), retry %d/%d",
                                   self.location_id, attempt + 1, self.max_retries)
                else:
                    last_error = CRMTransportError(detail, resp.status_code)
                    logger.warning("CRM API %d on %s %s, retry %d/%d",
                                   resp.status_code, method, endpoint, attempt + 1, self.max_retries)
                if attempt + 1 < self.max_retries:
                    await asyncio.sleep(self._backoff_delay(attempt, resp))
                continue

            if resp.status_code in (401, 403):
                raise CRMAuthError(detail, resp.status_code)

            raise CRMValidationError(detail, resp.status_code)

        logger.error("CRM API request %s %s failed after %d attempts", method, endpoint, self.max_retries)
        raise last_error or CRMTransportError(f"{method} {endpoint} failed")

    # =========================================================================
    # LOCATION API
    # =========================================================================

    async def get_location(self) -> Dict[str, Any]:
        """Fetch the account's location record (lightweight auth check)."""
        response = await self.request("GET", f"/locations/{self.location_id}")
        return response.get("location") or response

    # =========================================================================
    # GENERIC RESOURCE OPERATIONS
    # =========================================================================

    async def fetch_page(
        self,
        endpoint: str,
        list_key: str,
        limit: int = 100,
        skip: int = 0,
        params: Optional[Dict[str, Any]] = None
    ) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        """
        Fetch one page of a list endpoint.

        Returns (records, reported_total). reported_total is None when the
        platform doesn't report one.
        """
        query = dict(params or {})
        query["limit"] = limit
        query["skip"] = skip

        response = await self.request("GET", endpoint, params=query)
        records = response.get(list_key)
        if records is None:
            records = response.get("data") or []
        if not isinstance(records, list):
            records = []
        return records, _extract_total(response)

    async def create(self, endpoint: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request("POST", endpoint, json_body=body)

    async def update(self, endpoint: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request("PUT", endpoint, json_body=body)


# =============================================================================
# CLIENT FACTORY
# =============================================================================

class CRMClientFactory:
    """
    Builds CRMClient instances that share one HTTP connection pool and one
    rate limiter per account.
    """

    def __init__(
        self,
        rate_limiters: Optional[RateLimiterRegistry] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        **client_options: Any
    ):
        self.rate_limiters = rate_limiters or RateLimiterRegistry()
        self.http_client = http_client
        self.client_options = client_options

    def for_account(self, credentials: AccountCredentials) -> CRMClient:
        return CRMClient(
            credentials,
            rate_limiter=self.rate_limiters.get(credentials.location_id),
            http_client=self.http_client,
            **self.client_options
        )

    async def aclose(self) -> None:
        if self.http_client is not None:
            await self.http_client.aclose()
