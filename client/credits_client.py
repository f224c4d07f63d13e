"""
Credits Ledger Python Client SDK
================================

Async and sync clients for the billable endpoints of the Credits Ledger API.
"""

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx


# =============================================================================
# Exceptions
# =============================================================================

class CreditsError(Exception):
    """Base exception for Credits Ledger client errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[Dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details or {}


class AuthenticationError(CreditsError):
    """Raised when API key is invalid or missing."""
    pass


class InsufficientCreditsError(CreditsError):
    """Raised when the account cannot pay for the action."""

    @property
    def required(self) -> Optional[int]:
        return self.details.get("required")

    @property
    def available(self) -> Optional[int]:
        return self.details.get("available")


class RateLimitError(CreditsError):
    """Raised when rate limit is exceeded."""

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class Charge:
    """Result of a charge request."""

    request_id: str
    reference_id: str
    charged: int
    within_quota: bool
    applied: bool
    balance: int
    usage_this_period: float
    quota: float

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Charge":
        return cls(
            request_id=data["request_id"],
            reference_id=data["reference_id"],
            charged=data["charged"],
            within_quota=data["within_quota"],
            applied=data["applied"],
            balance=data["balance"],
            usage_this_period=data["usage_this_period"],
            quota=data["quota"],
        )


# =============================================================================
# Async Client
# =============================================================================

class CreditsClient:
    """
    Async client for the Credits Ledger API.

    Charges are idempotent by ``request_id``, so failed requests are retried
    with the same id and can never be charged twice.

    Example:
        ```python
        async with CreditsClient(api_key="bs_...") as client:
            charge = await client.charge_api_call(request_id="req-123")
            print(charge.balance)
        ```
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "http://localhost:8000",
        timeout: float = 30.0,
        max_retries: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            api_key: Your API key
            base_url: API base URL (default: http://localhost:8000)
            timeout: Request timeout in seconds (default: 30)
            max_retries: Maximum number of attempts per request (default: 3)
            transport: Optional httpx transport, e.g. to call an app in-process
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "CreditsClient":
        self._get_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Authorization": f"Bearer {self.api_key}"},
                transport=self.transport,
            )
        return self._client

    @staticmethod
    def _error_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            return response.json()
        except ValueError:
            return {}

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """Make an API request with error handling."""
        client = self._get_client()
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                response = await client.request(method, path, **kwargs)
            except httpx.RequestError as e:
                last_error = e
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(2 ** attempt)
                continue

            if response.status_code == 401:
                body = self._error_body(response)
                raise AuthenticationError(body.get("message", "Invalid or missing API key"), status_code=401)
            if response.status_code == 402:
                body = self._error_body(response)
                raise InsufficientCreditsError(
                    body.get("message", "Insufficient credits"),
                    status_code=402,
                    details=body.get("details"),
                )
            if response.status_code == 429:
                retry_after = int(response.headers.get("Retry-After", 60))
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(retry_after)
                    continue
                raise RateLimitError("Rate limit exceeded", retry_after=retry_after)
            if response.status_code >= 500 and attempt < self.max_retries - 1:
                await asyncio.sleep(2 ** attempt)
                continue
            if response.is_error:
                body = self._error_body(response)
                raise CreditsError(
                    body.get("message", f"HTTP error: {response.status_code}"),
                    status_code=response.status_code,
                    details=body,
                )
            return response.json()

        raise CreditsError(f"Request failed: {last_error}" if last_error else "Max retries exceeded")

    # -------------------------------------------------------------------------
    # Charges
    # -------------------------------------------------------------------------

    async def charge_api_call(self, request_id: Optional[str] = None, calls: int = 1) -> Charge:
        """
        Account for API calls.

        Raises:
            InsufficientCreditsError: if the calls are not covered.
        """
        request_id = request_id or str(uuid.uuid4())
        data = await self._request(
            "POST",
            "/v1/usage/api-call",
            json={"request_id": request_id, "calls": calls},
        )
        return Charge.from_dict(data)

    async def charge_storage(self, gigabyte_months: float, request_id: Optional[str] = None) -> Charge:
        request_id = request_id or str(uuid.uuid4())
        data = await self._request(
            "POST",
            "/v1/usage/storage",
            json={"request_id": request_id, "gigabyte_months": gigabyte_months},
        )
        return Charge.from_dict(data)

    # -------------------------------------------------------------------------
    # Account
    # -------------------------------------------------------------------------

    async def get_balance(self) -> int:
        data = await self._request("GET", "/v1/usage/balance")
        return data["balance"]

    async def get_pricing(self) -> Dict[str, Any]:
        return await self._request("GET", "/v1/usage/pricing")

    async def health_check(self) -> Dict[str, Any]:
        """Check API health status."""
        response = await self._get_client().get("/health")
        return response.json()


# =============================================================================
# Sync Client Wrapper
# =============================================================================

class CreditsClientSync:
    """
    Synchronous wrapper for CreditsClient.

    Example:
        ```python
        client = CreditsClientSync(api_key="bs_...")
        print(client.get_balance())
        ```
    """

    def __init__(self, *args, **kwargs):
        """Initialize with same arguments as CreditsClient."""
        self._args = args
        self._kwargs = kwargs

    def _run(self, method: str, *args, **kwargs):
        async def call():
            async with CreditsClient(*self._args, **self._kwargs) as client:
                return await getattr(client, method)(*args, **kwargs)

        return asyncio.run(call())

    def charge_api_call(self, request_id: Optional[str] = None, calls: int = 1) -> Charge:
        return self._run("charge_api_call", request_id, calls)

    def charge_storage(self, gigabyte_months: float, request_id: Optional[str] = None) -> Charge:
        return self._run("charge_storage", gigabyte_months, request_id)

    def get_balance(self) -> int:
        return self._run("get_balance")

    def health_check(self) -> Dict[str, Any]:
        return self._run("health_check")
