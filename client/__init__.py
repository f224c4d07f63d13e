"""
Credits Ledger Python Client SDK
================================

A Python client for the billable endpoints of the Credits Ledger API.

Usage:
    from client import CreditsClient

    async with CreditsClient(api_key="bs_...") as client:
        charge = await client.charge_api_call(request_id="req-123")
        print(charge.balance)
"""

from client.credits_client import (
    CreditsClient,
    CreditsClientSync,
    CreditsError,
    AuthenticationError,
    InsufficientCreditsError,
    RateLimitError,
    Charge,
)

__all__ = [
    "CreditsClient",
    "CreditsClientSync",
    "CreditsError",
    "AuthenticationError",
    "InsufficientCreditsError",
    "RateLimitError",
    "Charge",
]

__version__ = "1.0.0"
