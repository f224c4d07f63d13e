"""
Pydantic Schemas for API Request/Response Models
=================================================
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Enums
# =============================================================================

class AdjustmentReason(str, Enum):
    """Reasons an administrator may record for a manual ledger entry."""
    MANUAL_ADJUSTMENT = "manual_adjustment"
    REFUND = "refund"


# =============================================================================
# API Key Models
# =============================================================================

class APIKeyCreate(BaseModel):
    """Request model for creating a new API key."""
    name: str = Field(..., min_length=1, max_length=100, description="Name for the API key")
    expires_at: Optional[datetime] = Field(default=None, description="Optional expiry timestamp")

    model_config = {"json_schema_extra": {"example": {"name": "My App", "expires_at": None}}}

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name is required")
        return value


class APIKeyInfo(BaseModel):
    """API key metadata. Never includes the key itself."""
    id: str
    name: str
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class APIKeyCreated(BaseModel):
    """Response for a newly created API key."""
    api_key: APIKeyInfo
    key: str = Field(..., description="The API key (only shown once on creation)")


# =============================================================================
# Consumption Models
# =============================================================================

class ApiCallChargeRequest(BaseModel):
    """A billable API call."""
    request_id: str = Field(..., min_length=1, max_length=200, description="Unique id of the logical call")
    calls: int = Field(default=1, ge=1, le=1000, description="Number of calls to account for")


class StorageChargeRequest(BaseModel):
    """A billable amount of storage."""
    request_id: str = Field(..., min_length=1, max_length=200, description="Unique id of the logical charge")
    gigabyte_months: float = Field(..., gt=0, description="Storage consumed in GB-months")


class ChargeResponse(BaseModel):
    """Outcome of a consumption charge."""
    request_id: str
    reference_id: str
    charged: int = Field(..., description="Credits debited for this action")
    within_quota: bool
    applied: bool = Field(..., description="False when the request id was already charged")
    balance: int
    usage_this_period: float
    quota: float


# =============================================================================
# Credits Models
# =============================================================================

class BalanceResponse(BaseModel):
    user_id: str
    balance: int


class LedgerEntry(BaseModel):
    id: str
    amount: int
    reason: str
    reference_id: str
    balance_after: Optional[int] = None
    description: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class CreditHistoryResponse(BaseModel):
    entries: List[LedgerEntry]
    limit: int
    offset: int


class QuotaItem(BaseModel):
    used: float
    limit: float


class QuotaUsageResponse(BaseModel):
    period: str
    paid: bool
    api_calls: QuotaItem
    storage: QuotaItem


class CreditAdjustmentRequest(BaseModel):
    """Administrative credit or debit on a user's ledger."""
    user_id: str = Field(..., min_length=1)
    amount: int = Field(..., description="Signed amount, positive credits and negative debits")
    reason: AdjustmentReason = Field(default=AdjustmentReason.MANUAL_ADJUSTMENT)
    description: Optional[str] = Field(default=None, max_length=500)
    reference_id: Optional[str] = Field(
        default=None,
        max_length=200,
        description="Idempotency key; generated when omitted",
    )

    @field_validator("amount")
    @classmethod
    def _non_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("Amount must be non-zero")
        return value


class LedgerResultResponse(BaseModel):
    balance: int
    applied: bool
    transaction: Optional[LedgerEntry] = None


# =============================================================================
# Billing Models
# =============================================================================

class SubscriptionInfo(BaseModel):
    id: str
    external_subscription_id: str
    status: str
    price_id: Optional[str] = None
    plan: Optional[str] = None
    cancel_at_period_end: bool
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class BillingInfoResponse(BaseModel):
    balance: int
    active_subscription: Optional[SubscriptionInfo] = None
    subscriptions: List[SubscriptionInfo] = Field(default_factory=list)


class CheckoutRequest(BaseModel):
    """Request for creating a subscription checkout session."""
    price_id: str
    success_url: str
    cancel_url: str


class CheckoutResponse(BaseModel):
    """Response with checkout session details."""
    checkout_url: str
    session_id: str


# =============================================================================
# Common Models
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(default="healthy")
    version: str
    database: str = Field(default="unknown")
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional details")
    request_id: Optional[str] = Field(None, description="Request ID for tracking")
