"""Pydantic models for request/response schemas."""

from credits_api.models.schemas import (
    # API Key models
    APIKeyCreate,
    APIKeyCreated,
    APIKeyInfo,

    # Consumption models
    ApiCallChargeRequest,
    StorageChargeRequest,
    ChargeResponse,

    # Credits models
    BalanceResponse,
    LedgerEntry,
    CreditHistoryResponse,
    QuotaUsageResponse,
    CreditAdjustmentRequest,
    LedgerResultResponse,

    # Billing models
    SubscriptionInfo,
    BillingInfoResponse,
    CheckoutRequest,
    CheckoutResponse,

    # Common models
    HealthResponse,
    ErrorResponse,
)

__all__ = [
    "APIKeyCreate",
    "APIKeyCreated",
    "APIKeyInfo",
    "ApiCallChargeRequest",
    "StorageChargeRequest",
    "ChargeResponse",
    "BalanceResponse",
    "LedgerEntry",
    "CreditHistoryResponse",
    "QuotaUsageResponse",
    "CreditAdjustmentRequest",
    "LedgerResultResponse",
    "SubscriptionInfo",
    "BillingInfoResponse",
    "CheckoutRequest",
    "CheckoutResponse",
    "HealthResponse",
    "ErrorResponse",
]
