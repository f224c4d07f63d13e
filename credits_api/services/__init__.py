"""Service layer: ledger, consumption, subscriptions and API keys."""

from credits_api.services.consumption import ConsumptionService, CreditRates
from credits_api.services.key_service import APIKeyService
from credits_api.services.ledger import LedgerService
from credits_api.services.stripe_service import PaymentProvider, StripeProvider
from credits_api.services.subscriptions import SubscriptionService

__all__ = [
    "ConsumptionService",
    "CreditRates",
    "APIKeyService",
    "LedgerService",
    "PaymentProvider",
    "StripeProvider",
    "SubscriptionService",
]
