"""
Credits Ledger API - Credits & Billing Service
==============================================

A FastAPI service that keeps the credits ledger of a SaaS product:
- Append-only credit ledger with idempotent transactions
- Usage-based consumption accounting with free quotas
- Monthly free-credit grants
- Stripe subscription synchronisation
- API key authentication for billable calls
"""

__version__ = "1.0.0"
