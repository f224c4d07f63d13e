"""Time-triggered jobs: monthly grants and ledger housekeeping."""

from credits_api.cron.auth import verify_cron_secret
from credits_api.cron.consistency import check_ledger_consistency, delete_expired_api_keys
from credits_api.cron.monthly_grant import GrantSummary, grant_monthly_free_credits

__all__ = [
    "verify_cron_secret",
    "check_ledger_consistency",
    "delete_expired_api_keys",
    "GrantSummary",
    "grant_monthly_free_credits",
]
