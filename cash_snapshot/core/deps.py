from functools import lru_cache

from fastapi import HTTPException

from cash_snapshot.services.plaid_client import PlaidClient


@lru_cache
def _plaid_client() -> PlaidClient:
    return PlaidClient.from_settings()


def get_plaid_client() -> PlaidClient:
    client = _plaid_client()
    if not client.is_configured():
        raise HTTPException(status_code=503, detail="Plaid not configured")
    return client


def get_optional_plaid_client() -> PlaidClient | None:
    """For callers with a non-Plaid fallback (recurring detection)."""
    client = _plaid_client()
    return client if client.is_configured() else None
