import uuid
from datetime import datetime

from pydantic import BaseModel


class BalanceRefreshRequest(BaseModel):
    user_id: uuid.UUID


class BalanceRefreshResponse(BaseModel):
    user_id: uuid.UUID
    items_refreshed: int
    accounts_updated: int
    errors: list[str] = []


class AccountBalanceResponse(BaseModel):
    account_id: str                  # Plaid account_id
    name: str | None
    official_name: str | None
    type: str | None
    subtype: str | None
    mask: str | None
    institution: str | None
    current_balance: float | None
    available: float | None
    limit_amount: float | None
    currency: str
    last_updated: datetime | None

    model_config = {"from_attributes": True}


class AccountBalancesResponse(BaseModel):
    user_id: uuid.UUID
    accounts: list[AccountBalanceResponse]
    total_accounts: int
