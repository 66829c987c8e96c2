import uuid
from datetime import datetime

from pydantic import BaseModel


class LinkTokenRequest(BaseModel):
    user_id: uuid.UUID | None = None   # generated when absent
    client_name: str | None = None


class LinkTokenResponse(BaseModel):
    link_token: str
    expiration: str | None = None
    request_id: str | None = None
    user_id: uuid.UUID


class SandboxPublicTokenRequest(BaseModel):
    institution_id: str = "ins_109508"   # Plaid sandbox "First Platypus Bank"
    initial_products: list[str] = ["transactions"]


class SandboxPublicTokenResponse(BaseModel):
    public_token: str
    request_id: str | None = None


class ExchangeRequest(BaseModel):
    user_id: uuid.UUID
    public_token: str


class ExchangeResponse(BaseModel):
    item_id: str
    accounts: int
    institution: str
    message: str = "Account successfully linked"


class PlaidItemResponse(BaseModel):
    """Item as seen by clients. The access token is deliberately absent."""
    id: uuid.UUID
    item_id: str
    institution_id: str | None
    institution_name: str | None
    cursor: str | None
    last_synced_at: datetime | None
    created_at: datetime
    account_count: int = 0


# ─── Sync ─────────────────────────────────────────────────────

class SyncRequest(BaseModel):
    user_id: uuid.UUID
    full_sync: bool = False   # restart every item from an empty cursor


class ItemSyncResultResponse(BaseModel):
    item_id: str
    transactions_synced: int
    cursor: str | None
    error: str | None = None


class SyncResponse(BaseModel):
    user_id: uuid.UUID
    total_transactions_synced: int
    items_synced: int
    sync_results: list[ItemSyncResultResponse]
    full_sync: bool
