"""Plaid account_id → internal account id lookup for one item."""
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cash_snapshot.models.account import Account

AccountMap = dict[str, uuid.UUID]


async def build_account_map(db: AsyncSession, item_id: uuid.UUID) -> AccountMap:
    """Snapshot of the item's stored accounts, built once per sync run."""
    result = await db.execute(
        select(Account.account_id, Account.id).where(Account.item_id == item_id)
    )
    return {plaid_account_id: internal_id for plaid_account_id, internal_id in result.all()}
