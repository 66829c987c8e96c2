"""Database seeding helpers shared by service and router tests."""
import uuid

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cash_snapshot.core.security import encrypt_value
from cash_snapshot.models.account import Account, PlaidItem
from cash_snapshot.models.user import User

from tests.fixtures.mocks import SAMPLE_ACCOUNTS


async def seed_user(session_factory: async_sessionmaker[AsyncSession]) -> uuid.UUID:
    async with session_factory() as db:
        user = User(id=uuid.uuid4())
        db.add(user)
        await db.commit()
        return user.id


async def seed_item(
    session_factory: async_sessionmaker[AsyncSession],
    user_id: uuid.UUID,
    item_id: str = "item-1",
    access_token: str = "access-1",
    cursor: str | None = None,
    account_ids: list[str] | None = None,
) -> uuid.UUID:
    """Insert a linked item with accounts; returns the item's primary key."""
    if account_ids is None:
        account_ids = [a["account_id"] for a in SAMPLE_ACCOUNTS]
    async with session_factory() as db:
        item = PlaidItem(
            id=uuid.uuid4(),
            user_id=user_id,
            item_id=item_id,
            encrypted_access_token=encrypt_value(access_token),
            institution_id="ins_109508",
            institution_name="First Platypus Bank",
            cursor=cursor,
        )
        db.add(item)
        await db.flush()
        for account_id in account_ids:
            db.add(Account(user_id=user_id, item_id=item.id, account_id=account_id, name=account_id))
        await db.commit()
        return item.id
