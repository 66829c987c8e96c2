"""Link-token issuance and public-token exchange (item + account bookkeeping)."""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cash_snapshot.core.database import dialect_insert
from cash_snapshot.core.security import encrypt_value
from cash_snapshot.models.account import Account, PlaidItem
from cash_snapshot.models.user import User
from cash_snapshot.services.parsing import parse_str
from cash_snapshot.services.plaid_client import PlaidAPIError, PlaidClient

logger = logging.getLogger(__name__)

UNKNOWN_INSTITUTION = "Unknown Institution"


@dataclass(frozen=True)
class LinkedItem:
    item_id: str
    accounts: int
    institution: str


async def ensure_user(db: AsyncSession, user_id: uuid.UUID) -> User:
    user = await db.get(User, user_id)
    if user is None:
        user = User(id=user_id)
        db.add(user)
        await db.flush()
    return user


async def _institution_name(client: PlaidClient, institution_id: str | None) -> str:
    if not institution_id:
        return UNKNOWN_INSTITUTION
    try:
        institution = await client.get_institution(institution_id)
    except PlaidAPIError as exc:
        # Display name only; linking still succeeds without it
        logger.warning("Institution lookup failed for %s: %s", institution_id, exc)
        return UNKNOWN_INSTITUTION
    return parse_str(institution.get("name")) or UNKNOWN_INSTITUTION


async def exchange_and_save(
    db: AsyncSession,
    client: PlaidClient,
    user_id: uuid.UUID,
    public_token: str,
) -> LinkedItem:
    """
    Exchange a public token, then upsert the item and its accounts.

    A re-link of an existing item rotates the stored access token but keeps
    its sync cursor.
    """
    exchanged = await client.exchange_public_token(public_token)
    access_token = exchanged.get("access_token")
    plaid_item_id = exchanged.get("item_id")
    if not access_token or not plaid_item_id:
        raise PlaidAPIError(
            "Plaid token exchange returned no access_token/item_id",
            request_id=exchanged.get("request_id"),
        )

    item_meta = await client.get_item(access_token)
    institution_id = parse_str(item_meta.get("institution_id"))
    institution_name = await _institution_name(client, institution_id)
    plaid_accounts = await client.get_accounts(access_token)

    await ensure_user(db, user_id)

    result = await db.execute(select(PlaidItem).where(PlaidItem.item_id == plaid_item_id))
    item = result.scalar_one_or_none()
    if item is None:
        item = PlaidItem(user_id=user_id, item_id=plaid_item_id)
        db.add(item)
    item.encrypted_access_token = encrypt_value(access_token)
    item.institution_id = institution_id
    item.institution_name = institution_name
    await db.flush()

    now = datetime.now(timezone.utc)
    insert = dialect_insert(db)
    for pa in plaid_accounts:
        account_id = parse_str(pa.get("account_id"))
        if account_id is None:
            continue
        values = {
            "name": parse_str(pa.get("name")),
            "official_name": parse_str(pa.get("official_name")),
            "type": parse_str(pa.get("type")),
            "subtype": parse_str(pa.get("subtype")),
            "mask": parse_str(pa.get("mask")),
            "updated_at": now,
        }
        stmt = insert(Account).values(
            id=uuid.uuid4(),
            user_id=user_id,
            item_id=item.id,
            account_id=account_id,
            created_at=now,
            **values,
        ).on_conflict_do_update(
            index_elements=[Account.item_id, Account.account_id],
            set_=values,
        )
        await db.execute(stmt)

    await db.commit()
    logger.info(
        "Token exchange successful: user=%s item=%s accounts=%d",
        user_id, plaid_item_id, len(plaid_accounts),
    )
    return LinkedItem(item_id=plaid_item_id, accounts=len(plaid_accounts), institution=institution_name)
