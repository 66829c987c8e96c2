"""Idempotent merge of Plaid transaction records, keyed by transaction_id."""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from cash_snapshot.core.database import dialect_insert
from cash_snapshot.models.account import Transaction
from cash_snapshot.services.account_resolver import AccountMap
from cash_snapshot.services.parsing import parse_bool, parse_date, parse_decimal, parse_str

logger = logging.getLogger(__name__)


def _category(value: Any) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return [str(c) for c in value]
    return [str(value)]


def mutable_fields(record: dict) -> dict[str, Any]:
    """Provider-owned columns, overwritten on every delivery."""
    return {
        "amount": parse_decimal(record.get("amount")),
        "iso_currency_code": parse_str(record.get("iso_currency_code")),
        "unofficial_currency_code": parse_str(record.get("unofficial_currency_code")),
        "date": parse_date(record.get("date")),
        "authorized_date": parse_date(record.get("authorized_date")),
        "name": parse_str(record.get("name")),
        "merchant_name": parse_str(record.get("merchant_name")),
        "category": _category(record.get("category")),
        "account_owner": parse_str(record.get("account_owner")),
        "pending": parse_bool(record.get("pending")) is True,
        "transaction_type": parse_str(record.get("transaction_type")),
    }


async def upsert_transaction(
    db: AsyncSession,
    record: dict,
    account_map: AccountMap,
    user_id: uuid.UUID,
) -> Transaction | None:
    """
    Insert or update one Plaid transaction.

    Returns the stored row, or None when the record was skipped (unknown
    account, missing id or amount). Existing rows keep their id and
    created_at; everything Plaid owns is replaced and updated_at refreshed.
    Two writers racing on the same transaction_id are settled by the unique
    constraint through ON CONFLICT, last write wins.
    """
    if not isinstance(record, dict):
        logger.warning("Malformed transaction record of type %s; skipping", type(record).__name__)
        return None

    transaction_id = parse_str(record.get("transaction_id"))
    plaid_account_id = record.get("account_id")
    if not isinstance(plaid_account_id, str):
        plaid_account_id = None

    account_uuid = account_map.get(plaid_account_id) if plaid_account_id else None
    if account_uuid is None:
        logger.warning(
            "Account not found for transaction; skipping (transaction_id=%s account_id=%s user_id=%s)",
            transaction_id, plaid_account_id, user_id,
        )
        return None
    if transaction_id is None:
        logger.warning("Transaction without transaction_id on account %s; skipping", plaid_account_id)
        return None

    values = mutable_fields(record)
    if values["amount"] is None:
        logger.warning("Transaction %s has no usable amount; skipping", transaction_id)
        return None

    now = datetime.now(timezone.utc)
    # A re-delivered id is live again even if it was reported removed earlier
    values.update(updated_at=now, removed_at=None)

    insert = dialect_insert(db)
    stmt = insert(Transaction).values(
        id=uuid.uuid4(),
        user_id=user_id,
        account_id=account_uuid,
        transaction_id=transaction_id,
        created_at=now,
        **values,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Transaction.transaction_id],
        set_=values,
    ).returning(Transaction)

    result = await db.scalars(stmt, execution_options={"populate_existing": True})
    return result.one()


async def mark_removed(db: AsyncSession, transaction_ids: list[str]) -> int:
    """Soft-delete rows Plaid reported under `removed`. Returns rows touched."""
    if not transaction_ids:
        return 0
    result = await db.execute(
        update(Transaction)
        .where(
            Transaction.transaction_id.in_(transaction_ids),
            Transaction.removed_at.is_(None),
        )
        .values(removed_at=datetime.now(timezone.utc))
    )
    return result.rowcount or 0
