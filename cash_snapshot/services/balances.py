"""Per-account balance refresh (/accounts/balance/get) and listing."""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from cryptography.fernet import InvalidToken
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cash_snapshot.core.database import dialect_insert
from cash_snapshot.core.security import decrypt_value
from cash_snapshot.models.account import Account, PlaidItem
from cash_snapshot.models.balance import AccountBalance
from cash_snapshot.services.account_resolver import build_account_map
from cash_snapshot.services.parsing import nested, parse_datetime, parse_decimal, parse_str
from cash_snapshot.services.plaid_client import PlaidAPIError, PlaidClient
from cash_snapshot.services.sync import NoLinkedItemsError

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "USD"


@dataclass(frozen=True)
class BalanceRefreshResult:
    user_id: uuid.UUID
    items_refreshed: int
    accounts_updated: int
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class AccountBalanceRow:
    account_id: str
    name: str | None
    official_name: str | None
    type: str | None
    subtype: str | None
    mask: str | None
    institution: str | None
    current_balance: Decimal | None
    available: Decimal | None
    limit_amount: Decimal | None
    currency: str
    last_updated: datetime | None


def balance_fields(plaid_account: dict) -> dict:
    balances = plaid_account.get("balances")
    return {
        "available": parse_decimal(nested(balances, "available")),
        "current_balance": parse_decimal(nested(balances, "current")),
        "limit_amount": parse_decimal(nested(balances, "limit")),
        "iso_currency_code": parse_str(nested(balances, "iso_currency_code")),
        "unofficial_currency_code": parse_str(nested(balances, "unofficial_currency_code")),
        "last_updated_at": parse_datetime(nested(balances, "last_updated_datetime")),
    }


async def refresh_balances(
    db: AsyncSession,
    client: PlaidClient,
    user_id: uuid.UUID,
) -> BalanceRefreshResult:
    """
    Pull live balances for every item of the user and store the latest per account.

    An item that fails (Plaid error, undecryptable token) is reported in
    `errors` and the remaining items are still refreshed. Balances for
    accounts that were never linked locally are skipped.
    """
    result = await db.execute(
        select(PlaidItem).where(PlaidItem.user_id == user_id).order_by(PlaidItem.created_at)
    )
    items = result.scalars().all()
    if not items:
        raise NoLinkedItemsError(str(user_id))

    insert = dialect_insert(db)
    refreshed = 0
    updated = 0
    errors: list[str] = []

    for item in items:
        try:
            access_token = decrypt_value(item.encrypted_access_token)
            plaid_accounts = await client.get_balances(access_token)
        except (PlaidAPIError, InvalidToken) as exc:
            logger.warning("Balance refresh failed for item %s: %s", item.item_id, exc)
            errors.append(f"{item.item_id}: {exc}")
            continue

        account_map = await build_account_map(db, item.id)
        now = datetime.now(timezone.utc)
        for pa in plaid_accounts:
            plaid_account_id = pa.get("account_id")
            account_uuid = account_map.get(plaid_account_id) if isinstance(plaid_account_id, str) else None
            if account_uuid is None:
                logger.warning(
                    "Balance for unknown account %r on item %s; skipping", plaid_account_id, item.item_id
                )
                continue
            values = {**balance_fields(pa), "refreshed_at": now, "updated_at": now}
            stmt = insert(AccountBalance).values(
                id=uuid.uuid4(),
                user_id=user_id,
                account_id=account_uuid,
                created_at=now,
                **values,
            ).on_conflict_do_update(
                index_elements=[AccountBalance.account_id],
                set_=values,
            )
            await db.execute(stmt)
            updated += 1

        await db.commit()
        refreshed += 1

    logger.info(
        "Balances refreshed for user %s: %d account(s) across %d item(s), %d failed",
        user_id, updated, refreshed, len(errors),
    )
    return BalanceRefreshResult(
        user_id=user_id,
        items_refreshed=refreshed,
        accounts_updated=updated,
        errors=errors,
    )


async def list_account_balances(db: AsyncSession, user_id: uuid.UUID) -> list[AccountBalanceRow]:
    """Every linked account of the user with its stored balance, if any."""
    result = await db.execute(
        select(Account, PlaidItem.institution_name, AccountBalance)
        .join(PlaidItem, Account.item_id == PlaidItem.id)
        .outerjoin(AccountBalance, AccountBalance.account_id == Account.id)
        .where(Account.user_id == user_id)
        .order_by(PlaidItem.institution_name, Account.name, Account.account_id)
    )
    rows: list[AccountBalanceRow] = []
    for account, institution, balance in result.all():
        rows.append(AccountBalanceRow(
            account_id=account.account_id,
            name=account.name,
            official_name=account.official_name,
            type=account.type,
            subtype=account.subtype,
            mask=account.mask,
            institution=institution,
            current_balance=balance.current_balance if balance else None,
            available=balance.available if balance else None,
            limit_amount=balance.limit_amount if balance else None,
            currency=(
                (balance.iso_currency_code or balance.unofficial_currency_code) if balance else None
            ) or DEFAULT_CURRENCY,
            last_updated=(balance.last_updated_at or balance.refreshed_at) if balance else None,
        ))
    return rows
