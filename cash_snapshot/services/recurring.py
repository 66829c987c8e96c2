"""
Two-tier recurring stream lookup.

Tier 1 asks Plaid for recurring streams on the user's item; tier 2 runs the
custom detector over stored history. Tier 2 only runs when tier 1 comes back
empty or failed, so exactly one tier contributes to a response. Provider
streams are persisted; custom streams are recomputed on every request.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from cryptography.fernet import InvalidToken
from sqlalchemy import select
from sqlalchemy.exc import DataError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cash_snapshot.core.database import dialect_insert
from cash_snapshot.core.security import decrypt_value
from cash_snapshot.models.account import PlaidItem, Transaction
from cash_snapshot.models.recurring import RecurringTransaction
from cash_snapshot.services.plaid_client import PlaidAPIError, PlaidClient
from cash_snapshot.services.recurring_detector import (
    RecurringStream,
    classify_frequency,
    detect_custom_streams,
    normalize_direction,
    parse_provider_streams,
)

logger = logging.getLogger(__name__)

PROVIDER_CONFIDENCE = 0.9
MERCHANT_NAME_MAX = 255  # recurring_transactions.merchant_name width


@dataclass(frozen=True)
class TierResult:
    streams: list[RecurringStream] = field(default_factory=list)
    error: str | None = None

    @property
    def falls_through(self) -> bool:
        return self.error is not None or not self.streams


@dataclass(frozen=True)
class RecurringResult:
    user_id: uuid.UUID
    type: str
    streams: list[RecurringStream]
    plaid_api: int
    custom_detector: int

    @property
    def total_streams(self) -> int:
        return len(self.streams)


# ─── Tier 1: Plaid ───────────────────────────────────────────────────────────

async def fetch_provider_streams(
    db: AsyncSession,
    client: PlaidClient | None,
    user_id: uuid.UUID,
    direction: str,
) -> TierResult:
    """Never raises for provider trouble; the outcome is carried in TierResult."""
    if client is None:
        return TierResult(error="Plaid client not configured")

    result = await db.execute(
        select(PlaidItem)
        .where(PlaidItem.user_id == user_id)
        .order_by(PlaidItem.created_at, PlaidItem.id)
        .limit(1)
    )
    item = result.scalar_one_or_none()
    if item is None:
        return TierResult()

    try:
        access_token = decrypt_value(item.encrypted_access_token)
        payload = await client.get_recurring_transactions(access_token)
    except PlaidAPIError as exc:
        if exc.is_client_error:
            # Product not enabled / no data for this item
            logger.info("Plaid has no recurring streams for user %s: %s", user_id, exc)
            return TierResult()
        logger.warning("Plaid recurring fetch failed for user %s: %s", user_id, exc)
        return TierResult(error=str(exc))
    except InvalidToken:
        logger.warning("Stored access token for item %s could not be decrypted", item.item_id)
        return TierResult(error="access token could not be decrypted")

    try:
        streams = parse_provider_streams(payload, direction)
    except Exception as exc:
        logger.exception("Could not read Plaid recurring streams for user %s", user_id)
        return TierResult(error=f"unreadable recurring payload: {exc}")
    return TierResult(streams=streams)


# ─── Tier 2: custom detector ─────────────────────────────────────────────────

async def detect_custom(db: AsyncSession, user_id: uuid.UUID, direction: str) -> list[RecurringStream]:
    result = await db.execute(
        select(Transaction)
        .where(
            Transaction.user_id == user_id,
            Transaction.removed_at.is_(None),
            Transaction.merchant_name.is_not(None),
            Transaction.merchant_name != "",
        )
        .order_by(Transaction.date)
    )
    return detect_custom_streams(result.scalars().all(), direction)


# ─── Persistence (provider streams only) ─────────────────────────────────────

def _amount(value: float) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


async def persist_provider_streams(
    db: AsyncSession,
    user_id: uuid.UUID,
    direction: str,
    streams: list[RecurringStream],
) -> int:
    """Upsert keyed by (user, direction, merchant, frequency); later runs overwrite."""
    now = datetime.now(timezone.utc)
    insert = dialect_insert(db)

    for s in streams:
        merchant = (s.merchant_name or s.description or "Unknown")[:MERCHANT_NAME_MAX]
        avg = _amount(s.avg_amount)
        values = {
            "avg_amount": avg,
            "min_amount": avg,
            "max_amount": avg,
            "occurrences": s.occurrences,
            "last_date": s.last_date,
            "next_estimated_date": s.next_estimated_date,
            "confidence": PROVIDER_CONFIDENCE,
            "is_active": True,
            "updated_at": now,
        }
        stmt = insert(RecurringTransaction).values(
            id=uuid.uuid4(),
            user_id=user_id,
            direction=direction,
            merchant_name=merchant,
            frequency=classify_frequency(s.frequency_days),
            created_at=now,
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[
                RecurringTransaction.user_id,
                RecurringTransaction.direction,
                RecurringTransaction.merchant_name,
                RecurringTransaction.frequency,
            ],
            set_=values,
        )
        await db.execute(stmt)

    await db.commit()
    return len(streams)


# ─── Pipeline ────────────────────────────────────────────────────────────────

async def get_recurring(
    db: AsyncSession,
    client: PlaidClient | None,
    user_id: uuid.UUID,
    type_: str | None,
) -> RecurringResult:
    direction = normalize_direction(type_)

    provider = await fetch_provider_streams(db, client, user_id, direction)
    if not provider.falls_through:
        try:
            await persist_provider_streams(db, user_id, direction, provider.streams)
        except (DataError, IntegrityError) as exc:
            await db.rollback()
            logger.error("Could not store Plaid recurring streams for user %s: %s", user_id, exc)
            provider = TierResult(error=f"provider streams not stored: {exc.orig}")
        else:
            logger.info(
                "Recurring streams for user %s (%s): %d from Plaid",
                user_id, direction, len(provider.streams),
            )
            return RecurringResult(
                user_id=user_id,
                type=direction,
                streams=provider.streams,
                plaid_api=len(provider.streams),
                custom_detector=0,
            )

    if provider.error:
        logger.warning("Falling back to custom recurring detection for user %s: %s", user_id, provider.error)

    custom = await detect_custom(db, user_id, direction)
    logger.info(
        "Recurring streams for user %s (%s): %d from custom detector",
        user_id, direction, len(custom),
    )
    return RecurringResult(
        user_id=user_id,
        type=direction,
        streams=custom,
        plaid_api=0,
        custom_detector=len(custom),
    )
