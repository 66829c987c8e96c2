"""
Plaid transaction sync: idempotent and incremental.

Each item is driven through a small state machine over the
/transactions/sync feed:

    Fetching(cursor) -> Upserting(page) -> Fetching(next_cursor) | Done(final_cursor)

Pages of one item are applied strictly in cursor order. Page upserts are
committed as they land; the item's cursor is written only on Done, so an
interrupted run resumes from the last committed cursor and the
transaction_id upsert absorbs the replayed pages.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from cryptography.fernet import InvalidToken
from sqlalchemy import select
from sqlalchemy.exc import DataError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cash_snapshot.core.config import settings
from cash_snapshot.core.security import decrypt_value
from cash_snapshot.models.account import PlaidItem
from cash_snapshot.services.account_resolver import AccountMap, build_account_map
from cash_snapshot.services.plaid_client import PlaidAPIError, PlaidClient, SyncPage
from cash_snapshot.services.transaction_upserter import mark_removed, upsert_transaction

logger = logging.getLogger(__name__)

# Failures that end one item's run without touching its siblings. Anything
# else (store unreachable, programming errors) propagates to the caller.
ITEM_FAILURES = (PlaidAPIError, InvalidToken, IntegrityError, DataError)


class NoLinkedItemsError(Exception):
    """The user has no Plaid items to sync."""


# ─── Page-loop states ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Fetching:
    cursor: str | None


@dataclass(frozen=True)
class Upserting:
    page: SyncPage
    cursor: str | None  # cursor the page was requested with


@dataclass(frozen=True)
class Done:
    final_cursor: str | None


# ─── Results ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ItemSyncResult:
    item_id: str                 # Plaid item_id
    transactions_synced: int
    cursor: str | None
    removed: int = 0
    pages: int = 0
    completed: bool = False      # reached Done with has_more false
    error: str | None = None


@dataclass(frozen=True)
class UserSyncResult:
    user_id: uuid.UUID
    results: list[ItemSyncResult] = field(default_factory=list)

    @property
    def total_transactions_synced(self) -> int:
        return sum(r.transactions_synced for r in self.results)

    @property
    def items_synced(self) -> int:
        return len(self.results)

    @property
    def full_sync(self) -> bool:
        """Every item drained its feed and holds a non-empty cursor."""
        return bool(self.results) and all(r.completed and r.cursor for r in self.results)


# ─── Single item ──────────────────────────────────────────────────────────────

async def _apply_page(
    db: AsyncSession,
    page: SyncPage,
    account_map: AccountMap,
    user_id: uuid.UUID,
) -> tuple[int, int]:
    """Upsert added + modified, soft-delete removed. Returns (upserted, removed)."""
    upserted = 0
    # added and modified share one path; the upsert is keyed by transaction_id
    for record in [*page.added, *page.modified]:
        if await upsert_transaction(db, record, account_map, user_id) is not None:
            upserted += 1
    removed = await mark_removed(db, page.removed)
    return upserted, removed


async def sync_item(
    session_factory: async_sessionmaker[AsyncSession],
    item_pk: uuid.UUID,
    client: PlaidClient,
    full_sync: bool = False,
) -> ItemSyncResult:
    """Drain one item's change feed. Provider failures are reported, not raised."""
    async with session_factory() as db:
        item = await db.get(PlaidItem, item_pk)
        if item is None:
            raise LookupError(f"PlaidItem {item_pk} not found")

        plaid_item_id = item.item_id
        user_id = item.user_id
        prior_cursor = item.cursor
        start_cursor = None if full_sync else prior_cursor

        synced = 0
        removed = 0
        pages = 0
        state: Fetching | Upserting | Done = Fetching(start_cursor)

        try:
            access_token = decrypt_value(item.encrypted_access_token)
            account_map = await build_account_map(db, item.id)

            while not isinstance(state, Done):
                if isinstance(state, Fetching):
                    page = await client.sync_transactions(access_token, state.cursor)
                    state = Upserting(page, state.cursor)
                else:
                    page = state.page
                    upserted, n_removed = await _apply_page(db, page, account_map, user_id)
                    await db.commit()
                    synced += upserted
                    removed += n_removed
                    pages += 1

                    next_cursor = page.next_cursor or state.cursor
                    if page.has_more:
                        if not page.next_cursor:
                            raise PlaidAPIError(
                                "Plaid reported has_more without a next_cursor",
                                request_id=page.request_id,
                            )
                        state = Fetching(next_cursor)
                    else:
                        state = Done(next_cursor)
        except ITEM_FAILURES as exc:
            await db.rollback()
            logger.exception(
                "Failed to sync item %s after %d page(s); cursor left at %r",
                plaid_item_id, pages, prior_cursor,
            )
            return ItemSyncResult(
                item_id=plaid_item_id,
                transactions_synced=synced,
                cursor=prior_cursor,
                removed=removed,
                pages=pages,
                error=str(exc),
            )

        # Done: the only place the cursor is committed. An empty final cursor
        # never replaces one already stored.
        final_cursor = state.final_cursor or prior_cursor
        now = datetime.now(timezone.utc)
        item = await db.get(PlaidItem, item_pk)
        item.cursor = final_cursor
        item.updated_at = now
        item.last_synced_at = now
        await db.commit()

        logger.info(
            "Synced item %s: %d transaction(s), %d removed, %d page(s)",
            plaid_item_id, synced, removed, pages,
        )
        return ItemSyncResult(
            item_id=plaid_item_id,
            transactions_synced=synced,
            cursor=final_cursor,
            removed=removed,
            pages=pages,
            completed=True,
        )


# ─── All items for a user ─────────────────────────────────────────────────────

async def sync_user(
    session_factory: async_sessionmaker[AsyncSession],
    user_id: uuid.UUID,
    client: PlaidClient,
    full_sync: bool = False,
    max_concurrency: int | None = None,
) -> UserSyncResult:
    """Sync every item of a user, items in parallel up to max_concurrency."""
    async with session_factory() as db:
        result = await db.execute(
            select(PlaidItem.id)
            .where(PlaidItem.user_id == user_id)
            .order_by(PlaidItem.created_at, PlaidItem.id)
        )
        item_pks = list(result.scalars().all())

    if not item_pks:
        raise NoLinkedItemsError(f"No linked accounts found for user {user_id}")

    semaphore = asyncio.Semaphore(max(1, max_concurrency or settings.sync_max_concurrency))

    async def _bounded(pk: uuid.UUID) -> ItemSyncResult:
        async with semaphore:
            return await sync_item(session_factory, pk, client, full_sync=full_sync)

    tasks = [asyncio.create_task(_bounded(pk)) for pk in item_pks]
    try:
        results = await asyncio.gather(*tasks)
    except BaseException:
        for t in tasks:
            t.cancel()
        raise

    outcome = UserSyncResult(user_id=user_id, results=list(results))
    logger.info(
        "Transaction sync completed for user %s: %d transaction(s) across %d item(s), full_sync=%s",
        user_id, outcome.total_transactions_synced, outcome.items_synced, outcome.full_sync,
    )
    return outcome
