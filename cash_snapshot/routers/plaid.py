import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cash_snapshot.core.config import settings
from cash_snapshot.core.database import get_db, get_session_factory
from cash_snapshot.core.deps import get_plaid_client
from cash_snapshot.core.limiter import limiter
from cash_snapshot.models.account import Account, PlaidItem
from cash_snapshot.schemas.plaid import (
    ExchangeRequest,
    ExchangeResponse,
    ItemSyncResultResponse,
    LinkTokenRequest,
    LinkTokenResponse,
    PlaidItemResponse,
    SandboxPublicTokenRequest,
    SandboxPublicTokenResponse,
    SyncRequest,
    SyncResponse,
)
from cash_snapshot.services.item_link import ensure_user, exchange_and_save
from cash_snapshot.services.plaid_client import PlaidAPIError, PlaidClient
from cash_snapshot.services.sync import NoLinkedItemsError, sync_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/plaid", tags=["plaid"])


def _upstream_error(exc: PlaidAPIError) -> HTTPException:
    # Client mistakes (bad public token, ...) surface as 400, Plaid outages as 502
    status = 400 if exc.is_client_error else 502
    return HTTPException(status_code=status, detail=f"Plaid error: {exc.message}")


# ─── Link ──────────────────────────────────────────────────────────────────

@router.post("/link-token", response_model=LinkTokenResponse)
@limiter.limit(settings.rate_limit_link)
async def create_link_token(
    request: Request,
    payload: LinkTokenRequest | None = None,
    db: AsyncSession = Depends(get_db),
    client: PlaidClient = Depends(get_plaid_client),
):
    payload = payload or LinkTokenRequest()
    user_id = payload.user_id or uuid.uuid4()

    await ensure_user(db, user_id)
    await db.commit()

    try:
        data = await client.create_link_token(str(user_id), payload.client_name)
    except PlaidAPIError as exc:
        logger.error("Link token creation failed for user %s: %s", user_id, exc)
        raise _upstream_error(exc) from exc

    logger.info("Link token created for user %s (request_id=%s)", user_id, data.get("request_id"))
    return LinkTokenResponse(
        link_token=data.get("link_token", ""),
        expiration=data.get("expiration"),
        request_id=data.get("request_id"),
        user_id=user_id,
    )


@router.post("/sandbox/public-token", response_model=SandboxPublicTokenResponse)
async def create_sandbox_public_token(
    payload: SandboxPublicTokenRequest | None = None,
    client: PlaidClient = Depends(get_plaid_client),
):
    """Skip Link in sandbox: mint a public token directly."""
    if not client.is_sandbox:
        raise HTTPException(status_code=404, detail="Only available in the Plaid sandbox")
    payload = payload or SandboxPublicTokenRequest()
    try:
        data = await client.create_sandbox_public_token(payload.institution_id, payload.initial_products)
    except PlaidAPIError as exc:
        raise _upstream_error(exc) from exc
    return SandboxPublicTokenResponse(
        public_token=data.get("public_token", ""),
        request_id=data.get("request_id"),
    )


@router.post("/exchange", response_model=ExchangeResponse)
@limiter.limit(settings.rate_limit_exchange)
async def exchange_public_token(
    request: Request,
    payload: ExchangeRequest,
    db: AsyncSession = Depends(get_db),
    client: PlaidClient = Depends(get_plaid_client),
):
    try:
        linked = await exchange_and_save(db, client, payload.user_id, payload.public_token)
    except PlaidAPIError as exc:
        logger.error("Token exchange failed for user %s: %s", payload.user_id, exc)
        raise _upstream_error(exc) from exc
    return ExchangeResponse(
        item_id=linked.item_id,
        accounts=linked.accounts,
        institution=linked.institution,
    )


@router.get("/items", response_model=list[PlaidItemResponse])
async def list_items(
    user_id: uuid.UUID = Query(...),
    db: AsyncSession = Depends(get_db),
):
    account_count = (
        select(func.count(Account.id))
        .where(Account.item_id == PlaidItem.id)
        .correlate(PlaidItem)
        .scalar_subquery()
    )
    result = await db.execute(
        select(PlaidItem, account_count)
        .where(PlaidItem.user_id == user_id)
        .order_by(PlaidItem.created_at)
    )
    return [
        PlaidItemResponse(
            id=item.id,
            item_id=item.item_id,
            institution_id=item.institution_id,
            institution_name=item.institution_name,
            cursor=item.cursor,
            last_synced_at=item.last_synced_at,
            created_at=item.created_at,
            account_count=count or 0,
        )
        for item, count in result.all()
    ]


# ─── Sync ──────────────────────────────────────────────────────────────────

@router.post("/sync", response_model=SyncResponse)
@limiter.limit(settings.rate_limit_sync)
async def sync_transactions(
    request: Request,
    payload: SyncRequest,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    client: PlaidClient = Depends(get_plaid_client),
):
    """Run the cursor-based transaction sync for every item of the user."""
    try:
        outcome = await sync_user(session_factory, payload.user_id, client, full_sync=payload.full_sync)
    except NoLinkedItemsError:
        raise HTTPException(status_code=404, detail="No linked accounts found for user")

    return SyncResponse(
        user_id=outcome.user_id,
        total_transactions_synced=outcome.total_transactions_synced,
        items_synced=outcome.items_synced,
        sync_results=[
            ItemSyncResultResponse(
                item_id=r.item_id,
                transactions_synced=r.transactions_synced,
                cursor=r.cursor,
                error=r.error,
            )
            for r in outcome.results
        ],
        full_sync=outcome.full_sync,
    )
