import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from cash_snapshot.core.config import settings
from cash_snapshot.core.database import get_db
from cash_snapshot.core.deps import get_plaid_client
from cash_snapshot.core.limiter import limiter
from cash_snapshot.schemas.balances import (
    AccountBalanceResponse,
    AccountBalancesResponse,
    BalanceRefreshRequest,
    BalanceRefreshResponse,
)
from cash_snapshot.services.balances import list_account_balances, refresh_balances
from cash_snapshot.services.plaid_client import PlaidClient
from cash_snapshot.services.sync import NoLinkedItemsError

router = APIRouter(prefix="/balances", tags=["balances"])


@router.post("/refresh", response_model=BalanceRefreshResponse)
@limiter.limit(settings.rate_limit_balances)
async def refresh_account_balances(
    request: Request,
    payload: BalanceRefreshRequest,
    db: AsyncSession = Depends(get_db),
    client: PlaidClient = Depends(get_plaid_client),
):
    """Fetch live balances from Plaid and store the latest per account."""
    try:
        outcome = await refresh_balances(db, client, payload.user_id)
    except NoLinkedItemsError:
        raise HTTPException(status_code=404, detail="No linked accounts found for user")
    return BalanceRefreshResponse(
        user_id=outcome.user_id,
        items_refreshed=outcome.items_refreshed,
        accounts_updated=outcome.accounts_updated,
        errors=outcome.errors,
    )


@router.get("/accounts", response_model=AccountBalancesResponse)
async def get_account_balances(
    user_id: uuid.UUID = Query(...),
    db: AsyncSession = Depends(get_db),
):
    rows = await list_account_balances(db, user_id)
    return AccountBalancesResponse(
        user_id=user_id,
        accounts=[AccountBalanceResponse.model_validate(r) for r in rows],
        total_accounts=len(rows),
    )
