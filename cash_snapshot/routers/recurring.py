import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from cash_snapshot.core.database import get_db
from cash_snapshot.core.deps import get_optional_plaid_client
from cash_snapshot.schemas.recurring import (
    DetectionMethods,
    RecurringResponse,
    RecurringStreamResponse,
)
from cash_snapshot.services.plaid_client import PlaidClient
from cash_snapshot.services.recurring import get_recurring

router = APIRouter(prefix="/recurring", tags=["recurring"])


@router.get("", response_model=RecurringResponse)
async def list_recurring_streams(
    user_id: uuid.UUID = Query(...),
    type: str = Query(default="outflow"),
    db: AsyncSession = Depends(get_db),
    client: PlaidClient | None = Depends(get_optional_plaid_client),
):
    """
    Recurring streams for one direction. Plaid's recurring endpoint is tried
    first (and its streams saved); when it has nothing, streams are inferred
    from stored transactions and returned without being saved.
    """
    result = await get_recurring(db, client, user_id, type)
    return RecurringResponse(
        user_id=result.user_id,
        type=result.type,
        recurring_transactions=[
            RecurringStreamResponse.model_validate(s) for s in result.streams
        ],
        total_streams=result.total_streams,
        detection_methods=DetectionMethods(
            plaid_api=result.plaid_api,
            custom_detector=result.custom_detector,
        ),
    )
