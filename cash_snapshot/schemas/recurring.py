import uuid
from datetime import date

from pydantic import BaseModel


class RecurringStreamResponse(BaseModel):
    stream_id: str | None
    description: str | None
    merchant_name: str | None
    avg_amount: float
    first_date: date | None
    last_date: date | None
    next_estimated_date: date | None
    occurrences: int
    frequency_days: int | None
    direction: str                   # inflow | outflow
    source: str                      # provider | custom

    model_config = {"from_attributes": True}


class DetectionMethods(BaseModel):
    plaid_api: int
    custom_detector: int


class RecurringResponse(BaseModel):
    user_id: uuid.UUID
    type: str
    recurring_transactions: list[RecurringStreamResponse]
    total_streams: int
    detection_methods: DetectionMethods
