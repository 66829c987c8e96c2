import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean, Date, DateTime, Float, ForeignKey, Integer, Numeric, String, UniqueConstraint, Uuid, func,
)
from sqlalchemy.orm import Mapped, mapped_column

from cash_snapshot.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecurringTransaction(Base):
    """A provider-detected recurring stream. Custom detections are never stored."""
    __tablename__ = "recurring_transactions"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "direction", "merchant_name", "frequency",
            name="uq_recurring_user_direction_merchant_frequency",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), index=True)
    merchant_name: Mapped[str] = mapped_column(String(255))
    direction: Mapped[str] = mapped_column(String(10))   # inflow | outflow
    frequency: Mapped[str] = mapped_column(String(20))   # weekly | biweekly | monthly | quarterly
    avg_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    min_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    max_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    occurrences: Mapped[int] = mapped_column(Integer, default=0)
    last_date: Mapped[date | None] = mapped_column(Date)
    next_estimated_date: Mapped[date | None] = mapped_column(Date)
    confidence: Mapped[float | None] = mapped_column(Float)  # 0–1
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), default=_utcnow, onupdate=_utcnow
    )
