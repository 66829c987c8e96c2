import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Numeric, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cash_snapshot.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountBalance(Base):
    """Latest Plaid balance for one account; each refresh overwrites it."""
    __tablename__ = "account_balances"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), index=True)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("accounts.id"), unique=True)
    available: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    current_balance: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    limit_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))  # credit lines only
    iso_currency_code: Mapped[str | None] = mapped_column(String(3))
    unofficial_currency_code: Mapped[str | None] = mapped_column(String(10))
    # Plaid's balances.last_updated_datetime; only some institutions report it
    last_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refreshed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), default=_utcnow, onupdate=_utcnow
    )

    account: Mapped["Account"] = relationship()
