import uuid
from datetime import date as date_type, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON, Boolean, Date, DateTime, ForeignKey, Numeric, String, Text, UniqueConstraint, Uuid, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cash_snapshot.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlaidItem(Base):
    """Represents a Plaid Item (one bank connection)."""
    __tablename__ = "plaid_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), index=True)
    item_id: Mapped[str] = mapped_column(String(255), unique=True)
    # Never exposed through a response schema
    encrypted_access_token: Mapped[str] = mapped_column(Text)
    institution_id: Mapped[str | None] = mapped_column(String(100))
    institution_name: Mapped[str | None] = mapped_column(String(255))
    # Null until the first successful /transactions/sync run
    cursor: Mapped[str | None] = mapped_column(Text)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), default=_utcnow, onupdate=_utcnow
    )

    user: Mapped["User"] = relationship(back_populates="items")
    accounts: Mapped[list["Account"]] = relationship(back_populates="plaid_item")


class Account(Base):
    """A bank or credit account under one Plaid Item."""
    __tablename__ = "accounts"
    __table_args__ = (
        UniqueConstraint("item_id", "account_id", name="uq_accounts_item_account"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), index=True)
    item_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("plaid_items.id"), index=True)
    account_id: Mapped[str] = mapped_column(String(255))  # Plaid account_id
    name: Mapped[str | None] = mapped_column(String(255))
    official_name: Mapped[str | None] = mapped_column(String(255))
    type: Mapped[str | None] = mapped_column(String(50))     # depository, credit, ...
    subtype: Mapped[str | None] = mapped_column(String(50))  # checking, savings, ...
    mask: Mapped[str | None] = mapped_column(String(10))     # last 4 digits
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), default=_utcnow, onupdate=_utcnow
    )

    plaid_item: Mapped["PlaidItem"] = relationship(back_populates="accounts")
    transactions: Mapped[list["Transaction"]] = relationship(back_populates="account")


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), index=True)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("accounts.id"), index=True)
    # Idempotency key for re-delivered records
    transaction_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))  # positive = outflow
    iso_currency_code: Mapped[str | None] = mapped_column(String(3))
    unofficial_currency_code: Mapped[str | None] = mapped_column(String(10))
    date: Mapped[date_type | None] = mapped_column(Date, index=True)
    authorized_date: Mapped[date_type | None] = mapped_column(Date)
    name: Mapped[str | None] = mapped_column(String(500))
    merchant_name: Mapped[str | None] = mapped_column(String(255))
    category: Mapped[list[str] | None] = mapped_column(JSON)
    account_owner: Mapped[str | None] = mapped_column(String(255))
    pending: Mapped[bool] = mapped_column(Boolean, default=False)
    transaction_type: Mapped[str | None] = mapped_column(String(50))
    # Set when Plaid reports the id under `removed`; cleared on re-delivery
    removed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), default=_utcnow, onupdate=_utcnow
    )

    account: Mapped["Account"] = relationship(back_populates="transactions")
