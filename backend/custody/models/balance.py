# backend/custody/models/balance.py
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from custody.core.db import Base, utcnow
from custody.core.enums import HoldStatus

AMOUNT = Numeric(28, 8)


class Balance(Base):
    __tablename__ = "user_balances"
    __table_args__ = (
        UniqueConstraint("user_id", "currency", name="uq_user_balances"),
        CheckConstraint("available_balance >= 0", name="ck_available_non_negative"),
        CheckConstraint("available_balance <= balance", name="ck_available_le_balance"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    balance: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=Decimal("0"))
    available_balance: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=Decimal("0"))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )

    def __repr__(self):
        return (
            f"<Balance(user_id={self.user_id}, currency={self.currency}, "
            f"balance={self.balance}, available={self.available_balance})>"
        )


class BalanceHold(Base):
    """Reservation against available_balance; balance moves only on commit."""
    __tablename__ = "balance_holds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=HoldStatus.ACTIVE.value, index=True
    )
    external_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<BalanceHold(id={self.id}, user_id={self.user_id}, amount={self.amount}, status={self.status})>"


class LedgerEntry(Base):
    """Append-only movement log. Rows are never updated or deleted."""
    __tablename__ = "transactions_ledger"
    __table_args__ = (
        UniqueConstraint("entry_type", "currency", "reference_id", name="uq_ledger_reference"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    entry_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    reference_id: Mapped[str] = mapped_column(String(255), nullable=False)
    meta: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    def __repr__(self):
        return f"<LedgerEntry(id={self.id}, type={self.entry_type}, amount={self.amount}, ref={self.reference_id})>"
