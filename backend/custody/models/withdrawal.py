# backend/custody/models/withdrawal.py
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, validates

from custody.core.db import Base, utcnow
from custody.core.enums import WithdrawalStatus
from custody.models.balance import AMOUNT


class WithdrawalRequest(Base):
    __tablename__ = "withdrawal_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    currency: Mapped[str] = mapped_column(String(10), nullable=False, index=True)

    # amount is what the user gives up; net_amount is what leaves the pool
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    fee: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=Decimal("0"))
    net_amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    destination_address: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=WithdrawalStatus.PENDING.value, nullable=False, index=True
    )
    hold_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("balance_holds.id"), nullable=False, unique=True
    )

    admin_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    admin_notes: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # recorded before broadcast so a crash or timeout can be resolved against the chain
    tx_reference: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    raw_transaction: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )
    broadcast_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @validates("status")
    def validate_status(self, key, value):
        valid_statuses = [s.value for s in WithdrawalStatus]
        if value not in valid_statuses:
            raise ValueError(f"invalid withdrawal status: {value}. allowed: {valid_statuses}")
        return value

    def __repr__(self):
        return f"<WithdrawalRequest(id={self.id}, user_id={self.user_id}, status={self.status})>"
