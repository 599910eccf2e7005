# backend/custody/models/deposit.py
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, validates

from custody.core.db import Base, utcnow
from custody.core.enums import Currency, DepositStatus
from custody.models.balance import AMOUNT


class DepositAddress(Base):
    """Cached result of deriving a user's display address. Holds no key material."""
    __tablename__ = "deposit_addresses"
    __table_args__ = (
        UniqueConstraint("user_id", "currency", name="uq_deposit_address_user"),
        UniqueConstraint("currency", "address", name="uq_deposit_address_value"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    address: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    derivation_path: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )


class DepositRecord(Base):
    __tablename__ = "deposit_records"
    __table_args__ = (
        UniqueConstraint("currency", "tx_reference", name="uq_deposit_tx_reference"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    # null while a pool deposit is waiting to be claimed
    user_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)

    # watched address the value arrived at
    address: Mapped[str] = mapped_column(String(128), nullable=False)
    sender_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tx_reference: Mapped[str] = mapped_column(String(255), nullable=False)

    confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    required_confirmations: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DepositStatus.PENDING.value, index=True
    )
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    claimed_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    credited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )

    @validates("status")
    def validate_status(self, key, value):
        valid_statuses = [s.value for s in DepositStatus]
        if value not in valid_statuses:
            raise ValueError(f"invalid deposit status: {value}. allowed: {valid_statuses}")
        return value

    @validates("currency")
    def validate_currency(self, key, value):
        valid = [c.value for c in Currency]
        if value not in valid:
            raise ValueError(f"invalid currency: {value}. allowed: {valid}")
        return value

    def __repr__(self):
        return f"<DepositRecord(id={self.id}, user_id={self.user_id}, ref={self.tx_reference}, status={self.status})>"


class AddressSnapshot(Base):
    """Last observed raw balance of a balance-diff address."""
    __tablename__ = "address_snapshots"
    __table_args__ = (
        UniqueConstraint("currency", "address", name="uq_address_snapshot"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    address: Mapped[str] = mapped_column(String(128), nullable=False)
    # raw integer units (wei / token base units) kept as text to avoid float storage
    last_raw_balance: Mapped[str] = mapped_column(String(80), nullable=False, default="0")
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # sweep sent from this address and not yet seen mined; deducted from last_raw_balance once it is
    sweep_tx_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    sweep_raw_transaction: Mapped[str | None] = mapped_column(Text, nullable=True)
    sweep_outflow_raw: Mapped[str | None] = mapped_column(String(80), nullable=True)
    sweep_fee_raw: Mapped[str | None] = mapped_column(String(80), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )


class ScanCursor(Base):
    """Next block to scan for transfers into a block-scanned address."""
    __tablename__ = "scan_cursors"
    __table_args__ = (
        UniqueConstraint("currency", "address", name="uq_scan_cursor"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    address: Mapped[str] = mapped_column(String(128), nullable=False)
    next_block: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )
