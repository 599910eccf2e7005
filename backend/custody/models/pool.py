# backend/custody/models/pool.py
from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from custody.core.db import Base, utcnow


class PoolAddress(Base):
    """The only address per currency that outbound transactions are sent from."""
    __tablename__ = "pool_addresses"

    currency: Mapped[str] = mapped_column(String(10), primary_key=True)
    address: Mapped[str] = mapped_column(String(128), nullable=False)
    derivation_path: Mapped[str] = mapped_column(String(64), nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    def __repr__(self):
        return f"<PoolAddress(currency={self.currency}, address={self.address})>"
