# backend/custody/services/deposit_addresses.py
import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from custody.core.enums import ChainFamily, Currency
from custody.core.keys import KeyDerivationEngine
from custody.models import AddressSnapshot, DepositAddress
from custody.services.chain.registry import family_of

logger = logging.getLogger(__name__)


class DepositAddressBook:
    """Display addresses: derived on first request, then served from deposit_addresses."""

    def __init__(self, keys: KeyDerivationEngine):
        self.keys = keys

    def get_deposit_address(self, db: Session, user_id: int, currency: Currency) -> DepositAddress:
        row = self._lookup(db, user_id, currency)
        if row is not None:
            return row

        derived = self.keys.derive_address(user_id, currency)
        row = DepositAddress(
            user_id=user_id,
            currency=currency.value,
            address=derived.address,
            derivation_path=derived.derivation_path,
        )
        db.add(row)
        if family_of(currency) == ChainFamily.EVM:
            # ETH and its tokens share one address; watch it for all of them from now on
            for sibling in Currency:
                if family_of(sibling) != ChainFamily.EVM:
                    continue
                if sibling != currency and self._lookup(db, user_id, sibling) is None:
                    db.add(
                        DepositAddress(
                            user_id=user_id,
                            currency=sibling.value,
                            address=derived.address,
                            derivation_path=derived.derivation_path,
                        )
                    )
                self._baseline(db, sibling, derived.address)
        try:
            db.commit()
        except IntegrityError:
            # another request cached it first; the derivation is deterministic so the value is the same
            db.rollback()
            row = self._lookup(db, user_id, currency)
            if row is None:
                raise
            return row

        logger.info(f"Derived {currency.value} display address for user {user_id}: {derived.derivation_path}")
        return row

    def _lookup(self, db: Session, user_id: int, currency: Currency) -> DepositAddress | None:
        return db.execute(
            select(DepositAddress).where(
                DepositAddress.user_id == user_id,
                DepositAddress.currency == currency.value,
            )
        ).scalar_one_or_none()

    def _baseline(self, db: Session, currency: Currency, address: str):
        """A freshly derived account address starts at zero, so its first deposit is a delta."""
        exists = db.execute(
            select(AddressSnapshot.id).where(
                AddressSnapshot.currency == currency.value,
                AddressSnapshot.address == address.lower(),
            )
        ).first()
        if exists is None:
            db.add(AddressSnapshot(currency=currency.value, address=address.lower(), last_raw_balance="0", sequence=0))

    def is_display_address(self, db: Session, currency: Currency, address: str) -> bool:
        return db.execute(
            select(DepositAddress.id).where(
                DepositAddress.currency == currency.value,
                func.lower(DepositAddress.address) == address.lower(),
            )
        ).first() is not None

    def display_addresses(self, db: Session, currency: Currency) -> list[str]:
        return list(
            db.execute(
                select(DepositAddress.address)
                .where(DepositAddress.currency == currency.value)
                .order_by(DepositAddress.id)
            ).scalars()
        )
