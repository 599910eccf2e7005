# backend/custody/core/errors.py


class CustodyError(Exception):
    """Base class for custody failures. `status_code` is what the API layer returns."""
    status_code = 400

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.context = context


class InsufficientFunds(CustodyError):
    status_code = 409


class InsufficientPoolBalance(CustodyError):
    status_code = 503


class InvalidAddress(CustodyError):
    status_code = 422


class InvalidAmount(CustodyError):
    status_code = 422


class UnsupportedCurrency(CustodyError):
    status_code = 422


class DuplicateDeposit(CustodyError):
    """A credit reference replayed with a different user or amount"""
    status_code = 409


class ChainUnavailable(CustodyError):
    status_code = 503


class BroadcastFailed(CustodyError):
    status_code = 502


class BroadcastTimeout(ChainUnavailable):
    """Outcome unknown: the transaction may or may not have reached the network"""
    status_code = 504


class InconsistentState(CustodyError):
    status_code = 409


class InvalidTransition(CustodyError):
    status_code = 409


class NotFound(CustodyError):
    status_code = 404


class SeedUnavailable(CustodyError):
    status_code = 503
