"""
Domain exceptions shared by every Groupeat app.

Each error carries a small numeric id the client switches on to show a
localized message, plus the context it was raised with. Errors log
themselves when they are constructed.
"""
import logging

logger = logging.getLogger(__name__)


class GroupeatError(Exception):
    """Base exception for all Groupeat domain errors."""

    error_id = None

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.log_error()

    def log_error(self):
        logger.warning(f"{type(self).__name__}: {self.message} | details={self.details!r}")

    def get_error_id(self):
        return self.error_id


class AlreadyExistsError(GroupeatError):
    """Raised on duplicate registration, too many orders or a double payment."""

    error_id = 1


class InvalidInputError(GroupeatError):
    """Raised when input is malformed or fails a validation predicate."""

    error_id = 2


class NotExistsError(GroupeatError):
    """Raised when a referenced entity is absent."""

    error_id = 3


class UnknownError(GroupeatError):
    """Wraps unexpected failures."""

    error_id = 4

    def log_error(self):
        logger.error(f"UnknownError: {self.message} | details={self.details!r}")


class PaidOrderExistsError(GroupeatError):
    """Raised when a user with a paid order for today tries to add another order."""

    error_id = 5


class StorageError(GroupeatError):
    """Raised when the persistence layer fails."""

    error_id = 6

    def log_error(self):
        logger.error(f"StorageError: {self.message} | details={self.details!r}")


class UserNotExistsError(NotExistsError):
    pass


class OfficeNotExistsError(NotExistsError):
    pass


class RestaurantNotExistsError(NotExistsError):
    pass


class UserAlreadyExistsError(AlreadyExistsError):
    pass


class OfficeAlreadyExistsError(AlreadyExistsError):
    pass


class RestaurantAlreadyExistsError(AlreadyExistsError):
    pass


def get_error_id(exc):
    """
    Return the numeric code the client receives for an exception.
    Anything that is not a domain error is reported as an UnknownError.
    """
    if isinstance(exc, GroupeatError):
        return exc.get_error_id()

    return UnknownError("An unknown error has occurred.", {"exception": repr(exc)}).get_error_id()
