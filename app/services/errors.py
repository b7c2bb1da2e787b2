import enum
import logging
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class ErrorKind(str, enum.Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    BOOK_NOT_FOUND = "BOOK_NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    INVALID_STATUS = "INVALID_STATUS"
    BOOK_NOT_AVAILABLE = "BOOK_NOT_AVAILABLE"
    ACCOUNT_INACTIVE = "ACCOUNT_INACTIVE"
    BORROWING_LIMIT_EXCEEDED = "BORROWING_LIMIT_EXCEEDED"
    HAS_OVERDUE_BOOKS = "HAS_OVERDUE_BOOKS"
    HAS_UNPAID_FINES = "HAS_UNPAID_FINES"
    ALREADY_BORROWED = "ALREADY_BORROWED"
    MAX_RENEWALS_REACHED = "MAX_RENEWALS_REACHED"
    BOOK_RESERVED = "BOOK_RESERVED"
    ALREADY_RESERVED = "ALREADY_RESERVED"


class LibraryError(Exception):
    """
    A business-rule or input failure. Nothing was written when this is raised,
    and resubmitting the same call fails the same way.
    """

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __repr__(self) -> str:
        return f"LibraryError({self.kind.value}, {self.message!r})"


class StorageError(Exception):
    """The database failed underneath an operation; the work was rolled back."""


@contextmanager
def unit_of_work(db: Session, action: str, log: logging.Logger = logger):
    """
    Commits the session when the block finishes, rolls it back otherwise.

    A :class:`LibraryError` is re-raised as is; any ``SQLAlchemyError`` is
    logged and re-raised as :class:`StorageError`.
    """
    try:
        yield
        db.commit()
    except LibraryError as exc:
        db.rollback()
        log.warning("%s refused: %s", action, exc.kind.value)
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        log.exception("%s failed", action)
        raise StorageError(f"Failed to {action}") from exc


def forbidden(message: str = "Access denied") -> LibraryError:
    return LibraryError(ErrorKind.FORBIDDEN, message)


def not_found(what: str) -> LibraryError:
    return LibraryError(ErrorKind.NOT_FOUND, f"{what} not found")


def invalid_status(verb: str, status) -> LibraryError:
    return LibraryError(
        ErrorKind.INVALID_STATUS,
        f"Cannot {verb} {status.value.lower()} transaction",
    )
