from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from app.models.models import AccountStatus, Book, Transaction, TransactionStatus, User
from app.services.errors import ErrorKind, LibraryError
from app.services.fines import FineLedger
from app.services.inventory import InventoryLedger

OPEN_STATUSES = (TransactionStatus.PENDING, TransactionStatus.ACTIVE)


def is_overdue(transaction: Transaction, now: datetime) -> bool:
    """
    OVERDUE is never stored by the engine: an ACTIVE loan is overdue once its
    due date has passed. Rows stored as OVERDUE are honoured as well.
    """
    if transaction.status == TransactionStatus.OVERDUE:
        return True
    return transaction.status == TransactionStatus.ACTIVE and transaction.due_date < now


def overdue_clause(now: datetime):
    """SQL form of :func:`is_overdue`."""
    return or_(
        Transaction.status == TransactionStatus.OVERDUE,
        and_(Transaction.status == TransactionStatus.ACTIVE, Transaction.due_date < now),
    )


@dataclass
class EligibilityResult:
    eligible: bool
    reason: Optional[ErrorKind] = None
    message: Optional[str] = None

    def raise_for_reason(self) -> None:
        if not self.eligible:
            raise LibraryError(self.reason, self.message)


class EligibilityEvaluator:
    """
    Decides whether a student may open a new borrow request for a book.

    The checks run in a fixed order and the first failure is reported, so the
    student always gets the most actionable message. Nothing is written.
    """

    def __init__(self, db: Session, fines: Optional[FineLedger] = None):
        self.db = db
        self.fines = fines or FineLedger(db)

    def evaluate(self, student: User, book: Book, now: datetime) -> EligibilityResult:
        if not InventoryLedger.is_borrowable(book):
            return EligibilityResult(
                False, ErrorKind.BOOK_NOT_AVAILABLE, "Book is not available for borrowing"
            )

        if student.status != AccountStatus.ACTIVE:
            return EligibilityResult(False, ErrorKind.ACCOUNT_INACTIVE, "Your account is not active")

        open_count = (
            self.db.query(Transaction)
            .filter(Transaction.user_id == student.id, Transaction.status.in_(OPEN_STATUSES))
            .count()
        )
        if open_count >= student.borrowing_limit:
            return EligibilityResult(
                False,
                ErrorKind.BORROWING_LIMIT_EXCEEDED,
                f"You have reached your borrowing limit ({student.borrowing_limit} books)",
            )

        overdue = (
            self.db.query(Transaction.id)
            .filter(Transaction.user_id == student.id, overdue_clause(now))
            .first()
        )
        if overdue:
            return EligibilityResult(
                False, ErrorKind.HAS_OVERDUE_BOOKS, "You have overdue books. Please return them first."
            )

        if self.fines.has_unpaid(student.id):
            return EligibilityResult(
                False, ErrorKind.HAS_UNPAID_FINES, "You have unpaid fines. Please clear them first."
            )

        existing = (
            self.db.query(Transaction)
            .filter(
                Transaction.user_id == student.id,
                Transaction.book_id == book.id,
                Transaction.status.in_(OPEN_STATUSES),
            )
            .first()
        )
        if existing:
            if existing.status == TransactionStatus.PENDING:
                message = "You already have a pending request for this book"
            else:
                message = "You have already borrowed this book"
            return EligibilityResult(False, ErrorKind.ALREADY_BORROWED, message)

        return EligibilityResult(True)

    def ensure_eligible(self, student: User, book: Book, now: datetime) -> None:
        self.evaluate(student, book, now).raise_for_reason()
