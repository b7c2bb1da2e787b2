"""Borrowing transaction lifecycle.

PENDING -> ACTIVE | REJECTED, ACTIVE -> ACTIVE (renew) | RETURNED.
RETURNED and REJECTED are terminal; OVERDUE is derived at read time.

Every public operation runs as one database transaction. Status changes are
conditional UPDATEs on the expected prior status, and the availability counter
is only touched through :class:`InventoryLedger`, so a lost race surfaces as a
typed error with nothing written.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple, Union

from sqlalchemy.orm import Session

from app.models.models import (
    Fine,
    ReturnCondition,
    Role,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
    utcnow,
)
from app.services.audit import AuditSink
from app.services.eligibility import EligibilityEvaluator, overdue_clause
from app.services.errors import (
    ErrorKind,
    LibraryError,
    forbidden,
    invalid_status,
    not_found,
    unit_of_work,
)
from app.services.fines import FineLedger, days_overdue
from app.services.inventory import InventoryLedger
from app.services.policy import PolicyStore
from app.services.reservations import ReservationGate

logger = logging.getLogger(__name__)

MIN_LOAN_DAYS = 1
MAX_LOAN_DAYS = 90
RETURNABLE_STATUSES = (TransactionStatus.ACTIVE, TransactionStatus.OVERDUE)


@dataclass(frozen=True)
class Approve:
    notes: Optional[str] = None


@dataclass(frozen=True)
class Reject:
    reason: str
    notes: Optional[str] = None


Decision = Union[Approve, Reject]


@dataclass
class RenewResult:
    transaction: Transaction
    renewals_remaining: int


@dataclass
class ReturnResult:
    transaction: Transaction
    fine: Optional[Fine]
    days_overdue: int


def _check_days(value: int, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise LibraryError(ErrorKind.VALIDATION_ERROR, f"{field} must be a whole number of days")
    if not MIN_LOAN_DAYS <= value <= MAX_LOAN_DAYS:
        raise LibraryError(
            ErrorKind.VALIDATION_ERROR,
            f"{field} must be between {MIN_LOAN_DAYS} and {MAX_LOAN_DAYS}",
        )
    return value


class CirculationService:
    def __init__(
        self,
        db: Session,
        policy: Optional[PolicyStore] = None,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.clock = clock
        self.policy = policy or PolicyStore(db)
        self.audit = audit or AuditSink(db)
        self.inventory = InventoryLedger(db)
        self.fines = FineLedger(db, self.audit, clock)
        self.reservations = ReservationGate(db, self.policy, self.audit, clock)
        self.eligibility = EligibilityEvaluator(db, self.fines)

    def _unit_of_work(self, action: str):
        return unit_of_work(self.db, action, logger)

    def _lock_borrower(self, user_id: int) -> None:
        """
        Takes the write lock on the borrower's row for the rest of the current
        transaction, so limit checks for one student run one at a time.
        """
        self.db.query(User).filter(User.id == user_id).update(
            {User.borrowing_limit: User.borrowing_limit}, synchronize_session=False
        )

    def _transition(self, transaction_id: int, expected, values: dict) -> bool:
        if not isinstance(expected, tuple):
            expected = (expected,)
        moved = (
            self.db.query(Transaction)
            .filter(Transaction.id == transaction_id, Transaction.status.in_(expected))
            .update(values, synchronize_session=False)
        )
        return moved == 1

    def _load(self, transaction_id: int) -> Transaction:
        transaction = self.db.query(Transaction).filter(Transaction.id == transaction_id).first()
        if not transaction:
            raise not_found("Transaction")
        return transaction

    def get_transaction(self, actor: User, transaction_id: int) -> Transaction:
        transaction = self._load(transaction_id)
        if actor.role == Role.STUDENT and transaction.user_id != actor.id:
            raise forbidden()
        return transaction

    def list_transactions(
        self,
        actor: User,
        status: Optional[TransactionStatus] = None,
        user_id: Optional[int] = None,
        book_id: Optional[int] = None,
        overdue_only: bool = False,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Transaction], int]:
        """Students only ever see their own transactions."""
        query = self.db.query(Transaction)
        if actor.role == Role.STUDENT:
            query = query.filter(Transaction.user_id == actor.id)
        elif user_id is not None:
            query = query.filter(Transaction.user_id == user_id)
        if status is not None:
            query = query.filter(Transaction.status == status)
        if book_id is not None:
            query = query.filter(Transaction.book_id == book_id)
        if overdue_only:
            query = query.filter(overdue_clause(self.clock()))

        total = query.count()
        items = (
            query.order_by(Transaction.borrowed_at.desc(), Transaction.id.desc())
            .offset((max(page, 1) - 1) * limit)
            .limit(limit)
            .all()
        )
        return items, total

    def create_request(
        self,
        actor: User,
        requested_days: int,
        book_id: Optional[int] = None,
        barcode: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Transaction:
        """
        Opens a PENDING borrow request for the acting student.

        The due date stored here is provisional; approval recomputes it.

        Raises:
            LibraryError: FORBIDDEN, VALIDATION_ERROR, BOOK_NOT_FOUND or the
                first failing eligibility check.
        """
        if actor.role != Role.STUDENT:
            raise forbidden("Only students can create borrow requests")
        requested_days = _check_days(requested_days, "requested_days")
        book = self.inventory.resolve(book_id=book_id, barcode=barcode)

        now = self.clock()
        with self._unit_of_work("create borrow request"):
            # checks below see every request this student committed before us
            self._lock_borrower(actor.id)
            result = self.eligibility.evaluate(actor, book, now)
            if not result.eligible:
                logger.warning(
                    "Borrow request by user %s for book %s refused: %s",
                    actor.id,
                    book.id,
                    result.reason.value,
                )
                result.raise_for_reason()

            transaction = Transaction(
                book_id=book.id,
                user_id=actor.id,
                type=TransactionType.BORROW,
                status=TransactionStatus.PENDING,
                requested_days=requested_days,
                borrowed_at=now,
                due_date=now + timedelta(days=requested_days),
                notes=notes,
            )
            self.db.add(transaction)
            self.db.flush()
            self.audit.record(
                actor.id,
                "CREATE_BORROW_REQUEST",
                f"Student {actor.full_name} requested to borrow \"{book.title}\" for {requested_days} days",
                entity_type="TRANSACTION",
                entity_id=transaction.id,
            )

        self.db.refresh(transaction)
        logger.info("Transaction %s created as PENDING", transaction.id)
        return transaction

    def process(self, actor: User, transaction_id: int, decision: Decision) -> Transaction:
        """
        Approves or rejects a PENDING request. Staff only.

        Approval moves the request to ACTIVE and takes one unit of the book's
        availability in the same commit; when no unit is left at that moment
        the whole approval is refused with BOOK_NOT_AVAILABLE.
        """
        if actor.role != Role.STAFF:
            raise forbidden("Only staff can process borrow requests")
        transaction = self.get_transaction(actor, transaction_id)
        if transaction.status != TransactionStatus.PENDING:
            raise invalid_status("process", transaction.status)

        if isinstance(decision, Approve):
            self._approve(actor, transaction, decision)
        elif isinstance(decision, Reject):
            self._reject(actor, transaction, decision)
        else:
            raise LibraryError(ErrorKind.VALIDATION_ERROR, "Decision must be approve or reject")

        self.db.refresh(transaction)
        return transaction

    def _approve(self, actor: User, transaction: Transaction, decision: Approve) -> None:
        book = transaction.book
        borrower = transaction.user
        now = self.clock()

        with self._unit_of_work("approve borrow request"):
            self._lock_borrower(borrower.id)
            if not self.inventory.is_borrowable(book):
                raise LibraryError(ErrorKind.BOOK_NOT_AVAILABLE, "Book is no longer available")
            self._check_loan_limit(transaction)
            if self.reservations.blocks_approval(transaction, book.available_quantity, now):
                raise LibraryError(
                    ErrorKind.BOOK_RESERVED, "Book is reserved by students who asked for it earlier"
                )

            days = transaction.requested_days or self.policy.loan_period_days()
            moved = self._transition(
                transaction.id,
                TransactionStatus.PENDING,
                {
                    Transaction.status: TransactionStatus.ACTIVE,
                    Transaction.approved_at: now,
                    Transaction.due_date: now + timedelta(days=days),
                    Transaction.processed_by: actor.id,
                    Transaction.notes: decision.notes or transaction.notes,
                },
            )
            if not moved:
                raise LibraryError(ErrorKind.INVALID_STATUS, "Transaction was already processed")
            if not self.inventory.consume_copy(book.id):
                raise LibraryError(ErrorKind.BOOK_NOT_AVAILABLE, "Book is no longer available")

            self.reservations.fulfill_for(book.id, borrower.id, now)
            self.audit.record(
                actor.id,
                "APPROVE_BORROW",
                f"Staff {actor.full_name} approved borrow request for \"{book.title}\" by {borrower.full_name}",
                entity_type="TRANSACTION",
                entity_id=transaction.id,
            )

        logger.info("Transaction %s approved by user %s", transaction.id, actor.id)

    def _check_loan_limit(self, transaction: Transaction) -> None:
        """The borrower's limit may have been lowered since the request was made."""
        limit = (
            self.db.query(User.borrowing_limit).filter(User.id == transaction.user_id).scalar()
        )
        on_loan = (
            self.db.query(Transaction)
            .filter(
                Transaction.user_id == transaction.user_id,
                Transaction.id != transaction.id,
                Transaction.status.in_(RETURNABLE_STATUSES),
            )
            .count()
        )
        if on_loan >= limit:
            raise LibraryError(
                ErrorKind.BORROWING_LIMIT_EXCEEDED,
                f"Borrower has reached the borrowing limit ({limit} books)",
            )

    def _reject(self, actor: User, transaction: Transaction, decision: Reject) -> None:
        reason = (decision.reason or "").strip()
        if not reason:
            raise LibraryError(ErrorKind.VALIDATION_ERROR, "A rejection reason is required")
        book = transaction.book
        borrower = transaction.user
        now = self.clock()

        with self._unit_of_work("reject borrow request"):
            moved = self._transition(
                transaction.id,
                TransactionStatus.PENDING,
                {
                    Transaction.status: TransactionStatus.REJECTED,
                    Transaction.rejected_at: now,
                    Transaction.rejection_reason: reason,
                    Transaction.processed_by: actor.id,
                    Transaction.notes: decision.notes or transaction.notes,
                },
            )
            if not moved:
                raise LibraryError(ErrorKind.INVALID_STATUS, "Transaction was already processed")
            self.audit.record(
                actor.id,
                "REJECT_BORROW",
                f"Staff {actor.full_name} rejected borrow request for \"{book.title}\" "
                f"by {borrower.full_name}. Reason: {reason}",
                entity_type="TRANSACTION",
                entity_id=transaction.id,
            )

        logger.info("Transaction %s rejected by user %s", transaction.id, actor.id)

    def renew(
        self,
        actor: User,
        transaction_id: int,
        additional_days: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> RenewResult:
        """
        Extends an ACTIVE loan.

        The new due date counts from the current due date, also when the loan
        is already overdue.

        Raises:
            LibraryError: NOT_FOUND, FORBIDDEN, VALIDATION_ERROR,
                INVALID_STATUS, MAX_RENEWALS_REACHED or BOOK_RESERVED.
        """
        transaction = self._load(transaction_id)
        if actor.role == Role.STUDENT and transaction.user_id != actor.id:
            raise forbidden("You can only renew your own books")
        if additional_days is not None:
            additional_days = _check_days(additional_days, "additional_days")
        if transaction.status != TransactionStatus.ACTIVE:
            raise invalid_status("renew", transaction.status)

        max_renewals = self.policy.max_renewals()
        if transaction.renewal_count >= max_renewals:
            raise LibraryError(
                ErrorKind.MAX_RENEWALS_REACHED, f"Maximum renewals ({max_renewals}) reached"
            )

        now = self.clock()
        with self._unit_of_work("renew transaction"):
            if self.reservations.blocks_renewal(transaction.book_id, transaction.user_id, now):
                raise LibraryError(
                    ErrorKind.BOOK_RESERVED, "Book is reserved by another student. Cannot renew."
                )

            days = additional_days or self.policy.loan_period_days()
            new_due = transaction.due_date + timedelta(days=days)
            renewed = (
                self.db.query(Transaction)
                .filter(
                    Transaction.id == transaction.id,
                    Transaction.status == TransactionStatus.ACTIVE,
                    Transaction.renewal_count == transaction.renewal_count,
                )
                .update(
                    {
                        Transaction.due_date: new_due,
                        Transaction.renewal_count: Transaction.renewal_count + 1,
                        Transaction.type: TransactionType.RENEW,
                        Transaction.notes: notes or transaction.notes,
                    },
                    synchronize_session=False,
                )
            )
            if renewed != 1:
                raise LibraryError(
                    ErrorKind.INVALID_STATUS, "Transaction changed while it was being renewed"
                )

            count = transaction.renewal_count + 1
            who = f"Staff {actor.full_name}" if actor.role == Role.STAFF else actor.full_name
            self.audit.record(
                actor.id,
                "RENEW_BOOK",
                f"{who} renewed \"{transaction.book.title}\" (Renewal {count}/{max_renewals})",
                entity_type="TRANSACTION",
                entity_id=transaction.id,
            )

        self.db.refresh(transaction)
        logger.info("Transaction %s renewed until %s", transaction.id, transaction.due_date.isoformat())
        return RenewResult(transaction, max(max_renewals - transaction.renewal_count, 0))

    def return_book(
        self,
        actor: User,
        transaction_id: int,
        condition: Union[ReturnCondition, str] = ReturnCondition.GOOD,
        notes: Optional[str] = None,
    ) -> ReturnResult:
        """
        Closes a loan. Staff only.

        A late return issues one UNPAID fine of days overdue times the daily
        rate. A GOOD copy goes back into circulation; a DAMAGED or LOST one
        does not, and the book takes that status instead.
        """
        if actor.role != Role.STAFF:
            raise forbidden("Only staff can process returns")
        try:
            condition = ReturnCondition(condition)
        except ValueError:
            raise LibraryError(
                ErrorKind.VALIDATION_ERROR, "condition must be one of GOOD, DAMAGED, LOST"
            ) from None
        transaction = self.get_transaction(actor, transaction_id)
        if transaction.status not in RETURNABLE_STATUSES:
            raise invalid_status("return", transaction.status)

        book = transaction.book
        borrower = transaction.user
        now = self.clock()
        overdue_days = days_overdue(transaction.due_date, now)
        fine = None

        with self._unit_of_work("return book"):
            moved = self._transition(
                transaction.id,
                RETURNABLE_STATUSES,
                {
                    Transaction.status: TransactionStatus.RETURNED,
                    Transaction.returned_at: now,
                    Transaction.processed_by: actor.id,
                    Transaction.type: TransactionType.RETURN,
                    Transaction.return_condition: condition,
                    Transaction.notes: notes or transaction.notes,
                },
            )
            if not moved:
                raise LibraryError(ErrorKind.INVALID_STATUS, "Transaction was already returned")

            if overdue_days > self.policy.grace_period_days():
                fine = self.fines.issue_overdue_fine(
                    transaction, overdue_days, self.policy.fine_per_day(), now
                )

            if condition == ReturnCondition.GOOD:
                self.inventory.restore_copy(book.id)
            else:
                self.inventory.retire_copy(
                    book.id,
                    condition,
                    f"Book returned in {condition.value} condition by {borrower.full_name}. "
                    f"Processed by {actor.full_name}",
                    actor.id,
                )

            summary = f"Condition: {condition.value}"
            if fine is not None:
                summary += f", Fine: ${fine.amount}"
            self.audit.record(
                actor.id,
                "RETURN_BOOK",
                f"Staff {actor.full_name} processed return of \"{book.title}\" by {borrower.full_name}. {summary}",
                entity_type="TRANSACTION",
                entity_id=transaction.id,
            )

        self.db.refresh(transaction)
        if fine is not None:
            self.db.refresh(fine)
            logger.info("Transaction %s returned %d day(s) late, fine %s", transaction.id, overdue_days, fine.id)
        else:
            logger.info("Transaction %s returned", transaction.id)
        return ReturnResult(transaction, fine, overdue_days)
