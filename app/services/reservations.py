import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from app.models.models import (
    Book,
    Reservation,
    ReservationStatus,
    Role,
    Transaction,
    User,
    utcnow,
)
from app.services.audit import AuditSink
from app.services.errors import ErrorKind, LibraryError, forbidden, not_found, unit_of_work
from app.services.policy import PolicyStore

logger = logging.getLogger(__name__)


class ReservationGate:
    """
    FIFO queue of holds on a book.

    A reservation only counts while it is PENDING and not past ``expires_at``;
    stale rows are flipped to EXPIRED lazily whenever the queue is touched.
    """

    def __init__(
        self,
        db: Session,
        policy: Optional[PolicyStore] = None,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.policy = policy or PolicyStore(db)
        self.audit = audit or AuditSink(db)
        self.clock = clock

    def _live(self, book_id: int, now: datetime):
        return self.db.query(Reservation).filter(
            Reservation.book_id == book_id,
            Reservation.status == ReservationStatus.PENDING,
            Reservation.expires_at > now,
        )

    def expire_stale(self, book_id: Optional[int], now: datetime) -> int:
        query = self.db.query(Reservation).filter(
            Reservation.status == ReservationStatus.PENDING,
            Reservation.expires_at <= now,
        )
        if book_id is not None:
            query = query.filter(Reservation.book_id == book_id)
        expired = query.update({Reservation.status: ReservationStatus.EXPIRED}, synchronize_session=False)
        if expired:
            logger.info("Expired %d stale reservation(s) for book %s", expired, book_id)
        return expired

    def queue(self, book_id: int, now: Optional[datetime] = None) -> List[Reservation]:
        """
        Live holds on a book, oldest first. Holds past their expiry are marked
        EXPIRED on the way; the caller commits.
        """
        now = now or self.clock()
        self.expire_stale(book_id, now)
        return self._live(book_id, now).order_by(Reservation.reserved_at, Reservation.id).all()

    def blocks_renewal(self, book_id: int, borrower_id: int, now: datetime) -> bool:
        """True when another student is waiting for this book."""
        return (
            self._live(book_id, now).filter(Reservation.user_id != borrower_id).first()
            is not None
        )

    def blocks_approval(self, transaction: Transaction, available: int, now: datetime) -> bool:
        """
        True when the students who reserved the book before this request was
        made would already claim every available unit.
        """
        ahead = (
            self._live(transaction.book_id, now)
            .filter(
                Reservation.user_id != transaction.user_id,
                Reservation.reserved_at < transaction.borrowed_at,
            )
            .count()
        )
        return ahead > 0 and ahead >= available

    def fulfill_for(self, book_id: int, user_id: int, now: datetime) -> int:
        """Closes the borrower's own hold once their loan is approved. Does not commit."""
        return (
            self._live(book_id, now)
            .filter(Reservation.user_id == user_id)
            .update(
                {
                    Reservation.status: ReservationStatus.FULFILLED,
                    Reservation.fulfilled_at: now,
                },
                synchronize_session=False,
            )
        )

    def place(self, actor: User, book_id: int) -> Reservation:
        if actor.role != Role.STUDENT:
            raise forbidden("Only students can reserve books")
        book = self.db.query(Book).filter(Book.id == book_id).first()
        if not book:
            raise LibraryError(ErrorKind.BOOK_NOT_FOUND, "Book not found")

        now = self.clock()
        with unit_of_work(self.db, "create reservation", logger):
            self.expire_stale(book_id, now)
            existing = self._live(book_id, now).filter(Reservation.user_id == actor.id).first()
            if existing:
                raise LibraryError(
                    ErrorKind.ALREADY_RESERVED, "You already have a pending reservation for this book"
                )
            reservation = Reservation(
                book_id=book_id,
                user_id=actor.id,
                status=ReservationStatus.PENDING,
                reserved_at=now,
                expires_at=now + timedelta(hours=self.policy.reservation_expiry_hours()),
            )
            self.db.add(reservation)
            self.db.flush()
            self.audit.record(
                actor.id,
                "CREATE_RESERVATION",
                f"{actor.full_name} reserved \"{book.title}\"",
                entity_type="RESERVATION",
                entity_id=reservation.id,
            )

        self.db.refresh(reservation)
        return reservation

    def cancel(self, actor: User, reservation_id: int) -> Reservation:
        reservation = self.db.query(Reservation).filter(Reservation.id == reservation_id).first()
        if not reservation:
            raise not_found("Reservation")
        if actor.role != Role.STAFF and reservation.user_id != actor.id:
            raise forbidden("You can only cancel your own reservations")
        if reservation.status != ReservationStatus.PENDING:
            raise LibraryError(
                ErrorKind.INVALID_STATUS,
                f"Cannot cancel {reservation.status.value.lower()} reservation",
            )

        now = self.clock()
        with unit_of_work(self.db, "cancel reservation", logger):
            updated = (
                self.db.query(Reservation)
                .filter(
                    Reservation.id == reservation_id,
                    Reservation.status == ReservationStatus.PENDING,
                )
                .update(
                    {
                        Reservation.status: ReservationStatus.CANCELLED,
                        Reservation.cancelled_at: now,
                    },
                    synchronize_session=False,
                )
            )
            if updated != 1:
                raise LibraryError(ErrorKind.INVALID_STATUS, "Reservation is no longer pending")
            self.audit.record(
                actor.id,
                "CANCEL_RESERVATION",
                f"{actor.full_name} cancelled reservation {reservation_id}",
                entity_type="RESERVATION",
                entity_id=reservation_id,
            )

        self.db.refresh(reservation)
        return reservation
