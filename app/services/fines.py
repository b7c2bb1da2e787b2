import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.models import Fine, FineStatus, Role, Transaction, User, utcnow
from app.services.audit import AuditSink
from app.services.errors import ErrorKind, LibraryError, forbidden, not_found, unit_of_work

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
CENTS = Decimal("0.01")


def days_overdue(due_date: datetime, now: datetime) -> int:
    """Whole days elapsed past ``due_date``; 0 when not yet due."""
    elapsed = (now - due_date).total_seconds()
    if elapsed <= 0:
        return 0
    return int(elapsed // SECONDS_PER_DAY)


def fine_amount(days: int, per_day: Decimal) -> Decimal:
    return (Decimal(days) * per_day).quantize(CENTS, rounding=ROUND_HALF_UP)


class FineLedger:
    def __init__(self, db: Session, audit: Optional[AuditSink] = None, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.audit = audit or AuditSink(db)
        self.clock = clock

    def issue_overdue_fine(
        self, transaction: Transaction, days: int, per_day: Decimal, now: datetime
    ) -> Fine:
        """
        Adds the fine for a late return to the session. The unique constraint
        on ``transaction_id`` keeps it to one per transaction.
        """
        fine = Fine(
            transaction_id=transaction.id,
            user_id=transaction.user_id,
            amount=fine_amount(days, per_day),
            reason=f"Book returned {days} day(s) late",
            status=FineStatus.UNPAID,
            issued_at=now,
        )
        self.db.add(fine)
        return fine

    def has_unpaid(self, user_id: int) -> bool:
        return (
            self.db.query(Fine.id)
            .filter(Fine.user_id == user_id, Fine.status == FineStatus.UNPAID)
            .first()
            is not None
        )

    def outstanding_total(self, user_id: int) -> Decimal:
        total = (
            self.db.query(func.coalesce(func.sum(Fine.amount), 0))
            .filter(Fine.user_id == user_id, Fine.status == FineStatus.UNPAID)
            .scalar()
        )
        return Decimal(str(total)).quantize(CENTS)

    def list_fines(self, user_id: Optional[int] = None, status: Optional[FineStatus] = None) -> List[Fine]:
        query = self.db.query(Fine)
        if user_id is not None:
            query = query.filter(Fine.user_id == user_id)
        if status is not None:
            query = query.filter(Fine.status == status)
        return query.order_by(Fine.issued_at.desc()).all()

    def get(self, fine_id: int) -> Fine:
        fine = self.db.query(Fine).filter(Fine.id == fine_id).first()
        if not fine:
            raise not_found("Fine")
        return fine

    def pay(self, actor: User, fine_id: int) -> Fine:
        """Records payment of an unpaid fine. Staff only."""
        return self._settle(actor, fine_id, FineStatus.PAID, None)

    def waive(self, actor: User, fine_id: int, notes: Optional[str] = None) -> Fine:
        """Cancels an unpaid fine without payment. Staff only."""
        return self._settle(actor, fine_id, FineStatus.WAIVED, notes)

    def _settle(self, actor: User, fine_id: int, target: FineStatus, notes: Optional[str]) -> Fine:
        if actor.role != Role.STAFF:
            raise forbidden("Only staff can settle fines")
        fine = self.get(fine_id)
        if fine.status != FineStatus.UNPAID:
            raise LibraryError(
                ErrorKind.INVALID_STATUS, f"Fine is already {fine.status.value.lower()}"
            )

        now = self.clock()
        values = {Fine.status: target}
        if target == FineStatus.PAID:
            values[Fine.paid_at] = now
        if notes:
            values[Fine.notes] = notes
        with unit_of_work(self.db, "settle fine", logger):
            updated = (
                self.db.query(Fine)
                .filter(Fine.id == fine_id, Fine.status == FineStatus.UNPAID)
                .update(values, synchronize_session=False)
            )
            if updated != 1:
                raise LibraryError(ErrorKind.INVALID_STATUS, "Fine was settled by another request")
            verb = "recorded payment of" if target == FineStatus.PAID else "waived"
            self.audit.record(
                actor.id,
                "PAY_FINE" if target == FineStatus.PAID else "WAIVE_FINE",
                f"Staff {actor.full_name} {verb} fine of ${fine.amount} for transaction {fine.transaction_id}",
                entity_type="FINE",
                entity_id=fine_id,
            )

        self.db.refresh(fine)
        logger.info("Fine %s is now %s", fine_id, target.value)
        return fine
