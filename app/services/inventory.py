import logging
from typing import Optional

from sqlalchemy.orm import Session

from app.models.models import Book, BookHistory, BookStatus, ReturnCondition
from app.services.errors import ErrorKind, LibraryError

logger = logging.getLogger(__name__)


class InventoryLedger:
    """
    Owns the availability counter of each book.

    The counter is only ever changed through conditional UPDATE statements
    evaluated by the database, never by writing back a value read earlier,
    so concurrent approvals and returns cannot push it outside
    ``0 <= available_quantity <= quantity``. None of these methods commit;
    the caller's transaction decides.
    """

    def __init__(self, db: Session):
        self.db = db

    def resolve(self, book_id: Optional[int] = None, barcode: Optional[str] = None) -> Book:
        """
        Finds a book by id or by barcode.

        Raises:
            LibraryError: VALIDATION_ERROR if neither reference is given,
                BOOK_NOT_FOUND if nothing matches.
        """
        if book_id is None and not barcode:
            raise LibraryError(ErrorKind.VALIDATION_ERROR, "Either book_id or barcode is required")
        query = self.db.query(Book)
        if barcode:
            book = query.filter(Book.barcode == barcode.strip()).first()
        else:
            book = query.filter(Book.id == book_id).first()
        if not book:
            raise LibraryError(ErrorKind.BOOK_NOT_FOUND, "Book not found")
        return book

    @staticmethod
    def is_borrowable(book: Book) -> bool:
        return book.status == BookStatus.AVAILABLE and book.available_quantity >= 1

    def consume_copy(self, book_id: int) -> bool:
        """
        Takes one unit of availability. Returns False, changing nothing, when
        the book is not AVAILABLE or has no unit left at the moment of the write.
        """
        taken = (
            self.db.query(Book)
            .filter(
                Book.id == book_id,
                Book.status == BookStatus.AVAILABLE,
                Book.available_quantity >= 1,
            )
            .update(
                {Book.available_quantity: Book.available_quantity - 1},
                synchronize_session=False,
            )
        )
        if taken != 1:
            return False

        # The row is write-locked by the decrement above until the caller commits.
        self.db.query(Book).filter(
            Book.id == book_id,
            Book.available_quantity == 0,
            Book.status == BookStatus.AVAILABLE,
        ).update({Book.status: BookStatus.BORROWED}, synchronize_session=False)
        return True

    def restore_copy(self, book_id: int) -> None:
        """Gives one unit back after a return in good condition."""
        restored = (
            self.db.query(Book)
            .filter(Book.id == book_id, Book.available_quantity < Book.quantity)
            .update(
                {Book.available_quantity: Book.available_quantity + 1},
                synchronize_session=False,
            )
        )
        if restored != 1:
            logger.warning("Book %s already has every copy available; counter left unchanged", book_id)

        self.db.query(Book).filter(
            Book.id == book_id,
            Book.status == BookStatus.BORROWED,
        ).update({Book.status: BookStatus.AVAILABLE}, synchronize_session=False)

    def retire_copy(
        self, book_id: int, condition: ReturnCondition, description: str, actor_id: Optional[int]
    ) -> BookHistory:
        """Marks a book DAMAGED or LOST after a bad return. Availability is not restored."""
        status = BookStatus.LOST if condition == ReturnCondition.LOST else BookStatus.DAMAGED
        self.db.query(Book).filter(Book.id == book_id).update(
            {Book.status: status}, synchronize_session=False
        )
        entry = BookHistory(
            book_id=book_id,
            action="STATUS_CHANGED",
            description=description,
            performed_by=actor_id,
        )
        self.db.add(entry)
        return entry
