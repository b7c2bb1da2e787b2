import pytest

from app.models.models import BookHistory, BookStatus, ReturnCondition
from app.services.errors import ErrorKind, LibraryError
from app.services.inventory import InventoryLedger


@pytest.fixture
def inventory(db):
    return InventoryLedger(db)


def test_resolve_by_id_and_barcode(inventory, make_book):
    book = make_book()
    assert inventory.resolve(book_id=book.id).id == book.id
    assert inventory.resolve(barcode=f" {book.barcode} ").id == book.id


def test_resolve_needs_a_reference(inventory):
    with pytest.raises(LibraryError) as err:
        inventory.resolve()
    assert err.value.kind == ErrorKind.VALIDATION_ERROR


def test_resolve_unknown_barcode(inventory):
    with pytest.raises(LibraryError) as err:
        inventory.resolve(barcode="LIB-999999")
    assert err.value.kind == ErrorKind.BOOK_NOT_FOUND


def test_consume_until_empty(db, inventory, make_book):
    book = make_book(quantity=2)

    assert inventory.consume_copy(book.id)
    db.commit()
    db.refresh(book)
    assert (book.available_quantity, book.status) == (1, BookStatus.AVAILABLE)

    assert inventory.consume_copy(book.id)
    db.commit()
    db.refresh(book)
    assert (book.available_quantity, book.status) == (0, BookStatus.BORROWED)

    assert not inventory.consume_copy(book.id)
    db.commit()
    db.refresh(book)
    assert book.available_quantity == 0


def test_consume_refuses_unavailable_status(db, inventory, make_book):
    book = make_book(quantity=3, status=BookStatus.MAINTENANCE)
    assert not inventory.consume_copy(book.id)
    db.commit()
    db.refresh(book)
    assert book.available_quantity == 3


def test_restore_reopens_borrowed_book(db, inventory, make_book):
    book = make_book(quantity=1, available=0, status=BookStatus.BORROWED)
    inventory.restore_copy(book.id)
    db.commit()
    db.refresh(book)
    assert (book.available_quantity, book.status) == (1, BookStatus.AVAILABLE)


def test_restore_never_exceeds_quantity(db, inventory, make_book):
    book = make_book(quantity=2)
    inventory.restore_copy(book.id)
    db.commit()
    db.refresh(book)
    assert book.available_quantity == 2


def test_retire_writes_history(db, inventory, staff, make_book):
    book = make_book(quantity=1, available=0, status=BookStatus.BORROWED)

    inventory.retire_copy(book.id, ReturnCondition.LOST, "Lost on the bus", staff.id)
    db.commit()

    db.refresh(book)
    assert book.status == BookStatus.LOST
    assert book.available_quantity == 0
    entry = db.query(BookHistory).one()
    assert entry.action == "STATUS_CHANGED"
    assert entry.description == "Lost on the bus"
