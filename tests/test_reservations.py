import pytest

from app.models.models import AuditLog, ReservationStatus, TransactionStatus
from app.services.circulation import Approve
from app.services.errors import ErrorKind, LibraryError
from app.services.reservations import ReservationGate


@pytest.fixture
def gate(db, clock):
    return ReservationGate(db, clock=clock)


def test_place_sets_expiry(db, gate, clock, student, make_book, set_policy):
    set_policy("RESERVATION_EXPIRY_HOURS", 48)
    book = make_book()

    reservation = gate.place(student, book.id)

    assert reservation.status == ReservationStatus.PENDING
    assert reservation.reserved_at == clock()
    assert (reservation.expires_at - reservation.reserved_at).total_seconds() == 48 * 3600
    assert db.query(AuditLog).filter(AuditLog.action == "CREATE_RESERVATION").count() == 1


def test_place_twice(gate, student, make_book):
    book = make_book()
    gate.place(student, book.id)
    with pytest.raises(LibraryError) as err:
        gate.place(student, book.id)
    assert err.value.kind == ErrorKind.ALREADY_RESERVED


def test_place_again_after_expiry(db, gate, clock, student, make_book):
    book = make_book()
    first = gate.place(student, book.id)
    clock.advance(hours=25)

    second = gate.place(student, book.id)

    db.refresh(first)
    assert first.status == ReservationStatus.EXPIRED
    assert second.status == ReservationStatus.PENDING


def test_place_unknown_book(gate, student):
    with pytest.raises(LibraryError) as err:
        gate.place(student, 999)
    assert err.value.kind == ErrorKind.BOOK_NOT_FOUND


def test_staff_cannot_reserve(gate, staff, make_book):
    with pytest.raises(LibraryError) as err:
        gate.place(staff, make_book().id)
    assert err.value.kind == ErrorKind.FORBIDDEN


def test_queue_is_fifo(gate, clock, make_user, make_book):
    book = make_book()
    students = [make_user() for _ in range(3)]
    for s in students:
        gate.place(s, book.id)
        clock.advance(minutes=5)

    assert [r.user_id for r in gate.queue(book.id)] == [s.id for s in students]


def test_queue_skips_expired(gate, clock, student, other_student, make_book, set_policy):
    book = make_book()
    set_policy("RESERVATION_EXPIRY_HOURS", 1)
    gate.place(student, book.id)
    set_policy("RESERVATION_EXPIRY_HOURS", 24)
    gate.place(other_student, book.id)
    clock.advance(hours=2)

    assert [r.user_id for r in gate.queue(book.id)] == [other_student.id]


def test_queue_marks_stale_holds_expired(db, gate, clock, student, make_book, set_policy):
    book = make_book()
    set_policy("RESERVATION_EXPIRY_HOURS", 1)
    hold = gate.place(student, book.id)
    clock.advance(hours=2)

    assert gate.queue(book.id) == []
    db.commit()

    db.refresh(hold)
    assert hold.status == ReservationStatus.EXPIRED


def test_cancel_own(gate, clock, student, make_book):
    reservation = gate.place(student, make_book().id)
    clock.advance(minutes=10)

    cancelled = gate.cancel(student, reservation.id)

    assert cancelled.status == ReservationStatus.CANCELLED
    assert cancelled.cancelled_at == clock()


def test_cancel_someone_elses(gate, student, other_student, staff, make_book):
    reservation = gate.place(student, make_book().id)
    with pytest.raises(LibraryError) as err:
        gate.cancel(other_student, reservation.id)
    assert err.value.kind == ErrorKind.FORBIDDEN

    assert gate.cancel(staff, reservation.id).status == ReservationStatus.CANCELLED


def test_cancel_twice(gate, student, make_book):
    reservation = gate.place(student, make_book().id)
    gate.cancel(student, reservation.id)
    with pytest.raises(LibraryError) as err:
        gate.cancel(student, reservation.id)
    assert err.value.kind == ErrorKind.INVALID_STATUS


def test_renewal_blocked_by_other_students_hold(service, gate, staff, student, other_student, make_book):
    book = make_book()
    transaction = service.create_request(student, 14, book_id=book.id)
    service.process(staff, transaction.id, Approve())
    gate.place(other_student, book.id)

    with pytest.raises(LibraryError) as err:
        service.renew(student, transaction.id)
    assert err.value.kind == ErrorKind.BOOK_RESERVED


def test_renewal_ignores_own_and_expired_holds(service, gate, clock, staff, student, other_student, make_book):
    book = make_book(quantity=2)
    transaction = service.create_request(student, 14, book_id=book.id)
    service.process(staff, transaction.id, Approve())
    gate.place(other_student, book.id)
    clock.advance(hours=20)
    own = gate.place(student, book.id)
    clock.advance(hours=5)

    assert [r.id for r in gate.queue(book.id)] == [own.id]
    result = service.renew(student, transaction.id)

    assert result.transaction.renewal_count == 1


def test_cancelled_hold_no_longer_blocks_renewal(service, gate, staff, student, other_student, make_book):
    book = make_book()
    transaction = service.create_request(student, 14, book_id=book.id)
    service.process(staff, transaction.id, Approve())
    hold = gate.place(other_student, book.id)
    gate.cancel(other_student, hold.id)

    assert service.renew(student, transaction.id).renewals_remaining == 1


def test_earlier_hold_blocks_approval_of_later_request(db, service, gate, clock, staff, student, other_student, make_book):
    book = make_book(quantity=1)
    gate.place(other_student, book.id)
    clock.advance(minutes=1)
    transaction = service.create_request(student, 14, book_id=book.id)

    with pytest.raises(LibraryError) as err:
        service.process(staff, transaction.id, Approve())
    assert err.value.kind == ErrorKind.BOOK_RESERVED

    db.refresh(book)
    db.refresh(transaction)
    assert book.available_quantity == 1
    assert transaction.status == TransactionStatus.PENDING


def test_hold_does_not_block_when_copies_remain(service, gate, clock, staff, student, other_student, make_book):
    book = make_book(quantity=2)
    gate.place(other_student, book.id)
    clock.advance(minutes=1)
    transaction = service.create_request(student, 14, book_id=book.id)

    assert service.process(staff, transaction.id, Approve()).status == TransactionStatus.ACTIVE


def test_approval_fulfils_borrowers_own_hold(db, service, gate, clock, staff, student, make_book):
    book = make_book()
    hold = gate.place(student, book.id)
    clock.advance(minutes=1)
    transaction = service.create_request(student, 14, book_id=book.id)

    service.process(staff, transaction.id, Approve())

    db.refresh(hold)
    assert hold.status == ReservationStatus.FULFILLED
    assert hold.fulfilled_at == clock()
    assert gate.queue(book.id) == []
