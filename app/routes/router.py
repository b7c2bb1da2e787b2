from datetime import datetime
from typing import Annotated, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.config.db import get_db
from app.models.models import Book, BookStatus, FineStatus, Role, Transaction, TransactionStatus, User, utcnow
from app.schemas.schemas import (
    ApproveIn,
    BookCreate,
    BookOut,
    BorrowRequestIn,
    FineOut,
    FineSummary,
    ProcessIn,
    RenewIn,
    RenewOut,
    ReservationIn,
    ReservationOut,
    ReturnIn,
    ReturnOut,
    SettingIn,
    SettingOut,
    TransactionOut,
    TransactionPage,
    UserCreate,
    UserOut,
    WaiveIn,
)
from app.services import accounts
from app.services.circulation import Approve, CirculationService, Reject
from app.services.eligibility import is_overdue
from app.services.errors import unit_of_work
from app.services.fines import FineLedger
from app.services.policy import PolicyStore
from app.services.reservations import ReservationGate

router = APIRouter()
security = HTTPBasic()


def get_clock():
    """The time source every service uses; tests override it to move time."""
    return utcnow


async def get_current_user(
    credentials: HTTPBasicCredentials = Depends(security), db: Session = Depends(get_db)
):
    """
    Retrieves the current user from the database based on provided credentials.

    Parameters:
        credentials (HTTPBasicCredentials): The HTTPBasicCredentials containing the username and password.
        db (Session): The database session.

    Returns:
        User: The user object if authentication is successful.

    Raises:
        HTTPException: If the user credentials are invalid or the user does not exist.
    """
    user = accounts.authenticate(db, credentials.username, credentials.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Basic"},
        )
    return user


def get_circulation(db: Session = Depends(get_db), clock=Depends(get_clock)) -> CirculationService:
    return CirculationService(db, clock=clock)


def require_staff(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != Role.STAFF:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return current_user


def _transaction_out(transaction: Transaction, now: datetime) -> TransactionOut:
    out = TransactionOut.model_validate(transaction)
    out.is_overdue = is_overdue(transaction, now)
    return out



@router.get("/health")
def health(db: Session = Depends(get_db)):
    """
    Reports whether the database answers, with row counts.

    Parameters:
        db (Session): The database session.

    Returns:
        dict: The service status, database connectivity and user/book counts.
    """
    db.execute(text("SELECT 1"))
    return {
        "status": "healthy",
        "database": {"connected": True},
        "stats": {"users": db.query(User).count(), "books": db.query(Book).count()},
    }


@router.post("/admin/users", status_code=status.HTTP_201_CREATED, response_model=UserOut)
def create_user(
    user: UserCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Creates a new account if the current user is staff.

    Parameters:
        user (UserCreate): The data for creating the new user.
        current_user (User): The currently authenticated user.
        db (Session): The database session.

    Returns:
        UserOut: The created account.
    """
    return accounts.create_user(db, current_user, **user.model_dump())


@router.get("/books", response_model=List[BookOut])
def get_books(
    current_user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    """
    Retrieves the catalog ordered by title.

    Parameters:
        current_user (User): The currently authenticated user.
        db (Session): The database session.

    Returns:
        List[BookOut]: Every book with its status and available copies.
    """
    return db.query(Book).order_by(Book.title).all()


@router.post("/books", status_code=status.HTTP_201_CREATED, response_model=BookOut)
def create_book(
    book: BookCreate,
    current_user: User = Depends(require_staff),
    db: Session = Depends(get_db),
):
    """
    Adds a book to the catalog with every copy available.

    Parameters:
        book (BookCreate): Title, author, barcode, ISBN and number of copies.
        current_user (User): The currently authenticated staff member.
        db (Session): The database session.

    Returns:
        BookOut: The created book.

    Raises:
        HTTPException: If a book with the same barcode already exists.
    """
    if db.query(Book).filter(Book.barcode == book.barcode).first():
        raise HTTPException(status_code=400, detail="A book with this barcode already exists")
    with unit_of_work(db, "create book"):
        new_book = Book(
            **book.model_dump(),
            available_quantity=book.quantity,
            status=BookStatus.AVAILABLE,
        )
        db.add(new_book)
    db.refresh(new_book)
    return new_book


@router.get("/books/barcode/{barcode}", response_model=BookOut)
def get_book_by_barcode(
    barcode: str,
    current_user: User = Depends(get_current_user),
    circulation: CirculationService = Depends(get_circulation),
):
    """
    Looks a book up by the barcode printed on its copies.

    Parameters:
        barcode (str): The scanned barcode.
        current_user (User): The currently authenticated user.

    Returns:
        BookOut: The matching book.
    """
    return circulation.inventory.resolve(barcode=barcode)


@router.get("/books/{book_id}/reservations", response_model=List[ReservationOut])
def get_book_reservations(
    book_id: int,
    current_user: User = Depends(get_current_user),
    circulation: CirculationService = Depends(get_circulation),
):
    """
    Retrieves the pending holds on a book in FIFO order.

    Parameters:
        book_id (int): The ID of the book.
        current_user (User): The currently authenticated user.

    Returns:
        List[ReservationOut]: Unexpired holds, oldest first.
    """
    with unit_of_work(circulation.db, "list reservations"):
        holds = circulation.reservations.queue(book_id)
    return holds


@router.post("/transactions", status_code=status.HTTP_201_CREATED, response_model=TransactionOut)
def submit_request(
    request: BorrowRequestIn,
    current_user: User = Depends(get_current_user),
    circulation: CirculationService = Depends(get_circulation),
):
    """
    Submits a borrow request for a book, identified by id or barcode.

    Parameters:
        request (BorrowRequestIn): The book reference, requested loan length and notes.
        current_user (User): The currently authenticated student.

    Returns:
        TransactionOut: The PENDING transaction awaiting staff approval.
    """
    transaction = circulation.create_request(
        current_user,
        request.requested_days,
        book_id=request.book_id,
        barcode=request.barcode,
        notes=request.notes,
    )
    return _transaction_out(transaction, circulation.clock())


@router.get("/transactions", response_model=TransactionPage)
def list_transactions(
    status_filter: Optional[TransactionStatus] = Query(None, alias="status"),
    user_id: Optional[int] = None,
    book_id: Optional[int] = None,
    overdue: bool = False,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    circulation: CirculationService = Depends(get_circulation),
):
    """
    Lists transactions, newest first. Students only ever see their own.

    Parameters:
        status_filter (TransactionStatus): Only transactions in this status.
        user_id (int): Only this borrower's transactions (staff only).
        book_id (int): Only transactions for this book.
        overdue (bool): Only loans past their due date.
        page (int): The page number, starting at 1.
        limit (int): The page size.
        current_user (User): The currently authenticated user.

    Returns:
        TransactionPage: One page of transactions and the paging totals.
    """
    items, total = circulation.list_transactions(
        current_user,
        status=status_filter,
        user_id=user_id,
        book_id=book_id,
        overdue_only=overdue,
        page=page,
        limit=limit,
    )
    now = circulation.clock()
    return {
        "transactions": [_transaction_out(t, now) for t in items],
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": (total + limit - 1) // limit,
    }


@router.get("/transactions/overdue", response_model=List[TransactionOut])
def overdue_report(
    current_user: User = Depends(require_staff),
    circulation: CirculationService = Depends(get_circulation),
):
    """
    Retrieves every loan past its due date.

    Parameters:
        current_user (User): The currently authenticated staff member.

    Returns:
        List[TransactionOut]: The overdue loans.
    """
    items, _ = circulation.list_transactions(current_user, overdue_only=True, limit=1000)
    now = circulation.clock()
    return [_transaction_out(t, now) for t in items]


@router.get("/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    current_user: User = Depends(get_current_user),
    circulation: CirculationService = Depends(get_circulation),
):
    """
    Retrieves one transaction.

    Parameters:
        transaction_id (int): The ID of the transaction.
        current_user (User): The currently authenticated user; students may
            only read their own transactions.

    Returns:
        TransactionOut: The transaction, with its fine if one was issued.
    """
    transaction = circulation.get_transaction(current_user, transaction_id)
    return _transaction_out(transaction, circulation.clock())


@router.patch("/transactions/{transaction_id}/process", response_model=TransactionOut)
def process_request(
    transaction_id: int,
    payload: Annotated[ProcessIn, Body(discriminator="action")],
    current_user: User = Depends(get_current_user),
    circulation: CirculationService = Depends(get_circulation),
):
    """
    Approves or rejects a pending borrow request.

    Parameters:
        transaction_id (int): The ID of the transaction.
        payload (ProcessIn): ``{"action": "approve"}`` or
            ``{"action": "reject", "rejection_reason": ...}``.
        current_user (User): The currently authenticated staff member.

    Returns:
        TransactionOut: The transaction, now ACTIVE or REJECTED.
    """
    if isinstance(payload, ApproveIn):
        decision = Approve(notes=payload.notes)
    else:
        decision = Reject(reason=payload.rejection_reason, notes=payload.notes)
    transaction = circulation.process(current_user, transaction_id, decision)
    return _transaction_out(transaction, circulation.clock())


@router.patch("/transactions/{transaction_id}/renew", response_model=RenewOut)
def renew_transaction(
    transaction_id: int,
    payload: Optional[RenewIn] = None,
    current_user: User = Depends(get_current_user),
    circulation: CirculationService = Depends(get_circulation),
):
    """
    Extends an active loan.

    Parameters:
        transaction_id (int): The ID of the transaction.
        payload (RenewIn): Optional extra days (the loan period by default) and notes.
        current_user (User): The borrowing student or a staff member.

    Returns:
        RenewOut: The renewed transaction and how many renewals are left.
    """
    payload = payload or RenewIn()
    result = circulation.renew(
        current_user, transaction_id, additional_days=payload.additional_days, notes=payload.notes
    )
    return {
        "transaction": _transaction_out(result.transaction, circulation.clock()),
        "renewals_remaining": result.renewals_remaining,
    }


@router.patch("/transactions/{transaction_id}/return", response_model=ReturnOut)
def return_transaction(
    transaction_id: int,
    payload: ReturnIn,
    current_user: User = Depends(get_current_user),
    circulation: CirculationService = Depends(get_circulation),
):
    """
    Marks a borrowed book as returned, issuing a fine when it is late.

    Parameters:
        transaction_id (int): The ID of the transaction.
        payload (ReturnIn): The condition the copy came back in, and notes.
        current_user (User): The currently authenticated staff member.

    Returns:
        ReturnOut: The RETURNED transaction, the fine if one was issued, and the days overdue.
    """
    result = circulation.return_book(
        current_user, transaction_id, condition=payload.condition, notes=payload.notes
    )
    return {
        "transaction": _transaction_out(result.transaction, circulation.clock()),
        "fine": result.fine,
        "days_overdue": result.days_overdue,
    }


@router.post("/reservations", status_code=status.HTTP_201_CREATED, response_model=ReservationOut)
def create_reservation(
    request: ReservationIn,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """
    Places a hold on a book for the current student.

    Parameters:
        request (ReservationIn): The ID of the book to hold.
        current_user (User): The currently authenticated student.
        db (Session): The database session.

    Returns:
        ReservationOut: The PENDING reservation and when it expires.
    """
    return ReservationGate(db, clock=clock).place(current_user, request.book_id)


@router.delete("/reservations/{reservation_id}", response_model=ReservationOut)
def cancel_reservation(
    reservation_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """
    Cancels a pending hold.

    Parameters:
        reservation_id (int): The ID of the reservation.
        current_user (User): The student who placed it, or a staff member.
        db (Session): The database session.

    Returns:
        ReservationOut: The CANCELLED reservation.
    """
    return ReservationGate(db, clock=clock).cancel(current_user, reservation_id)


@router.get("/fines", response_model=FineSummary)
def list_fines(
    user_id: Optional[int] = None,
    status_filter: Optional[FineStatus] = Query(None, alias="status"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Lists fines with the unpaid total.

    Parameters:
        user_id (int): Only this student's fines; ignored for students, who
            always see their own.
        status_filter (FineStatus): Only fines in this status.
        current_user (User): The currently authenticated user.
        db (Session): The database session.

    Returns:
        FineSummary: The fines, newest first, and the outstanding amount.
    """
    if current_user.role == Role.STUDENT:
        user_id = current_user.id
    ledger = FineLedger(db)
    fines = ledger.list_fines(user_id=user_id, status=status_filter)
    if user_id is not None:
        outstanding = ledger.outstanding_total(user_id)
    else:
        outstanding = sum((f.amount for f in fines if f.status == FineStatus.UNPAID), 0)
    return {"fines": fines, "outstanding_total": outstanding}


@router.post("/fines/{fine_id}/pay", response_model=FineOut)
def pay_fine(
    fine_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """
    Records payment of an unpaid fine.

    Parameters:
        fine_id (int): The ID of the fine.
        current_user (User): The currently authenticated staff member.
        db (Session): The database session.

    Returns:
        FineOut: The PAID fine.
    """
    return FineLedger(db, clock=clock).pay(current_user, fine_id)


@router.post("/fines/{fine_id}/waive", response_model=FineOut)
def waive_fine(
    fine_id: int,
    payload: Optional[WaiveIn] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """
    Cancels an unpaid fine without payment.

    Parameters:
        fine_id (int): The ID of the fine.
        payload (WaiveIn): Optional notes explaining the waiver.
        current_user (User): The currently authenticated staff member.
        db (Session): The database session.

    Returns:
        FineOut: The WAIVED fine.
    """
    notes = payload.notes if payload else None
    return FineLedger(db, clock=clock).waive(current_user, fine_id, notes)


@router.get("/settings", response_model=List[SettingOut])
def list_settings(
    current_user: User = Depends(require_staff), db: Session = Depends(get_db)
):
    """
    Lists the stored circulation settings.

    Parameters:
        current_user (User): The currently authenticated staff member.
        db (Session): The database session.

    Returns:
        List[SettingOut]: The settings ordered by key.
    """
    return PolicyStore(db).list_settings()


@router.put("/settings/{key}", response_model=SettingOut)
def update_setting(
    key: str,
    payload: SettingIn,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Creates or overwrites a circulation setting.

    Parameters:
        key (str): The setting name, e.g. ``MAX_RENEWALS``.
        payload (SettingIn): The new value and an optional description.
        current_user (User): The currently authenticated staff member.
        db (Session): The database session.

    Returns:
        SettingOut: The stored setting.
    """
    return PolicyStore(db).set_setting(current_user, key, payload.value, payload.description)
