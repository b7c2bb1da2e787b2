import os
from datetime import datetime, timedelta

import pytest

# The app module creates its tables on import; keep that away from ./library.db
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from sqlalchemy.orm import sessionmaker  # noqa: E402

from app.config.db import Base, build_engine  # noqa: E402
from app.models.models import (  # noqa: E402
    AccountStatus,
    Book,
    BookStatus,
    Role,
    Setting,
    Transaction,
    TransactionStatus,
    User,
)
from app.services.accounts import hash_password  # noqa: E402
from app.services.circulation import CirculationService  # noqa: E402

PASSWORD = "secret123"
# hashed once, shared by every fixture user
PASSWORD_HASH = hash_password(PASSWORD)


class FakeClock:
    """A controllable stand-in for ``utcnow``."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def engine(tmp_path):
    # tmp_path is unique per test, so is the database file
    db_file = tmp_path / "library.db"
    engine = build_engine(f"sqlite:///{db_file}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, 0))


@pytest.fixture
def service(db, clock):
    return CirculationService(db, clock=clock)


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role=Role.STUDENT, status=AccountStatus.ACTIVE, borrowing_limit=3, first_name=None):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            email=f"user{n}@university.edu",
            password_hash=PASSWORD_HASH,
            first_name=first_name or f"User{n}",
            last_name="Tester",
            role=role,
            status=status,
            student_id=f"S-{n:04d}" if role == Role.STUDENT else None,
            borrowing_limit=borrowing_limit,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_book(db):
    counter = {"n": 0}

    def _make(quantity=1, available=None, status=BookStatus.AVAILABLE, title=None):
        counter["n"] += 1
        n = counter["n"]
        book = Book(
            barcode=f"LIB-{n:06d}",
            title=title or f"Book {n}",
            author="Some Author",
            quantity=quantity,
            available_quantity=quantity if available is None else available,
            status=status,
        )
        db.add(book)
        db.commit()
        db.refresh(book)
        return book

    return _make


@pytest.fixture
def make_transaction(db, clock):
    """Inserts a transaction row directly, bypassing the engine."""

    def _make(user, book, status=TransactionStatus.ACTIVE, due_in_days=14, renewal_count=0):
        now = clock()
        transaction = Transaction(
            book_id=book.id,
            user_id=user.id,
            status=status,
            requested_days=14,
            borrowed_at=now,
            approved_at=now if status != TransactionStatus.PENDING else None,
            due_date=now + timedelta(days=due_in_days),
            renewal_count=renewal_count,
        )
        db.add(transaction)
        db.commit()
        db.refresh(transaction)
        return transaction

    return _make


@pytest.fixture
def set_policy(db):
    def _set(key, value):
        row = db.query(Setting).filter(Setting.key == key).first()
        if row is None:
            db.add(Setting(key=key, value=str(value)))
        else:
            row.value = str(value)
        db.commit()

    return _set


@pytest.fixture
def staff(make_user):
    return make_user(role=Role.STAFF, first_name="Sam")


@pytest.fixture
def student(make_user):
    return make_user(first_name="Alice")


@pytest.fixture
def other_student(make_user):
    return make_user(first_name="Bob")
