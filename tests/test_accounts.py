import pytest
from sqlalchemy.exc import OperationalError

from app.models.models import AuditLog, Role, User
from app.services import accounts
from app.services.errors import ErrorKind, LibraryError, StorageError


def _payload(**overrides):
    payload = {
        "email": "new.student@university.edu",
        "password": "hunter22",
        "first_name": "Nia",
        "last_name": "Okafor",
        "student_id": "S-9001",
    }
    payload.update(overrides)
    return payload


def test_hash_is_salted():
    first = accounts.hash_password("hunter22")
    second = accounts.hash_password("hunter22")

    assert first != second
    assert first.startswith("pbkdf2_sha256$")
    assert accounts.verify_password("hunter22", first)
    assert accounts.verify_password("hunter22", second)
    assert not accounts.verify_password("hunter23", first)


@pytest.mark.parametrize("stored", ["", "not-a-hash", "md5$1$salt$abcd", "pbkdf2_sha256$many$salt$abcd"])
def test_malformed_hash_never_verifies(stored):
    assert not accounts.verify_password("hunter22", stored)


def test_authenticate(db, student):
    assert accounts.authenticate(db, student.email, "secret123").id == student.id
    assert accounts.authenticate(db, student.email, "wrong") is None
    assert accounts.authenticate(db, "nobody@university.edu", "secret123") is None


def test_create_user(db, staff):
    user = accounts.create_user(db, staff, **_payload())

    assert user.role == Role.STUDENT
    assert accounts.verify_password("hunter22", user.password_hash)
    assert db.query(AuditLog).filter(AuditLog.action == "CREATE_USER").count() == 1


def test_student_cannot_create_users(db, student):
    with pytest.raises(LibraryError) as err:
        accounts.create_user(db, student, **_payload())
    assert err.value.kind == ErrorKind.FORBIDDEN


@pytest.mark.parametrize(
    "overrides",
    [{"email": "not-an-email"}, {"password": "short"}],
)
def test_create_user_validates_input(db, staff, overrides):
    with pytest.raises(LibraryError) as err:
        accounts.create_user(db, staff, **_payload(**overrides))
    assert err.value.kind == ErrorKind.VALIDATION_ERROR


def test_duplicate_email_or_student_id(db, staff, student):
    with pytest.raises(LibraryError) as err:
        accounts.create_user(db, staff, **_payload(email=student.email))
    assert err.value.message == "User already exists"

    with pytest.raises(LibraryError) as err:
        accounts.create_user(db, staff, **_payload(student_id=student.student_id))
    assert err.value.kind == ErrorKind.VALIDATION_ERROR
    assert err.value.message == "Student ID is already registered"


def test_failed_commit_raises_storage_error(db, monkeypatch, staff):
    def broken():
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(db, "commit", broken)
    with pytest.raises(StorageError):
        accounts.create_user(db, staff, **_payload())

    monkeypatch.undo()
    assert db.query(User).filter(User.email == "new.student@university.edu").count() == 0
    assert db.query(AuditLog).count() == 0
