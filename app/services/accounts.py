import hashlib
import hmac
import logging
import secrets
from typing import Optional

from sqlalchemy.orm import Session

from app.models.models import AccountStatus, Role, User
from app.services.audit import AuditSink
from app.services.errors import ErrorKind, LibraryError, forbidden, unit_of_work

logger = logging.getLogger(__name__)

HASH_ALGORITHM = "pbkdf2_sha256"
HASH_ITERATIONS = 120000


def hash_password(password: str, salt: Optional[str] = None, iterations: int = HASH_ITERATIONS) -> str:
    """Returns ``pbkdf2_sha256$<iterations>$<salt>$<hex digest>``."""
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), iterations)
    return f"{HASH_ALGORITHM}${iterations}${salt}${digest.hex()}"


def verify_password(password: str, password_hash: str) -> bool:
    try:
        algorithm, iterations, salt, _ = password_hash.split("$", 3)
        iterations = int(iterations)
    except ValueError:
        return False
    if algorithm != HASH_ALGORITHM:
        return False
    return hmac.compare_digest(hash_password(password, salt, iterations), password_hash)


def authenticate(db: Session, email: str, password: str) -> Optional[User]:
    user = db.query(User).filter(User.email == email).first()
    if not user or not verify_password(password, user.password_hash):
        return None
    return user


def create_user(
    db: Session,
    actor: User,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    role: Role = Role.STUDENT,
    student_id: Optional[str] = None,
    borrowing_limit: int = 3,
) -> User:
    """
    Creates an account on behalf of a staff member.

    Raises:
        LibraryError: FORBIDDEN if the actor is not staff, VALIDATION_ERROR on
            a malformed email, a short password, or an email or student ID
            that is already taken.
        StorageError: if the database refused the write.
    """
    if actor.role != Role.STAFF:
        raise forbidden()
    if "@" not in email:
        raise LibraryError(ErrorKind.VALIDATION_ERROR, "Invalid email format")
    if len(password) < 6:
        raise LibraryError(ErrorKind.VALIDATION_ERROR, "Password must be at least 6 characters")
    if db.query(User).filter(User.email == email).first():
        raise LibraryError(ErrorKind.VALIDATION_ERROR, "User already exists")
    if student_id and db.query(User).filter(User.student_id == student_id).first():
        raise LibraryError(ErrorKind.VALIDATION_ERROR, "Student ID is already registered")

    with unit_of_work(db, "create user", logger):
        user = User(
            email=email,
            password_hash=hash_password(password),
            first_name=first_name,
            last_name=last_name,
            role=role,
            status=AccountStatus.ACTIVE,
            student_id=student_id,
            borrowing_limit=borrowing_limit,
        )
        db.add(user)
        db.flush()
        AuditSink(db).record(
            actor.id,
            "CREATE_USER",
            f"Staff {actor.full_name} created {role.value.lower()} account {email}",
            entity_type="USER",
            entity_id=user.id,
        )

    db.refresh(user)
    logger.info("User %s created with role %s", user.id, role.value)
    return user
