import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from app.models.models import Role, Setting, User
from app.services.errors import ErrorKind, LibraryError, forbidden, unit_of_work

logger = logging.getLogger(__name__)

DEFAULT_LOAN_PERIOD_DAYS = "DEFAULT_LOAN_PERIOD_DAYS"
MAX_RENEWALS = "MAX_RENEWALS"
FINE_PER_DAY = "FINE_PER_DAY"
GRACE_PERIOD_DAYS = "GRACE_PERIOD_DAYS"
RESERVATION_EXPIRY_HOURS = "RESERVATION_EXPIRY_HOURS"
MAX_FINE_THRESHOLD = "MAX_FINE_THRESHOLD"

# Used whenever a key is missing or holds something unparseable.
DEFAULTS: Dict[str, str] = {
    DEFAULT_LOAN_PERIOD_DAYS: "14",
    MAX_RENEWALS: "2",
    FINE_PER_DAY: "5.00",
    GRACE_PERIOD_DAYS: "0",
    RESERVATION_EXPIRY_HOURS: "24",
    MAX_FINE_THRESHOLD: "100.00",
}

_INTEGER_KEYS = (DEFAULT_LOAN_PERIOD_DAYS, MAX_RENEWALS, GRACE_PERIOD_DAYS, RESERVATION_EXPIRY_HOURS)
_DECIMAL_KEYS = (FINE_PER_DAY, MAX_FINE_THRESHOLD)


class PolicyStore:
    """
    Tunable circulation settings backed by the ``settings`` table.

    Every accessor reads the row at call time, so a change made by staff
    applies to the next decision and never to one already taken.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_setting(self, key: str) -> Optional[str]:
        row = self.db.query(Setting).filter(Setting.key == key).first()
        return row.value if row else None

    def _integer(self, key: str) -> int:
        raw = self.get_setting(key)
        if raw is not None:
            try:
                value = int(raw.strip())
                if value >= 0:
                    return value
            except ValueError:
                pass
            logger.warning("Ignoring invalid value %r for setting %s", raw, key)
        return int(DEFAULTS[key])

    def _decimal(self, key: str) -> Decimal:
        raw = self.get_setting(key)
        if raw is not None:
            try:
                value = Decimal(raw.strip())
                if value.is_finite() and value >= 0:
                    return value
            except InvalidOperation:
                pass
            logger.warning("Ignoring invalid value %r for setting %s", raw, key)
        return Decimal(DEFAULTS[key])

    def loan_period_days(self) -> int:
        return self._integer(DEFAULT_LOAN_PERIOD_DAYS)

    def max_renewals(self) -> int:
        return self._integer(MAX_RENEWALS)

    def fine_per_day(self) -> Decimal:
        return self._decimal(FINE_PER_DAY)

    def grace_period_days(self) -> int:
        return self._integer(GRACE_PERIOD_DAYS)

    def reservation_expiry_hours(self) -> int:
        return self._integer(RESERVATION_EXPIRY_HOURS)

    def max_fine_threshold(self) -> Decimal:
        return self._decimal(MAX_FINE_THRESHOLD)

    def list_settings(self) -> List[Setting]:
        return self.db.query(Setting).order_by(Setting.key).all()

    def set_setting(self, actor: User, key: str, value: str, description: Optional[str] = None) -> Setting:
        """
        Creates or overwrites a setting. Staff only.

        Raises:
            LibraryError: FORBIDDEN for non-staff, VALIDATION_ERROR when a known
                numeric key receives a value it could not be read back as.
        """
        if actor.role != Role.STAFF:
            raise forbidden("Only staff can change library settings")
        value = value.strip()
        if not key or not value:
            raise LibraryError(ErrorKind.VALIDATION_ERROR, "Setting key and value are required")
        if key in _INTEGER_KEYS and not value.isdigit():
            raise LibraryError(ErrorKind.VALIDATION_ERROR, f"{key} must be a non-negative integer")
        if key in _DECIMAL_KEYS:
            try:
                ok = Decimal(value).is_finite() and Decimal(value) >= 0
            except InvalidOperation:
                ok = False
            if not ok:
                raise LibraryError(ErrorKind.VALIDATION_ERROR, f"{key} must be a non-negative amount")

        with unit_of_work(self.db, "update setting", logger):
            row = self.db.query(Setting).filter(Setting.key == key).first()
            if row is None:
                row = Setting(key=key, value=value, description=description)
                self.db.add(row)
            else:
                row.value = value
                if description is not None:
                    row.description = description

        self.db.refresh(row)
        logger.info("Setting %s changed to %s by user %s", key, value, actor.id)
        return row
