import logging
from typing import Optional

from sqlalchemy.orm import Session

from app.models.models import AuditLog

logger = logging.getLogger("app.audit")


class AuditSink:
    """
    Records one human-readable line per successful mutation.

    Rows are added to the caller's session and become visible only when the
    caller commits, so a rolled-back operation leaves no audit trail.
    """

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        actor_id: Optional[int],
        action: str,
        description: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[int] = None,
    ) -> AuditLog:
        entry = AuditLog(
            user_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            description=description,
        )
        self.db.add(entry)
        logger.info("%s: %s", action, description)
        return entry
