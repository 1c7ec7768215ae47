"""
Signed, append-only activity trail for organizations.
"""
import hashlib
import hmac
import json
import logging
from typing import List

from sqlalchemy import event, select
from sqlalchemy.orm import Session

from ..db import models
from ..db.base import utcnow

logger = logging.getLogger(__name__)


class ActivityRecordImmutable(RuntimeError):
    pass


@event.listens_for(models.ActivityRecord, "before_update")
def _refuse_update(mapper, connection, target):
    raise ActivityRecordImmutable(f"Activity record {target.id} cannot be modified")


@event.listens_for(models.ActivityRecord, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise ActivityRecordImmutable(f"Activity record {target.id} cannot be deleted")


class ActivityLog:
    def __init__(self, secret_key: str, db_session_factory, clock=utcnow):
        self.secret_key = secret_key.encode()
        self.db_session_factory = db_session_factory
        self.clock = clock

    def _hash(self, data: dict) -> str:
        message = json.dumps(data, sort_keys=True, default=str).encode()
        return hmac.new(self.secret_key, message, hashlib.sha256).hexdigest()

    @staticmethod
    def _canonical(organization_id, actor_user_id, action, details, created_at) -> dict:
        return {
            "organization_id": organization_id,
            "actor_user_id": actor_user_id,
            "action": action,
            "details": details,
            "created_at": created_at.isoformat(),
        }

    def record(self, db: Session, organization_id: str, actor_user_id: str, action: str,
               details: dict = None) -> models.ActivityRecord:
        """Append a record inside the caller's transaction; committed with it."""
        details = details or {}
        created_at = self.clock()
        signature = self._hash(
            self._canonical(organization_id, actor_user_id, action, details, created_at)
        )
        entry = models.ActivityRecord(
            organization_id=organization_id,
            actor_user_id=actor_user_id,
            action=action,
            details=details,
            created_at=created_at,
            signature=signature,
        )
        db.add(entry)
        logger.debug(f"Activity {action} recorded for organization {organization_id}")
        return entry

    def for_organization(self, organization_id: str, limit: int = 100) -> List[models.ActivityRecord]:
        db = self.db_session_factory()
        try:
            stmt = (
                select(models.ActivityRecord)
                .where(models.ActivityRecord.organization_id == organization_id)
                .order_by(models.ActivityRecord.id.desc())
                .limit(limit)
            )
            return list(db.scalars(stmt))
        finally:
            db.close()

    def verify(self, record: models.ActivityRecord) -> bool:
        if not record.signature:
            return False
        computed = self._hash(
            self._canonical(record.organization_id, record.actor_user_id, record.action,
                            record.details, record.created_at)
        )
        return hmac.compare_digest(computed, record.signature)
