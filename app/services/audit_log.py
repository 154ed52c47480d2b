"""Append-only verification log."""
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from app.models.audit import VerificationLogEntry
from app.models.enums import VerificationAction
from app.services.state_machine import ReplayResult, replay


class AuditLog:
    """
    Append-only access to the verification log.

    There is no update or delete. `append` only stages the entry in the
    caller's session: the engine commits it together with the transition it records,
    so a failed log write means a failed transition.
    """

    def __init__(self, db: Session):
        self.db = db

    def append(
        self,
        entity_id: str,
        action: VerificationAction,
        actor_id: Optional[str] = None,
        notes: Optional[str] = None,
        created_at: Optional[datetime] = None
    ) -> VerificationLogEntry:
        entry = VerificationLogEntry(
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            notes=notes,
        )
        if created_at is not None:
            entry.created_at = created_at
        self.db.add(entry)
        return entry

    def list_for_entity(self, entity_id: str) -> List[VerificationLogEntry]:
        """All entries for an entity, oldest first. Returns a fresh list on every call."""
        return (
            self.db.query(VerificationLogEntry)
            .filter(VerificationLogEntry.entity_id == entity_id)
            .order_by(VerificationLogEntry.id.asc())
            .all()
        )

    def replay(self, entity_id: str) -> ReplayResult:
        """Check that the entity's history is a legal path through the state diagram."""
        return replay(entry.action for entry in self.list_for_entity(entity_id))
