"""
Verification log model - the append-only audit trail of every workflow transition.

Rows are written only by the verification engine, in the same transaction as the
transition they record.
"""
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Text, Enum as SQLEnum, event
from sqlalchemy.orm import relationship

from app.database import Base
from app.models.domain import utcnow
from app.models.enums import VerificationAction


class AuditImmutabilityError(RuntimeError):
    """Raised when something tries to update or delete a log entry."""


class VerificationLogEntry(Base):
    """
    Immutable record of one transition.

    Invariants:
    - Once written, never edited or deleted
    - Append-only; id order is the order transitions were linearized per entity
    """
    __tablename__ = "verification_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    entity_id = Column(String(32), ForeignKey("entities.id"), nullable=False, index=True)
    action = Column(SQLEnum(VerificationAction), nullable=False, index=True)
    actor_id = Column(String, nullable=True)  # Nullable for system actions
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    entity = relationship("Entity", back_populates="log_entries")


@event.listens_for(VerificationLogEntry, "before_update")
def _refuse_update(mapper, connection, target):
    raise AuditImmutabilityError(
        f"IMMUTABILITY VIOLATION: verification log entry {target.id} cannot be updated"
    )


@event.listens_for(VerificationLogEntry, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise AuditImmutabilityError(
        f"IMMUTABILITY VIOLATION: verification log entry {target.id} cannot be deleted"
    )
