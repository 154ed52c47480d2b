"""Review queue - a read-only projection over submitted entities."""
from typing import List, Optional

from sqlalchemy.orm import Session

from app.models.domain import Entity
from app.models.enums import EntityKind, EntityStatus


class ReviewQueue:
    """
    Entities waiting for an administrator decision, oldest submission first.

    Only committed submissions are visible, so an entity appears here only after
    it has passed through submit_for_review.
    """

    def __init__(self, db: Session):
        self.db = db

    def list_pending(self, kind: Optional[EntityKind] = None) -> List[Entity]:
        query = self.db.query(Entity).filter(Entity.status == EntityStatus.SUBMITTED)
        if kind is not None:
            query = query.filter(Entity.kind == EntityKind(kind))
        return query.order_by(Entity.submitted_at.asc(), Entity.id.asc()).all()

    def count_pending(self, kind: Optional[EntityKind] = None) -> int:
        query = self.db.query(Entity).filter(Entity.status == EntityStatus.SUBMITTED)
        if kind is not None:
            query = query.filter(Entity.kind == EntityKind(kind))
        return query.count()
