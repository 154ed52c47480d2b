"""Domain models - the entity under verification, its documents and its email tokens."""
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, Enum as SQLEnum
from sqlalchemy.orm import relationship

from app.database import Base
from app.models.enums import EntityKind, EntityStatus, WebsiteVerificationMethod


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return uuid.uuid4().hex


class Entity(Base):
    """
    An institution or organization progressing through verification:
    pending → email_verified → submitted → verified | rejected (→ submitted again).

    Invariants enforced by the engine:
    - status and the email_verified flag are separate fields
    - documents_submitted is only ever written from the current DocumentRecords
    - documents_verified is only set by an administrator decision
    - changing contact_email clears email_verified, changing website clears website_verified
    """
    __tablename__ = "entities"

    id = Column(String(32), primary_key=True, default=_new_id)
    kind = Column(SQLEnum(EntityKind), nullable=False, index=True)

    # Profile, frozen once submitted
    name = Column(String(200), nullable=False)
    contact_email = Column(String(320), nullable=True)
    phone = Column(String(50), nullable=True)
    website = Column(String(500), nullable=True)
    address = Column(String(500), nullable=True)
    description = Column(Text, nullable=True)
    category = Column(String(100), nullable=True)
    owner_id = Column(String, nullable=True)

    status = Column(SQLEnum(EntityStatus), nullable=False, default=EntityStatus.PENDING, index=True)

    # Readiness flags
    email_verified = Column(Boolean, nullable=False, default=False)
    documents_submitted = Column(Boolean, nullable=False, default=False)
    documents_verified = Column(Boolean, nullable=False, default=False)
    # Informational for reviewers; does not gate submission
    website_verified = Column(Boolean, nullable=False, default=False)

    # Review
    submitted_at = Column(DateTime, nullable=True, index=True)
    review_notes = Column(Text, nullable=True)
    rejection_reason = Column(String(100), nullable=True)
    reviewed_by = Column(String, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    documents = relationship(
        "DocumentRecord", back_populates="entity", order_by="DocumentRecord.id"
    )
    log_entries = relationship(
        "VerificationLogEntry", back_populates="entity", order_by="VerificationLogEntry.id"
    )


class DocumentRecord(Base):
    """One uploaded file. stored_ref is an opaque handle into the document store."""
    __tablename__ = "document_records"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    entity_id = Column(String(32), ForeignKey("entities.id"), nullable=False, index=True)
    document_type = Column(String(100), nullable=False)
    stored_ref = Column(String(500), nullable=False)
    filename = Column(String(255), nullable=True)
    size_bytes = Column(Integer, nullable=True)
    uploaded_by = Column(String, nullable=True)
    uploaded_at = Column(DateTime, nullable=False, default=utcnow)

    entity = relationship("Entity", back_populates="documents")


class EmailVerificationToken(Base):
    """
    Single-use, time-bounded email challenge.

    Only the SHA-256 of the token is stored. At most one token per entity is live:
    issuing a new one sets superseded_at on the previous one.
    """
    __tablename__ = "email_verification_tokens"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    entity_id = Column(String(32), ForeignKey("entities.id"), nullable=False, index=True)
    token_hash = Column(String(64), nullable=False, unique=True)
    expires_at = Column(DateTime, nullable=False)
    consumed_at = Column(DateTime, nullable=True)
    superseded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def is_live(self, now: datetime) -> bool:
        return self.consumed_at is None and self.superseded_at is None and now < self.expires_at


class WebsiteVerificationChallenge(Base):
    """
    Proof-of-control challenge for the entity's website.

    The token is published by the owner (DNS TXT record, file or meta tag), so it is
    stored in clear. Issuing a new challenge, or changing the website, sets
    superseded_at on the live one.
    """
    __tablename__ = "website_verification_challenges"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    entity_id = Column(String(32), ForeignKey("entities.id"), nullable=False, index=True)
    method = Column(SQLEnum(WebsiteVerificationMethod), nullable=False)
    website = Column(String(500), nullable=False)
    token = Column(String(64), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    verified_at = Column(DateTime, nullable=True)
    superseded_at = Column(DateTime, nullable=True)

    @property
    def is_live(self) -> bool:
        return self.verified_at is None and self.superseded_at is None
