"""
Verification engine that enforces the entity verification invariants.

This is the core enforcement mechanism - every status change and readiness flag
MUST go through here. Each mutating operation holds the entity's lock from the
guarded read to the commit, and writes its log entry in the same transaction.
"""
import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import KindConfig, Settings, get_settings, kind_configs
from app.models.audit import VerificationLogEntry
from app.models.domain import (
    DocumentRecord,
    EmailVerificationToken,
    Entity,
    WebsiteVerificationChallenge,
    utcnow,
)
from app.models.enums import (
    DecisionOutcome,
    EntityKind,
    EntityStatus,
    VerificationAction,
    WebsiteVerificationMethod,
    PROFILE_FIELDS,
)
from app.services.audit_log import AuditLog
from app.services.collaborators import DocumentStore, NotificationChannel, StoredDocument, call_with_retries
from app.services.errors import (
    ConflictError,
    InvalidTokenError,
    NotFoundError,
    NotificationError,
    PersistenceError,
    PreconditionError,
    StorageError,
    ValidationError,
    WebsiteCheckError,
)
from app.services.locks import EntityLockRegistry, entity_locks
from app.services.state_machine import (
    calculate_documents_submitted,
    is_allowed,
    missing_documents,
    next_status,
    readiness_gaps,
)
from app.services.website_verification import (
    HttpWebsiteChecker,
    WebsiteChecker,
    WebsiteInstructions,
    build_instructions,
)

logger = logging.getLogger(__name__)

EMAIL_VERIFICATION_TEMPLATE = "entity_email_verification"


@dataclass(frozen=True)
class IssuedToken:
    """
    Result of an email verification request.

    The token is issued even when delivery fails; `delivered` and `delivery_error`
    tell the caller to offer a manual resend.
    """
    entity_id: str
    token: str
    expires_at: datetime
    delivered: bool
    delivery_error: Optional[str] = None


@dataclass(frozen=True)
class ReadinessReport:
    """Submission checklist for one entity."""
    entity_id: str
    status: EntityStatus
    email_verified: bool
    documents_submitted: bool
    documents_verified: bool
    website_verified: bool
    required_documents: List[str] = field(default_factory=list)
    missing_documents: List[str] = field(default_factory=list)

    @property
    def can_submit(self) -> bool:
        return (
            self.status in (EntityStatus.PENDING, EntityStatus.EMAIL_VERIFIED, EntityStatus.REJECTED)
            and self.email_verified
            and self.documents_submitted
        )


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class VerificationEngine:
    """Guards every transition of the entity verification state machine."""

    def __init__(
        self,
        db: Session,
        document_store: DocumentStore,
        notifier: NotificationChannel,
        website_checker: Optional[WebsiteChecker] = None,
        kinds: Optional[Mapping[EntityKind, KindConfig]] = None,
        settings: Optional[Settings] = None,
        locks: EntityLockRegistry = entity_locks,
        clock: Callable[[], datetime] = utcnow
    ):
        self.db = db
        self.document_store = document_store
        self.notifier = notifier
        self.settings = settings or get_settings()
        self.kinds = dict(kinds) if kinds is not None else kind_configs(self.settings)
        self.website_checker = website_checker or HttpWebsiteChecker(
            self.settings.website_check_timeout_seconds, self.settings.dns_over_https_url
        )
        self.locks = locks
        self.clock = clock
        self.audit = AuditLog(db)

    # ------------------------------------------------------------------
    # Owner operations
    # ------------------------------------------------------------------

    def create_entity(
        self,
        kind: EntityKind,
        profile: Mapping[str, Any],
        owner_id: Optional[str] = None
    ) -> Entity:
        """
        Create an entity in pending status.

        Only `name` is required. Unknown profile fields are refused rather than dropped.
        """
        kind = self._coerce_kind(kind)
        values = self._validated_profile(kind, profile, require_name=True)

        now = self.clock()
        entity = Entity(
            kind=kind,
            owner_id=owner_id,
            status=EntityStatus.PENDING,
            email_verified=False,
            documents_submitted=calculate_documents_submitted(self.kinds[kind], []),
            documents_verified=False,
            created_at=now,
            updated_at=now,
            **values
        )
        self.db.add(entity)
        self._flush()
        self.audit.append(entity.id, VerificationAction.CREATED, owner_id, created_at=now)
        self._commit()

        logger.info("entity_created entity_id=%s kind=%s", entity.id, kind.value)
        return entity

    def update_profile(
        self,
        entity_id: str,
        actor_id: Optional[str],
        changes: Mapping[str, Any]
    ) -> Entity:
        """
        Edit profile fields before submission.

        The whole profile is frozen while a review is in flight or after verification.
        Changing the contact email supersedes outstanding email tokens, clears
        email_verified and returns the entity to pending. Changing the website does the
        same for website challenges and website_verified.
        """
        with self.locks.hold(entity_id):
            entity = self._load_for_update(entity_id)

            if not is_allowed(VerificationAction.PROFILE_UPDATED, entity.status):
                self._refuse(ConflictError(
                    f"Profile cannot be edited while status is {entity.status.value}"
                ))
            try:
                values = self._validated_profile(entity.kind, changes, require_name=False)
            except ValidationError as exc:
                self._refuse(exc)

            changed = sorted(name for name, value in values.items() if getattr(entity, name) != value)
            if not changed:
                self.db.rollback()
                return self._load(entity_id)

            now = self.clock()
            for name in changed:
                setattr(entity, name, values[name])

            action = VerificationAction.PROFILE_UPDATED
            if "contact_email" in changed:
                # Tokens sent to the old address must not verify the new one
                self._supersede_email_tokens(entity.id, now)
                entity.email_verified = False
                action = VerificationAction.CONTACT_EMAIL_CHANGED
                entity.status = next_status(action, entity.status)
            if "website" in changed:
                self._supersede_website_challenges(entity.id, now)
                entity.website_verified = False

            entity.updated_at = now
            self.audit.append(
                entity.id, action, actor_id,
                notes="fields: " + ", ".join(changed), created_at=now
            )
            self._commit()

        logger.info("profile_updated entity_id=%s fields=%s", entity_id, ",".join(changed))
        return entity

    def request_email_verification(self, entity_id: str, actor_id: Optional[str] = None) -> IssuedToken:
        """
        Issue a single-use, time-bounded email token and send it.

        Any live token for the entity is superseded first, so at most one token is
        live. A failed send is logged and reported but the token stays issued.
        """
        with self.locks.hold(entity_id):
            entity = self._load_for_update(entity_id)

            if entity.email_verified:
                self._refuse(ConflictError("Email is already verified"))
            if not is_allowed(VerificationAction.EMAIL_VERIFICATION_SENT, entity.status):
                self._refuse(ConflictError(
                    f"Email verification cannot be requested while status is {entity.status.value}"
                ))
            if not entity.contact_email:
                self._refuse(ValidationError("Entity has no contact email to verify"))

            now = self.clock()
            superseded = self._supersede_email_tokens(entity.id, now)

            token = secrets.token_urlsafe(32)
            expires_at = now + timedelta(minutes=self.settings.email_token_ttl_minutes)
            self.db.add(EmailVerificationToken(
                entity_id=entity.id,
                token_hash=hash_token(token),
                expires_at=expires_at,
                created_at=now
            ))
            self.audit.append(
                entity.id, VerificationAction.EMAIL_VERIFICATION_SENT, actor_id,
                notes=f"expires_at={expires_at.isoformat()}", created_at=now
            )
            self._commit()

            recipient = entity.contact_email
            payload = {"entity_id": entity.id, "name": entity.name, "token": token,
                       "expires_at": expires_at.isoformat()}

        logger.info("email_verification_issued entity_id=%s superseded=%d", entity_id, superseded)

        # Delivery happens after the token is committed and outside the entity lock
        try:
            call_with_retries(
                lambda: self.notifier.send(recipient, EMAIL_VERIFICATION_TEMPLATE, payload),
                retry_on=(NotificationError,),
                attempts=self.settings.external_retry_attempts,
                wait_seconds=self.settings.external_retry_wait_seconds
            )
        except NotificationError as exc:
            logger.error("email_verification_delivery_failed entity_id=%s", entity_id, exc_info=exc)
            return IssuedToken(entity_id, token, expires_at, delivered=False, delivery_error=exc.message)

        return IssuedToken(entity_id, token, expires_at, delivered=True)

    def confirm_email_verification(
        self,
        entity_id: str,
        token: str,
        actor_id: Optional[str] = None
    ) -> Entity:
        """
        Consume an email token and set the email_verified flag.

        Repeating a successful confirmation with the same token is a no-op, so a
        double click does not surface as an error.
        """
        with self.locks.hold(entity_id):
            entity = self._load_for_update(entity_id)
            record = None
            if token:
                record = self.db.query(EmailVerificationToken).filter(
                    EmailVerificationToken.entity_id == entity.id,
                    EmailVerificationToken.token_hash == hash_token(token)
                ).first()

            if entity.email_verified:
                if record is not None and record.consumed_at is not None:
                    self.db.rollback()
                    logger.info("email_verification_duplicate entity_id=%s", entity_id)
                    return self._load(entity_id)
                self._refuse(InvalidTokenError("Verification token is not valid for this entity"))

            now = self.clock()
            if record is None:
                self._refuse(InvalidTokenError("Verification token is unknown"))
            if record.consumed_at is not None:
                self._refuse(InvalidTokenError("Verification token has already been used"))
            if record.superseded_at is not None:
                self._refuse(InvalidTokenError("Verification token was replaced by a newer request"))
            if now >= record.expires_at:
                self._refuse(InvalidTokenError("Verification token has expired"))
            if not is_allowed(VerificationAction.EMAIL_VERIFIED, entity.status):
                self._refuse(ConflictError(
                    f"Email cannot be verified while status is {entity.status.value}"
                ))

            record.consumed_at = now
            entity.email_verified = True
            entity.status = next_status(VerificationAction.EMAIL_VERIFIED, entity.status)
            entity.updated_at = now
            self.audit.append(entity.id, VerificationAction.EMAIL_VERIFIED, actor_id, created_at=now)
            self._commit()

        logger.info("email_verified entity_id=%s", entity_id)
        return entity

    def upload_document(
        self,
        entity_id: str,
        document_type: str,
        content: bytes,
        actor_id: Optional[str] = None,
        filename: Optional[str] = None
    ) -> DocumentRecord:
        """
        Store a document and recompute documents_submitted.

        Uploads are refused while a review is in flight and after verification.
        A storage failure (after retries) leaves the entity untouched. If the stored
        file cannot be recorded, it is removed from the store again.
        """
        with self.locks.hold(entity_id):
            entity = self._load_for_update(entity_id)

            if not is_allowed(VerificationAction.DOCUMENT_UPLOADED, entity.status):
                self._refuse(ValidationError(
                    f"Documents cannot be uploaded while status is {entity.status.value}"
                ))
            kind_config = self.kinds[entity.kind]
            if document_type not in kind_config.allowed_documents:
                self._refuse(ValidationError(
                    f"Document type '{document_type}' is not accepted for {entity.kind.value}. "
                    f"Accepted types: {', '.join(kind_config.allowed_documents)}"
                ))
            if not content:
                self._refuse(ValidationError("Document is empty"))
            if len(content) > self.settings.max_document_bytes:
                self._refuse(ValidationError(
                    f"Document exceeds the {self.settings.max_document_bytes} byte limit"
                ))

            try:
                stored = call_with_retries(
                    lambda: self.document_store.store(entity.id, document_type, content),
                    retry_on=(StorageError,),
                    attempts=self.settings.external_retry_attempts,
                    wait_seconds=self.settings.external_retry_wait_seconds
                )
            except StorageError:
                self.db.rollback()
                logger.error("document_store_failed entity_id=%s type=%s", entity_id, document_type)
                raise

            now = self.clock()
            record = DocumentRecord(
                entity_id=entity.id,
                document_type=document_type,
                stored_ref=stored.ref,
                filename=filename,
                size_bytes=stored.size_bytes,
                uploaded_by=actor_id,
                uploaded_at=now
            )
            try:
                self.db.add(record)
                self._flush()
                self._recompute_documents_submitted(entity)
                entity.updated_at = now
                self.audit.append(
                    entity.id, VerificationAction.DOCUMENT_UPLOADED, actor_id,
                    notes=document_type, created_at=now
                )
                self._commit()
            except PersistenceError:
                self._discard_stored(stored)
                raise

        logger.info(
            "document_uploaded entity_id=%s type=%s documents_submitted=%s",
            entity_id, document_type, entity.documents_submitted
        )
        return record

    def request_website_verification(
        self,
        entity_id: str,
        method: WebsiteVerificationMethod,
        actor_id: Optional[str] = None
    ) -> WebsiteInstructions:
        """
        Issue a website ownership challenge and return what the owner has to publish.

        Any live challenge is superseded. Website verification is shown to reviewers
        but does not gate submission.
        """
        try:
            method = WebsiteVerificationMethod(method)
        except ValueError:
            raise ValidationError(f"Unknown website verification method: {method}")

        with self.locks.hold(entity_id):
            entity = self._load_for_update(entity_id)

            if not is_allowed(VerificationAction.WEBSITE_VERIFICATION_ISSUED, entity.status):
                self._refuse(ConflictError(
                    f"Website verification cannot be requested while status is {entity.status.value}"
                ))
            if entity.website_verified:
                self._refuse(ConflictError("Website is already verified"))
            if not entity.website:
                self._refuse(ValidationError("Entity has no website to verify"))

            token = secrets.token_hex(16)
            try:
                instructions = build_instructions(entity.website, method, token)
            except ValidationError as exc:
                self._refuse(exc)

            now = self.clock()
            superseded = self._supersede_website_challenges(entity.id, now)
            self.db.add(WebsiteVerificationChallenge(
                entity_id=entity.id,
                method=method,
                website=instructions.website,
                token=token,
                created_at=now
            ))
            entity.updated_at = now
            self.audit.append(
                entity.id, VerificationAction.WEBSITE_VERIFICATION_ISSUED, actor_id,
                notes=method.value, created_at=now
            )
            self._commit()

        logger.info(
            "website_challenge_issued entity_id=%s method=%s superseded=%d",
            entity_id, method.value, superseded
        )
        return instructions

    def confirm_website_verification(self, entity_id: str, actor_id: Optional[str] = None) -> Entity:
        """
        Look for the outstanding challenge on the website and set website_verified.

        Refused (PreconditionError) when no challenge is outstanding or the challenge
        is not published yet. Confirming an already verified website is a no-op.
        """
        with self.locks.hold(entity_id):
            entity = self._load_for_update(entity_id)

            if not is_allowed(VerificationAction.WEBSITE_VERIFIED, entity.status):
                self._refuse(ConflictError(
                    f"Website cannot be verified while status is {entity.status.value}"
                ))
            if entity.website_verified:
                self.db.rollback()
                return self._load(entity_id)

            challenge = self.db.query(WebsiteVerificationChallenge).filter(
                WebsiteVerificationChallenge.entity_id == entity.id,
                WebsiteVerificationChallenge.verified_at.is_(None),
                WebsiteVerificationChallenge.superseded_at.is_(None)
            ).order_by(WebsiteVerificationChallenge.id.desc()).first()
            if challenge is None:
                self._refuse(PreconditionError(
                    "No website challenge is outstanding; request one first",
                    missing=["website_challenge"]
                ))

            instructions = build_instructions(challenge.website, challenge.method, challenge.token)
            try:
                published = call_with_retries(
                    lambda: self.website_checker.check(instructions),
                    retry_on=(WebsiteCheckError,),
                    attempts=self.settings.external_retry_attempts,
                    wait_seconds=self.settings.external_retry_wait_seconds
                )
            except WebsiteCheckError:
                self.db.rollback()
                logger.error("website_check_failed entity_id=%s method=%s", entity_id, challenge.method.value)
                raise

            if not published:
                self._refuse(PreconditionError(
                    f"Website challenge ({challenge.method.value}) not found for {challenge.website}",
                    missing=[f"website:{challenge.method.value}"]
                ))

            now = self.clock()
            challenge.verified_at = now
            entity.website_verified = True
            entity.updated_at = now
            self.audit.append(
                entity.id, VerificationAction.WEBSITE_VERIFIED, actor_id,
                notes=challenge.method.value, created_at=now
            )
            self._commit()

        logger.info("website_verified entity_id=%s", entity_id)
        return entity

    def submit_for_review(self, entity_id: str, actor_id: Optional[str]) -> Entity:
        """
        Submit an entity for administrator review.

        Refusal invariants:
        - Refused (PreconditionError) unless email is verified and every required
          document is present, recomputed from the stored records at this moment
        - Refused (ConflictError) if already submitted or verified
        - The refusal lists every unmet prerequisite
        """
        with self.locks.hold(entity_id):
            entity = self._load_for_update(entity_id)

            if entity.status in (EntityStatus.SUBMITTED, EntityStatus.VERIFIED):
                self._refuse(ConflictError(
                    f"Cannot submit: entity is already {entity.status.value}"
                ))

            missing = self._recompute_documents_submitted(entity)
            gaps = readiness_gaps(entity.email_verified, missing)
            if gaps:
                self._refuse(PreconditionError(
                    f"REFUSAL: Cannot submit for review. Outstanding: {', '.join(gaps)}",
                    missing=gaps
                ))
            if not is_allowed(VerificationAction.SUBMITTED_FOR_REVIEW, entity.status):
                self._refuse(ConflictError(
                    f"Cannot submit while status is {entity.status.value}"
                ))

            now = self.clock()
            entity.status = next_status(VerificationAction.SUBMITTED_FOR_REVIEW, entity.status)
            entity.submitted_at = now
            # A new review cycle starts without the previous decision's fields
            entity.review_notes = None
            entity.rejection_reason = None
            entity.reviewed_by = None
            entity.reviewed_at = None
            entity.updated_at = now
            self.audit.append(entity.id, VerificationAction.SUBMITTED_FOR_REVIEW, actor_id, created_at=now)
            self._commit()

        logger.info("submitted_for_review entity_id=%s", entity_id)
        return entity

    # ------------------------------------------------------------------
    # Administrator operations
    # ------------------------------------------------------------------

    def decide(
        self,
        entity_id: str,
        admin_id: str,
        outcome: DecisionOutcome,
        notes: Optional[str] = None,
        reason: Optional[str] = None
    ) -> Entity:
        """
        Record the terminal decision for the current review cycle.

        Decision invariants:
        - Only a submitted entity can be decided; a second decision finds the entity
          no longer submitted and is refused
        - Rejection requires notes
        - Approval re-checks readiness, so it can never verify an unready entity
        """
        try:
            outcome = DecisionOutcome(outcome)
        except ValueError:
            raise ValidationError(f"Unknown decision outcome: {outcome}")
        if not admin_id:
            raise ValidationError("A decision must name the administrator")

        action = VerificationAction.APPROVED if outcome == DecisionOutcome.APPROVE else VerificationAction.REJECTED
        notes = notes.strip() if notes else None

        with self.locks.hold(entity_id):
            entity = self._load_for_update(entity_id)

            if not is_allowed(action, entity.status):
                self._refuse(PreconditionError(
                    f"Cannot {outcome.value}: entity is {entity.status.value}, not submitted"
                ))
            if outcome == DecisionOutcome.REJECT and not notes:
                self._refuse(ValidationError("Rejection requires review notes"))

            now = self.clock()
            if outcome == DecisionOutcome.APPROVE:
                missing = self._recompute_documents_submitted(entity)
                gaps = readiness_gaps(entity.email_verified, missing)
                if gaps:
                    self._refuse(PreconditionError(
                        f"Cannot approve: outstanding {', '.join(gaps)}", missing=gaps
                    ))
                entity.documents_verified = True
                entity.rejection_reason = None
            else:
                entity.documents_verified = False
                entity.rejection_reason = reason

            entity.status = next_status(action, entity.status)
            entity.review_notes = notes
            entity.reviewed_by = admin_id
            entity.reviewed_at = now
            entity.updated_at = now
            self.audit.append(entity.id, action, admin_id, notes=notes, created_at=now)
            self._commit()

        logger.info("decision_recorded entity_id=%s outcome=%s admin=%s", entity_id, outcome.value, admin_id)
        return entity

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_entity(self, entity_id: str) -> Entity:
        return self._load(entity_id)

    def list_documents(self, entity_id: str) -> List[DocumentRecord]:
        self._load(entity_id)
        return self.db.query(DocumentRecord).filter(
            DocumentRecord.entity_id == entity_id
        ).order_by(DocumentRecord.id.asc()).all()

    def audit_history(self, entity_id: str) -> List[VerificationLogEntry]:
        self._load(entity_id)
        return self.audit.list_for_entity(entity_id)

    def readiness(self, entity_id: str) -> ReadinessReport:
        """Checklist computed from the stored records; does not write anything."""
        entity = self._load(entity_id)
        kind_config = self.kinds[entity.kind]
        missing = missing_documents(kind_config, self._uploaded_types(entity.id))
        return ReadinessReport(
            entity_id=entity.id,
            status=entity.status,
            email_verified=entity.email_verified,
            documents_submitted=not missing,
            documents_verified=entity.documents_verified,
            website_verified=entity.website_verified,
            required_documents=list(kind_config.required_documents),
            missing_documents=missing,
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def prune_expired_tokens(self, now: Optional[datetime] = None) -> int:
        """
        Delete expired and superseded email tokens.

        Consumed tokens are kept until they expire so duplicate confirmations stay no-ops.
        """
        now = now or self.clock()
        removed = self.db.query(EmailVerificationToken).filter(
            (EmailVerificationToken.expires_at <= now)
            | (EmailVerificationToken.superseded_at.isnot(None))
        ).delete(synchronize_session=False)
        self._commit()
        logger.info("email_tokens_pruned count=%d", removed)
        return removed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _coerce_kind(self, kind: Any) -> EntityKind:
        try:
            kind = EntityKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown entity kind: {kind}")
        if kind not in self.kinds:
            raise ValidationError(f"No verification configuration for kind: {kind.value}")
        return kind

    def _validated_profile(
        self,
        kind: EntityKind,
        profile: Mapping[str, Any],
        require_name: bool
    ) -> Dict[str, Any]:
        unknown = sorted(set(profile) - set(PROFILE_FIELDS))
        if unknown:
            raise ValidationError(f"Unknown profile fields: {', '.join(unknown)}")

        values: Dict[str, Any] = {}
        for name, value in profile.items():
            if isinstance(value, str):
                value = value.strip() or None
            values[name] = value

        if require_name or "name" in values:
            if not values.get("name"):
                raise ValidationError("Name is required")

        email = values.get("contact_email")
        if email is not None and "@" not in email:
            raise ValidationError(f"Invalid contact email: {email}")

        category = values.get("category")
        categories = self.kinds[kind].categories
        if category is not None and categories and category not in categories:
            raise ValidationError(
                f"Unknown {kind.value} category '{category}'. Expected one of: {', '.join(categories)}"
            )
        return values

    def _load(self, entity_id: str) -> Entity:
        entity = self.db.query(Entity).filter(Entity.id == entity_id).first()
        if entity is None:
            raise NotFoundError(f"Entity {entity_id} not found")
        return entity

    def _load_for_update(self, entity_id: str) -> Entity:
        """Reload the row under the entity lock, bypassing any stale identity-map state."""
        entity = self.db.query(Entity).filter(
            Entity.id == entity_id
        ).with_for_update().populate_existing().first()
        if entity is None:
            self.db.rollback()
            raise NotFoundError(f"Entity {entity_id} not found")
        return entity

    def _uploaded_types(self, entity_id: str) -> List[str]:
        rows = self.db.query(DocumentRecord.document_type).filter(
            DocumentRecord.entity_id == entity_id
        ).distinct().all()
        return [row[0] for row in rows]

    def _recompute_documents_submitted(self, entity: Entity) -> List[str]:
        """Derive documents_submitted from the current records. Returns the missing types."""
        missing = missing_documents(self.kinds[entity.kind], self._uploaded_types(entity.id))
        entity.documents_submitted = not missing
        return missing

    def _supersede_email_tokens(self, entity_id: str, now: datetime) -> int:
        live_tokens = self.db.query(EmailVerificationToken).filter(
            EmailVerificationToken.entity_id == entity_id,
            EmailVerificationToken.consumed_at.is_(None),
            EmailVerificationToken.superseded_at.is_(None)
        ).all()
        for token in live_tokens:
            token.superseded_at = now
        return len(live_tokens)

    def _supersede_website_challenges(self, entity_id: str, now: datetime) -> int:
        live_challenges = self.db.query(WebsiteVerificationChallenge).filter(
            WebsiteVerificationChallenge.entity_id == entity_id,
            WebsiteVerificationChallenge.verified_at.is_(None),
            WebsiteVerificationChallenge.superseded_at.is_(None)
        ).all()
        for challenge in live_challenges:
            challenge.superseded_at = now
        return len(live_challenges)

    def _discard_stored(self, stored: StoredDocument) -> None:
        """Best-effort removal of a file whose record could not be committed."""
        try:
            self.document_store.delete(stored.ref)
        except StorageError:
            logger.warning("orphaned_document ref=%s", stored.ref, exc_info=True)

    def _refuse(self, error: Exception) -> None:
        """Discard anything staged in this transaction and surface the refusal."""
        self.db.rollback()
        logger.info("operation_refused error=%s message=%s", type(error).__name__, error)
        raise error

    def _flush(self) -> None:
        try:
            self.db.flush()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceError(f"Could not stage transition: {exc}") from exc

    def _commit(self) -> None:
        """Commit the transition and its log entry together, or neither."""
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("transition_commit_failed")
            raise PersistenceError(f"Could not commit transition: {exc}") from exc
