"""Pytest configuration and shared fixtures."""
import os

# Keep the module-level engine off the working directory during tests
os.environ.setdefault("VERIFY_DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.config import KindConfig, Settings
from app.database import Base
from app.models.domain import Entity, DocumentRecord, EmailVerificationToken, WebsiteVerificationChallenge
from app.models.audit import VerificationLogEntry
from app.models.enums import EntityKind
from app.services.collaborators import InMemoryDocumentStore, InMemoryNotificationChannel
from app.services.locks import EntityLockRegistry
from app.services.verification_engine import VerificationEngine
from app.services.website_verification import InMemoryWebsiteChecker

INSTITUTION_DOCUMENTS = (
    "registration_certificate",
    "accreditation_certificate",
    "tax_document",
    "proof_of_address",
)
ORGANIZATION_DOCUMENTS = (
    "registration_certificate",
    "tax_document",
    "proof_of_address",
    "director_id",
)

KINDS = {
    EntityKind.INSTITUTION: KindConfig(
        label="Institution",
        required_documents=INSTITUTION_DOCUMENTS,
        optional_documents=("other",),
        categories=("university", "college", "school"),
    ),
    EntityKind.ORGANIZATION: KindConfig(
        label="Organization",
        required_documents=ORGANIZATION_DOCUMENTS,
        optional_documents=("other",),
        categories=("ngo", "company"),
    ),
}


class FakeClock:
    """Deterministic clock; advance() moves time forward."""

    def __init__(self, start: datetime = datetime(2026, 1, 5, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def settings():
    return Settings(_env_file=None, external_retry_attempts=3, external_retry_wait_seconds=0)


@pytest.fixture
def db_session():
    """Create a fresh in-memory database for each test."""
    # In-memory SQLite for fast tests
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False)
    session = TestingSessionLocal()

    yield session

    session.close()
    engine.dispose()


@pytest.fixture
def session_factory(tmp_path):
    """File-backed database shared by several threads, one session each."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'verification.db'}",
        connect_args={"check_same_thread": False, "timeout": 30}
    )
    Base.metadata.create_all(engine)

    yield sessionmaker(bind=engine, autoflush=False)

    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def document_store():
    return InMemoryDocumentStore()


@pytest.fixture
def notifier():
    return InMemoryNotificationChannel()


@pytest.fixture
def website_checker():
    return InMemoryWebsiteChecker()


@pytest.fixture
def locks():
    return EntityLockRegistry()


@pytest.fixture
def make_engine(document_store, notifier, website_checker, settings, locks, clock):
    """Build an engine bound to a given session, sharing collaborators and locks."""
    def _make(session, **overrides):
        options = dict(
            document_store=document_store,
            notifier=notifier,
            website_checker=website_checker,
            kinds=KINDS,
            settings=settings,
            locks=locks,
            clock=clock,
        )
        options.update(overrides)
        return VerificationEngine(session, **options)
    return _make


@pytest.fixture
def engine(db_session, make_engine):
    return make_engine(db_session)


def create_institution(engine, name="X", **profile):
    profile.setdefault("contact_email", "registrar@x.example")
    return engine.create_entity(EntityKind.INSTITUTION, dict(name=name, **profile), owner_id="owner_1")


def verify_email(engine, entity_id):
    issued = engine.request_email_verification(entity_id, actor_id="owner_1")
    return engine.confirm_email_verification(entity_id, issued.token, actor_id="owner_1")


def upload_all(engine, entity_id, document_types=INSTITUTION_DOCUMENTS):
    return [
        engine.upload_document(entity_id, doc_type, b"%PDF-1.4 " + doc_type.encode(), actor_id="owner_1")
        for doc_type in document_types
    ]


@pytest.fixture
def institution(engine):
    """A fresh institution in pending state."""
    return create_institution(engine)


@pytest.fixture
def ready_institution(engine, institution):
    """Email verified and every required document uploaded, not yet submitted."""
    verify_email(engine, institution.id)
    upload_all(engine, institution.id)
    return engine.get_entity(institution.id)


@pytest.fixture
def submitted_institution(engine, ready_institution):
    return engine.submit_for_review(ready_institution.id, "owner_1")
