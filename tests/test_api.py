"""Tests for the HTTP surface."""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base, get_db
from app.dependencies import get_document_store, get_notification_channel, get_website_checker
from app.main import app
from app.services.collaborators import InMemoryDocumentStore, InMemoryNotificationChannel
from app.services.website_verification import InMemoryWebsiteChecker, build_instructions

from conftest import INSTITUTION_DOCUMENTS


@pytest.fixture
def api_notifier():
    return InMemoryNotificationChannel()


@pytest.fixture
def api_website_checker():
    return InMemoryWebsiteChecker()


@pytest.fixture
def client(api_notifier, api_website_checker):
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    store = InMemoryDocumentStore()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_document_store] = lambda: store
    app.dependency_overrides[get_notification_channel] = lambda: api_notifier
    app.dependency_overrides[get_website_checker] = lambda: api_website_checker

    yield TestClient(app)

    app.dependency_overrides = {}
    engine.dispose()


def create(client, name="X", kind="institution"):
    response = client.post("/api/entities", json={
        "kind": kind, "name": name, "contact_email": "registrar@x.example", "owner_id": "owner_1"
    })
    assert response.status_code == 201
    return response.json()


def verify(client, api_notifier, entity_id):
    response = client.post(f"/api/entities/{entity_id}/email-verification", json={"actor_id": "owner_1"})
    assert response.status_code == 201
    assert "token" not in response.json()
    token = api_notifier.outbox[-1][2]["token"]
    response = client.post(f"/api/entities/{entity_id}/email-verification/confirm", json={"token": token})
    assert response.status_code == 200
    return response.json()


def upload(client, entity_id, document_type):
    return client.post(
        f"/api/entities/{entity_id}/documents",
        data={"document_type": document_type, "actor_id": "owner_1"},
        files={"file": (f"{document_type}.pdf", b"%PDF-1.4", "application/pdf")},
    )


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"


def test_create_and_get(client):
    entity = create(client)

    assert entity["status"] == "pending"
    assert entity["email_verified"] is False

    fetched = client.get(f"/api/entities/{entity['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["name"] == "X"


def test_unknown_entity_is_404(client):
    response = client.get("/api/entities/missing")

    assert response.status_code == 404
    assert response.json()["error"] == "NotFoundError"


def test_submit_refusal_explains_why(client):
    entity = create(client)

    response = client.post(f"/api/entities/{entity['id']}/submit", json={"actor_id": "owner_1"})

    assert response.status_code == 403
    body = response.json()
    assert body["error"] == "PreconditionError"
    assert "email_verified" in body["missing"]
    assert "document:tax_document" in body["missing"]


def test_full_review_flow(client, api_notifier):
    entity = create(client)
    entity_id = entity["id"]

    assert verify(client, api_notifier, entity_id)["status"] == "email_verified"
    for document_type in INSTITUTION_DOCUMENTS:
        assert upload(client, entity_id, document_type).status_code == 201

    readiness = client.get(f"/api/entities/{entity_id}/readiness").json()
    assert readiness["can_submit"] is True
    assert readiness["missing_documents"] == []

    response = client.post(f"/api/entities/{entity_id}/submit", json={"actor_id": "owner_1"})
    assert response.status_code == 200
    assert response.json()["status"] == "submitted"

    queue = client.get("/api/review-queue", params={"kind": "institution"}).json()
    assert [e["id"] for e in queue] == [entity_id]
    assert client.get("/api/review-queue", params={"kind": "organization"}).json() == []

    response = client.post(f"/api/entities/{entity_id}/decision", json={
        "admin_id": "admin_1", "outcome": "reject", "notes": ""
    })
    assert response.status_code == 422

    response = client.post(f"/api/entities/{entity_id}/decision", json={
        "admin_id": "admin_1", "outcome": "approve", "notes": "ok"
    })
    assert response.status_code == 200
    assert response.json()["status"] == "verified"
    assert response.json()["documents_verified"] is True

    response = client.post(f"/api/entities/{entity_id}/decision", json={
        "admin_id": "admin_2", "outcome": "approve"
    })
    assert response.status_code == 403

    logs = client.get(f"/api/entities/{entity_id}/verification-logs").json()
    assert logs[0]["action"] == "created"
    assert logs[-1]["action"] == "approved"
    assert len(client.get(f"/api/entities/{entity_id}/documents").json()) == len(INSTITUTION_DOCUMENTS)


def test_profile_edit_and_freeze(client, api_notifier):
    entity = create(client)
    entity_id = entity["id"]

    response = client.patch(f"/api/entities/{entity_id}", json={"website": "https://x.example"})
    assert response.status_code == 200
    assert response.json()["website"] == "https://x.example"

    verify(client, api_notifier, entity_id)
    for document_type in INSTITUTION_DOCUMENTS:
        upload(client, entity_id, document_type)
    client.post(f"/api/entities/{entity_id}/submit", json={"actor_id": "owner_1"})

    response = client.patch(f"/api/entities/{entity_id}", json={"website": "https://y.example"})
    assert response.status_code == 409
    assert upload(client, entity_id, "tax_document").status_code == 422


def test_bad_token_is_400(client):
    entity = create(client)
    client.post(f"/api/entities/{entity['id']}/email-verification")

    response = client.post(f"/api/entities/{entity['id']}/email-verification/confirm", json={"token": "nope"})

    assert response.status_code == 400
    assert response.json()["error"] == "InvalidTokenError"


def test_duplicate_email_request_after_verification_is_409(client, api_notifier):
    entity = create(client)
    verify(client, api_notifier, entity["id"])

    response = client.post(f"/api/entities/{entity['id']}/email-verification")
    assert response.status_code == 409


def test_website_verification_flow(client, api_website_checker):
    entity = create(client)
    entity_id = entity["id"]
    client.patch(f"/api/entities/{entity_id}", json={"website": "uni.example"})

    response = client.post(f"/api/entities/{entity_id}/website-verification", json={"method": "dns"})
    assert response.status_code == 201
    challenge = response.json()
    assert challenge["website"] == "https://uni.example"
    assert challenge["dns_record_name"] == "_entity-verification.uni.example"

    response = client.post(f"/api/entities/{entity_id}/website-verification/confirm")
    assert response.status_code == 403
    assert response.json()["missing"] == ["website:dns"]

    token = challenge["dns_record_value"].split("=", 1)[1]
    api_website_checker.publish(build_instructions("https://uni.example", "dns", token))
    response = client.post(f"/api/entities/{entity_id}/website-verification/confirm")
    assert response.status_code == 200
    assert response.json()["website_verified"] is True
    assert client.get(f"/api/entities/{entity_id}/readiness").json()["website_verified"] is True


def test_contact_email_change_sends_entity_back_to_pending(client, api_notifier):
    entity = create(client)
    verify(client, api_notifier, entity["id"])

    response = client.patch(f"/api/entities/{entity['id']}", json={"contact_email": "dean@x.example"})

    assert response.status_code == 200
    assert response.json()["status"] == "pending"
    assert response.json()["email_verified"] is False
    assert verify(client, api_notifier, entity["id"])["status"] == "email_verified"
    assert api_notifier.outbox[-1][0] == "dean@x.example"
