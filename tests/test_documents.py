"""Tests for document uploads and readiness tracking."""
import pytest
from sqlalchemy.exc import OperationalError

from app.models.domain import DocumentRecord
from app.models.enums import EntityStatus, VerificationAction
from app.services.collaborators import InMemoryDocumentStore, LocalDocumentStore
from app.services.errors import NotFoundError, PersistenceError, StorageError, ValidationError

from conftest import INSTITUTION_DOCUMENTS, upload_all


class FlakyDocumentStore(InMemoryDocumentStore):
    """Fails the first `failures` stores."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.calls = 0

    def store(self, entity_id, document_type, content):
        self.calls += 1
        if self.calls <= self.failures:
            raise StorageError("bucket unavailable")
        return super().store(entity_id, document_type, content)


class TestUpload:

    def test_upload_records_document(self, engine, institution, document_store):
        record = engine.upload_document(
            institution.id, "tax_document", b"%PDF", actor_id="owner_1", filename="tax.pdf"
        )

        assert record.entity_id == institution.id
        assert record.document_type == "tax_document"
        assert record.filename == "tax.pdf"
        assert record.size_bytes == 4
        assert document_store.contents[record.stored_ref] == b"%PDF"

    def test_documents_submitted_tracks_required_set(self, engine, institution):
        for doc_type in INSTITUTION_DOCUMENTS[:-1]:
            engine.upload_document(institution.id, doc_type, b"x")
            assert engine.get_entity(institution.id).documents_submitted is False

        engine.upload_document(institution.id, INSTITUTION_DOCUMENTS[-1], b"x")
        assert engine.get_entity(institution.id).documents_submitted is True

    def test_documents_submitted_matches_records(self, db_session, engine, institution):
        """The flag always equals the derivation from the stored records."""
        upload_all(engine, institution.id, INSTITUTION_DOCUMENTS[:2])
        upload_all(engine, institution.id, INSTITUTION_DOCUMENTS)

        types = {r.document_type for r in db_session.query(DocumentRecord).all()}
        entity = engine.get_entity(institution.id)
        assert entity.documents_submitted == set(INSTITUTION_DOCUMENTS).issubset(types)

    def test_unknown_document_type(self, engine, institution):
        with pytest.raises(ValidationError) as exc_info:
            engine.upload_document(institution.id, "birth_certificate", b"x")

        assert "registration_certificate" in exc_info.value.message

    def test_empty_document(self, engine, institution):
        with pytest.raises(ValidationError):
            engine.upload_document(institution.id, "tax_document", b"")

    def test_oversized_document(self, make_engine, db_session, institution, settings):
        small = settings.model_copy(update={"max_document_bytes": 8})
        engine = make_engine(db_session, settings=small)

        with pytest.raises(ValidationError):
            engine.upload_document(institution.id, "tax_document", b"123456789")

    def test_unknown_entity(self, engine):
        with pytest.raises(NotFoundError):
            engine.upload_document("missing", "tax_document", b"x")

    def test_upload_allowed_after_rejection(self, engine, submitted_institution):
        engine.decide(submitted_institution.id, "admin_1", "reject", notes="expired certificate")

        record = engine.upload_document(submitted_institution.id, "registration_certificate", b"renewed")
        assert record.id is not None
        assert engine.get_entity(submitted_institution.id).status == EntityStatus.REJECTED


class TestStorageFailures:

    def test_transient_failure_retried(self, make_engine, db_session, institution):
        store = FlakyDocumentStore(failures=2)
        engine = make_engine(db_session, document_store=store)

        record = engine.upload_document(institution.id, "tax_document", b"x")

        assert store.calls == 3
        assert record.stored_ref in store.contents

    def test_persistent_failure_leaves_entity_untouched(self, make_engine, db_session, institution):
        store = FlakyDocumentStore(failures=10)
        engine = make_engine(db_session, document_store=store)
        entries_before = len(engine.audit_history(institution.id))

        with pytest.raises(StorageError):
            engine.upload_document(institution.id, "tax_document", b"x")

        assert store.calls == 3
        assert engine.list_documents(institution.id) == []
        actions = [e.action for e in engine.audit_history(institution.id)]
        assert len(actions) == entries_before
        assert VerificationAction.DOCUMENT_UPLOADED not in actions

    def test_failed_commit_removes_stored_file(self, db_session, engine, document_store, institution, monkeypatch):
        def failing_commit():
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

        monkeypatch.setattr(db_session, "commit", failing_commit)
        with pytest.raises(PersistenceError):
            engine.upload_document(institution.id, "tax_document", b"x")
        monkeypatch.undo()

        assert document_store.contents == {}
        assert document_store.list(institution.id) == []
        assert engine.list_documents(institution.id) == []


class TestLocalDocumentStore:

    def test_store_and_list(self, tmp_path):
        store = LocalDocumentStore(str(tmp_path))

        stored = store.store("ent1", "tax_document", b"hello")
        listed = store.list("ent1")

        assert [d.ref for d in listed] == [stored.ref]
        assert listed[0].size_bytes == 5
        assert (tmp_path / stored.ref).read_bytes() == b"hello"
        assert store.list("other") == []

    def test_delete(self, tmp_path):
        store = LocalDocumentStore(str(tmp_path))
        stored = store.store("ent1", "tax_document", b"hello")

        store.delete(stored.ref)
        store.delete(stored.ref)

        assert store.list("ent1") == []

    def test_unwritable_root_raises_storage_error(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = LocalDocumentStore(str(blocker))

        with pytest.raises(StorageError):
            store.store("ent1", "tax_document", b"hello")
