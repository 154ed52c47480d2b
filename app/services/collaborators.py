"""
External collaborators of the verification engine: the document store and the
notification channel. The engine only depends on the abstract contracts; the
concrete classes here cover local development and tests.
"""
import logging
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Tuple, Type, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.models.domain import utcnow
from app.services.errors import NotificationError, StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class StoredDocument:
    """What the document store hands back for one stored file."""
    ref: str
    entity_id: str
    document_type: str
    size_bytes: int
    stored_at: datetime


class DocumentStore(ABC):
    """Opaque file store. Failures must surface as StorageError."""

    @abstractmethod
    def store(self, entity_id: str, document_type: str, content: bytes) -> StoredDocument:
        ...

    @abstractmethod
    def list(self, entity_id: str) -> List[StoredDocument]:
        ...

    @abstractmethod
    def delete(self, ref: str) -> None:
        """Remove a stored file. Unknown refs are ignored."""


class NotificationChannel(ABC):
    """Email/SMS delivery. Failures must surface as NotificationError."""

    @abstractmethod
    def send(self, recipient: str, template_id: str, payload: Dict[str, Any]) -> None:
        ...


class LocalDocumentStore(DocumentStore):
    """Stores files under <root>/<entity_id>/<document_type>/<uuid>."""

    def __init__(self, root: str):
        self.root = root

    def store(self, entity_id: str, document_type: str, content: bytes) -> StoredDocument:
        directory = os.path.join(self.root, entity_id, document_type)
        name = uuid.uuid4().hex
        try:
            os.makedirs(directory, exist_ok=True)
            with open(os.path.join(directory, name), "wb") as f:
                f.write(content)
        except OSError as exc:
            raise StorageError(f"Could not store {document_type} for {entity_id}: {exc}") from exc
        return StoredDocument(
            ref=f"{entity_id}/{document_type}/{name}",
            entity_id=entity_id,
            document_type=document_type,
            size_bytes=len(content),
            stored_at=utcnow(),
        )

    def list(self, entity_id: str) -> List[StoredDocument]:
        base = os.path.join(self.root, entity_id)
        if not os.path.isdir(base):
            return []
        documents = []
        try:
            for document_type in sorted(os.listdir(base)):
                for name in sorted(os.listdir(os.path.join(base, document_type))):
                    path = os.path.join(base, document_type, name)
                    documents.append(StoredDocument(
                        ref=f"{entity_id}/{document_type}/{name}",
                        entity_id=entity_id,
                        document_type=document_type,
                        size_bytes=os.path.getsize(path),
                        stored_at=datetime.fromtimestamp(os.path.getmtime(path), timezone.utc).replace(tzinfo=None),
                    ))
        except OSError as exc:
            raise StorageError(f"Could not list documents for {entity_id}: {exc}") from exc
        return documents

    def delete(self, ref: str) -> None:
        path = os.path.join(self.root, *ref.split("/"))
        try:
            os.remove(path)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StorageError(f"Could not delete {ref}: {exc}") from exc


class InMemoryDocumentStore(DocumentStore):
    """Keeps file contents in a dict; used by tests and the in-process demo."""

    def __init__(self):
        self.contents: Dict[str, bytes] = {}
        self._documents: Dict[str, List[StoredDocument]] = {}

    def store(self, entity_id: str, document_type: str, content: bytes) -> StoredDocument:
        document = StoredDocument(
            ref=f"mem://{entity_id}/{document_type}/{uuid.uuid4().hex}",
            entity_id=entity_id,
            document_type=document_type,
            size_bytes=len(content),
            stored_at=utcnow(),
        )
        self.contents[document.ref] = content
        self._documents.setdefault(entity_id, []).append(document)
        return document

    def list(self, entity_id: str) -> List[StoredDocument]:
        return list(self._documents.get(entity_id, []))

    def delete(self, ref: str) -> None:
        self.contents.pop(ref, None)
        for entity_id, documents in self._documents.items():
            self._documents[entity_id] = [d for d in documents if d.ref != ref]


class LoggingNotificationChannel(NotificationChannel):
    """Writes outgoing notifications to the log instead of delivering them."""

    def send(self, recipient: str, template_id: str, payload: Dict[str, Any]) -> None:
        logger.info("notification_sent template=%s recipient=%s", template_id, recipient)


@dataclass
class InMemoryNotificationChannel(NotificationChannel):
    """Records every send in `outbox`."""
    outbox: List[Tuple[str, str, Dict[str, Any]]] = field(default_factory=list)

    def send(self, recipient: str, template_id: str, payload: Dict[str, Any]) -> None:
        self.outbox.append((recipient, template_id, dict(payload)))


def call_with_retries(
    func: Callable[[], T],
    retry_on: Tuple[Type[BaseException], ...] = (StorageError, NotificationError),
    attempts: int = 3,
    wait_seconds: float = 0.2
) -> T:
    """
    Call `func`, retrying transient collaborator failures with exponential backoff.

    The last exception is re-raised once attempts are exhausted.
    """
    retrying = Retrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=wait_seconds, min=0, max=max(wait_seconds * 8, 0)),
        retry=retry_if_exception_type(retry_on),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    return retrying(func)
