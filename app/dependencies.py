"""Dependency providers for the FastAPI routes."""
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from app.config import get_settings
from app.database import get_db
from app.services.collaborators import (
    DocumentStore,
    LocalDocumentStore,
    LoggingNotificationChannel,
    NotificationChannel,
)
from app.services.review_queue import ReviewQueue
from app.services.verification_engine import VerificationEngine
from app.services.website_verification import HttpWebsiteChecker, WebsiteChecker


@lru_cache
def get_document_store() -> DocumentStore:
    return LocalDocumentStore(get_settings().document_storage_dir)


@lru_cache
def get_notification_channel() -> NotificationChannel:
    return LoggingNotificationChannel()


@lru_cache
def get_website_checker() -> WebsiteChecker:
    settings = get_settings()
    return HttpWebsiteChecker(settings.website_check_timeout_seconds, settings.dns_over_https_url)


def get_engine(
    db: Session = Depends(get_db),
    document_store: DocumentStore = Depends(get_document_store),
    notifier: NotificationChannel = Depends(get_notification_channel),
    website_checker: WebsiteChecker = Depends(get_website_checker)
) -> VerificationEngine:
    """One engine per request, bound to the request's session."""
    return VerificationEngine(db, document_store, notifier, website_checker)


def get_review_queue(db: Session = Depends(get_db)) -> ReviewQueue:
    return ReviewQueue(db)
