"""Error taxonomy for the verification workflow."""
from typing import List, Optional


class VerificationError(Exception):
    """
    Base error for the workflow.

    Guard failures are refusals: the system working correctly and telling the caller why.
    """
    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ValidationError(VerificationError):
    """Malformed or missing input."""


class NotFoundError(VerificationError):
    """Unknown entity."""


class ConflictError(VerificationError):
    """Operation not valid for the entity's current state."""


class PreconditionError(VerificationError):
    """A readiness guard failed. `missing` lists what still has to happen."""
    def __init__(self, message: str, missing: Optional[List[str]] = None):
        self.missing = missing or []
        super().__init__(message)


class InvalidTokenError(VerificationError):
    """Unknown, expired, superseded or already consumed email token."""


class StorageError(VerificationError):
    """Document store failure."""


class NotificationError(VerificationError):
    """Notification channel failure."""


class WebsiteCheckError(VerificationError):
    """The website or DNS lookup could not be performed."""


class PersistenceError(VerificationError):
    """The transition could not be committed; nothing was changed."""
