"""Enums for the verification workflow - these define the valid values for kinds, states and actions."""
from enum import Enum


class EntityKind(str, Enum):
    """The two kinds of entity that go through verification. Structurally identical."""
    INSTITUTION = "institution"
    ORGANIZATION = "organization"


class EntityStatus(str, Enum):
    """The five lifecycle states an Entity can be in. No other states are allowed."""
    PENDING = "pending"
    EMAIL_VERIFIED = "email_verified"
    SUBMITTED = "submitted"
    VERIFIED = "verified"
    REJECTED = "rejected"


class VerificationAction(str, Enum):
    """Actions recorded in the verification log."""
    CREATED = "created"
    PROFILE_UPDATED = "profile_updated"
    CONTACT_EMAIL_CHANGED = "contact_email_changed"
    EMAIL_VERIFICATION_SENT = "email_verification_sent"
    EMAIL_VERIFIED = "email_verified"
    DOCUMENT_UPLOADED = "document_uploaded"
    WEBSITE_VERIFICATION_ISSUED = "website_verification_issued"
    WEBSITE_VERIFIED = "website_verified"
    SUBMITTED_FOR_REVIEW = "submitted_for_review"
    APPROVED = "approved"
    REJECTED = "rejected"


class WebsiteVerificationMethod(str, Enum):
    """Ways an owner can prove control of the entity's website."""
    DNS = "dns"
    FILE = "file"
    META_TAG = "meta_tag"


class DecisionOutcome(str, Enum):
    """Administrator decision on a submitted entity."""
    APPROVE = "approve"
    REJECT = "reject"


# Profile fields the owner may edit before submission
PROFILE_FIELDS = ("name", "contact_email", "phone", "website", "address", "description", "category")

# States in which the owner may still upload documents
UPLOADABLE_STATES = (EntityStatus.PENDING, EntityStatus.EMAIL_VERIFIED, EntityStatus.REJECTED)

# States in which the profile is still editable
EDITABLE_STATES = (EntityStatus.PENDING, EntityStatus.EMAIL_VERIFIED)
