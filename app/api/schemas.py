"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field

from app.models.enums import (
    DecisionOutcome,
    EntityKind,
    EntityStatus,
    VerificationAction,
    WebsiteVerificationMethod,
)


# Entity schemas
class EntityCreate(BaseModel):
    kind: EntityKind
    name: str = Field(..., min_length=1, max_length=200)
    contact_email: Optional[str] = Field(None, max_length=320)
    phone: Optional[str] = Field(None, max_length=50)
    website: Optional[str] = Field(None, max_length=500)
    address: Optional[str] = Field(None, max_length=500)
    description: Optional[str] = None
    category: Optional[str] = None
    owner_id: Optional[str] = None


class EntityUpdate(BaseModel):
    """Only the fields present in the request are changed."""
    actor_id: Optional[str] = None
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    contact_email: Optional[str] = Field(None, max_length=320)
    phone: Optional[str] = Field(None, max_length=50)
    website: Optional[str] = Field(None, max_length=500)
    address: Optional[str] = Field(None, max_length=500)
    description: Optional[str] = None
    category: Optional[str] = None


class EntityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: EntityKind
    name: str
    contact_email: Optional[str]
    phone: Optional[str]
    website: Optional[str]
    address: Optional[str]
    description: Optional[str]
    category: Optional[str]
    owner_id: Optional[str]
    status: EntityStatus
    email_verified: bool
    documents_submitted: bool
    documents_verified: bool
    website_verified: bool
    submitted_at: Optional[datetime]
    review_notes: Optional[str]
    rejection_reason: Optional[str]
    reviewed_by: Optional[str]
    reviewed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


# Email verification schemas
class ActorRef(BaseModel):
    actor_id: Optional[str] = None


class EmailVerificationIssued(BaseModel):
    """The token itself is only ever delivered through the notification channel."""
    entity_id: str
    expires_at: datetime
    delivered: bool
    delivery_error: Optional[str] = None


class EmailVerificationConfirm(BaseModel):
    token: str = Field(..., min_length=1)
    actor_id: Optional[str] = None


# Website verification schemas
class WebsiteVerificationRequest(BaseModel):
    method: WebsiteVerificationMethod
    actor_id: Optional[str] = None


class WebsiteChallengeResponse(BaseModel):
    """What to publish, for every method; only the requested one is checked."""
    model_config = ConfigDict(from_attributes=True)

    method: WebsiteVerificationMethod
    website: str
    dns_record_name: str
    dns_record_value: str
    verification_file_name: str
    verification_file_url: str
    verification_file_content: str
    meta_tag_content: str


# Document schemas
class DocumentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_id: str
    document_type: str
    stored_ref: str
    filename: Optional[str]
    size_bytes: Optional[int]
    uploaded_by: Optional[str]
    uploaded_at: datetime


class ReadinessResponse(BaseModel):
    entity_id: str
    status: EntityStatus
    email_verified: bool
    documents_submitted: bool
    documents_verified: bool
    website_verified: bool
    required_documents: List[str]
    missing_documents: List[str]
    can_submit: bool


# Review schemas
class SubmitRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)


class DecisionRequest(BaseModel):
    admin_id: str = Field(..., min_length=1)
    outcome: DecisionOutcome
    notes: Optional[str] = Field(None, max_length=2000)
    reason: Optional[str] = Field(None, max_length=100)


class VerificationLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_id: str
    action: VerificationAction
    actor_id: Optional[str]
    notes: Optional[str]
    created_at: datetime


# Error response
class ErrorResponse(BaseModel):
    """Response when an action is refused or fails."""
    error: str
    message: str
    missing: List[str] = []
