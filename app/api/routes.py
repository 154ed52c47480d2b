"""API routes for the entity verification workflow."""
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile, status

from app.api.schemas import (
    ActorRef,
    DecisionRequest,
    DocumentResponse,
    EmailVerificationConfirm,
    EmailVerificationIssued,
    EntityCreate,
    EntityResponse,
    EntityUpdate,
    ErrorResponse,
    ReadinessResponse,
    SubmitRequest,
    VerificationLogResponse,
    WebsiteChallengeResponse,
    WebsiteVerificationRequest,
)
from app.dependencies import get_engine, get_review_queue
from app.models.enums import EntityKind
from app.services.review_queue import ReviewQueue
from app.services.verification_engine import VerificationEngine

router = APIRouter()

REFUSALS = {
    403: {"model": ErrorResponse, "description": "Refusal - prerequisites not met"},
    404: {"model": ErrorResponse, "description": "Entity not found"},
    409: {"model": ErrorResponse, "description": "Not valid in the entity's current state"},
}


# Owner endpoints
@router.post("/entities", response_model=EntityResponse, status_code=status.HTTP_201_CREATED)
def create_entity(data: EntityCreate, engine: VerificationEngine = Depends(get_engine)):
    """Create a new institution or organization in pending state."""
    profile = data.model_dump(exclude={"kind", "owner_id"}, exclude_none=True)
    return engine.create_entity(data.kind, profile, owner_id=data.owner_id)


@router.get("/entities/{entity_id}", response_model=EntityResponse, responses=REFUSALS)
def get_entity(entity_id: str, engine: VerificationEngine = Depends(get_engine)):
    return engine.get_entity(entity_id)


@router.patch("/entities/{entity_id}", response_model=EntityResponse, responses=REFUSALS)
def update_entity(entity_id: str, data: EntityUpdate, engine: VerificationEngine = Depends(get_engine)):
    """Edit profile fields. Refused once the entity has been submitted."""
    changes = data.model_dump(exclude={"actor_id"}, exclude_unset=True)
    return engine.update_profile(entity_id, data.actor_id, changes)


@router.post(
    "/entities/{entity_id}/email-verification",
    response_model=EmailVerificationIssued,
    status_code=status.HTTP_201_CREATED,
    responses=REFUSALS
)
def request_email_verification(
    entity_id: str,
    data: Optional[ActorRef] = None,
    engine: VerificationEngine = Depends(get_engine)
):
    """
    Send a verification token to the entity's contact email.
    A failed delivery is reported in the response; the caller may request a resend.
    """
    issued = engine.request_email_verification(entity_id, actor_id=data.actor_id if data else None)
    return EmailVerificationIssued(
        entity_id=issued.entity_id,
        expires_at=issued.expires_at,
        delivered=issued.delivered,
        delivery_error=issued.delivery_error
    )


@router.post("/entities/{entity_id}/email-verification/confirm", response_model=EntityResponse, responses=REFUSALS)
def confirm_email_verification(
    entity_id: str,
    data: EmailVerificationConfirm,
    engine: VerificationEngine = Depends(get_engine)
):
    return engine.confirm_email_verification(entity_id, data.token, actor_id=data.actor_id)


@router.post(
    "/entities/{entity_id}/website-verification",
    response_model=WebsiteChallengeResponse,
    status_code=status.HTTP_201_CREATED,
    responses=REFUSALS
)
def request_website_verification(
    entity_id: str,
    data: WebsiteVerificationRequest,
    engine: VerificationEngine = Depends(get_engine)
):
    """Issue a DNS, file or meta-tag challenge for the entity's website."""
    return engine.request_website_verification(entity_id, data.method, actor_id=data.actor_id)


@router.post("/entities/{entity_id}/website-verification/confirm", response_model=EntityResponse, responses=REFUSALS)
def confirm_website_verification(
    entity_id: str,
    data: Optional[ActorRef] = None,
    engine: VerificationEngine = Depends(get_engine)
):
    """
    Check the website for the outstanding challenge.

    WILL REFUSE if no challenge was issued or it is not published yet.
    """
    return engine.confirm_website_verification(entity_id, actor_id=data.actor_id if data else None)


@router.post(
    "/entities/{entity_id}/documents",
    response_model=DocumentResponse,
    status_code=status.HTTP_201_CREATED,
    responses=REFUSALS
)
def upload_document(
    entity_id: str,
    document_type: str = Form(...),
    actor_id: Optional[str] = Form(None),
    file: UploadFile = File(...),
    engine: VerificationEngine = Depends(get_engine)
):
    """
    Upload one document of a required (or optional) type.
    Side effect: may flip documents_submitted to true.
    """
    content = file.file.read()
    return engine.upload_document(
        entity_id, document_type, content, actor_id=actor_id, filename=file.filename
    )


@router.get("/entities/{entity_id}/documents", response_model=List[DocumentResponse], responses=REFUSALS)
def list_documents(entity_id: str, engine: VerificationEngine = Depends(get_engine)):
    return engine.list_documents(entity_id)


@router.get("/entities/{entity_id}/readiness", response_model=ReadinessResponse, responses=REFUSALS)
def get_readiness(entity_id: str, engine: VerificationEngine = Depends(get_engine)):
    """What is still missing before the entity can be submitted."""
    report = engine.readiness(entity_id)
    return ReadinessResponse(
        entity_id=report.entity_id,
        status=report.status,
        email_verified=report.email_verified,
        documents_submitted=report.documents_submitted,
        documents_verified=report.documents_verified,
        website_verified=report.website_verified,
        required_documents=report.required_documents,
        missing_documents=report.missing_documents,
        can_submit=report.can_submit
    )


@router.post("/entities/{entity_id}/submit", response_model=EntityResponse, responses=REFUSALS)
def submit_for_review(entity_id: str, data: SubmitRequest, engine: VerificationEngine = Depends(get_engine)):
    """
    Submit for administrator review.

    WILL REFUSE if:
    - Email is not verified
    - Any required document is missing
    - The entity is already submitted or verified
    """
    return engine.submit_for_review(entity_id, data.actor_id)


@router.get("/entities/{entity_id}/verification-logs", response_model=List[VerificationLogResponse], responses=REFUSALS)
def list_verification_logs(entity_id: str, engine: VerificationEngine = Depends(get_engine)):
    """Full audit history, oldest first."""
    return engine.audit_history(entity_id)


# Administrator endpoints
@router.get("/review-queue", response_model=List[EntityResponse])
def list_review_queue(kind: Optional[EntityKind] = None, queue: ReviewQueue = Depends(get_review_queue)):
    """Submitted entities, oldest submission first."""
    return queue.list_pending(kind)


@router.post("/entities/{entity_id}/decision", response_model=EntityResponse, responses=REFUSALS)
def decide(entity_id: str, data: DecisionRequest, engine: VerificationEngine = Depends(get_engine)):
    """
    Approve or reject a submitted entity.
    Rejection requires notes. A second decision on the same cycle is refused.
    """
    return engine.decide(entity_id, data.admin_id, data.outcome, notes=data.notes, reason=data.reason)
