"""
State machine for entity verification.

This is the single source of truth for legal transitions: the engine guards every
operation with it and the audit replay checks recorded history against it.
"""
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from app.config import KindConfig
from app.models.enums import EntityStatus, VerificationAction, EDITABLE_STATES, UPLOADABLE_STATES


@dataclass(frozen=True)
class Transition:
    """Statuses an action may start from, and the status it leads to (None = unchanged)."""
    sources: FrozenSet[Optional[EntityStatus]]
    target: Optional[EntityStatus] = None


TRANSITIONS: Dict[VerificationAction, Transition] = {
    VerificationAction.CREATED: Transition(frozenset({None}), EntityStatus.PENDING),
    VerificationAction.PROFILE_UPDATED: Transition(frozenset(EDITABLE_STATES)),
    # A new contact email has to be verified again
    VerificationAction.CONTACT_EMAIL_CHANGED: Transition(frozenset(EDITABLE_STATES), EntityStatus.PENDING),
    VerificationAction.EMAIL_VERIFICATION_SENT: Transition(frozenset({EntityStatus.PENDING})),
    VerificationAction.EMAIL_VERIFIED: Transition(
        frozenset({EntityStatus.PENDING}), EntityStatus.EMAIL_VERIFIED
    ),
    VerificationAction.DOCUMENT_UPLOADED: Transition(frozenset(UPLOADABLE_STATES)),
    VerificationAction.WEBSITE_VERIFICATION_ISSUED: Transition(frozenset(UPLOADABLE_STATES)),
    VerificationAction.WEBSITE_VERIFIED: Transition(frozenset(UPLOADABLE_STATES)),
    VerificationAction.SUBMITTED_FOR_REVIEW: Transition(
        frozenset({EntityStatus.PENDING, EntityStatus.EMAIL_VERIFIED, EntityStatus.REJECTED}),
        EntityStatus.SUBMITTED,
    ),
    VerificationAction.APPROVED: Transition(frozenset({EntityStatus.SUBMITTED}), EntityStatus.VERIFIED),
    VerificationAction.REJECTED: Transition(frozenset({EntityStatus.SUBMITTED}), EntityStatus.REJECTED),
}


class IllegalTransitionError(ValueError):
    """Raised when a recorded history does not follow the state diagram."""


def is_allowed(action: VerificationAction, status: Optional[EntityStatus]) -> bool:
    return status in TRANSITIONS[action].sources


def next_status(action: VerificationAction, status: Optional[EntityStatus]) -> EntityStatus:
    """Status after applying `action` in `status`. Caller must have checked is_allowed."""
    target = TRANSITIONS[action].target
    return target if target is not None else status


def missing_documents(kind_config: KindConfig, uploaded_types: Iterable[str]) -> List[str]:
    """Required document types with no stored record yet, in configured order."""
    present = set(uploaded_types)
    return [doc for doc in kind_config.required_documents if doc not in present]


def calculate_documents_submitted(kind_config: KindConfig, uploaded_types: Iterable[str]) -> bool:
    """
    True iff every required document type has at least one record.

    An empty required set counts as satisfied.
    """
    return not missing_documents(kind_config, uploaded_types)


def readiness_gaps(email_verified: bool, missing: List[str]) -> List[str]:
    """Unmet submission prerequisites, phrased for display."""
    gaps = []
    if not email_verified:
        gaps.append("email_verified")
    gaps.extend(f"document:{doc}" for doc in missing)
    return gaps


@dataclass
class ReplayResult:
    status: EntityStatus
    email_verified: bool
    cycles: int = 0
    decisions: List[Tuple[int, VerificationAction]] = field(default_factory=list)


def replay(actions: Iterable[VerificationAction]) -> ReplayResult:
    """
    Re-run a recorded sequence of actions through the state diagram.

    Raises IllegalTransitionError on the first action that the diagram does not
    allow from the reconstructed status (e.g. an approval with no open submission).
    """
    status: Optional[EntityStatus] = None
    email_verified = False
    cycles = 0
    decisions: List[Tuple[int, VerificationAction]] = []

    for position, action in enumerate(actions):
        if not is_allowed(action, status):
            raise IllegalTransitionError(
                f"Illegal transition at position {position}: {action.value} from "
                f"{status.value if status else 'nothing'}"
            )
        if action == VerificationAction.EMAIL_VERIFIED:
            email_verified = True
        if action == VerificationAction.CONTACT_EMAIL_CHANGED:
            email_verified = False
        if action == VerificationAction.SUBMITTED_FOR_REVIEW:
            if not email_verified:
                raise IllegalTransitionError(
                    f"Illegal transition at position {position}: submitted before email verification"
                )
            cycles += 1
        if action in (VerificationAction.APPROVED, VerificationAction.REJECTED):
            decisions.append((cycles, action))
        status = next_status(action, status)

    if status is None:
        raise IllegalTransitionError("Empty history: an entity always starts with a created entry")
    return ReplayResult(status=status, email_verified=email_verified, cycles=cycles, decisions=decisions)
