from typing import Iterable, Optional

from src.core.quotes.errors import InvalidTransitionError, PreconditionFailedError
from src.core.quotes.models import (
    SIGNATURE_TYPES,
    SYSTEM_EXPIRATION_ACTOR,
    TERMINAL_STATUSES,
    QuoteRecord,
    QuoteStatus,
    SignatureRecord,
    SignatureType,
    TransitionContext,
)

VALID_TRANSITIONS: dict[QuoteStatus, frozenset[QuoteStatus]] = {
    "BUILDING": frozenset({"BUILDING", "DRAFT", "PRESENTED", "CANCELLED", "EXPIRED"}),
    "DRAFT": frozenset({"BUILDING", "PRESENTED", "CANCELLED", "EXPIRED"}),
    "PRESENTED": frozenset({"SIGNED", "CANCELLED", "EXPIRED"}),
    "SIGNED": frozenset({"COMPLETED", "CANCELLED", "EXPIRED"}),
    "COMPLETED": frozenset(),
    "CANCELLED": frozenset(),
    "EXPIRED": frozenset(),
}

EDITABLE_STATUSES: frozenset[str] = frozenset({"BUILDING", "DRAFT"})
RESUMABLE_STATUSES: frozenset[str] = frozenset({"BUILDING", "DRAFT"})
SIGNATURE_CAPTURE_STATUSES: frozenset[str] = frozenset({"PRESENTED"})
CANCEL_SIGNED_ROLES: frozenset[str] = frozenset({"MANAGER", "ADMIN"})


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current_status: QuoteStatus, target_status: QuoteStatus) -> bool:
    return target_status in VALID_TRANSITIONS[current_status]


def valid_signature_types(signatures: Iterable[SignatureRecord]) -> set[SignatureType]:
    return {signature.signature_type for signature in signatures if signature.is_valid}


def missing_signature_types(signatures: Iterable[SignatureRecord]) -> list[SignatureType]:
    present = valid_signature_types(signatures)
    return [signature_type for signature_type in SIGNATURE_TYPES if signature_type not in present]


def validate_transition(
    *,
    quote: QuoteRecord,
    target_status: QuoteStatus,
    context: TransitionContext,
    signatures: Optional[Iterable[SignatureRecord]] = None,
) -> None:
    """Raise unless ``quote`` may move to ``target_status`` under ``context``.

    Table membership is checked first (``InvalidTransitionError``), then the guards of the
    target state (``PreconditionFailedError``). ``signatures`` is only consulted for SIGNED.
    """
    if not can_transition(quote.status, target_status):
        raise InvalidTransitionError(from_status=quote.status, to_status=target_status)

    if target_status == "PRESENTED" and not quote.has_priced_line_item:
        raise PreconditionFailedError(
            "NO_PRICED_LINE_ITEMS", "quote needs at least one priced line item"
        )

    if target_status == "SIGNED":
        missing = missing_signature_types(signatures or [])
        if missing:
            raise PreconditionFailedError(
                "MISSING_SIGNATURES",
                ",".join(missing),
                missing_signature_types=missing,
            )

    if target_status == "CANCELLED":
        if context.cancel_reason is None:
            raise PreconditionFailedError("CANCEL_REASON_REQUIRED")
        if quote.status == "SIGNED" and context.actor_role not in CANCEL_SIGNED_ROLES:
            raise PreconditionFailedError(
                "MANAGER_APPROVAL_REQUIRED", "cancelling a signed quote requires a manager"
            )

    if target_status == "EXPIRED" and context.actor_id != SYSTEM_EXPIRATION_ACTOR:
        raise PreconditionFailedError(
            "EXPIRATION_SYSTEM_ONLY", "quotes are expired by the expiration sweeper"
        )
