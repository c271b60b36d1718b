from typing import Iterable

from src.core.quotes.models import QuoteRecord, SignatureRecord, WorkflowNextStep, WorkflowStatus
from src.core.quotes.state_machine import (
    EDITABLE_STATUSES,
    RESUMABLE_STATUSES,
    SIGNATURE_CAPTURE_STATUSES,
    can_transition,
    is_terminal,
    missing_signature_types,
    valid_signature_types,
)

_SIGNATURES_REQUIRED_STATUSES = frozenset({"PRESENTED", "SIGNED", "COMPLETED"})


def project_workflow_status(
    quote: QuoteRecord,
    signatures: Iterable[SignatureRecord],
    *,
    allow_recapture: bool = True,
) -> WorkflowStatus:
    """Summarize which actions are currently legal for ``quote``.

    Pure: reads only its arguments. ``allow_recapture`` mirrors the signature replacement
    policy, so under a reject policy a type that already holds a valid signature cannot be
    captured again.
    """
    signatures = list(signatures)
    signed_types = valid_signature_types(signatures)
    missing = missing_signature_types(signatures)

    required = quote.presented_at is not None or quote.status in _SIGNATURES_REQUIRED_STATUSES
    exam_completed = "EXAM" in signed_types
    materials_completed = "MATERIALS" in signed_types
    capture_open = quote.status in SIGNATURE_CAPTURE_STATUSES

    return WorkflowStatus(
        quote_id=quote.quote_id,
        status=quote.status,
        is_terminal=is_terminal(quote.status),
        exam_signature_required=required,
        exam_signature_completed=exam_completed,
        materials_signature_required=required,
        materials_signature_completed=materials_completed,
        can_capture_exam_signature=capture_open and (not exam_completed or allow_recapture),
        can_capture_materials_signature=capture_open
        and (not materials_completed or allow_recapture),
        can_transition_to_signed=quote.status == "PRESENTED" and not missing,
        can_edit_quote=quote.status in EDITABLE_STATUSES,
        can_resume_quote=quote.status in RESUMABLE_STATUSES,
        can_present_quote=can_transition(quote.status, "PRESENTED") and quote.has_priced_line_item,
        can_cancel_quote=can_transition(quote.status, "CANCELLED"),
        can_complete_quote=can_transition(quote.status, "COMPLETED"),
        missing_signature_types=missing if quote.status == "PRESENTED" else [],
        next_step=_next_step(quote, missing),
    )


def _next_step(quote: QuoteRecord, missing: list[str]) -> WorkflowNextStep:
    if quote.status in EDITABLE_STATUSES:
        return "PRESENT_QUOTE"
    if quote.status == "PRESENTED":
        if "EXAM" in missing:
            return "EXAM_SIGNATURE"
        if "MATERIALS" in missing:
            return "MATERIALS_SIGNATURE"
        return "MARK_SIGNED"
    if quote.status == "SIGNED":
        return "COMPLETE_QUOTE"
    return "NONE"
