import logging
import uuid
from typing import Any, Optional, Sequence

from src.core.quotes.clock import Clock, SystemClock
from src.core.quotes.errors import (
    ConcurrentModificationError,
    InvalidStateError,
    InvalidTransitionError,
    QuoteNotFoundError,
)
from src.core.quotes.ledger import AuditLedger
from src.core.quotes.models import (
    AuditChainVerification,
    AuditEventRecord,
    QuoteCreateRequest,
    QuoteLineItem,
    QuoteListResponse,
    QuoteRecord,
    QuoteStatus,
    SignatureReplacementPolicy,
    TransitionContext,
    WorkflowStatus,
)
from src.core.quotes.repository import QuoteRepository
from src.core.quotes.signatures import SignatureVault
from src.core.quotes.state_machine import (
    EDITABLE_STATUSES,
    RESUMABLE_STATUSES,
    validate_transition,
    valid_signature_types,
)
from src.core.quotes.workflow_status import project_workflow_status

logger = logging.getLogger(__name__)

_STATUS_TIMESTAMP_FIELDS: dict[str, str] = {
    "PRESENTED": "presented_at",
    "SIGNED": "signed_at",
    "COMPLETED": "completed_at",
    "CANCELLED": "cancelled_at",
    "EXPIRED": "expired_at",
}


class QuoteLifecycleService:
    def __init__(
        self,
        *,
        repository: QuoteRepository,
        clock: Optional[Clock] = None,
        duplicate_capture_window_seconds: int = 10,
        replacement_policy: SignatureReplacementPolicy = "SUPERSEDE",
    ) -> None:
        self._repository = repository
        self._clock = clock or SystemClock()
        self._ledger = AuditLedger(repository=repository)
        self._signatures = SignatureVault(
            repository=repository,
            ledger=self._ledger,
            clock=self._clock,
            duplicate_capture_window_seconds=duplicate_capture_window_seconds,
            replacement_policy=replacement_policy,
        )

    @property
    def signatures(self) -> SignatureVault:
        return self._signatures

    @property
    def ledger(self) -> AuditLedger:
        return self._ledger

    def create_quote(self, *, request: QuoteCreateRequest) -> QuoteRecord:
        now = self._clock.now()
        quote = QuoteRecord(
            quote_id=f"qt_{uuid.uuid4().hex[:12]}",
            status="BUILDING",
            customer_name=request.customer_name,
            location_id=request.location_id,
            line_items=list(request.line_items),
            created_by=request.created_by,
            created_at=now,
            last_activity_at=now,
            status_changed_by=request.created_by,
        )
        batch = self._ledger.begin(quote_id=quote.quote_id, new_quote=True)
        batch.append(
            subject_type="QUOTE",
            subject_id=quote.quote_id,
            event_kind="QUOTE_CREATED",
            actor_id=request.created_by,
            occurred_at=now,
            detail={
                "status": quote.status,
                "location_id": quote.location_id,
                "line_item_count": len(quote.line_items),
            },
        )
        self._repository.create_quote(quote=quote, events=batch.events)
        logger.info("Quote %s created by %s", quote.quote_id, request.created_by)
        return quote

    def update_line_items(
        self, *, quote_id: str, line_items: Sequence[QuoteLineItem], actor_id: str
    ) -> QuoteRecord:
        quote = self._require_quote(quote_id)
        if quote.status not in EDITABLE_STATUSES:
            raise InvalidStateError(
                "QUOTE_NOT_EDITABLE",
                current_status=quote.status,
                expected=sorted(EDITABLE_STATUSES),
            )
        now = self._clock.now()
        updated = quote.model_copy(
            update={
                "line_items": list(line_items),
                "version": quote.version + 1,
                "last_activity_at": max(now, quote.last_activity_at),
            }
        )
        batch = self._ledger.begin(quote_id=quote_id)
        batch.append(
            subject_type="QUOTE",
            subject_id=quote_id,
            event_kind="LINE_ITEMS_UPDATED",
            actor_id=actor_id,
            occurred_at=now,
            detail={
                "previous_line_item_count": len(quote.line_items),
                "line_item_count": len(updated.line_items),
                "priced_line_item_count": sum(1 for item in updated.line_items if item.is_priced),
            },
        )
        return self._commit(quote=quote, updated=updated, events=batch.events)

    def transition_quote(
        self, *, quote_id: str, target_status: QuoteStatus, context: TransitionContext
    ) -> QuoteRecord:
        quote = self._require_quote(quote_id)
        _check_expectations(quote, context)
        if target_status == "BUILDING":
            return self._resume(quote, actor_id=context.actor_id, comment=context.comment)

        signatures = (
            self._repository.list_signatures(quote_id=quote_id)
            if target_status == "SIGNED"
            else None
        )
        validate_transition(
            quote=quote, target_status=target_status, context=context, signatures=signatures
        )

        now = self._clock.now()
        updates: dict[str, Any] = {
            "status": target_status,
            "previous_status": quote.status,
            "status_changed_by": context.actor_id,
            "version": quote.version + 1,
            "last_activity_at": max(now, quote.last_activity_at),
            _STATUS_TIMESTAMP_FIELDS[target_status]: now,
        }
        if target_status == "COMPLETED" and quote.signed_at is not None:
            updates["completed_at"] = max(now, quote.signed_at)
        if target_status == "CANCELLED":
            updates["cancel_reason"] = context.cancel_reason
        updated = QuoteRecord.model_validate({**quote.model_dump(), **updates})

        detail: dict[str, Any] = {
            "from_status": quote.status,
            "to_status": target_status,
            "actor_role": context.actor_role,
        }
        if context.cancel_reason is not None and target_status == "CANCELLED":
            detail["cancel_reason"] = context.cancel_reason
        if context.comment:
            detail["comment"] = context.comment
        if signatures is not None:
            detail["signature_ids"] = sorted(
                signature.signature_id for signature in signatures if signature.is_valid
            )
            detail["signature_types"] = sorted(valid_signature_types(signatures))

        batch = self._ledger.begin(quote_id=quote_id)
        batch.append(
            subject_type="QUOTE",
            subject_id=quote_id,
            event_kind="STATUS_CHANGED",
            actor_id=context.actor_id,
            occurred_at=now,
            detail=detail,
        )
        committed = self._commit(quote=quote, updated=updated, events=batch.events)
        logger.info(
            "quote.transitioned",
            extra={
                "extra_fields": {
                    "quote_id": quote_id,
                    "from_status": quote.status,
                    "to_status": target_status,
                    "actor_id": context.actor_id,
                    "version": committed.version,
                }
            },
        )
        return committed

    def resume_quote(self, *, quote_id: str, actor_id: str) -> QuoteRecord:
        quote = self._require_quote(quote_id)
        return self._resume(quote, actor_id=actor_id)

    def get_quote(self, *, quote_id: str) -> QuoteRecord:
        return self._require_quote(quote_id)

    def list_quotes(
        self,
        *,
        status: Optional[str] = None,
        created_by: Optional[str] = None,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> QuoteListResponse:
        items, next_cursor = self._repository.list_quotes(
            status=status, created_by=created_by, limit=limit, cursor=cursor
        )
        return QuoteListResponse(items=items, next_cursor=next_cursor)

    def get_workflow_status(self, *, quote_id: str) -> WorkflowStatus:
        quote = self._require_quote(quote_id)
        return project_workflow_status(
            quote,
            self._signatures.list_signatures_unchecked(quote_id=quote_id),
            allow_recapture=self._signatures.replacement_policy == "SUPERSEDE",
        )

    def get_quote_history(self, *, quote_id: str) -> list[AuditEventRecord]:
        self._require_quote(quote_id)
        return self._ledger.history(quote_id=quote_id)

    def verify_audit_chain(self, *, quote_id: str) -> AuditChainVerification:
        self._require_quote(quote_id)
        return self._ledger.verify_chain(quote_id=quote_id)

    def _resume(
        self, quote: QuoteRecord, *, actor_id: str, comment: Optional[str] = None
    ) -> QuoteRecord:
        if quote.status not in RESUMABLE_STATUSES:
            raise InvalidTransitionError(from_status=quote.status, to_status="BUILDING")
        now = self._clock.now()
        updates: dict[str, Any] = {
            "version": quote.version + 1,
            "last_activity_at": max(now, quote.last_activity_at),
        }
        batch = self._ledger.begin(quote_id=quote.quote_id)
        if quote.status == "DRAFT":
            updates.update(
                {
                    "status": "BUILDING",
                    "previous_status": quote.status,
                    "status_changed_by": actor_id,
                }
            )
            event_kind = "STATUS_CHANGED"
            detail: dict[str, Any] = {"from_status": "DRAFT", "to_status": "BUILDING"}
        else:
            event_kind = "QUOTE_RESUMED"
            detail = {"status": quote.status}
        if comment:
            detail["comment"] = comment
        batch.append(
            subject_type="QUOTE",
            subject_id=quote.quote_id,
            event_kind=event_kind,
            actor_id=actor_id,
            occurred_at=now,
            detail=detail,
        )
        updated = quote.model_copy(update=updates)
        committed = self._commit(quote=quote, updated=updated, events=batch.events)
        logger.info("Quote %s resumed by %s", quote.quote_id, actor_id)
        return committed

    def _commit(
        self,
        *,
        quote: QuoteRecord,
        updated: QuoteRecord,
        events: Sequence[AuditEventRecord],
    ) -> QuoteRecord:
        return self._repository.commit_quote_mutation(
            quote=updated, expected_version=quote.version, events=events, signatures=[]
        )

    def _require_quote(self, quote_id: str) -> QuoteRecord:
        quote = self._repository.get_quote(quote_id=quote_id)
        if quote is None:
            raise QuoteNotFoundError("QUOTE_NOT_FOUND")
        return quote


def _check_expectations(quote: QuoteRecord, context: TransitionContext) -> None:
    if context.expected_version is not None and context.expected_version != quote.version:
        raise ConcurrentModificationError(
            "QUOTE_VERSION_CONFLICT: "
            f"expected version {context.expected_version}, found {quote.version}"
        )
    if context.expected_status is not None and context.expected_status != quote.status:
        raise ConcurrentModificationError(
            "QUOTE_STATE_CONFLICT: "
            f"expected status {context.expected_status}, found {quote.status}"
        )
