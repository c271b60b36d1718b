"""Append-only, hash-chained audit ledger for quote and signature events.

Events are never written on their own: callers stage them in a ``LedgerBatch`` and hand the
batch to the repository together with the state change the events document, so both persist
or neither does. Each event carries the hash of its predecessor within the same quote, which
makes edits or deletions of stored history detectable.
"""

import hashlib
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from src.core.quotes.models import (
    AuditChainVerification,
    AuditEventKind,
    AuditEventRecord,
    AuditSubjectType,
)
from src.core.quotes.repository import QuoteRepository

GENESIS_HASH = "GENESIS"


class LedgerBatch:
    def __init__(self, *, quote_id: str, head: Optional[AuditEventRecord]) -> None:
        self.quote_id = quote_id
        self.events: list[AuditEventRecord] = []
        self._sequence_no = head.sequence_no if head is not None else 0
        self._previous_hash = head.event_hash if head is not None else GENESIS_HASH

    def append(
        self,
        *,
        subject_type: AuditSubjectType,
        subject_id: str,
        event_kind: AuditEventKind,
        actor_id: str,
        occurred_at: datetime,
        detail: Optional[dict[str, Any]] = None,
    ) -> AuditEventRecord:
        self._sequence_no += 1
        content = {
            "event_id": f"qae_{uuid.uuid4().hex[:12]}",
            "quote_id": self.quote_id,
            "subject_type": subject_type,
            "subject_id": subject_id,
            "event_kind": event_kind,
            "actor_id": actor_id,
            "occurred_at": occurred_at,
            "detail": dict(detail or {}),
            "sequence_no": self._sequence_no,
            "previous_hash": self._previous_hash,
        }
        event = AuditEventRecord(**content, event_hash=compute_event_hash(content))
        self._previous_hash = event.event_hash
        self.events.append(event)
        return event


class AuditLedger:
    def __init__(self, *, repository: QuoteRepository) -> None:
        self._repository = repository

    def begin(self, *, quote_id: str, new_quote: bool = False) -> LedgerBatch:
        head = None if new_quote else self._repository.last_event(quote_id=quote_id)
        return LedgerBatch(quote_id=quote_id, head=head)

    def history(self, *, quote_id: str) -> list[AuditEventRecord]:
        events = self._repository.list_events(quote_id=quote_id)
        return sorted(events, key=lambda event: (event.occurred_at, event.sequence_no))

    def verify_chain(self, *, quote_id: str) -> AuditChainVerification:
        events = sorted(
            self._repository.list_events(quote_id=quote_id), key=lambda event: event.sequence_no
        )
        previous_hash = GENESIS_HASH
        for expected_sequence_no, event in enumerate(events, start=1):
            content = event.model_dump(exclude={"event_hash"})
            if (
                event.sequence_no != expected_sequence_no
                or event.previous_hash != previous_hash
                or compute_event_hash(content) != event.event_hash
            ):
                return AuditChainVerification(
                    quote_id=quote_id,
                    verified=False,
                    event_count=len(events),
                    broken_event_id=event.event_id,
                )
            previous_hash = event.event_hash
        return AuditChainVerification(quote_id=quote_id, verified=True, event_count=len(events))


def compute_event_hash(content: dict[str, Any]) -> str:
    payload = dict(content)
    occurred_at = payload["occurred_at"]
    if isinstance(occurred_at, datetime):
        payload["occurred_at"] = occurred_at.astimezone(timezone.utc).isoformat(
            timespec="microseconds"
        )
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return f"sha256:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"
