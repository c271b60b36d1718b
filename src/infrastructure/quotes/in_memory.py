from copy import deepcopy
from datetime import datetime
from threading import Lock
from typing import Optional, Sequence

from src.core.quotes.errors import ConcurrentModificationError, QuoteNotFoundError
from src.core.quotes.models import AuditEventRecord, QuoteRecord, SignatureRecord
from src.core.quotes.repository import QuoteRepository


class InMemoryQuoteRepository(QuoteRepository):
    def __init__(self) -> None:
        self._lock = Lock()
        self._quotes: dict[str, QuoteRecord] = {}
        self._signatures: dict[str, SignatureRecord] = {}
        self._events: dict[str, list[AuditEventRecord]] = {}

    def create_quote(self, *, quote: QuoteRecord, events: Sequence[AuditEventRecord]) -> None:
        with self._lock:
            if quote.quote_id in self._quotes:
                raise ConcurrentModificationError("QUOTE_ALREADY_EXISTS")
            _check_event_sequence(events, head_sequence_no=0)
            self._quotes[quote.quote_id] = deepcopy(quote)
            self._events[quote.quote_id] = [deepcopy(event) for event in events]

    def get_quote(self, *, quote_id: str) -> Optional[QuoteRecord]:
        with self._lock:
            quote = self._quotes.get(quote_id)
            return deepcopy(quote) if quote is not None else None

    def list_quotes(
        self,
        *,
        status: Optional[str],
        created_by: Optional[str],
        limit: int,
        cursor: Optional[str],
    ) -> tuple[list[QuoteRecord], Optional[str]]:
        with self._lock:
            rows = list(self._quotes.values())

        rows = sorted(rows, key=lambda x: (x.created_at, x.quote_id), reverse=True)

        if status is not None:
            rows = [row for row in rows if row.status == status]
        if created_by is not None:
            rows = [row for row in rows if row.created_by == created_by]

        if cursor:
            row_ids = [row.quote_id for row in rows]
            if cursor in row_ids:
                start = row_ids.index(cursor) + 1
                rows = rows[start:]

        page = rows[:limit]
        next_cursor = page[-1].quote_id if len(rows) > limit else None
        return [deepcopy(row) for row in page], next_cursor

    def list_stale_quotes(
        self, *, statuses: Sequence[str], last_activity_before: datetime, limit: int
    ) -> list[QuoteRecord]:
        with self._lock:
            rows = [
                row
                for row in self._quotes.values()
                if row.status in statuses and row.last_activity_at <= last_activity_before
            ]
            rows.sort(key=lambda x: (x.last_activity_at, x.quote_id))
            return [deepcopy(row) for row in rows[:limit]]

    def get_signature(self, *, signature_id: str) -> Optional[SignatureRecord]:
        with self._lock:
            signature = self._signatures.get(signature_id)
            return deepcopy(signature) if signature is not None else None

    def list_signatures(self, *, quote_id: str) -> list[SignatureRecord]:
        with self._lock:
            return [
                deepcopy(signature)
                for signature in self._signatures.values()
                if signature.quote_id == quote_id
            ]

    def list_events(self, *, quote_id: str) -> list[AuditEventRecord]:
        with self._lock:
            events = self._events.get(quote_id, [])
            return [deepcopy(event) for event in events]

    def last_event(self, *, quote_id: str) -> Optional[AuditEventRecord]:
        with self._lock:
            events = self._events.get(quote_id)
            return deepcopy(events[-1]) if events else None

    def commit_quote_mutation(
        self,
        *,
        quote: QuoteRecord,
        expected_version: int,
        events: Sequence[AuditEventRecord],
        signatures: Sequence[SignatureRecord],
    ) -> QuoteRecord:
        with self._lock:
            stored = self._quotes.get(quote.quote_id)
            if stored is None:
                raise QuoteNotFoundError("QUOTE_NOT_FOUND")
            if stored.version != expected_version:
                raise ConcurrentModificationError(
                    "QUOTE_VERSION_CONFLICT: "
                    f"expected version {expected_version}, found {stored.version}"
                )
            history = self._events.setdefault(quote.quote_id, [])
            _check_event_sequence(events, head_sequence_no=len(history))
            for signature in signatures:
                if signature.quote_id != quote.quote_id:
                    raise ValueError("signature does not belong to the committed quote")

            self._quotes[quote.quote_id] = deepcopy(quote)
            history.extend(deepcopy(event) for event in events)
            for signature in signatures:
                self._signatures[signature.signature_id] = deepcopy(signature)
            return deepcopy(quote)


def _check_event_sequence(events: Sequence[AuditEventRecord], *, head_sequence_no: int) -> None:
    for offset, event in enumerate(events, start=1):
        if event.sequence_no != head_sequence_no + offset:
            raise ConcurrentModificationError(
                "AUDIT_SEQUENCE_CONFLICT: "
                f"expected sequence {head_sequence_no + offset}, found {event.sequence_no}"
            )
