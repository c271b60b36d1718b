from datetime import datetime
from typing import Optional, Protocol, Sequence

from src.core.quotes.models import AuditEventRecord, QuoteRecord, SignatureRecord


class QuoteRepository(Protocol):
    def create_quote(self, *, quote: QuoteRecord, events: Sequence[AuditEventRecord]) -> None: ...

    def get_quote(self, *, quote_id: str) -> Optional[QuoteRecord]: ...

    def list_quotes(
        self,
        *,
        status: Optional[str],
        created_by: Optional[str],
        limit: int,
        cursor: Optional[str],
    ) -> tuple[list[QuoteRecord], Optional[str]]: ...

    def list_stale_quotes(
        self, *, statuses: Sequence[str], last_activity_before: datetime, limit: int
    ) -> list[QuoteRecord]: ...

    def get_signature(self, *, signature_id: str) -> Optional[SignatureRecord]: ...

    def list_signatures(self, *, quote_id: str) -> list[SignatureRecord]: ...

    def list_events(self, *, quote_id: str) -> list[AuditEventRecord]: ...

    def last_event(self, *, quote_id: str) -> Optional[AuditEventRecord]: ...

    def commit_quote_mutation(
        self,
        *,
        quote: QuoteRecord,
        expected_version: int,
        events: Sequence[AuditEventRecord],
        signatures: Sequence[SignatureRecord],
    ) -> QuoteRecord:
        """Atomically swap the quote from ``expected_version`` to ``quote``.

        Audit events are appended and signatures inserted or updated in the same unit of work.
        Raises ``ConcurrentModificationError`` when the stored version no longer matches.
        """
        ...
