import json
from contextlib import closing
from datetime import datetime, timezone
from importlib.util import find_spec
from typing import Any, Optional, Sequence

from src.core.quotes.errors import ConcurrentModificationError, QuoteNotFoundError
from src.core.quotes.models import (
    AuditEventRecord,
    QuoteLineItem,
    QuoteRecord,
    SignatureRecord,
)
from src.infrastructure.postgres_migrations import apply_postgres_migrations

_UNIQUE_VIOLATION = "23505"

_QUOTE_COLUMNS = """
                quote_id,
                version,
                status,
                customer_name,
                location_id,
                line_items_json,
                created_by,
                created_at,
                last_activity_at,
                status_changed_by,
                previous_status,
                cancel_reason,
                presented_at,
                signed_at,
                completed_at,
                cancelled_at,
                expired_at
"""

_SIGNATURE_COLUMNS = """
                signature_id,
                quote_id,
                signature_type,
                signature_data,
                signature_hash,
                signer_name,
                signer_role,
                ip_address,
                user_agent,
                device_info,
                captured_by,
                captured_at,
                capture_warnings_json,
                is_valid,
                invalidated_reason,
                invalidated_by,
                invalidated_at,
                superseded_by,
                name_verified,
                name_verified_by,
                name_verified_at
"""

_EVENT_COLUMNS = """
                event_id,
                quote_id,
                subject_type,
                subject_id,
                event_kind,
                actor_id,
                occurred_at,
                detail_json,
                sequence_no,
                previous_hash,
                event_hash
"""


class PostgresQuoteRepository:
    def __init__(self, *, dsn: str) -> None:
        if not dsn:
            raise RuntimeError("QUOTE_POSTGRES_DSN_REQUIRED")
        if find_spec("psycopg") is None:
            raise RuntimeError("QUOTE_POSTGRES_DRIVER_MISSING")
        self._dsn = dsn
        self._init_db()

    def create_quote(self, *, quote: QuoteRecord, events: Sequence[AuditEventRecord]) -> None:
        query = f"""
            INSERT INTO quote_records ({_QUOTE_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        with closing(self._connect()) as connection:
            try:
                connection.execute(query, _quote_args(quote))
                for event in events:
                    self._insert_event(connection=connection, event=event)
                connection.commit()
            except Exception as exc:
                connection.rollback()
                if _is_unique_violation(exc):
                    raise ConcurrentModificationError("QUOTE_ALREADY_EXISTS") from exc
                raise

    def get_quote(self, *, quote_id: str) -> Optional[QuoteRecord]:
        query = f"""
            SELECT {_QUOTE_COLUMNS}
            FROM quote_records
            WHERE quote_id = %s
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (quote_id,)).fetchone()
        return _to_quote(row) if row is not None else None

    def list_quotes(
        self,
        *,
        status: Optional[str],
        created_by: Optional[str],
        limit: int,
        cursor: Optional[str],
    ) -> tuple[list[QuoteRecord], Optional[str]]:
        where_clauses = []
        args: list[str] = []
        if status is not None:
            where_clauses.append("status = %s")
            args.append(status)
        if created_by is not None:
            where_clauses.append("created_by = %s")
            args.append(created_by)
        where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""
        query = f"""
            SELECT {_QUOTE_COLUMNS}
            FROM quote_records
            {where_sql}
            ORDER BY created_at DESC, quote_id DESC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, tuple(args)).fetchall()
        quotes = [_to_quote(row) for row in rows]
        if cursor:
            cursor_index = next(
                (index for index, quote in enumerate(quotes) if quote.quote_id == cursor),
                None,
            )
            if cursor_index is None:
                return [], None
            quotes = quotes[cursor_index + 1 :]
        page = quotes[:limit]
        next_cursor = page[-1].quote_id if len(quotes) > limit else None
        return page, next_cursor

    def list_stale_quotes(
        self, *, statuses: Sequence[str], last_activity_before: datetime, limit: int
    ) -> list[QuoteRecord]:
        query = f"""
            SELECT {_QUOTE_COLUMNS}
            FROM quote_records
            WHERE status = ANY(%s) AND last_activity_at <= %s
            ORDER BY last_activity_at ASC, quote_id ASC
            LIMIT %s
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(
                query, (list(statuses), _iso(last_activity_before), limit)
            ).fetchall()
        return [_to_quote(row) for row in rows]

    def get_signature(self, *, signature_id: str) -> Optional[SignatureRecord]:
        query = f"""
            SELECT {_SIGNATURE_COLUMNS}
            FROM quote_signatures
            WHERE signature_id = %s
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (signature_id,)).fetchone()
        return _to_signature(row) if row is not None else None

    def list_signatures(self, *, quote_id: str) -> list[SignatureRecord]:
        query = f"""
            SELECT {_SIGNATURE_COLUMNS}
            FROM quote_signatures
            WHERE quote_id = %s
            ORDER BY captured_at ASC, signature_id ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (quote_id,)).fetchall()
        return [_to_signature(row) for row in rows]

    def list_events(self, *, quote_id: str) -> list[AuditEventRecord]:
        query = f"""
            SELECT {_EVENT_COLUMNS}
            FROM quote_audit_events
            WHERE quote_id = %s
            ORDER BY sequence_no ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (quote_id,)).fetchall()
        return [_to_event(row) for row in rows]

    def last_event(self, *, quote_id: str) -> Optional[AuditEventRecord]:
        query = f"""
            SELECT {_EVENT_COLUMNS}
            FROM quote_audit_events
            WHERE quote_id = %s
            ORDER BY sequence_no DESC
            LIMIT 1
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (quote_id,)).fetchone()
        return _to_event(row) if row is not None else None

    def commit_quote_mutation(
        self,
        *,
        quote: QuoteRecord,
        expected_version: int,
        events: Sequence[AuditEventRecord],
        signatures: Sequence[SignatureRecord],
    ) -> QuoteRecord:
        update_query = """
            UPDATE quote_records SET
                version = %s,
                status = %s,
                customer_name = %s,
                location_id = %s,
                line_items_json = %s,
                last_activity_at = %s,
                status_changed_by = %s,
                previous_status = %s,
                cancel_reason = %s,
                presented_at = %s,
                signed_at = %s,
                completed_at = %s,
                cancelled_at = %s,
                expired_at = %s
            WHERE quote_id = %s AND version = %s
        """
        with closing(self._connect()) as connection:
            try:
                cursor = connection.execute(
                    update_query,
                    (
                        quote.version,
                        quote.status,
                        quote.customer_name,
                        quote.location_id,
                        _line_items_json(quote),
                        _iso(quote.last_activity_at),
                        quote.status_changed_by,
                        quote.previous_status,
                        quote.cancel_reason,
                        _optional_iso(quote.presented_at),
                        _optional_iso(quote.signed_at),
                        _optional_iso(quote.completed_at),
                        _optional_iso(quote.cancelled_at),
                        _optional_iso(quote.expired_at),
                        quote.quote_id,
                        expected_version,
                    ),
                )
                if cursor.rowcount != 1:
                    self._raise_for_missed_update(
                        connection=connection,
                        quote_id=quote.quote_id,
                        expected_version=expected_version,
                    )
                for signature in signatures:
                    self._upsert_signature(connection=connection, signature=signature)
                for event in events:
                    self._insert_event(connection=connection, event=event)
                connection.commit()
            except Exception as exc:
                connection.rollback()
                if _is_unique_violation(exc):
                    raise ConcurrentModificationError(
                        "QUOTE_CONCURRENT_WRITE: audit sequence or signature slot already taken"
                    ) from exc
                raise
        return quote

    def _connect(self):
        psycopg, dict_row = _import_psycopg()
        return psycopg.connect(self._dsn, row_factory=dict_row)

    def _init_db(self) -> None:
        with closing(self._connect()) as connection:
            apply_postgres_migrations(connection=connection, namespace="quotes")

    def _raise_for_missed_update(
        self, *, connection: Any, quote_id: str, expected_version: int
    ) -> None:
        row = connection.execute(
            "SELECT version FROM quote_records WHERE quote_id = %s", (quote_id,)
        ).fetchone()
        if row is None:
            raise QuoteNotFoundError("QUOTE_NOT_FOUND")
        raise ConcurrentModificationError(
            "QUOTE_VERSION_CONFLICT: "
            f"expected version {expected_version}, found {int(row['version'])}"
        )

    def _upsert_signature(self, *, connection: Any, signature: SignatureRecord) -> None:
        query = f"""
            INSERT INTO quote_signatures ({_SIGNATURE_COLUMNS})
            VALUES (
                %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                %s, %s, %s, %s, %s, %s, %s, %s, %s, %s
            )
            ON CONFLICT (signature_id) DO UPDATE SET
                is_valid=excluded.is_valid,
                invalidated_reason=excluded.invalidated_reason,
                invalidated_by=excluded.invalidated_by,
                invalidated_at=excluded.invalidated_at,
                superseded_by=excluded.superseded_by,
                name_verified=excluded.name_verified,
                name_verified_by=excluded.name_verified_by,
                name_verified_at=excluded.name_verified_at
        """
        connection.execute(
            query,
            (
                signature.signature_id,
                signature.quote_id,
                signature.signature_type,
                signature.signature_data,
                signature.signature_hash,
                signature.signer_name,
                signature.signer_role,
                signature.ip_address,
                signature.user_agent,
                signature.device_info,
                signature.captured_by,
                _iso(signature.captured_at),
                json.dumps(list(signature.capture_warnings)),
                signature.is_valid,
                signature.invalidated_reason,
                signature.invalidated_by,
                _optional_iso(signature.invalidated_at),
                signature.superseded_by,
                signature.name_verified,
                signature.name_verified_by,
                _optional_iso(signature.name_verified_at),
            ),
        )

    def _insert_event(self, *, connection: Any, event: AuditEventRecord) -> None:
        query = f"""
            INSERT INTO quote_audit_events ({_EVENT_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        connection.execute(
            query,
            (
                event.event_id,
                event.quote_id,
                event.subject_type,
                event.subject_id,
                event.event_kind,
                event.actor_id,
                _iso(event.occurred_at),
                _json_dump(event.detail),
                event.sequence_no,
                event.previous_hash,
                event.event_hash,
            ),
        )


def _import_psycopg():
    import psycopg
    from psycopg.rows import dict_row

    return psycopg, dict_row


def _is_unique_violation(exc: Exception) -> bool:
    return getattr(exc, "sqlstate", None) == _UNIQUE_VIOLATION


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _optional_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return _iso(value)


def _optional_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _json_dump(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def _line_items_json(quote: QuoteRecord) -> str:
    return _json_dump([item.model_dump(mode="json") for item in quote.line_items])


def _quote_args(quote: QuoteRecord) -> tuple:
    return (
        quote.quote_id,
        quote.version,
        quote.status,
        quote.customer_name,
        quote.location_id,
        _line_items_json(quote),
        quote.created_by,
        _iso(quote.created_at),
        _iso(quote.last_activity_at),
        quote.status_changed_by,
        quote.previous_status,
        quote.cancel_reason,
        _optional_iso(quote.presented_at),
        _optional_iso(quote.signed_at),
        _optional_iso(quote.completed_at),
        _optional_iso(quote.cancelled_at),
        _optional_iso(quote.expired_at),
    )


def _to_quote(row) -> QuoteRecord:
    return QuoteRecord(
        quote_id=row["quote_id"],
        version=int(row["version"]),
        status=row["status"],
        customer_name=row["customer_name"],
        location_id=row["location_id"],
        line_items=[
            QuoteLineItem.model_validate(item) for item in json.loads(row["line_items_json"])
        ],
        created_by=row["created_by"],
        created_at=datetime.fromisoformat(row["created_at"]),
        last_activity_at=datetime.fromisoformat(row["last_activity_at"]),
        status_changed_by=row["status_changed_by"],
        previous_status=row["previous_status"],
        cancel_reason=row["cancel_reason"],
        presented_at=_optional_datetime(row["presented_at"]),
        signed_at=_optional_datetime(row["signed_at"]),
        completed_at=_optional_datetime(row["completed_at"]),
        cancelled_at=_optional_datetime(row["cancelled_at"]),
        expired_at=_optional_datetime(row["expired_at"]),
    )


def _to_signature(row) -> SignatureRecord:
    return SignatureRecord(
        signature_id=row["signature_id"],
        quote_id=row["quote_id"],
        signature_type=row["signature_type"],
        signature_data=row["signature_data"],
        signature_hash=row["signature_hash"],
        signer_name=row["signer_name"],
        signer_role=row["signer_role"],
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
        device_info=row["device_info"],
        captured_by=row["captured_by"],
        captured_at=datetime.fromisoformat(row["captured_at"]),
        capture_warnings=json.loads(row["capture_warnings_json"]),
        is_valid=bool(row["is_valid"]),
        invalidated_reason=row["invalidated_reason"],
        invalidated_by=row["invalidated_by"],
        invalidated_at=_optional_datetime(row["invalidated_at"]),
        superseded_by=row["superseded_by"],
        name_verified=bool(row["name_verified"]),
        name_verified_by=row["name_verified_by"],
        name_verified_at=_optional_datetime(row["name_verified_at"]),
    )


def _to_event(row) -> AuditEventRecord:
    return AuditEventRecord(
        event_id=row["event_id"],
        quote_id=row["quote_id"],
        subject_type=row["subject_type"],
        subject_id=row["subject_id"],
        event_kind=row["event_kind"],
        actor_id=row["actor_id"],
        occurred_at=datetime.fromisoformat(row["occurred_at"]),
        detail=json.loads(row["detail_json"]),
        sequence_no=int(row["sequence_no"]),
        previous_hash=row["previous_hash"],
        event_hash=row["event_hash"],
    )
