import base64
import binascii
import hashlib
import logging
import re
import uuid
from datetime import datetime, timedelta
from typing import Optional

from src.core.quotes.clock import Clock, SystemClock
from src.core.quotes.errors import (
    InvalidStateError,
    MalformedPayloadError,
    MissingSignerNameError,
    PreconditionFailedError,
    QuoteNotFoundError,
)
from src.core.quotes.ledger import AuditLedger
from src.core.quotes.models import (
    SUPERSEDED_REASON,
    ClientMetadata,
    QuoteRecord,
    SignatureCaptureResult,
    SignatureRecord,
    SignatureReplacementPolicy,
    SignatureType,
    SignatureWarning,
)
from src.core.quotes.repository import QuoteRepository
from src.core.quotes.state_machine import SIGNATURE_CAPTURE_STATUSES

logger = logging.getLogger(__name__)

TYPED_SIGNATURE_PREFIX = "typed:"
_DATA_URL_PATTERN = re.compile(
    r"^data:image/[a-z0-9.+-]+;base64,(?P<body>.+)$", re.IGNORECASE | re.DOTALL
)
# Base64 body lengths below which a drawn signature is flagged for a second look.
MIN_DRAWN_BODY_LENGTH = 1000
MIN_DRAWN_DETAIL_LENGTH = 2000


class SignatureVault:
    def __init__(
        self,
        *,
        repository: QuoteRepository,
        ledger: Optional[AuditLedger] = None,
        clock: Optional[Clock] = None,
        duplicate_capture_window_seconds: int = 10,
        replacement_policy: SignatureReplacementPolicy = "SUPERSEDE",
    ) -> None:
        self._repository = repository
        self._ledger = ledger or AuditLedger(repository=repository)
        self._clock = clock or SystemClock()
        self._duplicate_window = timedelta(seconds=duplicate_capture_window_seconds)
        self._replacement_policy = replacement_policy

    @property
    def replacement_policy(self) -> SignatureReplacementPolicy:
        return self._replacement_policy

    def capture_signature(
        self,
        *,
        quote_id: str,
        signature_type: SignatureType,
        signature_data: str,
        signer_name: str,
        captured_by: str,
        signer_role: Optional[str] = None,
        client_meta: Optional[ClientMetadata] = None,
    ) -> SignatureCaptureResult:
        quote = self._require_quote(quote_id)
        if quote.status not in SIGNATURE_CAPTURE_STATUSES:
            raise InvalidStateError(
                "SIGNATURE_CAPTURE_NOT_ALLOWED",
                current_status=quote.status,
                expected=sorted(SIGNATURE_CAPTURE_STATUSES),
            )
        drawn_body = _validate_payload(signature_data)
        signer_name = " ".join((signer_name or "").split())
        if not signer_name:
            raise MissingSignerNameError("MISSING_SIGNER_NAME: signer name is required")

        existing = self._repository.list_signatures(quote_id=quote_id)
        same_type = [s for s in existing if s.signature_type == signature_type]
        previous_valid = [s for s in same_type if s.is_valid]
        if previous_valid and self._replacement_policy == "REJECT":
            raise PreconditionFailedError(
                "VALID_SIGNATURE_EXISTS",
                f"invalidate the current {signature_type} signature before recapturing",
            )

        now = self._clock.now()
        client_meta = client_meta or ClientMetadata()
        warnings = self._capture_warnings(
            quote=quote, signer_name=signer_name, same_type=same_type, now=now
        ) + _quality_warnings(drawn_body)
        signature = SignatureRecord(
            signature_id=f"sig_{uuid.uuid4().hex[:12]}",
            quote_id=quote_id,
            signature_type=signature_type,
            signature_data=signature_data,
            signature_hash=hash_signature_payload(signature_data),
            signer_name=signer_name,
            signer_role=signer_role,
            ip_address=client_meta.ip_address,
            user_agent=client_meta.user_agent,
            device_info=client_meta.device_info,
            captured_by=captured_by,
            captured_at=now,
            capture_warnings=[warning.code for warning in warnings],
        )

        batch = self._ledger.begin(quote_id=quote_id)
        superseded: list[SignatureRecord] = []
        for previous in previous_valid:
            superseded.append(
                _invalidated(
                    previous,
                    reason=SUPERSEDED_REASON,
                    invalidated_by=captured_by,
                    now=now,
                    superseded_by=signature.signature_id,
                )
            )
            batch.append(
                subject_type="SIGNATURE",
                subject_id=previous.signature_id,
                event_kind="SIGNATURE_INVALIDATED",
                actor_id=captured_by,
                occurred_at=now,
                detail={
                    "signature_type": previous.signature_type,
                    "reason": SUPERSEDED_REASON,
                    "superseded_by": signature.signature_id,
                },
            )
        batch.append(
            subject_type="SIGNATURE",
            subject_id=signature.signature_id,
            event_kind="SIGNATURE_CAPTURED",
            actor_id=captured_by,
            occurred_at=now,
            detail={
                "signature_type": signature_type,
                "signer_name": signer_name,
                "signer_role": signer_role,
                "signature_hash": signature.signature_hash,
                "ip_address": client_meta.ip_address,
                "device_info": client_meta.device_info,
                "warnings": list(signature.capture_warnings),
            },
        )

        self._repository.commit_quote_mutation(
            quote=_touched(quote, now),
            expected_version=quote.version,
            events=batch.events,
            signatures=[*superseded, signature],
        )
        logger.info(
            "signature.captured",
            extra={
                "extra_fields": {
                    "quote_id": quote_id,
                    "signature_id": signature.signature_id,
                    "signature_type": signature_type,
                    "superseded_count": len(superseded),
                    "warnings": list(signature.capture_warnings),
                }
            },
        )
        return SignatureCaptureResult(
            success=True,
            signature_id=signature.signature_id,
            superseded_signature_id=superseded[0].signature_id if superseded else None,
            warnings=warnings,
        )

    def invalidate_signature(self, *, signature_id: str, reason: str, invalidated_by: str) -> bool:
        signature = self._require_signature(signature_id)
        if not signature.is_valid:
            return False
        if not reason or not reason.strip():
            raise PreconditionFailedError("INVALIDATION_REASON_REQUIRED")

        quote = self._require_quote(signature.quote_id)
        now = self._clock.now()
        batch = self._ledger.begin(quote_id=quote.quote_id)
        batch.append(
            subject_type="SIGNATURE",
            subject_id=signature_id,
            event_kind="SIGNATURE_INVALIDATED",
            actor_id=invalidated_by,
            occurred_at=now,
            detail={"signature_type": signature.signature_type, "reason": reason.strip()},
        )
        self._repository.commit_quote_mutation(
            quote=_touched(quote, now),
            expected_version=quote.version,
            events=batch.events,
            signatures=[
                _invalidated(
                    signature, reason=reason.strip(), invalidated_by=invalidated_by, now=now
                )
            ],
        )
        logger.info("Signature %s invalidated by %s", signature_id, invalidated_by)
        return True

    def verify_signer_name(self, *, signature_id: str, verified_by: str) -> bool:
        signature = self._require_signature(signature_id)
        if not signature.is_valid:
            return False

        quote = self._require_quote(signature.quote_id)
        now = self._clock.now()
        batch = self._ledger.begin(quote_id=quote.quote_id)
        batch.append(
            subject_type="SIGNATURE",
            subject_id=signature_id,
            event_kind="SIGNER_NAME_VERIFIED",
            actor_id=verified_by,
            occurred_at=now,
            detail={
                "signature_type": signature.signature_type,
                "previously_verified_by": signature.name_verified_by,
            },
        )
        verified = signature.model_copy(
            update={
                "name_verified": True,
                "name_verified_by": verified_by,
                "name_verified_at": now,
            }
        )
        self._repository.commit_quote_mutation(
            quote=_touched(quote, now),
            expected_version=quote.version,
            events=batch.events,
            signatures=[verified],
        )
        return True

    def get_signature(self, *, signature_id: str) -> SignatureRecord:
        return self._require_signature(signature_id)

    def get_quote_signatures(self, *, quote_id: str) -> list[SignatureRecord]:
        self._require_quote(quote_id)
        return self.list_signatures_unchecked(quote_id=quote_id)

    def list_signatures_unchecked(self, *, quote_id: str) -> list[SignatureRecord]:
        signatures = self._repository.list_signatures(quote_id=quote_id)
        return sorted(signatures, key=lambda s: (s.captured_at, s.signature_id))

    def _capture_warnings(
        self,
        *,
        quote: QuoteRecord,
        signer_name: str,
        same_type: list[SignatureRecord],
        now: datetime,
    ) -> list[SignatureWarning]:
        warnings: list[SignatureWarning] = []
        if quote.customer_name and _normalize_name(quote.customer_name) != _normalize_name(
            signer_name
        ):
            warnings.append(
                SignatureWarning(
                    code="NAME_MISMATCH",
                    message=(
                        f"Signer name '{signer_name}' does not match customer "
                        f"'{quote.customer_name}'"
                    ),
                )
            )
        window_start = now - self._duplicate_window
        if any(window_start <= s.captured_at <= now for s in same_type):
            warnings.append(
                SignatureWarning(
                    code="DUPLICATE_CAPTURE",
                    message=(
                        "Another signature of this type was captured within the last "
                        f"{int(self._duplicate_window.total_seconds())} seconds"
                    ),
                )
            )
        return warnings

    def _require_quote(self, quote_id: str) -> QuoteRecord:
        quote = self._repository.get_quote(quote_id=quote_id)
        if quote is None:
            raise QuoteNotFoundError("QUOTE_NOT_FOUND")
        return quote

    def _require_signature(self, signature_id: str) -> SignatureRecord:
        signature = self._repository.get_signature(signature_id=signature_id)
        if signature is None:
            raise QuoteNotFoundError("SIGNATURE_NOT_FOUND")
        return signature


def hash_signature_payload(signature_data: str) -> str:
    return f"sha256:{hashlib.sha256(signature_data.encode('utf-8')).hexdigest()}"


def _validate_payload(signature_data: str) -> Optional[str]:
    """Rejects malformed payloads and returns the base64 body of a drawn signature."""
    if not signature_data or not signature_data.strip():
        raise MalformedPayloadError("MALFORMED_PAYLOAD: signature payload is empty")
    if signature_data.startswith(TYPED_SIGNATURE_PREFIX):
        if not signature_data[len(TYPED_SIGNATURE_PREFIX) :].strip():
            raise MalformedPayloadError("MALFORMED_PAYLOAD: typed signature is blank")
        return None
    match = _DATA_URL_PATTERN.match(signature_data.strip())
    if match is None:
        raise MalformedPayloadError(
            "MALFORMED_PAYLOAD: expected data:image/<format>;base64 URL or typed:<name>"
        )
    try:
        decoded = base64.b64decode(match.group("body"), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedPayloadError("MALFORMED_PAYLOAD: image body is not base64") from exc
    if not decoded:
        raise MalformedPayloadError("MALFORMED_PAYLOAD: image body is empty")
    return match.group("body")


def _quality_warnings(drawn_body: Optional[str]) -> list[SignatureWarning]:
    if drawn_body is None:
        return []
    warnings: list[SignatureWarning] = []
    if len(drawn_body) < MIN_DRAWN_BODY_LENGTH:
        warnings.append(
            SignatureWarning(
                code="SIGNATURE_TOO_SIMPLE",
                message="Signature appears to be empty or very simple",
            )
        )
    if len(drawn_body) < MIN_DRAWN_DETAIL_LENGTH:
        warnings.append(
            SignatureWarning(
                code="SIGNATURE_TOO_SMALL", message="Signature appears to be very small"
            )
        )
    return warnings


def _normalize_name(name: str) -> str:
    return " ".join(name.split()).casefold()


def _touched(quote: QuoteRecord, now: datetime) -> QuoteRecord:
    return quote.model_copy(
        update={"version": quote.version + 1, "last_activity_at": max(now, quote.last_activity_at)}
    )


def _invalidated(
    signature: SignatureRecord,
    *,
    reason: str,
    invalidated_by: str,
    now: datetime,
    superseded_by: Optional[str] = None,
) -> SignatureRecord:
    return signature.model_copy(
        update={
            "is_valid": False,
            "invalidated_reason": reason,
            "invalidated_by": invalidated_by,
            "invalidated_at": max(now, signature.captured_at),
            "superseded_by": superseded_by,
        }
    )
