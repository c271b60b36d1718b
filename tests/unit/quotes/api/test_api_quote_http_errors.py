import json

import pytest
from fastapi import HTTPException

from src.api.routers.quote_http_errors import (
    HTTP_422_UNPROCESSABLE,
    raise_quote_http_exception,
    signature_capture_rejection,
)
from src.core.quotes import (
    ConcurrentModificationError,
    InvalidStateError,
    InvalidTransitionError,
    MalformedPayloadError,
    MissingSignerNameError,
    PreconditionFailedError,
    QuoteNotFoundError,
)


@pytest.mark.parametrize(
    ("exc", "expected_status"),
    [
        (QuoteNotFoundError("QUOTE_NOT_FOUND"), 404),
        (ConcurrentModificationError("QUOTE_VERSION_CONFLICT: stale"), 409),
        (InvalidTransitionError(from_status="COMPLETED", to_status="CANCELLED"), 422),
        (PreconditionFailedError("MISSING_SIGNATURES", "EXAM"), 422),
        (
            InvalidStateError(
                "SIGNATURE_CAPTURE_NOT_ALLOWED", current_status="DRAFT", expected=["PRESENTED"]
            ),
            422,
        ),
        (MalformedPayloadError("MALFORMED_PAYLOAD: empty"), 422),
    ],
)
def test_raise_quote_http_exception_maps_domain_errors(
    exc: Exception, expected_status: int
) -> None:
    with pytest.raises(HTTPException) as caught:
        raise_quote_http_exception(exc)
    expected = HTTP_422_UNPROCESSABLE if expected_status == 422 else expected_status
    assert caught.value.status_code == expected
    assert caught.value.detail == str(exc)


def test_raise_quote_http_exception_reraises_unknown_error() -> None:
    with pytest.raises(RuntimeError, match="boom"):
        raise_quote_http_exception(RuntimeError("boom"))


def test_invalid_state_message_names_expected_statuses() -> None:
    exc = InvalidStateError(
        "QUOTE_NOT_EDITABLE", current_status="SIGNED", expected=["BUILDING", "DRAFT"]
    )
    assert str(exc) == "QUOTE_NOT_EDITABLE: status SIGNED, expected one of BUILDING, DRAFT"


def test_signature_capture_rejection_body() -> None:
    response = signature_capture_rejection(MissingSignerNameError("MISSING_SIGNER_NAME: blank"))

    assert response.status_code == HTTP_422_UNPROCESSABLE
    assert json.loads(response.body) == {
        "success": False,
        "signature_id": None,
        "superseded_signature_id": None,
        "warnings": [],
        "errors": ["MISSING_SIGNER_NAME"],
        "detail": "MISSING_SIGNER_NAME: blank",
    }
