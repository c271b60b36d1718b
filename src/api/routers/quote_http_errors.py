from typing import NoReturn

from fastapi import HTTPException, status
from fastapi.responses import JSONResponse

from src.core.quotes import (
    ConcurrentModificationError,
    InvalidStateError,
    InvalidTransitionError,
    PreconditionFailedError,
    QuoteNotFoundError,
    SignatureCaptureResult,
    SignatureValidationError,
)

HTTP_422_UNPROCESSABLE = getattr(
    status,
    "HTTP_422_UNPROCESSABLE_CONTENT",
    status.HTTP_422_UNPROCESSABLE_ENTITY,
)


def raise_quote_http_exception(exc: Exception) -> NoReturn:
    if isinstance(exc, QuoteNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConcurrentModificationError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(
        exc,
        (
            InvalidTransitionError,
            PreconditionFailedError,
            InvalidStateError,
            SignatureValidationError,
        ),
    ):
        raise HTTPException(status_code=HTTP_422_UNPROCESSABLE, detail=str(exc)) from exc
    raise exc


def signature_capture_rejection(exc: SignatureValidationError) -> JSONResponse:
    result = SignatureCaptureResult(success=False, errors=[exc.code])
    return JSONResponse(
        status_code=HTTP_422_UNPROCESSABLE,
        content={**result.model_dump(mode="json"), "detail": str(exc)},
    )
