from typing import Annotated, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from fastapi.responses import JSONResponse

from src.api.routers import quotes_config
from src.api.routers.quote_http_errors import (
    raise_quote_http_exception,
    signature_capture_rejection,
)
from src.core.quotes import (
    AuditChainVerification,
    ExpirationSweeper,
    ExpirationSweepResult,
    QuoteCreateRequest,
    QuoteLifecycleError,
    QuoteLifecycleService,
    QuoteRecord,
    QuoteRepository,
    SignatureCaptureResult,
    SignatureValidationError,
    WorkflowStatus,
)
from src.core.quotes.models import (
    ExpirationSweepRequest,
    QuoteHistoryResponse,
    QuoteLineItemsUpdateRequest,
    QuoteListResponse,
    QuoteResumeRequest,
    QuoteSignaturesResponse,
    QuoteStatus,
    QuoteSupportabilityConfigResponse,
    QuoteTransitionRequest,
    SignatureCaptureRequest,
    SignatureInvalidateRequest,
    SignatureMutationResponse,
    SignatureRecord,
    SignerNameVerificationRequest,
    TransitionContext,
)

router = APIRouter(tags=["Quote Lifecycle"])

_REPOSITORY: Optional[QuoteRepository] = None
_SERVICE: Optional[QuoteLifecycleService] = None

QuoteIdPath = Annotated[
    str, Path(description="Persisted quote identifier.", examples=["qt_0123456789ab"])
]
SignatureIdPath = Annotated[
    str, Path(description="Persisted signature identifier.", examples=["sig_0123456789ab"])
]


def get_quote_repository() -> QuoteRepository:
    global _REPOSITORY
    if _REPOSITORY is None:
        try:
            _REPOSITORY = quotes_config.build_repository()
        except RuntimeError as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
            ) from exc
        except Exception as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="QUOTE_POSTGRES_CONNECTION_FAILED",
            ) from exc
    return _REPOSITORY


def get_quote_lifecycle_service() -> QuoteLifecycleService:
    global _SERVICE
    if _SERVICE is None:
        repository = get_quote_repository()
        try:
            _SERVICE = QuoteLifecycleService(
                repository=repository,
                duplicate_capture_window_seconds=(
                    quotes_config.signature_duplicate_window_seconds()
                ),
                replacement_policy=quotes_config.signature_replacement_policy(),
            )
        except RuntimeError as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
            ) from exc
    return _SERVICE


def reset_quote_lifecycle_service_for_tests() -> None:
    global _REPOSITORY
    global _SERVICE
    _REPOSITORY = None
    _SERVICE = None


def _assert_lifecycle_enabled() -> None:
    if not quotes_config.lifecycle_enabled():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="QUOTE_LIFECYCLE_DISABLED",
        )


def _assert_support_apis_enabled() -> None:
    if not quotes_config.support_apis_enabled():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="QUOTE_SUPPORT_APIS_DISABLED",
        )


def _assert_expiration_sweep_api_enabled() -> None:
    if not quotes_config.expiration_sweep_api_enabled():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="QUOTE_EXPIRATION_SWEEP_API_DISABLED",
        )


ServiceDependency = Annotated[QuoteLifecycleService, Depends(get_quote_lifecycle_service)]


@router.get(
    "/quotes/supportability/config",
    response_model=QuoteSupportabilityConfigResponse,
    status_code=status.HTTP_200_OK,
    summary="Get Quote Supportability Configuration",
    description=(
        "Returns quote lifecycle runtime configuration and backend initialization status "
        "for operational diagnostics without direct database access."
    ),
)
def get_quote_supportability_config() -> QuoteSupportabilityConfigResponse:
    backend_error: Optional[str] = None
    backend_ready = True
    try:
        quotes_config.build_repository()
    except RuntimeError as exc:
        backend_ready = False
        backend_error = str(exc)
    except Exception:
        backend_ready = False
        backend_error = "QUOTE_POSTGRES_CONNECTION_FAILED"

    return QuoteSupportabilityConfigResponse(
        store_backend=quotes_config.quote_store_backend_name(),
        backend_ready=backend_ready,
        backend_init_error=backend_error,
        lifecycle_enabled=quotes_config.lifecycle_enabled(),
        support_apis_enabled=quotes_config.support_apis_enabled(),
        expiration_sweep_api_enabled=quotes_config.expiration_sweep_api_enabled(),
        expiration_threshold_days=quotes_config.expiration_threshold_days(),
        expiration_max_quotes_per_run=quotes_config.expiration_max_quotes_per_run(),
        signature_duplicate_window_seconds=quotes_config.signature_duplicate_window_seconds(),
        signature_replacement_policy=quotes_config.signature_replacement_policy(),
    )


@router.post(
    "/quotes/expiration-sweeps",
    response_model=ExpirationSweepResult,
    status_code=status.HTTP_200_OK,
    summary="Run Quote Expiration Sweep",
    description=(
        "Expires non-terminal quotes whose last activity is older than the configured threshold. "
        "Each quote goes through the regular transition path as `system:expiration`; per-quote "
        "failures are reported without aborting the sweep."
    ),
)
def run_quote_expiration_sweep(
    payload: ExpirationSweepRequest,
    service: ServiceDependency = None,
) -> ExpirationSweepResult:
    _assert_lifecycle_enabled()
    _assert_expiration_sweep_api_enabled()
    sweeper = ExpirationSweeper(
        service=service,
        repository=get_quote_repository(),
        expiration_threshold_days=quotes_config.expiration_threshold_days(),
        max_quotes_per_run=quotes_config.expiration_max_quotes_per_run(),
    )
    return sweeper.run(now=payload.now, dry_run=payload.dry_run)


@router.post(
    "/quotes",
    response_model=QuoteRecord,
    status_code=status.HTTP_201_CREATED,
    summary="Create Quote",
    description="Creates a quote in `BUILDING` and records the creation audit event.",
)
def create_quote(payload: QuoteCreateRequest, service: ServiceDependency = None) -> QuoteRecord:
    _assert_lifecycle_enabled()
    return service.create_quote(request=payload)


@router.get(
    "/quotes",
    response_model=QuoteListResponse,
    status_code=status.HTTP_200_OK,
    summary="List Quotes",
    description="Lists quotes newest first with optional filters and cursor pagination.",
)
def list_quotes(
    status_filter: Annotated[
        Optional[QuoteStatus],
        Query(alias="status", description="Lifecycle status filter.", examples=["PRESENTED"]),
    ] = None,
    created_by: Annotated[
        Optional[str],
        Query(description="Creator actor id filter.", examples=["associate_1"]),
    ] = None,
    limit: Annotated[
        int,
        Query(description="Page size.", ge=1, le=100, examples=[20]),
    ] = 20,
    cursor: Annotated[
        Optional[str],
        Query(description="Opaque cursor from previous list response.", examples=["qt_123"]),
    ] = None,
    service: ServiceDependency = None,
) -> QuoteListResponse:
    _assert_lifecycle_enabled()
    return service.list_quotes(
        status=status_filter, created_by=created_by, limit=limit, cursor=cursor
    )


@router.get(
    "/quotes/{quote_id}",
    response_model=QuoteRecord,
    status_code=status.HTTP_200_OK,
    summary="Get Quote",
)
def get_quote(quote_id: QuoteIdPath, service: ServiceDependency = None) -> QuoteRecord:
    _assert_lifecycle_enabled()
    try:
        return service.get_quote(quote_id=quote_id)
    except QuoteLifecycleError as exc:
        raise_quote_http_exception(exc)


@router.put(
    "/quotes/{quote_id}/line-items",
    response_model=QuoteRecord,
    status_code=status.HTTP_200_OK,
    summary="Replace Quote Line Items",
    description="Replaces the full line-item set of a quote in `BUILDING` or `DRAFT`.",
)
def update_quote_line_items(
    quote_id: QuoteIdPath,
    payload: QuoteLineItemsUpdateRequest,
    service: ServiceDependency = None,
) -> QuoteRecord:
    _assert_lifecycle_enabled()
    try:
        return service.update_line_items(
            quote_id=quote_id, line_items=payload.line_items, actor_id=payload.actor_id
        )
    except QuoteLifecycleError as exc:
        raise_quote_http_exception(exc)


@router.post(
    "/quotes/{quote_id}/transitions",
    response_model=QuoteRecord,
    status_code=status.HTTP_200_OK,
    summary="Transition Quote Status",
    description=(
        "Applies one guarded status transition as a single compare-and-set on the quote version. "
        "`EXPIRED` is reserved for the expiration sweep."
    ),
)
def transition_quote(
    quote_id: QuoteIdPath,
    payload: QuoteTransitionRequest,
    service: ServiceDependency = None,
) -> QuoteRecord:
    _assert_lifecycle_enabled()
    context = TransitionContext.model_validate(payload.model_dump(exclude={"target_status"}))
    try:
        return service.transition_quote(
            quote_id=quote_id, target_status=payload.target_status, context=context
        )
    except QuoteLifecycleError as exc:
        raise_quote_http_exception(exc)


@router.post(
    "/quotes/{quote_id}/resume",
    response_model=QuoteRecord,
    status_code=status.HTTP_200_OK,
    summary="Resume Quote",
    description="Returns a `DRAFT` quote to `BUILDING`, or records a resume of a `BUILDING` quote.",
)
def resume_quote(
    quote_id: QuoteIdPath,
    payload: QuoteResumeRequest,
    service: ServiceDependency = None,
) -> QuoteRecord:
    _assert_lifecycle_enabled()
    try:
        return service.resume_quote(quote_id=quote_id, actor_id=payload.actor_id)
    except QuoteLifecycleError as exc:
        raise_quote_http_exception(exc)


@router.post(
    "/quotes/{quote_id}/signatures",
    response_model=SignatureCaptureResult,
    status_code=status.HTTP_201_CREATED,
    summary="Capture Quote Signature",
    description=(
        "Captures an `EXAM` or `MATERIALS` signature on a `PRESENTED` quote. A previous valid "
        "signature of the same type is superseded in the same commit. Name mismatch and "
        "duplicate capture are returned as warnings; invalid payloads return `success=false`."
    ),
    responses={422: {"model": SignatureCaptureResult}},
)
def capture_quote_signature(
    quote_id: QuoteIdPath,
    payload: SignatureCaptureRequest,
    service: ServiceDependency = None,
) -> Union[SignatureCaptureResult, JSONResponse]:
    _assert_lifecycle_enabled()
    try:
        return service.signatures.capture_signature(
            quote_id=quote_id,
            signature_type=payload.signature_type,
            signature_data=payload.signature_data,
            signer_name=payload.signer_name,
            signer_role=payload.signer_role,
            client_meta=payload.client_meta,
            captured_by=payload.captured_by,
        )
    except SignatureValidationError as exc:
        return signature_capture_rejection(exc)
    except QuoteLifecycleError as exc:
        raise_quote_http_exception(exc)


@router.get(
    "/quotes/{quote_id}/signatures",
    response_model=QuoteSignaturesResponse,
    status_code=status.HTTP_200_OK,
    summary="List Quote Signatures",
    description="Returns every capture attempt of the quote, oldest first, including invalidated.",
)
def list_quote_signatures(
    quote_id: QuoteIdPath, service: ServiceDependency = None
) -> QuoteSignaturesResponse:
    _assert_lifecycle_enabled()
    try:
        signatures = service.signatures.get_quote_signatures(quote_id=quote_id)
    except QuoteLifecycleError as exc:
        raise_quote_http_exception(exc)
    return QuoteSignaturesResponse(quote_id=quote_id, signatures=signatures)


@router.get(
    "/signatures/{signature_id}",
    response_model=SignatureRecord,
    status_code=status.HTTP_200_OK,
    summary="Get Signature",
)
def get_signature(signature_id: SignatureIdPath, service: ServiceDependency = None):
    _assert_lifecycle_enabled()
    try:
        return service.signatures.get_signature(signature_id=signature_id)
    except QuoteLifecycleError as exc:
        raise_quote_http_exception(exc)


@router.post(
    "/signatures/{signature_id}/invalidate",
    response_model=SignatureMutationResponse,
    status_code=status.HTTP_200_OK,
    summary="Invalidate Signature",
    description="Invalidates a valid signature. Already invalid signatures return `applied=false`.",
)
def invalidate_signature(
    signature_id: SignatureIdPath,
    payload: SignatureInvalidateRequest,
    service: ServiceDependency = None,
) -> SignatureMutationResponse:
    _assert_lifecycle_enabled()
    try:
        applied = service.signatures.invalidate_signature(
            signature_id=signature_id,
            reason=payload.reason,
            invalidated_by=payload.invalidated_by,
        )
    except QuoteLifecycleError as exc:
        raise_quote_http_exception(exc)
    return SignatureMutationResponse(signature_id=signature_id, applied=applied)


@router.post(
    "/signatures/{signature_id}/verify-name",
    response_model=SignatureMutationResponse,
    status_code=status.HTTP_200_OK,
    summary="Verify Signer Name",
    description=(
        "Records a secondary signer-name confirmation. Invalid signatures are not verified."
    ),
)
def verify_signer_name(
    signature_id: SignatureIdPath,
    payload: SignerNameVerificationRequest,
    service: ServiceDependency = None,
) -> SignatureMutationResponse:
    _assert_lifecycle_enabled()
    try:
        applied = service.signatures.verify_signer_name(
            signature_id=signature_id, verified_by=payload.verified_by
        )
    except QuoteLifecycleError as exc:
        raise_quote_http_exception(exc)
    return SignatureMutationResponse(signature_id=signature_id, applied=applied)


@router.get(
    "/quotes/{quote_id}/workflow-status",
    response_model=WorkflowStatus,
    status_code=status.HTTP_200_OK,
    summary="Get Quote Workflow Status",
    description="Read-only projection of which signature and status actions are currently legal.",
)
def get_quote_workflow_status(
    quote_id: QuoteIdPath, service: ServiceDependency = None
) -> WorkflowStatus:
    _assert_lifecycle_enabled()
    try:
        return service.get_workflow_status(quote_id=quote_id)
    except QuoteLifecycleError as exc:
        raise_quote_http_exception(exc)


@router.get(
    "/quotes/{quote_id}/history",
    response_model=QuoteHistoryResponse,
    status_code=status.HTTP_200_OK,
    summary="Get Quote History",
    description="Returns the append-only audit trail of the quote and its signatures.",
)
def get_quote_history(
    quote_id: QuoteIdPath, service: ServiceDependency = None
) -> QuoteHistoryResponse:
    _assert_lifecycle_enabled()
    _assert_support_apis_enabled()
    try:
        events = service.get_quote_history(quote_id=quote_id)
    except QuoteLifecycleError as exc:
        raise_quote_http_exception(exc)
    return QuoteHistoryResponse(quote_id=quote_id, events=events)


@router.get(
    "/quotes/{quote_id}/history/verification",
    response_model=AuditChainVerification,
    status_code=status.HTTP_200_OK,
    summary="Verify Quote Audit Chain",
    description="Recomputes the hash chain of the quote audit trail and reports the first break.",
)
def verify_quote_history(
    quote_id: QuoteIdPath, service: ServiceDependency = None
) -> AuditChainVerification:
    _assert_lifecycle_enabled()
    _assert_support_apis_enabled()
    try:
        return service.verify_audit_chain(quote_id=quote_id)
    except QuoteLifecycleError as exc:
        raise_quote_http_exception(exc)
