from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

QuoteStatus = Literal[
    "BUILDING",
    "DRAFT",
    "PRESENTED",
    "SIGNED",
    "COMPLETED",
    "CANCELLED",
    "EXPIRED",
]

CancelReason = Literal[
    "customer_changed_mind",
    "insurance_issues",
    "budget_constraints",
    "found_better_option",
    "timing_issues",
    "product_unavailable",
    "other",
]

SignatureType = Literal["EXAM", "MATERIALS"]
SignatureReplacementPolicy = Literal["SUPERSEDE", "REJECT"]
SignatureWarningCode = Literal[
    "NAME_MISMATCH", "DUPLICATE_CAPTURE", "SIGNATURE_TOO_SIMPLE", "SIGNATURE_TOO_SMALL"
]

ActorRole = Literal["SALES_ASSOCIATE", "MANAGER", "ADMIN", "FULFILLMENT_SPECIALIST", "SYSTEM"]

LineItemCategory = Literal["EXAM_SERVICE", "EYEGLASSES", "CONTACT_LENSES", "ADD_ON"]

AuditSubjectType = Literal["QUOTE", "SIGNATURE"]
AuditEventKind = Literal[
    "QUOTE_CREATED",
    "LINE_ITEMS_UPDATED",
    "QUOTE_RESUMED",
    "STATUS_CHANGED",
    "SIGNATURE_CAPTURED",
    "SIGNATURE_INVALIDATED",
    "SIGNER_NAME_VERIFIED",
]

WorkflowNextStep = Literal[
    "PRESENT_QUOTE",
    "EXAM_SIGNATURE",
    "MATERIALS_SIGNATURE",
    "MARK_SIGNED",
    "COMPLETE_QUOTE",
    "NONE",
]

SIGNATURE_TYPES: tuple[SignatureType, ...] = ("EXAM", "MATERIALS")
TERMINAL_STATUSES: frozenset[str] = frozenset({"COMPLETED", "CANCELLED", "EXPIRED"})
SYSTEM_EXPIRATION_ACTOR = "system:expiration"
SUPERSEDED_REASON = "superseded by new capture"


class QuoteLineItem(BaseModel):
    description: str = Field(
        description="Line item description shown on the quote.",
        examples=["Comprehensive eye exam"],
    )
    category: LineItemCategory = Field(
        description="Quote builder layer the item belongs to.", examples=["EXAM_SERVICE"]
    )
    quantity: int = Field(default=1, ge=1, description="Item quantity.", examples=[1])
    unit_price: Optional[Decimal] = Field(
        default=None,
        ge=Decimal("0"),
        description="Unit price; an item without a price is not yet priced.",
        examples=["145.00"],
    )

    @property
    def is_priced(self) -> bool:
        return self.unit_price is not None


class QuoteRecord(BaseModel):
    quote_id: str = Field(description="Internal quote identifier.", examples=["qt_001"])
    version: int = Field(
        default=1, ge=1, description="Monotonic record version used for compare-and-set."
    )
    status: QuoteStatus = Field(description="Current lifecycle status.", examples=["BUILDING"])
    customer_name: Optional[str] = Field(
        default=None, description="Customer name on file.", examples=["Jane Doe"]
    )
    location_id: Optional[str] = Field(default=None, description="Store location identifier.")
    line_items: List[QuoteLineItem] = Field(default_factory=list)
    created_by: str = Field(description="Creator actor id.", examples=["associate_1"])
    created_at: datetime
    last_activity_at: datetime
    status_changed_by: Optional[str] = None
    previous_status: Optional[QuoteStatus] = None
    cancel_reason: Optional[CancelReason] = None
    presented_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _cancel_reason_matches_status(self) -> "QuoteRecord":
        if (self.status == "CANCELLED") != (self.cancel_reason is not None):
            raise ValueError("cancel_reason must be set if and only if status is CANCELLED")
        return self

    @property
    def has_priced_line_item(self) -> bool:
        return any(item.is_priced for item in self.line_items)


class SignatureRecord(BaseModel):
    signature_id: str = Field(description="Internal signature identifier.", examples=["sig_001"])
    quote_id: str = Field(description="Owning quote identifier.", examples=["qt_001"])
    signature_type: SignatureType
    signature_data: str = Field(description="Immutable encoded drawing or typed-name payload.")
    signature_hash: str = Field(description="sha256 digest of the signature payload.")
    signer_name: str
    signer_role: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Optional[str] = None
    captured_by: str
    captured_at: datetime
    capture_warnings: List[SignatureWarningCode] = Field(default_factory=list)
    is_valid: bool = True
    invalidated_reason: Optional[str] = None
    invalidated_by: Optional[str] = None
    invalidated_at: Optional[datetime] = None
    superseded_by: Optional[str] = None
    name_verified: bool = False
    name_verified_by: Optional[str] = None
    name_verified_at: Optional[datetime] = None


class AuditEventRecord(BaseModel):
    event_id: str = Field(description="Internal audit event identifier.", examples=["qae_001"])
    quote_id: str = Field(description="Quote the event belongs to.", examples=["qt_001"])
    subject_type: AuditSubjectType
    subject_id: str
    event_kind: AuditEventKind
    actor_id: str
    occurred_at: datetime
    detail: Dict[str, Any] = Field(default_factory=dict)
    sequence_no: int = Field(ge=1, description="Insertion sequence within the quote.")
    previous_hash: str
    event_hash: str


class ClientMetadata(BaseModel):
    ip_address: Optional[str] = Field(default=None, examples=["10.0.0.12"])
    user_agent: Optional[str] = Field(default=None, examples=["Mozilla/5.0 (iPad)"])
    device_info: Optional[str] = Field(default=None, examples=["store-tablet-03"])


class QuoteCreateRequest(BaseModel):
    created_by: str = Field(description="Actor creating the quote.", examples=["associate_1"])
    customer_name: Optional[str] = Field(
        default=None, description="Customer name on file.", examples=["Jane Doe"]
    )
    location_id: Optional[str] = Field(default=None, examples=["loc_downtown"])
    line_items: List[QuoteLineItem] = Field(default_factory=list)


class QuoteLineItemsUpdateRequest(BaseModel):
    actor_id: str = Field(description="Actor editing the quote.", examples=["associate_1"])
    line_items: List[QuoteLineItem] = Field(description="Full replacement set of line items.")


class TransitionContext(BaseModel):
    actor_id: str = Field(description="Actor requesting the transition.", examples=["associate_1"])
    actor_role: ActorRole = Field(default="SALES_ASSOCIATE", examples=["MANAGER"])
    cancel_reason: Optional[CancelReason] = Field(
        default=None,
        description="Required when the target status is CANCELLED.",
        examples=["customer_changed_mind"],
    )
    comment: Optional[str] = Field(default=None, description="Free-text comment for the audit.")
    expected_version: Optional[int] = Field(
        default=None, ge=1, description="Optimistic concurrency guard on the quote version."
    )
    expected_status: Optional[QuoteStatus] = Field(
        default=None, description="Optimistic concurrency guard on the current status."
    )


class QuoteTransitionRequest(TransitionContext):
    target_status: QuoteStatus = Field(description="Requested next status.", examples=["SIGNED"])

    @field_validator("actor_id")
    @classmethod
    def _reject_reserved_actor(cls, value: str) -> str:
        if value.strip().lower().startswith("system:"):
            raise ValueError("actor ids in the system: namespace are reserved")
        return value


class QuoteResumeRequest(BaseModel):
    actor_id: str = Field(description="Actor resuming the quote.", examples=["associate_1"])


class SignatureCaptureRequest(BaseModel):
    signature_type: SignatureType = Field(examples=["EXAM"])
    signature_data: str = Field(
        description="data:image/<format>;base64,<payload> drawing or typed:<name> payload.",
        examples=["data:image/png;base64,iVBORw0KGgo="],
    )
    signer_name: str = Field(default="", examples=["Jane Doe"])
    signer_role: Optional[str] = Field(default=None, examples=["PATIENT"])
    captured_by: str = Field(
        description="Associate operating the device.", examples=["associate_1"]
    )
    client_meta: ClientMetadata = Field(default_factory=ClientMetadata)


class SignatureWarning(BaseModel):
    code: SignatureWarningCode
    message: str


class SignatureCaptureResult(BaseModel):
    success: bool
    signature_id: Optional[str] = None
    superseded_signature_id: Optional[str] = None
    warnings: List[SignatureWarning] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class SignatureInvalidateRequest(BaseModel):
    reason: str = Field(min_length=1, examples=["Customer requested re-sign"])
    invalidated_by: str = Field(examples=["manager_1"])


class SignerNameVerificationRequest(BaseModel):
    verified_by: str = Field(examples=["associate_2"])


class SignatureMutationResponse(BaseModel):
    signature_id: str
    applied: bool


class WorkflowStatus(BaseModel):
    quote_id: str
    status: QuoteStatus
    is_terminal: bool
    exam_signature_required: bool
    exam_signature_completed: bool
    materials_signature_required: bool
    materials_signature_completed: bool
    can_capture_exam_signature: bool
    can_capture_materials_signature: bool
    can_transition_to_signed: bool
    can_edit_quote: bool
    can_resume_quote: bool
    can_present_quote: bool
    can_cancel_quote: bool
    can_complete_quote: bool
    missing_signature_types: List[SignatureType] = Field(default_factory=list)
    next_step: WorkflowNextStep


class QuoteListResponse(BaseModel):
    items: List[QuoteRecord]
    next_cursor: Optional[str] = None


class QuoteSignaturesResponse(BaseModel):
    quote_id: str
    signatures: List[SignatureRecord]


class QuoteHistoryResponse(BaseModel):
    quote_id: str
    events: List[AuditEventRecord]


class AuditChainVerification(BaseModel):
    quote_id: str
    verified: bool
    event_count: int
    broken_event_id: Optional[str] = None


class ExpirationSweepRequest(BaseModel):
    dry_run: bool = Field(
        default=False, description="Report candidates without expiring them.", examples=[True]
    )
    now: Optional[datetime] = Field(
        default=None,
        description="Reference time for the inactivity cutoff; defaults to the service clock.",
        examples=["2026-03-01T00:00:00Z"],
    )


class ExpirationSweepFailure(BaseModel):
    quote_id: str
    error: str


class ExpirationSweepResult(BaseModel):
    dry_run: bool
    cutoff: datetime
    quotes_checked: int
    quotes_expired: int
    candidate_quote_ids: List[str] = Field(default_factory=list)
    expired_quote_ids: List[str] = Field(default_factory=list)
    failures: List[ExpirationSweepFailure] = Field(default_factory=list)


class QuoteSupportabilityConfigResponse(BaseModel):
    store_backend: str
    backend_ready: bool
    backend_init_error: Optional[str] = None
    lifecycle_enabled: bool
    support_apis_enabled: bool
    expiration_sweep_api_enabled: bool
    expiration_threshold_days: int
    expiration_max_quotes_per_run: int
    signature_duplicate_window_seconds: int
    signature_replacement_policy: SignatureReplacementPolicy
