from src.core.quotes.errors import (
    ConcurrentModificationError,
    InvalidStateError,
    InvalidTransitionError,
    MalformedPayloadError,
    MissingSignerNameError,
    PreconditionFailedError,
    QuoteLifecycleError,
    QuoteNotFoundError,
    SignatureValidationError,
)
from src.core.quotes.expiration import ExpirationSweeper
from src.core.quotes.ledger import AuditLedger
from src.core.quotes.models import (
    AuditChainVerification,
    AuditEventRecord,
    ExpirationSweepResult,
    QuoteCreateRequest,
    QuoteRecord,
    SignatureCaptureResult,
    SignatureRecord,
    TransitionContext,
    WorkflowStatus,
)
from src.core.quotes.repository import QuoteRepository
from src.core.quotes.service import QuoteLifecycleService
from src.core.quotes.signatures import SignatureVault
from src.core.quotes.workflow_status import project_workflow_status

__all__ = [
    "AuditChainVerification",
    "AuditEventRecord",
    "AuditLedger",
    "ConcurrentModificationError",
    "ExpirationSweepResult",
    "ExpirationSweeper",
    "InvalidStateError",
    "InvalidTransitionError",
    "MalformedPayloadError",
    "MissingSignerNameError",
    "PreconditionFailedError",
    "QuoteCreateRequest",
    "QuoteLifecycleError",
    "QuoteLifecycleService",
    "QuoteNotFoundError",
    "QuoteRecord",
    "QuoteRepository",
    "SignatureCaptureResult",
    "SignatureRecord",
    "SignatureValidationError",
    "SignatureVault",
    "TransitionContext",
    "WorkflowStatus",
    "project_workflow_status",
]
