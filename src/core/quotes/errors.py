from typing import Optional, Sequence


class QuoteLifecycleError(Exception):
    pass


class QuoteNotFoundError(QuoteLifecycleError):
    pass


class InvalidTransitionError(QuoteLifecycleError):
    def __init__(self, *, from_status: str, to_status: str) -> None:
        super().__init__(f"INVALID_TRANSITION: {from_status} -> {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class PreconditionFailedError(QuoteLifecycleError):
    def __init__(
        self,
        code: str,
        detail: Optional[str] = None,
        *,
        missing_signature_types: Sequence[str] = (),
    ) -> None:
        super().__init__(f"{code}: {detail}" if detail else code)
        self.code = code
        self.missing_signature_types = list(missing_signature_types)


class InvalidStateError(QuoteLifecycleError):
    def __init__(self, code: str, *, current_status: str, expected: Sequence[str]) -> None:
        super().__init__(
            f"{code}: status {current_status}, expected one of {', '.join(expected)}"
        )
        self.code = code
        self.current_status = current_status
        self.expected = list(expected)


class SignatureValidationError(QuoteLifecycleError):
    code = "SIGNATURE_INVALID"


class MalformedPayloadError(SignatureValidationError):
    code = "MALFORMED_PAYLOAD"


class MissingSignerNameError(SignatureValidationError):
    code = "MISSING_SIGNER_NAME"


class ConcurrentModificationError(QuoteLifecycleError):
    pass
