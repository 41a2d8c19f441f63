"""
StrandSign error taxonomy.

Every business failure is a StrandSignError carrying a stable machine code
and the HTTP status the service layer answers with. UpstreamFailure and its
subclasses describe ledger and network trouble; they are raised inside the
anchoring layer only and are converted to result values before they reach a
business operation.
"""

from typing import Any, Dict, Optional


class StrandSignError(Exception):
    """Base class for all domain errors."""

    code = "ERROR"
    http_status = 400

    def __init__(self, message: str = "", code: Optional[str] = None, **details: Any):
        self.message = message or self.code
        if code:
            self.code = code
        self.details: Dict[str, Any] = details
        super().__init__(f"{self.code}: {self.message}")

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.code, "message": self.message}
        body.update(self.details)
        return body


class InvalidRequest(StrandSignError):
    code = "INVALID_REQUEST"
    http_status = 400


class NotFound(StrandSignError):
    code = "NOT_FOUND"
    http_status = 404


class Forbidden(StrandSignError):
    code = "FORBIDDEN"
    http_status = 403


class Conflict(StrandSignError):
    code = "CONFLICT"
    http_status = 409


class OutOfOrder(Conflict):
    """A lower-order signer is still pending."""

    code = "OUT_OF_ORDER"

    def __init__(self, blocking_signer: str, blocking_order: int):
        super().__init__(
            f"Waiting for {blocking_signer} to sign first",
            blocking_signer=blocking_signer,
            blocking_order=blocking_order,
        )
        self.blocking_signer = blocking_signer
        self.blocking_order = blocking_order


class AlreadySigned(Conflict):
    code = "ALREADY_SIGNED"


class AlreadyCompleted(Conflict):
    code = "ALREADY_COMPLETED"


class DuplicateStrand(Conflict):
    code = "DUPLICATE_STRAND"


class RequestAlreadyAnswered(Conflict):
    code = "ALREADY_RESPONDED"


class ConcurrentModification(Conflict):
    code = "CONCURRENT_MODIFICATION"


class Gone(Conflict):
    """The resource existed but has been consumed."""

    code = "GONE"
    http_status = 410


class AlreadyClaimed(Gone):
    code = "ALREADY_CLAIMED"


class Expired(StrandSignError):
    code = "EXPIRED"
    http_status = 410


class PaymentFailed(StrandSignError):
    code = "PAYMENT_FAILED"
    http_status = 402


class UpstreamFailure(StrandSignError):
    """Ledger, network or broadcast failure."""

    code = "UPSTREAM_FAILURE"
    http_status = 502


class LedgerError(UpstreamFailure):
    code = "LEDGER_ERROR"


class AnchorTimeout(UpstreamFailure):
    code = "ANCHOR_TIMEOUT"


class InsufficientFunds(UpstreamFailure):
    code = "INSUFFICIENT_FUNDS"


class AnchorConfigurationError(UpstreamFailure):
    code = "ANCHOR_NOT_CONFIGURED"
