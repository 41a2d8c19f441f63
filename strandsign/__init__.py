"""
StrandSign

Ledger-anchored identity strands and ordered multi-party document signing.

Three parts:
- Anchoring: typed JSON payloads written to a data-only ledger output,
  verified later by re-fetching the transaction. Best-effort; failures
  yield placeholder references instead of exceptions.
- Identity strands: an append-only set of attestation facts per identity,
  with an additive score and a priority-gated strength level.
- Envelopes: a document plus ordered signers, advancing
  pending -> partially_signed -> completed (or expired).

Usage:
    from strandsign import (
        AnchorService,
        WhatsOnChainClient,
        AnchorKey,
        EnvelopeSigning,
        new_envelope,
        apply_signature,
        derive_level,
    )

    anchors = AnchorService(WhatsOnChainClient(), key=AnchorKey.from_wif(wif, address))
    result = anchors.anchor(EnvelopeSigning(envelope_id=..., document_hash=..., ...))
    ref, state = result.outcome()   # txid or "pending-..." placeholder

    envelope = new_envelope("NDA", html, [{"name": "Alice"}, {"name": "Bob"}], created_by="alice")
    apply_signature(envelope, envelope.signers[0].token, SignaturePayload("typed", "Alice"))

    derive_level([("kyc", "veriff")])   # IdentityLevel(4, "Sovereign")
"""

__version__ = "1.0.0"

# Canonicalization and hashing
from .canonicalization import canonicalize, canonicalize_str
from .hashing import sha256_hex, content_hash, document_hash, verify_hash

# Errors
from .errors import (
    StrandSignError,
    InvalidRequest,
    NotFound,
    Forbidden,
    Conflict,
    OutOfOrder,
    AlreadySigned,
    AlreadyCompleted,
    DuplicateStrand,
    RequestAlreadyAnswered,
    Gone,
    AlreadyClaimed,
    Expired,
    PaymentFailed,
    UpstreamFailure,
    LedgerError,
    AnchorTimeout,
    InsufficientFunds,
    AnchorConfigurationError,
)

# Payloads
from .payloads import (
    PROTOCOL_TAG,
    CONTENT_TYPE,
    PayloadType,
    AnchoredPayload,
    SignatureRegistration,
    DocumentSignature,
    EnvelopeSigning,
    IdentityRoot,
    IdentityStrand,
    IpThread,
    parse_document,
)

# Ledger and anchoring
from .ledger import LedgerClient, WhatsOnChainClient, SecondaryBroadcaster, Deadline, Utxo
from .anchoring import (
    AnchorService,
    AnchorKey,
    AnchorResult,
    AnchorVerification,
    AnchorState,
    ConfirmationCache,
    InMemoryConfirmationCache,
    Confirmation,
    is_placeholder,
    make_placeholder,
    explorer_url,
)
from .payments import PaymentVerifier

# Strands
from .strands import (
    StrandType,
    Strand,
    IdentityLevel,
    compute_score,
    derive_level,
    strand_points,
    validate_strand,
    build_metadata,
)

# Envelopes
from .envelope import (
    Envelope,
    Signer,
    EnvelopeStatus,
    SignerStatus,
    SignaturePayload,
    WalletProof,
    new_envelope,
    apply_signature,
    check_signable,
    aggregate_status,
    check_expiry,
)
from .signing import build_challenge, verify_wallet_proof


__all__ = [
    "__version__",

    # Canonicalization / hashing
    "canonicalize",
    "canonicalize_str",
    "sha256_hex",
    "content_hash",
    "document_hash",
    "verify_hash",

    # Errors
    "StrandSignError",
    "InvalidRequest",
    "NotFound",
    "Forbidden",
    "Conflict",
    "OutOfOrder",
    "AlreadySigned",
    "AlreadyCompleted",
    "DuplicateStrand",
    "RequestAlreadyAnswered",
    "Gone",
    "AlreadyClaimed",
    "Expired",
    "PaymentFailed",
    "UpstreamFailure",
    "LedgerError",
    "AnchorTimeout",
    "InsufficientFunds",
    "AnchorConfigurationError",

    # Payloads
    "PROTOCOL_TAG",
    "CONTENT_TYPE",
    "PayloadType",
    "AnchoredPayload",
    "SignatureRegistration",
    "DocumentSignature",
    "EnvelopeSigning",
    "IdentityRoot",
    "IdentityStrand",
    "IpThread",
    "parse_document",

    # Ledger / anchoring
    "LedgerClient",
    "WhatsOnChainClient",
    "SecondaryBroadcaster",
    "Deadline",
    "Utxo",
    "AnchorService",
    "AnchorKey",
    "AnchorResult",
    "AnchorVerification",
    "AnchorState",
    "ConfirmationCache",
    "InMemoryConfirmationCache",
    "Confirmation",
    "is_placeholder",
    "make_placeholder",
    "explorer_url",
    "PaymentVerifier",

    # Strands
    "StrandType",
    "Strand",
    "IdentityLevel",
    "compute_score",
    "derive_level",
    "strand_points",
    "validate_strand",
    "build_metadata",

    # Envelopes
    "Envelope",
    "Signer",
    "EnvelopeStatus",
    "SignerStatus",
    "SignaturePayload",
    "WalletProof",
    "new_envelope",
    "apply_signature",
    "check_signable",
    "aggregate_status",
    "check_expiry",
    "build_challenge",
    "verify_wallet_proof",
]
