"""
StrandSign Anchored Payload Schema

Every anchor carries one JSON document inside a data-only ledger output.
All documents share the header fields:

    {protocol, version, type, timestamp}

and add fields specific to their ``type``. Identity payloads additionally
carry ``version "2.0"`` and a ``schema`` name.

Field names on the wire are camelCase; the dataclasses below use snake_case
and convert on the way in and out. Optional fields that are None are left
out of the document entirely so that field presence is type-specific.

Consumers must tolerate unknown extra fields and use ``type`` as the
discriminator for which required fields to expect.
"""

import json
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type

from .canonicalization import canonicalize
from .errors import InvalidRequest
from .hashing import sha256_hex
from .timeutil import now_rfc3339

PROTOCOL_TAG = "b0ase-bitsign"
CONTENT_TYPE = "application/json"

HEADER_FIELDS = ("protocol", "version", "type", "timestamp")


class PayloadType(str, Enum):
    SIGNATURE_REGISTRATION = "signature_registration"
    DOCUMENT_SIGNATURE = "document_signature"
    ENVELOPE_SIGNING = "envelope_signing"
    IDENTITY_ROOT = "identity_root"
    IDENTITY_STRAND = "identity_strand"
    IP_THREAD = "ip_thread"


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


class AnchoredPayload:
    """Base for all payload dataclasses."""

    payload_type: ClassVar[PayloadType]
    version: ClassVar[str] = "1.0"
    schema: ClassVar[Optional[str]] = None
    required: ClassVar[Tuple[str, ...]] = ()

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "protocol": PROTOCOL_TAG,
            "version": self.version,
            "type": self.payload_type.value,
        }
        if self.schema:
            doc["schema"] = self.schema
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None:
                doc[_camel(f.name)] = value
        return doc

    def to_bytes(self) -> bytes:
        """Canonical JSON bytes as embedded in the ledger output."""
        return canonicalize(self.to_document())

    def content_hash(self) -> str:
        return sha256_hex(self.to_bytes())

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'AnchoredPayload':
        kwargs = {}
        for f in fields(cls):
            key = _camel(f.name)
            if key in doc:
                kwargs[f.name] = doc[key]
        return cls(**kwargs)


@dataclass
class SignatureRegistration(AnchoredPayload):
    """A vault artifact (drawn signature, photo, document) registered by its owner."""

    payload_type: ClassVar[PayloadType] = PayloadType.SIGNATURE_REGISTRATION
    required: ClassVar[Tuple[str, ...]] = ("signatureType", "signatureHash", "ownerName", "createdAt")

    signature_type: str
    signature_hash: str
    owner_name: str
    created_at: str
    signature_id: Optional[str] = None
    wallet_address: Optional[str] = None
    wallet_type: Optional[str] = None
    timestamp: str = field(default_factory=now_rfc3339)


@dataclass
class DocumentSignature(AnchoredPayload):
    payload_type: ClassVar[PayloadType] = PayloadType.DOCUMENT_SIGNATURE
    required: ClassVar[Tuple[str, ...]] = ("documentHash", "signerName", "signedAt")

    document_hash: str
    signer_name: str
    signed_at: str
    document_signature_id: Optional[str] = None
    signature_id: Optional[str] = None
    signer_wallet: Optional[str] = None
    wallet_type: Optional[str] = None
    timestamp: str = field(default_factory=now_rfc3339)


@dataclass
class EnvelopeSigning(AnchoredPayload):
    """
    One signer's signature on an envelope, or the consolidated summary
    written once an envelope completes (``signers`` is set on the summary).
    """

    payload_type: ClassVar[PayloadType] = PayloadType.ENVELOPE_SIGNING
    required: ClassVar[Tuple[str, ...]] = ("envelopeId", "documentHash", "signerName", "signedAt")

    envelope_id: str
    document_hash: str
    signer_name: str
    signed_at: str
    envelope_title: Optional[str] = None
    signer_wallet: Optional[str] = None
    wallet_type: Optional[str] = None
    signer_order: Optional[int] = None
    status: Optional[str] = None
    signers: Optional[List[Dict[str, Any]]] = None
    timestamp: str = field(default_factory=now_rfc3339)


@dataclass
class IdentityRoot(AnchoredPayload):
    payload_type: ClassVar[PayloadType] = PayloadType.IDENTITY_ROOT
    version: ClassVar[str] = "2.0"
    schema: ClassVar[Optional[str]] = "401-identity-root-v1"
    required: ClassVar[Tuple[str, ...]] = ("userHandle", "tokenSymbol")

    user_handle: str
    token_symbol: str
    wallet_type: Optional[str] = None
    timestamp: str = field(default_factory=now_rfc3339)


@dataclass
class IdentityStrand(AnchoredPayload):
    payload_type: ClassVar[PayloadType] = PayloadType.IDENTITY_STRAND
    version: ClassVar[str] = "2.0"
    schema: ClassVar[Optional[str]] = "401-identity-strand-v1"
    required: ClassVar[Tuple[str, ...]] = ("rootTxid", "strandType")

    root_txid: str
    strand_type: str
    strand_subtype: Optional[str] = None
    strand_label: Optional[str] = None
    user_handle: Optional[str] = None
    timestamp: str = field(default_factory=now_rfc3339)


@dataclass
class IpThread(AnchoredPayload):
    payload_type: ClassVar[PayloadType] = PayloadType.IP_THREAD
    version: ClassVar[str] = "2.0"
    schema: ClassVar[Optional[str]] = "401-ip-thread-v1"
    required: ClassVar[Tuple[str, ...]] = (
        "rootTxid", "documentHash", "documentType", "threadTitle", "threadSequence",
    )

    root_txid: str
    document_hash: str
    thread_title: str
    document_type: str = "DOCUMENT"
    thread_sequence: int = 1
    user_handle: Optional[str] = None
    timestamp: str = field(default_factory=now_rfc3339)


PAYLOAD_TYPES: Dict[str, Type[AnchoredPayload]] = {
    PayloadType.SIGNATURE_REGISTRATION.value: SignatureRegistration,
    PayloadType.DOCUMENT_SIGNATURE.value: DocumentSignature,
    PayloadType.ENVELOPE_SIGNING.value: EnvelopeSigning,
    PayloadType.IDENTITY_ROOT.value: IdentityRoot,
    PayloadType.IDENTITY_STRAND.value: IdentityStrand,
    PayloadType.IP_THREAD.value: IpThread,
}


def validate_document(doc: Any) -> Type[AnchoredPayload]:
    """
    Check an anchored document against the schema for its ``type``.

    Extra fields are ignored. Returns the payload class on success.

    Raises:
        InvalidRequest: wrong protocol, unknown type or a missing required field
    """
    if not isinstance(doc, dict):
        raise InvalidRequest("Anchored payload must be a JSON object")
    if doc.get("protocol") != PROTOCOL_TAG:
        raise InvalidRequest(f"Unexpected protocol: {doc.get('protocol')!r}")
    payload_cls = PAYLOAD_TYPES.get(doc.get("type"))
    if payload_cls is None:
        raise InvalidRequest(f"Unknown payload type: {doc.get('type')!r}")
    missing = [name for name in HEADER_FIELDS + payload_cls.required if doc.get(name) is None]
    if missing:
        raise InvalidRequest(f"Missing fields for {doc['type']}: {', '.join(missing)}", missing=missing)
    return payload_cls


def parse_document(doc: Dict[str, Any]) -> AnchoredPayload:
    """Validate and build the typed payload for an anchored document."""
    payload_cls = validate_document(doc)
    return payload_cls.from_document(doc)


def parse_payload_bytes(data: bytes) -> Dict[str, Any]:
    """Decode embedded JSON bytes and validate them. Returns the raw document."""
    try:
        doc = json.loads(data.decode('utf-8'))
    except (UnicodeDecodeError, ValueError) as e:
        raise InvalidRequest(f"Embedded payload is not valid JSON: {e}") from e
    validate_document(doc)
    return doc
