"""
StrandSign Envelope State Machine

An envelope is a document plus an ordered list of signers.

States:
    pending -> partially_signed -> completed
    pending | partially_signed -> expired     (once expires_at has passed)

completed and expired are terminal. Expiry is observed lazily: any access
that finds the deadline passed moves the envelope to expired, and the
caller persists that transition.

Sign validation runs in a fixed order against the current state:

    1. token matches a signer                      NotFound
    2. envelope not terminal (expiry applied)      AlreadyCompleted / Expired
    3. no pending signer with a lower order        OutOfOrder
    4. signer still pending                        AlreadySigned

Everything here is pure: functions mutate the Envelope object they are
given and never touch storage or the network.
"""

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .anchoring import AnchorState
from .errors import AlreadyCompleted, AlreadySigned, Expired, InvalidRequest, NotFound, OutOfOrder
from .hashing import document_hash as hash_document
from .timeutil import parse_optional, parse_rfc3339, to_rfc3339, utc_now


class EnvelopeStatus(str, Enum):
    PENDING = "pending"
    PARTIALLY_SIGNED = "partially_signed"
    COMPLETED = "completed"
    EXPIRED = "expired"


class SignerStatus(str, Enum):
    PENDING = "pending"
    SIGNED = "signed"


TERMINAL_STATUSES = (EnvelopeStatus.COMPLETED, EnvelopeStatus.EXPIRED)


def new_token() -> str:
    """Opaque, unguessable signing capability."""
    return secrets.token_urlsafe(32)


@dataclass
class WalletProof:
    """Optional wallet verification block attached to a signature."""
    wallet_type: str
    address: str
    signature: str
    message: str
    payment_txid: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "walletType": self.wallet_type,
            "address": self.address,
            "signature": self.signature,
            "message": self.message,
            "paymentTxid": self.payment_txid,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['WalletProof']:
        if not data:
            return None
        return cls(
            wallet_type=data["walletType"],
            address=data["address"],
            signature=data["signature"],
            message=data["message"],
            payment_txid=data.get("paymentTxid"),
        )


@dataclass
class SignaturePayload:
    """A drawn or typed signature artifact."""
    signature_type: str
    data: str
    wallet: Optional[WalletProof] = None
    vault_item_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signatureType": self.signature_type,
            "data": self.data,
            "wallet": self.wallet.to_dict() if self.wallet else None,
            "vaultItemId": self.vault_item_id,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['SignaturePayload']:
        if not data:
            return None
        return cls(
            signature_type=data["signatureType"],
            data=data["data"],
            wallet=WalletProof.from_dict(data.get("wallet")),
            vault_item_id=data.get("vaultItemId"),
        )


@dataclass
class Signer:
    signer_id: str
    name: str
    order: int
    token: str
    email: Optional[str] = None
    handle: Optional[str] = None
    role: str = "Signer"
    status: SignerStatus = SignerStatus.PENDING
    signed_at: Optional[str] = None
    signature: Optional[SignaturePayload] = None
    signature_verified: Optional[bool] = None
    anchor_txid: Optional[str] = None
    anchor_state: str = AnchorState.NOT_ATTEMPTED.value

    def is_signed(self) -> bool:
        return self.status == SignerStatus.SIGNED

    def to_dict(self, include_token: bool = True) -> Dict[str, Any]:
        data = {
            "id": self.signer_id,
            "name": self.name,
            "order": self.order,
            "email": self.email,
            "handle": self.handle,
            "role": self.role,
            "status": self.status.value,
            "signedAt": self.signed_at,
            "signature": self.signature.to_dict() if self.signature else None,
            "signatureVerified": self.signature_verified,
            "anchorTxid": self.anchor_txid,
            "anchorState": self.anchor_state,
        }
        if include_token:
            data["token"] = self.token
        return data

    def public_view(self) -> Dict[str, Any]:
        """Status view shown to other parties: no token, contact or artifact."""
        return {
            "name": self.name,
            "order": self.order,
            "role": self.role,
            "status": self.status.value,
            "signedAt": self.signed_at,
            "anchorTxid": self.anchor_txid,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Signer':
        return cls(
            signer_id=data["id"],
            name=data["name"],
            order=int(data["order"]),
            token=data["token"],
            email=data.get("email"),
            handle=data.get("handle"),
            role=data.get("role") or "Signer",
            status=SignerStatus(data.get("status", "pending")),
            signed_at=data.get("signedAt"),
            signature=SignaturePayload.from_dict(data.get("signature")),
            signature_verified=data.get("signatureVerified"),
            anchor_txid=data.get("anchorTxid"),
            anchor_state=data.get("anchorState") or AnchorState.NOT_ATTEMPTED.value,
        )


@dataclass
class Envelope:
    envelope_id: str
    title: str
    document_type: str
    document: str
    document_hash: str
    created_by: str
    created_at: str
    updated_at: str
    signers: List[Signer] = field(default_factory=list)
    status: EnvelopeStatus = EnvelopeStatus.PENDING
    expires_at: Optional[str] = None
    anchor_txid: Optional[str] = None
    anchor_state: str = AnchorState.NOT_ATTEMPTED.value
    metadata: Dict[str, Any] = field(default_factory=dict)
    version: int = 0

    @property
    def signing_fee_sats(self) -> int:
        return int(self.metadata.get("signingFeeSats") or 0)

    def signer_by_token(self, token: str) -> Signer:
        for signer in self.signers:
            if secrets.compare_digest(signer.token, token):
                return signer
        raise NotFound("No signer matches this signing link")

    def signer_by_id(self, signer_id: str) -> Signer:
        for signer in self.signers:
            if signer.signer_id == signer_id:
                return signer
        raise NotFound(f"Signer {signer_id} not found")

    def involves(self, handle: str) -> bool:
        return self.created_by == handle or any(s.handle == handle for s in self.signers)

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.envelope_id,
            "title": self.title,
            "documentType": self.document_type,
            "documentHash": self.document_hash,
            "status": self.status.value,
            "createdBy": self.created_by,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "expiresAt": self.expires_at,
            "anchorTxid": self.anchor_txid,
            "anchorState": self.anchor_state,
            "signingFeeSats": self.signing_fee_sats or None,
        }

    def to_dict(self, include_tokens: bool = False) -> Dict[str, Any]:
        data = self.summary()
        data["document"] = self.document
        data["signers"] = [s.to_dict(include_token=include_tokens) for s in self.signers]
        return data


# ============================================================
# Operations
# ============================================================

def new_envelope(
    title: str,
    document: str,
    signers: List[Dict[str, Any]],
    created_by: str,
    document_type: str = "sealed_document",
    expires_at: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Envelope:
    """
    Create an envelope with fresh signer tokens.

    Each signer spec is a dict with ``name`` and optional ``email``,
    ``handle``, ``role`` and ``order``. A signer without an explicit order
    takes its 1-based position in the list. Signers are stored sorted by
    order, ties keeping list order.
    """
    if not title or not title.strip():
        raise InvalidRequest("Envelope title is required")
    if not document:
        raise InvalidRequest("Envelope document is required")
    if not signers:
        raise InvalidRequest("At least one signer is required")

    now = now or utc_now()
    if expires_at:
        try:
            deadline = parse_rfc3339(expires_at)
        except ValueError as e:
            raise InvalidRequest("Expiry must be an RFC 3339 timestamp", field="expiresAt") from e
        if deadline <= now:
            raise InvalidRequest("Expiry must be in the future", field="expiresAt")
        expires_at = to_rfc3339(deadline)

    built = []
    for position, spec in enumerate(signers, start=1):
        name = (spec.get("name") or "").strip()
        if not name:
            raise InvalidRequest(f"Signer {position} has no name")
        order = spec.get("order")
        built.append(Signer(
            signer_id=uuid.uuid4().hex,
            name=name,
            order=int(order) if order is not None else position,
            token=new_token(),
            email=spec.get("email"),
            handle=spec.get("handle"),
            role=spec.get("role") or "Signer",
        ))
    built.sort(key=lambda s: s.order)

    stamp = to_rfc3339(now)
    return Envelope(
        envelope_id=uuid.uuid4().hex,
        title=title.strip(),
        document_type=document_type,
        document=document,
        document_hash=hash_document(document),
        created_by=created_by,
        created_at=stamp,
        updated_at=stamp,
        signers=built,
        expires_at=expires_at,
        metadata=dict(metadata or {}),
    )


def aggregate_status(signers: List[Signer]) -> EnvelopeStatus:
    """completed iff every signer signed; partially_signed iff some did."""
    signed = [s for s in signers if s.is_signed()]
    if signers and len(signed) == len(signers):
        return EnvelopeStatus.COMPLETED
    if signed:
        return EnvelopeStatus.PARTIALLY_SIGNED
    return EnvelopeStatus.PENDING


def check_expiry(envelope: Envelope, now: Optional[datetime] = None) -> bool:
    """
    Apply a lazily observed expiry. Returns True when the status changed
    and the caller must persist it.
    """
    if envelope.status in TERMINAL_STATUSES or not envelope.expires_at:
        return False
    now = now or utc_now()
    if now > parse_optional(envelope.expires_at):
        envelope.status = EnvelopeStatus.EXPIRED
        envelope.updated_at = to_rfc3339(now)
        return True
    return False


def blocking_signer(envelope: Envelope, signer: Signer) -> Optional[Signer]:
    """Lowest-order signer still pending with an order below ``signer``'s."""
    waiting = [s for s in envelope.signers if s.order < signer.order and not s.is_signed()]
    return min(waiting, key=lambda s: s.order) if waiting else None


def check_signable(envelope: Envelope, token: str, now: Optional[datetime] = None) -> Signer:
    """
    Run the sign checks without recording anything. Returns the signer.

    An observed expiry is applied to the envelope before Expired is raised,
    so the caller can persist it.
    """
    now = now or utc_now()
    signer = envelope.signer_by_token(token)

    check_expiry(envelope, now)
    if envelope.status == EnvelopeStatus.COMPLETED:
        raise AlreadyCompleted("This envelope has already been completed")
    if envelope.status == EnvelopeStatus.EXPIRED:
        raise Expired("This envelope has expired", expires_at=envelope.expires_at)

    blocker = blocking_signer(envelope, signer)
    if blocker is not None:
        raise OutOfOrder(blocker.name, blocker.order)

    if signer.is_signed():
        raise AlreadySigned("You have already signed this document", signed_at=signer.signed_at)
    return signer


def apply_signature(
    envelope: Envelope,
    token: str,
    payload: SignaturePayload,
    now: Optional[datetime] = None,
    signature_verified: Optional[bool] = None,
) -> Signer:
    """
    Record a signature on the envelope in place.

    On Expired the envelope has already been moved to ``expired`` and the
    caller should persist it. On every other failure the envelope is
    unchanged.
    """
    now = now or utc_now()
    signer = check_signable(envelope, token, now)

    stamp = to_rfc3339(now)
    signer.status = SignerStatus.SIGNED
    signer.signed_at = stamp
    signer.signature = payload
    signer.signature_verified = signature_verified
    envelope.status = aggregate_status(envelope.signers)
    envelope.updated_at = stamp
    return signer


def resolve_view(envelope: Envelope, token: str) -> Dict[str, Any]:
    """What a signing link shows: the document, your signer record, everyone else's status."""
    signer = envelope.signer_by_token(token)
    blocker = blocking_signer(envelope, signer)
    return {
        "envelope": {
            "id": envelope.envelope_id,
            "title": envelope.title,
            "documentType": envelope.document_type,
            "document": envelope.document,
            "documentHash": envelope.document_hash,
            "status": envelope.status.value,
            "expiresAt": envelope.expires_at,
            "signingFeeSats": envelope.signing_fee_sats or None,
        },
        "signer": signer.to_dict(include_token=False),
        "otherSigners": [s.public_view() for s in envelope.signers if s.signer_id != signer.signer_id],
        "canSign": (
            not signer.is_signed()
            and envelope.status not in TERMINAL_STATUSES
            and blocker is None
        ),
        "waitingFor": blocker.name if blocker else None,
    }
