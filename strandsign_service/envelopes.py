"""
Envelope storage and the signing flow.

Envelopes are stored as one row with the signers embedded as JSON and a
version column. Every write is a compare-and-swap on that version, and the
sign step re-reads and re-validates the envelope on each attempt, so two
concurrent signatures on one envelope can never both pass against stale
state.

Anchoring happens after the signature is committed and is recorded with a
second guarded write. A failed anchor leaves a placeholder reference; it
never undoes the signature.
"""

import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional, Tuple

from strandsign import AnchorService, EnvelopeSigning
from strandsign.envelope import (
    Envelope,
    EnvelopeStatus,
    SignaturePayload,
    Signer,
    apply_signature,
    check_expiry,
    check_signable,
    new_envelope,
    resolve_view,
)
from strandsign.errors import ConcurrentModification, Expired, Forbidden, NotFound, PaymentFailed
from strandsign.signing import verify_wallet_proof
from strandsign.timeutil import now_rfc3339

from . import identities
from .anchors import anchor_payload, build_payment_verifier
from .db import get_connection, transaction
from .logging_config import audit_log

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 5


# ============================================================
# Persistence
# ============================================================

def _row_to_envelope(row) -> Envelope:
    return Envelope(
        envelope_id=row["envelope_id"],
        title=row["title"],
        document_type=row["document_type"],
        document=row["document"],
        document_hash=row["document_hash"],
        created_by=row["created_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        signers=[Signer.from_dict(s) for s in json.loads(row["signers_json"])],
        status=EnvelopeStatus(row["status"]),
        expires_at=row["expires_at"],
        anchor_txid=row["anchor_txid"],
        anchor_state=row["anchor_state"],
        metadata=json.loads(row["metadata_json"]),
        version=row["version"],
    )


def _signers_json(envelope: Envelope) -> str:
    return json.dumps([s.to_dict(include_token=True) for s in envelope.signers], sort_keys=True)


def load(envelope_id: str) -> Envelope:
    conn = get_connection()
    row = conn.execute("SELECT * FROM envelopes WHERE envelope_id=?", (envelope_id,)).fetchone()
    if row is None:
        raise NotFound(f"Envelope {envelope_id} not found")
    return _row_to_envelope(row)


def save(envelope: Envelope, payment: Optional[Tuple[str, str, int]] = None) -> bool:
    """
    Write an envelope if nobody else has since. Returns False on a version
    mismatch; on success the object's version is advanced.

    ``payment`` is a ``(payment_txid, signer_id, amount_sats)`` triple spent
    in the same transaction as the write.

    Raises:
        PaymentFailed: the payment was already spent; nothing is written
    """
    with transaction() as conn:
        cur = conn.execute(
            "UPDATE envelopes SET status=?, updated_at=?, anchor_txid=?, anchor_state=?, signers_json=?, "
            "metadata_json=?, version=version+1 WHERE envelope_id=? AND version=?",
            (envelope.status.value, envelope.updated_at, envelope.anchor_txid, envelope.anchor_state,
             _signers_json(envelope), json.dumps(envelope.metadata, sort_keys=True),
             envelope.envelope_id, envelope.version)
        )
        saved = cur.rowcount == 1
        if saved and payment is not None:
            payment_txid, signer_id, amount_sats = payment
            try:
                conn.execute(
                    "INSERT INTO spent_payments(payment_txid, envelope_id, signer_id, amount_sats, spent_at) "
                    "VALUES(?,?,?,?,?)",
                    (payment_txid, envelope.envelope_id, signer_id, amount_sats, envelope.updated_at)
                )
            except sqlite3.IntegrityError as e:
                raise PaymentFailed(
                    "This payment has already been used for a signature", payment_txid=payment_txid
                ) from e
    if saved:
        envelope.version += 1
    return saved


def _payment_spent(payment_txid: str) -> bool:
    conn = get_connection()
    row = conn.execute("SELECT 1 FROM spent_payments WHERE payment_txid=?", (payment_txid,)).fetchone()
    return row is not None


def _persist_expiry(envelope_id: str) -> None:
    for _ in range(MAX_WRITE_ATTEMPTS):
        envelope = load(envelope_id)
        if not check_expiry(envelope):
            return
        if save(envelope):
            audit_log.envelope_expired(envelope_id)
            return
    logger.warning("Expiry of envelope %s not persisted after retries", envelope_id)


# ============================================================
# Operations
# ============================================================

def create(
    handle: str,
    title: str,
    document: str,
    signers: List[Dict[str, Any]],
    document_type: str = "sealed_document",
    expires_at: Optional[str] = None,
    signing_fee_sats: Optional[int] = None,
) -> Envelope:
    metadata = {"signingFeeSats": signing_fee_sats} if signing_fee_sats else {}
    envelope = new_envelope(
        title, document, signers, created_by=handle,
        document_type=document_type, expires_at=expires_at, metadata=metadata,
    )
    with transaction() as conn:
        conn.execute(
            "INSERT INTO envelopes(envelope_id, title, document_type, document, document_hash, status, "
            "created_by, created_at, updated_at, expires_at, anchor_txid, anchor_state, metadata_json, "
            "signers_json, version) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
            (envelope.envelope_id, envelope.title, envelope.document_type, envelope.document,
             envelope.document_hash, envelope.status.value, envelope.created_by, envelope.created_at,
             envelope.updated_at, envelope.expires_at, envelope.anchor_txid, envelope.anchor_state,
             json.dumps(envelope.metadata, sort_keys=True), _signers_json(envelope), envelope.version)
        )
        conn.executemany(
            "INSERT INTO signer_tokens(token, envelope_id, signer_id) VALUES(?,?,?)",
            [(s.token, envelope.envelope_id, s.signer_id) for s in envelope.signers]
        )
    audit_log.envelope_created(envelope.envelope_id, handle, len(envelope.signers))
    return envelope


def list_for(handle: str) -> Dict[str, List[Dict[str, Any]]]:
    """Envelopes the caller created, and envelopes naming the caller as a signer."""
    conn = get_connection()
    rows = conn.execute("SELECT * FROM envelopes ORDER BY created_at DESC").fetchall()
    created, awaiting = [], []
    for row in rows:
        envelope = _row_to_envelope(row)
        if envelope.created_by == handle:
            created.append(envelope.summary())
        elif any(s.handle == handle for s in envelope.signers):
            summary = envelope.summary()
            me = next(s for s in envelope.signers if s.handle == handle)
            summary["myStatus"] = me.status.value
            awaiting.append(summary)
    return {"created": created, "toSign": awaiting}


def get(handle: str, envelope_id: str) -> Dict[str, Any]:
    """Full envelope for a participant. Tokens are shown to the creator only."""
    envelope = load(envelope_id)
    if not envelope.involves(handle):
        audit_log.security_event("envelope_access_denied", severity="low", handle=handle, envelope_id=envelope_id)
        raise Forbidden("You are not a participant in this envelope")
    if check_expiry(envelope):
        _persist_expiry(envelope_id)
    return envelope.to_dict(include_tokens=envelope.created_by == handle)


def _lookup_token(token: str) -> str:
    conn = get_connection()
    row = conn.execute("SELECT envelope_id FROM signer_tokens WHERE token=?", (token,)).fetchone()
    if row is None:
        raise NotFound("No signer matches this signing link")
    return row["envelope_id"]


def resolve_token(token: str) -> Dict[str, Any]:
    """What a signing link shows. Observing a passed deadline persists the expiry."""
    envelope_id = _lookup_token(token)
    envelope = load(envelope_id)
    if check_expiry(envelope):
        _persist_expiry(envelope_id)
    return resolve_view(envelope, token)


def sign(token: str, payload: SignaturePayload, anchor: AnchorService) -> Dict[str, Any]:
    """
    Sign through a capability token.

    The sign checks run against the stored envelope before the payment of a
    fee-gated envelope is looked at, and again on every write attempt. A
    payment transaction is spent in the same write as the signature.
    After the commit, the per-signer anchor and, for the signature that
    completed the envelope, the consolidated anchor are attempted and recorded.

    Raises:
        NotFound, AlreadyCompleted, Expired, OutOfOrder, AlreadySigned,
        PaymentFailed, ConcurrentModification
    """
    envelope_id = _lookup_token(token)
    envelope = load(envelope_id)
    try:
        signer = check_signable(envelope, token)
    except Expired:
        _persist_expiry(envelope_id)
        raise

    verified = None
    if payload.wallet is not None:
        verified = verify_wallet_proof(payload.wallet, envelope.document_hash)
        if verified is False:
            audit_log.signature_rejected(envelope_id, "wallet_proof_invalid")

    paid_sats = None
    payment = None
    fee = envelope.signing_fee_sats
    if fee:
        payment_txid = payload.wallet.payment_txid if payload.wallet else None
        if payment_txid and _payment_spent(payment_txid):
            audit_log.signature_rejected(envelope_id, "payment_reused")
            raise PaymentFailed("This payment has already been used for a signature", payment_txid=payment_txid)
        paid_sats = build_payment_verifier(anchor).verify(payment_txid, fee)
        payment = (payment_txid, signer.signer_id, paid_sats)

    for _ in range(MAX_WRITE_ATTEMPTS):
        envelope = load(envelope_id)
        try:
            signer = apply_signature(envelope, token, payload, signature_verified=verified)
        except Expired:
            _persist_expiry(envelope_id)
            raise
        if save(envelope, payment):
            break
        logger.info("Envelope %s changed during signing, retrying", envelope_id)
    else:
        raise ConcurrentModification("Envelope is being modified, try again")

    completed = envelope.status == EnvelopeStatus.COMPLETED
    audit_log.signature_recorded(envelope_id, signer.order, envelope.status.value)

    ref, state = anchor_payload(
        anchor,
        EnvelopeSigning(
            envelope_id=envelope.envelope_id,
            document_hash=envelope.document_hash,
            signer_name=signer.name,
            signed_at=signer.signed_at,
            envelope_title=envelope.title,
            signer_wallet=payload.wallet.address if payload.wallet else None,
            wallet_type=payload.wallet.wallet_type if payload.wallet else None,
            signer_order=signer.order,
        ),
        f"envelope:{envelope_id}:signer:{signer.order}",
    )
    envelope = _record_signer_anchor(envelope_id, signer.signer_id, ref, state)

    if completed:
        envelope = _anchor_completion(envelope_id, anchor)

    if paid_sats is not None and signer.handle:
        identities.record_paid_signing(
            signer.handle, envelope_id, payload.wallet.payment_txid, paid_sats, anchor,
        )

    return {
        "envelope": envelope.summary(),
        "signer": envelope.signer_by_id(signer.signer_id).to_dict(include_token=False),
    }


def _record_signer_anchor(envelope_id: str, signer_id: str, ref: str, state: str) -> Envelope:
    for _ in range(MAX_WRITE_ATTEMPTS):
        envelope = load(envelope_id)
        target = envelope.signer_by_id(signer_id)
        target.anchor_txid = ref
        target.anchor_state = state
        if save(envelope):
            return envelope
    logger.error("Anchor %s for signer %s on envelope %s not recorded", ref, signer_id, envelope_id)
    return load(envelope_id)


def _anchor_completion(envelope_id: str, anchor: AnchorService) -> Envelope:
    """Consolidated anchor over all signers; always leaves a reference or placeholder."""
    envelope = load(envelope_id)
    last = max(envelope.signers, key=lambda s: s.signed_at or "")
    ref, state = anchor_payload(
        anchor,
        EnvelopeSigning(
            envelope_id=envelope.envelope_id,
            document_hash=envelope.document_hash,
            signer_name=last.name,
            signed_at=last.signed_at,
            envelope_title=envelope.title,
            status=EnvelopeStatus.COMPLETED.value,
            signers=[
                {"name": s.name, "order": s.order, "signedAt": s.signed_at, "anchorTxid": s.anchor_txid}
                for s in envelope.signers
            ],
        ),
        f"envelope:{envelope_id}:completed",
    )
    for _ in range(MAX_WRITE_ATTEMPTS):
        envelope.anchor_txid = ref
        envelope.anchor_state = state
        envelope.updated_at = now_rfc3339()
        if save(envelope):
            break
        envelope = load(envelope_id)
    else:
        logger.error("Completion anchor %s for envelope %s not recorded", ref, envelope_id)
    audit_log.envelope_completed(envelope_id, ref, state)
    return envelope


def verify_envelope(envelope_id: str, anchor: AnchorService) -> Dict[str, Any]:
    """
    Public verification read: summary, per-signer status and anchors, and
    the verification result for the envelope's consolidated anchor.
    """
    envelope = load(envelope_id)
    if check_expiry(envelope):
        _persist_expiry(envelope_id)
    verification = anchor.verify(envelope.anchor_txid)
    return {
        "envelope": envelope.summary(),
        "signers": [
            {
                "name": s.name,
                "order": s.order,
                "status": s.status.value,
                "signedAt": s.signed_at,
                "anchorTxid": s.anchor_txid,
                "explorerUrl": anchor.explorer_url(s.anchor_txid),
            }
            for s in envelope.signers
        ],
        "verification": verification.to_dict(),
    }
