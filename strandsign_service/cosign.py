"""
Co-sign and peer-attestation requests.

A co-sign request asks another user to countersign a sealed document the
sender can access. Answering it grants the sender access to the response
artifact and gives both parties a peer_attestation/cosign strand, keyed by
the request so a repeated answer never duplicates one.

A peer attestation is the lighter variant: a declaration text instead of a
document, and only the requester receives the strand.

Dismissal is a per-party view flag; it never changes a request's status.
"""

import uuid
from typing import Any, Dict, List, Optional

from strandsign import AnchorService
from strandsign.errors import Conflict, Forbidden, InvalidRequest, NotFound, RequestAlreadyAnswered
from strandsign.hashing import content_hash
from strandsign.strands import PeerAttestationKind, StrandType, VaultItemType
from strandsign.timeutil import now_rfc3339

from . import identities, vault
from .db import get_connection, transaction
from .logging_config import audit_log

COSIGN = PeerAttestationKind.COSIGN.value


def _mint_cosign_strand(
    handle: str,
    anchor: AnchorService,
    request_id: str,
    request_hash: str,
    role: str,
    counterparty: str,
    document_id: Optional[str] = None,
) -> Optional[str]:
    """Mint a cosign strand unless one already references this request."""
    identity = identities.ensure_identity(handle, anchor)
    existing = identities.find_strand(
        identity["identity_id"], StrandType.PEER_ATTESTATION, subtype=COSIGN,
        metadata={"requestId": request_id},
    )
    if existing is not None:
        return None
    strand = identities.create_strand(
        identity, StrandType.PEER_ATTESTATION, COSIGN, anchor,
        artifact_ref=document_id,
        metadata={
            "requestId": request_id,
            "requestHash": request_hash,
            "role": role,
            "counterparty": counterparty,
            "documentId": document_id,
        },
    )
    return strand.strand_id


# ============================================================
# Co-sign requests
# ============================================================

def _cosign_view(row) -> Dict[str, Any]:
    return {
        "id": row["request_id"],
        "sender": row["sender_handle"],
        "recipient": row["recipient_handle"],
        "recipientEmail": row["recipient_email"],
        "documentId": row["document_id"],
        "message": row["message"],
        "requestHash": row["request_hash"],
        "status": row["status"],
        "responseItemId": row["response_item_id"],
        "createdAt": row["created_at"],
        "respondedAt": row["responded_at"],
    }


def _cosign_row(request_id: str):
    conn = get_connection()
    row = conn.execute("SELECT * FROM cosign_requests WHERE request_id=?", (request_id,)).fetchone()
    if row is None:
        raise NotFound(f"Co-sign request {request_id} not found")
    return row


def request_cosign(
    sender: str,
    document_id: str,
    recipient_handle: Optional[str] = None,
    recipient_email: Optional[str] = None,
    message: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Ask a recipient, by handle or email, to countersign a sealed document.

    An email that matches a linked provider resolves to that handle.
    """
    if not recipient_handle and not recipient_email:
        raise InvalidRequest("A recipient handle or email is required")
    if not recipient_handle:
        recipient_handle = identities.resolve_handle_by_email(recipient_email)
    if recipient_handle == sender:
        raise InvalidRequest("You cannot request a co-signature from yourself")
    if recipient_email and recipient_email.lower() in identities.emails_for(sender):
        raise InvalidRequest("You cannot request a co-signature from yourself")

    document = vault.require_item(document_id)
    if not vault.can_access(sender, document_id):
        raise Forbidden("You do not have access to this document")
    if document["itemType"] != VaultItemType.SEALED_DOCUMENT.value:
        raise InvalidRequest("Co-sign requests require a sealed document")

    request_id = uuid.uuid4().hex
    created_at = now_rfc3339()
    request_hash = content_hash({
        "requestId": request_id,
        "sender": sender,
        "recipient": recipient_handle or recipient_email,
        "documentHash": document["payloadHash"],
        "createdAt": created_at,
    })
    with transaction() as conn:
        conn.execute(
            "INSERT INTO cosign_requests(request_id, sender_handle, recipient_handle, recipient_email, "
            "document_id, message, request_hash, status, created_at) VALUES(?,?,?,?,?,?,?,'pending',?)",
            (request_id, sender, recipient_handle, recipient_email, document_id, message, request_hash, created_at)
        )
        if recipient_handle:
            vault.grant_access(conn, document_id, recipient_handle, sender, "cosign_request")
    audit_log.cosign_requested(request_id, sender, recipient_handle or "email")
    return _cosign_view(_cosign_row(request_id))


def list_received(handle: str) -> List[Dict[str, Any]]:
    conn = get_connection()
    emails = identities.emails_for(handle)
    rows = conn.execute(
        "SELECT * FROM cosign_requests WHERE recipient_dismissed=0 ORDER BY created_at DESC"
    ).fetchall()
    return [
        _cosign_view(r) for r in rows
        if r["recipient_handle"] == handle
        or (r["recipient_handle"] is None and (r["recipient_email"] or "").lower() in emails)
    ]


def list_sent(handle: str) -> List[Dict[str, Any]]:
    conn = get_connection()
    rows = conn.execute(
        "SELECT * FROM cosign_requests WHERE sender_handle=? AND sender_dismissed=0 ORDER BY created_at DESC",
        (handle,)
    ).fetchall()
    return [_cosign_view(r) for r in rows]


def _is_recipient(row, handle: str) -> bool:
    if row["recipient_handle"]:
        return row["recipient_handle"] == handle
    return (row["recipient_email"] or "").lower() in identities.emails_for(handle)


def respond_cosign(request_id: str, attestor: str, response_item_id: str, anchor: AnchorService) -> Dict[str, Any]:
    """
    Answer a co-sign request with an owned artifact.

    Raises:
        NotFound: unknown request
        Forbidden: caller is not the recipient, or does not own the artifact
        RequestAlreadyAnswered: the request is no longer pending
    """
    row = _cosign_row(request_id)
    if not _is_recipient(row, attestor):
        audit_log.security_event("cosign_not_recipient", severity="low", handle=attestor, request_id=request_id)
        raise Forbidden("This request is not addressed to you")
    vault.require_owned_item(attestor, response_item_id)

    with transaction() as conn:
        cur = conn.execute(
            "UPDATE cosign_requests SET status='signed', response_item_id=?, responded_at=?, recipient_handle=? "
            "WHERE request_id=? AND status='pending'",
            (response_item_id, now_rfc3339(), attestor, request_id)
        )
        if cur.rowcount != 1:
            raise RequestAlreadyAnswered("This request has already been answered")
        vault.grant_access(conn, response_item_id, row["sender_handle"], attestor, "cosign_response")

    sender = row["sender_handle"]
    minted = [
        s for s in (
            _mint_cosign_strand(sender, anchor, request_id, row["request_hash"], "requester", attestor,
                                row["document_id"]),
            _mint_cosign_strand(attestor, anchor, request_id, row["request_hash"], "attestor", sender,
                                row["document_id"]),
        ) if s
    ]
    audit_log.cosign_responded(request_id, attestor, minted)
    return _cosign_view(_cosign_row(request_id))


def dismiss_cosign(request_id: str, handle: str) -> Dict[str, Any]:
    row = _cosign_row(request_id)
    if row["sender_handle"] == handle:
        column = "sender_dismissed"
    elif _is_recipient(row, handle):
        column = "recipient_dismissed"
    else:
        raise Forbidden("You are not a party to this request")
    with transaction() as conn:
        conn.execute(f"UPDATE cosign_requests SET {column}=1 WHERE request_id=?", (request_id,))
    return {"id": request_id, "dismissed": True}


# ============================================================
# Peer attestations
# ============================================================

def _peer_view(row) -> Dict[str, Any]:
    return {
        "id": row["request_id"],
        "requester": row["requester_handle"],
        "attestor": row["attestor_handle"],
        "declaration": row["declaration"],
        "status": row["status"],
        "createdAt": row["created_at"],
        "respondedAt": row["responded_at"],
    }


def _peer_row(request_id: str):
    conn = get_connection()
    row = conn.execute(
        "SELECT * FROM peer_attestation_requests WHERE request_id=?", (request_id,)
    ).fetchone()
    if row is None:
        raise NotFound(f"Peer attestation request {request_id} not found")
    return row


def request_peer_attestation(requester: str, attestor: str, declaration: str) -> Dict[str, Any]:
    if requester == attestor:
        raise InvalidRequest("You cannot attest for yourself")
    if not declaration or not declaration.strip():
        raise InvalidRequest("A declaration is required")
    conn = get_connection()
    pending = conn.execute(
        "SELECT 1 FROM peer_attestation_requests WHERE requester_handle=? AND attestor_handle=? "
        "AND status='pending'",
        (requester, attestor)
    ).fetchone()
    if pending is not None:
        raise Conflict("A pending request to this attestor already exists", code="REQUEST_PENDING")

    request_id = uuid.uuid4().hex
    with transaction() as conn:
        conn.execute(
            "INSERT INTO peer_attestation_requests(request_id, requester_handle, attestor_handle, declaration, "
            "status, created_at) VALUES(?,?,?,?,'pending',?)",
            (request_id, requester, attestor, declaration.strip(), now_rfc3339())
        )
    audit_log.peer_attestation(request_id, requester, attestor, "pending")
    return _peer_view(_peer_row(request_id))


def respond_peer_attestation(request_id: str, attestor: str, accept: bool, anchor: AnchorService) -> Dict[str, Any]:
    """Accept or decline. Accepting mints a cosign strand for the requester only."""
    row = _peer_row(request_id)
    if row["attestor_handle"] != attestor:
        raise Forbidden("This request is not addressed to you")
    status = "attested" if accept else "declined"
    with transaction() as conn:
        cur = conn.execute(
            "UPDATE peer_attestation_requests SET status=?, responded_at=? WHERE request_id=? AND status='pending'",
            (status, now_rfc3339(), request_id)
        )
        if cur.rowcount != 1:
            raise RequestAlreadyAnswered("This request has already been answered")

    if accept:
        _mint_cosign_strand(
            row["requester_handle"], anchor, request_id,
            content_hash({"requestId": request_id, "declaration": row["declaration"]}),
            "requester", attestor,
        )
    audit_log.peer_attestation(request_id, row["requester_handle"], attestor, status)
    return _peer_view(_peer_row(request_id))


def list_peer_requests(handle: str) -> Dict[str, List[Dict[str, Any]]]:
    conn = get_connection()
    received = conn.execute(
        "SELECT * FROM peer_attestation_requests WHERE attestor_handle=? AND attestor_dismissed=0 "
        "ORDER BY created_at DESC",
        (handle,)
    ).fetchall()
    sent = conn.execute(
        "SELECT * FROM peer_attestation_requests WHERE requester_handle=? AND requester_dismissed=0 "
        "ORDER BY created_at DESC",
        (handle,)
    ).fetchall()
    return {"received": [_peer_view(r) for r in received], "sent": [_peer_view(r) for r in sent]}


def dismiss_peer_request(request_id: str, handle: str) -> Dict[str, Any]:
    row = _peer_row(request_id)
    if row["requester_handle"] == handle:
        column = "requester_dismissed"
    elif row["attestor_handle"] == handle:
        column = "attestor_dismissed"
    else:
        raise Forbidden("You are not a party to this request")
    with transaction() as conn:
        conn.execute(f"UPDATE peer_attestation_requests SET {column}=1 WHERE request_id=?", (request_id,))
    return {"id": request_id, "dismissed": True}
