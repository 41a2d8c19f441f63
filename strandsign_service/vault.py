"""
Vault items, access grants and claimable share invites.

A vault item is an artifact owned by one handle (drawn signature, photo,
video, document, sealed document). Each item is registered on the ledger
when stored. Access to another user's item comes from an access grant,
created by a co-sign exchange or by claiming a share invite.

Claim tokens are single-use: the pending -> claimed transition is one
conditional UPDATE, so of two concurrent claims exactly one wins and the
other sees AlreadyClaimed (410), distinct from an unknown token (404).
"""

import secrets
import uuid
from typing import Any, Dict, List, Optional

from strandsign import AnchorService, SignatureRegistration
from strandsign.errors import AlreadyClaimed, Forbidden, InvalidRequest, NotFound
from strandsign.hashing import sha256_hex
from strandsign.strands import VaultItemType
from strandsign.timeutil import now_rfc3339

from . import config
from .anchors import anchor_payload
from .db import get_connection, transaction
from .logging_config import audit_log


def _item_view(row, include_content: bool = False) -> Dict[str, Any]:
    item = {
        "id": row["item_id"],
        "owner": row["owner_handle"],
        "itemType": row["item_type"],
        "name": row["name"],
        "payloadHash": row["payload_hash"],
        "anchorTxid": row["anchor_txid"],
        "anchorState": row["anchor_state"],
        "createdAt": row["created_at"],
    }
    if include_content:
        item["content"] = row["content"]
    return item


def create_item(handle: str, item_type: str, name: str, content: str, anchor: AnchorService) -> Dict[str, Any]:
    """Store an item and anchor its signature_registration payload."""
    try:
        item_type = VaultItemType(item_type).value
    except ValueError:
        raise InvalidRequest(f"Unknown vault item type: {item_type}")
    if not content:
        raise InvalidRequest("Vault item content is required")

    item_id = uuid.uuid4().hex
    created_at = now_rfc3339()
    payload_hash = sha256_hex(content)
    ref, state = anchor_payload(
        anchor,
        SignatureRegistration(
            signature_type=item_type,
            signature_hash=payload_hash,
            owner_name=handle,
            created_at=created_at,
            signature_id=item_id,
        ),
        f"vault_item:{item_id}",
    )
    with transaction() as conn:
        conn.execute(
            "INSERT INTO vault_items(item_id, owner_handle, item_type, name, content, payload_hash, "
            "anchor_txid, anchor_state, created_at) VALUES(?,?,?,?,?,?,?,?,?)",
            (item_id, handle, item_type, name or item_type, content, payload_hash, ref, state, created_at)
        )
    return get_item(item_id)


def _get_row(item_id: str):
    conn = get_connection()
    return conn.execute("SELECT * FROM vault_items WHERE item_id=?", (item_id,)).fetchone()


def get_item(item_id: str, include_content: bool = False) -> Optional[Dict[str, Any]]:
    row = _get_row(item_id)
    return _item_view(row, include_content) if row else None


def require_item(item_id: str) -> Dict[str, Any]:
    item = get_item(item_id)
    if item is None:
        raise NotFound(f"Vault item {item_id} not found")
    return item


def require_owned_item(handle: str, item_id: str) -> Dict[str, Any]:
    """Ownership check performed before any mutation or share."""
    item = require_item(item_id)
    if item["owner"] != handle:
        audit_log.security_event("vault_item_not_owned", severity="low", handle=handle, item_id=item_id)
        raise Forbidden("You do not own this vault item")
    return item


def can_access(handle: str, item_id: str) -> bool:
    conn = get_connection()
    row = conn.execute(
        "SELECT 1 FROM vault_items WHERE item_id=? AND owner_handle=? "
        "UNION SELECT 1 FROM access_grants WHERE item_id=? AND grantee_handle=?",
        (item_id, handle, item_id, handle)
    ).fetchone()
    return row is not None


def require_access(handle: str, item_id: str, include_content: bool = True) -> Dict[str, Any]:
    require_item(item_id)
    if not can_access(handle, item_id):
        raise Forbidden("You do not have access to this vault item")
    return get_item(item_id, include_content=include_content)


def list_items(handle: str) -> List[Dict[str, Any]]:
    conn = get_connection()
    rows = conn.execute(
        "SELECT * FROM vault_items WHERE owner_handle=? ORDER BY created_at ASC", (handle,)
    ).fetchall()
    return [_item_view(r) for r in rows]


def grant_access(conn, item_id: str, grantee: str, granted_by: str, source: str) -> bool:
    """Insert an access grant inside the caller's transaction. Returns True if new."""
    cur = conn.execute(
        "INSERT OR IGNORE INTO access_grants(item_id, grantee_handle, granted_by, source, created_at) "
        "VALUES(?,?,?,?,?)",
        (item_id, grantee, granted_by, source, now_rfc3339())
    )
    return cur.rowcount == 1


def shared_with(handle: str) -> List[Dict[str, Any]]:
    conn = get_connection()
    rows = conn.execute(
        "SELECT v.*, g.granted_by, g.source FROM access_grants g "
        "JOIN vault_items v ON v.item_id = g.item_id "
        "WHERE g.grantee_handle=? ORDER BY g.created_at ASC",
        (handle,)
    ).fetchall()
    out = []
    for r in rows:
        item = _item_view(r)
        item["sharedBy"] = r["granted_by"]
        item["source"] = r["source"]
        out.append(item)
    return out


# ============================================================
# Share invites and claims
# ============================================================

def create_invite(handle: str, item_id: str, email: str, message: Optional[str] = None) -> Dict[str, Any]:
    """Invite an email address to claim access to an owned item."""
    require_owned_item(handle, item_id)
    invite_id = uuid.uuid4().hex
    token = secrets.token_urlsafe(32)
    with transaction() as conn:
        conn.execute(
            "INSERT INTO vault_invites(invite_id, item_id, owner_handle, email, message, claim_token, "
            "status, created_at) VALUES(?,?,?,?,?,?,'pending',?)",
            (invite_id, item_id, handle, email, message, token, now_rfc3339())
        )
    return {
        "inviteId": invite_id,
        "itemId": item_id,
        "email": email,
        "claimToken": token,
        "claimUrl": f"{config.APP_URL}/claim/{token}",
    }


def _invite_row(token: str):
    conn = get_connection()
    return conn.execute("SELECT * FROM vault_invites WHERE claim_token=?", (token,)).fetchone()


def get_invite(token: str) -> Dict[str, Any]:
    """Public view of a claim link."""
    row = _invite_row(token)
    if row is None:
        raise NotFound("Invite not found")
    if row["status"] != "pending":
        raise AlreadyClaimed("This invite has already been claimed", claimed_at=row["claimed_at"])
    item = get_item(row["item_id"])
    return {
        "inviteId": row["invite_id"],
        "from": row["owner_handle"],
        "message": row["message"],
        "item": {"name": item["name"], "itemType": item["itemType"]} if item else None,
        "status": row["status"],
        "createdAt": row["created_at"],
    }


def claim_invite(token: str, handle: str) -> Dict[str, Any]:
    """
    Claim an invite and grant access.

    Raises:
        NotFound: unknown token
        Forbidden: claiming your own invite
        AlreadyClaimed: the token was used already
    """
    row = _invite_row(token)
    if row is None:
        raise NotFound("Invite not found")
    if row["owner_handle"] == handle:
        raise Forbidden("You cannot claim your own invite")

    claimed_at = now_rfc3339()
    with transaction() as conn:
        cur = conn.execute(
            "UPDATE vault_invites SET status='claimed', claimed_by=?, claimed_at=? "
            "WHERE claim_token=? AND status='pending'",
            (handle, claimed_at, token)
        )
        if cur.rowcount != 1:
            raise AlreadyClaimed("This invite has already been claimed")
        grant_access(conn, row["item_id"], handle, row["owner_handle"], "invite")

    audit_log.claim_redeemed(row["invite_id"], row["item_id"], handle)
    return {"inviteId": row["invite_id"], "itemId": row["item_id"], "claimedBy": handle, "claimedAt": claimed_at}
