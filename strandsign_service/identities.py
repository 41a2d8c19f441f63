"""
Identity & Strand Store.

One identity per handle, created on the first strand-worthy event (or
explicitly) with an anchored identity_root payload. Strands are appended,
never changed. Every strand creation is followed by a full recompute of the
identity's score and level under a per-identity lock, so concurrent
creations for the same identity cannot overwrite each other's result.

Uniqueness of singleton kinds is enforced by the database. Other duplicate
checks are the caller's job, done with find_strand before creating.
"""

import json
import logging
import sqlite3
import threading
import uuid
from typing import Any, Dict, List, Optional, Tuple

from strandsign import AnchorService, IdentityRoot, IdentityStrand, IpThread
from strandsign.anchoring import is_placeholder
from strandsign.errors import Conflict, DuplicateStrand, InvalidRequest, NotFound
from strandsign.hashing import content_hash
from strandsign.payloads import AnchoredPayload
from strandsign.strands import (
    IdentityLevel,
    IdDocumentType,
    OAuthProvider,
    Strand,
    StrandMetadata,
    StrandType,
    VaultItemType,
    build_metadata,
    compute_score,
    derive_level,
    is_singleton,
    strand_key,
    strand_label,
    validate_strand,
)
from strandsign.timeutil import now_rfc3339

from . import vault
from .anchors import anchor_payload
from .db import get_connection, transaction
from .logging_config import audit_log

logger = logging.getLogger(__name__)

ID_DOCUMENT_ALIASES = {
    "passport": IdDocumentType.PASSPORT,
    "driving_licence": IdDocumentType.DRIVING_LICENCE,
    "driving_license": IdDocumentType.DRIVING_LICENCE,
    "utility_bill": IdDocumentType.PROOF_OF_ADDRESS,
    "proof_of_address": IdDocumentType.PROOF_OF_ADDRESS,
}

SELF_ATTESTATION_REQUIRED = ("fullName", "addressLine1", "city", "postcode", "country")

# Strength recompute is serialized per identity over a fixed pool of locks
LOCK_STRIPES = 64
_identity_locks: List[threading.Lock] = [threading.Lock() for _ in range(LOCK_STRIPES)]


def _identity_lock(identity_id: str) -> threading.Lock:
    return _identity_locks[hash(identity_id) % LOCK_STRIPES]


# ============================================================
# Identities
# ============================================================

def get_identity(handle: str) -> Optional[Dict[str, Any]]:
    conn = get_connection()
    row = conn.execute("SELECT * FROM identities WHERE handle=?", (handle,)).fetchone()
    return dict(row) if row else None


def require_identity(handle: str) -> Dict[str, Any]:
    identity = get_identity(handle)
    if identity is None:
        raise NotFound(f"No identity for {handle}")
    return identity


def ensure_identity(handle: str, anchor: AnchorService, wallet_type: Optional[str] = None) -> Dict[str, Any]:
    """
    Return the identity for a handle, creating it if needed.

    Creation anchors an identity_root payload (placeholder on failure) and
    then links the user's existing artifacts as strands.
    """
    existing = get_identity(handle)
    if existing is not None:
        return existing

    token_symbol = f"${handle.upper()}"
    root_ref, root_state = anchor_payload(
        anchor,
        IdentityRoot(user_handle=handle, token_symbol=token_symbol, wallet_type=wallet_type),
        f"identity:{handle}",
    )
    identity_id = uuid.uuid4().hex
    now = now_rfc3339()
    with transaction() as conn:
        cur = conn.execute(
            "INSERT OR IGNORE INTO identities(identity_id, handle, token_symbol, wallet_type, root_txid, "
            "root_anchor_state, created_at, updated_at) VALUES(?,?,?,?,?,?,?,?)",
            (identity_id, handle, token_symbol, wallet_type, root_ref, root_state, now, now)
        )
        created = cur.rowcount == 1

    identity = require_identity(handle)
    if created:
        audit_log.identity_created(identity["identity_id"], handle, root_ref)
        link_existing_artifacts(identity, anchor)
        identity = require_identity(handle)
    return identity


def link_existing_artifacts(identity: Dict[str, Any], anchor: AnchorService) -> int:
    """
    Mint strands for artifacts that predate the identity: vault items and a
    registered signature. Deduplicated by artifact reference. Returns the
    number of strands created.
    """
    created = 0
    for item in vault.list_items(identity["handle"]):
        if find_strand(identity["identity_id"], StrandType.VAULT_ITEM, artifact_ref=item["id"]) is None:
            create_strand(
                identity, StrandType.VAULT_ITEM, item["itemType"], anchor,
                artifact_ref=item["id"],
                metadata={"itemId": item["id"], "itemName": item["name"], "payloadHash": item["payloadHash"]},
            )
            created += 1
    sig_id = identity.get("registered_signature_id")
    if sig_id and find_strand(identity["identity_id"], StrandType.REGISTERED_SIGNATURE, artifact_ref=sig_id) is None:
        create_strand(
            identity, StrandType.REGISTERED_SIGNATURE, None, anchor,
            artifact_ref=sig_id,
            metadata={"vaultItemId": sig_id, "signatureTxid": identity.get("registered_signature_txid")},
        )
        created += 1
    return created


# ============================================================
# Strands
# ============================================================

def _row_to_strand(row) -> Strand:
    st = StrandType(row["strand_type"])
    return Strand(
        strand_id=row["strand_id"],
        identity_id=row["identity_id"],
        strand_type=st,
        subtype=row["subtype"] or None,
        metadata=build_metadata(st, json.loads(row["metadata_json"])),
        created_at=row["created_at"],
        artifact_ref=row["artifact_ref"],
        anchor_txid=row["anchor_txid"],
        anchor_state=row["anchor_state"],
    )


def list_strands(identity_id: str, strand_type: Optional[StrandType] = None) -> List[Strand]:
    conn = get_connection()
    if strand_type is None:
        rows = conn.execute(
            "SELECT * FROM strands WHERE identity_id=? ORDER BY created_at ASC, rowid ASC", (identity_id,)
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM strands WHERE identity_id=? AND strand_type=? ORDER BY created_at ASC, rowid ASC",
            (identity_id, StrandType(strand_type).value)
        ).fetchall()
    return [_row_to_strand(r) for r in rows]


def find_strand(
    identity_id: str,
    strand_type: StrandType,
    subtype: Optional[str] = None,
    artifact_ref: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[Strand]:
    """First strand matching type plus any of subtype, artifact reference and metadata equality."""
    for strand in list_strands(identity_id, strand_type):
        if subtype is not None and strand.subtype != subtype:
            continue
        if artifact_ref is not None and strand.artifact_ref != artifact_ref:
            continue
        if metadata and not strand.metadata.matches(metadata):
            continue
        return strand
    return None


def create_strand(
    identity: Dict[str, Any],
    strand_type: StrandType,
    subtype: Optional[str],
    anchor: AnchorService,
    artifact_ref: Optional[str] = None,
    metadata: Optional[Any] = None,
    payload: Optional[AnchoredPayload] = None,
) -> Strand:
    """
    Append a strand and recompute the owner's strength.

    The anchor is best-effort: the strand row is written whatever the
    outcome, with a placeholder reference when anchoring failed. ``payload``
    replaces the default identity_strand payload.

    Raises:
        DuplicateStrand: a singleton kind already exists for this identity
    """
    st, sub = validate_strand(strand_type, subtype)
    meta: StrandMetadata = build_metadata(st, metadata)
    singleton = is_singleton(st)
    identity_id = identity["identity_id"]
    key = strand_key(st, sub)

    if singleton and find_strand(identity_id, st, subtype=sub) is not None:
        raise DuplicateStrand(f"{strand_label(st, sub)} is already recorded for this identity", strand=key)

    if payload is None:
        payload = IdentityStrand(
            root_txid=identity["root_txid"],
            strand_type=st.value,
            strand_subtype=sub,
            strand_label=strand_label(st, sub),
            user_handle=identity["handle"],
        )
    ref, state = anchor_payload(anchor, payload, f"strand:{identity['handle']}:{key}")

    strand = Strand(
        strand_id=uuid.uuid4().hex,
        identity_id=identity_id,
        strand_type=st,
        subtype=sub,
        metadata=meta,
        created_at=now_rfc3339(),
        artifact_ref=artifact_ref,
        anchor_txid=ref,
        anchor_state=state,
    )
    try:
        with transaction() as conn:
            conn.execute(
                "INSERT INTO strands(strand_id, identity_id, strand_type, subtype, singleton, artifact_ref, "
                "anchor_txid, anchor_state, metadata_json, created_at) VALUES(?,?,?,?,?,?,?,?,?,?)",
                (strand.strand_id, identity_id, st.value, sub or "", 1 if singleton else 0, artifact_ref,
                 ref, state, json.dumps(meta.to_dict(), sort_keys=True), strand.created_at)
            )
    except sqlite3.IntegrityError as e:
        raise DuplicateStrand(f"{strand_label(st, sub)} is already recorded for this identity", strand=key) from e

    audit_log.strand_created(identity_id, key, strand.strand_id)
    recompute_strength(identity_id)
    return strand


def recompute_strength(identity_id: str) -> Tuple[int, IdentityLevel]:
    """
    Replace the stored score and level with values computed from the full
    current strand set. Serialized per identity.
    """
    with _identity_lock(identity_id):
        with transaction() as conn:
            rows = conn.execute(
                "SELECT strand_type, subtype FROM strands WHERE identity_id=?", (identity_id,)
            ).fetchall()
            pairs = [(r["strand_type"], r["subtype"] or None) for r in rows]
            score = compute_score(pairs)
            level = derive_level(pairs)
            conn.execute(
                "UPDATE identities SET strength_score=?, strength_level=?, strength_label=?, updated_at=? "
                "WHERE identity_id=?",
                (score, level.level, level.label, now_rfc3339(), identity_id)
            )
    audit_log.strength_recomputed(identity_id, score, level.level)
    return score, level


def identity_summary(handle: str, anchor: Optional[AnchorService] = None) -> Dict[str, Any]:
    identity = require_identity(handle)
    strands = list_strands(identity["identity_id"])
    root = identity["root_txid"]
    return {
        "id": identity["identity_id"],
        "handle": identity["handle"],
        "tokenSymbol": identity["token_symbol"],
        "rootTxid": root,
        "rootAnchorState": identity["root_anchor_state"],
        "rootExplorerUrl": anchor.explorer_url(root) if anchor else None,
        "strengthScore": identity["strength_score"],
        "strengthLevel": identity["strength_level"],
        "strengthLabel": identity["strength_label"],
        "registeredSignatureId": identity["registered_signature_id"],
        "registeredSignatureTxid": identity["registered_signature_txid"],
        "providers": list_providers(identity["identity_id"]),
        "strands": [s.to_dict() for s in strands],
        "createdAt": identity["created_at"],
    }


# ============================================================
# Providers
# ============================================================

def list_providers(identity_id: str) -> List[Dict[str, Any]]:
    conn = get_connection()
    rows = conn.execute(
        "SELECT provider, provider_handle, provider_id, email, linked_at FROM identity_providers "
        "WHERE identity_id=? ORDER BY linked_at ASC",
        (identity_id,)
    ).fetchall()
    return [
        {"provider": r["provider"], "handle": r["provider_handle"], "providerId": r["provider_id"],
         "email": r["email"], "linkedAt": r["linked_at"]}
        for r in rows
    ]


def link_provider(
    handle: str,
    provider: str,
    anchor: AnchorService,
    provider_handle: Optional[str] = None,
    provider_id: Optional[str] = None,
    email: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Record a completed external provider linkage and mint its oauth strand
    the first time the provider is linked.
    """
    try:
        provider = OAuthProvider(provider).value
    except ValueError:
        raise InvalidRequest(f"Unknown provider: {provider}")
    identity = ensure_identity(handle, anchor)
    with transaction() as conn:
        conn.execute(
            "INSERT INTO identity_providers(identity_id, provider, provider_handle, provider_id, email, linked_at) "
            "VALUES(?,?,?,?,?,?) ON CONFLICT(identity_id, provider) DO UPDATE SET "
            "provider_handle=excluded.provider_handle, provider_id=excluded.provider_id, "
            "email=excluded.email, linked_at=excluded.linked_at",
            (identity["identity_id"], provider, provider_handle, provider_id, email, now_rfc3339())
        )
    strand = None
    if find_strand(identity["identity_id"], StrandType.OAUTH, subtype=provider) is None:
        strand = create_strand(
            identity, StrandType.OAUTH, provider, anchor,
            metadata={"providerHandle": provider_handle, "providerId": provider_id},
        )
    return {"provider": provider, "strand": strand.to_dict() if strand else None}


def resolve_handle_by_email(email: str) -> Optional[str]:
    conn = get_connection()
    row = conn.execute(
        "SELECT i.handle FROM identity_providers p JOIN identities i ON i.identity_id = p.identity_id "
        "WHERE p.email = ? COLLATE NOCASE ORDER BY p.linked_at ASC LIMIT 1",
        (email,)
    ).fetchone()
    return row["handle"] if row else None


def emails_for(handle: str) -> List[str]:
    conn = get_connection()
    rows = conn.execute(
        "SELECT p.email FROM identity_providers p JOIN identities i ON i.identity_id = p.identity_id "
        "WHERE i.handle=? AND p.email IS NOT NULL",
        (handle,)
    ).fetchall()
    return [r["email"].lower() for r in rows]


# ============================================================
# Attestation flows
# ============================================================

def add_vault_item(handle: str, item_type: str, name: str, content: str, anchor: AnchorService) -> Dict[str, Any]:
    """Store a vault item and mint its vault_item strand."""
    item = vault.create_item(handle, item_type, name, content, anchor)
    identity = ensure_identity(handle, anchor)
    strand = find_strand(identity["identity_id"], StrandType.VAULT_ITEM, artifact_ref=item["id"])
    if strand is None:
        strand = create_strand(
            identity, StrandType.VAULT_ITEM, item["itemType"], anchor,
            artifact_ref=item["id"],
            metadata={"itemId": item["id"], "itemName": item["name"], "payloadHash": item["payloadHash"]},
        )
    item["strandId"] = strand.strand_id
    return item


def self_attest(handle: str, form: Dict[str, Any], anchor: AnchorService) -> Strand:
    missing = [k for k in SELF_ATTESTATION_REQUIRED if not (form.get(k) or "").strip()]
    if missing:
        raise InvalidRequest(f"Missing fields: {', '.join(missing)}", missing=missing)
    identity = ensure_identity(handle, anchor)
    metadata = {k: form.get(k) for k in SELF_ATTESTATION_REQUIRED + ("addressLine2",)}
    metadata["declarationHash"] = content_hash({k: v for k, v in metadata.items() if v is not None})
    return create_strand(identity, StrandType.SELF_ATTESTATION, None, anchor, metadata=metadata)


def add_id_document(handle: str, vault_item_id: str, document_type: str, anchor: AnchorService) -> Strand:
    doc_type = ID_DOCUMENT_ALIASES.get((document_type or "").lower())
    if doc_type is None:
        raise InvalidRequest(f"Unknown document type: {document_type}")
    item = vault.require_owned_item(handle, vault_item_id)
    identity = ensure_identity(handle, anchor)
    return create_strand(
        identity, StrandType.ID_DOCUMENT, doc_type.value, anchor,
        artifact_ref=item["id"],
        metadata={"vaultItemId": item["id"], "documentType": doc_type.value, "submittedAs": document_type},
    )


def set_profile_photo(handle: str, vault_item_id: str, anchor: AnchorService) -> Strand:
    item = vault.require_owned_item(handle, vault_item_id)
    if item["itemType"] != VaultItemType.CAMERA.value:
        raise InvalidRequest("Profile photo must be a camera capture")
    identity = ensure_identity(handle, anchor)
    return create_strand(
        identity, StrandType.PROFILE_PHOTO, None, anchor,
        artifact_ref=item["id"], metadata={"vaultItemId": item["id"]},
    )


def register_signature(handle: str, vault_item_id: str, anchor: AnchorService) -> Dict[str, Any]:
    """
    Make a drawn, anchored signature the identity's reusable signature.

    Only a TLDRAW item with a real ledger anchor qualifies.
    """
    item = vault.require_owned_item(handle, vault_item_id)
    if item["itemType"] != VaultItemType.TLDRAW.value:
        raise InvalidRequest("Only drawn signatures can be registered")
    txid = item["anchorTxid"]
    if not txid or is_placeholder(txid):
        raise InvalidRequest("Signature must be anchored on the ledger before registration")

    identity = ensure_identity(handle, anchor)
    with transaction() as conn:
        conn.execute(
            "UPDATE identities SET registered_signature_id=?, registered_signature_txid=?, updated_at=? "
            "WHERE identity_id=?",
            (item["id"], txid, now_rfc3339(), identity["identity_id"])
        )
    strand = find_strand(identity["identity_id"], StrandType.REGISTERED_SIGNATURE, artifact_ref=item["id"])
    if strand is None:
        strand = create_strand(
            identity, StrandType.REGISTERED_SIGNATURE, None, anchor,
            artifact_ref=item["id"],
            metadata={"vaultItemId": item["id"], "signatureTxid": txid},
        )
    return {"registeredSignatureId": item["id"], "registeredSignatureTxid": txid, "strand": strand.to_dict()}


def create_ip_thread(handle: str, vault_item_id: str, anchor: AnchorService, title: Optional[str] = None) -> Strand:
    """Anchor an ip_thread for a sealed document; one thread per document."""
    item = vault.require_owned_item(handle, vault_item_id)
    if item["itemType"] != VaultItemType.SEALED_DOCUMENT.value:
        raise InvalidRequest("Only sealed documents can start an IP thread")
    identity = ensure_identity(handle, anchor)
    identity_id = identity["identity_id"]
    if find_strand(identity_id, StrandType.IP_THREAD, metadata={"vaultItemId": item["id"]}) is not None:
        raise Conflict("An IP thread already exists for this document", code="IP_THREAD_EXISTS")

    sequence = len(list_strands(identity_id, StrandType.IP_THREAD)) + 1
    thread_title = title or item["name"]
    payload = IpThread(
        root_txid=identity["root_txid"],
        document_hash=item["payloadHash"],
        thread_title=thread_title,
        document_type=item["itemType"],
        thread_sequence=sequence,
        user_handle=handle,
    )
    return create_strand(
        identity, StrandType.IP_THREAD, None, anchor,
        artifact_ref=item["id"],
        metadata={
            "vaultItemId": item["id"],
            "documentHash": item["payloadHash"],
            "threadTitle": thread_title,
            "threadSequence": sequence,
        },
        payload=payload,
    )


def record_kyc(
    handle: str,
    provider: str,
    status: str,
    anchor: AnchorService,
    session_id: Optional[str] = None,
) -> Optional[Strand]:
    """Record an external KYC outcome. Only an approved outcome becomes a strand."""
    validate_strand(StrandType.KYC, provider)
    if status != "approved":
        logger.info("KYC outcome %s for %s not recorded as a strand", status, handle)
        return None
    identity = ensure_identity(handle, anchor)
    return create_strand(
        identity, StrandType.KYC, provider, anchor,
        metadata={"sessionId": session_id, "status": status, "verifiedAt": now_rfc3339()},
    )


def record_paid_signing(
    handle: str,
    envelope_id: str,
    payment_txid: str,
    amount_sats: int,
    anchor: AnchorService,
) -> Optional[Strand]:
    """Mint the paid_signing strand on a handle's first verified paid signature."""
    identity = ensure_identity(handle, anchor)
    if find_strand(identity["identity_id"], StrandType.PAID_SIGNING) is not None:
        return None
    try:
        return create_strand(
            identity, StrandType.PAID_SIGNING, None, anchor,
            metadata={"envelopeId": envelope_id, "paymentTxid": payment_txid, "amountSats": amount_sats},
        )
    except DuplicateStrand:
        return None


def list_ip_threads(handle: str) -> List[Dict[str, Any]]:
    identity = get_identity(handle)
    if identity is None:
        return []
    return [s.to_dict() for s in list_strands(identity["identity_id"], StrandType.IP_THREAD)]
