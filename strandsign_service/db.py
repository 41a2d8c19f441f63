"""
Database module for the StrandSign service.

SQLite storage for identities, strands, vault items, envelopes, co-sign
requests, claim invites and anchor confirmations.

Integrity rules enforced here rather than in application code:
- strands are append-only: triggers abort any UPDATE or DELETE
- singleton strand kinds are unique per identity via a partial unique index
- envelope writes carry a version column for optimistic concurrency
- a payment transaction id is spent by at most one signature
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Optional

from strandsign.anchoring import Confirmation, ConfirmationCache

from .config import DB_PATH as _DB_PATH

DB_PATH = Path(_DB_PATH)

TABLES = [
    "identities",
    "identity_providers",
    "strands",
    "vault_items",
    "access_grants",
    "vault_invites",
    "envelopes",
    "signer_tokens",
    "spent_payments",
    "cosign_requests",
    "peer_attestation_requests",
    "anchor_confirmations",
]

# Thread-local storage for connection reuse
_local = threading.local()


def get_connection() -> sqlite3.Connection:
    """
    Get a thread-local database connection.
    Connections are reused within the same thread.
    """
    if not hasattr(_local, 'conn') or _local.conn is None:
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(DB_PATH), check_same_thread=False, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.row_factory = sqlite3.Row
        _local.conn = conn
    return _local.conn


@contextmanager
def transaction():
    """
    Context manager for database transactions.
    Automatically commits on success, rolls back on failure.
    """
    conn = get_connection()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def init_db() -> None:
    """
    Initialize database schema with indexes and integrity triggers.
    Safe to call multiple times (uses IF NOT EXISTS).
    """
    with transaction() as conn:
        conn.execute("""
        CREATE TABLE IF NOT EXISTS identities (
            identity_id TEXT PRIMARY KEY,
            handle TEXT NOT NULL UNIQUE,
            token_symbol TEXT NOT NULL,
            wallet_type TEXT,
            root_txid TEXT,
            root_anchor_state TEXT NOT NULL DEFAULT 'not_attempted',
            strength_score INTEGER NOT NULL DEFAULT 0,
            strength_level INTEGER NOT NULL DEFAULT 1,
            strength_label TEXT NOT NULL DEFAULT 'Basic',
            registered_signature_id TEXT,
            registered_signature_txid TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS identity_providers (
            identity_id TEXT NOT NULL REFERENCES identities(identity_id),
            provider TEXT NOT NULL,
            provider_handle TEXT,
            provider_id TEXT,
            email TEXT,
            linked_at TEXT NOT NULL,
            PRIMARY KEY (identity_id, provider)
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_identity_providers_email
        ON identity_providers(email COLLATE NOCASE);""")

        # Strands: append-only, singleton kinds unique per identity
        conn.execute("""
        CREATE TABLE IF NOT EXISTS strands (
            strand_id TEXT PRIMARY KEY,
            identity_id TEXT NOT NULL REFERENCES identities(identity_id),
            strand_type TEXT NOT NULL,
            subtype TEXT NOT NULL DEFAULT '',
            singleton INTEGER NOT NULL DEFAULT 0,
            artifact_ref TEXT,
            anchor_txid TEXT,
            anchor_state TEXT NOT NULL DEFAULT 'not_attempted',
            metadata_json TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_strands_identity
        ON strands(identity_id, strand_type);""")
        conn.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS ux_strands_singleton
        ON strands(identity_id, strand_type, subtype) WHERE singleton = 1;""")
        conn.execute("""
        CREATE TRIGGER IF NOT EXISTS trg_strands_no_update
        BEFORE UPDATE ON strands
        BEGIN
            SELECT RAISE(ABORT, 'strands are append-only');
        END;""")
        conn.execute("""
        CREATE TRIGGER IF NOT EXISTS trg_strands_no_delete
        BEFORE DELETE ON strands
        BEGIN
            SELECT RAISE(ABORT, 'strands are append-only');
        END;""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS vault_items (
            item_id TEXT PRIMARY KEY,
            owner_handle TEXT NOT NULL,
            item_type TEXT NOT NULL,
            name TEXT NOT NULL,
            content TEXT NOT NULL,
            payload_hash TEXT NOT NULL,
            anchor_txid TEXT,
            anchor_state TEXT NOT NULL DEFAULT 'not_attempted',
            created_at TEXT NOT NULL
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_vault_items_owner
        ON vault_items(owner_handle);""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS access_grants (
            item_id TEXT NOT NULL REFERENCES vault_items(item_id),
            grantee_handle TEXT NOT NULL,
            granted_by TEXT NOT NULL,
            source TEXT NOT NULL,
            created_at TEXT NOT NULL,
            PRIMARY KEY (item_id, grantee_handle)
        );""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS vault_invites (
            invite_id TEXT PRIMARY KEY,
            item_id TEXT NOT NULL REFERENCES vault_items(item_id),
            owner_handle TEXT NOT NULL,
            email TEXT NOT NULL,
            message TEXT,
            claim_token TEXT NOT NULL UNIQUE,
            status TEXT NOT NULL DEFAULT 'pending',
            claimed_by TEXT,
            claimed_at TEXT,
            created_at TEXT NOT NULL
        );""")

        # Envelopes: signers embedded as JSON, version for compare-and-swap
        conn.execute("""
        CREATE TABLE IF NOT EXISTS envelopes (
            envelope_id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            document_type TEXT NOT NULL,
            document TEXT NOT NULL,
            document_hash TEXT NOT NULL,
            status TEXT NOT NULL,
            created_by TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            expires_at TEXT,
            anchor_txid TEXT,
            anchor_state TEXT NOT NULL DEFAULT 'not_attempted',
            metadata_json TEXT NOT NULL DEFAULT '{}',
            signers_json TEXT NOT NULL,
            version INTEGER NOT NULL DEFAULT 0
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_envelopes_created_by
        ON envelopes(created_by);""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS signer_tokens (
            token TEXT PRIMARY KEY,
            envelope_id TEXT NOT NULL REFERENCES envelopes(envelope_id),
            signer_id TEXT NOT NULL
        );""")

        # A payment transaction pays for exactly one signature
        conn.execute("""
        CREATE TABLE IF NOT EXISTS spent_payments (
            payment_txid TEXT PRIMARY KEY,
            envelope_id TEXT NOT NULL REFERENCES envelopes(envelope_id),
            signer_id TEXT NOT NULL,
            amount_sats INTEGER NOT NULL,
            spent_at TEXT NOT NULL
        );""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS cosign_requests (
            request_id TEXT PRIMARY KEY,
            sender_handle TEXT NOT NULL,
            recipient_handle TEXT,
            recipient_email TEXT,
            document_id TEXT NOT NULL,
            message TEXT,
            request_hash TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            response_item_id TEXT,
            sender_dismissed INTEGER NOT NULL DEFAULT 0,
            recipient_dismissed INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            responded_at TEXT
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_cosign_recipient
        ON cosign_requests(recipient_handle);""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS peer_attestation_requests (
            request_id TEXT PRIMARY KEY,
            requester_handle TEXT NOT NULL,
            attestor_handle TEXT NOT NULL,
            declaration TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            requester_dismissed INTEGER NOT NULL DEFAULT 0,
            attestor_dismissed INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            responded_at TEXT
        );""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS anchor_confirmations (
            txid TEXT PRIMARY KEY,
            data_hash TEXT,
            inscribed_at TEXT,
            confirmed_at TEXT NOT NULL
        );""")


# ============================================================
# Anchor Confirmation Cache
# ============================================================

class SqliteConfirmationCache(ConfirmationCache):
    """First confirmations stored beside the data they prove, never on the strand rows."""

    def get(self, txid: str) -> Optional[Confirmation]:
        conn = get_connection()
        row = conn.execute(
            "SELECT txid, data_hash, inscribed_at, confirmed_at FROM anchor_confirmations WHERE txid=?",
            (txid,)
        ).fetchone()
        if row is None:
            return None
        return Confirmation(
            txid=row["txid"],
            data_hash=row["data_hash"],
            inscribed_at=row["inscribed_at"],
            confirmed_at=row["confirmed_at"],
        )

    def put(self, confirmation: Confirmation) -> None:
        with transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO anchor_confirmations(txid, data_hash, inscribed_at, confirmed_at) "
                "VALUES(?,?,?,?)",
                (confirmation.txid, confirmation.data_hash, confirmation.inscribed_at, confirmation.confirmed_at)
            )


# ============================================================
# Metrics and Health
# ============================================================

def get_db_stats() -> Dict[str, int]:
    """Row counts per table for the health endpoint."""
    conn = get_connection()
    stats = {}
    for table in TABLES:
        cur = conn.execute(f"SELECT COUNT(*) AS cnt FROM {table}")
        stats[f"{table}_count"] = cur.fetchone()['cnt']
    return stats


# ============================================================
# Test Support: Database Reset
# ============================================================

def reset_db() -> None:
    """
    Reset the database for test isolation.

    The append-only triggers are dropped for the wipe and recreated by
    init_db afterwards.
    """
    with transaction() as conn:
        conn.execute("DROP TRIGGER IF EXISTS trg_strands_no_update")
        conn.execute("DROP TRIGGER IF EXISTS trg_strands_no_delete")
        for table in reversed(TABLES):
            conn.execute(f"DELETE FROM {table}")
    init_db()


def close_connection() -> None:
    """Close the thread-local connection (for cleanup)."""
    if hasattr(_local, 'conn') and _local.conn is not None:
        _local.conn.close()
        _local.conn = None
