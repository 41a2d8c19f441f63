"""
StrandSign hashing helpers.

Content hashes are lowercase hex SHA-256 without a prefix, matching what is
written into anchored payloads. Ledger-level digests (double SHA-256,
HASH160) live here too so the transaction codec has a single source.
"""

import hashlib
from typing import Any, Union

from .canonicalization import canonicalize
from .errors import AnchorConfigurationError


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 and return lowercase hex."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def content_hash(obj: Any) -> str:
    """
    Hash of the canonical JSON form of an object.

    content_hash = SHA-256(canonical_json(obj))
    """
    return sha256_hex(canonicalize(obj))


def document_hash(document: Union[bytes, str]) -> str:
    """Hash of raw document content as supplied by the creator."""
    return sha256_hex(document)


def double_sha256(data: bytes) -> bytes:
    """SHA-256 applied twice, as used for transaction ids and checksums."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    """
    RIPEMD-160 of SHA-256, used for P2PKH addresses.

    RIPEMD-160 is provided by OpenSSL and is not available on every build.
    Raises AnchorConfigurationError when it is missing so callers can ask
    for an explicit address instead.
    """
    try:
        ripemd = hashlib.new('ripemd160')
    except ValueError as e:
        raise AnchorConfigurationError(
            "ripemd160 unavailable in this OpenSSL build; configure ANCHOR_ADDRESS explicitly"
        ) from e
    ripemd.update(hashlib.sha256(data).digest())
    return ripemd.digest()


def verify_hash(declared_hash: str, data: Union[bytes, str]) -> bool:
    """Recompute the hash of data and compare it with a declared hash."""
    return sha256_hex(data) == declared_hash.lower()
