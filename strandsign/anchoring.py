"""
StrandSign Anchoring Service

Writes typed payloads to the public ledger and reads them back.

    anchor(payload) -> AnchorResult     never raises
    verify(txid)    -> AnchorVerification  never raises

Anchoring is best-effort. When no key is configured, no spendable output
exists, the network times out or a broadcast is rejected, ``anchor``
returns an un-anchored result and the caller stores a placeholder
reference instead (prefix ``pending-``). Placeholders are never sent to the
network for verification.

The outcome stored next to a business fact is tri-state:

    confirmed      a real ledger transaction id
    placeholder    anchoring was attempted and failed
    not_attempted  no anchor was tried for this fact

Verification is a first-confirmation check. Once a transaction id has been
confirmed it is written to a ConfirmationCache and later reads are served
from it without any network round-trip.
"""

import logging
import secrets
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from coincurve import PrivateKey

from .canonicalization import canonicalize
from .errors import (
    AnchorConfigurationError,
    InsufficientFunds,
    InvalidRequest,
    UpstreamFailure,
)
from .hashing import hash160, sha256_hex
from .ledger import DEFAULT_EXPLORER_URL, Deadline, LedgerClient, SecondaryBroadcaster, summarize_utxos
from .payloads import CONTENT_TYPE, PROTOCOL_TAG, AnchoredPayload, parse_payload_bytes
from .timeutil import now_rfc3339
from .transaction import (
    Transaction,
    address_to_hash160,
    build_data_transaction,
    decode_wif,
    extract_data_pushes,
    hash160_to_address,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "pending-"
DEFAULT_MINER_FEE_SATS = 500
DEFAULT_TIMEOUT_SECONDS = 30.0


class AnchorState(str, Enum):
    CONFIRMED = "confirmed"
    PLACEHOLDER = "placeholder"
    NOT_ATTEMPTED = "not_attempted"


def make_placeholder() -> str:
    """Local stand-in reference, visibly distinct from a 64-hex transaction id."""
    return f"{PLACEHOLDER_PREFIX}{int(time.time() * 1000):x}-{secrets.token_hex(3)}"


def is_placeholder(ref: Optional[str]) -> bool:
    return bool(ref) and ref.startswith(PLACEHOLDER_PREFIX)


def explorer_url(txid: Optional[str], base: str = DEFAULT_EXPLORER_URL) -> Optional[str]:
    if not txid or is_placeholder(txid):
        return None
    return f"{base}{txid}"


@dataclass
class AnchorResult:
    """Outcome of one anchor attempt."""
    anchored: bool
    content_hash: str
    txid: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def state(self) -> AnchorState:
        return AnchorState.CONFIRMED if self.anchored else AnchorState.PLACEHOLDER

    def reference(self) -> str:
        """Transaction id when anchored, otherwise a fresh placeholder."""
        return self.txid if self.anchored and self.txid else make_placeholder()

    def outcome(self) -> Tuple[str, str]:
        """(reference, state) pair to persist beside the business fact."""
        return self.reference(), self.state.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "anchored": self.anchored,
            "txid": self.txid,
            "contentHash": self.content_hash,
            "error": self.error,
        }


@dataclass
class AnchorVerification:
    """Outcome of verifying a reference against the ledger."""
    verified: bool
    txid: Optional[str] = None
    explorer_url: Optional[str] = None
    data_hash: Optional[str] = None
    inscribed_at: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    cached: bool = False
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "verified": self.verified,
            "txid": self.txid,
            "explorerUrl": self.explorer_url,
        }
        if self.data_hash:
            body["dataHash"] = self.data_hash
        if self.inscribed_at:
            body["inscribedAt"] = self.inscribed_at
        if self.reason:
            body["reason"] = self.reason
        return body


@dataclass
class Confirmation:
    txid: str
    data_hash: Optional[str]
    inscribed_at: Optional[str]
    confirmed_at: str


class ConfirmationCache(ABC):
    """Storage for first confirmations of anchored transaction ids."""

    @abstractmethod
    def get(self, txid: str) -> Optional[Confirmation]:
        pass

    @abstractmethod
    def put(self, confirmation: Confirmation) -> None:
        pass


class InMemoryConfirmationCache(ConfirmationCache):
    """Process-local cache. Suitable for the CLI and tests."""

    def __init__(self):
        self._items: Dict[str, Confirmation] = {}
        self._lock = threading.Lock()

    def get(self, txid: str) -> Optional[Confirmation]:
        with self._lock:
            return self._items.get(txid)

    def put(self, confirmation: Confirmation) -> None:
        with self._lock:
            self._items.setdefault(confirmation.txid, confirmation)


@dataclass
class AnchorKey:
    """secp256k1 key and P2PKH address that fund anchor transactions."""
    private_key: PrivateKey
    address: str
    owner_hash160: bytes
    compressed: bool = True
    network: str = "main"

    @classmethod
    def from_wif(cls, wif: str, address: Optional[str] = None) -> 'AnchorKey':
        """
        Build from a WIF key. The address is derived from the key when not
        supplied; derivation needs RIPEMD-160 from the local OpenSSL build.

        Raises:
            AnchorConfigurationError: the key is malformed or the address cannot be derived
        """
        try:
            secret, compressed, network = decode_wif(wif)
        except InvalidRequest as e:
            raise AnchorConfigurationError(f"Invalid anchoring key: {e.message}") from e
        key = PrivateKey(secret)
        if address:
            try:
                h160, _ = address_to_hash160(address)
            except InvalidRequest as e:
                raise AnchorConfigurationError(f"Invalid anchoring address: {e.message}") from e
        else:
            h160 = hash160(key.public_key.format(compressed=compressed))
            address = hash160_to_address(h160, network)
        return cls(private_key=key, address=address, owner_hash160=h160, compressed=compressed, network=network)


class AnchorService:
    """
    Anchors payloads in a data-only ledger output and verifies them later.

    Args:
        ledger: network client
        key: funding key, or None when anchoring is not configured
        miner_fee: fixed fee in satoshis
        timeout: total network budget for one anchor or verify call
        secondary: optional fire-and-forget re-broadcaster
        cache: confirmation cache consulted before any verification round-trip
    """

    def __init__(
        self,
        ledger: LedgerClient,
        key: Optional[AnchorKey] = None,
        miner_fee: int = DEFAULT_MINER_FEE_SATS,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        explorer_base: str = DEFAULT_EXPLORER_URL,
        secondary: Optional[SecondaryBroadcaster] = None,
        cache: Optional[ConfirmationCache] = None,
    ):
        self.ledger = ledger
        self.key = key
        self.miner_fee = miner_fee
        self.timeout = timeout
        self.explorer_base = explorer_base
        self.secondary = secondary
        self.cache = cache or InMemoryConfirmationCache()

    @property
    def configured(self) -> bool:
        return self.key is not None

    def explorer_url(self, txid: Optional[str]) -> Optional[str]:
        return explorer_url(txid, self.explorer_base)

    # ------------------------------------------------------------
    # Anchor
    # ------------------------------------------------------------

    def anchor(self, payload: AnchoredPayload) -> AnchorResult:
        """
        Anchor a payload. Returns an AnchorResult in every case.
        """
        document = payload.to_document()
        data = canonicalize(document)
        digest = sha256_hex(data)
        try:
            txid = self._submit(data)
        except UpstreamFailure as e:
            logger.warning("Anchor of %s payload not completed: %s", document["type"], e.message)
            return AnchorResult(anchored=False, content_hash=digest, error=e.message, error_code=e.code)
        except Exception as e:
            logger.exception("Unexpected failure anchoring %s payload", document["type"])
            return AnchorResult(anchored=False, content_hash=digest, error=str(e), error_code="INTERNAL")
        logger.info("Anchored %s payload in %s", document["type"], txid)
        return AnchorResult(anchored=True, content_hash=digest, txid=txid)

    def _submit(self, data: bytes) -> str:
        if self.key is None:
            raise AnchorConfigurationError("No anchoring key configured")
        deadline = Deadline(self.timeout)
        utxos = self.ledger.list_unspent(self.key.address, deadline)
        if not utxos:
            raise InsufficientFunds(f"No spendable outputs for {self.key.address}")
        logger.debug("Anchor funding for %s: %s", self.key.address, summarize_utxos(utxos))
        utxo = utxos[0]
        tx = build_data_transaction(
            prev_txid=utxo.txid,
            prev_index=utxo.vout,
            prev_value=utxo.value,
            key=self.key.private_key,
            owner_hash160=self.key.owner_hash160,
            chunks=[PROTOCOL_TAG.encode('utf-8'), CONTENT_TYPE.encode('utf-8'), data],
            fee=self.miner_fee,
            compressed=self.key.compressed,
        )
        raw_hex = tx.to_hex()
        txid = self.ledger.broadcast(raw_hex, deadline)
        if self.secondary is not None:
            self.secondary.submit(raw_hex, txid)
        return txid

    # ------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------

    def verify(self, ref: Optional[str]) -> AnchorVerification:
        """
        Check that a reference points at a ledger transaction carrying one
        of our payloads. Returns "not verified" rather than raising.
        """
        if not ref:
            return AnchorVerification(verified=False, reason="not_anchored")
        if is_placeholder(ref):
            return AnchorVerification(verified=False, txid=ref, reason="anchor_pending")

        cached = self.cache.get(ref)
        if cached is not None:
            return AnchorVerification(
                verified=True,
                txid=ref,
                explorer_url=self.explorer_url(ref),
                data_hash=cached.data_hash,
                inscribed_at=cached.inscribed_at,
                cached=True,
            )

        try:
            raw_hex = self.ledger.get_transaction_hex(ref, Deadline(self.timeout))
        except UpstreamFailure as e:
            logger.warning("Verification of %s not completed: %s", ref, e.message)
            return AnchorVerification(verified=False, txid=ref, explorer_url=self.explorer_url(ref),
                                      reason="ledger_unavailable")
        if raw_hex is None:
            return AnchorVerification(verified=False, txid=ref, explorer_url=self.explorer_url(ref),
                                      reason="not_found")

        try:
            document = find_anchored_document(Transaction.from_hex(raw_hex))
        except InvalidRequest as e:
            logger.warning("Transaction %s could not be parsed: %s", ref, e.message)
            document = None
        if document is None:
            return AnchorVerification(verified=False, txid=ref, explorer_url=self.explorer_url(ref),
                                      reason="payload_not_found")

        data_hash = sha256_hex(canonicalize(document))
        confirmation = Confirmation(
            txid=ref,
            data_hash=data_hash,
            inscribed_at=document.get("timestamp"),
            confirmed_at=now_rfc3339(),
        )
        self.cache.put(confirmation)
        return AnchorVerification(
            verified=True,
            txid=ref,
            explorer_url=self.explorer_url(ref),
            data_hash=data_hash,
            inscribed_at=confirmation.inscribed_at,
            payload=document,
        )


def find_anchored_document(tx: Transaction) -> Optional[Dict[str, Any]]:
    """
    Scan outputs for our protocol tag and return the first valid embedded document.

    The content-type push is optional on read; the JSON is the last push.
    """
    for output in tx.outputs:
        pushes = extract_data_pushes(output.script)
        if not pushes or pushes[0] != PROTOCOL_TAG.encode('utf-8') or len(pushes) < 2:
            continue
        try:
            return parse_payload_bytes(pushes[-1])
        except InvalidRequest as e:
            logger.debug("Skipping malformed payload output: %s", e.message)
    return None

