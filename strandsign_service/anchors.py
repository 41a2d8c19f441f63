"""
Anchoring wiring for the service.

Builds the process-wide AnchorService from configuration and provides the
one call every business flow uses to anchor a payload and get back the
(reference, state) pair it stores.
"""

import logging
from typing import Optional, Tuple

from strandsign import (
    AnchorConfigurationError,
    AnchorKey,
    AnchorService,
    PaymentVerifier,
    SecondaryBroadcaster,
    WhatsOnChainClient,
)
from strandsign.payloads import AnchoredPayload

from . import config
from .db import SqliteConfirmationCache
from .logging_config import audit_log

logger = logging.getLogger(__name__)


def load_anchor_key() -> Optional[AnchorKey]:
    """Anchoring key from env or key file; None leaves anchoring unconfigured."""
    raw = config.load_anchor_key_config()
    if not raw or not raw.get("wif"):
        logger.warning("No anchoring key configured; anchors will be stored as placeholders")
        return None
    try:
        return AnchorKey.from_wif(raw["wif"], raw.get("address") or None)
    except AnchorConfigurationError as e:
        logger.warning("Anchoring disabled: %s", e.message)
        return None


def build_anchor_service() -> AnchorService:
    ledger = WhatsOnChainClient(
        base_url=config.LEDGER_API_URL,
        per_call_timeout=config.ANCHOR_REQUEST_TIMEOUT_SECONDS,
    )
    secondary = None
    if config.SECONDARY_BROADCAST_URL:
        secondary = SecondaryBroadcaster(
            config.SECONDARY_BROADCAST_URL,
            timeout=config.ANCHOR_REQUEST_TIMEOUT_SECONDS,
        )
    return AnchorService(
        ledger,
        key=load_anchor_key(),
        miner_fee=config.ANCHOR_MINER_FEE_SATS,
        timeout=config.ANCHOR_TIMEOUT_SECONDS,
        explorer_base=config.LEDGER_EXPLORER_URL,
        secondary=secondary,
        cache=SqliteConfirmationCache(),
    )


def build_payment_verifier(anchor: AnchorService) -> PaymentVerifier:
    return PaymentVerifier(
        anchor.ledger,
        payee_address=config.TREASURY_ADDRESS or None,
        timeout=config.ANCHOR_TIMEOUT_SECONDS,
    )


def anchor_payload(anchor: AnchorService, payload: AnchoredPayload, subject: str) -> Tuple[str, str]:
    """
    Anchor and audit. Returns (reference, state): a transaction id with
    state "confirmed", or a placeholder with state "placeholder".
    """
    result = anchor.anchor(payload)
    ref, state = result.outcome()
    audit_log.anchor_outcome(payload.payload_type.value, subject, ref, state, result.error)
    return ref, state
