"""
StrandSign Wallet Proofs

A signer may attach a wallet verification block: an address, a signature
and the exact challenge text that was signed. The challenge binds the
signature to one document through its hash line.

Ed25519 wallets (address = base64 public key) are verified here with
PyNaCl. Other wallet types are accepted as provider-attested and stored
with ``signature_verified`` unset.
"""

import base64
from typing import Optional, Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .envelope import WalletProof

ED25519_WALLET = "ed25519"

CHALLENGE_TEMPLATE = (
    "StrandSign Document Signature\n"
    "=============================\n"
    "Document: {title}\n"
    "Hash: {document_hash}\n"
    "Signer: {signer}\n"
    "Time: {timestamp}\n"
    "\n"
    "By signing, I confirm I have reviewed and agree to this document."
)


def build_challenge(title: str, document_hash: str, signer: str, timestamp: str) -> str:
    """Canonical challenge string a wallet signs."""
    return CHALLENGE_TEMPLATE.format(
        title=title, document_hash=document_hash, signer=signer, timestamp=timestamp,
    )


def challenge_binds(message: str, document_hash: str) -> bool:
    return f"Hash: {document_hash}" in message.splitlines()


def verify_ed25519(signature_b64: str, payload: bytes, public_key_b64: str) -> bool:
    """
    Verify an Ed25519 signature.

    Args:
        signature_b64: Base64-encoded signature
        payload: The signed data
        public_key_b64: Base64-encoded public key

    Returns:
        True if signature is valid, False otherwise
    """
    try:
        vk = VerifyKey(base64.b64decode(public_key_b64))
        vk.verify(payload, base64.b64decode(signature_b64))
        return True
    except (BadSignatureError, ValueError, TypeError):
        return False


def verify_wallet_proof(proof: Optional[WalletProof], document_hash: str) -> Optional[bool]:
    """
    Returns:
        True/False for verifiable wallet types, None when no proof was given
        or the wallet type cannot be verified locally
    """
    if proof is None:
        return None
    if proof.wallet_type != ED25519_WALLET:
        return None
    if not challenge_binds(proof.message, document_hash):
        return False
    return verify_ed25519(proof.signature, proof.message.encode('utf-8'), proof.address)


def generate_wallet_key() -> Tuple[str, str]:
    """New Ed25519 wallet key. Returns (private_key_b64, public_key_b64)."""
    sk = SigningKey.generate()
    return (
        base64.b64encode(bytes(sk)).decode('ascii'),
        base64.b64encode(bytes(sk.verify_key)).decode('ascii'),
    )


def sign_challenge(private_key_b64: str, message: str) -> str:
    """Sign a challenge with an Ed25519 wallet key. Returns base64 signature."""
    sk = SigningKey(base64.b64decode(private_key_b64))
    return base64.b64encode(sk.sign(message.encode('utf-8')).signature).decode('ascii')
