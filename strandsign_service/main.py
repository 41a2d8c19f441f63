import logging
import secrets
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from strandsign import __version__, is_placeholder
from strandsign.envelope import SignaturePayload, WalletProof
from strandsign.errors import StrandSignError

from . import config, cosign, envelopes, identities, vault
from .anchors import build_anchor_service
from .db import get_db_stats, init_db
from .logging_config import audit_log, configure_logging, set_request_id
from .models import (
    CosignRequest,
    CosignResponse,
    CreateEnvelopeRequest,
    CreateIdentityRequest,
    IdDocumentRequest,
    InviteRequest,
    KycResultRequest,
    PeerAttestationRequest,
    PeerAttestationResponse,
    ProviderLinkRequest,
    SelfAttestationRequest,
    SignRequest,
    VaultItemRef,
    VaultItemRequest,
)
from .rate_limit import RateLimiter
from .security import (
    ValidationError,
    extract_client_id,
    validate_email,
    validate_handle,
    validate_string_length,
    validate_token,
    validate_txid,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="StrandSign", version=__version__)

sign_limiter = RateLimiter(config.SIGN_RPM)
claim_limiter = RateLimiter(config.CLAIM_RPM)
ANCHOR = None


@app.on_event("startup")
def _startup():
    global ANCHOR
    configure_logging(config.LOG_LEVEL, json_format=config.LOG_JSON)
    init_db()
    ANCHOR = build_anchor_service()
    logger.info("StrandSign started, config: %s", config.validate_config())


@app.middleware("http")
async def _request_id(request: Request, call_next):
    request_id = set_request_id(request.headers.get("x-request-id"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(StrandSignError)
async def _domain_error(request: Request, exc: StrandSignError):
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "VALIDATION_ERROR", "field": exc.field, "message": exc.message},
    )


def current_handle(x_user_handle: Optional[str] = Header(None)) -> str:
    if not x_user_handle:
        raise HTTPException(401, "AUTH_REQUIRED")
    return validate_handle(x_user_handle, "X-User-Handle")


def _rate_limit(limiter: RateLimiter, request: Request, endpoint: str) -> None:
    client_id = extract_client_id(
        request.headers,
        request.client.host if request.client else None,
        trust_forwarded=config.TRUST_FORWARDED_FOR,
    )
    if not limiter.allow(client_id):
        audit_log.rate_limit_exceeded(client_id, endpoint)
        raise HTTPException(429, "RATE_LIMIT")


@app.get("/health")
def health():
    return {
        "status": "ok",
        "version": __version__,
        "env": config.ENV,
        "anchoring": ANCHOR.configured if ANCHOR else False,
        "db": get_db_stats(),
    }


# ============================================================
# Vault
# ============================================================

@app.post("/vault/items")
def create_vault_item(req: VaultItemRequest, handle: str = Depends(current_handle)):
    name = validate_string_length(req.name, "name", max_length=200) if req.name else None
    return identities.add_vault_item(handle, req.item_type, name, req.content, ANCHOR)


@app.get("/vault/items")
def list_vault_items(handle: str = Depends(current_handle)):
    return {"items": vault.list_items(handle), "shared": vault.shared_with(handle)}


@app.get("/vault/items/{item_id}")
def get_vault_item(item_id: str, handle: str = Depends(current_handle)):
    return vault.require_access(handle, item_id)


@app.post("/vault/items/{item_id}/invites")
def invite_to_item(item_id: str, req: InviteRequest, handle: str = Depends(current_handle)):
    return vault.create_invite(handle, item_id, validate_email(req.email), req.message)


@app.get("/claim/{token}")
def view_claim(token: str):
    return vault.get_invite(validate_token(token))


@app.post("/claim/{token}")
def claim(token: str, request: Request, handle: str = Depends(current_handle)):
    _rate_limit(claim_limiter, request, "claim")
    return vault.claim_invite(validate_token(token), handle)


# ============================================================
# Identity
# ============================================================

@app.post("/identity")
def create_identity(req: CreateIdentityRequest, handle: str = Depends(current_handle)):
    identity = identities.ensure_identity(handle, ANCHOR, wallet_type=req.wallet_type)
    identities.link_existing_artifacts(identity, ANCHOR)
    return identities.identity_summary(handle, ANCHOR)


@app.get("/identity")
def my_identity(handle: str = Depends(current_handle)):
    return identities.identity_summary(handle, ANCHOR)


@app.get("/identities/{subject}")
def public_identity(subject: str):
    summary = identities.identity_summary(validate_handle(subject), ANCHOR)
    summary.pop("providers", None)
    for strand in summary["strands"]:
        strand.pop("metadata", None)
    return summary


@app.post("/identity/providers")
def link_provider(req: ProviderLinkRequest, handle: str = Depends(current_handle)):
    email = validate_email(req.email) if req.email else None
    return identities.link_provider(
        handle, req.provider, ANCHOR,
        provider_handle=req.provider_handle, provider_id=req.provider_id, email=email,
    )


@app.post("/identity/self-attestation")
def self_attestation(req: SelfAttestationRequest, handle: str = Depends(current_handle)):
    return identities.self_attest(handle, req.form(), ANCHOR).to_dict()


@app.post("/identity/id-documents")
def add_id_document(req: IdDocumentRequest, handle: str = Depends(current_handle)):
    return identities.add_id_document(handle, req.vault_item_id, req.document_type, ANCHOR).to_dict()


@app.post("/identity/signature")
def register_signature(req: VaultItemRef, handle: str = Depends(current_handle)):
    return identities.register_signature(handle, req.vault_item_id, ANCHOR)


@app.post("/identity/profile-photo")
def profile_photo(req: VaultItemRef, handle: str = Depends(current_handle)):
    return identities.set_profile_photo(handle, req.vault_item_id, ANCHOR).to_dict()


@app.post("/identity/ip-threads")
def create_ip_thread(req: VaultItemRef, handle: str = Depends(current_handle)):
    return identities.create_ip_thread(handle, req.vault_item_id, ANCHOR, title=req.title).to_dict()


@app.get("/identity/ip-threads")
def list_ip_threads(handle: str = Depends(current_handle)):
    return {"threads": identities.list_ip_threads(handle)}


@app.post("/admin/kyc")
def record_kyc(req: KycResultRequest, x_admin_key: Optional[str] = Header(None)):
    if not config.ADMIN_API_KEY or not x_admin_key or not secrets.compare_digest(x_admin_key, config.ADMIN_API_KEY):
        audit_log.security_event("admin_key_rejected", severity="high", endpoint="/admin/kyc")
        raise HTTPException(403, "ADMIN_KEY_REQUIRED")
    strand = identities.record_kyc(
        validate_handle(req.handle), req.provider, req.status, ANCHOR, session_id=req.session_id,
    )
    return {"recorded": strand is not None, "strand": strand.to_dict() if strand else None}


# ============================================================
# Envelopes
# ============================================================

@app.post("/envelopes")
def create_envelope(req: CreateEnvelopeRequest, handle: str = Depends(current_handle)):
    validate_string_length(req.title, "title", max_length=200)
    signers = []
    for spec in req.signers:
        data = spec.model_dump()
        if spec.handle:
            data["handle"] = validate_handle(spec.handle, "signers.handle")
        if spec.email:
            data["email"] = validate_email(spec.email, "signers.email")
        signers.append(data)
    envelope = envelopes.create(
        handle, req.title, req.document, signers,
        document_type=req.document_type, expires_at=req.expires_at, signing_fee_sats=req.signing_fee_sats,
    )
    body = envelope.to_dict(include_tokens=True)
    for signer in body["signers"]:
        signer["signingUrl"] = f"{config.APP_URL}/sign/{signer['token']}"
    return body


@app.get("/envelopes")
def list_envelopes(handle: str = Depends(current_handle)):
    return envelopes.list_for(handle)


@app.get("/envelopes/{envelope_id}")
def get_envelope(envelope_id: str, handle: str = Depends(current_handle)):
    return envelopes.get(handle, envelope_id)


@app.get("/envelopes/{envelope_id}/verify")
def verify_envelope(envelope_id: str):
    return envelopes.verify_envelope(envelope_id, ANCHOR)


@app.get("/sign/{token}")
def view_signing_link(token: str):
    return envelopes.resolve_token(validate_token(token))


@app.post("/sign/{token}")
def sign(token: str, req: SignRequest, request: Request):
    _rate_limit(sign_limiter, request, "sign")
    wallet = None
    if req.wallet is not None:
        wallet = WalletProof(
            wallet_type=req.wallet.wallet_type,
            address=req.wallet.address,
            signature=req.wallet.signature,
            message=req.wallet.message,
            payment_txid=validate_txid(req.wallet.payment_txid, "paymentTxid") if req.wallet.payment_txid else None,
        )
    payload = SignaturePayload(
        signature_type=req.signature_type,
        data=req.data,
        wallet=wallet,
        vault_item_id=req.vault_item_id,
    )
    return envelopes.sign(validate_token(token), payload, ANCHOR)


# ============================================================
# Co-sign and peer attestation
# ============================================================

@app.post("/cosign")
def request_cosign(req: CosignRequest, handle: str = Depends(current_handle)):
    recipient = validate_handle(req.recipient_handle, "recipientHandle") if req.recipient_handle else None
    email = validate_email(req.recipient_email, "recipientEmail") if req.recipient_email else None
    message = validate_string_length(req.message, "message") if req.message else None
    return cosign.request_cosign(handle, req.document_id, recipient, email, message)


@app.get("/cosign/received")
def cosign_received(handle: str = Depends(current_handle)):
    return {"requests": cosign.list_received(handle)}


@app.get("/cosign/sent")
def cosign_sent(handle: str = Depends(current_handle)):
    return {"requests": cosign.list_sent(handle)}


@app.post("/cosign/{request_id}/respond")
def respond_cosign(request_id: str, req: CosignResponse, handle: str = Depends(current_handle)):
    return cosign.respond_cosign(request_id, handle, req.response_item_id, ANCHOR)


@app.post("/cosign/{request_id}/dismiss")
def dismiss_cosign(request_id: str, handle: str = Depends(current_handle)):
    return cosign.dismiss_cosign(request_id, handle)


@app.post("/peer-attestations")
def request_peer_attestation(req: PeerAttestationRequest, handle: str = Depends(current_handle)):
    declaration = validate_string_length(req.declaration, "declaration", max_length=2000)
    return cosign.request_peer_attestation(handle, validate_handle(req.attestor, "attestor"), declaration)


@app.get("/peer-attestations")
def list_peer_attestations(handle: str = Depends(current_handle)):
    return cosign.list_peer_requests(handle)


@app.post("/peer-attestations/{request_id}/respond")
def respond_peer_attestation(request_id: str, req: PeerAttestationResponse, handle: str = Depends(current_handle)):
    return cosign.respond_peer_attestation(request_id, handle, req.accept, ANCHOR)


@app.post("/peer-attestations/{request_id}/dismiss")
def dismiss_peer_attestation(request_id: str, handle: str = Depends(current_handle)):
    return cosign.dismiss_peer_request(request_id, handle)


# ============================================================
# Anchors
# ============================================================

@app.get("/anchors/{txid}")
def verify_anchor(txid: str):
    if is_placeholder(txid):
        return ANCHOR.verify(txid).to_dict()
    return ANCHOR.verify(validate_txid(txid)).to_dict()
