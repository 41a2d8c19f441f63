from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class SignerSpec(BaseModel):
    name: str
    email: Optional[str] = None
    handle: Optional[str] = None
    role: Optional[str] = None
    order: Optional[int] = None


class CreateEnvelopeRequest(BaseModel):
    title: str
    document: str
    document_type: str = Field("sealed_document", alias="documentType")
    signers: List[SignerSpec]
    expires_at: Optional[str] = Field(None, alias="expiresAt")
    signing_fee_sats: Optional[int] = Field(None, alias="signingFeeSats", ge=0)

    model_config = {"populate_by_name": True}


class WalletBlock(BaseModel):
    wallet_type: str = Field(alias="walletType")
    address: str
    signature: str
    message: str
    payment_txid: Optional[str] = Field(None, alias="paymentTxid")

    model_config = {"populate_by_name": True}


class SignRequest(BaseModel):
    signature_type: str = Field(alias="signatureType")
    data: str
    wallet: Optional[WalletBlock] = None
    vault_item_id: Optional[str] = Field(None, alias="vaultItemId")

    model_config = {"populate_by_name": True}


class VaultItemRequest(BaseModel):
    item_type: str = Field(alias="itemType")
    name: Optional[str] = None
    content: str

    model_config = {"populate_by_name": True}


class InviteRequest(BaseModel):
    email: str
    message: Optional[str] = None


class CreateIdentityRequest(BaseModel):
    wallet_type: Optional[str] = Field(None, alias="walletType")

    model_config = {"populate_by_name": True}


class ProviderLinkRequest(BaseModel):
    provider: str
    provider_handle: Optional[str] = Field(None, alias="providerHandle")
    provider_id: Optional[str] = Field(None, alias="providerId")
    email: Optional[str] = None

    model_config = {"populate_by_name": True}


class SelfAttestationRequest(BaseModel):
    full_name: str = Field(alias="fullName")
    address_line1: str = Field(alias="addressLine1")
    address_line2: Optional[str] = Field(None, alias="addressLine2")
    city: str
    postcode: str
    country: str

    model_config = {"populate_by_name": True}

    def form(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class IdDocumentRequest(BaseModel):
    vault_item_id: str = Field(alias="vaultItemId")
    document_type: str = Field(alias="documentType")

    model_config = {"populate_by_name": True}


class VaultItemRef(BaseModel):
    vault_item_id: str = Field(alias="vaultItemId")
    title: Optional[str] = None

    model_config = {"populate_by_name": True}


class KycResultRequest(BaseModel):
    handle: str
    provider: str = "veriff"
    status: str
    session_id: Optional[str] = Field(None, alias="sessionId")

    model_config = {"populate_by_name": True}


class CosignRequest(BaseModel):
    document_id: str = Field(alias="documentId")
    recipient_handle: Optional[str] = Field(None, alias="recipientHandle")
    recipient_email: Optional[str] = Field(None, alias="recipientEmail")
    message: Optional[str] = None

    model_config = {"populate_by_name": True}


class CosignResponse(BaseModel):
    response_item_id: str = Field(alias="responseItemId")

    model_config = {"populate_by_name": True}


class PeerAttestationRequest(BaseModel):
    attestor: str
    declaration: str


class PeerAttestationResponse(BaseModel):
    accept: bool
