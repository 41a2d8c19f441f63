"""
StrandSign Identity Strands

A strand is one immutable attestation fact attached to an identity. This
module holds the closed strand taxonomy, the per-type metadata schemas, the
point table and the two pure functions computed over an identity's strands:

    compute_score(strands)  additive points, order independent
    derive_level(strands)   priority-gated classification

The level is NOT a score threshold. It is decided by which strand types
are present, checked in fixed order:

    kyc                               -> 4 Sovereign
    paid_signing or peer_attestation  -> 3 Strong
    id_document or self_attestation   -> 2 Verified
    anything else                     -> 1 Basic

so many low-value strands can never buy a higher level.
"""

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple, Type, Union

from .errors import InvalidRequest


class StrandType(str, Enum):
    VAULT_ITEM = "vault_item"
    OAUTH = "oauth"
    REGISTERED_SIGNATURE = "registered_signature"
    ID_DOCUMENT = "id_document"
    SELF_ATTESTATION = "self_attestation"
    PAID_SIGNING = "paid_signing"
    PEER_ATTESTATION = "peer_attestation"
    IP_THREAD = "ip_thread"
    PROFILE_PHOTO = "profile_photo"
    KYC = "kyc"


class VaultItemType(str, Enum):
    TLDRAW = "TLDRAW"
    CAMERA = "CAMERA"
    VIDEO = "VIDEO"
    DOCUMENT = "DOCUMENT"
    SEALED_DOCUMENT = "SEALED_DOCUMENT"


class OAuthProvider(str, Enum):
    GITHUB = "github"
    GOOGLE = "google"
    TWITTER = "twitter"
    DISCORD = "discord"
    LINKEDIN = "linkedin"
    MICROSOFT = "microsoft"


class IdDocumentType(str, Enum):
    PASSPORT = "passport"
    DRIVING_LICENCE = "driving_licence"
    PROOF_OF_ADDRESS = "proof_of_address"


class PeerAttestationKind(str, Enum):
    COSIGN = "cosign"


class KycProvider(str, Enum):
    VERIFF = "veriff"


# Allowed subtypes per strand type. None means the type takes no subtype.
SUBTYPES: Dict[StrandType, Optional[Type[Enum]]] = {
    StrandType.VAULT_ITEM: VaultItemType,
    StrandType.OAUTH: OAuthProvider,
    StrandType.REGISTERED_SIGNATURE: None,
    StrandType.ID_DOCUMENT: IdDocumentType,
    StrandType.SELF_ATTESTATION: None,
    StrandType.PAID_SIGNING: None,
    StrandType.PEER_ATTESTATION: PeerAttestationKind,
    StrandType.IP_THREAD: None,
    StrandType.PROFILE_PHOTO: None,
    StrandType.KYC: KycProvider,
}

# One strand per identity and (type, subtype) for these types.
SINGLETON_TYPES: FrozenSet[StrandType] = frozenset({
    StrandType.SELF_ATTESTATION,
    StrandType.ID_DOCUMENT,
    StrandType.PAID_SIGNING,
    StrandType.OAUTH,
    StrandType.PROFILE_PHOTO,
    StrandType.KYC,
})

DEFAULT_POINTS = 1

STRAND_POINTS: Dict[str, int] = {
    "vault_item/TLDRAW": 1,
    "vault_item/CAMERA": 1,
    "vault_item/DOCUMENT": 1,
    "vault_item/VIDEO": 2,
    "vault_item/SEALED_DOCUMENT": 2,
    "oauth/github": 2,
    "oauth/google": 2,
    "oauth/linkedin": 2,
    "oauth/twitter": 1,
    "oauth/discord": 1,
    "oauth/microsoft": 1,
    "registered_signature": 3,
    "profile_photo": 1,
    "id_document/passport": 5,
    "id_document/driving_licence": 5,
    "id_document/proof_of_address": 5,
    "self_attestation": 3,
    "paid_signing": 3,
    "peer_attestation/cosign": 5,
    "ip_thread": 2,
    "kyc/veriff": 10,
}

STRAND_LABELS: Dict[str, str] = {
    "vault_item/TLDRAW": "Drawn Signature",
    "vault_item/CAMERA": "Photo",
    "vault_item/VIDEO": "Video",
    "vault_item/DOCUMENT": "Document",
    "vault_item/SEALED_DOCUMENT": "Sealed Document",
    "oauth/github": "GitHub",
    "oauth/google": "Google",
    "oauth/twitter": "X (Twitter)",
    "oauth/discord": "Discord",
    "oauth/linkedin": "LinkedIn",
    "oauth/microsoft": "Microsoft",
    "registered_signature": "Registered Signature",
    "profile_photo": "Profile Photo",
    "id_document/passport": "Passport",
    "id_document/driving_licence": "Driving Licence",
    "id_document/proof_of_address": "Proof of Address",
    "self_attestation": "Self Attestation",
    "paid_signing": "Paid Signing",
    "peer_attestation/cosign": "Peer Co-Sign",
    "ip_thread": "IP Thread",
    "kyc/veriff": "KYC (Veriff)",
}


def _value(v: Union[str, Enum, None]) -> Optional[str]:
    if v is None:
        return None
    return v.value if isinstance(v, Enum) else str(v)


def strand_key(strand_type: Union[str, StrandType], subtype: Union[str, Enum, None] = None) -> str:
    """Point-table key: ``type/subtype`` or ``type``."""
    t = _value(strand_type)
    s = _value(subtype)
    return f"{t}/{s}" if s else t


def strand_points(strand_type: Union[str, StrandType], subtype: Union[str, Enum, None] = None) -> int:
    return STRAND_POINTS.get(strand_key(strand_type, subtype), DEFAULT_POINTS)


def strand_label(strand_type: Union[str, StrandType], subtype: Union[str, Enum, None] = None) -> str:
    key = strand_key(strand_type, subtype)
    return STRAND_LABELS.get(key, key)


def is_singleton(strand_type: Union[str, StrandType]) -> bool:
    try:
        return StrandType(_value(strand_type)) in SINGLETON_TYPES
    except ValueError:
        return False


def validate_strand(strand_type: Union[str, StrandType], subtype: Union[str, Enum, None] = None) -> Tuple[StrandType, Optional[str]]:
    """
    Check a (type, subtype) pair against the taxonomy.

    Returns:
        (StrandType, normalized subtype or None)

    Raises:
        InvalidRequest: unknown type, missing or unexpected subtype
    """
    try:
        st = StrandType(_value(strand_type))
    except ValueError:
        raise InvalidRequest(f"Unknown strand type: {strand_type}")
    sub = _value(subtype)
    allowed = SUBTYPES[st]
    if allowed is None:
        if sub:
            raise InvalidRequest(f"Strand type {st.value} takes no subtype")
        return st, None
    if not sub:
        raise InvalidRequest(f"Strand type {st.value} requires a subtype")
    try:
        return st, allowed(sub).value
    except ValueError:
        raise InvalidRequest(f"Unknown subtype {sub!r} for strand type {st.value}")


# ============================================================
# Metadata schemas (one per strand type)
# ============================================================

@dataclass
class StrandMetadata:
    """Base for typed strand metadata. Unknown keys are kept in ``extra``."""

    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {k: v for k, v in asdict(self).items() if k != "extra" and v is not None}
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'StrandMetadata':
        data = dict(data or {})
        names = {f.name for f in fields(cls)} - {"extra"}
        known = {k: data.pop(k) for k in list(data) if k in names}
        return cls(extra=data, **known)

    def matches(self, criteria: Dict[str, Any]) -> bool:
        """Metadata-equality lookup used for caller-side duplicate checks."""
        flat = self.to_dict()
        return all(flat.get(k) == v for k, v in criteria.items())


@dataclass
class VaultItemMeta(StrandMetadata):
    itemId: Optional[str] = None
    itemName: Optional[str] = None
    payloadHash: Optional[str] = None


@dataclass
class OAuthMeta(StrandMetadata):
    providerHandle: Optional[str] = None
    providerId: Optional[str] = None


@dataclass
class RegisteredSignatureMeta(StrandMetadata):
    vaultItemId: Optional[str] = None
    signatureTxid: Optional[str] = None


@dataclass
class IdDocumentMeta(StrandMetadata):
    vaultItemId: Optional[str] = None
    documentType: Optional[str] = None
    submittedAs: Optional[str] = None


@dataclass
class SelfAttestationMeta(StrandMetadata):
    fullName: Optional[str] = None
    addressLine1: Optional[str] = None
    addressLine2: Optional[str] = None
    city: Optional[str] = None
    postcode: Optional[str] = None
    country: Optional[str] = None
    declarationHash: Optional[str] = None


@dataclass
class PaidSigningMeta(StrandMetadata):
    envelopeId: Optional[str] = None
    paymentTxid: Optional[str] = None
    amountSats: Optional[int] = None


@dataclass
class PeerAttestationMeta(StrandMetadata):
    requestId: Optional[str] = None
    requestHash: Optional[str] = None
    role: Optional[str] = None
    counterparty: Optional[str] = None
    documentId: Optional[str] = None


@dataclass
class IpThreadMeta(StrandMetadata):
    vaultItemId: Optional[str] = None
    documentHash: Optional[str] = None
    threadTitle: Optional[str] = None
    threadSequence: Optional[int] = None


@dataclass
class ProfilePhotoMeta(StrandMetadata):
    vaultItemId: Optional[str] = None


@dataclass
class KycMeta(StrandMetadata):
    sessionId: Optional[str] = None
    status: Optional[str] = None
    verifiedAt: Optional[str] = None


METADATA_TYPES: Dict[StrandType, Type[StrandMetadata]] = {
    StrandType.VAULT_ITEM: VaultItemMeta,
    StrandType.OAUTH: OAuthMeta,
    StrandType.REGISTERED_SIGNATURE: RegisteredSignatureMeta,
    StrandType.ID_DOCUMENT: IdDocumentMeta,
    StrandType.SELF_ATTESTATION: SelfAttestationMeta,
    StrandType.PAID_SIGNING: PaidSigningMeta,
    StrandType.PEER_ATTESTATION: PeerAttestationMeta,
    StrandType.IP_THREAD: IpThreadMeta,
    StrandType.PROFILE_PHOTO: ProfilePhotoMeta,
    StrandType.KYC: KycMeta,
}


def build_metadata(strand_type: Union[str, StrandType], data: Union[StrandMetadata, Dict[str, Any], None]) -> StrandMetadata:
    """Coerce a metadata bag into the schema for its strand type."""
    st = StrandType(_value(strand_type))
    meta_cls = METADATA_TYPES[st]
    if isinstance(data, StrandMetadata):
        if not isinstance(data, meta_cls):
            raise InvalidRequest(f"{type(data).__name__} is not metadata for {st.value}")
        return data
    return meta_cls.from_dict(data)


@dataclass
class Strand:
    """One persisted attestation fact."""
    strand_id: str
    identity_id: str
    strand_type: StrandType
    subtype: Optional[str]
    metadata: StrandMetadata
    created_at: str
    artifact_ref: Optional[str] = None
    anchor_txid: Optional[str] = None
    anchor_state: str = "not_attempted"

    @property
    def key(self) -> str:
        return strand_key(self.strand_type, self.subtype)

    @property
    def points(self) -> int:
        return strand_points(self.strand_type, self.subtype)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.strand_id,
            "identityId": self.identity_id,
            "strandType": self.strand_type.value,
            "strandSubtype": self.subtype,
            "label": strand_label(self.strand_type, self.subtype),
            "points": self.points,
            "artifactRef": self.artifact_ref,
            "anchorTxid": self.anchor_txid,
            "anchorState": self.anchor_state,
            "metadata": self.metadata.to_dict(),
            "createdAt": self.created_at,
        }


# ============================================================
# Scoring and level
# ============================================================

StrandRef = Union[Strand, Tuple[str, Optional[str]], str]


def _pair(item: StrandRef) -> Tuple[str, Optional[str]]:
    if isinstance(item, Strand):
        return item.strand_type.value, item.subtype
    if isinstance(item, tuple):
        return _value(item[0]), _value(item[1])
    text = _value(item)
    if "/" in text:
        t, s = text.split("/", 1)
        return t, s
    return text, None


def compute_score(strands: Iterable[StrandRef]) -> int:
    """Sum of per-(type, subtype) points over the full strand multiset."""
    return sum(strand_points(*_pair(s)) for s in strands)


@dataclass(frozen=True)
class IdentityLevel:
    level: int
    label: str

    def to_dict(self) -> Dict[str, Any]:
        return {"level": self.level, "label": self.label}


BASIC = IdentityLevel(1, "Basic")
VERIFIED = IdentityLevel(2, "Verified")
STRONG = IdentityLevel(3, "Strong")
SOVEREIGN = IdentityLevel(4, "Sovereign")


def derive_level(strands: Iterable[StrandRef]) -> IdentityLevel:
    """Priority-gated classification over strand type presence."""
    types = {t for t, _ in (_pair(s) for s in strands)}
    if StrandType.KYC.value in types:
        return SOVEREIGN
    if StrandType.PAID_SIGNING.value in types or StrandType.PEER_ATTESTATION.value in types:
        return STRONG
    if StrandType.ID_DOCUMENT.value in types or StrandType.SELF_ATTESTATION.value in types:
        return VERIFIED
    return BASIC
