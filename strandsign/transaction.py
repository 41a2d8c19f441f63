"""
StrandSign Ledger Transaction Codec

Builds, signs, serializes and parses the small subset of ledger
transactions the anchoring service needs:

- one P2PKH input spending an output controlled by the anchoring key
- one zero-value data output: OP_FALSE OP_RETURN <tag> <content-type> <json>
- one optional P2PKH change output back to the anchoring address

Signatures use the replay-protected digest algorithm (BIP143 preimage with
SIGHASH_ALL|FORKID) over secp256k1 via coincurve.
"""

import struct
from dataclasses import dataclass, field
from io import BytesIO
from typing import List, Optional, Sequence, Tuple

from coincurve import PrivateKey

from .errors import InsufficientFunds, InvalidRequest
from .hashing import double_sha256, hash160

# Opcodes
OP_FALSE = 0x00
OP_PUSHDATA1 = 0x4c
OP_PUSHDATA2 = 0x4d
OP_PUSHDATA4 = 0x4e
OP_RETURN = 0x6a
OP_DUP = 0x76
OP_EQUALVERIFY = 0x88
OP_HASH160 = 0xa9
OP_CHECKSIG = 0xac

SIGHASH_ALL = 0x01
SIGHASH_FORKID = 0x40
SIGHASH_ALL_FORKID = SIGHASH_ALL | SIGHASH_FORKID

DEFAULT_SEQUENCE = 0xffffffff
TX_VERSION = 1

NETWORKS = {
    "main": {"address": 0x00, "wif": 0x80},
    "test": {"address": 0x6f, "wif": 0xef},
}

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


# ============================================================
# Base58 / WIF / Addresses
# ============================================================

def b58encode(data: bytes) -> str:
    num = int.from_bytes(data, "big")
    out = ""
    while num > 0:
        num, rem = divmod(num, 58)
        out = BASE58_ALPHABET[rem] + out
    pad = len(data) - len(data.lstrip(b"\x00"))
    return "1" * pad + out


def b58decode(text: str) -> bytes:
    num = 0
    for ch in text:
        idx = BASE58_ALPHABET.find(ch)
        if idx < 0:
            raise InvalidRequest(f"Invalid base58 character: {ch!r}")
        num = num * 58 + idx
    body = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    pad = len(text) - len(text.lstrip("1"))
    return b"\x00" * pad + body


def b58check_encode(payload: bytes) -> str:
    return b58encode(payload + double_sha256(payload)[:4])


def b58check_decode(text: str) -> bytes:
    raw = b58decode(text)
    if len(raw) < 5:
        raise InvalidRequest("base58check value too short")
    payload, checksum = raw[:-4], raw[-4:]
    if double_sha256(payload)[:4] != checksum:
        raise InvalidRequest("base58check checksum mismatch")
    return payload


def encode_wif(secret: bytes, compressed: bool = True, network: str = "main") -> str:
    payload = bytes([NETWORKS[network]["wif"]]) + secret
    if compressed:
        payload += b"\x01"
    return b58check_encode(payload)


def decode_wif(wif: str) -> Tuple[bytes, bool, str]:
    """
    Decode a WIF private key.

    Returns:
        (32-byte secret, compressed flag, network name)
    """
    payload = b58check_decode(wif)
    version = payload[0]
    network = next((name for name, v in NETWORKS.items() if v["wif"] == version), None)
    if network is None:
        raise InvalidRequest(f"Unknown WIF version byte: {version:#04x}")
    body = payload[1:]
    if len(body) == 33 and body[-1] == 0x01:
        return body[:32], True, network
    if len(body) == 32:
        return body, False, network
    raise InvalidRequest("Malformed WIF payload")


def address_to_hash160(address: str) -> Tuple[bytes, str]:
    """Decode a P2PKH address into (hash160, network name)."""
    payload = b58check_decode(address)
    if len(payload) != 21:
        raise InvalidRequest("Address payload must be 21 bytes")
    network = next((name for name, v in NETWORKS.items() if v["address"] == payload[0]), None)
    if network is None:
        raise InvalidRequest(f"Unknown address version byte: {payload[0]:#04x}")
    return payload[1:], network


def hash160_to_address(h160: bytes, network: str = "main") -> str:
    return b58check_encode(bytes([NETWORKS[network]["address"]]) + h160)


def public_key_to_address(public_key: bytes, network: str = "main") -> str:
    return hash160_to_address(hash160(public_key), network)


# ============================================================
# Scripts
# ============================================================

def encode_varint(n: int) -> bytes:
    if n < 0xfd:
        return bytes([n])
    if n <= 0xffff:
        return b"\xfd" + struct.pack("<H", n)
    if n <= 0xffffffff:
        return b"\xfe" + struct.pack("<I", n)
    return b"\xff" + struct.pack("<Q", n)


def read_varint(stream: BytesIO) -> int:
    prefix = _read_exact(stream, 1)[0]
    if prefix < 0xfd:
        return prefix
    if prefix == 0xfd:
        return struct.unpack("<H", _read_exact(stream, 2))[0]
    if prefix == 0xfe:
        return struct.unpack("<I", _read_exact(stream, 4))[0]
    return struct.unpack("<Q", _read_exact(stream, 8))[0]


def _read_exact(stream: BytesIO, n: int) -> bytes:
    data = stream.read(n)
    if len(data) != n:
        raise InvalidRequest("Unexpected end of transaction data")
    return data


def push_data(data: bytes) -> bytes:
    """Minimal push opcode for a data chunk."""
    n = len(data)
    if n < OP_PUSHDATA1:
        return bytes([n]) + data
    if n <= 0xff:
        return bytes([OP_PUSHDATA1, n]) + data
    if n <= 0xffff:
        return bytes([OP_PUSHDATA2]) + struct.pack("<H", n) + data
    return bytes([OP_PUSHDATA4]) + struct.pack("<I", n) + data


def p2pkh_script(h160: bytes) -> bytes:
    return bytes([OP_DUP, OP_HASH160, 20]) + h160 + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def data_script(chunks: Sequence[bytes]) -> bytes:
    """Unspendable data output script: OP_FALSE OP_RETURN followed by one push per chunk."""
    return bytes([OP_FALSE, OP_RETURN]) + b"".join(push_data(c) for c in chunks)


def parse_script(script: bytes) -> List[Tuple[int, Optional[bytes]]]:
    """Split a script into (opcode, pushed data or None) chunks."""
    chunks = []
    i = 0
    while i < len(script):
        op = script[i]
        i += 1
        if 0 < op < OP_PUSHDATA1:
            size = op
        elif op == OP_PUSHDATA1:
            size = script[i]
            i += 1
        elif op == OP_PUSHDATA2:
            size = struct.unpack("<H", script[i:i + 2])[0]
            i += 2
        elif op == OP_PUSHDATA4:
            size = struct.unpack("<I", script[i:i + 4])[0]
            i += 4
        else:
            chunks.append((op, None))
            continue
        if i + size > len(script):
            raise InvalidRequest("Script push runs past end of script")
        chunks.append((op, script[i:i + size]))
        i += size
    return chunks


def extract_data_pushes(script: bytes) -> Optional[List[bytes]]:
    """
    Return the pushed chunks of a data output, or None if the script is not one.

    Both ``OP_FALSE OP_RETURN ...`` and bare ``OP_RETURN ...`` forms are accepted.
    """
    try:
        chunks = parse_script(script)
    except (InvalidRequest, IndexError, struct.error):
        return None
    if chunks and chunks[0][0] == OP_FALSE and chunks[0][1] is None:
        chunks = chunks[1:]
    if not chunks or chunks[0][0] != OP_RETURN:
        return None
    return [data for _, data in chunks[1:] if data is not None]


def is_p2pkh_to(script: bytes, h160: bytes) -> bool:
    return script == p2pkh_script(h160)


# ============================================================
# Transactions
# ============================================================

@dataclass
class TxInput:
    prev_txid: str
    prev_index: int
    script_sig: bytes = b""
    sequence: int = DEFAULT_SEQUENCE

    def outpoint(self) -> bytes:
        return bytes.fromhex(self.prev_txid)[::-1] + struct.pack("<I", self.prev_index)

    def serialize(self) -> bytes:
        return (
            self.outpoint()
            + encode_varint(len(self.script_sig)) + self.script_sig
            + struct.pack("<I", self.sequence)
        )


@dataclass
class TxOutput:
    value: int
    script: bytes

    def serialize(self) -> bytes:
        return struct.pack("<q", self.value) + encode_varint(len(self.script)) + self.script


@dataclass
class Transaction:
    inputs: List[TxInput] = field(default_factory=list)
    outputs: List[TxOutput] = field(default_factory=list)
    version: int = TX_VERSION
    locktime: int = 0

    def serialize(self) -> bytes:
        return (
            struct.pack("<I", self.version)
            + encode_varint(len(self.inputs)) + b"".join(i.serialize() for i in self.inputs)
            + encode_varint(len(self.outputs)) + b"".join(o.serialize() for o in self.outputs)
            + struct.pack("<I", self.locktime)
        )

    def to_hex(self) -> str:
        return self.serialize().hex()

    def txid(self) -> str:
        return double_sha256(self.serialize())[::-1].hex()

    @classmethod
    def from_hex(cls, raw_hex: str) -> 'Transaction':
        try:
            raw = bytes.fromhex(raw_hex.strip())
        except ValueError as e:
            raise InvalidRequest("Transaction is not valid hex") from e
        return cls.parse(raw)

    @classmethod
    def parse(cls, raw: bytes) -> 'Transaction':
        stream = BytesIO(raw)
        version = struct.unpack("<I", _read_exact(stream, 4))[0]
        inputs = []
        for _ in range(read_varint(stream)):
            prev_txid = _read_exact(stream, 32)[::-1].hex()
            prev_index = struct.unpack("<I", _read_exact(stream, 4))[0]
            script_sig = _read_exact(stream, read_varint(stream))
            sequence = struct.unpack("<I", _read_exact(stream, 4))[0]
            inputs.append(TxInput(prev_txid, prev_index, script_sig, sequence))
        outputs = []
        for _ in range(read_varint(stream)):
            value = struct.unpack("<q", _read_exact(stream, 8))[0]
            script = _read_exact(stream, read_varint(stream))
            outputs.append(TxOutput(value, script))
        locktime = struct.unpack("<I", _read_exact(stream, 4))[0]
        return cls(inputs=inputs, outputs=outputs, version=version, locktime=locktime)


def signature_digest(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int = SIGHASH_ALL_FORKID,
) -> bytes:
    """Digest signed for one input (BIP143 preimage, double SHA-256)."""
    hash_prevouts = double_sha256(b"".join(i.outpoint() for i in tx.inputs))
    hash_sequence = double_sha256(b"".join(struct.pack("<I", i.sequence) for i in tx.inputs))
    hash_outputs = double_sha256(b"".join(o.serialize() for o in tx.outputs))
    txin = tx.inputs[input_index]
    preimage = (
        struct.pack("<I", tx.version)
        + hash_prevouts
        + hash_sequence
        + txin.outpoint()
        + encode_varint(len(script_code)) + script_code
        + struct.pack("<q", value)
        + struct.pack("<I", txin.sequence)
        + hash_outputs
        + struct.pack("<I", tx.locktime)
        + struct.pack("<I", sighash_type)
    )
    return double_sha256(preimage)


def sign_p2pkh_input(
    tx: Transaction,
    input_index: int,
    key: PrivateKey,
    prev_script: bytes,
    value: int,
    compressed: bool = True,
) -> None:
    """Sign a P2PKH input in place."""
    digest = signature_digest(tx, input_index, prev_script, value)
    der = key.sign(digest, hasher=None)
    pubkey = key.public_key.format(compressed=compressed)
    tx.inputs[input_index].script_sig = push_data(der + bytes([SIGHASH_ALL_FORKID])) + push_data(pubkey)


def build_data_transaction(
    prev_txid: str,
    prev_index: int,
    prev_value: int,
    key: PrivateKey,
    owner_hash160: bytes,
    chunks: Sequence[bytes],
    fee: int,
    compressed: bool = True,
) -> Transaction:
    """
    Spend one P2PKH output into a data output plus change.

    Raises:
        InsufficientFunds: the spent output cannot cover the miner fee
    """
    change = prev_value - fee
    if change < 0:
        raise InsufficientFunds(
            f"Output {prev_txid}:{prev_index} holds {prev_value} sats, fee is {fee}",
            available=prev_value, required=fee,
        )
    owner_script = p2pkh_script(owner_hash160)
    tx = Transaction(inputs=[TxInput(prev_txid, prev_index)])
    tx.outputs.append(TxOutput(0, data_script(chunks)))
    if change > 0:
        tx.outputs.append(TxOutput(change, owner_script))
    sign_p2pkh_input(tx, 0, key, owner_script, prev_value, compressed)
    return tx
