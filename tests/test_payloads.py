"""
Canonical JSON, hashing and anchored payload schema tests.
"""

import json
import unittest

from strandsign import (
    DocumentSignature,
    EnvelopeSigning,
    IdentityRoot,
    IpThread,
    SignatureRegistration,
    canonicalize,
    canonicalize_str,
    content_hash,
    document_hash,
    parse_document,
    sha256_hex,
    verify_hash,
)
from strandsign.errors import InvalidRequest
from strandsign.payloads import PROTOCOL_TAG, parse_payload_bytes, validate_document


class TestCanonicalization(unittest.TestCase):

    def test_key_ordering(self):
        self.assertEqual(canonicalize({"b": 1, "a": {"d": 2, "c": 3}}), b'{"a":{"c":3,"d":2},"b":1}')

    def test_stable_hash_for_reordered_input(self):
        self.assertEqual(content_hash({"x": 1, "y": [1, 2]}), content_hash({"y": [1, 2], "x": 1}))

    def test_unicode_kept(self):
        self.assertEqual(canonicalize_str({"name": "Zoë"}), '{"name":"Zoë"}')

    def test_non_json_types_rejected(self):
        with self.assertRaises(ValueError):
            canonicalize({"when": object()})
        with self.assertRaises(ValueError):
            canonicalize({1: "a"})

    def test_document_hash(self):
        self.assertEqual(document_hash("abc"), sha256_hex(b"abc"))
        self.assertEqual(
            document_hash(b"abc"),
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad",
        )
        self.assertTrue(verify_hash(document_hash("abc"), "abc"))
        self.assertFalse(verify_hash(document_hash("abc"), "abd"))


class TestPayloadSchema(unittest.TestCase):

    def test_header_and_camel_case(self):
        doc = EnvelopeSigning(
            envelope_id="e1", document_hash="h", signer_name="Alice", signed_at="2026-01-01T00:00:00.000Z",
            signer_wallet="addr", wallet_type="ed25519",
        ).to_document()
        self.assertEqual(doc["protocol"], PROTOCOL_TAG)
        self.assertEqual(doc["version"], "1.0")
        self.assertEqual(doc["type"], "envelope_signing")
        self.assertEqual(doc["envelopeId"], "e1")
        self.assertEqual(doc["signerWallet"], "addr")
        self.assertIn("timestamp", doc)

    def test_absent_optionals_are_omitted(self):
        doc = DocumentSignature(document_hash="h", signer_name="A", signed_at="t").to_document()
        self.assertNotIn("signerWallet", doc)
        self.assertNotIn("walletType", doc)

    def test_identity_payloads_carry_schema(self):
        doc = IdentityRoot(user_handle="alice", token_symbol="$ALICE").to_document()
        self.assertEqual(doc["version"], "2.0")
        self.assertIn("schema", doc)

    def test_ip_thread_fields(self):
        doc = IpThread(root_txid="r", document_hash="h", thread_title="Patent", thread_sequence=3).to_document()
        for key in ("rootTxid", "documentHash", "documentType", "threadTitle", "threadSequence"):
            self.assertIn(key, doc)

    def test_parse_round_trip_with_unknown_fields(self):
        original = SignatureRegistration(
            signature_type="TLDRAW", signature_hash="h", owner_name="alice", created_at="t",
        )
        doc = original.to_document()
        doc["futureField"] = {"anything": True}
        parsed = parse_document(doc)
        self.assertEqual(parsed, original)

    def test_type_is_the_discriminator(self):
        doc = EnvelopeSigning(envelope_id="e", document_hash="h", signer_name="A", signed_at="t").to_document()
        del doc["signerName"]
        with self.assertRaises(InvalidRequest) as ctx:
            validate_document(doc)
        self.assertEqual(ctx.exception.details["missing"], ["signerName"])

    def test_foreign_documents_rejected(self):
        with self.assertRaises(InvalidRequest):
            validate_document({"protocol": "other", "type": "envelope_signing"})
        with self.assertRaises(InvalidRequest):
            validate_document({"protocol": PROTOCOL_TAG, "type": "mystery", "version": "1", "timestamp": "t"})
        with self.assertRaises(InvalidRequest):
            parse_payload_bytes(b"\xff\xfe")
        with self.assertRaises(InvalidRequest):
            parse_payload_bytes(json.dumps([1, 2]).encode())


if __name__ == "__main__":
    unittest.main()
