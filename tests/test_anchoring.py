"""
Anchoring service tests against the in-memory ledger.

Covers the never-raise contract of anchor(), placeholder references,
the shared time budget and the first-confirmation cache in verify().
"""

import time
import unittest

from strandsign import (
    AnchorKey,
    AnchorService,
    EnvelopeSigning,
    IdentityStrand,
    is_placeholder,
    make_placeholder,
)
from strandsign.anchoring import find_anchored_document
from strandsign.canonicalization import canonicalize
from strandsign.errors import AnchorConfigurationError, AnchorTimeout, LedgerError
from strandsign.hashing import sha256_hex
from strandsign.ledger import Deadline
from strandsign.transaction import Transaction

from ledger_fakes import TEST_ADDRESS, TEST_WIF, FakeLedger


def sample_payload():
    return EnvelopeSigning(
        envelope_id="env-1",
        document_hash="ab" * 32,
        signer_name="Alice",
        signed_at="2026-01-01T00:00:00.000Z",
    )


class TestAnchor(unittest.TestCase):

    def setUp(self):
        self.ledger = FakeLedger()
        self.service = AnchorService(self.ledger, key=AnchorKey.from_wif(TEST_WIF, TEST_ADDRESS))

    def test_success_returns_txid(self):
        payload = sample_payload()
        result = self.service.anchor(payload)
        self.assertTrue(result.anchored)
        self.assertEqual(result.content_hash, payload.content_hash())
        self.assertIn(result.txid, self.ledger.transactions)
        ref, state = result.outcome()
        self.assertEqual(ref, result.txid)
        self.assertEqual(state, "confirmed")

    def test_broadcast_embeds_canonical_document(self):
        payload = sample_payload()
        result = self.service.anchor(payload)
        tx = Transaction.from_hex(self.ledger.transactions[result.txid])
        self.assertEqual(find_anchored_document(tx), payload.to_document())

    def test_no_utxo_gives_placeholder(self):
        self.ledger.utxos = []
        result = self.service.anchor(sample_payload())
        self.assertFalse(result.anchored)
        self.assertEqual(result.error_code, "INSUFFICIENT_FUNDS")
        ref, state = result.outcome()
        self.assertTrue(is_placeholder(ref))
        self.assertEqual(state, "placeholder")
        self.assertEqual(self.ledger.broadcasts, [])

    def test_timeout_gives_placeholder(self):
        self.ledger.fail_with = AnchorTimeout("upstream hung")
        result = self.service.anchor(sample_payload())
        self.assertFalse(result.anchored)
        self.assertEqual(result.error_code, "ANCHOR_TIMEOUT")

    def test_broadcast_rejection_gives_placeholder(self):
        self.ledger.fail_with = LedgerError("rejected")
        self.assertFalse(self.service.anchor(sample_payload()).anchored)

    def test_unconfigured_service_gives_placeholder(self):
        service = AnchorService(self.ledger)
        self.assertFalse(service.configured)
        result = service.anchor(sample_payload())
        self.assertFalse(result.anchored)
        self.assertEqual(result.error_code, "ANCHOR_NOT_CONFIGURED")

    def test_unexpected_error_is_contained(self):
        class Exploding(FakeLedger):
            def list_unspent(self, address, deadline):
                raise RuntimeError("boom")

        service = AnchorService(Exploding(), key=AnchorKey.from_wif(TEST_WIF, TEST_ADDRESS))
        result = service.anchor(sample_payload())
        self.assertFalse(result.anchored)
        self.assertEqual(result.error_code, "INTERNAL")


class TestVerify(unittest.TestCase):

    def setUp(self):
        self.ledger = FakeLedger()
        self.service = AnchorService(self.ledger, key=AnchorKey.from_wif(TEST_WIF, TEST_ADDRESS))

    def test_verify_anchored_payload(self):
        payload = IdentityStrand(root_txid="cd" * 32, strand_type="kyc", strand_subtype="veriff")
        txid = self.service.anchor(payload).txid
        result = self.service.verify(txid)
        self.assertTrue(result.verified)
        self.assertFalse(result.cached)
        self.assertEqual(result.payload["strandType"], "kyc")
        self.assertEqual(result.data_hash, sha256_hex(canonicalize(payload.to_document())))
        self.assertEqual(result.inscribed_at, payload.timestamp)
        self.assertTrue(result.explorer_url.endswith(txid))

    def test_second_verify_served_from_cache(self):
        txid = self.service.anchor(sample_payload()).txid
        self.service.verify(txid)
        self.ledger.fail_with = LedgerError("must not be called")
        result = self.service.verify(txid)
        self.assertTrue(result.verified)
        self.assertTrue(result.cached)
        self.assertEqual(self.ledger.fetches, [txid])

    def test_placeholder_short_circuits(self):
        ref = make_placeholder()
        result = self.service.verify(ref)
        self.assertFalse(result.verified)
        self.assertEqual(result.reason, "anchor_pending")
        self.assertIsNone(result.explorer_url)
        self.assertEqual(self.ledger.fetches, [])

    def test_missing_reference(self):
        self.assertEqual(self.service.verify(None).reason, "not_anchored")

    def test_unknown_transaction(self):
        result = self.service.verify("ef" * 32)
        self.assertFalse(result.verified)
        self.assertEqual(result.reason, "not_found")

    def test_transaction_without_payload(self):
        txid = self.ledger.add_payment(TEST_ADDRESS, 1000)
        self.assertEqual(self.service.verify(txid).reason, "payload_not_found")

    def test_ledger_down_is_not_verified_yet(self):
        self.ledger.fail_with = LedgerError("down")
        result = self.service.verify("ef" * 32)
        self.assertFalse(result.verified)
        self.assertEqual(result.reason, "ledger_unavailable")

    def test_failed_verify_is_not_cached(self):
        txid = "ef" * 32
        self.service.verify(txid)
        self.assertIsNone(self.service.cache.get(txid))


class TestPlaceholdersAndBudget(unittest.TestCase):

    def test_placeholder_shape(self):
        ref = make_placeholder()
        self.assertTrue(ref.startswith("pending-"))
        self.assertNotEqual(ref, make_placeholder())
        self.assertFalse(is_placeholder("ab" * 32))
        self.assertFalse(is_placeholder(None))

    def test_deadline_caps_per_call_timeout(self):
        deadline = Deadline(5)
        self.assertLessEqual(deadline.timeout_for(10), 5)
        self.assertEqual(deadline.timeout_for(1), 1)

    def test_spent_deadline_raises(self):
        deadline = Deadline(0.01)
        time.sleep(0.02)
        self.assertTrue(deadline.expired())
        with self.assertRaises(AnchorTimeout):
            deadline.timeout_for(10)

    def test_spent_budget_yields_placeholder(self):
        service = AnchorService(FakeLedger(), key=AnchorKey.from_wif(TEST_WIF, TEST_ADDRESS), timeout=0)
        result = service.anchor(sample_payload())
        self.assertFalse(result.anchored)
        self.assertEqual(result.error_code, "ANCHOR_TIMEOUT")


class TestAnchorKey(unittest.TestCase):

    def test_explicit_address(self):
        key = AnchorKey.from_wif(TEST_WIF, TEST_ADDRESS)
        self.assertEqual(key.address, TEST_ADDRESS)
        self.assertTrue(key.compressed)
        self.assertEqual(key.network, "main")

    def test_bad_wif(self):
        with self.assertRaises(AnchorConfigurationError):
            AnchorKey.from_wif("not-a-key", TEST_ADDRESS)

    def test_bad_address(self):
        with self.assertRaises(AnchorConfigurationError):
            AnchorKey.from_wif(TEST_WIF, "1111")


if __name__ == "__main__":
    unittest.main()
