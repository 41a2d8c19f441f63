"""
Envelope state machine tests.

States: pending -> partially_signed -> completed, with expired reachable
from either non-terminal state once the deadline passes.
"""

import copy
import unittest
from datetime import datetime, timedelta, timezone

from strandsign.envelope import (
    EnvelopeStatus,
    SignaturePayload,
    SignerStatus,
    aggregate_status,
    apply_signature,
    check_expiry,
    check_signable,
    new_envelope,
    resolve_view,
)
from strandsign.errors import (
    AlreadyCompleted,
    AlreadySigned,
    Conflict,
    Expired,
    InvalidRequest,
    NotFound,
    OutOfOrder,
)
from strandsign.hashing import document_hash
from strandsign.timeutil import to_rfc3339

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def typed(name):
    return SignaturePayload(signature_type="typed", data=name)


class TestCreate(unittest.TestCase):

    def test_positional_order_and_tokens(self):
        env = new_envelope("NDA", "<p>terms</p>", [{"name": "Alice"}, {"name": "Bob"}], created_by="alice", now=NOW)
        self.assertEqual([s.order for s in env.signers], [1, 2])
        self.assertEqual(env.status, EnvelopeStatus.PENDING)
        self.assertEqual(env.document_hash, document_hash("<p>terms</p>"))
        tokens = {s.token for s in env.signers}
        self.assertEqual(len(tokens), 2)
        self.assertTrue(all(len(t) >= 32 for t in tokens))

    def test_explicit_order_sorted(self):
        env = new_envelope("NDA", "doc", [{"name": "Second", "order": 2}, {"name": "First", "order": 1}],
                           created_by="alice", now=NOW)
        self.assertEqual([s.name for s in env.signers], ["First", "Second"])

    def test_validation(self):
        with self.assertRaises(InvalidRequest):
            new_envelope("", "doc", [{"name": "A"}], created_by="alice")
        with self.assertRaises(InvalidRequest):
            new_envelope("NDA", "doc", [], created_by="alice")
        with self.assertRaises(InvalidRequest):
            new_envelope("NDA", "doc", [{"name": " "}], created_by="alice")
        with self.assertRaises(InvalidRequest):
            new_envelope("NDA", "doc", [{"name": "A"}], created_by="alice",
                         expires_at=to_rfc3339(NOW - timedelta(days=1)), now=NOW)

    def test_expiry_must_parse(self):
        with self.assertRaises(InvalidRequest) as ctx:
            new_envelope("NDA", "doc", [{"name": "A"}], created_by="alice", expires_at="next week", now=NOW)
        self.assertEqual(ctx.exception.details["field"], "expiresAt")

    def test_expiry_stored_as_utc(self):
        deadline = (NOW + timedelta(days=1)).astimezone(timezone(timedelta(hours=2)))
        env = new_envelope("NDA", "doc", [{"name": "A"}], created_by="alice",
                           expires_at=deadline.isoformat(), now=NOW)
        self.assertEqual(env.expires_at, "2026-03-02T12:00:00.000Z")


class TestSign(unittest.TestCase):

    def setUp(self):
        self.env = new_envelope(
            "NDA", "doc", [{"name": "Alice"}, {"name": "Bob"}], created_by="alice",
            expires_at=to_rfc3339(NOW + timedelta(days=7)), now=NOW,
        )
        self.alice, self.bob = self.env.signers

    def test_happy_path(self):
        apply_signature(self.env, self.alice.token, typed("Alice"), now=NOW)
        self.assertEqual(self.env.status, EnvelopeStatus.PARTIALLY_SIGNED)
        signer = apply_signature(self.env, self.bob.token, typed("Bob"), now=NOW + timedelta(minutes=1))
        self.assertEqual(self.env.status, EnvelopeStatus.COMPLETED)
        self.assertEqual(signer.signer_id, self.bob.signer_id)
        self.assertTrue(all(s.status == SignerStatus.SIGNED for s in self.env.signers))

    def test_out_of_order_names_blocker_and_leaves_state(self):
        before = copy.deepcopy(self.env)
        with self.assertRaises(OutOfOrder) as ctx:
            apply_signature(self.env, self.bob.token, typed("Bob"), now=NOW)
        self.assertEqual(ctx.exception.blocking_signer, "Alice")
        self.assertEqual(ctx.exception.blocking_order, 1)
        self.assertEqual(self.env, before)

    def test_already_signed_keeps_prior_signature(self):
        apply_signature(self.env, self.alice.token, typed("Alice"), now=NOW)
        signed_at = self.alice.signed_at
        with self.assertRaises(AlreadySigned) as ctx:
            apply_signature(self.env, self.alice.token, typed("Mallory"), now=NOW + timedelta(hours=1))
        self.assertIsInstance(ctx.exception, Conflict)
        self.assertEqual(self.alice.signed_at, signed_at)
        self.assertEqual(self.alice.signature.data, "Alice")

    def test_check_signable_records_nothing(self):
        before = copy.deepcopy(self.env)
        self.assertEqual(check_signable(self.env, self.alice.token, now=NOW).signer_id, self.alice.signer_id)
        self.assertEqual(self.env, before)
        with self.assertRaises(OutOfOrder):
            check_signable(self.env, self.bob.token, now=NOW)
        self.assertEqual(self.env, before)

    def test_unknown_token(self):
        with self.assertRaises(NotFound):
            apply_signature(self.env, "not-a-token", typed("x"), now=NOW)

    def test_completed_is_terminal(self):
        apply_signature(self.env, self.alice.token, typed("Alice"), now=NOW)
        apply_signature(self.env, self.bob.token, typed("Bob"), now=NOW)
        with self.assertRaises(AlreadyCompleted):
            apply_signature(self.env, self.alice.token, typed("Alice"), now=NOW)

    def test_lazy_expiry_on_sign(self):
        with self.assertRaises(Expired):
            apply_signature(self.env, self.alice.token, typed("Alice"), now=NOW + timedelta(days=8))
        self.assertEqual(self.env.status, EnvelopeStatus.EXPIRED)
        self.assertFalse(self.alice.is_signed())

    def test_expiry_checked_before_order(self):
        with self.assertRaises(Expired):
            apply_signature(self.env, self.bob.token, typed("Bob"), now=NOW + timedelta(days=8))

    def test_check_expiry_reports_transition_once(self):
        later = NOW + timedelta(days=8)
        self.assertTrue(check_expiry(self.env, later))
        self.assertFalse(check_expiry(self.env, later))

    def test_completed_envelope_never_expires(self):
        apply_signature(self.env, self.alice.token, typed("Alice"), now=NOW)
        apply_signature(self.env, self.bob.token, typed("Bob"), now=NOW)
        self.assertFalse(check_expiry(self.env, NOW + timedelta(days=30)))
        self.assertEqual(self.env.status, EnvelopeStatus.COMPLETED)

    def test_equal_orders_sign_in_any_sequence(self):
        env = new_envelope("Joint", "doc", [{"name": "A", "order": 1}, {"name": "B", "order": 1}],
                           created_by="a", now=NOW)
        apply_signature(env, env.signers[1].token, typed("B"), now=NOW)
        apply_signature(env, env.signers[0].token, typed("A"), now=NOW)
        self.assertEqual(env.status, EnvelopeStatus.COMPLETED)


class TestAggregateAndView(unittest.TestCase):

    def test_aggregate_status(self):
        env = new_envelope("NDA", "doc", [{"name": "A"}, {"name": "B"}], created_by="a", now=NOW)
        self.assertEqual(aggregate_status(env.signers), EnvelopeStatus.PENDING)
        env.signers[0].status = SignerStatus.SIGNED
        self.assertEqual(aggregate_status(env.signers), EnvelopeStatus.PARTIALLY_SIGNED)
        env.signers[1].status = SignerStatus.SIGNED
        self.assertEqual(aggregate_status(env.signers), EnvelopeStatus.COMPLETED)

    def test_view_hides_other_tokens(self):
        env = new_envelope("NDA", "doc", [{"name": "A", "email": "a@x.io"}, {"name": "B"}], created_by="a", now=NOW)
        view = resolve_view(env, env.signers[1].token)
        self.assertFalse(view["canSign"])
        self.assertEqual(view["waitingFor"], "A")
        self.assertNotIn("token", view["signer"])
        self.assertEqual(view["otherSigners"], [env.signers[0].public_view()])
        self.assertNotIn(env.signers[0].token, str(view))
        self.assertNotIn("a@x.io", str(view["otherSigners"]))


if __name__ == "__main__":
    unittest.main()
