import threading
from datetime import timedelta

import pytest

from strandsign import is_placeholder
from strandsign.anchoring import find_anchored_document
from strandsign.envelope import EnvelopeStatus, SignaturePayload
from strandsign.errors import Conflict, PaymentFailed
from strandsign.timeutil import to_rfc3339, utc_now
from strandsign.transaction import Transaction
from strandsign_service import config, envelopes
from strandsign_service.db import get_connection

from ledger_fakes import TEST_ADDRESS


def hdr(handle):
    return {"X-User-Handle": handle}


def create_envelope(client, signers=None, **extra):
    body = {
        "title": "Mutual NDA",
        "document": "<p>Both parties keep it quiet.</p>",
        "signers": signers or [{"name": "Alice", "handle": "alice"}, {"name": "Bob", "handle": "bob"}],
    }
    body.update(extra)
    r = client.post("/envelopes", json=body, headers=hdr("alice"))
    assert r.status_code == 200, r.text
    return r.json()


def sign(client, token, name, wallet=None):
    body = {"signatureType": "typed", "data": name}
    if wallet:
        body["wallet"] = wallet
    return client.post(f"/sign/{token}", json=body)


def completion_documents(ledger):
    docs = [find_anchored_document(Transaction.from_hex(ledger.transactions[t])) for t in ledger.broadcasts]
    return [d for d in docs if d and d["type"] == "envelope_signing" and d.get("status") == "completed"]


# Two ordered signers: out-of-order rejected, then partial, then completed with a consolidated anchor
def test_ordered_signing_end_to_end(client, ledger):
    env = create_envelope(client)
    t1, t2 = (s["token"] for s in env["signers"])
    assert env["signers"][0]["signingUrl"].endswith(f"/sign/{t1}")

    r = sign(client, t2, "Bob")
    assert r.status_code == 409
    assert r.json()["error"] == "OUT_OF_ORDER"
    assert r.json()["blocking_signer"] == "Alice"
    assert client.get(f"/sign/{t2}").json()["envelope"]["status"] == "pending"

    r = sign(client, t1, "Alice")
    assert r.status_code == 200, r.text
    assert r.json()["envelope"]["status"] == "partially_signed"
    signer = r.json()["signer"]
    assert signer["anchorState"] == "confirmed"
    assert signer["anchorTxid"] in ledger.transactions

    r = sign(client, t2, "Bob")
    assert r.status_code == 200, r.text
    summary = r.json()["envelope"]
    assert summary["status"] == "completed"
    assert summary["anchorState"] == "confirmed"
    assert summary["anchorTxid"] in ledger.transactions

    docs = completion_documents(ledger)
    assert len(docs) == 1
    assert [s["name"] for s in docs[0]["signers"]] == ["Alice", "Bob"]

    v = client.get(f"/envelopes/{env['id']}/verify").json()
    assert v["verification"]["verified"] is True
    assert v["verification"]["txid"] == summary["anchorTxid"]
    assert "dataHash" in v["verification"]
    assert [s["status"] for s in v["signers"]] == ["signed", "signed"]


def test_sign_after_completion_is_conflict(client):
    env = create_envelope(client, signers=[{"name": "Solo"}])
    token = env["signers"][0]["token"]
    assert sign(client, token, "Solo").status_code == 200
    r = sign(client, token, "Solo")
    assert r.status_code == 409
    assert r.json()["error"] == "ALREADY_COMPLETED"


def test_already_signed_keeps_first_signature(client):
    env = create_envelope(client)
    t1 = env["signers"][0]["token"]
    first = sign(client, t1, "Alice").json()["signer"]
    r = sign(client, t1, "Someone Else")
    assert r.status_code == 409
    assert r.json()["error"] == "ALREADY_SIGNED"
    me = client.get(f"/sign/{t1}").json()["signer"]
    assert me["signedAt"] == first["signedAt"]
    assert me["signature"]["data"] == "Alice"


def test_anchor_failure_never_blocks_signing(client, ledger):
    ledger.utxos = []
    env = create_envelope(client)
    t1, t2 = (s["token"] for s in env["signers"])
    assert sign(client, t1, "Alice").status_code == 200
    r = sign(client, t2, "Bob")
    assert r.status_code == 200
    summary = r.json()["envelope"]
    assert summary["status"] == "completed"
    assert is_placeholder(summary["anchorTxid"])
    assert summary["anchorState"] == "placeholder"

    v = client.get(f"/envelopes/{env['id']}/verify").json()["verification"]
    assert v["verified"] is False
    assert v["reason"] == "anchor_pending"
    assert ledger.fetches == []


def test_unknown_and_malformed_tokens(client):
    assert sign(client, "A" * 43, "x").status_code == 404
    assert client.get(f"/sign/{'A' * 43}").status_code == 404
    r = sign(client, "short", "x")
    assert r.status_code == 400
    assert r.json()["error"] == "VALIDATION_ERROR"


def test_lazy_expiry_is_persisted(client):
    expires = to_rfc3339(utc_now() + timedelta(days=1))
    env = create_envelope(client, expiresAt=expires)
    t1 = env["signers"][0]["token"]
    conn = get_connection()
    conn.execute("UPDATE envelopes SET expires_at=? WHERE envelope_id=?",
                 (to_rfc3339(utc_now() - timedelta(minutes=1)), env["id"]))
    conn.commit()

    r = sign(client, t1, "Alice")
    assert r.status_code == 410
    assert r.json()["error"] == "EXPIRED"
    row = conn.execute("SELECT status FROM envelopes WHERE envelope_id=?", (env["id"],)).fetchone()
    assert row["status"] == "expired"
    view = client.get(f"/sign/{t1}").json()
    assert view["envelope"]["status"] == "expired"
    assert view["canSign"] is False


def test_expiry_in_past_rejected(client):
    r = client.post("/envelopes", headers=hdr("alice"), json={
        "title": "Late", "document": "doc", "signers": [{"name": "A"}],
        "expiresAt": to_rfc3339(utc_now() - timedelta(days=1)),
    })
    assert r.status_code == 400


def test_participants_only(client):
    env = create_envelope(client)
    assert client.get(f"/envelopes/{env['id']}", headers=hdr("mallory")).status_code == 403
    as_bob = client.get(f"/envelopes/{env['id']}", headers=hdr("bob")).json()
    assert all("token" not in s for s in as_bob["signers"])
    as_alice = client.get(f"/envelopes/{env['id']}", headers=hdr("alice")).json()
    assert all("token" in s for s in as_alice["signers"])
    assert client.get(f"/envelopes/{env['id']}").status_code == 401

    listing = client.get("/envelopes", headers=hdr("bob")).json()
    assert [e["id"] for e in listing["toSign"]] == [env["id"]]
    assert listing["created"] == []


def test_fee_gated_signing(client, ledger, monkeypatch):
    monkeypatch.setattr(config, "TREASURY_ADDRESS", TEST_ADDRESS)
    env = create_envelope(client, signers=[{"name": "Alice", "handle": "alice"}], signingFeeSats=1000)
    token = env["signers"][0]["token"]

    r = sign(client, token, "Alice")
    assert r.status_code == 402
    assert client.get(f"/sign/{token}").json()["envelope"]["status"] == "pending"

    short = ledger.add_payment(TEST_ADDRESS, 400)
    wallet = {"walletType": "handcash", "address": "alice@wallet", "signature": "sig", "message": "m",
              "paymentTxid": short}
    assert sign(client, token, "Alice", wallet=wallet).status_code == 402

    wallet["paymentTxid"] = ledger.add_payment(TEST_ADDRESS, 1000)
    r = sign(client, token, "Alice", wallet=wallet)
    assert r.status_code == 200, r.text
    assert r.json()["signer"]["signatureVerified"] is None

    identity = client.get("/identity", headers=hdr("alice")).json()
    assert [s["strandType"] for s in identity["strands"]] == ["paid_signing"]
    assert identity["strengthLevel"] == 3


def test_ed25519_wallet_is_verified(client):
    from strandsign.signing import build_challenge, generate_wallet_key, sign_challenge

    env = create_envelope(client, signers=[{"name": "Alice"}])
    token = env["signers"][0]["token"]
    private_b64, public_b64 = generate_wallet_key()
    message = build_challenge(env["title"], env["documentHash"], "Alice", "2026-01-01T00:00:00.000Z")
    wallet = {"walletType": "ed25519", "address": public_b64,
              "signature": sign_challenge(private_b64, message), "message": message}
    r = sign(client, token, "Alice", wallet=wallet)
    assert r.status_code == 200
    assert r.json()["signer"]["signatureVerified"] is True


# Two concurrent signatures on a one-signer envelope: exactly one wins
def test_concurrent_signing_single_winner(anchor, ledger):
    env = envelopes.create("alice", "Race", "doc", [{"name": "Solo"}])
    token = env.signers[0].token
    barrier = threading.Barrier(2)
    outcomes = []

    def attempt(name):
        barrier.wait()
        try:
            envelopes.sign(token, SignaturePayload("typed", name), anchor)
            outcomes.append("ok")
        except Conflict as e:
            outcomes.append(e.code)

    threads = [threading.Thread(target=attempt, args=(n,)) for n in ("first", "second")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert len(outcomes) == 2
    assert outcomes.count("ok") == 1
    stored = envelopes.load(env.envelope_id)
    assert stored.status.value == "completed"
    assert len(completion_documents(ledger)) == 1


def paid_wallet(txid):
    return {"walletType": "handcash", "address": "payer@wallet", "signature": "sig", "message": "m",
            "paymentTxid": txid}


# Fee-gated envelope: order is enforced before the payment is looked at
def test_fee_gated_out_of_order_reported_before_payment(client, ledger, monkeypatch):
    monkeypatch.setattr(config, "TREASURY_ADDRESS", TEST_ADDRESS)
    env = create_envelope(client, signingFeeSats=1000)
    t2 = env["signers"][1]["token"]

    r = sign(client, t2, "Bob")
    assert r.status_code == 409
    assert r.json()["error"] == "OUT_OF_ORDER"
    assert ledger.fetches == []


def test_fee_gated_expiry_reported_before_payment(client, ledger, monkeypatch):
    monkeypatch.setattr(config, "TREASURY_ADDRESS", TEST_ADDRESS)
    env = create_envelope(client, signers=[{"name": "Alice"}], signingFeeSats=1000,
                          expiresAt=to_rfc3339(utc_now() + timedelta(days=1)))
    conn = get_connection()
    conn.execute("UPDATE envelopes SET expires_at=? WHERE envelope_id=?",
                 (to_rfc3339(utc_now() - timedelta(minutes=1)), env["id"]))
    conn.commit()

    r = sign(client, env["signers"][0]["token"], "Alice", wallet=paid_wallet(ledger.add_payment(TEST_ADDRESS, 1000)))
    assert r.status_code == 410
    assert r.json()["error"] == "EXPIRED"
    row = conn.execute("SELECT status FROM envelopes WHERE envelope_id=?", (env["id"],)).fetchone()
    assert row["status"] == "expired"
    assert ledger.fetches == []


# One payment transaction pays for one signature only
def test_payment_cannot_be_reused(client, ledger, monkeypatch):
    monkeypatch.setattr(config, "TREASURY_ADDRESS", TEST_ADDRESS)
    txid = ledger.add_payment(TEST_ADDRESS, 1000)
    codes = []
    for _ in range(3):
        env = create_envelope(client, signers=[{"name": "Alice", "handle": "alice"}], signingFeeSats=1000)
        r = sign(client, env["signers"][0]["token"], "Alice", wallet=paid_wallet(txid))
        codes.append(r.status_code)
        last = r
    assert codes == [200, 402, 402]
    assert last.json()["error"] == "PAYMENT_FAILED"
    assert client.get(f"/sign/{env['signers'][0]['token']}").json()["envelope"]["status"] == "pending"

    row = get_connection().execute("SELECT COUNT(*) AS n FROM spent_payments WHERE payment_txid=?", (txid,)).fetchone()
    assert row["n"] == 1


def test_spent_payment_rolls_back_the_signature(anchor, ledger):
    first = envelopes.create("alice", "One", "doc", [{"name": "A"}], signing_fee_sats=1000)
    second = envelopes.create("alice", "Two", "doc", [{"name": "B"}], signing_fee_sats=1000)
    txid = ledger.add_payment(TEST_ADDRESS, 1000)

    stored = envelopes.load(first.envelope_id)
    stored.status = EnvelopeStatus.COMPLETED
    assert envelopes.save(stored, (txid, stored.signers[0].signer_id, 1000))

    other = envelopes.load(second.envelope_id)
    version = other.version
    other.status = EnvelopeStatus.COMPLETED
    with pytest.raises(PaymentFailed):
        envelopes.save(other, (txid, other.signers[0].signer_id, 1000))
    reloaded = envelopes.load(second.envelope_id)
    assert reloaded.version == version
    assert reloaded.status.value == "pending"


def test_malformed_expiry_is_bad_request(client):
    r = client.post("/envelopes", headers=hdr("alice"), json={
        "title": "Soon", "document": "doc", "signers": [{"name": "A"}], "expiresAt": "next week",
    })
    assert r.status_code == 400
    assert r.json()["error"] == "INVALID_REQUEST"
