import threading

from strandsign.errors import AlreadyClaimed
from strandsign_service import main, vault
from strandsign_service.rate_limit import RateLimiter


def hdr(handle):
    return {"X-User-Handle": handle}


def shared_item(client, owner="alice"):
    r = client.post("/vault/items", headers=hdr(owner),
                    json={"itemType": "DOCUMENT", "name": "Lease", "content": "lease text"})
    assert r.status_code == 200, r.text
    item = r.json()
    r = client.post(f"/vault/items/{item['id']}/invites", headers=hdr(owner),
                    json={"email": "Friend@Example.com", "message": "for you"})
    assert r.status_code == 200, r.text
    return item, r.json()


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["anchoring"] is True


def test_requests_need_a_handle(client):
    r = client.get("/vault/items")
    assert r.status_code == 401
    assert client.get("/vault/items", headers=hdr("x")).status_code == 400


def test_claim_is_single_use(client):
    item, invite = shared_item(client)
    token = invite["claimToken"]
    assert invite["email"] == "friend@example.com"
    assert invite["claimUrl"].endswith(f"/claim/{token}")

    preview = client.get(f"/claim/{token}").json()
    assert preview["from"] == "alice"
    assert preview["item"] == {"name": "Lease", "itemType": "DOCUMENT"}

    assert client.get(f"/vault/items/{item['id']}", headers=hdr("bob")).status_code == 403
    r = client.post(f"/claim/{token}", headers=hdr("bob"))
    assert r.status_code == 200, r.text
    assert r.json()["claimedBy"] == "bob"
    assert client.get(f"/vault/items/{item['id']}", headers=hdr("bob")).json()["content"] == "lease text"
    assert [s["id"] for s in client.get("/vault/items", headers=hdr("bob")).json()["shared"]] == [item["id"]]

    r = client.post(f"/claim/{token}", headers=hdr("carol"))
    assert r.status_code == 410
    assert r.json()["error"] == "ALREADY_CLAIMED"
    assert client.get(f"/claim/{token}").status_code == 410
    assert client.get(f"/vault/items/{item['id']}", headers=hdr("carol")).status_code == 403


def test_claim_errors(client):
    _, invite = shared_item(client)
    unknown = "Z" * 43
    assert client.get(f"/claim/{unknown}").status_code == 404
    assert client.post(f"/claim/{unknown}", headers=hdr("bob")).status_code == 404
    assert client.post(f"/claim/{invite['claimToken']}", headers=hdr("alice")).status_code == 403
    assert client.post("/claim/bad", headers=hdr("bob")).status_code == 400


def test_only_owner_can_invite(client):
    item, _ = shared_item(client)
    r = client.post(f"/vault/items/{item['id']}/invites", headers=hdr("bob"), json={"email": "x@example.com"})
    assert r.status_code == 403
    r = client.post(f"/vault/items/{item['id']}/invites", headers=hdr("alice"), json={"email": "not-an-email"})
    assert r.status_code == 400


def test_concurrent_claims_single_winner(client):
    _, invite = shared_item(client)
    barrier = threading.Barrier(2)
    outcomes = []

    def attempt(handle):
        barrier.wait()
        try:
            vault.claim_invite(invite["claimToken"], handle)
            outcomes.append("claimed")
        except AlreadyClaimed:
            outcomes.append("gone")

    threads = [threading.Thread(target=attempt, args=(h,)) for h in ("bob", "carol")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    assert sorted(outcomes) == ["claimed", "gone"]


def test_unknown_vault_item_type(client):
    r = client.post("/vault/items", headers=hdr("alice"), json={"itemType": "HOLOGRAM", "content": "x"})
    assert r.status_code == 400
    assert r.json()["error"] == "INVALID_REQUEST"


def test_claim_rate_limit(client, monkeypatch):
    monkeypatch.setattr(main, "claim_limiter", RateLimiter(2))
    unknown = "Q" * 43
    codes = [client.post(f"/claim/{unknown}", headers=hdr("bob")).status_code for _ in range(3)]
    assert codes == [404, 404, 429]


def test_claim_rate_limit_ignores_handle_header(client, monkeypatch):
    monkeypatch.setattr(main, "claim_limiter", RateLimiter(2))
    unknown = "Q" * 43
    codes = [client.post(f"/claim/{unknown}", headers=hdr(f"user{n}")).status_code for n in range(3)]
    assert codes == [404, 404, 429]


def test_anchor_lookup(client, ledger):
    r = client.post("/vault/items", headers=hdr("alice"), json={"itemType": "TLDRAW", "content": "strokes"})
    txid = r.json()["anchorTxid"]

    first = client.get(f"/anchors/{txid}").json()
    assert first["verified"] is True
    assert first["explorerUrl"].endswith(txid)
    second = client.get(f"/anchors/{txid.upper()}").json()
    assert second["dataHash"] == first["dataHash"]
    assert ledger.fetches == [txid]

    assert client.get(f"/anchors/{'cd' * 32}").json()["reason"] == "not_found"
    assert client.get("/anchors/pending-18c-abc123").json()["reason"] == "anchor_pending"
    assert client.get("/anchors/xyz").status_code == 400
