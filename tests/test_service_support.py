import json
import logging

import pytest

from strandsign_service import anchors, config, rate_limit
from strandsign_service.logging_config import AuditLogger, StructuredFormatter, request_id_var, set_request_id
from strandsign_service.rate_limit import RateLimiter
from strandsign_service.security import (
    ValidationError,
    extract_client_id,
    sanitize_for_logging,
    validate_handle,
    validate_string_length,
    validate_txid,
)

from ledger_fakes import TEST_ADDRESS, TEST_WIF


class _Capture(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


def test_handle_validation():
    assert validate_handle(" $Alice ") == "alice"
    for bad in ("", "a", "has space", "x" * 65, None):
        with pytest.raises(ValidationError):
            validate_handle(bad)


def test_txid_and_length_validation():
    assert validate_txid("AB" * 32) == "ab" * 32
    with pytest.raises(ValidationError):
        validate_txid("ab" * 31)
    with pytest.raises(ValidationError) as ctx:
        validate_string_length("x" * 201, "title", max_length=200)
    assert ctx.value.field == "title"


def test_client_id_uses_peer_address():
    assert extract_client_id({"x-user-handle": "alice"}, "10.0.0.9") == "ip:10.0.0.9"
    forwarded = {"x-forwarded-for": "1.2.3.4, 10.0.0.1"}
    assert extract_client_id(forwarded, "127.0.0.1") == "ip:127.0.0.1"
    assert extract_client_id(forwarded, "127.0.0.1", trust_forwarded=True) == "ip:1.2.3.4"
    assert extract_client_id({}) == "anonymous"


def test_sanitize_masks_nested_secrets():
    clean = sanitize_for_logging({"token": "abcdefghijklmnop", "nested": {"wif": "short"}, "handle": "alice"})
    assert clean["token"] == "abcd...mnop"
    assert clean["nested"]["wif"] == "[REDACTED]"
    assert clean["handle"] == "alice"


def test_audit_records_are_masked_and_tagged():
    audit = AuditLogger("strandsign.audit.test")
    capture = _Capture()
    audit._logger.addHandler(capture)
    try:
        set_request_id("req-123")
        audit.security_event("probe", severity="high", token="abcdefghijklmnop")
    finally:
        audit._logger.removeHandler(capture)
        request_id_var.set("")

    record = capture.records[0]
    assert record.levelno == logging.ERROR
    assert record.extra_fields["request_id"] == "req-123"
    assert record.extra_fields["token"] == "abcd...mnop"

    line = json.loads(StructuredFormatter().format(record))
    assert line["event_type"] == "SECURITY_EVENT"
    assert line["request_id"] == "req-123"


def test_generated_request_ids_are_unique():
    first, second = set_request_id(), set_request_id()
    request_id_var.set("")
    assert first != second


def test_rate_limiter_window():
    limiter = RateLimiter(2)
    assert limiter.allow("a") and limiter.allow("a")
    assert not limiter.allow("a")
    assert limiter.allow("b")
    limiter.reset("a")
    assert limiter.allow("a")


def test_rate_limiter_sweeps_idle_keys(monkeypatch):
    clock = [1000.0]
    monkeypatch.setattr(rate_limit.time, "time", lambda: clock[0])
    limiter = RateLimiter(1)
    for n in range(3):
        assert limiter.allow(f"ip:10.0.0.{n}")
    assert limiter.tracked_keys() == 3

    clock[0] += 61
    assert limiter.allow("ip:10.0.0.9")
    assert limiter.tracked_keys() == 1

    clock[0] += 61
    assert limiter.cleanup_expired() == 1
    assert limiter.tracked_keys() == 0


def test_anchor_key_from_file(tmp_path, monkeypatch):
    key_file = tmp_path / "anchor_key.json"
    key_file.write_text(json.dumps({"wif": TEST_WIF, "address": TEST_ADDRESS}))
    monkeypatch.setattr(config, "ANCHOR_KEY_PATH", str(key_file))
    config.invalidate_config_cache()

    key = anchors.load_anchor_key()
    assert key is not None
    assert key.address == TEST_ADDRESS
    assert config.validate_config()["anchor_key"] is True

    key_file.write_text(json.dumps({"wif": "not-a-wif"}))
    config.invalidate_config_cache()
    assert anchors.load_anchor_key() is None


def test_env_key_wins_over_file(monkeypatch):
    monkeypatch.setattr(config, "ANCHOR_PRIVATE_KEY_WIF", TEST_WIF)
    monkeypatch.setattr(config, "ANCHOR_ADDRESS", TEST_ADDRESS)
    assert config.load_anchor_key_config() == {"wif": TEST_WIF, "address": TEST_ADDRESS}


def test_missing_key_leaves_anchoring_unconfigured():
    assert anchors.load_anchor_key() is None
    assert anchors.build_anchor_service().configured is False
