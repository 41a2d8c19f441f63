import os
import sys
import tempfile

import pytest
from fastapi.testclient import TestClient

# Point storage at a scratch database before the service modules are imported
_TMP = tempfile.mkdtemp(prefix="strandsign-tests-")
os.environ["STRANDSIGN_DB_PATH"] = os.path.join(_TMP, "strandsign.db")
os.environ["ANCHOR_KEY_PATH"] = os.path.join(_TMP, "no_anchor_key.json")
os.environ["LOG_JSON"] = "0"

# Ensure the packages and test helpers are importable
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT)
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from strandsign import AnchorKey, AnchorService
from strandsign_service import main
from strandsign_service.db import SqliteConfirmationCache, init_db, reset_db

from ledger_fakes import TEST_ADDRESS, TEST_WIF, FakeLedger

init_db()
main._startup()


# Reset database and public rate limits before each test for isolation
@pytest.fixture(autouse=True)
def _reset_db():
    reset_db()
    main.sign_limiter.reset()
    main.claim_limiter.reset()
    yield


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def anchor(ledger):
    service = AnchorService(
        ledger,
        key=AnchorKey.from_wif(TEST_WIF, TEST_ADDRESS),
        cache=SqliteConfirmationCache(),
    )
    main.ANCHOR = service
    return service


@pytest.fixture
def client(anchor):
    return TestClient(main.app)
