"""
Ledger access for anchoring.

LedgerClient is the seam between the anchoring service and the network.
WhatsOnChainClient talks to a WhatsOnChain-compatible REST API with
``requests``; tests substitute an in-memory implementation.

Every call takes a Deadline. The per-call timeout is the smaller of the
configured per-request cap and whatever is left of the overall budget, so a
hung upstream can never hold the caller past its budget.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from .errors import AnchorTimeout, LedgerError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.whatsonchain.com/v1/bsv/main"
DEFAULT_EXPLORER_URL = "https://whatsonchain.com/tx/"


@dataclass
class Utxo:
    """An unspent output controlled by the anchoring address."""
    txid: str
    vout: int
    value: int
    height: int = 0


class Deadline:
    """Overall time budget shared by a sequence of network calls."""

    def __init__(self, seconds: float):
        self._expires = time.monotonic() + seconds
        self.seconds = seconds

    def remaining(self) -> float:
        return max(0.0, self._expires - time.monotonic())

    def expired(self) -> bool:
        return self.remaining() <= 0

    def timeout_for(self, per_call: float) -> float:
        """
        Timeout to pass to the next network call.

        Raises:
            AnchorTimeout: the budget is already spent
        """
        remaining = self.remaining()
        if remaining <= 0:
            raise AnchorTimeout(f"Ledger budget of {self.seconds}s exhausted")
        return min(per_call, remaining)


class LedgerClient(ABC):
    """Abstract interface to the public ledger."""

    @abstractmethod
    def list_unspent(self, address: str, deadline: Deadline) -> List[Utxo]:
        """Spendable outputs for an address, in the order the ledger returns them."""
        pass

    @abstractmethod
    def broadcast(self, raw_hex: str, deadline: Deadline) -> str:
        """Submit a signed transaction. Returns the transaction id."""
        pass

    @abstractmethod
    def get_transaction_hex(self, txid: str, deadline: Deadline) -> Optional[str]:
        """Raw transaction hex, or None when the ledger does not know the id."""
        pass


class WhatsOnChainClient(LedgerClient):
    """
    WhatsOnChain REST client.

    Endpoints:
        GET  /address/{address}/unspent
        POST /tx/raw            {"txhex": ...}
        GET  /tx/{txid}/hex
    """

    def __init__(
        self,
        base_url: str = DEFAULT_API_URL,
        per_call_timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self._base = base_url.rstrip("/")
        self._per_call = per_call_timeout
        self._session = session or requests.Session()

    def _request(self, method: str, path: str, deadline: Deadline, **kwargs: Any) -> requests.Response:
        timeout = deadline.timeout_for(self._per_call)
        url = f"{self._base}{path}"
        try:
            return self._session.request(method, url, timeout=timeout, **kwargs)
        except requests.Timeout as e:
            raise AnchorTimeout(f"{method} {path} timed out after {timeout:.1f}s") from e
        except requests.RequestException as e:
            raise LedgerError(f"{method} {path} failed: {e}") from e

    def list_unspent(self, address: str, deadline: Deadline) -> List[Utxo]:
        resp = self._request("GET", f"/address/{address}/unspent", deadline)
        if resp.status_code != 200:
            raise LedgerError(f"Unspent lookup failed with HTTP {resp.status_code}", status=resp.status_code)
        try:
            rows = resp.json()
        except ValueError as e:
            raise LedgerError("Unspent lookup returned invalid JSON") from e
        return [
            Utxo(
                txid=row["tx_hash"],
                vout=int(row["tx_pos"]),
                value=int(row["value"]),
                height=int(row.get("height", 0)),
            )
            for row in rows
        ]

    def broadcast(self, raw_hex: str, deadline: Deadline) -> str:
        resp = self._request("POST", "/tx/raw", deadline, json={"txhex": raw_hex})
        if resp.status_code != 200:
            raise LedgerError(
                f"Broadcast rejected with HTTP {resp.status_code}: {resp.text[:200]}",
                status=resp.status_code,
            )
        try:
            body = resp.json()
        except ValueError:
            body = resp.text
        txid = str(body).strip().strip('"')
        if len(txid) != 64:
            raise LedgerError(f"Broadcast returned unexpected body: {txid[:80]}")
        return txid

    def get_transaction_hex(self, txid: str, deadline: Deadline) -> Optional[str]:
        resp = self._request("GET", f"/tx/{txid}/hex", deadline)
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise LedgerError(f"Transaction fetch failed with HTTP {resp.status_code}", status=resp.status_code)
        return resp.text.strip().strip('"')


class SecondaryBroadcaster:
    """
    Fire-and-forget re-broadcast to an auxiliary endpoint for faster indexing.

    Each submission runs on its own daemon thread. Failures are logged there
    and never reach the caller.
    """

    def __init__(self, url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self._url = url
        self._timeout = timeout
        self._session = session or requests.Session()

    def submit(self, raw_hex: str, txid: str) -> threading.Thread:
        thread = threading.Thread(
            target=self._post,
            args=(raw_hex, txid),
            name=f"secondary-broadcast-{txid[:8]}",
            daemon=True,
        )
        thread.start()
        return thread

    def _post(self, raw_hex: str, txid: str) -> None:
        try:
            resp = self._session.post(self._url, json={"rawTx": raw_hex}, timeout=self._timeout)
            if resp.status_code >= 400:
                logger.warning("Secondary broadcast of %s rejected: HTTP %s", txid, resp.status_code)
            else:
                logger.debug("Secondary broadcast of %s accepted", txid)
        except requests.RequestException as e:
            logger.warning("Secondary broadcast of %s failed: %s", txid, e)


def summarize_utxos(utxos: List[Utxo]) -> Dict[str, int]:
    return {"count": len(utxos), "total_sats": sum(u.value for u in utxos)}
