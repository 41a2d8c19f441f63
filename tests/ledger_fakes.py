"""In-memory ledger and key material shared by the test suite."""

from typing import Dict, List, Optional

from strandsign.errors import UpstreamFailure
from strandsign.ledger import Deadline, LedgerClient, Utxo
from strandsign.transaction import Transaction, TxInput, TxOutput, address_to_hash160, p2pkh_script

# Private key 0C28FCA386C7A227600B2FE50B7CAE11EC86D3BF1FBE471BE89827E19D72AA1D
TEST_SECRET_HEX = "0c28fca386c7a227600b2fe50b7cae11ec86d3bf1fbe471be89827e19d72aa1d"
TEST_WIF_UNCOMPRESSED = "5HueCGU8rMjxEXxiPuD5BDku4MkFqeZyd4dZ1jvhTVqvbTLvyTJ"
TEST_WIF = "KwdMAjGmerYanjeui5SHS7JkmpZvVipYvB2LJGU1ZxJwYvP98617"

# Funding address given explicitly so no RIPEMD-160 derivation is needed
TEST_ADDRESS = "16UwLL9Risc3QfPqBUvKofHmBQ7wMtjvM"
TEST_ADDRESS_HASH160 = "010966776006953d5567439e5e39f86a0d273bee"

FUNDING_TXID = "aa" * 32


class FakeLedger(LedgerClient):
    """
    Records broadcasts and serves them back.

    Set ``fail_with`` to an UpstreamFailure instance to make every call raise it.
    """

    def __init__(self, utxos: Optional[List[Utxo]] = None):
        self.utxos = [Utxo(FUNDING_TXID, 0, 100_000)] if utxos is None else utxos
        self.transactions: Dict[str, str] = {}
        self.broadcasts: List[str] = []
        self.fetches: List[str] = []
        self.fail_with: Optional[UpstreamFailure] = None

    def _maybe_fail(self, deadline: Deadline) -> None:
        deadline.timeout_for(10.0)
        if self.fail_with is not None:
            raise self.fail_with

    def list_unspent(self, address: str, deadline: Deadline) -> List[Utxo]:
        self._maybe_fail(deadline)
        return list(self.utxos)

    def broadcast(self, raw_hex: str, deadline: Deadline) -> str:
        self._maybe_fail(deadline)
        txid = Transaction.from_hex(raw_hex).txid()
        self.transactions[txid] = raw_hex
        self.broadcasts.append(txid)
        return txid

    def get_transaction_hex(self, txid: str, deadline: Deadline) -> Optional[str]:
        self._maybe_fail(deadline)
        self.fetches.append(txid)
        return self.transactions.get(txid)

    def add_payment(self, address: str, sats: int) -> str:
        """Register a transaction paying ``sats`` to ``address``; returns its txid."""
        h160, _ = address_to_hash160(address)
        tx = Transaction(
            inputs=[TxInput("bb" * 32, len(self.transactions))],
            outputs=[TxOutput(sats, p2pkh_script(h160))],
        )
        self.transactions[tx.txid()] = tx.to_hex()
        return tx.txid()
