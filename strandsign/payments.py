"""
Payment verification for fee-gated signing.

A payment reference is a ledger transaction id. It is accepted when the
transaction exists and its outputs pay at least the required amount, to the
treasury address when one is configured. Any failure, including an
unreachable ledger, raises PaymentFailed: the signature is not committed
without a verified payment.
"""

import logging
from typing import Optional

from .anchoring import is_placeholder
from .errors import InvalidRequest, PaymentFailed, UpstreamFailure
from .ledger import Deadline, LedgerClient
from .transaction import Transaction, address_to_hash160, is_p2pkh_to

logger = logging.getLogger(__name__)


class PaymentVerifier:

    def __init__(self, ledger: LedgerClient, payee_address: Optional[str] = None, timeout: float = 30.0):
        self._ledger = ledger
        self._payee_hash160 = address_to_hash160(payee_address)[0] if payee_address else None
        self._timeout = timeout

    def paid_amount(self, payment_txid: str) -> int:
        if not payment_txid or is_placeholder(payment_txid) or len(payment_txid) != 64:
            raise PaymentFailed("A ledger transaction id is required as payment proof")
        try:
            raw_hex = self._ledger.get_transaction_hex(payment_txid, Deadline(self._timeout))
        except UpstreamFailure as e:
            logger.warning("Payment %s could not be checked: %s", payment_txid, e.message)
            raise PaymentFailed("Payment could not be verified right now", payment_txid=payment_txid) from e
        if raw_hex is None:
            raise PaymentFailed("Payment transaction not found", payment_txid=payment_txid)
        try:
            tx = Transaction.from_hex(raw_hex)
        except InvalidRequest as e:
            raise PaymentFailed("Payment transaction is malformed", payment_txid=payment_txid) from e
        if self._payee_hash160 is None:
            return sum(o.value for o in tx.outputs)
        return sum(o.value for o in tx.outputs if is_p2pkh_to(o.script, self._payee_hash160))

    def verify(self, payment_txid: str, required_sats: int) -> int:
        """
        Check a payment. Returns the amount counted toward the fee.

        Raises:
            PaymentFailed: missing, unreachable or insufficient payment
        """
        paid = self.paid_amount(payment_txid)
        if paid < required_sats:
            raise PaymentFailed(
                f"Payment of {paid} sats is below the signing fee of {required_sats} sats",
                payment_txid=payment_txid, paid_sats=paid, required_sats=required_sats,
            )
        return paid
