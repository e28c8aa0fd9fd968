"""
Handshake Fee Transaction Builder

Builds the unsigned fee payment (party wallet -> protocol treasury) that each
side of a handshake signs client-side, and inspects the signed payment that
comes back before it is relayed. The server never signs fee payments.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Optional

import msgpack
from algosdk import encoding, transaction
from algosdk.v2client import algod

from .algorand_config import get_algod_client, get_handshake_config

logger = logging.getLogger(__name__)

NOTE_PREFIX = b"convenu:handshake:"


class InvalidSignedTransaction(ValueError):
    """The posted transaction is not a usable signed fee payment."""


@dataclass
class FeeTransactionResult:
    txn_b64: str
    txid: str
    sender: str
    amount: int
    first_valid: int
    last_valid: int
    genesis_hash: str
    genesis_id: str


@dataclass(frozen=True)
class SignedFeePayment:
    txid: str
    sender: str
    receiver: str
    amount: int
    note: bytes

    @property
    def handshake_id(self) -> Optional[str]:
        if not self.note.startswith(NOTE_PREFIX):
            return None
        return self.note[len(NOTE_PREFIX):].decode('utf-8', errors='ignore')


class HandshakeFeeTransactionBuilder:
    """Builds unsigned handshake fee payments against current network params."""

    def __init__(self, client: Optional[algod.AlgodClient] = None, treasury_address: Optional[str] = None):
        self.algod_client = client or get_algod_client()
        self.treasury_address = treasury_address or get_handshake_config()['treasury_address']
        if not self.treasury_address:
            raise RuntimeError("HANDSHAKE_TREASURY_ADDRESS is not configured")
        if not encoding.is_valid_address(self.treasury_address):
            raise RuntimeError(f"HANDSHAKE_TREASURY_ADDRESS is not a valid Algorand address: {self.treasury_address}")

    @staticmethod
    def note_for(handshake_id) -> bytes:
        return NOTE_PREFIX + str(handshake_id).encode()

    def build_fee_payment(self, sender: str, amount_micro: int, handshake_id) -> FeeTransactionResult:
        """Build the unsigned fee transfer for `sender` to sign.

        Fresh suggested params are fetched on every call, so a client that hit
        an expired validity window just asks for a new transaction.
        """
        if amount_micro <= 0:
            raise ValueError("amount_micro must be positive")

        params = self.algod_client.suggested_params()
        txn = transaction.PaymentTxn(
            sender=sender,
            sp=params,
            receiver=self.treasury_address,
            amt=amount_micro,
            note=self.note_for(handshake_id),
        )
        txn_b64 = encoding.msgpack_encode(txn)

        # Derive chain params from the packed txn so the client sees exactly what it signs
        d = msgpack.unpackb(base64.b64decode(txn_b64), raw=False)
        gh = d.get('gh')
        result = FeeTransactionResult(
            txn_b64=txn_b64,
            txid=txn.get_txid(),
            sender=sender,
            amount=amount_micro,
            first_valid=d.get('fv') or 0,
            last_valid=d.get('lv') or 0,
            genesis_hash=base64.b64encode(gh).decode() if gh else '',
            genesis_id=d.get('gen') or '',
        )
        logger.info(
            "Built handshake fee payment %s: %s -> %s amount=%s rounds=%s-%s",
            result.txid,
            sender,
            self.treasury_address,
            amount_micro,
            result.first_valid,
            result.last_valid,
        )
        return result

    @staticmethod
    def inspect_signed_payment(signed_b64: str) -> SignedFeePayment:
        """Decode a client-signed payment without broadcasting it."""
        if not signed_b64:
            raise InvalidSignedTransaction("Signed transaction is empty")
        try:
            decoded = encoding.msgpack_decode(signed_b64)
        except Exception as exc:
            raise InvalidSignedTransaction(f"Could not decode signed transaction: {exc}") from exc

        if not isinstance(decoded, transaction.SignedTransaction):
            raise InvalidSignedTransaction("Transaction is not signed")
        txn = decoded.transaction
        if not isinstance(txn, transaction.PaymentTxn):
            raise InvalidSignedTransaction("Transaction is not a payment")

        return SignedFeePayment(
            txid=decoded.get_txid(),
            sender=txn.sender,
            receiver=txn.receiver,
            amount=int(txn.amt or 0),
            note=bytes(txn.note or b''),
        )
