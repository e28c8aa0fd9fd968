"""
Ledger gateway for the handshake protocol.

Wraps every Algorand interaction the handshake coordinator needs:
- building unsigned fee payments for client-side signing
- relaying a client-signed payment and waiting for finality
- minting a non-transferable handshake token bound to an address

Token design: a one-unit, zero-decimal ASA created by the minter account with
default_frozen=True. The minter keeps the manager/freeze/clawback roles so the
unit can never move, and `reserve` records the address the token is bound to.
Metadata travels as an ARC-69 JSON note.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.error import URLError

from algosdk import account, encoding, mnemonic, transaction
from algosdk.error import AlgodHTTPError, ConfirmationTimeoutError, TransactionRejectedError
from algosdk.v2client import algod

from .algorand_config import get_algod_client, get_handshake_config
from .fee_transaction_builder import (
    FeeTransactionResult,
    HandshakeFeeTransactionBuilder,
    InvalidSignedTransaction as _InvalidSignedPayload,
    SignedFeePayment,
)

logger = logging.getLogger(__name__)

TOKEN_UNIT_NAME = "HSHAKE"
MAX_ASSET_NAME_BYTES = 32
MAX_URL_BYTES = 96
MAX_NOTE_BYTES = 1024

# algod_request surfaces connection failures as URLError (an OSError) rather than AlgodHTTPError
NETWORK_ERRORS = (URLError, OSError)


class LedgerError(Exception):
    """Base class for ledger failures. All of them are retry-eligible."""

    retryable = True


class InvalidSignedTransaction(LedgerError):
    retryable = False


class TransactionRejected(LedgerError):
    pass


class ConfirmationTimeout(LedgerError):
    """Finality was not observed in time; the transaction may still land."""


@dataclass(frozen=True)
class SubmissionResult:
    txid: str
    confirmed_round: int


@dataclass(frozen=True)
class MintResult:
    token_ref: str
    txid: str
    confirmed_round: int


def _truncate_utf8(value: str, max_bytes: int) -> str:
    encoded = value.encode('utf-8')
    if len(encoded) <= max_bytes:
        return value
    return encoded[:max_bytes].decode('utf-8', errors='ignore')


def mint_lease(handshake_id, side: str) -> bytes:
    """32-byte lease unique per handshake side; the network rejects a second
    create with the same lease inside its validity window."""
    return hashlib.sha256(f"convenu:handshake-mint:{handshake_id}:{side}".encode()).digest()


class AlgorandLedgerGateway:
    """Relays handshake fee payments and mints bound handshake tokens."""

    def __init__(
        self,
        client: Optional[algod.AlgodClient] = None,
        treasury_address: Optional[str] = None,
        minter_mnemonic: Optional[str] = None,
        confirmation_rounds: Optional[int] = None,
        metadata_url: Optional[str] = None,
    ) -> None:
        config = get_handshake_config()
        self.algod: algod.AlgodClient = client or get_algod_client()
        self.builder = HandshakeFeeTransactionBuilder(
            client=self.algod,
            treasury_address=treasury_address or config['treasury_address'],
        )
        self.treasury_address = self.builder.treasury_address
        self.confirmation_rounds = confirmation_rounds or config['confirmation_rounds']
        self.metadata_url = metadata_url if metadata_url is not None else config['metadata_url']
        self._minter_mnemonic = minter_mnemonic or config['minter_mnemonic']
        self._minter_private_key: Optional[str] = None
        self._minter_address: Optional[str] = None

    @property
    def minter_private_key(self) -> str:
        if self._minter_private_key is None:
            if not self._minter_mnemonic:
                raise RuntimeError("HANDSHAKE_MINTER_MNEMONIC is required for minting handshake tokens")
            self._minter_private_key = mnemonic.to_private_key(self._minter_mnemonic)
        return self._minter_private_key

    @property
    def minter_address(self) -> str:
        if self._minter_address is None:
            self._minter_address = account.address_from_private_key(self.minter_private_key)
        return self._minter_address

    # ------------------------------------------------------------------
    # Fee payments
    # ------------------------------------------------------------------

    def build_fee_payment(self, sender: str, amount_micro: int, handshake_id) -> FeeTransactionResult:
        try:
            return self.builder.build_fee_payment(sender, amount_micro, handshake_id)
        except (AlgodHTTPError,) + NETWORK_ERRORS as exc:
            logger.error("Failed to fetch suggested params for handshake %s: %s", handshake_id, exc)
            raise LedgerError(f"Could not build fee payment: {exc}") from exc

    def inspect_signed_payment(self, signed_b64: str) -> SignedFeePayment:
        try:
            return self.builder.inspect_signed_payment(signed_b64)
        except _InvalidSignedPayload as exc:
            raise InvalidSignedTransaction(str(exc)) from exc

    def submit_signed_payment(self, signed_b64: str) -> SubmissionResult:
        """Broadcast a client-signed payment and block until it is final.

        Rebroadcasting a transaction the network already accepted is treated
        as success, so a client retry after a lost response is safe.
        """
        payment = self.inspect_signed_payment(signed_b64)
        stxn = encoding.msgpack_decode(signed_b64)
        txid = payment.txid
        try:
            txid = self.algod.send_transaction(stxn)
            logger.info("Submitted handshake fee payment %s from %s", txid, payment.sender)
        except AlgodHTTPError as exc:
            message = str(exc)
            if "already in ledger" in message.lower():
                logger.warning("Fee payment %s already in ledger; confirming existing transaction", txid)
            else:
                logger.error("Fee payment %s rejected by algod: %s", txid, message)
                raise TransactionRejected(message) from exc
        except NETWORK_ERRORS as exc:
            logger.error("Could not reach algod to submit fee payment %s: %s", txid, exc)
            raise LedgerError(f"Could not submit {txid}: {exc}") from exc

        confirmed_round = self._wait_for_confirmation(txid)
        logger.info("Fee payment %s confirmed in round %s", txid, confirmed_round)
        return SubmissionResult(txid=txid, confirmed_round=confirmed_round)

    # ------------------------------------------------------------------
    # Minting
    # ------------------------------------------------------------------

    def mint_bound_token(
        self,
        recipient: str,
        handshake_id,
        side: str,
        event_title: Optional[str] = None,
        event_date: Optional[str] = None,
    ) -> MintResult:
        """Create a frozen one-unit ASA bound to `recipient`."""
        event_info = event_title or 'Meeting'
        asset_name = _truncate_utf8(f"Handshake: {event_info}", MAX_ASSET_NAME_BYTES)
        url = _truncate_utf8(f"{self.metadata_url}{handshake_id}", MAX_URL_BYTES) if self.metadata_url else ""

        metadata = {
            "standard": "arc69",
            "description": f"Proof of handshake at {event_info}",
            "properties": {
                "handshake_id": str(handshake_id),
                "side": side,
                "bound_to": recipient,
                "event_title": event_info,
                "event_date": event_date or "",
            },
        }
        note = json.dumps(metadata, separators=(",", ":")).encode()
        if len(note) > MAX_NOTE_BYTES:
            metadata["description"] = "Proof of handshake"
            note = json.dumps(metadata, separators=(",", ":")).encode()[:MAX_NOTE_BYTES]

        minter = self.minter_address
        try:
            params = self.algod.suggested_params()
            txn = transaction.AssetCreateTxn(
                sender=minter,
                sp=params,
                total=1,
                decimals=0,
                default_frozen=True,
                manager=minter,
                reserve=recipient,
                freeze=minter,
                clawback=minter,
                unit_name=TOKEN_UNIT_NAME,
                asset_name=asset_name,
                url=url,
                note=note,
                lease=mint_lease(handshake_id, side),
            )
            signed = txn.sign(self.minter_private_key)
            txid = self.algod.send_transaction(signed)
        except AlgodHTTPError as exc:
            logger.error("Handshake token mint rejected for %s (%s side): %s", handshake_id, side, exc)
            raise TransactionRejected(str(exc)) from exc
        except NETWORK_ERRORS as exc:
            logger.error("Could not reach algod to mint token for %s (%s side): %s", handshake_id, side, exc)
            raise LedgerError(f"Could not submit mint for {handshake_id}: {exc}") from exc

        logger.info("Submitted handshake token mint %s for %s (%s side) -> %s", txid, handshake_id, side, recipient)
        confirmation = self._wait_for_confirmation(txid, full=True)
        asset_id = confirmation.get("asset-index")
        if not asset_id:
            raise TransactionRejected(f"Mint {txid} confirmed without an asset index")

        logger.info("Minted handshake token %s for %s (%s side)", asset_id, handshake_id, side)
        return MintResult(
            token_ref=str(asset_id),
            txid=txid,
            confirmed_round=confirmation.get("confirmed-round", 0),
        )

    def _wait_for_confirmation(self, txid: str, full: bool = False):
        try:
            confirmation = transaction.wait_for_confirmation(self.algod, txid, self.confirmation_rounds)
        except ConfirmationTimeoutError as exc:
            logger.warning("Timed out waiting for %s after %s rounds", txid, self.confirmation_rounds)
            raise ConfirmationTimeout(str(exc)) from exc
        except TransactionRejectedError as exc:
            logger.error("Transaction %s was rejected by the pool: %s", txid, exc)
            raise TransactionRejected(str(exc)) from exc
        except (AlgodHTTPError,) + NETWORK_ERRORS as exc:
            logger.error("Could not confirm %s: %s", txid, exc)
            raise LedgerError(f"Could not confirm {txid}: {exc}") from exc
        if full:
            return confirmation
        return confirmation.get("confirmed-round", 0)
