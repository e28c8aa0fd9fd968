import json
from urllib.error import URLError

from algosdk import account, encoding, mnemonic, transaction
from algosdk.error import AlgodHTTPError
from django.test import TestCase, override_settings

from blockchain.fee_transaction_builder import (
    HandshakeFeeTransactionBuilder,
    InvalidSignedTransaction as InvalidSignedPayload,
    NOTE_PREFIX,
)
from blockchain.ledger_gateway import (
    AlgorandLedgerGateway,
    ConfirmationTimeout,
    InvalidSignedTransaction,
    LedgerError,
    TransactionRejected,
    mint_lease,
)

GENESIS_HASH = "SGO1GKSzyE7IEPItTxCByw9x8FmnrCDexi9/cOUJOiI="
HANDSHAKE_ID = "6f1c2a9e-5b1d-4c4e-9f0a-2d7c1b3e8a11"


class FakeAlgodClient:
    """Minimal stub for Algod client interactions used in tests."""

    def __init__(self, confirmed_round=11, asset_index=424242):
        self.sent = []
        self.send_error = None
        self.confirmed_round = confirmed_round
        self.asset_index = asset_index
        self.pool_error = ''

    def suggested_params(self):
        return transaction.SuggestedParams(
            fee=0,
            first=1000,
            last=2000,
            gh=GENESIS_HASH,
            gen="testnet-v1.0",
            flat_fee=False,
            min_fee=1000,
        )

    def send_transaction(self, txn, **kwargs):
        self.sent.append(txn)
        if self.send_error:
            raise self.send_error
        return txn.get_txid()

    def status(self, **kwargs):
        return {'last-round': 10}

    def status_after_block(self, block_num, **kwargs):
        return {'last-round': block_num}

    def pending_transaction_info(self, txid, **kwargs):
        info = {'confirmed-round': self.confirmed_round, 'pool-error': self.pool_error}
        if self.asset_index:
            info['asset-index'] = self.asset_index
        return info


def sign_payment(private_key, receiver, amount=10_000, note=NOTE_PREFIX + HANDSHAKE_ID.encode()):
    txn = transaction.PaymentTxn(
        sender=account.address_from_private_key(private_key),
        sp=FakeAlgodClient().suggested_params(),
        receiver=receiver,
        amt=amount,
        note=note,
    )
    return encoding.msgpack_encode(txn.sign(private_key))


class FeeTransactionBuilderTest(TestCase):

    def setUp(self):
        _, self.treasury = account.generate_account()
        self.payer_key, self.payer = account.generate_account()
        self.builder = HandshakeFeeTransactionBuilder(client=FakeAlgodClient(), treasury_address=self.treasury)

    def test_builds_unsigned_payment_to_treasury(self):
        result = self.builder.build_fee_payment(self.payer, 10_000, HANDSHAKE_ID)

        txn = encoding.msgpack_decode(result.txn_b64)
        self.assertIsInstance(txn, transaction.PaymentTxn)
        self.assertEqual(txn.sender, self.payer)
        self.assertEqual(txn.receiver, self.treasury)
        self.assertEqual(txn.amt, 10_000)
        self.assertEqual(txn.note, NOTE_PREFIX + HANDSHAKE_ID.encode())
        self.assertEqual(result.txid, txn.get_txid())
        self.assertEqual((result.first_valid, result.last_valid), (1000, 2000))
        self.assertEqual(result.genesis_hash, GENESIS_HASH)
        self.assertEqual(result.genesis_id, 'testnet-v1.0')

    def test_rejects_non_positive_amount(self):
        with self.assertRaises(ValueError):
            self.builder.build_fee_payment(self.payer, 0, HANDSHAKE_ID)

    @override_settings(HANDSHAKE_TREASURY_ADDRESS='')
    def test_requires_treasury(self):
        with self.assertRaises(RuntimeError):
            HandshakeFeeTransactionBuilder(client=FakeAlgodClient())
        with self.assertRaises(RuntimeError):
            HandshakeFeeTransactionBuilder(client=FakeAlgodClient(), treasury_address='not-an-address')

    def test_inspect_signed_payment(self):
        signed = sign_payment(self.payer_key, self.treasury, amount=12_345)
        payment = self.builder.inspect_signed_payment(signed)

        self.assertEqual(payment.sender, self.payer)
        self.assertEqual(payment.receiver, self.treasury)
        self.assertEqual(payment.amount, 12_345)
        self.assertEqual(payment.handshake_id, HANDSHAKE_ID)
        self.assertEqual(payment.txid, encoding.msgpack_decode(signed).get_txid())

    def test_inspect_rejects_unusable_payloads(self):
        unsigned = self.builder.build_fee_payment(self.payer, 10_000, HANDSHAKE_ID).txn_b64
        for payload in ('', 'garbage!!', unsigned):
            with self.assertRaises(InvalidSignedPayload):
                self.builder.inspect_signed_payment(payload)

    def test_foreign_note_has_no_handshake(self):
        signed = sign_payment(self.payer_key, self.treasury, note=b'hello')
        self.assertIsNone(self.builder.inspect_signed_payment(signed).handshake_id)


class LedgerGatewayTest(TestCase):

    def setUp(self):
        _, self.treasury = account.generate_account()
        self.payer_key, self.payer = account.generate_account()
        self.minter_key, self.minter = account.generate_account()
        _, self.recipient = account.generate_account()
        self.algod = FakeAlgodClient()
        self.gateway = AlgorandLedgerGateway(
            client=self.algod,
            treasury_address=self.treasury,
            minter_mnemonic=mnemonic.from_private_key(self.minter_key),
            confirmation_rounds=3,
            metadata_url='https://convenu.test/handshakes/',
        )

    def test_submit_waits_for_confirmation(self):
        signed = sign_payment(self.payer_key, self.treasury)
        result = self.gateway.submit_signed_payment(signed)

        self.assertEqual(result.txid, encoding.msgpack_decode(signed).get_txid())
        self.assertEqual(result.confirmed_round, 11)
        self.assertEqual(len(self.algod.sent), 1)

    def test_rebroadcast_already_in_ledger_is_success(self):
        self.algod.send_error = AlgodHTTPError('TransactionPool.Remember: transaction already in ledger: ABC')
        signed = sign_payment(self.payer_key, self.treasury)
        result = self.gateway.submit_signed_payment(signed)
        self.assertEqual(result.txid, encoding.msgpack_decode(signed).get_txid())

    def test_rejected_broadcast(self):
        self.algod.send_error = AlgodHTTPError('overspend')
        with self.assertRaises(TransactionRejected):
            self.gateway.submit_signed_payment(sign_payment(self.payer_key, self.treasury))

    def test_confirmation_timeout(self):
        self.algod.confirmed_round = 0
        with self.assertRaises(ConfirmationTimeout) as ctx:
            self.gateway.submit_signed_payment(sign_payment(self.payer_key, self.treasury))
        self.assertTrue(ctx.exception.retryable)

    def test_pool_error_is_rejection(self):
        self.algod.confirmed_round = 0
        self.algod.pool_error = 'transaction dead'
        with self.assertRaises(TransactionRejected):
            self.gateway.submit_signed_payment(sign_payment(self.payer_key, self.treasury))

    def test_invalid_payload_is_not_retryable(self):
        with self.assertRaises(InvalidSignedTransaction) as ctx:
            self.gateway.submit_signed_payment('garbage!!')
        self.assertFalse(ctx.exception.retryable)
        self.assertEqual(self.algod.sent, [])

    def test_mint_creates_frozen_bound_token(self):
        result = self.gateway.mint_bound_token(
            self.recipient, HANDSHAKE_ID, 'receiver',
            event_title='A very long conference title that overflows', event_date='2026-05-01'
        )

        self.assertEqual(result.token_ref, '424242')
        signed = self.algod.sent[0]
        txn = signed.transaction
        self.assertIsInstance(txn, transaction.AssetCreateTxn)
        self.assertEqual(txn.sender, self.minter)
        self.assertEqual(txn.total, 1)
        self.assertEqual(txn.decimals, 0)
        self.assertTrue(txn.default_frozen)
        self.assertEqual(txn.reserve, self.recipient)
        self.assertEqual(txn.freeze, self.minter)
        self.assertEqual(txn.clawback, self.minter)
        self.assertEqual(txn.unit_name, 'HSHAKE')
        self.assertLessEqual(len(txn.asset_name.encode()), 32)
        self.assertTrue(txn.asset_name.startswith('Handshake: A very'))
        self.assertEqual(txn.url, f'https://convenu.test/handshakes/{HANDSHAKE_ID}')
        self.assertEqual(txn.lease, mint_lease(HANDSHAKE_ID, 'receiver'))

        note = json.loads(txn.note)
        self.assertEqual(note['standard'], 'arc69')
        self.assertEqual(note['properties']['bound_to'], self.recipient)
        self.assertEqual(note['properties']['side'], 'receiver')

    def test_mint_lease_is_per_side(self):
        self.assertEqual(len(mint_lease(HANDSHAKE_ID, 'initiator')), 32)
        self.assertNotEqual(mint_lease(HANDSHAKE_ID, 'initiator'), mint_lease(HANDSHAKE_ID, 'receiver'))

    def test_mint_without_asset_index_fails(self):
        self.algod.asset_index = None
        with self.assertRaises(TransactionRejected):
            self.gateway.mint_bound_token(self.recipient, HANDSHAKE_ID, 'initiator')

    def test_mint_requires_minter(self):
        gateway = AlgorandLedgerGateway(client=self.algod, treasury_address=self.treasury)
        gateway._minter_mnemonic = ''
        with self.assertRaises(RuntimeError):
            gateway.mint_bound_token(self.recipient, HANDSHAKE_ID, 'initiator')
        self.assertEqual(self.algod.sent, [])

    def test_build_fee_payment_wraps_algod_errors(self):
        def broken():
            raise AlgodHTTPError('service unavailable', 503)

        self.algod.suggested_params = broken
        with self.assertRaises(LedgerError):
            self.gateway.build_fee_payment(self.payer, 10_000, HANDSHAKE_ID)

    def test_unreachable_node_is_ledger_error(self):
        def refuse(*args, **kwargs):
            raise URLError(ConnectionRefusedError(111, 'Connection refused'))

        self.algod.suggested_params = refuse
        with self.assertRaises(LedgerError):
            self.gateway.build_fee_payment(self.payer, 10_000, HANDSHAKE_ID)
        with self.assertRaises(LedgerError) as ctx:
            self.gateway.mint_bound_token(self.recipient, HANDSHAKE_ID, 'initiator')
        self.assertNotIsInstance(ctx.exception, TransactionRejected)
        self.assertTrue(ctx.exception.retryable)

    def test_unreachable_node_on_submit(self):
        self.algod.send_error = URLError(ConnectionRefusedError(111, 'Connection refused'))
        with self.assertRaises(LedgerError) as ctx:
            self.gateway.submit_signed_payment(sign_payment(self.payer_key, self.treasury))
        self.assertNotIsInstance(ctx.exception, TransactionRejected)
        self.assertTrue(ctx.exception.retryable)

    def test_connection_lost_while_confirming(self):
        def drop(*args, **kwargs):
            raise ConnectionResetError(104, 'Connection reset by peer')

        self.algod.status = drop
        with self.assertRaises(LedgerError):
            self.gateway.submit_signed_payment(sign_payment(self.payer_key, self.treasury))
        self.assertEqual(len(self.algod.sent), 1)
