from datetime import timedelta
from unittest.mock import patch
from urllib.error import URLError

from algosdk import account, mnemonic
from django.test import override_settings

from achievements.models import PointsLedgerEntry, TrustScore
from blockchain.ledger_gateway import AlgorandLedgerGateway, ConfirmationTimeout, LedgerError, TransactionRejected
from contacts.models import Contact
from handshakes.exceptions import (
    DuplicateHandshake,
    Expired,
    InvalidCounterparty,
    InvalidState,
    InvalidWalletAddress,
    LedgerUnavailable,
    MintFailed,
    MintPartialFailure,
    NotAuthorized,
    NotFound,
    PaymentFailed,
    PaymentIncomplete,
    SelfClaim,
)
from handshakes.models import Handshake
from handshakes.signals import handshake_initiated
from users.models import TelegramLink

from .fakes import HandshakeTestCase, User, signed_payment


class InitiateTest(HandshakeTestCase):

    def test_creates_pending_record_and_returns_unsigned_payment(self):
        result = self.coordinator.initiate(self.alice, self.contact_bob.id, self.alice_wallet)

        handshake = Handshake.objects.get(pk=result.handshake.id)
        self.assertEqual(handshake.status, Handshake.STATUS_PENDING)
        self.assertEqual(handshake.receiver_identifier, '@bobtg')
        self.assertEqual(handshake.receiver_identifier_key, 'bobtg')
        self.assertIsNone(handshake.receiver)
        self.assertEqual(handshake.mint_fee_micro, 10_000)
        self.assertEqual(handshake.expires_at, self.now + timedelta(hours=48))
        self.assertEqual(handshake.event_title, 'PyCon')
        self.assertEqual(result.receiver_identifier, '@bobtg')
        self.assertEqual(result.counterparty_name, 'Bob Builder')
        self.assertEqual(result.unsigned_txn.amount, 10_000)
        self.assertEqual(self.gateway.built, [(self.alice_wallet, 10_000, str(handshake.id))])

    @override_settings(HANDSHAKE_MINT_FEE_MICRO=25_000, HANDSHAKE_TTL_HOURS=72)
    def test_captures_current_fee_schedule(self):
        handshake = self.initiate()
        self.assertEqual(handshake.mint_fee_micro, 25_000)
        self.assertEqual(handshake.expires_at, self.now + timedelta(hours=72))

    def test_enqueues_receiver_notification_after_commit(self):
        with patch('handshakes.tasks.notify_handshake_receiver.delay') as delay:
            with self.captureOnCommitCallbacks(execute=True):
                handshake = self.initiate()
        delay.assert_called_once_with(str(handshake.id))

    def test_initiated_signal_fires_after_commit(self):
        seen = []

        def on_initiated(sender, handshake, **kwargs):
            seen.append(handshake.id)

        handshake_initiated.connect(on_initiated)
        self.addCleanup(handshake_initiated.disconnect, on_initiated)

        with patch('handshakes.tasks.notify_handshake_receiver.delay'):
            with self.captureOnCommitCallbacks(execute=True):
                handshake = self.initiate()
                self.assertEqual(seen, [])
        self.assertEqual(seen, [handshake.id])

        # A rejected duplicate announces nothing
        with self.captureOnCommitCallbacks(execute=True):
            with self.assertRaises(DuplicateHandshake):
                self.initiate()
        self.assertEqual(seen, [handshake.id])

    def test_contact_of_another_user_is_invalid_counterparty(self):
        foreign = Contact.objects.create(owner=self.carol, first_name='Bob', email='bob@example.com')
        with self.assertRaises(InvalidCounterparty):
            self.coordinator.initiate(self.alice, foreign.id, self.alice_wallet)

    def test_contact_without_identifier_is_invalid_counterparty(self):
        blank = Contact.objects.create(owner=self.alice, first_name='Nobody')
        with self.assertRaises(InvalidCounterparty):
            self.coordinator.initiate(self.alice, blank.id, self.alice_wallet)
        self.assertFalse(Handshake.objects.exists())

    def test_unknown_contact_is_invalid_counterparty(self):
        with self.assertRaises(InvalidCounterparty):
            self.coordinator.initiate(self.alice, 999999, self.alice_wallet)
        with self.assertRaises(InvalidCounterparty):
            self.coordinator.initiate(self.alice, 'not-a-number', self.alice_wallet)

    def test_contact_email_used_when_no_handle(self):
        contact = Contact.objects.create(owner=self.alice, first_name='Carol', email='Carol@Example.com')
        result = self.coordinator.initiate(self.alice, contact.id, self.alice_wallet)
        self.assertEqual(result.receiver_identifier, 'Carol@Example.com')
        self.assertEqual(result.handshake.receiver_identifier_key, 'carol@example.com')

    def test_invalid_wallet_rejected(self):
        with self.assertRaises(InvalidWalletAddress):
            self.coordinator.initiate(self.alice, self.contact_bob.id, 'not-a-wallet')
        self.assertFalse(Handshake.objects.exists())

    def test_ledger_outage_leaves_no_record(self):
        self.gateway.build_error = LedgerError('algod unreachable')
        with self.assertRaises(LedgerUnavailable) as ctx:
            self.initiate()
        self.assertTrue(ctx.exception.retryable)
        self.assertFalse(Handshake.objects.exists())

    def test_duplicate_returns_existing_record(self):
        """Scenario B"""
        first = self.initiate()
        with self.assertRaises(DuplicateHandshake) as ctx:
            self.initiate()
        self.assertEqual(ctx.exception.handshake_id, str(first.id))
        self.assertEqual(ctx.exception.status, Handshake.STATUS_PENDING)
        self.assertEqual(Handshake.objects.count(), 1)

    def test_duplicate_while_matched(self):
        first = self.matched()
        with self.assertRaises(DuplicateHandshake) as ctx:
            self.initiate()
        self.assertEqual(ctx.exception.handshake_id, str(first.id))
        self.assertEqual(ctx.exception.status, Handshake.STATUS_MATCHED)
        self.assertEqual(Handshake.objects.count(), 1)

    def test_new_handshake_allowed_after_expiry(self):
        first = self.initiate()
        self.advance(hours=49)
        second = self.initiate()

        first.refresh_from_db()
        self.assertNotEqual(first.id, second.id)
        self.assertEqual(first.status, Handshake.STATUS_EXPIRED)
        self.assertEqual(second.status, Handshake.STATUS_PENDING)

    def test_concurrent_insert_maps_to_duplicate(self):
        winner = {}

        def insert_competitor(sender, amount, handshake_id):
            self.gateway.on_build = None
            winner['handshake'] = Handshake.objects.create(
                initiator=self.alice,
                receiver_identifier='@bobtg',
                contact=self.contact_bob,
                initiator_wallet_address=self.alice_wallet,
                mint_fee_micro=10_000,
                expires_at=self.now + timedelta(hours=48),
            )

        self.gateway.on_build = insert_competitor
        with self.assertRaises(DuplicateHandshake) as ctx:
            self.initiate()
        self.assertEqual(ctx.exception.handshake_id, str(winner['handshake'].id))
        self.assertEqual(Handshake.objects.count(), 1)


class ClaimTest(HandshakeTestCase):

    def test_claim_matches_record(self):
        handshake = self.initiate()
        result = self.coordinator.claim(handshake.id, self.bob, self.bob_wallet)

        handshake.refresh_from_db()
        self.assertEqual(handshake.status, Handshake.STATUS_MATCHED)
        self.assertEqual(handshake.receiver, self.bob)
        self.assertEqual(handshake.receiver_wallet_address, self.bob_wallet)
        self.assertEqual(handshake.matched_at, self.now)
        self.assertEqual(result.initiator_name, 'Alice Doe')
        self.assertEqual(result.unsigned_txn.sender, self.bob_wallet)
        self.assertEqual(result.unsigned_txn.amount, handshake.mint_fee_micro)

    def test_claim_by_email_identifier(self):
        contact = Contact.objects.create(owner=self.alice, first_name='Carol', email=' CAROL@example.com ')
        handshake = self.coordinator.initiate(self.alice, contact.id, self.alice_wallet).handshake
        self.coordinator.claim(handshake.id, self.carol, self.carol_wallet)
        handshake.refresh_from_db()
        self.assertEqual(handshake.receiver, self.carol)

    def test_unknown_handshake(self):
        with self.assertRaises(NotFound):
            self.coordinator.claim('00000000-0000-0000-0000-000000000000', self.bob, self.bob_wallet)
        with self.assertRaises(NotFound):
            self.coordinator.claim('garbage', self.bob, self.bob_wallet)

    def test_non_addressee_is_not_authorized(self):
        """Scenario C"""
        handshake = self.initiate()
        with self.assertRaises(NotAuthorized) as ctx:
            self.coordinator.claim(handshake.id, self.carol, self.carol_wallet)
        self.assertEqual(ctx.exception.status, Handshake.STATUS_PENDING)

        handshake.refresh_from_db()
        self.assertEqual(handshake.status, Handshake.STATUS_PENDING)
        self.assertIsNone(handshake.receiver)

    def test_identity_match_ignores_case_and_at_sign(self):
        TelegramLink.objects.filter(user=self.bob).update(telegram_username='@BOBTG')
        handshake = self.initiate()
        self.coordinator.claim(handshake.id, self.bob, self.bob_wallet)
        handshake.refresh_from_db()
        self.assertEqual(handshake.status, Handshake.STATUS_MATCHED)

    def test_self_claim_rejected(self):
        own = Contact.objects.create(owner=self.alice, first_name='Me', email='alice@example.com')
        handshake = self.coordinator.initiate(self.alice, own.id, self.alice_wallet).handshake
        with self.assertRaises(SelfClaim):
            self.coordinator.claim(handshake.id, self.alice, self.alice_wallet)
        handshake.refresh_from_db()
        self.assertEqual(handshake.status, Handshake.STATUS_PENDING)

    def test_invalid_receiver_wallet(self):
        handshake = self.initiate()
        with self.assertRaises(InvalidWalletAddress):
            self.coordinator.claim(handshake.id, self.bob, 'nope')
        handshake.refresh_from_db()
        self.assertEqual(handshake.status, Handshake.STATUS_PENDING)

    def test_already_matched_reports_status(self):
        handshake = self.matched()
        with self.assertRaises(InvalidState) as ctx:
            self.coordinator.claim(handshake.id, self.bob, self.bob_wallet)
        self.assertEqual(ctx.exception.status, Handshake.STATUS_MATCHED)

    def test_expired_at_claim_time_flips_status(self):
        handshake = self.initiate()
        self.advance(hours=48, seconds=1)
        with self.assertRaises(Expired) as ctx:
            self.coordinator.claim(handshake.id, self.bob, self.bob_wallet)
        self.assertEqual(ctx.exception.status, Handshake.STATUS_EXPIRED)

        handshake.refresh_from_db()
        self.assertEqual(handshake.status, Handshake.STATUS_EXPIRED)
        self.assertIsNone(handshake.receiver)

    def test_concurrent_claim_has_single_winner(self):
        handshake = self.initiate()
        dave = User.objects.create_user(username='dave', email='dave@example.com', password='pw')

        def competing_claim(sender, amount, handshake_id):
            Handshake.objects.filter(pk=handshake.pk).update(
                receiver=dave,
                receiver_wallet_address=self.carol_wallet,
                status=Handshake.STATUS_MATCHED,
            )

        self.gateway.on_build = competing_claim
        with self.assertRaises(InvalidState) as ctx:
            self.coordinator.claim(handshake.id, self.bob, self.bob_wallet)
        self.assertEqual(ctx.exception.status, Handshake.STATUS_MATCHED)

        handshake.refresh_from_db()
        self.assertEqual(handshake.receiver, dave)


class ConfirmPaymentTest(HandshakeTestCase):

    def test_records_each_side(self):
        handshake = self.matched()

        first = self.pay(handshake, 'initiator')
        self.assertEqual(first.side, 'initiator')
        self.assertFalse(first.both_paid)
        self.assertEqual(first.status, Handshake.STATUS_MATCHED)

        second = self.pay(handshake, 'receiver')
        self.assertTrue(second.both_paid)

        handshake.refresh_from_db()
        self.assertEqual(handshake.initiator_tx_signature, first.txid)
        self.assertEqual(handshake.receiver_tx_signature, second.txid)
        self.assertEqual(handshake.initiator_minted_at, self.now)
        self.assertEqual(handshake.receiver_minted_at, self.now)

    def test_initiator_can_pay_before_claim(self):
        handshake = self.initiate()
        result = self.pay(handshake, 'initiator')
        self.assertFalse(result.both_paid)
        self.assertEqual(result.status, Handshake.STATUS_PENDING)

    def test_retry_does_not_rebroadcast(self):
        handshake = self.matched()
        first = self.pay(handshake, 'initiator')
        again = self.pay(handshake, 'initiator')

        self.assertEqual(again.txid, first.txid)
        self.assertEqual(self.gateway.submitted, [first.txid])

    def test_bad_side(self):
        handshake = self.matched()
        with self.assertRaises(ValueError):
            self.coordinator.confirm_payment(handshake.id, 'xx', 'both')

    def test_unknown_handshake(self):
        with self.assertRaises(NotFound):
            self.coordinator.confirm_payment('00000000-0000-0000-0000-000000000000', 'xx', 'initiator')

    def assertRejectedUnchanged(self, handshake, signed, side='initiator'):
        with self.assertRaises(PaymentFailed) as ctx:
            self.coordinator.confirm_payment(handshake.id, signed, side)
        self.assertTrue(ctx.exception.retryable)
        handshake.refresh_from_db()
        self.assertIsNone(handshake.initiator_tx_signature)
        self.assertIsNone(handshake.initiator_minted_at)
        self.assertEqual(self.gateway.submitted, [])

    def test_garbage_transaction(self):
        self.assertRejectedUnchanged(self.matched(), 'not base64 msgpack')

    def test_payment_to_wrong_address(self):
        handshake = self.matched()
        signed = signed_payment(self.alice_key, self.carol_wallet, handshake.mint_fee_micro, handshake.id)
        self.assertRejectedUnchanged(handshake, signed)

    def test_underpayment(self):
        handshake = self.matched()
        signed = signed_payment(self.alice_key, self.gateway.treasury_address, handshake.mint_fee_micro - 1, handshake.id)
        self.assertRejectedUnchanged(handshake, signed)

    def test_payment_for_another_handshake(self):
        handshake = self.matched()
        signed = signed_payment(self.alice_key, self.gateway.treasury_address, handshake.mint_fee_micro, note=b'convenu:handshake:other')
        self.assertRejectedUnchanged(handshake, signed)

    def test_payment_from_wrong_wallet(self):
        handshake = self.matched()
        signed = signed_payment(self.carol_key, self.gateway.treasury_address, handshake.mint_fee_micro, handshake.id)
        self.assertRejectedUnchanged(handshake, signed)

    def test_ledger_failures_become_payment_failed(self):
        handshake = self.matched()
        for error in (ConfirmationTimeout('no finality'), TransactionRejected('txn dead'), LedgerError('down')):
            self.gateway.submit_error = error
            with self.assertRaises(PaymentFailed):
                self.pay(handshake, 'initiator')
        handshake.refresh_from_db()
        self.assertIsNone(handshake.initiator_tx_signature)

    def test_both_paid_enqueues_mint(self):
        handshake = self.matched()
        self.pay(handshake, 'initiator')
        with patch('handshakes.tasks.mint_handshake.delay') as delay:
            with self.captureOnCommitCallbacks(execute=True):
                self.pay(handshake, 'receiver')
        delay.assert_called_once_with(str(handshake.id))

    @override_settings(HANDSHAKE_AUTO_MINT=False)
    def test_auto_mint_can_be_disabled(self):
        handshake = self.matched()
        self.pay(handshake, 'initiator')
        with patch('handshakes.tasks.mint_handshake.delay') as delay:
            with self.captureOnCommitCallbacks(execute=True):
                self.pay(handshake, 'receiver')
        delay.assert_not_called()


class MintTest(HandshakeTestCase):

    def test_full_happy_path(self):
        """Scenario A"""
        handshake = self.initiate()
        self.assertEqual(handshake.status, Handshake.STATUS_PENDING)

        claim = self.coordinator.claim(handshake.id, self.bob, self.bob_wallet)
        self.assertEqual(claim.handshake.status, Handshake.STATUS_MATCHED)

        self.pay(handshake, 'initiator')
        self.assertTrue(self.pay(handshake, 'receiver').both_paid)

        with self.captureOnCommitCallbacks(execute=True):
            outcome = self.coordinator.mint(handshake.id)

        self.assertEqual(outcome.handshake.status, Handshake.STATUS_MINTED)
        self.assertEqual(outcome.points_awarded, 10)
        self.assertNotEqual(outcome.initiator_token_ref, outcome.receiver_token_ref)
        self.assertEqual(outcome.handshake.mint_progress, Handshake.MINT_PROGRESS_BOTH)
        self.assertIsNone(outcome.handshake.mint_locked_until)
        self.assertEqual(
            [(side, wallet) for side, wallet, _ in self.gateway.minted],
            [('initiator', self.alice_wallet), ('receiver', self.bob_wallet)],
        )

        entries = PointsLedgerEntry.objects.filter(handshake_id=handshake.id)
        self.assertEqual(entries.count(), 2)
        self.assertEqual({e.user_id for e in entries}, {self.alice.id, self.bob.id})
        self.assertTrue(all(e.points == 10 and e.reason == 'Handshake: PyCon' for e in entries))

        self.assertEqual(TrustScore.objects.get(user=self.alice).total_handshakes, 1)
        self.assertEqual(TrustScore.objects.get(user=self.bob).total_handshakes, 1)

    def test_reason_without_event(self):
        self.contact_bob.event_title = ''
        self.contact_bob.save()
        handshake = self.paid()
        self.coordinator.mint(handshake.id)
        reasons = set(PointsLedgerEntry.objects.values_list('reason', flat=True))
        self.assertEqual(reasons, {'Handshake: Meeting'})

    def test_pending_cannot_mint(self):
        """Scenario D"""
        handshake = self.initiate()
        with self.assertRaises(InvalidState) as ctx:
            self.coordinator.mint(handshake.id)
        self.assertEqual(ctx.exception.status, Handshake.STATUS_PENDING)
        self.assertEqual(self.gateway.minted, [])

    def test_unknown_handshake(self):
        with self.assertRaises(NotFound):
            self.coordinator.mint('00000000-0000-0000-0000-000000000000')

    def test_single_payment_is_incomplete(self):
        handshake = self.matched()
        self.pay(handshake, 'receiver')
        before = Handshake.objects.filter(pk=handshake.pk).values().get()

        with self.assertRaises(PaymentIncomplete) as ctx:
            self.coordinator.mint(handshake.id)
        self.assertEqual(ctx.exception.paid_sides, ['receiver'])

        self.assertEqual(Handshake.objects.filter(pk=handshake.pk).values().get(), before)
        self.assertEqual(self.gateway.minted, [])
        self.assertFalse(PointsLedgerEntry.objects.exists())

    def test_partial_failure_persists_minted_side(self):
        handshake = self.paid()
        self.gateway.mint_errors['receiver'] = TransactionRejected('pool error')

        with self.assertRaises(MintPartialFailure) as ctx:
            self.coordinator.mint(handshake.id)
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.minted_sides, ['initiator'])

        handshake.refresh_from_db()
        self.assertEqual(handshake.status, Handshake.STATUS_MATCHED)
        self.assertEqual(handshake.mint_progress, Handshake.MINT_PROGRESS_INITIATOR_ONLY)
        self.assertIsNone(handshake.mint_locked_until)
        initiator_ref = handshake.initiator_token_ref

        # Retry mints only the missing side
        self.gateway.mint_errors.clear()
        outcome = self.coordinator.mint(handshake.id)
        self.assertEqual(outcome.initiator_token_ref, initiator_ref)
        self.assertEqual([side for side, _, _ in self.gateway.minted], ['initiator', 'receiver'])
        self.assertEqual(outcome.handshake.status, Handshake.STATUS_MINTED)

    def test_nothing_minted_is_plain_failure(self):
        handshake = self.paid()
        self.gateway.mint_errors['initiator'] = ConfirmationTimeout('slow')
        with self.assertRaises(MintFailed) as ctx:
            self.coordinator.mint(handshake.id)
        self.assertNotIsInstance(ctx.exception, MintPartialFailure)
        handshake.refresh_from_db()
        self.assertEqual(handshake.mint_progress, Handshake.MINT_PROGRESS_NONE)

    def test_unexpected_error_releases_lease(self):
        handshake = self.paid()
        self.gateway.mint_errors['initiator'] = RuntimeError('HANDSHAKE_MINTER_MNEMONIC is required')
        with self.assertRaises(RuntimeError):
            self.coordinator.mint(handshake.id)
        handshake.refresh_from_db()
        self.assertIsNone(handshake.mint_locked_until)

        self.gateway.mint_errors.clear()
        self.assertEqual(self.coordinator.mint(handshake.id).handshake.status, Handshake.STATUS_MINTED)

    def test_held_lease_blocks_concurrent_mint(self):
        handshake = self.paid()
        Handshake.objects.filter(pk=handshake.pk).update(mint_locked_until=self.now + timedelta(minutes=1))
        with self.assertRaises(InvalidState) as ctx:
            self.coordinator.mint(handshake.id)
        self.assertEqual(ctx.exception.message, 'mint in progress')
        self.assertEqual(self.gateway.minted, [])

    def test_stale_lease_is_taken_over(self):
        handshake = self.paid()
        Handshake.objects.filter(pk=handshake.pk).update(mint_locked_until=self.now - timedelta(seconds=1))
        outcome = self.coordinator.mint(handshake.id)
        self.assertEqual(outcome.handshake.status, Handshake.STATUS_MINTED)

    def test_second_mint_is_rejected(self):
        handshake = self.paid()
        self.coordinator.mint(handshake.id)
        with self.assertRaises(InvalidState) as ctx:
            self.coordinator.mint(handshake.id)
        self.assertEqual(ctx.exception.status, Handshake.STATUS_MINTED)
        self.assertEqual(len(self.gateway.minted), 2)
        self.assertEqual(PointsLedgerEntry.objects.count(), 2)

    def test_trust_count_accumulates(self):
        first = self.paid()
        with self.captureOnCommitCallbacks(execute=True):
            self.coordinator.mint(first.id)

        other = Contact.objects.create(owner=self.alice, first_name='Carol', email='carol@example.com')
        second = self.coordinator.initiate(self.alice, other.id, self.alice_wallet).handshake
        self.coordinator.claim(second.id, self.carol, self.carol_wallet)
        self.pay(second, 'initiator')
        self.coordinator.confirm_payment(
            second.id,
            signed_payment(self.carol_key, self.gateway.treasury_address, second.mint_fee_micro, second.id),
            'receiver',
        )
        with self.captureOnCommitCallbacks(execute=True):
            self.coordinator.mint(second.id)

        self.assertEqual(TrustScore.objects.get(user=self.alice).total_handshakes, 2)
        self.assertEqual(TrustScore.objects.get(user=self.bob).total_handshakes, 1)
        self.assertEqual(TrustScore.objects.get(user=self.carol).total_handshakes, 1)


class TerminalStateTest(HandshakeTestCase):

    def test_minted_is_sticky(self):
        handshake = self.paid()
        self.coordinator.mint(handshake.id)

        with self.assertRaises(InvalidState):
            self.coordinator.claim(handshake.id, self.bob, self.bob_wallet)
        with self.assertRaises(InvalidState):
            self.coordinator.mint(handshake.id)
        with self.assertRaises(InvalidState):
            self.coordinator.refresh_payment_transaction(handshake.id, self.alice)
        self.advance(days=30)
        self.assertEqual(self.coordinator.expire_stale(), 0)
        self.pay(handshake, 'initiator')

        handshake.refresh_from_db()
        self.assertEqual(handshake.status, Handshake.STATUS_MINTED)

    def test_expired_is_sticky(self):
        handshake = self.initiate()
        self.advance(hours=49)
        self.assertEqual(self.coordinator.expire_stale(), 1)

        with self.assertRaises(InvalidState):
            self.coordinator.claim(handshake.id, self.bob, self.bob_wallet)
        with self.assertRaises(InvalidState):
            self.coordinator.mint(handshake.id)

        handshake.refresh_from_db()
        self.assertEqual(handshake.status, Handshake.STATUS_EXPIRED)


class QueryTest(HandshakeTestCase):

    def test_pending_for_addressee(self):
        handshake = self.initiate()
        pending = self.coordinator.list_pending_for(self.bob)
        self.assertEqual([h.id for h in pending], [handshake.id])
        self.assertEqual(pending[0].initiator_name, 'Alice Doe')

    def test_pending_newest_first(self):
        older = self.initiate()
        other = Contact.objects.create(owner=self.carol, first_name='Bob', email='bob@example.com')
        self.advance(minutes=5)
        newer = self.coordinator.initiate(self.carol, other.id, self.carol_wallet).handshake
        self.assertEqual([h.id for h in self.coordinator.list_pending_for(self.bob)], [newer.id, older.id])

    def test_pending_excludes_others_and_initiator(self):
        self.initiate()
        self.assertEqual(self.coordinator.list_pending_for(self.carol), [])
        self.assertEqual(self.coordinator.list_pending_for(self.alice), [])

        own = Contact.objects.create(owner=self.alice, first_name='Me', email='alice@example.com')
        self.coordinator.initiate(self.alice, own.id, self.alice_wallet)
        self.assertEqual(self.coordinator.list_pending_for(self.alice), [])

    def test_pending_excludes_matched_and_overdue(self):
        self.matched()
        self.assertEqual(self.coordinator.list_pending_for(self.bob), [])

        other = Contact.objects.create(owner=self.carol, first_name='Bob', email='bob@example.com')
        self.coordinator.initiate(self.carol, other.id, self.carol_wallet)
        self.advance(hours=49)
        self.assertEqual(self.coordinator.list_pending_for(self.bob), [])

    def test_account_without_identifiers(self):
        self.initiate()
        ghost = User.objects.create_user(username='ghost', password='pw')
        self.assertEqual(self.coordinator.list_pending_for(ghost), [])

    def test_get_for_party(self):
        handshake = self.matched()
        self.assertEqual(self.coordinator.get_for_party(handshake.id, self.alice).id, handshake.id)
        self.assertEqual(self.coordinator.get_for_party(handshake.id, self.bob).id, handshake.id)
        with self.assertRaises(NotFound):
            self.coordinator.get_for_party(handshake.id, self.carol)

    def test_list_for_user(self):
        matched = self.matched()
        other = Contact.objects.create(owner=self.bob, first_name='Carol', email='carol@example.com')
        initiated = self.coordinator.initiate(self.bob, other.id, self.bob_wallet).handshake

        self.assertEqual({h.id for h in self.coordinator.list_for_user(self.bob)}, {matched.id, initiated.id})
        self.assertEqual([h.id for h in self.coordinator.list_for_user(self.bob, status='pending')], [initiated.id])
        self.assertEqual([h.id for h in self.coordinator.list_for_user(self.alice)], [matched.id])


class RefreshAndSweepTest(HandshakeTestCase):

    def test_refresh_rebuilds_callers_side(self):
        handshake = self.matched()
        self.gateway.built.clear()

        self.coordinator.refresh_payment_transaction(handshake.id, self.bob)
        self.coordinator.refresh_payment_transaction(handshake.id, self.alice)
        self.assertEqual(
            [sender for sender, _, _ in self.gateway.built],
            [self.bob_wallet, self.alice_wallet],
        )

    def test_refresh_rejected_after_payment(self):
        handshake = self.matched()
        self.pay(handshake, 'initiator')
        with self.assertRaises(InvalidState) as ctx:
            self.coordinator.refresh_payment_transaction(handshake.id, self.alice)
        self.assertEqual(ctx.exception.paid_sides, ['initiator'])

    def test_refresh_requires_party(self):
        handshake = self.initiate()
        with self.assertRaises(NotAuthorized):
            self.coordinator.refresh_payment_transaction(handshake.id, self.bob)

    def test_refresh_on_overdue_pending_expires(self):
        handshake = self.initiate()
        self.advance(hours=49)
        with self.assertRaises(Expired):
            self.coordinator.refresh_payment_transaction(handshake.id, self.alice)

    def test_expire_stale_only_touches_overdue_pending(self):
        overdue = self.initiate()
        matched_contact = Contact.objects.create(owner=self.alice, first_name='Carol', email='carol@example.com')
        matched = self.coordinator.initiate(self.alice, matched_contact.id, self.alice_wallet).handshake
        self.coordinator.claim(matched.id, self.carol, self.carol_wallet)

        self.advance(hours=47)
        fresh_contact = Contact.objects.create(owner=self.bob, first_name='Alice', email='alice@example.com')
        fresh = self.coordinator.initiate(self.bob, fresh_contact.id, self.bob_wallet).handshake
        self.advance(hours=2)

        self.assertEqual(self.coordinator.expire_stale(), 1)
        statuses = dict(Handshake.objects.values_list('id', 'status'))
        self.assertEqual(statuses[overdue.id], Handshake.STATUS_EXPIRED)
        self.assertEqual(statuses[matched.id], Handshake.STATUS_MATCHED)
        self.assertEqual(statuses[fresh.id], Handshake.STATUS_PENDING)


class UnreachableAlgodClient:
    """Algod client whose node refuses every connection."""

    def _refuse(self, *args, **kwargs):
        raise URLError(ConnectionRefusedError(111, 'Connection refused'))

    suggested_params = send_transaction = status = pending_transaction_info = status_after_block = _refuse


class UnreachableLedgerTest(HandshakeTestCase):

    def setUp(self):
        super().setUp()
        minter_key, _ = account.generate_account()
        self.offline_gateway = AlgorandLedgerGateway(
            client=UnreachableAlgodClient(),
            treasury_address=self.gateway.treasury_address,
            minter_mnemonic=mnemonic.from_private_key(minter_key),
        )

    def use_offline_gateway(self):
        self.coordinator._gateway = self.offline_gateway

    def test_initiate_reports_ledger_unavailable(self):
        self.use_offline_gateway()
        with self.assertRaises(LedgerUnavailable) as ctx:
            self.initiate()
        self.assertTrue(ctx.exception.retryable)
        self.assertFalse(Handshake.objects.exists())

    def test_claim_reports_ledger_unavailable(self):
        handshake = self.initiate()
        self.use_offline_gateway()
        with self.assertRaises(LedgerUnavailable):
            self.coordinator.claim(handshake.id, self.bob, self.bob_wallet)
        handshake.refresh_from_db()
        self.assertEqual(handshake.status, Handshake.STATUS_PENDING)

    def test_confirm_reports_payment_failed(self):
        handshake = self.matched()
        self.use_offline_gateway()
        with self.assertRaises(PaymentFailed) as ctx:
            self.pay(handshake, 'initiator')
        self.assertTrue(ctx.exception.retryable)
        handshake.refresh_from_db()
        self.assertIsNone(handshake.initiator_tx_signature)

    def test_mint_reports_failure_and_releases_lease(self):
        handshake = self.paid()
        self.use_offline_gateway()
        with self.assertRaises(MintFailed) as ctx:
            self.coordinator.mint(handshake.id)
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.paid_sides, ['initiator', 'receiver'])

        handshake.refresh_from_db()
        self.assertIsNone(handshake.mint_locked_until)
        self.assertEqual(handshake.status, Handshake.STATUS_MATCHED)

        # Once the node is back, the next attempt is not blocked by a stale lease
        self.coordinator._gateway = self.gateway
        self.assertEqual(self.coordinator.mint(handshake.id).handshake.status, Handshake.STATUS_MINTED)
