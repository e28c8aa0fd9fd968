from datetime import timedelta

from django.db import IntegrityError, transaction
from django.test import TestCase
from django.utils import timezone

from achievements.models import PointsLedgerEntry, TrustScore
from handshakes.models import Handshake
from handshakes.signals import handshake_minted
from users.models import User


class HandshakePointsTest(TestCase):

    def setUp(self):
        self.alice = User.objects.create_user(username='alice', email='alice@example.com', password='pw')
        self.bob = User.objects.create_user(username='bob', email='bob@example.com', password='pw')
        self.handshake = Handshake.objects.create(
            initiator=self.alice,
            receiver_identifier='bob@example.com',
            initiator_wallet_address='A' * 58,
            mint_fee_micro=10_000,
            expires_at=timezone.now() + timedelta(hours=48),
        )

    def test_one_entry_per_user_and_handshake(self):
        PointsLedgerEntry.objects.create(user=self.alice, handshake=self.handshake, points=10, reason='Handshake: Meeting')
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                PointsLedgerEntry.objects.create(user=self.alice, handshake=self.handshake, points=10, reason='again')
        PointsLedgerEntry.objects.create(user=self.bob, handshake=self.handshake, points=10, reason='Handshake: Meeting')
        self.assertEqual(self.handshake.points_entries.count(), 2)

    def test_minted_signal_updates_trust_scores(self):
        handshake_minted.send(
            sender=Handshake,
            handshake=self.handshake,
            minted_counts={self.alice.id: 3, self.bob.id: 1},
        )
        self.assertEqual(TrustScore.objects.get(user=self.alice).total_handshakes, 3)
        self.assertEqual(TrustScore.objects.get(user=self.bob).total_handshakes, 1)

        handshake_minted.send(sender=Handshake, handshake=self.handshake, minted_counts={self.bob.id: 2})
        self.assertEqual(TrustScore.objects.get(user=self.bob).total_handshakes, 2)
        self.assertEqual(TrustScore.objects.count(), 2)
