from django.test import TestCase
from django.utils import timezone

from users.identity import IdentityResolver, normalize_identifier
from users.models import TelegramLink, User


class NormalizeIdentifierTest(TestCase):

    def test_normalization(self):
        self.assertEqual(normalize_identifier('  @Alice_TG '), 'alice_tg')
        self.assertEqual(normalize_identifier('Alice@Example.COM'), 'alice@example.com')
        self.assertEqual(normalize_identifier('@@double'), '@double')
        self.assertEqual(normalize_identifier(''), '')
        self.assertEqual(normalize_identifier(None), '')


class IdentityResolverTest(TestCase):

    def setUp(self):
        self.resolver = IdentityResolver()
        self.alice = User.objects.create_user(
            username='alice', email='Alice@Example.com', password='pw', first_name='Alice', last_name='Doe'
        )
        self.bob = User.objects.create_user(username='bob', email='bob@example.com', password='pw')
        TelegramLink.objects.create(user=self.alice, telegram_user_id=1001, telegram_username='AliceTG')

    def test_identifiers_for(self):
        self.assertEqual(self.resolver.identifiers_for(self.alice), {'alicetg', 'alice@example.com'})
        self.assertEqual(self.resolver.identifiers_for(self.bob), {'bob@example.com'})

        ghost = User.objects.create_user(username='ghost', password='pw')
        self.assertEqual(self.resolver.identifiers_for(ghost), set())

    def test_find_account_prefers_telegram(self):
        self.assertEqual(self.resolver.find_account('@alicetg'), self.alice)
        self.assertEqual(self.resolver.find_account('BOB@example.com'), self.bob)
        self.assertIsNone(self.resolver.find_account('@nobody'))
        self.assertIsNone(self.resolver.find_account(''))

        # A handle that looks like someone else's email still resolves by handle first
        TelegramLink.objects.create(user=self.bob, telegram_user_id=1002, telegram_username='alice@example.com')
        self.assertEqual(self.resolver.find_account('alice@example.com'), self.bob)

    def test_find_account_skips_deleted_users(self):
        self.bob.deleted_at = timezone.now()
        self.bob.save()
        self.assertIsNone(self.resolver.find_account('bob@example.com'))

    def test_matches(self):
        self.assertTrue(self.resolver.matches(self.alice, ' @ALICETG'))
        self.assertTrue(self.resolver.matches(self.alice, 'alice@example.com'))
        self.assertFalse(self.resolver.matches(self.bob, '@alicetg'))
        self.assertFalse(self.resolver.matches(self.bob, ''))

    def test_display_name(self):
        self.assertEqual(self.resolver.display_name(self.alice), 'Alice Doe')
        self.assertEqual(self.resolver.display_name(self.bob), 'bob')

        nameless = User.objects.create_user(username='nameless', password='pw')
        self.assertEqual(self.resolver.display_name(nameless), 'nameless')
        self.assertEqual(self.resolver.display_name(None), 'Someone')

    def test_telegram_username_property(self):
        self.assertEqual(self.alice.telegram_username, 'AliceTG')
        self.assertIsNone(self.bob.telegram_username)
