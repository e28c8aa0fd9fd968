"""
Identity resolution for contact identifiers.

A contact identifier is a loosely typed string (a Telegram handle such as
"@alice" or an email address). The same normalization is applied to stored
identifiers and to the identifiers resolved for an account, so matching is
case-insensitive and tolerant of a single leading "@".
"""

from __future__ import annotations

import logging
from typing import Optional, Set

from django.contrib.auth import get_user_model

from .models import TelegramLink

logger = logging.getLogger(__name__)

FALLBACK_DISPLAY_NAME = 'Someone'


def normalize_identifier(value: Optional[str]) -> str:
    """Canonical form used for every identifier comparison."""
    key = (value or '').strip().lower()
    if key.startswith('@'):
        key = key[1:]
    return key


class IdentityResolver:
    """Maps accounts to their contactable identifiers and back."""

    def identifiers_for(self, user) -> Set[str]:
        identifiers = set()
        link = TelegramLink.objects.filter(user=user).first()
        if link and link.telegram_username:
            identifiers.add(normalize_identifier(link.telegram_username))
        if user.email:
            identifiers.add(normalize_identifier(user.email))
        identifiers.discard('')
        return identifiers

    def find_account(self, identifier: Optional[str]):
        """Return the user owning `identifier`, or None.

        Telegram handles take precedence over emails, as they do when a
        contact's identifier is chosen.
        """
        key = normalize_identifier(identifier)
        if not key:
            return None

        link = (
            TelegramLink.objects.select_related('user')
            .filter(telegram_username__iexact=key, user__deleted_at__isnull=True)
            .first()
        )
        if link:
            return link.user

        User = get_user_model()
        return (
            User.objects.filter(email__iexact=key, deleted_at__isnull=True)
            .order_by('id')
            .first()
        )

    def matches(self, user, identifier: Optional[str]) -> bool:
        key = normalize_identifier(identifier)
        return bool(key) and key in self.identifiers_for(user)

    def display_name(self, user) -> str:
        if user is None:
            return FALLBACK_DISPLAY_NAME
        full_name = (user.get_full_name() or '').strip()
        if full_name:
            return full_name
        if user.email:
            return user.email.split('@')[0]
        return user.username or FALLBACK_DISPLAY_NAME
