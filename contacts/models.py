from django.conf import settings
from django.db import models

from users.models import SoftDeleteModel


class Contact(SoftDeleteModel):
    """Someone the owner met at an event. Handshakes are addressed to contacts."""

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='contacts'
    )
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100, blank=True)
    telegram_handle = models.CharField(
        max_length=64,
        blank=True,
        help_text="Telegram handle, with or without the leading @"
    )
    email = models.EmailField(blank=True)

    # Where the contact was met (display only)
    event_id = models.CharField(max_length=64, blank=True)
    event_title = models.CharField(max_length=255, blank=True)
    date_met = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['owner', 'created_at'], name='contacts_owner_created_idx'),
        ]

    def __str__(self):
        return f"{self.display_name} ({self.owner})"

    @property
    def display_name(self):
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def receiver_identifier(self):
        """Telegram handle if set, falling back to email; empty if neither."""
        handle = (self.telegram_handle or '').strip()
        if handle:
            return handle
        return (self.email or '').strip()
