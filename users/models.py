from django.contrib.auth.models import AbstractUser
from django.db import models
from django.conf import settings
from django.utils import timezone
import logging

logger = logging.getLogger(__name__)


class SoftDeleteManager(models.Manager):
    """Manager that filters out soft-deleted objects by default"""

    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)

    def with_deleted(self):
        """Return queryset including soft-deleted objects"""
        return super().get_queryset()


class SoftDeleteModel(models.Model):
    """Base model with soft delete functionality"""

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    deleted_at = models.DateTimeField(null=True, blank=True, help_text="Soft delete timestamp")

    objects = SoftDeleteManager()
    all_objects = models.Manager()  # Access to all objects including deleted

    class Meta:
        abstract = True

    def soft_delete(self):
        """Soft delete the object"""
        self.deleted_at = timezone.now()
        self.save(update_fields=['deleted_at'])

    def restore(self):
        """Restore a soft-deleted object"""
        self.deleted_at = None
        self.save(update_fields=['deleted_at'])

    @property
    def is_deleted(self):
        """Check if object is soft-deleted"""
        return self.deleted_at is not None


class User(AbstractUser, SoftDeleteModel):

    def __str__(self):
        return self.username or self.email or str(self.pk)

    @property
    def telegram_username(self):
        link = getattr(self, 'telegram_link', None)
        return link.telegram_username if link else None


class TelegramLink(models.Model):
    """Telegram account linked to a user through the bot's /link flow"""

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='telegram_link',
    )
    telegram_user_id = models.BigIntegerField(unique=True)
    telegram_username = models.CharField(
        max_length=64,
        blank=True,
        null=True,
        help_text="Handle without the leading @ as reported by Telegram"
    )
    linked_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=['telegram_username'], name='users_telegram_username_idx'),
        ]

    def __str__(self):
        return f"@{self.telegram_username or self.telegram_user_id} -> {self.user}"
