"""
Points and trust counters earned from minted handshakes
"""
from django.conf import settings
from django.db import models


class PointsLedgerEntry(models.Model):
    """Append-only points award. One row per party per minted handshake."""

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='points_entries'
    )
    handshake = models.ForeignKey(
        'handshakes.Handshake',
        on_delete=models.PROTECT,
        related_name='points_entries'
    )
    points = models.PositiveIntegerField()
    reason = models.CharField(max_length=255)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']
        verbose_name = "Points Entry"
        verbose_name_plural = "Points Ledger"
        constraints = [
            models.UniqueConstraint(fields=['user', 'handshake'], name='unique_points_per_user_handshake'),
        ]
        indexes = [
            models.Index(fields=['user', 'created_at'], name='points_user_created_idx'),
        ]

    def __str__(self):
        return f"{self.user} +{self.points} ({self.reason})"


class TrustScore(models.Model):
    """Per-user handshake tally read by the trust layer"""

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='trust_score'
    )
    total_handshakes = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Trust Score"
        verbose_name_plural = "Trust Scores"

    def __str__(self):
        return f"{self.user}: {self.total_handshakes} handshakes"
