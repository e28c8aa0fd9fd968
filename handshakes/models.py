import uuid

from django.conf import settings
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from users.identity import normalize_identifier


class Handshake(models.Model):
    """Two-party, fee-gated proof of meeting.

    Both parties pay a fee to the protocol treasury; once both payments are
    final, a non-transferable token is minted to each party's wallet.
    Records are never deleted.
    """

    STATUS_PENDING = 'pending'
    STATUS_MATCHED = 'matched'
    STATUS_MINTED = 'minted'
    STATUS_EXPIRED = 'expired'

    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_MATCHED, 'Matched'),
        (STATUS_MINTED, 'Minted'),
        (STATUS_EXPIRED, 'Expired'),
    ]

    ACTIVE_STATUSES = (STATUS_PENDING, STATUS_MATCHED)
    TERMINAL_STATUSES = (STATUS_MINTED, STATUS_EXPIRED)

    SIDE_INITIATOR = 'initiator'
    SIDE_RECEIVER = 'receiver'
    SIDES = (SIDE_INITIATOR, SIDE_RECEIVER)

    MINT_PROGRESS_NONE = 'none'
    MINT_PROGRESS_INITIATOR_ONLY = 'initiator_only'
    MINT_PROGRESS_RECEIVER_ONLY = 'receiver_only'
    MINT_PROGRESS_BOTH = 'both'

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Parties
    initiator = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='initiated_handshakes'
    )
    receiver = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='received_handshakes',
        null=True,
        blank=True,
        help_text='Set when the addressed counterparty claims the handshake'
    )
    receiver_identifier = models.CharField(
        max_length=255,
        help_text='Telegram handle or email copied from the contact at creation'
    )
    receiver_identifier_key = models.CharField(
        max_length=255,
        db_index=True,
        editable=False,
        help_text='Normalized receiver identifier used for matching'
    )

    # Context (display only)
    contact = models.ForeignKey(
        'contacts.Contact',
        on_delete=models.SET_NULL,
        related_name='handshakes',
        null=True,
        blank=True
    )
    event_id = models.CharField(max_length=64, blank=True)
    event_title = models.CharField(max_length=255, blank=True)
    event_datetime = models.DateTimeField(null=True, blank=True)

    # Payments
    initiator_wallet_address = models.CharField(max_length=58)
    receiver_wallet_address = models.CharField(max_length=58, null=True, blank=True)
    initiator_tx_signature = models.CharField(max_length=64, null=True, blank=True, unique=True)
    receiver_tx_signature = models.CharField(max_length=64, null=True, blank=True, unique=True)
    mint_fee_micro = models.BigIntegerField(help_text='Fee per side in microAlgos, captured at creation')

    # Outcome
    initiator_minted_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the initiator's fee payment was confirmed"
    )
    receiver_minted_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the receiver's fee payment was confirmed"
    )
    initiator_token_ref = models.CharField(max_length=64, null=True, blank=True)
    receiver_token_ref = models.CharField(max_length=64, null=True, blank=True)
    points_awarded = models.PositiveIntegerField(default=0)

    # Lifecycle
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=STATUS_PENDING)
    created_at = models.DateTimeField(default=timezone.now, editable=False)
    updated_at = models.DateTimeField(auto_now=True)
    expires_at = models.DateTimeField()
    matched_at = models.DateTimeField(null=True, blank=True)
    minted_at = models.DateTimeField(null=True, blank=True)
    mint_locked_until = models.DateTimeField(
        null=True,
        blank=True,
        help_text='Lease held by an in-flight mint; prevents concurrent double minting'
    )

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status', 'receiver_identifier_key'], name='handshake_status_ident_idx'),
            models.Index(fields=['initiator', 'status'], name='handshake_initiator_idx'),
            models.Index(fields=['receiver', 'status'], name='handshake_receiver_idx'),
            models.Index(fields=['status', 'expires_at'], name='handshake_expiry_idx'),
        ]
        constraints = [
            # One live handshake per (initiator, contact)
            models.UniqueConstraint(
                fields=['initiator', 'contact'],
                condition=Q(status__in=['pending', 'matched']),
                name='unique_active_handshake_per_contact'
            ),
            models.CheckConstraint(
                condition=(
                    Q(status__in=['pending', 'expired'], receiver__isnull=True)
                    | Q(status__in=['matched', 'minted'], receiver__isnull=False)
                ),
                name='handshake_receiver_matches_status'
            ),
            models.CheckConstraint(
                condition=(
                    ~Q(status='minted')
                    | Q(initiator_tx_signature__isnull=False, receiver_tx_signature__isnull=False)
                ),
                name='handshake_minted_requires_payments'
            ),
            models.CheckConstraint(
                condition=~Q(receiver=F('initiator')),
                name='handshake_distinct_parties'
            ),
        ]

    def __str__(self):
        return f"HANDSHAKE-{self.id}: {self.initiator} -> {self.receiver_identifier} ({self.status})"

    def save(self, *args, **kwargs):
        self.receiver_identifier_key = normalize_identifier(self.receiver_identifier)
        update_fields = kwargs.get('update_fields')
        if update_fields is not None and 'receiver_identifier' in update_fields:
            kwargs['update_fields'] = set(update_fields) | {'receiver_identifier_key'}
        super().save(*args, **kwargs)

    # --- derived state -------------------------------------------------

    @property
    def initiator_paid(self):
        return bool(self.initiator_tx_signature)

    @property
    def receiver_paid(self):
        return bool(self.receiver_tx_signature)

    @property
    def both_paid(self):
        return self.initiator_paid and self.receiver_paid

    def paid_sides(self):
        sides = []
        if self.initiator_paid:
            sides.append(self.SIDE_INITIATOR)
        if self.receiver_paid:
            sides.append(self.SIDE_RECEIVER)
        return sides

    def minted_sides(self):
        sides = []
        if self.initiator_token_ref:
            sides.append(self.SIDE_INITIATOR)
        if self.receiver_token_ref:
            sides.append(self.SIDE_RECEIVER)
        return sides

    @property
    def mint_progress(self):
        minted = self.minted_sides()
        if len(minted) == 2:
            return self.MINT_PROGRESS_BOTH
        if minted == [self.SIDE_INITIATOR]:
            return self.MINT_PROGRESS_INITIATOR_ONLY
        if minted == [self.SIDE_RECEIVER]:
            return self.MINT_PROGRESS_RECEIVER_ONLY
        return self.MINT_PROGRESS_NONE

    def is_past_expiry(self, now=None):
        return self.expires_at <= (now or timezone.now())

    def side_for_user(self, user):
        if user is None:
            return None
        if self.initiator_id == user.pk:
            return self.SIDE_INITIATOR
        if self.receiver_id is not None and self.receiver_id == user.pk:
            return self.SIDE_RECEIVER
        return None

    def wallet_for(self, side):
        if side == self.SIDE_INITIATOR:
            return self.initiator_wallet_address
        return self.receiver_wallet_address

    def signature_for(self, side):
        if side == self.SIDE_INITIATOR:
            return self.initiator_tx_signature
        return self.receiver_tx_signature

    @property
    def event_label(self):
        return self.event_title or 'Meeting'
