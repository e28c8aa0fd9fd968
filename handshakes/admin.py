from django.contrib import admin, messages

from config.admin_mixins import EnhancedAdminMixin
from .coordinator import HandshakeCoordinator
from .exceptions import HandshakeError
from .models import Handshake


@admin.register(Handshake)
class HandshakeAdmin(EnhancedAdminMixin, admin.ModelAdmin):
    list_display = (
        'id', 'initiator', 'receiver_identifier', 'receiver', 'colored_status',
        'payments_display', 'mint_progress_display', 'points_awarded', 'created_display', 'expires_at'
    )
    list_filter = ('status', 'created_at', 'expires_at')
    search_fields = (
        'id', 'receiver_identifier', 'initiator__username', 'initiator__email',
        'receiver__username', 'initiator_tx_signature', 'receiver_tx_signature'
    )
    raw_id_fields = ('initiator', 'receiver', 'contact')
    date_hierarchy = 'created_at'
    actions = ['retry_mint']

    # Records are state-machine owned; the admin only observes them
    readonly_fields = [field.name for field in Handshake._meta.fields]

    fieldsets = (
        ('Parties', {
            'fields': ('id', 'initiator', 'receiver', 'receiver_identifier', 'receiver_identifier_key', 'contact')
        }),
        ('Event', {
            'fields': ('event_id', 'event_title', 'event_datetime')
        }),
        ('Payments', {
            'fields': (
                'mint_fee_micro', 'initiator_wallet_address', 'receiver_wallet_address',
                'initiator_tx_signature', 'initiator_minted_at', 'receiver_tx_signature', 'receiver_minted_at'
            )
        }),
        ('Outcome', {
            'fields': ('initiator_token_ref', 'receiver_token_ref', 'points_awarded')
        }),
        ('Lifecycle', {
            'fields': ('status', 'created_at', 'updated_at', 'expires_at', 'matched_at', 'minted_at', 'mint_locked_until')
        }),
    )

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def payments_display(self, obj):
        paid = obj.paid_sides()
        return ', '.join(paid) if paid else '-'
    payments_display.short_description = 'Paid'

    def mint_progress_display(self, obj):
        return obj.mint_progress
    mint_progress_display.short_description = 'Minted'

    def retry_mint(self, request, queryset):
        coordinator = HandshakeCoordinator()
        minted = 0
        for handshake in queryset.filter(status=Handshake.STATUS_MATCHED):
            try:
                coordinator.mint(handshake.id)
                minted += 1
            except HandshakeError as exc:
                self.message_user(request, f"{handshake.id}: {exc.message}", level=messages.WARNING)
        self.message_user(request, f"Minted {minted} handshake(s)")
    retry_mint.short_description = "Retry mint for selected matched handshakes"
