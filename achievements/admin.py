from django.contrib import admin
from django.db.models import Sum

from config.admin_mixins import ExportCsvMixin, TimestampAdminMixin

from .models import PointsLedgerEntry, TrustScore


@admin.register(PointsLedgerEntry)
class PointsLedgerEntryAdmin(ExportCsvMixin, TimestampAdminMixin, admin.ModelAdmin):
    list_display = ('user', 'points', 'reason', 'handshake', 'created_display')
    list_filter = ('created_at',)
    search_fields = ('user__username', 'user__email', 'reason', 'handshake__id')
    raw_id_fields = ('user', 'handshake')
    readonly_fields = ('user', 'handshake', 'points', 'reason', 'created_at')
    actions = ['export_as_csv']

    # Append-only ledger
    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def changelist_view(self, request, extra_context=None):
        extra_context = extra_context or {}
        extra_context['total_points'] = PointsLedgerEntry.objects.aggregate(total=Sum('points'))['total'] or 0
        return super().changelist_view(request, extra_context=extra_context)


@admin.register(TrustScore)
class TrustScoreAdmin(ExportCsvMixin, admin.ModelAdmin):
    list_display = ('user', 'total_handshakes', 'updated_at')
    search_fields = ('user__username', 'user__email')
    readonly_fields = ('user', 'total_handshakes', 'updated_at')
    ordering = ('-total_handshakes',)
    actions = ['export_as_csv']
