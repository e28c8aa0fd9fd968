from django.contrib import admin

from config.admin_mixins import ExportCsvMixin
from .models import Contact


@admin.register(Contact)
class ContactAdmin(ExportCsvMixin, admin.ModelAdmin):
    list_display = ('display_name', 'owner', 'telegram_handle', 'email', 'event_title', 'date_met', 'created_at')
    list_filter = ('created_at', 'deleted_at')
    search_fields = ('first_name', 'last_name', 'telegram_handle', 'email', 'event_title', 'owner__username')
    raw_id_fields = ('owner',)
    actions = ['export_as_csv']
