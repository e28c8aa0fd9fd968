from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as DjangoUserAdmin

from config.admin_mixins import ExportCsvMixin
from .models import User, TelegramLink


class TelegramLinkInline(admin.StackedInline):
    model = TelegramLink
    extra = 0
    readonly_fields = ('linked_at',)


@admin.register(User)
class UserAdmin(ExportCsvMixin, DjangoUserAdmin):
    list_display = ('username', 'email', 'telegram_display', 'is_staff', 'created_at')
    list_filter = ('is_staff', 'is_superuser', 'created_at', 'deleted_at')
    search_fields = ('username', 'email', 'first_name', 'last_name', 'telegram_link__telegram_username')
    readonly_fields = ('created_at', 'updated_at', 'deleted_at')
    inlines = [TelegramLinkInline]
    actions = ['export_as_csv']

    fieldsets = DjangoUserAdmin.fieldsets + (
        ('Timestamps', {
            'fields': ('created_at', 'updated_at', 'deleted_at'),
            'classes': ('collapse',)
        }),
    )

    def telegram_display(self, obj):
        handle = obj.telegram_username
        return f"@{handle}" if handle else "-"
    telegram_display.short_description = "Telegram"


@admin.register(TelegramLink)
class TelegramLinkAdmin(admin.ModelAdmin):
    list_display = ('telegram_username', 'telegram_user_id', 'user', 'linked_at')
    search_fields = ('telegram_username', 'user__username', 'user__email')
    raw_id_fields = ('user',)
