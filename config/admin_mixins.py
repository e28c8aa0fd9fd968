"""
Admin mixins shared by the Convenu apps: export actions, colored status
badges and relative timestamps.
"""
import csv
import json
from datetime import datetime

from django.http import HttpResponse
from django.utils import timezone
from django.utils.html import format_html
from django.utils.timesince import timesince


def _export_value(value):
    if hasattr(value, 'isoformat'):
        return value.isoformat()
    if hasattr(value, 'pk'):
        return value.pk
    if value is None:
        return None
    return str(value)


class ExportCsvMixin:
    """Mixin to add CSV export functionality to admin"""

    def export_as_csv(self, request, queryset):
        meta = self.model._meta
        field_names = [field.name for field in meta.fields]

        response = HttpResponse(content_type='text/csv')
        response['Content-Disposition'] = f'attachment; filename={meta.verbose_name_plural}_{datetime.now().strftime("%Y%m%d_%H%M%S")}.csv'
        writer = csv.writer(response)

        writer.writerow(field_names)
        for obj in queryset:
            writer.writerow([_export_value(getattr(obj, field)) for field in field_names])

        return response

    export_as_csv.short_description = "Export selected as CSV"


class ExportJsonMixin:
    """Mixin to add JSON export functionality to admin"""

    def export_as_json(self, request, queryset):
        meta = self.model._meta
        data = [
            {field.name: _export_value(getattr(obj, field.name)) for field in meta.fields}
            for obj in queryset
        ]

        response = HttpResponse(content_type='application/json')
        response['Content-Disposition'] = f'attachment; filename={meta.verbose_name_plural}_{datetime.now().strftime("%Y%m%d_%H%M%S")}.json'
        json.dump(data, response, indent=2)
        return response

    export_as_json.short_description = "Export selected as JSON"


class StatusColorMixin:
    """Mixin to add colored status displays"""

    STATUS_COLORS = {
        'pending': '#F59E0B',
        'matched': '#3B82F6',
        'minted': '#10B981',
        'expired': '#6B7280',
    }

    def colored_status(self, obj):
        status = getattr(obj, 'status', None)
        if not status:
            return '-'
        color = self.STATUS_COLORS.get(status.lower(), '#6B7280')
        return format_html(
            '<span style="background-color: {}; color: white; padding: 4px 8px; '
            'border-radius: 4px; font-weight: bold; font-size: 11px;">{}</span>',
            color,
            status.upper()
        )
    colored_status.short_description = 'Status'


class TimestampAdminMixin:
    """Mixin to add timestamp displays with relative time"""

    def created_display(self, obj):
        if obj.created_at:
            return format_html(
                '<span title="{}">{} ago</span>',
                obj.created_at.strftime('%Y-%m-%d %H:%M:%S'),
                timesince(obj.created_at, timezone.now())
            )
        return '-'
    created_display.short_description = 'Created'


class EnhancedAdminMixin(
    ExportCsvMixin,
    ExportJsonMixin,
    StatusColorMixin,
    TimestampAdminMixin,
):
    """Combined mixin with all enhancements"""

    def get_actions(self, request):
        actions = super().get_actions(request)
        # Add export actions by default
        actions['export_as_csv'] = (ExportCsvMixin.export_as_csv, 'export_as_csv', "Export selected as CSV")
        actions['export_as_json'] = (ExportJsonMixin.export_as_json, 'export_as_json', "Export selected as JSON")
        return actions
