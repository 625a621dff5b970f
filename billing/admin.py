from django.contrib import admin
from simple_history.admin import SimpleHistoryAdmin

from .models import (
    BillLine,
    BillRun,
    BreakInterval,
    DivisionRule,
    LedgerEntry,
    Payment,
    Property,
    Tenancy,
    Tenant,
    TenantRent,
    UtilityActual,
)


class ReadOnlyAdminMixin:
    def has_add_permission(self, request, obj=None):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


class BreakIntervalInline(admin.TabularInline):
    model = BreakInterval
    extra = 0


class BillLineInline(ReadOnlyAdminMixin, admin.TabularInline):
    model = BillLine
    extra = 0
    fields = ("tenant", "utility", "amount", "detail")
    readonly_fields = fields


@admin.register(Property)
class PropertyAdmin(admin.ModelAdmin):
    list_display = ("name", "is_active")
    list_filter = ("is_active",)
    search_fields = ("name",)


@admin.register(Tenant)
class TenantAdmin(admin.ModelAdmin):
    list_display = ("last_name", "first_name", "email")
    search_fields = ("first_name", "last_name", "email")


@admin.register(Tenancy)
class TenancyAdmin(SimpleHistoryAdmin):
    list_display = ("tenant", "property", "start_date", "end_date")
    list_filter = ("property",)
    search_fields = ("tenant__first_name", "tenant__last_name", "property__name")
    inlines = (BreakIntervalInline,)


@admin.register(UtilityActual)
class UtilityActualAdmin(admin.ModelAdmin):
    list_display = ("property", "month_start", "utility", "amount")
    list_filter = ("property", "utility")
    ordering = ("-month_start", "utility")


@admin.register(DivisionRule)
class DivisionRuleAdmin(SimpleHistoryAdmin):
    list_display = ("property", "utility", "method")
    list_filter = ("method", "property")


@admin.register(TenantRent)
class TenantRentAdmin(SimpleHistoryAdmin):
    list_display = ("tenant", "property", "monthly_rent")
    list_filter = ("property",)


@admin.register(BillRun)
class BillRunAdmin(SimpleHistoryAdmin):
    list_display = ("property", "month_start", "status", "closed_at", "updated_at")
    list_filter = ("status", "property")
    readonly_fields = ("status", "closed_at", "created_at", "updated_at")
    inlines = (BillLineInline,)


@admin.register(BillLine)
class BillLineAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("bill_run", "tenant", "utility", "amount")
    list_filter = ("utility", "bill_run__property")
    readonly_fields = ("bill_run", "tenant", "utility", "amount", "detail")


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ("paid_at", "tenant", "property", "amount", "accepted_at")
    list_filter = ("property", "accepted_at")
    search_fields = ("tenant__first_name", "tenant__last_name", "note")
    readonly_fields = ("accepted_at",)


@admin.register(LedgerEntry)
class LedgerEntryAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("posted_at", "tenant", "property", "source_type", "source_id", "balance", "sequence")
    list_filter = ("source_type", "property")
    search_fields = ("tenant__first_name", "tenant__last_name")
    readonly_fields = ("tenant", "property", "source_type", "source_id", "balance", "sequence", "posted_at")
    ordering = ("-posted_at", "-sequence")
