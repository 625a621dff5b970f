from builtins import property as builtin_property
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.utils.translation import gettext_lazy as _
from simple_history.models import HistoricalRecords


class Property(models.Model):
    name = models.CharField(max_length=255, verbose_name=_("Name"))
    is_active = models.BooleanField(default=True, verbose_name=_("Active"))

    class Meta:
        verbose_name = _("Property")
        verbose_name_plural = _("Properties")
        ordering = ["name", "id"]

    def __str__(self) -> str:
        return self.name


class Tenant(models.Model):
    first_name = models.CharField(max_length=255, verbose_name=_("First name"))
    last_name = models.CharField(max_length=255, blank=True, verbose_name=_("Last name"))
    email = models.EmailField(blank=True, verbose_name=_("E-mail"))

    class Meta:
        verbose_name = _("Tenant")
        verbose_name_plural = _("Tenants")
        ordering = ["last_name", "first_name", "id"]

    def __str__(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Tenancy(models.Model):
    tenant = models.ForeignKey(
        "Tenant",
        on_delete=models.CASCADE,
        related_name="tenancies",
        verbose_name=_("Tenant"),
    )
    property = models.ForeignKey(
        "Property",
        on_delete=models.CASCADE,
        related_name="tenancies",
        verbose_name=_("Property"),
    )
    start_date = models.DateField(verbose_name=_("Move-in date"))
    end_date = models.DateField(null=True, blank=True, verbose_name=_("Move-out date"))
    history = HistoricalRecords()

    class Meta:
        verbose_name = _("Tenancy")
        verbose_name_plural = _("Tenancies")
        ordering = ["property_id", "start_date", "id"]
        constraints = [
            models.UniqueConstraint(
                fields=["tenant", "property"],
                name="uniq_tenancy_tenant_property",
            ),
            models.CheckConstraint(
                condition=models.Q(end_date__isnull=True)
                | models.Q(end_date__gte=models.F("start_date")),
                name="tenancy_end_not_before_start",
            ),
        ]

    def __str__(self) -> str:
        end = self.end_date.isoformat() if self.end_date else "…"
        return f"{self.tenant} · {self.property} · {self.start_date.isoformat()} - {end}"

    def clean(self):
        super().clean()
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValidationError(
                {"end_date": _("The move-out date must not be before the move-in date.")}
            )


class BreakInterval(models.Model):
    tenancy = models.ForeignKey(
        "Tenancy",
        on_delete=models.CASCADE,
        related_name="breaks",
        verbose_name=_("Tenancy"),
    )
    break_start = models.DateField(verbose_name=_("Break start"))
    break_end = models.DateField(verbose_name=_("Break end"))

    class Meta:
        verbose_name = _("Break interval")
        verbose_name_plural = _("Break intervals")
        ordering = ["tenancy_id", "break_start", "id"]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(break_end__gte=models.F("break_start")),
                name="break_end_not_before_start",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.tenancy.tenant} · {self.break_start.isoformat()} - {self.break_end.isoformat()}"

    def clean(self):
        super().clean()
        if self.break_start and self.break_end and self.break_end < self.break_start:
            raise ValidationError(
                {"break_end": _("The break must not end before it starts.")}
            )


class UtilityActual(models.Model):
    property = models.ForeignKey(
        "Property",
        on_delete=models.CASCADE,
        related_name="utility_actuals",
        verbose_name=_("Property"),
    )
    month_start = models.DateField(verbose_name=_("Month"))
    utility = models.CharField(max_length=50, verbose_name=_("Utility"))
    amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(0)],
        verbose_name=_("Amount"),
    )

    class Meta:
        verbose_name = _("Utility actual")
        verbose_name_plural = _("Utility actuals")
        ordering = ["-month_start", "utility", "id"]
        constraints = [
            models.UniqueConstraint(
                fields=["property", "month_start", "utility"],
                name="uniq_utility_actual_property_month_utility",
            )
        ]

    def __str__(self) -> str:
        return f"{self.property} · {self.month_start:%m.%Y} · {self.utility} · {self.amount}"


class DivisionRule(models.Model):
    class Method(models.TextChoices):
        FIXED = "fixed", _("Fixed amount per tenant")
        EQUALSHARE = "equalshare", _("Equal share")
        BYDAYS = "bydays", _("By days present")

    property = models.ForeignKey(
        "Property",
        on_delete=models.CASCADE,
        related_name="division_rules",
        verbose_name=_("Property"),
    )
    utility = models.CharField(max_length=50, verbose_name=_("Utility"))
    method = models.CharField(
        max_length=20,
        choices=Method.choices,
        default=Method.EQUALSHARE,
        verbose_name=_("Division method"),
    )
    history = HistoricalRecords()

    class Meta:
        verbose_name = _("Division rule")
        verbose_name_plural = _("Division rules")
        ordering = ["property_id", "utility"]
        constraints = [
            models.UniqueConstraint(
                fields=["property", "utility"],
                name="uniq_division_rule_property_utility",
            )
        ]

    def __str__(self) -> str:
        return f"{self.property} · {self.utility} · {self.get_method_display()}"


class TenantRent(models.Model):
    tenant = models.ForeignKey(
        "Tenant",
        on_delete=models.CASCADE,
        related_name="rents",
        verbose_name=_("Tenant"),
    )
    property = models.ForeignKey(
        "Property",
        on_delete=models.CASCADE,
        related_name="tenant_rents",
        verbose_name=_("Property"),
    )
    monthly_rent = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(0)],
        verbose_name=_("Monthly rent"),
    )
    history = HistoricalRecords()

    class Meta:
        verbose_name = _("Tenant rent")
        verbose_name_plural = _("Tenant rents")
        ordering = ["property_id", "tenant_id"]
        constraints = [
            models.UniqueConstraint(
                fields=["tenant", "property"],
                name="uniq_tenant_rent_tenant_property",
            )
        ]

    def __str__(self) -> str:
        return f"{self.tenant} · {self.property} · {self.monthly_rent}"


class BillRun(models.Model):
    class Status(models.TextChoices):
        OPEN = "open", _("Open")
        CLOSED = "closed", _("Closed")

    property = models.ForeignKey(
        "Property",
        on_delete=models.PROTECT,
        related_name="bill_runs",
        verbose_name=_("Property"),
    )
    month_start = models.DateField(verbose_name=_("Month"))
    status = models.CharField(
        max_length=10,
        choices=Status.choices,
        default=Status.OPEN,
        db_index=True,
        verbose_name=_("Status"),
    )
    closed_at = models.DateTimeField(null=True, blank=True, verbose_name=_("Closed at"))
    created_at = models.DateTimeField(auto_now_add=True, verbose_name=_("Created at"))
    updated_at = models.DateTimeField(auto_now=True, verbose_name=_("Updated at"))
    history = HistoricalRecords()

    class Meta:
        verbose_name = _("Bill run")
        verbose_name_plural = _("Bill runs")
        ordering = ["-month_start", "property_id", "-id"]
        constraints = [
            models.UniqueConstraint(
                fields=["property", "month_start"],
                name="uniq_bill_run_property_month",
            )
        ]

    def __str__(self) -> str:
        return f"{self.property} · {self.month_start:%m.%Y}"

    @builtin_property
    def is_closed(self) -> bool:
        return self.status == self.Status.CLOSED


class BillLine(models.Model):
    bill_run = models.ForeignKey(
        "BillRun",
        on_delete=models.CASCADE,
        related_name="lines",
        verbose_name=_("Bill run"),
    )
    tenant = models.ForeignKey(
        "Tenant",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="bill_lines",
        verbose_name=_("Tenant"),
        help_text=_("Empty for the house account."),
    )
    utility = models.CharField(max_length=50, verbose_name=_("Utility"))
    amount = models.DecimalField(max_digits=12, decimal_places=2, verbose_name=_("Amount"))
    detail = models.JSONField(default=dict, blank=True, verbose_name=_("Detail"))

    class Meta:
        verbose_name = _("Bill line")
        verbose_name_plural = _("Bill lines")
        ordering = ["bill_run_id", "id"]

    def __str__(self) -> str:
        payee = str(self.tenant) if self.tenant_id else _("House account")
        return f"{self.bill_run} · {payee} · {self.utility} · {self.amount}"

    @builtin_property
    def is_house_account(self) -> bool:
        return self.tenant_id is None


class Payment(models.Model):
    tenant = models.ForeignKey(
        "Tenant",
        on_delete=models.PROTECT,
        related_name="payments",
        verbose_name=_("Tenant"),
    )
    property = models.ForeignKey(
        "Property",
        on_delete=models.PROTECT,
        related_name="payments",
        verbose_name=_("Property"),
    )
    amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(Decimal("0.01"))],
        verbose_name=_("Amount"),
    )
    note = models.CharField(max_length=255, blank=True, verbose_name=_("Note"))
    paid_at = models.DateTimeField(verbose_name=_("Paid at"))
    accepted_at = models.DateTimeField(null=True, blank=True, verbose_name=_("Accepted at"))

    class Meta:
        verbose_name = _("Payment")
        verbose_name_plural = _("Payments")
        ordering = ["-paid_at", "-id"]

    def __str__(self) -> str:
        return f"{self.tenant} · {self.property} · {self.amount}"


class LedgerEntry(models.Model):
    class SourceType(models.TextChoices):
        BILL = "bill", _("Bill")
        PAYMENT = "payment", _("Payment")
        ADJUSTMENT = "adjustment", _("Adjustment")
        INITIAL = "initial", _("Opening balance")

    tenant = models.ForeignKey(
        "Tenant",
        on_delete=models.PROTECT,
        related_name="ledger_entries",
        verbose_name=_("Tenant"),
    )
    property = models.ForeignKey(
        "Property",
        on_delete=models.PROTECT,
        related_name="ledger_entries",
        verbose_name=_("Property"),
    )
    source_type = models.CharField(
        max_length=20,
        choices=SourceType.choices,
        verbose_name=_("Source type"),
    )
    source_id = models.PositiveIntegerField(null=True, blank=True, verbose_name=_("Source ID"))
    balance = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        verbose_name=_("Balance"),
        help_text=_("Cumulative balance after this entry."),
    )
    sequence = models.PositiveIntegerField(verbose_name=_("Sequence"))
    posted_at = models.DateTimeField(db_index=True, verbose_name=_("Posted at"))

    class Meta:
        verbose_name = _("Ledger entry")
        verbose_name_plural = _("Ledger entries")
        ordering = ["tenant_id", "property_id", "posted_at", "sequence"]
        constraints = [
            models.UniqueConstraint(
                fields=["tenant", "property", "sequence"],
                name="uniq_ledger_entry_account_sequence",
            ),
            models.UniqueConstraint(
                fields=["tenant", "property", "source_type", "source_id"],
                condition=models.Q(source_type__in=["bill", "payment"]),
                name="uniq_ledger_entry_account_source",
            ),
        ]
        indexes = [
            models.Index(fields=["tenant", "property", "posted_at"], name="ledger_entry_account_posted"),
        ]

    def __str__(self) -> str:
        return f"{self.posted_at:%d.%m.%Y %H:%M} · {self.tenant} · {self.balance}"

    def save(self, *args, **kwargs):
        if self.pk is not None and not self._state.adding:
            raise ValidationError(_("Ledger entries are append-only and cannot be changed."))
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError(_("Ledger entries are append-only and cannot be deleted."))
