import django.core.validators
import django.db.models.deletion
import simple_history.models
from decimal import Decimal
from django.conf import settings
from django.db import migrations, models


HISTORY_TYPE_CHOICES = [("+", "Created"), ("~", "Changed"), ("-", "Deleted")]


def history_fields():
    return [
        ("history_id", models.AutoField(primary_key=True, serialize=False)),
        ("history_date", models.DateTimeField(db_index=True)),
        ("history_change_reason", models.CharField(max_length=100, null=True)),
        ("history_type", models.CharField(choices=HISTORY_TYPE_CHOICES, max_length=1)),
        (
            "history_user",
            models.ForeignKey(
                null=True,
                on_delete=django.db.models.deletion.SET_NULL,
                related_name="+",
                to=settings.AUTH_USER_MODEL,
            ),
        ),
    ]


def history_fk(to, verbose_name):
    return models.ForeignKey(
        blank=True,
        db_constraint=False,
        null=True,
        on_delete=django.db.models.deletion.DO_NOTHING,
        related_name="+",
        to=to,
        verbose_name=verbose_name,
    )


def history_options(verbose_name, verbose_name_plural):
    return {
        "verbose_name": f"historical {verbose_name}",
        "verbose_name_plural": f"historical {verbose_name_plural}",
        "ordering": ("-history_date", "-history_id"),
        "get_latest_by": ("history_date", "history_id"),
    }


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Property",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=255, verbose_name="Name")),
                ("is_active", models.BooleanField(default=True, verbose_name="Active")),
            ],
            options={
                "verbose_name": "Property",
                "verbose_name_plural": "Properties",
                "ordering": ["name", "id"],
            },
        ),
        migrations.CreateModel(
            name="Tenant",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("first_name", models.CharField(max_length=255, verbose_name="First name")),
                ("last_name", models.CharField(blank=True, max_length=255, verbose_name="Last name")),
                ("email", models.EmailField(blank=True, max_length=254, verbose_name="E-mail")),
            ],
            options={
                "verbose_name": "Tenant",
                "verbose_name_plural": "Tenants",
                "ordering": ["last_name", "first_name", "id"],
            },
        ),
        migrations.CreateModel(
            name="Tenancy",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("start_date", models.DateField(verbose_name="Move-in date")),
                ("end_date", models.DateField(blank=True, null=True, verbose_name="Move-out date")),
                (
                    "property",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="tenancies",
                        to="billing.property",
                        verbose_name="Property",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="tenancies",
                        to="billing.tenant",
                        verbose_name="Tenant",
                    ),
                ),
            ],
            options={
                "verbose_name": "Tenancy",
                "verbose_name_plural": "Tenancies",
                "ordering": ["property_id", "start_date", "id"],
                "constraints": [
                    models.UniqueConstraint(fields=("tenant", "property"), name="uniq_tenancy_tenant_property"),
                    models.CheckConstraint(
                        condition=models.Q(("end_date__isnull", True), ("end_date__gte", models.F("start_date")), _connector="OR"),
                        name="tenancy_end_not_before_start",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="BreakInterval",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("break_start", models.DateField(verbose_name="Break start")),
                ("break_end", models.DateField(verbose_name="Break end")),
                (
                    "tenancy",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="breaks",
                        to="billing.tenancy",
                        verbose_name="Tenancy",
                    ),
                ),
            ],
            options={
                "verbose_name": "Break interval",
                "verbose_name_plural": "Break intervals",
                "ordering": ["tenancy_id", "break_start", "id"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("break_end__gte", models.F("break_start"))),
                        name="break_end_not_before_start",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="UtilityActual",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("month_start", models.DateField(verbose_name="Month")),
                ("utility", models.CharField(max_length=50, verbose_name="Utility")),
                (
                    "amount",
                    models.DecimalField(
                        decimal_places=2,
                        max_digits=12,
                        validators=[django.core.validators.MinValueValidator(0)],
                        verbose_name="Amount",
                    ),
                ),
                (
                    "property",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="utility_actuals",
                        to="billing.property",
                        verbose_name="Property",
                    ),
                ),
            ],
            options={
                "verbose_name": "Utility actual",
                "verbose_name_plural": "Utility actuals",
                "ordering": ["-month_start", "utility", "id"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("property", "month_start", "utility"),
                        name="uniq_utility_actual_property_month_utility",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="DivisionRule",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("utility", models.CharField(max_length=50, verbose_name="Utility")),
                (
                    "method",
                    models.CharField(
                        choices=[
                            ("fixed", "Fixed amount per tenant"),
                            ("equalshare", "Equal share"),
                            ("bydays", "By days present"),
                        ],
                        default="equalshare",
                        max_length=20,
                        verbose_name="Division method",
                    ),
                ),
                (
                    "property",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="division_rules",
                        to="billing.property",
                        verbose_name="Property",
                    ),
                ),
            ],
            options={
                "verbose_name": "Division rule",
                "verbose_name_plural": "Division rules",
                "ordering": ["property_id", "utility"],
                "constraints": [
                    models.UniqueConstraint(fields=("property", "utility"), name="uniq_division_rule_property_utility"),
                ],
            },
        ),
        migrations.CreateModel(
            name="TenantRent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "monthly_rent",
                    models.DecimalField(
                        decimal_places=2,
                        max_digits=12,
                        validators=[django.core.validators.MinValueValidator(0)],
                        verbose_name="Monthly rent",
                    ),
                ),
                (
                    "property",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="tenant_rents",
                        to="billing.property",
                        verbose_name="Property",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="rents",
                        to="billing.tenant",
                        verbose_name="Tenant",
                    ),
                ),
            ],
            options={
                "verbose_name": "Tenant rent",
                "verbose_name_plural": "Tenant rents",
                "ordering": ["property_id", "tenant_id"],
                "constraints": [
                    models.UniqueConstraint(fields=("tenant", "property"), name="uniq_tenant_rent_tenant_property"),
                ],
            },
        ),
        migrations.CreateModel(
            name="BillRun",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("month_start", models.DateField(verbose_name="Month")),
                (
                    "status",
                    models.CharField(
                        choices=[("open", "Open"), ("closed", "Closed")],
                        db_index=True,
                        default="open",
                        max_length=10,
                        verbose_name="Status",
                    ),
                ),
                ("closed_at", models.DateTimeField(blank=True, null=True, verbose_name="Closed at")),
                ("created_at", models.DateTimeField(auto_now_add=True, verbose_name="Created at")),
                ("updated_at", models.DateTimeField(auto_now=True, verbose_name="Updated at")),
                (
                    "property",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="bill_runs",
                        to="billing.property",
                        verbose_name="Property",
                    ),
                ),
            ],
            options={
                "verbose_name": "Bill run",
                "verbose_name_plural": "Bill runs",
                "ordering": ["-month_start", "property_id", "-id"],
                "constraints": [
                    models.UniqueConstraint(fields=("property", "month_start"), name="uniq_bill_run_property_month"),
                ],
            },
        ),
        migrations.CreateModel(
            name="BillLine",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("utility", models.CharField(max_length=50, verbose_name="Utility")),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12, verbose_name="Amount")),
                ("detail", models.JSONField(blank=True, default=dict, verbose_name="Detail")),
                (
                    "bill_run",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="lines",
                        to="billing.billrun",
                        verbose_name="Bill run",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        blank=True,
                        help_text="Empty for the house account.",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="bill_lines",
                        to="billing.tenant",
                        verbose_name="Tenant",
                    ),
                ),
            ],
            options={
                "verbose_name": "Bill line",
                "verbose_name_plural": "Bill lines",
                "ordering": ["bill_run_id", "id"],
            },
        ),
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "amount",
                    models.DecimalField(
                        decimal_places=2,
                        max_digits=12,
                        validators=[django.core.validators.MinValueValidator(Decimal("0.01"))],
                        verbose_name="Amount",
                    ),
                ),
                ("note", models.CharField(blank=True, max_length=255, verbose_name="Note")),
                ("paid_at", models.DateTimeField(verbose_name="Paid at")),
                ("accepted_at", models.DateTimeField(blank=True, null=True, verbose_name="Accepted at")),
                (
                    "property",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payments",
                        to="billing.property",
                        verbose_name="Property",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payments",
                        to="billing.tenant",
                        verbose_name="Tenant",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment",
                "verbose_name_plural": "Payments",
                "ordering": ["-paid_at", "-id"],
            },
        ),
        migrations.CreateModel(
            name="LedgerEntry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "source_type",
                    models.CharField(
                        choices=[
                            ("bill", "Bill"),
                            ("payment", "Payment"),
                            ("adjustment", "Adjustment"),
                            ("initial", "Opening balance"),
                        ],
                        max_length=20,
                        verbose_name="Source type",
                    ),
                ),
                ("source_id", models.PositiveIntegerField(blank=True, null=True, verbose_name="Source ID")),
                (
                    "balance",
                    models.DecimalField(
                        decimal_places=2,
                        help_text="Cumulative balance after this entry.",
                        max_digits=12,
                        verbose_name="Balance",
                    ),
                ),
                ("sequence", models.PositiveIntegerField(verbose_name="Sequence")),
                ("posted_at", models.DateTimeField(db_index=True, verbose_name="Posted at")),
                (
                    "property",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="ledger_entries",
                        to="billing.property",
                        verbose_name="Property",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="ledger_entries",
                        to="billing.tenant",
                        verbose_name="Tenant",
                    ),
                ),
            ],
            options={
                "verbose_name": "Ledger entry",
                "verbose_name_plural": "Ledger entries",
                "ordering": ["tenant_id", "property_id", "posted_at", "sequence"],
                "indexes": [
                    models.Index(fields=["tenant", "property", "posted_at"], name="ledger_entry_account_posted"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("tenant", "property", "sequence"),
                        name="uniq_ledger_entry_account_sequence",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("source_type__in", ["bill", "payment"])),
                        fields=("tenant", "property", "source_type", "source_id"),
                        name="uniq_ledger_entry_account_source",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="HistoricalTenancy",
            fields=[
                ("id", models.BigIntegerField(auto_created=True, blank=True, db_index=True, verbose_name="ID")),
                ("start_date", models.DateField(verbose_name="Move-in date")),
                ("end_date", models.DateField(blank=True, null=True, verbose_name="Move-out date")),
                *history_fields(),
                ("property", history_fk("billing.property", "Property")),
                ("tenant", history_fk("billing.tenant", "Tenant")),
            ],
            options=history_options("Tenancy", "Tenancies"),
            bases=(simple_history.models.HistoricalChanges, models.Model),
        ),
        migrations.CreateModel(
            name="HistoricalDivisionRule",
            fields=[
                ("id", models.BigIntegerField(auto_created=True, blank=True, db_index=True, verbose_name="ID")),
                ("utility", models.CharField(max_length=50, verbose_name="Utility")),
                (
                    "method",
                    models.CharField(
                        choices=[
                            ("fixed", "Fixed amount per tenant"),
                            ("equalshare", "Equal share"),
                            ("bydays", "By days present"),
                        ],
                        default="equalshare",
                        max_length=20,
                        verbose_name="Division method",
                    ),
                ),
                *history_fields(),
                ("property", history_fk("billing.property", "Property")),
            ],
            options=history_options("Division rule", "Division rules"),
            bases=(simple_history.models.HistoricalChanges, models.Model),
        ),
        migrations.CreateModel(
            name="HistoricalTenantRent",
            fields=[
                ("id", models.BigIntegerField(auto_created=True, blank=True, db_index=True, verbose_name="ID")),
                (
                    "monthly_rent",
                    models.DecimalField(
                        decimal_places=2,
                        max_digits=12,
                        validators=[django.core.validators.MinValueValidator(0)],
                        verbose_name="Monthly rent",
                    ),
                ),
                *history_fields(),
                ("property", history_fk("billing.property", "Property")),
                ("tenant", history_fk("billing.tenant", "Tenant")),
            ],
            options=history_options("Tenant rent", "Tenant rents"),
            bases=(simple_history.models.HistoricalChanges, models.Model),
        ),
        migrations.CreateModel(
            name="HistoricalBillRun",
            fields=[
                ("id", models.BigIntegerField(auto_created=True, blank=True, db_index=True, verbose_name="ID")),
                ("month_start", models.DateField(verbose_name="Month")),
                (
                    "status",
                    models.CharField(
                        choices=[("open", "Open"), ("closed", "Closed")],
                        db_index=True,
                        default="open",
                        max_length=10,
                        verbose_name="Status",
                    ),
                ),
                ("closed_at", models.DateTimeField(blank=True, null=True, verbose_name="Closed at")),
                ("created_at", models.DateTimeField(blank=True, editable=False, verbose_name="Created at")),
                ("updated_at", models.DateTimeField(blank=True, editable=False, verbose_name="Updated at")),
                *history_fields(),
                ("property", history_fk("billing.property", "Property")),
            ],
            options=history_options("Bill run", "Bill runs"),
            bases=(simple_history.models.HistoricalChanges, models.Model),
        ),
    ]
