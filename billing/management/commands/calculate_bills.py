from __future__ import annotations

from django.core.management.base import BaseCommand, CommandError

from billing.exceptions import BillingError
from billing.models import Tenant
from billing.services.facade import calculate_preview, confirm_calculation


class Command(BaseCommand):
    help = "Calculates the monthly bills of a property. Without --apply only a preview is shown."

    def add_arguments(self, parser):
        parser.add_argument("--property", type=int, required=True, help="Property ID.")
        parser.add_argument(
            "--month",
            type=str,
            required=True,
            help="Month in the format YYYY-MM (e.g. 2024-01).",
        )
        parser.add_argument(
            "--apply",
            action="store_true",
            help="Stores the shown preview and posts it to the tenant ledgers.",
        )

    def handle(self, *args, **options):
        property_id = options["property"]
        month = options["month"]
        try:
            preview = calculate_preview(property_id, month)
        except BillingError as exc:
            raise CommandError(str(exc)) from exc

        tenant_names = {
            tenant.pk: str(tenant)
            for tenant in Tenant.objects.filter(
                pk__in={line.tenant_id for line in preview.bill_lines if line.tenant_id}
            )
        }
        self.stdout.write(f"Bills for property {preview.property_id}, {preview.month_start:%m.%Y}")
        self.stdout.write(
            f"Headcount: {preview.headcount}, person days: {preview.total_person_days}"
        )
        for line in preview.bill_lines:
            payee = tenant_names.get(line.tenant_id, f"#{line.tenant_id}") if line.tenant_id else "House account"
            self.stdout.write(f"- {payee}: {line.utility} {line.amount}")
        for record in preview.ledger_records:
            self.stdout.write(
                f"  Balance {tenant_names.get(record.tenant_id, record.tenant_id)}: "
                f"{record.previous_balance} -> {record.new_balance}"
            )
        totals = preview.totals
        self.stdout.write(
            f"Rent: {totals['rent']}  Utilities: {totals['utilities']}  Total: {totals['grand_total']}"
        )

        if not options.get("apply"):
            self.stdout.write(
                self.style.WARNING("Dry run: nothing stored. Use --apply to confirm this preview.")
            )
            return

        try:
            result = confirm_calculation(property_id, month, preview)
        except BillingError as exc:
            raise CommandError(str(exc)) from exc
        self.stdout.write(
            self.style.SUCCESS(
                f"Bill run {result.bill_run_id}: {result.lines_created} lines, "
                f"{result.ledger_records_created} ledger entries."
            )
        )
