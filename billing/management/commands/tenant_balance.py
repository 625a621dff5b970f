from django.core.management.base import BaseCommand, CommandError

from billing.exceptions import BillingError
from billing.services.bill_run_service import BillRunService
from billing.services.ledger import BalanceLedger


class Command(BaseCommand):
    help = "Shows the current balance of a tenant at a property."

    def add_arguments(self, parser):
        parser.add_argument("--tenant", type=int, required=True, help="Tenant ID.")
        parser.add_argument("--property", type=int, required=True, help="Property ID.")
        parser.add_argument(
            "--statement",
            action="store_true",
            help="Lists every ledger entry with its change and running balance.",
        )
        parser.add_argument(
            "--bills",
            action="store_true",
            help="Lists the billed lines of the tenant, newest month first.",
        )

    def handle(self, *args, **options):
        ledger = BalanceLedger()
        tenant_id = options["tenant"]
        property_id = options["property"]
        try:
            if options.get("bills"):
                for line in BillRunService().tenant_bill_lines(tenant_id, property_id):
                    self.stdout.write(
                        f"{line.bill_run.month_start:%Y-%m}  {line.utility:<16} {line.amount:>10}"
                    )
            if options.get("statement"):
                for row in ledger.statement(tenant_id, property_id):
                    source = f"{row.source_type} {row.source_id}" if row.source_id else row.source_type
                    self.stdout.write(
                        f"{row.posted_at:%d.%m.%Y %H:%M}  {source:<16} {row.delta:>10}  {row.balance:>10}"
                    )
            balance = ledger.current_balance(tenant_id, property_id)
        except BillingError as exc:
            raise CommandError(str(exc)) from exc
        self.stdout.write(f"Balance: {balance}")
