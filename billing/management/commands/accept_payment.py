from django.core.management.base import BaseCommand, CommandError

from billing.exceptions import BillingError
from billing.services.facade import accept_payment


class Command(BaseCommand):
    help = "Accepts a recorded payment and credits it to the tenant's balance."

    def add_arguments(self, parser):
        parser.add_argument("payment_id", type=int)

    def handle(self, *args, **options):
        try:
            entry = accept_payment(options["payment_id"])
        except BillingError as exc:
            raise CommandError(str(exc)) from exc
        self.stdout.write(
            self.style.SUCCESS(
                f"Payment {options['payment_id']} accepted. New balance: {entry.balance}"
            )
        )
