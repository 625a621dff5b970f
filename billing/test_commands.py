from datetime import date
from decimal import Decimal
from io import StringIO

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase

from .models import BillRun, LedgerEntry, Property, Tenancy, Tenant, TenantRent, UtilityActual
from .services.property_setup import create_payment


class BillingCommandTests(TestCase):
    def setUp(self):
        self.property = Property.objects.create(name="Lindengasse 4")
        self.tenant = Tenant.objects.create(first_name="Anna", last_name="Berger")
        Tenancy.objects.create(tenant=self.tenant, property=self.property, start_date=date(2023, 9, 1))
        TenantRent.objects.create(tenant=self.tenant, property=self.property, monthly_rent=Decimal("500.00"))
        UtilityActual.objects.create(
            property=self.property,
            month_start=date(2024, 1, 1),
            utility="water",
            amount=Decimal("60.00"),
        )

    def test_calculate_bills_dry_run(self):
        output = StringIO()
        call_command("calculate_bills", property=self.property.pk, month="2024-01", stdout=output)

        text = output.getvalue()
        self.assertIn("Anna Berger: water 60.00", text)
        self.assertIn("Total: 560.00", text)
        self.assertIn("Dry run", text)
        self.assertFalse(BillRun.objects.exists())

    def test_calculate_bills_apply_twice(self):
        output = StringIO()
        call_command("calculate_bills", "--apply", property=self.property.pk, month="2024-01", stdout=output)
        self.assertIn("2 lines, 1 ledger entries", output.getvalue())
        self.assertTrue(BillRun.objects.get().is_closed)

        with self.assertRaises(CommandError):
            call_command("calculate_bills", "--apply", property=self.property.pk, month="2024-01", stdout=StringIO())
        self.assertEqual(LedgerEntry.objects.count(), 1)

    def test_calculate_bills_unknown_property(self):
        with self.assertRaises(CommandError):
            call_command("calculate_bills", property=self.property.pk + 100, month="2024-01", stdout=StringIO())

    def test_accept_payment_and_statement(self):
        call_command("calculate_bills", "--apply", property=self.property.pk, month="2024-01", stdout=StringIO())
        payment = create_payment(self.tenant.pk, self.property.pk, "200")

        output = StringIO()
        call_command("accept_payment", str(payment.pk), stdout=output)
        self.assertIn("New balance: -360.00", output.getvalue())

        with self.assertRaises(CommandError):
            call_command("accept_payment", str(payment.pk), stdout=StringIO())

        output = StringIO()
        call_command(
            "tenant_balance",
            "--statement",
            tenant=self.tenant.pk,
            property=self.property.pk,
            stdout=output,
        )
        text = output.getvalue()
        self.assertIn("-560.00", text)
        self.assertIn("200.00", text)
        self.assertIn("Balance: -360.00", text)

    def test_tenant_balance_lists_bills(self):
        call_command("calculate_bills", "--apply", property=self.property.pk, month="2024-01", stdout=StringIO())

        output = StringIO()
        call_command("tenant_balance", "--bills", tenant=self.tenant.pk, property=self.property.pk, stdout=output)

        lines = output.getvalue().splitlines()
        self.assertEqual(len(lines), 3)
        self.assertTrue(lines[0].startswith("2024-01"))
        self.assertIn("water", output.getvalue())
        self.assertIn("500.00", output.getvalue())
        self.assertEqual(lines[-1], "Balance: -560.00")
