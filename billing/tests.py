import hashlib
import json
from datetime import date
from decimal import Decimal
from unittest.mock import patch

from django.core.exceptions import ValidationError
from django.db import DatabaseError
from django.test import SimpleTestCase, TestCase, override_settings

from .exceptions import (
    BillingValidationError,
    CalculationInvariantError,
    DuplicateCalculationError,
    NotFoundError,
    PersistenceError,
)
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
from .services import facade
from .services.bill_run_service import BillRunService
from .services.division import (
    HOUSE_REASON_NO_DAYS,
    HOUSE_REASON_NO_RESIDENTS,
    BillLineDraft,
    ByDaysDetail,
    DivisionEngine,
    HouseAccountDetail,
    RentDetail,
    detail_from_json,
)
from .services.ledger import BalanceLedger
from .services.occupancy import (
    BreakPeriod,
    StayPeriod,
    compute_present_days,
    is_active,
    merge_intervals,
    summarize_occupancy,
)
from .services.periods import month_bounds, parse_month_start
from .services.preview import BillPreviewService, PreviewPayload
from .services.property_setup import (
    add_break,
    create_payment,
    record_utility_actual,
    remove_break,
    save_division_rules,
    save_rents,
    save_tenancy,
)
from .services.repository import DjangoBillingRepository


JAN_START = date(2024, 1, 1)
JAN_END = date(2024, 1, 31)


class PeriodParsingTests(SimpleTestCase):
    def test_month_key_formats(self):
        self.assertEqual(parse_month_start("2024-01"), JAN_START)
        self.assertEqual(parse_month_start("2024-01-01"), JAN_START)
        self.assertEqual(parse_month_start(JAN_START), JAN_START)

    def test_month_key_must_be_first_day(self):
        with self.assertRaises(BillingValidationError):
            parse_month_start("2024-01-15")

    def test_malformed_month_key(self):
        for value in ("2024-13", "January", "", None):
            with self.subTest(value=value), self.assertRaises(BillingValidationError):
                parse_month_start(value)

    def test_month_bounds_leap_year(self):
        self.assertEqual(month_bounds(date(2024, 2, 10)), (date(2024, 2, 1), date(2024, 2, 29)))


class OccupancyTests(SimpleTestCase):
    def test_partial_month_from_move_in(self):
        stay = StayPeriod(tenant_id=1, start_date=date(2024, 1, 10))
        self.assertEqual(compute_present_days(stay, [], JAN_START, JAN_END), 22)

    def test_break_is_subtracted_inclusively(self):
        stay = StayPeriod(tenant_id=1, start_date=date(2024, 1, 10))
        breaks = [BreakPeriod(start=date(2024, 1, 15), end=date(2024, 1, 17))]
        self.assertEqual(compute_present_days(stay, breaks, JAN_START, JAN_END), 19)

    def test_overlapping_breaks_are_merged(self):
        stay = StayPeriod(tenant_id=1, start_date=date(2023, 6, 1))
        breaks = [
            BreakPeriod(start=date(2024, 1, 8), end=date(2024, 1, 12)),
            BreakPeriod(start=date(2024, 1, 5), end=date(2024, 1, 10)),
        ]
        self.assertEqual(compute_present_days(stay, breaks, JAN_START, JAN_END), 23)

    def test_break_outside_stay_is_ignored(self):
        stay = StayPeriod(tenant_id=1, start_date=date(2024, 1, 20), end_date=date(2024, 1, 25))
        breaks = [BreakPeriod(start=date(2024, 1, 1), end=date(2024, 1, 19))]
        self.assertEqual(compute_present_days(stay, breaks, JAN_START, JAN_END), 6)

    def test_break_covering_whole_stay_gives_zero(self):
        stay = StayPeriod(tenant_id=1, start_date=date(2024, 1, 10), end_date=date(2024, 1, 12))
        breaks = [BreakPeriod(start=date(2024, 1, 1), end=date(2024, 1, 31))]
        self.assertEqual(compute_present_days(stay, breaks, JAN_START, JAN_END), 0)

    def test_same_day_stay_counts_one_day(self):
        stay = StayPeriod(tenant_id=1, start_date=date(2024, 1, 5), end_date=date(2024, 1, 5))
        self.assertEqual(compute_present_days(stay, [], JAN_START, JAN_END), 1)

    def test_unparsable_end_date_means_ongoing(self):
        stay = StayPeriod(tenant_id=1, start_date="2023-05-01", end_date="unknown")
        self.assertEqual(compute_present_days(stay, [], JAN_START, JAN_END), 31)

    def test_active_predicate(self):
        self.assertFalse(is_active(None, JAN_START, JAN_END))
        ended = StayPeriod(tenant_id=1, start_date=date(2023, 1, 1), end_date=date(2023, 12, 31))
        future = StayPeriod(tenant_id=2, start_date=date(2024, 2, 1))
        last_day = StayPeriod(tenant_id=3, start_date=date(2023, 1, 1), end_date=JAN_START)
        self.assertFalse(is_active(ended, JAN_START, JAN_END))
        self.assertFalse(is_active(future, JAN_START, JAN_END))
        self.assertTrue(is_active(last_day, JAN_START, JAN_END))

    def test_summary_excludes_inactive_tenants(self):
        summary = summarize_occupancy(
            [
                StayPeriod(tenant_id=1, start_date=date(2024, 1, 1)),
                StayPeriod(tenant_id=2, start_date=date(2024, 1, 17)),
                StayPeriod(tenant_id=3, start_date=date(2022, 1, 1), end_date=date(2023, 12, 31)),
            ],
            JAN_START,
        )
        self.assertEqual(summary.present_days, {1: 31, 2: 15})
        self.assertEqual(summary.headcount, 2)
        self.assertEqual(summary.total_person_days, 46)

    def test_invariant_violations(self):
        with self.assertRaises(CalculationInvariantError):
            compute_present_days(StayPeriod(tenant_id=1, start_date=None), [], JAN_START, JAN_END)
        with self.assertRaises(CalculationInvariantError):
            compute_present_days(
                StayPeriod(tenant_id=1, start_date=date(2024, 1, 10), end_date=date(2024, 1, 5)),
                [],
                JAN_START,
                JAN_END,
            )
        with self.assertRaises(CalculationInvariantError):
            compute_present_days(
                StayPeriod(tenant_id=1, start_date=date(2024, 1, 1)),
                [BreakPeriod(start=date(2024, 1, 10), end=date(2024, 1, 9))],
                JAN_START,
                JAN_END,
            )

    def test_merge_intervals(self):
        merged = merge_intervals(
            [
                (date(2024, 1, 20), date(2024, 1, 22)),
                (date(2024, 1, 1), date(2024, 1, 3)),
                (date(2024, 1, 3), date(2024, 1, 5)),
            ]
        )
        self.assertEqual(
            merged,
            [(date(2024, 1, 1), date(2024, 1, 5)), (date(2024, 1, 20), date(2024, 1, 22))],
        )


class DivisionEngineTests(SimpleTestCase):
    def setUp(self):
        self.engine = DivisionEngine()

    def _amounts(self, lines):
        return {line.tenant_id: line.amount for line in lines}

    def test_equalshare(self):
        lines = self.engine.apply("equalshare", "water", Decimal("300"), [1, 2, 3], {}, 3, 0)
        self.assertEqual(self._amounts(lines), {1: Decimal("100.00"), 2: Decimal("100.00"), 3: Decimal("100.00")})
        self.assertEqual(lines[0].detail.as_json(), {"method": "equalshare", "headcount": 3})

    def test_bydays(self):
        lines = self.engine.apply("bydays", "power", Decimal("310"), [1, 2], {1: 10, 2: 20}, 2, 30)
        self.assertEqual(self._amounts(lines), {1: Decimal("103.33"), 2: Decimal("206.67")})
        self.assertEqual(lines[1].detail, ByDaysDetail(days_present=20, total_person_days=30))

    def test_bydays_without_person_days_goes_to_house_account(self):
        lines = self.engine.apply("bydays", "power", Decimal("80"), [1, 2], {1: 0, 2: 0}, 2, 0)
        self.assertEqual(len(lines), 1)
        self.assertTrue(lines[0].is_house_account)
        self.assertEqual(lines[0].amount, Decimal("80.00"))
        self.assertEqual(lines[0].detail, HouseAccountDetail(method="bydays", reason=HOUSE_REASON_NO_DAYS))

    def test_equalshare_without_residents_goes_to_house_account(self):
        lines = self.engine.apply("equalshare", "water", Decimal("120"), [], {}, 0, 0)
        self.assertEqual(len(lines), 1)
        self.assertIsNone(lines[0].tenant_id)
        self.assertEqual(lines[0].detail.reason, HOUSE_REASON_NO_RESIDENTS)

    def test_fixed_charges_full_amount_to_every_tenant(self):
        lines = self.engine.apply("fixed", "internet", Decimal("25"), [1, 2], {}, 2, 0)
        self.assertEqual(self._amounts(lines), {1: Decimal("25.00"), 2: Decimal("25.00")})
        self.assertEqual(lines[0].detail.as_json(), {"method": "fixed"})

    def test_rounding_drift_is_within_tolerance(self):
        lines = self.engine.apply("equalshare", "water", Decimal("100"), [1, 2, 3], {}, 3, 0)
        total = sum(line.amount for line in lines)
        self.assertEqual(total, Decimal("99.99"))
        self.assertLessEqual(abs(total - Decimal("100")), Decimal("0.03"))

    def test_reconcile_moves_residual_to_last_line(self):
        engine = DivisionEngine(reconcile_rounding=True)
        lines = engine.apply("equalshare", "water", Decimal("100"), [1, 2, 3], {}, 3, 0)
        self.assertEqual([line.amount for line in lines], [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")])

    def test_invalid_inputs(self):
        with self.assertRaises(CalculationInvariantError):
            self.engine.apply("equalshare", "water", Decimal("-1"), [1], {}, 1, 0)
        with self.assertRaises(CalculationInvariantError):
            self.engine.apply("equalshare", "water", "NaN", [1], {}, 1, 0)
        with self.assertRaises(CalculationInvariantError):
            self.engine.apply("perroom", "water", Decimal("10"), [1], {}, 1, 0)
        with self.assertRaises(CalculationInvariantError):
            self.engine.apply("equalshare", "water", Decimal("10"), [1, 2], {}, 3, 0)

    def test_rent_lines(self):
        lines = DivisionEngine.rent_lines([(1, Decimal("500")), (2, "420.5")])
        self.assertEqual(self._amounts(lines), {1: Decimal("500.00"), 2: Decimal("420.50")})
        self.assertEqual(lines[1].detail, RentDetail(monthly_rent=Decimal("420.50")))

    def test_line_payload_restores_typed_detail(self):
        line = self.engine.apply("bydays", "power", Decimal("310"), [1, 2], {1: 10, 2: 20}, 2, 30)[0]
        restored = BillLineDraft.from_payload(json.loads(json.dumps(line.as_payload())))
        self.assertEqual(restored, line)
        self.assertIsInstance(detail_from_json({"method": "equalshare", "reason": "no_residents"}), HouseAccountDetail)
        with self.assertRaises(BillingValidationError):
            detail_from_json({"method": "perroom"})


class BillingFixtureMixin:
    def create_house(self):
        self.property = Property.objects.create(name="Lindengasse 4")
        self.anna = Tenant.objects.create(first_name="Anna", last_name="Berger")
        self.ben = Tenant.objects.create(first_name="Ben", last_name="Huber")
        Tenancy.objects.create(tenant=self.anna, property=self.property, start_date=date(2023, 9, 1))
        Tenancy.objects.create(tenant=self.ben, property=self.property, start_date=date(2024, 1, 16))
        UtilityActual.objects.create(
            property=self.property,
            month_start=JAN_START,
            utility="water",
            amount=Decimal("300.00"),
        )
        UtilityActual.objects.create(
            property=self.property,
            month_start=JAN_START,
            utility="power",
            amount=Decimal("310.00"),
        )
        DivisionRule.objects.create(property=self.property, utility="power", method=DivisionRule.Method.BYDAYS)
        TenantRent.objects.create(tenant=self.anna, property=self.property, monthly_rent=Decimal("500.00"))
        TenantRent.objects.create(tenant=self.ben, property=self.property, monthly_rent=Decimal("400.00"))


class BillRunServiceTests(BillingFixtureMixin, TestCase):
    def setUp(self):
        self.create_house()
        self.ledger = BalanceLedger()

    def test_run_posts_negative_balances(self):
        result = BillRunService().run(self.property.pk, "2024-01")

        self.assertEqual(result["lines_created"], 6)
        self.assertEqual(result["ledger_records_created"], 2)
        self.assertEqual(result["user_days"], {self.anna.pk: 31, self.ben.pk: 16})
        self.assertEqual(result["headcount"], 2)
        self.assertEqual(result["total_person_days"], 47)
        self.assertEqual(
            result["totals"],
            {"rent": Decimal("900.00"), "utilities": Decimal("610.00"), "grand_total": Decimal("1510.00")},
        )
        self.assertEqual(self.ledger.current_balance(self.anna.pk, self.property.pk), Decimal("-854.47"))
        self.assertEqual(self.ledger.current_balance(self.ben.pk, self.property.pk), Decimal("-655.53"))

        bill_run = BillRun.objects.get(pk=result["bill_run_id"])
        self.assertEqual(bill_run.status, BillRun.Status.CLOSED)
        self.assertIsNotNone(bill_run.closed_at)
        power_line = bill_run.lines.get(tenant=self.ben, utility="power")
        self.assertEqual(power_line.amount, Decimal("105.53"))
        self.assertEqual(power_line.detail, {"method": "bydays", "days_present": 16, "total_person_days": 47})

    def test_second_run_is_rejected(self):
        BillRunService().run(self.property.pk, "2024-01")
        with self.assertRaises(DuplicateCalculationError):
            BillRunService().run(self.property.pk, date(2024, 1, 1))
        self.assertEqual(LedgerEntry.objects.count(), 2)
        self.assertEqual(BillLine.objects.count(), 6)

    def test_invalid_input_writes_nothing(self):
        with self.assertRaises(BillingValidationError):
            BillRunService().run(self.property.pk, "2024-01-15")
        with self.assertRaises(BillingValidationError):
            BillRunService().run(None, "2024-01")
        with self.assertRaises(NotFoundError):
            BillRunService().run(self.property.pk + 100, "2024-01")
        self.assertFalse(BillRun.objects.exists())

    def test_rent_is_billed_even_for_inactive_tenant(self):
        former = Tenant.objects.create(first_name="Cleo", last_name="Maier")
        Tenancy.objects.create(
            tenant=former,
            property=self.property,
            start_date=date(2022, 1, 1),
            end_date=date(2023, 12, 31),
        )
        TenantRent.objects.create(tenant=former, property=self.property, monthly_rent=Decimal("350.00"))

        result = BillRunService().run(self.property.pk, "2024-01")

        lines = BillLine.objects.filter(bill_run_id=result["bill_run_id"], tenant=former)
        self.assertEqual(list(lines.values_list("utility", "amount")), [("rent", Decimal("350.00"))])
        self.assertNotIn(former.pk, result["user_days"])
        self.assertEqual(self.ledger.current_balance(former.pk, self.property.pk), Decimal("-350.00"))

    def test_empty_house_bills_utilities_to_house_account(self):
        Tenancy.objects.filter(tenant=self.ben).delete()
        Tenancy.objects.filter(tenant=self.anna).update(end_date=date(2023, 12, 31))
        TenantRent.objects.all().delete()

        result = BillRunService().run(self.property.pk, "2024-01")

        lines = BillLine.objects.filter(bill_run_id=result["bill_run_id"])
        self.assertEqual(lines.count(), 2)
        self.assertTrue(all(line.is_house_account for line in lines))
        self.assertEqual(lines.get(utility="power").detail, {"method": "bydays", "reason": "no_days"})
        self.assertEqual(lines.get(utility="water").detail, {"method": "equalshare", "reason": "no_residents"})
        self.assertEqual(result["ledger_records_created"], 0)

    def test_failure_rolls_back_whole_run(self):
        DivisionRule.objects.create(property=self.property, utility="water", method="perroom")
        with self.assertRaises(CalculationInvariantError):
            BillRunService().run(self.property.pk, "2024-01")
        self.assertFalse(BillRun.objects.exists())
        self.assertFalse(LedgerEntry.objects.exists())

    @override_settings(BILLING_DEFAULT_DIVISION_METHOD="fixed")
    def test_default_method_from_settings(self):
        result = BillRunService().run(self.property.pk, "2024-01")
        water = BillLine.objects.filter(bill_run_id=result["bill_run_id"], utility="water")
        self.assertEqual(set(water.values_list("amount", flat=True)), {Decimal("300.00")})

    @override_settings(BILLING_RECONCILE_ROUNDING=True)
    def test_reconcile_setting_is_applied(self):
        UtilityActual.objects.filter(utility="water").update(amount=Decimal("100.01"))
        result = BillRunService().run(self.property.pk, "2024-01")
        self.assertEqual(result["totals"]["utilities"], Decimal("410.01"))

    def test_list_runs_and_latest_month(self):
        service = BillRunService()
        self.assertIsNone(service.latest_month(self.property.pk))
        service.run(self.property.pk, "2023-12")
        service.run(self.property.pk, "2024-01")
        self.assertEqual(service.latest_month(self.property.pk), JAN_START)
        self.assertEqual(
            [run.month_start for run in service.list_runs(self.property.pk)],
            [JAN_START, date(2023, 12, 1)],
        )

    def test_tenant_bill_lines_newest_month_first(self):
        service = BillRunService()
        self.assertEqual(service.tenant_bill_lines(self.anna.pk, self.property.pk), [])
        service.run(self.property.pk, "2023-12")
        service.run(self.property.pk, "2024-01")
        other = Property.objects.create(name="Kirchweg 2")
        Tenancy.objects.create(tenant=self.anna, property=other, start_date=date(2023, 9, 1))
        TenantRent.objects.create(tenant=self.anna, property=other, monthly_rent=Decimal("90.00"))
        service.run(other.pk, "2024-01")

        lines = service.tenant_bill_lines(self.anna.pk, self.property.pk)

        self.assertEqual(
            [line.bill_run.month_start for line in lines],
            [JAN_START, JAN_START, JAN_START, date(2023, 12, 1)],
        )
        self.assertEqual({line.utility for line in lines[:3]}, {"water", "power", "rent"})
        self.assertEqual((lines[3].utility, lines[3].amount), ("rent", Decimal("500.00")))
        self.assertTrue(all(line.tenant_id == self.anna.pk for line in lines))


class BillPreviewServiceTests(BillingFixtureMixin, TestCase):
    def setUp(self):
        self.create_house()
        self.service = BillPreviewService()

    def test_preview_writes_nothing(self):
        payload = self.service.preview(self.property.pk, "2024-01")

        self.assertEqual(len(payload.bill_lines), 6)
        self.assertEqual(payload.totals["grand_total"], Decimal("1510.00"))
        self.assertFalse(BillRun.objects.exists())
        self.assertFalse(BillLine.objects.exists())
        self.assertFalse(LedgerEntry.objects.exists())

    def test_preview_is_deterministic(self):
        first = self.service.preview(self.property.pk, "2024-01")
        second = self.service.preview(self.property.pk, "2024-01")
        self.assertEqual(first.as_dict(), second.as_dict())
        self.assertEqual(first.fingerprint, second.fingerprint)

    def test_preview_shows_balance_change(self):
        BalanceLedger().open_account(self.anna.pk, self.property.pk, Decimal("100.00"))
        payload = self.service.preview(self.property.pk, "2024-01")
        record = next(item for item in payload.ledger_records if item.tenant_id == self.anna.pk)
        self.assertEqual(record.previous_balance, Decimal("100.00"))
        self.assertEqual(record.total, Decimal("854.47"))
        self.assertEqual(record.new_balance, Decimal("-754.47"))

    def test_confirm_persists_exactly_the_preview(self):
        payload = self.service.preview(self.property.pk, "2024-01")
        # Input changes after the preview must not leak into the commit.
        UtilityActual.objects.filter(utility="water").update(amount=Decimal("999.00"))

        result = self.service.confirm(self.property.pk, "2024-01", json.loads(json.dumps(payload.as_dict())))

        bill_run = BillRun.objects.get(pk=result.bill_run_id)
        self.assertTrue(bill_run.is_closed)
        self.assertEqual(result.lines_created, 6)
        stored = sorted(
            (line.tenant_id, line.utility, line.amount) for line in bill_run.lines.all()
        )
        shown = sorted((line.tenant_id, line.utility, line.amount) for line in payload.bill_lines)
        self.assertEqual(stored, shown)
        self.assertEqual(
            BalanceLedger().current_balance(self.anna.pk, self.property.pk),
            Decimal("-854.47"),
        )

    def test_tampered_payload_is_rejected(self):
        data = self.service.preview(self.property.pk, "2024-01").as_dict()
        data["bill_lines"][0]["amount"] = "0.01"
        with self.assertRaises(BillingValidationError):
            self.service.confirm(self.property.pk, "2024-01", data)

        # Recomputing a plain digest over the edited lines does not help without the key.
        canonical = json.dumps(
            {
                "property_id": data["property_id"],
                "month_start": data["month_start"],
                "bill_lines": data["bill_lines"],
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        data["fingerprint"] = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        with self.assertRaises(BillingValidationError):
            self.service.confirm(self.property.pk, "2024-01", data)

        data["fingerprint"] = "prüfsumme"
        with self.assertRaises(BillingValidationError):
            self.service.confirm(self.property.pk, "2024-01", data)
        self.assertFalse(BillRun.objects.exists())
        self.assertFalse(LedgerEntry.objects.exists())

    def test_fingerprint_depends_on_secret(self):
        payload = self.service.preview(self.property.pk, "2024-01")
        with override_settings(BILLING_PREVIEW_SECRET="rotated-preview-secret"):
            self.assertNotEqual(payload.expected_fingerprint(), payload.fingerprint)
            with self.assertRaises(BillingValidationError):
                self.service.confirm(self.property.pk, "2024-01", payload)
        self.assertEqual(payload.expected_fingerprint(), payload.fingerprint)

    def test_payload_for_other_month_is_rejected(self):
        payload = self.service.preview(self.property.pk, "2024-01")
        with self.assertRaises(BillingValidationError):
            self.service.confirm(self.property.pk, "2024-02", payload)
        with self.assertRaises(BillingValidationError):
            self.service.confirm(self.property.pk, "2024-01", None)

    def test_payment_between_preview_and_confirm_is_kept(self):
        payload = self.service.preview(self.property.pk, "2024-01")
        payment = create_payment(self.anna.pk, self.property.pk, "100.00")
        facade.accept_payment(payment.pk)

        with self.assertLogs("billing.services.bill_run_service", level="WARNING") as logs:
            self.service.confirm(self.property.pk, "2024-01", payload)

        self.assertIn("moved from", logs.output[0])
        self.assertEqual(
            facade.get_current_balance(self.anna.pk, self.property.pk),
            Decimal("-754.47"),
        )

    def test_second_confirm_and_later_preview_are_rejected(self):
        payload = self.service.preview(self.property.pk, "2024-01")
        self.service.confirm(self.property.pk, "2024-01", payload)
        with self.assertRaises(DuplicateCalculationError):
            self.service.confirm(self.property.pk, "2024-01", payload)
        with self.assertRaises(DuplicateCalculationError):
            self.service.preview(self.property.pk, "2024-01")
        self.assertEqual(LedgerEntry.objects.count(), 2)

    def test_payload_round_trip(self):
        payload = self.service.preview(self.property.pk, "2024-01")
        restored = PreviewPayload.from_dict(json.loads(json.dumps(payload.as_dict())))
        self.assertEqual(restored.bill_lines, payload.bill_lines)
        self.assertEqual(restored.user_days, payload.user_days)
        self.assertEqual(restored.fingerprint, restored.expected_fingerprint())


class BalanceLedgerTests(TestCase):
    def setUp(self):
        self.property = Property.objects.create(name="Lindengasse 4")
        self.tenant = Tenant.objects.create(first_name="Anna", last_name="Berger")
        Tenancy.objects.create(tenant=self.tenant, property=self.property, start_date=date(2024, 1, 1))
        self.ledger = BalanceLedger()

    def test_balance_is_sum_of_deltas(self):
        self.assertEqual(self.ledger.current_balance(self.tenant.pk, self.property.pk), Decimal("0.00"))
        self.ledger.open_account(self.tenant.pk, self.property.pk, "50")
        self.ledger.adjust(self.tenant.pk, self.property.pk, Decimal("-20"))
        self.ledger.post(self.tenant.pk, self.property.pk, LedgerEntry.SourceType.BILL, 7, Decimal("-14.50"))

        statement = self.ledger.statement(self.tenant.pk, self.property.pk)
        self.assertEqual(
            [row.delta for row in statement],
            [Decimal("50.00"), Decimal("-20.00"), Decimal("-14.50")],
        )
        self.assertEqual([row.balance for row in statement][-1], Decimal("15.50"))
        self.assertEqual(
            self.ledger.current_balance(self.tenant.pk, self.property.pk),
            sum(row.delta for row in statement),
        )
        self.assertEqual(
            list(LedgerEntry.objects.order_by("sequence").values_list("sequence", flat=True)),
            [1, 2, 3],
        )

    def test_duplicate_source_is_rejected(self):
        self.ledger.post(self.tenant.pk, self.property.pk, "bill", 7, Decimal("-10"))
        with self.assertRaises(DuplicateCalculationError):
            self.ledger.post(self.tenant.pk, self.property.pk, "bill", 7, Decimal("-10"))
        with self.assertRaises(BillingValidationError):
            self.ledger.post(self.tenant.pk, self.property.pk, "refund", 1, Decimal("5"))

    def test_opening_balance_only_on_empty_account(self):
        self.ledger.adjust(self.tenant.pk, self.property.pk, Decimal("5"))
        with self.assertRaises(BillingValidationError):
            self.ledger.open_account(self.tenant.pk, self.property.pk, Decimal("10"))

    def test_accept_payment(self):
        payment = create_payment(self.tenant.pk, self.property.pk, "120", note="January")
        entry = self.ledger.accept_payment(payment.pk)

        self.assertEqual(entry.balance, Decimal("120.00"))
        self.assertEqual(entry.source_type, LedgerEntry.SourceType.PAYMENT)
        payment.refresh_from_db()
        self.assertIsNotNone(payment.accepted_at)
        with self.assertRaises(DuplicateCalculationError):
            self.ledger.accept_payment(payment.pk)
        with self.assertRaises(NotFoundError):
            self.ledger.accept_payment(payment.pk + 100)

    def test_batch_balances(self):
        other = Tenant.objects.create(first_name="Ben", last_name="Huber")
        self.ledger.adjust(self.tenant.pk, self.property.pk, Decimal("-30"))
        self.ledger.adjust(self.tenant.pk, self.property.pk, Decimal("10"))
        balances = self.ledger.current_balances(self.property.pk, [self.tenant.pk, other.pk])
        self.assertEqual(balances, {self.tenant.pk: Decimal("-20.00"), other.pk: Decimal("0.00")})

    def test_entries_are_append_only(self):
        entry = self.ledger.adjust(self.tenant.pk, self.property.pk, Decimal("5"))
        entry.balance = Decimal("1000")
        with self.assertRaises(ValidationError):
            entry.save()
        with self.assertRaises(ValidationError):
            entry.delete()
        self.assertEqual(LedgerEntry.objects.get(pk=entry.pk).balance, Decimal("5.00"))

    def test_stale_balance_read_is_rejected(self):
        stale = self.ledger.open_account(self.tenant.pk, self.property.pk, Decimal("100"))
        # A concurrent writer commits after the stale entry was read.
        self.ledger.adjust(self.tenant.pk, self.property.pk, Decimal("-30"))

        class StaleLatestEntryRepository(DjangoBillingRepository):
            def latest_ledger_entry(self, tenant_id, property_id, *, for_update=False):
                if for_update:
                    return stale
                return super().latest_ledger_entry(tenant_id, property_id, for_update=for_update)

        with self.assertRaises(PersistenceError):
            BalanceLedger(StaleLatestEntryRepository()).adjust(self.tenant.pk, self.property.pk, Decimal("-50"))

        self.assertEqual(
            list(LedgerEntry.objects.order_by("sequence").values_list("balance", flat=True)),
            [Decimal("100.00"), Decimal("70.00")],
        )
        self.assertEqual(self.ledger.current_balance(self.tenant.pk, self.property.pk), Decimal("70.00"))

    def test_facade_uses_injected_repository(self):
        calls = []

        class RecordingRepository(DjangoBillingRepository):
            def latest_ledger_entry(self, tenant_id, property_id, *, for_update=False):
                calls.append((tenant_id, property_id))
                return super().latest_ledger_entry(tenant_id, property_id, for_update=for_update)

        balance = facade.get_current_balance(self.tenant.pk, self.property.pk, repository=RecordingRepository())
        self.assertEqual(balance, Decimal("0.00"))
        self.assertEqual(calls, [(self.tenant.pk, self.property.pk)])


class PropertySetupTests(TestCase):
    def setUp(self):
        self.property = Property.objects.create(name="Lindengasse 4")
        self.tenant = Tenant.objects.create(first_name="Anna", last_name="Berger")

    def test_division_rules_are_upserted(self):
        save_division_rules(self.property.pk, {"water": "equalshare"})
        save_division_rules(self.property.pk, {"water": "bydays", "internet": "fixed"})
        self.assertEqual(
            dict(DivisionRule.objects.values_list("utility", "method")),
            {"water": "bydays", "internet": "fixed"},
        )
        rule = DivisionRule.objects.get(utility="water")
        self.assertEqual(rule.history.count(), 2)
        with self.assertRaises(BillingValidationError):
            save_division_rules(self.property.pk, {"water": "perroom"})

    def test_rents_and_actuals(self):
        save_rents(self.property.pk, {self.tenant.pk: "480"})
        save_rents(self.property.pk, {self.tenant.pk: "495.50"})
        self.assertEqual(TenantRent.objects.get().monthly_rent, Decimal("495.50"))
        with self.assertRaises(BillingValidationError):
            save_rents(self.property.pk, {self.tenant.pk: "-1"})

        record_utility_actual(self.property.pk, "2024-01", "water", "120")
        record_utility_actual(self.property.pk, "2024-01", "water", "125.40")
        self.assertEqual(UtilityActual.objects.get().amount, Decimal("125.40"))
        with self.assertRaises(NotFoundError):
            record_utility_actual(self.property.pk + 100, "2024-01", "water", "1")

    def test_tenancy_and_breaks(self):
        tenancy = save_tenancy(self.tenant.pk, self.property.pk, "2024-01-10")
        save_tenancy(self.tenant.pk, self.property.pk, "2024-01-10", "2024-06-30")
        tenancy.refresh_from_db()
        self.assertEqual(tenancy.end_date, date(2024, 6, 30))
        with self.assertRaises(BillingValidationError):
            save_tenancy(self.tenant.pk, self.property.pk, "2024-01-10", "2024-01-01")

        brk = add_break(self.tenant.pk, self.property.pk, "2024-01-15", "2024-01-17")
        self.assertEqual(tenancy.breaks.count(), 1)
        with self.assertRaises(BillingValidationError):
            add_break(self.tenant.pk, self.property.pk, "2024-01-17", "2024-01-15")
        remove_break(brk.pk)
        self.assertFalse(BreakInterval.objects.exists())
        with self.assertRaises(NotFoundError):
            remove_break(brk.pk)

    def test_break_requires_tenancy(self):
        with self.assertRaises(NotFoundError):
            add_break(self.tenant.pk, self.property.pk, "2024-01-15", "2024-01-17")

    def test_payment_validation(self):
        with self.assertRaises(NotFoundError):
            create_payment(self.tenant.pk, self.property.pk, "10")
        save_tenancy(self.tenant.pk, self.property.pk, "2024-01-01")
        for amount in ("0", "-5", "abc"):
            with self.subTest(amount=amount), self.assertRaises(BillingValidationError):
                create_payment(self.tenant.pk, self.property.pk, amount)
        payment = create_payment(self.tenant.pk, self.property.pk, "10", note="  Cash  ")
        self.assertEqual(payment.note, "Cash")
        self.assertIsNone(payment.accepted_at)
        self.assertEqual(Payment.objects.count(), 1)

    def test_payment_database_error_is_wrapped(self):
        save_tenancy(self.tenant.pk, self.property.pk, "2024-01-01")
        with patch.object(Payment.objects, "create", side_effect=DatabaseError("disk full")):
            with self.assertRaises(PersistenceError) as ctx:
                create_payment(self.tenant.pk, self.property.pk, "10")
        self.assertIn("create_payment failed", str(ctx.exception))
        self.assertFalse(Payment.objects.exists())
