from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, Mapping, Sequence

from django.conf import settings
from django.db import transaction

from ..exceptions import BillingValidationError, CalculationInvariantError, DuplicateCalculationError
from ..models import BillLine, BillRun, DivisionRule, LedgerEntry, Property
from .division import RENT_UTILITY, BillLineDraft, DivisionEngine
from .ledger import BalanceLedger
from .money import ZERO, money_str, quantize_cent, to_amount
from .occupancy import OccupancySummary, summarize_occupancy
from .periods import parse_month_start
from .repository import BillingRepository, DjangoBillingRepository


def tenant_totals(lines: Iterable[BillLineDraft]) -> dict[int, Decimal]:
    totals: dict[int, Decimal] = defaultdict(lambda: ZERO)
    for line in lines:
        if line.tenant_id is None:
            continue
        totals[line.tenant_id] = quantize_cent(totals[line.tenant_id] + line.amount)
    return dict(sorted(totals.items()))


def line_totals(lines: Iterable[BillLineDraft]) -> dict[str, Decimal]:
    rent = ZERO
    utilities = ZERO
    for line in lines:
        if line.utility == RENT_UTILITY:
            rent += line.amount
        else:
            utilities += line.amount
    rent = quantize_cent(rent)
    utilities = quantize_cent(utilities)
    return {
        "rent": rent,
        "utilities": utilities,
        "grand_total": quantize_cent(rent + utilities),
    }


@dataclass(frozen=True, slots=True)
class LedgerRecordDraft:
    tenant_id: int
    total: Decimal
    previous_balance: Decimal
    new_balance: Decimal

    def as_payload(self) -> dict[str, object]:
        return {
            "tenant_id": self.tenant_id,
            "total": money_str(self.total),
            "previous_balance": money_str(self.previous_balance),
            "new_balance": money_str(self.new_balance),
        }

    @classmethod
    def from_payload(cls, row: Mapping[str, object]) -> "LedgerRecordDraft":
        try:
            return cls(
                tenant_id=int(row["tenant_id"]),
                total=quantize_cent(to_amount(row["total"], allow_negative=True)),
                previous_balance=quantize_cent(to_amount(row["previous_balance"], allow_negative=True)),
                new_balance=quantize_cent(to_amount(row["new_balance"], allow_negative=True)),
            )
        except (KeyError, TypeError, ValueError, CalculationInvariantError) as exc:
            raise BillingValidationError(f"Invalid ledger record {row!r}.") from exc


@dataclass(slots=True)
class BillCalculation:
    property_id: int
    month_start: date
    bill_run_id: int | None
    lines: list[BillLineDraft]
    occupancy: OccupancySummary
    ledger_records: list[LedgerRecordDraft] = field(default_factory=list)

    @property
    def totals(self) -> dict[str, Decimal]:
        return line_totals(self.lines)


@dataclass(slots=True)
class CommitResult:
    bill_run_id: int
    lines_created: int
    ledger_records_created: int
    totals: dict[str, Decimal]
    user_days: dict[int, int]
    headcount: int
    total_person_days: int
    ledger_entry_ids: list[int] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "bill_run_id": self.bill_run_id,
            "lines_created": self.lines_created,
            "ledger_records_created": self.ledger_records_created,
            "totals": dict(self.totals),
            "user_days": dict(self.user_days),
            "headcount": self.headcount,
            "total_person_days": self.total_person_days,
        }


class BillRunService:
    """Runs the monthly calculation for one property and posts it to the ledger."""

    logger = logging.getLogger(__name__)

    def __init__(
        self,
        repository: BillingRepository | None = None,
        *,
        ledger: BalanceLedger | None = None,
        engine: DivisionEngine | None = None,
    ) -> None:
        self.repository = repository or DjangoBillingRepository()
        self.ledger = ledger or BalanceLedger(self.repository)
        self.engine = engine or DivisionEngine(
            reconcile_rounding=bool(getattr(settings, "BILLING_RECONCILE_ROUNDING", False))
        )

    @staticmethod
    def default_method() -> str:
        method = str(
            getattr(settings, "BILLING_DEFAULT_DIVISION_METHOD", "") or DivisionRule.Method.EQUALSHARE
        )
        if method not in DivisionRule.Method.values:
            return DivisionRule.Method.EQUALSHARE.value
        return method

    def resolve(self, property_id: object, month_start: object) -> tuple[Property, date]:
        month = parse_month_start(month_start)
        if property_id in (None, ""):
            raise BillingValidationError("A property is required.")
        try:
            normalized_id = int(property_id)
        except (TypeError, ValueError) as exc:
            raise BillingValidationError(f"Invalid property id {property_id!r}.") from exc
        return self.repository.get_property(normalized_id), month

    def ensure_open(self, bill_run: BillRun | None) -> None:
        if bill_run is not None and bill_run.status == BillRun.Status.CLOSED:
            self.logger.warning(
                "Rejected calculation for %s: bill run %s is already closed.",
                bill_run,
                bill_run.pk,
            )
            raise DuplicateCalculationError(
                f"Bill calculation for {bill_run.month_start:%Y-%m} is already completed."
            )

    def calculate(
        self,
        property_obj: Property,
        month_start: date,
        *,
        bill_run_id: int | None = None,
    ) -> BillCalculation:
        occupancy = summarize_occupancy(self.repository.stay_periods(property_obj.pk), month_start)
        tenant_ids = occupancy.active_tenant_ids
        methods = self.repository.division_methods(property_obj.pk)
        default_method = self.default_method()

        lines: list[BillLineDraft] = []
        for utility, amount in self.repository.utility_actuals(property_obj.pk, month_start):
            lines.extend(
                self.engine.apply(
                    methods.get(utility) or default_method,
                    utility,
                    amount,
                    tenant_ids,
                    occupancy.present_days,
                    occupancy.headcount,
                    occupancy.total_person_days,
                )
            )
        lines.extend(self.engine.rent_lines(self.repository.tenant_rents(property_obj.pk)))

        totals = tenant_totals(lines)
        balances = self.ledger.current_balances(property_obj.pk, totals.keys())
        ledger_records = [
            LedgerRecordDraft(
                tenant_id=tenant_id,
                total=total,
                previous_balance=balances.get(tenant_id, ZERO),
                new_balance=quantize_cent(balances.get(tenant_id, ZERO) - total),
            )
            for tenant_id, total in totals.items()
            if total != ZERO
        ]
        return BillCalculation(
            property_id=property_obj.pk,
            month_start=month_start,
            bill_run_id=bill_run_id,
            lines=lines,
            occupancy=occupancy,
            ledger_records=ledger_records,
        )

    def commit(
        self,
        bill_run: BillRun,
        lines: Sequence[BillLineDraft],
        *,
        expected_balances: dict[int, Decimal] | None = None,
    ) -> tuple[int, list[LedgerEntry]]:
        """Writes lines and ledger entries and closes the run; caller holds the run lock."""
        lines_created = self.repository.replace_bill_lines(bill_run, lines)
        entries: list[LedgerEntry] = []
        for tenant_id, total in tenant_totals(lines).items():
            if total == ZERO:
                continue
            if expected_balances is not None and tenant_id in expected_balances:
                current = self.ledger.current_balance(tenant_id, bill_run.property_id)
                if current != expected_balances[tenant_id]:
                    self.logger.warning(
                        "Balance of tenant %s moved from %s to %s since the preview of %s.",
                        tenant_id,
                        expected_balances[tenant_id],
                        current,
                        bill_run,
                    )
            entries.append(
                self.ledger.post(
                    tenant_id,
                    bill_run.property_id,
                    LedgerEntry.SourceType.BILL,
                    bill_run.pk,
                    -total,
                )
            )
        self.repository.close_bill_run(bill_run)
        return lines_created, entries

    @transaction.atomic
    def run(self, property_id: object, month_start: object) -> dict[str, object]:
        property_obj, month = self.resolve(property_id, month_start)
        self.logger.info("Starting bill run for %s, %s.", property_obj, month.isoformat())

        bill_run = self.repository.get_or_create_bill_run(property_obj.pk, month)
        self.ensure_open(bill_run)
        calculation = self.calculate(property_obj, month, bill_run_id=bill_run.pk)
        lines_created, entries = self.commit(bill_run, calculation.lines)

        result = CommitResult(
            bill_run_id=bill_run.pk,
            lines_created=lines_created,
            ledger_records_created=len(entries),
            totals=calculation.totals,
            user_days=dict(calculation.occupancy.present_days),
            headcount=calculation.occupancy.headcount,
            total_person_days=calculation.occupancy.total_person_days,
            ledger_entry_ids=[entry.pk for entry in entries],
        )
        self.logger.info(
            "Bill run %s for %s completed: %s lines, %s ledger records.",
            bill_run.pk,
            property_obj,
            result.lines_created,
            result.ledger_records_created,
        )
        return result.as_dict()

    def list_runs(self, property_id: int) -> list[BillRun]:
        return self.repository.list_bill_runs(property_id)

    def tenant_bill_lines(self, tenant_id: int, property_id: int) -> list[BillLine]:
        """Bill history of one tenant at one property, newest month first."""
        return self.repository.tenant_bill_lines(tenant_id, property_id)

    def latest_month(self, property_id: int) -> date | None:
        runs = self.repository.list_bill_runs(property_id)
        return runs[0].month_start if runs else None
