from __future__ import annotations

from datetime import date
from decimal import Decimal
from functools import wraps
from typing import Iterable, Protocol, Sequence

from django.db import DatabaseError
from django.db.models import OuterRef, Subquery
from django.utils import timezone

from ..exceptions import NotFoundError, PersistenceError
from ..models import (
    BillLine,
    BillRun,
    DivisionRule,
    LedgerEntry,
    Payment,
    Property,
    Tenancy,
    TenantRent,
    UtilityActual,
)
from .division import BillLineDraft
from .money import ZERO
from .occupancy import BreakPeriod, StayPeriod


def persistence_guard(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DatabaseError as exc:
            raise PersistenceError(f"{func.__name__} failed: {exc}") from exc

    return wrapper


class BillingRepository(Protocol):
    def get_property(self, property_id: int) -> Property:
        ...

    def find_bill_run(self, property_id: int, month_start: date, *, for_update: bool = False) -> BillRun | None:
        ...

    def get_or_create_bill_run(self, property_id: int, month_start: date) -> BillRun:
        ...

    def close_bill_run(self, bill_run: BillRun) -> BillRun:
        ...

    def list_bill_runs(self, property_id: int) -> list[BillRun]:
        ...

    def tenant_bill_lines(self, tenant_id: int, property_id: int) -> list[BillLine]:
        ...

    def replace_bill_lines(self, bill_run: BillRun, lines: Sequence[BillLineDraft]) -> int:
        ...

    def stay_periods(self, property_id: int) -> list[StayPeriod]:
        ...

    def division_methods(self, property_id: int) -> dict[str, str]:
        ...

    def utility_actuals(self, property_id: int, month_start: date) -> list[tuple[str, Decimal]]:
        ...

    def tenant_rents(self, property_id: int) -> list[tuple[int, Decimal]]:
        ...

    def latest_ledger_entry(
        self,
        tenant_id: int,
        property_id: int,
        *,
        for_update: bool = False,
    ) -> LedgerEntry | None:
        ...

    def current_balances(self, property_id: int, tenant_ids: Iterable[int]) -> dict[int, Decimal]:
        ...

    def ledger_source_exists(
        self,
        tenant_id: int,
        property_id: int,
        source_type: str,
        source_id: int | None,
    ) -> bool:
        ...

    def append_ledger_entry(
        self,
        *,
        tenant_id: int,
        property_id: int,
        source_type: str,
        source_id: int | None,
        balance: Decimal,
        sequence: int,
    ) -> LedgerEntry:
        ...

    def ledger_entries(self, tenant_id: int, property_id: int) -> list[LedgerEntry]:
        ...

    def get_payment(self, payment_id: int, *, for_update: bool = False) -> Payment:
        ...

    def mark_payment_accepted(self, payment: Payment) -> Payment:
        ...


class DjangoBillingRepository:
    """ORM-backed repository; callers own the surrounding transaction."""

    @persistence_guard
    def get_property(self, property_id: int) -> Property:
        property_obj = Property.objects.filter(pk=property_id).first()
        if property_obj is None:
            raise NotFoundError(f"Property {property_id} does not exist.")
        return property_obj

    @persistence_guard
    def find_bill_run(self, property_id: int, month_start: date, *, for_update: bool = False) -> BillRun | None:
        queryset = BillRun.objects.filter(property_id=property_id, month_start=month_start)
        if for_update:
            queryset = queryset.select_for_update()
        return queryset.first()

    @persistence_guard
    def get_or_create_bill_run(self, property_id: int, month_start: date) -> BillRun:
        run, _created = BillRun.objects.get_or_create(
            property_id=property_id,
            month_start=month_start,
            defaults={"status": BillRun.Status.OPEN},
        )
        return BillRun.objects.select_for_update().get(pk=run.pk)

    @persistence_guard
    def close_bill_run(self, bill_run: BillRun) -> BillRun:
        bill_run.status = BillRun.Status.CLOSED
        bill_run.closed_at = timezone.now()
        bill_run.save(update_fields=["status", "closed_at", "updated_at"])
        return bill_run

    @persistence_guard
    def list_bill_runs(self, property_id: int) -> list[BillRun]:
        return list(
            BillRun.objects.filter(property_id=property_id).order_by("-month_start", "-id")
        )

    @persistence_guard
    def tenant_bill_lines(self, tenant_id: int, property_id: int) -> list[BillLine]:
        return list(
            BillLine.objects.filter(tenant_id=tenant_id, bill_run__property_id=property_id)
            .select_related("bill_run")
            .order_by("-bill_run__month_start", "id")
        )

    @persistence_guard
    def replace_bill_lines(self, bill_run: BillRun, lines: Sequence[BillLineDraft]) -> int:
        BillLine.objects.filter(bill_run=bill_run).delete()
        to_create = [
            BillLine(
                bill_run=bill_run,
                tenant_id=line.tenant_id,
                utility=line.utility,
                amount=line.amount,
                detail=line.detail.as_json(),
            )
            for line in lines
        ]
        if to_create:
            BillLine.objects.bulk_create(to_create)
        return len(to_create)

    @persistence_guard
    def stay_periods(self, property_id: int) -> list[StayPeriod]:
        tenancies = (
            Tenancy.objects.filter(property_id=property_id)
            .prefetch_related("breaks")
            .order_by("tenant_id", "id")
        )
        return [
            StayPeriod(
                tenant_id=tenancy.tenant_id,
                start_date=tenancy.start_date,
                end_date=tenancy.end_date,
                breaks=tuple(
                    BreakPeriod(start=brk.break_start, end=brk.break_end)
                    for brk in tenancy.breaks.all()
                ),
            )
            for tenancy in tenancies
        ]

    @persistence_guard
    def division_methods(self, property_id: int) -> dict[str, str]:
        return dict(
            DivisionRule.objects.filter(property_id=property_id).values_list("utility", "method")
        )

    @persistence_guard
    def utility_actuals(self, property_id: int, month_start: date) -> list[tuple[str, Decimal]]:
        return list(
            UtilityActual.objects.filter(property_id=property_id, month_start=month_start)
            .order_by("utility", "id")
            .values_list("utility", "amount")
        )

    @persistence_guard
    def tenant_rents(self, property_id: int) -> list[tuple[int, Decimal]]:
        return list(
            TenantRent.objects.filter(property_id=property_id)
            .order_by("tenant_id", "id")
            .values_list("tenant_id", "monthly_rent")
        )

    @persistence_guard
    def latest_ledger_entry(
        self,
        tenant_id: int,
        property_id: int,
        *,
        for_update: bool = False,
    ) -> LedgerEntry | None:
        queryset = LedgerEntry.objects.filter(tenant_id=tenant_id, property_id=property_id)
        if for_update:
            queryset = queryset.select_for_update()
        return queryset.order_by("-posted_at", "-sequence").first()

    @persistence_guard
    def current_balances(self, property_id: int, tenant_ids: Iterable[int]) -> dict[int, Decimal]:
        ids = sorted({int(tenant_id) for tenant_id in tenant_ids})
        balances = {tenant_id: ZERO for tenant_id in ids}
        if not ids:
            return balances
        latest_per_account = (
            LedgerEntry.objects.filter(
                tenant_id=OuterRef("tenant_id"),
                property_id=OuterRef("property_id"),
            )
            .order_by("-posted_at", "-sequence")
            .values("pk")[:1]
        )
        rows = LedgerEntry.objects.filter(
            property_id=property_id,
            tenant_id__in=ids,
            pk=Subquery(latest_per_account),
        ).values_list("tenant_id", "balance")
        for tenant_id, balance in rows:
            balances[tenant_id] = balance
        return balances

    @persistence_guard
    def ledger_source_exists(
        self,
        tenant_id: int,
        property_id: int,
        source_type: str,
        source_id: int | None,
    ) -> bool:
        return LedgerEntry.objects.filter(
            tenant_id=tenant_id,
            property_id=property_id,
            source_type=source_type,
            source_id=source_id,
        ).exists()

    @persistence_guard
    def append_ledger_entry(
        self,
        *,
        tenant_id: int,
        property_id: int,
        source_type: str,
        source_id: int | None,
        balance: Decimal,
        sequence: int,
    ) -> LedgerEntry:
        return LedgerEntry.objects.create(
            tenant_id=tenant_id,
            property_id=property_id,
            source_type=source_type,
            source_id=source_id,
            balance=balance,
            sequence=sequence,
            posted_at=timezone.now(),
        )

    @persistence_guard
    def ledger_entries(self, tenant_id: int, property_id: int) -> list[LedgerEntry]:
        return list(
            LedgerEntry.objects.filter(tenant_id=tenant_id, property_id=property_id).order_by(
                "posted_at",
                "sequence",
            )
        )

    @persistence_guard
    def get_payment(self, payment_id: int, *, for_update: bool = False) -> Payment:
        queryset = Payment.objects.filter(pk=payment_id)
        if for_update:
            queryset = queryset.select_for_update()
        payment = queryset.first()
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} does not exist.")
        return payment

    @persistence_guard
    def mark_payment_accepted(self, payment: Payment) -> Payment:
        payment.accepted_at = timezone.now()
        payment.save(update_fields=["accepted_at"])
        return payment
