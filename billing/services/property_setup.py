"""Upserts for the master data a bill run reads: rules, rents, actuals, stays and payments."""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Mapping

from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from ..exceptions import (
    BillingValidationError,
    CalculationInvariantError,
    NotFoundError,
)
from ..models import (
    BreakInterval,
    DivisionRule,
    Payment,
    Property,
    Tenancy,
    Tenant,
    TenantRent,
    UtilityActual,
)
from .money import quantize_cent, to_amount
from .periods import parse_lenient_date, parse_month_start
from .repository import persistence_guard

logger = logging.getLogger(__name__)


def _get_property(property_id: int) -> Property:
    property_obj = Property.objects.filter(pk=property_id).first()
    if property_obj is None:
        raise NotFoundError(f"Property {property_id} does not exist.")
    return property_obj


def _get_tenant(tenant_id: int) -> Tenant:
    tenant = Tenant.objects.filter(pk=tenant_id).first()
    if tenant is None:
        raise NotFoundError(f"Tenant {tenant_id} does not exist.")
    return tenant


def _money(value: object, label: str) -> Decimal:
    try:
        return quantize_cent(to_amount(value))
    except CalculationInvariantError as exc:
        raise BillingValidationError(f"{label}: {exc}") from exc


def _required_date(value: object, label: str) -> date:
    parsed = parse_lenient_date(value)
    if parsed is None:
        raise BillingValidationError(f"{label} must be a date (YYYY-MM-DD), got {value!r}.")
    return parsed


def _full_clean(instance) -> None:
    try:
        instance.full_clean(validate_unique=False, validate_constraints=False)
    except ValidationError as exc:
        raise BillingValidationError("; ".join(exc.messages)) from exc


def _utility_key(utility: object) -> str:
    key = str(utility or "").strip()
    if not key:
        raise BillingValidationError("Utility name is required.")
    return key


@transaction.atomic
def save_division_rules(property_id: int, rules: Mapping[str, str]) -> list[DivisionRule]:
    property_obj = _get_property(property_id)
    saved = []
    for utility, method in rules.items():
        if method not in DivisionRule.Method.values:
            raise BillingValidationError(
                f"Unknown division method {method!r} for {utility}. "
                f"Allowed: {', '.join(DivisionRule.Method.values)}."
            )
        rule, _created = DivisionRule.objects.update_or_create(
            property=property_obj,
            utility=_utility_key(utility),
            defaults={"method": method},
        )
        saved.append(rule)
    logger.info("Saved %s division rules for %s.", len(saved), property_obj)
    return saved


@transaction.atomic
def save_rents(property_id: int, rents: Mapping[int, object]) -> list[TenantRent]:
    property_obj = _get_property(property_id)
    saved = []
    for tenant_id, monthly_rent in rents.items():
        tenant = _get_tenant(int(tenant_id))
        rent, _created = TenantRent.objects.update_or_create(
            tenant=tenant,
            property=property_obj,
            defaults={"monthly_rent": _money(monthly_rent, f"Rent of tenant {tenant_id}")},
        )
        saved.append(rent)
    logger.info("Saved %s rents for %s.", len(saved), property_obj)
    return saved


def record_utility_actual(property_id: int, month_start, utility: str, amount) -> UtilityActual:
    property_obj = _get_property(property_id)
    month = parse_month_start(month_start)
    actual, _created = UtilityActual.objects.update_or_create(
        property=property_obj,
        month_start=month,
        utility=_utility_key(utility),
        defaults={"amount": _money(amount, f"Amount for {utility}")},
    )
    return actual


@transaction.atomic
def save_tenancy(tenant_id: int, property_id: int, start_date, end_date=None) -> Tenancy:
    tenant = _get_tenant(tenant_id)
    property_obj = _get_property(property_id)
    tenancy = Tenancy.objects.filter(tenant=tenant, property=property_obj).first()
    if tenancy is None:
        tenancy = Tenancy(tenant=tenant, property=property_obj)
    tenancy.start_date = _required_date(start_date, "Move-in date")
    tenancy.end_date = parse_lenient_date(end_date) if end_date not in (None, "") else None
    if end_date not in (None, "") and tenancy.end_date is None:
        raise BillingValidationError(f"Move-out date must be a date (YYYY-MM-DD), got {end_date!r}.")
    _full_clean(tenancy)
    tenancy.save()
    return tenancy


@transaction.atomic
def add_break(tenant_id: int, property_id: int, break_start, break_end) -> BreakInterval:
    tenancy = Tenancy.objects.filter(tenant_id=tenant_id, property_id=property_id).first()
    if tenancy is None:
        raise NotFoundError(f"Tenant {tenant_id} has no tenancy at property {property_id}.")
    brk = BreakInterval(
        tenancy=tenancy,
        break_start=_required_date(break_start, "Break start"),
        break_end=_required_date(break_end, "Break end"),
    )
    _full_clean(brk)
    brk.save()
    return brk


def remove_break(break_id: int) -> None:
    deleted, _details = BreakInterval.objects.filter(pk=break_id).delete()
    if not deleted:
        raise NotFoundError(f"Break {break_id} does not exist.")


@persistence_guard
def create_payment(tenant_id: int, property_id: int, amount, note: str = "") -> Payment:
    value = _money(amount, "Payment amount")
    if value <= 0:
        raise BillingValidationError("Payment amount must be positive.")
    if not Tenancy.objects.filter(tenant_id=tenant_id, property_id=property_id).exists():
        raise NotFoundError(f"Tenant {tenant_id} has no tenancy at property {property_id}.")
    payment = Payment.objects.create(
        tenant_id=tenant_id,
        property_id=property_id,
        amount=value,
        note=(note or "").strip()[:255],
        paid_at=timezone.now(),
    )
    logger.info("Recorded payment %s of %s for tenant %s.", payment.pk, value, tenant_id)
    return payment
