from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Iterable, Mapping, Protocol, Sequence

from ..exceptions import BillingValidationError, CalculationInvariantError
from ..models import DivisionRule
from .money import ZERO, money_str, quantize_cent, to_amount

RENT_UTILITY = "rent"
HOUSE_REASON_NO_RESIDENTS = "no_residents"
HOUSE_REASON_NO_DAYS = "no_days"


@dataclass(frozen=True, slots=True)
class FixedDetail:
    method: str = DivisionRule.Method.FIXED.value

    def as_json(self) -> dict[str, object]:
        return {"method": self.method}


@dataclass(frozen=True, slots=True)
class EqualShareDetail:
    headcount: int
    method: str = DivisionRule.Method.EQUALSHARE.value

    def as_json(self) -> dict[str, object]:
        return {"method": self.method, "headcount": self.headcount}


@dataclass(frozen=True, slots=True)
class ByDaysDetail:
    days_present: int
    total_person_days: int
    method: str = DivisionRule.Method.BYDAYS.value

    def as_json(self) -> dict[str, object]:
        return {
            "method": self.method,
            "days_present": self.days_present,
            "total_person_days": self.total_person_days,
        }


@dataclass(frozen=True, slots=True)
class HouseAccountDetail:
    method: str
    reason: str

    def as_json(self) -> dict[str, object]:
        return {"method": self.method, "reason": self.reason}


@dataclass(frozen=True, slots=True)
class RentDetail:
    monthly_rent: Decimal
    method: str = DivisionRule.Method.FIXED.value

    def as_json(self) -> dict[str, object]:
        return {"method": self.method, "monthly_rent": money_str(self.monthly_rent)}


BillLineDetail = FixedDetail | EqualShareDetail | ByDaysDetail | HouseAccountDetail | RentDetail


def detail_from_json(data: Mapping[str, object]) -> BillLineDetail:
    if not isinstance(data, Mapping):
        raise BillingValidationError("Bill line detail must be an object.")
    method = str(data.get("method") or "")
    try:
        if "reason" in data:
            return HouseAccountDetail(method=method, reason=str(data["reason"]))
        if "monthly_rent" in data:
            return RentDetail(monthly_rent=to_amount(data["monthly_rent"]))
        if method == DivisionRule.Method.FIXED:
            return FixedDetail()
        if method == DivisionRule.Method.EQUALSHARE:
            return EqualShareDetail(headcount=int(data["headcount"]))
        if method == DivisionRule.Method.BYDAYS:
            return ByDaysDetail(
                days_present=int(data["days_present"]),
                total_person_days=int(data["total_person_days"]),
            )
    except (KeyError, TypeError, ValueError) as exc:
        raise BillingValidationError(f"Incomplete bill line detail: {dict(data)!r}") from exc
    raise BillingValidationError(f"Unknown bill line detail method {method!r}.")


@dataclass(frozen=True, slots=True)
class BillLineDraft:
    tenant_id: int | None
    utility: str
    amount: Decimal
    detail: BillLineDetail

    @property
    def is_house_account(self) -> bool:
        return self.tenant_id is None

    def as_payload(self) -> dict[str, object]:
        return {
            "tenant_id": self.tenant_id,
            "utility": self.utility,
            "amount": money_str(self.amount),
            "detail": self.detail.as_json(),
        }

    @classmethod
    def from_payload(cls, row: Mapping[str, object]) -> "BillLineDraft":
        if not isinstance(row, Mapping):
            raise BillingValidationError("Bill line must be an object.")
        tenant_raw = row.get("tenant_id")
        try:
            tenant_id = None if tenant_raw in (None, "") else int(tenant_raw)
        except (TypeError, ValueError) as exc:
            raise BillingValidationError(f"Invalid tenant id {tenant_raw!r}.") from exc
        utility = str(row.get("utility") or "").strip()
        if not utility:
            raise BillingValidationError("Bill line without utility.")
        return cls(
            tenant_id=tenant_id,
            utility=utility,
            amount=quantize_cent(to_amount(row.get("amount"))),
            detail=detail_from_json(row.get("detail") or {}),
        )


def house_account_line(utility: str, amount: Decimal, *, method: str, reason: str) -> BillLineDraft:
    return BillLineDraft(
        tenant_id=None,
        utility=utility,
        amount=quantize_cent(amount),
        detail=HouseAccountDetail(method=method, reason=reason),
    )


class DivisionStrategy(Protocol):
    key: str

    def distribute(
        self,
        *,
        utility: str,
        amount: Decimal,
        tenant_ids: Sequence[int],
        present_days: Mapping[int, int],
        total_person_days: int,
    ) -> list[BillLineDraft]:
        ...


class FixedDivisionStrategy:
    key = DivisionRule.Method.FIXED.value

    def distribute(self, *, utility, amount, tenant_ids, present_days, total_person_days):
        if not tenant_ids:
            return [house_account_line(utility, amount, method=self.key, reason=HOUSE_REASON_NO_RESIDENTS)]
        charge = quantize_cent(amount)
        return [
            BillLineDraft(tenant_id=tenant_id, utility=utility, amount=charge, detail=FixedDetail())
            for tenant_id in tenant_ids
        ]


class EqualShareDivisionStrategy:
    key = DivisionRule.Method.EQUALSHARE.value

    def distribute(self, *, utility, amount, tenant_ids, present_days, total_person_days):
        headcount = len(tenant_ids)
        if headcount == 0:
            return [house_account_line(utility, amount, method=self.key, reason=HOUSE_REASON_NO_RESIDENTS)]
        per_person = quantize_cent(amount / Decimal(headcount))
        detail = EqualShareDetail(headcount=headcount)
        return [
            BillLineDraft(tenant_id=tenant_id, utility=utility, amount=per_person, detail=detail)
            for tenant_id in tenant_ids
        ]


class ByDaysDivisionStrategy:
    key = DivisionRule.Method.BYDAYS.value

    def distribute(self, *, utility, amount, tenant_ids, present_days, total_person_days):
        if total_person_days <= 0:
            return [house_account_line(utility, amount, method=self.key, reason=HOUSE_REASON_NO_DAYS)]
        lines = []
        for tenant_id in tenant_ids:
            days = int(present_days.get(tenant_id, 0))
            lines.append(
                BillLineDraft(
                    tenant_id=tenant_id,
                    utility=utility,
                    amount=quantize_cent(amount * Decimal(days) / Decimal(total_person_days)),
                    detail=ByDaysDetail(days_present=days, total_person_days=total_person_days),
                )
            )
        return lines


class DivisionEngine:
    strategies: dict[str, DivisionStrategy] = {
        strategy.key: strategy
        for strategy in (
            FixedDivisionStrategy(),
            EqualShareDivisionStrategy(),
            ByDaysDivisionStrategy(),
        )
    }
    reconcilable_methods = {
        DivisionRule.Method.EQUALSHARE.value,
        DivisionRule.Method.BYDAYS.value,
    }

    def __init__(self, *, reconcile_rounding: bool = False) -> None:
        self.reconcile_rounding = reconcile_rounding

    def apply(
        self,
        method: str,
        utility: str,
        amount: Decimal | str | int,
        active_tenant_ids: Sequence[int],
        present_days: Mapping[int, int],
        headcount: int,
        total_person_days: int,
    ) -> list[BillLineDraft]:
        strategy = self.strategies.get(str(method))
        if strategy is None:
            raise CalculationInvariantError(f"Unknown division method {method!r} for {utility}.")
        value = to_amount(amount)
        if headcount != len(active_tenant_ids):
            raise CalculationInvariantError(
                f"Headcount {headcount} does not match {len(active_tenant_ids)} active tenants."
            )
        lines = strategy.distribute(
            utility=utility,
            amount=value,
            tenant_ids=list(active_tenant_ids),
            present_days=present_days,
            total_person_days=total_person_days,
        )
        if self.reconcile_rounding and strategy.key in self.reconcilable_methods:
            lines = self._reconcile(lines, value)
        return lines

    @staticmethod
    def _reconcile(lines: list[BillLineDraft], amount: Decimal) -> list[BillLineDraft]:
        if not lines or lines[-1].is_house_account:
            return lines
        residual = quantize_cent(amount) - sum((line.amount for line in lines), ZERO)
        if residual == ZERO:
            return lines
        for index in range(len(lines) - 1, -1, -1):
            adjusted = quantize_cent(lines[index].amount + residual)
            if adjusted >= ZERO:
                reconciled = list(lines)
                reconciled[index] = replace(lines[index], amount=adjusted)
                return reconciled
        return lines

    @staticmethod
    def rent_lines(rents: Iterable[tuple[int, Decimal | str | int]]) -> list[BillLineDraft]:
        lines = []
        for tenant_id, monthly_rent in rents:
            rent = quantize_cent(to_amount(monthly_rent))
            lines.append(
                BillLineDraft(
                    tenant_id=tenant_id,
                    utility=RENT_UTILITY,
                    amount=rent,
                    detail=RentDetail(monthly_rent=rent),
                )
            )
        return lines
