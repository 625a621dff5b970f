from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Mapping, Sequence

from django.conf import settings
from django.db import transaction

from ..exceptions import BillingValidationError, CalculationInvariantError
from .bill_run_service import (
    BillRunService,
    CommitResult,
    LedgerRecordDraft,
    line_totals,
)
from .division import BillLineDraft
from .money import money_str, quantize_cent, to_amount
from .periods import parse_month_start
from .repository import BillingRepository

logger = logging.getLogger(__name__)


def _fingerprint_secret() -> str:
    configured = str(getattr(settings, "BILLING_PREVIEW_SECRET", "") or "").strip()
    if configured:
        return configured
    return str(getattr(settings, "SECRET_KEY", "dev-only-preview-secret"))


def lines_fingerprint(property_id: int, month_start: date, lines: Sequence[BillLineDraft]) -> str:
    canonical = json.dumps(
        {
            "property_id": property_id,
            "month_start": month_start.isoformat(),
            "bill_lines": [line.as_payload() for line in lines],
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    secret = _fingerprint_secret()
    return hmac.new(secret.encode("utf-8"), canonical.encode("utf-8"), hashlib.sha256).hexdigest()


@dataclass(slots=True)
class PreviewPayload:
    """What a preview showed; ``confirm`` persists exactly these lines."""

    property_id: int
    month_start: date
    bill_lines: list[BillLineDraft]
    ledger_records: list[LedgerRecordDraft]
    totals: dict[str, Decimal]
    user_days: dict[int, int]
    headcount: int
    total_person_days: int
    fingerprint: str = ""
    bill_run_id: int | None = None

    def expected_fingerprint(self) -> str:
        return lines_fingerprint(self.property_id, self.month_start, self.bill_lines)

    def as_dict(self) -> dict[str, object]:
        return {
            "property_id": self.property_id,
            "month_start": self.month_start.isoformat(),
            "bill_run_id": self.bill_run_id,
            "bill_lines": [line.as_payload() for line in self.bill_lines],
            "ledger_records": [record.as_payload() for record in self.ledger_records],
            "totals": {key: money_str(value) for key, value in self.totals.items()},
            "user_days": {str(tenant_id): days for tenant_id, days in self.user_days.items()},
            "headcount": self.headcount,
            "total_person_days": self.total_person_days,
            "fingerprint": self.fingerprint,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "PreviewPayload":
        if not isinstance(data, Mapping):
            raise BillingValidationError("Preview payload must be an object.")
        raw_lines = data.get("bill_lines")
        if not isinstance(raw_lines, list):
            raise BillingValidationError("Preview payload has no bill lines.")
        try:
            property_id = int(data["property_id"])
            month_start = parse_month_start(data["month_start"])
            user_days = {
                int(tenant_id): int(days)
                for tenant_id, days in dict(data.get("user_days") or {}).items()
            }
            totals = {
                str(key): quantize_cent(to_amount(value, allow_negative=True))
                for key, value in dict(data.get("totals") or {}).items()
            }
            headcount = int(data.get("headcount") or 0)
            total_person_days = int(data.get("total_person_days") or 0)
            bill_run_raw = data.get("bill_run_id")
            bill_run_id = int(bill_run_raw) if bill_run_raw not in (None, "") else None
        except (KeyError, TypeError, ValueError, CalculationInvariantError) as exc:
            raise BillingValidationError(f"Malformed preview payload: {exc}") from exc

        return cls(
            property_id=property_id,
            month_start=month_start,
            bill_lines=[BillLineDraft.from_payload(row) for row in raw_lines],
            ledger_records=[
                LedgerRecordDraft.from_payload(row) for row in data.get("ledger_records") or []
            ],
            totals=totals,
            user_days=user_days,
            headcount=headcount,
            total_person_days=total_person_days,
            fingerprint=str(data.get("fingerprint") or ""),
            bill_run_id=bill_run_id,
        )


class BillPreviewService:
    """Two-step calculation: a read-only preview, then a commit of exactly what was shown."""

    def __init__(self, repository: BillingRepository | None = None, *, runner: BillRunService | None = None):
        self.runner = runner or BillRunService(repository)
        self.repository = self.runner.repository

    def preview(self, property_id: object, month_start: object) -> PreviewPayload:
        property_obj, month = self.runner.resolve(property_id, month_start)
        bill_run = self.repository.find_bill_run(property_obj.pk, month)
        self.runner.ensure_open(bill_run)

        calculation = self.runner.calculate(
            property_obj,
            month,
            bill_run_id=bill_run.pk if bill_run is not None else None,
        )
        payload = PreviewPayload(
            property_id=property_obj.pk,
            month_start=month,
            bill_lines=calculation.lines,
            ledger_records=calculation.ledger_records,
            totals=calculation.totals,
            user_days=dict(calculation.occupancy.present_days),
            headcount=calculation.occupancy.headcount,
            total_person_days=calculation.occupancy.total_person_days,
            bill_run_id=calculation.bill_run_id,
        )
        payload.fingerprint = payload.expected_fingerprint()
        logger.info(
            "Preview for %s, %s: %s lines, grand total %s.",
            property_obj,
            month.isoformat(),
            len(payload.bill_lines),
            payload.totals["grand_total"],
        )
        return payload

    def _validated_payload(
        self,
        property_id: int,
        month_start: date,
        payload: PreviewPayload | Mapping[str, object] | None,
    ) -> PreviewPayload:
        if payload is None:
            raise BillingValidationError("Preview data is required.")
        if not isinstance(payload, PreviewPayload):
            payload = PreviewPayload.from_dict(payload)
        if payload.property_id != property_id or payload.month_start != month_start:
            raise BillingValidationError(
                f"Preview belongs to property {payload.property_id}, "
                f"{payload.month_start:%Y-%m}, not to property {property_id}, {month_start:%Y-%m}."
            )
        expected = payload.expected_fingerprint().encode("utf-8")
        if not payload.fingerprint or not hmac.compare_digest(payload.fingerprint.encode("utf-8"), expected):
            raise BillingValidationError("Preview data was modified after it was calculated.")
        return payload

    @transaction.atomic
    def confirm(
        self,
        property_id: object,
        month_start: object,
        payload: PreviewPayload | Mapping[str, object] | None,
    ) -> CommitResult:
        property_obj, month = self.runner.resolve(property_id, month_start)
        preview = self._validated_payload(property_obj.pk, month, payload)

        bill_run = self.repository.get_or_create_bill_run(property_obj.pk, month)
        self.runner.ensure_open(bill_run)
        lines_created, entries = self.runner.commit(
            bill_run,
            preview.bill_lines,
            expected_balances={
                record.tenant_id: record.previous_balance for record in preview.ledger_records
            },
        )
        result = CommitResult(
            bill_run_id=bill_run.pk,
            lines_created=lines_created,
            ledger_records_created=len(entries),
            totals=line_totals(preview.bill_lines),
            user_days=dict(preview.user_days),
            headcount=preview.headcount,
            total_person_days=preview.total_person_days,
            ledger_entry_ids=[entry.pk for entry in entries],
        )
        logger.info(
            "Confirmed bill run %s for %s: %s lines, %s ledger records.",
            bill_run.pk,
            property_obj,
            result.lines_created,
            result.ledger_records_created,
        )
        return result
