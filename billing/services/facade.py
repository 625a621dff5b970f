from __future__ import annotations

from decimal import Decimal
from typing import Mapping

from ..models import LedgerEntry
from .bill_run_service import BillRunService, CommitResult
from .ledger import BalanceLedger
from .preview import BillPreviewService, PreviewPayload
from .repository import BillingRepository, DjangoBillingRepository


def _repository(repository: BillingRepository | None) -> BillingRepository:
    return repository if repository is not None else DjangoBillingRepository()


def calculate_preview(property_id, month_start, repository: BillingRepository | None = None) -> PreviewPayload:
    return BillPreviewService(_repository(repository)).preview(property_id, month_start)


def confirm_calculation(
    property_id,
    month_start,
    preview_payload: PreviewPayload | Mapping[str, object] | None,
    repository: BillingRepository | None = None,
) -> CommitResult:
    return BillPreviewService(_repository(repository)).confirm(property_id, month_start, preview_payload)


def run_calculation(property_id, month_start, repository: BillingRepository | None = None) -> dict[str, object]:
    return BillRunService(_repository(repository)).run(property_id, month_start)


def get_current_balance(tenant_id: int, property_id: int, repository: BillingRepository | None = None) -> Decimal:
    return BalanceLedger(_repository(repository)).current_balance(tenant_id, property_id)


def accept_payment(payment_id: int, repository: BillingRepository | None = None) -> LedgerEntry:
    return BalanceLedger(_repository(repository)).accept_payment(payment_id)
