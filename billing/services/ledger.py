from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from django.db import transaction

from ..exceptions import BillingValidationError, DuplicateCalculationError
from ..models import LedgerEntry
from .money import ZERO, quantize_cent, to_amount
from .repository import BillingRepository, DjangoBillingRepository

logger = logging.getLogger(__name__)

IDEMPOTENT_SOURCE_TYPES = {
    LedgerEntry.SourceType.BILL.value,
    LedgerEntry.SourceType.PAYMENT.value,
}


@dataclass(frozen=True, slots=True)
class StatementRow:
    entry_id: int
    posted_at: datetime
    source_type: str
    source_id: int | None
    delta: Decimal
    balance: Decimal


class BalanceLedger:
    """Append-only running balance per tenant and property.

    Every entry stores the absolute balance after the event. ``post`` reads the
    latest entry under a row lock and writes ``balance + delta`` with that
    entry's sequence plus one. A writer that read a stale latest entry, or
    raced on an empty account, collides on the unique (tenant, property,
    sequence) constraint and fails with ``PersistenceError``.
    """

    def __init__(self, repository: BillingRepository | None = None) -> None:
        self.repository = repository or DjangoBillingRepository()

    def current_balance(self, tenant_id: int, property_id: int) -> Decimal:
        latest = self.repository.latest_ledger_entry(tenant_id, property_id)
        if latest is None:
            return ZERO
        return quantize_cent(latest.balance)

    def current_balances(self, property_id: int, tenant_ids) -> dict[int, Decimal]:
        return {
            tenant_id: quantize_cent(balance)
            for tenant_id, balance in self.repository.current_balances(property_id, tenant_ids).items()
        }

    @transaction.atomic
    def post(
        self,
        tenant_id: int,
        property_id: int,
        source_type: str,
        source_id: int | None,
        delta: Decimal | str | int,
    ) -> LedgerEntry:
        source_type = getattr(source_type, "value", source_type)
        if source_type not in LedgerEntry.SourceType.values:
            raise BillingValidationError(f"Unknown ledger source type {source_type!r}.")
        amount = quantize_cent(to_amount(delta, allow_negative=True))
        if source_type in IDEMPOTENT_SOURCE_TYPES and self.repository.ledger_source_exists(
            tenant_id, property_id, source_type, source_id
        ):
            raise DuplicateCalculationError(
                f"{source_type} {source_id} was already posted for tenant {tenant_id}."
            )

        latest = self.repository.latest_ledger_entry(tenant_id, property_id, for_update=True)
        if latest is None:
            current, sequence = ZERO, 1
        else:
            # Sequence follows the balance that was read; a stale read collides on the unique key.
            current, sequence = quantize_cent(latest.balance), latest.sequence + 1
        new_balance = quantize_cent(current + amount)
        entry = self.repository.append_ledger_entry(
            tenant_id=tenant_id,
            property_id=property_id,
            source_type=source_type,
            source_id=source_id,
            balance=new_balance,
            sequence=sequence,
        )
        logger.info(
            "Ledger %s/%s: %s %s %+.2f -> %s",
            tenant_id,
            property_id,
            source_type,
            source_id,
            amount,
            new_balance,
        )
        return entry

    def open_account(self, tenant_id: int, property_id: int, opening_balance) -> LedgerEntry:
        if self.repository.latest_ledger_entry(tenant_id, property_id) is not None:
            raise BillingValidationError(
                f"Tenant {tenant_id} already has ledger entries for property {property_id}."
            )
        return self.post(
            tenant_id,
            property_id,
            LedgerEntry.SourceType.INITIAL,
            None,
            opening_balance,
        )

    def adjust(self, tenant_id: int, property_id: int, delta, *, source_id: int | None = None) -> LedgerEntry:
        return self.post(tenant_id, property_id, LedgerEntry.SourceType.ADJUSTMENT, source_id, delta)

    @transaction.atomic
    def accept_payment(self, payment_id: int) -> LedgerEntry:
        payment = self.repository.get_payment(payment_id, for_update=True)
        if payment.accepted_at is not None:
            raise DuplicateCalculationError(f"Payment {payment_id} was already accepted.")
        entry = self.post(
            payment.tenant_id,
            payment.property_id,
            LedgerEntry.SourceType.PAYMENT,
            payment.pk,
            payment.amount,
        )
        self.repository.mark_payment_accepted(payment)
        return entry

    def statement(self, tenant_id: int, property_id: int) -> list[StatementRow]:
        rows: list[StatementRow] = []
        previous = ZERO
        for entry in self.repository.ledger_entries(tenant_id, property_id):
            balance = quantize_cent(entry.balance)
            rows.append(
                StatementRow(
                    entry_id=entry.pk,
                    posted_at=entry.posted_at,
                    source_type=entry.source_type,
                    source_id=entry.source_id,
                    delta=quantize_cent(balance - previous),
                    balance=balance,
                )
            )
            previous = balance
        return rows
