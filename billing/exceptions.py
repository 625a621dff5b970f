from __future__ import annotations


class BillingError(Exception):
    """Base class for all billing domain errors."""


class BillingValidationError(BillingError):
    """Missing or malformed input (property, month, amounts)."""


class NotFoundError(BillingError):
    pass


class DuplicateCalculationError(BillingError):
    """The bill run is already closed or the source was already posted."""


class CalculationInvariantError(BillingError):
    """Negative/NaN amounts, impossible date ranges, unknown division method."""


class PersistenceError(BillingError):
    pass
