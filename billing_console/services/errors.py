from __future__ import annotations


class BillingError(Exception):
    pass


class NotFoundError(BillingError):
    pass


class ConflictError(BillingError):
    pass


class ValidationError(BillingError):
    pass
