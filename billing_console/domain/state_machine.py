from __future__ import annotations

from enum import StrEnum


class InvoiceRunState(StrEnum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


ALLOWED_TRANSITIONS: dict[InvoiceRunState, set[InvoiceRunState]] = {
    InvoiceRunState.QUEUED: {InvoiceRunState.RUNNING, InvoiceRunState.FAILED},
    InvoiceRunState.RUNNING: {InvoiceRunState.SUCCEEDED, InvoiceRunState.FAILED},
    InvoiceRunState.SUCCEEDED: set(),
    InvoiceRunState.FAILED: set(),
}


def can_transition(source: InvoiceRunState, target: InvoiceRunState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(source, set())


def is_terminal(state: InvoiceRunState) -> bool:
    return not ALLOWED_TRANSITIONS.get(state)


class InvoiceStatus(StrEnum):
    DRAFT = "DRAFT"
    ISSUED = "ISSUED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


INVOICE_STATUS_TRANSITIONS: dict[InvoiceStatus, set[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: {InvoiceStatus.ISSUED, InvoiceStatus.CANCELLED},
    InvoiceStatus.ISSUED: {InvoiceStatus.PAID, InvoiceStatus.CANCELLED},
    InvoiceStatus.PAID: set(),
    InvoiceStatus.CANCELLED: set(),
}


def can_invoice_transition(source: InvoiceStatus, target: InvoiceStatus) -> bool:
    return target in INVOICE_STATUS_TRANSITIONS.get(source, set())
