"""Audit trail for billing actions.

Two sources feed ``audit_logs``. Routers record operator changes to billing
configuration with :func:`audit_request`; :class:`BillingAuditRecorder`
turns pipeline events (ingestion, runs, invoices, credits) into entries.
Writing an entry never fails the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session
from starlette.requests import Request

from billing_console.domain.models import AuditAction, AuditLog, EventEnvelope
from billing_console.infra.db import get_engine
from billing_console.infra.events import (
    CREDITS_APPLIED,
    INGESTION_BATCH_CREATED,
    INVOICE_CREATED,
    INVOICE_LOCKED,
    INVOICE_RUN_COMPLETED,
    INVOICE_RUN_FAILED,
    INVOICE_RUN_STARTED,
    EventBus,
)

logger = logging.getLogger(__name__)


def write_audit_log(
    *,
    action: AuditAction,
    target_table: str,
    target_id: str | None = None,
    actor_id: str | None = None,
    detail: dict[str, Any] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AuditLog | None:
    entry = AuditLog(
        actor_id=actor_id,
        action=action,
        target_table=target_table,
        target_id=target_id,
        ip_address=ip_address,
        user_agent=user_agent,
        detail=detail or {},
    )
    try:
        with Session(get_engine(), expire_on_commit=False) as session:
            session.add(entry)
            session.commit()
    except SQLAlchemyError:
        logger.exception("failed to write audit log %s on %s/%s", action, target_table, target_id)
        return None
    return entry


def audit_request(
    request: Request,
    action: AuditAction,
    target_table: str,
    target_id: str | None = None,
    detail: dict[str, Any] | None = None,
) -> AuditLog | None:
    """Record an operator action taken through the API."""
    claims = getattr(request.state, "claims", {})
    return write_audit_log(
        action=action,
        target_table=target_table,
        target_id=target_id,
        actor_id=claims.get("sub"),
        detail={"route": request.url.path, **(detail or {})},
        ip_address=request.client.host if request.client is not None else None,
        user_agent=request.headers.get("user-agent"),
    )


@dataclass(frozen=True)
class EventAudit:
    action: AuditAction
    target_table: str
    target_key: str
    detail_keys: tuple[str, ...]


EVENT_AUDITS: dict[str, EventAudit] = {
    INGESTION_BATCH_CREATED: EventAudit(
        AuditAction.INGEST,
        "ingestion_batches",
        "batch_id",
        ("provider", "invoice_month", "row_count", "checksum"),
    ),
    INVOICE_RUN_STARTED: EventAudit(
        AuditAction.INVOICE_RUN_START,
        "invoice_runs",
        "invoice_run_id",
        ("billing_month", "source_key"),
    ),
    INVOICE_RUN_COMPLETED: EventAudit(
        AuditAction.INVOICE_RUN_COMPLETE,
        "invoice_runs",
        "invoice_run_id",
        ("billing_month", "total_invoices", "total_amount", "errors"),
    ),
    INVOICE_RUN_FAILED: EventAudit(
        AuditAction.INVOICE_RUN_FAIL,
        "invoice_runs",
        "invoice_run_id",
        ("error", "errors"),
    ),
    INVOICE_CREATED: EventAudit(
        AuditAction.INVOICE_CREATE,
        "invoices",
        "invoice_id",
        ("invoice_run_id", "invoice_number", "customer_id", "total_amount", "currency"),
    ),
    INVOICE_LOCKED: EventAudit(
        AuditAction.INVOICE_LOCK,
        "invoices",
        "invoice_id",
        ("invoice_number",),
    ),
    CREDITS_APPLIED: EventAudit(
        AuditAction.CREDIT_APPLY,
        "invoices",
        "invoice_id",
        ("customer_id", "total_applied", "final_amount", "credits_used"),
    ),
}


class BillingAuditRecorder:
    """Event bus consumer writing one audit entry per audited billing event."""

    def __init__(self, audits: dict[str, EventAudit] | None = None) -> None:
        self._audits = audits if audits is not None else EVENT_AUDITS

    def install(self, bus: EventBus) -> None:
        for event_type in self._audits:
            bus.subscribe(event_type, self.record)

    def uninstall(self, bus: EventBus) -> None:
        for event_type in self._audits:
            bus.unsubscribe(event_type, self.record)

    def record(self, event: EventEnvelope) -> AuditLog | None:
        audit = self._audits.get(event.event_type)
        if audit is None:
            return None
        target_id = event.payload.get(audit.target_key)
        detail = {key: event.payload[key] for key in audit.detail_keys if key in event.payload}
        detail["event_id"] = event.event_id
        return write_audit_log(
            action=audit.action,
            target_table=audit.target_table,
            target_id=str(target_id) if target_id is not None else event.correlation_id,
            actor_id=event.actor_id,
            detail=detail,
        )


audit_recorder = BillingAuditRecorder()
