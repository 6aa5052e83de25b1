"""
Append-only audit trail for workflow mutations.

Success events are written inside the mutating transaction. Blocked attempts
are recorded after that transaction has rolled back, in a session of their
own, and never mask the original error.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from packages.db.database import get_session
from packages.db.models import AuditEvent
from packages.shared.errors import DomainError
from packages.shared.models.common import RequestContext

logger = logging.getLogger(__name__)


def _status_value(status: Any) -> str | None:
    if status is None:
        return None
    return str(getattr(status, "value", status))


def build_audit_payload(
    ctx: RequestContext,
    *,
    encounter_id: str | None = None,
    order_id: str | None = None,
    idempotency_key: str | None = None,
    prev_status: Any = None,
    next_status: Any = None,
    failure: DomainError | None = None,
    **extra: Any,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "tenant_id": ctx.tenant_id,
        "user_id": ctx.actor_id,
        "encounter_id": encounter_id,
        "order_id": order_id,
        "idempotency_key": idempotency_key,
        "correlation_id": ctx.correlation_id,
        "prev_status": _status_value(prev_status),
        "next_status": _status_value(next_status),
        "failure_reason_code": failure.code if failure else None,
        "failure_reason_details": failure.details if failure else None,
    }
    payload.update(extra)
    return payload


def write_audit_event(
    session: Session,
    ctx: RequestContext,
    *,
    event_type: str,
    entity_type: str,
    entity_id: str,
    payload: dict[str, Any],
) -> AuditEvent:
    event = AuditEvent(
        tenant_id=ctx.tenant_id,
        actor_user_id=ctx.actor_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        payload_json=payload,
        correlation_id=ctx.correlation_id,
    )
    session.add(event)
    return event


def record_blocked_attempt(
    ctx: RequestContext,
    error: DomainError,
    *,
    event_type: str,
    entity_type: str,
    entity_id: str,
    encounter_id: str | None = None,
    order_id: str | None = None,
    idempotency_key: str | None = None,
    prev_status: Any = None,
    next_status: Any = None,
) -> None:
    """Best-effort failure event; logs and swallows its own errors."""
    try:
        with get_session() as session:
            write_audit_event(
                session,
                ctx,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                payload=build_audit_payload(
                    ctx,
                    encounter_id=encounter_id,
                    order_id=order_id,
                    idempotency_key=idempotency_key,
                    prev_status=prev_status,
                    next_status=next_status,
                    failure=error,
                ),
            )
    except Exception:
        logger.exception(
            "Failed to write audit event %s for %s %s (correlation_id=%s)",
            event_type,
            entity_type,
            entity_id,
            ctx.correlation_id,
        )
