from __future__ import annotations

import json
import logging
from typing import Any

from flask import g, has_app_context
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.cdms.models import AuditEvent, User

logger = logging.getLogger(__name__)


def _current_request_id() -> str | None:
    if not has_app_context():
        return None
    return getattr(g, "request_id", None)


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    tenant_id: int | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper.
    """
    ev = AuditEvent(
        request_id=request_id or _current_request_id(),
        tenant_id=tenant_id if tenant_id is not None else (actor.tenant_id if actor else None),
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
    )
    s.add(ev)
    return ev


class AuditSink:
    """
    Best-effort audit writer handed to the services.

    The event is flushed inside a SAVEPOINT so a failing insert cannot poison the
    caller's transaction; failures are logged and never raised.
    """

    def log(
        self,
        s: Session,
        *,
        tenant_id: int | None,
        actor: User | None,
        action: str,
        entity_type: str,
        entity_id: object,
        payload: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> AuditEvent | None:
        try:
            with s.begin_nested():
                ev = record_event(
                    s,
                    actor=actor,
                    action=action,
                    tenant_id=tenant_id,
                    entity_type=entity_type,
                    entity_id=str(entity_id) if entity_id is not None else None,
                    reason=reason,
                    metadata=payload,
                )
                s.flush()
            return ev
        except (SQLAlchemyError, TypeError, ValueError) as e:
            logger.error("Audit write failed (action=%s entity=%s:%s): %s", action, entity_type, entity_id, e)
            return None
