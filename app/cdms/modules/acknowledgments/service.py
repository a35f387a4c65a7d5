from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Union

from app.cdms.constants import DOC_STATUS_APPROVED
from app.cdms.errors import InvalidState, NotFound, Unauthorized, ValidationError
from app.cdms.models import Role, User
from app.cdms.modules.acknowledgments.models import AckAssignment, AckCampaign
from app.cdms.modules.document_control.models import Document
from app.cdms.notifications import notify_safely
from app.cdms.utils import parse_deadline

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.cdms.audit import AuditSink
    from app.cdms.notifications import NotificationSink
    from app.cdms.rbac import PermissionChecker

logger = logging.getLogger(__name__)

ASSIGNMENT_PENDING = "pending"
ASSIGNMENT_ACKNOWLEDGED = "acknowledged"

CAMPAIGN_DRAFT = "draft"
CAMPAIGN_ACTIVE = "active"
CAMPAIGN_COMPLETED = "completed"


# -- audience variants -----------------------------------------------------------


@dataclass(frozen=True)
class AllUsers:
    kind = "all"

    def ids(self) -> list:
        return []


@dataclass(frozen=True)
class CustomUsers:
    user_ids: tuple[int, ...]
    kind = "custom"

    def ids(self) -> list:
        return list(self.user_ids)


@dataclass(frozen=True)
class RoleAudience:
    role_keys: tuple[str, ...]
    kind = "role"

    def ids(self) -> list:
        return list(self.role_keys)


@dataclass(frozen=True)
class DepartmentAudience:
    departments: tuple[str, ...]
    kind = "department"

    def ids(self) -> list:
        return list(self.departments)


Audience = Union[AllUsers, CustomUsers, RoleAudience, DepartmentAudience]

AUDIENCE_TYPES = ("all", "custom", "role", "department")


def _dedupe(values: list) -> tuple:
    seen = set()
    out = []
    for v in values:
        if v not in seen:
            seen.add(v)
            out.append(v)
    return tuple(out)


def audience_from_request(audience_type: str, audience_ids: list | None = None) -> Audience:
    at = (audience_type or "").strip().lower()
    if at not in AUDIENCE_TYPES:
        raise ValidationError(f"Invalid audience type. Must be one of: {', '.join(AUDIENCE_TYPES)}", field="audience_type")
    if at == "all":
        return AllUsers()

    raw = list(audience_ids or [])
    if not raw:
        raise ValidationError(f"audience_ids are required for audience type '{at}'.", field="audience_ids")

    if at == "custom":
        try:
            ids = [int(x) for x in raw]
        except (TypeError, ValueError):
            raise ValidationError("Custom audience ids must be integers.", field="audience_ids")
        return CustomUsers(user_ids=_dedupe(ids))

    names = [str(x).strip() for x in raw if str(x).strip()]
    if not names:
        raise ValidationError(f"audience_ids are required for audience type '{at}'.", field="audience_ids")
    if at == "role":
        return RoleAudience(role_keys=_dedupe(names))
    return DepartmentAudience(departments=_dedupe(names))


def resolve_audience(s: "Session", *, tenant_id: int, audience: Audience) -> list[int]:
    """
    Turn an audience into a concrete, duplicate-free list of user ids.
    """
    if isinstance(audience, CustomUsers):
        known = {
            uid
            for (uid,) in s.query(User.id).filter(User.id.in_(audience.user_ids), User.tenant_id == tenant_id)
        }
        unknown = [uid for uid in audience.user_ids if uid not in known]
        if unknown:
            raise ValidationError("Custom audience contains unknown users.", field="audience_ids", user_ids=unknown)
        return list(audience.user_ids)

    q = s.query(User.id).filter(User.tenant_id == tenant_id, User.is_active.is_(True))
    if isinstance(audience, RoleAudience):
        q = q.filter(User.roles.any(Role.key.in_(audience.role_keys)))
    elif isinstance(audience, DepartmentAudience):
        q = q.filter(User.department.in_(audience.departments))
    return [uid for (uid,) in q.order_by(User.id.asc())]


@dataclass
class CampaignService:
    permissions: "PermissionChecker"
    audit: "AuditSink"
    notifier: "NotificationSink"

    def get_campaign(self, s: "Session", *, tenant_id: int, campaign_id: int) -> AckCampaign:
        c = s.get(AckCampaign, campaign_id)
        if not c or c.tenant_id != tenant_id:
            raise NotFound(f"Campaign {campaign_id} not found.", campaign_id=campaign_id)
        return c

    def list_campaigns(self, s: "Session", *, tenant_id: int, document_id: int | None = None) -> list[AckCampaign]:
        q = s.query(AckCampaign).filter(AckCampaign.tenant_id == tenant_id)
        if document_id is not None:
            q = q.filter(AckCampaign.document_id == document_id)
        return q.order_by(AckCampaign.created_at.desc(), AckCampaign.id.desc()).all()

    def list_assignments(self, s: "Session", *, tenant_id: int, campaign_id: int) -> list[AckAssignment]:
        self.get_campaign(s, tenant_id=tenant_id, campaign_id=campaign_id)
        return (
            s.query(AckAssignment)
            .filter(AckAssignment.campaign_id == campaign_id)
            .order_by(AckAssignment.id.asc())
            .all()
        )

    def pending_assignments_for(self, s: "Session", *, tenant_id: int, user: User) -> list[AckAssignment]:
        return (
            s.query(AckAssignment)
            .join(AckCampaign, AckCampaign.id == AckAssignment.campaign_id)
            .filter(
                AckCampaign.tenant_id == tenant_id,
                AckCampaign.status == CAMPAIGN_ACTIVE,
                AckAssignment.user_id == user.id,
                AckAssignment.status == ASSIGNMENT_PENDING,
            )
            .order_by(AckCampaign.deadline.asc(), AckAssignment.id.asc())
            .all()
        )

    def create_campaign(
        self,
        s: "Session",
        *,
        tenant_id: int,
        actor: User,
        document_id: int,
        title: str,
        audience: Audience,
        deadline: Any = None,
        quiz_id: int | None = None,
        description: str | None = None,
    ) -> AckCampaign:
        self.permissions.require(actor, "ack.manage")

        t = (title or "").strip()
        if not t:
            raise ValidationError("Title is required.", field="title")
        if len(t) > 255:
            raise ValidationError("Title must be 255 characters or fewer.", field="title")

        d = s.get(Document, document_id)
        if not d or d.tenant_id != tenant_id or d.deleted_at is not None:
            raise NotFound(f"Document {document_id} not found.", document_id=document_id)
        if d.status != DOC_STATUS_APPROVED:
            raise InvalidState("Acknowledgment campaigns require an approved document.", document_id=d.id, status=d.status)

        user_ids = resolve_audience(s, tenant_id=tenant_id, audience=audience)
        if not user_ids:
            raise ValidationError("Audience resolves to no users.", field="audience_ids", audience_type=audience.kind)

        now = datetime.utcnow()
        c = AckCampaign(
            tenant_id=tenant_id,
            document_id=d.id,
            title=t,
            description=(description or "").strip() or None,
            audience_type=audience.kind,
            audience_ids=audience.ids(),
            deadline=parse_deadline(deadline),
            quiz_id=quiz_id,
            status=CAMPAIGN_DRAFT,
            created_by_user_id=actor.id,
            created_at=now,
        )
        s.add(c)
        s.flush()

        assignments = [
            AckAssignment(campaign_id=c.id, user_id=uid, status=ASSIGNMENT_PENDING, created_at=now)
            for uid in user_ids
        ]
        c.assignments.extend(assignments)
        c.status = CAMPAIGN_ACTIVE
        s.flush()

        self.audit.log(
            s,
            tenant_id=tenant_id,
            actor=actor,
            action="ack.campaign.created",
            entity_type="AckCampaign",
            entity_id=c.id,
            payload={
                "document_id": d.id,
                "audience_type": c.audience_type,
                "audience_ids": c.audience_ids,
                "assignments": len(assignments),
            },
        )

        failed = 0
        for a in assignments:
            ok = notify_safely(
                self.notifier,
                a.user_id,
                d.id,
                {"kind": "ack_requested", "campaign_id": c.id, "assignment_id": a.id, "title": d.title},
            )
            if not ok:
                failed += 1
        if failed:
            logger.warning("Campaign %s: %s of %s notifications failed", c.id, failed, len(assignments))
        return c

    def acknowledge(
        self,
        s: "Session",
        *,
        tenant_id: int,
        actor: User,
        assignment_id: int,
        quiz_score: float | None = None,
        quiz_passed: bool | None = None,
    ) -> AckAssignment:
        a = s.get(AckAssignment, assignment_id)
        if not a or a.campaign.tenant_id != tenant_id:
            raise NotFound(f"Assignment {assignment_id} not found.", assignment_id=assignment_id)
        if actor is None or a.user_id != actor.id:
            raise Unauthorized("Only the assigned user can acknowledge this document.", assignment_id=a.id)
        if a.status == ASSIGNMENT_ACKNOWLEDGED:
            raise InvalidState("Assignment already acknowledged.", assignment_id=a.id)

        c = a.campaign
        if c.status != CAMPAIGN_ACTIVE:
            raise InvalidState("Campaign is not active.", campaign_id=c.id, status=c.status)

        if quiz_score is not None:
            try:
                a.quiz_score = float(quiz_score)
            except (TypeError, ValueError):
                raise ValidationError("quiz_score must be a number.", field="quiz_score")
        if quiz_passed is not None:
            a.quiz_passed = bool(quiz_passed)

        if c.quiz_id is not None and not a.quiz_passed:
            s.flush()
            self.audit.log(
                s,
                tenant_id=tenant_id,
                actor=actor,
                action="ack.assignment.quiz_failed",
                entity_type="AckAssignment",
                entity_id=a.id,
                payload={"campaign_id": c.id, "quiz_id": c.quiz_id, "quiz_score": a.quiz_score},
            )
            return a

        now = datetime.utcnow()
        a.status = ASSIGNMENT_ACKNOWLEDGED
        a.completed_at = now
        s.flush()

        self.audit.log(
            s,
            tenant_id=tenant_id,
            actor=actor,
            action="ack.assignment.acknowledged",
            entity_type="AckAssignment",
            entity_id=a.id,
            payload={"campaign_id": c.id, "document_id": c.document_id, "quiz_score": a.quiz_score},
        )

        remaining = (
            s.query(AckAssignment.id)
            .filter(AckAssignment.campaign_id == c.id, AckAssignment.status != ASSIGNMENT_ACKNOWLEDGED)
            .count()
        )
        if remaining == 0:
            c.status = CAMPAIGN_COMPLETED
            c.completed_at = now
            s.flush()
            self.audit.log(
                s,
                tenant_id=tenant_id,
                actor=actor,
                action="ack.campaign.completed",
                entity_type="AckCampaign",
                entity_id=c.id,
                payload={"document_id": c.document_id},
            )
        return a
