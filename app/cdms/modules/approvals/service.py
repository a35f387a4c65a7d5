from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.cdms.constants import DOC_STATUS_APPROVED, DOC_STATUS_DRAFT, DOC_STATUS_IN_REVIEW
from app.cdms.errors import InvalidState, NotFound, Unauthorized, ValidationError
from app.cdms.models import User
from app.cdms.modules.approvals.models import ApprovalStep, ApprovalWorkflow
from app.cdms.modules.document_control.models import Document
from app.cdms.modules.document_control.service import lock_document
from app.cdms.notifications import notify_safely
from app.cdms.utils import parse_deadline

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.cdms.audit import AuditSink
    from app.cdms.notifications import NotificationSink
    from app.cdms.rbac import PermissionChecker

logger = logging.getLogger(__name__)

WORKFLOW_TYPES = ("sequential", "parallel")
ACTIONS = ("approve", "reject")

STEP_PENDING = "pending"
STEP_APPROVED = "approved"
STEP_REJECTED = "rejected"

# Document status transitions reachable through workflows.
DOC_STATUS_TRANSITIONS = {
    DOC_STATUS_DRAFT: {DOC_STATUS_IN_REVIEW},
    DOC_STATUS_IN_REVIEW: {DOC_STATUS_APPROVED, DOC_STATUS_DRAFT},
    DOC_STATUS_APPROVED: set(),
}


def _transition_document(d: Document, new_status: str) -> None:
    allowed = DOC_STATUS_TRANSITIONS.get(d.status, set())
    if new_status not in allowed:
        raise InvalidState(f"Cannot transition document from '{d.status}' to '{new_status}'", document_id=d.id)
    d.status = new_status
    d.updated_at = datetime.utcnow()


def normalize_steps(steps: Any) -> list[dict[str, Any]]:
    """
    Validate `[{approver_id, step_order?, deadline?}, ...]`; step_order defaults to
    list position (1-based) and must be unique and >= 1.
    """
    if not isinstance(steps, (list, tuple)) or not steps:
        raise ValidationError("At least one approval step is required.", field="steps")

    out: list[dict[str, Any]] = []
    seen_orders: set[int] = set()
    for idx, raw in enumerate(steps, start=1):
        if not isinstance(raw, dict):
            raise ValidationError(f"Step {idx} must be an object.", field="steps")
        try:
            approver_id = int(raw.get("approver_id"))
        except (TypeError, ValueError):
            raise ValidationError(f"Step {idx} has an invalid approver_id.", field="steps")
        order_raw = raw.get("step_order")
        try:
            step_order = int(order_raw) if order_raw is not None else idx
        except (TypeError, ValueError):
            raise ValidationError(f"Step {idx} has an invalid step_order.", field="steps")
        if step_order < 1:
            raise ValidationError("step_order must be >= 1.", field="steps")
        if step_order in seen_orders:
            raise ValidationError(f"Duplicate step_order: {step_order}", field="steps")
        seen_orders.add(step_order)
        deadline = parse_deadline(raw.get("deadline"), field="steps")
        out.append({"approver_id": approver_id, "step_order": step_order, "deadline": deadline})
    return sorted(out, key=lambda st: st["step_order"])


def is_workflow_complete(workflow_type: str, steps: list[ApprovalStep]) -> bool:
    """
    sequential: every step approved, and no approved step follows an unapproved one.
    parallel: every step approved.
    """
    if not steps:
        return False
    if workflow_type == "parallel":
        return all(st.status == STEP_APPROVED for st in steps)

    seen_unapproved = False
    for st in sorted(steps, key=lambda x: x.step_order):
        if st.status != STEP_APPROVED:
            seen_unapproved = True
        elif seen_unapproved:
            return False
    return not seen_unapproved


def next_eligible_steps(workflow_type: str, steps: list[ApprovalStep]) -> list[ApprovalStep]:
    pending = [st for st in sorted(steps, key=lambda x: x.step_order) if st.status == STEP_PENDING]
    if not pending:
        return []
    if workflow_type == "sequential":
        return pending[:1]
    return pending


@dataclass
class WorkflowService:
    permissions: "PermissionChecker"
    audit: "AuditSink"
    notifier: "NotificationSink"
    strict_sequential: bool = True

    # -- lookups ---------------------------------------------------------------

    def get_workflow(self, s: "Session", *, tenant_id: int, workflow_id: int) -> ApprovalWorkflow:
        wf = s.get(ApprovalWorkflow, workflow_id)
        if not wf or wf.tenant_id != tenant_id:
            raise NotFound(f"Workflow {workflow_id} not found.", workflow_id=workflow_id)
        return wf

    def get_active_workflow(self, s: "Session", *, tenant_id: int, document_id: int) -> ApprovalWorkflow | None:
        return (
            s.query(ApprovalWorkflow)
            .filter(
                ApprovalWorkflow.tenant_id == tenant_id,
                ApprovalWorkflow.document_id == document_id,
                ApprovalWorkflow.status == "pending",
            )
            .one_or_none()
        )

    def list_workflows(self, s: "Session", *, tenant_id: int, document_id: int) -> list[ApprovalWorkflow]:
        return (
            s.query(ApprovalWorkflow)
            .filter(ApprovalWorkflow.tenant_id == tenant_id, ApprovalWorkflow.document_id == document_id)
            .order_by(ApprovalWorkflow.created_at.desc(), ApprovalWorkflow.id.desc())
            .all()
        )

    def pending_steps_for(self, s: "Session", *, tenant_id: int, user: User) -> list[ApprovalStep]:
        """
        Approval inbox: pending steps assigned to `user` that are actionable now.
        """
        rows = (
            s.query(ApprovalStep)
            .join(ApprovalWorkflow, ApprovalWorkflow.id == ApprovalStep.workflow_id)
            .filter(
                ApprovalWorkflow.tenant_id == tenant_id,
                ApprovalWorkflow.status == "pending",
                ApprovalStep.approver_user_id == user.id,
                ApprovalStep.status == STEP_PENDING,
            )
            .order_by(ApprovalStep.created_at.asc(), ApprovalStep.id.asc())
            .all()
        )
        out = []
        for st in rows:
            wf = st.workflow
            if wf.workflow_type == "sequential" and self.strict_sequential:
                if st not in next_eligible_steps(wf.workflow_type, wf.steps):
                    continue
            out.append(st)
        return out

    # -- actions ---------------------------------------------------------------

    def submit_for_approval(
        self,
        s: "Session",
        *,
        tenant_id: int,
        actor: User,
        document_id: int,
        workflow_type: str,
        steps: list[dict[str, Any]],
    ) -> ApprovalWorkflow:
        self.permissions.require(actor, "docs.submit")

        wt = (workflow_type or "").strip().lower()
        if wt not in WORKFLOW_TYPES:
            raise ValidationError(f"Invalid workflow type. Must be one of: {', '.join(WORKFLOW_TYPES)}", field="workflow_type")
        normalized = normalize_steps(steps)

        d = lock_document(s, document_id)
        if not d or d.tenant_id != tenant_id or d.deleted_at is not None:
            raise NotFound(f"Document {document_id} not found.", document_id=document_id)

        active = self.get_active_workflow(s, tenant_id=tenant_id, document_id=d.id)
        if active is not None:
            raise InvalidState("Document already has an active approval workflow.", document_id=d.id, workflow_id=active.id)
        if d.status != DOC_STATUS_DRAFT:
            raise InvalidState("Only draft documents can be submitted for approval.", document_id=d.id, status=d.status)

        approver_ids = {st["approver_id"] for st in normalized}
        found = {
            u.id
            for u in s.query(User).filter(
                User.id.in_(approver_ids),
                User.tenant_id == tenant_id,
                User.is_active.is_(True),
            )
        }
        missing = sorted(approver_ids - found)
        if missing:
            raise ValidationError("Approvers must be active users of this tenant.", field="steps", approver_ids=missing)

        now = datetime.utcnow()
        wf = ApprovalWorkflow(
            tenant_id=tenant_id,
            document_id=d.id,
            workflow_type=wt,
            status="pending",
            created_by_user_id=actor.id,
            created_at=now,
        )
        s.add(wf)
        s.flush()
        for st in normalized:
            s.add(
                ApprovalStep(
                    workflow_id=wf.id,
                    step_order=st["step_order"],
                    approver_user_id=st["approver_id"],
                    status=STEP_PENDING,
                    deadline=st["deadline"],
                    created_at=now,
                )
            )
        _transition_document(d, DOC_STATUS_IN_REVIEW)
        s.flush()
        s.refresh(wf, attribute_names=["steps"])

        self.audit.log(
            s,
            tenant_id=tenant_id,
            actor=actor,
            action="workflow.submitted",
            entity_type="ApprovalWorkflow",
            entity_id=wf.id,
            payload={
                "document_id": d.id,
                "workflow_type": wt,
                "approvers": [st["approver_id"] for st in normalized],
            },
        )

        for st in next_eligible_steps(wt, wf.steps):
            notify_safely(
                self.notifier,
                st.approver_user_id,
                d.id,
                {"kind": "approval_requested", "workflow_id": wf.id, "step_id": st.id, "title": d.title},
            )
        return wf

    def process_action(
        self,
        s: "Session",
        *,
        tenant_id: int,
        actor: User,
        workflow_id: int,
        step_id: int,
        action: str,
        comments: str | None = None,
    ) -> ApprovalWorkflow:
        act = (action or "").strip().lower()
        if act not in ACTIONS:
            raise ValidationError(f"Invalid action. Must be one of: {', '.join(ACTIONS)}", field="action")

        wf = self.get_workflow(s, tenant_id=tenant_id, workflow_id=workflow_id)
        # Serialize with other mutations of the same document.
        d = lock_document(s, wf.document_id)
        if d is None:
            raise NotFound(f"Document {wf.document_id} not found.", document_id=wf.document_id)

        step = s.get(ApprovalStep, step_id)
        if not step or step.workflow_id != wf.id:
            raise NotFound(f"Step {step_id} not found in workflow {wf.id}.", workflow_id=wf.id, step_id=step_id)
        if wf.status != "pending":
            raise InvalidState("Workflow is no longer pending.", workflow_id=wf.id, status=wf.status)
        if step.status != STEP_PENDING:
            raise InvalidState("Step has already been acted on.", step_id=step.id, status=step.status)
        if actor is None or step.approver_user_id != actor.id:
            raise Unauthorized("Only the designated approver can act on this step.", step_id=step.id)

        if act == "approve" and wf.workflow_type == "sequential" and self.strict_sequential:
            blocking = [st.step_order for st in wf.steps if st.step_order < step.step_order and st.status == STEP_PENDING]
            if blocking:
                raise InvalidState(
                    "Earlier steps must be approved first.",
                    step_id=step.id,
                    waiting_on=sorted(blocking),
                )

        now = datetime.utcnow()
        step.status = STEP_APPROVED if act == "approve" else STEP_REJECTED
        step.comments = (comments or "").strip() or None
        step.completed_at = now
        s.flush()

        self.audit.log(
            s,
            tenant_id=tenant_id,
            actor=actor,
            action=f"workflow.step.{step.status}",
            entity_type="ApprovalStep",
            entity_id=step.id,
            payload={"workflow_id": wf.id, "document_id": d.id, "step_order": step.step_order},
            reason=step.comments,
        )

        if step.status == STEP_REJECTED:
            wf.status = "rejected"
            wf.completed_at = now
            _transition_document(d, DOC_STATUS_DRAFT)
            s.flush()
            self.audit.log(
                s,
                tenant_id=tenant_id,
                actor=actor,
                action="workflow.rejected",
                entity_type="ApprovalWorkflow",
                entity_id=wf.id,
                payload={"document_id": d.id, "step_id": step.id},
                reason=step.comments,
            )
            notify_safely(
                self.notifier,
                wf.created_by_user_id,
                d.id,
                {"kind": "approval_rejected", "workflow_id": wf.id, "title": d.title},
            )
            return wf

        # Re-read every step inside this transaction before deciding completion.
        steps = (
            s.query(ApprovalStep)
            .filter(ApprovalStep.workflow_id == wf.id)
            .order_by(ApprovalStep.step_order.asc())
            .all()
        )
        if is_workflow_complete(wf.workflow_type, steps):
            wf.status = "approved"
            wf.completed_at = now
            _transition_document(d, DOC_STATUS_APPROVED)
            s.flush()
            self.audit.log(
                s,
                tenant_id=tenant_id,
                actor=actor,
                action="workflow.approved",
                entity_type="ApprovalWorkflow",
                entity_id=wf.id,
                payload={"document_id": d.id, "version": d.current_version},
            )
            notify_safely(
                self.notifier,
                wf.created_by_user_id,
                d.id,
                {"kind": "approval_completed", "workflow_id": wf.id, "title": d.title},
            )
            return wf

        eligible = next_eligible_steps(wf.workflow_type, steps)
        if eligible:
            nxt = eligible[0]
            notify_safely(
                self.notifier,
                nxt.approver_user_id,
                d.id,
                {"kind": "approval_requested", "workflow_id": wf.id, "step_id": nxt.id, "title": d.title},
            )
        return wf
