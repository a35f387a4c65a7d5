from __future__ import annotations

from flask import Blueprint, jsonify

from app.cdms.auth import login_required
from app.cdms.db import db_session
from app.cdms.rbac import require_permission
from app.cdms.services import get_services
from app.cdms.utils import current_user, json_payload

bp = Blueprint("approvals", __name__)


@bp.post("/documents/<int:doc_id>/submit")
@require_permission("docs.submit")
def submit_for_approval(doc_id: int):
    s = db_session()
    u = current_user()
    payload = json_payload()
    wf = get_services().workflows.submit_for_approval(
        s,
        tenant_id=u.tenant_id,
        actor=u,
        document_id=doc_id,
        workflow_type=payload.get("workflow_type") or "sequential",
        steps=payload.get("steps") or [],
    )
    s.commit()
    return jsonify(wf.to_dict()), 201


@bp.get("/documents/<int:doc_id>")
@require_permission("docs.view")
def list_document_workflows(doc_id: int):
    s = db_session()
    u = current_user()
    workflows = get_services().workflows.list_workflows(s, tenant_id=u.tenant_id, document_id=doc_id)
    return jsonify({"workflows": [wf.to_dict() for wf in workflows]})


@bp.get("/inbox")
@login_required
def inbox():
    s = db_session()
    u = current_user()
    steps = get_services().workflows.pending_steps_for(s, tenant_id=u.tenant_id, user=u)
    return jsonify({"steps": [dict(st.to_dict(), document_id=st.workflow.document_id) for st in steps]})


@bp.get("/<int:workflow_id>")
@require_permission("docs.view")
def workflow_detail(workflow_id: int):
    s = db_session()
    u = current_user()
    wf = get_services().workflows.get_workflow(s, tenant_id=u.tenant_id, workflow_id=workflow_id)
    return jsonify(wf.to_dict())


@bp.post("/<int:workflow_id>/steps/<int:step_id>/<action>")
@login_required
def step_action(workflow_id: int, step_id: int, action: str):
    # Approvers need no extra permission; the service checks the step's designated approver.
    s = db_session()
    u = current_user()
    wf = get_services().workflows.process_action(
        s,
        tenant_id=u.tenant_id,
        actor=u,
        workflow_id=workflow_id,
        step_id=step_id,
        action=action,
        comments=json_payload().get("comments"),
    )
    s.commit()
    return jsonify(wf.to_dict())
