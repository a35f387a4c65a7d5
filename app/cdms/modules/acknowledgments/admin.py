from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.cdms.auth import login_required
from app.cdms.db import db_session
from app.cdms.errors import ValidationError
from app.cdms.modules.acknowledgments.service import audience_from_request
from app.cdms.rbac import require_permission
from app.cdms.services import get_services
from app.cdms.utils import current_user, json_payload

bp = Blueprint("acknowledgments", __name__)


@bp.get("/campaigns")
@require_permission("ack.manage")
def list_campaigns():
    s = db_session()
    u = current_user()
    document_id = request.args.get("document_id", type=int)
    campaigns = get_services().campaigns.list_campaigns(s, tenant_id=u.tenant_id, document_id=document_id)
    return jsonify({"campaigns": [c.to_dict() for c in campaigns]})


@bp.post("/campaigns")
@require_permission("ack.manage")
def create_campaign():
    s = db_session()
    u = current_user()
    payload = json_payload()
    try:
        document_id = int(payload.get("document_id"))
    except (TypeError, ValueError):
        raise ValidationError("document_id is required.", field="document_id")
    quiz_id = payload.get("quiz_id")
    if quiz_id is not None:
        try:
            quiz_id = int(quiz_id)
        except (TypeError, ValueError):
            raise ValidationError("quiz_id must be an integer.", field="quiz_id")
    audience = audience_from_request(payload.get("audience_type") or "", payload.get("audience_ids"))
    c = get_services().campaigns.create_campaign(
        s,
        tenant_id=u.tenant_id,
        actor=u,
        document_id=document_id,
        title=payload.get("title") or "",
        audience=audience,
        deadline=payload.get("deadline"),
        quiz_id=quiz_id,
        description=payload.get("description"),
    )
    s.commit()
    return jsonify(c.to_dict()), 201


@bp.get("/campaigns/<int:campaign_id>/assignments")
@require_permission("ack.manage")
def list_assignments(campaign_id: int):
    s = db_session()
    u = current_user()
    rows = get_services().campaigns.list_assignments(s, tenant_id=u.tenant_id, campaign_id=campaign_id)
    return jsonify({"assignments": [a.to_dict() for a in rows]})


@bp.get("/mine")
@login_required
def my_assignments():
    s = db_session()
    u = current_user()
    rows = get_services().campaigns.pending_assignments_for(s, tenant_id=u.tenant_id, user=u)
    return jsonify({"assignments": [dict(a.to_dict(), document_id=a.campaign.document_id) for a in rows]})


@bp.post("/assignments/<int:assignment_id>/acknowledge")
@login_required
def acknowledge(assignment_id: int):
    s = db_session()
    u = current_user()
    payload = json_payload()
    a = get_services().campaigns.acknowledge(
        s,
        tenant_id=u.tenant_id,
        actor=u,
        assignment_id=assignment_id,
        quiz_score=payload.get("quiz_score"),
        quiz_passed=payload.get("quiz_passed"),
    )
    s.commit()
    return jsonify(a.to_dict())
