from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request, send_file

from app.cdms.db import db_session
from app.cdms.errors import ValidationError
from app.cdms.modules.document_control.service import EDITABLE_FIELDS, to_download_fileobj
from app.cdms.rbac import require_permission
from app.cdms.services import get_services
from app.cdms.utils import current_user, json_payload, parse_bool

bp = Blueprint("doc_control", __name__)


@bp.get("/")
@require_permission("docs.view")
def list_documents():
    s = db_session()
    u = current_user()
    docs = get_services().documents.list_documents(
        s,
        tenant_id=u.tenant_id,
        status=(request.args.get("status") or "").strip() or None,
        doc_type=(request.args.get("doc_type") or "").strip() or None,
        category=(request.args.get("category") or "").strip() or None,
        search=(request.args.get("q") or "").strip() or None,
    )
    return jsonify({"documents": [d.to_dict() for d in docs]})


@bp.post("/")
@require_permission("docs.create")
def create_document():
    s = db_session()
    u = current_user()
    payload = json_payload()
    d = get_services().documents.create_document(
        s,
        tenant_id=u.tenant_id,
        actor=u,
        title=payload.get("title") or "",
        doc_type=payload.get("doc_type") or "",
        classification=payload.get("classification") or "Internal",
        code=payload.get("code"),
        description=payload.get("description"),
        category=payload.get("category"),
        owner_user_id=payload.get("owner_user_id"),
        review_period_months=payload.get("review_period_months"),
    )
    s.commit()
    return jsonify(d.to_dict()), 201


@bp.get("/<int:doc_id>")
@require_permission("docs.view")
def document_detail(doc_id: int):
    s = db_session()
    u = current_user()
    d = get_services().documents.get_document(s, tenant_id=u.tenant_id, document_id=doc_id)
    return jsonify(d.to_dict())


@bp.patch("/<int:doc_id>")
@require_permission("docs.edit")
def update_document(doc_id: int):
    s = db_session()
    u = current_user()
    payload = json_payload()
    reason = payload.pop("reason", None)
    if "status" in payload:
        raise ValidationError("Document status changes only through approval workflows.", field="status")
    fields = {k: v for k, v in payload.items() if k in EDITABLE_FIELDS}
    d = get_services().documents.update_document(s, tenant_id=u.tenant_id, actor=u, document_id=doc_id, reason=reason, **fields)
    s.commit()
    return jsonify(d.to_dict())


@bp.delete("/<int:doc_id>")
@require_permission("docs.delete")
def delete_document(doc_id: int):
    s = db_session()
    u = current_user()
    reason = (json_payload().get("reason") or "").strip() or None
    get_services().documents.delete_document(s, tenant_id=u.tenant_id, actor=u, document_id=doc_id, reason=reason)
    s.commit()
    return "", 204


@bp.post("/<int:doc_id>/versions")
@require_permission("docs.edit")
def upload_version(doc_id: int):
    s = db_session()
    u = current_user()
    services = get_services()

    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationError("Choose a file to upload.", field="file")
    extract_text = parse_bool(request.form.get("extract_text"))

    v = services.documents.upload_version(
        s,
        tenant_id=u.tenant_id,
        actor=u,
        document_id=doc_id,
        file_bytes=f.read(),
        filename=f.filename,
        extract_text=extract_text,
    )
    s.commit()
    # Worker needs the committed row.
    services.postprocessor.dispatch(current_app._get_current_object(), version_id=v.id, extract_text=extract_text)
    return jsonify(v.to_dict()), 201


@bp.get("/<int:doc_id>/versions")
@require_permission("docs.view")
def list_versions(doc_id: int):
    s = db_session()
    u = current_user()
    versions = get_services().documents.list_versions(s, tenant_id=u.tenant_id, document_id=doc_id)
    return jsonify({"versions": [v.to_dict() for v in versions]})


@bp.get("/<int:doc_id>/versions/<int:version_number>/download")
@require_permission("docs.download")
def download_version(doc_id: int, version_number: int):
    s = db_session()
    u = current_user()
    v, data = get_services().documents.read_version_bytes(
        s, tenant_id=u.tenant_id, actor=u, document_id=doc_id, version_number=version_number
    )
    s.commit()
    return send_file(
        to_download_fileobj(data),
        mimetype=v.mime_type,
        as_attachment=True,
        download_name=v.filename,
    )


@bp.post("/<int:doc_id>/publish")
@require_permission("docs.publish")
def publish_document(doc_id: int):
    s = db_session()
    u = current_user()
    d = get_services().documents.publish_document(s, tenant_id=u.tenant_id, actor=u, document_id=doc_id)
    s.commit()
    return jsonify(d.to_dict())
