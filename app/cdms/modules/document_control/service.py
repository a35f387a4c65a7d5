from __future__ import annotations

import hashlib
import io
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_, select
from werkzeug.utils import secure_filename

from app.cdms.constants import (
    ALLOWED_UPLOAD_EXTENSIONS,
    AV_PENDING,
    CLASSIFICATIONS,
    DEFAULT_REVIEW_PERIOD_MONTHS,
    DOC_STATUS_APPROVED,
    DOC_STATUS_DRAFT,
    DOCUMENT_TYPES,
    EXTENSION_TO_MIME,
)
from app.cdms.errors import DocumentControlError, InvalidState, NotFound, ValidationError
from app.cdms.extraction import file_extension
from app.cdms.modules.document_control.models import Document, DocumentVersion

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.cdms.audit import AuditSink
    from app.cdms.extraction import TextExtractor
    from app.cdms.models import User
    from app.cdms.rbac import PermissionChecker
    from app.cdms.scanning import ScanEngine
    from app.cdms.storage import Storage

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "code", "description", "doc_type", "category", "classification", "review_period_months")


def file_digest_and_bytes(file_bytes: bytes) -> tuple[str, int]:
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def sanitize_upload_filename(filename: str) -> str:
    fn = secure_filename(filename or "")
    return fn or "document.bin"


def to_download_fileobj(file_bytes: bytes) -> io.BytesIO:
    bio = io.BytesIO(file_bytes)
    bio.seek(0)
    return bio


def mime_type_for(filename: str) -> str:
    return EXTENSION_TO_MIME.get(file_extension(filename), "application/octet-stream")


def version_storage_key(document_id: int, version_number: int, sha256: str, filename: str) -> str:
    # Checksum prefix keeps same-name re-uploads from overwriting an earlier blob.
    return f"documents/{document_id}/versions/{version_number}/{sha256[:12]}-{filename}"


def lock_document(s: "Session", document_id: int) -> Document | None:
    """
    Row-lock the document for the rest of the transaction (SELECT ... FOR UPDATE) and
    re-read its columns, so checks made after the lock see the committed row.
    SQLite ignores FOR UPDATE; it serializes writers anyway.
    """
    stmt = select(Document).where(Document.id == document_id).with_for_update()
    return s.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()


def _clean_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value).strip() or None


def _validate_title(title: Any) -> str:
    t = (str(title) if title is not None else "").strip()
    if not t:
        raise ValidationError("Title is required.", field="title")
    if len(t) > 255:
        raise ValidationError("Title must be 255 characters or fewer.", field="title")
    return t


def _validate_doc_type(doc_type: Any) -> str:
    dt = (str(doc_type) if doc_type is not None else "").strip().lower()
    if dt not in DOCUMENT_TYPES:
        raise ValidationError(
            f"Invalid document type. Must be one of: {', '.join(sorted(DOCUMENT_TYPES))}",
            field="doc_type",
        )
    return dt


def _validate_classification(classification: Any) -> str:
    c = (str(classification) if classification is not None else "").strip()
    if c not in CLASSIFICATIONS:
        raise ValidationError(
            f"Invalid classification. Must be one of: {', '.join(sorted(CLASSIFICATIONS))}",
            field="classification",
        )
    return c


def _validate_review_period(value: Any) -> int:
    try:
        months = int(value)
    except (TypeError, ValueError):
        raise ValidationError("review_period_months must be an integer.", field="review_period_months")
    if months < 1 or months > 120:
        raise ValidationError("review_period_months must be between 1 and 120.", field="review_period_months")
    return months


@dataclass
class DocumentService:
    """
    Document records and their version ledger.

    Methods take the caller's session and never commit; the route owns the
    transaction boundary.
    """

    permissions: "PermissionChecker"
    audit: "AuditSink"
    storage: "Storage"
    extractor: "TextExtractor"
    scanner: "ScanEngine"

    # -- lookups ---------------------------------------------------------------

    def get_document(self, s: "Session", *, tenant_id: int, document_id: int, for_update: bool = False) -> Document:
        d = lock_document(s, document_id) if for_update else s.get(Document, document_id)
        if not d or d.tenant_id != tenant_id or d.deleted_at is not None:
            raise NotFound(f"Document {document_id} not found.", document_id=document_id)
        return d

    def list_documents(
        self,
        s: "Session",
        *,
        tenant_id: int,
        status: str | None = None,
        doc_type: str | None = None,
        category: str | None = None,
        search: str | None = None,
    ) -> list[Document]:
        q = s.query(Document).filter(Document.tenant_id == tenant_id, Document.deleted_at.is_(None))
        if status:
            q = q.filter(Document.status == status)
        if doc_type:
            q = q.filter(Document.doc_type == doc_type)
        if category:
            q = q.filter(Document.category == category)
        if search:
            like = f"%{search.strip()}%"
            q = q.filter(or_(Document.title.ilike(like), Document.code.ilike(like), Document.description.ilike(like)))
        return q.order_by(Document.updated_at.desc(), Document.id.desc()).all()

    def list_versions(self, s: "Session", *, tenant_id: int, document_id: int) -> list[DocumentVersion]:
        self.get_document(s, tenant_id=tenant_id, document_id=document_id)
        return (
            s.query(DocumentVersion)
            .filter(DocumentVersion.document_id == document_id)
            .order_by(DocumentVersion.version_number.asc())
            .all()
        )

    def get_version(self, s: "Session", *, tenant_id: int, document_id: int, version_number: int) -> DocumentVersion:
        self.get_document(s, tenant_id=tenant_id, document_id=document_id)
        v = (
            s.query(DocumentVersion)
            .filter(DocumentVersion.document_id == document_id, DocumentVersion.version_number == version_number)
            .one_or_none()
        )
        if not v:
            raise NotFound(
                f"Version {version_number} of document {document_id} not found.",
                document_id=document_id,
                version_number=version_number,
            )
        return v

    def read_version_bytes(
        self,
        s: "Session",
        *,
        tenant_id: int,
        actor: "User",
        document_id: int,
        version_number: int,
    ) -> tuple[DocumentVersion, bytes]:
        self.permissions.require(actor, "docs.download")
        v = self.get_version(s, tenant_id=tenant_id, document_id=document_id, version_number=version_number)
        data = self.storage.read_bytes(v.storage_key)
        self.audit.log(
            s,
            tenant_id=tenant_id,
            actor=actor,
            action="document.version.downloaded",
            entity_type="DocumentVersion",
            entity_id=v.id,
            payload={"document_id": document_id, "version_number": version_number},
        )
        return v, data

    # -- authoring -------------------------------------------------------------

    def create_document(
        self,
        s: "Session",
        *,
        tenant_id: int,
        actor: "User",
        title: str,
        doc_type: str,
        classification: str = "Internal",
        code: str | None = None,
        description: str | None = None,
        category: str | None = None,
        owner_user_id: int | None = None,
        review_period_months: int | None = None,
    ) -> Document:
        self.permissions.require(actor, "docs.create")
        now = datetime.utcnow()
        d = Document(
            tenant_id=tenant_id,
            title=_validate_title(title),
            code=_clean_str(code),
            description=_clean_str(description),
            doc_type=_validate_doc_type(doc_type),
            category=_clean_str(category),
            classification=_validate_classification(classification),
            status=DOC_STATUS_DRAFT,
            current_version=0,
            owner_user_id=owner_user_id or actor.id,
            created_by_user_id=actor.id,
            review_period_months=(
                _validate_review_period(review_period_months)
                if review_period_months is not None
                else DEFAULT_REVIEW_PERIOD_MONTHS
            ),
            created_at=now,
            updated_at=now,
        )
        s.add(d)
        s.flush()

        self.audit.log(
            s,
            tenant_id=tenant_id,
            actor=actor,
            action="document.created",
            entity_type="Document",
            entity_id=d.id,
            payload={"title": d.title, "doc_type": d.doc_type, "classification": d.classification},
        )
        return d

    def update_document(
        self,
        s: "Session",
        *,
        tenant_id: int,
        actor: "User",
        document_id: int,
        reason: str | None = None,
        **fields: Any,
    ) -> Document:
        self.permissions.require(actor, "docs.edit")
        if "status" in fields:
            raise ValidationError("Document status changes only through approval workflows.", field="status")
        unknown = sorted(set(fields) - set(EDITABLE_FIELDS))
        if unknown:
            raise ValidationError(f"Unknown field(s): {', '.join(unknown)}", fields=unknown)

        d = self.get_document(s, tenant_id=tenant_id, document_id=document_id, for_update=True)
        if d.status == DOC_STATUS_APPROVED:
            raise InvalidState("Approved documents cannot be edited.", document_id=d.id, status=d.status)

        # Validate everything before touching the row.
        validated: dict[str, Any] = {}
        for key, value in fields.items():
            if key == "title":
                validated[key] = _validate_title(value)
            elif key == "doc_type":
                validated[key] = _validate_doc_type(value)
            elif key == "classification":
                validated[key] = _validate_classification(value)
            elif key == "review_period_months":
                validated[key] = _validate_review_period(value)
            else:
                validated[key] = _clean_str(value)

        changes = {}
        for key, new in validated.items():
            old = getattr(d, key)
            if new != old:
                changes[key] = {"old": old, "new": new}
                setattr(d, key, new)

        if changes:
            d.updated_at = datetime.utcnow()
            self.audit.log(
                s,
                tenant_id=tenant_id,
                actor=actor,
                action="document.updated",
                entity_type="Document",
                entity_id=d.id,
                payload={"changes": changes},
                reason=reason,
            )
        return d

    def upload_version(
        self,
        s: "Session",
        *,
        tenant_id: int,
        actor: "User",
        document_id: int,
        file_bytes: bytes,
        filename: str,
        extract_text: bool = False,
    ) -> DocumentVersion:
        """
        Store a new immutable version and advance the document's latest-version pointers.

        AV scanning and text extraction are not run here; the caller dispatches
        `process_version` once this transaction has committed.
        """
        self.permissions.require(actor, "docs.edit")
        d = self.get_document(s, tenant_id=tenant_id, document_id=document_id, for_update=True)
        if d.status != DOC_STATUS_DRAFT:
            raise InvalidState("Versions can only be uploaded while the document is draft.", document_id=d.id, status=d.status)

        safe_name = sanitize_upload_filename(filename)
        ext = file_extension(safe_name)
        if ext not in ALLOWED_UPLOAD_EXTENSIONS:
            raise ValidationError(f"File type not allowed: {ext or '(none)'}", field="file", extension=ext)
        if not file_bytes:
            raise ValidationError("Uploaded file is empty.", field="file")

        sha256, size_bytes = file_digest_and_bytes(file_bytes)
        mime_type = mime_type_for(safe_name)
        version_number = d.current_version + 1
        storage_key = version_storage_key(d.id, version_number, sha256, safe_name)

        v = DocumentVersion(
            document_id=d.id,
            version_number=version_number,
            filename=safe_name,
            storage_key=storage_key,
            mime_type=mime_type,
            size_bytes=size_bytes,
            checksum_sha256=sha256,
            av_scan_status=AV_PENDING,
            created_by_user_id=actor.id,
            created_at=datetime.utcnow(),
        )
        s.add(v)

        d.current_version = version_number
        d.storage_key = storage_key
        d.filename = safe_name
        d.mime_type = mime_type
        d.size_bytes = size_bytes
        d.checksum_sha256 = sha256
        d.ocr_text = None
        d.av_scan_status = AV_PENDING
        d.av_scan_result = None
        d.updated_at = datetime.utcnow()
        s.flush()
        # Blob goes in only after the rows flush; a failed commit can still orphan it.
        self.storage.put_bytes(storage_key, file_bytes, content_type=mime_type)

        self.audit.log(
            s,
            tenant_id=tenant_id,
            actor=actor,
            action="document.version.uploaded",
            entity_type="DocumentVersion",
            entity_id=v.id,
            payload={
                "document_id": d.id,
                "version_number": version_number,
                "filename": safe_name,
                "sha256": sha256,
                "size_bytes": size_bytes,
                "extract_text": extract_text,
            },
        )
        return v

    def process_version(self, s: "Session", *, version_id: int, extract_text: bool) -> DocumentVersion | None:
        """
        Post-processing callback: AV verdict, then optional text extraction.
        Never raises for collaborator failures; they are recorded on the version.
        """
        v = s.get(DocumentVersion, version_id)
        if not v:
            logger.warning("process_version: version %s no longer exists", version_id)
            return None

        data = self.storage.read_bytes(v.storage_key)

        try:
            verdict = self.scanner.scan(data)
            v.av_scan_status = verdict.verdict
            v.av_scan_result = verdict.detail[:512]
        except DocumentControlError as e:
            logger.error("AV scan failed (version_id=%s): %s", v.id, e.message)
            v.av_scan_result = f"scan failed: {e.message}"[:512]

        if extract_text:
            try:
                v.ocr_text = self.extractor.extract(data, v.filename)
                v.extraction_error = None
            except DocumentControlError as e:
                logger.warning("Text extraction failed (version_id=%s): %s", v.id, e.message)
                v.extraction_error = e.message[:512]

        # Pointer check and write happen under the document lock; a newer upload may have landed.
        d = lock_document(s, v.document_id)
        if d is not None and d.current_version == v.version_number:
            d.av_scan_status = v.av_scan_status
            d.av_scan_result = v.av_scan_result
            if extract_text:
                d.ocr_text = v.ocr_text
        s.flush()
        logger.info(
            "Post-processed version_id=%s av=%s text=%s",
            v.id,
            v.av_scan_status,
            "yes" if v.ocr_text else "no",
        )
        return v

    # -- lifecycle -------------------------------------------------------------

    def publish_document(self, s: "Session", *, tenant_id: int, actor: "User", document_id: int) -> Document:
        self.permissions.require(actor, "docs.publish")
        d = self.get_document(s, tenant_id=tenant_id, document_id=document_id, for_update=True)
        if d.status != DOC_STATUS_APPROVED:
            raise InvalidState("Only approved documents can be published.", document_id=d.id, status=d.status)

        now = datetime.utcnow()
        d.published_at = now
        d.published_by_user_id = actor.id
        d.updated_at = now

        self.audit.log(
            s,
            tenant_id=tenant_id,
            actor=actor,
            action="document.published",
            entity_type="Document",
            entity_id=d.id,
            payload={"version": d.current_version},
        )
        return d

    def delete_document(
        self,
        s: "Session",
        *,
        tenant_id: int,
        actor: "User",
        document_id: int,
        reason: str | None = None,
    ) -> Document:
        from app.cdms.modules.approvals.models import ApprovalWorkflow

        self.permissions.require(actor, "docs.delete")
        d = self.get_document(s, tenant_id=tenant_id, document_id=document_id, for_update=True)
        if d.status == DOC_STATUS_APPROVED:
            raise InvalidState("Approved documents cannot be deleted.", document_id=d.id, status=d.status)
        pending = (
            s.query(ApprovalWorkflow.id)
            .filter(ApprovalWorkflow.document_id == d.id, ApprovalWorkflow.status == "pending")
            .first()
        )
        if pending:
            raise InvalidState("Document has a pending approval workflow.", document_id=d.id, workflow_id=pending[0])

        now = datetime.utcnow()
        d.deleted_at = now
        d.updated_at = now

        self.audit.log(
            s,
            tenant_id=tenant_id,
            actor=actor,
            action="document.deleted",
            entity_type="Document",
            entity_id=d.id,
            payload={"title": d.title, "current_version": d.current_version},
            reason=reason,
        )
        return d
