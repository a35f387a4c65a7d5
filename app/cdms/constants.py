"""
Central constants for the document control application.
"""
from __future__ import annotations

DOCUMENT_TYPES = frozenset({"policy", "standard", "procedure", "instruction", "act", "other"})

CLASSIFICATIONS = frozenset({"Public", "Internal", "Confidential"})

# Document lifecycle: draft -> in_review -> approved, in_review -> draft on rejection.
DOC_STATUS_DRAFT = "draft"
DOC_STATUS_IN_REVIEW = "in_review"
DOC_STATUS_APPROVED = "approved"

AV_PENDING = "pending"
AV_CLEAN = "clean"
AV_INFECTED = "infected"

DEFAULT_REVIEW_PERIOD_MONTHS = 12

# Extensions accepted on upload (extraction support is narrower, see app.cdms.extraction).
ALLOWED_UPLOAD_EXTENSIONS = frozenset(
    {".pdf", ".docx", ".doc", ".txt", ".png", ".jpg", ".jpeg", ".tif", ".tiff"}
)

EXTENSION_TO_MIME = {
    ".pdf": "application/pdf",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".doc": "application/msword",
    ".txt": "text/plain",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
}

# Permission keys checked by the services (seeded by scripts/init_db.py).
PERMISSIONS = {
    "docs.view": "Docs: view",
    "docs.create": "Docs: create",
    "docs.edit": "Docs: edit drafts",
    "docs.delete": "Docs: delete drafts",
    "docs.download": "Docs: download",
    "docs.submit": "Docs: submit for approval",
    "docs.publish": "Docs: publish",
    "ack.manage": "Acknowledgments: manage campaigns",
}
