"""
Domain error kinds shared by the document, approval and acknowledgment services.

Routes translate these into JSON responses (see `app.cdms.create_app`); anything that
is not a DocumentControlError is treated as an internal failure.
"""
from __future__ import annotations


class DocumentControlError(Exception):
    kind = "error"
    http_status = 500

    def __init__(self, message: str, **details: object) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFound(DocumentControlError):
    kind = "not_found"
    http_status = 404


class InvalidState(DocumentControlError):
    kind = "invalid_state"
    http_status = 409


class Unauthorized(DocumentControlError):
    kind = "unauthorized"
    http_status = 403


class ValidationError(DocumentControlError, ValueError):
    kind = "validation"
    http_status = 400


class ExternalFailure(DocumentControlError):
    kind = "external_failure"
    http_status = 502


class UnsupportedFileType(ExternalFailure):
    kind = "unsupported_file_type"

    def __init__(self, extension: str) -> None:
        super().__init__(f"Text extraction is not supported for file type: {extension or '(none)'}", extension=extension)
        self.extension = extension
