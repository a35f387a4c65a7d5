"""
Service wiring: collaborators are built once from config and injected into each
service at construction. Stored on `app.extensions["cdms"]`.
"""
from __future__ import annotations

from dataclasses import dataclass

from flask import Flask, current_app

from app.cdms.audit import AuditSink
from app.cdms.extraction import extractor_from_config
from app.cdms.modules.acknowledgments.service import CampaignService
from app.cdms.modules.approvals.service import WorkflowService
from app.cdms.modules.document_control.service import DocumentService
from app.cdms.notifications import LoggingNotificationSink, NotificationSink
from app.cdms.rbac import PermissionChecker
from app.cdms.scanning import scanner_from_config
from app.cdms.storage import storage_from_config
from app.cdms.tasks import PostProcessor


@dataclass
class Services:
    documents: DocumentService
    workflows: WorkflowService
    campaigns: CampaignService
    postprocessor: PostProcessor


def build_services(config: dict, *, notifier: NotificationSink | None = None) -> Services:
    permissions = PermissionChecker()
    audit = AuditSink()
    notifier = notifier or LoggingNotificationSink()
    return Services(
        documents=DocumentService(
            permissions=permissions,
            audit=audit,
            storage=storage_from_config(config),
            extractor=extractor_from_config(config),
            scanner=scanner_from_config(config),
        ),
        workflows=WorkflowService(
            permissions=permissions,
            audit=audit,
            notifier=notifier,
            strict_sequential=bool(config.get("APPROVAL_STRICT_SEQUENTIAL", True)),
        ),
        campaigns=CampaignService(permissions=permissions, audit=audit, notifier=notifier),
        postprocessor=PostProcessor(mode=(config.get("POSTPROCESS_MODE") or "thread")),
    )


def get_services(app: Flask | None = None) -> Services:
    app = app or current_app
    return app.extensions["cdms"]
