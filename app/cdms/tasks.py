"""
Off-request post-processing of uploaded versions (AV scan + text extraction).

Dispatch happens only after the upload transaction has committed so the worker can
see the new version row. `thread` mode runs the work on a daemon thread with its own
app context and session; `inline` runs it before returning (tests, scripts).
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from flask import Flask

from app.cdms.db import session_scope

logger = logging.getLogger(__name__)

# In-memory registry of running jobs (version_id -> Thread)
_running: dict[int, threading.Thread] = {}


@dataclass
class PostProcessor:
    mode: str = "thread"

    def dispatch(self, app: Flask, *, version_id: int, extract_text: bool) -> None:
        if self.mode == "inline":
            self._run(app, version_id, extract_text)
            return

        t = threading.Thread(
            target=self._run,
            args=(app, version_id, extract_text),
            name=f"cdms-postprocess-{version_id}",
            daemon=True,
        )
        _running[version_id] = t
        t.start()

    def _run(self, app: Flask, version_id: int, extract_text: bool) -> None:
        from app.cdms.services import get_services

        try:
            with app.app_context():
                documents = get_services(app).documents
                with session_scope(app) as s:
                    documents.process_version(s, version_id=version_id, extract_text=extract_text)
        except Exception:
            logger.exception("Post-processing failed (version_id=%s)", version_id)
        finally:
            _running.pop(version_id, None)


def running_jobs() -> list[int]:
    return [vid for vid, t in list(_running.items()) if t.is_alive()]
