"""
Job queue used by the stage orchestrator.

Pipeline code only ever enqueues through ``JobQueue.queue``; the Celery app is
resolved once per process or request scope and injected.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Mapping, Protocol

from celery import Celery

logger = logging.getLogger(__name__)


class ImportTask(str, enum.Enum):
    """Registered Celery task names of the import pipeline."""

    ANALYZE_DUPLICATES = "importer.pipeline.analyze_duplicates"
    DETECT_SCHEMA = "importer.pipeline.detect_schema"
    VALIDATE_SCHEMA = "importer.pipeline.validate_schema"
    CREATE_SCHEMA_VERSION = "importer.pipeline.create_schema_version"
    GEOCODE_BATCH = "importer.pipeline.geocode_batch"
    CREATE_EVENTS = "importer.pipeline.create_events"


class TaskQueue(Protocol):
    def queue(self, task: ImportTask, payload: Mapping[str, Any]) -> str | None: ...


class JobQueue:
    """Fire-and-forget enqueue of pipeline tasks onto the importer Celery app."""

    def __init__(self, celery_app: Celery):
        self.celery_app = celery_app

    def queue(self, task: ImportTask, payload: Mapping[str, Any]) -> str | None:
        if "import_job_id" not in payload:
            raise ValueError(f"Payload for {task.value} must carry import_job_id.")
        celery_task = self.celery_app.tasks[task.value]
        result = celery_task.apply_async(kwargs=dict(payload))
        logger.debug(
            "Queued importer task %s",
            task.value,
            extra={"importer_task": task.value, "importer_task_id": result.id, "importer_payload": dict(payload)},
        )
        return result.id
