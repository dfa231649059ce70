"""
Importer blueprint endpoints for health checks, job progress and schema approval.
"""

from __future__ import annotations

from http import HTTPStatus

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request

from timetiles_app.models import ImportJob
from timetiles_app.models.base import db
from timetiles_app.utils.importer import is_importer_enabled

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .context import build_pipeline_context
from .contracts import DuplicateAnalysis, ImportProgress
from .errors import ImportJobNotFound, InvalidStageTransition, SchemaApprovalError, StageConflict, StageQueueError
from .pipeline import approve_schema, reject_schema

importer_blueprint = Blueprint("importer", __name__, url_prefix="/importer")


@importer_blueprint.get("/health")
def importer_healthcheck():
    """
    Lightweight health endpoint proving the importer blueprint mounted correctly.
    """
    importer_state = current_app.extensions.get("importer", {})
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": importer_state.get("enabled", False),
                "queue": DEFAULT_QUEUE_NAME,
            }
        ),
        200,
    )


@importer_blueprint.get("/worker_health")
def importer_worker_health():
    """
    Validate importer worker availability via the heartbeat task.
    """
    importer_state = current_app.extensions.get("importer", {})
    enabled = importer_state.get("enabled", False)
    worker_enabled = importer_state.get("worker_enabled", False)
    timeout_seconds = float(request.args.get("timeout", 5))

    payload = {
        "importer_enabled": enabled,
        "worker_enabled": worker_enabled,
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }

    if not enabled:
        payload["status"] = "disabled"
        return jsonify(payload), 200

    if not worker_enabled:
        payload["status"] = "disabled"
        payload["message"] = "Worker flag disabled; start the worker or set IMPORTER_WORKER_ENABLED=true."
        return jsonify(payload), 200

    celery_app = get_celery_app(current_app)
    if celery_app is None:
        payload["status"] = "error"
        payload["error"] = "celery_app_unavailable"
        return jsonify(payload), 500

    task = celery_app.tasks.get("importer.healthcheck")
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["status"] = "ok"
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
        return jsonify(payload), 200
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504
    except Exception as exc:  # pragma: no cover - surfaced to the caller
        current_app.logger.exception("Importer worker health check failed.", exc_info=exc)
        payload["status"] = "error"
        payload["error"] = str(exc)
        return jsonify(payload), 500


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"error": message}), status


def _ensure_importer_enabled_api():
    if not is_importer_enabled(current_app):
        return _json_error("Importer is disabled.", HTTPStatus.NOT_FOUND)
    return None


def _isoformat(value):
    return value.isoformat() if value else None


def _serialize_job(job: ImportJob) -> dict:
    progress = ImportProgress.coerce(job.progress_json)
    duplicates = DuplicateAnalysis.coerce(job.duplicates_json)
    error_log = list(job.error_log_json or [])
    return {
        "id": job.id,
        "import_job_id": job.id,
        "dataset_id": job.dataset_id,
        "import_file_id": job.import_file_id,
        "sheet_index": job.sheet_index,
        "stage": job.stage.value,
        "progress": progress.as_dict(job.stage),
        "duplicates": duplicates.as_dict()["summary"],
        "schema_validation": job.schema_validation_json or {},
        "schema_version": job.dataset_schema.version_number if job.dataset_schema is not None else None,
        "geocoding_stats": job.geocoding_stats_json or {},
        "results": job.results_json or {},
        "error_count": len(error_log),
        "errors": error_log[-20:],
        "started_at": _isoformat(job.started_at),
        "finished_at": _isoformat(job.finished_at),
    }


@importer_blueprint.get("/jobs/<int:job_id>")
def importer_job_detail(job_id: int):
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    job = db.session.get(ImportJob, job_id)
    if job is None:
        return _json_error(f"Import job {job_id} not found.", HTTPStatus.NOT_FOUND)
    return jsonify(_serialize_job(job)), HTTPStatus.OK


def _optional_int(payload: dict, key: str) -> int | None:
    value = payload.get(key)
    if value in (None, ""):
        return None
    return int(value)


def _apply_schema_decision(job_id: int, *, approve: bool):
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    payload = request.get_json(silent=True) or {}
    try:
        actor_id = _optional_int(payload, "approved_by_id" if approve else "rejected_by_id")
    except (TypeError, ValueError):
        return _json_error("User id must be an integer.", HTTPStatus.BAD_REQUEST)

    context = build_pipeline_context(current_app)
    try:
        if approve:
            result = approve_schema(job_id, context, approved_by_id=actor_id, notes=payload.get("notes"))
        else:
            result = reject_schema(job_id, context, rejected_by_id=actor_id, reason=payload.get("reason"))
    except ImportJobNotFound as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    except (SchemaApprovalError, StageConflict, InvalidStageTransition) as exc:
        db.session.rollback()
        return _json_error(str(exc), HTTPStatus.CONFLICT)
    except StageQueueError as exc:
        return _json_error(str(exc), HTTPStatus.SERVICE_UNAVAILABLE)

    job = db.session.get(ImportJob, job_id)
    current_app.logger.info(
        "Schema %s via API",
        "approved" if approve else "rejected",
        extra={"importer_job_id": job_id, "importer_stage": job.stage.value, "user_id": actor_id},
    )
    return jsonify({"job": _serialize_job(job), "transition": result.as_dict()}), HTTPStatus.OK


@importer_blueprint.post("/jobs/<int:job_id>/approve")
def importer_job_approve(job_id: int):
    return _apply_schema_decision(job_id, approve=True)


@importer_blueprint.post("/jobs/<int:job_id>/reject")
def importer_job_reject(job_id: int):
    return _apply_schema_decision(job_id, approve=False)
