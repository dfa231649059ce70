"""Admission of new import jobs through the owner's quotas."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING
from urllib.parse import urlsplit
from uuid import uuid4

import requests
from werkzeug.utils import secure_filename

from timetiles_app.importer.contracts import ImportProgress
from timetiles_app.importer.errors import ImporterError, UrlFetchError
from timetiles_app.importer.utils import IMPORT_EXTENSIONS
from timetiles_app.models import Dataset, ImportFile, ImportFileStatus, ImportJob, ImportStage, User
from timetiles_app.services.quota_constants import QuotaType, UsageType

if TYPE_CHECKING:
    from timetiles_app.importer.context import PipelineContext

    from .transitions import TransitionResult

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024
DOWNLOAD_CHUNK_SIZE = 64 * 1024

CONTENT_TYPE_EXTENSIONS = {
    "text/csv": "csv",
    "application/csv": "csv",
    "application/vnd.ms-excel": "xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
}
EXTENSION_MIME_TYPES = {
    "csv": "text/csv",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}


def start_import_job(
    context: "PipelineContext",
    import_file_id: int,
    dataset_id: int,
    *,
    sheet_index: int = 0,
) -> tuple[ImportJob, "TransitionResult"]:
    """
    Create an import job for one sheet of ``import_file_id`` and queue its first stage.

    The owner's daily job quota and file size limit are checked first;
    ``QuotaExceededError`` propagates and no job is created. When the first
    task cannot be queued the job is failed and ``StageQueueError`` propagates.
    """
    session = context.session
    import_file = session.get(ImportFile, import_file_id)
    if import_file is None:
        raise ImporterError(f"Import file {import_file_id} not found.")
    if session.get(Dataset, dataset_id) is None:
        raise ImporterError(f"Dataset {dataset_id} not found.")

    user = session.get(User, import_file.user_id) if import_file.user_id is not None else None
    context.quota_service.validate_quota(user, QuotaType.IMPORT_JOBS_PER_DAY, 1)
    if import_file.file_size:
        context.quota_service.validate_quota(user, QuotaType.FILE_SIZE_MB, import_file.file_size / BYTES_PER_MB)

    job = ImportJob(
        dataset_id=dataset_id,
        import_file_id=import_file_id,
        sheet_index=sheet_index,
        stage=ImportStage.ANALYZE_DUPLICATES,
        progress_json=ImportProgress().as_dict(),
        started_at=datetime.now(timezone.utc),
    )
    import_file.status = ImportFileStatus.PROCESSING
    session.add(job)
    session.commit()

    result = context.transitions.start(job)
    if user is not None:
        context.quota_service.increment_usage(user.id, UsageType.IMPORT_JOBS_TODAY)
        session.commit()

    log = logger.info if result.success else logger.warning
    log(
        "Import job %s started for file %s",
        job.id,
        import_file_id,
        extra={
            "importer_job_id": job.id,
            "importer_file_id": import_file_id,
            "importer_dataset_id": dataset_id,
            "importer_transition": result.as_dict(),
        },
    )
    return job, result


def register_import_file(
    context: "PipelineContext",
    filename: str,
    *,
    original_name: str | None = None,
    mime_type: str | None = None,
    file_size: int | None = None,
    user_id: int | None = None,
) -> ImportFile:
    """
    Record a stored file as a pending ``ImportFile``.

    The owner's daily upload count and file size limit gate the intake; the
    upload counter is charged only once the row is committed.
    """
    session = context.session
    user = session.get(User, user_id) if user_id is not None else None
    if user_id is not None and user is None:
        raise ImporterError(f"User {user_id} not found.")
    context.quota_service.validate_quota(user, QuotaType.FILE_UPLOADS_PER_DAY, 1)
    if file_size:
        context.quota_service.validate_quota(user, QuotaType.FILE_SIZE_MB, file_size / BYTES_PER_MB)

    import_file = ImportFile(
        filename=filename,
        original_name=original_name,
        mime_type=mime_type,
        file_size=file_size,
        user_id=user_id,
        status=ImportFileStatus.PENDING,
    )
    session.add(import_file)
    session.commit()
    if user is not None:
        context.quota_service.increment_usage(user.id, UsageType.FILE_UPLOADS_TODAY)
        session.commit()
    logger.info(
        "Import file %s registered",
        import_file.id,
        extra={"importer_file_id": import_file.id, "importer_file_size": file_size, "user_id": user_id},
    )
    return import_file


def _detect_extension(url: str, content_type: str | None) -> str | None:
    media_type = (content_type or "").split(";", 1)[0].strip().lower()
    if media_type in CONTENT_TYPE_EXTENSIONS:
        return CONTENT_TYPE_EXTENSIONS[media_type]
    suffix = PurePosixPath(urlsplit(url).path).suffix.lower().lstrip(".")
    return suffix if suffix in IMPORT_EXTENSIONS else None


def _download(response: requests.Response, url: str, target: Path, max_bytes: int) -> int:
    written = 0
    try:
        with target.open("wb") as handle:
            for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                if not chunk:
                    continue
                written += len(chunk)
                if written > max_bytes:
                    raise UrlFetchError(url, f"file too large (more than {max_bytes} bytes)")
                handle.write(chunk)
    except requests.RequestException as exc:
        target.unlink(missing_ok=True)
        raise UrlFetchError(url, f"download interrupted: {exc}") from exc
    except UrlFetchError:
        target.unlink(missing_ok=True)
        raise
    return written


def register_url_import(
    context: "PipelineContext",
    url: str,
    *,
    user_id: int | None = None,
    http: requests.Session | None = None,
) -> ImportFile:
    """
    Download ``url`` into the upload directory and register it like an uploaded file.

    The owner's daily URL fetch quota is checked before any request is made
    and charged only once the ``ImportFile`` is committed. Network failures,
    HTTP errors, oversized bodies and unsupported content types raise
    ``UrlFetchError``; nothing is left in the upload directory in that case.
    """
    session = context.session
    user = session.get(User, user_id) if user_id is not None else None
    if user_id is not None and user is None:
        raise ImporterError(f"User {user_id} not found.")
    context.quota_service.validate_quota(user, QuotaType.URL_FETCHES_PER_DAY, 1)
    if context.upload_dir is None:
        raise ImporterError("No upload directory is configured for remote imports.")

    settings = context.settings
    http = http or requests.Session()
    try:
        response = http.get(url, stream=True, timeout=settings.url_fetch_timeout_seconds)
    except requests.RequestException as exc:
        raise UrlFetchError(url, f"request failed: {exc}") from exc

    try:
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise UrlFetchError(url, f"HTTP {response.status_code}") from exc

        declared_size = response.headers.get("Content-Length")
        if declared_size and declared_size.isdigit() and int(declared_size) > settings.url_fetch_max_bytes:
            raise UrlFetchError(url, f"file too large ({declared_size} bytes)")

        content_type = response.headers.get("Content-Type")
        extension = _detect_extension(url, content_type)
        if extension is None:
            raise UrlFetchError(url, f"unsupported content type {content_type or 'unknown'}")

        target = Path(context.upload_dir) / f"{uuid4().hex}.{extension}"
        file_size = _download(response, url, target, settings.url_fetch_max_bytes)
    finally:
        response.close()

    original_name = secure_filename(PurePosixPath(urlsplit(url).path).name) or f"download.{extension}"
    try:
        import_file = register_import_file(
            context,
            target.name,
            original_name=original_name,
            mime_type=EXTENSION_MIME_TYPES[extension],
            file_size=file_size,
            user_id=user_id,
        )
    except ImporterError:
        target.unlink(missing_ok=True)
        raise

    if user is not None:
        context.quota_service.increment_usage(user.id, UsageType.URL_FETCHES_TODAY)
        session.commit()
    logger.info(
        "Remote import file %s fetched",
        import_file.id,
        extra={"importer_file_id": import_file.id, "importer_source_url": url, "importer_file_size": file_size},
    )
    return import_file
