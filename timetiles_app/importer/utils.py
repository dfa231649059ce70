"""
Importer-specific utilities for locating and storing import files.
"""

from __future__ import annotations

import mimetypes
import shutil
from pathlib import Path
from typing import Iterable
from uuid import uuid4

from flask import current_app
from werkzeug.utils import secure_filename

DEFAULT_UPLOAD_SUBDIR = "import_uploads"
IMPORT_EXTENSIONS: tuple[str, ...] = ("csv", "xls", "xlsx")


def _normalize_upload_dir(configured_path: str | None, instance_path: str, *, default_subdir: str) -> Path:
    if not configured_path:
        return Path(instance_path) / default_subdir

    candidate = Path(configured_path)
    if candidate.is_absolute():
        return candidate

    return Path(instance_path) / candidate


def resolve_upload_directory(app) -> Path:
    """
    Determine and create (if necessary) the importer upload directory.
    """

    upload_dir = _normalize_upload_dir(
        app.config.get("IMPORTER_UPLOAD_DIR"),
        app.instance_path,
        default_subdir=DEFAULT_UPLOAD_SUBDIR,
    )
    upload_dir.mkdir(parents=True, exist_ok=True)
    return upload_dir


def allowed_file(filename: str, allowed_extensions: Iterable[str] = IMPORT_EXTENSIONS) -> bool:
    """
    Validate the filename extension against the allowed set.
    """

    if not filename or "." not in filename:
        return False
    extension = filename.rsplit(".", 1)[1].lower()
    return extension in {ext.lower() for ext in allowed_extensions}


def store_import_file(source: Path, app) -> tuple[Path, str | None]:
    """
    Copy ``source`` into the upload directory under a UUID-based name.

    Returns the stored path and the guessed MIME type. Stage handlers resolve
    the stored name relative to the same directory.
    """

    upload_dir = resolve_upload_directory(app)
    original_name = secure_filename(source.name)
    extension = Path(original_name).suffix.lower() or ".csv"
    target_path = upload_dir / f"{uuid4().hex}{extension}"
    shutil.copyfile(source, target_path)
    current_app.logger.debug("Importer file stored at %s", target_path)
    mime_type, _ = mimetypes.guess_type(original_name)
    return target_path, mime_type
