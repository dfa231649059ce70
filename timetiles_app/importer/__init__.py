"""
Import pipeline package.

Provides conditional blueprint and CLI registration and wires the Celery app
into ``app.extensions['importer']`` while staying inert when the importer is
disabled.
"""

from __future__ import annotations

from flask import Flask

from timetiles_app.utils.importer import is_importer_enabled, is_worker_enabled

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_importer_group, importer_cli
from .context import PipelineContext, PipelineSettings, build_pipeline_context
from .queue import ImportTask, JobQueue
from .views import importer_blueprint

IMPORTER_EXTENSION_KEY = "importer"

__all__ = [
    "IMPORTER_EXTENSION_KEY",
    "ImportTask",
    "JobQueue",
    "PipelineContext",
    "PipelineSettings",
    "build_pipeline_context",
    "get_celery_app",
    "init_importer",
]


def _ensure_extension_state(app: Flask) -> dict:
    state = app.extensions.setdefault(
        IMPORTER_EXTENSION_KEY,
        {
            "enabled": False,
            "worker_enabled": False,
            "celery_app": None,
        },
    )
    return state


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    # Avoid duplicate registrations when running tests
    command_name = importer_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(importer_cli)
    else:
        app.cli.add_command(get_disabled_importer_group())


def init_importer(app: Flask) -> None:
    """
    Conditionally mount the importer blueprint, CLI and Celery app.

    Records importer state inside ``app.extensions['importer']`` for reuse by
    the CLI, the health endpoints and ``build_pipeline_context``.
    """
    enabled = is_importer_enabled(app)
    state = _ensure_extension_state(app)
    state.update({"enabled": enabled, "worker_enabled": is_worker_enabled(app)})

    if not enabled:
        _set_cli(app, enabled=False)
        app.logger.info("Importer disabled via IMPORTER_ENABLED flag; skipping registration.")
        return

    ensure_celery_app(app, state)

    if importer_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(importer_blueprint)
    elif importer_blueprint.name not in app.blueprints:
        app.logger.warning(
            "Importer blueprint registration skipped because the app has already handled its first request."
        )
    _set_cli(app, enabled=True)
    app.logger.info("Importer enabled (worker_enabled=%s)", state["worker_enabled"])
