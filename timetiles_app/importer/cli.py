"""
Importer CLI commands (``flask importer ...``).

Geocoding and quota services are imported inside the commands that use them.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo, with_appcontext

from timetiles_app.importer.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from timetiles_app.importer.context import build_pipeline_context
from timetiles_app.importer.contracts import ImportProgress
from timetiles_app.importer.errors import (
    ImporterError,
    ImportJobNotFound,
    ProviderConfigError,
    QuotaExceededError,
    SchemaApprovalError,
    StageConflict,
    StageQueueError,
)
from timetiles_app.importer.pipeline import (
    approve_schema,
    register_import_file,
    register_url_import,
    reject_schema,
    run_schema_maintenance,
    start_import_job,
)
from timetiles_app.importer.utils import allowed_file, store_import_file
from timetiles_app.models import Dataset, GeocodingProvider, ImportJob, User
from timetiles_app.models.base import db
from timetiles_app.utils.importer import is_importer_enabled


@click.group(name="importer", invoke_without_command=True)
@click.pass_context
def importer_cli(ctx):
    """
    Import pipeline management commands.

    Displays the importer state when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_importer_enabled(app):
        raise click.ClickException(
            "Importer is disabled via IMPORTER_ENABLED=false. " "Enable it to run importer CLI commands."
        )
    if ctx.invoked_subcommand is None:
        state = app.extensions.get("importer", {})
        click.echo(f"Importer enabled (queue: {DEFAULT_QUEUE_NAME}, worker_enabled: {state.get('worker_enabled')})")


def get_disabled_importer_group() -> click.Group:
    """
    Return a minimal command group that informs the operator the importer is disabled.
    """

    @click.group(name="importer", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Importer commands are unavailable because IMPORTER_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Optional[Celery]:
    """
    Retrieve the registered Celery instance, raising a helpful error if missing.
    """
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Importer Celery app is unavailable. Ensure IMPORTER_ENABLED=true and the "
            "importer package initialises before running worker commands."
        )
    return celery_app


def _load_context(ctx):
    app = ctx.ensure_object(ScriptInfo).load_app()
    return app, build_pipeline_context(app)


# worker -------------------------------------------------------------------


@importer_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the importer background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    state = app.extensions.get("importer", {})
    if not state.get("worker_enabled") and not app.config.get("IMPORTER_WORKER_ENABLED"):
        click.echo(
            "Warning: IMPORTER_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option(
    "--pool",
    type=str,
    help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').",
)
@click.option(
    "--queues",
    default=DEFAULT_QUEUE_NAME,
    show_default=True,
    help="Comma-separated queue list to consume.",
)
@click.option("--beat/--no-beat", default=False, help="Embed the beat scheduler for the maintenance tasks.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str, beat: bool):
    """
    Start the Celery worker in the current process.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)

    state = app.extensions.get("importer", {})
    if state is not None:
        state["worker_enabled"] = True

    argv = [
        "worker",
        "--loglevel",
        loglevel,
        "-Q",
        queues,
    ]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])
    if beat:
        argv.append("--beat")

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting importer worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """
    Validate worker connectivity by executing the heartbeat task.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("importer.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'importer.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    except Exception as exc:  # pragma: no cover - surfacing unexpected errors
        raise click.ClickException(f"Worker ping failed: {exc}") from exc

    click.echo(json.dumps(payload, indent=2))


# jobs ---------------------------------------------------------------------


@importer_cli.command("start-job")
@click.option(
    "--file",
    "file_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="CSV or Excel file to import.",
)
@click.option("--url", help="Download the file to import from this URL instead.")
@click.option("--dataset-id", required=True, type=int, help="Target dataset.")
@click.option("--user-id", type=int, help="Owner whose quotas gate the import.")
@click.option(
    "--sheet",
    "sheets",
    type=int,
    multiple=True,
    help="Sheet index to import (repeatable; defaults to the first sheet).",
)
@with_appcontext
@click.pass_context
def importer_start_job(
    ctx,
    file_path: Optional[Path],
    url: Optional[str],
    dataset_id: int,
    user_id: Optional[int],
    sheets: tuple[int, ...],
):
    """Store FILE (or download URL), register it and queue one import job per sheet."""
    app, context = _load_context(ctx)
    if (file_path is None) == (url is None):
        raise click.ClickException("Pass exactly one of --file or --url.")
    if file_path is not None and not allowed_file(file_path.name):
        raise click.ClickException(f"Unsupported file type: {file_path.name}")
    if db.session.get(Dataset, dataset_id) is None:
        raise click.ClickException(f"Dataset {dataset_id} not found.")

    try:
        if url is not None:
            import_file = register_url_import(context, url, user_id=user_id)
        else:
            stored_path, mime_type = store_import_file(file_path, app)
            import_file = register_import_file(
                context,
                stored_path.name,
                original_name=file_path.name,
                mime_type=mime_type,
                file_size=stored_path.stat().st_size,
                user_id=user_id,
            )
        jobs = []
        for sheet_index in sheets or (0,):
            job, result = start_import_job(context, import_file.id, dataset_id, sheet_index=sheet_index)
            jobs.append({"import_job_id": job.id, "sheet_index": sheet_index, "transition": result.as_dict()})
    except QuotaExceededError as exc:
        raise click.ClickException(f"Quota exceeded: {exc}") from exc
    except ImporterError as exc:
        raise click.ClickException(str(exc)) from exc

    app.logger.info(
        "Import queued via CLI",
        extra={"importer_file_id": import_file.id, "importer_dataset_id": dataset_id, "user_id": user_id},
    )
    click.echo(json.dumps({"import_file_id": import_file.id, "jobs": jobs}))


@importer_cli.command("job-status")
@click.option("--job-id", required=True, type=int)
@with_appcontext
def importer_job_status(job_id: int):
    """Print the stage, progress and results of an import job."""
    job = db.session.get(ImportJob, job_id)
    if job is None:
        raise click.ClickException(f"Import job {job_id} not found.")
    click.echo(
        json.dumps(
            {
                "import_job_id": job.id,
                "stage": job.stage.value,
                "progress": ImportProgress.coerce(job.progress_json).as_dict(job.stage),
                "results": job.results_json or {},
                "errors": len(job.error_log_json or []),
            },
            indent=2,
        )
    )


@importer_cli.command("approve")
@click.option("--job-id", required=True, type=int)
@click.option("--user-id", type=int, help="Approving user.")
@click.option("--notes", help="Approval notes stored on the schema version.")
@with_appcontext
@click.pass_context
def importer_approve(ctx, job_id: int, user_id: Optional[int], notes: Optional[str]):
    """Approve the pending schema changes of a job awaiting approval."""
    _, context = _load_context(ctx)
    try:
        result = approve_schema(job_id, context, approved_by_id=user_id, notes=notes)
    except (ImportJobNotFound, SchemaApprovalError, StageConflict, StageQueueError) as exc:
        db.session.rollback()
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps({"import_job_id": job_id, "approved": True, "transition": result.as_dict()}))


@importer_cli.command("reject")
@click.option("--job-id", required=True, type=int)
@click.option("--user-id", type=int, help="Rejecting user.")
@click.option("--reason", help="Reason recorded in the job's error log.")
@with_appcontext
@click.pass_context
def importer_reject(ctx, job_id: int, user_id: Optional[int], reason: Optional[str]):
    """Reject the pending schema changes; the job fails."""
    _, context = _load_context(ctx)
    try:
        result = reject_schema(job_id, context, rejected_by_id=user_id, reason=reason)
    except (ImportJobNotFound, SchemaApprovalError, StageConflict) as exc:
        db.session.rollback()
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps({"import_job_id": job_id, "approved": False, "transition": result.as_dict()}))


# maintenance ----------------------------------------------------------------


@importer_cli.command("schema-maintenance")
@click.option("--force", is_flag=True, help="Regenerate schemas even when they look fresh.")
@click.option("--dataset-id", "dataset_ids", type=int, multiple=True, help="Restrict to these datasets.")
@click.option("--max-datasets", type=int, help="Upper bound of datasets checked in one run.")
@with_appcontext
@click.pass_context
def importer_schema_maintenance(ctx, force: bool, dataset_ids: tuple[int, ...], max_datasets: Optional[int]):
    """Regenerate dataset schemas that fell behind their stored events."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    limit = max_datasets or app.config.get("SCHEMA_MAINTENANCE_MAX_DATASETS", 100)
    summary = run_schema_maintenance(db.session, max_datasets=int(limit), force=force, dataset_ids=dataset_ids or None)
    click.echo(json.dumps(summary.as_dict(), indent=2))


@importer_cli.command("reset-quotas")
@with_appcontext
def importer_reset_quotas():
    """Reset every user's daily quota counters."""
    from timetiles_app.services.quota_service import QuotaService

    reset = QuotaService(db.session).reset_all_daily_counters()
    db.session.commit()
    click.echo(f"Reset daily quota counters for {reset} user(s).")


@importer_cli.command("quota-summary")
@click.option("--user-id", required=True, type=int)
@with_appcontext
def importer_quota_summary(user_id: int):
    """Show a user's effective quotas and current usage."""
    from timetiles_app.services.quota_service import QuotaService

    user = db.session.get(User, user_id)
    if user is None:
        raise click.ClickException(f"User {user_id} not found.")
    click.echo(json.dumps(QuotaService(db.session).get_quota_summary(user), indent=2))


# geocoding providers -------------------------------------------------------


@importer_cli.group(name="providers")
def providers_group():
    """Manage geocoding providers."""


@providers_group.command("load")
@click.argument("config_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@with_appcontext
def providers_load(config_path: Path):
    """Create or update geocoding providers from a YAML file."""
    from timetiles_app.services.geocoding.provider_config import load_provider_configs, sync_providers

    try:
        configs = load_provider_configs(config_path)
    except ProviderConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    created, updated = sync_providers(db.session, configs)
    db.session.commit()
    click.echo(f"Loaded {len(configs)} provider(s): {created} created, {updated} updated.")


@providers_group.command("list")
@with_appcontext
def providers_list():
    """List configured geocoding providers in priority order."""
    providers = db.session.execute(
        db.select(GeocodingProvider).order_by(GeocodingProvider.priority, GeocodingProvider.name)
    ).scalars()
    rows = [
        {
            "name": provider.name,
            "type": provider.provider_type.value,
            "enabled": provider.enabled,
            "priority": provider.priority,
            "total_requests": provider.total_requests,
            "failed_requests": provider.failed_requests,
        }
        for provider in providers
    ]
    if not rows:
        click.echo("No geocoding providers configured; built-in defaults apply.")
        return
    click.echo(json.dumps(rows, indent=2))
