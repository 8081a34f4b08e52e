from __future__ import annotations

import json
import logging
import time
from typing import Optional

import typer
import uvicorn

from sefdispatch import __version__
from sefdispatch.config import get_settings

app = typer.Typer(add_completion=False, help="sefdispatch CLI")


@app.callback()
def _root(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _dispatcher():
    from sefdispatch.database import init_db
    from sefdispatch.runtime import build_dispatcher

    settings = get_settings()
    if settings.ENVIRONMENT == "dev":
        init_db(create_tables=True)
    return build_dispatcher(settings=settings)


def _wait_forever(on_stop) -> None:
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        on_stop()


@app.command()
def start(
    host: Optional[str] = typer.Option(None, help="Bind host"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
    reload: bool = typer.Option(False, help="Auto-reload on changes (dev)"),
) -> None:
    settings = get_settings()
    uvicorn.run(
        "sefdispatch.api.app:app",
        host=host or settings.HOST,
        port=port or settings.PORT,
        reload=reload,
    )


@app.command()
def version() -> None:
    typer.echo(__version__)


@app.command()
def worker(
    job_type: Optional[str] = typer.Option(
        None, "--job-type", help="Only this job type (submit-invoice|process-webhook)"
    ),
    once: bool = typer.Option(False, help="Drain due jobs then exit"),
    max_jobs: int = typer.Option(100, help="Upper bound for --once"),
) -> None:
    """
    Run the queue workers.

    Without ``--once`` one thread per configured concurrency slot polls the
    job table until Ctrl+C.
    """
    dispatcher = _dispatcher()
    if job_type and job_type not in dispatcher.queue.job_types:
        typer.echo(f"Unknown job type: {job_type}", err=True)
        raise typer.Exit(1)

    if once:
        processed = dispatcher.queue.run_pending(job_type, max_jobs=max_jobs)
        typer.echo(f"Processed {processed} job(s).")
        return

    dispatcher.queue.start()
    typer.echo("Workers started. Press Ctrl+C to stop.", err=True)
    _wait_forever(dispatcher.queue.stop)
    typer.echo("Workers stopped.", err=True)


@app.command()
def scheduler() -> None:
    """Run maintenance sweeps and recurring invoice generation on their cron schedules."""
    dispatcher = _dispatcher()
    dispatcher.scheduled.start()
    for job_id, cron, _ in dispatcher.scheduled.schedule():
        typer.echo(f"  {job_id}: {cron}", err=True)
    typer.echo("Scheduler started. Press Ctrl+C to stop.", err=True)
    _wait_forever(dispatcher.scheduled.stop)
    typer.echo("Scheduler stopped.", err=True)


@app.command("recurring-run")
def recurring_run() -> None:
    """Generate invoices for every due recurring profile now."""
    result = _dispatcher().recurring.run_recurring_invoice_generation()
    typer.echo(json.dumps(result, indent=2))
    if result["failed"]:
        raise typer.Exit(1)


@app.command()
def sweep(
    name: str = typer.Argument(
        ..., help="retry|dead-letter|cleanup-jobs|cleanup-webhooks|metrics"
    ),
) -> None:
    """Run one maintenance sweep immediately."""
    dispatcher = _dispatcher()
    try:
        result = dispatcher.maintenance.run(name)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(1)
    typer.echo(json.dumps(result, indent=2))


@app.command("init-db")
def init_db_command() -> None:
    """Create all tables (ignored when SCHEMA_MODE=migrations)."""
    from sefdispatch.database import init_db

    init_db(create_tables=True)
    typer.echo("Database initialised.")


@app.command("db")
def db_command(
    action: str = typer.Argument(..., help="upgrade|downgrade|current|history"),
    revision: Optional[str] = typer.Option(
        None, "--revision", "-r", help="Target revision (for upgrade/downgrade)"
    ),
) -> None:
    """Database migrations via Alembic (needs alembic.ini in the working directory)."""
    import os
    import subprocess
    import sys

    alembic_ini = os.path.join(os.getcwd(), "alembic.ini")
    if not os.path.exists(alembic_ini):
        typer.echo("Error: alembic.ini not found", err=True)
        raise typer.Exit(1)

    cmd = [sys.executable, "-m", "alembic", "-c", alembic_ini]
    if action == "upgrade":
        cmd.extend(["upgrade", revision or "head"])
    elif action == "downgrade":
        cmd.extend(["downgrade", revision or "-1"])
    elif action in ("current", "history"):
        cmd.append(action)
    else:
        typer.echo(f"Unknown action: {action}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Running: {' '.join(cmd)}", err=True)
    result = subprocess.run(cmd, cwd=os.getcwd())
    raise typer.Exit(result.returncode)


if __name__ == "__main__":  # pragma: no cover
    app()
