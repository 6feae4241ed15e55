"""Access manager CLI tool (access-manager)."""

import asyncio

import typer

app = typer.Typer(name="access-manager", help="Dashboard access queue manager CLI")
db_app = typer.Typer(help="Database management commands")
job_app = typer.Typer(help="Orchestration job commands")
app.add_typer(db_app, name="db")
app.add_typer(job_app, name="job")


def _session_factory():
    from access_manager.db.session import build_engine, build_session_factory

    return build_session_factory(build_engine())


@db_app.command("init")
def db_init():
    """Create tables and seed default system settings."""
    from access_manager.db.base import Base
    from access_manager.db.session import build_engine, build_session_factory
    from access_manager.services.settings_service import SettingsService
    import access_manager.models  # noqa: F401  registers tables

    engine = build_engine()
    Base.metadata.create_all(bind=engine)
    db = build_session_factory(engine)()
    try:
        added = SettingsService(db).seed_defaults()
    finally:
        db.close()
    typer.echo(f"✅ Tables created, {added} default setting(s) seeded")


@job_app.command("run")
def job_run(
    no_lock: bool = typer.Option(False, "--no-lock", help="Skip the Redis run lock"),
    actor: str = typer.Option(None, help="Actor type (dry_run, http); defaults to AUTOMATION_ACTOR"),
):
    """Run the orchestration job once. Exits 1 when any operation failed."""
    from access_manager.executor.access_job import AccessJob

    try:
        job = AccessJob.from_settings(_session_factory(), actor_type=actor, use_lock=not no_lock)
    except ValueError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=2)

    report = asyncio.run(job.run())
    if report.skipped:
        typer.echo(f"⏭️  Run skipped: {report.skip_reason}")
        raise typer.Exit(code=0)

    for result in report.results:
        mark = "✅" if result.success else "❌"
        line = f"  {mark} {result.action} {result.email or ''}".rstrip()
        if result.error:
            line += f" ({result.error})"
        if result.needs_manual_intervention:
            line += " [manual intervention required]"
        typer.echo(line)
    typer.echo(f"{len(report.results)} operation(s), {len(report.failures)} failure(s)")
    raise typer.Exit(code=report.exit_code)


@job_app.command("warn")
def job_warn():
    """Queue and send expiry warnings."""
    from access_manager.executor.access_job import send_expiry_warnings

    count = asyncio.run(send_expiry_warnings(_session_factory()))
    typer.echo(f"✅ {count} expiry warning(s) sent")


@app.command("hash-password")
def hash_password_cmd():
    """Print a bcrypt hash for ADMIN_PASSWORD_HASH."""
    from access_manager.core.security import hash_password

    password = typer.prompt("Admin password", hide_input=True, confirmation_prompt=True)
    typer.echo(hash_password(password))


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", help="Host"),
    port: int = typer.Option(8000, help="Port"),
    reload: bool = typer.Option(False, help="Auto-reload"),
):
    """Start the FastAPI server."""
    import uvicorn
    uvicorn.run("access_manager.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
