# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Command line interface for n8n-ops.

    n8nops backup
    n8nops restore backups/n8n_backup_20260101_020000.tar.gz
    n8nops update --app-version 1.80.0 --db-version 16-alpine

Every command exits 0 on success and 1 on a fatal error, printing the
failed step and the log file to look at.
"""

import asyncio
import os
from datetime import datetime, UTC
from pathlib import Path

import aiosqlite
import click
import structlog

from n8nops import __version__
from n8nops.backup import ArtifactStore, run_backup, run_restore, validate_artifact_path
from n8nops.compose import compose_available
from n8nops.config import APP_SERVICE, DB_SERVICE, OpsConfig, VersionSpec
from n8nops.core import initialize_ops_state
from n8nops.env import load_config, migrate_default_secrets
from n8nops.errors import explain_missing_update_versions
from n8nops.exceptions import (
    ArtifactIOError,
    ComposeError,
    ConfigurationError,
    OpsError,
    ReadinessTimeout,
)
from n8nops.health import ProbeOutcome, ServiceState
from n8nops.journal import init_journal_db, latest_successful_backup, list_runs
from n8nops.log import command_log_file, configure_logging
from n8nops.update import run_update

logger = structlog.get_logger()


def _format_size(size: float) -> str:
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


def _report_failure(error: OpsError, log_file: Path, default_step: str) -> None:
    step = error.step or default_step
    click.echo(f"Error during {step}: {error.message}", err=True)

    if error.services_stopped is True:
        click.echo(
            "Services were left STOPPED. Fix the cause, then start them with "
            "'docker compose up -d' or restore again.",
            err=True,
        )
    elif error.services_stopped is False and step not in ("validate_request", "open_archive"):
        click.echo("Services were not stopped.", err=True)

    backup_artifact = error.details.get("backup_artifact")
    if backup_artifact:
        click.echo(f"Pre-update backup to restore from: {backup_artifact}", err=True)

    click.echo(f"See {log_file} for details", err=True)


class CommandSession:
    """Configuration, logging and fatal-error handling for one command."""

    def __init__(self, ctx: click.Context, command: str) -> None:
        self.ctx = ctx
        self.command = command
        self.obj = ctx.obj
        self.config: OpsConfig | None = None
        self.log_file = command_log_file(self.obj["project_dir"] / "logs", command)

    def load(self) -> OpsConfig:
        """Load configuration and start logging to the command's log file."""
        try:
            self.config = load_config(self.obj["env_path"], self.obj["project_dir"])
        except ConfigurationError as e:
            configure_logging(self.log_file, verbose=self.obj["verbose"])
            logger.error("configuration_invalid", error=e.message, **e.details)
            self.fail(e, "configuration")

        self.log_file = command_log_file(self.config.log_dir, self.command)
        configure_logging(self.log_file, verbose=self.obj["verbose"])
        return self.config

    def state(self, config: OpsConfig | None = None):
        return initialize_ops_state(
            config or self.config,
            compose=self.obj.get("compose"),
            sleep=self.obj.get("sleep", asyncio.sleep),
            http_check=self.obj.get("http_check"),
        )

    def run(self, coro):
        """Run a coroutine, turning fatal errors into exit code 1."""
        try:
            return asyncio.run(coro)
        except OpsError as e:
            self.fail(e, self.command)
        except OSError as e:
            logger.error("unexpected_os_error", error=str(e), errno=e.errno)
            self.fail(ArtifactIOError(str(e), details={"errno": e.errno}), self.command)

    def fail(self, error: OpsError, default_step: str) -> None:
        _report_failure(error, self.log_file, default_step)
        self.ctx.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--project-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=".",
    show_default=True,
    help="Directory holding docker-compose.yml and .env",
)
@click.option(
    "--env-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Configuration file (default: <project-dir>/.env)",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug output")
@click.pass_context
def cli(ctx: click.Context, project_dir: Path, env_file: Path | None, verbose: bool):
    """n8n-ops - Backup, restore and update an n8n deployment."""
    ctx.ensure_object(dict)
    project_dir = project_dir.resolve()
    ctx.obj["project_dir"] = project_dir
    ctx.obj["env_path"] = env_file or project_dir / ".env"
    ctx.obj["verbose"] = verbose


# -------------------------------------------------------------------------
# Backup / Restore / Update
# -------------------------------------------------------------------------


@cli.command()
@click.pass_context
def backup(ctx: click.Context):
    """Back up the database and n8n data to a compressed archive."""
    session = CommandSession(ctx, "backup")
    config = session.load()
    state = session.state()

    result = session.run(run_backup(config, state["controller"], state["store"]))

    for warning in result.warnings:
        click.echo(f"Warning: {warning}")
    click.echo(f"Backup created: {result.artifact.path} ({_format_size(result.size_bytes)})")
    if result.retention_removed:
        click.echo(
            f"Removed {result.retention_removed} backup(s) older than {config.retention_days} days"
        )


@cli.command()
@click.argument("artifact", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_context
def restore(ctx: click.Context, artifact: Path):
    """Restore the database and n8n data from ARTIFACT (.tar.gz)."""
    session = CommandSession(ctx, "restore")
    try:
        artifact = validate_artifact_path(artifact.resolve())
    except OpsError as e:
        session.fail(e, "validate_request")

    config = session.load()
    state = session.state()

    click.echo(f"Restoring from {artifact}")
    result = session.run(
        run_restore(config, state["controller"], state["prober"], artifact, state["store"])
    )

    for warning in result.warnings:
        click.echo(f"Warning: {warning}")
    click.echo("Restore completed successfully. n8n is now running with restored data.")


@cli.command()
@click.option("--app-version", "-n", default=None, help="n8n image version, e.g. 1.80.0")
@click.option("--db-version", "-p", default=None, help="PostgreSQL image version, e.g. 16-alpine")
@click.option("--yes", "-y", is_flag=True, help="Confirm a database major version change")
@click.pass_context
def update(ctx: click.Context, app_version: str | None, db_version: str | None, yes: bool):
    """Update n8n and/or PostgreSQL after taking a backup."""
    request = VersionSpec(app_version=app_version or None, db_version=db_version or None)
    if request.is_empty:
        raise click.UsageError(explain_missing_update_versions(), ctx=ctx)

    session = CommandSession(ctx, "update")
    config = session.load()
    state = session.state()

    def confirm(prompt: str) -> bool:
        return yes or click.confirm(prompt, default=False)

    result = session.run(
        run_update(
            config,
            state["controller"],
            state["prober"],
            request,
            ctx.obj["env_path"],
            confirm=confirm,
            store=state["store"],
        )
    )

    for warning in result.warnings:
        click.echo(f"Warning: {warning}")
    click.echo(f"Backup taken before update: {result.backup.artifact.path}")

    if result.aborted:
        click.echo(
            "Update aborted. New versions were written to the configuration but "
            "services were not restarted. Revert the .env file or run the update again."
        )
        return

    click.echo("Update completed successfully!")
    for service, version in result.running_versions.items():
        click.echo(f"  {service}: {version or 'unknown'}")


# -------------------------------------------------------------------------
# Inspection
# -------------------------------------------------------------------------


@cli.command()
@click.pass_context
def artifacts(ctx: click.Context):
    """List backup archives, newest first."""
    session = CommandSession(ctx, "artifacts")
    config = session.load()
    store = ArtifactStore.from_config(config)

    refs = list(store.list_artifacts())
    if not refs:
        click.echo(f"No backups found in {store.backup_dir}")
        return

    now = datetime.now(UTC)
    for ref in refs:
        click.echo(
            f"  {ref.name:<40} {_format_size(ref.size_bytes()):>10}  "
            f"{ref.age_days(now):5.1f} days old"
        )


@cli.command()
@click.option("--limit", default=20, show_default=True, help="Number of runs to show")
@click.option("--kind", type=click.Choice(["backup", "restore", "update"]), default=None)
@click.pass_context
def runs(ctx: click.Context, limit: int, kind: str | None):
    """Show recent backup, restore and update runs."""
    session = CommandSession(ctx, "runs")
    config = session.load()

    async def _list():
        await init_journal_db(config.journal_path)
        async with aiosqlite.connect(config.journal_path) as db:
            return await list_runs(db, limit=limit, kind=kind)

    records = session.run(_list())
    if not records:
        click.echo("No runs recorded yet.")
        return

    for record in records:
        line = f"  {record['started_at'][:19]}  {record['kind']:<8} {record['status']:<10}"
        if record["artifact_path"]:
            line += f" {Path(record['artifact_path']).name}"
        if record["error"]:
            line += f" error: {record['error']}"
        click.echo(line)


@cli.command()
@click.pass_context
def status(ctx: click.Context):
    """Show the state of the n8n and PostgreSQL services."""
    session = CommandSession(ctx, "status")
    config = session.load()
    prober = session.state()["prober"]

    async def _observe():
        states = {service: await prober.observe(service) for service in (APP_SERVICE, DB_SERVICE)}
        await init_journal_db(config.journal_path)
        async with aiosqlite.connect(config.journal_path) as db:
            return states, await latest_successful_backup(db)

    states, last_backup = session.run(_observe())

    for service, state in states.items():
        click.echo(f"  {service:<10} {state.value}")
    if last_backup:
        click.echo(
            f"Last backup: {Path(last_backup['artifact_path']).name} "
            f"({last_backup['completed_at'][:19]})"
        )
    else:
        click.echo("Last backup: none recorded")

    if any(state != ServiceState.READY for state in states.values()):
        ctx.exit(1)
    click.echo(f"n8n is available at {config.protocol.value}://{config.host}:5678")


# -------------------------------------------------------------------------
# Setup
# -------------------------------------------------------------------------


@cli.command("rotate-secrets")
@click.pass_context
def rotate_secrets(ctx: click.Context):
    """Replace placeholder database password and encryption key."""
    session = CommandSession(ctx, "setup")
    config = session.load()

    try:
        new_config = migrate_default_secrets(config, ctx.obj["env_path"])
    except OpsError as e:
        session.fail(e, "rotate_secrets")
    if new_config is config:
        click.echo("No placeholder secrets found; nothing changed.")
    else:
        click.echo(f"Generated new secrets in {ctx.obj['env_path']}")


@cli.command()
@click.pass_context
def setup(ctx: click.Context):
    """Prepare directories and secrets, then start all services."""
    session = CommandSession(ctx, "setup")

    if ctx.obj.get("compose") is None and not asyncio.run(compose_available()):
        session.fail(
            ComposeError("Docker with the compose plugin is not available"),
            "check_requirements",
        )

    config = session.load()
    try:
        config = migrate_default_secrets(config, ctx.obj["env_path"])
    except OpsError as e:
        session.fail(e, "rotate_secrets")

    for directory in (config.backup_dir, config.log_dir, config.state_dir):
        directory.mkdir(parents=True, exist_ok=True)
        os.chmod(directory, 0o700)
    logger.info("directories_prepared")

    state = session.state(config)

    async def _start():
        controller, prober = state["controller"], state["prober"]
        try:
            await controller.pull_images()
        except OpsError as e:
            raise e.at_step("pull_images")
        try:
            await controller.start()
        except OpsError as e:
            raise e.at_step("start_services")

        for service in (DB_SERVICE, APP_SERVICE):
            if await prober.wait_ready(service) != ProbeOutcome.READY:
                raise ReadinessTimeout(
                    f"{service} did not become ready. "
                    f"Check the logs with: docker compose logs {service}",
                    details={"step": "wait_ready", "service": service},
                )

    session.run(_start())
    click.echo("Setup completed successfully!")
    click.echo(f"n8n is available at {config.protocol.value}://{config.host}:5678")


def main() -> None:
    """Console script entry point."""
    cli(prog_name="n8nops", obj={})
