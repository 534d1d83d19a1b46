"""
CLI interface for replicore.

Provides commands to manage replication tasks, trigger runs and inspect
execution records. Scheduling is external: a cron job or scheduler calls
`replicore due --run` or `replicore run KEY`.
"""

import json
import sys
from datetime import date, datetime
from pathlib import Path
from typing import Optional

import click
import yaml
from rich.table import Table

from replicore import __version__
from replicore.errors import ReplicationError
from replicore.schemas import ExecutionStatus, ReplicaRecordDetailListOption
from replicore.schemas.page import MAX_PAGE_SIZE


class Services:
    """Object graph built from the loaded config, shared by commands."""

    def __init__(self, config):
        from replicore.record_service import ReplicaRecordService
        from replicore.repositories import ReplicaRecordDao, ReplicaRecordDetailDao, ReplicaTaskDao
        from replicore.task_service import ReplicaTaskService
        from replicore.utils import setup_logging

        self.config = config
        self.logger = setup_logging(
            config.log_file_path(date.today().isoformat()),
            log_level=config.log_level,
            log_format=config.log_format,
            console_output=config.console,
        )
        self._store = config.open_store()
        self._registry = config.cluster_registry()
        task_dao = ReplicaTaskDao(self._store)
        self.record_service = ReplicaRecordService(
            task_dao,
            ReplicaRecordDao(self._store),
            ReplicaRecordDetailDao(self._store),
            logger=self.logger,
            schedule_tz=config.timezone,
        )
        self.task_service = ReplicaTaskService(
            task_dao, self.record_service, self._registry, logger=self.logger, schedule_tz=config.timezone
        )

    def job(self):
        from replicore.job import ReplicationJob
        from replicore.transport import load_transport

        return ReplicationJob.create(
            self._store,
            self._registry,
            load_transport(self.config.transport),
            max_workers=self.config.max_workers,
            logger=self.logger,
            schedule_tz=self.config.timezone,
        )


def _services(ctx) -> Services:
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'replicore init' to create a configuration file.", err=True)
        raise SystemExit(1)
    if "services" not in ctx.obj:
        ctx.obj["services"] = Services(ctx.obj["config"])
    return ctx.obj["services"]


def _print(obj) -> None:
    from replicore.utils import console

    console.print(obj)


def _fmt(value: Optional[datetime]) -> str:
    return value.isoformat(timespec="seconds") if value else "-"


@click.group()
@click.version_option(version=__version__, prog_name="replicore")
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None,
              help="Path to config.yaml (default: $REPLICORE_HOME/config.yaml)")
@click.pass_context
def main(ctx, config_path: Optional[Path]):
    """
    replicore - replication task orchestration.

    Manage replication tasks, run them and inspect their records.
    """
    from replicore.config import ConfigError, load_config

    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config(config_path)
    except (FileNotFoundError, ConfigError) as e:
        # init runs without a config; other commands report this in _services
        ctx.obj["config_error"] = str(e)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize replicore configuration."""
    from replicore.config import default_config, get_replicore_home

    home = get_replicore_home()
    home.mkdir(parents=True, exist_ok=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    cfg_path.write_text(yaml.safe_dump(default_config().to_dict(), sort_keys=False))
    click.echo(f"Initialized replicore config at {cfg_path}")


@main.group("task")
def task_group():
    """Manage replication tasks."""
    pass


@task_group.command("create")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--operator", default="cli", help="Recorded as created_by")
@click.pass_context
def task_create(ctx, file: Path, operator: str):
    """
    Create a task from a YAML definition.

    Example:

        replicore task create tasks/nightly-docker.yaml
    """
    from replicore.task_service import ReplicaTaskCreateRequest

    services = _services(ctx)
    try:
        data = yaml.safe_load(file.read_text()) or {}
        task = services.task_service.create(ReplicaTaskCreateRequest.from_dict(data), operator=operator)
    except (ReplicationError, ValueError, yaml.YAMLError) as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    click.echo(f"✓ created task {task.key} ({task.name})")


@task_group.command("list")
@click.option("--name", default=None, help="Filter by name substring")
@click.option("--page", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--size", type=click.IntRange(1, MAX_PAGE_SIZE), default=20, show_default=True)
@click.pass_context
def task_list(ctx, name: Optional[str], page: int, size: int):
    """List tasks."""
    services = _services(ctx)
    result = services.task_service.list_page(name=name, page_number=page, page_size=size)
    table = Table(title=f"Tasks (page {result.page_number}/{max(result.total_pages, 1)}, {result.total_records} total)")
    for column in ("key", "name", "status", "enabled", "last status", "next execution"):
        table.add_column(column)
    for task in result.records:
        table.add_row(
            task.key,
            task.name,
            task.status.value,
            "yes" if task.enabled else "no",
            task.last_execution_status.value if task.last_execution_status else "-",
            _fmt(task.next_execution_time),
        )
    _print(table)


@task_group.command("show")
@click.argument("key")
@click.pass_context
def task_show(ctx, key: str):
    """Show a task as JSON."""
    services = _services(ctx)
    try:
        task = services.task_service.get_by_key(key)
    except ReplicationError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    click.echo(json.dumps(task.to_dict(), indent=2))


def _set_enabled(ctx, key: str, enabled: bool) -> None:
    services = _services(ctx)
    try:
        services.task_service.set_enabled(key, enabled, operator="cli")
    except ReplicationError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    click.echo(f"✓ task {key} {'enabled' if enabled else 'disabled'}")


@task_group.command("enable")
@click.argument("key")
@click.pass_context
def task_enable(ctx, key: str):
    """Enable a task."""
    _set_enabled(ctx, key, True)


@task_group.command("disable")
@click.argument("key")
@click.pass_context
def task_disable(ctx, key: str):
    """Disable a task (a run in flight is not aborted)."""
    _set_enabled(ctx, key, False)


@task_group.command("delete")
@click.argument("key")
@click.confirmation_option(prompt="Delete the task and all its records?")
@click.pass_context
def task_delete(ctx, key: str):
    """Delete a task with its records and details."""
    services = _services(ctx)
    try:
        services.task_service.delete_by_key(key)
    except ReplicationError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    click.echo(f"✓ task {key} deleted")


@main.command("run")
@click.argument("key")
@click.pass_context
def run(ctx, key: str):
    """
    Run a task now.

    Exits with status 1 if the run fails.
    """
    services = _services(ctx)
    try:
        result = services.job().run(key)
    except (ReplicationError, ValueError) as e:
        click.echo(f"✗ {key} not started: {e}", err=True)
        raise SystemExit(1)

    if result.success:
        click.echo(f"✓ {key} completed (record {result.record.id})")
    else:
        click.echo(f"✗ {key} failed (record {result.record.id}): {result.error_reason}", err=True)
        raise SystemExit(1)


@main.command("due")
@click.option("--run", "run_due", is_flag=True, help="Run every due task")
@click.pass_context
def due(ctx, run_due: bool):
    """List (or run) tasks whose next execution time has come."""
    services = _services(ctx)
    tasks = services.task_service.list_due_tasks()
    if not tasks:
        click.echo("No due tasks")
        return
    failed = 0
    job = services.job() if run_due else None
    for task in tasks:
        if job is None:
            click.echo(f"{task.key}\t{task.name}\t{_fmt(task.next_execution_time)}")
            continue
        try:
            result = job.run(task.key)
        except ReplicationError as e:
            failed += 1
            click.echo(f"✗ {task.key} not started: {e}", err=True)
            continue
        if result.success:
            click.echo(f"✓ {task.key} completed")
        else:
            failed += 1
            click.echo(f"✗ {task.key} failed: {result.error_reason}", err=True)
    if failed:
        raise SystemExit(1)


@main.command("records")
@click.argument("key")
@click.option("--page", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--size", type=click.IntRange(1, MAX_PAGE_SIZE), default=20, show_default=True)
@click.pass_context
def records(ctx, key: str, page: int, size: int):
    """List the records of a task, newest first."""
    services = _services(ctx)
    result = services.record_service.list_records_page(key, page, size)
    table = Table(title=f"Records of {key} ({result.total_records} total)")
    for column in ("id", "status", "start", "end", "error"):
        table.add_column(column)
    for record in result.records:
        table.add_row(
            record.id,
            record.status.value,
            _fmt(record.start_time),
            _fmt(record.end_time),
            record.error_reason or "",
        )
    _print(table)


@main.command("details")
@click.argument("record_id")
@click.option("--status", type=click.Choice([s.value for s in ExecutionStatus]), default=None)
@click.option("--cluster", default=None, help="Only this remote cluster")
@click.option("--page", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--size", type=click.IntRange(1, MAX_PAGE_SIZE), default=20, show_default=True)
@click.pass_context
def details(ctx, record_id: str, status: Optional[str], cluster: Optional[str], page: int, size: int):
    """List the per-cluster details of a record."""
    services = _services(ctx)
    option = ReplicaRecordDetailListOption(
        page_number=page,
        page_size=size,
        status=ExecutionStatus(status) if status else None,
        remote_cluster=cluster,
    )
    result = services.record_service.list_record_detail_page(record_id, option)
    table = Table(title=f"Details of {record_id} ({result.total_records} total)")
    for column in ("remote", "status", "success", "skip", "failed", "bytes", "error"):
        table.add_column(column)
    for detail in result.records:
        table.add_row(
            detail.remote_cluster,
            detail.status.value,
            str(detail.progress.success),
            str(detail.progress.skip),
            str(detail.progress.failed),
            str(detail.progress.total_size),
            detail.error_reason or "",
        )
    _print(table)


@main.command("next-trigger")
@click.argument("expression")
@click.option("--from", "from_time", default=None, help="ISO-8601 reference time (default: now)")
@click.option("--tz", default=None, help="Timezone the expression is written in")
def next_trigger(expression: str, from_time: Optional[str], tz: Optional[str]):
    """Print the next fire time of a cron expression."""
    from replicore.schedule import next_trigger_time

    try:
        reference = datetime.fromisoformat(from_time) if from_time else None
        click.echo(next_trigger_time(expression, reference, tz).isoformat())
    except (ReplicationError, ValueError) as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)
