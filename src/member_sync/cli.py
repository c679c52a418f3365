"""member_sync.cli

Command-line entry point for a member directory sync run.

Configuration comes from the environment, optionally layered over a flat
YAML properties file (--properties-path). Exit status is 0 for a completed
run, including runs that skipped some members, and 1 for a fatal error.
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import datetime
from pathlib import Path

import click

from member_sync.config import SyncConfig, load_config
from member_sync.pipeline import (
    ReconciliationPipeline,
    build_components,
    build_sync_report,
    close_store,
)
from member_sync.shared import MemberSyncError, RejectWriter, SyncRunCounters, write_run_report


@click.command()
@click.option(
    "--properties-path",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="Flat YAML file of configuration keys; environment variables override it",
)
@click.option("--table-name", default=None, help="Override MEMBER_TABLE_NAME")
@click.option(
    "--all-members",
    is_flag=True,
    default=False,
    help="List members with a single unscoped users.list call (truncates large workspaces)",
)
@click.option("--dry-run", is_flag=True, default=False, help="Fetch and merge but do not write")
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/member_sync_rejects.csv",
    show_default=True,
)
@click.option(
    "--report-dir",
    default="./artifacts/reports",
    show_default=True,
    type=click.Path(file_okay=False),
)
@click.option("--report/--no-report", default=True, show_default=True, help="Write a JSON run report")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable INFO logging")
def main(
    properties_path: str | None,
    table_name: str | None,
    all_members: bool,
    dry_run: bool,
    rejects_path: str,
    report_dir: str,
    report: bool,
    run_id: str | None,
    verbose: bool,
) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    click.echo(f"[{run_id}] Starting member sync (dry_run={dry_run})")

    try:
        config = load_config(Path(properties_path) if properties_path else None)
        if table_name or all_members:
            config = SyncConfig(
                api_token=config.api_token,
                scope_id=config.scope_id,
                store_location=config.store_location,
                table_name=table_name or config.table_name,
                unscoped=all_members or config.unscoped,
            )
        source, store = build_components(config)
    except MemberSyncError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    counters = SyncRunCounters()
    rejects = RejectWriter(Path(rejects_path))
    pipeline = ReconciliationPipeline(
        config, source, store,
        counters=counters, rejects=rejects, run_id=run_id, dry_run=dry_run,
    )
    try:
        members = pipeline.run()
    except MemberSyncError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    finally:
        rejects.close()
        close_store(store)

    click.echo(build_sync_report(counters, dry_run=dry_run))
    click.echo(f"[{run_id}] {len(members)} members in table {config.table_name}")
    if counters.members_skipped:
        click.echo(
            f"[{run_id}] {counters.members_skipped} member(s) skipped; see {rejects_path}",
            err=True,
        )

    if report:
        report_path = write_run_report(
            run_id, started_at, dry_run,
            {"table_name": config.table_name, "scope_id": config.scope_id or ""},
            counters,
            report_dir=Path(report_dir),
        )
        click.echo(f"[{run_id}] Run report: {report_path}")


if __name__ == "__main__":
    main()
