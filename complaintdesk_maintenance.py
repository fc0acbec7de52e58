#!/usr/bin/env python3
"""
ComplaintDesk Maintenance CLI
==============================
Offline repair jobs for the taxonomy counters and stored complaints.

Usage:
    complaintdesk reconcile-pending --limit 500
    complaintdesk reconcile-all
    complaintdesk check            # exits 1 when counters have drifted
    complaintdesk backfill-priority
    complaintdesk serve --port 8090

Version: 1.0 (October 2026)
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import click

from complaintdesk_api import Config, Desk, build_desk

logger = logging.getLogger("cd-maintenance")


def _desk(ctx: click.Context) -> Desk:
    desk = ctx.obj.get("desk")
    if desk is None:
        cfg = Config()
        if ctx.obj.get("db_path"):
            cfg.DB_PATH = ctx.obj["db_path"]
        desk = build_desk(cfg)
        ctx.obj["desk"] = desk
        ctx.call_on_close(desk.lifecycle.close)
    return desk


def _emit(result: Dict[str, Any]) -> None:
    click.echo(json.dumps(result, indent=2, default=str))


@click.group()
@click.option("--db", "db_path", type=click.Path(dir_okay=False), envvar="CD_DB_PATH", help="SQLite database path")
@click.pass_context
def main(ctx: click.Context, db_path: Optional[str]) -> None:
    """ComplaintDesk maintenance commands."""
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path


@main.command("reconcile-pending")
@click.option("--limit", type=int, default=100, show_default=True, help="Queue entries to replay")
@click.pass_context
def reconcile_pending(ctx: click.Context, limit: int) -> None:
    """Replay counter repairs parked by failed in-line reconciliation."""
    result = _desk(ctx).reconciler.reconcile_pending(limit)
    logger.info(f"reconcile-pending: {result['repaired']}/{result['processed']} repaired")
    _emit(result)


@main.command("reconcile-all")
@click.pass_context
def reconcile_all(ctx: click.Context) -> None:
    """Rebuild every taxonomy counter from the complaints table."""
    _emit(_desk(ctx).reconciler.reconcile_all())


@main.command("check")
@click.pass_context
def check(ctx: click.Context) -> None:
    """Report counter drift without writing anything."""
    report = _desk(ctx).reconciler.check_consistency()
    _emit(report)
    if report["status"] != "pass":
        ctx.exit(1)


@main.command("backfill-priority")
@click.pass_context
def backfill_priority(ctx: click.Context) -> None:
    """Recompute priority_value from priority on every complaint."""
    _emit({"corrected": _desk(ctx).complaints.backfill_priority_values()})


@main.command("serve")
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", type=int, default=8090, envvar="PORT", show_default=True)
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Run the HTTP API."""
    import uvicorn

    from complaintdesk_api import app, config, get_desk

    if ctx.obj.get("db_path"):
        config.DB_PATH = ctx.obj["db_path"]
        get_desk.cache_clear()
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main(obj={})
