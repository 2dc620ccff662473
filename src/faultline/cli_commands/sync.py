"""CLI commands for the outbox: inspect pending mutations and deliver them."""

from __future__ import annotations

import asyncio
import json as json_mod
import time

import click

from faultline.cli_common import fail, get_db
from faultline.sync import HttpRemote, SyncProcessor, load_sync_options
from faultline.types.outbox import FlushResult


@click.command()
@click.option("--due", is_flag=True, help="Only entries eligible for delivery now")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def outbox(due: bool, as_json: bool) -> None:
    """List mutations waiting to be delivered."""
    with get_db() as db:
        entries = db.due_outbox(time.time()) if due else db.list_outbox()
        if as_json:
            click.echo(json_mod.dumps(entries, indent=2, default=str))
            return
        for e in entries:
            retry = f" retries={e['retries']}" if e["retries"] else ""
            error = f"  last error: {e['last_error']}" if e["last_error"] else ""
            click.echo(f"{e['id']} {e['type']:<7} {e['defect_id']}{retry}{error}")
        click.echo(f"\n{len(entries)} pending")


def _echo_result(result: FlushResult, as_json: bool) -> None:
    if as_json:
        click.echo(json_mod.dumps(result, indent=2))
        return
    click.echo(f"Delivered: {result['succeeded']}")
    click.echo(f"Retrying:  {result['retrying']}")
    click.echo(f"Deferred:  {result['deferred']}")
    click.echo(f"Abandoned: {result['abandoned']}")
    for entry_id in result["abandoned_entries"]:
        click.echo(f"  gave up on {entry_id}")


@click.command()
@click.option("--url", default=None, help="Remote base URL (default from config or FAULTLINE_REMOTE_URL)")
@click.option("--timeout", default=None, type=float, help="Per-delivery timeout in seconds")
@click.option("--watch", default=None, type=float, help="Keep flushing every N seconds until interrupted")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def sync(url: str | None, timeout: float | None, watch: float | None, as_json: bool) -> None:
    """Deliver pending mutations to the remote system of record."""
    with get_db() as db:
        options = load_sync_options(db.db_path.parent)
        remote_url = url or options.remote_url
        if not remote_url:
            fail("No remote configured. Set remote_url in config.json or FAULTLINE_REMOTE_URL.", as_json)
        base_url: str = remote_url
        delivery_timeout: float = timeout or options.timeout

        async def _run() -> FlushResult | None:
            async with HttpRemote(base_url, timeout=delivery_timeout) as remote:
                processor = SyncProcessor(db, remote, max_retries=options.max_retries, timeout=delivery_timeout)
                if watch:
                    await processor.run(interval=watch, on_result=_echo_pass)
                    return None
                return await processor.flush()

        def _echo_pass(result: FlushResult) -> None:
            if result["succeeded"] or result["retrying"] or result["abandoned"] or result["deferred"]:
                _echo_result(result, as_json)

        try:
            result = asyncio.run(_run())
        except KeyboardInterrupt:
            click.echo("Stopped")
            return
        if result is not None:
            _echo_result(result, as_json)
