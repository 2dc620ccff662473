"""CLI commands for project administration: init, settings, seed, dashboard."""

from __future__ import annotations

import json as json_mod
import sys
from pathlib import Path

import click

from faultline.cli_common import fail, get_actor, get_db, repo_for
from faultline.core import (
    CONFIG_FILENAME,
    DB_FILENAME,
    DEFAULT_CONFIG,
    FAULTLINE_DIR_NAME,
    FaultlineDB,
    read_config,
    write_config,
)
from faultline.errors import FaultlineError
from faultline.models import SEVERITY_SCALES


@click.command()
@click.option("--code-prefix", default=None, help="Human code prefix (default DEF)")
@click.option("--remote-url", default=None, help="Base URL of the remote system of record")
def init(code_prefix: str | None, remote_url: str | None) -> None:
    """Initialize .faultline/ in the current directory."""
    cwd = Path.cwd()
    faultline_dir = cwd / FAULTLINE_DIR_NAME

    if faultline_dir.exists():
        click.echo(f"{FAULTLINE_DIR_NAME}/ already exists in {cwd}")
        # Still ensure DB is initialized
        config = read_config(faultline_dir)
        db = FaultlineDB(faultline_dir / DB_FILENAME, id_prefix=config.get("id_prefix", "def"))
        db.initialize()
        db.close()
        if remote_url is not None:
            config["remote_url"] = remote_url
            write_config(faultline_dir, config)
            click.echo(f"  Remote: {remote_url}")
        return

    faultline_dir.mkdir()
    config = dict(DEFAULT_CONFIG)
    if code_prefix:
        config["code_prefix"] = code_prefix.upper()
    if remote_url:
        config["remote_url"] = remote_url
    write_config(faultline_dir, config)

    db = FaultlineDB(faultline_dir / DB_FILENAME, id_prefix=str(config["id_prefix"]))
    db.initialize()
    db.close()

    click.echo(f"Initialized {FAULTLINE_DIR_NAME}/ in {cwd}")
    click.echo(f"  Code prefix: {config['code_prefix']}")
    click.echo(f"  Database: {faultline_dir / DB_FILENAME}")
    click.echo(f"  Config: {faultline_dir / CONFIG_FILENAME}")


@click.group()
def settings() -> None:
    """Show or change defect settings."""


@settings.command("show")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def settings_show(as_json: bool) -> None:
    """Show the current defect settings."""
    with get_db() as db:
        current = repo_for(db).get_settings()
        if as_json:
            click.echo(json_mod.dumps(current.to_dict(), indent=2))
            return
        click.echo(f"Default severity model: {current.default_severity_model}")
        for model, severities in current.unsafe_thresholds.items():
            click.echo(f"Unsafe at ({model}):    {', '.join(severities) or '-'}")
        click.echo(f"Before/after photos:    {'required' if current.before_after_required else 'optional'}")


@settings.command("set")
@click.option("--default-model", default=None, type=click.Choice(sorted(SEVERITY_SCALES)), help="Default severity model for new defects")
@click.option("--unsafe", multiple=True, help="MODEL=SEV[,SEV...] severities that flag a defect unsafe (repeatable)")
@click.option("--before-after/--no-before-after", default=None, help="Require before and after photos to close")
@click.pass_context
def settings_set(ctx: click.Context, default_model: str | None, unsafe: tuple[str, ...], before_after: bool | None) -> None:
    """Change defect settings. Existing defects keep their unsafe flag until next edited."""
    changes: dict[str, object] = {}
    if default_model is not None:
        changes["default_severity_model"] = default_model
    if before_after is not None:
        changes["before_after_required"] = before_after
    actor = get_actor(ctx)
    with get_db() as db:
        repo = repo_for(db)
        if unsafe:
            thresholds = dict(repo.get_settings().unsafe_thresholds)
            for item in unsafe:
                if "=" not in item:
                    fail(f"Invalid --unsafe value: {item} (expected MODEL=SEV[,SEV...])")
                model, _, severities = item.partition("=")
                thresholds[model.strip()] = [s.strip() for s in severities.split(",") if s.strip()]
            changes["unsafe_thresholds"] = thresholds
        if not changes:
            fail("Nothing to change")
        try:
            repo.update_settings(changes, actor=actor)
        except FaultlineError as e:
            fail(str(e))
        click.echo("Settings updated")


@click.command()
@click.pass_context
def seed(ctx: click.Context) -> None:
    """Populate an empty project with example defects."""
    from faultline.seed import seed_defects

    actor = get_actor(ctx)
    with get_db() as db:
        try:
            created = seed_defects(repo_for(db), actor)
        except FaultlineError as e:
            fail(str(e))
        if not created:
            click.echo("Defects already exist, skipping seed")
            return
        click.echo(f"Seeded {len(created)} defects")


@click.command()
@click.option("--host", default="127.0.0.1", help="Bind address (default 127.0.0.1)")
@click.option("--port", default=8377, type=int, help="Server port (default 8377)")
def dashboard(host: str, port: int) -> None:
    """Serve the local JSON API for UI clients."""
    try:
        from faultline.dashboard import main as dashboard_main
    except ImportError:
        click.echo("The local API requires fastapi and uvicorn to be installed.", err=True)
        sys.exit(1)
    dashboard_main(host=host, port=port)
