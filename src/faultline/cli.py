"""CLI for the faultline defect lifecycle engine.

Convention-based: discovers .faultline/ by walking up from cwd.

Usage:
    faultline init                                   # Initialize .faultline/ in cwd
    faultline create "Hydraulic leak" -s High        # Raise a defect
    faultline show DEF-7                             # Show defect details
    faultline list --overdue                         # List defects
    faultline update DEF-7 --status InProgress       # Update fields
    faultline close DEF-7 -n "Seal replaced"         # Close with resolution notes
    faultline reopen DEF-7 --reason "Leaking again"  # Reopen (add --new for a new occurrence)
    faultline comment DEF-7 "Parts ordered"          # Add comment
    faultline summary                                # Total / open / overdue / unsafe
    faultline outbox                                 # Pending mutations
    faultline sync                                   # Deliver pending mutations
    faultline dashboard                              # Serve the local JSON API
"""

from __future__ import annotations

import click

from faultline import __version__
from faultline.cli_commands import admin, defects
from faultline.cli_commands import sync as sync_commands
from faultline.models import VALID_ROLES


@click.group()
@click.version_option(version=__version__, prog_name="faultline")
@click.option("--actor", default="cli", help="Actor identity for audit trail (default: cli)")
@click.option("--actor-name", default="", help="Actor display name")
@click.option(
    "--role",
    default="Admin",
    envvar="FAULTLINE_ROLE",
    type=click.Choice(VALID_ROLES),
    help="Role used for permission checks (default: Admin, or FAULTLINE_ROLE)",
)
@click.pass_context
def cli(ctx: click.Context, actor: str, actor_name: str, role: str) -> None:
    """Faultline: offline-first defect tracking."""
    ctx.ensure_object(dict)
    ctx.obj["actor"] = actor
    ctx.obj["actor_name"] = actor_name
    ctx.obj["role"] = role


cli.add_command(admin.init)
cli.add_command(admin.settings)
cli.add_command(admin.seed)
cli.add_command(admin.dashboard)

cli.add_command(defects.create)
cli.add_command(defects.show)
cli.add_command(defects.list_defects)
cli.add_command(defects.update)
cli.add_command(defects.close)
cli.add_command(defects.reopen)
cli.add_command(defects.comment)
cli.add_command(defects.add_action)
cli.add_command(defects.complete_action)
cli.add_command(defects.attach)
cli.add_command(defects.delete)
cli.add_command(defects.resolve)
cli.add_command(defects.summary)

cli.add_command(sync_commands.outbox)
cli.add_command(sync_commands.sync)


if __name__ == "__main__":
    cli()
