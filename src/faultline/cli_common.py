"""Shared CLI helpers.

Provides ``get_db()``, ``repo_for()`` and ``get_actor()`` so that both the
main ``cli.py`` and the ``cli_commands/*.py`` modules can access them
without circular imports.
"""

from __future__ import annotations

import json as json_mod
import sys
from typing import NoReturn

import click

from faultline.core import (
    DB_FILENAME,
    FAULTLINE_DIR_NAME,
    FaultlineDB,
    find_faultline_root,
    read_config,
)
from faultline.errors import NotFound
from faultline.logging import setup_logging
from faultline.models import Actor, Defect
from faultline.repository import DefectRepository
from faultline.validation import build_actor


def get_db() -> FaultlineDB:
    """Discover .faultline/ and return an initialized FaultlineDB."""
    try:
        faultline_dir = find_faultline_root()
    except FileNotFoundError:
        click.echo(f"No {FAULTLINE_DIR_NAME}/ found. Run 'faultline init' first.", err=True)
        sys.exit(1)
    setup_logging(faultline_dir)
    config = read_config(faultline_dir)
    db = FaultlineDB(faultline_dir / DB_FILENAME, id_prefix=config.get("id_prefix", "def"))
    db.initialize()
    return db


def repo_for(db: FaultlineDB) -> DefectRepository:
    """Build a repository over *db* using the project's code prefix and sequence."""
    config = read_config(db.db_path.parent)
    return DefectRepository(
        db,
        code_prefix=config.get("code_prefix", "DEF"),
        sequence=config.get("sequence", "defect"),
    )


def get_actor(ctx: click.Context) -> Actor:
    """The caller identified by the global --actor/--actor-name/--role options."""
    obj = ctx.find_root().obj or {}
    actor, err = build_actor(obj.get("actor", "cli"), obj.get("actor_name", ""), obj.get("role"))
    if actor is None:
        click.echo(f"Error: {err}", err=True)
        sys.exit(1)
    return actor


def fail(message: str, as_json: bool = False) -> NoReturn:
    if as_json:
        click.echo(json_mod.dumps({"error": message}))
    else:
        click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def lookup(repo: DefectRepository, ref: str) -> Defect:
    """Find a defect by id, code, or any looser reference the resolver accepts."""
    defect = repo.resolve(ref)
    if defect is None:
        raise NotFound(ref)
    return defect
