"""
Command-line interface for the shadowgate delivery server.
"""

from __future__ import annotations

import os
import time
import uuid
from pathlib import Path

import click

from shadowgate.common.config import Config
from shadowgate.common.crypto import CryptoUtils
from shadowgate.common.models import LicenseKey, ScriptFlags, ScriptRecord
from shadowgate.server import start_server
from shadowgate.server.core import STORE_FILE
from shadowgate.server.persistence import DataPersistence, JsonFileStore

DATA_DIR_HELP = "Data directory (default: from SHADOWGATE_DATA_DIR env)"


def _persistence(data_dir: str | None) -> DataPersistence:
    if data_dir:
        os.environ["SHADOWGATE_DATA_DIR"] = data_dir
    config = Config()
    return DataPersistence(JsonFileStore(config.DATA_DIR / STORE_FILE))


@click.group()
def cli() -> None:
    """shadowgate protected delivery server"""


@cli.command()
@click.option("--host", default=None, help="Host to bind (default: 127.0.0.1)")
@click.option("--port", default=None, type=int, help="Port to bind (default: 8000)")
@click.option("--data-dir", default=None, help=DATA_DIR_HELP)
def serve(host: str | None, port: int | None, data_dir: str | None) -> None:
    """Start the delivery server"""
    if host:
        os.environ["SHADOWGATE_SERVER_HOST"] = host
    if port:
        os.environ["SHADOWGATE_SERVER_PORT"] = str(port)
    if data_dir:
        os.environ["SHADOWGATE_DATA_DIR"] = data_dir

    config = Config()
    if not config.ADMIN_PASSWORD:
        click.echo("SHADOWGATE_ADMIN_PASSWORD not set; admin routes disabled", err=True)
    start_server(config)


@cli.command()
@click.option("--length", default=64, show_default=True, type=click.IntRange(16, 256))
def secret(length: int) -> None:
    """Print a random value for SHADOWGATE_HANDSHAKE_SECRET"""
    click.echo(CryptoUtils.generate_token(length))


@cli.command("add-script")
@click.argument("name")
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--script-id", default=None, help="Identifier (default: random UUID)")
@click.option("--webhook-url", default=None, help="Execution webhook")
@click.option("--response-secret", default=None, help="Secret for response signatures")
@click.option("--no-hwid-lock", is_flag=True, help="Do not bind keys to a HWID")
@click.option("--max-warnings", default=3, show_default=True, type=click.IntRange(1))
@click.option("--data-dir", default=None, help=DATA_DIR_HELP)
def add_script(  # noqa: PLR0913
    name: str,
    source: Path,
    script_id: str | None,
    webhook_url: str | None,
    response_secret: str | None,
    no_hwid_lock: bool,  # noqa: FBT001
    max_warnings: int,
    data_dir: str | None,
) -> None:
    """Register a script payload from SOURCE"""
    persistence = _persistence(data_dir)
    script = ScriptRecord(
        script_id=script_id or str(uuid.uuid4()),
        name=name,
        content=source.read_text(),
        flags=ScriptFlags(hwid_lock=not no_hwid_lock, max_warnings=max_warnings),
        webhook_url=webhook_url,
        response_secret=response_secret,
    )
    persistence.save_script(script)
    click.echo(script.script_id)


@cli.command("issue-key")
@click.argument("script_id")
@click.option("--days", default=None, type=click.IntRange(1), help="Valid for N days after first use")
@click.option("--expires-at", default=None, type=int, help="Fixed expiry (epoch seconds)")
@click.option("--discord-id", default=None, help="Linked Discord user id")
@click.option("--data-dir", default=None, help=DATA_DIR_HELP)
def issue_key(
    script_id: str,
    days: int | None,
    expires_at: int | None,
    discord_id: str | None,
    data_dir: str | None,
) -> None:
    """Create a license key for SCRIPT_ID"""
    persistence = _persistence(data_dir)
    if persistence.get_script(script_id) is None:
        msg = f"Unknown script: {script_id}"
        raise click.ClickException(msg)
    if days and expires_at:
        msg = "Use either --days or --expires-at, not both"
        raise click.ClickException(msg)
    key = LicenseKey(
        key_id=str(uuid.uuid4()),
        key_value=CryptoUtils.generate_token(32),
        script_id=script_id,
        expires_at=expires_at,
        key_days=days,
        discord_id=discord_id,
        created_at=int(time.time()),
    )
    persistence.save_key(key)
    click.echo(key.key_value)


if __name__ == "__main__":
    cli()
