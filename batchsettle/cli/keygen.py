"""
batchsettle keygen: create the Ed25519 key that signs the event journal.
"""

import sys
from pathlib import Path

import click

from batchsettle.core.crypto import Ed25519KeyManager


@click.command(name="keygen")
@click.argument("path", type=click.Path(dir_okay=False))
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing key file.")
def keygen_command(path: str, force: bool) -> None:
    """
    Write a new Ed25519 signing key to PATH (PEM, PKCS8) and print its public key.
    """
    key_path = Path(path)
    if key_path.exists() and not force:
        click.echo(f"refusing to overwrite {key_path} (use --force)", err=True)
        sys.exit(2)
    key_manager = Ed25519KeyManager.generate()
    key_manager.save(key_path)
    click.echo(key_manager.public_key_hex)
