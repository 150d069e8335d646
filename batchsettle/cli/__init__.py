"""
batchsettle/cli/__init__.py

Root click command group, registered in pyproject.toml as:

    [project.scripts]
    batchsettle = "batchsettle.cli:cli"
"""

import click

from batchsettle.cli.keygen import keygen_command
from batchsettle.cli.verify import verify_command


@click.group()
@click.version_option(package_name="batchsettle")
def cli() -> None:
    """
    batchsettle: collateral-backed batch settlement.

    \b
    Commands:
      verify    Verify a settlement event journal.
      keygen    Create a journal signing key.

    \b
    Quick start:
      batchsettle keygen journal.key
      batchsettle verify journal.jsonl
      batchsettle verify journal.jsonl --format json
      batchsettle verify journal.jsonl --quiet && echo "clean"
    """


cli.add_command(verify_command)
cli.add_command(keygen_command)
