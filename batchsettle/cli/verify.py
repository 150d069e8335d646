"""
batchsettle/cli/verify.py

batchsettle verify: offline audit of a settlement event journal.

Usage:
    batchsettle verify <journal>                      Human output (default)
    batchsettle verify <journal> --format json        Machine-readable JSON
    batchsettle verify <journal> --quiet              Exit code only
    batchsettle verify <journal> --trusted-signer HEX Require one signing key

Exit codes:
    0  Journal fully valid  (schema + chain + sequence + signatures)
    1  Journal has violations
    2  Error  (file missing, malformed JSON, schema failure)
"""

import json
import sys
import time
from pathlib import Path
from typing import Optional, Tuple

import click

from batchsettle.core.canonical import canonical_hash
from batchsettle.core.replay import ReplayEngine, ReplaySummary


class _Color:
    """ANSI color wrapper. Disabled when stdout is not a TTY or --no-color is passed."""
    _on: bool = True

    @classmethod
    def configure(cls, enabled: bool) -> None:
        cls._on = enabled and sys.stdout.isatty()

    @classmethod
    def _wrap(cls, code: str, s: str) -> str:
        return f"\033[{code}m{s}\033[0m" if cls._on else s

    @classmethod
    def green(cls, s: str) -> str:
        return cls._wrap("32", s)

    @classmethod
    def red(cls, s: str) -> str:
        return cls._wrap("31", s)

    @classmethod
    def yellow(cls, s: str) -> str:
        return cls._wrap("33", s)

    @classmethod
    def bold(cls, s: str) -> str:
        return cls._wrap("1", s)

    @classmethod
    def dim(cls, s: str) -> str:
        return cls._wrap("2", s)


def _row(label: str, value: str, ok: Optional[bool] = None) -> str:
    mark = "  " if ok is None else (_Color.green("ok") if ok else _Color.red("!!"))
    return f"  {_Color.dim(f'{label:<14}')}  {mark}  {value}"


def _head(engine: ReplayEngine) -> Tuple[Optional[str], Optional[int]]:
    """
    Chain head: hex(SHA-256(JCS(signing surface of the last entry))).

    This is the causal_hash the next entry would carry, a commitment to the
    whole journal suitable for external anchoring.
    """
    if not engine.envelopes:
        return None, None
    last = engine.envelopes[-1]
    return canonical_hash(last.to_signing_dict()), last.sequence


@click.command(name="verify")
@click.argument("journal", type=click.Path(exists=False))
@click.option(
    "--format", "fmt",
    type=click.Choice(["human", "json"], case_sensitive=False),
    default="human",
    show_default=True,
    help="Output format.",
)
@click.option(
    "--quiet",
    is_flag=True,
    default=False,
    help="Suppress all output. Use exit code only (0=valid, 1=invalid, 2=error).",
)
@click.option(
    "--trusted-signer",
    type=str,
    default=None,
    metavar="HEX",
    help="Report entries not signed by this Ed25519 public key.",
)
@click.option("--no-color", is_flag=True, default=False, help="Disable ANSI color output.")
def verify_command(
    journal:        str,
    fmt:            str,
    quiet:          bool,
    trusted_signer: Optional[str],
    no_color:       bool,
) -> None:
    """
    Verify a settlement event journal: schema, chain, sequence, signatures.

    JOURNAL is the path to a .jsonl journal file.
    """
    _Color.configure(not no_color)
    journal_path = Path(journal)

    if not journal_path.exists():
        _emit_error(f"Journal not found: {journal}", fmt, quiet)
        sys.exit(2)

    engine  = ReplayEngine(trusted_signer=trusted_signer)
    started = time.perf_counter()
    try:
        engine.load(journal_path)
    except (FileNotFoundError, ValueError) as e:
        _emit_error(str(e), fmt, quiet)
        sys.exit(2)

    head_hash, head_sequence = _head(engine)
    summary = engine.verify()
    elapsed = time.perf_counter() - started
    valid   = not summary.violations

    if quiet:
        sys.exit(0 if valid else 1)

    if fmt == "json":
        out = summary.to_dict()
        out.update({
            "journal":             str(journal_path),
            "journal_valid":       valid,
            "chain_head_hash":     head_hash,
            "chain_head_sequence": head_sequence,
            "elapsed_seconds":     round(elapsed, 3),
        })
        click.echo(json.dumps({"batchsettle_verify": out}, indent=2))
    else:
        _output_human(summary, journal_path, head_hash, head_sequence, elapsed, valid)

    sys.exit(0 if valid else 1)


def _output_human(
    summary:       ReplaySummary,
    journal_path:  Path,
    head_hash:     Optional[str],
    head_sequence: Optional[int],
    elapsed:       float,
    valid:         bool,
) -> None:
    bar = "─" * 64
    total = summary.total_entries
    kinds = {v.violation_type for v in summary.violations}

    click.echo()
    click.echo(_Color.bold("  batchsettle  ·  journal verification"))
    click.echo(f"  {bar}")
    click.echo(_row("Journal", str(journal_path)))
    click.echo(_row("Entries", f"{total:,}"))
    click.echo(_row("Sources", ", ".join(summary.sources_seen) or "-"))
    click.echo()

    click.echo(_row("Chain", "intact" if "chain_break" not in kinds else "broken",
                    "chain_break" not in kinds))
    click.echo(_row("Sequence", "no gaps" if "sequence_gap" not in kinds else "gaps detected",
                    "sequence_gap" not in kinds))
    click.echo(_row("Signatures", f"{summary.valid_signatures:,} / {total:,} valid",
                    summary.invalid_signatures == 0))
    if "duplicate_nonce" in kinds:
        click.echo(_row("Nonces", "duplicates detected", False))
    if "untrusted_signer" in kinds:
        click.echo(_row("Signer", "untrusted key present", False))
    consistent = not ({"unbalanced_account", "unknown_batch"} & kinds)
    click.echo(_row("Ledger", "consistent" if consistent else "inconsistent", consistent))

    if summary.first_timestamp:
        click.echo(_row("First entry", summary.first_timestamp))
        click.echo(_row("Last entry", summary.last_timestamp))
    if head_hash is not None:
        click.echo(_row("Chain head", f"{head_hash[:16]}...{head_hash[-8:]}  [seq {head_sequence}]"))
    if summary.event_type_counts:
        counts = "  ".join(f"{k}: {v:,}" for k, v in sorted(summary.event_type_counts.items()))
        click.echo(_row("Events", counts))
    click.echo(_row("Verified in", f"{elapsed:.3f}s"))
    click.echo()

    if summary.violations:
        click.echo(f"  {bar}")
        for v in summary.violations:
            click.echo(f"  {_Color.red(str(v.at_sequence)):>6}  {_Color.yellow(f'{v.violation_type:<18}')}  {v.detail}")
        click.echo(f"  {bar}")

    if valid:
        click.echo(_Color.green(_Color.bold("  VALID  ·  0 violations")))
    else:
        click.echo(_Color.red(_Color.bold(f"  INVALID  ·  {len(summary.violations)} violation(s)")))
    click.echo()


def _emit_error(msg: str, fmt: str, quiet: bool) -> None:
    if quiet:
        return
    if fmt == "json":
        click.echo(json.dumps({
            "batchsettle_verify": {"error": msg, "journal_valid": False},
        }))
    else:
        click.echo(_Color.red(f"\n  ERROR: {msg}\n"), err=True)
