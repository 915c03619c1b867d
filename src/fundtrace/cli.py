# src/fundtrace/cli.py
"""fundtrace Command Line Interface.

Entry point for the fundtrace CLI tool.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from fundtrace import __version__
from fundtrace.contracts.enums import Delivery, RelationKind, RunStatus, ScopeMode
from fundtrace.contracts.errors import ConcurrentRunConflict, IntegrityError
from fundtrace.contracts.records import EvidenceMetadata, FindingRef, GoldCellRef, GoldScope, LineageChain, TransformScope
from fundtrace.core.config import FundtraceSettings, load_settings

if TYPE_CHECKING:
    from fundtrace.engine.service import EvidenceEngine

__all__ = [
    "app",
]

OutputFormat = Literal["console", "json"]


@dataclass(frozen=True)
class LogFlags:
    """Logging flags given to the root command, applied on top of the settings file."""

    verbose: bool = False
    json_logs: bool = False


app = typer.Typer(
    name="fundtrace",
    help="fundtrace: Evidence transformation and lineage for financial-assistance data.",
    no_args_is_help=True,
)

_SETTINGS_OPTION = typer.Option(None, "--settings", "-s", help="Path to settings YAML file (defaults apply when omitted).")
_FORMAT_OPTION = typer.Option("console", "--format", "-f", help="Output format: 'console' or 'json'.")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"fundtrace version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from .env file.

    Raises:
        typer.Exit: If explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(f"Error: .env file not found: {env_file}", fg=typer.colors.RED, err=True)
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)

    return load_dotenv(override=False)


@app.callback()
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(False, "--no-dotenv", help="Skip loading .env file."),
    env_file: Path | None = typer.Option(None, "--env-file", help="Path to .env file (skips automatic search)."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose/debug logging."),
    json_logs: bool = typer.Option(False, "--json-logs", help="Output structured JSON logs (for machine processing)."),
) -> None:
    """fundtrace: Evidence transformation and lineage for financial-assistance data."""
    from fundtrace.core.logging import configure_logging

    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "INFO")
    ctx.obj = LogFlags(verbose=verbose, json_logs=json_logs)

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho("Warning: --env-file ignored because --no-dotenv is set.", fg=typer.colors.YELLOW, err=True)


# === Helpers ===


def _load_config(settings: str | None) -> FundtraceSettings:
    if settings is None:
        return FundtraceSettings()
    try:
        return load_settings(Path(settings).expanduser())
    except (YamlParserError, YamlScannerError) as e:
        typer.echo(f"YAML syntax error in {settings}: {e.problem}", err=True)
        raise typer.Exit(1) from None
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None


def _open_engine(ctx: typer.Context, settings: str | None) -> EvidenceEngine:
    from fundtrace.core.logging import configure_from_settings
    from fundtrace.engine.service import EvidenceEngine

    config = _load_config(settings)
    flags: LogFlags = ctx.find_root().obj or LogFlags()
    configure_from_settings(config.logging, verbose=flags.verbose, json_output=flags.json_logs)
    return EvidenceEngine.from_settings(config)


def _emit(output_format: OutputFormat, payload: dict[str, Any], lines: list[str]) -> None:
    if output_format == "json":
        typer.echo(json.dumps(payload, default=str, sort_keys=True))
    else:
        for line in lines:
            typer.echo(line)


def _parse_date(value: str | None, option: str) -> date | None:
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        typer.echo(f"Error: {option} must be an ISO date (YYYY-MM-DD), got {value!r}", err=True)
        raise typer.Exit(1) from None


def _parse_kind(value: str | None) -> RelationKind | None:
    if value is None:
        return None
    try:
        return RelationKind(value)
    except ValueError:
        choices = ", ".join(k.value for k in RelationKind)
        typer.echo(f"Error: unknown relation kind {value!r} (choose from {choices})", err=True)
        raise typer.Exit(1) from None


# === Commands ===


@app.command()
def submit(
    ctx: typer.Context,
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Evidence file to store."),
    bundle: str = typer.Option(..., "--bundle", "-b", help="Ingestion bundle id."),
    kind: str | None = typer.Option(None, "--kind", "-k", help="Relation kind of the records in the file."),
    content_type: str | None = typer.Option(None, "--content-type", help="Declared content type (guessed from suffix when omitted)."),
    label: str | None = typer.Option(None, "--label", help="Source label (defaults to the file name)."),
    settings: str | None = _SETTINGS_OPTION,
    output_format: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Store an evidence file as a new raw object version."""
    if content_type is None:
        content_type = {".csv": "text/csv", ".json": "application/json"}.get(path.suffix.lower(), "application/octet-stream")
    metadata = EvidenceMetadata(source_label=label or path.name, content_type=content_type, relation_kind=_parse_kind(kind))

    engine = _open_engine(ctx, settings)
    try:
        result = engine.submit_evidence(bundle, path.read_bytes(), metadata)
    finally:
        engine.close()

    _emit(
        output_format,
        {"object_id": result.object_id, "version": result.version, "digest": result.digest},
        [f"Stored {metadata.source_label} as {result.object_id} v{result.version}", f"  digest: {result.digest}"],
    )


@app.command()
def manifest(
    ctx: typer.Context,
    bundle: str = typer.Argument(..., help="Ingestion bundle id."),
    settings: str | None = _SETTINGS_OPTION,
    output_format: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Show the status of an ingestion bundle."""
    engine = _open_engine(ctx, settings)
    try:
        status = engine.get_manifest_status(bundle)
    except KeyError:
        typer.echo(f"Error: unknown bundle {bundle!r}", err=True)
        raise typer.Exit(1) from None
    finally:
        engine.close()

    lines = [f"Bundle {bundle}: {status.status.value} ({len(status.objects)} object(s))"]
    lines.extend(f"  {object_id} v{version}" for object_id, version in status.objects)
    if status.error is not None:
        lines.append(f"  error: {status.error['type']}: {status.error['exception']}")
    _emit(
        output_format,
        {
            "bundle_id": bundle,
            "status": status.status.value,
            "objects": [list(o) for o in status.objects],
            "error": status.error,
        },
        lines,
    )


@app.command()
def run(
    ctx: typer.Context,
    logical_id: str = typer.Argument(..., help="Logical run id (repeating it is safe)."),
    mode: ScopeMode = typer.Option(ScopeMode.INCREMENTAL, "--mode", "-m", help="incremental or full."),
    since: str | None = typer.Option(None, "--since", help="Only objects received on or after this date."),
    until: str | None = typer.Option(None, "--until", help="Only objects received on or before this date."),
    kinds: list[str] | None = typer.Option(None, "--kind", "-k", help="Restrict to relation kind (repeatable)."),
    force: bool = typer.Option(False, "--force", help="Re-run a logical run that already succeeded."),
    settings: str | None = _SETTINGS_OPTION,
    output_format: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Run the silver transform and incremental gold rollup."""
    scope = TransformScope(
        mode=mode,
        since=_parse_date(since, "--since"),
        until=_parse_date(until, "--until"),
        kinds=tuple(k for k in (_parse_kind(v) for v in kinds) if k is not None) if kinds else None,
    )
    engine = _open_engine(ctx, settings)
    try:
        outcome = engine.run_transform(logical_id, scope, force=force)
    except ConcurrentRunConflict as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2) from None
    finally:
        engine.close()

    lines = [f"Run {outcome.logical_id} ({outcome.run_id}) attempt {outcome.attempt}: {outcome.status.value}"]
    if outcome.replayed:
        lines.append("  already succeeded; nothing to do (use --force to re-run)")
    lines.extend(f"  {name}: {value}" for name, value in outcome.counts.items())
    lines.extend(f"  error: {e.get('object_id', '-')}: {e['type']}: {e['exception']}" for e in outcome.errors)
    _emit(
        output_format,
        {
            "run_id": outcome.run_id,
            "logical_id": outcome.logical_id,
            "status": outcome.status.value,
            "attempt": outcome.attempt,
            "replayed": outcome.replayed,
            "counts": outcome.counts,
            "errors": list(outcome.errors),
        },
        lines,
    )
    if outcome.status != RunStatus.SUCCEEDED:
        raise typer.Exit(1)


@app.command()
def consume(
    ctx: typer.Context,
    topic: str = typer.Argument(..., help="Topic the message was delivered on."),
    partition: int = typer.Argument(..., help="Partition number."),
    offset: int = typer.Argument(..., help="Offset within the partition."),
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="File holding the message payload."),
    settings: str | None = _SETTINGS_OPTION,
) -> None:
    """Process one streaming message (prints ack or nack)."""
    engine = _open_engine(ctx, settings)
    try:
        delivery = engine.on_message(topic, partition, offset, path.read_bytes())
    finally:
        engine.close()
    typer.echo(delivery.value)
    if delivery == Delivery.NACK:
        raise typer.Exit(1)


@app.command()
def gold(
    ctx: typer.Context,
    metric: list[str] | None = typer.Option(None, "--metric", help="Restrict to metric (repeatable)."),
    start: str | None = typer.Option(None, "--start", help="First day bucket (inclusive)."),
    end: str | None = typer.Option(None, "--end", help="Last day bucket (inclusive)."),
    recompute: ScopeMode | None = typer.Option(None, "--recompute", help="Recompute first: incremental or full."),
    settings: str | None = _SETTINGS_OPTION,
    output_format: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Show gold aggregates, optionally recomputing them first."""
    scope = GoldScope(
        mode=recompute or ScopeMode.FULL,
        metrics=tuple(metric) if metric else None,
        start=_parse_date(start, "--start"),
        end=_parse_date(end, "--end"),
    )
    engine = _open_engine(ctx, settings)
    try:
        if recompute is not None:
            engine.recompute_gold(scope)
        cells = engine.get_gold_aggregate(scope)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None
    finally:
        engine.close()

    _emit(
        output_format,
        {
            "cells": [
                {
                    "metric": c.metric,
                    "bucket_date": c.bucket_date.isoformat(),
                    "group_key": c.group_key,
                    "total": str(c.total),
                    "row_count": c.row_count,
                    "value_hash": c.value_hash,
                }
                for c in cells
            ]
        },
        [f"{c.metric}  {c.bucket_date.isoformat()}  {c.group_key or '-'}  {c.total}  ({c.row_count} rows)" for c in cells],
    )


def _chain_payload(chain: LineageChain) -> dict[str, Any]:
    return {
        "consistent": chain.consistent,
        "gold": None
        if chain.gold is None
        else {"total": str(chain.gold.total), "row_count": chain.gold.row_count, "value_hash": chain.gold.value_hash},
        "finding_id": chain.finding.finding_id if chain.finding is not None else None,
        "silver": [
            {
                "identity_key": s.identity_key,
                "relation_kind": s.relation_kind.value,
                "business_key": s.business_key,
                "object_id": s.pointer.object_id,
                "version": s.pointer.version,
                "row_number": s.pointer.row_number,
                "amount": str(s.amount) if s.amount is not None else None,
            }
            for s in chain.silver
        ],
        "chunks": [
            {
                "chunk_id": c.chunk_id,
                "object_id": c.pointer.object_id,
                "version": c.pointer.version,
                "byte_start": c.byte_start,
                "byte_end": c.byte_end,
                "chunk_digest": c.chunk_digest,
            }
            for c in chain.chunks
        ],
        "objects": [
            {
                "object_id": o.object_id,
                "version": o.version,
                "source_label": o.source_label,
                "recorded_digest": o.recorded_digest,
                "verified_digest": o.verified_digest,
            }
            for o in chain.objects
        ],
    }


@app.command()
def lineage(
    ctx: typer.Context,
    metric: str | None = typer.Option(None, "--metric", help="Gold metric of the cell."),
    day: str | None = typer.Option(None, "--date", help="Day bucket of the cell."),
    group: str = typer.Option("", "--group", help="Group key of the cell (empty for ungrouped rows)."),
    finding: str | None = typer.Option(None, "--finding", help="Finding id (instead of a gold cell)."),
    settings: str | None = _SETTINGS_OPTION,
    output_format: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Trace a gold cell or finding back to verified raw evidence."""
    ref: GoldCellRef | FindingRef
    if finding is not None:
        ref = FindingRef(finding)
    elif metric is not None and day is not None:
        bucket = _parse_date(day, "--date")
        assert bucket is not None
        ref = GoldCellRef(metric=metric, bucket_date=bucket, group_key=group)
    else:
        typer.echo("Error: pass --finding, or --metric with --date", err=True)
        raise typer.Exit(1)

    engine = _open_engine(ctx, settings)
    try:
        chain = engine.resolve_lineage(ref)
    except KeyError as e:
        typer.echo(f"Error: {e.args[0]}", err=True)
        raise typer.Exit(1) from None
    except IntegrityError as e:
        typer.secho(f"INTEGRITY FAILURE: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(3) from None
    finally:
        engine.close()

    lines = []
    if chain.gold is not None:
        lines.append(f"{chain.gold.metric} {chain.gold.bucket_date.isoformat()} {chain.gold.group_key or '-'} = {chain.gold.total}")
        lines.append(f"  consistent: {chain.consistent}")
    if chain.finding is not None:
        lines.append(f"finding {chain.finding.finding_id} ({chain.finding.rule_id}, {chain.finding.model_name})")
    for s in chain.silver:
        row = f" row {s.pointer.row_number}" if s.pointer.row_number is not None else ""
        lines.append(f"  silver {s.relation_kind.value} {s.business_key} <- {s.pointer.object_id} v{s.pointer.version}{row}")
    for c in chain.chunks:
        lines.append(f"  chunk {c.chunk_id} bytes [{c.byte_start}, {c.byte_end}) of {c.pointer.object_id} v{c.pointer.version}")
    for o in chain.objects:
        lines.append(f"  raw {o.source_label} v{o.version} sha256:{o.verified_digest}")
    _emit(output_format, _chain_payload(chain), lines)


@app.command()
def verify(
    ctx: typer.Context,
    object_id: str = typer.Argument(..., help="Raw object id."),
    version: int | None = typer.Option(None, "--version", help="Object version (latest when omitted)."),
    settings: str | None = _SETTINGS_OPTION,
) -> None:
    """Re-verify stored bytes against their recorded digest."""
    engine = _open_engine(ctx, settings)
    try:
        digest = engine.verify(object_id, version)
    except KeyError as e:
        typer.echo(f"Error: {e.args[0]}", err=True)
        raise typer.Exit(1) from None
    except IntegrityError as e:
        typer.secho(f"INTEGRITY FAILURE: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(3) from None
    finally:
        engine.close()
    typer.echo(f"OK sha256:{digest}")


if __name__ == "__main__":
    app()
