"""
cli.py — Click CLI entrypoint for the ingestion core.

Usage:
    opendata preview https://gdi.berlin.de/services/wfs/kita --format WFS
    opendata aggregate data.csv-url '{"group_by": ["Bezirk"], "metrics": [{"op": "count"}]}'
    opendata download https://example.org/baeder.geojson --output-format csv -o baeder.csv
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import click

from opendata_shared.config import settings
from opendata_shared.errors import InputError
from opendata_shared.models import RemoteResource
from opendata_pipeline.loaders.export import export_table
from opendata_pipeline.pipelines.dataset_query import DatasetQueryService
from opendata_pipeline.utils.logging import configure_logging, get_logger, resource_context

log = get_logger(__name__, component="cli")


def _resource(url: str, declared_format: str, timeout: float | None) -> RemoteResource:
    if timeout is None:
        return RemoteResource(url=url, declared_format=declared_format)
    return RemoteResource(url=url, declared_format=declared_format, timeout_s=timeout)


def _echo_json(payload: object) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


format_option = click.option(
    "--format",
    "-f",
    "declared_format",
    default="",
    help="Declared resource format (CSV, JSON, GeoJSON, KML, XLSX, WFS, ...).",
)
timeout_option = click.option(
    "--timeout",
    type=float,
    default=None,
    help=f"Per-request timeout in seconds (default {settings.request_timeout_s:g}).",
)


@click.group()
@click.option(
    "--log-level",
    default=settings.log_level,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level",
)
@click.option(
    "--log-format",
    default=settings.log_format,
    type=click.Choice(["json", "console"]),
    help="Log renderer",
)
def main(log_level: str, log_format: str) -> None:
    """Fetch, preview, aggregate and export open-data resources."""
    configure_logging(log_level=log_level.upper(), log_format=log_format)


@main.command()
@click.argument("url")
@format_option
@timeout_option
def preview(url: str, declared_format: str, timeout: float | None) -> None:
    """Fetch a bounded preview of URL and describe its columns."""
    service = DatasetQueryService()
    with resource_context(url, declared_format):
        table, sample = asyncio.run(service.preview(_resource(url, declared_format, timeout)))
    if table.error is not None or sample is None:
        raise click.ClickException(table.error.message if table.error else "no data")

    click.echo(sample.summary)
    click.echo("")
    _echo_json(sample.sample_rows)


@main.command()
@click.argument("url")
@click.argument("request_json")
@format_option
@timeout_option
def aggregate(url: str, request_json: str, declared_format: str, timeout: float | None) -> None:
    """
    Run an aggregation over the full data behind URL.

    REQUEST_JSON is an aggregation request object, a path to a JSON file,
    or "-" to read it from stdin.
    """
    if request_json == "-":
        raw = sys.stdin.read()
    elif not request_json.lstrip().startswith("{") and Path(request_json).is_file():
        raw = Path(request_json).read_text(encoding="utf-8")
    else:
        raw = request_json
    try:
        request = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"REQUEST_JSON is not valid JSON: {exc}") from exc

    service = DatasetQueryService()
    resource = _resource(url, declared_format, timeout)
    try:
        with resource_context(url, declared_format):
            result = asyncio.run(service.aggregate(url, request, resource=resource))
    except InputError as exc:
        raise click.ClickException(exc.message) from exc

    log.info("aggregation_complete", groups=result.group_count, matched=result.matched_row_count)
    _echo_json(result.model_dump())


@main.command()
@click.argument("url")
@format_option
@timeout_option
@click.option(
    "--output-format",
    type=click.Choice(["csv", "json", "geojson"], case_sensitive=False),
    default=None,
    help="Defaults to csv for CSV sources, geojson for geodata, json otherwise.",
)
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), default=None)
@click.option("--title", default=None, help="Dataset title used for the suggested file name.")
def download(
    url: str,
    declared_format: str,
    timeout: float | None,
    output_format: str | None,
    output: Path | None,
    title: str | None,
) -> None:
    """Fetch the full data behind URL and re-serialize it."""
    service = DatasetQueryService()
    with resource_context(url, declared_format):
        table = asyncio.run(service.load_full(_resource(url, declared_format, timeout)))
    if table.error is not None:
        raise click.ClickException(table.error.message)

    try:
        exported = export_table(
            table,
            output_format.lower() if output_format else None,  # type: ignore[arg-type]
            title=title or Path(url.split("?")[0]).stem or "dataset",
        )
    except InputError as exc:
        raise click.ClickException(exc.message) from exc

    if table.is_preview:
        click.echo(
            f"Note: exported {len(table.rows)} of {table.total_row_count} rows (download cap).",
            err=True,
        )
    if output is None:
        click.echo(exported.content)
    else:
        output.write_text(exported.content, encoding="utf-8", newline="")
        click.echo(f"Wrote {exported.row_count} rows to {output} ({exported.mime_type})", err=True)


if __name__ == "__main__":
    main()
