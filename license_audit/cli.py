"""Command line interface for the license audit toolkit."""
from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import List, Optional, Sequence

import typer

from .aggregator import source_totals
from .classifier import GroupNameCache, SkuCatalog
from .config import AppConfig, ConfigurationError, load_config
from .export import default_output_path, read_identifiers, sibling_path, write_report
from .graph_client import GraphClient, GraphClientError
from .reports import (
    COMPARISON_FIELDS,
    COMPARISON_SUMMARY_FIELDS,
    DETAIL_FIELDS,
    GROUP_USAGE_FIELDS,
    SKU_DISTRIBUTION_FIELDS,
    SOURCE_TOTAL_FIELDS,
    USER_SUMMARY_FIELDS,
    SetupError,
    UserResult,
    assignment_detail_rows,
    collect_user_licenses,
    comparison_breakdown,
    comparison_rows,
    comparison_summary_rows,
    group_usage_rows,
    load_catalog,
    resolve_required_sku,
    resolve_target_skus,
    sku_distribution_rows,
    source_total_rows,
    user_summary_rows,
)
from .snapshot import MembershipStore, SnapshotModeError, ingest_group

app = typer.Typer(help="Report Microsoft 365 license assignments and snapshot group memberships.")
snapshot_app = typer.Typer(help="Copy group memberships into a local sqlite store.")
app.add_typer(snapshot_app, name="snapshot")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)

ConfigOption = typer.Option(
    None, "--config", help="Path to a specific settings file (overrides default)."
)
VerboseOption = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
    # msal and urllib3 are chatty at DEBUG
    logging.getLogger("msal").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _fail(message: str) -> typer.Exit:
    typer.echo(f"Error: {message}", err=True)
    return typer.Exit(code=1)


def _load_configuration(config_path: Optional[Path], verbose: bool) -> AppConfig:
    configure_logging(verbose)
    try:
        return load_config(config_path)
    except ConfigurationError as exc:
        raise _fail(str(exc))


def _open_directory(config: AppConfig) -> GraphClient:
    try:
        return GraphClient(config.graph)
    except GraphClientError as exc:
        raise _fail(str(exc))


def _load_identifiers(input_file: Path) -> List[str]:
    try:
        identifiers = read_identifiers(input_file)
    except (FileNotFoundError, ValueError) as exc:
        raise _fail(str(exc))
    if not identifiers:
        raise _fail(f"No user identifiers were found in '{input_file}'.")
    return identifiers


def _load_catalog(directory: GraphClient) -> SkuCatalog:
    try:
        return load_catalog(directory)
    except GraphClientError as exc:
        raise _fail(f"Unable to list subscribed SKUs: {exc}")


def _resolve_skus(catalog: SkuCatalog, values: Sequence[str]) -> List[str]:
    try:
        return resolve_target_skus(catalog, values)
    except SetupError as exc:
        raise _fail(str(exc))


def _collect(
    directory: GraphClient,
    identifiers: List[str],
    catalog: SkuCatalog,
    target_skus: Sequence[str],
    effective_only: bool,
) -> List[UserResult]:
    group_cache = GroupNameCache(directory.get_group)
    with typer.progressbar(length=len(identifiers), label="Processing users") as bar:
        results = list(
            collect_user_licenses(
                directory,
                identifiers,
                catalog,
                group_cache,
                target_skus=target_skus,
                effective_only=effective_only,
                progress=lambda _identifier: bar.update(1),
            )
        )
    logger.info(
        "Processed %s users; resolved %s groups with %s lookups",
        len(results),
        len(group_cache),
        group_cache.lookups,
    )
    return results


@app.command("skus")
def list_skus(
    config_path: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """List the SKUs subscribed in the tenant."""

    config = _load_configuration(config_path, verbose)
    with _open_directory(config) as directory:
        catalog = _load_catalog(directory)

    if not len(catalog):
        typer.echo("No subscribed SKUs found.")
        raise typer.Exit(code=0)

    for sku_id, part_number in catalog.items():
        typer.echo(f"{part_number:<40} {sku_id}")


@app.command("licenses")
def license_report(
    input_file: Path = typer.Argument(..., help="CSV or text file listing users (UPN or id)."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Summary CSV path."),
    sku: Optional[List[str]] = typer.Option(
        None, "--sku", help="Limit to this SKU id or part number. May be repeated."
    ),
    all_states: bool = typer.Option(
        False,
        "--all-states",
        help="Report every assignment state instead of active, error-free ones only.",
    ),
    delimiter: Optional[str] = typer.Option(None, help="Separator for the license summary text."),
    config_path: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Write per-user license summaries and a per-assignment detail report."""

    config = _load_configuration(config_path, verbose)
    identifiers = _load_identifiers(input_file)
    effective_only = config.reports.effective_only and not all_states
    separator = delimiter or config.reports.delimiter

    with _open_directory(config) as directory:
        catalog = _load_catalog(directory)
        targets = _resolve_skus(catalog, sku or config.reports.target_skus)
        results = _collect(directory, identifiers, catalog, targets, effective_only)

    summaries = [result.summary(separator) for result in results]
    summary_path = output or default_output_path("license_report", config.reports.output_dir)
    write_report(user_summary_rows(summaries), summary_path, USER_SUMMARY_FIELDS)
    details_path = write_report(
        assignment_detail_rows(results), sibling_path(summary_path, "details"), DETAIL_FIELDS
    )
    distribution_path = write_report(
        sku_distribution_rows(results), sibling_path(summary_path, "skus"), SKU_DISTRIBUTION_FIELDS
    )

    totals = source_totals(summaries)
    totals_path = write_report(
        source_total_rows(totals), sibling_path(summary_path, "totals"), SOURCE_TOTAL_FIELDS
    )
    typer.echo(f"Users processed: {totals.users} ({totals.failed_users} with errors)")
    typer.echo(
        f"Assignments: {totals.assignments} "
        f"(direct {totals.direct}, {totals.direct_share}% / group {totals.group}, {totals.group_share}%)"
    )
    typer.echo(f"Summary written to {summary_path}")
    typer.echo(f"Details written to {details_path}")
    typer.echo(f"SKU distribution written to {distribution_path}")
    typer.echo(f"Totals written to {totals_path}")


@app.command("group-usage")
def group_usage_report(
    input_file: Path = typer.Argument(..., help="CSV or text file listing users (UPN or id)."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Report CSV path."),
    sku: Optional[List[str]] = typer.Option(
        None, "--sku", help="Limit to this SKU id or part number. May be repeated."
    ),
    config_path: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Report which groups grant licenses to how many of the listed users."""

    config = _load_configuration(config_path, verbose)
    identifiers = _load_identifiers(input_file)

    with _open_directory(config) as directory:
        catalog = _load_catalog(directory)
        targets = _resolve_skus(catalog, sku or config.reports.target_skus)
        results = _collect(
            directory, identifiers, catalog, targets, config.reports.effective_only
        )

    rows = group_usage_rows(results, config.reports.delimiter)
    path = output or default_output_path("group_usage", config.reports.output_dir)
    write_report(rows, path, GROUP_USAGE_FIELDS)

    failed = sum(1 for result in results if result.error)
    typer.echo(f"{len(rows)} licensing groups across {len(results)} users ({failed} with errors).")
    typer.echo(f"Report written to {path}")


@app.command("compare")
def compare_skus(
    input_file: Path = typer.Argument(..., help="CSV or text file listing users (UPN or id)."),
    sku_a: Optional[str] = typer.Option(None, "--sku-a", help="First SKU id or part number."),
    sku_b: Optional[str] = typer.Option(None, "--sku-b", help="Second SKU id or part number."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Per-user CSV path."),
    config_path: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Classify users as holding only A, only B, both or neither of two SKUs."""

    config = _load_configuration(config_path, verbose)
    first = sku_a or config.reports.sku_a
    second = sku_b or config.reports.sku_b
    if not first or not second:
        raise _fail("Both --sku-a and --sku-b (or reports.sku_a/sku_b) are required.")
    identifiers = _load_identifiers(input_file)

    with _open_directory(config) as directory:
        catalog = _load_catalog(directory)
        try:
            first_id = resolve_required_sku(catalog, first)
            second_id = resolve_required_sku(catalog, second)
        except SetupError as exc:
            raise _fail(str(exc))
        results = _collect(
            directory,
            identifiers,
            catalog,
            [first_id, second_id],
            config.reports.effective_only,
        )

    breakdown = comparison_breakdown(results, first_id, second_id)
    name_a, name_b = catalog.name_for(first_id), catalog.name_for(second_id)

    path = output or default_output_path("sku_comparison", config.reports.output_dir)
    write_report(
        comparison_rows(results, first_id, second_id, catalog, breakdown), path, COMPARISON_FIELDS
    )
    summary_rows = comparison_summary_rows(breakdown, name_a, name_b)
    summary_path = write_report(summary_rows, sibling_path(path, "summary"), COMPARISON_SUMMARY_FIELDS)

    for row in summary_rows:
        typer.echo(f"{row['Combination']:<40} {row['UserCount']:>6} {row['Percentage']:>7}%")
    typer.echo(f"Users processed: {breakdown.processed} ({len(breakdown.failed)} with errors)")
    typer.echo(f"Per-user report written to {path}")
    typer.echo(f"Summary written to {summary_path}")


@snapshot_app.command("ingest")
def snapshot_ingest(
    group_ids: Optional[List[str]] = typer.Argument(
        None, help="Group object ids to copy (defaults to snapshot.groups)."
    ),
    attribute: Optional[str] = typer.Option(
        None, "--attribute", help="Extension attribute to record for each member."
    ),
    database: Optional[Path] = typer.Option(None, "--database", help="sqlite database file."),
    per_user: bool = typer.Option(
        False, "--per-user", help="Keep a single row per user instead of one per group."
    ),
    max_per_user: Optional[int] = typer.Option(
        None, "--max-per-user", min=1, help="Maximum rows per user when keyed by group."
    ),
    config_path: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Copy group members and one extension attribute into the local store."""

    config = _load_configuration(config_path, verbose)
    groups = list(group_ids or config.snapshot.groups)
    if not groups:
        raise _fail("No group ids supplied on the command line or in snapshot.groups.")

    key_by_group = config.snapshot.key_by_group and not per_user
    cap = max_per_user or config.snapshot.max_rows_per_user
    db_path = database or config.snapshot.database_file
    attribute_name = attribute or config.snapshot.extension_attribute

    try:
        store = MembershipStore(db_path, key_by_group=key_by_group, max_rows_per_user=cap)
    except SnapshotModeError as exc:
        raise _fail(str(exc))
    except sqlite3.Error as exc:
        raise _fail(f"Unable to open snapshot database '{db_path}': {exc}")

    with store, _open_directory(config) as directory:
        group_cache = GroupNameCache(directory.get_group)
        for group_id in groups:
            try:
                stats = ingest_group(directory, store, group_id, attribute_name, group_cache)
            except GraphClientError as exc:
                raise _fail(f"Unable to list members of group {group_id}: {exc}")
            typer.echo(
                f"{stats.group_name}: {stats.members} members, {stats.inserted} inserted, "
                f"{stats.duplicates} already present, {stats.capped} over cap, "
                f"{stats.errors} attribute errors"
            )

    typer.echo(f"Snapshot stored in {db_path}")


@snapshot_app.command("show")
def snapshot_show(
    database: Optional[Path] = typer.Option(None, "--database", help="sqlite database file."),
    config_path: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Print the stored membership rows."""

    config = _load_configuration(config_path, verbose)
    db_path = database or config.snapshot.database_file
    if not db_path.exists():
        raise _fail(f"Snapshot database '{db_path}' does not exist.")

    try:
        store = MembershipStore(db_path, key_by_group=None)
    except sqlite3.Error as exc:
        raise _fail(f"Unable to open snapshot database '{db_path}': {exc}")
    with store:
        rows = store.rows()

    if not rows:
        typer.echo("No memberships recorded yet.")
        raise typer.Exit(code=0)

    for row in rows:
        value = row["extension_value"] if row["extension_value"] is not None else "-"
        typer.echo(f"{row['user_principal_name']:<40} {row['group_name']:<30} {value}")


def run():
    app()


if __name__ == "__main__":
    run()
