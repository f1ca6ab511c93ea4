"""CLI entry point for fleet-ipe."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table as RichTable

from fleet_ipe import CONSUMPTION_ROLES, REQUIRED_ROLES, __version__
from fleet_ipe.aggregate import order_months
from fleet_ipe.columns import parse_role_map
from fleet_ipe.extract import ExtractionResult, extract_workbook
from fleet_ipe.grid import SheetNotFoundError, list_sheet_names
from fleet_ipe.io import load_records, read_source, write_json, write_records
from fleet_ipe.models import ExtractionReport, MonthlyTotals, RegressionResult, RunManifest
from fleet_ipe.qc import write_qc_report
from fleet_ipe.regression import fit_by_type, fit_or_default, select_for_regression
from fleet_ipe.report import write_report
from fleet_ipe.utils import new_run_id, sha256_bytes, utcnow_iso

app = typer.Typer(
    name="fleet-ipe",
    help="fleet-ipe — Rebuild fuel-consumption logs from spreadsheets and fit IPE regressions.",
    add_completion=False,
    no_args_is_help=True,
)
console = Console()

_STRUCTURAL_ERRORS = (FileNotFoundError, SheetNotFoundError, ValueError, OSError)


def _noop(*_args: object, **_kwargs: object) -> None:
    return None


def _printer(quiet: bool) -> Callable[..., None]:
    return _noop if quiet else console.print


def _err(msg: str) -> None:
    console.print(f"[red]x[/red] {msg}")


def _configure_logging(verbose: bool) -> None:
    logger = logging.getLogger("fleet_ipe")
    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        logger.addHandler(RichHandler(console=console, show_path=False, markup=False))
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


# ── Helpers ──────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"fleet-ipe v{__version__}")
        raise typer.Exit()


def _load_profile_lines(profile: Path | None) -> list[str]:
    """Return the raw ``role=Header`` lines of a profile file."""
    if not profile:
        return []
    if not profile.exists():
        raise ValueError(f"Profile not found: {profile} (expected lines like liters=Consommation L)")
    if profile.is_dir():
        raise ValueError(f"Profile is a directory, not a file: {profile}")
    try:
        return profile.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise ValueError(f"Cannot read profile {profile}: {exc}") from exc


def _load_overrides(col_map: list[str] | None, profile: Path | None) -> dict[str, str]:
    return parse_role_map(_load_profile_lines(profile) + (col_map or []))


def _write_manifest(
    out_dir: Path,
    input_file: Path,
    run_id: str,
    created_at: str,
    report: ExtractionReport,
    *,
    sha256: str = "",
    status: str = "success",
    error_code: int | None = None,
    error_message: str = "",
) -> Path:
    manifest = RunManifest(
        run_id=run_id,
        version=__version__,
        input_path=str(input_file.resolve()),
        sheet=report.sheet,
        output_dir=str(out_dir.resolve()),
        created_at_utc=created_at,
        rows_in=report.rows_in,
        rows_out=report.rows_out,
        sha256=sha256,
        status=status,
        error_code=error_code,
        error_message=error_message,
    )
    return write_json(out_dir / "run_manifest.json", manifest.to_dict())


def _fail(
    out_dir: Path,
    input_file: Path,
    run_id: str,
    created_at: str,
    *,
    message: str,
    sheet: str = "",
    sha256: str = "",
    error_code: int = 2,
) -> typer.Exit:
    """Write failure QC + manifest, print where they went, return the Exit to raise."""
    report = ExtractionReport(sheet=sheet, warnings=[message])
    qc_path = write_qc_report(out_dir, report)
    manifest_path = _write_manifest(
        out_dir,
        input_file,
        run_id,
        created_at,
        report,
        sha256=sha256,
        status="failed",
        error_code=error_code,
        error_message=message,
    )
    _err(message)
    console.print(f"  QC report -> {qc_path}")
    console.print(f"  Manifest  -> {manifest_path}")
    return typer.Exit(code=error_code)


def _resolve_sheet(data: bytes, sheet: str | None) -> str:
    if sheet:
        return sheet
    names = list_sheet_names(data)
    if not names:
        raise ValueError("Workbook has no sheets")
    return names[0]


def _missing_roles_hint(result: ExtractionResult) -> None:
    _err(f"Missing roles: {', '.join(result.report.missing_roles)}")
    console.print(f"  Required: {', '.join(REQUIRED_ROLES)} and one of {', '.join(CONSUMPTION_ROLES)}")
    console.print("  Hint: use --map role=Header to pin a column")


def _write_text_artifact(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(text, encoding="utf-8")
    tmp_path.replace(path)
    return path


def _write_regressions(out_dir: Path, regressions: Mapping[str, RegressionResult]) -> Path:
    return write_json(out_dir / "regression.json", {k: r.to_dict() for k, r in regressions.items()})


def _write_monthly(out_dir: Path, totals: Mapping[str, MonthlyTotals]) -> Path:
    return write_json(out_dir / "monthly_totals.json", [t.to_dict() for t in order_months(totals)])


def _write_summary_artifact(
    out_dir: Path,
    input_file: Path,
    result: ExtractionResult,
    regressions: Mapping[str, RegressionResult],
    overrides: Mapping[str, str],
    max_warnings: int = 5,
) -> Path:
    report = result.report
    lines: list[str] = [
        "fleet-ipe summary",
        f"tool_version: fleet-ipe v{__version__}",
        f"input_file: {input_file.name}",
        f"sheet: {report.sheet}",
        f"rows_in: {report.rows_in}",
        f"records: {report.rows_out}",
        f"rows_dropped: {report.dropped_rows}",
        f"warning_count: {len(report.warnings)}",
    ]
    for idx, warning in enumerate(report.warnings[:max_warnings], start=1):
        lines.append(f"warning_{idx}: {warning}")
    if len(report.warnings) > max_warnings:
        lines.append(f"warning_more: {len(report.warnings) - max_warnings}")

    months = [t.month for t in order_months(result.monthly_totals)]
    lines.append(f"months: {', '.join(months) if months else 'N/A'}")
    types = Counter(record.vehicle_type for record in result.records)
    for vehicle_type in sorted(types):
        lines.append(f"vehicles_{vehicle_type.lower()}: {types[vehicle_type]}")
    for vehicle_type, regression in regressions.items():
        lines.append(f"model_{vehicle_type.lower()}: {regression.equation} (R²={regression.r_squared:.4f})")

    command = [
        "fleet-ipe run",
        f"--input {input_file.name}",
        f"--sheet {report.sheet!r}",
        f"--out-dir {out_dir.name or str(out_dir)}",
    ]
    for role, header in sorted(overrides.items()):
        command.append(f"--map '{role}={header}'")
    lines.append("command: " + " ".join(command))
    return _write_text_artifact(out_dir / "summary.txt", "\n".join(lines) + "\n")


def _print_warnings(warnings: Sequence[str]) -> None:
    for w in warnings:
        console.print(f"  [yellow]![/yellow] {w}")


# ── Callbacks ────────────────────────────────────────────────────


@app.callback()
def main(
    version: bool | None = typer.Option(
        None, "--version", "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v",
        help="Show debug logging from the extraction and regression steps.",
    ),
) -> None:
    """fleet-ipe CLI."""
    _configure_logging(verbose)


# ── sheets command ───────────────────────────────────────────────


@app.command()
def sheets(
    input_file: Path = typer.Option(
        ..., "--input", "-i",
        help="Path to an XLSX/XLS workbook.",
        exists=True, readable=True,
    ),
) -> None:
    """List the sheets of a workbook."""
    try:
        names = list_sheet_names(read_source(input_file))
    except _STRUCTURAL_ERRORS as exc:
        _err(str(exc))
        raise typer.Exit(code=2)

    tbl = RichTable(title=input_file.name)
    tbl.add_column("#", justify="right")
    tbl.add_column("Sheet", style="bold")
    for idx, name in enumerate(names, start=1):
        tbl.add_row(str(idx), name)
    console.print(tbl)


# ── run command ──────────────────────────────────────────────────


@app.command()
def run(
    input_file: Path = typer.Option(
        ..., "--input", "-i",
        help="Path to an XLSX/XLS workbook.",
        exists=True, readable=True,
    ),
    sheet: str | None = typer.Option(
        None, "--sheet", "-s",
        help="Sheet to extract (default: first sheet).",
    ),
    out_dir: Path = typer.Option(
        Path("output"), "--out-dir", "-o",
        envvar="FLEET_IPE_OUT_DIR",
        help="Output directory for records, models, report, QC + manifest.",
    ),
    col_map: list[str] | None = typer.Option(
        None, "--map", "-m",
        help="Pin a role to a header: role=Header. E.g. --map liters='Conso (L)'",
    ),
    profile: Path | None = typer.Option(
        None, "--profile",
        envvar="FLEET_IPE_PROFILE",
        help="Profile file containing role=Header lines.",
    ),
    with_report: bool = typer.Option(
        True, "--report/--no-report",
        help="Write IPE_Report.xlsx.",
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q",
        help="Suppress informational output; still writes all artifacts.",
    ),
) -> None:
    """Extract records, aggregate per month and fit one model per vehicle type."""
    echo = _printer(quiet)
    created_at = utcnow_iso()
    run_id = new_run_id()
    out_dir.mkdir(parents=True, exist_ok=True)
    sha256 = ""
    sheet_name = sheet or ""

    try:
        overrides = _load_overrides(col_map, profile)
        echo("[blue]>[/blue] Loading workbook …")
        data = read_source(input_file)
        sha256 = sha256_bytes(data)
        sheet_name = _resolve_sheet(data, sheet)
    except _STRUCTURAL_ERRORS as exc:
        raise _fail(out_dir, input_file, run_id, created_at, message=str(exc), sheet=sheet_name, sha256=sha256)

    if not quiet:
        console.print(Panel(
            f"[bold]fleet-ipe[/bold] v{__version__}\n"
            f"Input:  {input_file} [{sheet_name}]\nOutput: {out_dir}",
            title="Pipeline Start", border_style="blue",
        ))
        if profile:
            console.print(f"  Using profile: {profile}")
        if overrides:
            console.print(f"  Role overrides: {overrides}")

    echo("[blue]>[/blue] Extracting records …")
    try:
        result = extract_workbook(data, sheet_name, overrides)
    except _STRUCTURAL_ERRORS as exc:
        raise _fail(out_dir, input_file, run_id, created_at, message=str(exc), sheet=sheet_name, sha256=sha256)

    try:
        report = result.report
        qc_path = write_qc_report(out_dir, report, result.skipped)
        echo(f"  QC report -> {qc_path}")

        if not result.roles.is_valid:
            _missing_roles_hint(result)
            _write_manifest(
                out_dir,
                input_file,
                run_id,
                created_at,
                report,
                sha256=sha256,
                status="failed",
                error_code=2,
                error_message=f"Missing roles: {', '.join(report.missing_roles)}",
            )
            raise typer.Exit(code=2)

        if not quiet:
            _print_warnings(report.warnings)
            console.print(f"  {report.rows_out} records across {len(result.monthly_totals)} months")

        echo("[blue]>[/blue] Fitting regressions …")
        regressions = fit_by_type(result.records)
        for vehicle_type, regression in regressions.items():
            echo(f"  {vehicle_type}: {regression.equation}  (R²={regression.r_squared:.4f})")

        records_path = write_records(out_dir, result.records)
        monthly_path = _write_monthly(out_dir, result.monthly_totals)
        regression_path = _write_regressions(out_dir, regressions)
        echo(f"  Records  -> {records_path}")
        echo(f"  Monthly  -> {monthly_path}")
        echo(f"  Models   -> {regression_path}")

        report_path: Path | None = None
        if with_report:
            echo("[blue]>[/blue] Writing IPE_Report.xlsx …")
            report_path = write_report(out_dir, result.records, result.monthly_totals, regressions, report)
            echo(f"  Report   -> {report_path}")

        manifest_path = _write_manifest(out_dir, input_file, run_id, created_at, report, sha256=sha256)
        echo(f"  Manifest -> {manifest_path}")
        summary_path = _write_summary_artifact(out_dir, input_file, result, regressions, overrides)
        echo(f"  Summary  -> {summary_path}")

        if not quiet:
            target = report_path or out_dir
            console.print(Panel(
                f"[green]Done[/green] — {report.rows_out} records -> {target}",
                title="Pipeline Complete", border_style="green",
            ))
    except typer.Exit:
        raise
    except Exception as exc:
        raise _fail(
            out_dir,
            input_file,
            run_id,
            created_at,
            message=f"Unexpected internal error: {exc}",
            sheet=sheet_name,
            sha256=sha256,
            error_code=1,
        )


# ── validate command ─────────────────────────────────────────────


@app.command()
def validate(
    input_file: Path = typer.Option(
        ..., "--input", "-i",
        help="Path to an XLSX/XLS workbook.",
        exists=True, readable=True,
    ),
    sheet: str | None = typer.Option(
        None, "--sheet", "-s",
        help="Sheet to check (default: first sheet).",
    ),
    out_dir: Path = typer.Option(
        Path("output"), "--out-dir", "-o",
        envvar="FLEET_IPE_OUT_DIR",
        help="Output directory for QC + manifest.",
    ),
    col_map: list[str] | None = typer.Option(
        None, "--map", "-m",
        help="Pin a role to a header: role=Header.",
    ),
    profile: Path | None = typer.Option(
        None, "--profile",
        envvar="FLEET_IPE_PROFILE",
        help="Profile file containing role=Header lines.",
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q",
        help="Suppress informational output; still writes QC + manifest.",
    ),
) -> None:
    """Classify columns and extract without writing records or the report.

    Writes qc_report.json + run_manifest.json only.
    Exit 0 = OK, exit 2 = required roles missing or unreadable input.
    """
    created_at = utcnow_iso()
    run_id = new_run_id()
    out_dir.mkdir(parents=True, exist_ok=True)
    sha256 = ""
    sheet_name = sheet or ""

    try:
        overrides = _load_overrides(col_map, profile)
        data = read_source(input_file)
        sha256 = sha256_bytes(data)
        sheet_name = _resolve_sheet(data, sheet)
        if not quiet:
            console.print(Panel(
                f"[bold]fleet-ipe[/bold] v{__version__}  [dim]validate mode[/dim]\n"
                f"Input: {input_file} [{sheet_name}]",
                title="Validate", border_style="cyan",
            ))
        result = extract_workbook(data, sheet_name, overrides)
    except _STRUCTURAL_ERRORS as exc:
        raise _fail(out_dir, input_file, run_id, created_at, message=str(exc), sheet=sheet_name, sha256=sha256)

    try:
        report = result.report
        if report.rows_out == 0 and report.rows_in > 0 and not quiet:
            console.print("[yellow]![/yellow] Validation warning: no vehicle records could be extracted.")

        qc_path = write_qc_report(out_dir, report, result.skipped)
        valid = result.roles.is_valid
        manifest_path = _write_manifest(
            out_dir,
            input_file,
            run_id,
            created_at,
            report,
            sha256=sha256,
            status="success" if valid else "failed",
            error_code=None if valid else 2,
            error_message="" if valid else f"Missing roles: {', '.join(report.missing_roles)}",
        )

        if not quiet:
            tbl = RichTable(title="Validation Summary", show_lines=True)
            tbl.add_column("Check", style="bold")
            tbl.add_column("Result")
            for role, index in result.roles.to_dict().items():
                tbl.add_row(f"Column {role}", "[dim]-[/dim]" if index is None else str(index))
            tbl.add_row("Rows in", str(report.rows_in))
            tbl.add_row("Records", str(report.rows_out))
            tbl.add_row("Dropped", str(report.dropped_rows))
            for w in report.warnings:
                tbl.add_row("Warning", f"[yellow]{w}[/yellow]")
            tbl.add_row("Status", "[green]PASS[/green]" if valid else "[red]FAIL[/red]")
            console.print(tbl)
        console.print(f"  QC       -> {qc_path}")
        console.print(f"  Manifest -> {manifest_path}")

        if not valid:
            _missing_roles_hint(result)
            raise typer.Exit(code=2)
    except typer.Exit:
        raise
    except Exception as exc:
        raise _fail(
            out_dir,
            input_file,
            run_id,
            created_at,
            message=f"Unexpected internal error: {exc}",
            sheet=sheet_name,
            sha256=sha256,
            error_code=1,
        )


# ── regress command ──────────────────────────────────────────────


@app.command()
def regress(
    records_file: Path = typer.Option(
        ..., "--records", "-r",
        help="records.json written by a previous run.",
        exists=True, readable=True,
    ),
    vehicle_type: str = typer.Option(
        "all", "--type", "-t",
        help="Vehicle type to fit (Camion, Minibus, Chariot, Voiture) or 'all' for one model per type.",
    ),
    out_dir: Path = typer.Option(
        Path("output"), "--out-dir", "-o",
        envvar="FLEET_IPE_OUT_DIR",
        help="Output directory for regression.json.",
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q",
        help="Suppress informational output.",
    ),
) -> None:
    """Fit the consumption model from persisted records."""
    echo = _printer(quiet)
    try:
        records = load_records(records_file)
    except _STRUCTURAL_ERRORS as exc:
        _err(str(exc))
        raise typer.Exit(code=2)

    usable = select_for_regression(records, vehicle_type)
    if not usable:
        _err(f"No records with liters > 0 and distance > 0 for type {vehicle_type!r}")
        raise typer.Exit(code=2)

    if vehicle_type.strip().lower() == "all":
        regressions = fit_by_type(usable)
    else:
        regressions = {vehicle_type: fit_or_default(usable, vehicle_type)}

    out_dir.mkdir(parents=True, exist_ok=True)
    path = _write_regressions(out_dir, regressions)

    if not quiet:
        tbl = RichTable(title="Regression")
        tbl.add_column("Type", style="bold")
        tbl.add_column("Equation")
        tbl.add_column("R²", justify="right")
        tbl.add_column("n", justify="right")
        for name, result in regressions.items():
            flag = " [yellow](default)[/yellow]" if result.is_default else ""
            tbl.add_row(name, result.equation + flag, f"{result.r_squared:.4f}", str(result.sample_size))
        console.print(tbl)
    echo(f"  Models -> {path}")
