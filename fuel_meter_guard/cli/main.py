"""
CLI interface for Fuel Meter Guard.

Provides command-line access to readings, calculations, deviations and
approvals.
"""

import sys
from datetime import date
from decimal import Decimal
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from fuel_meter_guard.config.loader import default_config, load_config
from fuel_meter_guard.core.approval import approval_state
from fuel_meter_guard.demo.seed_demo_data import seed_demo_data
from fuel_meter_guard.logging_config import configure_logging
from fuel_meter_guard.service import MeterGuardService, OperationResult

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def build_service(config_path: Optional[str]) -> MeterGuardService:
    """Load configuration and wire up the service."""
    config = load_config(config_path) if config_path else default_config()
    configure_logging(config.log_level)
    return MeterGuardService(config)


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"'{value}' is not a YYYY-MM-DD date")


def _service(ctx: typer.Context) -> MeterGuardService:
    try:
        return build_service(ctx.obj.get("config"))
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error loading configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _user(ctx: typer.Context) -> Optional[str]:
    return ctx.obj.get("user")


def _require_success(result: OperationResult):
    """Print the failure and exit, or return the result data."""
    if not result.is_success:
        console.print(f"[red]Error ({result.error_kind}):[/] {escape(result.error)}")
        sys.exit(EXIT_CODE_FAIL)
    return result.data


def _format_volume(value: Decimal) -> str:
    return f"{value:,.1f} L"


def _format_money(value: Decimal) -> str:
    return f"{value:,.2f}"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None, "--config", "-c", envvar="FUEL_METER_GUARD_CONFIG", help="Path to YAML configuration"
    ),
    user: Optional[str] = typer.Option(
        None, "--user", "-u", envvar="FUEL_METER_GUARD_USER", help="Acting user id"
    ),
):
    """Fuel Meter Guard CLI."""
    ctx.obj = {"config": config, "user": user}
    if ctx.invoked_subcommand is None:
        console.print("Fuel Meter Guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the meter database."""
    try:
        _service(ctx).initialize()
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("seed-demo")
def seed_demo(ctx: typer.Context):
    """Load a demo station with a week of readings."""
    service = _service(ctx)
    service.initialize()
    summary = seed_demo_data(service)
    console.print(f"[green]✓[/] Demo data inserted ({summary})")


@app.command("add-pump")
def add_pump(
    ctx: typer.Context,
    station_id: str = typer.Argument(..., help="Station id"),
    product_id: str = typer.Argument(..., help="Fuel product id"),
    label: str = typer.Argument(..., help="Pump label"),
    capacity: float = typer.Argument(..., help="Meter capacity"),
    install_date: str = typer.Option(None, "--install-date", help="YYYY-MM-DD, defaults to today"),
):
    """Register a pump at a station (managers only)."""
    service = _service(ctx)
    installed = _parse_date(install_date) if install_date else service.clock.now().date()
    pump = _require_success(service.register_pump(
        _user(ctx), station_id, product_id, label, capacity, installed
    ))
    console.print(f"[green]✓[/] Pump {pump.label} registered with id {pump.id}")


@app.command()
def record(
    ctx: typer.Context,
    pump_id: int = typer.Argument(..., help="Pump id"),
    reading_date: str = typer.Argument(..., help="YYYY-MM-DD"),
    reading_type: str = typer.Argument(..., help="opening or closing"),
    meter_value: float = typer.Argument(..., help="Meter value"),
    notes: Optional[str] = typer.Option(None, "--notes", "-n"),
):
    """Record an opening or closing meter reading."""
    service = _service(ctx)
    reading = _require_success(service.record_reading(
        _user(ctx), pump_id, _parse_date(reading_date), reading_type, meter_value, notes=notes
    ))
    console.print(
        f"[green]✓[/] Recorded {reading.reading_type.value} reading {reading.meter_value} "
        f"(id {reading.id})"
    )
    for failure in service.recalculation.drain():
        console.print(f"[yellow]Warning:[/] {failure}")


@app.command()
def update(
    ctx: typer.Context,
    reading_id: int = typer.Argument(..., help="Reading id"),
    meter_value: float = typer.Argument(..., help="Corrected meter value"),
    notes: Optional[str] = typer.Option(None, "--notes", "-n"),
    override_manager: Optional[str] = typer.Option(
        None, "--override-manager", help="Manager authorizing an edit past the cutoff"
    ),
    reason: Optional[str] = typer.Option(None, "--reason", help="Reason for the override"),
):
    """Correct a reading within the modification window."""
    service = _service(ctx)
    reading = _require_success(service.update_reading(
        _user(ctx), reading_id, meter_value, notes=notes,
        override_manager_id=override_manager, override_reason=reason,
    ))
    console.print(
        f"[green]✓[/] Reading {reading.id} now {reading.meter_value} "
        f"(original {reading.original_value})"
    )


@app.command()
def status(
    ctx: typer.Context,
    station_id: str = typer.Argument(..., help="Station id"),
    reading_date: str = typer.Argument(..., help="YYYY-MM-DD"),
):
    """Show which pumps have opening and closing readings for a day."""
    rows = _require_success(_service(ctx).daily_status(_user(ctx), station_id, _parse_date(reading_date)))
    table = Table(title=f"Readings for {reading_date}")
    table.add_column("Pump")
    table.add_column("Opening", justify="right")
    table.add_column("Closing", justify="right")
    for row in rows:
        table.add_row(
            row.label,
            str(row.opening_value) if row.has_opening else "[red]missing[/]",
            str(row.closing_value) if row.has_closing else "[red]missing[/]",
        )
    console.print(table)


@app.command()
def calculate(
    ctx: typer.Context,
    station_id: str = typer.Argument(..., help="Station id"),
    calculation_date: str = typer.Argument(..., help="YYYY-MM-DD"),
    force: bool = typer.Option(False, "--force", "-f", help="Recompute existing actual rows"),
):
    """Calculate dispensed volume and revenue for a station day."""
    summary = _require_success(_service(ctx).calculate(
        _user(ctx), station_id, _parse_date(calculation_date), force_recalculate=force
    ))
    console.print("\n[bold]Daily Calculation Result[/bold]")
    console.print("-" * 40)
    for calc in summary.calculations:
        flags = []
        if calc.is_estimated:
            flags.append(f"estimated: {calc.estimation_method.value if calc.estimation_method else 'unknown'}")
        if calc.has_rollover:
            flags.append("rollover")
        if calc.needs_attention:
            flags.append("needs attention")
        suffix = f" ({', '.join(flags)})" if flags else ""
        console.print(
            f"Pump {calc.pump_id}: {_format_volume(calc.volume_dispensed)} "
            f"x {_format_money(calc.unit_price)} = {_format_money(calc.total_revenue)}{suffix}"
        )
    console.print(f"\nPumps calculated: {summary.calculated_count}")
    console.print(f"Total volume: {_format_volume(summary.total_volume)}")
    console.print(f"Total revenue: {_format_money(summary.total_revenue)}")


@app.command()
def calculations(
    ctx: typer.Context,
    station_id: str = typer.Argument(..., help="Station id"),
    start_date: str = typer.Argument(..., help="YYYY-MM-DD"),
    end_date: str = typer.Argument(..., help="YYYY-MM-DD"),
):
    """List daily calculations for a date range."""
    rows = _require_success(_service(ctx).list_calculations(
        _user(ctx), station_id, _parse_date(start_date), _parse_date(end_date)
    ))
    table = Table(title=f"Calculations {start_date} to {end_date}")
    for column in ("Id", "Date", "Pump", "Volume", "Revenue", "Deviation", "Method", "Approval"):
        table.add_column(column)
    for calc in rows:
        table.add_row(
            str(calc.id),
            calc.calculation_date.isoformat(),
            str(calc.pump_id),
            _format_volume(calc.volume_dispensed),
            _format_money(calc.total_revenue),
            f"{calc.deviation_from_average}%",
            calc.calculation_method.value,
            approval_state(calc).value,
        )
    console.print(table)


@app.command()
def deviations(
    ctx: typer.Context,
    station_id: str = typer.Argument(..., help="Station id"),
    threshold: Optional[float] = typer.Option(None, "--threshold", "-t", help="Minimum |deviation| percent"),
    days: Optional[int] = typer.Option(None, "--days", "-d", help="Days to look back"),
):
    """List calculations that stray from the trailing average."""
    findings = _require_success(_service(ctx).list_deviations(_user(ctx), station_id, threshold, days))
    if not findings:
        console.print("[green]No deviations found[/]")
        return
    table = Table(title="Deviations")
    for column in ("Date", "Pump", "Volume", "Average", "Deviation", "Severity"):
        table.add_column(column)
    for finding in findings:
        table.add_row(
            finding.calculation.calculation_date.isoformat(),
            finding.pump_label,
            _format_volume(finding.calculation.volume_dispensed),
            _format_volume(finding.average_volume) if finding.average_volume is not None else "-",
            f"{finding.deviation_percent}%",
            finding.severity.name,
        )
    console.print(table)


@app.command()
def rollover(
    ctx: typer.Context,
    calculation_id: int = typer.Argument(..., help="Calculation id"),
    rollover_value: float = typer.Argument(..., help="Meter value at which the counter wrapped"),
    new_closing: float = typer.Argument(..., help="Closing value after the wrap"),
    notes: Optional[str] = typer.Option(None, "--notes", "-n"),
):
    """Confirm a meter rollover and recompute the day's volume."""
    calc = _require_success(_service(ctx).confirm_rollover(
        _user(ctx), calculation_id, rollover_value, new_closing, notes
    ))
    console.print(
        f"[green]✓[/] Rollover confirmed: {_format_volume(calc.volume_dispensed)}, "
        f"revenue {_format_money(calc.total_revenue)}"
    )


@app.command()
def approve(
    ctx: typer.Context,
    calculation_id: int = typer.Argument(..., help="Calculation id"),
    approved: bool = typer.Option(True, "--approve/--reject", help="Approve or reject the estimate"),
    notes: Optional[str] = typer.Option(None, "--notes", "-n"),
):
    """Approve or reject an estimated calculation (managers only)."""
    calc = _require_success(_service(ctx).decide(_user(ctx), calculation_id, approved, notes))
    console.print(
        f"[green]✓[/] Calculation {calc.id} {calc.approval_decision.value} by {calc.approved_by}"
    )


if __name__ == "__main__":
    app()
