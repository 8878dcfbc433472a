"""Granary CLI — command-line interface for the grain marketing signal engine.

Provides commands for signal generation, expiry, AI enrichment, the job
scheduler, quick what-if evaluations and crop-insurance indemnity math.
Uses Typer for argument parsing and Rich for formatted terminal output.

Usage::

    python -m granary.cli --help
    python -m granary.cli evaluate-cash --commodity CORN --price 4.50 --break-even 3.80
    python -m granary.cli indemnity --aph 200 --actual-yield 150 --projected 5.00 --harvest 4.50
    python -m granary.cli generate --business-id <uuid>
    python -m granary.cli scheduler
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Optional
from uuid import UUID

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from granary.config import settings
from granary.enums import CommodityType, PlanType, RiskTolerance, SignalStrength, TrendDirection

# ---------------------------------------------------------------------------
# App & console setup
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="granary",
    help="Granary CLI — break-even driven grain marketing signals and crop-insurance math.",
    add_completion=False,
    rich_markup_mode="rich",
)

console = Console()
err_console = Console(stderr=True, style="bold red")

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger("granary.cli")

_STRENGTH_COLORS = {
    SignalStrength.STRONG_BUY.value: "bold green",
    SignalStrength.BUY.value: "green",
    SignalStrength.HOLD.value: "yellow",
    SignalStrength.SELL.value: "red",
    SignalStrength.STRONG_SELL.value: "bold red",
}

# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------


def _run(coro):
    """Execute a coroutine from synchronous CLI context."""
    return asyncio.get_event_loop().run_until_complete(coro)


def _job_service():
    from granary.jobs.service import MarketingJobService

    return MarketingJobService()


# ---------------------------------------------------------------------------
# Command: evaluate-cash
# ---------------------------------------------------------------------------


@app.command("evaluate-cash")
def evaluate_cash(
    commodity: CommodityType = typer.Option(..., "--commodity", "-c", help="CORN, SOYBEANS or WHEAT"),
    price: float = typer.Option(..., "--price", "-p", help="Current cash price ($/bu)"),
    break_even: float = typer.Option(..., "--break-even", "-b", help="Break-even price ($/bu)"),
    bushels: float = typer.Option(50_000, "--bushels", help="Remaining unmarketed bushels"),
    risk: RiskTolerance = typer.Option(RiskTolerance.MODERATE, "--risk", help="Risk tolerance"),
    target_margin: float = typer.Option(0.30, "--target-margin", help="Target profit ($/bu)"),
    min_above: float = typer.Option(0.05, "--min-above", help="HOLD floor above break-even"),
    trend: TrendDirection = typer.Option(TrendDirection.NEUTRAL, "--trend", help="Price trend"),
    rsi: float = typer.Option(50.0, "--rsi", help="14-day RSI"),
) -> None:
    """Evaluate a cash sale without touching the database.

    Examples:

      granary evaluate-cash -c CORN -p 4.50 -b 3.80 --trend DOWN --rsi 75
    """
    from granary.market.indicators import TrendAnalysis
    from granary.signals.thresholds import evaluate_cash_sale

    result = evaluate_cash_sale(
        commodity,
        price,
        break_even,
        bushels,
        risk_tolerance=risk,
        target_profit_margin=target_margin,
        min_above_breakeven=min_above,
        trend=TrendAnalysis(trend=trend, rsi=rsi),
    )
    color = _STRENGTH_COLORS.get(result.strength.value, "white")
    console.print(
        Panel(
            f"[{color}]{result.strength.value}[/{color}]  {result.title}\n\n"
            f"{result.summary}\n{result.rationale}\n\n"
            f"Action: [cyan]{result.recommended_action or '-'}[/cyan]\n"
            f"Bushels: [cyan]{result.recommended_bushels or 0:,}[/cyan]  "
            f"Margin: [cyan]${result.price_above_break_even:.2f}/bu "
            f"({result.percent_above_break_even * 100:.1f}%)[/cyan]",
            title="Cash Sale Evaluation",
            expand=False,
        )
    )


# ---------------------------------------------------------------------------
# Command: indemnity
# ---------------------------------------------------------------------------


@app.command("indemnity")
def indemnity(
    aph: float = typer.Option(..., "--aph", help="Actual production history (bu/acre)"),
    actual_yield: float = typer.Option(..., "--actual-yield", help="Realised yield (bu/acre)"),
    projected: float = typer.Option(..., "--projected", help="Projected (spring) price"),
    harvest: float = typer.Option(..., "--harvest", help="Harvest price"),
    plan: PlanType = typer.Option(PlanType.RP, "--plan", help="RP, RP_HPE or YP"),
    coverage: int = typer.Option(80, "--coverage", help="Coverage level percent"),
    sco: bool = typer.Option(False, "--sco", help="Add the SCO rider"),
    eco_level: Optional[int] = typer.Option(None, "--eco", help="Add ECO at 90 or 95"),
    county_expected: Optional[float] = typer.Option(None, "--county-expected"),
    county_actual: Optional[float] = typer.Option(None, "--county-actual"),
) -> None:
    """Estimate per-acre indemnity for one yield/price scenario.

    Examples:

      granary indemnity --aph 200 --actual-yield 150 --projected 5.00 --harvest 4.50

      granary indemnity --aph 180 --actual-yield 120 --projected 4.60 --harvest 4.10 --sco --eco 95
    """
    from pydantic import ValidationError as PydanticValidationError

    from granary.insurance.indemnity import CountyYields, calculate_indemnity
    from granary.insurance.schemas import PolicyInput

    try:
        policy = PolicyInput(
            plan_type=plan,
            coverage_level=coverage,
            projected_price=projected,
            has_sco=sco,
            has_eco=eco_level is not None,
            eco_level=eco_level,
        )
    except PydanticValidationError as exc:
        err_console.print(f"Invalid policy: {exc}")
        raise typer.Exit(1)

    county = None
    if county_expected is not None and county_actual is not None:
        county = CountyYields(expected_yield=county_expected, actual_yield=county_actual)

    result = calculate_indemnity(policy, aph, actual_yield, harvest, county)

    table = Table(title=f"{plan.value} {coverage}% Indemnity ($/acre)", box=box.ROUNDED)
    table.add_column("Component", style="cyan")
    table.add_column("Amount", style="green", justify="right")
    table.add_row("Base", f"${result.base:,.2f}")
    if sco:
        table.add_row("SCO", f"${result.sco:,.2f}")
    if eco_level is not None:
        table.add_row(f"ECO {eco_level}", f"${result.eco:,.2f}")
    table.add_row("[bold]Total[/bold]", f"[bold]${result.total:,.2f}[/bold]")
    console.print(table)


# ---------------------------------------------------------------------------
# Command: generate
# ---------------------------------------------------------------------------


@app.command("generate")
def generate(
    business_id: Optional[UUID] = typer.Option(
        None, "--business-id", "-b", help="One business (default: every active business)"
    ),
    user_id: Optional[UUID] = typer.Option(
        None, "--user-id", "-u", help="Apply this user's learned risk profile"
    ),
) -> None:
    """Generate marketing signals now, regardless of market hours."""
    jobs = _job_service()
    try:
        with console.status("[bold green]Generating signals...[/bold green]"):
            if business_id is None:
                batch = _run(jobs.generate_all_signals())
            else:
                signals = _run(jobs.orchestrator.generate_signals(business_id, user_id))
        if business_id is None:
            table = Table(title="Signal Generation", box=box.ROUNDED)
            table.add_column("Business", style="cyan")
            table.add_column("Result")
            for item in batch.items:
                result = item.detail if item.ok else f"[red]{item.error}[/red]"
                table.add_row(item.key, result)
            console.print(table)
            console.print(f"[green]{batch.succeeded} succeeded[/green], [red]{batch.failed} failed[/red]")
        else:
            _print_signals(signals)
    except Exception as exc:
        err_console.print(f"Signal generation failed: {exc}")
        logger.exception("CLI generate command failed")
        raise typer.Exit(1)
    finally:
        _run(jobs.stop())


def _print_signals(signals) -> None:
    if not signals:
        console.print("[yellow]No new or changed signals.[/yellow]")
        return
    table = Table(title="Signals", box=box.ROUNDED)
    table.add_column("Commodity", style="cyan")
    table.add_column("Type")
    table.add_column("Strength")
    table.add_column("Price", justify="right")
    table.add_column("vs BE", justify="right")
    table.add_column("Bushels", justify="right")
    for s in signals:
        color = _STRENGTH_COLORS.get(s.strength, "white")
        table.add_row(
            s.commodity_type,
            s.signal_type,
            f"[{color}]{s.strength}[/{color}]",
            f"${float(s.current_price):.2f}",
            f"{float(s.percent_above_break_even) * 100:+.1f}%",
            f"{s.recommended_bushels or 0:,}",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


@app.command("run-job")
def run_job(
    name: str = typer.Argument(..., help="Job name, e.g. expiration or ai_enrichment"),
    force: bool = typer.Option(False, "--force", help="Run even when the market is closed"),
) -> None:
    """Run one scheduled job once and print its outcome."""
    from granary.errors import ValidationError

    jobs = _job_service()
    try:
        with console.status(f"[bold green]Running {name}...[/bold green]"):
            run = _run(jobs.run_job(name, force=force))
    except ValidationError as exc:
        err_console.print(str(exc))
        err_console.print(f"Known jobs: {', '.join(sorted(jobs.specs))}")
        raise typer.Exit(1)
    finally:
        _run(jobs.stop())

    status_color = {"SUCCESS": "green", "FAILED": "red", "SKIPPED": "yellow"}[run.status.value]
    console.print(f"{run.job}: [{status_color}]{run.status.value}[/{status_color}]")
    if run.reason:
        console.print(f"  reason: {run.reason}")
    if run.error:
        console.print(f"  [red]error: {run.error}[/red]")
    if run.result:
        console.print(run.result)
    if run.status.value == "FAILED":
        raise typer.Exit(1)


@app.command("expire")
def expire() -> None:
    """Expire ACTIVE signals past their expiry time."""
    run_job("expiration", force=True)


@app.command("enrich")
def enrich() -> None:
    """Add AI narrative to recent signals that have none."""
    run_job("ai_enrichment", force=True)


@app.command("jobs-status")
def jobs_status() -> None:
    """Show the job inventory and schedule."""
    jobs = _job_service()
    report = jobs.status()
    market = "[green]OPEN[/green]" if report["market_open"] else "[yellow]CLOSED[/yellow]"
    console.print(f"Market: {market}")

    table = Table(title="Scheduled Jobs", box=box.SIMPLE)
    table.add_column("Job", style="cyan")
    table.add_column("Every", justify="right")
    table.add_column("At (UTC)", justify="right")
    table.add_column("Market hours only")
    for name, info in report["jobs"].items():
        table.add_row(
            name,
            f"{info['period_seconds']}s",
            f"{info['at_hour']:02d}:00" if info["at_hour"] is not None else "-",
            "yes" if info["market_hours_only"] else "no",
        )
    console.print(table)
    _run(jobs.stop())


@app.command("scheduler")
def scheduler() -> None:
    """Run every job on its in-process timer until interrupted."""

    async def _forever() -> None:
        jobs = _job_service()
        jobs.start()
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await jobs.stop()

    console.print(Panel("[bold cyan]Granary Job Scheduler[/bold cyan]  (Ctrl+C to stop)", expand=False))
    try:
        _run(_forever())
    except KeyboardInterrupt:
        console.print("[yellow]Scheduler stopped.[/yellow]")


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create any missing Granary tables."""
    from granary.db import init_models

    try:
        _run(init_models())
    except Exception as exc:
        err_console.print(f"Database initialisation failed: {exc}")
        logger.exception("CLI init-db command failed")
        raise typer.Exit(1)
    console.print("[green]Database tables ready.[/green]")


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", "--host"),
    port: int = typer.Option(settings.granary_api_port, "--port"),
) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    uvicorn.run("granary.api.routes:app", host=host, port=port, log_level=settings.log_level.lower())


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
