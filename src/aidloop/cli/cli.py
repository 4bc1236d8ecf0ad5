import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

import typer  # type: ignore
from pydantic import ValidationError
from typing_extensions import Annotated

from rich.console import Console  # type: ignore
from rich.logging import RichHandler  # type: ignore
from rich.panel import Panel  # type: ignore
from rich.table import Table  # type: ignore

from aidloop.core.algorithms import AddedGlucoseController, DNNController, PhysiologicalController
from aidloop.core.devices.models import SimulatedPump
from aidloop.core.glucose import GlucoseSample, GlucoseStore
from aidloop.core.insulin.doses import PumpEvent
from aidloop.core.insulin.ledger import DoseLedger
from aidloop.core.loop import LoopOrchestrator, LoopResult
from aidloop.core.safety import SafetyArbiter, SafetyConfig
from aidloop.core.scheduler import LoopCoordinator
from aidloop.utils.storage import JsonStore, write_json
from aidloop.validation import SettingsStore, format_validation_error, load_settings

app = typer.Typer(help="aidloop CLI - closed-loop insulin dosing engine tools.")


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show engine log output")] = False,
):
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s: %(message)s",
            handlers=[RichHandler(show_path=False)],
        )


def _parse_at(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    at = datetime.fromisoformat(value)
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    return at


def _load_ledger(path: Path, console: Console) -> DoseLedger:
    """Reads a stored ledger into memory; replays never write back to it."""
    if not path.is_file():
        console.print(f"[bold red]Error: Ledger file '{path}' not found.[/bold red]")
        raise typer.Exit(code=1)
    try:
        data = JsonStore(path).read(default={}) or {}
        events = [PumpEvent.from_dict(item) for item in data.get("events", [])]
        last_sync = data.get("last_pump_sync")
    except (ValueError, KeyError) as e:
        console.print(f"[bold red]Error reading ledger {path}: {e}[/bold red]")
        raise typer.Exit(code=1)
    ledger = DoseLedger()
    ledger.add_events(events, datetime.fromisoformat(last_sync) if last_sync else None)
    return ledger


def _load_glucose(path: Path, console: Console) -> Tuple[GlucoseStore, List[GlucoseSample]]:
    if not path.is_file():
        console.print(f"[bold red]Error: Glucose file '{path}' not found.[/bold red]")
        raise typer.Exit(code=1)
    try:
        samples = [GlucoseSample.from_dict(item) for item in json.loads(path.read_text())]
    except (ValueError, KeyError, TypeError) as e:
        console.print(f"[bold red]Error reading glucose readings {path}: {e}[/bold red]")
        raise typer.Exit(code=1)
    store = GlucoseStore()
    store.add_readings(samples)
    return store, samples


def _fmt(value: Optional[float], digits: int = 2) -> str:
    return "N/A" if value is None else f"{value:.{digits}f}"


def _result_table(result: LoopResult) -> Table:
    table = Table(title=f"Loop cycle at {result.at.isoformat()}", show_header=True, header_style="bold magenta")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Outcome", result.action.value)
    table.add_row("Glucose (mg/dL)", _fmt(result.glucose, 0))
    table.add_row("Predicted 15 min (mg/dL)", _fmt(result.predicted_glucose, 0))
    table.add_row("Target (mg/dL)", _fmt(result.target_glucose, 0))
    table.add_row("IOB (U)", _fmt(result.insulin_on_board))
    if result.pid is not None:
        table.add_row("PID rate (U/hr)", _fmt(result.pid.temp_basal, 3))
        table.add_row("Delta glucose error", _fmt(result.pid.delta_glucose_error, 1))
    if result.decision is not None:
        safety = result.decision.safety_result
        table.add_row("Physiological temp basal", _fmt(safety.physiological_temp_basal))
        table.add_row("ML temp basal", _fmt(safety.ml_temp_basal))
        table.add_row("Safety temp basal", _fmt(safety.safety_temp_basal))
        table.add_row("ML insulin last 3h (U)", _fmt(safety.ml_insulin_last_three_hours))
        table.add_row("Temp basal (U/hr)", _fmt(result.decision.temp_basal))
        table.add_row("Micro-bolus (U)", _fmt(result.decision.micro_bolus))
        table.add_row("Invariant violation", str(safety.biological_invariant_violation))
    if result.message:
        table.add_row("Message", result.message)
    return table


@app.command()
def iob(
    ledger_path: Annotated[Path, typer.Argument(help="Dose ledger JSON file")],
    at: Annotated[Optional[str], typer.Option(help="ISO time to evaluate at (default: now, UTC)")] = None,
    basal_rate: Annotated[float, typer.Option(help="Scheduled basal rate used for inferred basal (U/hr)")] = 0.3,
):
    """
    Show insulin on board and the doses behind it.
    """
    console = Console()
    ledger = _load_ledger(ledger_path, console)
    when = _parse_at(at) or datetime.now(timezone.utc)

    df = ledger.to_dataframe(when, basal_rate)
    table = Table(title="Doses", show_header=True, header_style="bold magenta")
    for column in ["dose_type", "start_date", "end_date", "units", "insulin_kind", "iob"]:
        table.add_column(column)
    for _, row in df.iterrows():
        table.add_row(
            row["dose_type"],
            row["start_date"].isoformat(),
            row["end_date"].isoformat(),
            f"{row['units']:.3f}",
            row["insulin_kind"],
            f"{row['iob']:.3f}",
        )
    console.print(table)
    console.print(
        Panel(
            f"IOB at {when.isoformat()}: [bold]{ledger.insulin_on_board(when, basal_rate):.3f} U[/bold]\n"
            f"Current insulin: {ledger.current_insulin_kind().value}",
            title="Insulin on board",
        )
    )


@app.command()
def loop(
    settings_path: Annotated[Path, typer.Argument(help="Settings YAML or JSON file")],
    glucose_path: Annotated[Path, typer.Argument(help="Glucose readings JSON file")],
    ledger_path: Annotated[Path, typer.Argument(help="Dose ledger JSON file")],
    at: Annotated[Optional[str], typer.Option(help="ISO time of the cycle (default: newest reading)")] = None,
    safety_ledger: Annotated[Optional[Path], typer.Option(help="Safety ledger JSON file, read and updated")] = None,
    output: Annotated[Optional[Path], typer.Option(help="Write the cycle result as JSON")] = None,
):
    """
    Run one dosing cycle against a simulated pump.
    """
    console = Console()
    try:
        settings = load_settings(settings_path)
    except ValidationError as e:
        console.print("[bold red]Error: invalid settings[/bold red]")
        for line in format_validation_error(e):
            console.print(f"  {line}")
        raise typer.Exit(code=1)
    except OSError as e:
        console.print(f"[bold red]Error reading settings {settings_path}: {e}[/bold red]")
        raise typer.Exit(code=1)

    glucose_store, samples = _load_glucose(glucose_path, console)
    ledger = _load_ledger(ledger_path, console)
    when = _parse_at(at)
    if when is None:
        newest = glucose_store.last_reading()
        when = newest.date if newest else datetime.now(timezone.utc)

    config = SafetyConfig()
    physiological = PhysiologicalController(glucose_store, config)
    arbiter = SafetyArbiter(JsonStore(safety_ledger) if safety_ledger else None, config)
    pump = SimulatedPump(clock=lambda: when)
    orchestrator = LoopOrchestrator(
        settings_store=SettingsStore(settings),
        glucose_source=glucose_store,
        ledger=ledger,
        physiological=physiological,
        arbiter=arbiter,
        ml_controllers=[AddedGlucoseController(config), DNNController()],
        pump=pump,
        safety_config=config,
    )
    coordinator = LoopCoordinator(orchestrator, glucose_store, clock=lambda: when)
    result = asyncio.run(coordinator.refresh(when))

    console.print(_result_table(result))
    if pump.commands:
        for command in pump.commands:
            console.print(f"Pump command: {command.kind} {command.value:.2f}")
    if output is not None:
        write_json(output, {"result": result, "readings": len(samples)})
        console.print(f"Result written to {output}")


@app.command()
def safety(
    safety_ledger: Annotated[Path, typer.Argument(help="Safety ledger JSON file")],
):
    """
    Print the safety ledger and the ML insulin attributed over the horizon.
    """
    console = Console()
    if not safety_ledger.is_file():
        console.print(f"[bold red]Error: Safety ledger '{safety_ledger}' not found.[/bold red]")
        raise typer.Exit(code=1)
    arbiter = SafetyArbiter(JsonStore(safety_ledger))
    entries = arbiter.entries
    table = Table(title="Safety ledger", show_header=True, header_style="bold magenta")
    for column in ["at", "programmed TB", "safety TB", "ML TB", "programmed MB", "safety MB", "violation"]:
        table.add_column(column)
    for entry in entries:
        table.add_row(
            entry.at.isoformat(),
            f"{entry.programmed_temp_basal_rate:.2f}",
            f"{entry.safety_temp_basal_rate:.2f}",
            f"{entry.ml_temp_basal_rate:.2f}",
            f"{entry.programmed_micro_bolus:.2f}",
            f"{entry.safety_micro_bolus:.2f}",
            "[red]yes[/red]" if entry.biological_invariant_violation else "no",
        )
    console.print(table)
    if entries:
        end = entries[-1].at + entries[-1].duration
        attributed = arbiter.ml_insulin_between(end - arbiter.horizon, end, entries[-1].duration)
        console.print(f"ML-attributable insulin over the last {arbiter.safety_config.safety_horizon_hours:g} h: {attributed:.3f} U")


@app.command()
def settings(
    settings_path: Annotated[Path, typer.Argument(help="Settings YAML or JSON file")],
):
    """
    Validate a settings file and print the resolved values.
    """
    console = Console()
    try:
        loaded = load_settings(settings_path)
    except ValidationError as e:
        console.print("[bold red]Error: invalid settings[/bold red]")
        for line in format_validation_error(e):
            console.print(f"  {line}")
        raise typer.Exit(code=1)
    except OSError as e:
        console.print(f"[bold red]Error reading settings {settings_path}: {e}[/bold red]")
        raise typer.Exit(code=1)

    table = Table(title="Loop settings", show_header=True, header_style="bold magenta")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    for key, value in loaded.model_dump().items():
        table.add_row(key, str(value))
    console.print(table)
    console.print(f"Max scheduled basal rate: {loaded.max_scheduled_basal_rate():.2f} U/hr")


if __name__ == "__main__":
    app()
