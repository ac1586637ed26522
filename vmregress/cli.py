"""CLI entry point for the VM regression harness."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from vmregress.event_stream import EventStream
from vmregress.models.config import DEFAULT_CONFIG_FILE, HarnessConfig, VMInfo
from vmregress.models.events import LogEvent, ProgressEvent
from vmregress.models.result import ScenarioResult, format_duration
from vmregress.models.scenario import ExecutionSpec, FileCopy, Scenario, Step
from vmregress.models.schedule import ScheduledTask
from vmregress.notifications import build_notification_manager
from vmregress.orchestrator import ScenarioOrchestrator
from vmregress.reporter.reporter import Reporter, summary_text
from vmregress.scheduler import DEFAULT_POLL_INTERVAL_SECONDS, Scheduler, Trigger
from vmregress.store import ScenarioStore, save_result
from vmregress.vm.controller import VMController
from vmregress.vm.vmrun import VmrunController

console = Console()
err_console = Console(stderr=True)

EXIT_OK = 0
EXIT_STEPS_FAILED = 1
EXIT_SCENARIO_NOT_FOUND = 2
EXIT_VM_CONNECT = 3
EXIT_UNEXPECTED = 5

_STATUS_STYLES = {
    "passed": "green",
    "failed": "red",
    "skipped": "yellow",
    "error": "red",
    "timeout": "red",
}

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True)],
    )


def load_config(path: str) -> HarnessConfig:
    if not Path(path).exists():
        logger.debug("Config %s not found, using defaults", path)
        return HarnessConfig()
    return HarnessConfig.load(path)


def build_controller(cfg: HarnessConfig) -> VMController:
    return VmrunController(vmrun_path=cfg.vmrun_path)


def load_scenario(cfg: HarnessConfig, ref: str) -> Scenario | None:
    """Resolve a scenario by file path, or by name in the scenarios directory."""
    path = Path(ref)
    if path.suffix.lower() == ".json" and path.is_file():
        return Scenario.model_validate_json(path.read_text(encoding="utf-8"))
    return ScenarioStore(cfg.scenarios_dir).find(ref)


def retarget(scenario: Scenario, vm: VMInfo) -> Scenario:
    steps = [s.model_copy(update={"target_vm": vm.vmx_path}) for s in scenario.steps]
    return scenario.model_copy(update={"steps": steps})


class ConsoleObserver:
    """Prints phase changes as they happen."""

    def on_progress(self, event: ProgressEvent) -> None:
        err_console.print(
            f"[dim][{event.current_step}/{event.total_steps}][/dim] "
            f"{event.step_name} [cyan]{event.vm_name}[/cyan] {event.phase.value}"
        )

    def on_log(self, event: LogEvent) -> None:
        # Already written through logging
        pass


def print_result(result: ScenarioResult) -> None:
    table = Table(title=f"Scenario: {result.scenario_name}")
    table.add_column("Step", style="bold")
    table.add_column("VM")
    table.add_column("Status")
    table.add_column("Exit")
    table.add_column("Duration")
    table.add_column("Message")
    for r in result.step_results:
        style = _STATUS_STYLES.get(r.status.value, "white")
        table.add_row(
            r.step_name,
            r.vm_name,
            f"[{style}]{r.status.value}[/{style}]",
            "" if r.exit_code is None else str(r.exit_code),
            format_duration(r.duration),
            r.error_message or "",
        )
    console.print(table)

    outcome = "[bold green]PASSED[/bold green]" if result.is_success else "[bold red]FAILED[/bold red]"
    console.print(
        f"{outcome}  {result.passed_count}/{result.total_count} passed, "
        f"{result.failed_count} failed, {result.skipped_count} skipped, "
        f"{result.error_count} errors in {format_duration(result.duration)}"
    )
    if result.cancelled:
        console.print("[yellow]Run was cancelled[/yellow]")
    if result.error_message:
        console.print(f"[red]{result.error_message}[/red]")


def print_plan(scenario: Scenario) -> None:
    table = Table(title=f"Dry run: {scenario.name} (max parallel {scenario.max_parallel})")
    table.add_column("#", justify="right")
    table.add_column("Step", style="bold")
    table.add_column("VM")
    table.add_column("Snapshot")
    table.add_column("Execute")
    table.add_column("Condition")
    for i, step in enumerate(scenario.ordered_steps(), 1):
        execution = f"{step.execution.path} {step.execution.arguments}".strip()
        condition = step.condition.condition_type.value if step.condition else "always"
        table.add_row(str(i), step.name, step.target_vm, step.snapshot_name, execution, condition)
    console.print(table)
    if scenario.pre_event and scenario.pre_event.enabled:
        console.print(f"Pre-event: {scenario.pre_event.command} {scenario.pre_event.arguments}")
    if scenario.post_event and scenario.post_event.enabled:
        console.print(
            f"Post-event ({scenario.post_event.run_condition.value}): "
            f"{scenario.post_event.command} {scenario.post_event.arguments}"
        )


def build_orchestrator(cfg: HarnessConfig, controller: VMController) -> ScenarioOrchestrator:
    events = EventStream()
    events.subscribe(ConsoleObserver())
    return ScenarioOrchestrator(
        controller,
        registered_vms=cfg.vm_lookup(),
        result_root=Path(cfg.result_output_dir),
        events=events,
        notifier=build_notification_manager(cfg.notification),
        boot_timeout_seconds=cfg.boot_timeout_seconds,
    )


@contextmanager
def _on_sigint(callback: Callable[[], None]) -> Iterator[None]:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, callback)
        installed = True
    except (NotImplementedError, RuntimeError):
        # No loop signal handlers on Windows
        installed = False
    try:
        yield
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def _run_scenario(cfg: HarnessConfig, scenario: Scenario, controller: VMController) -> ScenarioResult:
    orchestrator = build_orchestrator(cfg, controller)
    with _on_sigint(orchestrator.cancel):
        return await orchestrator.run(scenario)


def build_schedule_trigger(cfg: HarnessConfig, orchestrator: ScenarioOrchestrator) -> Trigger:
    """Run the task's scenario, then save its result and reports."""
    store = ScenarioStore(cfg.scenarios_dir)
    reporter = Reporter(cfg)

    async def _trigger(task: ScheduledTask) -> None:
        scenario = None
        if task.scenario_id:
            scenario = store.find_by_id(task.scenario_id)
        if scenario is None and task.scenario_name:
            scenario = store.find(task.scenario_name)
        if scenario is None:
            logger.error("Scheduled task %s: scenario '%s' not found",
                         task.name, task.scenario_name or task.scenario_id)
            return

        result = await orchestrator.run(scenario)
        save_result(result, cfg.result_output_dir)
        reporter.generate_reports(result)
        logger.info("Scheduled task %s finished. %s", task.name, summary_text(result))

    return _trigger


async def _run_scheduler(
    cfg: HarnessConfig, scheduler: Scheduler, controller: VMController, once: bool,
) -> int:
    orchestrator = build_orchestrator(cfg, controller)
    trigger = build_schedule_trigger(cfg, orchestrator)

    def _interrupt() -> None:
        orchestrator.cancel()
        scheduler.stop()

    with _on_sigint(_interrupt):
        if once:
            return await scheduler.run_pending(trigger)
        await scheduler.run(trigger)
        return 0


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Snapshot-based VM regression test runner"""
    setup_logging(verbose)


@cli.command()
@click.argument("scenario_ref", metavar="SCENARIO")
@click.option("--config", "-c", default=DEFAULT_CONFIG_FILE, help="Config file path")
@click.option("--parallel", "-p", type=click.IntRange(min=1), help="Override max parallel steps")
@click.option("--vm", "vm_name", help="Run every step on this registered VM")
@click.option("--format", "output_format", type=click.Choice(["text", "json"]), default="text",
              help="Result output format")
@click.option("--report-path", type=click.Path(file_okay=False), help="Report output directory")
@click.option("--dry-run", is_flag=True, help="Show what would run without touching VMs")
def run(
    scenario_ref: str, config: str, parallel: int | None, vm_name: str | None,
    output_format: str, report_path: str | None, dry_run: bool,
) -> None:
    """Run a scenario by name or JSON file path."""
    try:
        cfg = load_config(config)
        scenario = load_scenario(cfg, scenario_ref)
    except (ValidationError, ValueError) as e:
        err_console.print(f"[red]Invalid scenario or config: {e}[/red]")
        sys.exit(EXIT_UNEXPECTED)

    if scenario is None:
        err_console.print(f"[red]Scenario not found: {scenario_ref}[/red]")
        sys.exit(EXIT_SCENARIO_NOT_FOUND)

    if parallel:
        scenario = scenario.with_max_parallel(parallel)
    if vm_name:
        vm = cfg.find_vm(vm_name) or VMInfo.for_handle(vm_name)
        scenario = retarget(scenario, vm)

    if dry_run:
        print_plan(scenario)
        sys.exit(EXIT_OK)

    controller = build_controller(cfg)
    try:
        if not controller.is_connected and not asyncio.run(controller.connect()):
            err_console.print("[red]Could not connect to the VM controller[/red]")
            sys.exit(EXIT_VM_CONNECT)

        result = asyncio.run(_run_scenario(cfg, scenario, controller))

        save_result(result, cfg.result_output_dir)
        reports = Reporter(cfg).generate_reports(
            result, Path(report_path) if report_path else None,
        )
    except Exception as e:
        logger.debug("Run failed", exc_info=True)
        err_console.print(f"[red]Unexpected error: {e}[/red]")
        sys.exit(EXIT_UNEXPECTED)
    finally:
        controller.disconnect()

    if output_format == "json":
        click.echo(result.model_dump_json(indent=2))
    else:
        print_result(result)
        for fmt, path in reports.items():
            console.print(f"  {fmt.upper()} report: [blue]{path}[/blue]")

    sys.exit(EXIT_OK if result.is_success else EXIT_STEPS_FAILED)


@cli.command("list-scenarios")
@click.option("--config", "-c", default=DEFAULT_CONFIG_FILE, help="Config file path")
def list_scenarios(config: str) -> None:
    """List scenarios in the scenarios directory."""
    cfg = load_config(config)
    scenarios = ScenarioStore(cfg.scenarios_dir).load_all()
    if not scenarios:
        console.print(f"[yellow]No scenarios in {cfg.scenarios_dir}[/yellow]")
        return
    table = Table(title="Scenarios")
    table.add_column("Name", style="bold")
    table.add_column("Steps", justify="right")
    table.add_column("Parallel", justify="right")
    table.add_column("Description")
    for s in scenarios:
        table.add_row(s.name, str(len(s.steps)), str(s.max_parallel), s.description)
    console.print(table)


@cli.command("list-vms")
@click.option("--config", "-c", default=DEFAULT_CONFIG_FILE, help="Config file path")
def list_vms(config: str) -> None:
    """List the registered VMs."""
    cfg = load_config(config)
    if not cfg.registered_vms:
        console.print("[yellow]No VMs registered[/yellow]")
        return
    table = Table(title="Registered VMs")
    table.add_column("Name", style="bold")
    table.add_column("VMX path")
    table.add_column("Guest user")
    for vm in cfg.registered_vms:
        table.add_row(vm.name, vm.vmx_path, vm.guest_username or "")
    console.print(table)


@cli.command()
@click.argument("vm_name", metavar="VM")
@click.option("--config", "-c", default=DEFAULT_CONFIG_FILE, help="Config file path")
def snapshots(vm_name: str, config: str) -> None:
    """List the snapshots of a VM (registered name or .vmx path)."""
    cfg = load_config(config)
    vm = cfg.find_vm(vm_name) or VMInfo.for_handle(vm_name)
    controller = build_controller(cfg)

    async def _list():
        if not controller.is_connected and not await controller.connect():
            return None
        return await controller.list_snapshots(vm.vmx_path)

    try:
        found = asyncio.run(_list())
    finally:
        controller.disconnect()
    if found is None:
        err_console.print("[red]Could not connect to the VM controller[/red]")
        sys.exit(EXIT_VM_CONNECT)
    if not found:
        console.print(f"[yellow]No snapshots for {vm.name}[/yellow]")
        return
    for snap in found:
        console.print(f"  {snap.name}")


def _when(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


@cli.command("list-schedules")
@click.option("--config", "-c", default=DEFAULT_CONFIG_FILE, help="Config file path")
def list_schedules(config: str) -> None:
    """List scheduled scenario runs and when they fire next."""
    cfg = load_config(config)
    tasks = Scheduler(cfg.scheduled_tasks).tasks()
    if not tasks:
        console.print("[yellow]No scheduled tasks[/yellow]")
        return
    table = Table(title="Scheduled tasks")
    table.add_column("Name", style="bold")
    table.add_column("Scenario")
    table.add_column("Schedule")
    table.add_column("Next run")
    table.add_column("Last run")
    table.add_column("Enabled")
    for task in tasks:
        table.add_row(
            task.name,
            task.scenario_name or task.scenario_id or "",
            task.schedule_type.value,
            _when(task.next_run_time),
            _when(task.last_run_time),
            "yes" if task.enabled else "[dim]no[/dim]",
        )
    console.print(table)


@cli.command("run-scheduler")
@click.option("--config", "-c", default=DEFAULT_CONFIG_FILE, help="Config file path")
@click.option("--poll-interval", type=click.FloatRange(min=0.1),
              default=DEFAULT_POLL_INTERVAL_SECONDS, help="Seconds between checks for due tasks")
@click.option("--once", is_flag=True, help="Fire whatever is due now and exit")
def run_scheduler(config: str, poll_interval: float, once: bool) -> None:
    """Run scheduled scenarios until interrupted."""
    cfg = load_config(config)
    scheduler = Scheduler(cfg.scheduled_tasks, poll_interval_seconds=poll_interval)
    if not any(task.enabled for task in scheduler.tasks()):
        console.print("[yellow]No enabled scheduled tasks[/yellow]")
        return

    controller = build_controller(cfg)
    try:
        if not controller.is_connected and not asyncio.run(controller.connect()):
            err_console.print("[red]Could not connect to the VM controller[/red]")
            sys.exit(EXIT_VM_CONNECT)
        fired = asyncio.run(_run_scheduler(cfg, scheduler, controller, once))
    finally:
        controller.disconnect()

    # Keep next/last run times across restarts
    if Path(config).exists():
        cfg.scheduled_tasks = scheduler.tasks()
        cfg.save(config)
    if once:
        console.print(f"Triggered {fired} scheduled task(s)")


@cli.command()
@click.option("--config", "-c", default=DEFAULT_CONFIG_FILE, help="Config file path")
@click.option("--example/--no-example", default=True, help="Also write an example scenario")
def init(config: str, example: bool) -> None:
    """Create a default configuration file."""
    config_path = Path(config)
    if config_path.exists():
        if not click.confirm(f"{config_path} already exists. Overwrite?"):
            return

    cfg = HarnessConfig()
    cfg.save(config_path)
    console.print(f"[green]Created {config_path}[/green]")

    if example:
        sample = Scenario(
            name="Example",
            description="Install and smoke-test on a clean snapshot",
            steps=[
                Step(
                    name="Smoke test",
                    target_vm=r"C:\VMs\Win10\Win10.vmx",
                    snapshot_name="Clean",
                    files_to_copy=[FileCopy(source_path="./build/app.exe",
                                            destination_path=r"C:\Test\app.exe")],
                    execution=ExecutionSpec(path=r"C:\Test\app.exe", arguments="--selftest"),
                    result_files=[FileCopy(source_path=r"C:\Test\selftest.log",
                                           destination_path="{ResultDir}/{VMName}_{Timestamp}.log")],
                ),
            ],
        )
        path = ScenarioStore(cfg.scenarios_dir).save(sample)
        console.print(f"[green]Created {path}[/green]")

    console.print("\nRegister your VMs in the config, then run:")
    console.print("  [blue]vmregress run Example[/blue]")


if __name__ == "__main__":
    cli()
