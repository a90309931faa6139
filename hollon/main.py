"""
hollon: autonomous worker orchestration.

Commands: hollon run SEED, hollon conflicts SEED
"""

import sys
import time

import click
from rich.console import Console

from . import __version__
from .brain import LiteLLMBrain
from .codehost import InMemoryCodeHost
from .config import Config, ModelPreset
from .conflicts import ConflictContext
from .dispatch import Dispatcher
from .logger import setup_logger
from .messages import MessageBus
from .orchestrator import Orchestrator
from .rendering import (
    render_approvals,
    render_conflicts,
    render_round,
    render_tasks,
    render_workers,
)
from .seed import SeedError, load_seed

console = Console()
BANNER = (
    f"[bold #7FA6D9]hollon[/bold #7FA6D9] "
    f"[dim]v{__version__} · autonomous worker orchestration[/dim]"
)


def _load(seed: str):
    try:
        return load_seed(seed)
    except (OSError, SeedError, KeyError) as e:
        console.print(f"[red]Cannot load seed {seed}: {e}[/red]")
        sys.exit(1)


@click.group()
@click.version_option(__version__, prog_name="hollon")
def cli():
    """hollon: autonomous worker orchestration."""


@cli.command()
@click.argument("seed", type=click.Path(exists=True, dir_okay=False))
@click.option("--rounds", "-n", default=10, show_default=True, help="Maximum dispatch rounds")
@click.option("--interval", "-i", default=None, type=float, help="Seconds between rounds")
@click.option("--model", "-m", default=None, help="Model preset name or litellm model id")
@click.option("--api-base", "-b", default=None, help="API base override")
@click.option("--project-dir", "-d", default=".", help="Directory holding .hollon.yml")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def run(seed, rounds, interval, model, api_base, project_dir, verbose):
    """Load an organization snapshot and run dispatch rounds against it."""
    console.print(BANNER)
    config = Config.load(project_dir)
    if model:
        if model in config.models:
            config.active_model = model
        else:
            config.models["_cli"] = ModelPreset(
                name="_cli", provider="openai", model=model,
                api_base=api_base, api_key="not-needed",
            )
            config.active_model = "_cli"
    if verbose:
        config.verbose = True
    setup_logger("hollon", verbose=config.verbose, log_file=config.log_file)

    try:
        preset = config.get_active_preset()
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    if api_base:
        preset.api_base = api_base

    store, org_id = _load(seed)
    settings = config.orchestration
    orchestrator = Orchestrator(
        store, LiteLLMBrain.from_preset(preset, timeout=settings.brain_timeout),
        settings=settings, codehost=InMemoryCodeHost(), notifier=MessageBus(),
    )
    dispatcher = Dispatcher(orchestrator, org_id)
    console.print(f"[dim]model {preset.model} · {len(store.list_workers(org_id))} workers[/dim]")

    pause = settings.cycle_interval if interval is None else interval
    try:
        for number in range(1, rounds + 1):
            results = dispatcher.run_round()
            render_round(console, number, results, store.list_workers(org_id))
            if dispatcher.is_idle(results):
                break
            if pause and number < rounds:
                time.sleep(pause)
    except KeyboardInterrupt:
        dispatcher.request_shutdown()
        console.print("\n[yellow]Interrupted.[/yellow]")

    render_tasks(console, store.list_tasks(org_id), store.list_workers(org_id))
    render_workers(console, store.list_workers(org_id))
    render_approvals(console, orchestrator.approvals.pending(org_id))


@cli.command()
@click.argument("seed", type=click.Path(exists=True, dir_okay=False))
@click.option("--file", "-f", "files", multiple=True, help="File to check for contention")
@click.option("--tag", "-t", "tags", multiple=True, help="Resource tag to check")
@click.option("--task", "task_ids", multiple=True, help="Task id for priority/deadline checks")
def conflicts(seed, files, tags, task_ids):
    """Detect and resolve conflicts in an organization snapshot."""
    setup_logger("hollon", verbose=False, log_file=False)
    store, org_id = _load(seed)
    orchestrator = Orchestrator(store, brain=None, notifier=MessageBus())
    result = orchestrator.detect_conflicts(ConflictContext(
        organization_id=org_id,
        files=list(files) or None,
        resource_tags=list(tags) or None,
        task_ids=list(task_ids) or None,
    ))
    render_conflicts(console, result.conflicts)
    render_approvals(console, orchestrator.approvals.pending(org_id))


if __name__ == "__main__":
    cli()
