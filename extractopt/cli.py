"""
extractopt Command Line Interface

Commands:
    extractopt validate   - Check an extraction instruction against the quality rules
    extractopt template   - Print the fallback instruction for a field
    extractopt optimize   - Run the optimizer over saved comparison results
    extractopt version    - Show version information
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional, cast

import click
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from extractopt import __version__
from extractopt.core import constants
from extractopt.core.config import OptimizerConfig
from extractopt.core.models import (
    ComparisonResults,
    FieldOutcome,
    OptimizerRun,
    OptimizerRunStatus,
    OptimizerRunSummary,
    PromptValidation,
)
from extractopt.services.ai_client import ResilientAIClient
from extractopt.services.generation_backend import BackendFactory, EnvTokenProvider
from extractopt.services.prompt_optimization.orchestrator import STEP_LABELS, OptimizerRunStateMachine
from extractopt.services.prompt_optimization.templates import FallbackTemplateLibrary, template_for
from extractopt.services.prompt_optimization.validator import PromptValidator

console = Console()
logger = logging.getLogger(__name__)

OUTCOME_STYLES = {
    FieldOutcome.SUCCESS: "green",
    FieldOutcome.FALLBACK: "yellow",
    FieldOutcome.EXHAUSTED: "yellow",
    FieldOutcome.FAILED: "red",
}


@click.group()
@click.version_option(version=__version__, prog_name="extractopt")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """extractopt - Adaptive prompt optimization for document extraction

    Rewrites the instructions of failing extraction fields until they pass
    the quality rules, falling back to known-good templates.

    Get started:
        extractopt validate "Extract the vendor name."
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.argument("text", required=False)
@click.option(
    "--file",
    "-f",
    "file_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Read the instruction from a file",
)
def validate(text: Optional[str], file_path: Optional[str]) -> None:
    """Check an instruction against the quality rules.

    Exits with status 1 when the instruction is rejected.
    """
    if file_path:
        text = Path(file_path).read_text(encoding="utf-8")
    if not text:
        console.print("[red]Error:[/red] Provide an instruction or --file")
        sys.exit(2)

    validation = PromptValidator().validate(text)
    _display_validation(validation)

    if not validation.isValid:
        sys.exit(1)


@main.command()
@click.argument("field_name")
@click.option("--type", "-t", "field_type", default="string", help="Field type, e.g. date, enum, number")
@click.option("--exclude", "-x", default=None, help="Company the field must never return")
@click.option("--option", "-o", "options", multiple=True, help="Allowed option value (repeatable)")
def template(field_name: str, field_type: str, exclude: Optional[str], options: tuple[str, ...]) -> None:
    """Print the fallback instruction for a field."""
    rule = FallbackTemplateLibrary().match(field_name, field_type)
    instruction = template_for(field_name, field_type, options=list(options), exclude_entity=exclude)
    console.print(
        Panel.fit(
            instruction,
            title=f"[bold cyan]{field_name}[/bold cyan] [dim]({rule.name})[/dim]",
            border_style="cyan",
        )
    )


@main.command()
@click.option(
    "--comparison",
    "-c",
    "comparison_path",
    type=click.Path(exists=True, dir_okay=False),
    required=True,
    help="Comparison results JSON file",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Optimizer config YAML file",
)
@click.option(
    "--output",
    "-o",
    "output_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Write the run summary JSON here",
)
@click.option(
    "--backend",
    type=click.Choice(["box", "openai"]),
    default="box",
    show_default=True,
    help="Generation backend",
)
@click.option(
    "--token-env",
    default=constants.DEFAULT_ACCESS_TOKEN_ENV,
    show_default=True,
    help="Environment variable holding the access token",
)
def optimize(
    comparison_path: str,
    config_path: Optional[str],
    output_path: Optional[str],
    backend: str,
    token_env: str,
) -> None:
    """Optimize every failing field of a comparison run.

    Samples failing documents, asks the backend why they failed, then
    rewrites each failing field's instruction and prints a review table.
    """
    comparison = _load_comparison(Path(comparison_path))
    if comparison is None:
        sys.exit(1)

    raw_config: dict[str, Any] = {}
    if config_path:
        loaded = _load_yaml_config(Path(config_path))
        if loaded is None:
            sys.exit(1)
        raw_config = loaded

    try:
        config = OptimizerConfig.from_dict(raw_config)
    except (ValueError, TypeError) as e:
        console.print(f"[red]Error:[/red] Invalid config: {escape(str(e))}")
        sys.exit(1)

    try:
        machine = _create_state_machine(config, backend, token_env)
    except ImportError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]Starting Optimizer[/bold cyan]\n"
            f"Template: {comparison.templateKey or '-'}\n"
            f"Fields: {len(comparison.fields)}\n"
            f"Backend: {backend}",
            border_style="cyan",
        )
    )
    console.print()

    try:
        summary = _run_with_progress(machine, comparison)
    except KeyboardInterrupt:
        machine.cancel()
        console.print("\n[yellow]Optimizer interrupted by user[/yellow]")
        sys.exit(130)

    run_state = machine.run_state
    _display_run_summary(summary)

    if output_path:
        Path(output_path).write_text(summary.model_dump_json(indent=2), encoding="utf-8")
        console.print(f"\n[dim]Summary written to {output_path}[/dim]")

    if run_state.status == OptimizerRunStatus.ERROR:
        label = "cancelled" if run_state.cancelled else "failed"
        console.print(f"\n[red]Optimizer run {label}:[/red] {escape(run_state.errorMessage or '')}")
        sys.exit(1)


@main.command()
def version() -> None:
    """Show version information."""
    console.print(f"extractopt version {__version__}")


# ============================================================================
# Helpers
# ============================================================================


def _load_yaml_config(config_path: Path) -> dict[str, Any] | None:
    """Load and validate YAML configuration."""
    try:
        with config_path.open() as f:
            raw_config: Any = yaml.safe_load(f)
    except yaml.YAMLError as e:
        console.print(f"[red]Error parsing YAML:[/red] {e}")
        return None

    if raw_config is None:
        return {}

    if not isinstance(raw_config, dict):
        console.print("[red]Error:[/red] Config file must be a YAML dictionary")
        return None

    return cast("dict[str, Any]", raw_config)


def _load_comparison(path: Path) -> ComparisonResults | None:
    """Load comparison results from JSON."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        console.print(f"[red]Error parsing comparison JSON:[/red] {e}")
        return None

    try:
        return ComparisonResults.model_validate(data)
    except ValidationError as e:
        console.print(f"[red]Error:[/red] Invalid comparison results:\n{escape(str(e))}")
        return None


def _create_state_machine(config: OptimizerConfig, backend_type: str, token_env: str) -> OptimizerRunStateMachine:
    """Wire backend, credentials and client into a state machine."""
    generation = config.generation
    if backend_type == "box":
        backend = BackendFactory.create(
            "box",
            base_url=generation.api_base_url,
            default_model=generation.model,
            default_item_id=generation.prompt_item_id,
            placeholder_folder_id=generation.placeholder_folder_id,
        )
    else:
        backend = BackendFactory.create("openai")

    client = ResilientAIClient(
        backend,
        EnvTokenProvider(token_env),
        retry_config=config.retry,
        model=generation.model if backend_type == "box" else None,
        default_item_id=generation.prompt_item_id,
    )
    return OptimizerRunStateMachine(client, config)


def _run_with_progress(machine: OptimizerRunStateMachine, comparison: ComparisonResults) -> OptimizerRunSummary:
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task_id = progress.add_task("Checking comparison results...", total=len(STEP_LABELS))

        def on_progress(run: OptimizerRun) -> None:
            description = STEP_LABELS[min(run.stepIndex, len(STEP_LABELS) - 1)]
            if run.status == OptimizerRunStatus.PROMPTING:
                description += f" ({len(run.fieldSummaries)} fields done)"
            progress.update(task_id, completed=run.stepIndex, description=description)

        machine.on_progress = on_progress
        summary = machine.run(comparison)
        progress.update(task_id, completed=len(STEP_LABELS), description="Done")
    return summary


def _display_validation(validation: PromptValidation) -> None:
    table = Table(title="Instruction Quality")
    table.add_column("Element", style="cyan")
    table.add_column("Present")

    checks = [
        ("Length", validation.meetsMinLength, f"{validation.charCount} chars"),
        ("Location", validation.hasLocation, ""),
        ("Synonyms", validation.hasSynonyms, f"{validation.synonymCount} quoted phrases"),
        ("Format", validation.hasFormat, ""),
        ("Disambiguation", validation.hasDisambiguation, ""),
        ("Not-found handling", validation.hasNotFound, ""),
    ]
    for name, present, detail in checks:
        mark = "[green]yes[/green]" if present else "[red]no[/red]"
        table.add_row(name, f"{mark} {detail}".rstrip())

    console.print(table)

    if validation.defects:
        console.print()
        for defect in validation.defects:
            console.print(f"  • {defect}")

    console.print()
    if validation.isValid:
        console.print("[green]Instruction accepted[/green]")
    else:
        console.print("[red]Instruction rejected[/red]")


def _display_run_summary(summary: OptimizerRunSummary) -> None:
    if summary.skippedReason:
        console.print(f"[yellow]Skipped:[/yellow] {summary.skippedReason}")
        return

    if summary.sampledDocs:
        console.print(f"[dim]Sampled documents: {', '.join(d.docName for d in summary.sampledDocs)}[/dim]")
        console.print()

    table = Table(title="Field Results")
    table.add_column("Field", style="cyan")
    table.add_column("Accuracy", justify="right")
    table.add_column("Outcome")
    table.add_column("Iterations", justify="right")
    table.add_column("Notes")

    for field_summary in summary.fieldSummaries:
        style = OUTCOME_STYLES.get(field_summary.outcome, "white")
        notes = field_summary.error or (field_summary.defects[0] if field_summary.defects else "")
        table.add_row(
            field_summary.fieldName,
            f"{field_summary.accuracyBefore:.0%}",
            f"[{style}]{field_summary.outcome.value}[/{style}]",
            str(field_summary.iterations),
            notes,
        )

    console.print(table)


if __name__ == "__main__":
    main()
