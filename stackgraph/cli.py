"""
stackgraph CLI entry point.
"""
import json
import os
import sys
from typing import Any, List, Optional

import click
from rich.console import Console
from rich.table import Table

from stackgraph import __version__
from stackgraph.builder import Stack
from stackgraph.config import StackConfig, load_config
from stackgraph.engine import deployment
from stackgraph.engine.deployment import ApplyResult, PlanStep
from stackgraph.engine.provisioners import SimulatedProvisioner, load_state
from stackgraph.models.errors import ConfigError, StackError
from stackgraph.models.output import UNKNOWN
from stackgraph.parsers import stack_yaml
from stackgraph.programs import DESCRIPTIONS, PROGRAMS
from stackgraph.reporters import html_reporter, json_reporter, markdown

console = Console(stderr=True)

_BANNER = r"""
     _             _                         _
 ___| |_ __ _  ___| | ____ _ _ __ __ _ _ __ | |__
/ __| __/ _` |/ __| |/ / _` | '__/ _` | '_ \| '_ \
\__ \ || (_| | (__|   < (_| | | | (_| | |_) | | | |
|___/\__\__,_|\___|_|\_\__, |_|  \__,_| .__/|_| |_|
                       |___/          |_|
"""

_STATUS_COLORS = {
    "resolved": "green",
    "failed": "bold red",
    "cancelled": "dim",
    "creating": "yellow",
    "pending": "dim",
}


def _print_banner(no_color: bool = False) -> None:
    c = Console(stderr=True, no_color=no_color)
    c.print(f"[bold blue]{_BANNER}[/bold blue]")
    c.print(f"  [dim]v{__version__}[/dim]\n")


def _load_config(path: Optional[str]) -> StackConfig:
    if path is None:
        return StackConfig()
    return load_config(path)


def _load_stack(program: str, config: StackConfig) -> Stack:
    """A built-in program name or a path to a YAML/JSON stack definition."""
    if program in PROGRAMS:
        return PROGRAMS[program](config)
    if os.path.isfile(program):
        return stack_yaml.parse_file(program, config)
    raise ConfigError(
        f"'{program}' is neither a built-in program ({', '.join(sorted(PROGRAMS))}) "
        "nor a stack definition file"
    )


def _short(value: Any, width: int = 60) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=repr)
    return text[:width] + "…" if len(text) > width else text


def _print_plan(steps: List[PlanStep], no_color: bool) -> None:
    tbl = Table(title="Plan", show_header=True, header_style="bold")
    tbl.add_column("Layer", style="dim", width=5)
    tbl.add_column("Resource", width=30)
    tbl.add_column("Type", width=40)
    tbl.add_column("Depends on")
    tbl.add_column("Protect", width=7)

    for s in steps:
        name = f"{s.name} (read)" if s.kind == "data" else s.name
        tbl.add_row(
            str(s.layer),
            name,
            s.resource_type,
            ", ".join(s.depends_on) or "-",
            "yes" if s.protect else "",
        )

    Console(stderr=True, no_color=no_color).print(tbl)


def _print_result_table(result: ApplyResult, no_color: bool) -> None:
    tbl = Table(title="Apply Summary", show_header=True, header_style="bold")
    tbl.add_column("Resource", width=30)
    tbl.add_column("Type", width=40)
    tbl.add_column("Status", width=10)
    tbl.add_column("Detail")

    for r in result.resources:
        color = _STATUS_COLORS.get(r.status.value, "") if not no_color else ""
        status = f"[{color}]{r.status.value}[/{color}]" if color else r.status.value
        detail = ""
        if r.error is not None and len(r.error.chain) > 1:
            detail = "via " + " → ".join(r.error.chain[1:])
        elif r.error is not None:
            detail = str(r.error)
        tbl.add_row(r.name, r.resource_type, status, detail)

    Console(stderr=True, no_color=no_color).print(tbl)


def _print_outputs(result: ApplyResult, show_secrets: bool, no_color: bool) -> None:
    if not result.outputs and not result.output_errors:
        return
    tbl = Table(title="Stack Outputs", show_header=True, header_style="bold")
    tbl.add_column("Name")
    tbl.add_column("Value")
    for name, value in result.display_outputs(show_secrets).items():
        tbl.add_row(name, _short(value, 100))
    for name, exc in result.output_errors.items():
        tbl.add_row(name, f"[red]{exc}[/red]" if not no_color else str(exc))
    Console(stderr=True, no_color=no_color).print(tbl)


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__)
@click.pass_context
def cli(ctx):
    """stackgraph — dependency-ordered cloud resource graphs."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit()


@cli.command()
def programs() -> None:
    """List the built-in infrastructure programs."""
    for name in sorted(PROGRAMS):
        click.echo(f"{name:<14} {DESCRIPTIONS.get(name, '')}")


@cli.command()
@click.argument("program")
@click.option("--config", "-c", "config_path", type=click.Path(), default=None,
              help="Stack configuration file (YAML).")
@click.option("--json", "as_json", is_flag=True, default=False,
              help="Print the validated graph as JSON on stdout.")
@click.option("--no-color", is_flag=True, default=False, help="Disable rich terminal color output.")
def preview(program: str, config_path: Optional[str], as_json: bool, no_color: bool) -> None:
    """
    Build and validate a stack without provisioning anything.

    PROGRAM is a built-in program name or a stack definition file.
    """
    stderr = Console(stderr=True, no_color=no_color)
    try:
        config = _load_config(config_path)
        stack = _load_stack(program, config)
        graph = stack.build()
    except StackError as exc:
        stderr.print(f"[red]Construction error:[/red] {exc}")
        sys.exit(2)

    steps = deployment.preview(graph)
    stderr.print(
        f"Stack [bold]{graph.stack}[/bold]: [bold]{len(graph.resources)}[/bold] resources, "
        f"[bold]{len(graph.edges)}[/bold] dependency edges, "
        f"[bold]{len(graph.exports)}[/bold] outputs."
    )
    _print_plan(steps, no_color)

    if as_json:
        data = graph.to_dict()
        data["plan"] = [
            {
                "layer": s.layer,
                "name": s.name,
                "inputs": s.inputs,
            }
            for s in steps
        ]
        click.echo(json.dumps(data, indent=2, default=lambda v: repr(UNKNOWN) if v is UNKNOWN else repr(v)))
    sys.exit(0)


@cli.command()
@click.argument("program")
@click.option("--config", "-c", "config_path", type=click.Path(), default=None,
              help="Stack configuration file (YAML).")
@click.option("--state", "state_path", type=click.Path(), default=None,
              help="Simulated engine state: canned outputs and failures per resource.")
@click.option(
    "--format", "output_format",
    type=click.Choice(["markdown", "json", "html"], case_sensitive=False),
    default="markdown",
    show_default=True,
    help="Report format.",
)
@click.option("--output", "-o", type=click.Path(), default=None,
              help="Write report to this file (default: stdout).")
@click.option("--parallel", "-p", type=click.IntRange(min=1), default=10, show_default=True,
              help="Maximum number of resources provisioned concurrently.")
@click.option("--timeout", type=float, default=None,
              help="Cancel the apply after this many seconds.")
@click.option("--summary", is_flag=True, default=False,
              help="Print terminal summary tables only, do not write a full report.")
@click.option("--ascii", is_flag=True, default=False,
              help="Use ASCII-only status indicators (no emojis).")
@click.option("--show-secrets", is_flag=True, default=False, help="Do not mask secret values.")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Print per-resource progress.")
@click.option("--no-color", is_flag=True, default=False, help="Disable rich terminal color output.")
def up(
    program: str,
    config_path: Optional[str],
    state_path: Optional[str],
    output_format: str,
    output: Optional[str],
    parallel: int,
    timeout: Optional[float],
    summary: bool,
    ascii: bool,
    show_secrets: bool,
    verbose: bool,
    no_color: bool,
) -> None:
    """
    Apply a stack against the simulated engine and report the result.

    PROGRAM is a built-in program name or a stack definition file.
    """
    _print_banner(no_color)
    stderr = Console(stderr=True, no_color=no_color)
    if show_secrets:
        console.print("[yellow]Warning:[/yellow] secret values will be shown in plain text.")

    # 1. Construct and validate
    try:
        config = _load_config(config_path)
        stack = _load_stack(program, config)
        graph = stack.build()
        state = load_state(state_path) if state_path else {}
    except StackError as exc:
        stderr.print(f"[red]Construction error:[/red] {exc}")
        sys.exit(2)

    stderr.print(
        f"Stack [bold]{graph.stack}[/bold]: [bold]{len(graph.resources)}[/bold] resources, "
        f"[bold]{len(graph.edges)}[/bold] dependency edges."
    )

    # 2. Resolve
    provisioner = SimulatedProvisioner(
        state, region=config.region or "us-west-2", stack=graph.stack
    )
    with stderr.status("[bold]Applying…"):
        result = deployment.apply(graph, provisioner, parallel=parallel, timeout=timeout, verbose=verbose)

    counts = result.counts()
    stderr.print(
        f"Applied in {result.duration:.2f}s — "
        + "  ".join(
            f"[{_STATUS_COLORS[s]}]{s}: {counts[s]}[/{_STATUS_COLORS[s]}]"
            for s in ("resolved", "failed", "cancelled")
            if counts[s] > 0
        )
    )

    if summary or output or not result.ok:
        _print_result_table(result, no_color)
    _print_outputs(result, show_secrets, no_color)

    # 3. Report
    if not summary:
        fmt = output_format.lower()
        if fmt == "json":
            report_content = json_reporter.build_report(graph, result, program, show_secrets=show_secrets)
        elif fmt == "html":
            report_content = html_reporter.build_report(graph, result, program, show_secrets=show_secrets)
        else:
            report_content = markdown.build_report(
                graph, result, program, ascii_mode=ascii, show_secrets=show_secrets
            )

        if output:
            with open(output, "w", encoding="utf-8", newline="\n") as fh:
                fh.write(report_content)
            stderr.print(f"Report written to [bold]{output}[/bold]")
        else:
            click.echo(report_content)

    # 4. Partial apply is not success
    if result.cancelled:
        stderr.print("[red]Apply cancelled:[/red] unsettled resources were marked cancelled.")
        sys.exit(1)
    if not result.ok:
        stderr.print(f"[red]Partial apply:[/red] {len(result.failed)} resource(s) failed.")
        sys.exit(1)

    sys.exit(0)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
