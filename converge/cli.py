"""
converge CLI entry point.
"""
import contextlib
import json
import logging
import os
import signal
import sys
import threading
from typing import Any, Dict, Optional, Tuple

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from converge import __version__
from converge.config import load_settings
from converge.engine import ApplyReport, Engine, build_graph
from converge.errors import (
    ConfigError,
    GraphError,
    PlanConflict,
    ProviderError,
    StateConflict,
)
from converge.loader import load_configuration
from converge.models.change import Action, ChangeSet, EntryStatus
from converge.models.node import Configuration
from converge.providers import ProviderRegistry
from converge.reporters import html_reporter, json_reporter, markdown
from converge.state import JsonStateStore

console = Console(stderr=True)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_LOCKED = 3

_ACTION_COLORS = {
    "create": "green",
    "update": "yellow",
    "destroy": "red",
    "read": "cyan",
    "no-op": "dim",
}
_ACTION_SYMBOL = markdown._ACTION_SYMBOL

_STATUS_COLORS = {
    "applied": "green",
    "failed": "bold red",
    "skipped": "yellow",
    "pending": "dim",
    "in-progress": "dim",
}

_REPORTERS = {
    "markdown": markdown.build_report,
    "json": json_reporter.build_report,
    "html": html_reporter.build_report,
}


@contextlib.contextmanager
def _errors():
    """Map converge errors to messages and exit codes."""
    try:
        yield
    except (ConfigError, GraphError) as exc:
        console.print(f"[red]Error:[/red] {exc}")
        sys.exit(EXIT_INVALID)
    except (PlanConflict, StateConflict) as exc:
        console.print(f"[red]State conflict:[/red] {exc}")
        sys.exit(EXIT_LOCKED)
    except ProviderError as exc:
        console.print(f"[red]Provider error:[/red] {exc}")
        sys.exit(EXIT_FAILED)


def _setup_logging(verbose: int, no_color: bool) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True, no_color=no_color), show_path=False)],
        force=True,
    )


def _parse_vars(pairs: Tuple[str, ...], files: Tuple[str, ...]) -> Dict[str, Any]:
    variables: Dict[str, Any] = {}
    for path in files:
        try:
            with open(path) as fh:
                data = yaml.safe_load(fh) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"cannot read variables from {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{path}: variable file must be a mapping")
        variables.update(data)
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got '{pair}'", param_hint="--var")
        variables[key.strip()] = value
    return variables


def _load(paths: Tuple[str, ...], var: Tuple[str, ...], var_file: Tuple[str, ...]) -> Tuple[Configuration, Dict[str, Any]]:
    with console.status("[bold]Reading declarations…"):
        config = load_configuration(paths or (".",))
    console.print(
        f"Loaded [bold]{len(config.nodes)}[/bold] nodes, "
        f"{len(config.variables)} variables, {len(config.outputs)} outputs."
    )
    return config, _parse_vars(var, var_file)


def _engine(ctx: click.Context, state_path: Optional[str], lock_timeout: Optional[float],
            parallelism: Optional[int] = None, cancel_event: Optional[threading.Event] = None) -> Engine:
    settings = ctx.obj["settings"]
    if parallelism is not None:
        if parallelism < 1:
            raise click.BadParameter("must be at least 1", param_hint="--parallelism")
        settings.apply.parallelism = parallelism
    store = JsonStateStore(
        state_path or settings.state.path,
        lock_timeout=settings.state.lock_timeout if lock_timeout is None else lock_timeout,
    )
    providers = ProviderRegistry.from_settings(settings.providers)
    return Engine(providers, store, settings.apply, cancel_event=cancel_event)


def _store(ctx: click.Context, state_path: Optional[str]) -> JsonStateStore:
    return JsonStateStore(state_path or ctx.obj["settings"].state.path)


def _summary_line(change_set: ChangeSet) -> str:
    counts = change_set.counts()
    if not change_set.has_changes:
        return "[green]No changes.[/green] Infrastructure matches the declarations."
    parts = [
        f"[{_ACTION_COLORS[a]}]{counts[a]} to {a}[/{_ACTION_COLORS[a]}]"
        for a in ("create", "update", "destroy")
    ]
    if counts["read"]:
        parts.append(f"{counts['read']} to read")
    return "Plan: " + ", ".join(parts) + "."


def _print_plan(change_set: ChangeSet, no_color: bool, out: Optional[Console] = None) -> None:
    """Print the change-set as a rich table."""
    out = out or Console(stderr=True, no_color=no_color)
    tbl = Table(title="Change-Set", show_header=True, header_style="bold")
    tbl.add_column("#", style="dim", width=4)
    tbl.add_column("Action", width=9)
    tbl.add_column("Address")
    tbl.add_column("Changes")

    for i, e in enumerate(change_set, 1):
        if e.action == Action.NOOP:
            continue
        color = _ACTION_COLORS.get(e.action.value, "")
        changed = ", ".join(e.changes) if e.action == Action.UPDATE else ""
        tbl.add_row(
            str(i),
            f"[{color}]{_ACTION_SYMBOL[e.action.value]} {e.action.value}[/{color}]",
            e.address,
            changed[:80] + "…" if len(changed) > 80 else changed,
        )

    if change_set.has_changes or change_set.counts()["read"]:
        out.print(tbl)
    out.print(_summary_line(change_set))


def _print_results(report: ApplyReport, no_color: bool) -> None:
    out = Console(stderr=True, no_color=no_color)
    tbl = Table(title="Apply Results", show_header=True, header_style="bold")
    tbl.add_column("Address")
    tbl.add_column("Action", width=9)
    tbl.add_column("Status", width=12)
    tbl.add_column("Attempts", width=8)
    tbl.add_column("Cause")

    for e in report.change_set:
        if e.action == Action.NOOP and e.status == EntryStatus.APPLIED:
            continue
        color = _STATUS_COLORS.get(e.status.value, "")
        tbl.add_row(
            e.address,
            e.action.value,
            f"[{color}]{e.status.value}[/{color}]",
            str(e.attempts),
            e.cause or "",
        )
    out.print(tbl)

    counts = report.counts()
    out.print(
        "Apply " + ("complete" if report.succeeded else "[red]incomplete[/red]") + ": "
        + "  ".join(
            f"[{_STATUS_COLORS[s]}]{s}: {counts[s]}[/{_STATUS_COLORS[s]}]"
            for s in ("applied", "failed", "skipped")
            if counts[s] > 0
        )
    )
    for name, value in report.outputs.items():
        out.print(f"  [bold]{name}[/bold] = {json.dumps(value)}")
    for name, reason in report.missing_outputs.items():
        out.print(f"  [yellow]{name}[/yellow] not available: {reason}")


def _write_report(content: str, output: Optional[str]) -> None:
    if output:
        with open(output, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(content)
        console.print(f"Report written to [bold]{output}[/bold]")
    else:
        click.echo(content)


@contextlib.contextmanager
def _interruptible(cancel_event: threading.Event):
    """First Ctrl-C stops scheduling new work; a second one aborts."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _on_interrupt(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        cancel_event.set()
        console.print("[yellow]Interrupt received:[/yellow] waiting for in-flight operations to finish…")

    previous = signal.signal(signal.SIGINT, _on_interrupt)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _declaration_options(fn):
    fn = click.option(
        "--lock-timeout", type=float, default=None,
        help="Seconds to wait for the state lock (default: from settings).",
    )(fn)
    fn = click.option("--state", "state_path", type=click.Path(dir_okay=False), default=None,
                      help="State file (default: from settings).")(fn)
    fn = click.option("--var-file", multiple=True, type=click.Path(exists=True, dir_okay=False),
                      help="YAML file with variable values.")(fn)
    fn = click.option("--var", "var", multiple=True, metavar="KEY=VALUE", help="Set an input variable.")(fn)
    fn = click.argument("paths", nargs=-1, type=click.Path())(fn)
    return fn


def _report_options(fn):
    fn = click.option("--output", "-o", type=click.Path(), default=None,
                      help="Write the report to this file (default: stdout).")(fn)
    fn = click.option(
        "--format", "output_format",
        type=click.Choice(["text", "markdown", "json", "html"], case_sensitive=False),
        default="text",
        show_default=True,
        help="Report format.",
    )(fn)
    return fn


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__)
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Settings file (default: ./converge.yaml when present).")
@click.option("-v", "--verbose", count=True, help="Log progress (-vv for debug output).")
@click.option("--no-color", is_flag=True, default=False, help="Disable rich terminal color output.")
@click.pass_context
def cli(ctx, config_path, verbose, no_color):
    """converge: plan and apply declarative infrastructure."""
    _setup_logging(verbose, no_color)
    ctx.ensure_object(dict)
    ctx.obj["no_color"] = no_color
    with _errors():
        ctx.obj["settings"] = load_settings(config_path)


@cli.command()
@_declaration_options
@_report_options
@click.option("--refresh/--no-refresh", default=True, show_default=True,
              help="Read remote objects to detect drift before planning.")
@click.option("--destroy", is_flag=True, default=False, help="Plan the removal of every resource.")
@click.pass_context
def plan(ctx, paths, var, var_file, state_path, lock_timeout, output_format, output, refresh, destroy):
    """
    Compute and show the change-set without applying it.

    PATHS can be files or directories (default: current directory).
    """
    with _errors():
        config, variables = _load(paths, var, var_file)
        engine = _engine(ctx, state_path, lock_timeout)
        with console.status("[bold]Planning…"):
            change_set = engine.plan(config, variables, refresh=refresh, destroy=destroy)

    fmt = output_format.lower()
    if fmt == "text":
        _print_plan(change_set, ctx.obj["no_color"], out=Console(no_color=ctx.obj["no_color"]))
    else:
        _print_plan(change_set, ctx.obj["no_color"])
        _write_report(_REPORTERS[fmt](change_set, ", ".join(paths) or "."), output)
    sys.exit(EXIT_OK)


def _run_apply(ctx, paths, var, var_file, state_path, lock_timeout, output_format, output,
               refresh, parallelism, auto_approve, destroy):
    no_color = ctx.obj["no_color"]
    cancel = threading.Event()

    def confirm(change_set: ChangeSet) -> bool:
        _print_plan(change_set, no_color)
        if not change_set.has_changes or auto_approve:
            return True
        question = "Destroy all of these resources?" if destroy else "Apply these changes?"
        return click.confirm(question, default=False, err=True)

    with _errors():
        config, variables = _load(paths, var, var_file)
        engine = _engine(ctx, state_path, lock_timeout, parallelism, cancel_event=cancel)
        with _interruptible(cancel):
            report = engine.apply(config, variables, refresh=refresh, destroy=destroy, confirm=confirm)

    if report is None:
        console.print("[yellow]Cancelled:[/yellow] nothing was applied.")
        sys.exit(EXIT_FAILED)

    _print_results(report, no_color)
    fmt = output_format.lower()
    if fmt != "text":
        _write_report(_REPORTERS[fmt](report.change_set, ", ".join(paths) or ".", report), output)

    if not report.succeeded:
        console.print(
            f"[red]{len(report.failures)} entr{'y' if len(report.failures) == 1 else 'ies'} "
            f"did not reach applied.[/red]"
        )
        sys.exit(EXIT_FAILED)
    sys.exit(EXIT_OK)


@cli.command()
@_declaration_options
@_report_options
@click.option("--refresh/--no-refresh", default=True, show_default=True)
@click.option("--parallelism", type=int, default=None, help="Maximum concurrent provider operations.")
@click.option("--auto-approve", is_flag=True, default=False, help="Skip the interactive confirmation.")
@click.pass_context
def apply(ctx, paths, var, var_file, state_path, lock_timeout, output_format, output,
          refresh, parallelism, auto_approve):
    """
    Compute the change-set and execute it.

    Exits 0 only when every entry reaches applied.
    """
    _run_apply(ctx, paths, var, var_file, state_path, lock_timeout, output_format, output,
               refresh, parallelism, auto_approve, destroy=False)


@cli.command()
@_declaration_options
@_report_options
@click.option("--parallelism", type=int, default=None, help="Maximum concurrent provider operations.")
@click.option("--auto-approve", is_flag=True, default=False, help="Skip the interactive confirmation.")
@click.pass_context
def destroy(ctx, paths, var, var_file, state_path, lock_timeout, output_format, output,
            parallelism, auto_approve):
    """Remove every resource recorded in state."""
    _run_apply(ctx, paths, var, var_file, state_path, lock_timeout, output_format, output,
               True, parallelism, auto_approve, destroy=True)


@cli.command()
@click.argument("paths", nargs=-1, type=click.Path())
@click.option("--var", "var", multiple=True, metavar="KEY=VALUE")
@click.option("--var-file", multiple=True, type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def graph(ctx, paths, var, var_file):
    """Print the dependency graph as a Mermaid flowchart."""
    with _errors():
        config, variables = _load(paths, var, var_file)
        providers = ProviderRegistry.from_settings(ctx.obj["settings"].providers)
        resource_graph = build_graph(config, variables, computed=providers.computed_attributes)
    click.echo(markdown.mermaid_for_graph(resource_graph))


@cli.command()
@click.argument("name", required=False)
@click.option("--state", "state_path", type=click.Path(dir_okay=False), default=None)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print outputs as a JSON document.")
@click.pass_context
def output(ctx, name, state_path, as_json):
    """Show outputs recorded by the last apply."""
    with _errors():
        outputs = _store(ctx, state_path).get_outputs()

    if name is not None:
        if name not in outputs:
            console.print(f"[red]Error:[/red] output '{name}' not found")
            sys.exit(EXIT_FAILED)
        value = outputs[name]
        click.echo(json.dumps(value) if as_json or not isinstance(value, str) else value)
        return
    if as_json:
        click.echo(json.dumps(outputs, indent=2, sort_keys=True))
        return
    for key in sorted(outputs):
        click.echo(f"{key} = {json.dumps(outputs[key])}")


@cli.group()
def state():
    """Inspect the state document."""


@state.command("list")
@click.option("--state", "state_path", type=click.Path(dir_okay=False), default=None)
@click.pass_context
def state_list(ctx, state_path):
    """List addresses recorded in state."""
    with _errors():
        records = _store(ctx, state_path).list()
    for record in records:
        click.echo(record.address)


@state.command("show")
@click.argument("address")
@click.option("--state", "state_path", type=click.Path(dir_okay=False), default=None)
@click.pass_context
def state_show(ctx, address, state_path):
    """Print one state record as JSON."""
    with _errors():
        record = _store(ctx, state_path).get(address)
    if record is None:
        console.print(f"[red]Error:[/red] '{address}' is not in state")
        sys.exit(EXIT_FAILED)
    click.echo(json.dumps(record.to_dict(), indent=2, sort_keys=True))


@cli.command("force-unlock")
@click.option("--state", "state_path", type=click.Path(dir_okay=False), default=None)
@click.pass_context
def force_unlock(ctx, state_path):
    """Remove a lock left behind by a crashed run."""
    store = _store(ctx, state_path)
    if not os.path.exists(store.lock_path):
        console.print("State is not locked.")
        return
    info = store.force_unlock() or {}
    console.print(f"Removed lock held by [bold]{info.get('owner', 'unknown')}[/bold].")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
