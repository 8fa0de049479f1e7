"""Command line interface for inspecting and managing permission rules."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from tollgate import __version__
from tollgate.core.config import SCOPE_PRECEDENCE, ConfigScope, parse_scope
from tollgate.core.errors import InvalidPermissionRule, TollgateError, TrustStoreError
from tollgate.core.permission_engine import PermissionManager
from tollgate.core.permissions import (
    PERMISSION_MODE_LABELS,
    PermissionBehavior,
    PermissionMode,
)
from tollgate.core.trust_store import TrustStore
from tollgate.utils.log import get_logger
from tollgate.utils.permissions.command_decomposer import decompose
from tollgate.utils.permissions.prefix_heuristic import suggest
from tollgate.utils.permissions.rule_syntax import parse_permission_rule
from tollgate.utils.workdir import resolve_workdir

console = Console()
logger = get_logger()

_EXIT_CODES = {
    PermissionBehavior.ALLOW: 0,
    PermissionBehavior.ASK: 1,
    PermissionBehavior.DENY: 2,
}
_BEHAVIOR_STYLES = {
    PermissionBehavior.ALLOW: "green",
    PermissionBehavior.ASK: "yellow",
    PermissionBehavior.DENY: "red",
}
_SCOPE_HEADINGS = {
    ConfigScope.USER: "User (global)",
    ConfigScope.PROJECT: "Project (shared)",
    ConfigScope.LOCAL: "Local (private)",
}
_MODE_CHOICES = [mode.value for mode in PermissionMode]
_SCOPE_CHOICES = ["user", "global", "project", "local"]


def _project_path(ctx: click.Context) -> Path:
    return Path(ctx.obj["project_path"])


def _trust_store(ctx: click.Context) -> TrustStore:
    return TrustStore(_project_path(ctx))


def _shorten_path(path: Path, project_path: Path) -> str:
    try:
        return str(path.resolve().relative_to(project_path.resolve()))
    except (ValueError, OSError):
        pass
    try:
        return f"~/{path.resolve().relative_to(Path.home())}"
    except (ValueError, OSError):
        return str(path)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--cwd",
    type=click.Path(exists=True, file_okay=False),
    help="Project directory (defaults to the current directory)",
)
@click.pass_context
def cli(ctx: click.Context, cwd: Optional[str]) -> None:
    """Inspect and manage tool permission rules."""
    ctx.ensure_object(dict)
    ctx.obj["project_path"] = str(resolve_workdir(cwd))


@cli.command(name="check")
@click.argument("tool_name")
@click.option("--command", "command", help="Shell command for shell tools")
@click.option("--input", "input_json", help="Tool input as a JSON object")
@click.option("--mode", type=click.Choice(_MODE_CHOICES), help="Permission mode override")
@click.option("--plan-file", type=click.Path(dir_okay=False), help="Plan file for plan mode")
@click.option("--json", "as_json", is_flag=True, help="Print the decision as JSON")
@click.pass_context
def check_cmd(
    ctx: click.Context,
    tool_name: str,
    command: Optional[str],
    input_json: Optional[str],
    mode: Optional[str],
    plan_file: Optional[str],
    as_json: bool,
) -> None:
    """Evaluate one tool invocation. Exit code: 0 allow, 1 ask, 2 deny."""
    tool_input: Dict[str, Any] = {}
    if input_json:
        try:
            parsed = json.loads(input_json)
        except json.JSONDecodeError as exc:
            raise click.BadParameter(f"invalid JSON: {exc}", param_hint="--input") from exc
        if not isinstance(parsed, dict):
            raise click.BadParameter("expected a JSON object", param_hint="--input")
        tool_input.update(parsed)
    if command is not None:
        tool_input["command"] = command

    project_path = _project_path(ctx)
    manager = PermissionManager(
        workdir=project_path,
        trust_store=_trust_store(ctx),
        mode=PermissionMode(mode) if mode else None,
        plan_file_path=Path(plan_file) if plan_file else None,
    )
    context = manager.create_context(tool_name, tool_input)
    decision = manager.check_permission(context)

    if as_json:
        payload = {
            "behavior": decision.behavior.value,
            "reason": decision.reason,
            "rule": decision.rule.pattern if decision.rule else None,
            "mode": context.mode.value,
        }
        if decision.behavior is PermissionBehavior.ASK:
            request = manager.build_request(context, decision)
            payload["suggested_rules"] = [rule.pattern for rule in request.suggested_rules]
            payload["allow_remember"] = request.allow_remember
        click.echo(json.dumps(payload))
    else:
        style = _BEHAVIOR_STYLES[decision.behavior]
        console.print(
            f"[{style}]{decision.behavior.value.upper()}[/{style}] "
            f"{escape(decision.reason or '')}"
        )
        if decision.behavior is PermissionBehavior.ASK:
            request = manager.build_request(context, decision)
            for rule in request.suggested_rules:
                console.print(f"[dim]  remember as: {escape(rule.pattern)}[/dim]")
    ctx.exit(_EXIT_CODES[decision.behavior])


@cli.command(name="decompose")
@click.argument("command")
def decompose_cmd(command: str) -> None:
    """Show the simple commands a shell string would run."""
    commands = decompose(command)
    if not commands:
        console.print("[yellow]No commands found.[/yellow]")
        return
    table = Table(title="Simple commands", show_header=True, header_style="bold cyan")
    table.add_column("#", style="dim")
    table.add_column("Command")
    table.add_column("Notes", style="dim")
    for index, simple in enumerate(commands, start=1):
        notes = []
        if simple.has_substitution:
            notes.append("substitution")
        if simple.malformed:
            notes.append("unbalanced quoting")
        table.add_row(str(index), escape(simple.text), ", ".join(notes))
    console.print(table)


@cli.command(name="suggest")
@click.argument("command")
def suggest_cmd(command: str) -> None:
    """Show the rule that would be offered for each part of a shell command."""
    commands = decompose(command)
    if not commands:
        console.print("[yellow]No commands found.[/yellow]")
        return
    for simple in commands:
        rule = suggest(simple)
        console.print(f"{escape(simple.text)} [dim]->[/dim] [cyan]{escape(rule.pattern)}[/cyan]")


@cli.group(name="rules")
def rules_group() -> None:
    """List, add and remove permission rules."""


def _render_scope(store: TrustStore, scope: ConfigScope, project_path: Path) -> bool:
    permissions = store.read_scope(scope)
    table = Table(
        title=f"{_SCOPE_HEADINGS[scope]} Permission Rules",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Type", style="dim")
    table.add_column("Rule")
    has_rules = False
    for rule in permissions.allow:
        table.add_row("[green]allow[/green]", escape(str(rule)))
        has_rules = True
    for rule in permissions.deny:
        table.add_row("[red]deny[/red]", escape(str(rule)))
        has_rules = True
    if has_rules:
        console.print(table)
    else:
        console.print(f"[yellow]No {scope.value} rules configured.[/yellow]")
    config_path = _shorten_path(store.scope_path(scope), project_path)
    console.print(f"[dim]Config file: {escape(config_path)}[/dim]")
    return has_rules


@rules_group.command(name="list")
@click.option("--scope", type=click.Choice(_SCOPE_CHOICES), help="Only show one scope")
@click.pass_context
def rules_list_cmd(ctx: click.Context, scope: Optional[str]) -> None:
    """Show configured rules."""
    store = _trust_store(ctx)
    project_path = _project_path(ctx)
    scopes = [parse_scope(scope)] if scope else list(SCOPE_PRECEDENCE)
    for item in scopes:
        _render_scope(store, item, project_path)
        console.print()
    if not scope:
        console.print("[dim]Scopes (in priority order): local, project, user[/dim]")


def _behavior(deny: bool) -> PermissionBehavior:
    return PermissionBehavior.DENY if deny else PermissionBehavior.ALLOW


@rules_group.command(name="add")
@click.argument("rule")
@click.option("--scope", type=click.Choice(_SCOPE_CHOICES), default="local", show_default=True)
@click.option("--deny", is_flag=True, help="Add a deny rule instead of an allow rule")
@click.pass_context
def rules_add_cmd(ctx: click.Context, rule: str, scope: str, deny: bool) -> None:
    """Add a rule to one scope."""
    try:
        parsed = parse_permission_rule(rule)
    except InvalidPermissionRule as exc:
        raise click.ClickException(str(exc)) from exc
    target = parse_scope(scope)
    behavior = _behavior(deny)
    try:
        _trust_store(ctx).save(target, parsed, behavior)
    except TrustStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    console.print(
        f"[green]✓ Added {behavior.value} rule to {target.value}:[/green] {escape(parsed.pattern)}"
    )


@rules_group.command(name="remove")
@click.argument("rule")
@click.option("--scope", type=click.Choice(_SCOPE_CHOICES), default="local", show_default=True)
@click.option("--deny", is_flag=True, help="Remove a deny rule instead of an allow rule")
@click.pass_context
def rules_remove_cmd(ctx: click.Context, rule: str, scope: str, deny: bool) -> None:
    """Remove a rule from one scope."""
    try:
        parsed = parse_permission_rule(rule)
    except InvalidPermissionRule as exc:
        raise click.ClickException(str(exc)) from exc
    target = parse_scope(scope)
    behavior = _behavior(deny)
    try:
        removed = _trust_store(ctx).remove(target, parsed, behavior)
    except TrustStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    if not removed:
        raise click.ClickException(
            f"No {behavior.value} rule {parsed.pattern!r} in {target.value} settings"
        )
    console.print(
        f"[green]✓ Removed {behavior.value} rule from {target.value}:[/green] "
        f"{escape(parsed.pattern)}"
    )


@cli.group(name="mode")
def mode_group() -> None:
    """Show or configure the default permission mode."""


@mode_group.command(name="show")
@click.pass_context
def mode_show_cmd(ctx: click.Context) -> None:
    """Show the effective default mode and where it comes from."""
    store = _trust_store(ctx)
    source = "built-in default"
    for scope in SCOPE_PRECEDENCE:
        if store.read_scope(scope).default_mode is not None:
            source = f"{scope.value} settings"
            break
    manager = PermissionManager(workdir=_project_path(ctx), trust_store=store)
    label = PERMISSION_MODE_LABELS[manager.mode]
    console.print(
        Panel(
            f"[bold]{escape(label)}[/bold] ({manager.mode.value})\n[dim]from {source}[/dim]",
            title="Permission mode",
            expand=False,
        )
    )


@mode_group.command(name="set")
@click.argument("mode", type=click.Choice(_MODE_CHOICES))
@click.option("--scope", type=click.Choice(_SCOPE_CHOICES), default="local", show_default=True)
@click.pass_context
def mode_set_cmd(ctx: click.Context, mode: str, scope: str) -> None:
    """Write ``defaultMode`` to one scope."""
    target = parse_scope(scope)
    try:
        _trust_store(ctx).set_default_mode(target, PermissionMode(mode))
    except TrustStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    console.print(f"[green]✓ Default mode for {target.value} set to {mode}[/green]")


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except (TollgateError, RuntimeError, ValueError, TypeError, OSError) as e:
        console.print(f"[red]Fatal error: {escape(str(e))}[/red]")
        logger.warning(
            "[cli] Fatal error in main CLI entrypoint: %s: %s",
            type(e).__name__,
            e,
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
