"""
CLI entry point for policygate.

This module provides the Typer-based command-line interface over the Engine
facade. State (ACL rules, permission overrides, policy records) lives in a
SQLite cache file, policygate.db in the current directory by default.

Commands:
    check-access        Decide an ACL request
    rule add|remove|list|clear
                        Administer ACL rules of a resource
    check-permission    Decide a permission-level request
    permission set|show|clear
                        Administer per-user permission overrides
    check-policy        Evaluate a security policy
    policy show|update|reset
                        Administer security policy records
    compliance          Run compliance checks and print a report
    levels              List permission levels

Exit codes:
    0   allowed / compliant / command succeeded
    1   denied / non-compliant
    2   invalid input or engine error
"""

import json
import logging
from pathlib import Path
from typing import Annotated, Any, NoReturn, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from policygate import __version__
from policygate.engine import Engine
from policygate.errors import PolicyGateError
from policygate.permissions import get_level_from_name, get_level_name
from policygate.schema import EngineConfig, PermissionLevel, RuleType, load_config

DEFAULT_DB_PATH = Path("policygate.db")

EXIT_DENIED = 1
EXIT_ERROR = 2

app = typer.Typer(
    name="policygate",
    help="Evaluate access, permission, security and compliance policies.",
    add_completion=False,
    no_args_is_help=True,
)

rule_app = typer.Typer(help="Administer ACL rules.", no_args_is_help=True)
permission_app = typer.Typer(help="Administer permission overrides.", no_args_is_help=True)
policy_app = typer.Typer(help="Administer security policy records.", no_args_is_help=True)

app.add_typer(rule_app, name="rule")
app.add_typer(permission_app, name="permission")
app.add_typer(policy_app, name="policy")

console = Console()


# =============================================================================
# Shared Options
# =============================================================================

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help="Path to the engine configuration YAML file.",
        exists=True,
        readable=True,
        resolve_path=True,
    ),
]

DbOption = Annotated[
    Optional[Path],
    typer.Option(
        "--db",
        help="Path to the SQLite state file. Defaults to policygate.db in the current directory.",
        resolve_path=True,
    ),
]

JsonOption = Annotated[
    bool,
    typer.Option(
        "--json",
        help="Output results in JSON format.",
    ),
]

ContextOption = Annotated[
    Optional[str],
    typer.Option(
        "--context",
        help="Request context as a JSON object.",
    ),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]policygate[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Log every decision to stderr.",
        ),
    ] = False,
) -> None:
    """
    policygate - Policy evaluation engine.

    Decide access requests from ACL rules, permission levels and security
    policies, and check data handling against compliance rules.
    """
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


# =============================================================================
# Access Control
# =============================================================================


@app.command("check-access")
def check_access(
    resource_type: Annotated[str, typer.Argument(help="Resource type (chat, file, api, feature, ...).")],
    resource_id: Annotated[str, typer.Argument(help="Resource identifier.")],
    user_id: Annotated[str, typer.Argument(help="Acting user.")],
    role: Annotated[
        Optional[list[str]],
        typer.Option("--role", "-r", help="Role held by the user (repeatable)."),
    ] = None,
    group: Annotated[
        Optional[list[str]],
        typer.Option("--group", "-g", help="Group the user belongs to (repeatable)."),
    ] = None,
    context: ContextOption = None,
    config: ConfigOption = None,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """
    Decide whether a user may access a resource.

    Example:
        $ policygate check-access chat c1 u9 --role admin
    """
    request = _parse_json_object(context, "--context", json_output)
    if role:
        request["roles"] = list(role)
    if group:
        request["groups"] = list(group)

    with _open_engine(config, db, json_output) as engine:
        allowed = _run(lambda: engine.check_access(resource_type, resource_id, user_id, request), json_output)

    _output_decision(
        allowed,
        {"resource": f"{resource_type}:{resource_id}", "user_id": user_id},
        json_output,
    )


@rule_app.command("add")
def rule_add(
    resource_type: Annotated[str, typer.Argument(help="Resource type.")],
    resource_id: Annotated[str, typer.Argument(help="Resource identifier.")],
    principal: Annotated[str, typer.Argument(help="user id, role:x, group:x, external:*, internal:* or *.")],
    rule_type: Annotated[
        RuleType,
        typer.Option("--type", "-t", help="Rule effect.", case_sensitive=False),
    ] = RuleType.ALLOW,
    condition: Annotated[
        Optional[list[str]],
        typer.Option(
            "--condition",
            help="key=value condition; JSON values allowed, lists mean 'one of' (repeatable).",
        ),
    ] = None,
    config: ConfigOption = None,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """
    Add a rule, or update the conditions of an identical one.

    Example:
        $ policygate rule add chat c1 role:admin --type allow --condition 'region=["cn","us"]'
    """
    conditions = _parse_pairs(condition, "--condition", json_output)

    with _open_engine(config, db, json_output) as engine:
        _run(lambda: engine.acl.add_rule(resource_type, resource_id, principal, rule_type, conditions), json_output)
        rules = engine.acl.get_rules(resource_type, resource_id)

    if json_output:
        _print_json({"resource": f"{resource_type}:{resource_id}", "rules": _rules_json(rules)})
    else:
        console.print(
            f"[green]{rule_type.value}[/green] rule for [cyan]{principal}[/cyan] "
            f"on {resource_type}:{resource_id} ({len(rules)} rules)"
        )


@rule_app.command("remove")
def rule_remove(
    resource_type: Annotated[str, typer.Argument(help="Resource type.")],
    resource_id: Annotated[str, typer.Argument(help="Resource identifier.")],
    principal: Annotated[str, typer.Argument(help="Principal whose rules are removed.")],
    config: ConfigOption = None,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Remove every rule (allow and deny) of a principal on a resource."""
    with _open_engine(config, db, json_output) as engine:
        _run(lambda: engine.acl.remove_rule(resource_type, resource_id, principal), json_output)
        rules = engine.acl.get_rules(resource_type, resource_id)

    if json_output:
        _print_json({"resource": f"{resource_type}:{resource_id}", "rules": _rules_json(rules)})
    else:
        console.print(f"Removed rules for [cyan]{principal}[/cyan] on {resource_type}:{resource_id}")


@rule_app.command("list")
def rule_list(
    resource_type: Annotated[str, typer.Argument(help="Resource type.")],
    resource_id: Annotated[str, typer.Argument(help="Resource identifier.")],
    config: ConfigOption = None,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show the rules of a resource."""
    with _open_engine(config, db, json_output) as engine:
        rules = engine.acl.get_rules(resource_type, resource_id)
        default = engine.acl.get_default_policy(resource_type)

    if json_output:
        _print_json({
            "resource": f"{resource_type}:{resource_id}",
            "rules": _rules_json(rules),
            "default_policy": "allow" if default else "deny",
        })
        return

    if not rules:
        console.print(
            f"[dim]No rules for {resource_type}:{resource_id}; "
            f"default policy: {'allow' if default else 'deny'}[/dim]"
        )
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Principal", style="cyan")
    table.add_column("Type", width=6)
    table.add_column("Conditions")
    table.add_column("Created")

    for rule in rules:
        type_display = "[green]allow[/green]" if rule.type is RuleType.ALLOW else "[red]deny[/red]"
        table.add_row(
            rule.principal,
            type_display,
            json.dumps(rule.conditions) if rule.conditions else "-",
            rule.created_at.isoformat()[:19],
        )

    console.print(table)


@rule_app.command("clear")
def rule_clear(
    resource_type: Annotated[str, typer.Argument(help="Resource type.")],
    resource_id: Annotated[str, typer.Argument(help="Resource identifier.")],
    config: ConfigOption = None,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Delete all rules of a resource; it falls back to its default policy."""
    with _open_engine(config, db, json_output) as engine:
        _run(lambda: engine.acl.clear_rules(resource_type, resource_id), json_output)

    if json_output:
        _print_json({"resource": f"{resource_type}:{resource_id}", "rules": []})
    else:
        console.print(f"Cleared rules on {resource_type}:{resource_id}")


# =============================================================================
# Permissions
# =============================================================================


@app.command("check-permission")
def check_permission(
    user_id: Annotated[str, typer.Argument(help="Acting user.")],
    resource: Annotated[str, typer.Argument(help="Resource type (message, file, group, ...).")],
    level: Annotated[str, typer.Argument(help="Required level: none, read, write or admin.")],
    config: ConfigOption = None,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """
    Decide whether a user holds at least a permission level.

    Example:
        $ policygate check-permission ou_external_42 file read
    """
    required = _parse_level(level, json_output)

    with _open_engine(config, db, json_output) as engine:
        allowed = _run(lambda: engine.check_permission(user_id, resource, required), json_output)
        actual = engine.permissions.get_permission_level(user_id, resource)

    _output_decision(
        allowed,
        {
            "user_id": user_id,
            "resource": resource,
            "required_level": get_level_name(int(required)),
            "level": get_level_name(int(actual)),
        },
        json_output,
    )


@permission_app.command("set")
def permission_set(
    user_id: Annotated[str, typer.Argument(help="User receiving the override.")],
    resource: Annotated[str, typer.Argument(help="Resource type.")],
    level: Annotated[str, typer.Argument(help="Level: none, read, write or admin.")],
    operator: Annotated[
        str,
        typer.Option("--operator", help="Who made the change (recorded in the audit trail)."),
    ] = "cli",
    config: ConfigOption = None,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Store a per-user permission override (expires after the configured TTL)."""
    parsed = _parse_level(level, json_output)

    with _open_engine(config, db, json_output) as engine:
        _run(lambda: engine.set_permission(user_id, resource, parsed, operator_id=operator), json_output)

    if json_output:
        _print_json({"user_id": user_id, "resource": resource, "level": get_level_name(int(parsed))})
    else:
        console.print(f"Set [cyan]{user_id}[/cyan] {resource} -> [bold]{get_level_name(int(parsed))}[/bold]")


@permission_app.command("show")
def permission_show(
    user_id: Annotated[str, typer.Argument(help="User to inspect.")],
    config: ConfigOption = None,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show a user's effective level on every resource type."""
    with _open_engine(config, db, json_output) as engine:
        actor = engine.permissions.actor_class(user_id)
        levels = _run(lambda: engine.permissions.get_user_permissions(user_id), json_output)

    if json_output:
        _print_json({
            "user_id": user_id,
            "actor_class": actor.value,
            "permissions": {resource: get_level_name(int(level)) for resource, level in levels.items()},
        })
        return

    table = Table(title=f"{user_id} ({actor.value})", show_header=True, header_style="bold")
    table.add_column("Resource", style="cyan")
    table.add_column("Level")
    for resource, level in levels.items():
        table.add_row(resource, get_level_name(int(level)))
    console.print(table)


@permission_app.command("clear")
def permission_clear(
    user_id: Annotated[str, typer.Argument(help="User whose overrides are dropped.")],
    config: ConfigOption = None,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Drop every cached permission level of a user."""
    with _open_engine(config, db, json_output) as engine:
        engine.permissions.clear_user_permissions(user_id)

    if json_output:
        _print_json({"user_id": user_id, "cleared": True})
    else:
        console.print(f"Cleared permissions of [cyan]{user_id}[/cyan]")


@app.command("levels")
def levels(json_output: JsonOption = False) -> None:
    """List the permission levels in ascending order."""
    if json_output:
        _print_json({level.name.lower(): int(level) for level in PermissionLevel})
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Level", justify="right")
    table.add_column("Name", style="cyan")
    for level in PermissionLevel:
        table.add_row(str(int(level)), get_level_name(int(level)))
    console.print(table)


# =============================================================================
# Security Policies
# =============================================================================


@app.command("check-policy")
def check_policy(
    policy_type: Annotated[str, typer.Argument(help="Policy type (data_access, ip_whitelist, ...).")],
    context: ContextOption = None,
    config: ConfigOption = None,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """
    Evaluate a request against a security policy.

    Example:
        $ policygate check-policy ip_whitelist --context '{"user_ip": "192.168.1.100"}'
    """
    request = _parse_json_object(context, "--context", json_output)

    with _open_engine(config, db, json_output) as engine:
        allowed = _run(lambda: engine.check_policy(policy_type, request), json_output)

    _output_decision(allowed, {"policy_type": policy_type}, json_output)


@policy_app.command("show")
def policy_show(
    policy_type: Annotated[
        Optional[str],
        typer.Argument(help="Policy type to show; all when omitted."),
    ] = None,
    config: ConfigOption = None,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show active security policy records."""
    with _open_engine(config, db, json_output) as engine:
        if policy_type is None:
            records = engine.security_policy.get_all_policies()
        else:
            record = engine.security_policy.get_policy(policy_type)
            if record is None:
                _fail("unknown_policy_type", f"Unknown policy type: {policy_type}", json_output)
            records = {policy_type: record}

    if json_output:
        _print_json({name: record.to_flat() for name, record in records.items()})
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Policy", style="cyan")
    table.add_column("Enabled", width=8)
    table.add_column("Parameters")
    for name, record in sorted(records.items()):
        table.add_row(
            name,
            "[green]yes[/green]" if record.enabled else "[dim]no[/dim]",
            json.dumps(record.params),
        )
    console.print(table)


@policy_app.command("update")
def policy_update(
    policy_type: Annotated[str, typer.Argument(help="Policy type to update.")],
    enabled: Annotated[
        Optional[bool],
        typer.Option("--enable/--disable", help="Enforce or stop enforcing the policy."),
    ] = None,
    param: Annotated[
        Optional[list[str]],
        typer.Option("--param", "-p", help="key=value parameter; JSON values allowed (repeatable)."),
    ] = None,
    config: ConfigOption = None,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """
    Merge settings into a policy record.

    Example:
        $ policygate policy update ip_whitelist --enable --param 'allowed_ips=["10.0.0.0/8"]'
    """
    updates = _parse_pairs(param, "--param", json_output)
    if enabled is not None:
        updates["enabled"] = enabled

    with _open_engine(config, db, json_output) as engine:
        _run(lambda: engine.update_policy(policy_type, updates), json_output)
        record = engine.security_policy.get_policy(policy_type)

    if json_output:
        _print_json({policy_type: record.to_flat()})
    else:
        console.print(f"Updated [cyan]{policy_type}[/cyan]: {json.dumps(record.to_flat())}")


@policy_app.command("reset")
def policy_reset(
    policy_type: Annotated[
        Optional[str],
        typer.Argument(help="Policy type to reset; all when omitted."),
    ] = None,
    config: ConfigOption = None,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Restore policy records from the built-in defaults."""
    with _open_engine(config, db, json_output) as engine:
        engine.reset_policy(policy_type)

    if json_output:
        _print_json({"reset": policy_type or "all"})
    else:
        console.print(f"Reset {policy_type or 'all policies'} to default")


# =============================================================================
# Compliance
# =============================================================================


@app.command("compliance")
def compliance(
    check_types: Annotated[
        list[str],
        typer.Argument(help="Checks to run (data_privacy, export_control, retention_policy, access_control, gdpr)."),
    ],
    data: Annotated[
        Optional[str],
        typer.Option("--data", "-d", help="Data description as a JSON object."),
    ] = None,
    config: ConfigOption = None,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """
    Run compliance checks and print a report.

    Example:
        $ policygate compliance retention_policy gdpr --data '{"retention_days": 29}'
    """
    payload = _parse_json_object(data, "--data", json_output)

    with _open_engine(config, db, json_output) as engine:
        results = engine.compliance.check_all(check_types, payload)
        report = engine.compliance.generate_report(results)

    if json_output:
        print(report.model_dump_json(indent=2))
    else:
        status = "[green]COMPLIANT[/green]" if report.overall_compliance else "[red]NON-COMPLIANT[/red]"
        console.print(f"[bold]Compliance:[/bold] {status}")
        console.print(
            f"  Checks: {report.total_checks}, failed: {report.failed_checks}, "
            f"violations: {report.total_violations}, warnings: {report.total_warnings}"
        )
        for check_type, result in report.details.items():
            mark = "[green]✓[/green]" if result.compliant else "[red]✗[/red]"
            console.print(f"  {mark} {check_type}")
            for violation in result.violations:
                console.print(f"      [red]violation:[/red] {violation}")
            for warning in result.warnings:
                console.print(f"      [yellow]warning:[/yellow] {warning}")

    if not report.overall_compliance:
        raise typer.Exit(code=EXIT_DENIED)


# =============================================================================
# Helpers
# =============================================================================


def _open_engine(config: Path | None, db: Path | None, json_output: bool) -> Engine:
    """Build an engine from the config file with the state file applied."""
    try:
        engine_config = load_config(config) if config is not None else EngineConfig()
    except (PolicyGateError, ValidationError, OSError) as e:
        _fail("config_load_error", str(e), json_output)

    cache_path = db or engine_config.cache_path or DEFAULT_DB_PATH
    engine_config = engine_config.model_copy(update={"cache_path": cache_path})

    try:
        return Engine(engine_config)
    except PolicyGateError as e:
        _fail("engine_error", str(e), json_output)


def _run(operation: Any, json_output: bool) -> Any:
    """Call an engine operation, turning engine errors into exit code 2."""
    try:
        return operation()
    except PolicyGateError as e:
        _fail(type(e).__name__, str(e), json_output)


def _parse_level(name: str, json_output: bool) -> PermissionLevel:
    if name.isdigit() and int(name) in {int(level) for level in PermissionLevel}:
        return PermissionLevel(int(name))
    if name.strip().upper() in PermissionLevel.__members__:
        return get_level_from_name(name)
    _fail("invalid_level", f"Unknown permission level: {name}", json_output)


def _parse_json_object(text: str | None, option: str, json_output: bool) -> dict[str, Any]:
    if not text:
        return {}
    try:
        value = json.loads(text)
    except json.JSONDecodeError as e:
        _fail("invalid_json", f"{option} is not valid JSON: {e}", json_output)
    if not isinstance(value, dict):
        _fail("invalid_json", f"{option} must be a JSON object", json_output)
    return value


def _parse_pairs(pairs: list[str] | None, option: str, json_output: bool) -> dict[str, Any]:
    """Parse key=value pairs; values are JSON when they parse, strings otherwise."""
    parsed: dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            _fail("invalid_option", f"{option} expects key=value, got: {pair}", json_output)
        try:
            parsed[key] = json.loads(raw)
        except json.JSONDecodeError:
            parsed[key] = raw
    return parsed


def _rules_json(rules: list) -> list[dict[str, Any]]:
    return [rule.model_dump(mode="json") for rule in rules]


def _output_decision(allowed: bool, details: dict[str, Any], json_output: bool) -> None:
    """Print an allow/deny decision and exit with its code."""
    if json_output:
        _print_json({"allowed": allowed, **details})
    else:
        verdict = "[green]ALLOW[/green]" if allowed else "[red]DENY[/red]"
        subject = " ".join(f"{k}={v}" for k, v in details.items())
        console.print(f"{verdict} {subject}")

    if not allowed:
        raise typer.Exit(code=EXIT_DENIED)


def _print_json(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _fail(error_type: str, message: str, json_output: bool) -> NoReturn:
    """Report an error and exit with code 2."""
    if json_output:
        _output_json_error(error_type, message)
    else:
        console.print(f"[red]Error: {message}[/red]")
    raise typer.Exit(code=EXIT_ERROR)


def _output_json_error(error_type: str, message: str) -> None:
    """Output an error in JSON format."""
    output = {
        "error": True,
        "error_type": error_type,
        "message": message,
    }
    print(json.dumps(output, indent=2))


if __name__ == "__main__":
    app()
