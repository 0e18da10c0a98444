"""Command line interface for the PC group cloning tool."""
from __future__ import annotations

import json
import logging
from datetime import date
from pathlib import Path
from typing import List, Optional

import typer

from .audit import AuditFilters
from .config import AppConfig, ConfigurationError, load_config
from .models import CloneRequest
from .orchestrator import OperationContext
from .services import Services, build_services

app = typer.Typer(help="Clone Active Directory group membership from one computer to another.")
service_account_app = typer.Typer(help="Manage the service account used for directory changes.")
retired_ou_app = typer.Typer(help="Manage the OU retired source computers are moved to.")
audit_app = typer.Typer(help="Review recorded clone operations.")
app.add_typer(service_account_app, name="service-account")
app.add_typer(retired_ou_app, name="retired-ou")
app.add_typer(audit_app, name="audit")

_CONFIG_OPTION_HELP = "Path to a specific settings file (overrides default)."


def _load_configuration(config_path: Optional[Path]) -> AppConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)


def _load_services(config_path: Optional[Path]) -> Services:
    return build_services(_load_configuration(config_path))


def _echo_json(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2))


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", help="Interface to bind."),
    port: int = typer.Option(5000, help="Port to listen on."),
    debug: bool = typer.Option(False, "--debug", help="Enable the Flask debugger."),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Run the JSON API."""

    from .web import create_app

    config = _load_configuration(config_path)
    logging.basicConfig(
        level=config.logging.level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    create_app(config_path).run(host=host, port=port, debug=debug)


@app.command("clone")
def clone(
    source: str = typer.Argument(..., help="Computer to copy groups from."),
    target: str = typer.Argument(..., help="Computer to copy groups to."),
    group: Optional[List[str]] = typer.Option(
        None, "--group", help="Group from the source to clone (repeatable)."
    ),
    additional_group: Optional[List[str]] = typer.Option(
        None, "--additional-group", help="Extra group to add to the target (repeatable)."
    ),
    all_groups: bool = typer.Option(
        False, "--all-groups", help="Clone every non-system group the source belongs to."
    ),
    move_to_source_ou: bool = typer.Option(
        False, "--move-to-source-ou", help="Move the target into the source computer's OU."
    ),
    keep_source: bool = typer.Option(
        False, "--keep-source", help="Leave the source computer where it is."
    ),
    username: Optional[str] = typer.Option(
        None, "--as-user", help="Name recorded in the audit log."
    ),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Clone group membership from SOURCE to TARGET."""

    services = _load_services(config_path)
    try:
        with services.directory() as client:
            selected = list(group or [])
            if all_groups:
                system_groups = set(services.config.clone.system_groups)
                selected.extend(
                    name
                    for name in client.get_computer_groups(source)
                    if name not in system_groups
                )
            request = CloneRequest(
                source_computer=source.strip(),
                target_computer=target.strip(),
                selected_groups=selected,
                additional_groups=list(additional_group or []),
                source_computer_ou=client.get_computer_ou(source) if move_to_source_ou else "",
                keep_source_in_place=keep_source,
            )
            errors = request.validation_errors()
            if errors:
                for error in errors:
                    typer.echo(f"Error: {error}")
                raise typer.Exit(code=1)

            timeout = services.config.clone.timeout_seconds or None
            outcome = services.orchestrator(client).execute(
                request,
                username=username,
                context=OperationContext(timeout=timeout),
            )
    finally:
        services.close()

    _echo_json(outcome.to_dict())
    if not outcome.success:
        raise typer.Exit(code=1)


@app.command("computers")
def search_computers(
    term: str = typer.Argument(..., help="Part of the computer name."),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Search computers by name."""

    services = _load_services(config_path)
    try:
        with services.directory() as client:
            _echo_json(client.search_computers(term))
    finally:
        services.close()


@app.command("groups")
def search_groups(
    term: str = typer.Argument(..., help="Part of the group name."),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Search security groups by name."""

    services = _load_services(config_path)
    try:
        with services.directory() as client:
            _echo_json(client.search_groups(term))
    finally:
        services.close()


@app.command("computer-groups")
def computer_groups(
    name: str = typer.Argument(..., help="Computer name."),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """List the groups a computer belongs to."""

    services = _load_services(config_path)
    try:
        with services.directory() as client:
            _echo_json(client.get_computer_groups(name))
    finally:
        services.close()


@app.command("computer-ou")
def computer_ou(
    name: str = typer.Argument(..., help="Computer name."),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Show the OU and descriptions for a computer."""

    services = _load_services(config_path)
    try:
        with services.directory() as client:
            _echo_json(client.get_computer_details(name).to_dict())
    finally:
        services.close()


@service_account_app.command("set")
def set_service_account(
    domain: str = typer.Argument(..., help="NetBIOS or DNS domain of the account."),
    username: str = typer.Argument(..., help="Account name without the domain."),
    password: str = typer.Option(
        ..., "--password", prompt=True, hide_input=True, confirmation_prompt=True
    ),
    updated_by: str = typer.Option("cli", "--updated-by", help="Name recorded with the change."),
    test: bool = typer.Option(True, "--test/--no-test", help="Bind with the account before saving."),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Store the service account, replacing the current one."""

    services = _load_services(config_path)
    try:
        if test and not services.vault.test_identity(domain, username, password):
            typer.echo("Service account test failed; nothing was saved.")
            raise typer.Exit(code=1)
        if not services.vault.save_identity(domain, username, password, updated_by):
            typer.echo("Error saving service account.")
            raise typer.Exit(code=1)
    finally:
        services.close()
    typer.echo(f"Saved service account {domain}\\{username}.")


@service_account_app.command("test")
def test_service_account(
    domain: str = typer.Argument(..., help="NetBIOS or DNS domain of the account."),
    username: str = typer.Argument(..., help="Account name without the domain."),
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Bind with the given account without saving it."""

    services = _load_services(config_path)
    try:
        ok = services.vault.test_identity(domain, username, password)
    finally:
        services.close()
    if not ok:
        typer.echo("Service account test failed.")
        raise typer.Exit(code=1)
    typer.echo("Service account test successful.")


@service_account_app.command("show")
def show_service_account(
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Show the active service account (never the password)."""

    services = _load_services(config_path)
    try:
        identity = services.vault.get_active_identity()
    finally:
        services.close()
    if identity is None:
        typer.echo("No service account configured; the host identity is used.")
        return
    _echo_json(identity.to_public_dict())


@retired_ou_app.command("set")
def set_retired_ou(
    path: str = typer.Argument(..., help="Distinguished name of the retired computers OU."),
    updated_by: str = typer.Option("cli", "--updated-by", help="Name recorded with the change."),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Set the OU retired source computers are moved to."""

    services = _load_services(config_path)
    try:
        saved = services.ou_store.save_retired_ou(path, updated_by)
    finally:
        services.close()
    if not saved:
        typer.echo("Error saving retired computers OU.")
        raise typer.Exit(code=1)
    typer.echo(f"Retired computers OU set to {path.strip()}.")


@retired_ou_app.command("show")
def show_retired_ou(
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Show the configured retired computers OU."""

    services = _load_services(config_path)
    try:
        config = services.ou_store.get_config()
    finally:
        services.close()
    if config is None:
        typer.echo("No retired computers OU configured.")
        return
    _echo_json(config.to_dict())


@retired_ou_app.command("history")
def retired_ou_history(
    limit: int = typer.Option(20, help="Number of versions to show."),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """List previously configured retired computers OUs, newest first."""

    services = _load_services(config_path)
    try:
        history = services.ou_store.history(limit)
    finally:
        services.close()
    _echo_json([config.to_dict() for config in history])


@audit_app.command("list")
def list_audit(
    username: Optional[str] = typer.Option(None, "--user", help="Only operations by this user."),
    source: Optional[str] = typer.Option(None, "--source", help="Source computer contains."),
    target: Optional[str] = typer.Option(None, "--target", help="Target computer contains."),
    from_date: Optional[str] = typer.Option(None, "--from", help="First day, YYYY-MM-DD."),
    to_date: Optional[str] = typer.Option(None, "--to", help="Last day (inclusive), YYYY-MM-DD."),
    failed: bool = typer.Option(False, "--failed", help="Only failed operations."),
    page: int = typer.Option(1, help="Page number."),
    page_size: int = typer.Option(25, "--page-size", help="Records per page."),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """List recorded clone operations, newest first."""

    try:
        filters = AuditFilters(
            from_date=date.fromisoformat(from_date) if from_date else None,
            to_date=date.fromisoformat(to_date) if to_date else None,
            username=username,
            source_computer=source,
            target_computer=target,
            success=False if failed else None,
            page=page,
            page_size=page_size,
        )
    except ValueError as exc:
        raise typer.BadParameter(f"Dates must be YYYY-MM-DD ({exc}).")

    services = _load_services(config_path)
    try:
        result = services.audit.query(filters)
    finally:
        services.close()
    _echo_json(result.to_dict())


@audit_app.command("recent")
def recent_audit(
    count: int = typer.Option(10, help="Number of operations to show."),
    username: Optional[str] = typer.Option(None, "--user", help="Only operations by this user."),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Show the latest clone operations."""

    services = _load_services(config_path)
    try:
        records = services.audit.by_user(username, count) if username else services.audit.recent(count)
    finally:
        services.close()
    _echo_json([record.to_dict() for record in records])


def run():
    app()


if __name__ == "__main__":
    run()
