"""Typer CLI for rbac-engine."""

from pathlib import Path
from typing import NoReturn, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from rbac_engine.common.exceptions import RBACError

app = typer.Typer(name="rbac", help="rbac-engine: dynamic role-based access control administration")
console = Console()


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Override RBAC_LOG_LEVEL"),
):
    from rbac_engine.common.config import get_settings
    from rbac_engine.common.logging import setup_logging

    setup_logging(log_level or get_settings().log_level)


def _fail(exc: RBACError) -> NoReturn:
    console.print(f"[bold red]{exc.code}[/bold red] — {escape(exc.message)}")
    raise typer.Exit(1)


@app.command()
def seed(
    force: bool = typer.Option(False, "--force", help="Replace existing data"),
):
    """Load the default roles, permissions and users."""
    from rbac_engine.deps import get_store
    from rbac_engine.store.seed import default_seed

    store = get_store()
    if not store.is_empty() and not force:
        console.print("[bold yellow]Store already contains data[/bold yellow] — use --force to replace it")
        raise typer.Exit(1)
    try:
        store.reset(default_seed())
    except RBACError as exc:
        _fail(exc)
    state = store.state
    console.print(
        f"[bold green]Seeded[/bold green] {len(state.roles)} roles, "
        f"{len(state.permissions)} permissions, {len(state.users)} users"
    )


@app.command()
def roles():
    """List roles with their user counts."""
    from rbac_engine.deps import get_store

    store = get_store()
    table = Table(title="Roles")
    table.add_column("ID")
    table.add_column("Key")
    table.add_column("Name")
    table.add_column("Flags")
    table.add_column("Users", justify="right")
    table.add_column("Permissions", justify="right")
    for role in store.get_roles():
        flags = [f for f, on in (("admin", role.is_admin), ("system", role.is_system),
                                 ("inactive", not role.is_active)) if on]
        table.add_row(
            role.id, role.key, role.name, ", ".join(flags),
            str(store.count_users_with_role(role.id)), str(len(role.permissions)),
        )
    console.print(table)


@app.command()
def users():
    """List users with their roles."""
    from rbac_engine.deps import get_store

    table = Table(title="Users")
    table.add_column("ID")
    table.add_column("Username")
    table.add_column("Email")
    table.add_column("Role")
    table.add_column("Status")
    for row in get_store().get_users_with_roles():
        table.add_row(row.user.id, row.user.username, row.user.email, row.role_key or "?", row.user.status)
    console.print(table)


@app.command()
def check(
    user: str = typer.Argument(..., help="User id or username"),
    action: str = typer.Argument(..., help="Action, e.g. read"),
    subject: str = typer.Argument(..., help="Subject, e.g. security-group"),
):
    """Check whether a user may perform an action on a subject."""
    from rbac_engine.deps import get_ability_engine, get_store

    store = get_store()
    found = store.get_user(user) or store.get_user_by_username(user)
    if found is None:
        console.print(f"[bold red]NOT_FOUND[/bold red] — no user '{user}'")
        raise typer.Exit(1)
    if get_ability_engine().can(found.id, action, subject):
        console.print(f"[bold green]ALLOWED[/bold green] — {found.username} may {action} {subject}")
    else:
        console.print(f"[bold red]DENIED[/bold red] — {found.username} may not {action} {subject}")
        raise typer.Exit(1)


@app.command()
def verify():
    """Verify referential integrity and the audit hash chain."""
    from rbac_engine.deps import get_store

    store = get_store()
    violations = store.enforcer.verify(store.state)
    for v in violations:
        console.print(f"[red]{v.rule.value}[/red] {v.message}")
    chain = store.audit.verify_chain()
    if chain.valid:
        console.print(f"Audit chain [bold green]VALID[/bold green] ({chain.events_checked} entries)")
    else:
        console.print(
            f"Audit chain [bold red]BROKEN[/bold red] at {chain.break_at} "
            f"after {chain.events_checked} valid entries"
        )
    if violations or not chain.valid:
        raise typer.Exit(1)
    console.print("[bold green]OK[/bold green]")


@app.command("create-module")
def create_module(
    subject: str = typer.Argument(..., help="New module subject, e.g. widgets"),
):
    """Create the CRUD permissions for a new module."""
    from rbac_engine.deps import get_store

    try:
        created = get_store().create_module_permissions(subject)
    except RBACError as exc:
        _fail(exc)
    console.print(f"[bold green]Created[/bold green] {', '.join(p.key for p in created)}")


@app.command("delete-module")
def delete_module(
    subject: str = typer.Argument(..., help="Module subject to remove"),
):
    """Delete every permission of a module (none may be assigned)."""
    from rbac_engine.deps import get_store

    try:
        get_store().delete_module_permissions(subject)
    except RBACError as exc:
        _fail(exc)
    console.print(f"[bold green]Deleted[/bold green] module '{subject}'")


@app.command("audit-export")
def audit_export(
    fmt: str = typer.Option("csv", "--format", help="csv or json"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to file instead of stdout"),
    last_hours: Optional[float] = typer.Option(None, "--last-hours", help="Only the last N hours"),
    action: Optional[str] = typer.Option(None, "--action", help="Only this action kind"),
    entity_type: Optional[str] = typer.Option(None, "--entity-type", help="Only this entity type"),
):
    """Export audit entries for compliance tooling."""
    from rbac_engine.audit.export import export_entries, export_to_file
    from rbac_engine.deps import get_audit_recorder

    try:
        entries = get_audit_recorder().query(
            last_hours=last_hours,
            actions=[action] if action else None,
            entity_type=entity_type,
        )
        if output is None:
            typer.echo(export_entries(entries, fmt), nl=False)
            return
        path = export_to_file(entries, output, fmt)
    except RBACError as exc:
        _fail(exc)
    console.print(f"[bold green]Exported[/bold green] {len(entries)} entries to {path}")


if __name__ == "__main__":
    app()
