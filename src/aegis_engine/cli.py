"""Typer CLI for Aegis-Engine."""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(name="aegis", help="Aegis-Engine: envelope encryption and tamper-evident audit")
console = Console()


@app.command("init-db")
def init_db():
    """Create all tables and audit the key configuration."""
    from aegis_engine.deps import get_audit_service, get_db, get_key_manager
    from aegis_engine.keys.service import report_key_configuration

    async def _run():
        db = get_db()
        await db.init()
        try:
            await db.create_all()
            async with db.get_session() as session:
                return await report_key_configuration(
                    session, get_audit_service(), get_key_manager()
                )
        finally:
            await db.close()

    record = asyncio.run(_run())
    console.print("[bold green]Database initialized[/bold green]")
    if record is not None:
        console.print("[bold yellow]WARNING[/bold yellow]: no master secret configured (ephemeral key)")


@app.command("generate-secret")
def generate_secret(
    key_id: str = typer.Option("mk-1", help="Key id to pair with the secret"),
):
    """Generate a 256-bit master secret (offline)."""
    from aegis_engine.crypto.primitives import random_hex

    secret = random_hex(32)
    console.print(f"[bold]{secret}[/bold]")
    console.print(f"  AEGIS_MASTER_KEYS='{json.dumps({key_id: secret})}'")


@app.command("hash-password")
def hash_password(
    password: str = typer.Option(..., prompt=True, hide_input=True, help="Password to hash"),
):
    """Hash a password with bcrypt (offline)."""
    from aegis_engine.common.exceptions import PasswordPolicyError
    from aegis_engine.deps import get_password_hasher

    try:
        console.print(get_password_hasher().hash(password))
    except PasswordPolicyError as e:
        console.print(f"[bold red]REJECTED[/bold red]: {e.message}")
        raise typer.Exit(1)


@app.command("check-password")
def check_password(
    password: str = typer.Option(..., prompt=True, hide_input=True, help="Password to score"),
):
    """Score a password against the strength policy."""
    from aegis_engine.deps import get_password_hasher

    result = get_password_hasher().check_strength(password)
    colour = "green" if result.valid else "red"
    console.print(f"[bold {colour}]score {result.score}/100[/bold {colour}]")
    for issue in result.issues:
        console.print(f"  - {issue}")
    if not result.valid:
        raise typer.Exit(1)


@app.command("verify-chain")
def verify_chain(
    partition: str = typer.Option(None, help="Partition to verify (default: all)"),
):
    """Recompute every audit hash and report the first break per partition."""
    from aegis_engine.deps import get_audit_service, get_db

    async def _run():
        db = get_db()
        await db.init()
        audit = get_audit_service()
        try:
            async with db.get_session() as session:
                partitions = [partition] if partition else await audit.list_partitions(session)
                return [await audit.verify_chain(session, p) for p in partitions]
        finally:
            await db.close()

    results = asyncio.run(_run())
    table = Table(title="Audit chain integrity")
    table.add_column("Partition")
    table.add_column("Records")
    table.add_column("Status")
    for r in results:
        status = "[green]valid[/green]" if r.valid else f"[red]broken at {r.broken_at}[/red]"
        table.add_row(r.partition, str(r.records_checked + len(r.unverified)), status)
    console.print(table)
    if not all(r.valid for r in results):
        raise typer.Exit(1)


@app.command()
def report(
    standard: str = typer.Option(None, help="SOC2, ISO27001, GDPR, CCPA, PCI or HIPAA"),
    days: int = typer.Option(30, help="Report over the last N days"),
    generated_by: str = typer.Option("cli", help="Actor recorded on the report"),
):
    """Generate a signed compliance report as JSON."""
    from aegis_engine.deps import get_audit_service, get_db

    until = datetime.now(timezone.utc)
    since = until - timedelta(days=days)

    async def _run():
        db = get_db()
        await db.init()
        try:
            async with db.get_session() as session:
                return await get_audit_service().generate_compliance_report(
                    session, since, until, standard=standard, generated_by=generated_by,
                )
        finally:
            await db.close()

    try:
        result = asyncio.run(_run())
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(2)
    console.print_json(result.model_dump_json())
    if result.findings:
        raise typer.Exit(1)


def _print_keyring(key_manager) -> None:
    console.print("[bold yellow]Persist the keyring before restarting:[/bold yellow]")
    console.print(f"  AEGIS_MASTER_KEYS='{json.dumps(key_manager.export_keyring())}'")
    console.print(f"  AEGIS_CURRENT_MASTER_KEY_ID={key_manager.current_key_id}")


@app.command()
def rotate(
    scope: str = typer.Argument(None, help="DATA_KEYS, API_KEYS or MASTER_KEY (optional with --resume)"),
    new_key_id: str = typer.Option(None, help="MASTER_KEY: keyring entry to rotate to"),
    resume: str = typer.Option(None, help="Resume a FAILED ticket instead of starting one"),
):
    """Run (or resume) a key rotation ticket."""
    from aegis_engine.common.exceptions import AegisError
    from aegis_engine.deps import get_db, get_key_manager, get_rotation_coordinator
    from aegis_engine.rotation.schemas import KeyRotationTicket, RotationScope

    if scope is None and not resume:
        console.print("[bold red]Error:[/bold red] give a SCOPE or --resume TICKET_ID")
        raise typer.Exit(2)
    if scope is not None:
        try:
            scope = RotationScope(scope.upper())
        except ValueError:
            console.print(f"[bold red]Unknown scope:[/bold red] {scope}")
            raise typer.Exit(2)

    async def _run():
        db = get_db()
        await db.init()
        coordinator = get_rotation_coordinator()
        try:
            await coordinator.restore_staged_keys()
            if resume:
                previous = await coordinator.get_ticket(resume)
                if scope is not None and previous.scope != scope.value:
                    console.print(
                        f"[bold red]Error:[/bold red] ticket {resume} is a "
                        f"{previous.scope} rotation, not {scope.value}"
                    )
                    raise typer.Exit(2)
                return await coordinator.resume(resume, initiated_by="cli")
            return await coordinator.rotate(scope, initiated_by="cli", new_key_id=new_key_id)
        finally:
            await db.close()

    try:
        ticket = KeyRotationTicket.model_validate(asyncio.run(_run()))
    except AegisError as e:
        console.print(f"[bold red]Error:[/bold red] {e.message}")
        raise typer.Exit(1)
    console.print_json(ticket.model_dump_json())
    # A FAILED master rotation may already have rows under the new key
    if ticket.scope is RotationScope.MASTER_KEY:
        _print_keyring(get_key_manager())
    if ticket.status.value != "COMPLETED":
        raise typer.Exit(1)


@app.command("recover-keys")
def recover_keys():
    """Reload master keys escrowed by rotations and print the full keyring."""
    from aegis_engine.deps import get_db, get_key_manager, get_rotation_coordinator

    async def _run():
        db = get_db()
        await db.init()
        try:
            return await get_rotation_coordinator().restore_staged_keys()
        finally:
            await db.close()

    restored = asyncio.run(_run())
    for key_id in restored:
        console.print(f"[bold green]Restored[/bold green] {key_id}")
    if not restored:
        console.print("No escrowed master keys to restore")
    _print_keyring(get_key_manager())



if __name__ == "__main__":
    app()
