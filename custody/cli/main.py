# custody/cli/main.py
"""
CLI for opening, handing off, closing and auditing shipment custody chains.
The CLI is the host: it supplies the caller identity (--as) and the timestamp (--now).
"""

import os
import sqlite3
import time
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from custody.chain.entry import CustodyLedgerEntry
from custody.core.canon import canonical_json_str
from custody.core.errors import CustodyError
from custody.core.hashing import record_hash
from custody.core.types import CustodyRecord
from custody.storage import SQLiteStorage
from custody.verify.verifier import HistoryVerifier

app = typer.Typer(
    name="custody",
    help="Track chain of custody for physical shipments",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()


def get_db_path(db_flag: Optional[Path] = None) -> Path:
    """Resolve DB path in this order:
    1. --db flag
    2. CUSTODY_DB_PATH environment variable
    3. Default: ~/.custody/custody.db
    """
    if db_flag:
        path = db_flag.resolve()
    else:
        env_path = os.environ.get("CUSTODY_DB_PATH")
        if env_path:
            path = Path(env_path).resolve()
        else:
            path = Path.home() / ".custody" / "custody.db"

    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def host_now(now_flag: Optional[int]) -> int:
    """Timestamp supplied by the host: --now or the current Unix time in seconds."""
    return now_flag if now_flag is not None else int(time.time())


def open_existing(db: Optional[Path]) -> SQLiteStorage:
    db_path = get_db_path(db)

    if not db_path.exists():
        console.print(f"[red]Database file not found: {db_path}[/]")
        console.print("[yellow]To get started:[/]")
        console.print("  • Open a custody chain first: custody open CHAIN_ID LOCATION --as CALLER")
        console.print("  • Set env var: export CUSTODY_DB_PATH=/path/to/your.db")
        raise typer.Exit(1)

    try:
        return SQLiteStorage(db_path)
    except (sqlite3.Error, OSError) as e:
        console.print(f"[red]Failed to open database: {str(e)}[/]")
        raise typer.Exit(1)


def print_record(record: CustodyRecord) -> None:
    table = Table(title=f"Custody chain '{record.chain_id or '—'}'", show_header=False)
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("State", record.state.value)
    table.add_row("Owner", record.owner or "—")
    table.add_row("Location", record.location or "—")
    table.add_row("Updated At", str(record.updated_at))
    table.add_row("Record Hash", record_hash(record)[:16])
    console.print(table)


def run_operation(db: Optional[Path], operation: str, chain_id: str, *args) -> CustodyRecord:
    """Load only the target chain, apply one operation, report rejections."""
    storage = None
    try:
        storage = SQLiteStorage(get_db_path(db))
        entry = CustodyLedgerEntry.load(storage, chain_id)
        getattr(entry, operation)(chain_id, *args)
        return entry.read()
    except CustodyError as e:
        console.print(f"[red]✗ {operation} rejected: {e}[/]")
        raise typer.Exit(1)
    except (ValueError, sqlite3.Error) as e:
        console.print(f"[red]✗ {operation} failed: {e}[/]")
        raise typer.Exit(1)
    finally:
        if storage:
            storage.close()


@app.callback()
def main(
    db: Optional[Path] = typer.Option(
        None,
        "--db",
        help="Path to SQLite database (overrides CUSTODY_DB_PATH env var)",
    ),
):
    """Manage shipment custody chains."""
    pass


@app.command("open")
def open_chain(
    chain_id: str = typer.Argument(..., help="Identifier for the new custody chain"),
    location: str = typer.Argument(..., help="Where the goods are now"),
    caller: str = typer.Option(..., "--as", help="Identity of the party opening the chain"),
    now: Optional[int] = typer.Option(None, "--now", help="Timestamp (default: current Unix time)"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Open a new custody chain owned by the caller."""
    record = run_operation(db, "open", chain_id, location, caller, host_now(now))
    console.print(f"[green]✓ Opened custody chain '{chain_id}'[/]")
    print_record(record)


@app.command()
def transfer(
    chain_id: str = typer.Argument(..., help="Custody chain ID"),
    new_owner: str = typer.Argument(..., help="Party receiving custody"),
    location: str = typer.Argument(..., help="Where the goods are now"),
    caller: str = typer.Option(..., "--as", help="Identity of the current owner"),
    now: Optional[int] = typer.Option(None, "--now", help="Timestamp (default: current Unix time)"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Hand custody to a new owner."""
    record = run_operation(db, "transfer", chain_id, new_owner, location, caller, host_now(now))
    console.print(f"[green]✓ Custody of '{chain_id}' transferred to {new_owner}[/]")
    print_record(record)


@app.command()
def finalize(
    chain_id: str = typer.Argument(..., help="Custody chain ID"),
    receiver: str = typer.Argument(..., help="Final receiver"),
    location: str = typer.Argument(..., help="Final location of the goods"),
    caller: str = typer.Option(..., "--as", help="Identity of the current owner"),
    now: Optional[int] = typer.Option(None, "--now", help="Timestamp (default: current Unix time)"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Close a custody chain. No further handoffs are possible afterwards."""
    record = run_operation(db, "finalize", chain_id, receiver, location, caller, host_now(now))
    console.print(f"[green]✓ Custody chain '{chain_id}' completed[/]")
    print_record(record)


@app.command()
def chains(
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """List all custody chains with their current owner and state."""
    storage = open_existing(db)

    try:
        chain_list = storage.list_chains()
        if not chain_list:
            console.print("[yellow]No custody chains found in database.[/]")
            return

        table = Table(title="Custody Chains")
        table.add_column("Chain ID")
        table.add_column("State")
        table.add_column("Owner")
        table.add_column("Location")
        table.add_column("Updated At")

        for cid in chain_list:
            record = storage.load_record(cid)
            table.add_row(cid, record.state.value, record.owner or "—", record.location, str(record.updated_at))

        console.print(table)
    finally:
        storage.close()


@app.command()
def show(
    chain_id: str = typer.Argument(..., help="Custody chain ID"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Show the current record of a custody chain."""
    storage = open_existing(db)
    try:
        record = storage.load_record(chain_id) or CustodyRecord.empty()
    finally:
        storage.close()
    print_record(record)


@app.command()
def history(
    chain_id: str = typer.Argument(..., help="Custody chain ID"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of recent transitions to show"),
):
    """Show the most recent custody transitions of a chain."""
    storage = open_existing(db)
    try:
        transitions = storage.query_transitions(chain_id, limit=limit)
    finally:
        storage.close()

    if not transitions:
        console.print(f"[yellow]No transitions found for chain '{chain_id}'[/]")
        return

    for t in transitions:
        console.print(f"[bold cyan]{t.sequence:4d} | {t.updated_at} | {t.operation.upper():8} | {t.caller} → {t.owner}[/]")
        console.print(f"  {t.location}  [dim]({t.state.value})[/]")


@app.command()
def verify(
    chain_id: str = typer.Argument(..., help="Custody chain ID to verify"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Verify a chain's history (hash links + replay through the state machine)."""
    storage = open_existing(db)
    try:
        result = HistoryVerifier().verify_from_storage(chain_id, storage)
    finally:
        storage.close()

    if result.is_valid:
        console.print(f"[green]✓ Custody chain '{chain_id}' is valid[/]")
        console.print(f"  {result.message}")
    else:
        console.print(f"[red]✗ Verification failed for chain '{chain_id}'[/]")
        for failure in result.failures:
            console.print(f"  • [{failure.index}] {failure.category}: {failure.message}")
        raise typer.Exit(1)


@app.command()
def export(
    chain_id: str = typer.Argument(..., help="Custody chain ID to export"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output file (default: <chain_id>.jsonl)"),
):
    """Export a chain's history as JSONL (one transition per line)."""
    storage = open_existing(db)
    try:
        transitions = storage.load_transitions(chain_id)
    except ValueError as e:
        console.print(f"[red]Failed to load chain '{chain_id}': {str(e)}[/]")
        raise typer.Exit(1)
    finally:
        storage.close()

    if not transitions:
        console.print(f"[yellow]No transitions found for chain '{chain_id}'[/]")
        raise typer.Exit(0)

    out_path = output or Path(f"{chain_id}.jsonl")
    with out_path.open("w", encoding="utf-8") as f:
        for t in transitions:
            f.write(canonical_json_str(t.to_dict()))
            f.write("\n")

    console.print(f"[green]Exported {len(transitions)} transitions to {out_path}[/]")
    console.print("Format: JSONL — one custody transition per line")


if __name__ == "__main__":
    app()
