import logging
import os
import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from libraryhub import database
from libraryhub.config import settings
from libraryhub.errors import LibraryError
from libraryhub.models import Role
from libraryhub.services.borrowing import BorrowingService
from libraryhub.services.notifications import NotificationService
from libraryhub.services.users import UserService
from libraryhub.utils import calculate_fine, overdue_days, utcnow

logger = logging.getLogger(__name__)

console = Console()

app = typer.Typer(help="Library system administration")


@app.callback()
def _global_options(
    db_file: Optional[str] = typer.Option(None, "--db", help="SQLite database file (default: LIBRARY_DB_FILE)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
):
    """Global options shared by every command."""
    logging.basicConfig(level=logging.DEBUG if verbose else settings.log_level)
    if db_file:
        database.DATABASE_FILE = db_file


def _services():
    database.initialize_database()
    notifications = NotificationService()
    return notifications, BorrowingService(notifications)


@app.command("serve")
def cli_serve(
    host: str = typer.Option(settings.api_host, "--host"),
    port: int = typer.Option(settings.api_port, "--port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
    timeout: int = typer.Option(0, "--timeout", help="Seconds to run before stopping (0 = no timeout)"),
):
    """Run the HTTP and WebSocket server with uvicorn."""
    console.print(f"Starting API on http://{host}:{port}/")
    args = [sys.executable, "-m", "uvicorn", "libraryhub.api:app", "--host", host, "--port", str(port)]
    if reload:
        args.append("--reload")
    env = dict(os.environ, LIBRARY_DB_FILE=database.DATABASE_FILE)
    if timeout > 0:
        proc = subprocess.Popen(args, env=env)
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.terminate()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
    else:
        subprocess.run(args, env=env)


@app.command("init-db")
def cli_init_db():
    """Create the database tables."""
    database.initialize_database()
    console.print(f"Database initialized at {database.DATABASE_FILE}")


@app.command("create-user")
def cli_create_user(
    name: str = typer.Argument(...),
    email: str = typer.Argument(...),
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
    role: Role = typer.Option(Role.USER, "--role", case_sensitive=False),
    borrowing_limit: Optional[int] = typer.Option(None, "--borrowing-limit"),
):
    """Create an account, including librarian and admin accounts."""
    database.initialize_database()
    try:
        user = UserService().create_user(name, email, password, role, borrowing_limit)
    except LibraryError as e:
        console.print(f"[bold red]Could not create user: {e.message}[/]")
        raise typer.Exit(code=1)
    console.print(f"Created {user.role.value} {user.email} (id {user.id}, membership {user.membership_id})")


@app.command("overdue")
def cli_overdue():
    """List loans that are past their due date and not yet returned."""
    _, borrowing = _services()
    now = utcnow()
    overdue = borrowing.list_overdue(now)
    if not overdue:
        console.print("No overdue borrowings.")
        return

    table = Table(title="Overdue borrowings", header_style="bold cyan")
    table.add_column("Borrowing", style="magenta", no_wrap=True)
    table.add_column("User", no_wrap=True)
    table.add_column("Book", no_wrap=True)
    table.add_column("Due", no_wrap=True)
    table.add_column("Days", justify="right")
    table.add_column("Fine so far", justify="right")
    for record in overdue:
        fine = calculate_fine(record.due_date, now, settings.fine_per_day)
        table.add_row(
            record.id,
            record.user_id or "-",
            record.book_id or "-",
            record.due_date.strftime("%Y-%m-%d"),
            str(overdue_days(record.due_date, now)),
            f"${fine:.2f}",
        )
    console.print(table)


@app.command("remind-overdue")
def cli_remind_overdue():
    """Send an overdue notification for every late loan."""
    notifications, _ = _services()
    created = notifications.remind_overdue()
    console.print(f"Sent {len(created)} overdue reminder(s).")


@app.command("reconcile")
def cli_reconcile():
    """Recompute borrowed and available counters from the open loans."""
    _, borrowing = _services()
    corrections = borrowing.reconcile()
    if not corrections:
        console.print("Counters are consistent.")
        return
    for c in corrections:
        console.print(f"Fixed {c['entity']} {c['id']}: {c['field']} {c['from']} -> {c['to']}")
    console.print(f"{len(corrections)} correction(s) applied.")


if __name__ == "__main__":
    app()
