import logging
import os
import subprocess
import sys
from dataclasses import replace
from datetime import date
from typing import Optional

import typer

from .config import settings
from .errors import CirculationError, ExternalServiceError
from .lifecycle import LoanLifecycleManager, build_manager
from .models import Book, Role
from .search import SearchField
from .ui_helpers import (
    print_books,
    print_loans,
    print_reservations,
    print_stats_result,
    set_output_mode,
)

app = typer.Typer(help="Library circulation CLI")


class ManagerHolder:
    """One manager per CLI invocation, rebuilt when the database path changes."""

    _instance: Optional[LoanLifecycleManager] = None
    _db_file: Optional[str] = None
    db_file: Optional[str] = None

    @classmethod
    def get_instance(cls) -> LoanLifecycleManager:
        db_file = cls.db_file or settings.database_file
        if cls._instance is None or cls._db_file != db_file:
            if cls._instance is not None:
                cls._instance.db.close()
            cls._instance = build_manager(replace(settings, database_file=db_file))
            cls._instance.db.initialize()
            cls._db_file = db_file
        return cls._instance


def _fail(exc: Exception) -> None:
    print(f"Error: {exc}")
    raise typer.Exit(code=1)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output format: plain | json | rich (default: plain)"),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file (default: LIBRARY_DB_FILE)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show log output"),
):
    """Global CLI options."""
    if output:
        set_output_mode(output)
    ManagerHolder.db_file = db
    logging.basicConfig(level=logging.DEBUG if verbose else settings.log_level)


@app.command("init-db")
def cli_init_db():
    """Create the database tables."""
    manager = ManagerHolder.get_instance()
    print(f"Database initialized at {manager.db.path}")


@app.command("add-user")
def cli_add_user(
    email: str,
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True),
    first_name: str = typer.Option(..., "--first-name"),
    last_name: str = typer.Option(..., "--last-name"),
    role: Role = typer.Option(Role.READER, "--role"),
):
    """Register a user."""
    manager = ManagerHolder.get_instance()
    try:
        user = manager.users.register(email, password, first_name, last_name, role=role)
    except CirculationError as e:
        _fail(e)
    print(f"User {user.user_id} created: {user.full_name} ({user.role.value})")


@app.command("add-book")
def cli_add_book(
    title: str,
    author: str,
    copies: int = typer.Option(1, "--copies", min=1),
    isbn: Optional[str] = typer.Option(None, "--isbn"),
    publisher: Optional[str] = typer.Option(None, "--publisher"),
    year: Optional[int] = typer.Option(None, "--year"),
    category: Optional[int] = typer.Option(None, "--category"),
):
    """Add a book to the catalog."""
    manager = ManagerHolder.get_instance()
    try:
        book = manager.catalog.add_book(Book(
            title=title, author=author, total_copies=copies, isbn=isbn,
            publisher=publisher, publication_year=year, category_id=category,
        ))
    except CirculationError as e:
        _fail(e)
    print(f"Successfully added: {book.title} by {book.author} (id {book.book_id}, {book.total_copies} copies)")


@app.command("add-isbn")
def cli_add_isbn(isbn: str, copies: int = typer.Option(1, "--copies", min=1)):
    """Add a book by ISBN using Open Library metadata."""
    manager = ManagerHolder.get_instance()
    try:
        book = manager.catalog.add_book_by_isbn(isbn, copies)
    except LookupError as e:
        print(f"Could not find book: {e}")
        raise typer.Exit(code=1)
    except (CirculationError, ExternalServiceError) as e:
        _fail(e)
    print(f"Successfully added: {book.title} by {book.author} (id {book.book_id})")


@app.command("books")
def cli_books():
    """List all books with their availability."""
    print_books(ManagerHolder.get_instance().catalog.list_books())


@app.command("search")
def cli_search(query: str, field: SearchField = typer.Option(SearchField.FULLTEXT, "--field", "-f")):
    """Search the catalog."""
    print_books(ManagerHolder.get_instance().catalog.search(query, field))


@app.command("lend")
def cli_lend(
    reader_id: int,
    book_id: int,
    librarian: Optional[int] = typer.Option(None, "--librarian"),
    due: Optional[str] = typer.Option(None, "--due", help="Due date YYYY-MM-DD"),
):
    """Lend a book to a reader."""
    manager = ManagerHolder.get_instance()
    try:
        due_date = date.fromisoformat(due) if due else None
    except ValueError:
        _fail(ValueError(f"Invalid due date: {due}"))
    try:
        loan = manager.create_loan(reader_id, book_id, librarian, due_date)
    except CirculationError as e:
        _fail(e)
    print(f"Loan {loan.loan_id} created, due {loan.due_date.isoformat()}")


@app.command("return")
def cli_return(loan_id: int):
    """Return a loaned book."""
    manager = ManagerHolder.get_instance()
    try:
        loan = manager.return_loan(loan_id)
    except CirculationError as e:
        _fail(e)
    print(f"Loan {loan.loan_id} returned.")


@app.command("extend")
def cli_extend(loan_id: int, reader: Optional[int] = typer.Option(None, "--reader", help="Check the loan belongs to this reader")):
    """Extend a loan once."""
    manager = ManagerHolder.get_instance()
    try:
        new_due = manager.extend_loan(loan_id, requesting_reader_id=reader)
    except CirculationError as e:
        _fail(e)
    print(f"Loan {loan_id} extended until {new_due.isoformat()}")


@app.command("active")
def cli_active():
    """List active loans, soonest due first."""
    print_loans(ManagerHolder.get_instance().active_loans())


@app.command("history")
def cli_history(reader_id: int):
    """Show a reader's loan history."""
    print_loans(ManagerHolder.get_instance().loan_history(reader_id))


@app.command("reserve")
def cli_reserve(reader_id: int, book_id: int):
    """Reserve a book for a reader."""
    manager = ManagerHolder.get_instance()
    try:
        reservation = manager.reserve(reader_id, book_id)
    except CirculationError as e:
        _fail(e)
    print(f"Reservation {reservation.reservation_id} placed, expires {reservation.expiry_date.date().isoformat()}")


@app.command("reservations")
def cli_reservations(reader_id: int):
    """List a reader's pending reservations."""
    print_reservations(ManagerHolder.get_instance().pending_reservations(reader_id))


@app.command("remind")
def cli_remind(days: Optional[int] = typer.Option(None, "--days", help="Remind loans due within this many days")):
    """Send due reminders and overdue notices (meant for a daily scheduler)."""
    manager = ManagerHolder.get_instance()
    try:
        due = manager.send_due_reminders(days)
        overdue = manager.send_overdue_notices()
    except CirculationError as e:
        _fail(e)
    print(f"Due reminders: {due}")
    print(f"Overdue notices: {overdue}")


@app.command("stats")
def cli_stats():
    """Show catalog statistics."""
    print_stats_result(ManagerHolder.get_instance().catalog.get_statistics())


@app.command("serve")
def cli_serve(host: Optional[str] = typer.Option(None, "--host"), port: Optional[int] = typer.Option(None, "--port")):
    """Start the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = port or settings.api_port
    print(f"Starting API on http://{host}:{port}/")
    args = [sys.executable, "-m", "uvicorn", "circulation.api:app", "--host", host, "--port", str(port)]
    env = dict(os.environ, LIBRARY_DB_FILE=ManagerHolder.db_file or settings.database_file)
    try:
        subprocess.run(args, env=env)
    except KeyboardInterrupt:
        print("Server stopped.")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
