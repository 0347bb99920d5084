import json
import os
from typing import Any, Dict, List, Sequence, Tuple

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

Column = Tuple[str, str]


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _print_rows(rows: List[Dict[str, Any]], columns: Sequence[Column], title: str, empty: str, line: str) -> None:
    """Print rows as plain lines, a JSON array or a Rich table.

    ``columns`` pairs a row key with its table header; ``line`` is the
    ``str.format`` template for plain mode.
    """
    if not rows:
        print(empty)
        return
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(rows, ensure_ascii=False, default=str))
    elif mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for _, header in columns:
            table.add_column(header)
        for row in rows:
            table.add_row(*("" if row.get(key) is None else str(row.get(key)) for key, _ in columns))
        _console.print(table)
    else:
        for row in rows:
            print(line.format(**row))


def print_books(books: List[Any]) -> None:
    _print_rows(
        [b.to_dict() for b in books],
        (("book_id", "ID"), ("title", "Title"), ("author", "Author"), ("isbn", "ISBN"),
         ("available_copies", "Available"), ("total_copies", "Total")),
        title="📚 Books",
        empty="No books in library.",
        line="{book_id} - {title} by {author} ({available_copies}/{total_copies} available)",
    )


def print_loans(loans: List[Any]) -> None:
    rows = []
    for loan in loans:
        row = loan.to_dict()
        row.setdefault("title", "")
        row["flag"] = " OVERDUE" if row["overdue"] else ""
        rows.append(row)
    _print_rows(
        rows,
        (("loan_id", "Loan"), ("reader_id", "Reader"), ("title", "Title"), ("due_date", "Due"),
         ("status", "Status"), ("extended", "Extended")),
        title="📖 Loans",
        empty="No loans found.",
        line="#{loan_id} reader {reader_id} - {title} due {due_date} [{status}]{flag}",
    )


def print_reservations(reservations: List[Any]) -> None:
    rows = []
    for reservation in reservations:
        row = reservation.to_dict()
        row.setdefault("title", "")
        rows.append(row)
    _print_rows(
        rows,
        (("reservation_id", "Reservation"), ("book_id", "Book"), ("title", "Title"),
         ("expiry_date", "Expires"), ("status", "Status")),
        title="🔖 Reservations",
        empty="No pending reservations.",
        line="#{reservation_id} book {book_id} - {title} expires {expiry_date}",
    )


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print catalog statistics in the current output mode."""
    mode = get_output_mode()
    if not stats:
        print("No statistics available.")
        return
    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{key.replace('_', ' ').title()}:[/] {value}" for key, value in stats.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, value in stats.items():
            print(f"{key.replace('_', ' ').title()}: {value}")
