import logging
import sqlite3
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional

from .database import Database
from .errors import AlreadyExtended, LoanAlreadyReturned, NotFound
from .models import Loan

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_LISTING = (
    "SELECT l.*, b.title, b.author, b.isbn, u.first_name, u.last_name, u.email "
    "FROM loans l "
    "JOIN books b ON l.book_id = b.book_id "
    "JOIN users u ON l.reader_id = u.user_id"
)


class LoanLedger:
    """Loan records and their status transitions.

    ``active -> returned`` is terminal; ``active -> active`` with a later due
    date is allowed once (``extended``).
    """

    def __init__(self, db: Database, clock: Clock = datetime.now) -> None:
        self.db = db
        self.clock = clock

    def create_loan(self, reader_id: int, book_id: int, librarian_id: Optional[int], due_date: date,
                    conn: Optional[sqlite3.Connection] = None) -> Loan:
        loan_date = self.clock().isoformat(timespec="seconds")
        with self.db.connection(conn) as c:
            cursor = c.execute(
                "INSERT INTO loans (reader_id, book_id, librarian_id, loan_date, due_date, status, extended) "
                "VALUES (?, ?, ?, ?, ?, 'active', 0)",
                (reader_id, book_id, librarian_id, loan_date, due_date.isoformat()),
            )
            return self.get(cursor.lastrowid, conn=c)

    def find(self, loan_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Loan]:
        with self.db.connection(conn) as c:
            row = c.execute("SELECT * FROM loans WHERE loan_id = ?", (loan_id,)).fetchone()
        return Loan.from_row(row) if row else None

    def get(self, loan_id: int, conn: Optional[sqlite3.Connection] = None) -> Loan:
        loan = self.find(loan_id, conn=conn)
        if loan is None:
            raise NotFound("Loan", loan_id)
        return loan

    def mark_returned(self, loan_id: int, conn: Optional[sqlite3.Connection] = None) -> Loan:
        """Close an active loan. Returning a loan twice raises ``LoanAlreadyReturned``."""
        return_date = self.clock().isoformat(timespec="seconds")
        with self.db.connection(conn) as c:
            cursor = c.execute(
                "UPDATE loans SET return_date = ?, status = 'returned' WHERE loan_id = ? AND status = 'active'",
                (return_date, loan_id),
            )
            if cursor.rowcount == 0:
                self.get(loan_id, conn=c)
                raise LoanAlreadyReturned(loan_id)
            return self.get(loan_id, conn=c)

    def extend(self, loan_id: int, new_due_date: date, conn: Optional[sqlite3.Connection] = None) -> Loan:
        """Move the due date and set ``extended``; a loan can be extended only once."""
        with self.db.connection(conn) as c:
            cursor = c.execute(
                "UPDATE loans SET due_date = ?, extended = 1 WHERE loan_id = ? AND extended = 0",
                (new_due_date.isoformat(), loan_id),
            )
            if cursor.rowcount == 0:
                self.get(loan_id, conn=c)
                raise AlreadyExtended(loan_id)
            return self.get(loan_id, conn=c)

    # ------------------------- Queries ------------------------- #
    def find_active(self) -> List[Loan]:
        """Active loans, soonest due first."""
        with self.db.connection() as c:
            rows = c.execute(f"{_LISTING} WHERE l.status = 'active' ORDER BY l.due_date, l.loan_id").fetchall()
        return [Loan.from_row(row) for row in rows]

    def find_by_reader(self, reader_id: int) -> List[Loan]:
        """A reader's full loan history, newest first."""
        with self.db.connection() as c:
            rows = c.execute(
                f"{_LISTING} WHERE l.reader_id = ? ORDER BY l.loan_date DESC, l.loan_id DESC", (reader_id,)
            ).fetchall()
        return [Loan.from_row(row) for row in rows]

    def find_due_within(self, days: int) -> List[Loan]:
        """Active loans whose due date falls between today and today + ``days``."""
        today = self.clock().date()
        with self.db.connection() as c:
            rows = c.execute(
                f"{_LISTING} WHERE l.status = 'active' AND l.due_date BETWEEN ? AND ? ORDER BY l.due_date, l.loan_id",
                (today.isoformat(), (today + timedelta(days=days)).isoformat()),
            ).fetchall()
        return [Loan.from_row(row) for row in rows]

    def find_overdue(self) -> List[Loan]:
        today = self.clock().date()
        with self.db.connection() as c:
            rows = c.execute(
                f"{_LISTING} WHERE l.status = 'active' AND l.due_date < ? ORDER BY l.due_date, l.loan_id",
                (today.isoformat(),),
            ).fetchall()
        return [Loan.from_row(row) for row in rows]

    def count_active_for_book(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> int:
        with self.db.connection(conn) as c:
            return c.execute(
                "SELECT COUNT(*) FROM loans WHERE book_id = ? AND status = 'active'", (book_id,)
            ).fetchone()[0]
