import logging
import sqlite3
from typing import Any, Dict, List, Optional

from .database import Database
from .errors import Conflict, NotFound, ValidationError
from .models import Book, Category
from .search import BOOK_SELECT, SearchField, search_books
from .services.openlibrary import OpenLibraryClient

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("title", "author", "isbn", "publisher", "publication_year", "category_id", "description")


class CatalogStore:
    """Books, categories and the per-book copy counters.

    Methods that take ``conn`` run on that connection when given, which is
    how the lifecycle manager keeps its reads and writes in one transaction.
    """

    def __init__(self, db: Database, lookup: Optional[OpenLibraryClient] = None) -> None:
        self.db = db
        self.lookup = lookup or OpenLibraryClient()

    # ------------------------- Availability ------------------------- #
    def check_availability(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> int:
        with self.db.connection(conn) as c:
            row = c.execute("SELECT available_copies FROM books WHERE book_id = ?", (book_id,)).fetchone()
        if row is None:
            raise NotFound("Book", book_id)
        return row["available_copies"]

    def adjust_availability(self, book_id: int, delta: int, conn: Optional[sqlite3.Connection] = None) -> Book:
        """Apply ``available_copies += delta`` in a single statement.

        The bound ``0 <= available_copies <= total_copies`` is the caller's
        responsibility; nothing is clamped here.
        """
        with self.db.connection(conn) as c:
            cursor = c.execute(
                "UPDATE books SET available_copies = available_copies + ? WHERE book_id = ?",
                (delta, book_id),
            )
            if cursor.rowcount == 0:
                raise NotFound("Book", book_id)
            return self.get_book(book_id, conn=c)

    # ------------------------- Books ------------------------- #
    def find_book(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Book]:
        with self.db.connection(conn) as c:
            row = c.execute(f"{BOOK_SELECT} WHERE b.book_id = ?", (book_id,)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def get_book(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> Book:
        book = self.find_book(book_id, conn=conn)
        if book is None:
            raise NotFound("Book", book_id)
        return book

    def find_by_isbn(self, isbn: str) -> Optional[Book]:
        with self.db.connection() as c:
            row = c.execute(f"{BOOK_SELECT} WHERE b.isbn = ?", (self._normalize_isbn(isbn),)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def list_books(self) -> List[Book]:
        with self.db.connection() as c:
            rows = c.execute(f"{BOOK_SELECT} ORDER BY b.title").fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def add_book(self, book: Book) -> Book:
        """Insert a new title; every copy starts out available."""
        if book.total_copies is None or book.total_copies < 1:
            raise ValidationError("total_copies must be a positive integer.")
        if not book.title or not book.author:
            raise ValidationError("Title and author are required.")
        isbn = self._normalize_isbn(book.isbn) or None
        with self.db.transaction() as c:
            if book.category_id is not None:
                self._require_category(c, book.category_id)
            try:
                cursor = c.execute(
                    "INSERT INTO books (title, author, isbn, publisher, publication_year, category_id, "
                    "description, total_copies, available_copies) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (book.title, book.author, isbn, book.publisher, book.publication_year,
                     book.category_id, book.description, book.total_copies, book.total_copies),
                )
            except sqlite3.IntegrityError as e:
                raise Conflict(f"Book with ISBN {isbn} already exists.") from e
            created = self.get_book(cursor.lastrowid, conn=c)
        logger.info(f"Book added: {created.book_id} '{created.title}' ({created.total_copies} copies)")
        return created

    def update_book(self, book_id: int, *, total_copies: Optional[int] = None, **fields: Any) -> Book:
        """Update descriptive fields and optionally the number of copies owned.

        Changing ``total_copies`` recomputes ``available_copies`` from the
        active loans, so copies on loan are never counted as available.
        """
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown book fields: {', '.join(sorted(unknown))}")
        changes: Dict[str, Any] = {k: v for k, v in fields.items() if v is not None}
        if "isbn" in changes:
            changes["isbn"] = self._normalize_isbn(changes["isbn"]) or None
        for key in ("title", "author"):
            if key in changes:
                changes[key] = changes[key].strip()
                if not changes[key]:
                    raise ValidationError(f"{key} cannot be empty.")
        if not changes and total_copies is None:
            raise ValidationError("Nothing to update.")

        with self.db.transaction() as c:
            current = self.get_book(book_id, conn=c)
            if changes.get("category_id") is not None:
                self._require_category(c, changes["category_id"])
            if total_copies is not None:
                if total_copies < 1:
                    raise ValidationError("total_copies must be a positive integer.")
                on_loan = current.total_copies - current.available_copies
                if total_copies < on_loan:
                    raise Conflict(f"Book {book_id} has {on_loan} copies on loan; cannot reduce to {total_copies}.")
                changes["total_copies"] = total_copies
                changes["available_copies"] = total_copies - on_loan
            assignments = ", ".join(f"{key} = ?" for key in changes)
            try:
                c.execute(f"UPDATE books SET {assignments} WHERE book_id = ?", (*changes.values(), book_id))
            except sqlite3.IntegrityError as e:
                raise Conflict(f"Book with ISBN {changes.get('isbn')} already exists.") from e
            return self.get_book(book_id, conn=c)

    def delete_book(self, book_id: int) -> None:
        with self.db.transaction() as c:
            self.get_book(book_id, conn=c)
            active = c.execute(
                "SELECT COUNT(*) FROM loans WHERE book_id = ? AND status = 'active'", (book_id,)
            ).fetchone()[0]
            if active:
                raise Conflict(f"Book {book_id} still has {active} active loan(s).")
            c.execute("DELETE FROM books WHERE book_id = ?", (book_id,))
        logger.info(f"Book deleted: {book_id}")

    def add_book_by_isbn(self, isbn: str, total_copies: int = 1, category_id: Optional[int] = None) -> Book:
        """Fetch metadata from Open Library by ISBN, then add the book."""
        isbn = self._normalize_isbn(isbn)
        if not isbn:
            raise ValidationError("ISBN cannot be empty.")
        if not self._is_valid_isbn(isbn):
            raise ValidationError("Invalid ISBN format.")
        if self.find_by_isbn(isbn):
            raise Conflict(f"Book with ISBN {isbn} already exists.")

        metadata = self.lookup.fetch_metadata(isbn)
        book = Book(
            title=metadata["title"],
            author=metadata["author"],
            isbn=isbn,
            publisher=metadata.get("publisher"),
            publication_year=metadata.get("publication_year"),
            description=metadata.get("description"),
            category_id=category_id,
            total_copies=total_copies,
        )
        return self.add_book(book)

    def search(self, query: str, field: SearchField = SearchField.FULLTEXT) -> List[Book]:
        with self.db.connection() as c:
            return search_books(c, query, field)

    # ------------------------- Categories ------------------------- #
    def list_categories(self) -> List[Category]:
        with self.db.connection() as c:
            rows = c.execute("SELECT category_id, name, description FROM categories ORDER BY name").fetchall()
        return [Category(**dict(row)) for row in rows]

    def add_category(self, name: str, description: Optional[str] = None) -> Category:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Category name cannot be empty.")
        with self.db.connection() as c:
            try:
                cursor = c.execute(
                    "INSERT INTO categories (name, description) VALUES (?, ?)", (name, description)
                )
            except sqlite3.IntegrityError as e:
                raise Conflict(f"Category {name} already exists.") from e
        return Category(category_id=cursor.lastrowid, name=name, description=description)

    # ------------------------- Statistics ------------------------- #
    def get_statistics(self) -> Dict[str, Any]:
        with self.db.connection() as c:
            row = c.execute(
                "SELECT COUNT(*) AS titles, COALESCE(SUM(total_copies), 0) AS total_copies, "
                "COALESCE(SUM(available_copies), 0) AS available_copies, "
                "COUNT(DISTINCT author) AS unique_authors FROM books"
            ).fetchone()
            active = c.execute("SELECT COUNT(*) FROM loans WHERE status = 'active'").fetchone()[0]
        stats = dict(row)
        stats["active_loans"] = active
        return stats

    # ------------------------- Utilities ------------------------- #
    @staticmethod
    def _require_category(conn: sqlite3.Connection, category_id: int) -> None:
        row = conn.execute("SELECT 1 FROM categories WHERE category_id = ?", (category_id,)).fetchone()
        if row is None:
            raise NotFound("Category", category_id)

    @staticmethod
    def _normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        cleaned = "".join(ch for ch in raw if ch.isalnum())
        return cleaned.upper()

    @staticmethod
    def _is_valid_isbn(isbn: str) -> bool:
        """Lenient ISBN validation.
        - ISBN-10: 9 digits followed by a digit or 'X'
        - ISBN-13: 13 digits
        """
        s = isbn.replace('-', '').replace(' ', '').upper()
        if len(s) == 10:
            return s[:9].isdigit() and (s[9].isdigit() or s[9] == 'X')
        if len(s) == 13:
            return s.isdigit()
        return False
