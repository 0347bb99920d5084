import logging
import queue
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from .config import settings
from .errors import TransientStoreFailure

logger = logging.getLogger(__name__)


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS categories (
        category_id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT UNIQUE NOT NULL,
        description TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS books (
        book_id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        author TEXT NOT NULL,
        isbn TEXT UNIQUE,
        publisher TEXT,
        publication_year INTEGER,
        category_id INTEGER REFERENCES categories(category_id) ON DELETE SET NULL,
        description TEXT,
        total_copies INTEGER NOT NULL CHECK(total_copies > 0),
        available_copies INTEGER NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        user_id INTEGER PRIMARY KEY AUTOINCREMENT,
        email TEXT UNIQUE NOT NULL COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        phone TEXT,
        address TEXT,
        role TEXT NOT NULL DEFAULT 'reader' CHECK(role IN ('reader', 'librarian', 'admin')),
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_tokens (
        token TEXT PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users(user_id) ON DELETE CASCADE,
        expires_at TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS loans (
        loan_id INTEGER PRIMARY KEY AUTOINCREMENT,
        reader_id INTEGER NOT NULL REFERENCES users(user_id),
        book_id INTEGER NOT NULL REFERENCES books(book_id) ON DELETE CASCADE,
        librarian_id INTEGER REFERENCES users(user_id),
        loan_date TEXT NOT NULL,
        due_date TEXT NOT NULL,
        return_date TEXT,
        status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'returned')),
        extended INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reservations (
        reservation_id INTEGER PRIMARY KEY AUTOINCREMENT,
        reader_id INTEGER NOT NULL REFERENCES users(user_id),
        book_id INTEGER NOT NULL REFERENCES books(book_id) ON DELETE CASCADE,
        reservation_date TEXT NOT NULL,
        expiry_date TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending', 'fulfilled', 'expired'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_notifications (
        notification_id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER,
        loan_id INTEGER,
        kind TEXT NOT NULL,
        subject TEXT NOT NULL,
        body TEXT NOT NULL,
        sent_at TEXT NOT NULL,
        status TEXT NOT NULL CHECK(status IN ('sent', 'failed'))
    )
    """,
)

INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)",
    "CREATE INDEX IF NOT EXISTS idx_books_author ON books(author)",
    "CREATE INDEX IF NOT EXISTS idx_books_category ON books(category_id)",
    "CREATE INDEX IF NOT EXISTS idx_loans_book_status ON loans(book_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_loans_reader ON loans(reader_id, loan_date)",
    "CREATE INDEX IF NOT EXISTS idx_loans_status_due ON loans(status, due_date)",
    "CREATE INDEX IF NOT EXISTS idx_reservations_book ON reservations(book_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_reservations_reader ON reservations(reader_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_auth_tokens_user ON auth_tokens(user_id)",
)

DEFAULT_CATEGORIES = (
    ("Fiction", "Novels and short stories"),
    ("Non-fiction", "Essays, biographies and reportage"),
    ("Science", "Natural and applied sciences"),
    ("History", "History and historical sources"),
    ("Children", "Books for young readers"),
)


class Database:
    """Handle on one SQLite database with a bounded pool of connections.

    Stores receive this object explicitly; there is no module-level pool.
    Connections run in autocommit mode so that ``transaction()`` controls
    the ``BEGIN``/``COMMIT`` boundaries itself.
    """

    def __init__(self, path: Optional[str] = None, pool_size: Optional[int] = None,
                 timeout: Optional[float] = None) -> None:
        self.path = path or settings.database_file
        self.pool_size = max(1, pool_size or settings.database_pool_size)
        self.timeout = timeout if timeout is not None else settings.database_timeout
        self._pool: "queue.Queue[sqlite3.Connection]" = queue.Queue(maxsize=self.pool_size)
        self._created = 0
        self._lock = threading.Lock()

    # ------------------------- Pool ------------------------- #
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.path,
            timeout=self.timeout,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def _acquire(self) -> sqlite3.Connection:
        try:
            return self._pool.get_nowait()
        except queue.Empty:
            pass
        with self._lock:
            if self._created < self.pool_size:
                self._created += 1
                try:
                    return self._connect()
                except sqlite3.Error as exc:
                    self._created -= 1
                    raise TransientStoreFailure(f"Could not open database: {exc}") from exc
        try:
            return self._pool.get(timeout=self.timeout)
        except queue.Empty as exc:
            raise TransientStoreFailure("Connection pool exhausted") from exc

    def _release(self, conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.rollback()
        try:
            self._pool.put_nowait(conn)
        except queue.Full:
            conn.close()

    # ------------------------- Scopes ------------------------- #
    @contextmanager
    def connection(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """Borrow a pooled connection, or pass through one that is already in use.

        Passing ``conn`` lets a store method join the caller's transaction.
        """
        if conn is not None:
            yield conn
            return
        borrowed = self._acquire()
        try:
            yield borrowed
        except sqlite3.OperationalError as exc:
            logger.error(f"Database operation failed: {exc}")
            raise TransientStoreFailure(str(exc)) from exc
        finally:
            self._release(borrowed)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements as one atomic unit.

        ``BEGIN IMMEDIATE`` takes the write lock up front, so two concurrent
        transactions never both read a value and then both write it.
        """
        conn = self._acquire()
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                logger.error(f"Could not start transaction: {exc}")
                raise TransientStoreFailure(str(exc)) from exc
            try:
                yield conn
                conn.execute("COMMIT")
            except sqlite3.OperationalError as exc:
                conn.rollback()
                logger.error(f"Transaction aborted: {exc}")
                raise TransientStoreFailure(str(exc)) from exc
            except BaseException:
                conn.rollback()
                raise
        finally:
            self._release(conn)

    # ------------------------- Lifecycle ------------------------- #
    def initialize(self) -> None:
        """Create tables and indexes if missing and seed default categories."""
        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
            for statement in INDEXES:
                conn.execute(statement)
            conn.executemany(
                "INSERT OR IGNORE INTO categories (name, description) VALUES (?, ?)",
                DEFAULT_CATEGORIES,
            )
        logger.info(f"Database ready at {self.path}")

    def close(self) -> None:
        while True:
            try:
                conn = self._pool.get_nowait()
            except queue.Empty:
                break
            conn.close()
        with self._lock:
            self._created = 0
