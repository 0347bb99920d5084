import sqlite3

import pytest

from circulation.database import Database
from circulation.errors import TransientStoreFailure


def table_names(db):
    with db.connection() as conn:
        return {r["name"] for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}


def test_initialize_is_idempotent(db):
    db.initialize()
    assert {"books", "loans", "reservations", "users", "auth_tokens", "categories", "email_notifications"} <= table_names(db)
    with db.connection() as conn:
        assert conn.execute("SELECT COUNT(*) FROM categories").fetchone()[0] == 5


def test_transaction_commits(db):
    with db.transaction() as conn:
        conn.execute("INSERT INTO categories (name) VALUES ('Poetry')")
    with db.connection() as conn:
        assert conn.execute("SELECT 1 FROM categories WHERE name = 'Poetry'").fetchone() is not None


def test_transaction_rolls_back_on_error(db):
    with pytest.raises(ValueError):
        with db.transaction() as conn:
            conn.execute("INSERT INTO categories (name) VALUES ('Drama')")
            raise ValueError("abort")
    with db.connection() as conn:
        assert conn.execute("SELECT 1 FROM categories WHERE name = 'Drama'").fetchone() is None


def test_connection_passes_through_given_connection(db):
    with db.transaction() as conn:
        with db.connection(conn) as inner:
            assert inner is conn


def test_operational_error_becomes_transient_failure(db):
    with pytest.raises(TransientStoreFailure):
        with db.connection() as conn:
            conn.execute("SELECT * FROM no_such_table")


def test_locked_database_is_transient(config):
    holder = Database(config.database_file, pool_size=1, timeout=0.1)
    waiter = Database(config.database_file, pool_size=1, timeout=0.1)
    holder.initialize()
    waiter.initialize()
    try:
        with holder.transaction():
            with pytest.raises(TransientStoreFailure):
                with waiter.transaction():
                    pass
    finally:
        holder.close()
        waiter.close()


def test_pool_exhaustion(config):
    db = Database(config.database_file, pool_size=1, timeout=0.1)
    try:
        with db.connection():
            with pytest.raises(TransientStoreFailure, match="exhausted"):
                with db.connection():
                    pass
    finally:
        db.close()


def test_foreign_keys_enforced(db):
    with pytest.raises(sqlite3.IntegrityError):
        with db.connection() as conn:
            conn.execute(
                "INSERT INTO loans (reader_id, book_id, loan_date, due_date) VALUES (99, 99, '2024-01-01', '2024-01-15')"
            )
