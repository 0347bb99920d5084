"""Catalog search.

One function covers every search mode; the mode is picked with a
``SearchField`` tag instead of a family of strategy classes.
"""

import sqlite3
from enum import Enum
from typing import List

from .models import Book

BOOK_SELECT = (
    "SELECT b.*, c.name AS category_name FROM books b "
    "LEFT JOIN categories c ON b.category_id = c.category_id"
)


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SearchField(str, Enum):
    TITLE = "title"
    AUTHOR = "author"
    ISBN = "isbn"
    CATEGORY = "category"
    FULLTEXT = "fulltext"


def search_books(conn: sqlite3.Connection, query: str, field: SearchField = SearchField.FULLTEXT) -> List[Book]:
    """Return books matching ``query`` in the given field.

    Text fields match case-insensitive substrings. ``isbn`` matches exactly
    after stripping separators. ``category`` accepts a category id or a
    category name. ``fulltext`` also looks at the description and ranks
    title hits first, then author, isbn and description hits.
    """
    query = (query or "").strip()
    if not query:
        return []
    field = SearchField(field)
    like = f"%{_escape_like(query.lower())}%"

    if field is SearchField.TITLE:
        sql, params = f"{BOOK_SELECT} WHERE LOWER(b.title) LIKE ? ESCAPE '\\' ORDER BY b.title", (like,)
    elif field is SearchField.AUTHOR:
        sql, params = f"{BOOK_SELECT} WHERE LOWER(b.author) LIKE ? ESCAPE '\\' ORDER BY b.author, b.title", (like,)
    elif field is SearchField.ISBN:
        isbn = "".join(ch for ch in query if ch.isalnum()).upper()
        sql, params = f"{BOOK_SELECT} WHERE b.isbn = ?", (isbn,)
    elif field is SearchField.CATEGORY:
        if query.isdigit():
            sql, params = f"{BOOK_SELECT} WHERE b.category_id = ? ORDER BY b.title", (int(query),)
        else:
            sql, params = f"{BOOK_SELECT} WHERE LOWER(c.name) = ? ORDER BY b.title", (query.lower(),)
    else:
        cleaned = "".join(ch for ch in query if ch.isalnum()).upper()
        isbn_like = f"%{cleaned}%" if cleaned else None
        sql = (
            f"{BOOK_SELECT} WHERE LOWER(b.title) LIKE :q ESCAPE '\\' OR LOWER(b.author) LIKE :q ESCAPE '\\' "
            "OR b.isbn LIKE :isbn OR LOWER(COALESCE(b.description, '')) LIKE :q ESCAPE '\\' "
            "ORDER BY CASE "
            "WHEN LOWER(b.title) LIKE :q ESCAPE '\\' THEN 1 "
            "WHEN LOWER(b.author) LIKE :q ESCAPE '\\' THEN 2 "
            "WHEN b.isbn LIKE :isbn THEN 3 "
            "ELSE 4 END, b.title"
        )
        params = {"q": like, "isbn": isbn_like}

    rows = conn.execute(sql, params).fetchall()
    return [Book.from_dict(dict(row)) for row in rows]
