import pytest

from circulation.models import Book
from circulation.search import SearchField


@pytest.fixture
def shelf(manager):
    categories = {c.name: c.category_id for c in manager.catalog.list_categories()}
    add = manager.catalog.add_book
    return {
        "dune": add(Book("Dune", "Frank Herbert", isbn="9780441013593", category_id=categories["Fiction"])),
        "cosmos": add(Book("Cosmos", "Carl Sagan", isbn="9780345539434", category_id=categories["Science"],
                           description="A journey through the universe, from Herbert's desert to the stars")),
        "herbert": add(Book("Herbert Hoover", "William Leuchtenburg", isbn="9780805069587",
                            category_id=categories["History"])),
    }


def titles(books):
    return [b.title for b in books]


def test_search_by_title_is_case_insensitive(manager, shelf):
    assert titles(manager.catalog.search("dUNe", SearchField.TITLE)) == ["Dune"]


def test_search_by_author(manager, shelf):
    assert titles(manager.catalog.search("sagan", SearchField.AUTHOR)) == ["Cosmos"]


def test_search_by_isbn_ignores_separators(manager, shelf):
    assert titles(manager.catalog.search("978-0-441-01359-3", SearchField.ISBN)) == ["Dune"]
    assert manager.catalog.search("978044101359", SearchField.ISBN) == []


def test_search_by_category_name_or_id(manager, shelf):
    assert titles(manager.catalog.search("science", SearchField.CATEGORY)) == ["Cosmos"]
    fiction_id = shelf["dune"].category_id
    assert titles(manager.catalog.search(str(fiction_id), SearchField.CATEGORY)) == ["Dune"]


def test_fulltext_ranks_title_before_author_before_description(manager, shelf):
    results = titles(manager.catalog.search("herbert", SearchField.FULLTEXT))
    assert results == ["Herbert Hoover", "Dune", "Cosmos"]


def test_fulltext_matches_isbn_fragment(manager, shelf):
    assert titles(manager.catalog.search("0345539", SearchField.FULLTEXT)) == ["Cosmos"]


def test_fulltext_punctuation_only_does_not_match_everything(manager, shelf):
    assert manager.catalog.search("?!", SearchField.FULLTEXT) == []


def test_blank_query_returns_nothing(manager, shelf):
    assert manager.catalog.search("   ") == []


def test_field_accepts_plain_string(manager, shelf):
    assert titles(manager.catalog.search("dune", "title")) == ["Dune"]


@pytest.mark.parametrize("query", ["%", "_", "\\"])
def test_wildcards_are_matched_literally(manager, shelf, query):
    assert manager.catalog.search(query, SearchField.TITLE) == []
    assert manager.catalog.search(query, SearchField.FULLTEXT) == []


def test_percent_in_title_is_found(manager, shelf):
    manager.catalog.add_book(Book("100% Organic", "Jane Grower"))
    assert titles(manager.catalog.search("0%", SearchField.TITLE)) == ["100% Organic"]


def test_catalog_and_search_share_book_select():
    from circulation import catalog, search

    assert catalog.BOOK_SELECT is search.BOOK_SELECT
