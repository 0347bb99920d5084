import pytest
from fastapi.testclient import TestClient

from circulation.api import create_app


@pytest.fixture
def client(config, manager):
    with TestClient(create_app(config=config, manager=manager)) as test_client:
        yield test_client


def login(client, email, password="secret1"):
    response = client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def reader_headers(client, reader):
    return login(client, reader.email)


@pytest.fixture
def librarian_headers(client, librarian):
    return login(client, librarian.email)


@pytest.fixture
def admin_headers(client, admin):
    return login(client, admin.email)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_register_and_login(client):
    payload = {"email": "fresh@example.com", "password": "secret1", "first_name": "Fay", "last_name": "Fresh"}
    response = client.post("/auth/register", json=payload)
    assert response.status_code == 201
    assert response.json()["role"] == "reader"

    assert client.post("/auth/register", json=payload).status_code == 409
    assert client.post("/auth/login", json={"email": "fresh@example.com", "password": "nope00"}).status_code == 401
    login(client, "fresh@example.com")


def test_register_validation_error(client):
    payload = {"email": "bad", "password": "secret1", "first_name": "B", "last_name": "Ad"}
    response = client.post("/auth/register", json=payload)
    assert response.status_code == 400
    assert response.json()["code"] == "ValidationError"


def test_logout_revokes_token(client, reader_headers):
    assert client.post("/auth/logout", headers=reader_headers).status_code == 204
    assert client.get("/reservations/user", headers=reader_headers).status_code == 401


def test_get_books(client, book):
    response = client.get("/books")
    assert response.status_code == 200
    assert [b["title"] for b in response.json()] == ["Ulysses"]
    assert client.get(f"/books/{book.book_id}").json()["available_copies"] == 2
    assert client.get("/books/999").status_code == 404


def test_search_books(client, book):
    response = client.get("/books/search", params={"query": "joyce", "field": "author"})
    assert response.status_code == 200
    assert [b["title"] for b in response.json()] == ["Ulysses"]
    assert client.get("/books/search", params={"query": "x", "field": "colour"}).status_code == 422


def test_add_book_requires_librarian(client, reader_headers, librarian_headers):
    payload = {"title": "Dune", "author": "Frank Herbert", "total_copies": 2}
    assert client.post("/books", json=payload).status_code == 401
    assert client.post("/books", json=payload, headers=reader_headers).status_code == 403

    response = client.post("/books", json=payload, headers=librarian_headers)
    assert response.status_code == 201
    assert response.json()["available_copies"] == 2


def test_add_book_invalid_token(client):
    headers = {"Authorization": "Bearer not-a-token"}
    assert client.post("/books", json={"title": "T", "author": "A"}, headers=headers).status_code == 401


def test_add_book_by_isbn(client, manager, librarian_headers, monkeypatch):
    monkeypatch.setattr(
        manager.catalog.lookup, "fetch_metadata",
        lambda isbn: {"title": "Clean Code", "author": "Robert C. Martin"},
    )
    response = client.post("/books/isbn", json={"isbn": "9780132350884"}, headers=librarian_headers)
    assert response.status_code == 201
    assert response.json()["title"] == "Clean Code"


def test_add_book_by_isbn_not_found(client, manager, librarian_headers, monkeypatch):
    def missing(isbn):
        raise LookupError(f"No book found for ISBN {isbn}.")

    monkeypatch.setattr(manager.catalog.lookup, "fetch_metadata", missing)
    response = client.post("/books/isbn", json={"isbn": "9780000000002"}, headers=librarian_headers)
    assert response.status_code == 404


def test_update_and_delete_book(client, book, librarian_headers, admin_headers):
    response = client.put(f"/books/{book.book_id}", json={"total_copies": 4}, headers=librarian_headers)
    assert response.status_code == 200
    assert response.json()["available_copies"] == 4

    assert client.delete(f"/books/{book.book_id}", headers=librarian_headers).status_code == 403
    assert client.delete(f"/books/{book.book_id}", headers=admin_headers).status_code == 200
    assert client.get(f"/books/{book.book_id}").status_code == 404


def test_categories(client, librarian_headers):
    assert any(c["name"] == "Fiction" for c in client.get("/categories").json())
    response = client.post("/categories", json={"name": "Poetry"}, headers=librarian_headers)
    assert response.status_code == 201
    assert client.post("/categories", json={"name": "Poetry"}, headers=librarian_headers).status_code == 409


def test_loan_lifecycle_over_http(client, reader, book, reader_headers, librarian_headers):
    response = client.post("/loans", json={"reader_id": reader.user_id, "book_id": book.book_id},
                           headers=librarian_headers)
    assert response.status_code == 201
    loan = response.json()
    assert loan["status"] == "active"
    assert loan["due_date"] == "2024-03-15"

    response = client.post(f"/loans/{loan['loan_id']}/extend", headers=reader_headers)
    assert response.status_code == 200
    assert response.json()["due_date"] == "2024-03-29"
    assert client.post(f"/loans/{loan['loan_id']}/extend", headers=reader_headers).status_code == 400

    active = client.get("/loans/active", headers=librarian_headers).json()
    assert [l["loan_id"] for l in active] == [loan["loan_id"]]
    assert active[0]["title"] == "Ulysses"

    response = client.put(f"/loans/{loan['loan_id']}/return", headers=librarian_headers)
    assert response.status_code == 200
    assert response.json()["status"] == "returned"
    assert client.put(f"/loans/{loan['loan_id']}/return", headers=librarian_headers).status_code == 409
    assert client.get(f"/books/{book.book_id}").json()["available_copies"] == 2


def test_loan_errors(client, reader, single_copy, librarian_headers, reader_headers):
    payload = {"reader_id": reader.user_id, "book_id": single_copy.book_id}
    assert client.post("/loans", json=payload, headers=reader_headers).status_code == 403
    assert client.post("/loans", json=payload, headers=librarian_headers).status_code == 201

    response = client.post("/loans", json=payload, headers=librarian_headers)
    assert response.status_code == 400
    assert response.json()["code"] == "BookUnavailable"

    missing = {"reader_id": reader.user_id, "book_id": 999}
    assert client.post("/loans", json=missing, headers=librarian_headers).status_code == 404
    assert client.put("/loans/999/return", headers=librarian_headers).status_code == 404


def test_reader_cannot_extend_someone_elses_loan(client, manager, book, librarian, librarian_headers):
    owner = manager.users.register("owner@example.com", "secret1", "Owen", "Owner")
    loan = manager.create_loan(owner.user_id, book.book_id)
    intruder = manager.users.register("intruder@example.com", "secret1", "Ian", "Intruder")

    headers = login(client, intruder.email)
    assert client.post(f"/loans/{loan.loan_id}/extend", headers=headers).status_code == 404
    assert client.post(f"/loans/{loan.loan_id}/extend", headers=librarian_headers).status_code == 200


def test_loan_history_visibility(client, manager, reader, librarian, book, reader_headers, librarian_headers):
    manager.create_loan(reader.user_id, book.book_id)
    assert len(client.get(f"/loans/user/{reader.user_id}", headers=reader_headers).json()) == 1
    assert len(client.get(f"/loans/user/{reader.user_id}", headers=librarian_headers).json()) == 1
    assert client.get(f"/loans/user/{librarian.user_id}", headers=reader_headers).status_code == 403


def test_reservations(client, book, reader_headers):
    response = client.post("/reservations", json={"book_id": book.book_id}, headers=reader_headers)
    assert response.status_code == 201
    assert response.json()["status"] == "pending"
    assert client.post("/reservations", json={"book_id": book.book_id}, headers=reader_headers).status_code == 409
    assert client.post("/reservations", json={"book_id": 999}, headers=reader_headers).status_code == 404

    pending = client.get("/reservations/user", headers=reader_headers).json()
    assert [r["title"] for r in pending] == ["Ulysses"]


def test_user_profile_and_roles(client, reader, reader_headers, admin_headers, librarian):
    assert client.get(f"/users/{reader.user_id}", headers=reader_headers).json()["email"] == reader.email
    assert client.get(f"/users/{librarian.user_id}", headers=reader_headers).status_code == 403

    response = client.put(f"/users/{reader.user_id}", json={"phone": "555-0100"}, headers=reader_headers)
    assert response.json()["phone"] == "555-0100"

    url = f"/users/{reader.user_id}/role"
    assert client.put(url, json={"role": "librarian"}, headers=reader_headers).status_code == 403
    response = client.put(url, json={"role": "librarian"}, headers=admin_headers)
    assert response.json()["role"] == "librarian"


def test_stats_and_reminders(client, manager, reader, book, librarian_headers, admin_headers):
    manager.create_loan(reader.user_id, book.book_id)
    stats = client.get("/stats", headers=librarian_headers).json()
    assert stats["active_loans"] == 1

    assert client.post("/notifications/send-reminders", headers=librarian_headers).status_code == 403
    response = client.post("/notifications/send-reminders", headers=admin_headers)
    assert response.json() == {"due_reminders": 0, "overdue_notices": 0}
