from datetime import timedelta

import pytest

from circulation.errors import Conflict, Forbidden, NotFound, Unauthorized, ValidationError
from circulation.models import Role
from circulation.users import (
    ROLE_CAPABILITIES,
    capabilities,
    has_capability,
    hash_password,
    require_capability,
    verify_password,
)


def test_register_and_get(manager):
    user = manager.users.register("New@Example.com", "secret1", "Nora", "New", phone="555")
    assert user.role is Role.READER
    assert user.full_name == "Nora New"
    assert manager.users.get(user.user_id).phone == "555"


@pytest.mark.parametrize(
    "email,password,first,last",
    [
        ("not-an-email", "secret1", "A", "B"),
        ("a@b.c", "short", "A", "B"),
        ("a@b.c", "secret1", "", "B"),
    ],
)
def test_register_validation(manager, email, password, first, last):
    with pytest.raises(ValidationError):
        manager.users.register(email, password, first, last)


def test_register_duplicate_email_is_case_insensitive(manager, reader):
    with pytest.raises(Conflict):
        manager.users.register("READER@example.com", "secret1", "Dup", "Licate")


def test_get_unknown_user(manager):
    assert manager.users.find(123) is None
    with pytest.raises(NotFound):
        manager.users.get(123)


def test_authenticate(manager, reader):
    assert manager.users.authenticate("reader@example.com", "secret1").user_id == reader.user_id
    assert manager.users.authenticate("reader@example.com", "wrong") is None
    assert manager.users.authenticate("nobody@example.com", "secret1") is None


def test_inactive_user_cannot_authenticate(manager, reader):
    manager.users.set_active(reader.user_id, False)
    assert manager.users.authenticate("reader@example.com", "secret1") is None


def test_update_profile(manager, reader):
    updated = manager.users.update_profile(reader.user_id, address="1 Library Lane")
    assert updated.address == "1 Library Lane"
    assert updated.first_name == "Rita"
    with pytest.raises(NotFound):
        manager.users.update_profile(999, first_name="X")


def test_set_role(manager, reader):
    promoted = manager.users.set_role(reader.user_id, "librarian")
    assert promoted.role is Role.LIBRARIAN
    with pytest.raises(ValueError):
        manager.users.set_role(reader.user_id, "wizard")


def test_token_lifecycle(manager, reader, clock):
    token = manager.users.issue_token(reader)
    assert manager.users.resolve_token(token).user_id == reader.user_id

    assert manager.users.revoke_token(token) is True
    assert manager.users.resolve_token(token) is None
    assert manager.users.revoke_token(token) is False


def test_token_expires(manager, reader, clock):
    token = manager.users.issue_token(reader)
    clock.now += timedelta(minutes=manager.config.token_ttl_minutes + 1)
    assert manager.users.resolve_token(token) is None


def test_deactivation_revokes_tokens(manager, reader):
    token = manager.users.issue_token(reader)
    manager.users.set_active(reader.user_id, False)
    assert manager.users.resolve_token(token) is None
    assert manager.users.resolve_token("") is None


def test_password_hashing():
    encoded = hash_password("secret1", iterations=1000)
    assert encoded.startswith("pbkdf2_sha256$1000$")
    assert verify_password("secret1", encoded)
    assert not verify_password("secret2", encoded)
    assert not verify_password("secret1", "garbage")
    assert hash_password("secret1", iterations=1000) != encoded


def test_role_capabilities_nest():
    assert ROLE_CAPABILITIES[Role.READER] < ROLE_CAPABILITIES[Role.LIBRARIAN] < ROLE_CAPABILITIES[Role.ADMIN]
    assert "borrow_books" in capabilities("reader")
    assert "manage_loans" not in capabilities(Role.READER)
    assert "change_roles" in capabilities(Role.ADMIN)


def test_require_capability(reader, librarian):
    assert require_capability(librarian, "manage_loans") is librarian
    assert has_capability(reader, "reserve_books")
    with pytest.raises(Forbidden):
        require_capability(reader, "manage_loans")
    with pytest.raises(Unauthorized):
        require_capability(None, "view_catalog")
