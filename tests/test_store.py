"""
tests/test_store.py -- Unit tests for the UserStore repository.

Each test gets its own named shared-memory SQLite database (memory_db_url),
so tests never see each other's rows.

Coverage:
  - Emails are normalized on write and on lookup
  - UNIQUE(email) is enforced by the database
  - find_or_create is idempotent, including the lost-race fallback
  - update_user rejects unknown fields
  - delete_user removes the row and reports missing ids
  - count_active and last_login bookkeeping
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.store import UserStore
from conftest import memory_db_url


@pytest.fixture
def store():
    s = UserStore(memory_db_url())
    yield s
    s.close()


def _user(email: str = "priya@gentlespacerealty.com", role: str = "admin", **fields) -> User:
    return User(email=email, name="Priya", role=role, **fields)


def test_create_and_lookup_normalizes_email(store: UserStore) -> None:
    user_id = store.create_user(_user(email="  Priya@GentleSpaceRealty.com "))
    found = store.get_by_email("PRIYA@gentlespacerealty.com")
    assert found is not None
    assert found.id == user_id
    assert found.email == "priya@gentlespacerealty.com"
    assert found.role == "admin"
    assert found.is_active is True
    assert found.created_at
    assert found.last_login is None


def test_duplicate_email_raises_integrity_error(store: UserStore) -> None:
    store.create_user(_user())
    with pytest.raises(IntegrityError):
        store.create_user(_user(email="PRIYA@gentlespacerealty.com"))


def test_find_or_create_is_idempotent(store: UserStore) -> None:
    first, created = store.find_or_create(_user())
    second, created_again = store.find_or_create(_user())
    assert created is True
    assert created_again is False
    assert first.id == second.id
    assert store.count_users() == 1


def test_find_or_create_falls_back_to_read_when_insert_loses_race(store: UserStore, monkeypatch) -> None:
    """A concurrent first login inserts between our read and our insert."""
    winner_id = store.create_user(_user())
    original_get = store.get_by_email
    calls = {"n": 0}

    def stale_then_real(email: str):
        calls["n"] += 1
        # First lookup happens "before" the other request committed.
        if calls["n"] == 1:
            return None
        return original_get(email)

    monkeypatch.setattr(store, "get_by_email", stale_then_real)
    user, created = store.find_or_create(_user())
    assert created is False
    assert user.id == winner_id
    assert store.count_users() == 1


def test_get_by_oauth_and_link(store: UserStore) -> None:
    user_id = store.create_user(_user())
    assert store.get_by_oauth("google", "sub-1") is None
    store.link_oauth(user_id, "google", "sub-1")
    linked = store.get_by_oauth("google", "sub-1")
    assert linked is not None
    assert linked.id == user_id
    assert linked.oauth_provider == "google"


def test_update_user_rejects_unknown_fields(store: UserStore) -> None:
    user_id = store.create_user(_user())
    with pytest.raises(ValueError):
        store.update_user(user_id, email="other@example.com")


def test_update_user_missing_row_returns_false(store: UserStore) -> None:
    assert store.update_user(9999, name="Nobody") is False


def test_count_active_ignores_deactivated(store: UserStore) -> None:
    first = store.create_user(_user(email="a@gentlespacerealty.com", role="super_admin"))
    store.create_user(_user(email="b@gentlespacerealty.com", role="super_admin"))
    assert store.count_active("super_admin") == 2
    store.update_user(first, is_active=False)
    assert store.count_active("super_admin") == 1
    assert store.get_by_id(first).is_active is False


def test_update_last_login_stamps_timestamp(store: UserStore) -> None:
    user_id = store.create_user(_user())
    store.update_last_login(user_id)
    assert store.get_by_id(user_id).last_login is not None


def test_list_users_ordered_by_email(store: UserStore) -> None:
    store.create_user(_user(email="zed@gentlespacerealty.com"))
    store.create_user(_user(email="amy@gentlespacerealty.com"))
    assert [u.email for u in store.list_users()] == ["amy@gentlespacerealty.com", "zed@gentlespacerealty.com"]


def test_ping(store: UserStore) -> None:
    assert store.ping() is True


def test_delete_user(store: UserStore) -> None:
    user_id = store.create_user(_user())
    assert store.delete_user(user_id) is True
    assert store.get_by_id(user_id) is None
    assert store.delete_user(user_id) is False
    # The email is free again
    assert store.create_user(_user()) != user_id
