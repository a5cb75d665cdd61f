"""Tests for external identity find-or-create."""

import pytest

from idkeeper.service.errors import (
    AlreadyExistsError,
    InvalidArgumentError,
    PermissionDeniedError,
)
from idkeeper.service.identity import ExternalIdentityReconciler, normalize_email
from idkeeper.service.providers import ExternalIdentity
from idkeeper.storage.memory import MemoryStore


@pytest.fixture
def memory_store(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    google = store.get_auth_provider_by_name("google")
    store.set_auth_provider_active(google.id, True)
    return store


@pytest.fixture
def reconciler(memory_store):
    return ExternalIdentityReconciler(memory_store)


def _identity(email="carol@example.com", uid="g-123", provider="google", name="Carol"):
    return ExternalIdentity(provider=provider, provider_uid=uid, email=email, name=name)


def test_normalize_email():
    assert normalize_email("  Carol@Example.COM ") == "carol@example.com"
    assert normalize_email(None) == ""


class TestReconcile:
    def test_creates_verified_account(self, reconciler, memory_store):
        """First login through a provider creates a verified account linked to it."""
        user = reconciler.reconcile(_identity())

        assert user.verified is True
        assert user.provider == "google"
        assert user.password_hash is None
        assert memory_store.get_external_user("google", "carol@example.com").id == user.id

    def test_returns_existing_account(self, reconciler, memory_store):
        """Repeated logins resolve to the same account."""
        first = reconciler.reconcile(_identity())
        second = reconciler.reconcile(_identity(email="CAROL@example.com"))

        assert first.id == second.id
        assert len(memory_store.users) == 1

    def test_name_defaults_to_local_part(self, reconciler):
        user = reconciler.reconcile(_identity(name=""))
        assert user.name == "carol"

    def test_inactive_provider_rejected(self, reconciler):
        """Disabled providers cannot be used to sign in."""
        with pytest.raises(PermissionDeniedError):
            reconciler.reconcile(_identity(provider="github"))

    def test_unknown_provider_rejected(self, reconciler):
        with pytest.raises(PermissionDeniedError):
            reconciler.reconcile(_identity(provider="myspace"))

    def test_missing_email_or_uid(self, reconciler):
        with pytest.raises(InvalidArgumentError):
            reconciler.reconcile(_identity(email=""))
        with pytest.raises(InvalidArgumentError):
            reconciler.reconcile(_identity(uid=""))

    def test_standard_account_email_collision(self, reconciler, memory_store):
        """An email owned by a password account is not silently linked."""
        memory_store.create_standard_user("Carol", "carol@example.com", "hash")

        with pytest.raises(AlreadyExistsError) as exc_info:
            reconciler.reconcile(_identity())
        assert exc_info.value.message == "email already registered"

    def test_provider_uid_already_linked(self, reconciler):
        """The same provider account cannot back two local accounts."""
        reconciler.reconcile(_identity())

        with pytest.raises(AlreadyExistsError):
            reconciler.reconcile(_identity(email="other@example.com"))

    def test_concurrent_create_returns_winner(self, reconciler, memory_store, monkeypatch):
        """A racing insert that loses on uniqueness returns the winner's account."""
        winner = memory_store.create_external_user(
            "Carol", "carol@example.com", "google", "g-123"
        )
        original = memory_store.get_external_user
        calls = {"n": 0}

        def stale_then_fresh(provider, email):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return original(provider, email)

        monkeypatch.setattr(memory_store, "get_external_user", stale_then_fresh)

        user = reconciler.reconcile(_identity())

        assert user.id == winner.id
        assert calls["n"] == 2
        assert len(memory_store.users) == 1
