from datetime import datetime, timedelta, timezone

import pytest

from idkeeper.service.codes import (
    CodePolicy,
    SingleUseCodes,
    generate_code,
    hash_code,
)
from idkeeper.service.email import NotificationKind
from idkeeper.service.errors import DeliveryFailedError, InvalidArgumentError, NotFoundError
from idkeeper.service.passwords import SecretHasher
from idkeeper.storage.memory import MemoryStore
from idkeeper.storage.models import CodeKind

from conftest import RecordingNotifier


class TestSecretHasher:
    def test_hash_and_verify(self):
        hasher = SecretHasher(time_cost=1, memory_cost=1024)
        stored = hasher.hash("TestPassword123!")

        assert hasher.verify(stored, "TestPassword123!")
        assert not hasher.verify(stored, "testpassword123!")

    def test_garbage_hash_does_not_verify(self):
        hasher = SecretHasher(time_cost=1, memory_cost=1024)
        assert not hasher.verify("not-a-hash", "TestPassword123!")
        assert not hasher.verify(None, "TestPassword123!")

    def test_needs_rehash_on_parameter_change(self):
        weak = SecretHasher(time_cost=1, memory_cost=1024)
        strong = SecretHasher(time_cost=2, memory_cost=2048)
        stored = weak.hash("TestPassword123!")

        assert not weak.needs_rehash(stored)
        assert strong.needs_rehash(stored)


def test_generated_codes_are_distinct_and_url_safe():
    codes = {generate_code() for _ in range(50)}
    assert len(codes) == 50
    assert all("." not in code and len(code) >= 22 for code in codes)


def test_hash_code_is_sha256_hex():
    digest = hash_code("abc")
    assert len(digest) == 64
    assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


class Clock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def store(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_standard_user("Alice", "alice@example.com", "hash")
    store.user_id = user.id
    return store


@pytest.fixture
def clock():
    return Clock()


def _codes(store, clock, single_outstanding=False):
    policy = CodePolicy(
        CodeKind.PASSWORD_RESET, timedelta(hours=24), NotificationKind.PASSWORD_RESET
    )
    return SingleUseCodes(store, policy, clock=clock, single_outstanding=single_outstanding)


class TestSingleUseCodes:
    def test_issue_redeem_consume(self, store, clock):
        codes = _codes(store, clock)
        code = codes.issue(store.user_id)

        record = codes.redeem(code)
        assert record.user_id == store.user_id
        codes.consume(record)

        with pytest.raises(NotFoundError):
            codes.redeem(code)

    def test_second_consume_is_rejected(self, store, clock):
        """Two redemptions of one code cannot both consume it."""
        codes = _codes(store, clock)
        code = codes.issue(store.user_id)
        first = codes.redeem(code)
        second = codes.redeem(code)

        codes.consume(first)
        with pytest.raises(NotFoundError):
            codes.consume(second)

    def test_redeem_does_not_consume(self, store, clock):
        """Looking a code up leaves it usable until consumed."""
        codes = _codes(store, clock)
        code = codes.issue(store.user_id)

        codes.redeem(code)
        assert codes.redeem(code).user_id == store.user_id

    def test_boundary_is_inclusive(self, store, clock):
        codes = _codes(store, clock)
        code = codes.issue(store.user_id)

        clock.now += timedelta(hours=24)
        assert codes.redeem(code)
        clock.now += timedelta(seconds=1)
        with pytest.raises(InvalidArgumentError):
            codes.redeem(code)

    def test_kinds_do_not_mix(self, store, clock):
        """A reset code cannot be redeemed by another flow."""
        code = _codes(store, clock).issue(store.user_id)
        other = SingleUseCodes(
            store,
            CodePolicy(CodeKind.MFA, timedelta(minutes=10), NotificationKind.MFA_CODE),
            clock=clock,
        )
        with pytest.raises(NotFoundError):
            other.redeem(code)

    def test_single_outstanding(self, store, clock):
        codes = _codes(store, clock, single_outstanding=True)
        first = codes.issue(store.user_id)
        second = codes.issue(store.user_id)

        with pytest.raises(NotFoundError):
            codes.redeem(first)
        assert codes.redeem(second)

    def test_empty_code(self, store, clock):
        with pytest.raises(InvalidArgumentError):
            _codes(store, clock).redeem("")

    def test_deliver(self, store, clock):
        codes = _codes(store, clock)
        notifier = RecordingNotifier()
        codes.deliver(notifier, "alice@example.com", "the-code")
        assert notifier.sent == [
            ("alice@example.com", NotificationKind.PASSWORD_RESET, "the-code")
        ]

        with pytest.raises(DeliveryFailedError) as exc_info:
            codes.deliver(
                RecordingNotifier(fail=True),
                "alice@example.com",
                "the-code",
                detail={"user_id": store.user_id},
            )
        assert exc_info.value.detail["committed"] is True
