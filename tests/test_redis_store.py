"""RedisStore against a live server; skipped when none is reachable."""

import os
import uuid

import pytest

from collabboard.storage.errors import ConstraintViolation, StoreUnavailable
from collabboard.storage.redis_store import RedisStore

REDIS_URL = os.environ.get("TEST_REDIS_URL", "redis://localhost:6379/15")


@pytest.fixture
def redis_store():
    store = RedisStore(REDIS_URL, prefix=f"test-{uuid.uuid4().hex[:8]}", socket_timeout=0.5)
    try:
        store.verify_connection()
    except StoreUnavailable:
        pytest.skip("Redis not available")
    yield store
    keys = list(store.client.scan_iter(match=f"{store.prefix}:*"))
    if keys:
        store.client.delete(*keys)
    store.close()


class TestRedisStore:
    def test_user_round_trip(self, redis_store):
        user = redis_store.create_user("Alice", "Alice@Example.com")

        assert redis_store.get_user(user.id).email == "alice@example.com"
        assert redis_store.get_user_by_email("alice@example.com").id == user.id

    def test_duplicate_email(self, redis_store):
        redis_store.create_user("Alice", "alice@example.com")

        with pytest.raises(ConstraintViolation):
            redis_store.create_user("Alice 2", "alice@example.com")

    def test_update_user_fields(self, redis_store):
        user = redis_store.create_user("Alice", "alice@example.com")

        assert redis_store.set_user_active(user.id, False).is_active is False
        assert redis_store.update_user_role(user.id, "admin").role == "admin"
        assert redis_store.set_user_active("missing", True) is None

    def test_token_set_operations(self, redis_store):
        user = redis_store.create_user("Alice", "alice@example.com")
        redis_store.add_token(user.id, "t1")
        redis_store.add_token(user.id, "t2")
        redis_store.remove_token(user.id, "t1")

        assert redis_store.list_tokens(user.id) == {"t2"}
        assert redis_store.contains_token(user.id, "t2")

        redis_store.replace_tokens(user.id, ["t3"])
        assert redis_store.list_tokens(user.id) == {"t3"}

        redis_store.replace_tokens(user.id, [])
        assert list(redis_store.iter_users_with_tokens()) == []

    def test_iter_users_with_tokens(self, redis_store):
        alice = redis_store.create_user("Alice", "alice@example.com")
        bob = redis_store.create_user("Bob", "bob@example.com")
        redis_store.add_token(alice.id, "t1")
        redis_store.add_token(bob.id, "t2")
        redis_store.clear_tokens(bob.id)

        assert list(redis_store.iter_users_with_tokens()) == [alice.id]

    def test_password_record(self, redis_store):
        user = redis_store.create_user("Alice", "alice@example.com")
        redis_store.save_password(user.id, "hash", "argon2id")

        assert redis_store.get_password_record(user.id) == ("hash", "argon2id")
