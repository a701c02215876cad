"""
Tests for TTL Support

These tests verify Time-To-Live (TTL) functionality:
- Keys expire after their TTL (lazy expiration on access)
- expire() / persist() / ttl_ms() manage deadlines
- cleanup_expired() actively removes expired keys

Run with: python -m pytest tests/test_ttl.py -v

Note: Some tests use time.sleep() and may be slow.
Run with -m "not slow" to skip slow tests.
"""

import time
import pytest

from kvlab.store.store import KVStore


class TestTTLBasic:
    """Test basic TTL functionality."""

    def test_put_with_zero_ttl(self, store: KVStore):
        """Test TTL=0 means no expiration."""
        store.put(b"key", b"value", ttl=0)
        assert store.get(b"key") == b"value"
        assert store.ttl_ms(b"key") == -1

    def test_ttl_of_missing_key(self, store: KVStore):
        assert store.ttl_ms(b"missing") == -2

    def test_ttl_remaining(self, store: KVStore):
        store.put(b"key", b"value", ttl=10)
        remaining = store.ttl_ms(b"key")
        assert 9000 < remaining <= 10000

    def test_overwrite_clears_ttl(self, store: KVStore):
        store.put(b"key", b"value", ttl=10)
        store.put(b"key", b"other")
        assert store.ttl_ms(b"key") == -1

    def test_keep_ttl(self, store: KVStore):
        store.put(b"key", b"value", ttl=10)
        store.put(b"key", b"other", keep_ttl=True)
        assert store.ttl_ms(b"key") > 0

    def test_expire_missing_key(self, store: KVStore):
        assert store.expire(b"missing", 10) is False

    def test_persist(self, store: KVStore):
        store.put(b"key", b"value", ttl=10)
        assert store.persist(b"key") is True
        assert store.ttl_ms(b"key") == -1
        assert store.persist(b"key") is False

    @pytest.mark.slow
    def test_key_expires_after_ttl(self, store: KVStore):
        """Test key expires after TTL seconds."""
        store.put(b"key", b"value", ttl=0.2)
        assert store.get(b"key") == b"value"

        time.sleep(0.3)

        assert store.get(b"key") is None
        assert store.exists(b"key") is False
        assert store.ttl_ms(b"key") == -2

    @pytest.mark.slow
    def test_expire_on_existing_key(self, store: KVStore):
        store.put(b"key", b"value")
        assert store.expire(b"key", 0.2) is True

        time.sleep(0.3)
        assert store.get(b"key") is None

    @pytest.mark.slow
    def test_expired_keys_hidden_from_keys(self, store: KVStore):
        store.put(b"short", b"1", ttl=0.1)
        store.put(b"long", b"2")

        time.sleep(0.2)
        assert store.keys() == [b"long"]


class TestTTLCleanup:
    """Test active expiration."""

    @pytest.mark.slow
    def test_cleanup_expired(self, store: KVStore):
        store.put(b"a", b"1", ttl=0.1)
        store.put(b"b", b"2", ttl=0.1)
        store.put(b"c", b"3")

        time.sleep(0.2)
        # Not yet accessed, so still physically present
        assert store.size() == 3
        assert store.get_stats()["expired_keys"] == 2

        assert store.cleanup_expired() == 2
        assert store.size() == 1

    def test_cleanup_nothing_expired(self, store: KVStore):
        store.put(b"a", b"1", ttl=60)
        assert store.cleanup_expired() == 0
