"""
Integration Tests

End-to-end scenarios run through KVClient against a live server:
- Round trips for every value type
- Expiry, set dedup, sorted-set ordering, geo, cardinality estimates
- Pipelines, transactions, consumer groups and pub/sub

Run with: python -m pytest tests/test_integration.py -v
"""

import threading
import time

import pytest

from kvlab.client import GeoLocation, KVClient
from kvlab.exceptions import NotFound

MONAS = GeoLocation("Monas", 106.818489, -6.178966)
GAMBIR = GeoLocation("Gambir", 106.821568, -6.180662)


@pytest.mark.integration
class TestRoundTrip:
    """Writing then reading returns the written value."""

    def test_string(self, client: KVClient):
        client.set("name", "Dicki Darmawan Saputra")
        assert client.get("name") == "Dicki Darmawan Saputra"

    def test_binary_string(self, client_for):
        raw = client_for(decode_responses=False)
        payload = bytes(range(256))
        raw.set("blob", payload)
        assert raw.get("blob") == payload

    def test_list(self, client: KVClient):
        client.rpush("queue", "job1", "job2", "job3")
        assert client.lpop("queue") == "job1"
        assert client.lrange("queue", 0, -1) == ["job2", "job3"]

    def test_hash(self, client: KVClient):
        profile = {"name": "Dicki", "city": "Jakarta", "role": "engineer"}
        client.hset("user:1", mapping=profile)
        assert client.hgetall("user:1") == profile

    def test_delete_then_get(self, client: KVClient):
        client.set("name", "Dicki")
        assert client.delete("name") == 1
        with pytest.raises(NotFound):
            client.get("name")

    def test_clients_share_state(self, client: KVClient, client_for):
        other = client_for()
        client.set("shared", "v1")
        assert other.get("shared") == "v1"
        other.set("shared", "v2")
        assert client.get("shared") == "v2"


@pytest.mark.integration
class TestExpiry:
    """A key with a TTL is readable until the TTL elapses."""

    @pytest.mark.slow
    def test_value_expires_after_three_seconds(self, client: KVClient):
        client.set("session", "token", ex=3)
        assert client.get("session") == "token"

        time.sleep(3.5)

        with pytest.raises(NotFound):
            client.get("session")

    def test_expired_and_missing_look_the_same(self, client: KVClient):
        client.set("short", "v", px=50)
        time.sleep(0.2)

        with pytest.raises(NotFound) as expired:
            client.get("short")
        with pytest.raises(NotFound) as missing:
            client.get("never-set")
        assert str(expired.value) == str(missing.value)


@pytest.mark.integration
class TestCollections:
    """Set dedup and sorted-set ordering."""

    def test_set_dedup(self, client: KVClient):
        for _ in range(3):
            client.sadd("names", "Dicki", "Darmawan", "Saputra")
        client.sadd("names", "Dicki")

        assert client.scard("names") == 3
        assert sorted(client.smembers("names")) == ["Darmawan", "Dicki", "Saputra"]

    def test_sorted_set_range_and_pop_max(self, client: KVClient):
        client.zadd("scores", {"Darmawan": 70, "Saputra": 80, "Dicki": 100})
        assert client.zrange("scores", 0, -1) == ["Darmawan", "Saputra", "Dicki"]

        assert client.zpopmax("scores") == [("Dicki", 100.0)]
        assert client.zpopmax("scores") == [("Saputra", 80.0)]
        assert client.zpopmax("scores") == [("Darmawan", 70.0)]
        assert client.zpopmax("scores") == []


@pytest.mark.integration
class TestGeoAndCardinality:
    """Great-circle distances and distinct counts."""

    def test_geo_distance_and_radius(self, client: KVClient):
        assert client.geoadd("places", MONAS, GAMBIR) == 2

        assert client.geodist("places", "Monas", "Gambir", unit="km") == pytest.approx(0.3892, abs=1e-4)
        found = client.geosearch(
            "places", longitude=106.8195, latitude=-6.1795, radius=5, unit="km"
        )
        assert found == ["Monas", "Gambir"]

    def test_geo_radius_no_match(self, client: KVClient):
        client.geoadd("places", MONAS)
        assert client.geosearch("places", longitude=0, latitude=0, radius=5, unit="km") == []

    def test_cardinality_estimate(self, client: KVClient):
        client.pfadd("visitors", "Dicki", "Darmawan", "Saputra")
        client.pfadd("visitors", "Dicki", "Budi", "Joko")
        client.pfadd("visitors", "Rully", "Budi", "Joko")

        assert client.pfcount("visitors") == 6


@pytest.mark.integration
class TestBatches:
    """Pipelines and transactions."""

    def test_pipeline_set_with_expiry(self, client: KVClient):
        pipe = client.pipeline()
        pipe.set("first", "Dicki", ex=60)
        pipe.set("last", "Saputra", ex=60)
        assert pipe.execute() == [True, True]

        assert client.get("first") == "Dicki"
        assert client.get("last") == "Saputra"

    def test_transaction_set_with_expiry(self, client: KVClient):
        with client.pipeline(transaction=True) as tx:
            tx.set("first", "Dicki", ex=60).set("last", "Saputra", ex=60)
            assert tx.execute() == [True, True]

        assert client.get("first") == "Dicki"
        assert client.get("last") == "Saputra"
        assert 0 < client.ttl("last") <= 60


@pytest.mark.integration
class TestConsumerGroups:
    """Group reads over a stream of ten entries."""

    @pytest.fixture
    def orders(self, client: KVClient) -> KVClient:
        for i in range(10):
            client.xadd("orders", {"order": str(i)})
        client.xgroup_create("orders", "billing", id="0")
        client.xgroup_createconsumer("orders", "billing", "worker-1")
        return client

    def test_read_new_entries_in_batches(self, orders: KVClient):
        [(stream, first)] = orders.xreadgroup("billing", "worker-1", {"orders": ">"}, count=2)
        [(_, second)] = orders.xreadgroup("billing", "worker-1", {"orders": ">"}, count=2)

        assert stream == "orders"
        assert len(first) == 2
        assert [e.fields["order"] for e in first] == ["0", "1"]
        assert {e.id for e in first}.isdisjoint(e.id for e in second)

    def test_consumers_split_the_stream(self, orders: KVClient):
        seen = []
        for consumer in ("worker-1", "worker-2") * 5:
            for _, entries in orders.xreadgroup("billing", consumer, {"orders": ">"}, count=1):
                seen.extend(e.id for e in entries)

        assert len(seen) == len(set(seen)) == 10
        assert orders.xreadgroup("billing", "worker-1", {"orders": ">"}) == []

    def test_blocking_read_returns_early(self, orders: KVClient, client_for):
        orders.xreadgroup("billing", "worker-1", {"orders": ">"})
        producer = client_for()
        timer = threading.Timer(0.2, producer.xadd, args=("orders", {"order": "late"}))
        timer.start()
        try:
            [(_, entries)] = orders.xreadgroup(
                "billing", "worker-1", {"orders": ">"}, count=1, block=5000
            )
        finally:
            timer.join()
        assert entries[0].fields == {"order": "late"}

    def test_blocking_read_times_out_empty(self, orders: KVClient):
        orders.xreadgroup("billing", "worker-1", {"orders": ">"})
        started = time.monotonic()
        assert orders.xreadgroup("billing", "worker-1", {"orders": ">"}, block=300) == []
        assert time.monotonic() - started >= 0.29


@pytest.mark.integration
class TestPubSub:
    """Publish and receive."""

    def test_messages_arrive_in_publish_order(self, client: KVClient):
        with client.subscribe("notifications") as sub:
            for i in range(5):
                assert client.publish("notifications", f"message {i}") == 1

            received = []
            while len(received) < 5:
                message = sub.get_message(timeout=2)
                assert message is not None, f"only received {received}"
                received.append(message.data)

        assert received == [f"message {i}" for i in range(5)]

    def test_publish_with_no_subscribers(self, client: KVClient):
        assert client.publish("notifications", "dropped") == 0

    def test_closed_subscription_stops_delivery(self, client: KVClient):
        sub = client.subscribe("notifications")
        sub.close()
        assert client.publish("notifications", "after close") == 0
        assert sub.get_message(timeout=0.1) is None
