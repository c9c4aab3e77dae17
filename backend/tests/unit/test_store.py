import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from netrounds.infra.store import KeyedStore, TransientStoreError


class FlakyClient:
    """Fails the first ``failures`` calls with a connection error."""

    def __init__(self, failures, *, error=RedisConnectionError):
        self.failures = failures
        self.error = error
        self.calls = 0
        self.data = {}

    async def get(self, key):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("redis went away")
        return self.data.get(key)

    async def set(self, key, value):
        self.data[key] = value


@pytest.mark.asyncio
async def test_store_retries_connection_errors():
    client = FlakyClient(2)
    client.data["k"] = '{"a": 1}'
    store = KeyedStore(client, max_retries=3, retry_delay_seconds=0)

    assert await store.get("k") == {"a": 1}
    assert client.calls == 3


@pytest.mark.asyncio
async def test_store_gives_up_with_transient_error():
    client = FlakyClient(10)
    store = KeyedStore(client, max_retries=3, retry_delay_seconds=0)

    with pytest.raises(TransientStoreError) as excinfo:
        await store.get("k")
    assert excinfo.value.code == "store_unavailable"
    assert client.calls == 3


@pytest.mark.asyncio
async def test_store_does_not_retry_other_errors():
    client = FlakyClient(1, error=ResponseError)
    store = KeyedStore(client, max_retries=3, retry_delay_seconds=0)

    with pytest.raises(ResponseError):
        await store.get("k")
    assert client.calls == 1


@pytest.mark.asyncio
async def test_prefix_listing_only_returns_matching_keys(fake_redis):
    store = KeyedStore(retry_delay_seconds=0)
    await store.set("registration:r1:p1", {"id": 1})
    await store.set("registration:r1:p2", {"id": 2})
    await store.set("registration:r10:p1", {"id": 3})
    await store.set("registration_ref:x", {"id": 4})

    values = await store.get_by_prefix("registration:r1:")

    assert sorted(item["id"] for item in values) == [1, 2]


@pytest.mark.asyncio
async def test_missing_key_is_none(fake_redis):
    store = KeyedStore()
    assert await store.get("nothing-here") is None
    await store.set("k", {"v": [1, 2]})
    await store.delete("k")
    assert await store.get("k") is None


@pytest.mark.asyncio
async def test_add_keeps_the_first_writer(fake_redis):
    store = KeyedStore()
    assert await store.add("matching_lock:r1:x", {"plan": "first"}) is True
    assert await store.add("matching_lock:r1:x", {"plan": "second"}) is False
    assert await store.get("matching_lock:r1:x") == {"plan": "first"}
