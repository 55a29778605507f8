import pytest

from stream_sdk.stores import MemoryKeyValueStore, SqlKeyValueStore


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(params=["memory", "sql"])
async def store(request, clock, engine):
    if request.param == "memory":
        return MemoryKeyValueStore(clock=clock)
    store = SqlKeyValueStore(engine, clock=clock)
    await store.create_schema()
    return store


async def test_set_get_delete(store):
    await store.set("a", "1")
    assert await store.get("a") == "1"

    await store.set("a", "2")
    assert await store.get("a") == "2"

    await store.delete("a")
    assert await store.get("a") is None
    # Deleting a missing key is fine
    await store.delete("a")


async def test_ttl_expiry(store, clock):
    await store.set("short", "x", ttl=10)
    await store.set("forever", "y")

    clock.now += 5
    assert await store.get("short") == "x"

    clock.now += 6
    assert await store.get("short") is None
    assert await store.get("forever") == "y"


async def test_entry_lives_through_its_full_ttl(store, clock):
    await store.set("edge", "x", ttl=10)

    clock.now += 10
    assert await store.get("edge") == "x"
    assert await store.sweep_expired() == 0

    clock.now += 0.5
    assert await store.get("edge") is None


async def test_keys_by_prefix(store):
    await store.set("stream_checkpoint_1", "a")
    await store.set("stream_checkpoint_2", "b")
    await store.set("other", "c")

    assert sorted(await store.keys("stream_checkpoint_")) == ["stream_checkpoint_1", "stream_checkpoint_2"]
    assert len(await store.keys()) == 3


async def test_sweep_expired(store, clock):
    await store.set("a", "1", ttl=1)
    await store.set("b", "2", ttl=1)
    await store.set("c", "3", ttl=100)

    clock.now += 2
    assert await store.sweep_expired() == 2
    assert await store.keys() == ["c"]
