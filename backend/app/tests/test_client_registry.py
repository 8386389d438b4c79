import threading
import time

from app.services.client_registry import ClientRegistry


def test_concurrent_first_requests_share_one_handle():
    builds = []

    def factory(key):
        time.sleep(0.05)
        handle = object()
        builds.append(handle)
        return handle

    registry = ClientRegistry(factory, name="test")
    barrier = threading.Barrier(8)
    results = []

    def worker():
        barrier.wait()
        results.append(registry.get_client("tenant-a"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(builds) == 1
    assert all(handle is builds[0] for handle in results)
    assert len(registry) == 1


def test_distinct_keys_get_distinct_handles_and_evict_closes():
    closed = []
    registry = ClientRegistry(lambda key: {"key": key}, closer=closed.append, name="test")

    a = registry.get_client("a")
    b = registry.get_client("b")
    assert a is not b
    assert registry.get_client("a") is a

    assert registry.evict("a") is True
    assert registry.evict("a") is False
    assert closed == [a]
    assert "a" not in registry
    assert registry.get_client("a") is not a

    assert registry.evict_all() == 2


def test_per_call_builder_overrides_factory():
    registry = ClientRegistry(name="storage")
    handle = registry.get_client("endpoint|key|bucket", lambda: "storage-handle")
    assert handle == "storage-handle"
    assert registry.get_client("endpoint|key|bucket", lambda: "other") == "storage-handle"


def test_rotated_keys_do_not_leave_locks_behind():
    registry = ClientRegistry(lambda key: {"key": key}, name="test")
    for i in range(20):
        registry.get_client(f"postgres://tenant@db/{i}")
        registry.evict(f"postgres://tenant@db/{i}")
    registry.evict("never-built")

    assert len(registry) == 0
    assert registry._key_locks == {}

    registry.get_client("a")
    registry.get_client("b")
    registry.evict_all()
    assert registry._key_locks == {}
