"""
Unit tests for the shared volume and network registry.
"""
import threading

import pytest

from stackorch.errors import ResourceError
from stackorch.MANAGERS.resource_registry import ResourceRegistry
from stackorch.MODELS.named_resource import ResourceKind


@pytest.fixture
def registry(driver):
    return ResourceRegistry(driver)


class TestResourceRegistry:
    """Tests for attach/detach reference counting."""

    def test_volume_outlives_its_users_until_pruned(self, driver, registry):
        handles = [registry.attach("demo_data", ResourceKind.VOLUME, f"demo-app-{i}") for i in range(3)]
        assert registry.refcount("demo_data") == 3
        assert driver.events_of("create_volume") == ["demo_data"]

        for handle in handles[:2]:
            registry.detach(handle)
        assert registry.refcount("demo_data") == 1
        assert registry.destroy_unused() == set()
        assert "demo_data" in driver.volumes

        registry.detach(handles[2])
        assert registry.refcount("demo_data") == 0
        assert "demo_data" in driver.volumes

        assert registry.destroy_unused() == {"demo_data"}
        assert driver.volumes == set()
        assert not registry.get("demo_data").materialized

    def test_double_detach_is_harmless(self, registry):
        first = registry.attach("demo_data", ResourceKind.VOLUME, "a")
        registry.attach("demo_data", ResourceKind.VOLUME, "b")
        registry.detach(first)
        registry.detach(first)
        assert registry.refcount("demo_data") == 1

    def test_attach_after_prune_recreates(self, driver, registry):
        handle = registry.attach("demo_net", ResourceKind.NETWORK, "a")
        registry.detach(handle)
        assert registry.destroy_unused(ResourceKind.NETWORK) == {"demo_net"}
        registry.attach("demo_net", ResourceKind.NETWORK, "a")
        assert driver.events_of("create_network") == ["demo_net", "demo_net"]

    def test_prune_by_kind(self, driver, registry):
        registry.detach(registry.attach("shared", ResourceKind.VOLUME, "a"))
        registry.detach(registry.attach("shared", ResourceKind.NETWORK, "a"))
        assert registry.destroy_unused(ResourceKind.NETWORK) == {"shared"}
        assert "shared" in driver.volumes
        assert driver.networks == set()

    def test_declared_but_unused_is_not_created(self, driver, registry):
        registry.declare("demo_cache", ResourceKind.VOLUME)
        assert registry.get("demo_cache").refcount == 0
        assert registry.destroy_unused() == set()
        assert driver.events_of("create_volume") == []
        assert [r.name for r in registry.list(ResourceKind.VOLUME)] == ["demo_cache"]

    def test_create_failure_raises_resource_error(self, driver, registry):
        driver.broken_resources.add("demo_data")
        with pytest.raises(ResourceError) as exc_info:
            registry.attach("demo_data", ResourceKind.VOLUME, "a")
        assert exc_info.value.name == "demo_data"
        assert exc_info.value.kind == "volume"
        assert registry.refcount("demo_data") == 0

        driver.broken_resources.clear()
        registry.attach("demo_data", ResourceKind.VOLUME, "a")
        assert registry.refcount("demo_data") == 1

    def test_concurrent_attach_creates_once(self, driver, registry):
        barrier = threading.Barrier(8)

        def attach(i):
            barrier.wait()
            registry.attach("demo_data", ResourceKind.VOLUME, f"i{i}")

        threads = [threading.Thread(target=attach, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert registry.refcount("demo_data") == 8
        assert driver.events_of("create_volume") == ["demo_data"]
