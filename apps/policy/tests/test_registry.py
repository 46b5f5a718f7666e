from __future__ import annotations

import threading

from django.test import SimpleTestCase

from apps.policy.config import PolicyConfig, StaticConfigLoader
from apps.policy.errors import PolicyError
from apps.policy.registry import PolicyRegistry


class PolicyRegistryTests(SimpleTestCase):
    def setUp(self) -> None:
        self.loader = StaticConfigLoader(PolicyConfig(version="1.0.0"))
        self.registry = PolicyRegistry(self.loader)

    def test_get_or_create_is_idempotent(self) -> None:
        first = self.registry.get_or_create_resolver("acme", "sensor")
        second = self.registry.get_or_create_resolver("acme", "SENSOR")

        self.assertIs(first, second)
        self.assertIs(self.registry.get_resolver("acme", "sensor"), first)
        self.assertIsNone(self.registry.get_resolver("acme", "dtu"))

    def test_concurrent_creators_converge(self) -> None:
        results = []
        barrier = threading.Barrier(8)

        def create() -> None:
            barrier.wait()
            results.append(self.registry.get_or_create_resolver("acme", "gateway"))

        threads = [threading.Thread(target=create) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(results), 8)
        self.assertEqual(len({id(resolver) for resolver in results}), 1)
        self.assertEqual(self.registry.stats()["total_resolvers"], 1)

    def test_warmup_builds_every_configured_type(self) -> None:
        created = self.registry.warmup(["default", "acme"])

        self.assertEqual(created, 12)
        self.assertEqual(self.registry.registered_tenants(), ["acme", "default"])
        self.assertEqual(len(self.registry.tenant_resolvers("acme")), 6)

    def test_reload_swaps_whole_snapshot(self) -> None:
        old = self.registry.get_or_create_resolver("acme", "sensor")
        self.loader.config = PolicyConfig(version="2.0.0")

        config = self.registry.reload()
        fresh = self.registry.get_or_create_resolver("acme", "sensor")

        self.assertEqual(config.version, "2.0.0")
        self.assertIsNot(old, fresh)
        self.assertEqual(old.config.version, "1.0.0")
        self.assertEqual(fresh.config.version, "2.0.0")
        self.assertEqual(self.registry.stats()["config_version"], "2.0.0")

    def test_reload_failure_keeps_current_snapshot(self) -> None:
        resolver = self.registry.get_or_create_resolver("acme", "sensor")

        class BrokenLoader:
            def load(self) -> PolicyConfig:
                raise PolicyError("bad yaml")

        self.registry._loader = BrokenLoader()
        with self.assertRaises(PolicyError):
            self.registry.reload()
        self.assertIs(self.registry.get_resolver("acme", "sensor"), resolver)

    def test_invalidate(self) -> None:
        self.registry.get_or_create_resolver("acme", "sensor")
        self.registry.get_or_create_resolver("acme", "dtu")
        self.registry.get_or_create_resolver("beta", "dtu")

        self.assertTrue(self.registry.invalidate("acme", "sensor"))
        self.assertFalse(self.registry.invalidate("acme", "sensor"))
        self.assertTrue(self.registry.invalidate("beta"))
        self.assertFalse(self.registry.invalidate("missing"))
        self.assertEqual(self.registry.stats()["tenant_distribution"], {"acme": 1})

    def test_invalidate_and_clear_leave_published_snapshot_intact(self) -> None:
        resolver = self.registry.get_or_create_resolver("acme", "sensor")
        published = self.registry._snapshot

        self.assertTrue(self.registry.invalidate("acme", "sensor"))
        self.assertIsNot(self.registry._snapshot, published)
        self.assertIs(published.lookup("acme", "sensor"), resolver)
        self.assertIsNone(self.registry.get_resolver("acme", "sensor"))

        self.registry.get_or_create_resolver("beta", "dtu")
        before_clear = self.registry._snapshot
        self.registry.clear()
        self.assertEqual(before_clear.count(), 1)
        self.assertEqual(self.registry.registered_tenants(), [])

    def test_strict_tenants_and_unknown_types(self) -> None:
        registry = PolicyRegistry(
            StaticConfigLoader(
                PolicyConfig(tenants=["acme"], strict_tenants=True, allow_unknown_device_types=False)
            )
        )

        with self.assertRaises(PolicyError):
            registry.get_or_create_resolver("other", "sensor")
        with self.assertRaises(PolicyError):
            registry.get_or_create_resolver("acme", "toaster")
        self.assertFalse(registry.is_device_type_supported("toaster"))
        self.assertEqual(registry.get_or_create_resolver("acme", "ps_ctrl").device_type, "ps-ctrl")

    def test_stats_distribution(self) -> None:
        self.registry.get_or_create_resolver("acme", "sensor")
        self.registry.get_or_create_resolver("beta", "sensor")

        stats = self.registry.stats()
        self.assertEqual(stats["total_tenants"], 2)
        self.assertEqual(stats["device_type_distribution"], {"sensor": 2})
        self.registry.clear()
        self.assertEqual(self.registry.stats()["total_resolvers"], 0)
