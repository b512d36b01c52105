import unittest
from unittest.mock import patch

from laptop_ledger.services.errors import ItemNotRegistered, StoreUnavailable
from laptop_ledger.services.identity_resolver import (
    InventorySnapshotCache,
    known_refs,
    normalize_name,
    strip_code,
)
from laptop_ledger.services.local_cache import MemoryCache
from laptop_ledger.tests.helpers import FakeClock, LedgerTestEnvironment


class NormalizationTests(unittest.TestCase):
    def test_normalize_name_ignores_accents_case_spacing_and_punctuation(self):
        expected = "laptop num 7"
        self.assertEqual(normalize_name("Laptop  Núm. 7"), expected)
        self.assertEqual(normalize_name("laptop num 7"), expected)
        self.assertEqual(normalize_name("LAPTOP NUM 7"), expected)
        self.assertEqual(normalize_name(None), "")

    def test_strip_code_drops_whitespace_and_hyphens(self):
        self.assertEqual(strip_code(" QR-00 1 "), "QR001")
        self.assertEqual(strip_code(None), "")


class IdentityResolverTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.env = LedgerTestEnvironment()
        self.first, self.second, self.third = self.env.seed_laptops(3)

    def tearDown(self):
        self.env.close()

    async def test_cascade_matches_every_kind_of_reference(self):
        resolver = self.env.resolver
        self.assertEqual((await resolver.resolve(self.first.id)).id, self.first.id)
        self.assertEqual((await resolver.resolve("QR-002")).id, self.second.id)
        self.assertEqual((await resolver.resolve("QR 002")).id, self.second.id)
        self.assertEqual((await resolver.resolve("SN-0003")).id, self.third.id)
        self.assertEqual((await resolver.resolve("SN0003")).id, self.third.id)
        self.assertEqual((await resolver.resolve("Laptop 01")).id, self.first.id)
        self.assertEqual((await resolver.resolve("  laptop   02 ")).id, self.second.id)
        self.assertEqual((await resolver.resolve("lenovo thinkpad t483")).id, self.third.id)

    async def test_unknown_or_blank_reference_is_not_found(self):
        self.assertIsNone(await self.env.resolver.resolve("NOT-A-LAPTOP"))
        self.assertIsNone(await self.env.resolver.resolve("   "))
        with self.assertRaises(ItemNotRegistered) as ctx:
            await self.env.resolver.resolve_strict("NOT-A-LAPTOP")
        self.assertEqual(ctx.exception.ref, "NOT-A-LAPTOP")

    async def test_resolution_is_idempotent(self):
        first = await self.env.resolver.resolve("laptop 01")
        second = await self.env.resolver.resolve("laptop 01")
        self.assertEqual(first.id, second.id)

    async def test_accented_display_name_matches_plain_spellings(self):
        item = self.env.inventory.add_item(display_name="Laptop Núm. 7", scan_code="QR-777")
        for ref in ("Laptop  Núm. 7", "laptop num 7", "LAPTOP NUM 7"):
            resolved = await self.env.resolver.resolve(ref)
            self.assertEqual(resolved.id, item.id, ref)

    async def test_ambiguous_name_prefers_the_loaned_item(self):
        self.env.inventory.add_item(display_name="Spare Laptop", scan_code="QR-S1")
        loaned = self.env.inventory.add_item(display_name="Spare  laptop", scan_code="QR-S2")
        self.env.inventory.update(loaned.id, {"status": "loaned", "currentHolder": "ana@example.org"})

        resolved = await self.env.resolver.resolve("spare laptop")
        self.assertEqual(resolved.id, loaned.id)

    async def test_historical_scan_code_is_a_known_ref(self):
        renamed = self.env.inventory.update_identity(self.first.id, {"scanCode": "QR-NEW-001"})
        self.assertIn("QR-001", renamed.aliases)
        self.assertIn("QR-001", known_refs(renamed))
        self.assertIn("QRNEW001", known_refs(renamed))

    async def test_new_item_is_found_through_live_retry_when_snapshot_is_stale(self):
        cache = InventorySnapshotCache(MemoryCache(), max_age_seconds=0)
        cache.replace(self.env.inventory.list_all())
        resolver = type(self.env.resolver)(self.env.inventory, cache)
        added = self.env.inventory.add_item(display_name="Fresh Laptop", scan_code="QR-FRESH")

        self.assertEqual((await resolver.resolve("QR-FRESH")).id, added.id)

    async def test_resolve_many_keys_by_stripped_ref_and_drops_blanks(self):
        found = await self.env.resolver.resolve_many([" QR-001 ", "laptop 02", "NOPE", "  ", ""])
        self.assertEqual(list(found), ["QR-001", "laptop 02", "NOPE"])
        self.assertEqual(found["QR-001"].id, self.first.id)
        self.assertEqual(found["laptop 02"].id, self.second.id)
        self.assertIsNone(found["NOPE"])
        self.assertEqual(await self.env.resolver.resolve_many([]), {})

    async def test_resolve_many_shares_one_live_retry_between_misses(self):
        cache = InventorySnapshotCache(MemoryCache())
        cache.replace(self.env.inventory.list_all())
        resolver = type(self.env.resolver)(self.env.inventory, cache)
        fresh = [
            self.env.inventory.add_item(display_name=f"Fresh {index}", scan_code=f"QR-F{index}")
            for index in (1, 2)
        ]

        with patch.object(self.env.inventory, "list_all", wraps=self.env.inventory.list_all) as live:
            found = await resolver.resolve_many(["QR-001", "QR-F1", "QR-F2", "NOPE"])

        self.assertEqual(live.call_count, 1)
        self.assertEqual(found["QR-001"].id, self.first.id)
        self.assertEqual([found["QR-F1"].id, found["QR-F2"].id], [item.id for item in fresh])
        self.assertIsNone(found["NOPE"])

    async def test_store_outage_falls_back_to_cached_snapshot(self):
        cache = self.env.services.snapshot_cache
        cache.invalidate()
        with patch.object(self.env.inventory, "list_all", side_effect=StoreUnavailable("offline")):
            resolved = await self.env.resolver.resolve("QR-001")
        self.assertEqual(resolved.id, self.first.id)

    async def test_store_outage_without_any_snapshot_is_store_unavailable(self):
        resolver = type(self.env.resolver)(self.env.inventory, InventorySnapshotCache())
        with patch.object(self.env.inventory, "list_all", side_effect=StoreUnavailable("offline")):
            with self.assertRaises(StoreUnavailable):
                await resolver.resolve("QR-001")


class SnapshotCacheTests(unittest.TestCase):
    def test_snapshot_goes_stale_but_fallback_survives(self):
        clock = FakeClock()
        local = MemoryCache()
        cache = InventorySnapshotCache(local, max_age_seconds=30, clock=clock)
        env = LedgerTestEnvironment()
        try:
            env.seed_laptops(2)
            cache.replace(env.inventory.list_all())
        finally:
            env.close()

        self.assertEqual(len(cache.snapshot()), 2)
        clock.advance(31)
        self.assertIsNone(cache.snapshot())
        self.assertEqual(len(cache.fallback()), 2)

        restored = InventorySnapshotCache(local)
        self.assertEqual(len(restored.fallback()), 2)

    def test_invalidate_forces_a_reload(self):
        cache = InventorySnapshotCache()
        cache.replace([])
        self.assertEqual(cache.snapshot(), [])
        cache.invalidate(RuntimeError("feed error"))
        self.assertIsNone(cache.snapshot())


if __name__ == "__main__":
    unittest.main()
