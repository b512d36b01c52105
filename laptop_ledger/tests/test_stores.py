import argparse
import asyncio
import time
import unittest
from datetime import date

from laptop_ledger.models.ledger_models import Item
from laptop_ledger.scripts.upsert_item import upsert_item
from laptop_ledger.services.change_feed import ChangeFeed
from laptop_ledger.services.errors import ItemNotRegistered, MalformedRecord, StoreUnavailable
from laptop_ledger.services.local_cache import JsonFileCache
from laptop_ledger.services.store_io import call_store
from laptop_ledger.tests.helpers import LedgerTestEnvironment


class InventoryStoreTests(unittest.TestCase):
    def setUp(self):
        self.env = LedgerTestEnvironment()
        self.laptops = self.env.seed_laptops(2)

    def tearDown(self):
        self.env.close()

    def test_holder_invariant_is_enforced(self):
        laptop = self.laptops[0]
        with self.assertRaises(ValueError):
            self.env.inventory.update(laptop.id, {"status": "loaned"})
        with self.assertRaises(ValueError):
            self.env.inventory.update(laptop.id, {"currentHolder": "ana@example.org"})
        self.assertEqual(self.env.inventory.get(laptop.id).status, "available")

    def test_new_items_cannot_start_on_loan(self):
        with self.assertRaises(ValueError):
            self.env.inventory.add_item(display_name="X", status="loaned")

    def test_update_of_unknown_item(self):
        with self.assertRaises(ItemNotRegistered):
            self.env.inventory.update("missing", {"status": "damaged"})

    def test_batch_update_is_all_or_nothing(self):
        first, second = self.laptops
        with self.assertRaises(ValueError):
            self.env.inventory.batch_update(
                [
                    (first.id, {"status": "loaned", "currentHolder": "201"}),
                    (second.id, {"status": "loaned"}),
                ]
            )
        self.assertEqual(self.env.inventory.get(first.id).status, "available")

    def test_identity_changes_keep_aliases(self):
        laptop = self.laptops[0]
        self.env.inventory.update_identity(laptop.id, {"displayName": "Laptop Uno"})
        updated = self.env.inventory.update_identity(laptop.id, {"displayName": "Laptop One"})
        self.assertEqual(updated.displayName, "Laptop One")
        self.assertEqual(sorted(updated.aliases), ["Laptop 01", "Laptop Uno"])
        with self.assertRaises(ValueError):
            self.env.inventory.update_identity(laptop.id, {"status": "loaned"})

    def test_malformed_row_is_rejected_at_the_boundary(self):
        with self.env.services.session_factory() as db:
            db.add(Item(ItemID="bad-row", DisplayName="Broken", Status="lost"))
            db.commit()
        with self.assertRaises(MalformedRecord):
            self.env.inventory.list_all()

    def test_counts(self):
        self.env.inventory.update(self.laptops[0].id, {"status": "damaged"})
        counts = self.env.inventory.counts()
        self.assertEqual(counts["totalItems"], 2)
        self.assertEqual(counts["availableItems"], 1)
        self.assertEqual(counts["damagedItems"], 1)
        self.assertEqual(counts["loanedItems"], 0)


class UpsertItemTests(unittest.TestCase):
    def setUp(self):
        self.env = LedgerTestEnvironment()
        self.laptop = self.env.seed_laptops(1)[0]

    def tearDown(self):
        self.env.close()

    def args(self, **values):
        fields = dict.fromkeys(("item_id", "display_name", "brand", "model", "serial_number", "scan_code"))
        fields.update(status="available", alias=[])
        fields.update(values)
        return argparse.Namespace(**fields)

    def test_find_by_identity_field(self):
        self.assertEqual([item.id for item in self.env.inventory.find_by("serialNumber", "SN-0001")], [self.laptop.id])
        self.assertEqual(self.env.inventory.find_by("scanCode", "QR-404"), [])
        with self.assertRaises(ValueError):
            self.env.inventory.find_by("status", "available")

    def test_known_serial_updates_instead_of_duplicating(self):
        item = upsert_item(self.env.inventory, self.args(serial_number="SN-0001", display_name="Laptop Uno"))
        self.assertEqual(item.id, self.laptop.id)
        self.assertEqual(item.displayName, "Laptop Uno")
        self.assertIn("Laptop 01", item.aliases)

        by_code = upsert_item(self.env.inventory, self.args(scan_code="QR-001", alias=["OLD-TAG-1"]))
        self.assertEqual(by_code.id, self.laptop.id)
        self.assertIn("OLD-TAG-1", by_code.aliases)
        self.assertEqual(len(self.env.inventory.list_all()), 1)

    def test_unknown_identity_registers_a_new_item(self):
        item = upsert_item(self.env.inventory, self.args(serial_number="SN-9999", display_name="Laptop 99"))
        self.assertNotEqual(item.id, self.laptop.id)
        self.assertEqual(item.status, "available")
        self.assertEqual(len(self.env.inventory.list_all()), 2)


class LedgerStoreTests(unittest.TestCase):
    def setUp(self):
        self.env = LedgerTestEnvironment()

    def tearDown(self):
        self.env.close()

    def append(self, **overrides):
        fields = {"item_ref": "item-1", "borrower_key": "ana@example.org", "destination": "Home", "purpose": "loan"}
        fields.update(overrides)
        return self.env.ledger.append(**fields)

    def test_close_is_single_shot(self):
        event = self.append()
        closed = self.env.ledger.close(event.id, returned_by="ana@example.org", notes="scratched lid")
        self.assertEqual(closed.status, "returned")
        self.assertIsNotNone(closed.returnedAt)
        self.assertEqual(closed.notes, "scratched lid")
        self.assertIsNone(self.env.ledger.close(event.id, returned_by="someone else"))

    def test_query_filters_and_pagination(self):
        for index in range(5):
            self.append(borrower_key=f"user{index % 2}@example.org", classroom="201" if index == 4 else None)
        self.assertEqual(len(self.env.ledger.query(borrower_key="user0@example.org")), 3)
        self.assertEqual(len(self.env.ledger.query(limit=2)), 2)
        self.assertEqual(len(self.env.ledger.query(limit=2, offset=4)), 1)
        self.assertEqual(len(self.env.ledger.query(classroom="201")), 1)
        self.assertEqual(self.env.ledger.query(item_refs=[]), [])
        with self.assertRaises(ValueError):
            self.env.ledger.query(status="lost")

    def test_daily_counts(self):
        event = self.append()
        self.env.ledger.close(event.id, returned_by="ana@example.org")
        self.append()
        counts = self.env.ledger.daily_counts()
        self.assertEqual(counts["loansToday"], 2)
        self.assertEqual(counts["returnsToday"], 1)
        self.assertEqual(self.env.ledger.daily_counts(date(2000, 1, 1))["loansToday"], 0)


class ChangeFeedTests(unittest.TestCase):
    def test_subscription_delivers_initially_and_after_each_write(self):
        env = LedgerTestEnvironment()
        try:
            deliveries = []
            subscription = env.inventory.subscribe(deliveries.append)
            env.seed_laptops(2)
            self.assertEqual([len(batch) for batch in deliveries], [0, 1, 2])
            subscription.unsubscribe()
            env.seed_laptops(1)
            self.assertEqual(len(deliveries), 3)
        finally:
            env.close()

    def test_failed_delivery_keeps_subscription_registered(self):
        feed = ChangeFeed()
        calls = {"n": 0}
        errors = []
        deliveries = []

        def flaky_fetch():
            calls["n"] += 1
            if calls["n"] == 2:
                raise StoreUnavailable("feed dropped")
            return calls["n"]

        subscription = feed.subscribe("items", flaky_fetch, deliveries.append, errors.append)
        feed.publish("items")
        self.assertEqual(len(errors), 1)
        self.assertEqual(subscription.failures, 1)
        self.assertEqual(feed.subscriber_count("items"), 1)

        feed.publish("items")
        self.assertEqual(deliveries, [1, 3])
        self.assertEqual(subscription.failures, 0)
        feed.publish("loanEvents")
        self.assertEqual(deliveries, [1, 3])


class StoreIoTests(unittest.IsolatedAsyncioTestCase):
    async def test_call_store_timeout_is_store_unavailable(self):
        with self.assertRaises(StoreUnavailable):
            await call_store(time.sleep, 0.5, timeout=0.01)

    async def test_call_store_passes_results_through(self):
        self.assertEqual(await call_store(sum, [1, 2, 3], timeout=1), 6)
        await asyncio.sleep(0)


class JsonFileCacheTests(unittest.TestCase):
    def test_round_trip_and_corrupt_file(self):
        env = LedgerTestEnvironment()
        try:
            path = env.services.settings.cache_path + ".extra"
            cache = JsonFileCache(path)
            self.assertIsNone(cache.get("k"))
            cache.set("k", "v")
            self.assertEqual(JsonFileCache(path).get("k"), "v")
            with open(path, "w", encoding="utf-8") as handle:
                handle.write("{not json")
            self.assertIsNone(cache.get("k"))
        finally:
            env.close()


if __name__ == "__main__":
    unittest.main()
