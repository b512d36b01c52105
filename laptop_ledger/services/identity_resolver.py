"""Resolve an ambiguous item reference to one canonical inventory item.

Operators hand us whatever they have: a scanned barcode/QR payload, a serial
number printed on the chassis, the free-text name painted on the lid, or the
internal document id. Resolution walks a fixed cascade and stops at the
first hit:

1. internal id
2. scan code (as scanned, then whitespace/hyphen-stripped)
3. serial number (as scanned, then stripped)
4. display name, exact
5. display name, normalized (accents, case, punctuation and spacing ignored)
6. brand + model, normalized

Steps 5 and 6 may match several items; the one currently on loan wins since
an operator scanning an ambiguous name is almost always returning it.

Lookups run against a snapshot of the whole inventory. The snapshot lives in
an ``InventorySnapshotCache`` that is built once per session, replaced by the
inventory change feed and persisted to the local cache so a degraded network
can still resolve from the last known state.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
import unicodedata
from typing import Callable, Iterable

from pydantic import ValidationError

from laptop_ledger.schemas.records import ItemRecord
from laptop_ledger.services.change_feed import Subscription
from laptop_ledger.services.errors import ItemNotRegistered, StoreUnavailable
from laptop_ledger.services.inventory_store import InventoryStore
from laptop_ledger.services.local_cache import LocalCache
from laptop_ledger.services.store_io import call_store

RESOLVER_LOGGER = logging.getLogger("laptop_ledger.resolver")

SNAPSHOT_CACHE_KEY = "items_snapshot_v1"
_CODE_SEPARATORS = re.compile(r"[\s\-]+")


def normalize_name(value: str | None) -> str:
    decomposed = unicodedata.normalize("NFD", value or "")
    chars = []
    for ch in decomposed:
        if unicodedata.combining(ch):
            continue
        # Punctuation separates words ("Núm." and "num" are the same token).
        chars.append(" " if unicodedata.category(ch).startswith("P") else ch)
    return " ".join("".join(chars).lower().split())


def strip_code(value: str | None) -> str:
    return _CODE_SEPARATORS.sub("", value or "")


def known_refs(item: ItemRecord) -> set[str]:
    """Every string that has identified ``item`` in the ledger, past or present."""
    refs = {item.id, item.displayName, item.scanCode, item.serialNumber}
    refs.add(strip_code(item.scanCode))
    refs.add(strip_code(item.serialNumber))
    for alias in item.aliases:
        refs.add(alias)
        refs.add(strip_code(alias))
    return {ref for ref in refs if ref}


def _prefer_loaned(matches: list[ItemRecord]) -> ItemRecord | None:
    if not matches:
        return None
    for item in matches:
        if item.status == "loaned":
            return item
    return matches[0]


def resolve_in_snapshot(ref: str, items: Iterable[ItemRecord]) -> ItemRecord | None:
    candidate = (ref or "").strip()
    if not candidate:
        return None
    items = list(items)
    stripped = strip_code(candidate)

    for item in items:
        if item.id == candidate:
            return item

    for field in ("scanCode", "serialNumber"):
        for item in items:
            if getattr(item, field) == candidate:
                return item
        if stripped:
            for item in items:
                value = getattr(item, field)
                if value and strip_code(value) == stripped:
                    return item

    for item in items:
        if item.displayName == candidate:
            return item

    target = normalize_name(candidate)
    if not target:
        return None
    by_name = [item for item in items if normalize_name(item.displayName) == target]
    if by_name:
        return _prefer_loaned(by_name)
    by_brand_model = [
        item for item in items if normalize_name(f"{item.brand or ''} {item.model or ''}") == target
    ]
    return _prefer_loaned(by_brand_model)


class InventorySnapshotCache:
    def __init__(
        self,
        local_cache: LocalCache | None = None,
        max_age_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.local_cache = local_cache
        self.max_age_seconds = max_age_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._items: list[ItemRecord] | None = None
        self._last_known: list[ItemRecord] = []
        self._loaded_at = 0.0
        self.version = 0

    def snapshot(self) -> list[ItemRecord] | None:
        """The current snapshot, or None when it was invalidated or has gone stale."""
        with self._lock:
            if self._items is None:
                return None
            if self.max_age_seconds and self.clock() - self._loaded_at > self.max_age_seconds:
                return None
            return list(self._items)

    def replace(self, items: list[ItemRecord]) -> None:
        with self._lock:
            self._items = list(items)
            self._last_known = list(items)
            self._loaded_at = self.clock()
            self.version += 1
        self._persist(items)

    def invalidate(self, *_args) -> None:
        with self._lock:
            self._items = None

    def fallback(self) -> list[ItemRecord]:
        with self._lock:
            if self._last_known:
                return list(self._last_known)
        return self._load_persisted()

    def attach(self, inventory: InventoryStore) -> Subscription:
        return inventory.subscribe(self.replace, on_error=self.invalidate)

    def _persist(self, items: list[ItemRecord]) -> None:
        if self.local_cache is None:
            return
        try:
            payload = json.dumps([item.model_dump(mode="json") for item in items], ensure_ascii=True)
            self.local_cache.set(SNAPSHOT_CACHE_KEY, payload)
        except (OSError, TypeError, ValueError) as exc:
            RESOLVER_LOGGER.debug("Snapshot persist failed error=%s", exc)

    def _load_persisted(self) -> list[ItemRecord]:
        if self.local_cache is None:
            return []
        try:
            raw = self.local_cache.get(SNAPSHOT_CACHE_KEY)
            rows = json.loads(raw) if raw else []
        except (OSError, ValueError) as exc:
            RESOLVER_LOGGER.debug("Snapshot load failed error=%s", exc)
            return []
        items: list[ItemRecord] = []
        for row in rows if isinstance(rows, list) else []:
            try:
                items.append(ItemRecord.model_validate(row))
            except ValidationError:
                continue
        return items


class IdentityResolver:
    def __init__(
        self,
        inventory: InventoryStore,
        cache: InventorySnapshotCache | None = None,
        lookup_timeout: float = 4.0,
    ):
        self.inventory = inventory
        self.cache = cache or InventorySnapshotCache()
        self.lookup_timeout = lookup_timeout

    async def _live_items(self) -> list[ItemRecord]:
        items = await call_store(self.inventory.list_all, timeout=self.lookup_timeout)
        self.cache.replace(items)
        return items

    async def _load_items(self) -> tuple[list[ItemRecord], bool]:
        cached = self.cache.snapshot()
        if cached is not None:
            return cached, True
        try:
            return await self._live_items(), False
        except StoreUnavailable as exc:
            fallback = self.cache.fallback()
            if not fallback:
                raise
            RESOLVER_LOGGER.warning(
                "Live item lookup failed, resolving from cached snapshot items=%s error=%s",
                len(fallback),
                exc,
            )
            return fallback, True

    async def resolve(self, ref: str | None) -> ItemRecord | None:
        candidate = (ref or "").strip()
        if not candidate:
            return None
        items, from_cache = await self._load_items()
        found = resolve_in_snapshot(candidate, items)
        if found is None and from_cache:
            # The snapshot may predate an item registered elsewhere; one live retry.
            try:
                found = resolve_in_snapshot(candidate, await self._live_items())
            except StoreUnavailable as exc:
                RESOLVER_LOGGER.info("Live retry failed ref=%s error=%s", candidate, exc)
        return found

    async def resolve_strict(self, ref: str | None) -> ItemRecord:
        found = await self.resolve(ref)
        if found is None:
            raise ItemNotRegistered((ref or "").strip())
        return found

    async def resolve_many(self, refs: Iterable[str]) -> dict[str, ItemRecord | None]:
        """Resolve several refs against one snapshot load.

        Keys are the stripped refs; blanks are dropped. Misses against a
        cached snapshot share a single live retry.
        """
        candidates = [ref.strip() for ref in refs if ref and ref.strip()]
        if not candidates:
            return {}
        items, from_cache = await self._load_items()
        found = {ref: resolve_in_snapshot(ref, items) for ref in candidates}
        missing = [ref for ref, item in found.items() if item is None]
        if missing and from_cache:
            try:
                live = await self._live_items()
            except StoreUnavailable as exc:
                RESOLVER_LOGGER.info("Live retry failed refs=%s error=%s", len(missing), exc)
            else:
                for ref in missing:
                    found[ref] = resolve_in_snapshot(ref, live)
        return found
