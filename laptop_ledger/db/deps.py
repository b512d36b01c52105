from __future__ import annotations

import threading
from collections.abc import Generator
from dataclasses import dataclass

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from laptop_ledger.config import LedgerSettings
from laptop_ledger.db.session import create_ledger_engine, create_session_factory, init_schema
from laptop_ledger.services.audit_service import AuditTrail
from laptop_ledger.services.change_feed import ChangeFeed, Subscription
from laptop_ledger.services.identity_resolver import IdentityResolver, InventorySnapshotCache
from laptop_ledger.services.inventory_store import InventoryStore
from laptop_ledger.services.ledger_store import LedgerStore
from laptop_ledger.services.local_cache import JsonFileCache, LocalCache, MemoryCache
from laptop_ledger.services.notification_service import NotificationDispatcher
from laptop_ledger.services.reconciler import Reconciler
from laptop_ledger.services.scan_session import ScanSessionController


@dataclass
class LedgerServices:
    settings: LedgerSettings
    engine: Engine
    session_factory: sessionmaker
    feed: ChangeFeed
    inventory: InventoryStore
    ledger: LedgerStore
    snapshot_cache: InventorySnapshotCache
    resolver: IdentityResolver
    audit: AuditTrail
    notifier: NotificationDispatcher
    reconciler: Reconciler
    snapshot_subscription: Subscription | None = None

    def scan_session(self, mode: str = "single_loan", **overrides) -> ScanSessionController:
        """A scan controller wired to this graph, with debounce and timeout from settings."""
        overrides.setdefault("debounce_seconds", self.settings.scan_debounce_seconds)
        overrides.setdefault("session_timeout_seconds", self.settings.scan_session_timeout_seconds)
        return ScanSessionController(self.resolver, self.reconciler, mode, **overrides)

    def close(self) -> None:
        if self.snapshot_subscription is not None:
            self.snapshot_subscription.unsubscribe()
            self.snapshot_subscription = None
        self.engine.dispose()


def build_services(settings: LedgerSettings, *, create_schema: bool = True) -> LedgerServices:
    engine = create_ledger_engine(settings.db_url)
    if create_schema:
        init_schema(engine)
    session_factory = create_session_factory(engine)
    feed = ChangeFeed()
    inventory = InventoryStore(session_factory, feed)
    ledger = LedgerStore(session_factory, feed)

    local_cache: LocalCache = JsonFileCache(settings.cache_path) if settings.cache_path else MemoryCache()
    snapshot_cache = InventorySnapshotCache(local_cache)
    resolver = IdentityResolver(inventory, snapshot_cache, lookup_timeout=settings.lookup_timeout_seconds)
    audit = AuditTrail(session_factory)
    notifier = NotificationDispatcher(session_factory)
    reconciler = Reconciler(
        resolver,
        ledger,
        inventory,
        notifier=notifier,
        audit=audit,
        write_timeout=settings.write_timeout_seconds,
    )
    services = LedgerServices(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        feed=feed,
        inventory=inventory,
        ledger=ledger,
        snapshot_cache=snapshot_cache,
        resolver=resolver,
        audit=audit,
        notifier=notifier,
        reconciler=reconciler,
    )
    services.snapshot_subscription = snapshot_cache.attach(inventory)
    return services


_SERVICES: LedgerServices | None = None
_SERVICES_LOCK = threading.Lock()


def get_ledger_services() -> LedgerServices:
    global _SERVICES
    with _SERVICES_LOCK:
        if _SERVICES is None:
            _SERVICES = build_services(LedgerSettings.from_env())
        return _SERVICES


def get_ledger_db() -> Generator:
    db = get_ledger_services().session_factory()
    try:
        yield db
    finally:
        db.close()
