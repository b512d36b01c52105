import asyncio
import tempfile
from dataclasses import replace
from datetime import datetime
from pathlib import Path

from laptop_ledger.config import LedgerSettings
from laptop_ledger.db.deps import build_services
from laptop_ledger.schemas.records import LoanEventRecord


class LedgerTestEnvironment:
    """A full service graph on a throwaway SQLite file."""

    def __init__(self, **overrides):
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        settings = LedgerSettings(
            db_url=f"sqlite+pysqlite:///{root / 'ledger.db'}",
            cache_path=str(root / "cache.json"),
            lookup_timeout_seconds=5.0,
            write_timeout_seconds=5.0,
        )
        self.services = build_services(replace(settings, **overrides))

    @property
    def inventory(self):
        return self.services.inventory

    @property
    def ledger(self):
        return self.services.ledger

    @property
    def reconciler(self):
        return self.services.reconciler

    @property
    def resolver(self):
        return self.services.resolver

    def seed_laptops(self, count=3):
        return [
            self.inventory.add_item(
                display_name=f"Laptop {index:02d}",
                brand="Lenovo",
                model=f"ThinkPad T{480 + index}",
                serial_number=f"SN-{index:04d}",
                scan_code=f"QR-{index:03d}",
            )
            for index in range(1, count + 1)
        ]

    def close(self):
        self.services.close()
        self._tmp.cleanup()


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeScanSource:
    def __init__(self, payloads, error=None, hang=False):
        self.payloads = list(payloads)
        self.error = error
        self.hang = hang
        self.closed = False

    async def events(self):
        for payload in self.payloads:
            yield {"payload": payload}
        if self.error is not None:
            raise self.error
        if self.hang:
            await asyncio.Event().wait()

    async def close(self):
        self.closed = True


def make_event(event_id, loaned_at, *, item_ref="item-1", borrower="ana@example.org", destination="Home",
               classroom=None, purpose="loan-via-scan", status="active", display_name=None):
    return LoanEventRecord(
        id=event_id,
        itemRef=item_ref,
        itemDisplayName=display_name,
        borrowerKey=borrower,
        destination=destination,
        classroom=classroom,
        purpose=purpose,
        loanedAt=loaned_at,
        returnedAt=loaned_at if status == "returned" else None,
        status=status,
    )


def at(hour, minute=0):
    return datetime(2024, 3, 4, hour, minute)
