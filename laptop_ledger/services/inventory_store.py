from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Iterable

from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.orm import selectinload, sessionmaker

from laptop_ledger.models.ledger_models import Item, ItemAlias
from laptop_ledger.schemas.records import ITEM_STATUSES, ItemRecord
from laptop_ledger.services.change_feed import ITEMS_COLLECTION, ChangeFeed, Subscription
from laptop_ledger.services.errors import ItemNotRegistered, MalformedRecord
from laptop_ledger.services.store_io import session_scope

DEFAULT_LOCATION = "Inventory"

# Projection fields the reconciler may write, keyed by record field name.
PROJECTION_COLUMNS = {
    "status": "Status",
    "currentHolder": "CurrentHolder",
    "location": "Location",
    "lastLoanAt": "LastLoanAt",
    "lastReturnAt": "LastReturnAt",
}

IDENTITY_COLUMNS = {
    "displayName": "DisplayName",
    "brand": "Brand",
    "model": "Model",
    "serialNumber": "SerialNumber",
    "scanCode": "ScanCode",
}


def serialize_item(item: Item) -> dict:
    return {
        "id": item.ItemID,
        "displayName": item.DisplayName,
        "brand": item.Brand,
        "model": item.Model,
        "serialNumber": item.SerialNumber,
        "scanCode": item.ScanCode,
        "status": item.Status,
        "currentHolder": item.CurrentHolder,
        "location": item.Location,
        "lastLoanAt": item.LastLoanAt,
        "lastReturnAt": item.LastReturnAt,
        "createdAt": item.CreatedAt,
        "updatedAt": item.UpdatedAt,
        "aliases": [alias.Alias for alias in item.Aliases],
    }


def to_item_record(item: Item) -> ItemRecord:
    try:
        return ItemRecord.model_validate(serialize_item(item))
    except ValidationError as exc:
        raise MalformedRecord("items", item.ItemID, str(exc)) from exc


def _check_holder_invariant(item: Item) -> None:
    if item.Status not in ITEM_STATUSES:
        raise ValueError(f"Unknown item status {item.Status!r}")
    if (item.Status == "loaned") != bool(item.CurrentHolder):
        raise ValueError(
            f"Item {item.ItemID}: status={item.Status} is inconsistent with currentHolder={item.CurrentHolder!r}"
        )


class InventoryStore:
    """Projection store: one mutable current-state row per item."""

    def __init__(
        self,
        session_factory: sessionmaker,
        feed: ChangeFeed | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.session_factory = session_factory
        self.feed = feed or ChangeFeed()
        self.clock = clock

    def publish_changes(self) -> None:
        self.feed.publish(ITEMS_COLLECTION)

    def add_item(
        self,
        *,
        display_name: str | None = None,
        brand: str | None = None,
        model: str | None = None,
        serial_number: str | None = None,
        scan_code: str | None = None,
        status: str = "available",
        location: str | None = DEFAULT_LOCATION,
        item_id: str | None = None,
    ) -> ItemRecord:
        if status == "loaned":
            raise ValueError("New items cannot start out on loan; register a loan instead.")
        now = self.clock()
        with session_scope(self.session_factory) as db:
            item = Item(
                DisplayName=display_name,
                Brand=brand,
                Model=model,
                SerialNumber=serial_number,
                ScanCode=scan_code,
                Status=status,
                Location=location,
                CreatedAt=now,
                UpdatedAt=now,
            )
            if item_id:
                item.ItemID = item_id
            _check_holder_invariant(item)
            db.add(item)
            db.flush()
            record = to_item_record(item)
        self.publish_changes()
        return record

    def update_identity(self, item_id: str, changes: dict[str, Any]) -> ItemRecord:
        """Change identifying fields, keeping every replaced value as a historical alias."""
        unknown = set(changes) - set(IDENTITY_COLUMNS)
        if unknown:
            raise ValueError(f"Not identity fields: {sorted(unknown)}")
        with session_scope(self.session_factory) as db:
            item = db.get(Item, item_id, options=[selectinload(Item.Aliases)])
            if item is None:
                raise ItemNotRegistered(item_id)
            existing_aliases = {alias.Alias for alias in item.Aliases}
            for field, value in changes.items():
                column = IDENTITY_COLUMNS[field]
                previous = getattr(item, column)
                if previous and previous != value and previous not in existing_aliases:
                    item.Aliases.append(ItemAlias(Alias=previous, CreatedAt=self.clock()))
                    existing_aliases.add(previous)
                setattr(item, column, value)
            item.UpdatedAt = self.clock()
            db.flush()
            record = to_item_record(item)
        self.publish_changes()
        return record

    def add_alias(self, item_id: str, alias: str) -> ItemRecord:
        value = (alias or "").strip()
        if not value:
            raise ValueError("alias is empty")
        with session_scope(self.session_factory) as db:
            item = db.get(Item, item_id, options=[selectinload(Item.Aliases)])
            if item is None:
                raise ItemNotRegistered(item_id)
            if value not in {a.Alias for a in item.Aliases}:
                item.Aliases.append(ItemAlias(Alias=value, CreatedAt=self.clock()))
            db.flush()
            record = to_item_record(item)
        self.publish_changes()
        return record

    def get(self, item_id: str) -> ItemRecord | None:
        if not item_id:
            return None
        with session_scope(self.session_factory) as db:
            item = db.get(Item, item_id, options=[selectinload(Item.Aliases)])
            return to_item_record(item) if item else None

    def list_all(self, status: str | None = None) -> list[ItemRecord]:
        stmt = select(Item).options(selectinload(Item.Aliases))
        if status:
            stmt = stmt.where(Item.Status == status)
        stmt = stmt.order_by(Item.CreatedAt.desc(), Item.ItemID)
        with session_scope(self.session_factory) as db:
            return [to_item_record(item) for item in db.execute(stmt).scalars().all()]

    def find_by(self, field: str, value: str) -> list[ItemRecord]:
        column = IDENTITY_COLUMNS.get(field)
        if column is None:
            raise ValueError(f"Cannot look items up by {field!r}")
        stmt = (
            select(Item)
            .options(selectinload(Item.Aliases))
            .where(getattr(Item, column) == value)
            .order_by(Item.CreatedAt.desc(), Item.ItemID)
        )
        with session_scope(self.session_factory) as db:
            return [to_item_record(item) for item in db.execute(stmt).scalars().all()]

    def _apply(self, item: Item, changes: dict[str, Any]) -> None:
        unknown = set(changes) - set(PROJECTION_COLUMNS)
        if unknown:
            raise ValueError(f"Not projection fields: {sorted(unknown)}")
        for field, value in changes.items():
            setattr(item, PROJECTION_COLUMNS[field], value)
        item.UpdatedAt = self.clock()
        _check_holder_invariant(item)

    def update(self, item_id: str, changes: dict[str, Any], *, publish: bool = True) -> ItemRecord:
        with session_scope(self.session_factory) as db:
            item = db.get(Item, item_id, options=[selectinload(Item.Aliases)])
            if item is None:
                raise ItemNotRegistered(item_id)
            self._apply(item, changes)
            db.flush()
            record = to_item_record(item)
        if publish:
            self.publish_changes()
        return record

    def batch_update(
        self, updates: Iterable[tuple[str, dict[str, Any]]], *, publish: bool = True
    ) -> list[ItemRecord]:
        """Apply several projection updates in one transaction: all of them commit or none do."""
        pending = list(updates)
        if not pending:
            return []
        records: list[ItemRecord] = []
        with session_scope(self.session_factory) as db:
            for item_id, changes in pending:
                item = db.get(Item, item_id, options=[selectinload(Item.Aliases)])
                if item is None:
                    raise ItemNotRegistered(item_id)
                self._apply(item, changes)
            db.flush()
            for item_id, _ in pending:
                records.append(to_item_record(db.get(Item, item_id)))
        if publish:
            self.publish_changes()
        return records

    def counts(self) -> dict[str, int]:
        stmt = select(Item.Status, func.count()).group_by(Item.Status)
        with session_scope(self.session_factory) as db:
            rows = db.execute(stmt).all()
        by_status = {str(status): int(count) for status, count in rows}
        return {
            "totalItems": sum(by_status.values()),
            "availableItems": by_status.get("available", 0),
            "loanedItems": by_status.get("loaned", 0),
            "maintenanceItems": by_status.get("maintenance", 0),
            "damagedItems": by_status.get("damaged", 0),
        }

    def subscribe(
        self,
        on_change: Callable[[list[ItemRecord]], None],
        on_error: Callable[[Exception], None] | None = None,
        status: str | None = None,
    ) -> Subscription:
        return self.feed.subscribe(
            ITEMS_COLLECTION,
            lambda: self.list_all(status=status),
            on_change,
            on_error,
        )
