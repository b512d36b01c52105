#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os

from laptop_ledger.config import DEFAULT_DB_URL
from laptop_ledger.db.session import create_ledger_engine, create_session_factory, init_schema
from laptop_ledger.schemas.records import ItemRecord
from laptop_ledger.services.errors import LedgerError
from laptop_ledger.services.inventory_store import IDENTITY_COLUMNS, InventoryStore

IDENTITY_ARGS = {
    "display_name": "displayName",
    "brand": "brand",
    "model": "model",
    "serial_number": "serialNumber",
    "scan_code": "scanCode",
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Register one inventory item, or update the identifying fields of an existing one.",
    )
    parser.add_argument("--item-id", default=None, help="ItemID to update. Omit to register a new item.")
    parser.add_argument("--display-name", default=None)
    parser.add_argument("--brand", default=None)
    parser.add_argument("--model", default=None)
    parser.add_argument("--serial-number", default=None)
    parser.add_argument("--scan-code", default=None)
    parser.add_argument(
        "--status",
        choices=["available", "maintenance", "damaged"],
        default="available",
        help="Initial status for a new item.",
    )
    parser.add_argument("--alias", action="append", default=[], help="Historical reference; repeatable.")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("LAPTOP_LEDGER_DB_URL", DEFAULT_DB_URL).strip(),
        help="SQLAlchemy DB URL; defaults to LAPTOP_LEDGER_DB_URL env var.",
    )
    return parser


def find_existing(store: InventoryStore, item_id: str | None, changes: dict[str, str]) -> ItemRecord | None:
    if item_id:
        return store.get(item_id)
    # Without an id, a known serial or scan code means the item is already registered.
    for field in ("serialNumber", "scanCode"):
        value = changes.get(field)
        if value:
            matches = store.find_by(field, value)
            if matches:
                return matches[0]
    return None


def upsert_item(store: InventoryStore, args: argparse.Namespace) -> ItemRecord:
    changes = {
        field: getattr(args, arg).strip()
        for arg, field in IDENTITY_ARGS.items()
        if getattr(args, arg) is not None and getattr(args, arg).strip()
    }
    existing = find_existing(store, args.item_id, changes)
    if existing is None:
        item = store.add_item(
            display_name=changes.get("displayName"),
            brand=changes.get("brand"),
            model=changes.get("model"),
            serial_number=changes.get("serialNumber"),
            scan_code=changes.get("scanCode"),
            status=args.status,
            item_id=args.item_id,
        )
    elif changes:
        item = store.update_identity(existing.id, changes)
    else:
        item = existing
    for alias in args.alias:
        item = store.add_alias(item.id, alias)
    return item


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    if not args.db_url:
        parser.error("Missing DB URL. Set LAPTOP_LEDGER_DB_URL or pass --db-url.")
    if not args.item_id and not any(getattr(args, arg) for arg in IDENTITY_ARGS):
        parser.error("A new item needs at least one of " + ", ".join(sorted(IDENTITY_COLUMNS)))

    engine = create_ledger_engine(args.db_url)
    init_schema(engine)
    store = InventoryStore(create_session_factory(engine))
    try:
        item = upsert_item(store, args)
    except (LedgerError, ValueError) as exc:
        parser.exit(1, f"error: {exc}\n")
    finally:
        engine.dispose()

    print(
        f"OK item_id={item.id} label={item.label!r} status={item.status} "
        f"scan_code={item.scanCode} serial={item.serialNumber} aliases={len(item.aliases)}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
