#!/usr/bin/env python3
"""Database overview and ledger/projection consistency checks for the laptop ledger."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from dataclasses import dataclass, replace
from typing import Iterable

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

from laptop_ledger.config import DEFAULT_DB_URL, LedgerSettings
from laptop_ledger.db.deps import build_services
from laptop_ledger.db.session import create_ledger_engine
from laptop_ledger.services.errors import LedgerError

EXPECTED_TABLES = [
    "Items",
    "ItemAliases",
    "LoanEvents",
    "AuditLogs",
    "NotificationQueue",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Items": [
        "ItemID",
        "DisplayName",
        "Brand",
        "Model",
        "SerialNumber",
        "ScanCode",
        "Status",
        "CurrentHolder",
        "Location",
        "LastLoanAt",
        "LastReturnAt",
    ],
    "LoanEvents": [
        "LoanEventID",
        "ItemRef",
        "BorrowerKey",
        "Destination",
        "Classroom",
        "Purpose",
        "LoanedAt",
        "ReturnedAt",
        "Status",
    ],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
}


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def _run_column_checks(engine: Engine) -> list[CheckResult]:
    inspector = inspect(engine)
    present = set(inspector.get_table_names())
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in present:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = {column["name"] for column in inspector.get_columns(table)}
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _run_integrity_checks(engine: Engine) -> list[CheckResult]:
    checks: list[CheckResult] = []
    if "Items" in set(inspect(engine).get_table_names()):
        holder_mismatch = _scalar(
            engine,
            """
            SELECT COUNT(*)
            FROM Items
            WHERE (Status = 'loaned' AND (CurrentHolder IS NULL OR CurrentHolder = ''))
               OR (Status <> 'loaned' AND CurrentHolder IS NOT NULL AND CurrentHolder <> '')
            """,
        )
        checks.append(
            CheckResult(
                "items:status_holder_mismatch",
                int(holder_mismatch or 0) == 0,
                f"count={int(holder_mismatch or 0)}",
            )
        )
    return checks


def _run_consistency_sweep(settings: LedgerSettings) -> list[CheckResult]:
    services = build_services(settings, create_schema=False)
    try:
        mismatches = asyncio.run(services.reconciler.find_mismatches())
    except LedgerError as exc:
        return [CheckResult("ledger:consistency_sweep", False, str(exc))]
    finally:
        services.close()
    if not mismatches:
        return [CheckResult("ledger:consistency_sweep", True, "count=0")]
    return [
        CheckResult(
            f"ledger:{row.reason}",
            False,
            f"item={row.itemID} status={row.itemStatus} events={','.join(row.openEventIDs)}",
        )
        for row in mismatches
    ]


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    present = set(inspect(engine).get_table_names())
    for table in EXPECTED_TABLES:
        if table not in present:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Laptop ledger DB overview")
    parser.add_argument("--db-url", default=os.environ.get("LAPTOP_LEDGER_DB_URL", DEFAULT_DB_URL))
    parser.add_argument("--skip-sweep", action="store_true", help="Only run schema checks.")
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("LAPTOP_LEDGER_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = create_ledger_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    schema_checks = _run_existence_checks(engine) + _run_column_checks(engine)
    _print_results("Table Existence / Columns", schema_checks)
    _print_results("Integrity Checks", _run_integrity_checks(engine))
    _print_row_counts(engine)
    engine.dispose()

    if not args.skip_sweep and all(row.ok for row in schema_checks):
        settings = replace(LedgerSettings.from_env(), db_url=db_url)
        _print_results("Ledger vs Projection", _run_consistency_sweep(settings))
    return 0


if __name__ == "__main__":
    sys.exit(main())
