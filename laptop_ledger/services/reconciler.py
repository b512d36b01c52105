"""Loan/return orchestration over the ledger and the inventory projection.

Every transition is two writes to two collections with no transaction
spanning them, so the order is fixed: the ledger row is written first and
the projection second. ``_append_ledger`` / ``_close_ledger`` hand back a
``LedgerReceipt`` and ``_apply_projection`` refuses anything else.

A ledger write that fails fails the operation; nothing was recorded. A
ledger write that times out may still commit in its worker thread, so the
event id is assigned up front and read back before the operation is failed.
A projection write that fails after the ledger write succeeded is reported
as ``pending_sync``: the ledger already holds the truth and ``resync_item``
or the mismatch sweep can re-apply it later. The item is never flipped back
to available in that window.

Transitions on one item are serialized with a per-item lock held from the
open-event lookup through the projection write. Change-feed subscribers are
refreshed after the lock is released and outside any write timeout.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable

from laptop_ledger.models.ledger_models import new_document_id
from laptop_ledger.schemas.outcomes import BatchOutcome, LoanOutcome, ResyncOutcome, ReturnOutcome
from laptop_ledger.schemas.records import ConsistencyMismatch, ItemRecord, LoanEventRecord, SyncStatus
from laptop_ledger.services.audit_service import AuditTrail
from laptop_ledger.services.errors import (
    BorrowerKeyRequired,
    ClassroomLabelRequired,
    ItemNotAvailable,
    LedgerError,
    NoActiveLoanFound,
    StoreUnavailable,
)
from laptop_ledger.services.identity_resolver import IdentityResolver, known_refs, resolve_in_snapshot
from laptop_ledger.services.inventory_store import DEFAULT_LOCATION, InventoryStore
from laptop_ledger.services.ledger_store import LedgerStore
from laptop_ledger.services.notification_service import NotificationDispatcher
from laptop_ledger.services.store_io import call_store

RECONCILER_LOGGER = logging.getLogger("laptop_ledger.reconciler")

DEFAULT_LOAN_DESTINATION = "Loaned"
DEFAULT_LOAN_PURPOSE = "loan-via-scan"
CLASSROOM_PURPOSE = "classroom-assignment"
ANOMALY_ACTION = "ReturnWithoutActiveLoan"


@dataclass(frozen=True)
class LedgerReceipt:
    """Proof that the ledger side of a transition is settled.

    ``event`` is None only for a return with no open loan, where the ledger
    has nothing to record and the projection is updated alone.
    """

    item: ItemRecord
    event: LoanEventRecord | None
    appended: bool = False


def classroom_destination(label: str) -> str:
    return f"Classroom {label}"


def dedupe_refs(refs: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for ref in refs or []:
        value = str(ref or "").strip()
        if value and value not in seen:
            seen.add(value)
            out.append(value)
    return out


def index_items_by_ref(items: Iterable[ItemRecord]) -> dict[str, str]:
    index: dict[str, str] = {}
    items = list(items)
    for item in items:
        index[item.id] = item.id
    for item in items:
        for ref in known_refs(item):
            index.setdefault(ref, item.id)
    return index


class Reconciler:
    def __init__(
        self,
        resolver: IdentityResolver,
        ledger: LedgerStore,
        inventory: InventoryStore,
        *,
        notifier: NotificationDispatcher | None = None,
        audit: AuditTrail | None = None,
        write_timeout: float | None = 15.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.resolver = resolver
        self.ledger = ledger
        self.inventory = inventory
        self.notifier = notifier
        self.audit = audit
        self.write_timeout = write_timeout
        self.clock = clock
        self._item_locks: dict[str, asyncio.Lock] = {}

    @property
    def lookup_timeout(self) -> float:
        return self.resolver.lookup_timeout

    def _item_lock(self, item_id: str) -> asyncio.Lock:
        return self._item_locks.setdefault(item_id, asyncio.Lock())

    async def _publish_changes(self) -> None:
        for store in (self.ledger, self.inventory):
            try:
                await call_store(store.publish_changes)
            except Exception as exc:
                RECONCILER_LOGGER.warning("Change feed refresh failed store=%s error=%s", type(store).__name__, exc)

    # ledger phase

    async def _read_back(self, event_id: str) -> LoanEventRecord | None:
        try:
            return await call_store(self.ledger.get, event_id, timeout=self.lookup_timeout)
        except StoreUnavailable as exc:
            RECONCILER_LOGGER.error("Ledger read-back failed event=%s error=%s", event_id, exc)
            return None

    async def _append_ledger(self, item: ItemRecord, **fields: Any) -> LedgerReceipt:
        event_id = new_document_id()
        try:
            event = await call_store(
                self.ledger.append,
                item_ref=item.id,
                item_display_name=item.label,
                event_id=event_id,
                publish=False,
                timeout=self.write_timeout,
                **fields,
            )
        except StoreUnavailable as exc:
            event = await self._read_back(event_id)
            if event is None:
                raise
            RECONCILER_LOGGER.warning(
                "Ledger append reported failure but landed item=%s event=%s error=%s", item.id, event_id, exc
            )
        RECONCILER_LOGGER.info(
            "Ledger loan appended item=%s event=%s borrower=%s", item.id, event.id, event.borrowerKey
        )
        return LedgerReceipt(item=item, event=event, appended=True)

    async def _close_ledger(
        self,
        item: ItemRecord,
        event: LoanEventRecord,
        *,
        returned_by: str | None,
        received_by: str | None,
        notes: str | None,
    ) -> LedgerReceipt | None:
        try:
            closed = await call_store(
                self.ledger.close,
                event.id,
                returned_by=returned_by,
                received_by=received_by,
                notes=notes,
                item_ref=item.id,
                publish=False,
                timeout=self.write_timeout,
            )
        except StoreUnavailable as exc:
            closed = await self._read_back(event.id)
            if closed is None or closed.is_open:
                raise
            RECONCILER_LOGGER.warning(
                "Ledger close reported failure but landed item=%s event=%s error=%s", item.id, event.id, exc
            )
        if closed is None:
            return None
        if event.itemRef != item.id:
            RECONCILER_LOGGER.info("Ledger itemRef healed event=%s from=%s to=%s", event.id, event.itemRef, item.id)
        return LedgerReceipt(item=item, event=closed, appended=True)

    async def _record_anomaly(self, item: ItemRecord, raw_ref: str, operator: str | None) -> LedgerReceipt:
        anomaly = NoActiveLoanFound(item.id)
        details = f"{anomaly} ref={raw_ref} status={item.status} holder={item.currentHolder}"
        RECONCILER_LOGGER.warning(
            "Return without active loan item=%s ref=%s returned_by=%s", item.id, raw_ref, operator
        )
        if self.audit is not None:
            try:
                await call_store(
                    self.audit.record,
                    "Item",
                    item.id,
                    ANOMALY_ACTION,
                    details,
                    user_id=operator,
                    timeout=self.write_timeout,
                )
            except StoreUnavailable as exc:
                RECONCILER_LOGGER.error("Anomaly audit write failed item=%s error=%s", item.id, exc)
        self._notify("return_anomaly", {"itemID": item.id, "ref": raw_ref, "returnedBy": operator})
        return LedgerReceipt(item=item, event=None)

    async def _find_open_event(self, item: ItemRecord, raw_ref: str | None) -> LoanEventRecord | None:
        refs = known_refs(item)
        if raw_ref and raw_ref.strip():
            refs.add(raw_ref.strip())
        return await call_store(self.ledger.find_open, refs, timeout=self.lookup_timeout)

    async def _fresh(self, item: ItemRecord) -> ItemRecord:
        try:
            live = await call_store(self.inventory.get, item.id, timeout=self.lookup_timeout)
        except StoreUnavailable as exc:
            RECONCILER_LOGGER.info("Using resolved snapshot for item=%s error=%s", item.id, exc)
            return item
        return live or item

    async def _loan_receipt(self, item: ItemRecord, raw_ref: str, borrower: str, **fields: Any) -> LedgerReceipt:
        open_event = await self._find_open_event(item, raw_ref)
        if open_event is not None:
            if open_event.borrowerKey != borrower:
                raise ItemNotAvailable(item.id, f"already on loan to {open_event.borrowerKey}")
            # Same borrower: an earlier attempt got as far as the ledger. Reuse its row.
            RECONCILER_LOGGER.info("Loan retry reuses event=%s item=%s", open_event.id, item.id)
            return LedgerReceipt(item=item, event=open_event, appended=False)
        current = await self._fresh(item)
        if current.status != "available":
            raise ItemNotAvailable(item.id, f"status is {current.status}")
        return await self._append_ledger(current, borrower_key=borrower, **fields)

    async def _return_receipt(
        self,
        item: ItemRecord,
        raw_ref: str,
        *,
        returned_by: str | None,
        received_by: str | None,
        notes: str | None,
    ) -> LedgerReceipt:
        open_event = await self._find_open_event(item, raw_ref)
        receipt = None
        if open_event is not None:
            receipt = await self._close_ledger(
                item, open_event, returned_by=returned_by, received_by=received_by, notes=notes
            )
        if receipt is None:
            receipt = await self._record_anomaly(item, raw_ref, returned_by)
        return receipt

    # projection phase

    @staticmethod
    def _loan_changes(event: LoanEventRecord) -> dict[str, Any]:
        return {
            "status": "loaned",
            "currentHolder": event.borrowerKey,
            "location": event.destination,
            "lastLoanAt": event.loanedAt,
        }

    def _return_changes(self, receipt: LedgerReceipt) -> dict[str, Any]:
        returned_at = receipt.event.returnedAt if receipt.event and receipt.event.returnedAt else self.clock()
        return {
            "status": "available",
            "currentHolder": None,
            "location": DEFAULT_LOCATION,
            "lastReturnAt": returned_at,
        }

    async def _apply_projection(self, receipt: LedgerReceipt, changes: dict[str, Any]) -> tuple[ItemRecord, SyncStatus]:
        if not isinstance(receipt, LedgerReceipt):
            raise TypeError("projection updates require a LedgerReceipt")
        try:
            item = await call_store(
                self.inventory.update, receipt.item.id, changes, publish=False, timeout=self.write_timeout
            )
        except StoreUnavailable as exc:
            if receipt.event is None:
                raise
            RECONCILER_LOGGER.warning(
                "Projection pending sync item=%s event=%s error=%s", receipt.item.id, receipt.event.id, exc
            )
            return receipt.item, "pending_sync"
        return item, "synced"

    async def _apply_projection_batch(
        self, pending: list[tuple[str, LedgerReceipt, dict[str, Any]]]
    ) -> tuple[list[ItemRecord], list[str], SyncStatus]:
        """Commit all projection updates in one batched write.

        Returns (items, codes that ended up failed, sync status).
        """
        if not pending:
            return [], [], "synced"
        for _, receipt, _ in pending:
            if not isinstance(receipt, LedgerReceipt):
                raise TypeError("projection updates require a LedgerReceipt")
        try:
            items = await call_store(
                self.inventory.batch_update,
                [(receipt.item.id, changes) for _, receipt, changes in pending],
                publish=False,
                timeout=self.write_timeout,
            )
        except StoreUnavailable as exc:
            RECONCILER_LOGGER.warning("Batch projection pending sync items=%s error=%s", len(pending), exc)
            recorded = [receipt.item for _, receipt, _ in pending if receipt.event is not None]
            unrecorded = [code for code, receipt, _ in pending if receipt.event is None]
            return recorded, unrecorded, "pending_sync"
        return items, [], "synced"

    def _notify(self, kind: str, payload: dict[str, Any]) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(kind, payload)
        except Exception as exc:
            RECONCILER_LOGGER.warning("Notification failed kind=%s error=%s", kind, exc)

    # public operations

    async def register_loan(
        self,
        item_ref: str,
        borrower_key: str | None,
        destination: str | None = None,
        purpose: str | None = None,
        notes: str | None = None,
        *,
        expected_return_at: datetime | None = None,
        loaned_by: str | None = None,
    ) -> LoanOutcome:
        borrower = (borrower_key or "").strip()
        if not borrower:
            raise BorrowerKeyRequired()
        raw_ref = (item_ref or "").strip()
        item = await self.resolver.resolve_strict(raw_ref)

        async with self._item_lock(item.id):
            receipt = await self._loan_receipt(
                item,
                raw_ref,
                borrower,
                destination=(destination or "").strip() or DEFAULT_LOAN_DESTINATION,
                purpose=(purpose or "").strip() or DEFAULT_LOAN_PURPOSE,
                notes=notes or None,
                expected_return_at=expected_return_at,
                loaned_by=loaned_by,
            )
            projected, sync = await self._apply_projection(receipt, self._loan_changes(receipt.event))
        await self._publish_changes()
        self._notify(
            "loan_registered",
            {"itemID": item.id, "eventID": receipt.event.id, "borrowerKey": borrower, "syncStatus": sync},
        )
        return LoanOutcome(item=projected, event=receipt.event, syncStatus=sync, reusedEvent=not receipt.appended)

    async def register_return(
        self,
        item_ref: str,
        returned_by: str | None,
        received_by: str | None = None,
        notes: str | None = None,
    ) -> ReturnOutcome:
        raw_ref = (item_ref or "").strip()
        item = await self.resolver.resolve_strict(raw_ref)
        async with self._item_lock(item.id):
            receipt = await self._return_receipt(
                item,
                raw_ref,
                returned_by=(returned_by or "").strip() or None,
                received_by=(received_by or "").strip() or None,
                notes=notes or None,
            )
            projected, sync = await self._apply_projection(receipt, self._return_changes(receipt))
        await self._publish_changes()
        self._notify(
            "return_registered",
            {
                "itemID": item.id,
                "eventID": receipt.event.id if receipt.event else None,
                "anomaly": receipt.event is None,
                "syncStatus": sync,
            },
        )
        return ReturnOutcome(item=projected, event=receipt.event, anomaly=receipt.event is None, syncStatus=sync)

    async def register_classroom_batch(
        self,
        refs: Iterable[str],
        classroom_label: str | None,
        mode: str = "loan",
        operator: str | None = None,
    ) -> BatchOutcome:
        label = (classroom_label or "").strip()
        if not label:
            raise ClassroomLabelRequired()
        if mode not in ("loan", "return"):
            raise ValueError(f"Unknown classroom batch mode {mode!r}")

        codes = dedupe_refs(refs)
        try:
            resolved = await self.resolver.resolve_many(codes)
        except LedgerError as exc:
            RECONCILER_LOGGER.warning("Classroom batch lookup failed classroom=%s error=%s", label, exc)
            resolved = {}

        failed: list[str] = []
        targets: list[tuple[str, ItemRecord]] = []
        seen_items: set[str] = set()
        for code in codes:
            item = resolved.get(code)
            if item is None:
                RECONCILER_LOGGER.info("Classroom batch ref not registered ref=%s classroom=%s", code, label)
                failed.append(code)
                continue
            if item.id in seen_items:
                continue
            seen_items.add(item.id)
            targets.append((code, item))

        pending: list[tuple[str, LedgerReceipt, dict[str, Any]]] = []
        async with AsyncExitStack() as held:
            # Sorted acquisition keeps overlapping batches from deadlocking.
            for item_id in sorted(seen_items):
                await held.enter_async_context(self._item_lock(item_id))
            for code, item in targets:
                try:
                    if mode == "loan":
                        receipt = await self._loan_receipt(
                            item,
                            code,
                            label,
                            destination=classroom_destination(label),
                            classroom=label,
                            purpose=CLASSROOM_PURPOSE,
                            loaned_by=operator,
                        )
                        changes = self._loan_changes(receipt.event)
                    else:
                        receipt = await self._return_receipt(
                            item,
                            code,
                            returned_by=operator,
                            received_by=operator,
                            notes=f"Classroom {label} return",
                        )
                        changes = self._return_changes(receipt)
                except LedgerError as exc:
                    RECONCILER_LOGGER.warning(
                        "Classroom batch item failed ref=%s classroom=%s error=%s", code, label, exc
                    )
                    failed.append(code)
                    continue
                pending.append((code, receipt, changes))

            items, unrecorded, sync = await self._apply_projection_batch(pending)
        await self._publish_changes()
        failed.extend(unrecorded)
        failed.sort(key=codes.index)
        recorded = [entry for entry in pending if entry[0] not in unrecorded]
        outcome = BatchOutcome(
            mode=mode,
            classroomLabel=label,
            succeeded=items,
            failed=failed,
            anomalies=[receipt.item.id for _, receipt, _ in recorded if receipt.event is None],
            events=[receipt.event for _, receipt, _ in recorded if receipt.event is not None],
            syncStatus=sync,
        )
        if failed:
            RECONCILER_LOGGER.warning(
                "Classroom batch partial classroom=%s mode=%s succeeded=%s failed=%s",
                label,
                mode,
                len(outcome.succeeded),
                failed,
            )
        self._notify(
            "classroom_batch_registered",
            {
                "classroom": label,
                "mode": mode,
                "succeeded": [item.id for item in outcome.succeeded],
                "failed": failed,
                "syncStatus": sync,
            },
        )
        return outcome

    # maintenance

    async def resync_item(self, item_ref: str) -> ResyncOutcome:
        """Re-apply the projection the ledger implies for one item."""
        raw_ref = (item_ref or "").strip()
        resolved = await self.resolver.resolve_strict(raw_ref)
        async with self._item_lock(resolved.id):
            item = await self._fresh(resolved)
            open_event = await self._find_open_event(item, raw_ref)
            receipt = LedgerReceipt(item=item, event=open_event)
            if open_event is not None:
                changes = self._loan_changes(open_event)
                if item.status == "loaned" and item.currentHolder == open_event.borrowerKey:
                    return ResyncOutcome(item=item, event=open_event)
            elif item.status == "loaned":
                changes = {
                    "status": "available",
                    "currentHolder": None,
                    "location": DEFAULT_LOCATION,
                    "lastReturnAt": item.lastReturnAt or self.clock(),
                }
            else:
                return ResyncOutcome(item=item)
            projected, sync = await self._apply_projection(receipt, changes)
        await self._publish_changes()
        RECONCILER_LOGGER.info("Resynced item=%s status=%s sync=%s", item.id, projected.status, sync)
        return ResyncOutcome(item=projected, event=open_event, changed=sync == "synced", syncStatus=sync)

    async def sweep_overdue(self, now: datetime | None = None) -> int:
        changed = await call_store(self.ledger.mark_overdue, now or self.clock(), timeout=self.write_timeout)
        if changed:
            RECONCILER_LOGGER.info("Overdue sweep flagged events=%s", changed)
        return changed

    async def find_mismatches(self) -> list[ConsistencyMismatch]:
        items = await call_store(self.inventory.list_all, timeout=self.write_timeout)
        open_events = await call_store(self.ledger.list_open, timeout=self.write_timeout)
        index = index_items_by_ref(items)

        open_by_item: dict[str, list[str]] = {}
        mismatches: list[ConsistencyMismatch] = []
        for event in open_events:
            item_id = index.get(event.itemRef)
            if item_id is None:
                mismatches.append(
                    ConsistencyMismatch(itemID=event.itemRef, openEventIDs=[event.id], reason="orphan_open_event")
                )
                continue
            open_by_item.setdefault(item_id, []).append(event.id)

        for item in items:
            event_ids = open_by_item.get(item.id, [])
            if len(event_ids) > 1:
                reason = "multiple_open_events"
            elif event_ids and item.status != "loaned":
                reason = "open_event_not_loaned"
            elif not event_ids and item.status == "loaned":
                reason = "loaned_without_open_event"
            else:
                continue
            mismatches.append(
                ConsistencyMismatch(itemID=item.id, itemStatus=item.status, openEventIDs=event_ids, reason=reason)
            )
        return mismatches

    async def backfill_display_names(self, limit: int = 200) -> int:
        rows = await call_store(self.ledger.list_missing_display_name, limit, timeout=self.write_timeout)
        if not rows:
            return 0
        try:
            items = await call_store(self.inventory.list_all, timeout=self.lookup_timeout)
        except StoreUnavailable:
            items = self.resolver.cache.fallback()
        names: dict[str, str] = {}
        for event in rows:
            item = resolve_in_snapshot(event.itemRef, items)
            if item is not None:
                names[event.id] = item.label
        return await call_store(self.ledger.backfill_display_names, names, timeout=self.write_timeout)
