from __future__ import annotations

from datetime import date, datetime, time as dt_time, timedelta
from typing import Callable, Iterable

from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.orm import sessionmaker

from laptop_ledger.models.ledger_models import LoanEvent, new_document_id
from laptop_ledger.schemas.records import LOAN_STATUSES, OPEN_LOAN_STATUSES, LoanEventRecord
from laptop_ledger.services.change_feed import LOAN_EVENTS_COLLECTION, ChangeFeed, Subscription
from laptop_ledger.services.errors import MalformedRecord
from laptop_ledger.services.store_io import session_scope


def serialize_loan_event(event: LoanEvent) -> dict:
    return {
        "id": event.LoanEventID,
        "itemRef": event.ItemRef,
        "itemDisplayName": event.ItemDisplayName,
        "borrowerKey": event.BorrowerKey,
        "destination": event.Destination,
        "classroom": event.Classroom,
        "purpose": event.Purpose,
        "loanedBy": event.LoanedBy,
        "loanedAt": event.LoanedAt,
        "expectedReturnAt": event.ExpectedReturnAt,
        "returnedAt": event.ReturnedAt,
        "returnedBy": event.ReturnedBy,
        "receivedBy": event.ReceivedBy,
        "status": event.Status,
        "notes": event.Notes,
        "createdAt": event.CreatedAt,
        "updatedAt": event.UpdatedAt,
    }


def to_loan_event_record(event: LoanEvent) -> LoanEventRecord:
    try:
        return LoanEventRecord.model_validate(serialize_loan_event(event))
    except ValidationError as exc:
        raise MalformedRecord("loanEvents", event.LoanEventID, str(exc)) from exc


def _append_note(existing: str | None, note: str | None) -> str | None:
    if not note:
        return existing
    return (existing + "\n" if existing else "") + note


class LedgerStore:
    """Append-only loan ledger. Rows are only ever flipped open -> returned/overdue."""

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
        self.feed.publish(LOAN_EVENTS_COLLECTION)

    def append(
        self,
        *,
        item_ref: str,
        borrower_key: str,
        destination: str,
        purpose: str,
        loaned_at: datetime | None = None,
        classroom: str | None = None,
        notes: str | None = None,
        expected_return_at: datetime | None = None,
        loaned_by: str | None = None,
        item_display_name: str | None = None,
        event_id: str | None = None,
        publish: bool = True,
    ) -> LoanEventRecord:
        """Write a new active event.

        Callers that need to confirm a write after a timeout pass their own
        ``event_id``. ``publish=False`` leaves the change-feed refresh to the
        caller (see ``publish_changes``).
        """
        now = self.clock()
        with session_scope(self.session_factory) as db:
            event = LoanEvent(
                LoanEventID=event_id or new_document_id(),
                ItemRef=item_ref,
                ItemDisplayName=item_display_name,
                BorrowerKey=borrower_key,
                Destination=destination,
                Classroom=classroom,
                Purpose=purpose,
                LoanedBy=loaned_by,
                LoanedAt=loaned_at or now,
                ExpectedReturnAt=expected_return_at,
                Status="active",
                Notes=notes,
                CreatedAt=now,
                UpdatedAt=now,
            )
            db.add(event)
            db.flush()
            record = to_loan_event_record(event)
        if publish:
            self.publish_changes()
        return record

    def get(self, event_id: str) -> LoanEventRecord | None:
        with session_scope(self.session_factory) as db:
            event = db.get(LoanEvent, event_id)
            return to_loan_event_record(event) if event else None

    def query(
        self,
        *,
        borrower_key: str | None = None,
        status: str | None = None,
        item_refs: Iterable[str] | None = None,
        classroom: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[LoanEventRecord]:
        stmt = select(LoanEvent)
        if borrower_key:
            stmt = stmt.where(LoanEvent.BorrowerKey == borrower_key)
        if status:
            if status not in LOAN_STATUSES:
                raise ValueError(f"Unknown loan status {status!r}")
            stmt = stmt.where(LoanEvent.Status == status)
        if item_refs is not None:
            refs = sorted({ref for ref in item_refs if ref})
            if not refs:
                return []
            stmt = stmt.where(LoanEvent.ItemRef.in_(refs))
        if classroom:
            stmt = stmt.where(LoanEvent.Classroom == classroom)
        stmt = stmt.order_by(LoanEvent.CreatedAt.desc(), LoanEvent.LoanedAt.desc())
        if offset:
            stmt = stmt.offset(max(offset, 0))
        if limit is not None and limit > 0:
            stmt = stmt.limit(limit)
        with session_scope(self.session_factory) as db:
            return [to_loan_event_record(event) for event in db.execute(stmt).scalars().all()]

    def list_open(self, item_refs: Iterable[str] | None = None) -> list[LoanEventRecord]:
        """Unreturned events (active or overdue), most recent loan first."""
        stmt = select(LoanEvent).where(LoanEvent.Status.in_(sorted(OPEN_LOAN_STATUSES)))
        if item_refs is not None:
            refs = sorted({ref for ref in item_refs if ref})
            if not refs:
                return []
            stmt = stmt.where(LoanEvent.ItemRef.in_(refs))
        stmt = stmt.order_by(LoanEvent.LoanedAt.desc(), LoanEvent.CreatedAt.desc())
        with session_scope(self.session_factory) as db:
            return [to_loan_event_record(event) for event in db.execute(stmt).scalars().all()]

    def find_open(self, item_refs: Iterable[str]) -> LoanEventRecord | None:
        rows = self.list_open(item_refs)
        return rows[0] if rows else None

    def close(
        self,
        event_id: str,
        *,
        returned_by: str | None,
        received_by: str | None = None,
        notes: str | None = None,
        item_ref: str | None = None,
        returned_at: datetime | None = None,
        publish: bool = True,
    ) -> LoanEventRecord | None:
        """Flip an open event to returned. Returns None when someone else already closed it."""
        now = self.clock()
        with session_scope(self.session_factory) as db:
            event = db.get(LoanEvent, event_id)
            if event is None or event.Status not in OPEN_LOAN_STATUSES:
                return None
            event.Status = "returned"
            event.ReturnedAt = returned_at or now
            event.ReturnedBy = returned_by
            event.ReceivedBy = received_by
            event.Notes = _append_note(event.Notes, notes)
            if item_ref:
                event.ItemRef = item_ref
            event.UpdatedAt = now
            db.flush()
            record = to_loan_event_record(event)
        if publish:
            self.publish_changes()
        return record

    def mark_overdue(self, now: datetime | None = None) -> int:
        cutoff = now or self.clock()
        stmt = (
            update(LoanEvent)
            .where(LoanEvent.Status == "active")
            .where(LoanEvent.ExpectedReturnAt.is_not(None))
            .where(LoanEvent.ExpectedReturnAt < cutoff)
            .values(Status="overdue", UpdatedAt=self.clock())
        )
        with session_scope(self.session_factory) as db:
            changed = db.execute(stmt).rowcount or 0
        if changed:
            self.publish_changes()
        return int(changed)

    def list_missing_display_name(self, limit: int = 200) -> list[LoanEventRecord]:
        stmt = (
            select(LoanEvent)
            .where((LoanEvent.ItemDisplayName.is_(None)) | (LoanEvent.ItemDisplayName == ""))
            .order_by(LoanEvent.CreatedAt.desc())
            .limit(max(limit, 1))
        )
        with session_scope(self.session_factory) as db:
            return [to_loan_event_record(event) for event in db.execute(stmt).scalars().all()]

    def backfill_display_names(self, names_by_event: dict[str, str]) -> int:
        if not names_by_event:
            return 0
        changed = 0
        with session_scope(self.session_factory) as db:
            for event_id, name in names_by_event.items():
                event = db.get(LoanEvent, event_id)
                if event is None or event.ItemDisplayName or not name:
                    continue
                event.ItemDisplayName = name
                changed += 1
        if changed:
            self.publish_changes()
        return changed

    def daily_counts(self, day: date | None = None) -> dict:
        target = day or self.clock().date()
        start = datetime.combine(target, dt_time.min)
        end = start + timedelta(days=1)
        loans_stmt = select(func.count()).select_from(LoanEvent).where(
            LoanEvent.LoanedAt >= start, LoanEvent.LoanedAt < end
        )
        returns_stmt = select(func.count()).select_from(LoanEvent).where(
            LoanEvent.Status == "returned", LoanEvent.ReturnedAt >= start, LoanEvent.ReturnedAt < end
        )
        with session_scope(self.session_factory) as db:
            loans = db.execute(loans_stmt).scalar() or 0
            returns = db.execute(returns_stmt).scalar() or 0
        return {"date": target.isoformat(), "loansToday": int(loans), "returnsToday": int(returns)}

    def subscribe(
        self,
        on_change: Callable[[list[LoanEventRecord]], None],
        on_error: Callable[[Exception], None] | None = None,
        *,
        borrower_key: str | None = None,
        status: str | None = None,
        limit: int | None = None,
    ) -> Subscription:
        return self.feed.subscribe(
            LOAN_EVENTS_COLLECTION,
            lambda: self.query(borrower_key=borrower_key, status=status, limit=limit),
            on_change,
            on_error,
        )
