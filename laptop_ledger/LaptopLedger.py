import logging
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session

from laptop_ledger.config import LedgerSettings
from laptop_ledger.db.deps import LedgerServices, get_ledger_db, get_ledger_services
from laptop_ledger.schemas.loans import ClassroomBatchRequest, RegisterLoanRequest, RegisterReturnRequest
from laptop_ledger.schemas.records import ITEM_STATUSES, LOAN_STATUSES
from laptop_ledger.services.errors import (
    BorrowerKeyRequired,
    ClassroomLabelRequired,
    ItemNotAvailable,
    ItemNotRegistered,
    LedgerError,
    MalformedRecord,
    StoreUnavailable,
)
from laptop_ledger.services.store_io import call_store
from laptop_ledger.services.timeline_composer import ClassroomGroup, compose_timeline

SETTINGS = LedgerSettings.from_env()
API_LOGGER = logging.getLogger("laptop_ledger.api")
logging.getLogger("laptop_ledger").setLevel(SETTINGS.log_level)

app = FastAPI(title="Laptop Ledger")

_CORS_ALLOW_CREDENTIALS = "*" not in SETTINGS.cors_allow_origins

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(SETTINGS.cors_allow_origins),
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _http_error(exc: LedgerError) -> HTTPException:
    if isinstance(exc, ItemNotRegistered):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (BorrowerKeyRequired, ClassroomLabelRequired)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ItemNotAvailable):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, StoreUnavailable):
        return HTTPException(status_code=503, detail=f"store_unavailable: {exc}")
    if isinstance(exc, MalformedRecord):
        API_LOGGER.error("Malformed record error=%s", exc)
        return HTTPException(status_code=500, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _sync_status_code(response: Response, sync_status: str) -> None:
    if sync_status == "pending_sync":
        response.status_code = 202


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_ledger_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/items")
def list_items(
    status: Optional[str] = Query(None),
    services: LedgerServices = Depends(get_ledger_services),
):
    if status and status not in ITEM_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown item status: {status}")
    try:
        items = services.inventory.list_all(status=status)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return [item.model_dump(mode="json") for item in items]


@app.get("/api/items/resolve")
async def resolve_item(
    ref: str = Query(..., min_length=1),
    services: LedgerServices = Depends(get_ledger_services),
):
    try:
        item = await services.resolver.resolve_strict(ref)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return item.model_dump(mode="json")


@app.post("/api/items/{ref}/resync")
async def resync_item(ref: str, response: Response, services: LedgerServices = Depends(get_ledger_services)):
    try:
        outcome = await services.reconciler.resync_item(ref)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    _sync_status_code(response, outcome.syncStatus)
    return outcome.model_dump(mode="json")


@app.get("/api/loans")
def list_loans(
    borrower_key: Optional[str] = Query(None, alias="borrowerKey"),
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    services: LedgerServices = Depends(get_ledger_services),
):
    if status and status not in LOAN_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown loan status: {status}")
    try:
        events = services.ledger.query(borrower_key=borrower_key, status=status, limit=limit, offset=offset)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return [event.model_dump(mode="json") for event in events]


@app.post("/api/loans")
async def register_loan(
    payload: RegisterLoanRequest,
    response: Response,
    services: LedgerServices = Depends(get_ledger_services),
):
    try:
        outcome = await services.reconciler.register_loan(
            payload.itemRef,
            payload.borrowerKey,
            payload.destination,
            payload.purpose,
            payload.notes,
            expected_return_at=payload.expectedReturnAt,
            loaned_by=payload.loanedBy,
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    _sync_status_code(response, outcome.syncStatus)
    return outcome.model_dump(mode="json")


@app.post("/api/returns")
async def register_return(
    payload: RegisterReturnRequest,
    response: Response,
    services: LedgerServices = Depends(get_ledger_services),
):
    try:
        outcome = await services.reconciler.register_return(
            payload.itemRef,
            payload.returnedBy,
            received_by=payload.receivedBy,
            notes=payload.notes,
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    _sync_status_code(response, outcome.syncStatus)
    return outcome.model_dump(mode="json")


@app.post("/api/classroom-batches")
async def register_classroom_batch(
    payload: ClassroomBatchRequest,
    response: Response,
    services: LedgerServices = Depends(get_ledger_services),
):
    try:
        outcome = await services.reconciler.register_classroom_batch(
            payload.refs,
            payload.classroomLabel,
            mode=payload.mode,
            operator=payload.operator,
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    _sync_status_code(response, outcome.syncStatus)
    return outcome.model_dump(mode="json")


@app.get("/api/timeline")
async def get_timeline(
    borrower_key: Optional[str] = Query(None, alias="borrowerKey"),
    status: Optional[str] = Query(None),
    limit: int = Query(200, ge=1, le=1000),
    services: LedgerServices = Depends(get_ledger_services),
):
    if status and status not in LOAN_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown loan status: {status}")
    try:
        events = await call_store(
            services.ledger.query,
            borrower_key=borrower_key,
            status=status,
            limit=limit,
            timeout=services.settings.lookup_timeout_seconds,
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    # Display names come from whatever snapshot is at hand; the timeline never blocks on a lookup.
    names = {}
    for item in services.snapshot_cache.fallback():
        for ref in (item.id, item.scanCode, item.serialNumber, *item.aliases):
            if ref:
                names.setdefault(ref, item.label)

    output = []
    for entry in compose_timeline(events, item_names=names):
        if isinstance(entry, ClassroomGroup):
            output.append(
                {
                    "kind": entry.kind,
                    "label": entry.label,
                    "latest": entry.latest.isoformat() if entry.latest else None,
                    "activeCount": entry.active_count,
                    "events": [event.model_dump(mode="json") for event in entry.events],
                }
            )
        else:
            output.append(
                {
                    "kind": entry.kind,
                    "displayName": entry.display_name,
                    "latest": entry.latest.isoformat(),
                    "event": entry.event.model_dump(mode="json"),
                }
            )
    return output


@app.get("/api/stats")
def get_stats(services: LedgerServices = Depends(get_ledger_services)):
    try:
        counts = services.inventory.counts()
        daily = services.ledger.daily_counts()
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {**counts, **daily}


@app.post("/api/maintenance/sweep-overdue")
async def sweep_overdue(
    now: Optional[datetime] = Query(None),
    services: LedgerServices = Depends(get_ledger_services),
):
    try:
        changed = await services.reconciler.sweep_overdue(now)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"markedOverdue": changed}


@app.get("/api/maintenance/mismatches")
async def get_mismatches(services: LedgerServices = Depends(get_ledger_services)):
    try:
        mismatches = await services.reconciler.find_mismatches()
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return [row.model_dump(mode="json") for row in mismatches]


@app.post("/api/maintenance/backfill-display-names")
async def backfill_display_names(
    limit: int = Query(200, ge=1, le=1000),
    services: LedgerServices = Depends(get_ledger_services),
):
    try:
        changed = await services.reconciler.backfill_display_names(limit=limit)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"updated": changed}
