from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


ItemStatus = Literal["available", "loaned", "maintenance", "damaged"]
LoanStatus = Literal["active", "returned", "overdue"]
SyncStatus = Literal["synced", "pending_sync"]

ITEM_STATUSES = {"available", "loaned", "maintenance", "damaged"}
LOAN_STATUSES = {"active", "returned", "overdue"}
OPEN_LOAN_STATUSES = {"active", "overdue"}


class ItemRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    displayName: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    serialNumber: Optional[str] = None
    scanCode: Optional[str] = None
    status: ItemStatus
    currentHolder: Optional[str] = None
    location: Optional[str] = None
    lastLoanAt: Optional[datetime] = None
    lastReturnAt: Optional[datetime] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None
    aliases: List[str] = Field(default_factory=list)

    @property
    def label(self) -> str:
        brand_model = f"{self.brand or ''} {self.model or ''}".strip()
        return self.displayName or brand_model or self.scanCode or self.id


class LoanEventRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    itemRef: str
    itemDisplayName: Optional[str] = None
    borrowerKey: str
    destination: str
    classroom: Optional[str] = None
    purpose: str
    loanedBy: Optional[str] = None
    loanedAt: datetime
    expectedReturnAt: Optional[datetime] = None
    returnedAt: Optional[datetime] = None
    returnedBy: Optional[str] = None
    receivedBy: Optional[str] = None
    status: LoanStatus
    notes: Optional[str] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_LOAN_STATUSES

    @model_validator(mode="after")
    def _returned_rows_carry_timestamp(self) -> "LoanEventRecord":
        if self.status == "returned" and self.returnedAt is None:
            raise ValueError("returned loan event is missing returnedAt")
        return self


class ConsistencyMismatch(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemID: str
    itemStatus: Optional[str] = None
    openEventIDs: List[str] = Field(default_factory=list)
    reason: Literal["loaned_without_open_event", "open_event_not_loaned", "multiple_open_events", "orphan_open_event"]
