from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from laptop_ledger.schemas.records import ItemRecord, LoanEventRecord, SyncStatus


class LoanOutcome(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    item: ItemRecord
    event: LoanEventRecord
    syncStatus: SyncStatus = "synced"
    reusedEvent: bool = False


class ReturnOutcome(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    item: ItemRecord
    event: Optional[LoanEventRecord] = None
    anomaly: bool = False
    syncStatus: SyncStatus = "synced"


class BatchOutcome(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mode: Literal["loan", "return"]
    classroomLabel: str
    succeeded: List[ItemRecord] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    anomalies: List[str] = Field(default_factory=list)
    events: List[LoanEventRecord] = Field(default_factory=list)
    syncStatus: SyncStatus = "synced"


class ResyncOutcome(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    item: ItemRecord
    event: Optional[LoanEventRecord] = None
    changed: bool = False
    syncStatus: SyncStatus = "synced"
