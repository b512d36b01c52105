from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict


class RegisterLoanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemRef: str
    borrowerKey: Optional[str] = None
    destination: Optional[str] = None
    purpose: str = "loan-via-scan"
    notes: Optional[str] = None
    expectedReturnAt: Optional[datetime] = None
    loanedBy: Optional[str] = None


class RegisterReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemRef: str
    returnedBy: str
    receivedBy: Optional[str] = None
    notes: Optional[str] = None


class ClassroomBatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    refs: List[str] = []
    classroomLabel: Optional[str] = None
    mode: Literal["loan", "return"] = "loan"
    operator: Optional[str] = None
