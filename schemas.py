from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import OffsetStatus


class OffsetIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    expense_transaction_id: int
    offset_transaction_id: int
    status: OffsetStatus = OffsetStatus.pending
    notes: Optional[str] = Field(default=None, max_length=1000)


class OffsetUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: Optional[Literal["confirmed", "rejected"]] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class OffsetMatchIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    matched_transaction_id: int
    notes: Optional[str] = Field(default=None, max_length=1000)
