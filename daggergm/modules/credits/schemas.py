from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from daggergm.utils.time import as_utc

CreditKind = Literal["adventure", "expansion", "export"]
TransactionType = Literal["consume", "refund", "purchase"]


class CreditBalanceOut(BaseModel):
    user_id: str
    credits: int
    total_purchased: int


class CreditTransactionOut(BaseModel):
    id: str
    type: TransactionType
    credit_kind: CreditKind
    amount: int
    balance_after: int
    metadata: dict
    created_at: datetime

    @field_serializer("created_at")
    def _serialize_utc(self, value: datetime) -> datetime:
        return as_utc(value)


class CreditGrantRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    amount: int = Field(ge=1, le=1000)
    source: str = Field(default="purchase", min_length=1, max_length=64)
    reference: str | None = Field(default=None, max_length=128)
