# app/models/transaction.py

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# Fields coming straight out of OCR / statement parsing can be anything
RawValue = Union[str, int, float, Decimal, date, datetime, None]


# ============================================
# Extracted records (raw, as produced by OCR / parsing)
# ============================================

class ExtractedPixReceipt(BaseModel):
    """A PIX receipt as extracted from an uploaded image/PDF."""

    model_config = ConfigDict(frozen=True)

    id: str
    version: int = 1
    amount: RawValue = None
    payer_name: Optional[str] = None
    payer_document: RawValue = None
    transaction_id: Optional[str] = None
    transaction_date: RawValue = None
    bank_name: Optional[str] = None
    extraction_confidence: float = Field(default=100, ge=0, le=100)
    created_at: Optional[datetime] = None


class ExtractedBankTransaction(BaseModel):
    """A single line of a parsed bank statement. Amount is signed; only credits are reconciled."""

    model_config = ConfigDict(frozen=True)

    id: str
    version: int = 1
    amount: RawValue = None
    description: Optional[str] = None
    transaction_date: RawValue = None
    transaction_id: Optional[str] = None
    bank_name: Optional[str] = None
    payer_name: Optional[str] = None
    payer_document: RawValue = None
    created_at: Optional[datetime] = None


# ============================================
# Normalized records (typed, comparable)
# ============================================

class NormalizedDate(BaseModel):
    """Day used for matching plus the original timestamp kept for tie-breaks."""

    model_config = ConfigDict(frozen=True)

    day: date
    timestamp: datetime


class NormalizedPixReceipt(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    version: int
    amount: Decimal
    transaction_date: NormalizedDate
    payer_name: str = ""
    payer_tokens: tuple[str, ...] = ()
    payer_document: Optional[str] = None
    transaction_id: str = ""
    bank_name: Optional[str] = None
    extraction_confidence: float = 100


class NormalizedBankTransaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    version: int
    amount: Decimal
    transaction_date: NormalizedDate
    description: str = ""
    # Name-like fragment left after removing bank boilerplate from the description
    name_tokens: tuple[str, ...] = ()
    description_key: str = ""
    # Each whitespace-separated word of the description, in transaction ID form
    description_tokens: tuple[str, ...] = ()
    # Standalone CPFs printed on the line
    description_documents: tuple[str, ...] = ()
    transaction_id: str = ""
    payer_document: Optional[str] = None
    bank_name: Optional[str] = None

    @property
    def is_credit(self) -> bool:
        return self.amount > 0


def raw_repr(value: Any) -> Optional[str]:
    """String form of a raw field for warnings."""
    if value is None:
        return None
    return str(value)
