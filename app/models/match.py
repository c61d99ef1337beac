# app/models/match.py

from datetime import datetime
from decimal import Decimal
from typing import Optional, Literal

from pydantic import BaseModel, ConfigDict, Field


# ============================================
# Confidence Scoring
# ============================================

class ScoreBreakdown(BaseModel):
    """Breakdown of how a match confidence score was calculated."""

    model_config = ConfigDict(frozen=True)

    amount_score: float = Field(ge=0, le=100)
    date_score: float = Field(ge=0, le=100)
    name_score: float = Field(ge=0, le=100)
    id_score: float = Field(ge=0, le=100)
    total_score: int = Field(ge=0, le=100)
    reasons: tuple[str, ...] = Field(default=(), description="Human-readable factors")


class MatchCandidate(BaseModel):
    """A bank transaction plausible enough to be scored against a receipt."""

    model_config = ConfigDict(frozen=True)

    pix_receipt_id: str
    bank_transaction_id: str
    amount_delta: Decimal
    day_delta: int
    seconds_delta: int
    score_breakdown: Optional[ScoreBreakdown] = None

    @property
    def total_score(self) -> int:
        return self.score_breakdown.total_score if self.score_breakdown else 0


class CandidateAudit(BaseModel):
    """Scored alternative kept on a match for auditability."""

    bank_transaction_id: str
    total_score: int
    amount_score: float
    date_score: float
    name_score: float
    id_score: float


# ============================================
# Match
# ============================================

# "pending" only exists inside a run; it is never persisted
MatchStatus = Literal["auto_matched", "manual_review", "no_match", "confirmed", "rejected"]
ReviewDecision = Literal["confirmed", "rejected"]

HUMAN_STATUSES = ("confirmed", "rejected")


class ReconciliationMatch(BaseModel):
    """Final pairing of a PIX receipt with (at most) one bank transaction."""

    id: str
    pix_receipt_id: str
    pix_receipt_version: int = 1
    bank_transaction_id: Optional[str] = None
    bank_transaction_version: Optional[int] = None
    match_confidence: int = Field(ge=0, le=100)
    status: MatchStatus
    match_reasons: list[str] = Field(default_factory=list)
    score_breakdown: Optional[ScoreBreakdown] = None
    candidates: list[CandidateAudit] = Field(default_factory=list)
    matched_at: datetime
    reviewed_at: Optional[datetime] = None


# ============================================
# Warnings
# ============================================

class StructuralWarning(BaseModel):
    """A record that couldn't be fully normalized. Needs manual review - extraction issue."""

    record_type: Literal["pix_receipt", "bank_transaction"]
    record_id: str
    field: Optional[str] = None
    code: str
    message: str
    raw_value: Optional[str] = None
    excluded: bool = True


# ============================================
# Result
# ============================================

class ReconciliationCounts(BaseModel):
    """Payload sent to the notification hook."""

    auto_matched: int
    manual_review: int
    unmatched: int


class ReconciliationResult(BaseModel):
    """Aggregate of a reconciliation run. Replaced wholesale on every run."""

    session_id: str
    snapshot_at: datetime
    total_pix_receipts: int
    total_bank_transactions: int
    auto_matched: int
    manual_review: int
    unmatched: int
    confirmed: int = 0
    rejected: int = 0
    strict_prefilter: bool = False
    matches: list[ReconciliationMatch] = Field(default_factory=list)
    warnings: list[StructuralWarning] = Field(default_factory=list)

    @property
    def counts(self) -> ReconciliationCounts:
        return ReconciliationCounts(
            auto_matched=self.auto_matched,
            manual_review=self.manual_review,
            unmatched=self.unmatched,
        )

    def match_for_receipt(self, pix_receipt_id: str) -> Optional[ReconciliationMatch]:
        for match in self.matches:
            if match.pix_receipt_id == pix_receipt_id:
                return match
        return None

    def to_dict(self) -> dict:
        """Convert to a JSON-safe dictionary for storage / API response."""
        return self.model_dump(mode="json")
