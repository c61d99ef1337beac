# app/models/__init__.py

from app.models.transaction import (
    ExtractedPixReceipt,
    ExtractedBankTransaction,
    NormalizedDate,
    NormalizedPixReceipt,
    NormalizedBankTransaction,
)
from app.models.match import (
    ScoreBreakdown,
    MatchCandidate,
    CandidateAudit,
    MatchStatus,
    ReviewDecision,
    ReconciliationMatch,
    StructuralWarning,
    ReconciliationCounts,
    ReconciliationResult,
)

__all__ = [
    # Transaction
    "ExtractedPixReceipt",
    "ExtractedBankTransaction",
    "NormalizedDate",
    "NormalizedPixReceipt",
    "NormalizedBankTransaction",
    # Match
    "ScoreBreakdown",
    "MatchCandidate",
    "CandidateAudit",
    "MatchStatus",
    "ReviewDecision",
    "ReconciliationMatch",
    "StructuralWarning",
    "ReconciliationCounts",
    "ReconciliationResult",
]
