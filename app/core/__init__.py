# app/core/__init__.py

from app.core.matching import reconcile, assign, classify
from app.core.candidates import generate_candidates, CandidateIndex
from app.core.confidence import calculate_confidence
from app.core.normalizers import (
    normalize_amount,
    normalize_date,
    normalize_document,
    normalize_name,
    normalize_pix_receipt,
    normalize_bank_transaction,
)

__all__ = [
    "reconcile",
    "assign",
    "classify",
    "generate_candidates",
    "CandidateIndex",
    "calculate_confidence",
    "normalize_amount",
    "normalize_date",
    "normalize_document",
    "normalize_name",
    "normalize_pix_receipt",
    "normalize_bank_transaction",
]
