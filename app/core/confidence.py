# app/core/confidence.py

"""
Confidence scoring for PIX receipt <-> bank transaction pairs.

Each factor scores 0-100:
- Amount:          100 exact, decays linearly to 0 at the tolerance edge
- Date:            100 same day, decays linearly to a floor at the window edge
- Name:            CPF on the bank line, else fuzzy similarity with the name fragment
- Transaction ID:  100 when the end-to-end ID shows up on the bank line

The total is a weighted sum (weights from MatchingConfig), so it is a pure
function of the two normalized records plus configuration. A receipt that
carries no transaction ID hands the ID weight to the payer identity factor.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from rapidfuzz import fuzz

from app.config import MatchingConfig, ScoreWeights
from app.core.normalizers import significant_tokens
from app.models import NormalizedBankTransaction, NormalizedPixReceipt, ScoreBreakdown


def calculate_confidence(
    receipt: NormalizedPixReceipt,
    bank: NormalizedBankTransaction,
    config: MatchingConfig,
    amount_tolerance: Optional[Decimal] = None,
    date_window_days: Optional[int] = None,
) -> ScoreBreakdown:
    """
    Calculate match confidence between a PIX receipt and a bank transaction.

    `amount_tolerance` / `date_window_days` default to the configured band;
    a strict run passes its narrower band so decay stays relative to it.
    """
    if amount_tolerance is None:
        amount_tolerance = config.tolerance_for(receipt.amount)
    if date_window_days is None:
        date_window_days = config.date_window_days

    reasons: list[str] = []

    # ============================================
    # Transaction ID
    # ============================================
    id_reason = find_transaction_id(receipt, bank, config)
    id_score = 100.0 if id_reason else 0.0
    if id_reason:
        reasons.append(id_reason)

    # ============================================
    # Amount
    # ============================================
    amount_score = _score_amount(receipt.amount, bank.amount, amount_tolerance, reasons)

    # ============================================
    # Date
    # ============================================
    day_delta = (bank.transaction_date.day - receipt.transaction_date.day).days
    date_score = _score_date(day_delta, date_window_days, config.date_score_floor, reasons)

    # ============================================
    # Name / document
    # ============================================
    name_score = _score_name(receipt, bank, reasons)

    weights = effective_weights(receipt, config.weights)
    if weights is not config.weights:
        reasons.append("No transaction ID on receipt: payer identity carries the ID weight")
    weighted = (
        _dec(weights.id) * _dec(id_score)
        + _dec(weights.amount) * _dec(amount_score)
        + _dec(weights.date) * _dec(date_score)
        + _dec(weights.name) * _dec(name_score)
    )
    weighted = min(Decimal(100), max(Decimal(0), weighted))
    total = int(weighted.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    return ScoreBreakdown(
        amount_score=amount_score,
        date_score=date_score,
        name_score=name_score,
        id_score=id_score,
        total_score=total,
        reasons=tuple(reasons),
    )


def effective_weights(receipt: NormalizedPixReceipt, weights: ScoreWeights) -> ScoreWeights:
    """
    Weights for this receipt.

    Without a transaction ID the ID weight moves to the name / CPF factor, so
    a payer confirmed by name and document can still auto-match. A receipt
    with neither ID nor payer identity keeps the configured weights and can
    never clear the auto threshold on amount and date alone.
    """
    if receipt.transaction_id or not (receipt.payer_tokens or receipt.payer_document):
        return weights
    return weights.model_copy(update={"id": 0.0, "name": weights.name + weights.id})


def _score_amount(receipt_amount: Decimal, bank_amount: Decimal, tolerance: Decimal, reasons: list[str]) -> float:
    """Score based on amount difference (0-100)."""
    diff = abs(receipt_amount - bank_amount)

    if diff == 0:
        reasons.append(f"Exact amount: R$ {receipt_amount:.2f}")
        return 100.0
    if tolerance <= 0 or diff >= tolerance:
        reasons.append(f"Amount at tolerance edge: R$ {diff:.2f} difference")
        return 0.0

    score = float((1 - diff / tolerance) * 100)
    reasons.append(f"Amount within tolerance: R$ {diff:.2f} difference")
    return round(score, 2)


def _score_date(day_delta: int, window_days: int, floor: float, reasons: list[str]) -> float:
    """Score based on settlement lag in days (0-100)."""
    if day_delta == 0:
        reasons.append("Same day")
        return 100.0
    if day_delta < 0 or day_delta > window_days:
        reasons.append(f"Outside date window: {day_delta} days")
        return 0.0

    score = 100.0 - (100.0 - floor) * day_delta / window_days
    reasons.append(f"{day_delta} day{'s' if day_delta > 1 else ''} settlement lag")
    return round(min(100.0, score), 2)


def _score_name(receipt: NormalizedPixReceipt, bank: NormalizedBankTransaction, reasons: list[str]) -> float:
    """Score based on payer identity on the bank line (0-100)."""
    document = receipt.payer_document
    if document and (bank.payer_document == document or document in bank.description_documents):
        reasons.append(f"CPF confirmed: {document}")
        return 100.0

    if not bank.name_tokens:
        # Generic descriptions like "PIX RECEBIDO" carry no name
        return 0.0

    receipt_name = " ".join(significant_tokens(receipt.payer_tokens))
    if not receipt_name:
        return 0.0

    similarity = round(float(fuzz.token_set_ratio(receipt_name, " ".join(bank.name_tokens))), 2)

    if similarity >= 95:
        reasons.append("Payer name exact match")
    elif similarity >= 85:
        reasons.append("Payer name very similar")
    elif similarity >= 70:
        reasons.append("Payer name partially similar")
    elif similarity >= 50:
        reasons.append("Payer name possible match")
    return similarity


def find_transaction_id(
    receipt: NormalizedPixReceipt,
    bank: NormalizedBankTransaction,
    config: MatchingConfig,
) -> Optional[str]:
    """
    Look for the receipt's end-to-end ID on the bank line.

    Returns the reason to report, or None. A whole word of the description
    (or the bank's own ID) equal to the receipt ID always counts. Substring
    and suffix / prefix fragments only count for IDs of `min_id_length` or more.
    """
    transaction_id = receipt.transaction_id
    if not transaction_id:
        return None

    if transaction_id == bank.transaction_id or transaction_id in bank.description_tokens:
        return f"Transaction ID found on bank line: {transaction_id}"

    if len(transaction_id) < config.min_id_length:
        return None

    haystacks = [h for h in (bank.description_key, bank.transaction_id) if h]

    if any(transaction_id in h for h in haystacks):
        return f"Transaction ID found on bank line: {transaction_id}"

    fragments = []
    if len(transaction_id) > config.id_suffix_length:
        fragments.append(("suffix", transaction_id[-config.id_suffix_length:]))
    if len(transaction_id) > config.id_prefix_length:
        fragments.append(("prefix", transaction_id[:config.id_prefix_length]))

    for kind, fragment in fragments:
        if any(fragment in h for h in haystacks):
            return f"Transaction ID {kind} found on bank line: {fragment}"

    return None


def _dec(value: float) -> Decimal:
    return Decimal(str(value))
