# app/core/matching.py

"""
Core reconciliation matching engine.

Pairs PIX receipts with bank statement credits:
1. Normalize both sides (bad records become structural warnings)
2. Carry over human decisions whose source records are unchanged
3. Generate candidates per receipt (amount band + settlement window)
4. Score every candidate
5. Greedily assign bank lines, best score first, and classify
"""

from datetime import datetime
from typing import Iterable, Optional, TypeVar
import logging
import time
import uuid

from app.config import MatchingConfig
from app.core.candidates import CandidateIndex, check_capacity
from app.core.confidence import calculate_confidence
from app.core.normalizers import normalize_bank_transaction, normalize_pix_receipt
from app.errors import StructuralError
from app.models import (
    CandidateAudit,
    ExtractedBankTransaction,
    ExtractedPixReceipt,
    MatchCandidate,
    NormalizedBankTransaction,
    NormalizedPixReceipt,
    ReconciliationMatch,
    ReconciliationResult,
    StructuralWarning,
)
from app.models.match import HUMAN_STATUSES
from app.models.transaction import raw_repr

logger = logging.getLogger(__name__)

MATCH_NAMESPACE = uuid.UUID("5d6f0c8e-8a53-4c3e-9a1f-3f2b7c0d9e41")

# Used when no record in the snapshot carries a creation time
EPOCH = datetime(1970, 1, 1)

R = TypeVar("R", ExtractedPixReceipt, ExtractedBankTransaction)


def reconcile(
    session_id: str,
    pix_receipts: list[ExtractedPixReceipt],
    bank_transactions: list[ExtractedBankTransaction],
    config: MatchingConfig,
    previous: Optional[ReconciliationResult] = None,
) -> ReconciliationResult:
    """
    Main reconciliation function.

    Pure over its inputs: the same snapshot, configuration and previous
    result always produce the same ReconciliationResult.

    Raises ConfigurationError / CapacityError before any record is processed.
    """
    start_time = time.monotonic()

    config.validate_config()

    receipts_raw = _latest_versions(pix_receipts)
    banks_raw = _latest_versions(bank_transactions)
    strict = check_capacity(len(receipts_raw), len(banks_raw), config)

    snapshot_at = max(
        (r.created_at for r in [*receipts_raw, *banks_raw] if r.created_at is not None),
        default=EPOCH,
    )

    # ============================================
    # Normalize
    # ============================================
    warnings: list[StructuralWarning] = []
    receipts: list[NormalizedPixReceipt] = []
    banks: list[NormalizedBankTransaction] = []

    for raw in receipts_raw:
        outcome = normalize_pix_receipt(raw)
        warnings.extend(_to_warning("pix_receipt", e, excluded=not outcome.ok) for e in outcome.errors)
        if outcome.ok:
            receipts.append(outcome.record)

    for raw in banks_raw:
        outcome = normalize_bank_transaction(raw)
        warnings.extend(_to_warning("bank_transaction", e, excluded=not outcome.ok) for e in outcome.errors)
        if outcome.ok:
            banks.append(outcome.record)

    # ============================================
    # Human decisions on unchanged records
    # ============================================
    carried = carry_over_reviews(previous, receipts, banks)
    locked_receipts = {m.pix_receipt_id for m in carried}
    confirmed_banks = {m.bank_transaction_id for m in carried if m.status == "confirmed"}

    open_receipts = [r for r in receipts if r.id not in locked_receipts]
    pool = [b for b in banks if b.id not in confirmed_banks]

    # ============================================
    # Candidates + scoring
    # ============================================
    index = CandidateIndex(pool, config, strict=strict)
    banks_by_id = {b.id: b for b in pool}

    candidates_by_receipt: dict[str, list[MatchCandidate]] = {}
    for receipt in open_receipts:
        tolerance = index.tolerance_for(receipt)
        scored = []
        # Score the whole band, then keep the best: closeness alone can't rank identical credits
        for candidate in index.band(receipt):
            breakdown = calculate_confidence(
                receipt,
                banks_by_id[candidate.bank_transaction_id],
                config,
                amount_tolerance=tolerance,
                date_window_days=index.date_window_days,
            )
            scored.append(candidate.model_copy(update={"score_breakdown": breakdown}))
        scored.sort(key=_rank)
        candidates_by_receipt[receipt.id] = scored[:config.max_candidates_per_receipt]

    # ============================================
    # Assignment
    # ============================================
    matches = assign(
        open_receipts,
        candidates_by_receipt,
        config,
        session_id=session_id,
        matched_at=snapshot_at,
        bank_versions={b.id: b.version for b in pool},
    )
    matches.extend(carried)
    matches.sort(key=lambda m: m.pix_receipt_id)

    warnings.sort(key=lambda w: (w.record_type, w.record_id, w.field or "", w.code))

    result = ReconciliationResult(
        session_id=session_id,
        snapshot_at=snapshot_at,
        total_pix_receipts=len(receipts_raw),
        total_bank_transactions=len(banks_raw),
        auto_matched=_count(matches, "auto_matched"),
        manual_review=_count(matches, "manual_review"),
        unmatched=_count(matches, "no_match"),
        confirmed=_count(matches, "confirmed"),
        rejected=_count(matches, "rejected"),
        strict_prefilter=strict,
        matches=matches,
        warnings=warnings,
    )

    duration_ms = int((time.monotonic() - start_time) * 1000)
    logger.info(
        "Reconciled session %s: %d receipts, %d bank lines -> %d auto, %d review, %d unmatched, "
        "%d warnings (%d ms)",
        session_id, result.total_pix_receipts, result.total_bank_transactions,
        result.auto_matched, result.manual_review, result.unmatched, len(warnings), duration_ms,
    )
    return result


def assign(
    receipts: list[NormalizedPixReceipt],
    candidates_by_receipt: dict[str, list[MatchCandidate]],
    config: MatchingConfig,
    session_id: str,
    matched_at: datetime,
    bank_versions: Optional[dict[str, int]] = None,
) -> list[ReconciliationMatch]:
    """
    Resolve scored candidates into one match per receipt.

    Greedy maximum-weight assignment: every (receipt, candidate) pair at or
    above the review floor is visited best score first; a pair is taken
    when neither side is assigned yet. Ties go to the smaller settlement
    lag, then the closer timestamp, then the smaller bank transaction ID.
    """
    bank_versions = bank_versions or {}
    floor = config.manual_review_threshold

    pairs = [
        (receipt, candidate)
        for receipt in receipts
        for candidate in candidates_by_receipt.get(receipt.id, [])
        if candidate.total_score >= floor
    ]
    pairs.sort(key=lambda p: _rank(p[1]))

    assigned: dict[str, MatchCandidate] = {}
    used_banks: dict[str, str] = {}

    for receipt, candidate in pairs:
        if receipt.id in assigned or candidate.bank_transaction_id in used_banks:
            continue
        assigned[receipt.id] = candidate
        used_banks[candidate.bank_transaction_id] = receipt.id

    matches = []
    for receipt in sorted(receipts, key=lambda r: r.id):
        candidates = sorted(candidates_by_receipt.get(receipt.id, []), key=_rank)
        audit = [_audit(c) for c in candidates[:config.audit_candidates]]

        def build(status, candidate=None, confidence=0, reasons=None):
            bank_id = candidate.bank_transaction_id if candidate else None
            return ReconciliationMatch(
                id=match_id(session_id, receipt),
                pix_receipt_id=receipt.id,
                pix_receipt_version=receipt.version,
                bank_transaction_id=bank_id,
                bank_transaction_version=bank_versions.get(bank_id) if bank_id else None,
                match_confidence=confidence,
                status=status,
                match_reasons=reasons or [],
                score_breakdown=candidate.score_breakdown if candidate else None,
                candidates=audit,
                matched_at=matched_at,
            )

        chosen = assigned.get(receipt.id)
        if chosen is not None:
            status = classify(chosen.total_score, config)
            matches.append(build(
                status,
                candidate=chosen,
                confidence=chosen.total_score,
                reasons=list(chosen.score_breakdown.reasons),
            ))
            continue

        if not candidates:
            matches.append(build("no_match", reasons=["No bank credit within the amount and date window"]))
            continue

        best = candidates[0]
        if best.total_score < floor:
            matches.append(build(
                "no_match",
                confidence=best.total_score,
                reasons=[f"Best candidate scored {best.total_score}, below review threshold {floor}"],
            ))
            continue

        # Every eligible candidate went to another receipt: one tier down
        owner = used_banks.get(best.bank_transaction_id)
        contested = f"Bank transaction {best.bank_transaction_id} already assigned to receipt {owner}"
        if best.total_score >= config.auto_match_threshold:
            matches.append(build(
                "manual_review",
                candidate=best,
                confidence=best.total_score,
                reasons=[*best.score_breakdown.reasons, contested],
            ))
        else:
            matches.append(build("no_match", confidence=best.total_score, reasons=[contested]))

    return matches


def classify(total_score: int, config: MatchingConfig) -> str:
    """Map a total score to an action tier."""
    if total_score >= config.auto_match_threshold:
        return "auto_matched"
    if total_score >= config.manual_review_threshold:
        return "manual_review"
    return "no_match"


def carry_over_reviews(
    previous: Optional[ReconciliationResult],
    receipts: list[NormalizedPixReceipt],
    banks: list[NormalizedBankTransaction],
) -> list[ReconciliationMatch]:
    """
    Human-confirmed / rejected matches that survive this run unchanged.

    A decision is dropped (and its receipt re-enters matching) when the
    receipt or bank transaction was reprocessed into a new version or is
    gone from the snapshot.
    """
    if previous is None:
        return []

    receipt_versions = {r.id: r.version for r in receipts}
    bank_versions = {b.id: b.version for b in banks}

    carried = []
    confirmed_banks: set[str] = set()
    for match in sorted(previous.matches, key=lambda m: m.pix_receipt_id):
        if match.status not in HUMAN_STATUSES:
            continue
        if receipt_versions.get(match.pix_receipt_id) != match.pix_receipt_version:
            logger.info("Dropping %s decision on receipt %s: receipt changed", match.status, match.pix_receipt_id)
            continue
        bank_id = match.bank_transaction_id
        if bank_id is not None and bank_versions.get(bank_id) != match.bank_transaction_version:
            logger.info("Dropping %s decision on receipt %s: bank line changed", match.status, match.pix_receipt_id)
            continue
        if match.status == "confirmed":
            if bank_id in confirmed_banks:
                continue
            confirmed_banks.add(bank_id)
        carried.append(match)
    return carried


def match_id(session_id: str, receipt: NormalizedPixReceipt) -> str:
    """Stable match ID: same session + receipt version gives the same ID on every run."""
    return str(uuid.uuid5(MATCH_NAMESPACE, f"{session_id}:{receipt.id}:{receipt.version}"))


def _rank(candidate: MatchCandidate) -> tuple:
    return (
        -candidate.total_score,
        candidate.day_delta,
        candidate.seconds_delta,
        candidate.bank_transaction_id,
        candidate.pix_receipt_id,
    )


def _audit(candidate: MatchCandidate) -> CandidateAudit:
    breakdown = candidate.score_breakdown
    return CandidateAudit(
        bank_transaction_id=candidate.bank_transaction_id,
        total_score=breakdown.total_score if breakdown else 0,
        amount_score=breakdown.amount_score if breakdown else 0,
        date_score=breakdown.date_score if breakdown else 0,
        name_score=breakdown.name_score if breakdown else 0,
        id_score=breakdown.id_score if breakdown else 0,
    )


def _latest_versions(records: Iterable[R]) -> list[R]:
    """Keep only the highest version of each record, ordered by ID."""
    latest: dict[str, R] = {}
    for record in records:
        current = latest.get(record.id)
        if current is None or record.version > current.version:
            latest[record.id] = record
    return [latest[key] for key in sorted(latest)]


def _to_warning(record_type: str, error: StructuralError, excluded: bool) -> StructuralWarning:
    return StructuralWarning(
        record_type=record_type,
        record_id=error.record_id or "",
        field=error.field,
        code=error.code,
        message=error.message,
        raw_value=raw_repr(error.raw_value),
        excluded=excluded,
    )


def _count(matches: list[ReconciliationMatch], status: str) -> int:
    return len([m for m in matches if m.status == status])
