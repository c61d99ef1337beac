# app/core/candidates.py

"""
Candidate generation.

Bounds the work of the scorer: a receipt is only compared with bank credits
inside its amount band and settlement date window. Bank credits are sorted
by amount once per run, so each receipt costs a bisect plus its band.
"""

from bisect import bisect_left, bisect_right
from decimal import Decimal
import logging

from app.config import MatchingConfig
from app.core.confidence import find_transaction_id
from app.core.normalizers import CENTS
from app.errors import CapacityError
from app.models import MatchCandidate, NormalizedBankTransaction, NormalizedPixReceipt

logger = logging.getLogger(__name__)


def check_capacity(receipt_count: int, bank_count: int, config: MatchingConfig) -> bool:
    """
    Check the snapshot size against the configured bounds.

    Returns True when candidate generation must switch to strict pre-filtering.
    Raises CapacityError when the snapshot is beyond the safety bound.
    """
    if receipt_count > config.max_pix_receipts:
        raise CapacityError(
            f"{receipt_count} PIX receipts exceed the limit of {config.max_pix_receipts}",
            size=receipt_count,
            limit=config.max_pix_receipts,
        )
    if bank_count > config.max_bank_transactions:
        raise CapacityError(
            f"{bank_count} bank transactions exceed the limit of {config.max_bank_transactions}",
            size=bank_count,
            limit=config.max_bank_transactions,
        )

    strict = bank_count > config.strict_prefilter_threshold
    if strict:
        logger.info(
            "Bank snapshot of %d credits is above %d, using strict pre-filtering",
            bank_count, config.strict_prefilter_threshold,
        )
    return strict


class CandidateIndex:
    """Bank credits sorted by amount for band lookups."""

    def __init__(
        self,
        bank_transactions: list[NormalizedBankTransaction],
        config: MatchingConfig,
        strict: bool = False,
    ):
        self.config = config
        self.strict = strict

        if strict:
            self.date_window_days = min(config.date_window_days, config.strict_date_window_days)
        else:
            self.date_window_days = config.date_window_days

        credits = sorted(
            (t for t in bank_transactions if t.is_credit),
            key=lambda t: (t.amount, t.id),
        )
        self._transactions = credits
        self._amounts = [t.amount for t in credits]
        self._by_id = {t.id: t for t in credits}

    def __len__(self) -> int:
        return len(self._transactions)

    def tolerance_for(self, receipt: NormalizedPixReceipt) -> Decimal:
        """Amount band half-width; strict runs only absorb rounding noise."""
        if self.strict:
            return CENTS
        return self.config.tolerance_for(receipt.amount)

    def band(self, receipt: NormalizedPixReceipt) -> list[MatchCandidate]:
        """Every credit inside the receipt's amount band and date window, closest first."""
        tolerance = self.tolerance_for(receipt)
        low = bisect_left(self._amounts, receipt.amount - tolerance)
        high = bisect_right(self._amounts, receipt.amount + tolerance)

        receipt_day = receipt.transaction_date.day
        receipt_ts = receipt.transaction_date.timestamp

        candidates: list[MatchCandidate] = []
        for bank in self._transactions[low:high]:
            day_delta = (bank.transaction_date.day - receipt_day).days
            # Settlement can lag a few days but never precedes the receipt
            if day_delta < 0 or day_delta > self.date_window_days:
                continue

            candidates.append(MatchCandidate(
                pix_receipt_id=receipt.id,
                bank_transaction_id=bank.id,
                amount_delta=abs(bank.amount - receipt.amount),
                day_delta=day_delta,
                seconds_delta=int(abs((bank.transaction_date.timestamp - receipt_ts).total_seconds())),
            ))

        candidates.sort(key=lambda c: (c.amount_delta, c.day_delta, c.seconds_delta, c.bank_transaction_id))
        return candidates

    def candidates_for(self, receipt: NormalizedPixReceipt) -> list[MatchCandidate]:
        """
        Unscored candidates for a receipt, capped at `max_candidates_per_receipt`.

        Lines carrying the receipt's transaction ID go first so the cap never
        drops them in favour of generic lines with the same amount and date.
        """
        candidates = self.band(receipt)
        carries_id = {
            c.bank_transaction_id for c in candidates
            if find_transaction_id(receipt, self._by_id[c.bank_transaction_id], self.config)
        }
        candidates.sort(key=lambda c: c.bank_transaction_id not in carries_id)
        return candidates[:self.config.max_candidates_per_receipt]


def generate_candidates(
    receipt: NormalizedPixReceipt,
    bank_transactions: list[NormalizedBankTransaction],
    config: MatchingConfig,
    strict: bool = False,
) -> list[MatchCandidate]:
    """
    Produce the bounded set of plausible bank transactions for one receipt.

    Convenience wrapper; a full run builds one CandidateIndex and reuses it.
    """
    return CandidateIndex(bank_transactions, config, strict=strict).candidates_for(receipt)
