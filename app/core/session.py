# app/core/session.py

"""
Reconciliation session store.

Runs the matching engine for one session at a time over a snapshot of its
extracted records, writes the whole result back in one replace, and tells
the notification hook how the run went.

Sessions never share mutable state; each one has its own lock.
"""

from datetime import datetime
from typing import Optional, Protocol
import logging
import threading

from app.config import MatchingConfig
from app.core.matching import reconcile
from app.errors import InvalidTransition, MatchNotFound, SessionNotFound
from app.models import (
    ExtractedBankTransaction,
    ExtractedPixReceipt,
    ReconciliationCounts,
    ReconciliationMatch,
    ReconciliationResult,
    ReviewDecision,
)

logger = logging.getLogger(__name__)

REVIEWABLE_STATUSES = ("auto_matched", "manual_review")


# ============================================
# Collaborators
# ============================================

class DocumentStore(Protocol):
    """Source of extracted records for a session."""

    def list_extracted_pix_receipts(self, session_id: str) -> list[ExtractedPixReceipt]: ...

    def list_extracted_bank_transactions(self, session_id: str) -> list[ExtractedBankTransaction]: ...


class ResultSink(Protocol):
    """Persistence for the session's ReconciliationResult. Writes replace the whole aggregate."""

    def replace_result(self, session_id: str, result: ReconciliationResult) -> None: ...

    def get_result(self, session_id: str) -> Optional[ReconciliationResult]: ...


class NotificationHook(Protocol):
    def notify(self, session_id: str, counts: ReconciliationCounts) -> None: ...


# ============================================
# Service
# ============================================

class ReconciliationService:
    """Entry point used by the upload / API layer."""

    def __init__(
        self,
        documents: DocumentStore,
        results: ResultSink,
        config: MatchingConfig,
        notifier: Optional[NotificationHook] = None,
    ):
        self.documents = documents
        self.results = results
        self.config = config
        self.notifier = notifier

        self._registry_lock = threading.Lock()
        self._session_locks: dict[str, threading.Lock] = {}
        self._running: set[str] = set()
        self._pending: set[str] = set()

    def run_reconciliation(self, session_id: str) -> ReconciliationResult:
        """
        Run the engine for a session and persist the result.

        Raises ConfigurationError / CapacityError without writing anything.
        """
        with self._session_lock(session_id):
            return self._run(session_id)

    def request_reconciliation(self, session_id: str) -> Optional[ReconciliationResult]:
        """
        Debounced trigger for upload events.

        If a run for the session is already in flight, one re-run is queued
        (any number of requests collapse into it) and None is returned. The
        caller that owns the in-flight run executes the queued re-run once it
        finishes, and returns the latest result.
        """
        with self._registry_lock:
            if session_id in self._running:
                self._pending.add(session_id)
                logger.debug("Run in flight for session %s, queued one re-run", session_id)
                return None
            self._running.add(session_id)

        try:
            while True:
                result = self.run_reconciliation(session_id)
                with self._registry_lock:
                    if session_id not in self._pending:
                        self._running.discard(session_id)
                        return result
                    self._pending.discard(session_id)
        except Exception:
            with self._registry_lock:
                self._running.discard(session_id)
                self._pending.discard(session_id)
            raise

    def get_result(self, session_id: str) -> ReconciliationResult:
        result = self.results.get_result(session_id)
        if result is None:
            raise SessionNotFound(f"No reconciliation result for session {session_id}")
        return result

    def review_match(
        self,
        session_id: str,
        match_id: str,
        decision: ReviewDecision,
        reviewed_at: Optional[datetime] = None,
    ) -> ReconciliationMatch:
        """
        Apply a human decision (confirmed / rejected) to an engine match.

        The decision sticks across later runs until the receipt or the bank
        transaction is reprocessed.
        """
        with self._session_lock(session_id):
            result = self.get_result(session_id)

            match = next((m for m in result.matches if m.id == match_id), None)
            if match is None:
                raise MatchNotFound(f"Match {match_id} not found in session {session_id}")

            if match.status not in REVIEWABLE_STATUSES:
                raise InvalidTransition(f"Can't mark a {match.status} match as {decision}")

            if decision == "confirmed":
                if match.bank_transaction_id is None:
                    raise InvalidTransition("Can't confirm a match without a bank transaction")
                owner = next(
                    (
                        m for m in result.matches
                        if m.id != match.id
                        and m.bank_transaction_id == match.bank_transaction_id
                        and m.status in ("auto_matched", "confirmed")
                    ),
                    None,
                )
                if owner is not None:
                    raise InvalidTransition(
                        f"Bank transaction {match.bank_transaction_id} is already "
                        f"{owner.status} with receipt {owner.pix_receipt_id}"
                    )

            updated = match.model_copy(update={
                "status": decision,
                "reviewed_at": reviewed_at or datetime.now(),
            })
            matches = [updated if m.id == match.id else m for m in result.matches]
            self.results.replace_result(session_id, summarize(result, matches))

            logger.info("Match %s in session %s marked %s", match_id, session_id, decision)
            return updated

    def _run(self, session_id: str) -> ReconciliationResult:
        self.config.validate_config()

        # Snapshot: the engine only ever sees these lists
        pix_receipts = list(self.documents.list_extracted_pix_receipts(session_id))
        bank_transactions = list(self.documents.list_extracted_bank_transactions(session_id))
        previous = self.results.get_result(session_id)

        result = reconcile(session_id, pix_receipts, bank_transactions, self.config, previous=previous)

        self.results.replace_result(session_id, result)
        self._notify(session_id, result)
        return result

    def _notify(self, session_id: str, result: ReconciliationResult) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(session_id, result.counts)
        except Exception as e:
            # Result is already stored; a failed notification doesn't fail the run
            logger.warning("Notification for session %s failed: %s", session_id, e)

    def _session_lock(self, session_id: str) -> threading.Lock:
        with self._registry_lock:
            return self._session_locks.setdefault(session_id, threading.Lock())


def summarize(result: ReconciliationResult, matches: list[ReconciliationMatch]) -> ReconciliationResult:
    """Copy of `result` with a new match list and recomputed counts."""

    def count(status: str) -> int:
        return len([m for m in matches if m.status == status])

    return result.model_copy(update={
        "matches": matches,
        "auto_matched": count("auto_matched"),
        "manual_review": count("manual_review"),
        "unmatched": count("no_match"),
        "confirmed": count("confirmed"),
        "rejected": count("rejected"),
    })
