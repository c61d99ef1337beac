# app/database.py

from datetime import datetime
from functools import lru_cache
from typing import Optional
import threading

from supabase import create_client, Client

from app.config import get_settings
from app.models import (
    ExtractedBankTransaction,
    ExtractedPixReceipt,
    ReconciliationResult,
)


@lru_cache()
def get_supabase_admin() -> Client:
    """Admin client (bypasses RLS - use carefully)."""
    settings = get_settings()
    if not settings.supabase_url or not settings.supabase_service_role_key:
        raise RuntimeError("Supabase is not configured (SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY)")
    return create_client(settings.supabase_url, settings.supabase_service_role_key)


# ============================================
# Supabase-backed collaborators
# ============================================

class SupabaseDocumentStore:
    """Reads extracted records written by the OCR / statement parsing pipeline."""

    def __init__(self, client: Client):
        self.client = client

    def list_extracted_pix_receipts(self, session_id: str) -> list[ExtractedPixReceipt]:
        response = (
            self.client.table("pix_receipts")
            .select("*")
            .eq("session_id", session_id)
            .order("id")
            .execute()
        )
        return [ExtractedPixReceipt.model_validate(row) for row in response.data]

    def list_extracted_bank_transactions(self, session_id: str) -> list[ExtractedBankTransaction]:
        response = (
            self.client.table("bank_transactions")
            .select("*")
            .eq("session_id", session_id)
            .order("id")
            .execute()
        )
        return [ExtractedBankTransaction.model_validate(row) for row in response.data]


class SupabaseResultSink:
    """
    One row per session in `reconciliation_results`.

    The whole ReconciliationResult is a single JSON column, so an upsert
    replaces the aggregate atomically.
    """

    def __init__(self, client: Client):
        self.client = client

    def replace_result(self, session_id: str, result: ReconciliationResult) -> None:
        row = {
            "session_id": session_id,
            "snapshot_at": result.snapshot_at.isoformat(),
            "result": result.to_dict(),
            "updated_at": datetime.now().isoformat(),
        }
        self.client.table("reconciliation_results").upsert(row, on_conflict="session_id").execute()

    def get_result(self, session_id: str) -> Optional[ReconciliationResult]:
        response = (
            self.client.table("reconciliation_results")
            .select("result")
            .eq("session_id", session_id)
            .execute()
        )
        if not response.data:
            return None
        return ReconciliationResult.model_validate(response.data[0]["result"])


# ============================================
# In-memory collaborators (local runs, tests)
# ============================================

class InMemoryDocumentStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._receipts: dict[str, list[ExtractedPixReceipt]] = {}
        self._transactions: dict[str, list[ExtractedBankTransaction]] = {}

    def add_pix_receipt(self, session_id: str, receipt: ExtractedPixReceipt) -> None:
        with self._lock:
            self._receipts.setdefault(session_id, []).append(receipt)

    def add_bank_transaction(self, session_id: str, transaction: ExtractedBankTransaction) -> None:
        with self._lock:
            self._transactions.setdefault(session_id, []).append(transaction)

    def list_extracted_pix_receipts(self, session_id: str) -> list[ExtractedPixReceipt]:
        with self._lock:
            return list(self._receipts.get(session_id, []))

    def list_extracted_bank_transactions(self, session_id: str) -> list[ExtractedBankTransaction]:
        with self._lock:
            return list(self._transactions.get(session_id, []))


class InMemoryResultSink:
    def __init__(self):
        self._lock = threading.Lock()
        self._results: dict[str, ReconciliationResult] = {}

    def replace_result(self, session_id: str, result: ReconciliationResult) -> None:
        with self._lock:
            self._results[session_id] = result.model_copy(deep=True)

    def get_result(self, session_id: str) -> Optional[ReconciliationResult]:
        with self._lock:
            result = self._results.get(session_id)
            return result.model_copy(deep=True) if result else None
