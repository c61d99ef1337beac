# tests/test_matching.py

"""
Tests for the core matching engine.
"""

import pytest
from datetime import datetime
from decimal import Decimal

from app.config import MatchingConfig, ScoreWeights
from app.core.candidates import CandidateIndex, check_capacity, generate_candidates
from app.core.confidence import calculate_confidence
from app.core.matching import reconcile
from app.core.normalizers import normalize_bank_transaction, normalize_pix_receipt
from app.errors import CapacityError, ConfigurationError
from app.models import ExtractedBankTransaction, ExtractedPixReceipt


E2E_ID = "E12345678202501101230AbCdEf12345"
SESSION = "session_1"


# ============================================
# Test Data
# ============================================

def make_receipt(
    id: str,
    amount="150,00",
    txn_date="2025-01-10",
    payer_name: str = None,
    transaction_id: str = None,
    payer_document: str = None,
    version: int = 1,
) -> ExtractedPixReceipt:
    return ExtractedPixReceipt(
        id=id,
        version=version,
        amount=amount,
        payer_name=payer_name,
        payer_document=payer_document,
        transaction_id=transaction_id,
        transaction_date=txn_date,
        created_at=datetime(2025, 1, 12, 9, 0),
    )


def make_bank_txn(
    id: str,
    amount="150.00",
    txn_date="2025-01-10",
    description: str = "PIX RECEBIDO",
    transaction_id: str = None,
    payer_document: str = None,
    version: int = 1,
) -> ExtractedBankTransaction:
    return ExtractedBankTransaction(
        id=id,
        version=version,
        amount=amount,
        description=description,
        transaction_date=txn_date,
        transaction_id=transaction_id,
        payer_document=payer_document,
        created_at=datetime(2025, 1, 12, 10, 0),
    )


def normalized_receipt(**kwargs):
    return normalize_pix_receipt(make_receipt(**kwargs)).record


def normalized_bank(**kwargs):
    return normalize_bank_transaction(make_bank_txn(**kwargs)).record


# ============================================
# Confidence Scoring Tests
# ============================================

class TestConfidenceScoring:
    """Test the confidence scoring algorithm."""

    def test_exact_match_with_transaction_id(self):
        """Amount, date and E2E ID on the bank line should auto-match."""
        receipt = normalized_receipt(id="pix_1", transaction_id=E2E_ID)
        bank = normalized_bank(id="bank_1", description=f"PIX RECEBIDO {E2E_ID}")

        confidence = calculate_confidence(receipt, bank, MatchingConfig())

        assert confidence.id_score == 100
        assert confidence.amount_score == 100
        assert confidence.date_score == 100
        assert confidence.name_score == 0
        assert confidence.total_score == 90

    def test_id_suffix_on_bank_line(self):
        receipt = normalized_receipt(id="pix_1", transaction_id=E2E_ID)
        bank = normalized_bank(id="bank_1", description="PIX RECEBIDO ID 1230ABCDEF12345")

        confidence = calculate_confidence(receipt, bank, MatchingConfig())

        assert confidence.id_score == 100
        assert "suffix" in str(confidence.reasons)

    def test_id_in_bank_transaction_id_field(self):
        receipt = normalized_receipt(id="pix_1", transaction_id=E2E_ID)
        bank = normalized_bank(id="bank_1", transaction_id=E2E_ID.lower())

        assert calculate_confidence(receipt, bank, MatchingConfig()).id_score == 100

    def test_short_id_as_a_whole_word(self):
        receipt = normalized_receipt(id="pix_1", transaction_id="E123...789")
        bank = normalized_bank(id="bank_1", description="PIX RECEBIDO E123...789")

        assert calculate_confidence(receipt, bank, MatchingConfig()).id_score == 100

    def test_short_id_inside_a_longer_word_does_not_count(self):
        receipt = normalized_receipt(id="pix_1", transaction_id="ABC12")
        bank = normalized_bank(id="bank_1", description="PIX RECEBIDO XABC123")

        assert calculate_confidence(receipt, bank, MatchingConfig()).id_score == 0

    def test_amount_decays_linearly_within_tolerance(self):
        config = MatchingConfig(amount_tolerance=Decimal("2.00"))
        receipt = normalized_receipt(id="pix_1", amount="100,00")
        bank = normalized_bank(id="bank_1", amount="99.00")

        confidence = calculate_confidence(receipt, bank, config)

        assert confidence.amount_score == 50

    def test_date_decays_to_floor_at_window_edge(self):
        receipt = normalized_receipt(id="pix_1")
        one_day = normalized_bank(id="bank_1", txn_date="2025-01-11")
        three_days = normalized_bank(id="bank_2", txn_date="2025-01-13")

        config = MatchingConfig()

        assert calculate_confidence(receipt, one_day, config).date_score == 80
        assert calculate_confidence(receipt, three_days, config).date_score == 40

    def test_name_fragment_similarity(self):
        receipt = normalized_receipt(id="pix_1", payer_name="Maria de Souza")
        bank = normalized_bank(id="bank_1", description="PIX RECEBIDO - MARIA SOUZA")

        confidence = calculate_confidence(receipt, bank, MatchingConfig())

        assert confidence.name_score == 100
        assert "Payer name exact match" in confidence.reasons

    def test_generic_description_gives_no_name_score(self):
        receipt = normalized_receipt(id="pix_1", payer_name="Maria de Souza")
        bank = normalized_bank(id="bank_1", description="PIX RECEBIDO")

        assert calculate_confidence(receipt, bank, MatchingConfig()).name_score == 0

    def test_cpf_on_bank_line(self):
        receipt = normalized_receipt(id="pix_1", payer_name="Maria", payer_document="123.456.789-09")
        bank = normalized_bank(id="bank_1", description="PIX RECEBIDO 12345678909")

        confidence = calculate_confidence(receipt, bank, MatchingConfig())

        assert confidence.name_score == 100
        assert any("CPF" in r for r in confidence.reasons)

    def test_account_digits_do_not_spell_a_cpf(self):
        receipt = normalized_receipt(id="pix_1", payer_name="Maria Souza", payer_document="123.456.789-09")
        bank = normalized_bank(id="bank_1", description="PIX RECEBIDO JOAO PEREIRA AG 1234 CC 5678909")

        confidence = calculate_confidence(receipt, bank, MatchingConfig())

        assert confidence.name_score < 100
        assert not any("CPF" in r for r in confidence.reasons)

    def test_payer_identity_takes_the_id_weight_without_an_id(self):
        receipt = normalized_receipt(id="pix_1", payer_name="Maria Souza", payer_document="123.456.789-09")
        bank = normalized_bank(
            id="bank_1", description="PIX RECEBIDO - MARIA SOUZA", payer_document="12345678909",
        )

        confidence = calculate_confidence(receipt, bank, MatchingConfig())

        assert confidence.id_score == 0
        assert confidence.total_score == 100

    def test_amount_and_date_alone_stay_below_auto(self):
        receipt = normalized_receipt(id="pix_1", payer_name="Maria Souza")
        bank = normalized_bank(id="bank_1", description="PIX RECEBIDO")

        assert calculate_confidence(receipt, bank, MatchingConfig()).total_score == 50

    def test_weights_are_configuration(self):
        config = MatchingConfig(weights=ScoreWeights(id=0.0, amount=0.5, date=0.5, name=0.0))
        receipt = normalized_receipt(id="pix_1")
        bank = normalized_bank(id="bank_1")

        assert calculate_confidence(receipt, bank, config).total_score == 100


# ============================================
# Candidate Generation Tests
# ============================================

class TestCandidateGeneration:

    def test_amount_and_date_window(self):
        receipt = normalized_receipt(id="pix_1")
        banks = [
            normalized_bank(id="same_day"),
            normalized_bank(id="two_days_later", txn_date="2025-01-12"),
            normalized_bank(id="one_cent_off", amount="150.01"),
            normalized_bank(id="day_before", txn_date="2025-01-09"),
            normalized_bank(id="too_late", txn_date="2025-01-14"),
            normalized_bank(id="other_amount", amount="999.00"),
            normalized_bank(id="debit", amount="-150.00"),
        ]

        candidates = generate_candidates(receipt, banks, MatchingConfig())

        assert [c.bank_transaction_id for c in candidates] == ["same_day", "two_days_later", "one_cent_off"]

    def test_fee_tolerance_is_configurable(self):
        receipt = normalized_receipt(id="pix_1")
        banks = [normalized_bank(id="net_of_fee", amount="148.50")]

        assert generate_candidates(receipt, banks, MatchingConfig()) == []
        assert len(generate_candidates(receipt, banks, MatchingConfig(amount_tolerance=Decimal("2.00")))) == 1

    def test_max_candidates_per_receipt(self):
        receipt = normalized_receipt(id="pix_1")
        banks = [normalized_bank(id=f"bank_{i}") for i in range(5)]

        candidates = generate_candidates(receipt, banks, MatchingConfig(max_candidates_per_receipt=2))

        assert [c.bank_transaction_id for c in candidates] == ["bank_0", "bank_1"]

    def test_cap_keeps_line_carrying_the_id(self):
        receipt = normalized_receipt(id="pix_1", transaction_id=E2E_ID)
        banks = [normalized_bank(id=f"bank_{i}") for i in range(5)]
        banks.append(normalized_bank(id="bank_9", description=f"PIX RECEBIDO {E2E_ID}"))

        candidates = generate_candidates(receipt, banks, MatchingConfig(max_candidates_per_receipt=2))

        assert [c.bank_transaction_id for c in candidates] == ["bank_9", "bank_0"]

    def test_percent_tolerance_for_fees(self):
        config = MatchingConfig(amount_tolerance_percent=Decimal("2"))
        receipt = normalized_receipt(id="pix_1")
        banks = [normalized_bank(id="net_of_fee", amount="147.50"), normalized_bank(id="too_low", amount="146.50")]

        assert config.tolerance_for(Decimal("150.00")) == Decimal("3.00")
        assert [c.bank_transaction_id for c in generate_candidates(receipt, banks, config)] == ["net_of_fee"]
        assert generate_candidates(receipt, banks, MatchingConfig()) == []

    def test_strict_mode_narrows_band(self):
        config = MatchingConfig(amount_tolerance=Decimal("5.00"), date_window_days=3, strict_date_window_days=1)
        receipt = normalized_receipt(id="pix_1")
        banks = [
            normalized_bank(id="exact"),
            normalized_bank(id="fee", amount="148.00"),
            normalized_bank(id="late", txn_date="2025-01-12"),
        ]

        index = CandidateIndex(banks, config, strict=True)

        assert [c.bank_transaction_id for c in index.candidates_for(receipt)] == ["exact"]

    def test_capacity(self):
        config = MatchingConfig(strict_prefilter_threshold=2, max_bank_transactions=3)

        assert check_capacity(1, 2, config) is False
        assert check_capacity(1, 3, config) is True
        with pytest.raises(CapacityError):
            check_capacity(1, 4, config)


# ============================================
# Full Reconciliation Tests
# ============================================

class TestReconciliation:
    """Test the full reconciliation flow."""

    def test_exact_id_scenario_auto_matches(self):
        receipts = [make_receipt("pix_1", amount="150.00", transaction_id=E2E_ID)]
        banks = [make_bank_txn("bank_1", description=f"PIX RECEBIDO {E2E_ID}")]

        result = reconcile(SESSION, receipts, banks, MatchingConfig())

        match = result.matches[0]
        assert match.status == "auto_matched"
        assert match.bank_transaction_id == "bank_1"
        assert match.match_confidence >= 85
        assert match.score_breakdown.id_score == 100
        assert result.auto_matched == 1

    def test_short_end_to_end_id_scenario(self):
        receipts = [make_receipt("pix_1", amount="150.00", transaction_id="E123...789")]
        banks = [make_bank_txn("bank_1", amount="150.00", description="PIX RECEBIDO E123...789")]

        match = reconcile(SESSION, receipts, banks, MatchingConfig()).matches[0]

        assert match.score_breakdown.id_score == 100
        assert match.match_confidence >= 85
        assert match.status == "auto_matched"

    def test_id_line_wins_among_many_identical_credits(self):
        receipts = [make_receipt("pix_1", transaction_id=E2E_ID)]
        banks = [make_bank_txn(f"bank_{i:02d}") for i in range(10)]
        banks.append(make_bank_txn("bank_99", description=f"PIX RECEBIDO {E2E_ID}"))

        match = reconcile(SESSION, receipts, banks, MatchingConfig()).matches[0]

        assert match.status == "auto_matched"
        assert match.bank_transaction_id == "bank_99"
        assert len(match.candidates) == 3

    def test_name_and_cpf_auto_match_without_id(self):
        receipts = [make_receipt("pix_1", payer_name="Maria Souza", payer_document="123.456.789-09")]
        banks = [make_bank_txn("bank_1", description="PIX RECEBIDO - MARIA SOUZA", payer_document="12345678909")]

        match = reconcile(SESSION, receipts, banks, MatchingConfig()).matches[0]

        assert match.status == "auto_matched"
        assert match.match_confidence == 100

    def test_amount_mismatch_is_no_match(self):
        receipts = [make_receipt("pix_1", amount="150,00")]
        banks = [make_bank_txn("bank_1", amount="999.00")]

        result = reconcile(SESSION, receipts, banks, MatchingConfig())

        match = result.matches[0]
        assert match.status == "no_match"
        assert match.match_confidence == 0
        assert match.bank_transaction_id is None
        assert match.candidates == []
        assert result.unmatched == 1

    def test_ambiguous_lines_go_to_best_score(self):
        """Two identical credits: the one naming the payer wins, the other stays free."""
        receipts = [make_receipt("pix_1", payer_name="Maria Souza")]
        banks = [
            make_bank_txn("bank_a", description="PIX RECEBIDO"),
            make_bank_txn("bank_b", description="PIX RECEBIDO - MARIA SOUZA"),
        ]

        result = reconcile(SESSION, receipts, banks, MatchingConfig())

        match = result.matches[0]
        assert match.bank_transaction_id == "bank_b"
        assert match.match_confidence == 100
        assert match.status == "auto_matched"
        assert match.candidates[1].total_score == 50
        assert [c.bank_transaction_id for c in match.candidates] == ["bank_b", "bank_a"]

    def test_unassigned_line_stays_available(self):
        receipts = [
            make_receipt("pix_1", payer_name="Maria Souza"),
            make_receipt("pix_2", payer_name="Pedro Alves"),
        ]
        banks = [
            make_bank_txn("bank_a", description="PIX RECEBIDO"),
            make_bank_txn("bank_b", description="PIX RECEBIDO - MARIA SOUZA"),
        ]

        result = reconcile(SESSION, receipts, banks, MatchingConfig())

        assert result.match_for_receipt("pix_1").bank_transaction_id == "bank_b"
        assert result.match_for_receipt("pix_2").bank_transaction_id == "bank_a"

    def test_equal_scores_break_on_bank_id(self):
        receipts = [make_receipt("pix_1")]
        banks = [make_bank_txn("bank_z"), make_bank_txn("bank_m")]

        result = reconcile(SESSION, receipts, banks, MatchingConfig())

        assert result.matches[0].bank_transaction_id == "bank_m"

    def test_equal_scores_break_on_settlement_lag(self):
        config = MatchingConfig(weights=ScoreWeights(id=0.5, amount=0.5, date=0.0, name=0.0))
        receipts = [make_receipt("pix_1")]
        banks = [make_bank_txn("bank_a", txn_date="2025-01-11"), make_bank_txn("bank_b")]

        result = reconcile(SESSION, receipts, banks, config)

        assert result.matches[0].bank_transaction_id == "bank_b"

    def test_contested_auto_line_downgrades_to_review(self):
        """Same E2E ID uploaded twice: second receipt can't take the line."""
        receipts = [
            make_receipt("pix_1", transaction_id=E2E_ID),
            make_receipt("pix_2", transaction_id=E2E_ID),
        ]
        banks = [make_bank_txn("bank_1", description=f"PIX RECEBIDO {E2E_ID}")]

        result = reconcile(SESSION, receipts, banks, MatchingConfig())

        first = result.match_for_receipt("pix_1")
        second = result.match_for_receipt("pix_2")
        assert first.status == "auto_matched"
        assert second.status == "manual_review"
        assert second.bank_transaction_id == "bank_1"
        assert "already assigned to receipt pix_1" in second.match_reasons[-1]

    def test_contested_review_line_downgrades_to_no_match(self):
        receipts = [
            make_receipt("pix_1", transaction_id=E2E_ID),
            make_receipt("pix_2"),
        ]
        banks = [make_bank_txn("bank_1", description=f"PIX RECEBIDO {E2E_ID}")]

        result = reconcile(SESSION, receipts, banks, MatchingConfig())

        second = result.match_for_receipt("pix_2")
        assert second.status == "no_match"
        assert second.bank_transaction_id is None

    def test_low_scores_never_consume_a_line(self):
        config = MatchingConfig(manual_review_threshold=60, auto_match_threshold=85)
        receipts = [make_receipt("pix_1")]
        banks = [make_bank_txn("bank_1")]

        result = reconcile(SESSION, receipts, banks, config)

        match = result.matches[0]
        assert match.status == "no_match"
        assert match.bank_transaction_id is None
        assert match.match_confidence == 50

    def test_structural_error_excludes_bank_line(self):
        receipts = [make_receipt("pix_1")]
        banks = [make_bank_txn("bank_1", txn_date="sem data")]

        result = reconcile(SESSION, receipts, banks, MatchingConfig())

        assert result.matches[0].status == "no_match"
        assert result.matches[0].candidates == []
        assert len(result.warnings) == 1
        warning = result.warnings[0]
        assert warning.record_type == "bank_transaction"
        assert warning.record_id == "bank_1"
        assert warning.code == "invalid_date"
        assert warning.excluded is True

    def test_structural_error_excludes_receipt(self):
        receipts = [make_receipt("pix_1", amount="R$ ???"), make_receipt("pix_2")]
        banks = [make_bank_txn("bank_1")]

        result = reconcile(SESSION, receipts, banks, MatchingConfig())

        assert [m.pix_receipt_id for m in result.matches] == ["pix_2"]
        assert result.total_pix_receipts == 2
        assert result.warnings[0].record_id == "pix_1"

    def test_latest_version_wins(self):
        receipts = [
            make_receipt("pix_1", amount="999,00", version=1),
            make_receipt("pix_1", amount="150,00", version=2),
        ]
        banks = [make_bank_txn("bank_1")]

        result = reconcile(SESSION, receipts, banks, MatchingConfig())

        assert len(result.matches) == 1
        assert result.matches[0].pix_receipt_version == 2
        assert result.matches[0].bank_transaction_id == "bank_1"

    def test_empty_snapshot(self):
        result = reconcile(SESSION, [], [], MatchingConfig())

        assert result.matches == []
        assert result.total_pix_receipts == 0
        assert result.snapshot_at == datetime(1970, 1, 1)


# ============================================
# Engine Properties
# ============================================

def busy_snapshot():
    receipts = [
        make_receipt("pix_1", transaction_id=E2E_ID, payer_name="Maria Souza"),
        make_receipt("pix_2", payer_name="Maria Souza"),
        make_receipt("pix_3", payer_name="Pedro Alves", txn_date="2025-01-11"),
        make_receipt("pix_4", amount="80,00", payer_name="Ana Lima"),
        make_receipt("pix_5", amount="80,00"),
        make_receipt("pix_6", amount="1.200,00", payer_document="123.456.789-09"),
    ]
    banks = [
        make_bank_txn("bank_1", description=f"PIX RECEBIDO {E2E_ID} MARIA SOUZA"),
        make_bank_txn("bank_2", description="PIX RECEBIDO - MARIA SOUZA"),
        make_bank_txn("bank_3", txn_date="2025-01-12"),
        make_bank_txn("bank_4", amount="80.00", description="PIX RECEBIDO ANA LIMA"),
        make_bank_txn("bank_5", amount="80.00", txn_date="2025-01-13"),
        make_bank_txn("bank_6", amount="1200.00", description="TED 12345678909"),
        make_bank_txn("bank_7", amount="-80.00"),
    ]
    return receipts, banks


class TestEngineProperties:

    def test_idempotent(self):
        receipts, banks = busy_snapshot()

        first = reconcile(SESSION, receipts, banks, MatchingConfig())
        second = reconcile(SESSION, list(reversed(receipts)), list(reversed(banks)), MatchingConfig())

        assert first.model_dump_json() == second.model_dump_json()

    def test_no_double_assignment(self):
        receipts, banks = busy_snapshot()

        result = reconcile(SESSION, receipts, banks, MatchingConfig(auto_match_threshold=50))

        taken = [
            m.bank_transaction_id for m in result.matches
            if m.status in ("auto_matched", "confirmed")
        ]
        assert len(taken) == len(set(taken))

    def test_every_receipt_has_one_match(self):
        receipts, banks = busy_snapshot()

        result = reconcile(SESSION, receipts, banks, MatchingConfig())

        assert sorted(m.pix_receipt_id for m in result.matches) == [r.id for r in receipts]

    @pytest.mark.parametrize("lower_threshold", [80, 70, 60, 50])
    def test_lowering_auto_threshold_is_monotonic(self, lower_threshold):
        receipts, banks = busy_snapshot()

        strict = reconcile(SESSION, receipts, banks, MatchingConfig(auto_match_threshold=85))
        relaxed = reconcile(SESSION, receipts, banks, MatchingConfig(auto_match_threshold=lower_threshold))

        for match in strict.matches:
            if match.status == "auto_matched":
                assert relaxed.match_for_receipt(match.pix_receipt_id).status == "auto_matched"


# ============================================
# Configuration & Capacity
# ============================================

class TestConfiguration:

    def test_review_floor_above_auto_ceiling(self):
        config = MatchingConfig(auto_match_threshold=60, manual_review_threshold=70)

        with pytest.raises(ConfigurationError):
            reconcile(SESSION, [make_receipt("pix_1")], [make_bank_txn("bank_1")], config)

    def test_weights_must_sum_to_one(self):
        config = MatchingConfig(weights=ScoreWeights(id=0.5, amount=0.5, date=0.5, name=0.0))

        with pytest.raises(ConfigurationError):
            config.validate_config()

    def test_negative_tolerance(self):
        with pytest.raises(ConfigurationError):
            MatchingConfig(amount_tolerance=Decimal("-1")).validate_config()

    def test_percent_tolerance_bounds(self):
        with pytest.raises(ConfigurationError):
            MatchingConfig(amount_tolerance_percent=Decimal("100")).validate_config()

    def test_defaults_are_valid(self):
        assert MatchingConfig().validate_config().auto_match_threshold == 85

    def test_capacity_aborts_run(self):
        config = MatchingConfig(max_bank_transactions=1, strict_prefilter_threshold=1)

        with pytest.raises(CapacityError):
            reconcile(SESSION, [make_receipt("pix_1")], [make_bank_txn("b1"), make_bank_txn("b2")], config)

    def test_large_statement_switches_to_strict_prefilter(self):
        config = MatchingConfig(amount_tolerance=Decimal("5.00"), strict_prefilter_threshold=1)
        receipts = [make_receipt("pix_1")]
        banks = [make_bank_txn("fee", amount="148.00"), make_bank_txn("other", amount="500.00")]

        result = reconcile(SESSION, receipts, banks, config)

        assert result.strict_prefilter is True
        assert result.matches[0].status == "no_match"
