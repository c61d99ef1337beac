# app/config.py

from decimal import Decimal, ROUND_HALF_UP
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings

from app.errors import ConfigurationError

CENTS = Decimal("0.01")


class ScoreWeights(BaseModel):
    """Weight of each factor in the total confidence score. Must sum to 1."""

    model_config = ConfigDict(frozen=True)

    id: float = 0.40
    amount: float = 0.35
    date: float = 0.15
    name: float = 0.10


class MatchingConfig(BaseModel):
    """Immutable matching configuration for a single reconciliation run."""

    model_config = ConfigDict(frozen=True)

    # Candidate generation
    amount_tolerance: Decimal = Decimal("0")
    # Fee-adjusted deposits: percent of the receipt amount, e.g. 2 for 2%
    amount_tolerance_percent: Decimal = Decimal("0")
    date_window_days: int = 3
    max_candidates_per_receipt: int = 10

    # Scoring
    date_score_floor: float = 40.0
    weights: ScoreWeights = ScoreWeights()
    id_suffix_length: int = 12
    id_prefix_length: int = 24
    min_id_length: int = 8

    # Classification
    auto_match_threshold: int = 85
    manual_review_threshold: int = 50

    # Capacity
    strict_prefilter_threshold: int = 5_000
    strict_date_window_days: int = 1
    max_bank_transactions: int = 50_000
    max_pix_receipts: int = 20_000

    # Audit trail
    audit_candidates: int = 3

    def tolerance_for(self, amount: Decimal) -> Decimal:
        """Amount band half-width for a receipt. Never below one cent of rounding noise."""
        percent = (abs(amount) * self.amount_tolerance_percent / 100).quantize(CENTS, rounding=ROUND_HALF_UP)
        return max(CENTS, self.amount_tolerance, percent)

    def validate_config(self) -> "MatchingConfig":
        """
        Fail fast on a configuration the engine can't honour.

        Raises ConfigurationError. Returns self so it can be chained.
        """
        if not 0 <= self.manual_review_threshold <= 100:
            raise ConfigurationError(
                f"manual_review_threshold must be within 0-100, got {self.manual_review_threshold}"
            )
        if not 0 <= self.auto_match_threshold <= 100:
            raise ConfigurationError(
                f"auto_match_threshold must be within 0-100, got {self.auto_match_threshold}"
            )
        if self.manual_review_threshold > self.auto_match_threshold:
            raise ConfigurationError(
                f"manual_review_threshold ({self.manual_review_threshold}) is above "
                f"auto_match_threshold ({self.auto_match_threshold})"
            )

        weights = self.weights.model_dump()
        negative = [name for name, value in weights.items() if value < 0]
        if negative:
            raise ConfigurationError(f"Score weights must be non-negative: {', '.join(negative)}")
        if abs(sum(weights.values()) - 1.0) > 1e-6:
            raise ConfigurationError(f"Score weights must sum to 1.0, got {sum(weights.values()):.4f}")

        if self.amount_tolerance < 0:
            raise ConfigurationError("amount_tolerance can't be negative")
        if not 0 <= self.amount_tolerance_percent < 100:
            raise ConfigurationError(
                f"amount_tolerance_percent must be within 0-100, got {self.amount_tolerance_percent}"
            )
        if self.date_window_days < 0 or self.strict_date_window_days < 0:
            raise ConfigurationError("Date windows can't be negative")
        if not 0 <= self.date_score_floor <= 100:
            raise ConfigurationError("date_score_floor must be within 0-100")

        positive = {
            "max_candidates_per_receipt": self.max_candidates_per_receipt,
            "strict_prefilter_threshold": self.strict_prefilter_threshold,
            "max_bank_transactions": self.max_bank_transactions,
            "max_pix_receipts": self.max_pix_receipts,
            "id_suffix_length": self.id_suffix_length,
            "id_prefix_length": self.id_prefix_length,
            "min_id_length": self.min_id_length,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")
        if self.audit_candidates < 0:
            raise ConfigurationError("audit_candidates can't be negative")

        return self


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    app_name: str = "PixProof Reconciliation API"
    app_env: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    frontend_url: str = "http://localhost:3000"

    # Supabase
    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None

    # Notifications
    notification_webhook_url: Optional[str] = None
    notification_timeout_seconds: float = 5.0

    # Matching config
    amount_tolerance: Decimal = Decimal("0")
    amount_tolerance_percent: Decimal = Decimal("0")
    date_window_days: int = 3
    date_score_floor: float = 40.0
    weight_id: float = 0.40
    weight_amount: float = 0.35
    weight_date: float = 0.15
    weight_name: float = 0.10
    auto_match_threshold: int = 85
    manual_review_threshold: int = 50
    max_candidates_per_receipt: int = 10
    strict_prefilter_threshold: int = 5_000
    strict_date_window_days: int = 1
    max_bank_transactions: int = 50_000
    max_pix_receipts: int = 20_000
    id_suffix_length: int = 12
    id_prefix_length: int = 24
    min_id_length: int = 8
    audit_candidates: int = 3

    # Seconds an aborted run asks the caller to wait before retrying
    retry_after_seconds: int = 30

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    def matching_config(self) -> MatchingConfig:
        """Build the engine configuration from the flat environment settings."""
        return MatchingConfig(
            amount_tolerance=self.amount_tolerance,
            amount_tolerance_percent=self.amount_tolerance_percent,
            date_window_days=self.date_window_days,
            date_score_floor=self.date_score_floor,
            weights=ScoreWeights(
                id=self.weight_id,
                amount=self.weight_amount,
                date=self.weight_date,
                name=self.weight_name,
            ),
            auto_match_threshold=self.auto_match_threshold,
            manual_review_threshold=self.manual_review_threshold,
            max_candidates_per_receipt=self.max_candidates_per_receipt,
            strict_prefilter_threshold=self.strict_prefilter_threshold,
            strict_date_window_days=self.strict_date_window_days,
            max_bank_transactions=self.max_bank_transactions,
            max_pix_receipts=self.max_pix_receipts,
            id_suffix_length=self.id_suffix_length,
            id_prefix_length=self.id_prefix_length,
            min_id_length=self.min_id_length,
            audit_candidates=self.audit_candidates,
        )


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
