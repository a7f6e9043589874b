"""
Configuration management (SSOT).

This module defines ALL configuration for the ledger core.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- Thresholds for matching are on the 0-100 scale, classification and AI
  confidences on the 0.0-1.0 scale
- Credentials are only ever read from the config file or the environment,
  never logged
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class RecurrenceConfig:
    """Recurrence engine settings."""

    # Hard bound on catch-up iterations per template and run
    max_iterations_per_template: int = 100


@dataclass
class MatchingConfig:
    """Match scorer settings (transaction -> recurring template)."""

    weight_identity: float = 0.4
    weight_amount: float = 0.4
    weight_temporal: float = 0.2
    # Score at or above which a unique best candidate is linked automatically
    auto_match_threshold: int = 85
    # Score at or above which the best candidate is proposed for review
    review_threshold: int = 65
    # Runner-up closer than this forces review even above auto threshold
    tie_breaker_margin: int = 5
    # Used when the template does not carry its own variance
    default_amount_variance_pct: float = 5.0
    default_temporal_variance_days: int = 3
    # rapidfuzz ratio (0-100) a token must reach to count as a typo match
    fuzzy_token_cutoff: float = 80.0
    # Award for a fuzzy token hit (an exact hit scores 1.0)
    fuzzy_token_award: float = 0.8


@dataclass
class ClassificationConfig:
    """Classification pipeline settings."""

    # Results below this confidence are flagged for review
    review_threshold: float = 0.8
    # Optional YAML file overriding the built-in taxonomy tables
    taxonomy_path: Optional[Path] = None


@dataclass
class AIConfig:
    """AI text-classification collaborator (OpenAI-compatible chat API).

    SSOT for AI settings:
    - enabled: Master switch
    - model_fast: cheap first pass for every unresolved transaction
    - model_strong: second pass for results below escalation_threshold
    """

    enabled: bool = True
    base_url: str = "https://api.groq.com/openai/v1"
    api_key: str = ""
    model_fast: str = "llama-3.1-8b-instant"
    model_strong: str = "llama-3.3-70b-versatile"
    # Request timeout (seconds)
    timeout_seconds: int = 30
    # Fast-tier results below this confidence go to the strong model
    escalation_threshold: float = 0.8
    # Maximum transactions per completion request
    batch_size: int = 25
    temperature: float = 0.1

    def is_configured(self) -> bool:
        """Check that credentials are present."""
        return bool(self.api_key and self.base_url)


@dataclass
class EventsConfig:
    """Spending-event mining settings."""

    # Daily totals at or below this are noise for the baseline
    noise_floor: float = 5.0
    # A day is anomalous above max(baseline * multiplier, min_threshold)
    anomaly_multiplier: float = 2.0
    min_threshold: float = 20.0
    # Following days join a cluster above baseline * continuation_factor
    continuation_factor: float = 1.2
    max_gap_days: int = 2
    lookahead_days: int = 7
    min_cluster_days: int = 2
    history_months: int = 24


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    state_db_path: Path = field(default_factory=lambda: Path("data/ledger.db"))
    recurrence: RecurrenceConfig = field(default_factory=RecurrenceConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    classification: ClassificationConfig = field(default_factory=ClassificationConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    events: EventsConfig = field(default_factory=EventsConfig)

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if self.recurrence.max_iterations_per_template < 1:
            errors.append("recurrence.max_iterations_per_template must be >= 1")

        weights = (
            self.matching.weight_identity
            + self.matching.weight_amount
            + self.matching.weight_temporal
        )
        if abs(weights - 1.0) > 1e-6:
            errors.append("matching weights must sum to 1.0")
        if self.matching.auto_match_threshold < self.matching.review_threshold:
            errors.append("matching.auto_match_threshold must be >= review_threshold")

        if not 0.0 <= self.ai.escalation_threshold <= 1.0:
            errors.append("ai.escalation_threshold must be between 0 and 1")
        if self.ai.batch_size < 1:
            errors.append("ai.batch_size must be >= 1")
        if self.ai.enabled and not self.ai.base_url:
            errors.append("ai.base_url is required when AI is enabled")

        return errors


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name, "").lower()
    if value == "true":
        return True
    if value == "false":
        return False
    return default


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - LEDGER_STATE_DB
    - LEDGER_AI_ENABLED (true/false)
    - LEDGER_AI_BASE_URL
    - LEDGER_AI_API_KEY (falls back to GROQ_API_KEY)
    - LEDGER_AI_MODEL_FAST
    - LEDGER_AI_MODEL_STRONG
    - LEDGER_AI_TIMEOUT (request timeout in seconds)
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Recurrence config
    recurrence_data = data.get("recurrence", {})
    recurrence = RecurrenceConfig(
        max_iterations_per_template=recurrence_data.get("max_iterations_per_template", 100),
    )

    # Matching config
    matching_data = data.get("matching", {})
    matching = MatchingConfig(
        weight_identity=matching_data.get("weight_identity", 0.4),
        weight_amount=matching_data.get("weight_amount", 0.4),
        weight_temporal=matching_data.get("weight_temporal", 0.2),
        auto_match_threshold=matching_data.get("auto_match_threshold", 85),
        review_threshold=matching_data.get("review_threshold", 65),
        tie_breaker_margin=matching_data.get("tie_breaker_margin", 5),
        default_amount_variance_pct=matching_data.get("default_amount_variance_pct", 5.0),
        default_temporal_variance_days=matching_data.get("default_temporal_variance_days", 3),
        fuzzy_token_cutoff=matching_data.get("fuzzy_token_cutoff", 80.0),
        fuzzy_token_award=matching_data.get("fuzzy_token_award", 0.8),
    )

    # Classification config
    classification_data = data.get("classification", {})
    taxonomy_path = classification_data.get("taxonomy_path")
    classification = ClassificationConfig(
        review_threshold=classification_data.get("review_threshold", 0.8),
        taxonomy_path=Path(taxonomy_path) if taxonomy_path else None,
    )

    # AI config
    ai_data = data.get("ai", {})
    ai = AIConfig(
        enabled=_env_bool("LEDGER_AI_ENABLED", ai_data.get("enabled", True)),
        base_url=os.environ.get(
            "LEDGER_AI_BASE_URL", ai_data.get("base_url", "https://api.groq.com/openai/v1")
        ),
        api_key=os.environ.get(
            "LEDGER_AI_API_KEY", os.environ.get("GROQ_API_KEY", ai_data.get("api_key", ""))
        ),
        model_fast=os.environ.get(
            "LEDGER_AI_MODEL_FAST", ai_data.get("model_fast", "llama-3.1-8b-instant")
        ),
        model_strong=os.environ.get(
            "LEDGER_AI_MODEL_STRONG", ai_data.get("model_strong", "llama-3.3-70b-versatile")
        ),
        timeout_seconds=int(os.environ.get(
            "LEDGER_AI_TIMEOUT", ai_data.get("timeout_seconds", 30)
        )),
        escalation_threshold=ai_data.get("escalation_threshold", 0.8),
        batch_size=ai_data.get("batch_size", 25),
        temperature=ai_data.get("temperature", 0.1),
    )

    # Events config
    events_data = data.get("events", {})
    events = EventsConfig(
        noise_floor=events_data.get("noise_floor", 5.0),
        anomaly_multiplier=events_data.get("anomaly_multiplier", 2.0),
        min_threshold=events_data.get("min_threshold", 20.0),
        continuation_factor=events_data.get("continuation_factor", 1.2),
        max_gap_days=events_data.get("max_gap_days", 2),
        lookahead_days=events_data.get("lookahead_days", 7),
        min_cluster_days=events_data.get("min_cluster_days", 2),
        history_months=events_data.get("history_months", 24),
    )

    # State DB
    state_db = os.environ.get("LEDGER_STATE_DB", data.get("state_db_path", "data/ledger.db"))

    return Config(
        state_db_path=Path(state_db),
        recurrence=recurrence,
        matching=matching,
        classification=classification,
        ai=ai,
        events=events,
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Ledger core configuration
#
# Secrets (ai.api_key) are better supplied via LEDGER_AI_API_KEY.

# Entity store
state_db_path: "data/ledger.db"

# Recurring templates
recurrence:
  max_iterations_per_template: 100     # Catch-up safety cap per template and run

# Transaction -> recurring template matching (scores are 0-100)
matching:
  weight_identity: 0.4
  weight_amount: 0.4
  weight_temporal: 0.2
  auto_match_threshold: 85              # Link automatically at or above this
  review_threshold: 65                  # Propose for review at or above this
  tie_breaker_margin: 5                 # Runner-up closer than this forces review
  default_amount_variance_pct: 5.0
  default_temporal_variance_days: 3
  fuzzy_token_cutoff: 80.0
  fuzzy_token_award: 0.8

# Classification pipeline
classification:
  review_threshold: 0.8                 # Flag results below this confidence
  taxonomy_path: null                   # YAML file overriding the built-in taxonomy

# AI collaborator (OpenAI-compatible chat completions)
ai:
  enabled: true
  base_url: "https://api.groq.com/openai/v1"
  api_key: ""                           # Or LEDGER_AI_API_KEY / GROQ_API_KEY
  model_fast: "llama-3.1-8b-instant"    # First pass
  model_strong: "llama-3.3-70b-versatile"  # Second pass for low confidence
  timeout_seconds: 30
  escalation_threshold: 0.8
  batch_size: 25
  temperature: 0.1

# Spending-event mining (budget archetypes)
events:
  noise_floor: 5.0
  anomaly_multiplier: 2.0
  min_threshold: 20.0
  continuation_factor: 1.2
  max_gap_days: 2
  lookahead_days: 7
  min_cluster_days: 2
  history_months: 24
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
