"""Pydantic configuration schema for the inbox triage engine.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.

Tenant-specific overrides live under ``tenants``; ``AppConfig.for_tenant``
merges them onto the global defaults.

Usage:
    from inbox_triage.config_schema import AppConfig

    config = AppConfig(**yaml_data)
    settings = config.for_tenant("acme")
    settings.thresholds.high  # 0.85 unless acme overrides it
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


class ThresholdsConfig(BaseModel):
    """Confidence thresholds for the decision policy."""

    high: float = Field(
        default=0.85,
        ge=0.0,
        le=1.0,
        description="At or above this confidence the classifier may auto-handle or quick-win",
    )
    low: float = Field(
        default=0.46,
        ge=0.0,
        le=1.0,
        description="Below this confidence a human must review and reply",
    )

    @model_validator(mode="after")
    def check_order(self) -> "ThresholdsConfig":
        """Ensure the low threshold does not exceed the high threshold."""
        if self.low > self.high:
            raise ValueError(
                f"thresholds.low ({self.low}) must not exceed thresholds.high ({self.high})"
            )
        return self


class ClassifierConfig(BaseModel):
    """Claude classifier settings."""

    model: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model used for message classification",
    )
    max_tokens: int = Field(default=1024, ge=256, le=8192)
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="Per-call timeout; a timeout is treated as classifier unavailable",
    )
    max_retries: int = Field(
        default=2,
        ge=0,
        le=5,
        description="Retries for transient API errors before giving up",
    )
    max_body_chars: int = Field(
        default=4000,
        ge=200,
        le=20000,
        description="Message body is truncated to this length before classification",
    )


class BatchConfig(BaseModel):
    """Batch retriage limits and classifier rate limiting."""

    default_limit: int = Field(default=50, ge=1, le=1000)
    max_limit: int = Field(
        default=500,
        ge=1,
        le=5000,
        description="Hard cap on conversations per batch call",
    )
    max_ai_limit: int = Field(
        default=10,
        ge=1,
        le=500,
        description="Cap on conversations per batch call when the AI classifier is used",
    )
    requests_per_minute: int = Field(
        default=30,
        ge=1,
        le=1000,
        description="Classifier calls per minute during a batch run",
    )
    max_concurrency: int = Field(
        default=2,
        ge=1,
        le=20,
        description="Maximum in-flight classifier calls during a batch run",
    )


class LearningConfig(BaseModel):
    """Correction-to-rule learning settings."""

    repetition_threshold: int = Field(
        default=2,
        ge=1,
        le=50,
        description="Identical corrections needed before a rule candidate appears",
    )
    auto_apply: bool = Field(
        default=False,
        description="Create sender rules from candidates without operator acceptance",
    )
    min_email_count: int = Field(
        default=3,
        ge=1,
        le=1000,
        description="Minimum messages from a domain before stats suggest a rule",
    )


class BusinessContextConfig(BaseModel):
    """Business context appended to the classification prompt as directives."""

    is_hiring: bool = Field(
        default=False,
        description="Treat job applications as important rather than noise",
    )
    active_payment_dispute: bool = Field(
        default=False,
        description="Escalate anything touching payments or refunds",
    )
    vip_domains: list[str] = Field(
        default_factory=list,
        description="Sender domains whose messages are always escalated",
    )
    context: str = Field(
        default="",
        max_length=2000,
        description="Free-form description of the business for the classifier",
    )

    @field_validator("vip_domains")
    @classmethod
    def normalize_domains(cls, v: list[str]) -> list[str]:
        """Lowercase domains and strip any leading '@'."""
        cleaned = []
        for domain in v:
            d = domain.strip().lower().lstrip("@")
            if not d:
                raise ValueError("VIP domain entries cannot be empty")
            cleaned.append(d)
        return cleaned


class PatternsConfig(BaseModel):
    """Built-in pattern stage between sender rules and the classifier."""

    enabled: bool = Field(
        default=True,
        description="Recognize well-known automated mail and urgent language",
    )
    use_sender_history: bool = Field(
        default=True,
        description="Let stored sender behavior stats bias triage for known domains",
    )


class DatabaseConfig(BaseModel):
    """SQLite database location."""

    path: str = Field(default="data/inbox_triage.db")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure the database path is non-empty and has no traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class LoggingConfig(BaseModel):
    """Structured logging output."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_output: bool = Field(
        default=True,
        description="JSON lines for production, console renderer when False",
    )


class LLMLoggingConfig(BaseModel):
    """LLM request logging configuration."""

    enabled: bool = Field(default=True, description="Enable LLM request logging")
    log_prompts: bool = Field(
        default=True,
        description="Store full prompts (disable to save disk space)",
    )


class ScheduleConfig(BaseModel):
    """Nightly maintenance jobs run by the API server."""

    enabled: bool = True
    stats_hour: int = Field(default=2, ge=0, le=23, description="Hour to recompute sender stats")
    retriage_hour: int = Field(
        default=3,
        ge=0,
        le=23,
        description="Hour to run rules-only retriage for every configured tenant",
    )


class TenantOverrides(BaseModel):
    """Per-tenant replacements for global sections. Unset sections inherit."""

    model_config = ConfigDict(extra="forbid")

    thresholds: ThresholdsConfig | None = None
    learning: LearningConfig | None = None
    business: BusinessContextConfig | None = None
    patterns: PatternsConfig | None = None


class TenantSettings(BaseModel):
    """Resolved settings for one tenant."""

    tenant_id: str
    thresholds: ThresholdsConfig
    learning: LearningConfig
    business: BusinessContextConfig
    patterns: PatternsConfig


class AppConfig(BaseModel):
    """Root configuration schema for the inbox triage engine.

    If validation fails on startup, the application exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    model_config = ConfigDict(extra="forbid")

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    thresholds: ThresholdsConfig = Field(default_factory=ThresholdsConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    business: BusinessContextConfig = Field(default_factory=BusinessContextConfig)
    patterns: PatternsConfig = Field(default_factory=PatternsConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    llm_logging: LLMLoggingConfig = Field(default_factory=LLMLoggingConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)

    tenants: dict[str, TenantOverrides] = Field(
        default_factory=dict,
        description="Per-tenant overrides keyed by tenant ID",
    )

    @field_validator("tenants")
    @classmethod
    def validate_tenant_ids(cls, v: dict[str, TenantOverrides]) -> dict[str, TenantOverrides]:
        """Reject blank tenant IDs."""
        for tenant_id in v:
            if not tenant_id.strip():
                raise ValueError("Tenant IDs cannot be empty")
        return v

    def for_tenant(self, tenant_id: str) -> TenantSettings:
        """Resolve the effective settings for a tenant."""
        overrides = self.tenants.get(tenant_id) or TenantOverrides()
        return TenantSettings(
            tenant_id=tenant_id,
            thresholds=overrides.thresholds or self.thresholds,
            learning=overrides.learning or self.learning,
            business=overrides.business or self.business,
            patterns=overrides.patterns or self.patterns,
        )
