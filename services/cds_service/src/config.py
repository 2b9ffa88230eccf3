"""
Solace-AI CDS Service - Centralized Configuration.
All clinical decision support configuration with externalized environment support.
"""
from __future__ import annotations
from typing import Any
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import structlog

logger = structlog.get_logger(__name__)

_INTERACTION_SEVERITIES = {"Contraindicated", "Major", "Moderate", "Minor"}
_ALLERGY_SEVERITIES = {"High", "Medium", "Low"}


class CDSServiceConfig(BaseSettings):
    """Main CDS service configuration from environment."""
    service_name: str = Field(default="cds-service")
    version: str = Field(default="1.0.0")
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    model_config = SettingsConfigDict(
        env_prefix="CDS_", env_file=".env", extra="ignore", case_sensitive=False
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid:
            raise ValueError(f"Invalid log level: {v}")
        return upper


class RuleCategoryConfig(BaseSettings):
    """Enabled rule categories and per-category alert thresholds."""
    enable_drug_interactions: bool = Field(default=True, description="Run interaction and contraindication checks")
    enable_allergies: bool = Field(default=True, description="Run allergy cross-reactivity checks")
    enable_guidelines: bool = Field(default=True, description="Run guideline applicability checks")
    enable_risk_scoring: bool = Field(default=True, description="Run clinical risk calculators")
    enable_quality_measures: bool = Field(default=True, description="Run quality measure gap analysis")
    drug_interaction_threshold: str = Field(default="Moderate", description="Lowest interaction severity that alerts")
    allergy_threshold: str = Field(default="Medium", description="Lowest allergy severity that alerts")
    model_config = SettingsConfigDict(
        env_prefix="CDS_RULES_", env_file=".env", extra="ignore"
    )

    @field_validator("drug_interaction_threshold")
    @classmethod
    def validate_interaction_threshold(cls, v: str) -> str:
        normalized = v.strip().capitalize()
        if normalized not in _INTERACTION_SEVERITIES:
            raise ValueError(f"Invalid drug interaction threshold: {v}")
        return normalized

    @field_validator("allergy_threshold")
    @classmethod
    def validate_allergy_threshold(cls, v: str) -> str:
        normalized = v.strip().capitalize()
        if normalized not in _ALLERGY_SEVERITIES:
            raise ValueError(f"Invalid allergy threshold: {v}")
        return normalized

    def enabled_categories(self) -> list[str]:
        """Names of the enabled rule categories."""
        flags = {
            "drug-interactions": self.enable_drug_interactions,
            "allergies": self.enable_allergies,
            "guidelines": self.enable_guidelines,
            "risk-scoring": self.enable_risk_scoring,
            "quality-measures": self.enable_quality_measures,
        }
        return [name for name, enabled in flags.items() if enabled]


class AlertLifecycleConfig(BaseSettings):
    """Alert queue, deduplication and expiry configuration."""
    dedup_window_seconds: int = Field(default=3600, ge=1, le=86400)
    sweep_interval_seconds: int = Field(default=1800, ge=1, le=86400)
    drug_interaction_max_age_hours: int = Field(default=24, ge=1)
    allergy_max_age_hours: int = Field(default=24, ge=1)
    risk_score_max_age_hours: int = Field(default=24 * 7, ge=1)
    guideline_max_age_hours: int = Field(default=24 * 30, ge=1)
    quality_measure_max_age_hours: int = Field(default=24 * 30, ge=1)
    default_max_age_hours: int = Field(default=24, ge=1)
    top_dismissal_reasons: int = Field(default=5, ge=1, le=50)
    enable_expiry_sweep: bool = Field(default=True)
    model_config = SettingsConfigDict(
        env_prefix="CDS_ALERTS_", env_file=".env", extra="ignore"
    )


class HookConfig(BaseSettings):
    """Hook processing timeouts and fallback behaviour."""
    hook_timeout_ms: int = Field(default=5000, ge=100, le=120000)
    external_service_timeout_ms: int = Field(default=10000, ge=100, le=120000)
    fallback_source_label: str = Field(default="Solace CDS")
    model_config = SettingsConfigDict(
        env_prefix="CDS_HOOKS_", env_file=".env", extra="ignore"
    )


class ReferenceDataConfig(BaseSettings):
    """Interaction and cross-reactivity reference data source."""
    source: str = Field(default="static", description="static or http")
    interaction_db_url: str = Field(default="http://localhost:8090")
    lookup_cache_staleness_hours: int = Field(default=24, ge=1, le=720)
    version: str = Field(default="2024.1")
    model_config = SettingsConfigDict(
        env_prefix="CDS_REFERENCE_", env_file=".env", extra="ignore"
    )

    @field_validator("source")
    @classmethod
    def validate_source(cls, v: str) -> str:
        lowered = v.lower()
        if lowered not in {"static", "http"}:
            raise ValueError(f"Invalid reference data source: {v}")
        return lowered


class PopulationConfig(BaseSettings):
    """Population batch assessment configuration."""
    chunk_size: int = Field(default=10, ge=1, le=500)
    model_config = SettingsConfigDict(
        env_prefix="CDS_POPULATION_", env_file=".env", extra="ignore"
    )


class CDSConfig(BaseModel):
    """Aggregate configuration for the CDS service."""
    service: CDSServiceConfig = Field(default_factory=CDSServiceConfig)
    rules: RuleCategoryConfig = Field(default_factory=RuleCategoryConfig)
    alerts: AlertLifecycleConfig = Field(default_factory=AlertLifecycleConfig)
    hooks: HookConfig = Field(default_factory=HookConfig)
    reference: ReferenceDataConfig = Field(default_factory=ReferenceDataConfig)
    population: PopulationConfig = Field(default_factory=PopulationConfig)

    @classmethod
    def load(cls) -> CDSConfig:
        """Load configuration from environment."""
        config = cls()
        logger.info(
            "cds_config_loaded",
            environment=config.service.environment,
            enabled_categories=config.rules.enabled_categories(),
            reference_source=config.reference.source,
            hook_timeout_ms=config.hooks.hook_timeout_ms,
        )
        return config

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "service": self.service.model_dump(),
            "rules": self.rules.model_dump(),
            "alerts": self.alerts.model_dump(),
            "hooks": self.hooks.model_dump(),
            "reference": self.reference.model_dump(),
            "population": self.population.model_dump(),
        }


_config: CDSConfig | None = None


def get_cds_config() -> CDSConfig:
    """Get singleton CDS configuration."""
    global _config
    if _config is None:
        _config = CDSConfig.load()
    return _config


def reset_config() -> None:
    """Reset configuration singleton (for testing)."""
    global _config
    _config = None
