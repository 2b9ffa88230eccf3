"""
Unit tests for Solace-AI CDS Service Configuration.
Tests centralized configuration management.
"""
from __future__ import annotations
import pytest
from services.cds_service.src.config import (
    AlertLifecycleConfig, CDSConfig, CDSServiceConfig, HookConfig, PopulationConfig,
    ReferenceDataConfig, RuleCategoryConfig, get_cds_config, reset_config,
)


class TestCDSServiceConfig:
    """Tests for CDSServiceConfig."""

    def test_default_values(self) -> None:
        """Test default configuration values."""
        config = CDSServiceConfig()
        assert config.service_name == "cds-service"
        assert config.environment == "development"
        assert config.debug is False

    def test_log_level_validation(self) -> None:
        """Test log level is normalized to upper case."""
        assert CDSServiceConfig(log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level(self) -> None:
        """Test invalid log level raises error."""
        with pytest.raises(ValueError, match="Invalid log level"):
            CDSServiceConfig(log_level="verbose")


class TestRuleCategoryConfig:
    """Tests for RuleCategoryConfig."""

    def test_all_categories_enabled_by_default(self) -> None:
        """Test every rule category is enabled by default."""
        assert RuleCategoryConfig().enabled_categories() == [
            "drug-interactions", "allergies", "guidelines", "risk-scoring", "quality-measures",
        ]

    def test_default_thresholds(self) -> None:
        """Test default alert thresholds."""
        config = RuleCategoryConfig()
        assert config.drug_interaction_threshold == "Moderate"
        assert config.allergy_threshold == "Medium"

    def test_threshold_normalized(self) -> None:
        """Test thresholds are case-normalized."""
        config = RuleCategoryConfig(drug_interaction_threshold="major", allergy_threshold="HIGH")
        assert config.drug_interaction_threshold == "Major"
        assert config.allergy_threshold == "High"

    def test_invalid_threshold(self) -> None:
        """Test unknown severity is rejected."""
        with pytest.raises(ValueError, match="Invalid drug interaction threshold"):
            RuleCategoryConfig(drug_interaction_threshold="Severe")

    def test_disabled_category_omitted(self) -> None:
        """Test disabled categories are left out."""
        config = RuleCategoryConfig(enable_allergies=False)
        assert "allergies" not in config.enabled_categories()

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test env prefix is honored."""
        monkeypatch.setenv("CDS_RULES_ENABLE_RISK_SCORING", "false")
        assert RuleCategoryConfig().enable_risk_scoring is False


class TestAlertLifecycleConfig:
    """Tests for AlertLifecycleConfig."""

    def test_default_windows(self) -> None:
        """Test dedup window, sweep interval and max ages."""
        config = AlertLifecycleConfig()
        assert config.dedup_window_seconds == 3600
        assert config.sweep_interval_seconds == 1800
        assert config.drug_interaction_max_age_hours == 24
        assert config.risk_score_max_age_hours == 168
        assert config.guideline_max_age_hours == 720
        assert config.top_dismissal_reasons == 5


class TestOtherSections:
    """Tests for hook, reference and population sections."""

    def test_hook_defaults(self) -> None:
        """Test hook timeouts."""
        config = HookConfig()
        assert config.hook_timeout_ms == 5000
        assert config.external_service_timeout_ms == 10000

    def test_reference_source_validation(self) -> None:
        """Test reference source must be static or http."""
        assert ReferenceDataConfig(source="HTTP").source == "http"
        with pytest.raises(ValueError, match="Invalid reference data source"):
            ReferenceDataConfig(source="ftp")

    def test_population_chunk_size(self) -> None:
        """Test default population chunk size."""
        assert PopulationConfig().chunk_size == 10


class TestCDSConfig:
    """Tests for the aggregate configuration."""

    def test_to_dict_sections(self) -> None:
        """Test every section is serialized."""
        data = CDSConfig().to_dict()
        assert set(data) == {"service", "rules", "alerts", "hooks", "reference", "population"}

    def test_singleton(self) -> None:
        """Test get_cds_config returns a cached instance until reset."""
        first = get_cds_config()
        assert get_cds_config() is first
        reset_config()
        assert get_cds_config() is not first
