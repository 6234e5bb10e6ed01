"""
Tests for Configuration
=======================

Schema validation of the YAML configuration and loading it into the
engine's configuration tree.
"""

from pathlib import Path

import pytest
import yaml

from risk_engine.config import (
    EngineConfig,
    MarginConfig,
    VaRConfig,
    load_config,
)
from risk_engine.config_validator import (
    ConfigValidationError,
    ConfigValidator,
    FieldSchema,
    ValidationResult,
    ValidationSeverity,
)


REPO_CONFIG = Path(__file__).resolve().parent.parent / "config.yaml"


class TestConfigValidator:
    """Test ConfigValidator functionality."""

    @pytest.fixture
    def validator(self):
        """Create a fresh validator instance."""
        return ConfigValidator()

    def test_empty_config_is_valid(self, validator):
        """Every field is optional; defaults apply."""
        result = validator.validate({})

        assert result.valid
        assert result.issues == []

    def test_repo_config_is_valid(self, validator):
        with open(REPO_CONFIG, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)

        result = validator.validate(raw)

        assert result.valid, result.report()
        assert result.get_warnings() == []

    def test_bps_out_of_range(self, validator):
        result = validator.validate({"margin": {"base_margin_rate_bps": 12_000}})

        assert not result.valid
        assert result.get_errors()[0].path == "margin.base_margin_rate_bps"

    def test_float_bps_rejected(self, validator):
        """Basis-point fields must be integers."""
        result = validator.validate({"margin": {"default_volatility_bps": 5000.5}})

        assert not result.valid
        assert result.get_errors()[0].message == "expected int, got float"

    def test_bool_bps_rejected(self, validator):
        result = validator.validate({"margin": {"default_correlation_bps": True}})

        assert not result.valid

    def test_unknown_margin_method(self, validator):
        result = validator.validate({"margin": {"default_method": "var_based"}})

        assert not result.valid
        assert "is not one of" in result.get_errors()[0].message

    @pytest.mark.parametrize("levels", [[9_500], [9_000, 9_900], [9_500, 9_900, 9_990]])
    def test_confidence_levels_fixed(self, validator, levels):
        result = validator.validate({"var": {"confidence_levels": levels}})

        assert not result.valid

    def test_confidence_levels_any_order(self, validator):
        assert validator.validate({"var": {"confidence_levels": [9_900, 9_500]}}).valid

    def test_min_points_above_window(self, validator):
        result = validator.validate({"var": {"lookback_window": 20, "min_data_points": 30}})

        assert not result.valid
        assert result.get_errors()[0].path == "var"

    def test_high_diversification_cap_warns(self, validator):
        result = validator.validate({"margin": {"max_diversification_benefit_bps": 9_000}})

        assert result.valid
        assert result.get_warnings()[0].severity == ValidationSeverity.WARNING

    def test_zero_concentration_threshold_warns(self, validator):
        result = validator.validate({"margin": {"concentration_threshold_bps": 0}})

        assert result.valid
        assert len(result.get_warnings()) == 1

    def test_strict_mode_raises(self, validator):
        with pytest.raises(ConfigValidationError) as exc_info:
            validator.validate({"oracle": {"stale_threshold_seconds": 0}}, strict=True)

        assert not exc_info.value.result.valid
        assert "oracle.stale_threshold_seconds" in str(exc_info.value)

    def test_custom_schema(self, validator):
        validator.add_schema(FieldSchema(path="desk.name", field_type=str, required=True))

        result = validator.validate({})

        assert not result.valid
        assert result.get_errors()[0].message == "required field is missing"

    def test_custom_rule(self, validator):
        def no_short_windows(config, result):
            if config.get("var", {}).get("lookback_window", 365) < 100:
                result.add_error("var.lookback_window", "desk policy requires 100+")

        validator.add_rule(no_short_windows)

        assert not validator.validate({"var": {"lookback_window": 60, "min_data_points": 30}}).valid

    def test_unknown_section_warns(self, validator):
        result = validator.validate({"broker": {"host": "127.0.0.1"}})

        assert result.valid
        assert result.get_warnings()[0].path == "broker"


class TestValidationResult:
    """Test result formatting."""

    def test_summary(self):
        result = ValidationResult()
        result.add_error("var.lookback_window", "too small", "raise it")
        result.add_warning("margin", "odd")

        assert not result.valid
        assert result.summary() == "config.yaml INVALID: 1 error(s), 1 warning(s)"

    def test_report_lists_errors_first(self):
        result = ValidationResult()
        result.add_warning("margin", "odd")
        result.add_error("var", "broken", "widen it")

        lines = result.report().splitlines()

        assert lines[1].strip() == "ERROR   var: broken (fix: widen it)"
        assert lines[2].strip() == "WARNING margin: odd"

    def test_report_without_warnings(self):
        result = ValidationResult()
        result.add_warning("margin", "odd")

        assert result.report(include_warnings=False) == "config.yaml valid: 0 error(s), 1 warning(s)"


class TestEngineConfig:
    """Test building the configuration tree."""

    def test_defaults(self):
        config = EngineConfig()

        assert config.var == VaRConfig()
        assert config.var.confidence_levels == (9_500, 9_900)
        assert config.margin.default_method == "standard"
        assert config.oracle.stale_threshold_seconds == 3_600

    def test_from_dict_partial(self):
        config = EngineConfig.from_dict({"margin": {"default_volatility_bps": 8_000}})

        assert config.margin.default_volatility_bps == 8_000
        assert config.margin.base_margin_rate_bps == MarginConfig().base_margin_rate_bps

    def test_from_dict_sorts_confidence_levels(self):
        config = EngineConfig.from_dict({"var": {"confidence_levels": [9_900, 9_500]}})

        assert config.var.confidence_levels == (9_500, 9_900)

    def test_unknown_keys_ignored(self, caplog):
        config = EngineConfig.from_dict({"margin": {"haircut_bps": 500}})

        assert config.margin == MarginConfig()
        assert "margin.haircut_bps" in caplog.text

    def test_invalid_strict(self):
        with pytest.raises(ConfigValidationError):
            EngineConfig.from_dict({"var": {"min_data_points": 1}})

    def test_none_is_defaults(self):
        assert EngineConfig.from_dict(None) == EngineConfig()

    def test_round_trip_dict(self):
        data = EngineConfig().to_dict()

        assert data["margin"]["max_diversification_benefit_bps"] == 5_000
        assert data["logging"]["level"] == "INFO"


class TestLoadConfig:
    """Test loading from YAML files."""

    def test_load_repo_config(self):
        config = load_config(REPO_CONFIG)

        assert config.var.lookback_window == 365
        assert config.logging.module_levels == {"risk_engine.event_bus": "WARNING"}

    def test_load_tmp_file(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text(yaml.safe_dump({"oracle": {"stale_threshold_seconds": 60}}))

        assert load_config(path).oracle.stale_threshold_seconds == 60

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert load_config(path) == EngineConfig()

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yaml")

    def test_invalid_file(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({"margin": {"default_method": "fancy"}}))

        with pytest.raises(ConfigValidationError):
            load_config(path)
        assert load_config(path, strict=False).margin.default_method == "fancy"
