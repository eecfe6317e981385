"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest

from cashledger.config import Config, create_default_config, load_config


class TestLoadConfig:
    """Tests for YAML loading and environment overrides."""

    def test_missing_file_uses_defaults(self, tmp_path: Path):
        """A missing config file yields the default configuration."""
        config = load_config(tmp_path / "absent.yaml")
        assert config.classifier.review_threshold == 70
        assert config.duplicates.date_tolerance_days == 1
        assert config.runway.critical_months == 3.0
        assert config.oracle.enabled is False

    def test_default_file_round_trips(self, tmp_path: Path):
        """The generated default config loads and validates cleanly."""
        path = tmp_path / "config.yaml"
        create_default_config(path)
        config = load_config(path)
        assert config.validate() == []
        assert config.audit.budget_thresholds == [80, 100]
        assert config.matching.amount_tolerance == 1.0

    def test_yaml_values_are_read(self, tmp_path: Path):
        """Values from the YAML file override defaults."""
        path = tmp_path / "config.yaml"
        path.write_text(
            "runway:\n  critical_inclusive: true\n"
            "classifier:\n  review_threshold: 75\n  oracle_match_floor: 80\n"
        )
        config = load_config(path)
        assert config.runway.critical_inclusive is True
        assert config.classifier.review_threshold == 75

    def test_environment_overrides(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        """Environment variables take precedence over the file."""
        monkeypatch.setenv("CASHLEDGER_DB_PATH", str(tmp_path / "env.db"))
        monkeypatch.setenv("CASHLEDGER_ORACLE_ENABLED", "true")
        monkeypatch.setenv("CASHLEDGER_AUDIT_LOOKBACK_DAYS", "120")
        config = load_config(tmp_path / "absent.yaml")
        assert config.state_db_path == tmp_path / "env.db"
        assert config.oracle.enabled is True
        assert config.audit.lookback_days == 120

    def test_invalid_lookback_env_is_ignored(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ):
        """A non-numeric lookback override keeps the configured value."""
        monkeypatch.setenv("CASHLEDGER_AUDIT_LOOKBACK_DAYS", "soon")
        config = load_config(tmp_path / "absent.yaml")
        assert config.audit.lookback_days == 90


class TestValidate:
    """Tests for Config.validate()."""

    def test_runway_tiers_must_ascend(self):
        """critical < warning < info is enforced."""
        config = Config()
        config.runway.warning_months = 2.0
        assert any("runway tiers" in e for e in config.validate())

    def test_match_floor_below_threshold(self):
        """The oracle match floor may not undercut the review threshold."""
        config = Config()
        config.classifier.oracle_match_floor = 60
        assert any("oracle_match_floor" in e for e in config.validate())

    def test_oracle_remote_detection(self):
        """Localhost URLs are local, everything else remote."""
        config = Config()
        assert config.oracle.is_remote() is False
        config.oracle.base_url = "https://llm.example.com"
        assert config.oracle.is_remote() is True

    @pytest.mark.parametrize("size,valid", [(1, True), (10, True), (11, False), (0, False)])
    def test_oracle_batch_size_bounds(self, size, valid):
        """Batch requests carry at most ten transactions."""
        config = Config()
        config.oracle.batch_size = size
        has_error = any("oracle.batch_size" in e for e in config.validate())
        assert has_error is not valid

    def test_legacy_ratio_check_from_yaml(self, tmp_path: Path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("audit:\n  legacy_ratio_check: true\n")
        assert load_config(config_file).audit.legacy_ratio_check is True
        assert Config().audit.legacy_ratio_check is False
