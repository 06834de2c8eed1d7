"""Tests for configuration loading and validation."""

import pytest
import yaml

from shipflow.config import (
    DaemonConfig,
    InsuranceConfig,
    ShipFlowConfig,
    get_config,
    load_config,
    resolve_env_vars,
    set_config,
)


class TestDefaults:
    def test_daemon_defaults(self):
        cfg = DaemonConfig()
        assert cfg.host == "127.0.0.1"
        assert cfg.port == 8000
        assert cfg.log_level == "info"

    def test_business_defaults(self):
        """Insurance minimum is $150 and labels batch 50 pages per request."""
        cfg = ShipFlowConfig()
        assert cfg.insurance.minimum_insure_value_cents == 15000
        assert cfg.insurance.insure_value_percent == 100.0
        assert cfg.labels.max_pages_per_request == 50
        assert cfg.labels.max_retries == 5
        assert cfg.rates.minimum_rate_cents == 5
        assert cfg.pickup.address is None

    def test_insure_percent_out_of_range_rejected(self):
        with pytest.raises(ValueError):
            InsuranceConfig(insure_value_percent=150)


class TestResolveEnvVars:
    def test_resolves_known_and_missing(self, monkeypatch):
        monkeypatch.setenv("SF_TEST_KEY", "EZAK123")
        monkeypatch.delenv("SF_TEST_MISSING", raising=False)
        assert resolve_env_vars("key=${SF_TEST_KEY}") == "key=EZAK123"
        assert resolve_env_vars("${SF_TEST_MISSING}") == ""


class TestLoadConfig:
    def test_yaml_file_with_env_references(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SF_TEST_API_KEY", "EZTK_from_env")
        path = tmp_path / "shipflow.yaml"
        path.write_text(
            yaml.safe_dump({
                "easypost": {"api_key": "${SF_TEST_API_KEY}", "webhook_prefix": "hooks"},
                "insurance": {"minimum_insure_value_cents": 20000},
                "pickup": {"address": {"street1": "1 Dock Rd", "city": "Oakland"}},
            })
        )

        cfg = load_config(str(path))

        assert cfg.easypost.api_key == "EZTK_from_env"
        assert cfg.easypost.webhook_prefix == "hooks"
        assert cfg.insurance.minimum_insure_value_cents == 20000
        assert cfg.pickup.address is not None
        assert cfg.pickup.address.city == "Oakland"

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "shipflow.yaml"
        path.write_text(yaml.safe_dump({"daemon": {"port": 8000}}))
        monkeypatch.setenv("SHIPFLOW_DAEMON_PORT", "9100")
        monkeypatch.setenv("SHIPFLOW_EASYPOST_API_KEY", "EZAK_override")

        cfg = load_config(str(path))

        assert cfg.daemon.port == 9100
        assert cfg.easypost.api_key == "EZAK_override"

    def test_numeric_secret_stays_string(self, tmp_path, monkeypatch):
        path = tmp_path / "shipflow.yaml"
        path.write_text("{}")
        monkeypatch.setenv("SHIPFLOW_EASYPOST_WEBHOOK_SECRET", "0")

        cfg = load_config(str(path))

        assert cfg.easypost.webhook_secret == "0"

    def test_missing_explicit_path_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_invalid_values_rejected(self, tmp_path):
        path = tmp_path / "shipflow.yaml"
        path.write_text(yaml.safe_dump({"insurance": {"insure_value_percent": -5}}))
        with pytest.raises(ValueError):
            load_config(str(path))


def test_set_config_replaces_process_config():
    custom = ShipFlowConfig(daemon=DaemonConfig(port=9999))
    set_config(custom)
    try:
        assert get_config() is custom
    finally:
        set_config(None)
