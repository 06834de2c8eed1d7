"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. --config <path> CLI flag
2. ./shipflow.yaml (working directory)
3. ~/.shipflow/config.yaml (user home)

Environment variables override YAML: SHIPFLOW_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, model_validator

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    """Recursively resolve ${VAR} references in a nested data structure."""
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class DaemonConfig(BaseModel):
    """Configuration for the webhook HTTP server."""

    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "info"


class EasyPostConfig(BaseModel):
    """EasyPost credentials and webhook settings."""

    api_key: str = ""
    base_url: str = "https://api.easypost.com"
    timeout_seconds: float = 30.0
    webhook_secret: str = ""
    webhook_prefix: str = "v-hook"
    webhook_uri: str = ""
    merchant_id: str = ""


class CacheConfig(BaseModel):
    """Read-through cache settings. Leave redis_url empty to disable caching."""

    redis_url: str = ""
    namespace: str = "easypost-cache"
    expire_seconds: int = 7200
    order_rates_ttl_seconds: int = 1800
    fulfillment_rates_ttl_seconds: int = 60
    carrier_metadata_ttl_seconds: int = 900


class InsuranceConfig(BaseModel):
    """Insurance split settings.

    The minimum is stored in cents; ``insure_value_percent`` is a whole
    percentage (e.g. 100 insures the full shipment value).
    """

    minimum_insure_value_cents: int = 15000
    insure_value_percent: float = 100.0

    @model_validator(mode="after")
    def percent_in_range(self) -> "InsuranceConfig":
        """Reject negative or over-100 insured percentages."""
        if not 0 <= self.insure_value_percent <= 100:
            raise ValueError("insure_value_percent must be between 0 and 100")
        return self


class AddressConfig(BaseModel):
    """Postal address used for the ship-from and pickup locations."""

    name: str = ""
    company: str = ""
    street1: str = ""
    street2: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    country: str = "US"
    phone: str = ""
    email: str = ""


class CustomsConfig(BaseModel):
    """Customs declaration defaults for international shipments."""

    signer: str = ""
    default_hs_tariff_number: str = "8529.10.9100"
    origin_country: str = "US"
    eel_pfc: str = "NOEEI 30.37(a)"
    aes_threshold_cents: int = 250000


class RatesConfig(BaseModel):
    """Rate filtering settings."""

    currency: str = "usd"
    minimum_rate_cents: int = 5
    # carrier account id -> flat fee in dollars
    account_fees: dict[str, float] = {"ca_8230d300a7ec47fb95eb74360be8ad66": 3.0}
    # carrier account ids that only ship to US destinations
    us_only_accounts: list[str] = ["ca_cb80688371b442bb81c8a55e932ea9f7"]
    forbidden_services: dict[str, list[str]] = {
        "ups": ["UPSStandard"],
        "upsdap": ["UPSStandard"],
    }
    excluded_service_patterns: list[str] = [
        r"(?i)ddp",
        r"(?i)next day",
        r"(?i)overnight",
        r"(?i)air am",
        r"\(AM\)",
    ]


class PickupConfig(BaseModel):
    """Pickup scheduling settings."""

    address: AddressConfig | None = None
    instructions: str = "Please scan form provided"


class LabelConfig(BaseModel):
    """Label rendering service settings."""

    service_url: str = "https://api.labelary.com/v1/printers/8dpmm/labels/4x6/"
    max_pages_per_request: int = 50
    max_retries: int = 5
    base_delay_seconds: float = 0.5
    timeout_seconds: float = 60.0


class ShipFlowConfig(BaseModel):
    """Top-level configuration for ShipFlow."""

    daemon: DaemonConfig = DaemonConfig()
    easypost: EasyPostConfig = EasyPostConfig()
    cache: CacheConfig = CacheConfig()
    insurance: InsuranceConfig = InsuranceConfig()
    origin: AddressConfig = AddressConfig()
    customs: CustomsConfig = CustomsConfig()
    rates: RatesConfig = RatesConfig()
    pickup: PickupConfig = PickupConfig()
    labels: LabelConfig = LabelConfig()


def _find_config_file() -> Path | None:
    """Search for config file in standard locations."""
    candidates = [
        Path.cwd() / "shipflow.yaml",
        Path.cwd() / "shipflow.yml",
        Path.home() / ".shipflow" / "config.yaml",
        Path.home() / ".shipflow" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply SHIPFLOW_<SECTION>_<KEY> env var overrides to config data.

    Matches section names by longest prefix, so
    ``SHIPFLOW_EASYPOST_API_KEY`` maps to section ``easypost``, field
    ``api_key``.

    Args:
        data: Parsed YAML config dict.

    Returns:
        Config dict with env var overrides applied.
    """
    prefix = "SHIPFLOW_"
    known_sections = sorted(
        ShipFlowConfig.model_fields.keys(), key=len, reverse=True
    )
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        suffix = key[len(prefix):].lower()
        matched_section = None
        matched_field = None
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix):
                matched_section = section
                matched_field = suffix[len(section_prefix):]
                break
        if matched_section is None or not matched_field:
            continue
        if matched_section not in data or data[matched_section] is None:
            data[matched_section] = {}
        if isinstance(data[matched_section], dict):
            section_model = ShipFlowConfig.model_fields[matched_section].annotation
            field_info = section_model.model_fields.get(matched_field)
            if field_info is not None and field_info.annotation is str:
                # Secrets such as "0" must stay strings
                data[matched_section][matched_field] = value
                continue
            # Coerce to int, bool, or keep as string
            try:
                data[matched_section][matched_field] = int(value)
            except ValueError:
                if value.lower() in ("true", "false"):
                    data[matched_section][matched_field] = value.lower() == "true"
                else:
                    data[matched_section][matched_field] = value
    return data


def load_config(config_path: str | None = None) -> ShipFlowConfig:
    """Load ShipFlow configuration from YAML file with env var resolution.

    Args:
        config_path: Explicit path to config file. If None, searches
            standard locations (cwd, then ~/.shipflow/).

    Returns:
        Parsed and validated ShipFlowConfig. When no file is found the
        defaults are used, still subject to SHIPFLOW_ env overrides.

    Raises:
        FileNotFoundError: If an explicit config_path does not exist.
    """
    raw_data: dict[str, Any] = {}
    if config_path:
        path: Path | None = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return ShipFlowConfig(**data)


_config: ShipFlowConfig | None = None


def get_config() -> ShipFlowConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config(os.environ.get("SHIPFLOW_CONFIG") or None)
    return _config


def set_config(config: ShipFlowConfig | None) -> None:
    """Replace the process-wide configuration (CLI --config and tests)."""
    global _config
    _config = config
