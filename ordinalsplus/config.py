"""Shared configuration loader for the inscription engine."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlparse

import yaml

from .fees import POSTAGE_VALUE
from .networks import NETWORKS


class ConfigurationError(RuntimeError):
    """Raised when configuration is invalid."""


DEFAULT_CONFIG_PATH = Path.home() / ".ordinalsplus.yaml"
_CONFIG_PATH_OVERRIDE: Path | None = None

DEFAULT_ESPLORA_URLS = {
    "mainnet": "https://mempool.space/api",
    "testnet": "https://mempool.space/testnet/api",
    "signet": "https://mempool.space/signet/api",
    "regtest": "http://127.0.0.1:3002",
}


@dataclass
class EngineConfig:
    """Runtime settings for building and submitting inscriptions."""

    network: str = "mainnet"
    fee_rate_sat_vb: float | None = None
    postage: int = POSTAGE_VALUE
    esplora_url: str | None = None
    timeout: float = 30.0
    retry_attempts: int = 3
    retry_base_delay: float = 1.0

    @property
    def api_base_url(self) -> str:
        return (self.esplora_url or DEFAULT_ESPLORA_URLS[self.network]).rstrip("/")


def set_default_config_path(path: str | Path | None) -> None:
    """Remember a user-supplied config path for future loads."""

    global _CONFIG_PATH_OVERRIDE
    _CONFIG_PATH_OVERRIDE = Path(path).expanduser() if path else None


def _load_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigurationError(f"Config file not found: {path}")
        return {}

    try:
        loaded = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
        raise ConfigurationError(f"Invalid YAML in config file {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Expected {path} to contain a YAML object with an 'engine' section")
    return loaded


def _coerce_number(raw: Any, kind: type, *, source: str, name: str) -> Any:
    if raw is None or raw == "":
        return None
    try:
        return kind(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid {name} in {source}: {raw}") from exc


def _first_value(*values: Any, default: Any = None) -> Any:
    for value in values:
        if value is not None:
            return value
    return default


def _validate_url(raw: str | None) -> str | None:
    if not raw:
        return None
    parsed = urlparse(raw)
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        raise ConfigurationError(f"Invalid API endpoint URL: {raw}")
    return raw


def load_engine_config(
    *,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> EngineConfig:
    """Load engine settings from overrides, ``ORDINALSPLUS_*`` variables and optional YAML.

    Precedence is overrides, then environment, then the ``engine`` section of
    the config file, then built-in defaults.
    """

    env_map = os.environ if env is None else env
    explicit_path = config_path is not None or _CONFIG_PATH_OVERRIDE is not None
    path = (
        Path(config_path).expanduser()
        if config_path is not None
        else _CONFIG_PATH_OVERRIDE or DEFAULT_CONFIG_PATH
    )

    file_config = _load_config_file(path, required=explicit_path)
    section = file_config.get("engine", {}) if isinstance(file_config, dict) else {}
    if section and not isinstance(section, dict):
        raise ConfigurationError(f"Expected 'engine' to be a mapping in {path}")
    section = section or {}
    override_map = dict(overrides or {})

    def resolve(name: str, env_key: str, kind: type | None = None) -> Any:
        sources = (
            ("overrides", override_map.get(name)),
            ("environment", env_map.get(env_key)),
            (f"{path} engine.{name}", section.get(name)),
        )
        for source, value in sources:
            if value is None or value == "":
                continue
            return _coerce_number(value, kind, source=source, name=name) if kind else value
        return None

    network = str(_first_value(resolve("network", "ORDINALSPLUS_NETWORK"), default="mainnet")).lower()
    if network not in NETWORKS:
        raise ConfigurationError(
            f"Unknown network '{network}'; expected one of {', '.join(sorted(NETWORKS))}"
        )

    fee_rate = resolve("fee_rate_sat_vb", "ORDINALSPLUS_FEE_RATE_SATVB", float)
    if fee_rate is not None and fee_rate <= 0:
        raise ConfigurationError(f"Fee rate must be positive, got {fee_rate}")

    postage = _first_value(resolve("postage", "ORDINALSPLUS_POSTAGE", int), default=POSTAGE_VALUE)
    if postage <= 0:
        raise ConfigurationError(f"Postage must be positive, got {postage}")

    retry_attempts = _first_value(resolve("retry_attempts", "ORDINALSPLUS_RETRY_ATTEMPTS", int), default=3)
    if retry_attempts < 1:
        raise ConfigurationError("retry_attempts must be at least 1")

    return EngineConfig(
        network=network,
        fee_rate_sat_vb=fee_rate,
        postage=postage,
        esplora_url=_validate_url(resolve("esplora_url", "ORDINALSPLUS_ESPLORA_URL")),
        timeout=_first_value(resolve("timeout", "ORDINALSPLUS_TIMEOUT", float), default=30.0),
        retry_attempts=retry_attempts,
        retry_base_delay=_first_value(
            resolve("retry_base_delay", "ORDINALSPLUS_RETRY_BASE_DELAY", float), default=1.0
        ),
    )
