# configuration.py
"""
Airkeeper – Configuration
=========================

Centralised runtime configuration loader.

Scalar settings come from defaults → YAML (one section per environment)
→ environment variables (``.env`` is loaded first) → keyword overrides,
and are exposed as UPPERCASE attributes. Chains, endpoints, templates and
subscriptions (plus RRP keeper jobs) are turned into typed, validated structures so the rest of
the keeper never handles raw dictionaries.
"""

from __future__ import annotations

import os
import types
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import dotenv
import yaml
from eth_utils import is_address, to_checksum_address
from web3 import Web3

from airkeeper.constants import (
    BASE_FEE_MULTIPLIER,
    BLOCK_COUNT_HISTORY_LIMIT,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_DELAY,
    DEFAULT_RETRY_TIMEOUT,
    GAS_LIMIT,
    PRIORITY_FEE_IN_WEI,
    PROTOCOL_ID_PSP,
)
from airkeeper.exceptions import ConfigurationError, KeeperError
from airkeeper.jobs import AnyJob, Job, RrpKeeperJob
from airkeeper.loggingconfig import setup_logging
from airkeeper.retry import RetryPolicy

logger = setup_logging("Configuration", level="INFO")


# --------------------------------------------------------------------------- #
# defaults                                                                    #
# --------------------------------------------------------------------------- #

_DEFAULTS: Dict[str, Any] = {
    # retry / timeouts
    "RETRY_ATTEMPTS": DEFAULT_RETRY_ATTEMPTS,
    "RETRY_TIMEOUT": DEFAULT_RETRY_TIMEOUT,
    "RETRY_DELAY": DEFAULT_RETRY_DELAY,
    "API_TIMEOUT": 10.0,
    "API_CACHE_TTL": 30,
    # scheduling
    "CYCLE_INTERVAL": 60,
    # execution control
    "DRY_RUN": True,
    "PROTOCOL_ID": PROTOCOL_ID_PSP,
    "LOG_LEVEL": "INFO",
    # secrets
    "AIRNODE_WALLET_MNEMONIC": "",
}

_INT_KEYS = {"RETRY_ATTEMPTS", "API_CACHE_TTL"}
_FLOAT_KEYS = {"RETRY_TIMEOUT", "RETRY_DELAY", "API_TIMEOUT", "CYCLE_INTERVAL"}
_BOOL_KEYS = {"DRY_RUN"}

_TX_TYPES = ("legacy", "eip1559")


# --------------------------------------------------------------------------- #
# typed sections                                                              #
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class ChainOptions:
    tx_type: str = "eip1559"
    base_fee_multiplier: int = BASE_FEE_MULTIPLIER
    priority_fee_wei: int = PRIORITY_FEE_IN_WEI
    fulfillment_gas_limit: int = GAS_LIMIT


@dataclass(frozen=True)
class ChainConfig:
    id: str
    providers: Tuple[Tuple[str, str], ...]
    contracts: Dict[str, str] = field(default_factory=dict, hash=False)
    options: ChainOptions = field(default_factory=ChainOptions)
    type: str = "evm"
    block_history_limit: int = BLOCK_COUNT_HISTORY_LIMIT


@dataclass(frozen=True)
class EndpointConfig:
    id: str
    ois_title: str
    endpoint_name: str
    url: str
    path: str
    method: str = "GET"
    times: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict, hash=False)
    params: Dict[str, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class TemplateConfig:
    id: str
    endpoint_id: str
    parameters: str = "0x"
    api_parameters: Dict[str, Any] = field(default_factory=dict, hash=False)


# --------------------------------------------------------------------------- #
# helpers                                                                     #
# --------------------------------------------------------------------------- #


def _checksum(addr: str, key_name: str) -> str:
    if not isinstance(addr, str) or not is_address(addr):
        raise ConfigurationError(f"{key_name}: invalid address '{addr}'")
    return to_checksum_address(addr)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def parse_priority_fee(value: Any) -> int:
    """``{value, unit}`` mapping or a plain wei amount → wei."""
    if isinstance(value, dict):
        amount, unit = value.get("value"), value.get("unit", "wei")
    else:
        amount, unit = value, "wei"
    try:
        return int(Web3.to_wei(Decimal(str(amount)), unit))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ConfigurationError(f"invalid priority fee {value!r}: {exc}")


def parse_chain(raw: Dict[str, Any]) -> ChainConfig:
    try:
        chain_id = str(raw["id"])
    except KeyError:
        raise ConfigurationError("chain entry without 'id'")

    providers_raw = raw.get("providers") or {}
    providers = tuple(
        (name, entry["url"] if isinstance(entry, dict) else str(entry))
        for name, entry in providers_raw.items()
    )
    if not providers:
        raise ConfigurationError(f"chain {chain_id}: at least one provider is required")

    contracts = {
        name: _checksum(address, f"chain {chain_id} contract {name}")
        for name, address in (raw.get("contracts") or {}).items()
    }

    opts = raw.get("options") or {}
    tx_type = opts.get("txType", "eip1559")
    if tx_type not in _TX_TYPES:
        raise ConfigurationError(f"chain {chain_id}: txType must be one of {_TX_TYPES}")
    options = ChainOptions(
        tx_type=tx_type,
        base_fee_multiplier=int(opts.get("baseFeeMultiplier", BASE_FEE_MULTIPLIER)),
        priority_fee_wei=(
            parse_priority_fee(opts["priorityFee"]) if "priorityFee" in opts else PRIORITY_FEE_IN_WEI
        ),
        fulfillment_gas_limit=int(opts.get("fulfillmentGasLimit", GAS_LIMIT)),
    )
    return ChainConfig(
        id=chain_id,
        type=raw.get("type", "evm"),
        providers=providers,
        contracts=contracts,
        options=options,
        block_history_limit=int(raw.get("blockHistoryLimit", BLOCK_COUNT_HISTORY_LIMIT)),
    )


def parse_endpoint(endpoint_id: str, raw: Dict[str, Any]) -> EndpointConfig:
    try:
        return EndpointConfig(
            id=endpoint_id,
            ois_title=raw["oisTitle"],
            endpoint_name=raw["endpointName"],
            url=raw["url"],
            path=raw["path"],
            method=raw.get("method", "GET").upper(),
            times=str(raw["times"]) if raw.get("times") is not None else None,
            headers=dict(raw.get("headers") or {}),
            params=dict(raw.get("params") or {}),
        )
    except KeyError as exc:
        raise ConfigurationError(f"endpoint {endpoint_id} is missing field {exc}")


def parse_template(template_id: str, raw: Dict[str, Any]) -> TemplateConfig:
    try:
        return TemplateConfig(
            id=template_id,
            endpoint_id=raw["endpointId"],
            parameters=raw.get("parameters", "0x"),
            api_parameters=dict(raw.get("apiParameters") or {}),
        )
    except KeyError as exc:
        raise ConfigurationError(f"template {template_id} is missing field {exc}")


# --------------------------------------------------------------------------- #
# main class                                                                  #
# --------------------------------------------------------------------------- #


class Configuration(types.SimpleNamespace):
    # NB: kwargs allow tests to override env/file easily
    def __init__(
        self,
        env_path: str | Path = ".env",
        yaml_file: str | Path = "config.yaml",
        environment: str = "development",
        **overrides: Any,
    ) -> None:
        super().__init__()
        self._env_path = Path(env_path)
        self._yaml_file = Path(yaml_file)
        self._environment = environment
        self.chains: List[ChainConfig] = []
        self.endpoints: Dict[str, EndpointConfig] = {}
        self.templates: Dict[str, TemplateConfig] = {}
        self.jobs: List[AnyJob] = []
        self._load(overrides)

    def reload(self) -> None:
        """Reload from YAML/env; keeps existing object identity."""
        self._load()
        logger.info("Configuration reloaded successfully")

    def get_config_value(self, key: str, default: Any = None) -> Any:
        return getattr(self, key, default)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            attempts=self.RETRY_ATTEMPTS,
            timeout=self.RETRY_TIMEOUT,
            delay=self.RETRY_DELAY,
        )

    def api_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=self.RETRY_ATTEMPTS, timeout=self.API_TIMEOUT, delay=self.RETRY_DELAY)

    def api_resolution_policy(self) -> RetryPolicy:
        """Outer bound on one resolver call, long enough for its own retries to finish."""
        inner = self.api_retry_policy()
        return RetryPolicy(attempts=1, timeout=inner.attempts * (inner.timeout + inner.delay), delay=0)

    # ------------------------------------------------------------------ #
    # internals                                                          #
    # ------------------------------------------------------------------ #

    def _load(self, overrides: Dict[str, Any] | None = None) -> None:
        overrides = overrides or {}
        dotenv.load_dotenv(self._env_path, override=False)

        # 1) defaults
        data: Dict[str, Any] = dict(_DEFAULTS)
        sections: Dict[str, Any] = {}

        # 2) YAML
        if self._yaml_file.exists():
            try:
                yaml_data = yaml.safe_load(self._yaml_file.read_text()) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"Config YAML parse error: {exc}") from exc
            env_section = yaml_data.get(self._environment, {}) or {}
            for key, value in env_section.items():
                if key.isupper():
                    data[key] = value
                else:
                    sections[key] = value

        # 3) .env / process environment
        for key in data:
            if key in os.environ:
                data[key] = os.environ[key]

        # 4) explicit kwargs
        for key, value in overrides.items():
            if key.isupper():
                data[key] = value
            else:
                sections[key] = value

        # coercion --------------------------------------------------------
        try:
            for key in _INT_KEYS:
                data[key] = int(data[key])
            for key in _FLOAT_KEYS:
                data[key] = float(data[key])
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"invalid numeric setting: {exc}") from exc
        for key in _BOOL_KEYS:
            data[key] = _as_bool(data[key])
        data["PROTOCOL_ID"] = str(data["PROTOCOL_ID"])
        if data["RETRY_ATTEMPTS"] < 1:
            raise ConfigurationError("RETRY_ATTEMPTS must be at least 1")

        self.__dict__.update(data)
        self._load_sections(sections)

        logger.debug(
            "Configuration loaded (%d chains, %d subscriptions)", len(self.chains), len(self.jobs)
        )

    def _load_sections(self, sections: Dict[str, Any]) -> None:
        self.chains = [parse_chain(raw) for raw in sections.get("chains") or []]
        seen = set()
        for chain in self.chains:
            if chain.id in seen:
                raise ConfigurationError(f"chain {chain.id} is defined more than once")
            seen.add(chain.id)

        self.endpoints = {
            endpoint_id: parse_endpoint(endpoint_id, raw)
            for endpoint_id, raw in (sections.get("endpoints") or {}).items()
        }
        self.templates = {
            template_id: parse_template(template_id, raw)
            for template_id, raw in (sections.get("templates") or {}).items()
        }

        subscriptions = sections.get("subscriptions") or {}
        enabled = (sections.get("triggers") or {}).get("beaconUpdates")
        if enabled is None:
            enabled = list(subscriptions)

        jobs: List[AnyJob] = []
        for subscription_id in enabled:
            raw = subscriptions.get(subscription_id)
            if raw is None:
                logger.warning("Subscription %s not found in subscriptions", subscription_id)
                continue
            jobs.append(Job.from_dict(subscription_id, raw))

        # keeper jobs request RRP updates instead of fulfilling PSP subscriptions
        for raw in (sections.get("triggers") or {}).get("rrpBeaconUpdates") or []:
            if not isinstance(raw, dict):
                raise ConfigurationError("triggers.rrpBeaconUpdates entries must be mappings")
            jobs.append(RrpKeeperJob.from_dict(raw))
        self.jobs = jobs

    # ------------------------------------------------------------------ #
    # dunder helpers                                                     #
    # ------------------------------------------------------------------ #

    def __repr__(self) -> str:
        keys = ("DRY_RUN", "PROTOCOL_ID", "CYCLE_INTERVAL")
        preview = ", ".join(f"{k}={getattr(self, k, '')!s}" for k in keys)
        return f"<Configuration {preview} chains={len(self.chains)} jobs={len(self.jobs)}>"


def load_configuration(**kwargs: Any) -> Configuration:
    """Build a Configuration, converting unexpected failures into ConfigurationError."""
    try:
        return Configuration(**kwargs)
    except KeeperError:
        raise
    except (OSError, ValueError, TypeError) as exc:
        raise ConfigurationError(f"failed to load configuration: {exc}") from exc
