from __future__ import annotations

import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from antnode.clef import DEFAULT_MAX_RETRIES
from antnode.errors import BootstrapValidationError

VERBOSITY_LEVELS: dict[str, str] = {
    "0": "silent",
    "1": "error",
    "2": "warn",
    "3": "info",
    "4": "debug",
    "5": "trace",
}

DEFAULT_BLOCK_TIME_S = 15
MAX_TLD_LENGTH = 63


class ApiConfig(BaseModel):
    addr: str = ":1633"
    debug_api_enable: bool = False
    debug_api_addr: str = ":1635"
    cors_allowed_origins: list[str] = Field(default_factory=list)
    dashboard_authorization: str = ""
    gateway_mode: bool = False


class P2PConfig(BaseModel):
    addr: str = ":1634"
    nat_addr: str = ""
    ws_enable: bool = False
    quic_enable: bool = False
    welcome_message: str = ""


class StorageConfig(BaseModel):
    cache_capacity: int = Field(default=1_000_000, ge=0)
    db_open_files_limit: int = Field(default=200, ge=0)
    db_block_cache_capacity: int = Field(default=32 * 1024 * 1024, ge=0)
    db_write_buffer_size: int = Field(default=32 * 1024 * 1024, ge=0)
    db_disable_seeks_compaction: bool = False
    global_pinning_enabled: bool = False


class ClefConfig(BaseModel):
    """Remote signer settings. An empty endpoint means the platform default IPC path."""

    enable: bool = False
    endpoint: str = ""
    ethereum_address: str = ""
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=1)

    @field_validator("ethereum_address")
    @classmethod
    def _validate_address(cls, value: str) -> str:
        if value and not re.fullmatch(r"(0x)?[0-9a-fA-F]{40}", value):
            raise ValueError("clef ethereum address must be 20 bytes of hex")
        return value


class PaymentConfig(BaseModel):
    threshold: str = "10000000000000"
    tolerance: str = "50"
    early: str = "50"


class SwapConfig(BaseModel):
    enable: bool = True
    endpoint: str = "ws://localhost:8546"
    factory_address: str = ""
    initial_deposit: str = "10000000000000000"
    deployment_gas_price: str = ""


class PostageConfig(BaseModel):
    contract_address: str = ""
    price_oracle_address: str = ""
    transaction_hash: str = ""
    block_hash: str = ""


class TracingConfig(BaseModel):
    enabled: bool = False
    endpoint: str = "127.0.0.1:6831"
    service_name: str = "ant"


class MineConfig(BaseModel):
    enable: bool = False
    trust: bool = False
    contract_address: str = ""


class UniswapConfig(BaseModel):
    enable: bool = False
    endpoint: str = ""
    valid_time: timedelta = timedelta(minutes=10)


class NodeRuntimeConfig(BaseModel):
    """Where the node constructor lives, as ``module:attribute``."""

    factory: str = "antnode.node:IdleNode"


class NodeSettings(BaseSettings):
    data_dir: Path | None = None
    password: str | None = None
    password_file: Path | None = None
    verbosity: str = "info"
    network_id: int = Field(default=1, ge=0)
    bootnodes: list[str] = Field(default_factory=list)
    block_time: int = Field(default=DEFAULT_BLOCK_TIME_S, ge=0)
    full_node: bool = False
    bootnode_mode: bool = False
    standalone: bool = False
    warmup_time: timedelta = timedelta(minutes=20)
    resolver_endpoints: list[str] = Field(default_factory=list)
    api: ApiConfig = Field(default_factory=ApiConfig)
    p2p: P2PConfig = Field(default_factory=P2PConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    clef: ClefConfig = Field(default_factory=ClefConfig)
    payment: PaymentConfig = Field(default_factory=PaymentConfig)
    swap: SwapConfig = Field(default_factory=SwapConfig)
    postage: PostageConfig = Field(default_factory=PostageConfig)
    tracing: TracingConfig = Field(default_factory=TracingConfig)
    mine: MineConfig = Field(default_factory=MineConfig)
    uniswap: UniswapConfig = Field(default_factory=UniswapConfig)
    node: NodeRuntimeConfig = Field(default_factory=NodeRuntimeConfig)

    model_config = SettingsConfigDict(
        env_prefix="ANT_",
        env_nested_delimiter="__",
        extra="ignore",
        coerce_numbers_to_str=True,
    )

    @field_validator("data_dir", "password_file", mode="before")
    @classmethod
    def _empty_path_is_unset(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("verbosity", mode="before")
    @classmethod
    def _normalize_verbosity(cls, value: object) -> str:
        normalized = str(value).strip().lower()
        normalized = VERBOSITY_LEVELS.get(normalized, normalized)
        if normalized not in VERBOSITY_LEVELS.values():
            raise ValueError(f"unknown verbosity level {value!r}")
        return normalized

    @field_validator("resolver_endpoints")
    @classmethod
    def _validate_resolver_endpoints(cls, value: list[str]) -> list[str]:
        parse_resolver_connection_strings(value)
        return value

    @model_validator(mode="after")
    def _validate_bootnode_requires_full_node(self) -> NodeSettings:
        if self.bootnode_mode and not self.full_node:
            raise ValueError("boot node must be started as a full node")
        return self

    def explicitly_set(self, name: str) -> bool:
        """True when ``name`` came from the file, environment or CLI rather than a default."""
        return name in self.model_fields_set


class ResolverConnectionConfig(BaseModel):
    tld: str = ""
    address: str = ""
    endpoint: str


def parse_resolver_connection_string(value: str) -> ResolverConnectionConfig:
    """Parse ``[tld:][contract-addr@]url``.

    A leading ``scheme://`` is part of the url, never a TLD.
    """
    endpoint = value
    tld = ""
    address = ""

    colon = endpoint.find(":")
    if colon > 0:
        prefix = endpoint[:colon]
        if not endpoint.startswith("://", colon):
            tld = prefix
            if len(tld) > MAX_TLD_LENGTH:
                raise BootstrapValidationError(f"resolver tld {tld[:16]}... is longer than {MAX_TLD_LENGTH}")
            endpoint = endpoint[colon + 1 :]

    at = endpoint.find("@")
    if at > 0:
        raw_address = endpoint[:at].lower().removeprefix("0x")
        if not re.fullmatch(r"[0-9a-f]{1,40}", raw_address):
            raise BootstrapValidationError(f"resolver contract address {endpoint[:at]!r} is not hex")
        address = "0x" + raw_address.rjust(40, "0")
        endpoint = endpoint[at + 1 :]

    return ResolverConnectionConfig(tld=tld, address=address, endpoint=endpoint)


def parse_resolver_connection_strings(values: list[str]) -> list[ResolverConnectionConfig]:
    return [parse_resolver_connection_string(value) for value in values]


def _coerce_env_value(value: str) -> object:
    parsed = yaml.safe_load(value)
    return value if parsed is None else parsed


def _set_nested(mapping: dict[str, object], path: list[str], value: object) -> None:
    current = mapping
    for key in path[:-1]:
        existing = current.get(key)
        if not isinstance(existing, dict):
            existing = {}
            current[key] = existing
        current = existing
    current[path[-1]] = value


def _apply_env_overrides(data: dict[str, object]) -> dict[str, object]:
    merged = dict(data)
    prefix = "ANT_"
    for key, raw_value in os.environ.items():
        if not key.startswith(prefix):
            continue
        path = key[len(prefix) :].lower().split("__")
        _set_nested(merged, path, _coerce_env_value(raw_value))
    return merged


def _apply_overrides(data: dict[str, object], overrides: dict[str, Any]) -> dict[str, object]:
    merged = dict(data)
    for dotted_key, value in overrides.items():
        if value is None:
            continue
        _set_nested(merged, dotted_key.split("."), value)
    return merged


def load_config(
    path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> NodeSettings:
    """Load settings from YAML, then ``ANT_*`` environment, then ``overrides``.

    ``overrides`` uses dotted keys (``"clef.enable"``); ``None`` values are
    treated as "not given" so CLI flags only count as set when passed.
    """
    raw: dict[str, object] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"config file not found: {config_path}")

        loaded = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        if not isinstance(loaded, dict):
            raise ValueError("config file must contain a top-level mapping")

        section = loaded.get("ant", loaded)
        if not isinstance(section, dict):
            raise ValueError("ant config section must be a mapping")
        raw = section

    merged = _apply_env_overrides(raw)
    merged = _apply_overrides(merged, overrides or {})
    return NodeSettings.model_validate(merged)


__all__ = [
    "ApiConfig",
    "ClefConfig",
    "DEFAULT_BLOCK_TIME_S",
    "MineConfig",
    "NodeRuntimeConfig",
    "NodeSettings",
    "P2PConfig",
    "PaymentConfig",
    "PostageConfig",
    "ResolverConnectionConfig",
    "StorageConfig",
    "SwapConfig",
    "TracingConfig",
    "UniswapConfig",
    "load_config",
    "parse_resolver_connection_string",
    "parse_resolver_connection_strings",
]
