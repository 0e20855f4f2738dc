"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta

from forohtoo.durations import format_duration, parse_duration

__all__ = ["ConfigError", "Config", "load", "must_load"]


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(
            "configuration validation failed: [" + " ".join(self.errors) + "]"
        )


@dataclass
class Config:
    """All settings the service needs."""

    server_addr: str = ""
    log_level: str = ""
    database_url: str = ""
    nats_url: str = ""
    solana_rpc_url: str = ""
    # SPL token mint of USDC on the configured network; optional.
    usdc_mint_address: str = ""
    temporal_host: str = ""
    temporal_namespace: str = ""
    temporal_task_queue: str = ""
    default_poll_interval: timedelta = timedelta(0)
    min_poll_interval: timedelta = timedelta(0)

    def validate(self) -> None:
        """Raise ConfigError listing every problem with this configuration."""
        errors = []
        required = [
            ("DatabaseURL", self.database_url),
            ("SolanaRPCURL", self.solana_rpc_url),
            ("TemporalHost", self.temporal_host),
            ("TemporalNamespace", self.temporal_namespace),
            ("TemporalTaskQueue", self.temporal_task_queue),
        ]
        errors.extend(f"{name} is required" for name, value in required if not value)
        if self.min_poll_interval > self.default_poll_interval:
            errors.append("MinPollInterval cannot be greater than DefaultPollInterval")
        if self.default_poll_interval < timedelta(seconds=1):
            errors.append("DefaultPollInterval must be at least 1 second")
        if errors:
            raise ConfigError(errors)


def _get(environ: Mapping[str, str], key: str, default: str) -> str:
    return environ.get(key) or default


def _duration(environ: Mapping[str, str], key: str, default: str) -> timedelta:
    value = _get(environ, key, default)
    try:
        return parse_duration(value)
    except ValueError as exc:
        raise ValueError(f'{key}: invalid duration "{value}": {exc}') from exc


def load(environ: Mapping[str, str] | None = None) -> Config:
    """Build a Config from the environment, raising ConfigError on any problem."""
    env = os.environ if environ is None else environ
    errors: list[str] = []
    cfg = Config(
        server_addr=_get(env, "SERVER_ADDR", ":8080"),
        log_level=_get(env, "LOG_LEVEL", "info"),
        database_url=env.get("DATABASE_URL", ""),
        nats_url=_get(env, "NATS_URL", "nats://localhost:4222"),
        solana_rpc_url=env.get("SOLANA_RPC_URL", ""),
        usdc_mint_address=env.get("USDC_MINT_ADDRESS", ""),
        temporal_host=_get(env, "TEMPORAL_HOST", "localhost:7233"),
        temporal_namespace=_get(env, "TEMPORAL_NAMESPACE", "default"),
        temporal_task_queue=_get(env, "TEMPORAL_TASK_QUEUE", "forohtoo-wallet-polling"),
    )
    if not cfg.database_url:
        errors.append("DATABASE_URL is required")
    if not cfg.solana_rpc_url:
        errors.append("SOLANA_RPC_URL is required")

    try:
        cfg.default_poll_interval = _duration(env, "DEFAULT_POLL_INTERVAL", "30s")
    except ValueError as exc:
        errors.append(str(exc))
    try:
        cfg.min_poll_interval = _duration(env, "MIN_POLL_INTERVAL", "10s")
    except ValueError as exc:
        errors.append(str(exc))

    if cfg.min_poll_interval > cfg.default_poll_interval:
        errors.append(
            f"MIN_POLL_INTERVAL ({format_duration(cfg.min_poll_interval)}) cannot be "
            f"greater than DEFAULT_POLL_INTERVAL ({format_duration(cfg.default_poll_interval)})"
        )

    if errors:
        raise ConfigError(errors)
    return cfg


def must_load(environ: Mapping[str, str] | None = None) -> Config:
    """Like load, but raises RuntimeError so startup halts on bad configuration."""
    try:
        return load(environ)
    except ConfigError as exc:
        raise RuntimeError(f"failed to load configuration: {exc}") from exc