"""
Gateway Config - environment-backed settings

Everything tunable lives here so the service has ONE code path and the old
per-variant differences (metadata upload, balance enrichment, loop cadence)
become flags. Values come from the process environment; main.py calls
load_dotenv() first so a local .env works too.
"""

import os
from dataclasses import dataclass, field
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ConfigError


# ============================================================
# DEFAULTS
# ============================================================

DEFAULT_RPC_URL = "http://127.0.0.1:8545"
DEFAULT_CALL_TIMEOUT = 15.0          # seconds, every ledger call
DEFAULT_RECEIPT_TIMEOUT = 120.0      # seconds, waiting for a mined tx
DEFAULT_GAS_LIMIT = 3_000_000
DEFAULT_RECONCILE_INTERVAL = 30.0    # seconds between tick STARTS
DEFAULT_MAX_TICK = 180.0             # watchdog horizon for one tick
DEFAULT_TIMEZONE = "Australia/Sydney"
DEFAULT_PORT = 3000

_TRUE = ("1", "true", "yes", "on")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    if value <= minimum:
        raise ConfigError(f"{name} must be > {minimum}, got {value}")
    return value


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def _env_list(name: str) -> list[str]:
    return [v.strip() for v in os.getenv(name, "").split(",") if v.strip()]


@dataclass(frozen=True)
class GatewayConfig:
    # Ledger
    rpc_url: str = DEFAULT_RPC_URL
    project_factory_address: str = ""
    user_factory_address: str = ""
    signer_keys: tuple = field(default_factory=tuple)
    call_timeout: float = DEFAULT_CALL_TIMEOUT
    receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT
    gas_limit: int = DEFAULT_GAS_LIMIT

    # Reconciliation loop
    reconcile_enabled: bool = True
    reconcile_interval: float = DEFAULT_RECONCILE_INTERVAL
    max_tick_seconds: float = DEFAULT_MAX_TICK

    # Request handler variants
    metadata_upload: bool = True
    balance_enrichment: bool = True
    ipfs_api_url: str = ""
    display_timezone: str = DEFAULT_TIMEZONE

    # HTTP listener
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    cors_origins: tuple = ("*",)

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        """Read every setting from the environment. Raises ConfigError on bad values."""
        cfg = cls(
            rpc_url=os.getenv("LEDGER_RPC_URL", DEFAULT_RPC_URL),
            project_factory_address=os.getenv("PROJECT_FACTORY_ADDRESS", ""),
            user_factory_address=os.getenv("USER_FACTORY_ADDRESS", ""),
            signer_keys=tuple(_env_list("LEDGER_SIGNER_KEYS")),
            call_timeout=_env_float("LEDGER_CALL_TIMEOUT", DEFAULT_CALL_TIMEOUT),
            receipt_timeout=_env_float("LEDGER_RECEIPT_TIMEOUT", DEFAULT_RECEIPT_TIMEOUT),
            gas_limit=_env_int("LEDGER_GAS_LIMIT", DEFAULT_GAS_LIMIT),
            reconcile_enabled=_env_bool("RECONCILE_ENABLED", True),
            reconcile_interval=_env_float("RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL),
            max_tick_seconds=_env_float("RECONCILE_MAX_TICK", DEFAULT_MAX_TICK),
            metadata_upload=_env_bool("METADATA_UPLOAD", True),
            balance_enrichment=_env_bool("BALANCE_ENRICHMENT", True),
            ipfs_api_url=os.getenv("IPFS_API_URL", "").rstrip("/"),
            display_timezone=os.getenv("DISPLAY_TIMEZONE", DEFAULT_TIMEZONE),
            host=os.getenv("HOST", "0.0.0.0"),
            port=_env_int("PORT", DEFAULT_PORT),
            cors_origins=tuple(_env_list("CORS_ORIGINS")) or ("*",),
        )
        cfg.validate()
        return cfg

    def validate(self) -> None:
        # Watchdog shorter than one ledger call would cut every tick short.
        if self.max_tick_seconds < self.call_timeout:
            raise ConfigError(
                f"RECONCILE_MAX_TICK ({self.max_tick_seconds}s) must be >= "
                f"LEDGER_CALL_TIMEOUT ({self.call_timeout}s)"
            )
        try:
            ZoneInfo(self.display_timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigError(f"DISPLAY_TIMEZONE is not a known timezone: {self.display_timezone!r}")

    def redacted(self) -> dict:
        """Config summary safe for logs and /health."""
        return {
            "rpc_url": self.rpc_url,
            "project_factory_address": self.project_factory_address,
            "user_factory_address": self.user_factory_address,
            "signer_keys": len(self.signer_keys),
            "reconcile_enabled": self.reconcile_enabled,
            "reconcile_interval": self.reconcile_interval,
            "max_tick_seconds": self.max_tick_seconds,
            "metadata_upload": self.metadata_upload,
            "balance_enrichment": self.balance_enrichment,
            "metadata_backend": "ipfs" if self.ipfs_api_url else "memory",
        }
