"""
Crowdfund Gateway - main entry point

Initializes the ledger client, metadata store and reconciler, wires them into
the HTTP app, and starts the server. One file to see how everything connects.

Usage:
    python main.py              # Start the gateway
    uvicorn main:app            # Or via uvicorn directly
"""

import logging
import os
import re
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """Redact 64-char hex strings (private keys) from all log output."""
    _PATTERN = re.compile(r'(?<![0-9a-fA-F])([0-9a-fA-F]{64})(?![0-9a-fA-F])')

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            record.msg = self._PATTERN.sub('[REDACTED]', record.msg)
        if record.args:
            formatted = record.getMessage()
            if self._PATTERN.search(formatted):
                record.msg = self._PATTERN.sub('[REDACTED]', formatted)
                record.args = None
        return True


_mask_filter = _SecretMaskingFilter()
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("crowdfund.main")

from api.server import create_app
from core.config import GatewayConfig
from core.ledger import LedgerClient
from core.metadata import create_metadata_store
from core.reconciler import Reconciler
from core.registry import ProjectRegistry


# ============================================================
# WIRING
# ============================================================

def create_gateway_app(cfg: GatewayConfig) -> FastAPI:
    """Build every component from config and return the fully wired app."""
    ledger = LedgerClient.from_config(cfg)
    metadata_store = create_metadata_store(cfg.ipfs_api_url, timeout=cfg.call_timeout)
    registry = ProjectRegistry(ledger)
    reconciler = Reconciler(
        registry,
        ledger,
        interval=cfg.reconcile_interval,
        max_tick_seconds=cfg.max_tick_seconds,
        call_timeout=cfg.call_timeout,
        close_timeout=cfg.call_timeout + cfg.receipt_timeout,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Config: {cfg.redacted()}")
        if cfg.reconcile_enabled:
            reconciler.start()
        else:
            logger.warning("Reconciler disabled (RECONCILE_ENABLED=false); expired projects will not auto-close")
        logger.info(f"Crowdfund gateway up on {cfg.host}:{cfg.port}")

        yield

        logger.info("Crowdfund gateway shutting down...")
        await reconciler.stop()
        await metadata_store.close()
        logger.info("Goodbye.")

    app = create_app(
        ledger=ledger,
        metadata_store=metadata_store,
        config=cfg,
        reconciler=reconciler,
        registry=registry,
    )
    app.router.lifespan_context = lifespan
    return app


# ============================================================
# ENTRY POINT
# ============================================================

config = GatewayConfig.from_env()
app = create_gateway_app(config)

if __name__ == "__main__":
    reload = os.getenv("DEV", "").lower() in ("1", "true", "yes")
    logger.info(f"Starting server on {config.host}:{config.port} (reload={reload})")

    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=reload,
        log_level=LOG_LEVEL.lower(),
    )
