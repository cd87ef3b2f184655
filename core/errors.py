"""
Gateway Errors - one taxonomy for the loop and the HTTP surface

The ledger is the source of truth. These types only classify HOW a call
failed so callers can decide: retry next tick, surface 403, or 500.

    GatewayError
    ├── LedgerUnavailable   transport / RPC / timeout (transient)
    ├── StaleRead           node has no data yet for a listed address
    ├── LedgerRejected      contract reverted (reason kept verbatim)
    │   ├── Unauthorized    actor not allowed (owner / registration)
    │   └── AlreadyClosed   project no longer open (benign race)
    ├── NotFound            metadata locator cannot be resolved
    ├── MetadataUnavailable metadata store unreachable
    ├── ValidationError     malformed request body
    └── ConfigError         bad environment value at startup
"""


class GatewayError(Exception):
    """Base for every error this gateway raises on purpose."""
    pass


class LedgerUnavailable(GatewayError):
    pass


class StaleRead(GatewayError):
    pass


class LedgerRejected(GatewayError):
    """The contract reverted. `reason` is the revert string, untouched."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class Unauthorized(LedgerRejected):
    pass


class AlreadyClosed(LedgerRejected):
    pass


class NotFound(GatewayError):
    pass


class MetadataUnavailable(GatewayError):
    pass


class ValidationError(GatewayError):
    pass


class ConfigError(GatewayError):
    pass


# Revert substrings → error type. Checked in order; first hit wins.
_UNAUTHORIZED_MARKERS = (
    "only the project owner",
    "not registered",
    "already registered",
    "not the owner",
)
_CLOSED_MARKERS = (
    "not open",
    "already closed",
    "has been closed",
    "is closed",
)


def classify_revert(reason: str) -> LedgerRejected:
    """Map a contract revert reason to the most specific rejection type."""
    text = (reason or "").lower()
    if any(m in text for m in _UNAUTHORIZED_MARKERS):
        return Unauthorized(reason)
    if any(m in text for m in _CLOSED_MARKERS):
        return AlreadyClosed(reason)
    return LedgerRejected(reason)
