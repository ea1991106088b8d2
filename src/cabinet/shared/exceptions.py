"""Hierarchical exception types for the cabinet orchestration core."""

from __future__ import annotations


class CabinetError(Exception):
    """Base exception for all cabinet errors."""


# ── Contract ────────────────────────────────────────────────────


class ConflictError(CabinetError):
    """A non-terminal session or download already exists for the game."""


class InvalidStateError(CabinetError):
    """Operation is not valid for the entity's current lifecycle state."""


class UnknownEntityError(CabinetError):
    """No session or download exists for the given identifier."""


class ConfigurationError(CabinetError):
    """Launch configuration is malformed or cannot be satisfied on this host."""


# ── Runner ──────────────────────────────────────────────────────


class LaunchError(CabinetError):
    """Container runtime unreachable or configuration rejected."""


class OperationTimeoutError(CabinetError):
    """No heartbeat or progress arrived within the configured bound."""


# ── Downloads ───────────────────────────────────────────────────


class TransferError(CabinetError):
    """Network or storage failure while transferring an installer."""


class NotFoundError(TransferError):
    """The source resource no longer exists; retrying will not help."""


class TransferCancelled(CabinetError):
    """An in-flight transfer observed its cancellation flag."""


# ── Catalog ─────────────────────────────────────────────────────


class ScraperError(CabinetError):
    """Metadata source request failed."""
