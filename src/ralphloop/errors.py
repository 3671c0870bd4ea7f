"""Exception types shared across the loop.

Only ConfigError and LedgerIOError are fatal to a run, and
CancellationRequested ends it normally. Everything else is recorded
against the iteration that raised it and the loop moves on.
"""

from __future__ import annotations

from typing import Optional


class RalphError(Exception):
    """Base class for ralphloop errors."""

    kind = "error"


class ConfigError(RalphError):
    """Malformed ledger, profile or settings. The loop never starts."""

    kind = "config"


class LedgerIOError(RalphError):
    """The ledger or progress log could not be read or written."""

    kind = "io"


class InvocationError(RalphError):
    """The agent process failed to start, crashed, or timed out."""

    kind = "invocation"

    def __init__(self, message: str, status: str = "failed", exit_status: Optional[int] = None):
        super().__init__(message)
        self.status = status
        self.exit_status = exit_status


class GateExecutionError(RalphError):
    """A quality gate could not be executed."""

    kind = "gate"


class IntegrationError(RalphError):
    """A project tracker call failed."""

    kind = "integration"


class CancellationRequested(RalphError):
    """Raised at a transition boundary once a stop has been requested."""

    kind = "cancelled"
