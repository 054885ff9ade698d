"""
Failure taxonomy of the signal lifecycle.

Everything below ``AutoExecutionEngine.run_once`` is caught at its boundary and
turned into a run-summary entry, except ``RepositoryUnavailable`` which aborts
the whole run so the scheduler retries on its next tick.
"""

from typing import Optional


class EngineError(Exception):
    reason = "engine_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.reason)
        self.message = message or self.reason


class ClaimConflict(EngineError):
    reason = "already_claimed"


class IneligibleUser(EngineError):
    reason = "ineligible"


class NoOpenCycle(EngineError):
    """SELL for a token without an open cycle. Recorded, never fatal."""

    reason = "no_open_cycle"


class OpenCycleExists(EngineError):
    reason = "open_cycle_exists"


class SizingError(EngineError):
    reason = "invalid_quantity"


class CycleStateError(EngineError):
    reason = "invalid_cycle_state"


class PersistenceError(EngineError):
    reason = "persistence_error"


class RepositoryUnavailable(EngineError):
    reason = "repository_unavailable"


class GatewayError(EngineError):
    """Exchange-side failure: rejection, timeout, auth or invalid symbol."""

    reason = "gateway_error"

    def __init__(self, code: Optional[str], message: str):
        super().__init__(message)
        self.code = code or "UNKNOWN"

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"
