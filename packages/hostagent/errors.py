"""Error taxonomy for the change agent.

Every class carries a stable ``code`` so that outcomes reported back to the
dispatch layer can be matched without parsing messages.

    INVALID_REQUEST / INVALID_RUN_LIST   rejected before any mutation
    STAGING_FAILED / CONVERGENCE_FAILED  staging discarded, live root untouched
    PROMOTION_FAILED                     rename failed, live root restored
    PROMOTION_FATAL                      live root missing, operator required
"""
from __future__ import annotations

from typing import Optional


class AgentError(Exception):
    """Base class, carries code + message for ChangeOutcome.error_text."""
    code: str = "AGENT_ERROR"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_reason(self) -> dict:
        return {"code": self.code, "message": self.message}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class InvalidRequestError(AgentError):
    """Unknown operation, missing unit, missing overlay path."""
    code = "INVALID_REQUEST"


class RunListError(AgentError):
    """Malformed run list entry, or a unit that cannot be activated."""
    code = "INVALID_RUN_LIST"


class StagingError(AgentError):
    """Copy, chown or discard of a staging tree failed."""
    code = "STAGING_FAILED"


class ConvergenceToolError(AgentError):
    """The convergence tool exited non-zero or was killed on timeout."""
    code = "CONVERGENCE_FAILED"

    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        timed_out: bool = False,
        output_tail: str = "",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.timed_out = timed_out
        self.output_tail = output_tail


class PromotionError(AgentError):
    """A promotion rename failed; the live root is still in place."""
    code = "PROMOTION_FAILED"

    def __init__(self, message: str, rolled_back: bool = False) -> None:
        super().__init__(message)
        self.rolled_back = rolled_back


class FatalPromotionError(AgentError):
    """Second rename and rollback both failed: the live root is missing."""
    code = "PROMOTION_FATAL"


class ConfigRootUnavailableError(AgentError):
    """Raised for every request after a fatal promotion, until cleared."""
    code = "CONFIG_ROOT_UNAVAILABLE"


class LockAcquisitionError(AgentError):
    """Raised when the configuration root lock cannot be acquired in time."""
    code = "LOCK_TIMEOUT"
