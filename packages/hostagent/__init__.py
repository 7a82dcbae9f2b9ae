"""
Host Agent - Staged configuration changes

Philosophy: the live configuration root is never edited in place.

Every change request is one transaction:
- Idempotent: a fingerprint marker makes re-delivered requests no-ops
- Staged: the convergence tool runs against a full copy of the root
- Atomic: the copy is promoted by rename, or discarded on failure
- Serialized: one transaction per configuration root at a time

Architecture:
    Transport → HandlerRegistry → ChangeOrchestrator
        ↓
    AppliedMarkerStore → already applied? (no-op)
        ↓
    StagingSynchronizer → staging copy
        ↓
    RunList + ConvergenceTool (+ ProgressTracker) → apply in staging
        ↓
    Promote (rename) or discard
"""

from .config import AgentConfig

from .models import (
    ChangeOperation,
    ChangeRequest,
    ChangeOutcome,
    ProgressEvent
)

from .errors import (
    AgentError,
    InvalidRequestError,
    RunListError,
    StagingError,
    ConvergenceToolError,
    PromotionError,
    FatalPromotionError,
    ConfigRootUnavailableError,
    LockAcquisitionError
)

from .runlist import (
    RunList,
    RunListEntry,
    recipe_exists,
    load_run_list,
    save_run_list
)

from .applied import AppliedMarkerStore, fingerprint

from .process import ProcessExecutor, CommandResult

from .progress import (
    ProgressIndicator,
    ProgressTracker,
    StatusChannel,
    LoggingStatusChannel,
    RecordingStatusChannel
)

from .staging import StagingSynchronizer

from .convergence import ConvergenceMode, ConvergenceTool, NullConvergenceTool

from .lock import ConfigRootLock

from .transaction import TransactionState, TransactionContext

from .orchestrator import ChangeOrchestrator

from .dispatch import RequestHandler, HandlerRegistry

__all__ = [
    # Configuration
    "AgentConfig",

    # Request / outcome
    "ChangeOperation",
    "ChangeRequest",
    "ChangeOutcome",
    "ProgressEvent",

    # Errors
    "AgentError",
    "InvalidRequestError",
    "RunListError",
    "StagingError",
    "ConvergenceToolError",
    "PromotionError",
    "FatalPromotionError",
    "ConfigRootUnavailableError",
    "LockAcquisitionError",

    # Run list engine
    "RunList",
    "RunListEntry",
    "recipe_exists",
    "load_run_list",
    "save_run_list",

    # Idempotency
    "AppliedMarkerStore",
    "fingerprint",

    # Components
    "ProcessExecutor",
    "CommandResult",
    "ProgressIndicator",
    "ProgressTracker",
    "StatusChannel",
    "LoggingStatusChannel",
    "RecordingStatusChannel",
    "StagingSynchronizer",
    "ConvergenceMode",
    "ConvergenceTool",
    "NullConvergenceTool",
    "ConfigRootLock",

    # Core
    "TransactionState",
    "TransactionContext",
    "ChangeOrchestrator",

    # Dispatch
    "RequestHandler",
    "HandlerRegistry"
]

__version__ = "1.0.0"
