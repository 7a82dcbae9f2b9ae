"""
Transaction State Machine - Lifecycle of one apply() call

State Flow:
    START → FINGERPRINT_CHECK → SHORT_CIRCUIT_SUCCESS
                              → STAGING → APPLYING → PROMOTING → DONE
                                                               → ROLLED_BACK → DISCARDING → FAILED
                                                               → FATAL
                                        (any failure) → DISCARDING → FAILED

Transitions outside the table are programming errors.
"""

from enum import Enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from datetime import datetime
from pathlib import Path


class TransactionState(Enum):
    """States of a single transaction."""
    START = "start"
    FINGERPRINT_CHECK = "fingerprint_check"
    SHORT_CIRCUIT_SUCCESS = "short_circuit_success"  # already applied, no-op
    STAGING = "staging"
    APPLYING = "applying"
    PROMOTING = "promoting"
    DONE = "done"
    DISCARDING = "discarding"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"  # second rename failed, original root restored
    FATAL = "fatal"              # original root could not be restored


VALID_TRANSITIONS = {
    TransactionState.START: {
        TransactionState.FINGERPRINT_CHECK,
        TransactionState.FAILED  # validation error, nothing staged
    },
    TransactionState.FINGERPRINT_CHECK: {
        TransactionState.SHORT_CIRCUIT_SUCCESS,
        TransactionState.STAGING,
        TransactionState.FAILED  # overlay/recipe checks
    },
    TransactionState.STAGING: {
        TransactionState.APPLYING,
        TransactionState.DISCARDING
    },
    TransactionState.APPLYING: {
        TransactionState.PROMOTING,
        TransactionState.DISCARDING
    },
    TransactionState.PROMOTING: {
        TransactionState.DONE,
        TransactionState.DISCARDING,  # first rename failed, nothing moved
        TransactionState.ROLLED_BACK,
        TransactionState.FATAL
    },
    TransactionState.ROLLED_BACK: {
        TransactionState.DISCARDING
    },
    TransactionState.DISCARDING: {
        TransactionState.FAILED
    },
    TransactionState.SHORT_CIRCUIT_SUCCESS: set(),
    TransactionState.DONE: set(),
    TransactionState.FAILED: set(),
    TransactionState.FATAL: set()
}

TERMINAL_STATES = {state for state, targets in VALID_TRANSITIONS.items() if not targets}


class InvalidTransitionError(Exception):
    """Raised on a transition not in VALID_TRANSITIONS."""
    pass


@dataclass
class TransactionContext:
    """Context carried through one transaction."""
    fingerprint: str
    operation: str
    unit: str

    state: TransactionState = TransactionState.START
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    # Paths
    staging_dir: Optional[Path] = None
    backup_dir: Optional[Path] = None

    error_message: Optional[str] = None

    # History
    state_history: List[Dict] = field(default_factory=list)

    def can_transition(self, to_state: TransactionState) -> bool:
        return to_state in VALID_TRANSITIONS.get(self.state, set())

    def update_state(self, new_state: TransactionState, message: str = ""):
        """Move to `new_state` and record it in history."""
        if not self.can_transition(new_state):
            raise InvalidTransitionError(
                f"Invalid transition: {self.state.value} → {new_state.value}"
            )
        self.state_history.append({
            "from_state": self.state.value,
            "to_state": new_state.value,
            "message": message,
            "timestamp": datetime.utcnow().isoformat()
        })
        self.state = new_state
        if new_state in TERMINAL_STATES:
            self.completed_at = datetime.utcnow()

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES
