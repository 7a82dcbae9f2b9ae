"""Request / outcome shapes shared with the dispatch layer."""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ChangeOperation(str, Enum):
    """What a ChangeRequest asks the agent to do with a unit."""
    ADD = "ADD"
    REMOVE = "REMOVE"
    SYNCHRONIZE = "SYNCHRONIZE"


class ChangeRequest(BaseModel):
    """A single change to the live configuration root. Immutable once built."""
    model_config = ConfigDict(frozen=True)

    operation: ChangeOperation
    unit: str
    source_path: Optional[str] = None  # overlay directory, ADD only
    force_apply: bool = False  # re-apply even if the fingerprint marker exists


class ChangeOutcome(BaseModel):
    """Result of ChangeOrchestrator.apply(); error_text is None on success."""
    model_config = ConfigDict(frozen=True)

    result_text: str
    error_text: Optional[str] = None
    error_code: Optional[str] = None
    fingerprint: Optional[str] = None
    state: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error_text is None


class ProgressEvent(BaseModel):
    """One matched progress indicator."""
    model_config = ConfigDict(frozen=True)

    unit: str
    percent: int
    pattern: str
    line: str
