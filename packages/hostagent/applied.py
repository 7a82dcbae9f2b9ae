"""
Applied Markers - Prevents re-applying delivered requests

fingerprint = sha256(operation + "_" + unit)

One marker file per fingerprint lives in the configuration root:

    {config_root}/applied/{fingerprint}    content: the request as JSON

Presence of the marker means "already applied". Markers are written into the
NEW live root after promotion, so a failed transaction never leaves one.
"""

from pathlib import Path
import hashlib
import logging
from typing import List, Union

from pydantic import ValidationError

from .models import ChangeOperation, ChangeRequest

logger = logging.getLogger(__name__)


def fingerprint(operation: Union[ChangeOperation, str], unit: str) -> str:
    """
    Compute deterministic request fingerprint.

    Args:
        operation: ChangeOperation (or its name)
        unit: Unit name

    Returns:
        Fingerprint (hex string)
    """
    op = operation.value if isinstance(operation, ChangeOperation) else str(operation)
    return hashlib.sha256(f"{op}_{unit}".encode('utf-8')).hexdigest()


class AppliedMarkerStore:
    """Reads and writes fingerprint markers under one configuration root."""

    def __init__(self, config_root: Path, applied_dir: str = "applied"):
        self.config_root = Path(config_root)
        self.applied_dir = applied_dir

    @property
    def marker_dir(self) -> Path:
        return self.config_root / self.applied_dir

    def marker_path(self, fp: str) -> Path:
        return self.marker_dir / fp

    def is_applied(self, fp: str) -> bool:
        return self.marker_path(fp).is_file()

    def record(self, fp: str, request: ChangeRequest) -> Path:
        """
        Write the marker for `fp` with the serialized request.

        Raises:
            OSError: If the marker cannot be written
        """
        self.marker_dir.mkdir(parents=True, exist_ok=True)
        path = self.marker_path(fp)
        tmp = path.with_name(f".{fp}.tmp")
        tmp.write_text(request.model_dump_json(indent=2), encoding='utf-8')
        tmp.replace(path)
        logger.info(f"Recorded applied marker {fp} ({request.operation.value} {request.unit})")
        return path

    def load(self, fp: str) -> ChangeRequest:
        return ChangeRequest.model_validate_json(self.marker_path(fp).read_text(encoding='utf-8'))

    def list_applied(self) -> List[ChangeRequest]:
        """Audit records found under applied/, unreadable markers skipped."""
        if not self.marker_dir.is_dir():
            return []

        records = []
        for marker in sorted(self.marker_dir.iterdir()):
            if not marker.is_file() or marker.name.startswith("."):
                continue
            try:
                records.append(ChangeRequest.model_validate_json(marker.read_text(encoding='utf-8')))
            except (OSError, ValidationError) as e:
                logger.warning(f"Failed to load applied marker {marker}: {e}")
        return records
