"""
Staging Synchronizer - Copies configuration trees

sync(source, dest) copies the CONTENTS of source into dest. With privilege
elevation enabled the copy runs as `sudo rsync -a` and dest is then
`sudo chown -R`'d to the execution user; without it the copy is done
in-process and ownership is left alone.

Both steps are hard errors: a tree that could not be copied, or that has the
wrong owner, must not become the configuration root.
"""

import logging
import shutil
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

from .config import AgentConfig
from .errors import StagingError
from .process import ProcessExecutor

logger = logging.getLogger(__name__)


def timestamp() -> str:
    """Sortable, collision-resistant stamp for sibling directory names."""
    return datetime.utcnow().strftime("%Y%m%d%H%M%S%f")


class StagingSynchronizer:
    """Builds and discards staging copies of the configuration root."""

    def __init__(self, config: AgentConfig, executor: Optional[ProcessExecutor] = None):
        self.config = config
        self.executor = executor or ProcessExecutor()

    def staging_path(self, fingerprint: str) -> Path:
        """Unique sibling of the config root (same filesystem, so renames are atomic)."""
        root = self.config.config_root
        name = f".{root.name}.staging-{timestamp()}-{fingerprint[:12]}-{uuid.uuid4().hex[:6]}"
        return root.parent / name

    def create_staging(self, fingerprint: str) -> Path:
        """
        Create a full copy of the live config root.

        Returns:
            Path to the new staging directory

        Raises:
            StagingError: If the copy or chown fails (partial copy is removed)
        """
        staging = self.staging_path(fingerprint)
        try:
            staging.mkdir(parents=True)
        except OSError as e:
            raise StagingError(f"cannot create staging directory {staging}: {e}")

        try:
            self.sync(self.config.config_root, staging)
        except StagingError:
            self.discard(staging)
            raise

        logger.info(f"Staged {self.config.config_root} -> {staging}")
        return staging

    def sync(self, source: Path, dest: Path):
        """
        Copy the contents of `source` into `dest`, then fix ownership.

        Raises:
            StagingError: If source is missing, or the copy or chown fails
        """
        source = Path(source)
        dest = Path(dest)
        if not source.is_dir():
            raise StagingError(f"sync source is not a directory: {source}")

        if self.config.use_sudo:
            self._run_privileged(["rsync", "-a", f"{source}/", f"{dest}/"], f"copy {source} -> {dest}")
            self._run_privileged(
                ["chown", "-R", self.config.execution_user, str(dest)],
                f"chown {dest} to {self.config.execution_user}"
            )
        else:
            try:
                shutil.copytree(source, dest, symlinks=True, dirs_exist_ok=True)
            except (OSError, shutil.Error) as e:
                raise StagingError(f"copy {source} -> {dest} failed: {e}")

    def discard(self, path: Path):
        """
        Remove a staging tree.

        Raises:
            StagingError: If the tree could not be removed
        """
        path = Path(path)
        if not path.exists():
            return
        if self.config.use_sudo:
            self._run_privileged(["rm", "-rf", str(path)], f"discard {path}")
        else:
            try:
                shutil.rmtree(path)
            except OSError as e:
                raise StagingError(f"discard {path} failed: {e}")
        logger.info(f"Discarded staging {path}")

    def _run_privileged(self, argv, what: str):
        try:
            result = self.executor.run(["sudo", "-n"] + argv)
        except OSError as e:
            raise StagingError(f"{what}: cannot run sudo: {e}")
        if not result.success:
            raise StagingError(f"{what}: exit {result.exit_code}: {result.output_tail()}")
