"""
Convergence Tool - Opaque external runner driven by the orchestrator

Contract:
    bash <script> <mode> <unit>      (cwd = staging or live config root)

- exit 0 on success
- logs "(unit::recipe line N)" per recipe and a final "Run complete"

What the recipes do on the host is not interpreted here.
"""

import logging
from enum import Enum
from pathlib import Path
from typing import List, Optional

from .config import AgentConfig
from .errors import ConvergenceToolError
from .process import CommandResult, ProcessExecutor

logger = logging.getLogger(__name__)


class ConvergenceMode(Enum):
    """Entry points of the convergence script."""
    INSTALL = "install"
    UNINSTALL = "uninstall"
    SYNCHRONIZE = "synchronize"


class ConvergenceTool:
    """Runs the convergence script and checks its exit status."""

    def __init__(self, config: AgentConfig, executor: Optional[ProcessExecutor] = None):
        self.config = config
        self.executor = executor or ProcessExecutor()

    def command(self, mode: ConvergenceMode, unit: str) -> List[str]:
        argv = ["bash", self.config.convergence_script, mode.value, unit]
        if self.config.use_sudo:
            argv = ["sudo", "-n", "-E"] + argv
        return argv

    def environment(self, workdir: Path) -> dict:
        return {
            "CHEF_USER": self.config.execution_user,
            "CHEF_DIR": str(workdir),
        }

    def run(
        self,
        workdir: Path,
        mode: ConvergenceMode,
        unit: str,
        tracker=None,
        log_path: Optional[Path] = None
    ) -> CommandResult:
        """
        Run the tool in `workdir` and wait for it.

        Args:
            workdir: Directory the tool runs against (cwd)
            mode: Entry point
            unit: Unit the entry point is scoped to
            tracker: Callable fed every output line (ProgressTracker)
            log_path: Append the combined output here, if set

        Returns:
            CommandResult of a zero exit

        Raises:
            ConvergenceToolError: On non-zero exit, timeout or spawn failure
        """
        argv = self.command(mode, unit)
        logger.info(f"Running convergence {mode.value} for {unit} in {workdir}")

        log_file = None
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_file = open(log_path, 'a', encoding='utf-8')

        def on_line(line: str):
            if log_file is not None:
                log_file.write(line + "\n")
            if tracker is not None:
                tracker(line)

        try:
            result = self.executor.run(
                argv,
                cwd=workdir,
                env=self.environment(workdir),
                on_line=on_line,
                timeout=self.config.tool_timeout_seconds,
            )
        except OSError as e:
            raise ConvergenceToolError(f"cannot start {argv[0]}: {e}")
        finally:
            if log_file is not None:
                log_file.close()

        if result.timed_out:
            raise ConvergenceToolError(
                f"{mode.value} {unit} killed after {self.config.tool_timeout_seconds}s",
                timed_out=True,
                output_tail=result.output_tail(),
            )
        if result.exit_code != 0:
            raise ConvergenceToolError(
                f"{mode.value} {unit} exited with non-zero value: {result.exit_code}",
                exit_code=result.exit_code,
                output_tail=result.output_tail(),
            )

        logger.info(f"Convergence {mode.value} for {unit} finished ({result.line_count} lines)")
        return result


class NullConvergenceTool:
    """Never spawns a process; records what it would have run (dry run)."""

    def __init__(self):
        self.invocations = []

    def run(self, workdir, mode, unit, tracker=None, log_path=None) -> CommandResult:
        self.invocations.append((Path(workdir), mode, unit))
        logger.info(f"[DRY RUN] Would run convergence {mode.value} for {unit} in {workdir}")
        return CommandResult(command=[], exit_code=0)
