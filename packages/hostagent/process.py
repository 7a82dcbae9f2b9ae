"""
Process Executor - Runs a subprocess and streams its combined output

The calling thread blocks until the process exits, reading stdout+stderr
line by line and handing each line to `on_line` as it arrives (progress is a
side effect of waiting, not computed afterwards).

Timeout:
- None (default): wait indefinitely
- N seconds: a timer kills the process on expiry; the result is marked
  timed_out and never reported as success
"""

import logging
import os
import signal
import subprocess
import threading
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

# Lines kept for error reporting
OUTPUT_TAIL_LINES = 50


@dataclass
class CommandResult:
    """Result of a finished (or killed) subprocess."""
    command: List[str]
    exit_code: Optional[int]
    timed_out: bool = False
    line_count: int = 0
    tail: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.timed_out and self.exit_code == 0

    def output_tail(self) -> str:
        return "\n".join(self.tail)


class ProcessExecutor:
    """Runs commands with a working directory and environment."""

    def __init__(self, tail_lines: int = OUTPUT_TAIL_LINES):
        self.tail_lines = tail_lines

    def run(
        self,
        command: Sequence[str],
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        on_line: Optional[Callable[[str], None]] = None,
        timeout: Optional[float] = None
    ) -> CommandResult:
        """
        Run `command` to completion.

        Args:
            command: argv list
            cwd: Working directory
            env: Extra environment variables (merged over os.environ)
            on_line: Called with each output line (without trailing newline)
            timeout: Seconds before the process is killed, None = unbounded

        Returns:
            CommandResult

        Raises:
            OSError: If the process cannot be started
        """
        argv = [str(c) for c in command]
        full_env = dict(os.environ)
        if env:
            full_env.update(env)

        logger.debug(f"Running {argv} in {cwd}")
        proc = subprocess.Popen(
            argv,
            cwd=str(cwd) if cwd is not None else None,
            env=full_env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            start_new_session=True,  # own process group, so a kill reaches children
            text=True,
            errors="replace",
            bufsize=1,
        )

        timed_out = threading.Event()
        timer = None
        if timeout is not None:
            def kill():
                timed_out.set()
                logger.warning(f"Killing {argv[0]} (pid {proc.pid}) after {timeout}s")
                _kill_group(proc)

            timer = threading.Timer(timeout, kill)
            timer.daemon = True
            timer.start()

        tail: deque = deque(maxlen=self.tail_lines)
        count = 0
        try:
            for raw in proc.stdout:
                line = raw.rstrip("\r\n")
                count += 1
                tail.append(line)
                if on_line is not None:
                    on_line(line)
            proc.wait()
        except BaseException:
            _kill_group(proc)
            proc.wait()
            raise
        finally:
            if timer is not None:
                timer.cancel()
            proc.stdout.close()

        return CommandResult(
            command=argv,
            exit_code=None if timed_out.is_set() else proc.returncode,
            timed_out=timed_out.is_set(),
            line_count=count,
            tail=list(tail),
        )


def _kill_group(proc: subprocess.Popen):
    """Kill the process and everything it spawned."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()
