"""
Pytest fixtures for hostagent tests.

Builds a throwaway configuration root under tmp_path:

    chef/
        solo.json                 run_list: app1::lib, app1, app2, app1::validate
        install.sh                stand-in convergence tool (bash)
        cookbooks/app1/recipes/   lib.rb default.rb validate.rb
        cookbooks/app2/recipes/   default.rb

The stand-in tool appends "<mode> <unit>" to $HOSTAGENT_TEST_INVOCATIONS,
prints Chef-like output and exits with $HOSTAGENT_TEST_EXIT (default 0).
"""

import getpass
import json
import threading
import time
from pathlib import Path

import pytest

from hostagent import AgentConfig, CommandResult


INSTALL_SCRIPT = """#!/bin/bash
mode="$1"
unit="$2"
if [ -n "$HOSTAGENT_TEST_INVOCATIONS" ]; then
    echo "$mode $unit" >> "$HOSTAGENT_TEST_INVOCATIONS"
fi
echo "Starting Chef Client, version 12.0.3"
echo "Recipe: ${unit}::default"
echo "  * execute[setup] action run (${unit}::default line 3)"
echo "Run complete in 1.2 seconds"
exit "${HOSTAGENT_TEST_EXIT:-0}"
"""

INITIAL_RUN_LIST = ["app1::lib", "app1", "app2", "app1::validate"]


def write_recipes(base: Path, unit: str, categories) -> Path:
    """Create cookbooks/<unit>/recipes/<category>.rb under base."""
    recipes = base / "cookbooks" / unit / "recipes"
    recipes.mkdir(parents=True, exist_ok=True)
    for category in categories:
        (recipes / f"{category}.rb").write_text(f"# {unit}::{category}\n")
    return recipes


def snapshot(root: Path) -> dict:
    """Relative path -> bytes for every file in a tree."""
    return {
        str(p.relative_to(root)): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


def read_run_list(root: Path) -> list:
    return json.loads((root / "solo.json").read_text())["run_list"]


class FakeTool:
    """Convergence tool double: records calls, optionally fails."""

    def __init__(self):
        self.calls = []
        self.lines = ["Starting Chef Client", "Run complete"]
        self.error = None
        self.delay = 0.0
        self.running = 0
        self.max_running = 0
        self._lock = threading.Lock()

    def run(self, workdir, mode, unit, tracker=None, log_path=None):
        with self._lock:
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        try:
            self.calls.append((Path(workdir), mode, unit))
            if self.delay:
                time.sleep(self.delay)
            for line in self.lines:
                if tracker is not None:
                    tracker(line)
            if self.error is not None:
                raise self.error
            return CommandResult(command=["fake", mode.value, unit], exit_code=0)
        finally:
            with self._lock:
                self.running -= 1


@pytest.fixture
def config_root(tmp_path):
    """Live configuration root with two units."""
    root = tmp_path / "chef"
    root.mkdir()
    write_recipes(root, "app1", ["lib", "default", "validate"])
    write_recipes(root, "app2", ["default"])
    (root / "solo.json").write_text(json.dumps({"run_list": INITIAL_RUN_LIST}, indent=2) + "\n")
    (root / "install.sh").write_text(INSTALL_SCRIPT)
    return root


@pytest.fixture
def overlay(tmp_path):
    """Overlay directory carrying a new unit app3 (default + validate)."""
    source = tmp_path / "overlay"
    write_recipes(source, "app3", ["default", "validate"])
    return source


@pytest.fixture
def invocations(tmp_path, monkeypatch):
    """Path the stand-in tool logs its invocations to."""
    log = tmp_path / "invocations.log"
    monkeypatch.setenv("HOSTAGENT_TEST_INVOCATIONS", str(log))
    monkeypatch.delenv("HOSTAGENT_TEST_EXIT", raising=False)

    def read():
        if not log.exists():
            return []
        return log.read_text().splitlines()

    return read


@pytest.fixture
def config(config_root):
    """AgentConfig for the temporary root, no privilege elevation."""
    return AgentConfig(
        config_root=config_root,
        execution_user=getpass.getuser(),
        use_sudo=False,
        lock_poll_seconds=0.01,
    )


@pytest.fixture
def fake_tool():
    return FakeTool()


@pytest.fixture
def make_recipes():
    return write_recipes


@pytest.fixture
def tree_snapshot():
    return snapshot


@pytest.fixture
def live_run_list():
    return read_run_list
