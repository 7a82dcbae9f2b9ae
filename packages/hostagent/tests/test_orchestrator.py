"""
Tests for the Change Orchestrator

Validates:
- ADD / REMOVE / SYNCHRONIZE end to end against a real (stand-in) tool
- Idempotency: a recorded fingerprint short-circuits unless force_apply
- Any failure before promotion leaves the live root byte-identical
- Promotion failures: first rename, second rename with rollback, fatal
- Fatal roots refuse every request until cleared, across restarts
- Re-adding a removed unit needs force_apply
- Requests are validated before anything is touched
- Transactions on one root are serialized
"""

import json
import os
import threading

import pytest

import hostagent.orchestrator as orchestrator_module

from hostagent import (
    ChangeOperation,
    ChangeOrchestrator,
    ChangeRequest,
    ConfigRootLock,
    ConvergenceToolError,
    NullConvergenceTool,
    RecordingStatusChannel,
    fingerprint
)


def add(unit, source, force=False):
    return ChangeRequest(operation=ChangeOperation.ADD, unit=unit, source_path=str(source), force_apply=force)


def remove(unit, force=False):
    return ChangeRequest(operation=ChangeOperation.REMOVE, unit=unit, force_apply=force)


def sync(unit, force=False):
    return ChangeRequest(operation=ChangeOperation.SYNCHRONIZE, unit=unit, force_apply=force)


def siblings(root, marker):
    return sorted(p.name for p in root.parent.iterdir() if marker in p.name)


def flaky_rename(failing_calls):
    """os.rename that raises on the given call numbers (1-based)."""
    calls = []

    def rename(src, dst):
        calls.append((src, dst))
        if len(calls) in failing_calls:
            raise OSError(f"rename #{len(calls)} refused")
        os.rename(src, dst)

    rename.calls = calls
    return rename


@pytest.fixture
def orchestrator(config):
    return ChangeOrchestrator(config)


# ==================== ADD Tests ====================

def test_add_applies_and_promotes(orchestrator, config_root, overlay, invocations, live_run_list):
    outcome = orchestrator.apply(add("app3", overlay))

    assert outcome.success, outcome.error_text
    assert outcome.result_text == "ADD app3: applied"
    assert outcome.state == "done"
    assert outcome.fingerprint == fingerprint("ADD", "app3")

    assert invocations() == ["install app3"]
    assert live_run_list(config_root) == [
        "app1::lib", "app1", "app2", "app3", "app1::validate", "app3::validate"
    ]
    assert (config_root / "cookbooks" / "app3" / "recipes" / "default.rb").is_file()
    assert (config_root / "applied" / outcome.fingerprint).is_file()

    # previous root kept, staging consumed
    backups = siblings(config_root, ".backup-")
    assert len(backups) == 1
    assert siblings(config_root, ".staging-") == []
    backup = config_root.parent / backups[0]
    assert live_run_list(backup) == ["app1::lib", "app1", "app2", "app1::validate"]
    assert not (backup / "applied").exists()


def test_add_is_idempotent(orchestrator, config_root, overlay, invocations, live_run_list):
    first = orchestrator.apply(add("app3", overlay))
    run_list = live_run_list(config_root)

    second = orchestrator.apply(add("app3", overlay))

    assert first.success and second.success
    assert second.result_text == "ADD app3: already applied"
    assert second.state == "short_circuit_success"
    assert invocations() == ["install app3"]
    assert live_run_list(config_root) == run_list
    assert len(siblings(config_root, ".backup-")) == 1


def test_force_apply_reruns(orchestrator, config_root, overlay, invocations, live_run_list):
    orchestrator.apply(add("app3", overlay))
    run_list = live_run_list(config_root)

    outcome = orchestrator.apply(add("app3", overlay, force=True))

    assert outcome.success
    assert outcome.state == "done"
    assert invocations() == ["install app3", "install app3"]
    # entries are not duplicated
    assert live_run_list(config_root) == run_list


def test_readd_after_remove_needs_force(orchestrator, config_root, overlay, invocations, live_run_list):
    """Markers are kept per (operation, unit), so a second ADD is a no-op."""
    orchestrator.apply(add("app3", overlay))
    orchestrator.apply(remove("app3"))

    skipped = orchestrator.apply(add("app3", overlay))

    assert skipped.success
    assert skipped.state == "short_circuit_success"
    assert skipped.result_text == "ADD app3: already applied"
    assert "app3" not in live_run_list(config_root)

    forced = orchestrator.apply(add("app3", overlay, force=True))

    assert forced.state == "done"
    assert invocations() == ["install app3", "uninstall app3", "install app3"]
    assert "app3" in live_run_list(config_root)


def test_add_reports_progress(config, overlay, invocations):
    channel = RecordingStatusChannel()
    orchestrator = ChangeOrchestrator(config, status_channel=channel)

    orchestrator.apply(add("app3", overlay))

    percents = channel.percents()
    assert percents[0] == 1
    assert percents[-1] == 100
    assert percents == sorted(percents)
    # (app3::default line 3) is the 3rd of 5 non-lib entries
    assert 48 in percents


def test_add_writes_tool_log(config, tmp_path, overlay, invocations):
    orchestrator = ChangeOrchestrator(config.with_overrides(log_dir=tmp_path / "logs"))

    outcome = orchestrator.apply(add("app3", overlay))

    logs = list((tmp_path / "logs").iterdir())
    assert len(logs) == 1
    assert logs[0].name.endswith(f"{outcome.fingerprint[:12]}.log")
    assert "Run complete" in logs[0].read_text()


def test_add_dry_run(config, config_root, overlay, invocations, live_run_list):
    orchestrator = ChangeOrchestrator(config.with_overrides(dry_run=True))

    outcome = orchestrator.apply(add("app3", overlay))

    assert outcome.success
    assert isinstance(orchestrator.tool, NullConvergenceTool)
    assert orchestrator.tool.invocations[0][2] == "app3"
    assert invocations() == []
    assert "app3" in live_run_list(config_root)


# ==================== REMOVE / SYNCHRONIZE Tests ====================

def test_remove_unit(orchestrator, config_root, invocations, live_run_list):
    outcome = orchestrator.apply(remove("app1"))

    assert outcome.success
    assert invocations() == ["uninstall app1"]
    assert live_run_list(config_root) == ["app2"]
    # cookbook files stay
    assert (config_root / "cookbooks" / "app1" / "recipes" / "default.rb").is_file()


def test_remove_absent_unit(orchestrator, config_root, invocations, live_run_list):
    outcome = orchestrator.apply(remove("app9"))

    assert outcome.success
    assert invocations() == ["uninstall app9"]
    assert live_run_list(config_root) == ["app1::lib", "app1", "app2", "app1::validate"]


def test_synchronize(orchestrator, config_root, invocations, live_run_list):
    outcome = orchestrator.apply(sync("app2"))

    assert outcome.success
    assert outcome.state == "done"
    assert invocations() == ["synchronize app2"]
    assert live_run_list(config_root) == ["app1::lib", "app1", "app2", "app1::validate"]
    assert len(siblings(config_root, ".backup-")) == 1


def test_synchronize_twice_needs_force(orchestrator, invocations):
    orchestrator.apply(sync("app2"))
    orchestrator.apply(sync("app2"))
    orchestrator.apply(sync("app2", force=True))

    assert invocations() == ["synchronize app2", "synchronize app2"]


def test_dict_request(orchestrator, invocations):
    outcome = orchestrator.apply({"operation": "SYNCHRONIZE", "unit": "app2"})

    assert outcome.success
    assert invocations() == ["synchronize app2"]


# ==================== Failure Tests ====================

def test_tool_failure_leaves_live_root_identical(
    orchestrator, config_root, overlay, invocations, monkeypatch, tree_snapshot
):
    before = tree_snapshot(config_root)
    monkeypatch.setenv("HOSTAGENT_TEST_EXIT", "2")

    outcome = orchestrator.apply(add("app3", overlay))

    assert not outcome.success
    assert outcome.error_code == "CONVERGENCE_FAILED"
    assert outcome.state == "failed"
    assert outcome.result_text == "ADD app3: not applied"
    assert tree_snapshot(config_root) == before
    assert siblings(config_root, ".staging-") == []
    assert siblings(config_root, ".backup-") == []

    # nothing recorded, so a later attempt runs again
    monkeypatch.delenv("HOSTAGENT_TEST_EXIT")
    assert orchestrator.apply(add("app3", overlay)).success
    assert invocations() == ["install app3", "install app3"]


def test_tool_exception_from_injected_tool(config, config_root, fake_tool, tree_snapshot):
    before = tree_snapshot(config_root)
    fake_tool.error = ConvergenceToolError("boom", exit_code=1, output_tail="last words")
    orchestrator = ChangeOrchestrator(config, tool=fake_tool)

    outcome = orchestrator.apply(sync("app2"))

    assert outcome.error_code == "CONVERGENCE_FAILED"
    assert "boom" in outcome.error_text
    assert tree_snapshot(config_root) == before
    assert siblings(config_root, ".staging-") == []


def test_unexpected_exception_becomes_outcome(config, config_root, fake_tool, tree_snapshot):
    before = tree_snapshot(config_root)
    fake_tool.error = RuntimeError("unexpected")
    orchestrator = ChangeOrchestrator(config, tool=fake_tool)

    outcome = orchestrator.apply(sync("app2"))

    assert not outcome.success
    assert outcome.state == "failed"
    assert "unexpected" in outcome.error_text
    assert tree_snapshot(config_root) == before


def test_broken_run_list_document(orchestrator, config_root, tree_snapshot):
    (config_root / "solo.json").write_text("{broken")
    before = tree_snapshot(config_root)

    outcome = orchestrator.apply(sync("app2"))

    assert outcome.error_code == "INVALID_RUN_LIST"
    assert tree_snapshot(config_root) == before
    assert siblings(config_root, ".staging-") == []


# ==================== Promotion Tests ====================

def test_first_rename_failure(orchestrator, config_root, overlay, invocations, tree_snapshot):
    before = tree_snapshot(config_root)
    orchestrator._rename = flaky_rename({1})

    outcome = orchestrator.apply(add("app3", overlay))

    assert outcome.error_code == "PROMOTION_FAILED"
    assert outcome.state == "failed"
    assert tree_snapshot(config_root) == before
    assert siblings(config_root, ".staging-") == []
    assert siblings(config_root, ".backup-") == []


def test_second_rename_failure_rolls_back(orchestrator, config_root, overlay, invocations, tree_snapshot):
    before = tree_snapshot(config_root)
    orchestrator._rename = flaky_rename({2})

    outcome = orchestrator.apply(add("app3", overlay))

    assert outcome.error_code == "PROMOTION_FAILED"
    assert outcome.state == "failed"
    assert len(orchestrator._rename.calls) == 3
    assert tree_snapshot(config_root) == before
    assert siblings(config_root, ".staging-") == []
    assert siblings(config_root, ".backup-") == []
    assert not (config_root / "applied").exists()


def test_fatal_promotion_refuses_until_cleared(config, config_root, overlay, invocations):
    orchestrator = ChangeOrchestrator(config)
    orchestrator._rename = flaky_rename({2, 3})

    try:
        outcome = orchestrator.apply(add("app3", overlay))

        assert outcome.error_code == "PROMOTION_FATAL"
        assert outcome.state == "fatal"
        assert not config_root.exists()
        backups = siblings(config_root, ".backup-")
        assert len(backups) == 1
        # staging is kept for the operator
        assert len(siblings(config_root, ".staging-")) == 1
        assert orchestrator.fatal_reason is not None

        # every later request is refused, from any orchestrator on this root
        refused = ChangeOrchestrator(config).apply(sync("app2"))
        assert refused.error_code == "CONFIG_ROOT_UNAVAILABLE"
        assert invocations() == ["install app3"]

        # operator restores the root
        os.rename(config_root.parent / backups[0], config_root)
        orchestrator.clear_fatal()

        orchestrator._rename = flaky_rename(set())
        assert orchestrator.fatal_reason is None
        assert orchestrator.apply(sync("app2")).success
    finally:
        orchestrator.clear_fatal()


def test_fatal_state_survives_restart(config, config_root, overlay, invocations):
    orchestrator = ChangeOrchestrator(config)
    orchestrator._rename = flaky_rename({2, 3})
    marker = config_root.parent / "chef.fatal"

    try:
        outcome = orchestrator.apply(add("app3", overlay))
        assert outcome.state == "fatal"

        assert orchestrator.fatal_marker == marker
        record = json.loads(marker.read_text())
        assert record["reason"] == outcome.error_text
        assert record["fingerprint"] == outcome.fingerprint
        assert record["pid"] == os.getpid()

        # a fresh agent process has an empty in-memory registry
        orchestrator_module._fatal_roots.clear()
        restarted = ChangeOrchestrator(config)
        assert restarted.fatal_reason == record["reason"]

        backups = siblings(config_root, ".backup-")
        os.rename(config_root.parent / backups[0], config_root)
        refused = restarted.apply(sync("app2"))
        assert refused.error_code == "CONFIG_ROOT_UNAVAILABLE"
        assert invocations() == ["install app3"]

        restarted.clear_fatal()

        assert not marker.exists()
        assert restarted.fatal_reason is None
        assert orchestrator.fatal_reason is None
        assert restarted.apply(sync("app2")).success
    finally:
        orchestrator.clear_fatal()


# ==================== Validation Tests ====================

@pytest.mark.parametrize("request_data", [
    {"operation": "UPGRADE", "unit": "app1"},
    {"operation": "ADD"},
    {"operation": "REMOVE", "unit": ""},
    {"operation": "REMOVE", "unit": "../etc"},
    "REMOVE app1",
])
def test_invalid_requests_rejected(orchestrator, config_root, request_data, tree_snapshot):
    before = tree_snapshot(config_root)

    outcome = orchestrator.apply(request_data)

    assert not outcome.success
    assert outcome.error_code == "INVALID_REQUEST"
    assert outcome.state == "failed"
    assert tree_snapshot(config_root) == before
    assert siblings(config_root, ".staging-") == []


def test_add_without_source(orchestrator, invocations):
    outcome = orchestrator.apply(ChangeRequest(operation=ChangeOperation.ADD, unit="app3"))

    assert outcome.error_code == "INVALID_REQUEST"
    assert outcome.fingerprint == fingerprint("ADD", "app3")
    assert invocations() == []


def test_add_source_not_a_directory(orchestrator, tmp_path, invocations):
    outcome = orchestrator.apply(add("app3", tmp_path / "missing"))

    assert outcome.error_code == "INVALID_REQUEST"
    assert invocations() == []


def test_add_without_default_recipe(orchestrator, config_root, tmp_path, make_recipes, invocations, tree_snapshot):
    source = tmp_path / "overlay-nodefault"
    make_recipes(source, "app3", ["lib", "validate"])
    before = tree_snapshot(config_root)

    outcome = orchestrator.apply(add("app3", source))

    assert outcome.error_code == "INVALID_REQUEST"
    assert "default recipe" in outcome.error_text
    assert invocations() == []
    assert tree_snapshot(config_root) == before
    assert siblings(config_root, ".staging-") == []


def test_add_existing_unit_with_empty_overlay(orchestrator, config_root, tmp_path, invocations):
    """The default recipe may come from the live root instead of the overlay."""
    source = tmp_path / "empty"
    source.mkdir()

    outcome = orchestrator.apply(add("app2", source))

    assert outcome.success
    assert invocations() == ["install app2"]


# ==================== Concurrency Tests ====================

def test_concurrent_requests_serialized(config, config_root, tmp_path, make_recipes, fake_tool, live_run_list):
    fake_tool.delay = 0.2
    orchestrator = ChangeOrchestrator(config, tool=fake_tool)
    sources = {}
    for unit in ("app3", "app4"):
        sources[unit] = tmp_path / f"overlay-{unit}"
        make_recipes(sources[unit], unit, ["default"])

    outcomes = {}

    def worker(unit):
        outcomes[unit] = orchestrator.apply(add(unit, sources[unit]))

    threads = [threading.Thread(target=worker, args=(unit,)) for unit in sources]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(o.success for o in outcomes.values())
    assert fake_tool.max_running == 1
    # the second transaction staged from the first one's promoted root
    run_list = live_run_list(config_root)
    assert "app3" in run_list and "app4" in run_list


def test_lock_timeout_reported(config, config_root, fake_tool, tree_snapshot):
    orchestrator = ChangeOrchestrator(config.with_overrides(lock_timeout_seconds=0.2), tool=fake_tool)
    before = tree_snapshot(config_root)

    with ConfigRootLock(config_root).hold("operator"):
        outcome = orchestrator.apply(sync("app2"))

    assert outcome.error_code == "LOCK_TIMEOUT"
    assert fake_tool.calls == []
    assert tree_snapshot(config_root) == before


# ==================== Dispatch Interface Tests ====================

def test_accepts_only_change_requests(orchestrator):
    assert orchestrator.accepts(sync("app2"))
    assert not orchestrator.accepts({"zone": "example.com"})


def test_applied_markers_listed(orchestrator, overlay, invocations):
    orchestrator.apply(add("app3", overlay))
    orchestrator.apply(remove("app1"))

    records = orchestrator.markers.list_applied()

    assert sorted((r.operation.value, r.unit) for r in records) == [("ADD", "app3"), ("REMOVE", "app1")]
