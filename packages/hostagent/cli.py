"""
Command line entry point.

Usage:
    hostagent add app3 --source /tmp/app3-overlay
    hostagent remove app1 --force
    hostagent sync app2
    hostagent runlist
    hostagent --config-root /home/chef/chef --no-sudo add app3 --source ./overlay

Exit codes: 0 applied / no-op, 1 reported error, 2 configuration root needs
an operator.
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from .config import AgentConfig
from .errors import RunListError
from .models import ChangeOperation, ChangeRequest
from .orchestrator import ChangeOrchestrator
from .runlist import load_run_list

OPERATIONS = {
    "add": ChangeOperation.ADD,
    "remove": ChangeOperation.REMOVE,
    "sync": ChangeOperation.SYNCHRONIZE,
}

FATAL_CODES = {"PROMOTION_FATAL", "CONFIG_ROOT_UNAVAILABLE"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hostagent", description="Apply configuration changes to this host")
    parser.add_argument("--config-root", type=Path, help="Live configuration root (default: ~<user>/chef)")
    parser.add_argument("--user", help="Execution user (default: /etc/chef-user)")
    parser.add_argument("--no-sudo", action="store_true", help="Do not elevate privileges")
    parser.add_argument("--timeout", type=float, help="Kill the convergence tool after N seconds")
    parser.add_argument("--dry-run", action="store_true", help="Stage and promote without running the tool")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (("add", "Install a unit"), ("remove", "Uninstall a unit"), ("sync", "Re-converge a unit")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("unit", help="Unit (cookbook) name")
        p.add_argument("--force", action="store_true", help="Re-apply even if already applied")
        if name == "add":
            p.add_argument("--source", required=True, help="Overlay directory with the unit's cookbooks")

    sub.add_parser("runlist", help="Print the live run list")
    return parser


def load_config(args) -> AgentConfig:
    env = dict(os.environ)
    if args.user:
        env["HOSTAGENT_USER"] = args.user
    if args.config_root:
        env["HOSTAGENT_CONFIG_ROOT"] = str(args.config_root)

    config = AgentConfig.from_env(env)
    overrides = {}
    if args.no_sudo:
        overrides["use_sudo"] = False
    if args.timeout:
        overrides["tool_timeout_seconds"] = args.timeout
    if args.dry_run:
        overrides["dry_run"] = True
    return config.with_overrides(**overrides) if overrides else config


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    level = "DEBUG" if args.verbose else os.getenv("HOSTAGENT_LOG_LEVEL", "INFO")
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        config = load_config(args)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    if args.command == "runlist":
        try:
            run_list = load_run_list(config.config_root, config.run_list_file)
        except RunListError as e:
            print(e, file=sys.stderr)
            return 1
        for entry in run_list:
            print(entry)
        return 0

    request = ChangeRequest(
        operation=OPERATIONS[args.command],
        unit=args.unit,
        source_path=getattr(args, "source", None),
        force_apply=args.force,
    )
    outcome = ChangeOrchestrator(config).apply(request)
    print(json.dumps(outcome.model_dump(), indent=2))

    if outcome.success:
        return 0
    return 2 if outcome.error_code in FATAL_CODES else 1


if __name__ == "__main__":
    sys.exit(main())
