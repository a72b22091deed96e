#!/usr/bin/env python3
"""InfraGuard command line.

Runs the pipeline stages outside a Claude Code session, e.g. in CI or a
pre-commit hook:

    infraguard.py detect                         classify the working tree
    infraguard.py evaluate PATH [--stdin]        guard one proposed write
    infraguard.py audit PATH [PATH ...]          audit files as they are now

Exit codes:
    0  nothing above Info
    1  Warn-level result (or an incomplete run)
    2  Block-level result; a pre-action caller must not proceed.
       Also returned when the rules file given with --rules cannot be loaded.
"""

import argparse
import json
import os
import sys
from pathlib import Path

# Add hooks directory to path
sys.path.insert(0, str(Path(__file__).parent))

import yaml

from _infra_utils import (
    Deadline,
    load_config_file,
    load_infraguard_config,
    reset_config_cache,
)
from _post_auditor import run_audit
from _pre_guard import evaluate
from _rule_catalog import RuleCatalog
from _stack_detector import detect

EXIT_CONFIG_ERROR = 2


def _load_config(args: argparse.Namespace) -> dict:
    if args.rules:
        return load_config_file(args.rules)
    os.environ.setdefault("CLAUDE_PROJECT_DIR", args.root)
    reset_config_cache()
    return load_infraguard_config()


def _emit(args: argparse.Namespace, payload: dict, text: str) -> None:
    if args.json:
        print(json.dumps(payload, indent=2))
    elif text:
        print(text)


def cmd_detect(args: argparse.Namespace, config: dict) -> int:
    context = detect(args.root, config=config)
    _emit(args, context.to_dict(), context.summary())
    return 1 if context.incomplete else 0


def cmd_evaluate(args: argparse.Namespace, config: dict) -> int:
    content = None
    if args.stdin:
        content = sys.stdin.read()
    elif args.content_file:
        content = Path(args.content_file).read_text(encoding="utf-8", errors="replace")

    catalog = RuleCatalog.from_config(config)
    context = detect(args.root, config=config)
    deadline = Deadline(args.timeout) if args.timeout else None
    decision = evaluate(context, args.path, content, catalog=catalog, deadline=deadline)
    text = decision.outcome.value
    if decision.message:
        text += f": {decision.message}"
    _emit(args, decision.to_dict(), text)
    return decision.exit_code


def cmd_audit(args: argparse.Namespace, config: dict) -> int:
    catalog = RuleCatalog.from_config(config)
    context = detect(args.root, config=config)
    report = run_audit(context, args.paths, catalog=catalog, timeout=args.timeout)
    lines = [finding.format_line() for finding in report.findings]
    for skipped in report.skipped:
        lines.append(f"[SKIPPED] {skipped}")
    if report.incomplete:
        lines.append("[INCOMPLETE] time budget exceeded; results are partial")
    _emit(args, report.to_dict(), "\n".join(lines))
    return report.exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="infraguard",
        description="Infrastructure-aware guard and auditor for AI-assisted edits.",
    )
    parser.add_argument("--root", default=".", help="Working tree root (default: current directory).")
    parser.add_argument("--rules", help="Rules YAML file (overrides the config resolution chain).")
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON.")
    parser.add_argument("--timeout", type=float, help="Time budget in seconds for evaluate/audit.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("detect", help="Classify the infrastructure stack of the tree.")

    evaluate_parser = subparsers.add_parser("evaluate", help="Guard a proposed write to PATH.")
    evaluate_parser.add_argument("path")
    source = evaluate_parser.add_mutually_exclusive_group()
    source.add_argument("--content-file", help="File holding the proposed content.")
    source.add_argument("--stdin", action="store_true", help="Read the proposed content from stdin.")

    audit_parser = subparsers.add_parser("audit", help="Audit changed files.")
    audit_parser.add_argument("paths", nargs="+")
    return parser


_COMMANDS = {"detect": cmd_detect, "evaluate": cmd_evaluate, "audit": cmd_audit}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    args.root = os.path.abspath(args.root)
    try:
        config = _load_config(args)
    except (OSError, yaml.YAMLError, ValueError) as e:
        print(f"infraguard: cannot load rules: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    return _COMMANDS[args.command](args, config)


if __name__ == "__main__":
    sys.exit(main())
