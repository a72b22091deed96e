#!/usr/bin/env python3
"""Host contract and hook runners.

The host tool calls the pipeline at four points:

    on_session_start(root_path, session_id)              -> SessionContext
    on_before_tool_use(handle, proposed_path, content)   -> GuardDecision
    on_after_tool_use(handle, changed_paths)             -> list[Finding]
    on_session_end(handle)

A handle is either the SessionContext itself (embedded use) or a session
id. Claude Code runs every hook as a separate process, so a session id is
resolved through the in-memory registry first, then the session file
written at session start; if neither exists the tree is detected again.

The run_*_hook() functions translate Claude Code hook input (stdin JSON)
into those calls and return the JSON response to print, or None for "no
output".
"""

import json
import os
import sys
from typing import Any

from _infra_models import AuditReport, Finding, GuardDecision, Outcome, Severity
from _infra_utils import (
    deny_response,
    get_project_dir,
    is_dry_run,
    log_infraguard,
    post_tool_response,
    session_start_response,
    truncate_path,
    warn_response,
)
from _post_auditor import run_audit
from _pre_guard import evaluate
from _session_store import (
    SessionContext,
    discard_session_context,
    get_registered_session,
    load_session_context,
    register_session,
    save_session_context,
    unregister_session,
)
from _stack_detector import detect

FILE_TOOLS = frozenset({"write", "edit", "multiedit", "notebookedit"})
"""Tools whose invocation mutates a file (compared case-insensitively)."""

EDIT_TOOLS = frozenset({"edit", "multiedit"})
"""File tools that change part of an existing file."""

MAX_REPORT_FINDINGS = 20
"""Findings listed in a PostToolUse message before the rest are summarized."""


class HookInputError(ValueError):
    """Hook input is not a JSON object of the expected shape."""

    pass


# ============================================================
# Host contract
# ============================================================


def on_session_start(root_path: str, session_id: str = "", config: dict | None = None) -> SessionContext:
    """Detect the tree and make the context available to later hook calls."""
    context = detect(root_path, session_id=session_id, config=config)
    register_session(context)
    save_session_context(context)
    return context


def resolve_session(handle, root_path: str | None = None) -> SessionContext:
    """Return the live SessionContext for a handle.

    Args:
        handle: SessionContext, or a session id string.
        root_path: Working tree root, used when handle is a session id.
    """
    if isinstance(handle, SessionContext):
        return handle

    session_id = str(handle or "")
    root = os.path.abspath(root_path or get_project_dir() or os.getcwd())

    context = get_registered_session(session_id)
    if context is not None:
        if not context.is_stale(root_path=root, session_id=session_id):
            return context
        unregister_session(session_id)

    context = load_session_context(root, session_id)
    if context is not None:
        register_session(context)
        return context

    log_infraguard("INFO", f"No session context for '{session_id}', detecting {truncate_path(root)}")
    return on_session_start(root, session_id)


def on_before_tool_use(
    handle,
    proposed_path: str,
    proposed_content: str | None = None,
    root_path: str | None = None,
    baseline_content: str | None = None,
) -> GuardDecision:
    context = resolve_session(handle, root_path)
    return evaluate(context, proposed_path, proposed_content, baseline_content=baseline_content)


def audit_after_tool_use(handle, changed_paths, root_path: str | None = None) -> AuditReport:
    context = resolve_session(handle, root_path)
    return run_audit(context, changed_paths)


def on_after_tool_use(handle, changed_paths, root_path: str | None = None) -> list[Finding]:
    return audit_after_tool_use(handle, changed_paths, root_path).findings


def on_session_end(handle, root_path: str | None = None) -> bool:
    """Discard the session context. Returns True if a stored file was removed."""
    if isinstance(handle, SessionContext):
        return discard_session_context(handle.root_path, handle.session_id)
    root = os.path.abspath(root_path or get_project_dir() or os.getcwd())
    return discard_session_context(root, str(handle or ""))


# ============================================================
# Hook input helpers
# ============================================================


def read_hook_input(stream=None) -> dict[str, Any]:
    """Parse hook input JSON from stdin.

    Raises:
        HookInputError: Input is not valid JSON or not an object.
    """
    stream = sys.stdin if stream is None else stream
    try:
        data = json.load(stream)
    except json.JSONDecodeError as e:
        raise HookInputError(f"malformed JSON input: {e}") from e
    if not isinstance(data, dict):
        raise HookInputError(f"hook input must be an object, got {type(data).__name__}")
    return data


def emit(response: dict[str, Any] | None) -> None:
    """Print a hook response (no output means "no opinion")."""
    if response is not None:
        print(json.dumps(response))


def hook_root(input_data: dict[str, Any]) -> str:
    project_dir = get_project_dir()
    if project_dir:
        return os.path.abspath(project_dir)
    cwd = input_data.get("cwd")
    if isinstance(cwd, str) and cwd and os.path.isdir(cwd):
        return os.path.abspath(cwd)
    return os.getcwd()


def _session_id(input_data: dict[str, Any]) -> str:
    value = input_data.get("session_id", "")
    return value if isinstance(value, str) else ""


def tool_target_path(tool_input: dict[str, Any]):
    return tool_input.get("file_path") or tool_input.get("notebook_path") or ""


def _read_current(path: str) -> str | None:
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            return f.read()
    except OSError:
        return None


def _apply_edit(current: str | None, edit: dict[str, Any]) -> str:
    old = edit.get("old_string")
    new = edit.get("new_string")
    new = new if isinstance(new, str) else ""
    if current is None or not isinstance(old, str) or not old or old not in current:
        # Unknown base: judge the new text on its own.
        return new if current is None else current + "\n" + new
    if edit.get("replace_all"):
        return current.replace(old, new)
    return current.replace(old, new, 1)


def proposed_content(tool_name: str, tool_input: dict[str, Any], abs_path: str) -> str | None:
    """Reconstruct the file content the tool call would produce."""
    tool = tool_name.lower()
    if tool == "write":
        content = tool_input.get("content")
        return content if isinstance(content, str) else None
    if tool == "edit":
        return _apply_edit(_read_current(abs_path), tool_input)
    if tool == "multiedit":
        content = _read_current(abs_path)
        for edit in tool_input.get("edits") or []:
            if isinstance(edit, dict):
                content = _apply_edit(content, edit)
        return content
    if tool == "notebookedit":
        source = tool_input.get("new_source")
        return source if isinstance(source, str) else None
    return None


# ============================================================
# Hook runners
# ============================================================


def run_session_start_hook(input_data: dict[str, Any]) -> dict[str, Any]:
    root = hook_root(input_data)
    context = on_session_start(root, _session_id(input_data))
    log_infraguard("INFO", f"Session start: {', '.join(context.stack_names()) or 'no stacks'}")
    return session_start_response(context.summary())


def run_pre_tool_hook(input_data: dict[str, Any]) -> dict[str, Any] | None:
    """PreToolUse: guard a proposed file mutation.

    Malformed input for a file tool is denied (fail-closed).
    """
    tool_name = input_data.get("tool_name", "")
    if not isinstance(tool_name, str) or tool_name.lower() not in FILE_TOOLS:
        return None

    tool_input = input_data.get("tool_input", {})
    if not isinstance(tool_input, dict):
        log_infraguard("WARN", f"Invalid tool_input type: {type(tool_input).__name__}")
        return deny_response("Invalid tool input structure")

    file_path = tool_target_path(tool_input)
    if not file_path:
        log_infraguard("WARN", f"{tool_name} called without file_path")
        return None
    if not isinstance(file_path, str):
        log_infraguard("WARN", f"Invalid file_path type: {type(file_path).__name__}")
        return deny_response("Invalid file path type")
    if "\x00" in file_path:
        log_infraguard("BLOCK", f"Null byte in path rejected: {truncate_path(repr(file_path))}")
        return deny_response("Invalid file path (contains null byte)")

    root = hook_root(input_data)
    abs_path = file_path if os.path.isabs(file_path) else os.path.join(root, file_path)
    content = proposed_content(tool_name, tool_input, abs_path)
    baseline = _read_current(abs_path) if tool_name.lower() in EDIT_TOOLS else None
    decision = on_before_tool_use(
        _session_id(input_data), abs_path, content, root_path=root, baseline_content=baseline
    )
    path_preview = truncate_path(file_path)

    if decision.outcome == Outcome.BLOCK:
        log_infraguard("BLOCK", f"{tool_name} {path_preview}: {decision.message}")
        if is_dry_run():
            log_infraguard("DRY-RUN", f"Would DENY {tool_name} ({decision.rule})")
            return None
        return deny_response(decision.message)
    if decision.outcome == Outcome.WARN:
        log_infraguard("WARN", f"{tool_name} {path_preview}: {decision.message}")
        return warn_response(decision.message)
    if decision.message:
        log_infraguard("INFO", f"{tool_name} {path_preview}: {decision.message}")
    log_infraguard("ALLOW", f"{tool_name}: {path_preview}")
    return None


def format_report(report: AuditReport) -> str:
    lines = [f"InfraGuard audit: {len(report.findings)} finding(s)"]
    for finding in report.findings[:MAX_REPORT_FINDINGS]:
        lines.append(finding.format_line())
    hidden = len(report.findings) - MAX_REPORT_FINDINGS
    if hidden > 0:
        lines.append(f"... and {hidden} more")
    if report.skipped:
        lines.append(f"Skipped (unreadable or too large): {', '.join(report.skipped)}")
    if report.incomplete:
        lines.append("Audit incomplete: time budget exceeded, results are partial.")
    return "\n".join(lines)


def run_post_tool_hook(input_data: dict[str, Any]) -> dict[str, Any] | None:
    """PostToolUse: audit the file the tool just changed."""
    tool_name = input_data.get("tool_name", "")
    if not isinstance(tool_name, str) or tool_name.lower() not in FILE_TOOLS:
        return None
    tool_input = input_data.get("tool_input", {})
    if not isinstance(tool_input, dict):
        return None
    file_path = tool_target_path(tool_input)
    if not isinstance(file_path, str) or not file_path or "\x00" in file_path:
        return None

    root = hook_root(input_data)
    report = audit_after_tool_use(_session_id(input_data), [file_path], root_path=root)
    if not report.findings and not report.incomplete:
        log_infraguard("AUDIT", f"{tool_name} {truncate_path(file_path)}: clean")
        return None

    for finding in report.findings:
        log_infraguard("AUDIT", f"{finding.severity.value} {finding.kind.value} {finding.file_path}:{finding.line or '-'}")

    block_reason = None
    if report.max_severity == Severity.BLOCK:
        block_reason = (
            "InfraGuard found hardcoded secrets in the file just written. Remove them "
            "and reference a secret manager or environment variable instead."
        )
        if is_dry_run():
            log_infraguard("DRY-RUN", f"Would BLOCK after {tool_name} {truncate_path(file_path)}")
            block_reason = None
    return post_tool_response(format_report(report), block_reason)


def run_session_end_hook(input_data: dict[str, Any]) -> None:
    removed = on_session_end(_session_id(input_data), root_path=hook_root(input_data))
    log_infraguard("INFO", f"Session end: context {'discarded' if removed else 'not found'}")
    return None
