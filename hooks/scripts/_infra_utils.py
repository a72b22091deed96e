#!/usr/bin/env python3
"""Shared utilities for the InfraGuard hook pipeline.

This module provides the plumbing used by every InfraGuard stage:
- Configuration loading from a YAML rules file
- Safe regex evaluation (timeout defense via the `regex` package)
- Path normalization and glob matching for rule patterns
- Dry-run mode support
- Logging with rotation
- Hook response builders for the Claude Code hook protocol

Config resolution chain (3-step):
    1. $CLAUDE_PROJECT_DIR/.claude/infraguard/rules.yaml (project custom)
    2. $CLAUDE_PLUGIN_ROOT/assets/infraguard.default.yaml (plugin default),
       or the assets/ directory next to these scripts
    3. Hardcoded _FALLBACK_CONFIG (emergency fallback)

Usage:
    from _infra_utils import (
        load_infraguard_config,
        log_infraguard,
        match_path_pattern,
        safe_search,
        deny_response,
    )

Note on log_infraguard():
    - Silent fail if CLAUDE_PROJECT_DIR not set
    - Silent fail on file write errors
    - Logging problems must never break a hook

Design Principles:
    1. Fail-close on the PreToolUse path for security-critical errors
       (malformed hook input, library import failure)
    2. Fail-open for everything that only reports (logging, auditing)
    3. Never crash the host tool process
"""

import fnmatch
import os
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any

import regex
import yaml

# ============================================================
# Constants
# ============================================================

DRY_RUN_ENV = "INFRAGUARD_DRY_RUN"
"""Environment variable to enable dry-run mode.
Set to "1", "true", or "yes" to enable."""

STATE_DIR_NAME = ".claude/infraguard"
"""Per-project directory holding the log, custom rules and session files."""

RULES_FILE_NAME = "rules.yaml"
"""Project-level rules file name inside STATE_DIR_NAME."""

DEFAULT_RULES_ASSET = "infraguard.default.yaml"
"""Plugin default rules file name inside assets/."""

MAX_PATH_PREVIEW_LENGTH = 60
"""Maximum path length for log display. Paths longer than this are truncated."""

MAX_SNIPPET_LENGTH = 120
"""Maximum evidence snippet length carried in a finding."""

MAX_LOG_SIZE_BYTES = 1_000_000
"""Maximum log file size before rotation (1 MB)."""

REGEX_TIMEOUT_SECONDS = 0.5
"""Default timeout for a single regex operation to prevent ReDoS."""

HOOK_DEFAULT_TIMEOUT_SECONDS = 10
"""Default timeout for hook execution."""

SECRET_MASK = "********"
"""Fixed-length mask substituted for secret material in evidence snippets."""


# ============================================================
# Timeouts
# ============================================================


class HookTimeoutError(Exception):
    """Hook execution timed out."""

    pass


class RegexTimeoutError(Exception):
    """A single regex evaluation exceeded REGEX_TIMEOUT_SECONDS."""

    pass


def with_timeout(func, timeout_seconds: int = HOOK_DEFAULT_TIMEOUT_SECONDS):
    """Execute function with timeout guard.

    Platform-specific implementation:
    - Windows: threading-based timeout
    - Unix: signal-based timeout (SIGALRM), main thread only

    Args:
        func: Function to execute (no arguments).
        timeout_seconds: Timeout in seconds (default: HOOK_DEFAULT_TIMEOUT_SECONDS).

    Returns:
        func() return value.

    Raises:
        HookTimeoutError: If execution exceeds timeout.
    """
    use_signal = sys.platform != "win32" and threading.current_thread() is threading.main_thread()

    if not use_signal:
        result = [None]
        exception = [None]

        def wrapper():
            try:
                result[0] = func()
            except Exception as e:
                exception[0] = e

        thread = threading.Thread(target=wrapper)
        thread.daemon = True
        thread.start()
        thread.join(timeout=timeout_seconds)

        if thread.is_alive():
            raise HookTimeoutError(f"Hook execution timed out after {timeout_seconds}s")
        if exception[0]:
            raise exception[0]
        return result[0]
    else:
        import signal

        def timeout_handler(signum, frame):
            raise HookTimeoutError(f"Hook execution timed out after {timeout_seconds}s")

        old_handler = signal.signal(signal.SIGALRM, timeout_handler)
        signal.alarm(max(1, int(timeout_seconds)))
        try:
            return func()
        finally:
            signal.alarm(0)
            signal.signal(signal.SIGALRM, old_handler)


class Deadline:
    """Monotonic time budget shared by one detector/guard/audit invocation."""

    def __init__(self, seconds: float | None):
        self.seconds = seconds
        self._expires = None if not seconds else time.monotonic() + seconds

    def expired(self) -> bool:
        return self._expires is not None and time.monotonic() >= self._expires

    def remaining(self) -> float | None:
        if self._expires is None:
            return None
        return max(0.0, self._expires - time.monotonic())


# ============================================================
# Hardcoded fallback config
# ============================================================

# Used when no rules file can be loaded. Keeps the highest-confidence
# rules active so state files and private keys are ALWAYS protected.
_FALLBACK_CONFIG = {
    "hookBehavior": {"onTimeout": "deny", "onError": "deny", "timeoutSeconds": 10},
    "placeholders": [r"(?i)^(changeme|<redacted>|redacted|todo|placeholder)$"],
    "secretPatterns": [
        {
            "name": "aws-access-key-id",
            "pattern": r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b",
            "reason": "[FALLBACK] AWS access key ID",
        },
        {
            "name": "private-key-pem",
            "pattern": r"-----BEGIN (?:[A-Z0-9]+ )*PRIVATE KEY-----",
            "reason": "[FALLBACK] Private key material",
        },
    ],
    "sensitivityRules": [
        {
            "name": "terraform-state",
            "pathPattern": "*tfstate*",
            "category": "StateFile",
            "severity": "Block",
            "reason": "[FALLBACK] Terraform state file",
        },
        {
            "name": "pem-file",
            "pathPattern": "*.pem",
            "category": "SecretMaterial",
            "severity": "Block",
            "reason": "[FALLBACK] Private key file",
        },
        {
            "name": "ssh-key",
            "pathPattern": "id_rsa*",
            "category": "SecretMaterial",
            "severity": "Block",
            "reason": "[FALLBACK] SSH private key",
        },
    ],
}

# ============================================================
# Configuration
# ============================================================

_config_cache: dict | None = None
_using_fallback_config: bool = False
"""Flag indicating if fallback config is in use."""


def get_project_dir() -> str:
    """Get and validate project directory from environment variable.

    Returns:
        Project directory path, or empty string if not set or invalid.
    """
    project_dir = os.environ.get("CLAUDE_PROJECT_DIR", "")
    if not project_dir:
        return ""

    # Note: Cannot call log_infraguard() here - would cause infinite recursion
    # because log_infraguard() calls get_project_dir()
    if not os.path.isdir(project_dir):
        return ""

    return project_dir


def _get_plugin_root() -> str:
    """Get the plugin root directory.

    Falls back to the checkout containing these scripts (hooks/scripts/ is
    two levels below the plugin root).

    Returns:
        Plugin root directory path, or empty string if unknown.
    """
    plugin_root = os.environ.get("CLAUDE_PLUGIN_ROOT", "")
    if plugin_root:
        return plugin_root
    candidate = Path(__file__).resolve().parent.parent.parent
    if (candidate / "assets" / DEFAULT_RULES_ASSET).exists():
        return str(candidate)
    return ""


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Load and validate a single YAML rules file.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed configuration dict.

    Raises:
        OSError: File cannot be read.
        yaml.YAMLError: File is not valid YAML.
        ValueError: Top level is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"top level must be a mapping, got {type(data).__name__}")
    for verr in validate_infraguard_config(data):
        log_infraguard("WARN", f"Config validation ({Path(path).name}): {verr}")
    return data


def load_infraguard_config() -> dict[str, Any]:
    """Load the rules configuration with caching and fallback.

    The config is cached for the lifetime of the process.
    Since hooks run as separate processes, this is safe.

    Returns:
        Configuration dict, or fallback config on error.
        Never raises exceptions - returns safe default on any error.
    """
    global _config_cache, _using_fallback_config
    if _config_cache is not None:
        return _config_cache

    candidates = []
    project_dir = get_project_dir()
    if project_dir:
        candidates.append(Path(project_dir) / STATE_DIR_NAME / RULES_FILE_NAME)
    plugin_root = _get_plugin_root()
    if plugin_root:
        candidates.append(Path(plugin_root) / "assets" / DEFAULT_RULES_ASSET)

    for config_path in candidates:
        if not config_path.exists():
            continue
        try:
            _config_cache = load_config_file(config_path)
            _using_fallback_config = False
            log_infraguard("INFO", f"Loaded rules from {config_path}")
            return _config_cache
        except yaml.YAMLError as e:
            log_infraguard(
                "ERROR",
                f"[FALLBACK] Invalid YAML in {config_path}: {e}\n"
                "  Fix YAML syntax to restore the full rule catalog.",
            )
        except OSError as e:
            log_infraguard(
                "ERROR",
                f"[FALLBACK] Failed to read {config_path}: {e}\n  Check file permissions.",
            )
        except ValueError as e:
            log_infraguard("ERROR", f"[FALLBACK] Malformed rules file {config_path}: {e}")

    log_infraguard(
        "WARN",
        "[FALLBACK] No rules file found in any location.\n"
        f"  Searched: {STATE_DIR_NAME}/{RULES_FILE_NAME}"
        + (", plugin default" if plugin_root else "")
        + "\n  Using minimal fallback catalog.",
    )
    _config_cache = _FALLBACK_CONFIG
    _using_fallback_config = True
    return _config_cache


def reset_config_cache() -> None:
    """Forget the cached configuration (used by the CLI and tests)."""
    global _config_cache, _using_fallback_config
    _config_cache = None
    _using_fallback_config = False


def is_using_fallback_config() -> bool:
    """Check if the hardcoded fallback config is in use.

    Returns:
        True if fallback config is active (custom rules NOT loaded).
    """
    if _config_cache is None:
        load_infraguard_config()
    return _using_fallback_config


def get_hook_behavior(config: dict | None = None) -> dict[str, Any]:
    """Get hookBehavior section from config.

    Returns:
        hookBehavior dict with defaults applied.
    """
    if config is None:
        config = load_infraguard_config()
    defaults = {
        "onTimeout": "deny",
        "onError": "deny",
        "timeoutSeconds": HOOK_DEFAULT_TIMEOUT_SECONDS,
    }
    behavior = config.get("hookBehavior") or {}
    return {**defaults, **behavior}


def get_section(name: str, config: dict | None = None) -> dict[str, Any]:
    """Return a mapping section of the config, or {} if absent/invalid."""
    if config is None:
        config = load_infraguard_config()
    section = config.get(name) or {}
    return section if isinstance(section, dict) else {}


_LIST_SECTIONS = ("secretPatterns", "sensitivityRules", "insecureDefaults")
_VALID_SEVERITIES = {"Block", "Warn", "Info"}
_VALID_CATEGORIES = {"StateFile", "SecretMaterial", "NetworkingConfig", "IAMPolicy", "Other"}


def validate_infraguard_config(config: dict) -> list[str]:
    """Validate the structure of a rules configuration.

    Structural problems are reported, never raised: a bad entry is disabled
    later by the rule catalog while the rest of the catalog stays active.

    Args:
        config: Loaded configuration dictionary.

    Returns:
        List of validation error messages (empty if valid).
    """
    errors = []

    hook_behavior = config.get("hookBehavior", {}) or {}
    valid_decisions = {"allow", "deny", "ask"}
    for key in ("onTimeout", "onError"):
        value = hook_behavior.get(key, "deny")
        if value not in valid_decisions:
            errors.append(f"Invalid hookBehavior.{key}: {value} (must be: {sorted(valid_decisions)})")
    timeout_seconds = hook_behavior.get("timeoutSeconds", HOOK_DEFAULT_TIMEOUT_SECONDS)
    if not isinstance(timeout_seconds, (int, float)) or timeout_seconds <= 0:
        errors.append(
            f"Invalid hookBehavior.timeoutSeconds: {timeout_seconds} (must be positive number)"
        )

    for section in _LIST_SECTIONS:
        entries = config.get(section, [])
        if entries is None:
            continue
        if not isinstance(entries, list):
            errors.append(f"{section} must be a list")
            continue
        for i, entry in enumerate(entries):
            if not isinstance(entry, dict):
                errors.append(f"{section}[{i}] must be a mapping")
                continue
            severity = entry.get("severity")
            if severity is not None and severity not in _VALID_SEVERITIES:
                errors.append(f"{section}[{i}].severity invalid: {severity}")
            if section == "sensitivityRules":
                if not entry.get("pathPattern") and not entry.get("contentPatterns"):
                    errors.append(f"{section}[{i}] needs pathPattern or contentPatterns")
                category = entry.get("category", "Other")
                if category not in _VALID_CATEGORIES:
                    errors.append(f"{section}[{i}].category invalid: {category}")
            elif not entry.get("pattern"):
                errors.append(f"{section}[{i}] missing pattern")

    for section in ("placeholders", "references"):
        values = config.get(section, [])
        if values is not None and not isinstance(values, list):
            errors.append(f"{section} must be a list")

    return errors


# ============================================================
# Dry-Run Mode
# ============================================================


def is_dry_run() -> bool:
    """Check if running in dry-run (simulation) mode.

    In dry-run mode, the guard logs what it WOULD block but lets the
    operation through.

    Enable by setting environment variable:
        INFRAGUARD_DRY_RUN=1

    Returns:
        True if dry-run mode is enabled.
    """
    value = os.environ.get(DRY_RUN_ENV, "").lower()
    return value in ("1", "true", "yes")


# ============================================================
# Safe Regex with Timeout Defense (ReDoS Prevention)
# ============================================================


def compile_pattern(pattern: str, flags: int = 0):
    """Compile a rule pattern with the `regex` engine.

    Args:
        pattern: Regular expression pattern.
        flags: regex flags (regex.IGNORECASE, etc.).

    Returns:
        Compiled pattern.

    Raises:
        regex.error: Pattern is malformed.
    """
    return regex.compile(pattern, flags)


def safe_search(compiled, text: str, timeout: float = REGEX_TIMEOUT_SECONDS):
    """Search with a per-call timeout.

    Args:
        compiled: Pattern returned by compile_pattern().
        text: Text to search.
        timeout: Timeout in seconds (default: REGEX_TIMEOUT_SECONDS).

    Returns:
        Match object if found, None otherwise.

    Raises:
        RegexTimeoutError: Evaluation exceeded the timeout. Callers decide
            whether that degrades to a partial result.
    """
    try:
        return compiled.search(text, timeout=timeout)
    except TimeoutError as e:
        log_infraguard("WARN", f"Regex timeout ({timeout}s) for pattern: {compiled.pattern[:50]}...")
        raise RegexTimeoutError(compiled.pattern) from e


def safe_finditer(compiled, text: str, timeout: float = REGEX_TIMEOUT_SECONDS) -> list:
    """Like safe_search(), returning every non-overlapping match."""
    try:
        return list(compiled.finditer(text, timeout=timeout))
    except TimeoutError as e:
        log_infraguard("WARN", f"Regex timeout ({timeout}s) for pattern: {compiled.pattern[:50]}...")
        raise RegexTimeoutError(compiled.pattern) from e


# ============================================================
# Path Matching (File Paths)
# ============================================================


def normalize_relative_path(path: str, root_path: str) -> str:
    """Express a path relative to root_path with forward slashes.

    Relative paths are taken as relative to root_path. Paths outside the
    root keep their absolute form so rules can still match them.

    Args:
        path: Absolute or relative path.
        root_path: Absolute working tree root.

    Returns:
        Normalized path string with forward slashes, no leading "./".
    """
    try:
        expanded = os.path.expanduser(path)
        if not os.path.isabs(expanded):
            expanded = os.path.join(root_path, expanded)
        absolute = os.path.normpath(os.path.abspath(expanded))
        root = os.path.normpath(os.path.abspath(root_path))
        if absolute == root:
            return ""
        if absolute.startswith(root.rstrip(os.sep) + os.sep):
            absolute = absolute[len(root.rstrip(os.sep)) + 1 :]
        return absolute.replace("\\", "/")
    except (TypeError, ValueError) as e:
        log_infraguard("WARN", f"Error normalizing path '{path}': {e}")
        return str(path).replace("\\", "/")


def _match_recursive_glob(path_parts: list[str], pattern_parts: list[str]) -> bool:
    """Match path parts against pattern parts with ** support.

    Args:
        path_parts: List of path components (e.g., ['infra', 'main.tf'])
        pattern_parts: List of pattern components (e.g., ['**', '*.tf'])

    Returns:
        True if path matches pattern.
    """
    if not pattern_parts:
        return not path_parts

    if not path_parts:
        return all(p == "**" for p in pattern_parts)

    if pattern_parts[0] == "**":
        # ** matches zero or more path components
        if _match_recursive_glob(path_parts, pattern_parts[1:]):
            return True
        return _match_recursive_glob(path_parts[1:], pattern_parts)

    if fnmatch.fnmatchcase(path_parts[0], pattern_parts[0]):
        return _match_recursive_glob(path_parts[1:], pattern_parts[1:])

    return False


def match_path_pattern(rel_path: str, pattern: str) -> bool:
    """Match a root-relative path against a rule glob.

    Rule patterns are matched case-insensitively.

    - Patterns without "/" are tested against every path segment, so
      "*secret*" matches both "secrets.yaml" and "secrets/db.yaml".
    - Patterns with "/" are anchored at the root; "**" spans any number
      of segments.

    Args:
        rel_path: Path from normalize_relative_path().
        pattern: The glob pattern to match against.

    Returns:
        True if path matches pattern.
    """
    norm_path = rel_path.replace("\\", "/").lower().strip("/")
    norm_pattern = pattern.replace("\\", "/").lower().strip("/")
    if not norm_path or not norm_pattern:
        return False

    path_parts = [p for p in norm_path.split("/") if p and p != "."]
    if "/" not in norm_pattern:
        if norm_pattern == "**":
            return True
        return any(fnmatch.fnmatchcase(part, norm_pattern) for part in path_parts)

    return _match_recursive_glob(path_parts, norm_pattern.split("/"))


# ============================================================
# File Reading
# ============================================================


class FileTooLargeError(Exception):
    """File exceeds the configured scan size limit."""

    pass


BINARY_SNIFF_BYTES = 8192
"""Leading bytes inspected for NUL to decide a file is binary."""


def read_text_file(path: str | Path, max_bytes: int) -> str | None:
    """Read a file for scanning.

    Args:
        path: File to read.
        max_bytes: Size limit.

    Returns:
        Decoded text (undecodable bytes replaced), or None for binary files.

    Raises:
        OSError: File missing or unreadable.
        FileTooLargeError: File is larger than max_bytes.
    """
    size = os.stat(path).st_size
    if size > max_bytes:
        raise FileTooLargeError(f"{size} bytes > {max_bytes}")
    with open(path, "rb") as f:
        data = f.read(max_bytes + 1)
    if b"\x00" in data[:BINARY_SNIFF_BYTES]:
        return None
    return data.decode("utf-8", errors="replace")


# ============================================================
# Logging with Rotation
# ============================================================


def _rotate_log_if_needed(log_file: Path) -> None:
    """Rotate log file if it exceeds MAX_LOG_SIZE_BYTES.

    Keeps exactly one backup (.log.1). Silent fail on any error.
    """
    try:
        if not log_file.exists():
            return
        if log_file.stat().st_size < MAX_LOG_SIZE_BYTES:
            return
        backup_file = log_file.with_suffix(".log.1")
        if backup_file.exists():
            backup_file.unlink()
        log_file.rename(backup_file)
    except OSError:
        # Rotation is non-critical
        pass


def log_infraguard(level: str, message: str) -> None:
    """Log an InfraGuard event to .claude/infraguard/infraguard.log.

    Log format:
        TIMESTAMP [LEVEL] [DRY-RUN] MESSAGE

    Args:
        level: Log level (INFO, WARN, ERROR, BLOCK, ALLOW, AUDIT, DRY-RUN)
        message: Message to log.
    """
    project_dir = get_project_dir()
    if not project_dir:
        return

    log_file = Path(project_dir) / STATE_DIR_NAME / "infraguard.log"

    try:
        timestamp = datetime.now().isoformat(timespec="seconds")
        mode = "[DRY-RUN] " if is_dry_run() else ""
        line = f"{timestamp} [{level}] {mode}{message}\n"

        log_file.parent.mkdir(parents=True, exist_ok=True)
        _rotate_log_if_needed(log_file)

        with open(log_file, "a", encoding="utf-8") as f:
            f.write(line)
    except OSError:
        # Don't break hook on log error
        pass


def warn_loudly(message: str) -> None:
    """Log an ERROR and echo it to stderr (rule-definition problems)."""
    log_infraguard("ERROR", message)
    try:
        print(f"[InfraGuard] {message}", file=sys.stderr)
    except (OSError, ValueError):
        pass


def truncate_path(path: str, max_length: int = MAX_PATH_PREVIEW_LENGTH) -> str:
    """Truncate path for display in logs, keeping the end."""
    if len(path) <= max_length:
        return path
    return f"...{path[-(max_length - 3) :]}"


def truncate_snippet(text: str, max_length: int = MAX_SNIPPET_LENGTH) -> str:
    """Truncate an evidence snippet, keeping the start."""
    text = text.strip()
    if len(text) <= max_length:
        return text
    return f"{text[: max_length - 3]}..."


# ============================================================
# Hook Response Helpers
# ============================================================


def deny_response(reason: str) -> dict[str, Any]:
    """Generate a deny response for PreToolUse hook.

    Args:
        reason: Human-readable reason for denial.

    Returns:
        Hook response dict that will block the operation.
    """
    return {
        "hookSpecificOutput": {
            "hookEventName": "PreToolUse",
            "permissionDecision": "deny",
            "permissionDecisionReason": f"[BLOCKED] {reason}",
        }
    }


def ask_response(reason: str) -> dict[str, Any]:
    """Generate an ask response for PreToolUse hook."""
    return {
        "hookSpecificOutput": {
            "hookEventName": "PreToolUse",
            "permissionDecision": "ask",
            "permissionDecisionReason": f"[CONFIRM] {reason}",
        }
    }


def warn_response(reason: str) -> dict[str, Any]:
    """Generate a PreToolUse response that lets the call through with a warning.

    No permissionDecision is set, so the host's normal permission flow
    still applies; the message is shown to the user.
    """
    return {"systemMessage": f"[WARNING] {reason}"}


def make_hook_behavior_response(action: str, reason: str) -> dict[str, Any] | None:
    """Create a PreToolUse response from a hookBehavior action string.

    Args:
        action: One of "deny", "ask", or "allow".
        reason: Human-readable reason for the action.

    Returns:
        Hook response dict for "deny" or "ask", None for "allow".
        Falls back to deny for unrecognized actions (fail-closed).
    """
    if action == "allow":
        return None  # No output = allow in Claude Code hook protocol
    elif action == "ask":
        return ask_response(reason)
    else:
        return deny_response(reason)


def session_start_response(context_text: str) -> dict[str, Any]:
    """Generate a SessionStart response injecting context for the assistant."""
    return {
        "hookSpecificOutput": {
            "hookEventName": "SessionStart",
            "additionalContext": context_text,
        }
    }


def post_tool_response(message: str, block_reason: str | None = None) -> dict[str, Any]:
    """Generate a PostToolUse response surfacing audit findings.

    Args:
        message: Report shown to the user.
        block_reason: If set, the assistant is told it must address the
            findings before continuing.
    """
    response: dict[str, Any] = {
        "systemMessage": message,
        "hookSpecificOutput": {
            "hookEventName": "PostToolUse",
            "additionalContext": message,
        },
    }
    if block_reason:
        response["decision"] = "block"
        response["reason"] = block_reason
    return response

