#!/usr/bin/env python3
"""Session Context Store.

A SessionContext records what infrastructure tooling is present in the
working tree. It is created empty at session start, populated exactly once
by the context detector, read by the guard and the auditor, and discarded
at session end.

Hooks run as separate processes, so the context is also written to
.claude/infraguard/sessions/<session_id>.json for the lifetime of the
session. A stored context is only handed back for the same session id and
the same root; anything else is treated as stale and removed.
"""

import json
import os
import re
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from _infra_models import Stack
from _infra_utils import STATE_DIR_NAME, log_infraguard

DEFAULT_TTL_SECONDS = 12 * 3600
"""Upper bound on a session's lifetime; older contexts are stale."""

_SAFE_ID = re.compile(r"[^A-Za-z0-9_.-]")


@dataclass
class SessionContext:
    root_path: str
    session_id: str = ""
    detected_stacks: frozenset = frozenset()
    scan_timestamp: float = 0.0
    ttl_seconds: float = DEFAULT_TTL_SECONDS
    incomplete: bool = False
    tooling: dict = field(default_factory=dict)
    recommendations: list = field(default_factory=list)
    populated: bool = False

    @classmethod
    def empty(cls, root_path: str, session_id: str = "") -> "SessionContext":
        return cls(root_path=os.path.abspath(root_path), session_id=session_id)

    def populate(
        self,
        stacks,
        tooling: dict | None = None,
        recommendations: list | None = None,
        incomplete: bool = False,
    ) -> None:
        """Fill in detection results. Allowed once per context."""
        if self.populated:
            raise RuntimeError(f"session context for {self.root_path} is already populated")
        self.detected_stacks = frozenset(stacks)
        self.tooling = dict(tooling or {})
        self.recommendations = list(recommendations or [])
        self.incomplete = incomplete
        self.scan_timestamp = time.time()
        self.populated = True

    def has(self, stack: Stack) -> bool:
        return stack in self.detected_stacks

    def is_stale(
        self,
        root_path: str | None = None,
        session_id: str | None = None,
        now: float | None = None,
    ) -> bool:
        """True if this context must not be used for the given session/root."""
        if not self.populated:
            return True
        if root_path is not None and os.path.abspath(root_path) != self.root_path:
            return True
        if session_id is not None and session_id != self.session_id:
            return True
        now = time.time() if now is None else now
        return now - self.scan_timestamp > self.ttl_seconds

    def stack_names(self) -> list[str]:
        return sorted(s.value for s in self.detected_stacks)

    def summary(self) -> str:
        """Human-readable summary injected at session start."""
        if not self.detected_stacks:
            return "InfraGuard: no infrastructure tooling detected."
        lines = [f"InfraGuard detected: {', '.join(self.stack_names())}"]
        backend = self.tooling.get("state_backend")
        if backend:
            lines.append(f"Terraform state backend: {backend}")
        for key, label in (("monitoring", "Monitoring"), ("security_tools", "Security tools")):
            values = self.tooling.get(key) or []
            if values:
                lines.append(f"{label}: {', '.join(values)}")
        if self.recommendations:
            lines.append(f"Recommended plugins: {', '.join(self.recommendations)}")
        if self.incomplete:
            lines.append("Detection incomplete (time budget exceeded); results may be partial.")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rootPath": self.root_path,
            "sessionId": self.session_id,
            "detectedStacks": self.stack_names(),
            "scanTimestamp": self.scan_timestamp,
            "ttlSeconds": self.ttl_seconds,
            "incomplete": self.incomplete,
            "tooling": self.tooling,
            "recommendations": self.recommendations,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionContext":
        context = cls(
            root_path=str(data["rootPath"]),
            session_id=str(data.get("sessionId", "")),
            detected_stacks=frozenset(Stack.parse(s) for s in data.get("detectedStacks", [])),
            scan_timestamp=float(data.get("scanTimestamp", 0.0)),
            ttl_seconds=float(data.get("ttlSeconds", DEFAULT_TTL_SECONDS)),
            incomplete=bool(data.get("incomplete", False)),
            tooling=dict(data.get("tooling") or {}),
            recommendations=list(data.get("recommendations") or []),
        )
        context.populated = True
        return context


# ============================================================
# In-memory registry (embedded use)
# ============================================================

_active_sessions: dict[str, SessionContext] = {}


def register_session(context: SessionContext) -> None:
    _active_sessions[context.session_id] = context


def get_registered_session(session_id: str) -> SessionContext | None:
    return _active_sessions.get(session_id)


def unregister_session(session_id: str) -> SessionContext | None:
    return _active_sessions.pop(session_id, None)


# ============================================================
# On-disk persistence (one file per session)
# ============================================================


def session_file_path(root_path: str, session_id: str) -> Path:
    safe_id = _SAFE_ID.sub("_", session_id or "default")[:128]
    return Path(root_path) / STATE_DIR_NAME / "sessions" / f"{safe_id}.json"


def save_session_context(context: SessionContext) -> Path | None:
    """Write the context atomically. Returns the path, or None on failure."""
    path = session_file_path(context.root_path, context.session_id)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".session_", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(context.to_dict(), f, indent=2, sort_keys=True)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return path
    except OSError as e:
        log_infraguard("WARN", f"Could not persist session context: {e}")
        return None


def load_session_context(root_path: str, session_id: str) -> SessionContext | None:
    """Load the stored context for this session and root, if still valid.

    Stale or mismatched files are removed so they can never be reused.
    """
    path = session_file_path(root_path, session_id)
    if not path.exists():
        return None
    try:
        with open(path, encoding="utf-8") as f:
            context = SessionContext.from_dict(json.load(f))
    except (OSError, ValueError, KeyError, TypeError) as e:
        log_infraguard("WARN", f"Discarding unreadable session context {path.name}: {e}")
        path.unlink(missing_ok=True)
        return None

    if context.is_stale(root_path=root_path, session_id=session_id):
        log_infraguard("INFO", f"Discarding stale session context {path.name}")
        path.unlink(missing_ok=True)
        return None
    return context


def discard_session_context(root_path: str, session_id: str) -> bool:
    """Forget the session everywhere. Returns True if a stored file was removed."""
    unregister_session(session_id)
    path = session_file_path(root_path, session_id)
    try:
        if path.exists():
            path.unlink()
            return True
    except OSError as e:
        log_infraguard("WARN", f"Could not remove session context {path.name}: {e}")
    return False
