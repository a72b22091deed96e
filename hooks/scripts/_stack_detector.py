#!/usr/bin/env python3
"""Context Detector.

Walks the working tree once (depth-bounded, skipping dependency caches, VCS
internals and build output) and classifies the infrastructure tooling it
finds. It never judges: no findings are produced here.

The walk is split across a bounded thread pool, one task per top-level
directory. The result is a set, so worker ordering does not matter.
"""

import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

import regex

from _infra_models import Stack
from _infra_utils import (
    Deadline,
    RegexTimeoutError,
    get_section,
    log_infraguard,
    safe_search,
    truncate_path,
)
from _session_store import SessionContext

DEFAULT_MAX_DEPTH = 4
DEFAULT_WORKERS = 4
DEFAULT_DETECT_TIMEOUT_SECONDS = 10.0
MAX_MARKER_FILE_BYTES = 256_000

DEFAULT_SKIP_DIRS = frozenset(
    {
        ".git",
        ".hg",
        ".svn",
        ".claude",
        ".terraform",
        ".terragrunt-cache",
        ".serverless",
        ".venv",
        "venv",
        "__pycache__",
        ".tox",
        ".mypy_cache",
        ".pytest_cache",
        ".cache",
        ".gradle",
        ".idea",
        ".next",
        "node_modules",
        "bower_components",
        "vendor",
        "dist",
        "build",
        "target",
        "out",
        "cdk.out",
    }
)

_TF_PROVIDER_TOKENS = (
    (Stack.AWS, regex.compile(r'provider\s+"aws"|\b(?:resource|data)\s+"aws_')),
    (Stack.GCP, regex.compile(r'provider\s+"google(?:-beta)?"|\b(?:resource|data)\s+"google_')),
    (Stack.AZURE, regex.compile(r'provider\s+"azurerm"|\b(?:resource|data)\s+"azurerm_')),
)
_TF_BACKEND = regex.compile(r'(?m)^\s*backend\s+"([^"]+)"')
_TF_CLOUD_BLOCK = regex.compile(r"(?m)^\s*cloud\s*\{")
_K8S_KIND = regex.compile(
    r"(?m)^kind:\s*(?:Deployment|Service|Pod|StatefulSet|DaemonSet|ReplicaSet|Job|CronJob"
    r"|Ingress|ConfigMap|Secret|Namespace|ServiceAccount|Role|RoleBinding|ClusterRole"
    r"|ClusterRoleBinding|NetworkPolicy|PersistentVolumeClaim|HorizontalPodAutoscaler)\b"
)
_K8S_API_VERSION = regex.compile(r"(?m)^apiVersion:\s*\S+")
_CFN_MARKER = regex.compile(r"AWSTemplateFormatVersion")
_OTEL_MARKER = regex.compile(r"(?i)\b(?:opentelemetry|otel[-_]?collector|otlp)\b")

_YAML_SUFFIXES = (".yml", ".yaml")

_MONITORING_FILES = (
    ("prometheus.yml", "Prometheus"),
    ("prometheus.yaml", "Prometheus"),
)
_MONITORING_PREFIXES = (("grafana", "Grafana"), ("datadog", "Datadog"))

_SECURITY_TOOL_FILES = {
    ".trivyignore": "Trivy",
    "trivy.yaml": "Trivy",
    ".tfsec.yml": "tfsec",
    ".tfsec.yaml": "tfsec",
    ".checkov.yml": "Checkov",
    ".checkov.yaml": "Checkov",
    ".gitleaks.toml": "Gitleaks",
    ".snyk": "Snyk",
    "renovate.json": "Renovate",
    ".renovaterc": "Renovate",
    ".renovaterc.json": "Renovate",
}

_RECOMMENDATIONS = {
    Stack.TERRAFORM: ("terraform-patterns",),
    Stack.ANSIBLE: ("ansible-automation",),
    Stack.CLOUDFORMATION: ("aws-infrastructure",),
    Stack.PULUMI: ("aws-infrastructure",),
    Stack.AWS: ("aws-infrastructure",),
    Stack.GCP: ("gcp-infrastructure",),
    Stack.AZURE: ("azure-infrastructure",),
    Stack.DOCKER: ("docker-orchestration",),
    Stack.KUBERNETES: ("kubernetes-operations",),
    Stack.HELM: ("kubernetes-operations",),
    Stack.GITHUB_ACTIONS: ("github-actions",),
    Stack.GITLAB_CI: ("gitlab-ci",),
    Stack.JENKINS: ("jenkins-pipelines",),
}

_IAC_STACKS = frozenset(
    {Stack.TERRAFORM, Stack.ANSIBLE, Stack.CLOUDFORMATION, Stack.PULUMI}
)


@dataclass
class _Signals:
    """Detection results of one walker; merged after the pool finishes."""

    stacks: set = field(default_factory=set)
    backends: set = field(default_factory=set)
    monitoring: set = field(default_factory=set)
    security_tools: set = field(default_factory=set)
    incomplete: bool = False

    def merge(self, other: "_Signals") -> None:
        self.stacks |= other.stacks
        self.backends |= other.backends
        self.monitoring |= other.monitoring
        self.security_tools |= other.security_tools
        self.incomplete = self.incomplete or other.incomplete


def _read_marker_file(path: Path) -> str:
    """Read a (bounded) prefix of a marker file; unreadable files read as ''."""
    try:
        with open(path, "rb") as f:
            data = f.read(MAX_MARKER_FILE_BYTES)
    except OSError as e:
        log_infraguard("WARN", f"Detector skipped unreadable file {truncate_path(str(path))}: {e}")
        return ""
    if b"\x00" in data[:4096]:
        return ""
    return data.decode("utf-8", errors="replace")


def _search(compiled, text: str, signals: _Signals):
    try:
        return safe_search(compiled, text)
    except RegexTimeoutError:
        signals.incomplete = True
        return None


def classify_file(rel_path: str, abs_path: Path, signals: _Signals) -> None:
    """Apply the ordered marker table to one file."""
    parts = rel_path.split("/")
    name = parts[-1]
    lower = name.lower()
    parents = {p.lower() for p in parts[:-1]}

    if lower.endswith((".tf", ".tf.json")):
        signals.stacks.add(Stack.TERRAFORM)
        content = _read_marker_file(abs_path)
        for stack, token in _TF_PROVIDER_TOKENS:
            if _search(token, content, signals):
                signals.stacks.add(stack)
        backend = _search(_TF_BACKEND, content, signals)
        if backend:
            signals.backends.add(backend.group(1))
        elif _search(_TF_CLOUD_BLOCK, content, signals):
            signals.backends.add("cloud")
        if "aws_cloudwatch" in content:
            signals.monitoring.add("CloudWatch")
        return

    if lower == "dockerfile" or lower.startswith("dockerfile.") or lower.endswith(".dockerfile"):
        signals.stacks.add(Stack.DOCKER)
        return
    if lower.endswith(_YAML_SUFFIXES) and (
        lower.startswith("docker-compose") or lower.startswith("compose.")
    ):
        signals.stacks.add(Stack.DOCKER)
        return

    if len(parts) >= 3 and parts[-3] == ".github" and parts[-2] == "workflows" and lower.endswith(_YAML_SUFFIXES):
        signals.stacks.add(Stack.GITHUB_ACTIONS)
        return
    if lower == "dependabot.yml" and parents == {".github"}:
        signals.security_tools.add("Dependabot")
        return
    if lower == ".gitlab-ci.yml":
        signals.stacks.add(Stack.GITLAB_CI)
        return
    if lower.startswith("jenkinsfile"):
        signals.stacks.add(Stack.JENKINS)
        return

    if lower == "cdk.json":
        signals.stacks.update({Stack.CLOUDFORMATION, Stack.AWS})
        return
    if lower == "pulumi.yaml" or lower == "pulumi.yml":
        signals.stacks.add(Stack.PULUMI)
        return
    if lower == "chart.yaml":
        signals.stacks.update({Stack.HELM, Stack.KUBERNETES})
        return
    if lower in ("kustomization.yaml", "kustomization.yml"):
        signals.stacks.add(Stack.KUBERNETES)
        return
    if lower == "ansible.cfg":
        signals.stacks.add(Stack.ANSIBLE)
        return

    if lower in _SECURITY_TOOL_FILES:
        signals.security_tools.add(_SECURITY_TOOL_FILES[lower])
        return
    for file_name, tool in _MONITORING_FILES:
        if lower == file_name:
            signals.monitoring.add(tool)
            return
    for prefix, tool in _MONITORING_PREFIXES:
        if lower.startswith(prefix):
            signals.monitoring.add(tool)

    is_yaml = lower.endswith(_YAML_SUFFIXES)
    if is_yaml and (lower.startswith("playbook") or parents & {"playbooks", "roles"}):
        signals.stacks.add(Stack.ANSIBLE)

    if is_yaml or lower.endswith((".json", ".template")):
        content = _read_marker_file(abs_path)
        if not content:
            return
        if _search(_CFN_MARKER, content, signals):
            signals.stacks.update({Stack.CLOUDFORMATION, Stack.AWS})
        if is_yaml:
            if _search(_K8S_KIND, content, signals) and _search(_K8S_API_VERSION, content, signals):
                signals.stacks.add(Stack.KUBERNETES)
            elif parents & {"k8s", "kubernetes"}:
                signals.stacks.add(Stack.KUBERNETES)
            if _search(_OTEL_MARKER, content, signals):
                signals.monitoring.add("OpenTelemetry")


def _walk(root: Path, start: Path, start_depth: int, max_depth: int, skip_dirs: frozenset, deadline: Deadline) -> _Signals:
    """Depth-bounded walk of one subtree. Never raises on filesystem errors."""
    signals = _Signals()

    def on_error(err: OSError) -> None:
        log_infraguard("WARN", f"Detector skipped {truncate_path(str(err.filename))}: {err.strerror}")

    for dirpath, dirnames, filenames in os.walk(start, onerror=on_error, followlinks=False):
        if deadline.expired():
            signals.incomplete = True
            break
        current = Path(dirpath)
        rel_dir = current.relative_to(root).as_posix()
        depth = start_depth + (0 if current == start else len(current.relative_to(start).parts))
        if depth >= max_depth:
            dirnames[:] = []
        else:
            dirnames[:] = sorted(d for d in dirnames if d not in skip_dirs)
        for filename in sorted(filenames):
            rel_path = filename if rel_dir in ("", ".") else f"{rel_dir}/{filename}"
            classify_file(rel_path, current / filename, signals)
    return signals


def detect(root_path: str, session_id: str = "", config: dict | None = None) -> SessionContext:
    """Classify the infrastructure tooling under root_path.

    Deterministic and read-only: running it twice on an unchanged tree gives
    the same stacks. An empty or unrecognized tree yields an empty set.

    Args:
        root_path: Working tree to scan.
        session_id: Owning session.
        config: Rules configuration (defaults to the active one).

    Returns:
        A populated SessionContext.
    """
    settings = get_section("detector", config)
    max_depth = int(settings.get("maxDepth", DEFAULT_MAX_DEPTH))
    workers = max(1, int(settings.get("workers", DEFAULT_WORKERS)))
    skip_dirs = DEFAULT_SKIP_DIRS | frozenset(settings.get("skipDirs") or [])
    deadline = Deadline(settings.get("timeoutSeconds", DEFAULT_DETECT_TIMEOUT_SECONDS))

    context = SessionContext.empty(root_path, session_id)
    root = Path(context.root_path)
    signals = _Signals()

    try:
        entries = sorted(os.scandir(root), key=lambda e: e.name)
    except OSError as e:
        log_infraguard("WARN", f"Detector could not list {root}: {e}")
        entries = []

    subtrees = []
    for entry in entries:
        try:
            if entry.is_dir(follow_symlinks=False):
                if entry.name not in skip_dirs and max_depth > 1:
                    subtrees.append(Path(entry.path))
            elif entry.is_file(follow_symlinks=False):
                classify_file(entry.name, Path(entry.path), signals)
        except OSError as e:
            log_infraguard("WARN", f"Detector skipped {entry.name}: {e}")

    if subtrees:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [
                pool.submit(_walk, root, subtree, 1, max_depth, skip_dirs, deadline)
                for subtree in subtrees
            ]
            for future in futures:
                signals.merge(future.result())

    if deadline.expired():
        signals.incomplete = True

    tooling = {
        "monitoring": sorted(signals.monitoring),
        "security_tools": sorted(signals.security_tools),
    }
    if signals.backends:
        tooling["state_backend"] = ", ".join(sorted(signals.backends))

    context.populate(
        signals.stacks,
        tooling=tooling,
        recommendations=recommend_plugins(signals.stacks, bool(signals.monitoring)),
        incomplete=signals.incomplete,
    )
    log_infraguard(
        "INFO",
        f"Detected stacks in {truncate_path(context.root_path)}: "
        f"{', '.join(context.stack_names()) or 'none'}"
        + (" (incomplete)" if context.incomplete else ""),
    )
    return context


def recommend_plugins(stacks, has_monitoring: bool = False) -> list[str]:
    recommended = set()
    for stack in stacks:
        recommended.update(_RECOMMENDATIONS.get(stack, ()))
    if has_monitoring:
        recommended.add("monitoring-observability")
    if set(stacks) & _IAC_STACKS:
        recommended.update({"secret-management", "infrastructure-security"})
    return sorted(recommended)
