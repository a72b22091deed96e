#!/usr/bin/env python3
"""Post-Invocation Auditor.

Re-scans the final content of files the host tool just changed and reports
a fixed catalog of misconfigurations:

1. HardcodedSecret       (Block) secret regex catalog, line by line
2. MissingStateBackend   (Warn)  Terraform root module without a backend
3. ExposedPort           (Warn)  risky port published on all interfaces
4. InsecureDefault       (Info/Warn) well-known insecure settings

The audit is a pure function of file contents plus the rule catalog: it
never modifies a file, and running it twice on unchanged files gives
identical findings.
"""

import os
from bisect import bisect_right
from pathlib import Path

import regex

from _infra_models import AuditReport, Finding, FindingKind, Severity, Stack
from _infra_utils import (
    Deadline,
    FileTooLargeError,
    RegexTimeoutError,
    log_infraguard,
    normalize_relative_path,
    read_text_file,
    safe_finditer,
    safe_search,
    truncate_path,
    truncate_snippet,
)
from _rule_catalog import RuleCatalog, get_rule_catalog
from _secret_scanner import scan_text
from _session_store import SessionContext

# ============================================================
# Patterns
# ============================================================

_TF_BACKEND_BLOCK = regex.compile(r'(?m)^\s*backend\s+"[^"]+"|^\s*cloud\s*\{')
_DOCKER_EXPOSE = regex.compile(r"(?i)^\s*EXPOSE\s+(.+)$")
_PORT_TOKEN = regex.compile(r"^(\d+)(?:-(\d+))?(?:/(?:tcp|udp|sctp))?$", regex.IGNORECASE)
_YAML_KEY_VALUE = regex.compile(r"^(\s*)(?:-\s+)?([A-Za-z_][\w.-]*)\s*:\s*(.*)$")
_COMPOSE_PORTS_KEY = regex.compile(r"^(\s*)ports\s*:\s*(.*)$")
_K8S_KIND_LINE = regex.compile(r"(?m)^kind:\s*([A-Za-z]+)")
_K8S_API_VERSION = regex.compile(r"(?m)^apiVersion:\s*\S+")
_K8S_SERVICE_TYPE = regex.compile(r"(?m)^\s*type:\s*[\"']?(LoadBalancer|NodePort)\b")
_K8S_PORT_LINE = regex.compile(
    r"^\s*(?:-\s+)?(containerPort|hostPort|nodePort|port)\s*:\s*[\"']?(\d+)"
)
_DOC_SEPARATOR = regex.compile(r"^---\s*(?:#.*)?$")

_YAML_SUFFIXES = (".yml", ".yaml")


# ============================================================
# File classification
# ============================================================


def is_dockerfile(rel_path: str) -> bool:
    name = rel_path.rsplit("/", 1)[-1].lower()
    return name == "dockerfile" or name.startswith("dockerfile.") or name.endswith(".dockerfile")


def is_compose_file(rel_path: str) -> bool:
    name = rel_path.rsplit("/", 1)[-1].lower()
    return name.endswith(_YAML_SUFFIXES) and (
        name.startswith("docker-compose") or name.startswith("compose")
    )


def is_root_module_file(rel_path: str) -> bool:
    """A *.tf file that is not inside a modules/ directory."""
    if not rel_path.lower().endswith(".tf"):
        return False
    return "modules" not in rel_path.split("/")[:-1]


# ============================================================
# Line helpers
# ============================================================


def _comment_text(line: str) -> str:
    """Text after the first '#' that starts a comment, or ''."""
    in_quote = None
    for i, ch in enumerate(line):
        if in_quote:
            if ch == in_quote:
                in_quote = None
        elif ch in ("'", '"'):
            in_quote = ch
        elif ch == "#" and (i == 0 or line[i - 1].isspace()):
            return line[i + 1 :]
    return ""


def _strip_comment(line: str) -> str:
    comment = _comment_text(line)
    if not comment:
        return line
    return line[: len(line) - len(comment) - 1]


def _has_intent(lines: list[str], index: int, catalog: RuleCatalog) -> bool:
    """Intent comment on the line itself or on the comment line just above it."""
    candidates = [_comment_text(lines[index])]
    j = index - 1
    while j >= 0 and not lines[j].strip():
        j -= 1
    if j >= 0 and lines[j].lstrip().startswith("#"):
        candidates.append(lines[j].lstrip()[1:])
    for text in candidates:
        if not text:
            continue
        try:
            if safe_search(catalog.intent_pattern, text):
                return True
        except RegexTimeoutError:
            continue
    return False


def _is_comment_line(line: str) -> bool:
    return line.lstrip().startswith(("#", "//"))


def _risky_ports(low: int, high: int, catalog: RuleCatalog) -> list[int]:
    if high < low:
        low, high = high, low
    return sorted(p for p in catalog.exposed_ports if low <= p <= high)


def _parse_port_spec(spec: str) -> tuple[int, int] | None:
    match = _PORT_TOKEN.match(spec.strip())
    if not match:
        return None
    low = int(match.group(1))
    high = int(match.group(2)) if match.group(2) else low
    return low, high


# ============================================================
# Exposed-port checks
# ============================================================


def _port_finding(rel_path: str, line_no: int, line: str, ports: list[int], where: str) -> Finding:
    port_list = ", ".join(str(p) for p in ports)
    return Finding(
        file_path=rel_path,
        kind=FindingKind.EXPOSED_PORT,
        severity=Severity.WARN,
        message=(
            f"{where} publishes port {port_list} on all interfaces; bind to a private "
            "address or add a comment stating the exposure is intentional"
        ),
        line=line_no,
        evidence_snippet=truncate_snippet(line),
        rule="exposed-port",
    )


def check_dockerfile_ports(rel_path: str, lines: list[str], catalog: RuleCatalog) -> list[Finding]:
    findings = []
    for i, line in enumerate(lines):
        match = _DOCKER_EXPOSE.match(_strip_comment(line))
        if not match:
            continue
        ports = set()
        for token in match.group(1).split():
            parsed = _parse_port_spec(token)
            if parsed:
                ports.update(_risky_ports(parsed[0], parsed[1], catalog))
        if ports and not _has_intent(lines, i, catalog):
            findings.append(_port_finding(rel_path, i + 1, line, sorted(ports), "EXPOSE"))
    return findings


def _is_loopback(host: str) -> bool:
    host = host.strip().strip("[]").lower()
    return host.startswith("127.") or host in ("localhost", "::1")


def _compose_short_ports(entry: str, catalog: RuleCatalog) -> list[int]:
    """Risky ports of a short-syntax entry such as "0.0.0.0:5432:5432/tcp"."""
    value = entry.strip().strip("\"'")
    value = value.split("/", 1)[0]
    host = ""
    if value.startswith("["):
        end = value.find("]")
        host = value[1:end]
        value = value[end + 2 :]
    parts = value.split(":")
    if len(parts) == 3:
        host, published, target = parts
    elif len(parts) == 2:
        published, target = parts
    else:
        published, target = "", parts[0]
    if host and _is_loopback(host):
        return []
    risky = set()
    for spec in (published, target):
        parsed = _parse_port_spec(spec) if spec else None
        if parsed:
            risky.update(_risky_ports(parsed[0], parsed[1], catalog))
    return sorted(risky)


def _compose_long_ports(item: dict, catalog: RuleCatalog) -> list[int]:
    if _is_loopback(str(item.get("host_ip", "")).strip("\"'")):
        return []
    risky = set()
    for key in ("published", "target"):
        value = str(item.get(key, "")).strip("\"'")
        parsed = _parse_port_spec(value) if value else None
        if parsed:
            risky.update(_risky_ports(parsed[0], parsed[1], catalog))
    return sorted(risky)


def check_compose_ports(rel_path: str, lines: list[str], catalog: RuleCatalog) -> list[Finding]:
    """Scan every ports: block of a compose file."""
    findings = []
    i = 0
    while i < len(lines):
        key = _COMPOSE_PORTS_KEY.match(_strip_comment(lines[i]))
        if not key:
            i += 1
            continue
        indent = len(key.group(1))
        inline = key.group(2).strip()
        if inline.startswith("["):
            entries = [e for e in inline.strip("[]").split(",") if e.strip()]
            risky = sorted({p for e in entries for p in _compose_short_ports(e, catalog)})
            if risky and not _has_intent(lines, i, catalog):
                findings.append(_port_finding(rel_path, i + 1, lines[i], risky, "ports"))
            i += 1
            continue

        i += 1
        long_item: dict | None = None
        long_item_index = 0

        def flush_long_item():
            if long_item is None:
                return
            risky_long = _compose_long_ports(long_item, catalog)
            if risky_long and not _has_intent(lines, long_item_index, catalog):
                findings.append(
                    _port_finding(rel_path, long_item_index + 1, lines[long_item_index], risky_long, "ports")
                )

        while i < len(lines):
            raw = lines[i]
            stripped = _strip_comment(raw).strip()
            if not stripped or _is_comment_line(raw):
                i += 1
                continue
            line_indent = len(raw) - len(raw.lstrip())
            if line_indent <= indent and not stripped.startswith("-"):
                break
            if line_indent < indent:
                break
            if stripped.startswith("-"):
                flush_long_item()
                long_item = None
                body = stripped[1:].strip()
                pair = _YAML_KEY_VALUE.match(body)
                if pair and not body.strip("\"'")[:1].isdigit():
                    long_item = {pair.group(2): pair.group(3).strip()}
                    long_item_index = i
                else:
                    risky = _compose_short_ports(body, catalog)
                    if risky and not _has_intent(lines, i, catalog):
                        findings.append(_port_finding(rel_path, i + 1, raw, risky, "ports"))
            elif long_item is not None:
                pair = _YAML_KEY_VALUE.match(stripped)
                if pair:
                    long_item[pair.group(2)] = pair.group(3).strip()
            i += 1
        flush_long_item()
    return findings


def _split_documents(lines: list[str]) -> list[tuple[int, list[str]]]:
    """Split YAML lines on '---'; returns (first line index, lines) pairs."""
    documents = []
    start = 0
    current: list[str] = []
    for i, line in enumerate(lines):
        if _DOC_SEPARATOR.match(line):
            documents.append((start, current))
            start = i + 1
            current = []
        else:
            current.append(line)
    documents.append((start, current))
    return [(s, doc) for s, doc in documents if any(l.strip() for l in doc)]


def check_kubernetes_ports(rel_path: str, lines: list[str], catalog: RuleCatalog) -> list[Finding]:
    findings = []
    for offset, doc in _split_documents(lines):
        text = "\n".join(doc)
        try:
            if not (safe_search(_K8S_KIND_LINE, text) and safe_search(_K8S_API_VERSION, text)):
                continue
            if safe_search(catalog.opt_out_pattern, text):
                continue
            service_exposed = bool(safe_search(_K8S_SERVICE_TYPE, text))
        except RegexTimeoutError:
            continue
        for j, line in enumerate(doc):
            match = _K8S_PORT_LINE.match(_strip_comment(line))
            if not match:
                continue
            field, port = match.group(1), int(match.group(2))
            if field == "port" and not service_exposed:
                continue
            if port not in catalog.exposed_ports:
                continue
            if _has_intent(doc, j, catalog):
                continue
            findings.append(_port_finding(rel_path, offset + j + 1, line, [port], field))
    return findings


# ============================================================
# Other per-file checks
# ============================================================


def check_secrets(rel_path: str, content: str, catalog: RuleCatalog, deadline: Deadline):
    scan = scan_text(content, catalog, deadline)
    findings = [
        Finding(
            file_path=rel_path,
            kind=FindingKind.HARDCODED_SECRET,
            severity=Severity.BLOCK,
            message=f"{hit.reason}; move it to a secret manager or environment variable",
            line=hit.line,
            evidence_snippet=hit.snippet,
            rule=hit.rule,
            fingerprint=hit.fingerprint,
        )
        for hit in scan.hits
    ]
    return findings, scan


def _matched_lines(compiled, lines: list[str], offset: int = 0, first_only: bool = False) -> list[int]:
    """1-based line numbers (shifted by offset) holding a match outside a comment.

    Raises:
        RegexTimeoutError: The pattern exceeded its time budget.
    """
    line_starts = [0]
    for line in lines:
        line_starts.append(line_starts[-1] + len(line) + 1)
    found = []
    for match in safe_finditer(compiled, "\n".join(lines)):
        index = bisect_right(line_starts, match.start()) - 1
        if index >= len(lines) or _is_comment_line(lines[index]):
            continue
        line_no = offset + index + 1
        if found and found[-1] == line_no:
            continue
        found.append(line_no)
        if first_only:
            break
    return found


def _absent_rule_lines(rel_path: str, rule, lines: list[str]) -> list[int]:
    """Trigger lines of scopes where rule.absent matches nowhere.

    The scope is the file, or each document of a multi-document YAML file.
    """
    if rel_path.lower().endswith(_YAML_SUFFIXES):
        scopes = _split_documents(lines)
    else:
        scopes = [(0, lines)]
    found = []
    for offset, scope in scopes:
        trigger = _matched_lines(rule.compiled, scope, offset, first_only=True)
        if trigger and not _matched_lines(rule.absent, scope, offset, first_only=True):
            found.extend(trigger)
    return found


def check_insecure_defaults(
    rel_path: str, lines: list[str], masked_lines: dict, catalog: RuleCatalog
) -> tuple[list[Finding], bool]:
    """Returns (findings, incomplete)."""
    findings = []
    incomplete = False
    for rule in catalog.insecure_defaults:
        if not rule.applies_to(rel_path):
            continue
        try:
            if rule.absent is None:
                line_numbers = _matched_lines(rule.compiled, lines)
            else:
                line_numbers = _absent_rule_lines(rel_path, rule, lines)
        except RegexTimeoutError:
            incomplete = True
            continue
        for line_no in line_numbers:
            findings.append(
                Finding(
                    file_path=rel_path,
                    kind=FindingKind.INSECURE_DEFAULT,
                    severity=rule.severity,
                    message=rule.reason,
                    line=line_no,
                    evidence_snippet=truncate_snippet(masked_lines.get(line_no, lines[line_no - 1])),
                    rule=rule.name,
                )
            )
    return findings, incomplete


def _module_has_backend(module_dir: Path, catalog: RuleCatalog) -> bool:
    try:
        tf_files = sorted(p for p in module_dir.iterdir() if p.suffix == ".tf" and p.is_file())
    except OSError as e:
        log_infraguard("WARN", f"Auditor could not list {truncate_path(str(module_dir))}: {e}")
        return True
    for tf_file in tf_files:
        try:
            content = read_text_file(tf_file, catalog.max_file_bytes)
        except (OSError, FileTooLargeError) as e:
            log_infraguard("WARN", f"Auditor skipped {truncate_path(str(tf_file))}: {e}")
            continue
        if content and _TF_BACKEND_BLOCK.search(content):
            return True
    return False


def check_state_backends(
    context: SessionContext, tf_files: dict[str, str], catalog: RuleCatalog
) -> list[Finding]:
    """One MissingStateBackend finding per root-module directory.

    Args:
        context: Session context (Terraform must be detected).
        tf_files: Changed root-module files, relative path -> module dir.
        catalog: Compiled rules.
    """
    if not context.has(Stack.TERRAFORM):
        return []
    findings = []
    by_dir: dict[str, str] = {}
    for rel_path in sorted(tf_files):
        by_dir.setdefault(tf_files[rel_path], rel_path)
    for module_dir, rel_path in sorted(by_dir.items()):
        if _module_has_backend(Path(context.root_path) / module_dir, catalog):
            continue
        label = module_dir or "."
        findings.append(
            Finding(
                file_path=rel_path,
                kind=FindingKind.MISSING_STATE_BACKEND,
                severity=Severity.WARN,
                message=(
                    f"Terraform root module '{label}' has no backend block; state will be "
                    "kept locally. Configure a remote backend with encryption and locking."
                ),
                rule="missing-state-backend",
            )
        )
    return findings


# ============================================================
# Entry points
# ============================================================


def _audit_file(
    context: SessionContext,
    rel_path: str,
    content: str,
    catalog: RuleCatalog,
    deadline: Deadline,
) -> tuple[list[Finding], bool]:
    lines = content.splitlines()
    findings, scan = check_secrets(rel_path, content, catalog, deadline)
    incomplete = scan.incomplete

    insecure, timed_out = check_insecure_defaults(rel_path, lines, scan.masked_lines, catalog)
    findings.extend(insecure)
    incomplete = incomplete or timed_out

    if is_dockerfile(rel_path):
        findings.extend(check_dockerfile_ports(rel_path, lines, catalog))
    elif is_compose_file(rel_path):
        findings.extend(check_compose_ports(rel_path, lines, catalog))
    elif rel_path.lower().endswith(_YAML_SUFFIXES):
        findings.extend(check_kubernetes_ports(rel_path, lines, catalog))
    return findings, incomplete


def run_audit(
    context: SessionContext,
    changed_paths,
    catalog: RuleCatalog | None = None,
    timeout: float | None = None,
) -> AuditReport:
    """Audit changed files and return a report.

    Args:
        context: Session context (read only).
        changed_paths: Absolute or root-relative paths of changed files.
        catalog: Compiled rules (defaults to the active catalog).
        timeout: Time budget in seconds (defaults to audit.timeoutSeconds).

    Returns:
        AuditReport with findings sorted Block -> Warn -> Info, then by
        path and line.
    """
    if catalog is None:
        catalog = get_rule_catalog()
    deadline = Deadline(timeout if timeout is not None else catalog.audit_timeout_seconds)
    report = AuditReport()

    rel_paths = sorted({normalize_relative_path(str(p), context.root_path) for p in changed_paths} - {""})
    tf_files: dict[str, str] = {}
    findings: list[Finding] = []

    for rel_path in rel_paths:
        if deadline.expired():
            report.incomplete = True
            log_infraguard("WARN", f"Audit time budget exceeded before {truncate_path(rel_path)}")
            break
        abs_path = Path(rel_path) if os.path.isabs(rel_path) else Path(context.root_path) / rel_path
        try:
            content = read_text_file(abs_path, catalog.max_file_bytes)
        except FileTooLargeError as e:
            log_infraguard("WARN", f"Audit skipped large file {truncate_path(rel_path)}: {e}")
            report.skipped.append(rel_path)
            continue
        except OSError as e:
            log_infraguard("WARN", f"Audit skipped {truncate_path(rel_path)}: {e}")
            report.skipped.append(rel_path)
            continue
        if content is None:
            continue

        file_findings, incomplete = _audit_file(context, rel_path, content, catalog, deadline)
        findings.extend(file_findings)
        report.incomplete = report.incomplete or incomplete
        if is_root_module_file(rel_path) and not os.path.isabs(rel_path):
            tf_files[rel_path] = rel_path.rsplit("/", 1)[0] if "/" in rel_path else ""

    findings.extend(check_state_backends(context, tf_files, catalog))
    report.findings = sorted(set(findings), key=Finding.sort_key)
    return report


def audit(context: SessionContext, changed_paths, catalog: RuleCatalog | None = None) -> list[Finding]:
    """Audit changed files; returns the sorted findings only."""
    return run_audit(context, changed_paths, catalog).findings
