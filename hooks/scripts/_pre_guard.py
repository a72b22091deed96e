#!/usr/bin/env python3
"""Pre-Invocation Guard.

Decides Allow / Warn / Block for a proposed file mutation before the host
tool performs it. Side-effect free: evaluate() may be called any number of
times for the same session.

Rule resolution order when several rules match:
    1. Highest severity (Block > Warn > Info)
    2. Longest path_pattern (most specific)
    3. Category priority (SecretMaterial > StateFile > IAMPolicy >
       NetworkingConfig > Other)
    4. Earliest in the catalog

Proposed content is also run through the same secret catalog as the
auditor; any hit is a Block (SecretMaterial). For an in-place edit only
secrets the edit introduces count; ones already in the file do not.
"""

from pathlib import Path

import regex

from _infra_models import Category, GuardDecision, Outcome, SensitivityRule, Severity
from _infra_utils import (
    Deadline,
    FileTooLargeError,
    RegexTimeoutError,
    log_infraguard,
    match_path_pattern,
    normalize_relative_path,
    read_text_file,
    safe_search,
    truncate_path,
)
from _rule_catalog import RuleCatalog, get_rule_catalog
from _secret_scanner import scan_text
from _session_store import SessionContext

# Categories that stack detection can never switch off.
_ALWAYS_ON_CATEGORIES = frozenset({Category.SECRET_MATERIAL, Category.STATE_FILE})

_SECRET_DATA_HEADER = regex.compile(r"^(?:data|stringData):\s*$")


def _rule_applies_to_stacks(rule: SensitivityRule, context: SessionContext) -> bool:
    if not rule.stacks or rule.category in _ALWAYS_ON_CATEGORIES:
        return True
    if context.incomplete or not context.populated:
        # Partial detection must not silence a rule.
        return True
    return bool(rule.stacks & context.detected_stacks)


def _content_matches(rule: SensitivityRule, content: str) -> bool:
    """All of the rule's content patterns must match.

    Raises:
        RegexTimeoutError: A pattern exceeded its time budget.
    """
    return all(safe_search(compiled, content) for compiled in rule.content_patterns)


def _secret_data_lines(content: str) -> str | None:
    """Lines nested under a manifest's data:/stringData: keys, if any."""
    collected = []
    inside = False
    for line in content.splitlines():
        if _SECRET_DATA_HEADER.match(line):
            inside = True
            continue
        if inside:
            if line.strip() and not line[0].isspace():
                inside = False
                continue
            collected.append(line)
    if not collected:
        return None
    return "\n".join(collected)


def is_placeholder_only(content: str | None, catalog: RuleCatalog) -> bool:
    """True if every secret-bearing value in content is an allow-listed placeholder."""
    if not content:
        return False
    data_block = _secret_data_lines(content)
    if data_block is not None:
        return catalog.is_placeholder_content(data_block)
    return catalog.is_placeholder_content(content)


def _read_existing(path: Path, catalog: RuleCatalog) -> str | None:
    try:
        return read_text_file(path, catalog.max_file_bytes)
    except FileNotFoundError:
        return None
    except (OSError, FileTooLargeError) as e:
        log_infraguard("WARN", f"Guard could not read {truncate_path(str(path))}: {e}")
        return None


def _winner_key(rule: SensitivityRule, severity: Severity) -> tuple:
    return (severity.rank, rule.specificity, rule.category.priority, -rule.index)


def evaluate(
    context: SessionContext,
    proposed_path: str,
    proposed_content: str | None = None,
    catalog: RuleCatalog | None = None,
    deadline: Deadline | None = None,
    baseline_content: str | None = None,
) -> GuardDecision:
    """Evaluate a proposed write against the sensitivity rules.

    Args:
        context: Session context (read only).
        proposed_path: Absolute or root-relative target path.
        proposed_content: Full content after the mutation, when known. When
            omitted, content rules are checked against the existing file.
        catalog: Compiled rules (defaults to the active catalog).
        deadline: Time budget (defaults to the catalog's guard budget).
        baseline_content: Current file content for an in-place edit. Secrets
            already in it are not reported again; path and content rules
            still see the full proposed content.

    Returns:
        GuardDecision. Block means the action must not proceed.
    """
    if catalog is None:
        catalog = get_rule_catalog()
    if deadline is None:
        deadline = Deadline(catalog.guard_timeout_seconds)

    rel_path = normalize_relative_path(proposed_path, context.root_path)
    if not rel_path:
        return GuardDecision.allow()

    content = proposed_content
    if content is None:
        content = _read_existing(Path(context.root_path) / rel_path, catalog)

    incomplete = False
    matched: list[tuple[SensitivityRule, Severity, str]] = []

    for rule in catalog.sensitivity_rules:
        if deadline.expired():
            incomplete = True
            break
        if not _rule_applies_to_stacks(rule, context):
            continue
        if rule.path_pattern and not match_path_pattern(rel_path, rule.path_pattern):
            continue
        if rule.content_patterns:
            if not content:
                continue
            try:
                if not _content_matches(rule, content):
                    continue
            except RegexTimeoutError:
                incomplete = True
                continue

        severity = rule.severity
        message = f"{rule.reason}: {rel_path}"
        if (
            rule.category == Category.SECRET_MATERIAL
            and severity == Severity.BLOCK
            and is_placeholder_only(content, catalog)
        ):
            severity = Severity.WARN
            message = f"{rule.reason}: {rel_path} (placeholder values only)"
        matched.append((rule, severity, message))

    if content:
        scan = scan_text(content, catalog, deadline)
        incomplete = incomplete or scan.incomplete
        hits = scan.hits
        if hits and baseline_content:
            known = {h.fingerprint for h in scan_text(baseline_content, catalog, deadline).hits}
            hits = [h for h in hits if h.fingerprint not in known]
        if hits:
            hit = hits[0]
            secret_rule = SensitivityRule(
                name=f"secret-scan:{hit.rule}",
                path_pattern="",
                category=Category.SECRET_MATERIAL,
                severity=Severity.BLOCK,
                reason=hit.reason,
                index=len(catalog.sensitivity_rules),
            )
            extra = f" (+{len(hits) - 1} more)" if len(hits) > 1 else ""
            message = (
                f"{hit.reason} in proposed content for {rel_path}, "
                f"line {hit.line}: {hit.snippet}{extra}"
            )
            matched.append((secret_rule, Severity.BLOCK, message))

    if not matched:
        if incomplete:
            return GuardDecision(
                Outcome.WARN,
                f"Evaluation incomplete for {rel_path}; rules could not all be checked",
                incomplete=True,
            )
        return GuardDecision.allow()

    rule, severity, message = max(matched, key=lambda m: _winner_key(m[0], m[1]))
    if severity == Severity.BLOCK:
        outcome = Outcome.BLOCK
    elif severity == Severity.WARN or incomplete:
        outcome = Outcome.WARN
    else:
        outcome = Outcome.ALLOW
    return GuardDecision(
        outcome,
        message,
        category=rule.category,
        rule=rule.name,
        incomplete=incomplete,
    )
