#!/usr/bin/env python3
"""Compiled rule catalog.

Turns the YAML rules configuration into compiled, ordered rule objects used
by the guard and the auditor. A malformed entry (bad regex, unknown
category/severity, missing fields) is disabled for this run and reported
loudly; every other entry stays active.

Catalog sections:
    placeholders       regexes for allow-listed stand-in values
    references         regexes for unquoted references (var.x, numbers)
    secretPatterns     high-confidence secret regexes (guard + auditor)
    sensitivityRules   path/content policy evaluated by the guard
    exposedPorts       port list and intent-comment regex for the auditor
    insecureDefaults   well-known insecure settings for the auditor; an entry
                       with "absent" fires when its pattern matches and the
                       absent pattern matches nowhere in the file (or
                       in the same document of a multi-document YAML)
    audit / guard      per-invocation time and size budgets
"""

from dataclasses import dataclass, field

import regex

from _infra_models import Category, SensitivityRule, Severity, Stack
from _infra_utils import (
    RegexTimeoutError,
    compile_pattern,
    get_section,
    load_infraguard_config,
    match_path_pattern,
    safe_search,
    warn_loudly,
)

DEFAULT_EXPOSED_PORTS = (22, 3306, 5432, 6379, 9200, 27017)

DEFAULT_INTENT_PATTERN = (
    r"(?i)(?<!(?:\bnot|\bnever|\bno|n't)(?:\s+be)?\s+)"
    r"\b(?:intentional(?:ly)?|deliberate(?:ly)?|exposed\s+on\s+purpose"
    r"|public(?:ly)?[\s-]+(?:exposed|facing|reachable|accessible|endpoint|read\s+replica)"
    r"|infraguard:\s*allow)\b"
)

DEFAULT_OPT_OUT_ANNOTATION = r"infraguard/public-exposure:\s*[\"']?true"

DEFAULT_AUDIT_TIMEOUT_SECONDS = 5.0
DEFAULT_GUARD_TIMEOUT_SECONDS = 2.0
DEFAULT_MAX_FILE_BYTES = 2_000_000


@dataclass(frozen=True)
class SecretPattern:
    """A secret regex. A named group "secret" narrows the masked span."""

    name: str
    compiled: object
    reason: str

    def secret_span(self, match) -> tuple[int, int]:
        if "secret" in self.compiled.groupindex and match.group("secret") is not None:
            return match.span("secret")
        return match.span()


@dataclass(frozen=True)
class InsecureDefaultRule:
    name: str
    compiled: object
    severity: Severity
    reason: str
    files: tuple = ()
    absent: object = None

    def applies_to(self, rel_path: str) -> bool:
        if not self.files:
            return True
        return any(match_path_pattern(rel_path, pattern) for pattern in self.files)


@dataclass
class RuleCatalog:
    """Compiled catalog plus the list of entries disabled for this run."""

    sensitivity_rules: list = field(default_factory=list)
    secret_patterns: list = field(default_factory=list)
    placeholders: list = field(default_factory=list)
    references: list = field(default_factory=list)
    insecure_defaults: list = field(default_factory=list)
    exposed_ports: frozenset = frozenset(DEFAULT_EXPOSED_PORTS)
    intent_pattern: object = None
    opt_out_pattern: object = None
    audit_timeout_seconds: float = DEFAULT_AUDIT_TIMEOUT_SECONDS
    guard_timeout_seconds: float = DEFAULT_GUARD_TIMEOUT_SECONDS
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES
    errors: list = field(default_factory=list)

    @classmethod
    def from_config(cls, config: dict) -> "RuleCatalog":
        catalog = cls()
        catalog._load_value_patterns("placeholders", config.get("placeholders") or [], catalog.placeholders)
        catalog._load_value_patterns("references", config.get("references") or [], catalog.references)
        catalog._load_secret_patterns(config.get("secretPatterns") or [])
        catalog._load_sensitivity_rules(config.get("sensitivityRules") or [])
        catalog._load_insecure_defaults(config.get("insecureDefaults") or [])
        catalog._load_exposed_ports(get_section("exposedPorts", config))
        catalog._load_budgets(config)
        for error in catalog.errors:
            warn_loudly(f"Rule disabled: {error}")
        return catalog

    # ---------- loading ----------

    def _compile(self, section: str, label: str, pattern, flags: int = 0):
        if not isinstance(pattern, str) or not pattern:
            self.errors.append(f"{section}[{label}]: pattern must be a non-empty string")
            return None
        try:
            return compile_pattern(pattern, flags)
        except regex.error as e:
            self.errors.append(f"{section}[{label}]: malformed regex {pattern!r}: {e}")
            return None

    def _load_value_patterns(self, section: str, entries: list, target: list) -> None:
        if not isinstance(entries, list):
            self.errors.append(f"{section}: must be a list")
            return
        for i, pattern in enumerate(entries):
            compiled = self._compile(section, str(i), pattern)
            if compiled is not None:
                target.append(compiled)

    def _load_secret_patterns(self, entries: list) -> None:
        if not isinstance(entries, list):
            self.errors.append("secretPatterns: must be a list")
            return
        for i, entry in enumerate(entries):
            if not isinstance(entry, dict):
                self.errors.append(f"secretPatterns[{i}]: must be a mapping")
                continue
            name = str(entry.get("name") or f"secret-{i}")
            compiled = self._compile("secretPatterns", name, entry.get("pattern"))
            if compiled is None:
                continue
            reason = str(entry.get("reason") or "Hardcoded secret")
            self.secret_patterns.append(SecretPattern(name, compiled, reason))

    def _load_sensitivity_rules(self, entries: list) -> None:
        if not isinstance(entries, list):
            self.errors.append("sensitivityRules: must be a list")
            return
        for i, entry in enumerate(entries):
            if not isinstance(entry, dict):
                self.errors.append(f"sensitivityRules[{i}]: must be a mapping")
                continue
            name = str(entry.get("name") or f"rule-{i}")
            try:
                category = Category(entry.get("category", "Other"))
                severity = Severity(entry.get("severity", "Warn"))
            except ValueError as e:
                self.errors.append(f"sensitivityRules[{name}]: {e}")
                continue
            path_pattern = entry.get("pathPattern") or ""
            if not isinstance(path_pattern, str):
                self.errors.append(f"sensitivityRules[{name}]: pathPattern must be a string")
                continue
            raw_content = entry.get("contentPatterns") or []
            if isinstance(raw_content, str):
                raw_content = [raw_content]
            if not path_pattern and not raw_content:
                self.errors.append(f"sensitivityRules[{name}]: needs pathPattern or contentPatterns")
                continue
            compiled_content = []
            for pattern in raw_content:
                compiled = self._compile("sensitivityRules", name, pattern, regex.MULTILINE)
                if compiled is None:
                    break
                compiled_content.append(compiled)
            else:
                try:
                    stacks = frozenset(Stack.parse(s) for s in entry.get("stacks") or [])
                except (ValueError, AttributeError) as e:
                    self.errors.append(f"sensitivityRules[{name}]: {e}")
                    continue
                self.sensitivity_rules.append(
                    SensitivityRule(
                        name=name,
                        path_pattern=path_pattern,
                        category=category,
                        severity=severity,
                        reason=str(entry.get("reason") or name),
                        content_patterns=tuple(compiled_content),
                        stacks=stacks,
                        index=i,
                    )
                )

    def _load_insecure_defaults(self, entries: list) -> None:
        if not isinstance(entries, list):
            self.errors.append("insecureDefaults: must be a list")
            return
        for i, entry in enumerate(entries):
            if not isinstance(entry, dict):
                self.errors.append(f"insecureDefaults[{i}]: must be a mapping")
                continue
            name = str(entry.get("name") or f"insecure-default-{i}")
            try:
                severity = Severity(entry.get("severity", "Warn"))
            except ValueError as e:
                self.errors.append(f"insecureDefaults[{name}]: {e}")
                continue
            compiled = self._compile("insecureDefaults", name, entry.get("pattern"), regex.MULTILINE)
            if compiled is None:
                continue
            absent = None
            if entry.get("absent") is not None:
                absent = self._compile("insecureDefaults", name, entry.get("absent"), regex.MULTILINE)
                if absent is None:
                    continue
            files = entry.get("files") or []
            if isinstance(files, str):
                files = [files]
            self.insecure_defaults.append(
                InsecureDefaultRule(
                    name=name,
                    compiled=compiled,
                    severity=severity,
                    reason=str(entry.get("reason") or name),
                    files=tuple(str(f) for f in files),
                    absent=absent,
                )
            )

    def _load_exposed_ports(self, section: dict) -> None:
        ports = section.get("ports", DEFAULT_EXPOSED_PORTS)
        try:
            self.exposed_ports = frozenset(int(p) for p in ports)
        except (TypeError, ValueError) as e:
            self.errors.append(f"exposedPorts.ports: {e}")
            self.exposed_ports = frozenset(DEFAULT_EXPOSED_PORTS)
        self.intent_pattern = self._compile(
            "exposedPorts", "intentPattern", section.get("intentPattern", DEFAULT_INTENT_PATTERN)
        ) or compile_pattern(DEFAULT_INTENT_PATTERN)
        self.opt_out_pattern = self._compile(
            "exposedPorts",
            "optOutAnnotation",
            section.get("optOutAnnotation", DEFAULT_OPT_OUT_ANNOTATION),
        ) or compile_pattern(DEFAULT_OPT_OUT_ANNOTATION)

    def _load_budgets(self, config: dict) -> None:
        audit_section = get_section("audit", config)
        guard_section = get_section("guard", config)
        self.audit_timeout_seconds = _positive(
            audit_section.get("timeoutSeconds"), DEFAULT_AUDIT_TIMEOUT_SECONDS
        )
        self.max_file_bytes = int(
            _positive(audit_section.get("maxFileBytes"), DEFAULT_MAX_FILE_BYTES)
        )
        self.guard_timeout_seconds = _positive(
            guard_section.get("timeoutSeconds"), DEFAULT_GUARD_TIMEOUT_SECONDS
        )

    # ---------- queries ----------

    def is_placeholder(self, value: str, quoted: bool | None = None) -> bool:
        """True if value is an allow-listed stand-in rather than a secret.

        Args:
            value: The value, with or without its surrounding quotes.
            quoted: Whether the value was a quoted literal in its source.
                None means "decide from value itself". Reference patterns
                only apply to unquoted values.
        """
        candidate = value.strip()
        if quoted is None:
            quoted = len(candidate) >= 2 and candidate[0] == candidate[-1] and candidate[0] in "\"'`"
        candidate = candidate.strip("\"'`")
        if not candidate:
            return True
        patterns = self.placeholders if quoted else self.placeholders + self.references
        for compiled in patterns:
            try:
                if safe_search(compiled, candidate):
                    return True
            except RegexTimeoutError:
                continue
        return False

    def is_placeholder_content(self, content: str) -> bool:
        """True if every value in content is a placeholder.

        Comment and blank lines are ignored; for "key=value" / "key: value"
        lines only the value is checked. Content without any value line is
        not placeholder content.
        """
        seen_value = False
        for raw in content.splitlines():
            line = raw.strip()
            if not line or line == "---" or line.startswith(("#", "//", ";")):
                continue
            value = line
            for separator in ("=", ":"):
                if separator in line:
                    value = line.split(separator, 1)[1]
                    break
            value = value.strip().rstrip(",")
            if not value:
                continue
            seen_value = True
            if not self.is_placeholder(value):
                return False
        return seen_value


def _positive(value, default: float) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return float(value)
    return default


_catalog_cache: RuleCatalog | None = None
_catalog_source: int | None = None


def get_rule_catalog(config: dict | None = None) -> RuleCatalog:
    """Return the catalog compiled from the active configuration (cached)."""
    global _catalog_cache, _catalog_source
    if config is None:
        config = load_infraguard_config()
    if _catalog_cache is None or _catalog_source != id(config):
        _catalog_cache = RuleCatalog.from_config(config)
        _catalog_source = id(config)
    return _catalog_cache


def reset_catalog_cache() -> None:
    global _catalog_cache, _catalog_source
    _catalog_cache = None
    _catalog_source = None
