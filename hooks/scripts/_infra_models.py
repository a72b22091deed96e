#!/usr/bin/env python3
"""Data model shared by the InfraGuard stages."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Stack(str, Enum):
    """Infrastructure tooling the context detector can recognise."""

    TERRAFORM = "Terraform"
    ANSIBLE = "Ansible"
    CLOUDFORMATION = "CloudFormation/CDK"
    KUBERNETES = "Kubernetes"
    DOCKER = "Docker/Compose"
    GITHUB_ACTIONS = "GitHubActions"
    GITLAB_CI = "GitLabCI"
    JENKINS = "Jenkins"
    AWS = "AWS"
    GCP = "GCP"
    AZURE = "Azure"
    HELM = "Helm"
    PULUMI = "Pulumi"

    @classmethod
    def parse(cls, value: str) -> "Stack":
        """Resolve a stack from its value or member name (case-insensitive)."""
        lowered = value.strip().lower()
        for stack in cls:
            if lowered in (stack.value.lower(), stack.name.lower()):
                return stack
        raise ValueError(f"unknown stack: {value}")


class Severity(str, Enum):
    BLOCK = "Block"
    WARN = "Warn"
    INFO = "Info"

    @property
    def rank(self) -> int:
        """Higher is more severe."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.INFO: 1, Severity.WARN: 2, Severity.BLOCK: 3}


class Category(str, Enum):
    STATE_FILE = "StateFile"
    SECRET_MATERIAL = "SecretMaterial"
    NETWORKING_CONFIG = "NetworkingConfig"
    IAM_POLICY = "IAMPolicy"
    OTHER = "Other"

    @property
    def priority(self) -> int:
        """Higher wins when severity and pattern length tie."""
        return _CATEGORY_PRIORITY[self]


_CATEGORY_PRIORITY = {
    Category.SECRET_MATERIAL: 5,
    Category.STATE_FILE: 4,
    Category.IAM_POLICY: 3,
    Category.NETWORKING_CONFIG: 2,
    Category.OTHER: 1,
}


class FindingKind(str, Enum):
    HARDCODED_SECRET = "HardcodedSecret"
    MISSING_STATE_BACKEND = "MissingStateBackend"
    EXPOSED_PORT = "ExposedPort"
    INSECURE_DEFAULT = "InsecureDefault"


class Outcome(str, Enum):
    ALLOW = "Allow"
    WARN = "Warn"
    BLOCK = "Block"


@dataclass(frozen=True)
class SensitivityRule:
    """Declarative guard policy entry.

    content_patterns are compiled regexes that must ALL match the proposed
    content for the rule to apply. A rule with no path_pattern matches any
    path and relies on its content patterns alone.
    """

    name: str
    path_pattern: str
    category: Category
    severity: Severity
    reason: str
    content_patterns: tuple = ()
    stacks: frozenset = frozenset()
    index: int = 0

    @property
    def specificity(self) -> int:
        return len(self.path_pattern)


@dataclass(frozen=True)
class Finding:
    """One audit result. evidence_snippet never holds a literal secret."""

    file_path: str
    kind: FindingKind
    severity: Severity
    message: str
    line: int | None = None
    evidence_snippet: str = ""
    rule: str = ""
    fingerprint: str = ""

    def sort_key(self) -> tuple:
        return (
            -self.severity.rank,
            self.file_path,
            self.line or 0,
            self.kind.value,
            self.rule,
            self.message,
        )

    def to_dict(self) -> dict[str, Any]:
        result = {
            "filePath": self.file_path,
            "line": self.line,
            "findingKind": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
            "evidenceSnippet": self.evidence_snippet,
        }
        if self.rule:
            result["rule"] = self.rule
        if self.fingerprint:
            result["fingerprint"] = self.fingerprint
        return result

    def format_line(self) -> str:
        location = self.file_path if self.line is None else f"{self.file_path}:{self.line}"
        text = f"[{self.severity.value.upper()}] {self.kind.value} {location}: {self.message}"
        if self.evidence_snippet:
            text += f"\n    {self.evidence_snippet}"
        return text


@dataclass(frozen=True)
class GuardDecision:
    """Result of evaluating one proposed file mutation."""

    outcome: Outcome
    message: str = ""
    category: Category | None = None
    rule: str = ""
    incomplete: bool = False

    @classmethod
    def allow(cls, incomplete: bool = False) -> "GuardDecision":
        return cls(Outcome.ALLOW, incomplete=incomplete)

    @property
    def exit_code(self) -> int:
        if self.outcome == Outcome.BLOCK:
            return 2
        if self.outcome == Outcome.WARN:
            return 1
        return 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": self.outcome.value,
            "message": self.message,
            "category": self.category.value if self.category else None,
            "rule": self.rule,
            "incomplete": self.incomplete,
        }


@dataclass
class AuditReport:
    """Findings of one audit run plus completeness information."""

    findings: list[Finding] = field(default_factory=list)
    incomplete: bool = False
    skipped: list[str] = field(default_factory=list)

    @property
    def max_severity(self) -> Severity | None:
        if not self.findings:
            return None
        return max((f.severity for f in self.findings), key=lambda s: s.rank)

    @property
    def exit_code(self) -> int:
        severity = self.max_severity
        if severity == Severity.BLOCK:
            return 2
        if severity == Severity.WARN or self.incomplete:
            return 1
        return 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "findings": [f.to_dict() for f in self.findings],
            "incomplete": self.incomplete,
            "skipped": list(self.skipped),
        }
