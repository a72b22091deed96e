#!/usr/bin/env python3
"""Line-by-line secret scanning with redaction.

Used by the pre-invocation guard (on proposed content) and the
post-invocation auditor (on final file content), so both stages agree on
what a secret is. A SecretHit never carries the secret itself: the snippet
has every secret span replaced by SECRET_MASK and the fingerprint is a
truncated SHA-256.
"""

import hashlib
from dataclasses import dataclass

from _infra_utils import (
    SECRET_MASK,
    Deadline,
    RegexTimeoutError,
    safe_finditer,
    truncate_snippet,
)

FINGERPRINT_LENGTH = 12


@dataclass(frozen=True)
class SecretHit:
    line: int
    rule: str
    reason: str
    snippet: str
    fingerprint: str


@dataclass
class ScanResult:
    hits: list
    incomplete: bool = False
    masked_lines: dict = None

    def __post_init__(self):
        if self.masked_lines is None:
            self.masked_lines = {}


def fingerprint(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8", errors="replace")).hexdigest()[:FINGERPRINT_LENGTH]


def mask_spans(line: str, spans: list[tuple[int, int]]) -> str:
    """Replace each (start, end) span with SECRET_MASK; overlapping spans merge."""
    merged = []
    for start, end in sorted(spans):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    out = []
    cursor = 0
    for start, end in merged:
        out.append(line[cursor:start])
        out.append(SECRET_MASK)
        cursor = end
    out.append(line[cursor:])
    return "".join(out)


def _is_quoted(line: str, start: int, end: int) -> bool:
    if start == 0 or end >= len(line):
        return False
    return line[start - 1] == line[end] and line[end] in "\"'`"


def scan_text(text: str, catalog, deadline: Deadline | None = None) -> ScanResult:
    """Scan text line by line against catalog.secret_patterns.

    At most one hit is produced per line (the first pattern that matched,
    in catalog order); every match on the line is masked in the snippet.

    Args:
        text: Content to scan.
        catalog: RuleCatalog providing secret patterns and placeholders.
        deadline: Optional time budget; when it expires the scan stops and
            the result is marked incomplete.

    Returns:
        ScanResult with hits in line order.
    """
    result = ScanResult(hits=[])
    if not text or not catalog.secret_patterns:
        return result

    for line_no, line in enumerate(text.splitlines(), start=1):
        if deadline is not None and deadline.expired():
            result.incomplete = True
            break
        spans = []
        first = None
        for pattern in catalog.secret_patterns:
            try:
                matches = safe_finditer(pattern.compiled, line)
            except RegexTimeoutError:
                result.incomplete = True
                continue
            for match in matches:
                start, end = pattern.secret_span(match)
                secret = line[start:end]
                if catalog.is_placeholder(secret, quoted=_is_quoted(line, start, end)):
                    continue
                spans.append((start, end))
                if first is None:
                    first = (pattern, secret)
        if first is None:
            continue
        masked = mask_spans(line, spans)
        result.masked_lines[line_no] = masked
        pattern, secret = first
        result.hits.append(
            SecretHit(
                line=line_no,
                rule=pattern.name,
                reason=pattern.reason,
                snippet=truncate_snippet(masked),
                fingerprint=fingerprint(secret),
            )
        )
    return result
