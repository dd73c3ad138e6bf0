"""
Structured Output Parsing
=========================

Extracts the JSON documents the assistant is asked to print:

- findings (discovery / review):  {"findings": [...]}
- review verdict (reviewer):       {"approved": bool, "issues": [...], "summary": str}
- verification (test / QA):        {"summary": {"total", "passed", "failed", "skipped"}}

The contract is advisory. Anything unparseable degrades to a safe default
(no findings, approved, passed) instead of raising.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from autopilot.core.models import FindingCategory, FindingPriority

logger = logging.getLogger(__name__)

DUPLICATE_SIMILARITY = 0.8

FENCED_JSON_PATTERN = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)```", re.IGNORECASE)


# ==========================================================================
# JSON Extraction
# ==========================================================================

def extract_json(output: str, marker: str) -> Optional[Dict[str, Any]]:
    """
    Find the first JSON object in ``output`` that contains ``"<marker>"``.

    Fenced code blocks are tried first, then the widest raw ``{...}``
    span containing the marker key.
    """
    key = f'"{marker}"'

    for block in FENCED_JSON_PATTERN.findall(output):
        if key in block:
            parsed = _loads_object(block.strip())
            if parsed is not None:
                return parsed

    raw = re.search(r"\{[\s\S]*" + re.escape(key) + r"[\s\S]*\}", output)
    if raw:
        parsed = _loads_object(raw.group(0))
        if parsed is not None:
            return parsed

    logger.debug(f"No JSON object with key {marker!r} found in output")
    return None


def _loads_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


# ==========================================================================
# Findings
# ==========================================================================

@dataclass
class ExtractedFinding:
    category: FindingCategory
    priority: FindingPriority
    title: str
    description: str
    file_path: Optional[str] = None


def _bigrams(text: str) -> List[str]:
    return [text[i:i + 2] for i in range(len(text) - 1)]


def similarity(a: str, b: str) -> float:
    """Dice coefficient over character bigrams of two lowercased titles."""
    a, b = a.lower().strip(), b.lower().strip()
    if a == b:
        return 1.0
    first, second = _bigrams(a), _bigrams(b)
    if not first or not second:
        return 0.0

    remaining: Dict[str, int] = {}
    for gram in second:
        remaining[gram] = remaining.get(gram, 0) + 1
    overlap = 0
    for gram in first:
        if remaining.get(gram, 0) > 0:
            overlap += 1
            remaining[gram] -= 1
    return 2.0 * overlap / (len(first) + len(second))


def is_duplicate(title: str, existing_titles: Iterable[str]) -> bool:
    return any(similarity(title, other) >= DUPLICATE_SIMILARITY for other in existing_titles)


def _validate_finding(raw: Any) -> Optional[ExtractedFinding]:
    if not isinstance(raw, dict):
        return None
    title = raw.get("title")
    if not isinstance(title, str) or not title.strip():
        return None
    try:
        category = FindingCategory(raw.get("category"))
    except ValueError:
        return None
    try:
        priority = FindingPriority(raw.get("priority"))
    except ValueError:
        priority = FindingPriority.P2

    description = raw.get("description")
    file_path = raw.get("file_path")
    return ExtractedFinding(
        category=category,
        priority=priority,
        title=title.strip(),
        description=description if isinstance(description, str) else "",
        file_path=file_path if isinstance(file_path, str) and file_path else None,
    )


def extract_findings(
    output: str,
    existing_titles: Iterable[str] = (),
    key: str = "findings",
) -> List[ExtractedFinding]:
    """
    Parse and validate findings, dropping duplicates.

    Args:
        output: Full assistant output
        existing_titles: Titles of open findings to deduplicate against
        key: Marker key holding the findings array

    Returns:
        New findings, also deduplicated among themselves
    """
    document = extract_json(output, key)
    if document is None or not isinstance(document.get(key), list):
        return []

    seen = list(existing_titles)
    findings = []
    for raw in document[key]:
        finding = _validate_finding(raw)
        if finding is None:
            continue
        if is_duplicate(finding.title, seen):
            logger.debug(f"Skipping duplicate finding: {finding.title}")
            continue
        seen.append(finding.title)
        findings.append(finding)
    return findings


# ==========================================================================
# Review Verdict
# ==========================================================================

@dataclass
class ReviewVerdict:
    approved: bool
    feedback: str = ""


def parse_review_output(output: str) -> ReviewVerdict:
    """Missing or malformed verdicts count as approved."""
    document = extract_json(output, "approved")
    if document is None:
        return ReviewVerdict(approved=True)

    issues = document.get("issues")
    if issues:
        feedback = json.dumps(issues, indent=2)
    else:
        summary = document.get("summary")
        feedback = summary if isinstance(summary, str) else ""
    return ReviewVerdict(approved=document.get("approved") is True, feedback=feedback)


REVIEW_ISSUE_PRIORITIES = {"critical": FindingPriority.P1, "major": FindingPriority.P2}


def findings_from_review(output: str) -> List[ExtractedFinding]:
    """Critical and major issues of a rejecting review, as ``bug`` findings."""
    document = extract_json(output, "approved")
    if document is None or document.get("approved") is True:
        return []
    issues = document.get("issues")
    if not isinstance(issues, list):
        return []

    seen: List[str] = []
    findings = []
    for issue in issues:
        if not isinstance(issue, dict):
            continue
        priority = REVIEW_ISSUE_PRIORITIES.get(str(issue.get("severity")).lower())
        description = issue.get("description")
        if priority is None or not isinstance(description, str) or not description.strip():
            continue
        title = description.strip().splitlines()[0][:120]
        if is_duplicate(title, seen):
            continue
        file_path = issue.get("file")
        suggestion = issue.get("suggestion")
        seen.append(title)
        findings.append(ExtractedFinding(
            category=FindingCategory.BUG,
            priority=priority,
            title=title,
            description=description.strip() + (f"\n\n{suggestion}" if isinstance(suggestion, str) and suggestion else ""),
            file_path=file_path if isinstance(file_path, str) and file_path else None,
        ))
    return findings


# ==========================================================================
# Verification Summary
# ==========================================================================

@dataclass
class VerificationSummary:
    passed: bool
    total: Optional[int] = None
    passed_count: Optional[int] = None
    failed_count: Optional[int] = None
    skipped_count: Optional[int] = None
    failures: List[Dict[str, Any]] = field(default_factory=list)
    found: bool = False


def _as_count(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def parse_verification_output(output: str) -> VerificationSummary:
    """Missing or malformed summaries count as passed (``found`` is False)."""
    document = extract_json(output, "summary")
    if document is None or not isinstance(document.get("summary"), dict):
        return VerificationSummary(passed=True)

    summary = document["summary"]
    failed = _as_count(summary.get("failed"))
    failures = document.get("failures")
    return VerificationSummary(
        passed=(failed or 0) == 0,
        total=_as_count(summary.get("total")),
        passed_count=_as_count(summary.get("passed")),
        failed_count=failed,
        skipped_count=_as_count(summary.get("skipped")),
        failures=[f for f in failures if isinstance(f, dict)] if isinstance(failures, list) else [],
        found=True,
    )


def findings_from_failures(
    summary: VerificationSummary,
    existing_titles: Iterable[str] = (),
) -> List[ExtractedFinding]:
    """Turn reported test failures into ``test_failure`` findings."""
    seen = list(existing_titles)
    findings = []
    for failure in summary.failures:
        name = failure.get("test_name")
        if not isinstance(name, str) or not name.strip():
            continue
        title = f"Failing test: {name.strip()}"
        if is_duplicate(title, seen):
            continue
        try:
            priority = FindingPriority(failure.get("priority"))
        except ValueError:
            priority = FindingPriority.P1

        description = "\n\n".join(
            str(failure[key]) for key in ("error_message", "suggested_fix") if failure.get(key)
        )
        file_path = failure.get("file_path")
        seen.append(title)
        findings.append(ExtractedFinding(
            category=FindingCategory.TEST_FAILURE,
            priority=priority,
            title=title,
            description=description,
            file_path=file_path if isinstance(file_path, str) and file_path else None,
        ))
    return findings
