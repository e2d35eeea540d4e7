"""Shape checks for WebCite verification payloads.

Provides:
- Allowed values for citation stance, verdict result and claim-group summary
- Validation of Citation, Verdict, ClaimGroup and VerifyResult dicts
- Coercion of citation payloads that arrive JSON-encoded

Validators never raise; they return a list of error strings (empty = valid)
so callers can log drift in the upstream contract without dropping results.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

logger = logging.getLogger("webcite.result_schema")

STANCES = ("supports", "contradicts", "partially_supports", "neutral", "irrelevant")
VERDICT_RESULTS = ("supported", "partially_supported", "contradicted", "mixed", "unverifiable")
STANCE_SUMMARIES = ("supported", "contradicted", "mixed", "unverifiable")

_CITATION_REQUIRED = ("id", "title", "url", "snippet")
_CLAIM_GROUP_REQUIRED = ("claim_id", "claim_index", "claim", "stance_summary", "citation_count")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_citation(citation: Any, prefix: str = "citation") -> List[str]:
    """Validate a Citation dict."""
    if not isinstance(citation, dict):
        return [f"{prefix}: expected object, got {type(citation).__name__}"]

    errors = []
    for key in _CITATION_REQUIRED:
        if key not in citation:
            errors.append(f"{prefix}: missing '{key}'")

    stance = citation.get("stance")
    if stance is not None and stance not in STANCES:
        errors.append(f"{prefix}: unknown stance '{stance}'")

    for key in ("stance_confidence", "credibility_score"):
        value = citation.get(key)
        if value is not None and not _is_number(value):
            errors.append(f"{prefix}: '{key}' must be a number")

    return errors


def validate_verdict(verdict: Any, prefix: str = "verdict") -> List[str]:
    """Validate a Verdict dict."""
    if not isinstance(verdict, dict):
        return [f"{prefix}: expected object, got {type(verdict).__name__}"]

    errors = []
    result = verdict.get("result")
    if result not in VERDICT_RESULTS:
        errors.append(f"{prefix}: unknown result {result!r}")
    if not _is_number(verdict.get("confidence")):
        errors.append(f"{prefix}: 'confidence' must be a number")
    if not isinstance(verdict.get("summary"), str):
        errors.append(f"{prefix}: 'summary' must be a string")
    if not isinstance(verdict.get("stance_breakdown"), dict):
        errors.append(f"{prefix}: 'stance_breakdown' must be an object")

    for key in ("key_findings", "corrections", "unverified_claims"):
        value = verdict.get(key)
        if value is not None and not isinstance(value, list):
            errors.append(f"{prefix}: '{key}' must be a list")

    return errors


def validate_claim_group(group: Any, prefix: str = "claim_group") -> List[str]:
    """Validate a ClaimGroup dict, including citation_count == len(citations)."""
    if not isinstance(group, dict):
        return [f"{prefix}: expected object, got {type(group).__name__}"]

    errors = []
    for key in _CLAIM_GROUP_REQUIRED:
        if key not in group:
            errors.append(f"{prefix}: missing '{key}'")

    summary = group.get("stance_summary")
    if summary is not None and summary not in STANCE_SUMMARIES:
        errors.append(f"{prefix}: unknown stance_summary '{summary}'")

    citations = group.get("citations")
    if citations is not None:
        if not isinstance(citations, list):
            errors.append(f"{prefix}: 'citations' must be a list")
        else:
            for i, citation in enumerate(citations):
                errors.extend(validate_citation(citation, f"{prefix}.citations[{i}]"))
            count = group.get("citation_count")
            # Empty inline list means citations were not populated
            if citations and _is_number(count) and count != len(citations):
                errors.append(
                    f"{prefix}: citation_count {count} != {len(citations)} inline citations"
                )

    if group.get("verdict") is not None:
        errors.extend(validate_verdict(group["verdict"], f"{prefix}.verdict"))

    return errors


def check_total_results(result: Dict[str, Any]) -> List[str]:
    """Check totalResults against the sum of claim-group citation counts."""
    groups = result.get("claim_groups") or []
    counts = [g.get("citation_count") for g in groups if isinstance(g, dict)]
    if not all(_is_number(c) for c in counts):
        return []
    expected = sum(counts)
    if result.get("totalResults") != expected:
        return [f"totalResults {result.get('totalResults')!r} != sum of citation_count {expected}"]
    return []


def validate_verify_result(result: Any) -> List[str]:
    """Validate a VerifyResult dict."""
    if not isinstance(result, dict):
        return [f"result: expected object, got {type(result).__name__}"]

    errors = []
    groups = result.get("claim_groups")
    if not isinstance(groups, list):
        errors.append("result: 'claim_groups' must be a list")
        groups = []
    for i, group in enumerate(groups):
        errors.extend(validate_claim_group(group, f"claim_groups[{i}]"))

    if not _is_number(result.get("totalResults")):
        errors.append("result: 'totalResults' must be a number")
    if not isinstance(result.get("thread_id"), str):
        errors.append("result: 'thread_id' must be a string")

    credit_usage = result.get("credit_usage")
    if credit_usage is not None and not isinstance(credit_usage, dict):
        errors.append("result: 'credit_usage' must be an object")

    return errors


def coerce_citations(value: Any) -> List[Any]:
    """Return citations as a list; the detail endpoint may JSON-encode them."""
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            logger.warning("Citation payload is not valid JSON (%d chars)", len(value))
            return []
        if isinstance(decoded, list):
            return decoded
    return []
