"""Fingerprinting and field extraction for raw findings.

``issue_hash`` identifies the underlying condition; ``line_code_hash``
identifies the first caller frame outside the monitor itself, so a single
line can be suppressed without silencing the whole file.
"""

import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

from watchpost.models.enums import Severity
from watchpost.models.finding import RawFinding

_IPV4 = re.compile(r"^(\d{1,3}\.){3}\d{1,3}$")
_IP_IN_TEXT = re.compile(r"IP\s+([0-9.]+)")

_CRITICAL_WORDS = ("malware", "backdoor", "eval")
_HIGH_WORDS = ("brute force", "admin", "wp-config")

# keyword in title -> issue_type, first match wins
_TYPE_KEYWORDS = (
    ("redirect", "redirect"),
    ("login", "login"),
    ("file", "file_change"),
    ("malware", "malware"),
    ("brute", "brute_force"),
)


def _digest(data: dict[str, Any]) -> str:
    encoded = json.dumps(data, sort_keys=True, default=str, ensure_ascii=False)
    return hashlib.md5(encoded.encode("utf-8")).hexdigest()


def extract_title(finding: RawFinding) -> str:
    if finding.title:
        return finding.title
    if finding.message:
        return finding.message
    target = finding.redirect_target
    if target:
        host = urlsplit(target).hostname or target
        return f"Suspicious Redirect to {host}"
    username = getattr(finding, "username", None)
    if username:
        return f"Security Issue: {username}"
    return "Unknown Issue"


def extract_details(finding: RawFinding) -> str | None:
    if finding.details is None:
        return None
    if isinstance(finding.details, str):
        return finding.details
    return json.dumps(finding.details, ensure_ascii=False, default=str)


def extract_description(finding: RawFinding) -> str:
    if finding.description:
        return finding.description
    target = finding.redirect_target
    if target:
        method = getattr(finding, "method", None)
        status = getattr(finding, "status", None)
        text = f"Redirect from {getattr(finding, 'from_url', None) or 'unknown'} to {target}"
        if method:
            text += f" via {method}"
        if status:
            text += f" (HTTP {status})"
        return text
    return extract_details(finding) or ""


def extract_ip_address(finding: RawFinding) -> str | None:
    """Explicit ip, else an IPv4-looking value inside ``details``."""
    if finding.ip_address:
        return finding.ip_address
    details = finding.details
    if isinstance(details, dict):
        if details.get("ip_address"):
            return str(details["ip_address"])
        for value in details.values():
            if isinstance(value, str) and _IPV4.match(value):
                return value
    elif isinstance(details, str):
        match = _IP_IN_TEXT.search(details)
        if match:
            return match.group(1)
    return None


def infer_severity(title: str) -> Severity:
    lowered = title.lower()
    if any(word in lowered for word in _CRITICAL_WORDS):
        return Severity.CRITICAL
    if any(word in lowered for word in _HIGH_WORDS):
        return Severity.HIGH
    return Severity.MEDIUM


def resolve_severity(finding: RawFinding) -> Severity:
    return finding.severity or infer_severity(extract_title(finding))


def resolve_issue_type(finding: RawFinding) -> str:
    if finding.issue_type:
        return finding.issue_type
    lowered = extract_title(finding).lower()
    for keyword, issue_type in _TYPE_KEYWORDS:
        if keyword in lowered:
            return issue_type
    return "unknown"


def normalize_backtrace(backtrace: list[dict[str, Any]] | str | None) -> list[dict[str, Any]]:
    if not backtrace:
        return []
    if isinstance(backtrace, str):
        try:
            decoded = json.loads(backtrace)
        except ValueError:
            return []
        return decoded if isinstance(decoded, list) else []
    return backtrace


def issue_hash(finding: RawFinding, identity: dict[str, Any] | None = None) -> str:
    """Stable 32-char fingerprint over issuer, kind and the identifying fields."""
    return _digest(
        {
            "issuer": finding.issuer_name,
            "kind": finding.kind,
            "identity": identity if identity is not None else finding.identity(),
        }
    )


def line_code_hash(
    finding: RawFinding,
    exclude_paths: list[str],
    identity: dict[str, Any] | None = None,
) -> str:
    """Hash of the first backtrace frame not under ``exclude_paths``.

    Falls back to the issue hash when no usable frame exists.
    """
    for frame in normalize_backtrace(finding.backtrace):
        if not isinstance(frame, dict):
            continue
        file_name = frame.get("file")
        line = frame.get("line")
        if not file_name or line is None:
            continue
        if any(path in file_name for path in exclude_paths):
            continue
        return _digest({"file": file_name, "line": line, "issuer": finding.issuer_name})
    return issue_hash(finding, identity)


def extract_metadata(finding: RawFinding) -> dict[str, Any]:
    """Variant-specific fields plus free-form extras, for the issue's metadata column."""
    common = set(RawFinding.model_fields) - {"kind", "metadata"}
    data = finding.model_dump(mode="json", exclude=common, exclude_none=True)
    extras = data.pop("metadata", {}) or {}
    return {**extras, **data}


@dataclass
class ExtractedFinding:
    """The normalized fields of a finding that the pipeline stores and matches on."""

    issue_hash: str
    line_code_hash: str
    issuer_name: str
    issue_type: str
    severity: Severity
    title: str
    description: str
    details: str | None
    file_path: str | None
    ip_address: str | None
    user_agent: str | None
    content_hash: str | None
    backtrace: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


def extract(
    finding: RawFinding,
    exclude_paths: list[str],
    identity: dict[str, Any] | None = None,
) -> ExtractedFinding:
    return ExtractedFinding(
        issue_hash=issue_hash(finding, identity),
        line_code_hash=line_code_hash(finding, exclude_paths, identity),
        issuer_name=finding.issuer_name,
        issue_type=resolve_issue_type(finding),
        severity=resolve_severity(finding),
        title=extract_title(finding)[:255],
        description=extract_description(finding),
        details=extract_details(finding),
        file_path=finding.file_path,
        ip_address=extract_ip_address(finding),
        user_agent=finding.user_agent,
        content_hash=finding.content_hash,
        backtrace=normalize_backtrace(finding.backtrace),
        metadata=extract_metadata(finding),
    )
