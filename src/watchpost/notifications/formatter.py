"""Render an issue into channel-neutral message text and context."""

from typing import Any

from watchpost.db.models.issue import IssueRow

_SEVERITY_MARK = {
    "critical": "🔴",
    "high": "🟠",
    "medium": "🟡",
    "low": "🟢",
}


def build_context(issue: IssueRow) -> dict[str, Any]:
    return {
        "issue_id": issue.id,
        "issue_hash": issue.issue_hash,
        "title": issue.title,
        "severity": issue.severity,
        "issuer_name": issue.issuer_name,
        "issue_type": issue.issue_type,
        "detection_count": issue.detection_count,
        "file_path": issue.file_path,
        "ip_address": issue.ip_address,
    }


def build_message(issue: IssueRow, site_url: str | None = None) -> tuple[str, dict[str, Any]]:
    """Return ``(message, context)`` for a notification about ``issue``."""
    mark = _SEVERITY_MARK.get(issue.severity, "⚪")
    lines = [
        f"{mark} {issue.title}",
        f"Severity: {str(issue.severity).upper()}",
        f"Issuer: {issue.issuer_name} ({issue.issue_type})",
    ]
    if issue.description and issue.description != issue.title:
        lines.append(issue.description[:500])
    if issue.file_path:
        lines.append(f"File: {issue.file_path}")
    if issue.ip_address:
        lines.append(f"IP: {issue.ip_address}")
    if issue.detection_count > 1:
        lines.append(f"Detected {issue.detection_count} times, last at {issue.last_detected:%Y-%m-%d %H:%M:%S} UTC")
    if site_url:
        lines.append(f"Site: {site_url}")
    lines.append(f"Issue #{issue.id}")
    return "\n".join(lines), build_context(issue)
