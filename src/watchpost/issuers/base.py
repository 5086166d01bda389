"""Issuer contract: the interface every detector implements.

Issuers only produce findings; dispatch, deduplication, suppression and
notification all happen in the pipeline behind :class:`Dispatcher`.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from watchpost.models.enums import IssuerKind, Severity
from watchpost.models.finding import IssuerErrorFinding, RawFinding, parse_finding

if TYPE_CHECKING:
    from watchpost.events.bus import EventBus

logger = logging.getLogger(__name__)


class Issuer(ABC):
    """Base detector.

    Options understood by every issuer (via ``configure``): ``enabled``,
    ``priority``, ``max_alerts_per_hour`` and ``notify_on_redetection``.
    Lower ``priority`` values run first in scheduled passes.
    """

    name: str = "base"
    kind: IssuerKind = IssuerKind.SCAN
    priority: int = 10
    # high-volume issuers fall back to the global max_alerts_per_hour cap
    rate_limited: bool = False
    notify_on_redetection: bool = False

    def __init__(self, options: dict[str, Any] | None = None):
        self.enabled = True
        self.options: dict[str, Any] = {}
        self.configure(options or {})

    def configure(self, options: dict[str, Any]) -> None:
        self.options.update(options)
        if "enabled" in options:
            self.enabled = bool(options["enabled"])
        if "priority" in options:
            self.priority = int(options["priority"])
        if "notify_on_redetection" in options:
            self.notify_on_redetection = bool(options["notify_on_redetection"])

    def is_enabled(self) -> bool:
        return self.enabled

    @property
    def max_alerts_per_hour(self) -> int | None:
        value = self.options.get("max_alerts_per_hour")
        return int(value) if value is not None else None

    @abstractmethod
    async def detect(self) -> list[RawFinding]:
        """Return the findings observed since the last call."""
        ...

    def fingerprint(self, finding: RawFinding) -> dict[str, Any] | None:
        """Override to choose the identifying fields; None uses ``finding.identity()``."""
        return None

    def finding(self, **fields: Any) -> RawFinding:
        """Build a finding of the right variant attributed to this issuer."""
        return parse_finding(fields, issuer_name=self.name)

    def error_finding(self, exc: Exception) -> IssuerErrorFinding:
        """Low-severity self-report for an exception raised while detecting."""
        error = f"{type(exc).__name__}: {exc}"
        return IssuerErrorFinding(
            issuer_name=self.name,
            issue_type=f"{self.name}_error"[:50],
            severity=Severity.LOW,
            title=f"Issuer {self.name} failed"[:255],
            description=error,
            error=error,
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r} kind={self.kind}>"


class ScanIssuer(Issuer):
    """Polled by the dispatcher on a schedule; may take longer per call."""

    kind = IssuerKind.SCAN


class TriggerIssuer(Issuer):
    """Reacts to host events and pushes findings inline.

    Work done in ``emit`` callers runs inside a host request, so it must stay
    bounded. ``detect`` returns nothing: triggers do not poll.
    """

    kind = IssuerKind.TRIGGER

    def __init__(self, options: dict[str, Any] | None = None):
        super().__init__(options)
        self._bus: EventBus | None = None

    def bind(self, bus: EventBus) -> None:
        self._bus = bus

    async def emit(self, finding: RawFinding | dict[str, Any]) -> list[Any]:
        """Publish a finding on the bus. Never raises."""
        if not self.is_enabled():
            return []
        if self._bus is None:
            logger.warning("Issuer %s emitted a finding before being bound to a bus", self.name)
            return []
        if isinstance(finding, dict):
            try:
                finding = self.finding(**finding)
            except ValueError:
                logger.exception("Issuer %s emitted an invalid finding payload", self.name)
                return []
        return await self._bus.publish(finding)

    async def detect(self) -> list[RawFinding]:
        return []


class HybridIssuer(TriggerIssuer):
    """Registers candidates from host events and promotes them on the next scan.

    Candidates live in process memory until the next ``detect`` pass; each is
    passed to ``validate`` which returns a finding or None to discard it.
    """

    kind = IssuerKind.HYBRID
    max_candidates: int = 500

    def __init__(self, options: dict[str, Any] | None = None):
        super().__init__(options)
        self._candidates: list[dict[str, Any]] = []

    def register_candidate(self, candidate: dict[str, Any]) -> None:
        if not self.is_enabled():
            return
        self._candidates.append(candidate)
        if len(self._candidates) > self.max_candidates:
            dropped = len(self._candidates) - self.max_candidates
            self._candidates = self._candidates[dropped:]
            logger.warning("Issuer %s dropped %d oldest candidates", self.name, dropped)

    @property
    def pending_candidates(self) -> int:
        return len(self._candidates)

    @abstractmethod
    def validate(self, candidate: dict[str, Any]) -> RawFinding | None:
        ...

    async def detect(self) -> list[RawFinding]:
        """Promote this pass's candidates.

        A candidate whose ``validate`` raises is replaced by an error finding;
        the rest of the batch is still promoted.
        """
        candidates, self._candidates = self._candidates, []
        findings = []
        for candidate in candidates:
            try:
                finding = self.validate(candidate)
            except Exception as exc:
                logger.exception("Issuer %s could not validate candidate %r", self.name, candidate)
                findings.append(self.error_finding(exc))
                continue
            if finding is not None:
                findings.append(finding)
        return findings
