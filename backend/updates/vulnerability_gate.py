"""
Vulnerability gate.

Pure decision function: given the scan of a freshly pulled image, the
configured criterion, and (for ``more_than_current``) the scan of the image
the container runs today, decide whether the new image may be promoted.
No I/O happens here.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, Optional

SEVERITIES = ('critical', 'high', 'medium', 'low', 'negligible', 'unknown')


class VulnerabilityCriterion(str, Enum):
    NEVER = "never"                          # never block
    ANY = "any"                              # block on any finding
    CRITICAL_HIGH = "critical_high"          # block on critical or high
    CRITICAL = "critical"                    # block on critical only
    MORE_THAN_CURRENT = "more_than_current"  # block if worse than running image


@dataclass(frozen=True)
class ScanSummary:
    """Vulnerability counts for one image from one (or a combination of) scanner."""
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    negligible: int = 0
    unknown: int = 0
    scanner: str = "unknown"
    scanned_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total(self) -> int:
        return sum(getattr(self, severity) for severity in SEVERITIES)

    def counts(self) -> Dict[str, int]:
        return {severity: getattr(self, severity) for severity in SEVERITIES}

    def to_dict(self) -> dict:
        return {
            **self.counts(),
            'total': self.total,
            'scanner': self.scanner,
            'scannedAt': self.scanned_at.isoformat(),
        }

    def describe(self) -> str:
        parts = [f"{count} {severity}" for severity, count in self.counts().items() if count]
        return ", ".join(parts) if parts else "no vulnerabilities"


def combine_summaries(summaries: Iterable[ScanSummary]) -> Optional[ScanSummary]:
    """
    Merge results from several scanners.

    Scanners overlap heavily, so counts are not summed: each tier takes the
    worst (highest) count any scanner reported.
    """
    summaries = list(summaries)
    if not summaries:
        return None
    if len(summaries) == 1:
        return summaries[0]
    merged = {severity: max(getattr(s, severity) for s in summaries) for severity in SEVERITIES}
    return ScanSummary(
        **merged,
        scanner="+".join(s.scanner for s in summaries),
        scanned_at=max(s.scanned_at for s in summaries),
    )


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: str = ""

    @classmethod
    def allow(cls) -> 'GateDecision':
        return cls(allowed=True)

    @classmethod
    def block(cls, reason: str) -> 'GateDecision':
        return cls(allowed=False, reason=reason)


def evaluate(
    criterion: VulnerabilityCriterion,
    new_scan: ScanSummary,
    current_scan: Optional[ScanSummary] = None
) -> GateDecision:
    """
    Decide allow/block.

    ``more_than_current`` compares total finding counts. Without a scan of
    the running image there is nothing to compare against and the image is
    allowed.
    """
    criterion = VulnerabilityCriterion(criterion)

    if criterion == VulnerabilityCriterion.NEVER:
        return GateDecision.allow()

    if criterion == VulnerabilityCriterion.ANY:
        if new_scan.total > 0:
            return GateDecision.block(f"Found {new_scan.total} vulnerabilities ({new_scan.describe()})")
        return GateDecision.allow()

    if criterion == VulnerabilityCriterion.CRITICAL_HIGH:
        if new_scan.critical or new_scan.high:
            return GateDecision.block(
                f"Found {new_scan.critical} critical and {new_scan.high} high severity vulnerabilities"
            )
        return GateDecision.allow()

    if criterion == VulnerabilityCriterion.CRITICAL:
        if new_scan.critical:
            return GateDecision.block(f"Found {new_scan.critical} critical vulnerabilities")
        return GateDecision.allow()

    # MORE_THAN_CURRENT
    if current_scan is None:
        return GateDecision.allow()
    if new_scan.total > current_scan.total:
        return GateDecision.block(
            f"New image has more vulnerabilities than current "
            f"({new_scan.total} vs {current_scan.total})"
        )
    return GateDecision.allow()
