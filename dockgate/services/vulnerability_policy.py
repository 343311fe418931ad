"""Vulnerability policy evaluation for update gating.

Maps a vulnerability criteria, the combined scan summary of a freshly pulled
image and, optionally, the summary of the image currently running to a
block/allow decision. Everything in this module is pure.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

# Severities that count towards blocking. Negligible and unknown findings are
# recorded but never block an update.
BLOCKING_SEVERITIES = ("critical", "high", "medium", "low")


class VulnerabilityCriteria(str, Enum):
    """Policy controlling whether a scan result blocks a container swap."""

    NEVER = "never"
    ANY = "any"
    CRITICAL_HIGH = "critical_high"
    CRITICAL = "critical"
    MORE_THAN_CURRENT = "more_than_current"


@dataclass(frozen=True)
class ScanSummary:
    """Severity histogram for one image."""

    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    negligible: int = 0
    unknown: int = 0

    @property
    def total(self) -> int:
        """Number of findings at blocking severities."""
        return sum(getattr(self, severity) for severity in BLOCKING_SEVERITIES)

    def to_dict(self) -> dict[str, int]:
        return {
            "critical": self.critical,
            "high": self.high,
            "medium": self.medium,
            "low": self.low,
            "negligible": self.negligible,
            "unknown": self.unknown,
        }

    def describe(self) -> str:
        return (
            f"{self.critical} critical, {self.high} high, "
            f"{self.medium} medium, {self.low} low"
        )


@dataclass(frozen=True)
class PolicyDecision:
    blocked: bool
    reason: str


def combine_scan_summaries(summaries: Iterable[ScanSummary]) -> ScanSummary:
    """Combine summaries from several scanners by per-severity maximum.

    Independent scanners usually report the same vulnerability, so summing
    would double-count it.
    """
    combined = ScanSummary()
    for summary in summaries:
        combined = ScanSummary(
            critical=max(combined.critical, summary.critical),
            high=max(combined.high, summary.high),
            medium=max(combined.medium, summary.medium),
            low=max(combined.low, summary.low),
            negligible=max(combined.negligible, summary.negligible),
            unknown=max(combined.unknown, summary.unknown),
        )
    return combined


def evaluate(
    criteria: VulnerabilityCriteria,
    summary: ScanSummary,
    baseline: ScanSummary | None = None,
) -> PolicyDecision:
    """Decide whether an update must be blocked.

    Args:
        criteria: Configured vulnerability criteria
        summary: Combined scan summary of the new image
        baseline: Combined scan summary of the running image, if known

    Returns:
        PolicyDecision with a human-readable reason
    """
    criteria = VulnerabilityCriteria(criteria)

    if criteria is VulnerabilityCriteria.NEVER:
        return PolicyDecision(False, "Vulnerability criteria 'never' does not block updates")

    if criteria is VulnerabilityCriteria.ANY:
        if summary.total > 0:
            return PolicyDecision(
                True, f"Found {summary.total} vulnerabilities ({summary.describe()})"
            )
        return PolicyDecision(False, "No vulnerabilities found")

    if criteria is VulnerabilityCriteria.CRITICAL_HIGH:
        if summary.critical > 0 or summary.high > 0:
            return PolicyDecision(
                True,
                f"Found {summary.critical} critical and {summary.high} high severity vulnerabilities",
            )
        return PolicyDecision(False, "No critical or high severity vulnerabilities found")

    if criteria is VulnerabilityCriteria.CRITICAL:
        if summary.critical > 0:
            return PolicyDecision(True, f"Found {summary.critical} critical vulnerabilities")
        return PolicyDecision(False, "No critical vulnerabilities found")

    # more_than_current
    if baseline is None:
        return PolicyDecision(
            False, "No baseline scan available for the current image; update not blocked"
        )

    increased = [
        severity
        for severity in BLOCKING_SEVERITIES
        if getattr(summary, severity) > getattr(baseline, severity)
    ]
    if increased:
        details = ", ".join(
            f"{severity} {getattr(baseline, severity)} -> {getattr(summary, severity)}"
            for severity in increased
        )
        return PolicyDecision(
            True, f"New image has more vulnerabilities than current image ({details})"
        )
    return PolicyDecision(False, "New image has no more vulnerabilities than current image")
