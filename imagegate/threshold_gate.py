"""Severity threshold gating for the image publishing pipeline.

Compares the per-severity finding counts of a scanned image against the
configured limits and decides whether the image may be published.  Any
single level over its limit fails the whole gate; there is no aggregation
or weighting across levels.

Usage::

    from imagegate.threshold_gate import ThresholdGate

    gate = ThresholdGate()
    decision = gate.evaluate(scan_result, thresholds)
    if decision.exceeded:
        for violation in decision.violations:
            print(violation)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Union

from .schemas import FindingCounts, ScanResult, Severity, SeverityThresholds

logger = logging.getLogger(__name__)

CountsLike = Union[FindingCounts, Mapping[str, Any]]
ThresholdsLike = Union[SeverityThresholds, Mapping[str, Any]]


class GateOutcome(str, Enum):
    PASSED = "passed"
    EXCEEDED = "exceeded"


@dataclass(frozen=True)
class Violation:
    """One severity level whose observed count is over its limit."""

    level: Severity
    observed: int
    threshold: int

    def __str__(self) -> str:
        return f"{self.level.value}: {self.observed} found, {self.threshold} allowed"


@dataclass(frozen=True)
class GateDecision:
    """Result of a threshold gate evaluation.

    Attributes
    ----------
    outcome : GateOutcome
        ``passed`` or ``exceeded``.
    violations : tuple[Violation, ...]
        Every level over its limit, in severity order.  Empty when passed.
    reason : str
        Human-readable explanation of the decision.
    """

    outcome: GateOutcome
    violations: tuple[Violation, ...] = field(default_factory=tuple)
    reason: str = ""

    @property
    def passed(self) -> bool:
        return self.outcome is GateOutcome.PASSED

    @property
    def exceeded(self) -> bool:
        return self.outcome is GateOutcome.EXCEEDED

    @property
    def exit_code(self) -> int:
        return 0 if self.passed else 1

    @classmethod
    def from_violations(cls, violations: tuple[Violation, ...]) -> "GateDecision":
        if violations:
            levels = ", ".join(v.level.value for v in violations)
            return cls(
                outcome=GateOutcome.EXCEEDED,
                violations=violations,
                reason=f"Vulnerability threshold exceeded for: {levels}",
            )
        return cls(
            outcome=GateOutcome.PASSED,
            reason="All severity counts within thresholds",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "reason": self.reason,
            "violations": [
                {"level": v.level.value, "observed": v.observed, "threshold": v.threshold}
                for v in self.violations
            ],
        }


def _as_counts(counts: CountsLike) -> FindingCounts:
    if isinstance(counts, FindingCounts):
        return counts
    return FindingCounts.from_mapping(counts)


def _as_thresholds(thresholds: ThresholdsLike) -> SeverityThresholds:
    if isinstance(thresholds, SeverityThresholds):
        return thresholds
    return SeverityThresholds(**{str(k).lower(): v for k, v in dict(thresholds).items()})


def evaluate_gate(counts: CountsLike, thresholds: ThresholdsLike) -> GateDecision:
    """Compare observed counts against thresholds.

    Parameters
    ----------
    counts : FindingCounts | Mapping
        Observed findings per severity.  Missing and ``None`` levels count
        as 0.  Labels outside the named levels count as ``other``.
    thresholds : SeverityThresholds | Mapping
        Maximum allowed findings per severity.

    Returns
    -------
    GateDecision
        ``exceeded`` iff ``counts[level] > thresholds[level]`` for at least
        one level.
    """
    observed = _as_counts(counts)
    limits = _as_thresholds(thresholds)

    violations = tuple(
        Violation(level=level, observed=observed.for_level(level), threshold=limits.for_level(level))
        for level in Severity
        if observed.for_level(level) > limits.for_level(level)
    )
    return GateDecision.from_violations(violations)


class ThresholdGate:
    """Decides whether a scanned image may be published.

    Wraps :func:`evaluate_gate` with logging and reconciles the scanner's own
    verdict.  When the scanner reports its threshold as exceeded but the
    counts pass, the gate fails closed.
    """

    def evaluate(
        self,
        scan_result: ScanResult,
        thresholds: ThresholdsLike,
    ) -> GateDecision:
        decision = evaluate_gate(scan_result.counts, thresholds)

        if decision.passed and scan_result.threshold_exceeded:
            logger.warning(
                "Scanner reported threshold exceeded for %s but counts %s are "
                "within limits; failing closed",
                scan_result.image.uri,
                scan_result.counts.as_dict(),
            )
            decision = GateDecision(
                outcome=GateOutcome.EXCEEDED,
                reason="Scanner reported vulnerability threshold exceeded",
            )

        if decision.passed:
            logger.info(
                "Threshold gate passed for %s: %s",
                scan_result.image.uri,
                scan_result.counts.as_dict(),
            )
        else:
            logger.error("Threshold gate BLOCKED %s: %s", scan_result.image.uri, decision.reason)
            for violation in decision.violations:
                logger.error("  - %s", violation)

        return decision
