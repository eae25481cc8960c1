"""
Scan Report Generation.

This module contains report generation functions for the image publishing
pipeline.

Functions:
    rows_from_cyclonedx: Flatten a CycloneDX vulnerability document into rows
    severities_from_cyclonedx: One severity per vulnerability, for counting
    write_csv: Save vulnerability rows as CSV
    generate_markdown_report: Human-readable Markdown scan report
    render_gate_decision: Markdown table of a gate decision
    write_json_atomic: Atomic JSON write (temp + rename)
    build_run_summary: JSON-serialisable summary of a pipeline run
"""

from __future__ import annotations

import contextlib
import csv
import json
import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List

from .schemas import SEVERITY_ORDER, FindingCounts, ImageReference, Severity, SeverityThresholds

if TYPE_CHECKING:
    from .pipeline.orchestrator import PipelineRun
    from .threshold_gate import GateDecision

logger = logging.getLogger(__name__)

CSV_FIELDS = ["vulnerability_id", "severity", "package", "installed_version", "fixed_version", "source", "url"]

_PREFERRED_RATING_SOURCE = "AMAZON_INSPECTOR"


@dataclass
class VulnerabilityRow:
    """One vulnerability affecting one package"""

    vulnerability_id: str
    severity: str  # raw scanner label
    package: str = ""
    installed_version: str = ""
    fixed_version: str = ""
    source: str = ""
    url: str = ""

    @property
    def level(self) -> Severity:
        return Severity.normalize(self.severity)


def _rating_severity(vuln: Dict[str, Any]) -> tuple[str, str]:
    ratings = [r for r in vuln.get("ratings") or [] if isinstance(r, dict)]
    for rating in ratings:
        if (rating.get("source") or {}).get("name") == _PREFERRED_RATING_SOURCE:
            return str(rating.get("severity", "")), _PREFERRED_RATING_SOURCE
    if ratings:
        return str(ratings[0].get("severity", "")), str((ratings[0].get("source") or {}).get("name", ""))
    return "", ""


def _fixed_version(vuln: Dict[str, Any]) -> str:
    for prop in vuln.get("properties") or []:
        if isinstance(prop, dict) and "fixed_version" in str(prop.get("name", "")):
            return str(prop.get("value", ""))
    return ""


def rows_from_cyclonedx(document: Dict[str, Any]) -> List[VulnerabilityRow]:
    """Flatten the ``vulnerabilities`` of a CycloneDX document.

    Each vulnerability yields one row per affected component.  Ratings from
    Amazon Inspector are preferred over other sources.
    """
    components: Dict[str, Dict[str, Any]] = {}
    for component in document.get("components") or []:
        if isinstance(component, dict) and component.get("bom-ref"):
            components[component["bom-ref"]] = component

    rows: List[VulnerabilityRow] = []
    for vuln in document.get("vulnerabilities") or []:
        if not isinstance(vuln, dict):
            continue
        severity, source = _rating_severity(vuln)
        url = str((vuln.get("source") or {}).get("url", ""))
        affects = [a for a in vuln.get("affects") or [] if isinstance(a, dict)] or [{}]
        for affected in affects:
            component = components.get(affected.get("ref", ""), {})
            rows.append(
                VulnerabilityRow(
                    vulnerability_id=str(vuln.get("id", "unknown")),
                    severity=severity,
                    package=str(component.get("name", affected.get("ref", ""))),
                    installed_version=str(component.get("version", "")),
                    fixed_version=_fixed_version(vuln),
                    source=source,
                    url=url,
                )
            )
    return rows


def severities_from_cyclonedx(document: Dict[str, Any]) -> List[str]:
    """One severity label per vulnerability entry, however many components it affects."""
    return [
        _rating_severity(vuln)[0]
        for vuln in document.get("vulnerabilities") or []
        if isinstance(vuln, dict)
    ]


def write_csv(rows: List[VulnerabilityRow], path: Path) -> Path:
    """Save vulnerability rows as CSV, most severe first."""
    path.parent.mkdir(parents=True, exist_ok=True)
    ordered = sorted(rows, key=lambda r: (SEVERITY_ORDER.index(r.level), r.vulnerability_id))
    with open(path, "w", newline="", encoding="utf-8") as fh:
        writer = csv.DictWriter(fh, fieldnames=CSV_FIELDS)
        writer.writeheader()
        for row in ordered:
            writer.writerow(asdict(row))
    logger.info("CSV report: %s", path)
    return path


def generate_markdown_report(
    image: ImageReference,
    counts: FindingCounts,
    thresholds: SeverityThresholds,
    rows: List[VulnerabilityRow],
) -> str:
    """Generate the human-readable Markdown scan report."""
    lines = [
        "# Vulnerability Scan Results",
        "",
        f"**Image:** `{image.uri}`",
        f"**Scanned:** {datetime.now(tz=timezone.utc).isoformat()}",
        "",
        "| Severity | Count | Threshold |",
        "|---|---|---|",
    ]
    for level in SEVERITY_ORDER:
        lines.append(f"| {level.value.capitalize()} | {counts.for_level(level)} | {thresholds.for_level(level)} |")
    lines.append("")

    if not rows:
        lines.append("No vulnerabilities found.")
        return "\n".join(lines) + "\n"

    lines.extend([
        "## Findings",
        "",
        "| ID | Severity | Package | Installed | Fixed |",
        "|---|---|---|---|---|",
    ])
    for row in sorted(rows, key=lambda r: (SEVERITY_ORDER.index(r.level), r.vulnerability_id)):
        lines.append(
            f"| {row.vulnerability_id} | {row.level.value} | {row.package} | "
            f"{row.installed_version} | {row.fixed_version or '-'} |"
        )
    return "\n".join(lines) + "\n"


def render_gate_decision(decision: "GateDecision") -> str:
    """Render a gate decision as a short Markdown block."""
    if decision.passed:
        return f"**Gate passed.** {decision.reason}\n"
    lines = [f"**Gate failed.** {decision.reason}", ""]
    if decision.violations:
        lines.extend(["| Severity | Found | Allowed |", "|---|---|---|"])
        for v in decision.violations:
            lines.append(f"| {v.level.value} | {v.observed} | {v.threshold} |")
    return "\n".join(lines) + "\n"


def write_json_atomic(data: Any, path: Path) -> Path:
    """Atomic write of *data* as JSON using temp+rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(path.name + ".tmp")
    try:
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(temp_path, path)
    except Exception:
        with contextlib.suppress(OSError):
            os.unlink(temp_path)
        raise
    return path


def build_run_summary(run: "PipelineRun") -> Dict[str, Any]:
    """JSON-serialisable summary of a finished pipeline run."""
    ctx = run.context
    return {
        "finished_at": datetime.now(tz=timezone.utc).isoformat(),
        "succeeded": run.succeeded,
        "exit_code": run.exit_code,
        "failed_stage": run.failed_stage,
        "failure_kind": run.failure_kind,
        "commit_sha": ctx.commit_sha,
        "image": {
            "id": ctx.artifact.image_id if ctx.artifact else None,
            "tags": ctx.artifact.tags if ctx.artifact else [],
            "scanned": ctx.scan_result.image.uri if ctx.scan_result else None,
            "published": list(ctx.published_references),
        },
        "counts": ctx.scan_result.counts.as_dict() if ctx.scan_result else None,
        "thresholds": ctx.thresholds.as_dict() if ctx.thresholds else None,
        "gate": ctx.gate_decision.to_dict() if ctx.gate_decision else None,
        "artifacts": ctx.uploaded_bundle.model_dump() if ctx.uploaded_bundle else None,
        "stages": [
            {
                "name": r.stage_name,
                "success": r.success,
                "skipped": r.skipped,
                "skip_reason": r.skip_reason,
                "failure_kind": r.failure_kind,
                "error": r.error,
                "duration_seconds": round(r.duration_seconds, 3),
            }
            for r in run.results
        ],
        "errors": list(ctx.errors),
    }
