"""
Vulnerability scanner backed by Amazon Inspector.

Generates a CycloneDX SBOM for the locally loaded image with
``inspector-sbomgen``, submits it to ``aws inspector-scan scan-sbom``, and
writes the JSON, CSV and Markdown reports next to the SBOM.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from ..exceptions import ScanError
from ..reporting import (
    generate_markdown_report,
    rows_from_cyclonedx,
    severities_from_cyclonedx,
    write_csv,
)
from ..schemas import (
    AwsCredentials,
    FindingCounts,
    ImageReference,
    ScanResult,
    SeverityThresholds,
)
from ..threshold_gate import evaluate_gate
from .command import CommandRunner

logger = logging.getLogger(__name__)

SBOM_OUTPUT_FORMAT = "CYCLONE_DX_1_5"


class InspectorScanner:
    """Scan a container image and tally findings per severity.

    Parameters
    ----------
    runner : CommandRunner
        Executes ``inspector-sbomgen`` and the ``aws`` CLI.
    region : str
        Region of the Inspector scan API.
    sbomgen : str
        Name or path of the ``inspector-sbomgen`` binary.
    """

    def __init__(self, runner: CommandRunner, region: str = "", sbomgen: str = "inspector-sbomgen"):
        self.runner = runner
        self.region = region
        self.sbomgen = sbomgen

    def scan(
        self,
        image: ImageReference,
        thresholds: SeverityThresholds,
        output_dir: Path,
        credentials: Optional[AwsCredentials] = None,
    ) -> ScanResult:
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        stem = image.tag

        sbom_path = output_dir / f"sbom_{stem}.json"
        self.runner.run(
            [self.sbomgen, "container", "--image", image.uri, "--outfile", str(sbom_path)],
            step="vulnerability_scan",
            error_cls=ScanError,
        )
        if not sbom_path.is_file():
            raise ScanError(f"{self.sbomgen} did not write {sbom_path}", step="vulnerability_scan")

        env = credentials.as_env(self.region) if credentials is not None else None
        result = self.runner.run(
            [
                "aws", "inspector-scan", "scan-sbom",
                "--sbom", f"file://{sbom_path}",
                "--output-format", SBOM_OUTPUT_FORMAT,
                "--output", "json",
            ],
            step="vulnerability_scan",
            error_cls=ScanError,
            env=env,
        )
        document = self._parse_response(result.stdout)

        rows = rows_from_cyclonedx(document)
        counts = FindingCounts.from_severities(severities_from_cyclonedx(document))
        logger.info("Scan of %s: %s", image.uri, counts.as_dict())

        report_json = output_dir / f"inspector_scan_{stem}.json"
        with open(report_json, "w", encoding="utf-8") as fh:
            json.dump(document, fh, indent=2)
        report_csv = write_csv(rows, output_dir / f"inspector_scan_{stem}.csv")
        report_md = output_dir / f"inspector_scan_{stem}.md"
        report_md.write_text(
            generate_markdown_report(image, counts, thresholds, rows), encoding="utf-8"
        )

        return ScanResult(
            image=image,
            counts=counts,
            threshold_exceeded=evaluate_gate(counts, thresholds).exceeded,
            report_json=report_json,
            report_csv=report_csv,
            report_markdown=report_md,
            sbom=sbom_path,
        )

    @staticmethod
    def _parse_response(stdout: str) -> Dict[str, Any]:
        try:
            payload = json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise ScanError("unreadable scan-sbom response", step="vulnerability_scan") from exc
        # scan-sbom wraps the CycloneDX document under "sbom"
        document = payload.get("sbom", payload) if isinstance(payload, dict) else None
        if not isinstance(document, dict):
            raise ScanError("scan-sbom response has no CycloneDX document", step="vulnerability_scan")
        return document
