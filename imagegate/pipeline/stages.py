"""
Concrete Pipeline Stages - one stage per step of the publishing pipeline.

Each stage drives one collaborator from ``imagegate.collaborators`` and
records its contribution on the ``PipelineContext``.

Stages are designed to be independently testable:
    - Each can be instantiated with fake collaborators
    - ``should_run`` checks context preconditions before executing
    - Failures become a failed ``StageResult``; they never crash the driver
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List

from ..collaborators import BuildRequest, Collaborators, role_session_name
from ..exceptions import ConfigurationError, PublishError
from ..reporting import render_gate_decision
from ..schemas import ImageReference
from ..threshold_gate import ThresholdGate
from .base_stage import BaseStage, StageFailed
from .protocol import PipelineContext

logger = logging.getLogger(__name__)

LATEST_TAG = "latest"


def layer_cache_key(runner_os: str, commit_sha: str) -> str:
    """Exact layer-cache key for a build of *commit_sha*."""
    return f"{layer_cache_prefix(runner_os)}-{commit_sha}"


def layer_cache_prefix(runner_os: str) -> str:
    """Fallback prefix matching any earlier build on the same runner OS."""
    return f"{runner_os or 'Linux'}-buildx"


def _split_platforms(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [p.strip() for p in value.split(",") if p.strip()]
    return [str(p) for p in value]


class _CollaboratorStage(BaseStage):
    """Stage bound to the run's collaborators."""

    def __init__(self, collaborators: Collaborators):
        self.collaborators = collaborators


# ============================================================================
# Step 1-2: Source and build environment
# ============================================================================


class SourceFetchStage(_CollaboratorStage):
    """Step 1: Check out the repository at the requested commit."""

    name = "source_fetch"
    display_name = "Step 1: Source Fetch"
    step_number = 1.0

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        requested = ctx.commit_sha
        ctx.commit_sha = self.collaborators.source.fetch(ctx.workspace, requested)
        logger.info("Workspace %s at %s", ctx.workspace, ctx.commit_sha)
        return {"commit_sha": ctx.commit_sha, "requested": requested}


class BuilderSetupStage(_CollaboratorStage):
    """Step 2: Prepare emulators and the Buildx builder, restore the layer cache.

    A cache miss or restore failure never fails the stage.
    """

    name = "builder_setup"
    display_name = "Step 2: Builder Setup"
    step_number = 2.0
    required_stages = ["source_fetch"]

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        self.collaborators.builder.setup()

        runner_os = ctx.config.get("runner_os", "Linux")
        ctx.cache_key = layer_cache_key(runner_os, ctx.commit_sha)
        restored = self.collaborators.cache.restore(
            ctx.cache_key, (layer_cache_prefix(runner_os),)
        )
        return {"cache_key": ctx.cache_key, "cache_restored": restored}


# ============================================================================
# Step 3-4: Identity and registry
# ============================================================================


class CredentialBrokerStage(_CollaboratorStage):
    """Step 3: Exchange the OIDC token for a role, then chain into the deploy role."""

    name = "credential_broker"
    display_name = "Step 3: Credential Broker"
    step_number = 3.0

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        config = ctx.config
        region = config.get("aws_region", "")
        repository_id = str(config.get("repository_id") or "")
        identity = self.collaborators.identity

        oidc = identity.assume_role(
            config.get("oidc_role", ""),
            role_session_name("gh", repository_id, ctx.commit_sha),
            region,
        )
        ctx.credentials.push(oidc)

        deploy = identity.assume_role(
            config.get("deploy_role", ""),
            role_session_name("gh-d", repository_id, ctx.commit_sha),
            region,
            source=oidc,
        )
        ctx.credentials.push(deploy)

        return {
            "roles": [c.role_arn for c in ctx.credentials.identities],
            "session_name": deploy.session_name,
        }


class RegistrySessionStage(_CollaboratorStage):
    """Step 4: Log in to the registry with the chained credentials."""

    name = "registry_session"
    display_name = "Step 4: Registry Session"
    step_number = 4.0
    required_stages = ["credential_broker"]

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        ctx.registry_session = self.collaborators.registry.login(
            ctx.credentials.current, ctx.config.get("aws_region", "")
        )
        return {"registry": ctx.registry_session.registry}


# ============================================================================
# Step 5-6: Build and scan
# ============================================================================


class ImageBuildStage(_CollaboratorStage):
    """Step 5: Build and load the image locally without pushing it.

    The image is tagged ``latest`` and with the commit sha.  The layer cache
    is saved after a successful build.
    """

    name = "image_build"
    display_name = "Step 5: Image Build"
    step_number = 5.0
    required_stages = ["source_fetch", "builder_setup", "registry_session"]

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        config = ctx.config
        repository = config.get("ecr_repository", "")
        if not repository:
            raise ConfigurationError("ecr_repository is not configured")

        registry = ctx.registry_session.registry
        references = [
            ImageReference(registry=registry, repository=repository, tag=LATEST_TAG),
            ImageReference(registry=registry, repository=repository, tag=ctx.commit_sha),
        ]
        request = BuildRequest(
            context=os.path.join(ctx.workspace, config.get("build_context", ".")),
            dockerfile=os.path.join(ctx.workspace, config.get("dockerfile", "Dockerfile")),
            references=references,
            commit_sha=ctx.commit_sha,
            platforms=_split_platforms(config.get("platforms")),
            cache_dir=config.get("cache_dir") or None,
        )

        ctx.artifact = self.collaborators.builder.build(request)
        logger.info(
            "Built %s as %s", ctx.artifact.image_id, ", ".join(ctx.artifact.tags)
        )

        cache_saved = False
        if ctx.cache_key:
            cache_saved = self.collaborators.cache.save(ctx.cache_key)

        return {
            "image_id": ctx.artifact.image_id,
            "tags": ctx.artifact.tags,
            "cache_saved": cache_saved,
        }


class VulnerabilityScanStage(_CollaboratorStage):
    """Step 6: Scan the commit-tagged image and log the Markdown report."""

    name = "vulnerability_scan"
    display_name = "Step 6: Vulnerability Scan"
    step_number = 6.0
    required_stages = ["image_build"]

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        reference = ctx.artifact.scan_reference
        output_dir = Path(ctx.config.get("output_dir", "scan-results"))

        ctx.scan_result = self.collaborators.scanner.scan(
            reference,
            ctx.thresholds,
            output_dir,
            credentials=ctx.credentials.current,
        )

        report = ctx.scan_result.report_markdown
        if report is not None and Path(report).is_file():
            logger.info("Scan report for %s:\n%s", reference.uri, Path(report).read_text(encoding="utf-8"))

        return {
            "image": reference.uri,
            "counts": ctx.scan_result.counts.as_dict(),
            "scanner_threshold_exceeded": ctx.scan_result.threshold_exceeded,
        }


# ============================================================================
# Step 7: Threshold gate
# ============================================================================


class ThresholdGateStage(BaseStage):
    """Step 7: Block the image when any severity exceeds its threshold.

    An exceeded gate fails this stage with ``failure_kind="gate"``.
    """

    name = "threshold_gate"
    display_name = "Step 7: Threshold Gate"
    step_number = 7.0
    required_stages = ["vulnerability_scan"]

    def __init__(self, gate: ThresholdGate | None = None):
        self.gate = gate or ThresholdGate()

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        decision = self.gate.evaluate(ctx.scan_result, ctx.thresholds)
        ctx.gate_decision = decision
        logger.info("Gate decision:\n%s", render_gate_decision(decision))
        if decision.exceeded:
            raise StageFailed(decision.reason, failure_kind="gate", metadata=decision.to_dict())
        return decision.to_dict()


# ============================================================================
# Step 8-9: Artifacts and publish
# ============================================================================


class ArtifactUploadStage(_CollaboratorStage):
    """Step 8: Persist the scan reports and SBOM.

    Runs whether or not the gate passed, as long as a scan produced reports.
    """

    name = "artifact_upload"
    display_name = "Step 8: Artifact Upload"
    step_number = 8.0
    always_run = True

    def should_run(self, ctx: PipelineContext) -> bool:
        return ctx.scan_result is not None and bool(ctx.scan_result.report_files)

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        name = ctx.config.get("artifact_name", "scan-sbom-results")
        ctx.uploaded_bundle = self.collaborators.artifacts.upload(
            name, ctx.scan_result.report_files
        )
        return {
            "bundle": ctx.uploaded_bundle.name,
            "destination": ctx.uploaded_bundle.destination,
            "files": len(ctx.uploaded_bundle.files),
        }


class ImagePublishStage(_CollaboratorStage):
    """Step 9: Push the already-built, scanned image.

    Only reached when the gate stage succeeded.  The image pushed is the
    artifact built in step 5; it is never rebuilt.
    """

    name = "image_publish"
    display_name = "Step 9: Image Publish"
    step_number = 9.0
    required_stages = ["image_build", "vulnerability_scan", "threshold_gate"]

    def should_run(self, ctx: PipelineContext) -> bool:
        return ctx.gate_decision is not None and ctx.gate_decision.passed

    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        artifact = ctx.artifact
        if ctx.gate_decision is None or not ctx.gate_decision.passed:
            raise PublishError("refusing to publish an image that did not pass the gate", step=self.name)
        if ctx.scan_result.image != artifact.scan_reference:
            raise PublishError(
                f"scanned {ctx.scan_result.image.uri} but artifact is "
                f"{artifact.scan_reference.uri}",
                step=self.name,
            )

        ctx.published_references = list(self.collaborators.builder.publish(artifact))
        ctx.artifact = artifact.model_copy(update={"published": True})
        logger.info("Published %s", ", ".join(ctx.published_references))
        return {"published": ctx.published_references}


def build_default_stages(collaborators: Collaborators) -> List[BaseStage]:
    """Return the default stage list for the publishing pipeline."""
    return [
        SourceFetchStage(collaborators),
        BuilderSetupStage(collaborators),
        CredentialBrokerStage(collaborators),
        RegistrySessionStage(collaborators),
        ImageBuildStage(collaborators),
        VulnerabilityScanStage(collaborators),
        ThresholdGateStage(),
        ArtifactUploadStage(collaborators),
        ImagePublishStage(collaborators),
    ]
