"""
Pipeline driver for imagegate.

Key components:
- ``PipelineStage`` -- Protocol every stage implements
- ``PipelineContext`` -- Shared mutable state flowing through stages
- ``StageResult`` -- Outcome returned by each stage
- ``PipelineOrchestrator`` -- Runs stages in order, fail-fast
- ``PipelineRun`` -- Results, failed stage and exit code of one run
- ``BaseStage`` -- Convenience ABC for implementing stages
- ``build_default_stages`` -- Factory for the standard 9-step pipeline
"""

from .protocol import PipelineStage, PipelineContext, StageResult
from .orchestrator import EXIT_FAILURE, EXIT_GATE, EXIT_OK, PipelineOrchestrator, PipelineRun
from .base_stage import BaseStage, StageFailed
from .stages import (
    SourceFetchStage,
    BuilderSetupStage,
    CredentialBrokerStage,
    RegistrySessionStage,
    ImageBuildStage,
    VulnerabilityScanStage,
    ThresholdGateStage,
    ArtifactUploadStage,
    ImagePublishStage,
    build_default_stages,
    layer_cache_key,
    layer_cache_prefix,
)

__all__ = [
    # Core protocol
    "PipelineStage",
    "PipelineContext",
    "StageResult",
    # Orchestrator
    "PipelineOrchestrator",
    "PipelineRun",
    "EXIT_OK",
    "EXIT_GATE",
    "EXIT_FAILURE",
    # Base class
    "BaseStage",
    "StageFailed",
    # Concrete stages
    "SourceFetchStage",
    "BuilderSetupStage",
    "CredentialBrokerStage",
    "RegistrySessionStage",
    "ImageBuildStage",
    "VulnerabilityScanStage",
    "ThresholdGateStage",
    "ArtifactUploadStage",
    "ImagePublishStage",
    # Factory
    "build_default_stages",
    "layer_cache_key",
    "layer_cache_prefix",
]
