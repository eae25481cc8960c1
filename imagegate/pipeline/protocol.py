"""
Pipeline Protocol - Defines the stage interface and shared context.

Every pipeline stage implements the ``PipelineStage`` protocol. Stages are
composed into an ordered pipeline by ``PipelineOrchestrator``.

The ``PipelineContext`` dataclass holds all mutable state that flows through
the pipeline.  Stages read what they need and write their contributions.

The ``StageResult`` dataclass captures the outcome of a single stage
execution for logging and error reporting.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from ..schemas import (
    CredentialChain,
    ImageArtifact,
    RegistrySession,
    ScanResult,
    SeverityThresholds,
    UploadedBundle,
)


@dataclass
class PipelineContext:
    """Shared mutable state flowing through the pipeline.

    Attributes
    ----------
    config : dict
        Flat configuration dict produced by ``config_loader.build_unified_config``.
    workspace : str
        Filesystem path of the repository being built.
    thresholds : SeverityThresholds | None
        Immutable threshold set for the run.
    commit_sha : str
        Commit being built.  Requested up front, resolved by source fetch.
    deadline : float | None
        ``time.monotonic()`` value after which the run is forcibly failed.
    credentials : CredentialChain
        Identities assumed during the run.  Cleared when the run ends.
    registry_session : RegistrySession | None
        Set by the registry login stage.
    cache_key : str
        Layer-cache key for this run.
    artifact : ImageArtifact | None
        The built, not yet published image.
    scan_result : ScanResult | None
        Scanner output for ``artifact``.
    gate_decision : GateDecision | None
        Threshold gate decision.
    uploaded_bundle : UploadedBundle | None
        Report bundle persisted by the artifact publisher.
    published_references : list
        References pushed by the publish stage.
    stage_timings : dict
        Wall-clock seconds per stage, keyed by ``stage.name``.
    errors : list
        Failure messages collected during the run.
    """

    config: Dict[str, Any] = field(default_factory=dict)
    workspace: str = "."
    thresholds: Optional[SeverityThresholds] = None
    commit_sha: str = ""
    deadline: Optional[float] = None

    credentials: CredentialChain = field(default_factory=CredentialChain)
    registry_session: Optional[RegistrySession] = None

    cache_key: str = ""
    artifact: Optional[ImageArtifact] = None
    scan_result: Optional[ScanResult] = None
    gate_decision: Any = None
    uploaded_bundle: Optional[UploadedBundle] = None
    published_references: List[str] = field(default_factory=list)

    stage_timings: Dict[str, float] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    def remaining_seconds(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def deadline_passed(self) -> bool:
        remaining = self.remaining_seconds()
        return remaining is not None and remaining <= 0


@dataclass
class StageResult:
    """Outcome returned by each pipeline stage.

    Attributes
    ----------
    success : bool
        Whether the stage completed without failing the run.
    stage_name : str
        Identifier matching ``PipelineStage.name``.
    duration_seconds : float
        Wall-clock execution time.
    error : str | None
        Human-readable error message if the stage failed.
    failure_kind : str | None
        Error taxonomy tag (``credential``, ``build``, ``gate``, ...).
    skipped : bool
        ``True`` if the stage did not run.
    skip_reason : str
        Why the stage was skipped.
    metadata : dict
        Arbitrary stage-specific metadata.
    """

    success: bool
    stage_name: str
    duration_seconds: float = 0.0
    error: Optional[str] = None
    failure_kind: Optional[str] = None
    skipped: bool = False
    skip_reason: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class PipelineStage(Protocol):
    """Protocol that every pipeline stage must implement.

    Stages are composable, independently testable units that:
    1. Declare their name, step number and dependencies
    2. Check whether they should run (preconditions)
    3. Execute their logic, mutating ``PipelineContext``
    4. Return a ``StageResult`` with outcome metadata

    Example
    -------
    ::

        class MyStage:
            name = "my_stage"
            display_name = "My Custom Stage"
            step_number = 2.5
            required_stages: list[str] = []
            always_run = False

            def should_run(self, ctx: PipelineContext) -> bool:
                return True

            def execute(self, ctx: PipelineContext) -> StageResult:
                return StageResult(success=True, stage_name=self.name)

            def rollback(self, ctx: PipelineContext) -> None:
                pass
    """

    @property
    def name(self) -> str:
        """Unique stage identifier, e.g. ``image_build``."""
        ...

    @property
    def display_name(self) -> str:
        """Human-readable name, e.g. ``Step 5: Image Build``."""
        ...

    @property
    def step_number(self) -> float:
        """Numeric position used for ordering."""
        ...

    @property
    def required_stages(self) -> List[str]:
        """Names of stages that must have *succeeded* before this one."""
        ...

    @property
    def always_run(self) -> bool:
        """Whether the stage still runs after an earlier stage failed.

        Only honoured while the run's deadline has not passed.
        """
        ...

    def should_run(self, ctx: PipelineContext) -> bool:
        """Check preconditions.  Return ``False`` to skip this stage."""
        ...

    def execute(self, ctx: PipelineContext) -> StageResult:
        """Execute the stage logic, mutating ``ctx``."""
        ...

    def rollback(self, ctx: PipelineContext) -> None:
        """Optional cleanup if the stage fails."""
        ...
