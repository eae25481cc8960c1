"""
Base Stage - Convenience base class for pipeline stages.

While the ``PipelineStage`` protocol allows any object with the right
interface, this ABC provides a convenient base with sensible defaults
for ``rollback`` and timing boilerplate.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from ..exceptions import ImageGateError
from .protocol import PipelineContext, StageResult

logger = logging.getLogger(__name__)


class StageFailed(Exception):
    """Raised inside ``_execute`` to fail a stage with an expected outcome.

    Used for non-exceptional failures such as an exceeded threshold gate,
    where the stage worked but the run must not continue normally.
    """

    def __init__(self, message: str, failure_kind: str, metadata: Dict[str, Any] | None = None):
        super().__init__(message)
        self.failure_kind = failure_kind
        self.metadata = metadata or {}


class BaseStage(ABC):
    """Abstract base class that satisfies the ``PipelineStage`` protocol.

    Subclasses must implement:
    - ``name``, ``display_name``, ``step_number`` (as properties or class attrs)
    - ``_execute(ctx)`` -- the core logic

    Optional overrides:
    - ``required_stages`` -- defaults to ``[]``
    - ``always_run`` -- defaults to ``False``
    - ``should_run(ctx)`` -- defaults to ``True``
    - ``rollback(ctx)`` -- defaults to no-op
    """

    always_run: bool = False

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        ...

    @property
    @abstractmethod
    def step_number(self) -> float:
        ...

    @property
    def required_stages(self) -> List[str]:
        """Override to declare stage dependencies."""
        return []

    def should_run(self, ctx: PipelineContext) -> bool:
        """Override to add precondition checks.  Defaults to True."""
        return True

    @abstractmethod
    def _execute(self, ctx: PipelineContext) -> Dict[str, Any]:
        """Core stage logic.

        Mutate ``ctx`` as needed and return a dict of stage-specific
        metadata.

        Raises
        ------
        StageFailed
            For expected failures (e.g. the gate was exceeded).
        ImageGateError
            For collaborator failures; the exception's ``failure_kind`` is
            recorded on the result.
        """
        ...

    def execute(self, ctx: PipelineContext) -> StageResult:
        """Run the stage with timing and error handling.

        Delegates to ``_execute`` and wraps the result in a ``StageResult``.
        """
        start = time.time()

        try:
            metadata = self._execute(ctx) or {}
            return StageResult(
                success=True,
                stage_name=self.name,
                duration_seconds=time.time() - start,
                metadata=metadata,
            )
        except StageFailed as exc:
            logger.error("%s failed: %s", self.display_name, exc)
            return StageResult(
                success=False,
                stage_name=self.name,
                duration_seconds=time.time() - start,
                error=str(exc),
                failure_kind=exc.failure_kind,
                metadata=exc.metadata,
            )
        except ImageGateError as exc:
            logger.error("%s failed: %s", self.display_name, exc)
            return StageResult(
                success=False,
                stage_name=self.name,
                duration_seconds=time.time() - start,
                error=f"{type(exc).__name__}: {exc}",
                failure_kind=exc.failure_kind,
            )
        except Exception as exc:
            logger.error(
                "%s failed: %s", self.display_name, exc, exc_info=True
            )
            return StageResult(
                success=False,
                stage_name=self.name,
                duration_seconds=time.time() - start,
                error=f"{type(exc).__name__}: {exc}",
                failure_kind="error",
            )

    def rollback(self, ctx: PipelineContext) -> None:
        """No-op rollback.  Override if the stage needs cleanup."""
        pass
