"""
Command runner shared by every external-tool adapter.

Runs an argument vector without a shell, captures output, bounds the call
by the pipeline's remaining wall-clock budget and turns failures into
classified ``StepError`` subclasses.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Type

from ..error_classifier import classify_command_failure, classify_timeout
from ..exceptions import PipelineTimeoutError, StepError

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Captured outcome of one successful command."""

    args: list
    returncode: int
    stdout: str
    stderr: str
    duration_seconds: float


class CommandRunner:
    """Execute external tools for pipeline steps.

    Parameters
    ----------
    deadline : float | None
        ``time.monotonic()`` value after which no command may run.  Each
        call's timeout is capped to the remaining budget.
    default_timeout : float
        Per-command timeout used when no deadline is set.
    """

    def __init__(self, deadline: Optional[float] = None, default_timeout: float = 3600.0):
        self.deadline = deadline
        self.default_timeout = default_timeout

    def remaining(self) -> float:
        if self.deadline is None:
            return self.default_timeout
        return self.deadline - time.monotonic()

    def run(
        self,
        cmd: Sequence[str],
        step: str,
        error_cls: Type[StepError] = StepError,
        env: Optional[Dict[str, str]] = None,
        input_text: Optional[str] = None,
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run *cmd* and return its captured output.

        Parameters
        ----------
        cmd:
            Argument vector; ``cmd[0]`` is resolved on ``PATH``.
        step:
            Pipeline step issuing the command, used in error messages.
        error_cls:
            Exception class used for failures that match no known pattern.
        env:
            Extra environment variables layered over ``os.environ``.
        input_text:
            Data written to the command's stdin (e.g. a registry password).
        cwd:
            Working directory.
        timeout:
            Per-call timeout; capped to the remaining pipeline budget.

        Raises
        ------
        PipelineTimeoutError
            If the pipeline deadline has already passed, or is what stopped
            the command.
        StepError
            Classified failure (``CredentialError``,
            ``TransientInfrastructureError`` or *error_cls*).
        """
        args = [str(part) for part in cmd]
        budget = self.remaining()
        if budget <= 0:
            raise PipelineTimeoutError(f"{step}: pipeline deadline reached before running {args[0]}")
        effective_timeout = min(timeout, budget) if timeout is not None else budget

        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)

        logger.debug("[%s] running %s", step, " ".join(args[:3]))
        start = time.monotonic()
        try:
            completed = subprocess.run(
                args,
                capture_output=True,
                text=True,
                input=input_text,
                env=full_env,
                cwd=cwd,
                timeout=effective_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            if self.deadline is not None and time.monotonic() >= self.deadline:
                raise PipelineTimeoutError(
                    f"{step}: pipeline deadline reached while running {args[0]}"
                ) from exc
            raise classify_timeout(step, exc) from exc
        except FileNotFoundError as exc:
            raise error_cls(
                f"{step}: required tool '{args[0]}' is not installed",
                step=step,
            ) from exc

        duration = time.monotonic() - start
        if completed.returncode != 0:
            raise classify_command_failure(
                step=step,
                cmd=args,
                returncode=completed.returncode,
                stderr=completed.stderr,
                default=error_cls,
            )

        logger.debug("[%s] %s finished in %.1fs", step, args[0], duration)
        return CommandResult(
            args=args,
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
            duration_seconds=duration,
        )
