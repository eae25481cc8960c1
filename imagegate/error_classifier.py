#!/usr/bin/env python3
"""
Failure Classification for the imagegate pipeline.

Classifies failed external commands (``aws``, ``docker``, ``git``,
``inspector-sbomgen``) into the pipeline's error taxonomy:

- credential: role assumption or registry login denied (fatal)
- transient: network, registry timeout, 5xx (fatal, operator re-runs)
- step default: anything else maps to the failing step's own error class
  (``BuildError`` for the build step, ``ScanError`` for the scan, ...)

No retry strategy is attached: every classified failure aborts the run.

Usage:
    from imagegate.error_classifier import classify_command_failure

    error = classify_command_failure(
        step="image_build",
        cmd=["docker", "buildx", "build", "."],
        returncode=1,
        stderr="failed to solve: ...",
        default=BuildError,
    )
    raise error
"""

from __future__ import annotations

import logging
import subprocess
from typing import Sequence, Type

from .exceptions import (
    CredentialError,
    StepError,
    TransientInfrastructureError,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Pattern registries for failure classification
# ---------------------------------------------------------------------------

CREDENTIAL_PATTERNS: list[str] = [
    "accessdenied",
    "access denied",
    "not authorized to perform",
    "unauthorized",
    "invalididentitytoken",
    "expiredtoken",
    "expired token",
    "security token included in the request is invalid",
    "invalidclienttokenid",
    "signaturedoesnotmatch",
    "unable to locate credentials",
    "no basic auth credentials",
    "denied: requested access to the resource is denied",
    "401 unauthorized",
    "403 forbidden",
]

TRANSIENT_PATTERNS: list[str] = [
    "timed out",
    "timeout",
    "connection reset",
    "connection refused",
    "could not connect",
    "could not resolve host",
    "temporary failure in name resolution",
    "tls handshake",
    "i/o timeout",
    "unexpected eof",
    "throttling",
    "rate exceeded",
    "toomanyrequests",
    "service unavailable",
    "internal server error",
    "bad gateway",
    "gateway timeout",
    "status code: 500",
    "status code: 502",
    "status code: 503",
    "status code: 504",
]

# Ordered list for classification priority: credential problems first
_PATTERN_REGISTRY: list[tuple[Type[StepError], list[str]]] = [
    (CredentialError, CREDENTIAL_PATTERNS),
    (TransientInfrastructureError, TRANSIENT_PATTERNS),
]


def classify_command_failure(
    step: str,
    cmd: Sequence[str],
    returncode: int | None,
    stderr: str,
    default: Type[StepError] = StepError,
) -> StepError:
    """Build the exception that best describes a failed command.

    The stderr text is matched against known patterns in priority order.
    If nothing matches, *default* is used so that the step's own failure
    kind (build, scan, publish...) is reported.

    Parameters
    ----------
    step:
        Pipeline step that issued the command.
    cmd:
        The argument vector that was executed.
    returncode:
        Exit status, or ``None`` if the command never completed.
    stderr:
        Captured standard error.
    default:
        Exception class used when no pattern matches.

    Returns
    -------
    StepError
        An instance ready to be raised.
    """
    text = (stderr or "").lower()
    tool = cmd[0] if cmd else "<unknown>"
    error_cls: Type[StepError] = default

    for candidate, patterns in _PATTERN_REGISTRY:
        if any(pattern in text for pattern in patterns):
            error_cls = candidate
            break

    summary = _last_line(stderr) or f"exit status {returncode}"
    message = f"{step}: {tool} failed ({summary})"
    logger.debug(
        "Classified %s failure of %s as %s", step, tool, error_cls.__name__
    )
    return error_cls(message, step=step, returncode=returncode, stderr=stderr or "")


def classify_timeout(step: str, exc: subprocess.TimeoutExpired) -> TransientInfrastructureError:
    """Convert a subprocess timeout into a transient failure."""
    tool = exc.cmd[0] if isinstance(exc.cmd, (list, tuple)) and exc.cmd else str(exc.cmd)
    return TransientInfrastructureError(
        f"{step}: {tool} timed out after {exc.timeout:.0f}s",
        step=step,
    )


def _last_line(text: str) -> str:
    lines = [line.strip() for line in (text or "").splitlines() if line.strip()]
    return lines[-1] if lines else ""
