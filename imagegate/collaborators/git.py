"""Source provider backed by the ``git`` CLI."""

from __future__ import annotations

import logging
from pathlib import Path

from ..exceptions import SourceError
from .command import CommandRunner

logger = logging.getLogger(__name__)


class GitSourceProvider:
    """Check out a commit in an existing clone.

    The workspace must already be a git clone (the CI checkout or a local
    working copy).  A commit missing from the clone is fetched shallowly
    from ``origin``.
    """

    def __init__(self, runner: CommandRunner, remote: str = "origin"):
        self.runner = runner
        self.remote = remote

    def fetch(self, workspace: str, commit_sha: str = "") -> str:
        root = Path(workspace)
        if not (root / ".git").exists():
            raise SourceError(f"{workspace} is not a git repository", step="source_fetch")

        if commit_sha:
            if not self._has_commit(workspace, commit_sha):
                logger.info("Fetching %s from %s", commit_sha[:12], self.remote)
                self._git(workspace, "fetch", "--depth", "1", self.remote, commit_sha)
            self._git(workspace, "checkout", "--force", "--detach", commit_sha)

        resolved = self._git(workspace, "rev-parse", "HEAD").stdout.strip()
        if commit_sha and not resolved.startswith(commit_sha):
            raise SourceError(
                f"checked out {resolved} but {commit_sha} was requested",
                step="source_fetch",
            )
        logger.info("Workspace %s at %s", workspace, resolved[:12])
        return resolved

    def _has_commit(self, workspace: str, commit_sha: str) -> bool:
        try:
            self._git(workspace, "cat-file", "-e", f"{commit_sha}^{{commit}}")
        except SourceError:
            return False
        return True

    def _git(self, workspace: str, *args: str):
        return self.runner.run(
            ["git", "-C", workspace, *args],
            step="source_fetch",
            error_cls=SourceError,
        )
