"""
Collaborator interfaces consumed by the pipeline stages.

Each external system the pipeline drives is described by a ``Protocol`` so
stages depend on behaviour, not on a concrete tool.  Tests substitute fakes;
production wires the subprocess-backed adapters via
``Collaborators.from_config``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, runtime_checkable

from ..schemas import (
    AwsCredentials,
    ImageArtifact,
    ImageReference,
    RegistrySession,
    ScanResult,
    SeverityThresholds,
    UploadedBundle,
)


@dataclass
class BuildRequest:
    """Inputs to one image build.

    Attributes
    ----------
    context : str
        Build context directory.
    dockerfile : str
        Path to the Dockerfile.
    references : list[ImageReference]
        Tags to apply (``latest`` and the commit tag).
    commit_sha : str
        Commit being built; passed as the ``GIT_SHA`` build argument.
    build_args : dict
        Additional build arguments.
    platforms : list[str]
        Target platforms; empty means the builder default.
    cache_dir : str | None
        Local layer-cache directory read before and written after the build.
    """

    context: str
    dockerfile: str
    references: List[ImageReference]
    commit_sha: str
    build_args: Dict[str, str] = field(default_factory=dict)
    platforms: List[str] = field(default_factory=list)
    cache_dir: Optional[str] = None

    def all_build_args(self) -> Dict[str, str]:
        args = {"GIT_SHA": self.commit_sha}
        args.update(self.build_args)
        return args


@runtime_checkable
class SourceProvider(Protocol):
    def fetch(self, workspace: str, commit_sha: str = "") -> str:
        """Make *workspace* hold the repository at *commit_sha*.

        Returns the resolved full commit sha.
        """
        ...


@runtime_checkable
class IdentityBroker(Protocol):
    def assume_role(
        self,
        role: str,
        session_name: str,
        region: str,
        source: Optional[AwsCredentials] = None,
    ) -> AwsCredentials:
        """Assume *role*.

        Without *source* the broker exchanges the run's OIDC token; with
        *source* it chains from those credentials.
        """
        ...


@runtime_checkable
class Registry(Protocol):
    def login(self, credentials: AwsCredentials, region: str) -> RegistrySession:
        ...


@runtime_checkable
class ImageBuilder(Protocol):
    def setup(self) -> None:
        """Prepare emulators and a multi-platform builder."""
        ...

    def build(self, request: BuildRequest) -> ImageArtifact:
        """Build and load the image locally without transmitting it."""
        ...

    def publish(self, artifact: ImageArtifact) -> List[str]:
        """Transmit the already-built *artifact*; return pushed references."""
        ...


@runtime_checkable
class VulnerabilityScanner(Protocol):
    def scan(
        self,
        image: ImageReference,
        thresholds: SeverityThresholds,
        output_dir: Path,
        credentials: Optional[AwsCredentials] = None,
    ) -> ScanResult:
        ...


@runtime_checkable
class ArtifactStore(Protocol):
    def upload(self, name: str, paths: Sequence[Path]) -> UploadedBundle:
        ...


@runtime_checkable
class LayerCache(Protocol):
    def restore(self, key: str, restore_prefixes: Sequence[str] = ()) -> Optional[str]:
        """Restore the best matching entry; return the key used or ``None``."""
        ...

    def save(self, key: str) -> bool:
        ...


@dataclass
class Collaborators:
    """One implementation of every external interface for a run."""

    source: SourceProvider
    identity: IdentityBroker
    registry: Registry
    builder: ImageBuilder
    scanner: VulnerabilityScanner
    artifacts: ArtifactStore
    cache: LayerCache

    @classmethod
    def from_config(cls, config: dict, runner=None) -> "Collaborators":
        """Wire the default subprocess-backed adapters."""
        from .artifacts import LocalArtifactStore
        from .aws import EcrRegistry, StsIdentityBroker
        from .cache import LocalLayerCache
        from .command import CommandRunner
        from .docker import BuildxImageBuilder
        from .git import GitSourceProvider
        from .inspector import InspectorScanner

        runner = runner or CommandRunner()
        return cls(
            source=GitSourceProvider(runner),
            identity=StsIdentityBroker(
                runner,
                web_identity_token_file=config.get("web_identity_token_file", ""),
            ),
            registry=EcrRegistry(runner),
            builder=BuildxImageBuilder(runner),
            scanner=InspectorScanner(runner, region=config.get("aws_region", "")),
            artifacts=LocalArtifactStore(config.get("artifact_root", ".imagegate/artifacts")),
            cache=LocalLayerCache(
                cache_dir=config.get("cache_dir", "/tmp/.buildx-cache"),
                cache_root=config.get("cache_root", ""),
            ),
        )
