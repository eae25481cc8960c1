"""
External collaborators for the imagegate pipeline.

Key components:
- ``Collaborators`` -- bundle of one implementation per interface
- ``CommandRunner`` -- subprocess execution with classified failures
- Protocols: ``SourceProvider``, ``IdentityBroker``, ``Registry``,
  ``ImageBuilder``, ``VulnerabilityScanner``, ``ArtifactStore``,
  ``LayerCache``
- Adapters: git, STS/ECR, Buildx, Inspector, local cache and artifact store
"""

from .artifacts import LocalArtifactStore
from .aws import EcrRegistry, StsIdentityBroker, role_session_name
from .base import (
    ArtifactStore,
    BuildRequest,
    Collaborators,
    IdentityBroker,
    ImageBuilder,
    LayerCache,
    Registry,
    SourceProvider,
    VulnerabilityScanner,
)
from .cache import LocalLayerCache
from .command import CommandResult, CommandRunner
from .docker import BuildxImageBuilder
from .git import GitSourceProvider
from .inspector import InspectorScanner

__all__ = [
    # Interfaces
    "ArtifactStore",
    "BuildRequest",
    "Collaborators",
    "IdentityBroker",
    "ImageBuilder",
    "LayerCache",
    "Registry",
    "SourceProvider",
    "VulnerabilityScanner",
    # Command execution
    "CommandResult",
    "CommandRunner",
    # Adapters
    "BuildxImageBuilder",
    "EcrRegistry",
    "GitSourceProvider",
    "InspectorScanner",
    "LocalArtifactStore",
    "LocalLayerCache",
    "StsIdentityBroker",
    "role_session_name",
]
