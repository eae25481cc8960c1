"""
Pydantic schemas for imagegate pipeline validation

This package contains strict Pydantic schemas for the data flowing through
the image publishing pipeline. Schemas enforce data consistency and catch
format errors at stage boundaries.
"""

from .pipeline import (
    SEVERITY_ORDER,
    AwsCredentials,
    CredentialChain,
    FindingCounts,
    ImageArtifact,
    ImageReference,
    RegistrySession,
    ScanResult,
    Severity,
    SeverityThresholds,
    UploadedBundle,
)

__all__ = [
    # Gate inputs
    "Severity",
    "SEVERITY_ORDER",
    "SeverityThresholds",
    "FindingCounts",
    # Image artifact
    "ImageReference",
    "ImageArtifact",
    # Credentials & registry
    "AwsCredentials",
    "CredentialChain",
    "RegistrySession",
    # Scanner output
    "ScanResult",
    "UploadedBundle",
]
