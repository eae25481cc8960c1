"""
imagegate Exceptions Module

Custom exception classes for the image publishing pipeline.
Centralized exception definitions for consistent error handling.

Every exception carries a ``failure_kind`` so the pipeline driver and the
CLI can report *why* a run stopped without inspecting class names.
"""

__all__ = [
    "ImageGateError",
    "ConfigurationError",
    "StepError",
    "SourceError",
    "TransientInfrastructureError",
    "CredentialError",
    "BuildError",
    "ScanError",
    "PublishError",
    "PipelineTimeoutError",
]


class ImageGateError(Exception):
    """Base exception for all imagegate errors"""

    failure_kind = "error"


class ConfigurationError(ImageGateError):
    """Raised when configuration is malformed or incomplete"""

    failure_kind = "config"


class StepError(ImageGateError):
    """Raised when a pipeline step's external collaborator fails.

    Parameters
    ----------
    message : str
        Human-readable description.
    step : str
        Name of the step that failed (e.g. ``image_build``).
    returncode : int | None
        Exit status of the underlying command, if there was one.
    stderr : str
        Captured standard error of the underlying command.
    """

    failure_kind = "step"

    def __init__(self, message, step="", returncode=None, stderr=""):
        super().__init__(message)
        self.step = step
        self.returncode = returncode
        self.stderr = stderr


class SourceError(StepError):
    """Raised when repository contents cannot be fetched"""

    failure_kind = "source"


class TransientInfrastructureError(StepError):
    """Raised on network, registry or service timeouts"""

    failure_kind = "transient"


class CredentialError(StepError):
    """Raised when a role assumption or registry login is denied"""

    failure_kind = "credential"


class BuildError(StepError):
    """Raised when the image build fails"""

    failure_kind = "build"


class ScanError(StepError):
    """Raised when the vulnerability scan cannot produce a report"""

    failure_kind = "scan"


class PublishError(StepError):
    """Raised when pushing the scanned image fails or would ship a different image"""

    failure_kind = "publish"


class PipelineTimeoutError(ImageGateError):
    """Raised when the run exceeds its wall-clock budget"""

    failure_kind = "timeout"
