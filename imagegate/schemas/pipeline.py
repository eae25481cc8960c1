"""
Pipeline Schemas - Typed models for data flowing between pipeline stages.

These models replace dict[str, Any] at stage boundaries, enabling:
- Runtime validation of configuration and scanner output
- Clear documentation of stage inputs/outputs
- Safe handling of short-lived credentials (``SecretStr``)

Hierarchy:
    Severity              - the five gated severity levels
    SeverityThresholds    - configured maximum count per severity
    FindingCounts         - observed count per severity for one image
    ImageReference        - registry/repository:tag
    ImageArtifact         - built-but-not-yet-published image
    AwsCredentials        - one assumed identity
    CredentialChain       - ordered assumed identities for one run
    RegistrySession       - authenticated registry endpoint
    ScanResult            - scanner output (counts + report files)
    UploadedBundle        - durable artifact bundle
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator


# ---------------------------------------------------------------------------
# Severity levels
# ---------------------------------------------------------------------------


class Severity(str, Enum):
    """Severity levels the gate compares, in descending order."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    OTHER = "other"

    @classmethod
    def normalize(cls, value: Any) -> "Severity":
        """Map a scanner severity label onto a gated level.

        Labels outside critical/high/medium/low (``informational``,
        ``untriaged``, empty, unknown) are counted as ``other``.
        """
        label = str(value or "").strip().lower()
        try:
            return cls(label)
        except ValueError:
            return cls.OTHER


SEVERITY_ORDER: List[Severity] = list(Severity)


def _reject_non_integral(value: Any, field_name: str) -> Any:
    # bool is an int subclass; "true" is not a count
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be an integer, got a boolean")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"{field_name} must be an integer, got {value}")
    return value


# ---------------------------------------------------------------------------
# Gate inputs
# ---------------------------------------------------------------------------


class SeverityThresholds(BaseModel):
    """Maximum allowed findings per severity for one pipeline run.

    Immutable once constructed.  Defaults match the shipped workflow:
    zero tolerance for critical and high, five for everything else.
    """

    critical: int = Field(default=0, ge=0)
    high: int = Field(default=0, ge=0)
    medium: int = Field(default=5, ge=0)
    low: int = Field(default=5, ge=0)
    other: int = Field(default=5, ge=0)

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("*", mode="before")
    @classmethod
    def validate_integral(cls, v: Any, info) -> Any:
        """Reject booleans and fractional values before int coercion."""
        return _reject_non_integral(v, f"{info.field_name} threshold")

    def for_level(self, level: Severity) -> int:
        return getattr(self, Severity(level).value)

    def as_dict(self) -> Dict[str, int]:
        return {level.value: self.for_level(level) for level in SEVERITY_ORDER}


class FindingCounts(BaseModel):
    """Observed findings per severity for one image artifact.

    Missing or ``null`` levels normalise to 0; an unknown level is never
    treated as "unknown = pass".
    """

    critical: int = Field(default=0, ge=0)
    high: int = Field(default=0, ge=0)
    medium: int = Field(default=0, ge=0)
    low: int = Field(default=0, ge=0)
    other: int = Field(default=0, ge=0)

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("*", mode="before")
    @classmethod
    def normalize_missing(cls, v: Any, info) -> Any:
        if v is None:
            return 0
        return _reject_non_integral(v, f"{info.field_name} count")

    def for_level(self, level: Severity) -> int:
        return getattr(self, Severity(level).value)

    def as_dict(self) -> Dict[str, int]:
        return {level.value: self.for_level(level) for level in SEVERITY_ORDER}

    @property
    def total(self) -> int:
        return sum(self.as_dict().values())

    @classmethod
    def from_severities(cls, severities: List[Any]) -> "FindingCounts":
        """Tally raw scanner severity labels into gated levels."""
        tally = {level.value: 0 for level in SEVERITY_ORDER}
        for severity in severities:
            tally[Severity.normalize(severity).value] += 1
        return cls(**tally)

    @classmethod
    def from_mapping(cls, counts: Mapping[str, Any]) -> "FindingCounts":
        """Build counts from a ``severity -> count`` mapping.

        Keys go through ``Severity.normalize``, so ``informational``,
        ``untriaged`` and misspelled labels are summed into ``other``.
        """
        tally = {level.value: 0 for level in SEVERITY_ORDER}
        for key, value in counts.items():
            level = Severity.normalize(key)
            tally[level.value] += cls(**{level.value: value}).for_level(level)
        return cls(**tally)


# ---------------------------------------------------------------------------
# Image artifact
# ---------------------------------------------------------------------------


class ImageReference(BaseModel):
    """A fully qualified image reference ``registry/repository:tag``."""

    registry: str
    repository: str
    tag: str

    model_config = {"frozen": True}

    @field_validator("registry", "repository", "tag")
    @classmethod
    def validate_non_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("image reference components must be non-empty")
        return v.strip()

    @property
    def uri(self) -> str:
        return f"{self.registry}/{self.repository}:{self.tag}"

    def __str__(self) -> str:
        return self.uri


class ImageArtifact(BaseModel):
    """A built image, loaded locally and not yet transmitted.

    ``image_id`` is the local content digest reported by the builder.  It is
    what publishing verifies against so that the scanned image is the one
    shipped.
    """

    image_id: str
    commit_sha: str
    references: List[ImageReference] = Field(min_length=1)
    published: bool = False

    @property
    def scan_reference(self) -> ImageReference:
        """The immutable, commit-tagged reference.

        This exact reference is handed to the scanner and to the publish
        step.
        """
        for ref in self.references:
            if ref.tag == self.commit_sha:
                return ref
        return self.references[-1]

    @property
    def tags(self) -> List[str]:
        return [ref.uri for ref in self.references]


# ---------------------------------------------------------------------------
# Credentials & registry
# ---------------------------------------------------------------------------


class AwsCredentials(BaseModel):
    """One short-lived assumed identity.  Never persisted."""

    access_key_id: str
    secret_access_key: SecretStr
    session_token: SecretStr
    expiration: Optional[datetime] = None
    role_arn: str = ""
    session_name: str = ""

    def as_env(self, region: str = "") -> Dict[str, str]:
        """Render the ``AWS_*`` environment used by subprocesses."""
        env = {
            "AWS_ACCESS_KEY_ID": self.access_key_id,
            "AWS_SECRET_ACCESS_KEY": self.secret_access_key.get_secret_value(),
            "AWS_SESSION_TOKEN": self.session_token.get_secret_value(),
        }
        if region:
            env["AWS_REGION"] = region
            env["AWS_DEFAULT_REGION"] = region
        return env


class CredentialChain(BaseModel):
    """Identities assumed in order during one run."""

    identities: List[AwsCredentials] = Field(default_factory=list)

    @property
    def current(self) -> Optional[AwsCredentials]:
        return self.identities[-1] if self.identities else None

    @property
    def depth(self) -> int:
        return len(self.identities)

    def push(self, credentials: AwsCredentials) -> None:
        self.identities.append(credentials)

    def clear(self) -> None:
        self.identities.clear()


class RegistrySession(BaseModel):
    """An authenticated registry login."""

    registry: str
    region: str = ""

    @field_validator("registry")
    @classmethod
    def validate_registry(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v:
            raise ValueError("registry endpoint must be non-empty")
        return v


# ---------------------------------------------------------------------------
# Scanner output
# ---------------------------------------------------------------------------


class ScanResult(BaseModel):
    """Output of one vulnerability scan.

    ``threshold_exceeded`` is the scanner's own verdict; the gate computes
    its decision from ``counts`` and only uses this flag to fail closed when
    the two disagree.
    """

    image: ImageReference
    counts: FindingCounts
    threshold_exceeded: bool = False
    report_json: Optional[Path] = None
    report_csv: Optional[Path] = None
    report_markdown: Optional[Path] = None
    sbom: Optional[Path] = None

    @property
    def report_files(self) -> List[Path]:
        """Report files that should be retained, in upload order."""
        candidates = [self.report_json, self.report_csv, self.sbom, self.report_markdown]
        return [p for p in candidates if p is not None]


class UploadedBundle(BaseModel):
    """A named bundle persisted by the artifact store."""

    name: str
    destination: str
    files: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_files(self) -> "UploadedBundle":
        if not self.files:
            raise ValueError("an uploaded bundle must contain at least one file")
        return self
