"""Shared fixtures: isolated environment and fake collaborators."""

from pathlib import Path
from types import SimpleNamespace
from typing import List, Optional, Sequence

import pytest

from imagegate.collaborators import BuildRequest, Collaborators
from imagegate.config_loader import _ENV_MAPPINGS, get_default_config
from imagegate.schemas import (
    AwsCredentials,
    FindingCounts,
    ImageArtifact,
    ImageReference,
    RegistrySession,
    ScanResult,
    SeverityThresholds,
    UploadedBundle,
)

REGISTRY = "123456789012.dkr.ecr.ap-southeast-2.amazonaws.com"
COMMIT_SHA = "0123456789abcdef0123456789abcdef01234567"


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch):
    """Strip CI variables so config layering is deterministic."""
    for env_names, _key, _type in _ENV_MAPPINGS:
        for name in env_names:
            monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("IMAGEGATE_PROFILE", raising=False)


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------


class FakeSource:
    def __init__(self, resolved: str = COMMIT_SHA, error: Optional[Exception] = None):
        self.resolved = resolved
        self.error = error
        self.calls: List[tuple] = []

    def fetch(self, workspace, commit_sha=""):
        self.calls.append((workspace, commit_sha))
        if self.error:
            raise self.error
        return self.resolved


class FakeIdentity:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls: List[dict] = []

    def assume_role(self, role, session_name, region, source=None):
        self.calls.append(
            {"role": role, "session_name": session_name, "region": region, "source": source}
        )
        if self.error:
            raise self.error
        return AwsCredentials(
            access_key_id=f"AKIA{len(self.calls)}",
            secret_access_key="secret",
            session_token="token",
            role_arn=role,
            session_name=session_name,
        )


class FakeRegistry:
    def __init__(self):
        self.logins: List[tuple] = []

    def login(self, credentials, region):
        self.logins.append((credentials, region))
        return RegistrySession(registry=REGISTRY, region=region)


class FakeBuilder:
    def __init__(self, image_id: str = "sha256:abc123", build_error: Optional[Exception] = None):
        self.image_id = image_id
        self.build_error = build_error
        self.setup_calls = 0
        self.requests: List[BuildRequest] = []
        self.published: List[ImageArtifact] = []

    def setup(self):
        self.setup_calls += 1

    def build(self, request):
        self.requests.append(request)
        if self.build_error:
            raise self.build_error
        return ImageArtifact(
            image_id=self.image_id,
            commit_sha=request.commit_sha,
            references=list(request.references),
        )

    def publish(self, artifact):
        self.published.append(artifact)
        return [ref.uri for ref in artifact.references]


class FakeScanner:
    """Writes a tiny report set and returns fixed counts."""

    def __init__(self, counts: dict, threshold_exceeded: Optional[bool] = None, error: Optional[Exception] = None):
        self.counts = FindingCounts(**counts)
        self.threshold_exceeded = threshold_exceeded
        self.error = error
        self.scanned: List[ImageReference] = []

    def scan(self, image, thresholds, output_dir, credentials=None):
        self.scanned.append(image)
        if self.error:
            raise self.error
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        report_json = output_dir / f"inspector_scan_{image.tag}.json"
        report_json.write_text("{}", encoding="utf-8")
        report_md = output_dir / f"inspector_scan_{image.tag}.md"
        report_md.write_text("# Vulnerability Scan Results\n", encoding="utf-8")
        sbom = output_dir / f"sbom_{image.tag}.json"
        sbom.write_text("{}", encoding="utf-8")

        exceeded = self.threshold_exceeded
        if exceeded is None:
            exceeded = any(
                self.counts.for_level(level) > thresholds.for_level(level)
                for level in ("critical", "high", "medium", "low", "other")
            )
        return ScanResult(
            image=image,
            counts=self.counts,
            threshold_exceeded=exceeded,
            report_json=report_json,
            report_markdown=report_md,
            sbom=sbom,
        )


class FakeArtifacts:
    def __init__(self):
        self.uploads: List[tuple] = []

    def upload(self, name, paths: Sequence[Path]):
        self.uploads.append((name, list(paths)))
        return UploadedBundle(
            name=name,
            destination=f"/artifacts/{name}",
            files=[str(p) for p in paths],
        )


class FakeCache:
    def __init__(self, restored: Optional[str] = None):
        self.restored = restored
        self.restores: List[tuple] = []
        self.saves: List[str] = []

    def restore(self, key, restore_prefixes=()):
        self.restores.append((key, tuple(restore_prefixes)))
        return self.restored

    def save(self, key):
        self.saves.append(key)
        return True


def make_collaborators(counts=None, **overrides) -> Collaborators:
    parts = {
        "source": FakeSource(),
        "identity": FakeIdentity(),
        "registry": FakeRegistry(),
        "builder": FakeBuilder(),
        "scanner": FakeScanner(counts or {}),
        "artifacts": FakeArtifacts(),
        "cache": FakeCache(),
    }
    parts.update(overrides)
    return Collaborators(**parts)


@pytest.fixture
def pipeline_config(tmp_path):
    config = get_default_config()
    config.update({
        "oidc_role": "arn:aws:iam::123456789012:role/oidc",
        "deploy_role": "arn:aws:iam::123456789012:role/deploy",
        "commit_sha": COMMIT_SHA,
        "repository_id": "987654",
        "ecr_repository": "my-ecr-repo",
        "output_dir": str(tmp_path / "scan-results"),
        "artifact_root": str(tmp_path / "artifacts"),
        "cache_dir": str(tmp_path / "buildx-cache"),
        "cache_root": str(tmp_path / "cache-root"),
    })
    return config


@pytest.fixture
def default_thresholds():
    return SeverityThresholds()


@pytest.fixture
def fakes():
    """Fake collaborator classes and a ``Collaborators`` factory."""
    return SimpleNamespace(
        Source=FakeSource,
        Identity=FakeIdentity,
        Registry=FakeRegistry,
        Builder=FakeBuilder,
        Scanner=FakeScanner,
        Artifacts=FakeArtifacts,
        Cache=FakeCache,
        collaborators=make_collaborators,
        REGISTRY=REGISTRY,
        COMMIT_SHA=COMMIT_SHA,
    )
