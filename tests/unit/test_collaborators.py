"""
Tests for the subprocess-backed collaborators.

External tools are never executed: ``CommandRunner`` is exercised against a
patched ``subprocess.run`` and the adapters against a mocked runner.
"""

import json
import subprocess
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from imagegate.collaborators import (
    BuildRequest,
    BuildxImageBuilder,
    Collaborators,
    CommandResult,
    CommandRunner,
    EcrRegistry,
    GitSourceProvider,
    InspectorScanner,
    LocalArtifactStore,
    LocalLayerCache,
    StsIdentityBroker,
    role_session_name,
)
from imagegate.exceptions import (
    BuildError,
    CredentialError,
    PipelineTimeoutError,
    PublishError,
    ScanError,
    SourceError,
    TransientInfrastructureError,
)
from imagegate.schemas import AwsCredentials, ImageArtifact, ImageReference, SeverityThresholds

REGISTRY = "123456789012.dkr.ecr.ap-southeast-2.amazonaws.com"
SHA = "0123456789abcdef0123456789abcdef01234567"


def _result(stdout="", args=None):
    return CommandResult(args=args or [], returncode=0, stdout=stdout, stderr="", duration_seconds=0.0)


def _scripted_runner(responses):
    """Mock runner answering each command by its first matching prefix."""
    runner = MagicMock(spec=CommandRunner)

    def run(cmd, step, **kwargs):
        joined = " ".join(cmd)
        for prefix, response in responses:
            if joined.startswith(prefix):
                if isinstance(response, Exception):
                    raise response
                if callable(response):
                    return response(cmd, **kwargs)
                return _result(response, cmd)
        return _result("", cmd)

    runner.run.side_effect = run
    return runner


def _commands(runner):
    return [c.args[0] for c in runner.run.call_args_list]


def _creds(role="arn:aws:iam::1:role/oidc"):
    return AwsCredentials(
        access_key_id="AKIAEXAMPLE",
        secret_access_key="secret",
        session_token="token",
        role_arn=role,
    )


def _refs(sha=SHA):
    return [
        ImageReference(registry=REGISTRY, repository="my-ecr-repo", tag="latest"),
        ImageReference(registry=REGISTRY, repository="my-ecr-repo", tag=sha),
    ]


# ============================================================================
# CommandRunner
# ============================================================================


class TestCommandRunner:
    def test_success(self):
        completed = subprocess.CompletedProcess(["git"], 0, stdout="ok\n", stderr="")
        with patch("imagegate.collaborators.command.subprocess.run", return_value=completed) as mock_run:
            result = CommandRunner().run(["git", "status"], step="source_fetch")
        assert result.stdout == "ok\n"
        kwargs = mock_run.call_args.kwargs
        assert kwargs["capture_output"] is True
        assert kwargs["check"] is False
        assert kwargs["env"] is None

    def test_env_layered_over_environ(self, monkeypatch):
        monkeypatch.setenv("EXISTING", "1")
        completed = subprocess.CompletedProcess(["aws"], 0, stdout="", stderr="")
        with patch("imagegate.collaborators.command.subprocess.run", return_value=completed) as mock_run:
            CommandRunner().run(["aws"], step="x", env={"AWS_REGION": "eu-west-1"})
        env = mock_run.call_args.kwargs["env"]
        assert env["EXISTING"] == "1"
        assert env["AWS_REGION"] == "eu-west-1"

    def test_failure_is_classified(self):
        completed = subprocess.CompletedProcess(["docker"], 1, stdout="", stderr="failed to solve")
        with patch("imagegate.collaborators.command.subprocess.run", return_value=completed):
            with pytest.raises(BuildError):
                CommandRunner().run(["docker", "buildx"], step="image_build", error_cls=BuildError)

    def test_missing_tool(self):
        with patch("imagegate.collaborators.command.subprocess.run", side_effect=FileNotFoundError()):
            with pytest.raises(ScanError, match="not installed"):
                CommandRunner().run(["inspector-sbomgen"], step="vulnerability_scan", error_cls=ScanError)

    def test_command_timeout_is_transient(self):
        exc = subprocess.TimeoutExpired(cmd=["docker", "push"], timeout=5)
        with patch("imagegate.collaborators.command.subprocess.run", side_effect=exc):
            with pytest.raises(TransientInfrastructureError):
                CommandRunner(default_timeout=5).run(["docker", "push"], step="image_publish", timeout=5)

    def test_expired_deadline_refuses_to_run(self):
        with patch("imagegate.collaborators.command.subprocess.run") as mock_run:
            with pytest.raises(PipelineTimeoutError):
                CommandRunner(deadline=time.monotonic() - 1).run(["git"], step="source_fetch")
        mock_run.assert_not_called()

    def test_timeout_capped_by_deadline(self):
        completed = subprocess.CompletedProcess(["git"], 0, stdout="", stderr="")
        with patch("imagegate.collaborators.command.subprocess.run", return_value=completed) as mock_run:
            CommandRunner(deadline=time.monotonic() + 10).run(["git"], step="x", timeout=600)
        assert mock_run.call_args.kwargs["timeout"] <= 10


# ============================================================================
# Git
# ============================================================================


class TestGitSourceProvider:
    def test_not_a_repository(self, tmp_path):
        with pytest.raises(SourceError):
            GitSourceProvider(MagicMock()).fetch(str(tmp_path), SHA)

    def test_checks_out_local_commit(self, tmp_path):
        (tmp_path / ".git").mkdir()
        runner = _scripted_runner([(f"git -C {tmp_path} rev-parse", SHA + "\n")])

        assert GitSourceProvider(runner).fetch(str(tmp_path), SHA) == SHA
        commands = [" ".join(c[3:]) for c in _commands(runner)]
        assert commands == [
            f"cat-file -e {SHA}^{{commit}}",
            f"checkout --force --detach {SHA}",
            "rev-parse HEAD",
        ]

    def test_fetches_missing_commit(self, tmp_path):
        (tmp_path / ".git").mkdir()
        runner = _scripted_runner([
            (f"git -C {tmp_path} cat-file", SourceError("missing", step="source_fetch")),
            (f"git -C {tmp_path} rev-parse", SHA),
        ])
        GitSourceProvider(runner).fetch(str(tmp_path), SHA)
        assert ["git", "-C", str(tmp_path), "fetch", "--depth", "1", "origin", SHA] in _commands(runner)

    def test_head_mismatch(self, tmp_path):
        (tmp_path / ".git").mkdir()
        runner = _scripted_runner([(f"git -C {tmp_path} rev-parse", "f" * 40)])
        with pytest.raises(SourceError, match="requested"):
            GitSourceProvider(runner).fetch(str(tmp_path), SHA)

    def test_no_commit_uses_head(self, tmp_path):
        (tmp_path / ".git").mkdir()
        runner = _scripted_runner([(f"git -C {tmp_path} rev-parse", SHA)])
        assert GitSourceProvider(runner).fetch(str(tmp_path)) == SHA
        assert len(_commands(runner)) == 1


# ============================================================================
# AWS
# ============================================================================


class TestRoleSessionName:
    def test_joins_parts(self):
        assert role_session_name("gh", "42", "abc") == "gh-42-abc"

    def test_skips_empty(self):
        assert role_session_name("gh", "", "abc") == "gh-abc"

    def test_truncated_and_sanitised(self):
        name = role_session_name("gh-d", "repo id/with:odd", "a" * 80)
        assert len(name) == 64
        assert " " not in name and "/" not in name and ":" not in name


ASSUME_ROLE_RESPONSE = json.dumps({
    "Credentials": {
        "AccessKeyId": "ASIACHAINED",
        "SecretAccessKey": "chained-secret",
        "SessionToken": "chained-token",
        "Expiration": "2026-01-01T12:00:00Z",
    },
})

EXPORT_RESPONSE = json.dumps({
    "Version": 1,
    "AccessKeyId": "ASIAOIDC",
    "SecretAccessKey": "oidc-secret",
    "SessionToken": "oidc-token",
    "Expiration": "2026-01-01T12:00:00+00:00",
})


class TestStsIdentityBroker:
    def test_web_identity(self, tmp_path):
        token = tmp_path / "token"
        token.write_text("jwt", encoding="utf-8")
        runner = _scripted_runner([("aws configure export-credentials", EXPORT_RESPONSE)])

        creds = StsIdentityBroker(runner, web_identity_token_file=str(token)).assume_role(
            "arn:aws:iam::1:role/oidc", "gh-42-abc", "ap-southeast-2"
        )

        assert creds.access_key_id == "ASIAOIDC"
        assert creds.secret_access_key.get_secret_value() == "oidc-secret"
        assert creds.role_arn == "arn:aws:iam::1:role/oidc"
        assert creds.expiration.year == 2026
        env = runner.run.call_args.kwargs["env"]
        assert env["AWS_ROLE_ARN"] == "arn:aws:iam::1:role/oidc"
        assert env["AWS_ROLE_SESSION_NAME"] == "gh-42-abc"
        assert env["AWS_WEB_IDENTITY_TOKEN_FILE"] == str(token)

    def test_token_file_from_environment(self, tmp_path, monkeypatch):
        token = tmp_path / "token"
        token.write_text("jwt", encoding="utf-8")
        monkeypatch.setenv("AWS_WEB_IDENTITY_TOKEN_FILE", str(token))
        runner = _scripted_runner([("aws configure export-credentials", EXPORT_RESPONSE)])
        StsIdentityBroker(runner).assume_role("arn:aws:iam::1:role/oidc", "s", "ap-southeast-2")

    def test_missing_token(self):
        with pytest.raises(CredentialError, match="token"):
            StsIdentityBroker(MagicMock()).assume_role("arn:aws:iam::1:role/oidc", "s", "r")

    def test_missing_role(self):
        with pytest.raises(CredentialError):
            StsIdentityBroker(MagicMock()).assume_role("", "s", "r")

    def test_chained(self):
        runner = _scripted_runner([("aws sts assume-role", ASSUME_ROLE_RESPONSE)])
        source = _creds()

        creds = StsIdentityBroker(runner).assume_role(
            "arn:aws:iam::1:role/deploy", "gh-d-42-abc", "ap-southeast-2", source=source
        )

        assert creds.access_key_id == "ASIACHAINED"
        assert creds.session_name == "gh-d-42-abc"
        cmd = _commands(runner)[0]
        assert cmd[cmd.index("--role-arn") + 1] == "arn:aws:iam::1:role/deploy"
        assert cmd[cmd.index("--duration-seconds") + 1] == "3600"
        assert runner.run.call_args.kwargs["env"]["AWS_ACCESS_KEY_ID"] == "AKIAEXAMPLE"

    def test_unreadable_response(self):
        runner = _scripted_runner([("aws sts assume-role", "not json")])
        with pytest.raises(CredentialError, match="unreadable"):
            StsIdentityBroker(runner).assume_role("arn:r", "s", "r", source=_creds())

    def test_incomplete_response(self):
        runner = _scripted_runner([("aws sts assume-role", json.dumps({"Credentials": {"AccessKeyId": "x"}}))])
        with pytest.raises(CredentialError, match="missing"):
            StsIdentityBroker(runner).assume_role("arn:r", "s", "r", source=_creds())


class TestEcrRegistry:
    def test_login(self):
        runner = _scripted_runner([
            ("aws sts get-caller-identity", "123456789012\n"),
            ("aws ecr get-login-password", "password\n"),
        ])
        session = EcrRegistry(runner).login(_creds(), "ap-southeast-2")

        assert session.registry == REGISTRY
        assert session.region == "ap-southeast-2"
        login_call = runner.run.call_args_list[-1]
        assert login_call.args[0] == ["docker", "login", "--username", "AWS", "--password-stdin", REGISTRY]
        assert login_call.kwargs["input_text"] == "password"

    def test_no_account(self):
        runner = _scripted_runner([("aws sts get-caller-identity", "\n")])
        with pytest.raises(CredentialError):
            EcrRegistry(runner).login(_creds(), "ap-southeast-2")


# ============================================================================
# Docker Buildx
# ============================================================================


class TestBuildxImageBuilder:
    def _request(self, **kwargs):
        defaults = dict(
            context="/src/.",
            dockerfile="/src/Dockerfile",
            references=_refs(),
            commit_sha=SHA,
        )
        defaults.update(kwargs)
        return BuildRequest(**defaults)

    def test_build_command(self):
        cmd = BuildxImageBuilder(MagicMock()).build_command(
            self._request(platforms=["linux/arm64"], cache_dir="/tmp/cache")
        )
        assert cmd[:3] == ["docker", "buildx", "build"]
        assert "--push" not in cmd
        assert "--load" in cmd
        assert f"GIT_SHA={SHA}" in cmd
        assert cmd.count("--tag") == 2
        assert f"{REGISTRY}/my-ecr-repo:{SHA}" in cmd
        assert cmd[cmd.index("--platform") + 1] == "linux/arm64"
        assert "type=local,src=/tmp/cache" in cmd
        assert "type=local,dest=/tmp/cache,mode=max" in cmd
        assert cmd[-1] == "/src/."

    def test_multi_platform_load_rejected(self):
        runner = MagicMock()
        with pytest.raises(BuildError, match="multi-platform"):
            BuildxImageBuilder(runner).build(self._request(platforms=["linux/amd64", "linux/arm64"]))
        runner.run.assert_not_called()

    def test_build_command_without_cache(self):
        cmd = BuildxImageBuilder(MagicMock()).build_command(self._request())
        assert "--cache-from" not in cmd
        assert "--platform" not in cmd

    def test_build_returns_artifact(self):
        runner = _scripted_runner([("docker image inspect", "sha256:aaa\n")])
        artifact = BuildxImageBuilder(runner).build(self._request())
        assert artifact.image_id == "sha256:aaa"
        assert artifact.scan_reference.tag == SHA
        assert artifact.published is False

    def test_build_tags_disagree(self):
        ids = iter(["sha256:aaa", "sha256:bbb"])
        runner = _scripted_runner([("docker image inspect", lambda cmd, **kw: _result(next(ids)))])
        with pytest.raises(BuildError, match="different images"):
            BuildxImageBuilder(runner).build(self._request())

    def test_setup_creates_builder(self):
        runner = _scripted_runner([("docker buildx ls", "NAME/NODE  DRIVER\ndefault *  docker\n")])
        BuildxImageBuilder(runner).setup()
        commands = [" ".join(c) for c in _commands(runner)]
        assert any("tonistiigi/binfmt" in c for c in commands)
        assert any(c.startswith("docker buildx create --name imagegate") for c in commands)
        assert commands[-1] == "docker buildx inspect --bootstrap"

    def test_setup_reuses_builder(self):
        runner = _scripted_runner([("docker buildx ls", "NAME/NODE  DRIVER\nimagegate *  docker-container\n")])
        BuildxImageBuilder(runner).setup()
        commands = [" ".join(c) for c in _commands(runner)]
        assert "docker buildx use imagegate" in commands
        assert not any(c.startswith("docker buildx create") for c in commands)

    def test_publish_pushes_existing_image(self):
        runner = _scripted_runner([("docker image inspect", "sha256:aaa")])
        artifact = ImageArtifact(image_id="sha256:aaa", commit_sha=SHA, references=_refs())

        pushed = BuildxImageBuilder(runner).publish(artifact)

        assert pushed == [ref.uri for ref in _refs()]
        commands = _commands(runner)
        assert ["docker", "push", f"{REGISTRY}/my-ecr-repo:{SHA}"] in commands
        assert not any(c[:3] == ["docker", "buildx", "build"] for c in commands)

    def test_publish_refuses_retagged_image(self):
        runner = _scripted_runner([("docker image inspect", "sha256:other")])
        artifact = ImageArtifact(image_id="sha256:aaa", commit_sha=SHA, references=_refs())
        with pytest.raises(PublishError, match="not the scanned image"):
            BuildxImageBuilder(runner).publish(artifact)
        assert not any(c[:2] == ["docker", "push"] for c in _commands(runner))


# ============================================================================
# Inspector
# ============================================================================


CYCLONEDX = {
    "bomFormat": "CycloneDX",
    "components": [
        {"bom-ref": "comp-1", "name": "openssl", "version": "3.0.1"},
        {"bom-ref": "comp-2", "name": "zlib", "version": "1.2.11"},
    ],
    "vulnerabilities": [
        {
            "id": "CVE-2024-0001",
            "ratings": [
                {"severity": "low", "source": {"name": "NVD"}},
                {"severity": "critical", "source": {"name": "AMAZON_INSPECTOR"}},
            ],
            "affects": [{"ref": "comp-1"}],
            "properties": [{"name": "amazon:inspector:sbom_scanner:fixed_version:comp-1", "value": "3.0.2"}],
        },
        {
            "id": "CVE-2024-0002",
            "ratings": [{"severity": "medium", "source": {"name": "AMAZON_INSPECTOR"}}],
            "affects": [{"ref": "comp-1"}, {"ref": "comp-2"}],
        },
        {
            "id": "CVE-2024-0003",
            "ratings": [{"severity": "untriaged", "source": {"name": "AMAZON_INSPECTOR"}}],
            "affects": [{"ref": "comp-2"}],
        },
    ],
}


class TestInspectorScanner:
    def _runner(self, response):
        def write_sbom(cmd, **kwargs):
            Path(cmd[cmd.index("--outfile") + 1]).write_text("{}", encoding="utf-8")
            return _result("")

        return _scripted_runner([
            ("inspector-sbomgen container", write_sbom),
            ("aws inspector-scan scan-sbom", response),
        ])

    def test_counts_and_reports(self, tmp_path):
        runner = self._runner(json.dumps({"sbom": CYCLONEDX}))
        image = _refs()[1]

        result = InspectorScanner(runner, region="ap-southeast-2").scan(
            image, SeverityThresholds(), tmp_path, credentials=_creds()
        )

        assert result.counts.as_dict() == {"critical": 1, "high": 0, "medium": 1, "low": 0, "other": 1}
        assert result.threshold_exceeded is True
        assert result.image == image
        assert [p.name for p in result.report_files] == [
            f"inspector_scan_{SHA}.json",
            f"inspector_scan_{SHA}.csv",
            f"sbom_{SHA}.json",
            f"inspector_scan_{SHA}.md",
        ]
        assert all(p.is_file() for p in result.report_files)
        assert "CVE-2024-0001" in result.report_markdown.read_text(encoding="utf-8")
        scan_call = runner.run.call_args_list[-1]
        assert scan_call.kwargs["env"]["AWS_REGION"] == "ap-southeast-2"

    def test_clean_image(self, tmp_path):
        runner = self._runner(json.dumps({"sbom": {"bomFormat": "CycloneDX", "components": []}}))
        result = InspectorScanner(runner).scan(_refs()[1], SeverityThresholds(), tmp_path)
        assert result.counts.total == 0
        assert result.threshold_exceeded is False
        assert "No vulnerabilities found." in result.report_markdown.read_text(encoding="utf-8")

    def test_sbom_not_written(self, tmp_path):
        runner = _scripted_runner([])
        with pytest.raises(ScanError, match="did not write"):
            InspectorScanner(runner).scan(_refs()[1], SeverityThresholds(), tmp_path)

    def test_unreadable_response(self, tmp_path):
        runner = self._runner("<html>")
        with pytest.raises(ScanError, match="unreadable"):
            InspectorScanner(runner).scan(_refs()[1], SeverityThresholds(), tmp_path)


# ============================================================================
# Wiring
# ============================================================================


class TestCollaboratorsFromConfig:
    def test_default_adapters(self, tmp_path):
        config = {
            "aws_region": "eu-west-1",
            "artifact_root": str(tmp_path / "artifacts"),
            "cache_dir": str(tmp_path / "cache"),
            "cache_root": str(tmp_path / "root"),
        }
        runner = CommandRunner()
        collaborators = Collaborators.from_config(config, runner=runner)

        assert isinstance(collaborators.source, GitSourceProvider)
        assert isinstance(collaborators.identity, StsIdentityBroker)
        assert isinstance(collaborators.registry, EcrRegistry)
        assert isinstance(collaborators.builder, BuildxImageBuilder)
        assert isinstance(collaborators.scanner, InspectorScanner)
        assert isinstance(collaborators.artifacts, LocalArtifactStore)
        assert isinstance(collaborators.cache, LocalLayerCache)
        assert collaborators.scanner.region == "eu-west-1"
        assert collaborators.builder.runner is runner
