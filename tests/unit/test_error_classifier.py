"""Tests for command failure classification."""

import subprocess

import pytest

from imagegate.error_classifier import (
    CREDENTIAL_PATTERNS,
    TRANSIENT_PATTERNS,
    classify_command_failure,
    classify_timeout,
)
from imagegate.exceptions import (
    BuildError,
    CredentialError,
    ImageGateError,
    ScanError,
    StepError,
    TransientInfrastructureError,
)


class TestClassifyCommandFailure:
    @pytest.mark.parametrize("stderr", [
        "An error occurred (AccessDenied) when calling the AssumeRole operation",
        "An error occurred (ExpiredToken) when calling the GetCallerIdentity operation",
        "Error response from daemon: Get https://x/v2/: no basic auth credentials",
        "Unable to locate credentials. You can configure credentials by running \"aws configure\".",
        "An error occurred (InvalidIdentityToken) when calling AssumeRoleWithWebIdentity",
    ])
    def test_credential_failures(self, stderr):
        error = classify_command_failure("credential_broker", ["aws", "sts"], 254, stderr)
        assert isinstance(error, CredentialError)
        assert error.failure_kind == "credential"

    @pytest.mark.parametrize("stderr", [
        "dial tcp: lookup registry: i/o timeout",
        "read: connection reset by peer",
        "received unexpected HTTP status: 503 Service Unavailable",
        "An error occurred (ThrottlingException): Rate exceeded",
        "net/http: TLS handshake timeout",
    ])
    def test_transient_failures(self, stderr):
        error = classify_command_failure("image_publish", ["docker", "push"], 1, stderr)
        assert isinstance(error, TransientInfrastructureError)
        assert error.failure_kind == "transient"

    def test_credential_beats_transient(self):
        stderr = "denied: requested access to the resource is denied (after timeout)"
        error = classify_command_failure("image_publish", ["docker", "push"], 1, stderr)
        assert isinstance(error, CredentialError)

    def test_unmatched_uses_step_default(self):
        error = classify_command_failure(
            "image_build",
            ["docker", "buildx", "build", "."],
            1,
            "ERROR: failed to solve: process \"/bin/sh -c make\" did not complete successfully",
            default=BuildError,
        )
        assert type(error) is BuildError
        assert error.failure_kind == "build"
        assert error.returncode == 1
        assert error.step == "image_build"

    def test_digest_does_not_trigger_status_patterns(self):
        stderr = "manifest sha256:5004010403eof not found"
        error = classify_command_failure("vulnerability_scan", ["inspector-sbomgen"], 2, stderr, default=ScanError)
        assert type(error) is ScanError

    def test_message_uses_last_stderr_line(self):
        error = classify_command_failure(
            "image_build", ["docker"], 1, "step 1\nstep 2\n\nfinal problem\n", default=BuildError
        )
        assert str(error) == "image_build: docker failed (final problem)"
        assert "step 1" in error.stderr

    def test_message_without_stderr(self):
        error = classify_command_failure("source_fetch", ["git"], 128, "")
        assert str(error) == "source_fetch: git failed (exit status 128)"
        assert type(error) is StepError

    def test_all_errors_share_base(self):
        error = classify_command_failure("x", ["x"], 1, "AccessDenied")
        assert isinstance(error, ImageGateError)

    def test_patterns_are_lowercase(self):
        for pattern in CREDENTIAL_PATTERNS + TRANSIENT_PATTERNS:
            assert pattern == pattern.lower()


class TestClassifyTimeout:
    def test_timeout_is_transient(self):
        exc = subprocess.TimeoutExpired(cmd=["docker", "push", "x"], timeout=30)
        error = classify_timeout("image_publish", exc)
        assert isinstance(error, TransientInfrastructureError)
        assert str(error) == "image_publish: docker timed out after 30s"
