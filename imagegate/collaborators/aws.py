"""
AWS adapters: STS identity broker and ECR registry login.

Both drive the ``aws`` CLI (v2) through ``CommandRunner``.  Credentials are
passed to child processes through the environment only; they are never
written to disk or logged.
"""

from __future__ import annotations

import json
import logging
import os
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from ..exceptions import CredentialError
from ..schemas import AwsCredentials, RegistrySession
from .command import CommandRunner

logger = logging.getLogger(__name__)

_SESSION_NAME_INVALID = re.compile(r"[^\w+=,.@-]")
MAX_SESSION_NAME = 64


def role_session_name(*parts: str) -> str:
    """Build an STS role session name from non-empty *parts*.

    Characters STS rejects are replaced with ``-`` and the result is
    truncated to 64 characters.
    """
    name = "-".join(p for p in parts if p)
    return _SESSION_NAME_INVALID.sub("-", name)[:MAX_SESSION_NAME]


def _parse_credentials(payload: Dict[str, Any], role: str, session_name: str) -> AwsCredentials:
    # assume-role nests under "Credentials"; export-credentials is flat
    creds = payload.get("Credentials", payload)
    try:
        expiration = creds.get("Expiration")
        return AwsCredentials(
            access_key_id=creds["AccessKeyId"],
            secret_access_key=creds["SecretAccessKey"],
            session_token=creds["SessionToken"],
            expiration=datetime.fromisoformat(expiration.replace("Z", "+00:00")) if expiration else None,
            role_arn=role,
            session_name=session_name,
        )
    except (KeyError, AttributeError, ValueError) as exc:
        raise CredentialError(
            f"credential response for {role} is missing {exc}", step="credential_broker"
        ) from exc


class StsIdentityBroker:
    """Assume roles with STS.

    The first assumption exchanges the run's OIDC token (read from
    ``web_identity_token_file`` or ``AWS_WEB_IDENTITY_TOKEN_FILE``); later
    ones chain from the previous credentials with ``sts assume-role``.

    Parameters
    ----------
    runner : CommandRunner
        Executes the ``aws`` CLI.
    web_identity_token_file : str
        File holding the OIDC token.  Falls back to the environment.
    duration_seconds : int
        Requested credential lifetime.  Chained sessions are capped at one
        hour by STS.
    """

    def __init__(
        self,
        runner: CommandRunner,
        web_identity_token_file: str = "",
        duration_seconds: int = 3600,
    ):
        self.runner = runner
        self.web_identity_token_file = web_identity_token_file
        self.duration_seconds = duration_seconds

    def assume_role(
        self,
        role: str,
        session_name: str,
        region: str,
        source: Optional[AwsCredentials] = None,
    ) -> AwsCredentials:
        if not role:
            raise CredentialError("no role to assume was configured", step="credential_broker")
        if source is None:
            return self._assume_with_web_identity(role, session_name, region)
        return self._assume_chained(role, session_name, region, source)

    def _token_file(self) -> str:
        token_file = self.web_identity_token_file or os.environ.get("AWS_WEB_IDENTITY_TOKEN_FILE", "")
        if not token_file or not Path(token_file).is_file():
            raise CredentialError(
                "OIDC token file not found; set AWS_WEB_IDENTITY_TOKEN_FILE",
                step="credential_broker",
            )
        return token_file

    def _assume_with_web_identity(self, role: str, session_name: str, region: str) -> AwsCredentials:
        env = {
            "AWS_ROLE_ARN": role,
            "AWS_ROLE_SESSION_NAME": session_name,
            "AWS_WEB_IDENTITY_TOKEN_FILE": self._token_file(),
            "AWS_REGION": region,
            "AWS_DEFAULT_REGION": region,
        }
        logger.info("Assuming %s with web identity (session %s)", role, session_name)
        result = self.runner.run(
            ["aws", "configure", "export-credentials", "--format", "process"],
            step="credential_broker",
            error_cls=CredentialError,
            env=env,
        )
        return _parse_credentials(self._load_json(result.stdout, role), role, session_name)

    def _assume_chained(
        self,
        role: str,
        session_name: str,
        region: str,
        source: AwsCredentials,
    ) -> AwsCredentials:
        logger.info("Chaining from %s into %s (session %s)", source.role_arn or "source identity", role, session_name)
        result = self.runner.run(
            [
                "aws", "sts", "assume-role",
                "--role-arn", role,
                "--role-session-name", session_name,
                "--duration-seconds", str(min(self.duration_seconds, 3600)),
                "--region", region,
                "--output", "json",
            ],
            step="credential_broker",
            error_cls=CredentialError,
            env=source.as_env(region),
        )
        return _parse_credentials(self._load_json(result.stdout, role), role, session_name)

    @staticmethod
    def _load_json(stdout: str, role: str) -> Dict[str, Any]:
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise CredentialError(
                f"unreadable credential response for {role}", step="credential_broker"
            ) from exc


class EcrRegistry:
    """Log Docker in to the account's private ECR registry."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def login(self, credentials: AwsCredentials, region: str) -> RegistrySession:
        env = credentials.as_env(region)

        account = self.runner.run(
            ["aws", "sts", "get-caller-identity", "--query", "Account", "--output", "text"],
            step="registry_session",
            error_cls=CredentialError,
            env=env,
        ).stdout.strip()
        if not account:
            raise CredentialError("could not determine the AWS account id", step="registry_session")
        registry = f"{account}.dkr.ecr.{region}.amazonaws.com"

        password = self.runner.run(
            ["aws", "ecr", "get-login-password", "--region", region],
            step="registry_session",
            error_cls=CredentialError,
            env=env,
        ).stdout.strip()

        self.runner.run(
            ["docker", "login", "--username", "AWS", "--password-stdin", registry],
            step="registry_session",
            error_cls=CredentialError,
            input_text=password,
        )
        logger.info("Logged in to %s", registry)
        return RegistrySession(registry=registry, region=region)
