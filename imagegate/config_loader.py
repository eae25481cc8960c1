"""
Configuration Loader for the imagegate pipeline.

Implements a layered configuration system:
    hardcoded defaults < profile YAML < .imagegate.yml < env vars < CLI args

Usage:
    from imagegate.config_loader import build_unified_config, build_thresholds
    config = build_unified_config(profile="strict", cli_args=args)
    thresholds = build_thresholds(config)
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from .exceptions import ConfigurationError
from .schemas import SeverityThresholds

logger = logging.getLogger(__name__)

PACKAGE_ROOT = Path(__file__).resolve().parent

THRESHOLD_KEYS = (
    "critical_threshold",
    "high_threshold",
    "medium_threshold",
    "low_threshold",
    "other_threshold",
)

# ---------------------------------------------------------------------------
# Default configuration
# ---------------------------------------------------------------------------

def get_default_config() -> Dict[str, Any]:
    """Return all configuration parameters with sensible defaults.

    This is the lowest-priority layer.  Every configurable key must appear
    here so that downstream code never needs to guard against missing keys.
    """
    return {
        # -- Registry --
        "aws_region": "ap-southeast-2",
        "ecr_repository": "my-ecr-repo",

        # -- Severity thresholds --
        "critical_threshold": 0,
        "high_threshold": 0,
        "medium_threshold": 5,
        "low_threshold": 5,
        "other_threshold": 5,

        # -- Identity --
        "oidc_role": "",
        "deploy_role": "",
        "web_identity_token_file": "",

        # -- Run identity --
        "commit_sha": "",
        "repository_id": "",
        "runner_os": "Linux",

        # -- Build --
        "build_context": ".",
        "dockerfile": "./Dockerfile",
        "platforms": "",
        "cache_dir": "/tmp/.buildx-cache",
        "cache_root": str(Path.home() / ".cache" / "imagegate" / "buildx"),

        # -- Limits --
        "timeout_minutes": 60,

        # -- Output --
        "output_dir": ".imagegate/scan-results",
        "artifact_root": ".imagegate/artifacts",
        "artifact_name": "scan-sbom-results",
    }

# ---------------------------------------------------------------------------
# Profile loading
# ---------------------------------------------------------------------------

def _profile_search_paths(profile_name: str) -> List[Path]:
    """Return candidate YAML paths for *profile_name*, in priority order."""
    return [
        Path(".imagegate") / "profiles" / f"{profile_name}.yml",          # project-local
        Path.home() / ".imagegate" / "profiles" / f"{profile_name}.yml",  # user
        PACKAGE_ROOT / "profiles" / f"{profile_name}.yml",                # built-in
    ]


def _read_yaml(path: Path) -> dict:
    """Parse a YAML mapping from *path*; an empty file yields ``{}``."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"{path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path}: expected a mapping, got {type(raw).__name__}")
    return raw


def _load_raw_profile(profile_name: str, _chain: Optional[List[str]] = None) -> dict:
    """Load raw YAML dict for *profile_name*, resolving ``_extends``.

    Raises
    ------
    FileNotFoundError
        If the profile YAML cannot be found in any search path.
    ValueError
        If a circular ``_extends`` chain is detected.
    ConfigurationError
        If a profile file is not a valid YAML mapping.
    """
    if _chain is None:
        _chain = []

    if profile_name in _chain:
        raise ValueError(
            f"Circular profile inheritance detected: "
            f"{' -> '.join(_chain)} -> {profile_name}"
        )
    _chain.append(profile_name)

    loaded_path: Optional[Path] = None
    for candidate in _profile_search_paths(profile_name):
        if candidate.is_file():
            loaded_path = candidate
            break

    if loaded_path is None:
        raise FileNotFoundError(
            f"Profile '{profile_name}' not found.  Searched: "
            + ", ".join(str(p) for p in _profile_search_paths(profile_name))
        )

    logger.info("Loading profile '%s' from %s", profile_name, loaded_path)
    raw = _read_yaml(loaded_path)

    parent_name = raw.pop("_extends", None)
    if parent_name:
        parent = _load_raw_profile(parent_name, _chain=_chain)
        raw = _deep_merge_nested(parent, raw)

    return raw


def _deep_merge_nested(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base* (nested dicts)."""
    merged = dict(base)
    for key, value in override.items():
        if (
            key in merged
            and isinstance(merged[key], dict)
            and isinstance(value, dict)
        ):
            merged[key] = _deep_merge_nested(merged[key], value)
        else:
            merged[key] = value
    return merged

# ---------------------------------------------------------------------------
# Flatten nested YAML -> flat config dict
# ---------------------------------------------------------------------------

_DIRECT_SECTIONS = ("registry", "identity", "build", "limits", "output")


def flatten_profile(nested: dict) -> Dict[str, Any]:
    """Convert a nested profile YAML dict to a flat config dict.

    Mapping rules:
    - ``nested["thresholds"][level]``  -> ``{level}_threshold``
    - ``nested["registry"][key]``      -> key (directly)
    - ``nested["identity"][key]``      -> key (directly)
    - ``nested["build"][key]``         -> key (directly)
    - ``nested["limits"][key]``        -> key (directly)
    - ``nested["output"][key]``        -> key (directly)
    - Top-level scalar keys (``name``, ``description``) are passed through.

    Only non-None values are included.
    """
    flat: Dict[str, Any] = {}

    thresholds = nested.get("thresholds")
    if isinstance(thresholds, dict):
        for level, value in thresholds.items():
            if value is not None:
                flat[f"{str(level).lower()}_threshold"] = value

    for section in _DIRECT_SECTIONS:
        block = nested.get(section)
        if isinstance(block, dict):
            for key, value in block.items():
                if value is not None:
                    flat[key] = value

    for scalar_key in ("name", "description"):
        if nested.get(scalar_key) is not None:
            flat[scalar_key] = nested[scalar_key]

    return flat


def load_profile(profile_name: str) -> Dict[str, Any]:
    """Load a profile by name and return a flat config dict.

    Search order (first match wins):
      1. ``.imagegate/profiles/{name}.yml``          (project-local)
      2. ``~/.imagegate/profiles/{name}.yml``        (user)
      3. ``{PACKAGE_ROOT}/profiles/{name}.yml``      (built-in)

    The ``_extends`` key enables profile inheritance: the parent profile is
    loaded first and the child values are overlaid on top.
    """
    raw = _load_raw_profile(profile_name)
    return flatten_profile(raw)

# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------

# Mapping: (env_var_name, ...) -> (config_key, type)
# Types: "str", "int", "threshold"
_ENV_MAPPINGS: List[tuple] = [
    # Registry
    (("AWS_REGION", "INPUT_AWS_REGION"),               "aws_region",        "str"),
    (("ECR_REPOSITORY", "INPUT_ECR_REPOSITORY"),       "ecr_repository",    "str"),

    # Severity thresholds
    (("CRITICAL_THRESHOLD", "INPUT_CRITICAL_THRESHOLD"), "critical_threshold", "threshold"),
    (("HIGH_THRESHOLD", "INPUT_HIGH_THRESHOLD"),       "high_threshold",    "threshold"),
    (("MEDIUM_THRESHOLD", "INPUT_MEDIUM_THRESHOLD"),   "medium_threshold",  "threshold"),
    (("LOW_THRESHOLD", "INPUT_LOW_THRESHOLD"),         "low_threshold",     "threshold"),
    (("OTHER_THRESHOLD", "INPUT_OTHER_THRESHOLD"),     "other_threshold",   "threshold"),

    # Identity
    (("OIDC_ROLE", "OICD_ROLE"),                       "oidc_role",         "str"),
    (("DEPLOY_ROLE",),                                 "deploy_role",       "str"),
    (("AWS_WEB_IDENTITY_TOKEN_FILE",),                 "web_identity_token_file", "str"),

    # Run identity
    (("GITHUB_SHA",),                                  "commit_sha",        "str"),
    (("GITHUB_REPOSITORY_ID",),                        "repository_id",     "str"),
    (("RUNNER_OS",),                                   "runner_os",         "str"),

    # Limits
    (("IMAGEGATE_TIMEOUT_MINUTES",),                   "timeout_minutes",   "int"),
]


def _coerce(raw: str, type_tag: str) -> Any:
    """Convert a raw env-var string to the appropriate Python type."""
    if type_tag in ("int", "threshold"):
        return int(raw.strip())
    return raw


def load_env_overrides() -> Dict[str, Any]:
    """Load configuration values from explicitly-set environment variables.

    Only variables that are **present** in ``os.environ`` are returned.
    Both bare names (``AWS_REGION``) and GitHub-Action-style ``INPUT_``
    prefixed names are supported.  The first found wins (left-to-right in
    the mapping tuple).

    Raises
    ------
    ConfigurationError
        If a threshold variable is not an integer.  Other malformed values
        are logged and ignored.
    """
    overrides: Dict[str, Any] = {}

    for env_names, config_key, type_tag in _ENV_MAPPINGS:
        for env_name in env_names:
            if env_name in os.environ:
                try:
                    overrides[config_key] = _coerce(os.environ[env_name], type_tag)
                except (ValueError, TypeError) as exc:
                    if type_tag == "threshold":
                        raise ConfigurationError(
                            f"{env_name} must be a non-negative integer, "
                            f"got {os.environ[env_name]!r}"
                        ) from exc
                    logger.warning(
                        "Ignoring env var %s: could not convert %r to %s (%s)",
                        env_name, os.environ[env_name], type_tag, exc,
                    )
                break  # first match wins

    return overrides

# ---------------------------------------------------------------------------
# CLI argument extraction
# ---------------------------------------------------------------------------

# Mapping: argparse attribute -> config key
_CLI_ATTR_MAP: Dict[str, str] = {
    "region": "aws_region",
    "repository": "ecr_repository",
    "critical_threshold": "critical_threshold",
    "high_threshold": "high_threshold",
    "medium_threshold": "medium_threshold",
    "low_threshold": "low_threshold",
    "other_threshold": "other_threshold",
    "oidc_role": "oidc_role",
    "deploy_role": "deploy_role",
    "commit_sha": "commit_sha",
    "repository_id": "repository_id",
    "context": "build_context",
    "dockerfile": "dockerfile",
    "platforms": "platforms",
    "cache_dir": "cache_dir",
    "timeout_minutes": "timeout_minutes",
    "output_dir": "output_dir",
    "artifact_root": "artifact_root",
    "artifact_name": "artifact_name",
}


def extract_cli_overrides(args: Any) -> Dict[str, Any]:
    """Extract explicitly-set CLI arguments into a flat config dict.

    Only attributes whose value is not ``None`` are included, so that
    argparse defaults do not shadow earlier layers.
    """
    if args is None:
        return {}

    overrides: Dict[str, Any] = {}
    for attr, config_key in _CLI_ATTR_MAP.items():
        value = getattr(args, attr, None)
        if value is not None:
            overrides[config_key] = value
    return overrides

# ---------------------------------------------------------------------------
# Merge helpers
# ---------------------------------------------------------------------------

def deep_merge(base: dict, override: dict) -> dict:
    """Merge *override* into *base*.  Only non-None override values win.

    This operates on **flat** dicts (no recursive descent).
    """
    merged = dict(base)
    for key, value in override.items():
        if value is not None:
            merged[key] = value
    return merged

# ---------------------------------------------------------------------------
# .imagegate.yml loader
# ---------------------------------------------------------------------------

def _load_workspace_yml(repo_path: str) -> Dict[str, Any]:
    """Load ``.imagegate.yml`` from *repo_path* and return flat config dict.

    Returns an empty dict if the file does not exist.
    """
    yml_path = Path(repo_path) / ".imagegate.yml"
    if not yml_path.is_file():
        return {}

    logger.info("Loading .imagegate.yml from %s", yml_path)
    return flatten_profile(_read_yaml(yml_path))

# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def build_unified_config(
    profile: Optional[str] = None,
    cli_args: Any = None,
    repo_path: str = ".",
) -> Dict[str, Any]:
    """Build a fully-merged configuration dict.

    Layer precedence (last wins):
        1. Hard-coded defaults          (``get_default_config()``)
        2. Profile YAML                 (``load_profile()``)
        3. ``.imagegate.yml``           (workspace-level overrides)
        4. Environment variables        (``load_env_overrides()``)
        5. CLI arguments                (``extract_cli_overrides()``)

    Parameters
    ----------
    profile:
        Explicit profile name.  If ``None``, the function checks
        ``cli_args.profile``, then the ``IMAGEGATE_PROFILE`` env var.
    cli_args:
        An ``argparse.Namespace`` (or ``None``).
    repo_path:
        Path to the workspace root (used for ``.imagegate.yml`` lookup).
    """
    config = get_default_config()

    profile_name = profile
    if profile_name is None and cli_args is not None:
        profile_name = getattr(cli_args, "profile", None)
    if profile_name is None:
        profile_name = os.environ.get("IMAGEGATE_PROFILE")

    if profile_name:
        try:
            config = deep_merge(config, load_profile(profile_name))
            logger.info("Applied profile '%s'", profile_name)
        except FileNotFoundError:
            logger.warning("Profile '%s' not found; skipping", profile_name)

    workspace_yml = _load_workspace_yml(repo_path)
    if workspace_yml:
        config = deep_merge(config, workspace_yml)
        logger.info("Applied .imagegate.yml overrides (%d keys)", len(workspace_yml))

    env_overrides = load_env_overrides()
    if env_overrides:
        config = deep_merge(config, env_overrides)
        logger.debug("Applied %d env-var overrides", len(env_overrides))

    cli_overrides = extract_cli_overrides(cli_args)
    if cli_overrides:
        config = deep_merge(config, cli_overrides)
        logger.debug("Applied %d CLI overrides", len(cli_overrides))

    return config

# ---------------------------------------------------------------------------
# Profile discovery
# ---------------------------------------------------------------------------

def list_available_profiles() -> List[str]:
    """Return the names of all available profiles."""
    names: set = set()

    search_dirs = [
        PACKAGE_ROOT / "profiles",
        Path.home() / ".imagegate" / "profiles",
        Path(".imagegate") / "profiles",
    ]
    for directory in search_dirs:
        if directory.is_dir():
            for yml_file in directory.glob("*.yml"):
                names.add(yml_file.stem)

    return sorted(names)

# ---------------------------------------------------------------------------
# Configuration validation
# ---------------------------------------------------------------------------

def build_thresholds(config: Dict[str, Any]) -> SeverityThresholds:
    """Build the immutable threshold set for a run.

    Raises
    ------
    ConfigurationError
        If any threshold is missing, negative or not an integer.
    """
    values = {key.replace("_threshold", ""): config.get(key) for key in THRESHOLD_KEYS}
    missing = [key for key in THRESHOLD_KEYS if config.get(key) is None]
    if missing:
        raise ConfigurationError(f"Missing severity thresholds: {', '.join(missing)}")
    try:
        return SeverityThresholds(**values)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigurationError(f"Invalid severity thresholds: {problems}") from exc


def validate_config(config: Dict[str, Any]) -> List[str]:
    """Validate a configuration dict and return a list of warnings/errors.

    Returns
    -------
    list[str]
        Human-readable ``ERROR:``/``WARNING:`` messages.  An empty list
        means the config is valid.
    """
    issues: List[str] = []

    try:
        build_thresholds(config)
    except ConfigurationError as exc:
        issues.append(f"ERROR: {exc}")

    if not config.get("oidc_role"):
        issues.append("ERROR: oidc_role is not set (OIDC_ROLE).")
    if not config.get("deploy_role"):
        issues.append("ERROR: deploy_role is not set (DEPLOY_ROLE).")
    if not config.get("ecr_repository"):
        issues.append("ERROR: ecr_repository is not set (ECR_REPOSITORY).")
    if not config.get("aws_region"):
        issues.append("ERROR: aws_region is not set (AWS_REGION).")
    if not config.get("commit_sha"):
        issues.append(
            "WARNING: commit_sha is not set (GITHUB_SHA); the workspace HEAD "
            "will be used."
        )

    timeout = config.get("timeout_minutes", 60)
    if not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout <= 0:
        issues.append("ERROR: timeout_minutes must be > 0.")

    platforms = config.get("platforms") or []
    if isinstance(platforms, str):
        platforms = [p for p in platforms.split(",") if p.strip()]
    if len(platforms) > 1:
        issues.append(
            "ERROR: platforms must name a single platform; the image is loaded "
            "into the local daemon for scanning."
        )

    if not config.get("repository_id"):
        issues.append(
            "WARNING: repository_id is not set (GITHUB_REPOSITORY_ID); role "
            "session names will omit it."
        )

    return issues
