"""
function_deploy.config — Environment-driven settings for a deploy run.

Environment variables:
    AWS_REGION                                  required
    FUNCTION_DEPLOY_STAGE                       default "dev"
    FUNCTION_DEPLOY_LIST_PAGE_SIZE              default 1000
    FUNCTION_DEPLOY_REMOTE_TIMEOUT_SECONDS      default 30
    FUNCTION_DEPLOY_DIRECT_UPLOAD_LIMIT_BYTES   default 50 MiB
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

DEFAULT_STAGE = "dev"
DEFAULT_LIST_PAGE_SIZE = 1000
DEFAULT_REMOTE_TIMEOUT_SECONDS = 30
DEFAULT_DIRECT_UPLOAD_LIMIT_BYTES = 50 * 1024 * 1024


def require_aws_region(environ: Mapping[str, str] | None = None) -> str:
    """Read AWS_REGION from environment and fail fast if missing."""
    env = os.environ if environ is None else environ
    region = env.get("AWS_REGION", "").strip()
    if not region:
        raise RuntimeError("AWS_REGION must be set")
    return region


def _int_setting(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise RuntimeError(f"{name} must be positive, got {value}")
    return value


@dataclass(frozen=True)
class DeploySettings:
    region: str
    stage: str = DEFAULT_STAGE
    list_page_size: int = DEFAULT_LIST_PAGE_SIZE
    remote_fetch_timeout: int = DEFAULT_REMOTE_TIMEOUT_SECONDS
    direct_upload_limit: int = DEFAULT_DIRECT_UPLOAD_LIMIT_BYTES

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        region: str | None = None,
        stage: str | None = None,
    ) -> DeploySettings:
        """Build settings from the environment; explicit arguments win."""
        env = os.environ if environ is None else environ
        return cls(
            region=region or require_aws_region(env),
            stage=stage or env.get("FUNCTION_DEPLOY_STAGE", "").strip() or DEFAULT_STAGE,
            list_page_size=_int_setting(
                env, "FUNCTION_DEPLOY_LIST_PAGE_SIZE", DEFAULT_LIST_PAGE_SIZE
            ),
            remote_fetch_timeout=_int_setting(
                env, "FUNCTION_DEPLOY_REMOTE_TIMEOUT_SECONDS", DEFAULT_REMOTE_TIMEOUT_SECONDS
            ),
            direct_upload_limit=_int_setting(
                env, "FUNCTION_DEPLOY_DIRECT_UPLOAD_LIMIT_BYTES", DEFAULT_DIRECT_UPLOAD_LIMIT_BYTES
            ),
        )
