"""
function_deploy.artifact — Content-hash gated code upload.

The local artifact is fingerprinted as base64(SHA256(bytes)), the format
Lambda reports as CodeSha256.  Equal fingerprints skip the upload unless
forced.  Artifacts above the direct upload limit are staged in the
deployment bucket and referenced by S3Bucket/S3Key.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from aws_lambda_powertools import Logger

from function_deploy.config import DEFAULT_DIRECT_UPLOAD_LIMIT_BYTES
from function_deploy.models import (
    ArtifactDescriptor,
    EncryptionPolicy,
    RemoteFunctionDescriptor,
    SyncOutcome,
)
from function_deploy.transport import Provider

logger = Logger(service="function-deploy")

PACKAGE_DIRECTORY_NAME = ".serverless"
_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


def format_size(size_bytes: int) -> str:
    """Human readable size, e.g. 1536 -> '1.5 KB'."""
    size = float(size_bytes)
    for unit in _SIZE_UNITS:
        if size < 1024 or unit == _SIZE_UNITS[-1]:
            break
        size /= 1024
    if unit == "B":
        return f"{int(size)} B"
    return f"{size:.1f} {unit}".replace(".0 ", " ")


def resolve_artifact_path(
    function_key: str,
    function_config: Mapping[str, Any] | None,
    service_package: Mapping[str, Any] | None,
    package_dir: str | Path,
    service_dir: str | Path = ".",
) -> Path:
    """Function package.artifact, else service package.artifact, else <package_dir>/<function>.zip.

    A relative package.artifact is relative to service_dir, the directory of
    the service file, whatever the process working directory is.
    """
    function_package = (function_config or {}).get("package") or {}
    if isinstance(function_package, Mapping) and function_package.get("artifact"):
        return Path(service_dir) / function_package["artifact"]
    if service_package and service_package.get("artifact"):
        return Path(service_dir) / service_package["artifact"]
    return Path(package_dir) / f"{function_key}.zip"


class ArtifactSyncGate:
    def __init__(
        self,
        provider: Provider,
        *,
        bucket: str | None = None,
        staging_prefix: str | None = None,
        encryption: EncryptionPolicy | None = None,
        direct_upload_limit: int = DEFAULT_DIRECT_UPLOAD_LIMIT_BYTES,
    ) -> None:
        self._provider = provider
        self._bucket = bucket
        self._staging_prefix = staging_prefix
        self._encryption = encryption or EncryptionPolicy()
        self._direct_upload_limit = direct_upload_limit

    def sync(
        self,
        artifact: ArtifactDescriptor | str | Path,
        remote: RemoteFunctionDescriptor,
        force: bool = False,
    ) -> SyncOutcome:
        """Upload the artifact unless the remote function already runs this exact code.

        Raises ArtifactNotFound (before any remote call) if the file is missing.
        """
        if not isinstance(artifact, ArtifactDescriptor):
            artifact = ArtifactDescriptor.from_path(artifact)

        if artifact.content_hash == remote.code_hash and not force:
            logger.info(
                "Code not changed. Skipping function deployment.",
                function_name=remote.name,
                code_hash=artifact.content_hash,
            )
            return SyncOutcome.SKIPPED

        logger.info(
            f"Uploading function: {remote.name} ({format_size(artifact.size_bytes)})",
            function_name=remote.name,
            size_bytes=artifact.size_bytes,
            forced=force,
        )
        data = artifact.data
        params: dict[str, Any] = {"FunctionName": remote.name}
        if self._should_stage(artifact):
            key = f"{self._staging_prefix}/{artifact.path.name}"
            self._provider.request(
                "s3",
                "put_object",
                self._encryption.apply({"Bucket": self._bucket, "Key": key, "Body": data}),
            )
            params.update(S3Bucket=self._bucket, S3Key=key)
        else:
            params["ZipFile"] = data

        self._provider.request("lambda", "update_function_code", params)
        logger.info("Successfully deployed function", function_name=remote.name)
        return SyncOutcome.UPLOADED

    def _should_stage(self, artifact: ArtifactDescriptor) -> bool:
        return bool(self._bucket and self._staging_prefix) and (
            artifact.size_bytes > self._direct_upload_limit
        )
