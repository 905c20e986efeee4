"""
function_deploy.deployment — Find the last full deploy and fetch its template.

Deployment layout in the deployment bucket:

    serverless/<service>/<stage>/<unixMillis>-<ISO8601>/compiled-cloudformation-template.json
    serverless/<service>/<stage>/<unixMillis>-<ISO8601>/<artifact>.zip

The latest deployment is the maximum timestamp across every listing page.
Pages are requested strictly one after another because each request
carries the previous response's continuation token.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any

from aws_lambda_powertools import Logger

from function_deploy.config import DEFAULT_LIST_PAGE_SIZE
from function_deploy.exceptions import (
    DeploymentBucketError,
    IntegrityError,
    MalformedTemplate,
    NoPriorDeployment,
    TransportError,
)
from function_deploy.models import (
    COMPILED_TEMPLATE_FILE_NAME,
    TEMPLATE_CONTENT_TYPE,
    TEMPLATE_HASH_METADATA_KEY,
    CompiledTemplate,
    DeploymentRecord,
    EncryptionPolicy,
)
from function_deploy.transport import Provider

logger = Logger(service="function-deploy")

DEPLOYMENT_BUCKET_LOGICAL_ID = "ServerlessDeploymentBucket"
_DIRECTORY_TIMESTAMP = re.compile(r"^(\d+)(?:-|$)")

# get_bucket_location quirks: us-east-1 reports no constraint, eu-west-1 may report "EU".
_LEGACY_LOCATIONS = {"": "us-east-1", "EU": "eu-west-1"}


# ---------------------------------------------------------------------------
# Deployment bucket
# ---------------------------------------------------------------------------


def resolve_bucket_name(
    provider: Provider,
    *,
    service: str,
    stage: str,
    provider_config: Mapping[str, Any],
) -> str:
    """Declared provider.deploymentBucket, else the stack's ServerlessDeploymentBucket."""
    declared = provider_config.get("deploymentBucket")
    if isinstance(declared, Mapping):
        declared = declared.get("name")
    if isinstance(declared, str) and declared:
        return declared

    response = provider.request(
        "cloudformation",
        "describe_stack_resource",
        {"StackName": f"{service}-{stage}", "LogicalResourceId": DEPLOYMENT_BUCKET_LOGICAL_ID},
    )
    return str(response["StackResourceDetail"]["PhysicalResourceId"])


def normalize_bucket_region(location_constraint: str | None) -> str:
    location = location_constraint or ""
    return _LEGACY_LOCATIONS.get(location, location)


def verify_deployment_bucket(provider: Provider, bucket: str, region: str) -> None:
    """Raise DeploymentBucketError unless the bucket exists in region."""
    try:
        response = provider.request("s3", "get_bucket_location", {"Bucket": bucket})
    except TransportError as exc:
        raise DeploymentBucketError(
            bucket, f"Could not locate deployment bucket {bucket!r}. Error: {exc}"
        ) from exc

    location = normalize_bucket_region(response.get("LocationConstraint"))
    if location != region:
        raise DeploymentBucketError(
            bucket,
            f"Deployment bucket {bucket!r} is not in the same region as the service: "
            f"bucket is in {location!r}, service is in {region!r}",
        )


# ---------------------------------------------------------------------------
# DeploymentLocator
# ---------------------------------------------------------------------------


def parse_deployment_key(key: str, prefix: str) -> DeploymentRecord | None:
    """Extract the deployment record an object key belongs to, or None.

    The first path segment after prefix must start with an integer
    timestamp; anything else (other stages sharing the prefix, stray
    objects) is ignored.
    """
    head = prefix.rstrip("/") + "/"
    if not key.startswith(head):
        return None
    segment, separator, _ = key[len(head) :].partition("/")
    if not separator:
        return None
    match = _DIRECTORY_TIMESTAMP.match(segment)
    if match is None:
        return None
    return DeploymentRecord(directory=head + segment, timestamp=int(match.group(1)))


class DeploymentLocator:
    def __init__(
        self,
        provider: Provider,
        bucket: str,
        *,
        page_size: int = DEFAULT_LIST_PAGE_SIZE,
    ) -> None:
        self._provider = provider
        self._bucket = bucket
        self._page_size = page_size

    def locate(self, prefix: str) -> DeploymentRecord:
        """Return the deployment with the greatest timestamp under prefix.

        Raises NoPriorDeployment when no listed key carries a timestamp.
        """
        logger.info("Determining last deployment", bucket=self._bucket, prefix=prefix)
        latest: DeploymentRecord | None = None
        token: str | None = None
        pages = 0

        while True:
            params: dict[str, Any] = {
                "Bucket": self._bucket,
                "Prefix": prefix,
                "MaxKeys": self._page_size,
            }
            if token:
                params["ContinuationToken"] = token
            response = self._provider.request("s3", "list_objects_v2", params)
            pages += 1

            for entry in response.get("Contents") or []:
                record = parse_deployment_key(str(entry.get("Key", "")), prefix)
                if record is not None and (latest is None or record.timestamp > latest.timestamp):
                    latest = record

            if not response.get("IsTruncated"):
                break
            token = response.get("NextContinuationToken")
            if not token:
                logger.warning("Truncated listing without continuation token", prefix=prefix)
                break

        if latest is None or latest.timestamp <= 0:
            raise NoPriorDeployment(prefix)

        logger.info(
            "Found last deployment",
            directory=latest.directory,
            timestamp=latest.timestamp,
            pages=pages,
        )
        return latest


# ---------------------------------------------------------------------------
# TemplateIntegrityFetcher
# ---------------------------------------------------------------------------


def _read_body(body: Any) -> bytes:
    if hasattr(body, "read"):
        body = body.read()
    if isinstance(body, str):
        return body.encode("utf-8")
    return bytes(body)


class TemplateIntegrityFetcher:
    """Downloads compiled-cloudformation-template.json from a deployment directory.

    Accepts the object only when ContentType is application/json,
    ContentLength is positive and a body is present.  The filesha256
    metadata is recorded for audit and not checked against the body.
    """

    def __init__(
        self,
        provider: Provider,
        bucket: str,
        *,
        encryption: EncryptionPolicy | None = None,
    ) -> None:
        self._provider = provider
        self._bucket = bucket
        self._encryption = encryption or EncryptionPolicy()

    def fetch(self, directory: str) -> CompiledTemplate:
        key = f"{directory}/{COMPILED_TEMPLATE_FILE_NAME}"
        logger.info("Downloading compiled template from S3", bucket=self._bucket, key=key)
        params = self._encryption.for_get({"Bucket": self._bucket, "Key": key})
        response = self._provider.request("s3", "get_object", params)

        content_type = response.get("ContentType")
        if content_type != TEMPLATE_CONTENT_TYPE:
            raise IntegrityError(key, f"unexpected content type {content_type!r}")
        content_length = response.get("ContentLength") or 0
        if content_length <= 0:
            raise IntegrityError(key, f"invalid content length {content_length!r}")
        body = response.get("Body")
        if body is None:
            raise IntegrityError(key, "object has no body")
        payload = _read_body(body)
        if not payload:
            raise IntegrityError(key, "object has no body")

        try:
            document = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise MalformedTemplate(key, str(exc)) from exc
        if not isinstance(document, dict):
            raise MalformedTemplate(key, f"expected an object, got {type(document).__name__}")

        template_hash = (response.get("Metadata") or {}).get(TEMPLATE_HASH_METADATA_KEY, "")
        logger.info("Downloaded compiled template", key=key, template_hash=template_hash)
        return CompiledTemplate(key=key, body=document, content_hash=template_hash)
