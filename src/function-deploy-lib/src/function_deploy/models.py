"""
function_deploy.models — Value types shared by the deploy-function pipeline.

Remote shapes (RemoteFunctionDescriptor, FunctionConfigUpdate) mirror the
Lambda API field names in their to/from helpers; everything else is plain
frozen dataclasses.

Desired configuration values are tagged with Setting:
    CONCRETE     a scalar (or list of scalars) that can be sent as-is
    PLACEHOLDER  a structured value, e.g. an unresolved {"Ref": ...}
    ABSENT       the key is not declared at all
"""

from __future__ import annotations

import base64
import hashlib
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from function_deploy.exceptions import ArtifactNotFound

DEPLOYMENT_ROOT = "serverless"
COMPILED_TEMPLATE_FILE_NAME = "compiled-cloudformation-template.json"
TEMPLATE_CONTENT_TYPE = "application/json"
TEMPLATE_HASH_METADATA_KEY = "filesha256"
IAM_ROLE_TYPE = "AWS::IAM::Role"


# ---------------------------------------------------------------------------
# Setting: Concrete | Placeholder | Absent
# ---------------------------------------------------------------------------


class SettingKind(StrEnum):
    CONCRETE = "concrete"
    PLACEHOLDER = "placeholder"
    ABSENT = "absent"


def is_structured(value: Any) -> bool:
    """True for mappings and sequences, i.e. values that are not plain scalars."""
    return isinstance(value, (Mapping, list, tuple))


@dataclass(frozen=True)
class Setting:
    kind: SettingKind
    value: Any = None

    @classmethod
    def of(cls, mapping: Mapping[str, Any] | None, key: str) -> Setting:
        """Classify mapping[key]; a missing mapping or key is ABSENT."""
        if not mapping or key not in mapping:
            return ABSENT
        value = mapping[key]
        if is_structured(value):
            return cls(SettingKind.PLACEHOLDER, value)
        return cls(SettingKind.CONCRETE, value)

    @property
    def is_concrete(self) -> bool:
        return self.kind is SettingKind.CONCRETE


ABSENT = Setting(SettingKind.ABSENT)


def first_concrete(*settings: Setting) -> Setting:
    """Return the first CONCRETE setting in priority order, else ABSENT."""
    for setting in settings:
        if setting.is_concrete:
            return setting
    return ABSENT


# ---------------------------------------------------------------------------
# Deployment history
# ---------------------------------------------------------------------------


def deployment_prefix(service: str, stage: str) -> str:
    return f"{DEPLOYMENT_ROOT}/{service}/{stage}"


@dataclass(frozen=True)
class DeploymentRecord:
    """One historical deployment under serverless/<service>/<stage>.

    directory is the full key prefix, e.g.
    serverless/api/dev/1500000000000-2017-07-14T02:40:00.000Z
    """

    directory: str
    timestamp: int  # unix epoch millis

    @property
    def template_key(self) -> str:
        return f"{self.directory}/{COMPILED_TEMPLATE_FILE_NAME}"


@dataclass(frozen=True)
class CompiledTemplate:
    key: str
    body: dict[str, Any]
    content_hash: str = ""  # advisory, from object metadata

    @property
    def resources(self) -> dict[str, Any]:
        resources = self.body.get("Resources")
        return resources if isinstance(resources, dict) else {}


# ---------------------------------------------------------------------------
# Remote function state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RemoteFunctionDescriptor:
    """Current state of a deployed Lambda function (GetFunction.Configuration)."""

    name: str
    code_hash: str
    memory_size: int | None = None
    timeout: int | None = None
    role: str | None = None
    description: str | None = None
    environment: dict[str, str] = field(default_factory=dict)
    vpc_config: dict[str, list[str]] = field(default_factory=dict)
    dead_letter_target: str | None = None
    kms_key_ref: str | None = None

    @classmethod
    def from_configuration(cls, configuration: Mapping[str, Any]) -> RemoteFunctionDescriptor:
        vpc = configuration.get("VpcConfig") or {}
        vpc_config = {
            name: list(vpc[name])
            for name in ("SecurityGroupIds", "SubnetIds")
            if vpc.get(name)
        }
        return cls(
            name=configuration["FunctionName"],
            code_hash=configuration.get("CodeSha256", ""),
            memory_size=configuration.get("MemorySize"),
            timeout=configuration.get("Timeout"),
            role=configuration.get("Role"),
            description=configuration.get("Description"),
            environment=dict((configuration.get("Environment") or {}).get("Variables") or {}),
            vpc_config=vpc_config,
            dead_letter_target=(configuration.get("DeadLetterConfig") or {}).get("TargetArn"),
            kms_key_ref=configuration.get("KMSKeyArn"),
        )


@dataclass(frozen=True)
class FunctionConfigUpdate:
    """Sparse UpdateFunctionConfiguration patch.

    Only fields that are set are sent; function_name identifies the target
    and does not count towards emptiness.
    """

    function_name: str
    role: str | None = None
    kms_key_arn: str | None = None
    description: str | None = None
    memory_size: int | None = None
    timeout: int | None = None
    dead_letter_target: str | None = None
    environment: dict[str, str] | None = None
    vpc_config: dict[str, list[str]] | None = None

    @property
    def is_empty(self) -> bool:
        return len(self.to_params()) == 1

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"FunctionName": self.function_name}
        if self.role is not None:
            params["Role"] = self.role
        if self.kms_key_arn is not None:
            params["KMSKeyArn"] = self.kms_key_arn
        if self.description is not None:
            params["Description"] = self.description
        if self.memory_size is not None:
            params["MemorySize"] = self.memory_size
        if self.timeout is not None:
            params["Timeout"] = self.timeout
        if self.dead_letter_target is not None:
            params["DeadLetterConfig"] = {"TargetArn": self.dead_letter_target}
        if self.environment is not None:
            params["Environment"] = {"Variables": dict(self.environment)}
        if self.vpc_config is not None:
            params["VpcConfig"] = {k: list(v) for k, v in self.vpc_config.items()}
        return params


# ---------------------------------------------------------------------------
# Role references
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LiteralRole:
    arn: str


@dataclass(frozen=True)
class LogicalRoleName:
    resource_id: str


@dataclass(frozen=True)
class RoleAttribute:
    """{"Fn::GetAtt": [resource_id, attribute]}"""

    resource_id: str
    attribute: str


RoleReference = LiteralRole | LogicalRoleName | RoleAttribute


# ---------------------------------------------------------------------------
# Artifact
# ---------------------------------------------------------------------------


def content_hash(data: bytes) -> str:
    """SHA256 digest rendered as base64, the format Lambda reports as CodeSha256."""
    return base64.b64encode(hashlib.sha256(data).digest()).decode("ascii")


@dataclass(frozen=True)
class ArtifactDescriptor:
    """A local artifact read once; data is exactly what content_hash describes."""

    path: Path
    size_bytes: int
    content_hash: str
    data: bytes = field(repr=False, compare=False)

    @classmethod
    def from_path(cls, path: str | Path) -> ArtifactDescriptor:
        """Fingerprint a local artifact. Raises ArtifactNotFound if it is missing."""
        artifact_path = Path(path)
        try:
            data = artifact_path.read_bytes()
        except (FileNotFoundError, IsADirectoryError) as exc:
            raise ArtifactNotFound(str(artifact_path)) from exc
        return cls(
            path=artifact_path,
            size_bytes=len(data),
            content_hash=content_hash(data),
            data=data,
        )


# ---------------------------------------------------------------------------
# Deployment bucket encryption
# ---------------------------------------------------------------------------

# (deploymentBucketObject key, S3 request parameter)
_ENCRYPTION_FIELDS = (
    ("serverSideEncryption", "ServerSideEncryption"),
    ("sseCustomerAlgorithim", "SSECustomerAlgorithm"),
    ("sseCustomerKey", "SSECustomerKey"),
    ("sseCustomerKeyMD5", "SSECustomerKeyMD5"),
    ("sseKMSKeyId", "SSEKMSKeyId"),
)


@dataclass(frozen=True)
class EncryptionPolicy:
    server_side_encryption: str | None = None
    algorithm: str | None = None
    customer_key: str | None = None
    customer_key_digest: str | None = None
    kms_key_id: str | None = None

    @classmethod
    def from_bucket_object(cls, bucket_object: Mapping[str, Any] | None) -> EncryptionPolicy:
        bucket_object = bucket_object or {}
        values = [bucket_object.get(name) or None for name, _ in _ENCRYPTION_FIELDS]
        return cls(*values)

    def apply(self, params: Mapping[str, Any]) -> dict[str, Any]:
        """Return a copy of params with every configured encryption field added."""
        cloned = dict(params)
        values = (
            self.server_side_encryption,
            self.algorithm,
            self.customer_key,
            self.customer_key_digest,
            self.kms_key_id,
        )
        for (_, param_name), value in zip(_ENCRYPTION_FIELDS, values, strict=True):
            if value:
                cloned[param_name] = value
        return cloned

    def for_get(self, params: Mapping[str, Any]) -> dict[str, Any]:
        """Like apply(), minus the fields GetObject rejects (SSE and KMS key are put-only)."""
        cloned = self.apply(params)
        cloned.pop("ServerSideEncryption", None)
        cloned.pop("SSEKMSKeyId", None)
        return cloned


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class ReconcileOutcome(StrEnum):
    NOOP = "noop"
    UPDATED = "updated"


class SyncOutcome(StrEnum):
    SKIPPED = "skipped"
    UPLOADED = "uploaded"


class RunState(StrEnum):
    IDLE = "idle"
    LOCATING_DEPLOYMENT = "locating_deployment"
    FETCHING_TEMPLATE = "fetching_template"
    RESOLVING_ROLE = "resolving_role"
    RECONCILING_CONFIG = "reconciling_config"
    SYNCING_ARTIFACT = "syncing_artifact"
    DONE = "done"
    FAILED = "failed"
