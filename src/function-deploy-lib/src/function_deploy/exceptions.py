"""
function_deploy.exceptions — Failure taxonomy for single-function deploys.

Validation errors (InvalidEnvironmentKey, InvalidRoleReference, ArtifactNotFound)
are raised before any remote call.  Remote failures surface as TransportError
and are never retried here; retry/backoff belongs to the caller.
"""

from __future__ import annotations


class FunctionDeployError(Exception):
    """Base class for every error raised by function_deploy."""


# ---------------------------------------------------------------------------
# Declarative document loading
# ---------------------------------------------------------------------------


class DocumentNotFound(FunctionDeployError):
    """Raised when the root configuration document cannot be read."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Configuration document not found or unreadable: {path}")


class ReferenceResolutionError(FunctionDeployError):
    """Raised when a relative or remote reference cannot be fetched or parsed."""

    def __init__(self, reference: str, reason: str) -> None:
        self.reference = reference
        self.reason = reason
        super().__init__(f"Could not resolve reference {reference!r}: {reason}")


class CyclicReferenceError(ReferenceResolutionError):
    """Raised when a document (transitively) references itself."""

    def __init__(self, chain: list[str]) -> None:
        self.chain = chain
        super().__init__(chain[-1], "cyclic reference: " + " -> ".join(chain))


# ---------------------------------------------------------------------------
# Deployment lookup
# ---------------------------------------------------------------------------


class DeploymentBucketError(FunctionDeployError):
    """Raised when the deployment bucket is missing or lives in another region."""

    def __init__(self, bucket: str, message: str) -> None:
        self.bucket = bucket
        super().__init__(message)


class NoPriorDeployment(FunctionDeployError):
    def __init__(self, prefix: str) -> None:
        self.prefix = prefix
        super().__init__(f"Could not find a previous service deployment under {prefix!r}")


class IntegrityError(FunctionDeployError):
    """Raised when the stored compiled template fails the content checks."""

    def __init__(self, key: str, reason: str) -> None:
        self.key = key
        self.reason = reason
        super().__init__(f"Could not retrieve compiled template {key!r} from S3: {reason}")


class MalformedTemplate(FunctionDeployError):
    def __init__(self, key: str, reason: str) -> None:
        self.key = key
        super().__init__(f"Compiled template {key!r} is not valid JSON: {reason}")


# ---------------------------------------------------------------------------
# Function configuration
# ---------------------------------------------------------------------------


class FunctionNotFound(FunctionDeployError):
    """Raised when the requested function is not declared in the service."""

    def __init__(self, function: str) -> None:
        self.function = function
        super().__init__(f"Function {function!r} doesn't exist in this service")


class FunctionNotDeployed(FunctionDeployError):
    """Raised when the function has never been deployed with the full stack."""

    def __init__(self, function_name: str) -> None:
        self.function_name = function_name
        super().__init__(
            f"The function {function_name!r} you want to update is not yet deployed. "
            "Please run a full service deploy first."
        )


class InvalidRoleReference(FunctionDeployError):
    def __init__(self, spec: object) -> None:
        self.spec = spec
        super().__init__(f"Unsupported role specification: {spec!r}")


class UnresolvableReference(FunctionDeployError):
    """Raised when a role reference names a resource that does not exist."""

    def __init__(self, resource_id: str, reason: str = "resource does not exist") -> None:
        self.resource_id = resource_id
        super().__init__(f"Could not resolve role resource {resource_id!r}: {reason}")


class NotAnIdentityResource(FunctionDeployError):
    def __init__(self, resource_id: str, resource_type: str | None) -> None:
        self.resource_id = resource_id
        self.resource_type = resource_type
        super().__init__(
            f"Provided resource {resource_id!r} is not an IAM Role (type: {resource_type!r})"
        )


class InvalidEnvironmentKey(FunctionDeployError):
    """Raised when an environment variable name is not a valid shell identifier."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Invalid characters in environment variable {key!r}")


# ---------------------------------------------------------------------------
# Artifact / transport
# ---------------------------------------------------------------------------


class ArtifactNotFound(FunctionDeployError):
    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Deployment artifact not found: {path}")


class TransportError(FunctionDeployError):
    """
    Raised for any failure returned by a remote AWS API.

    Attributes:
        service:   boto3 service name, e.g. "s3".
        operation: boto3 client method, e.g. "list_objects_v2".
        code:      AWS error code when the service returned one, else None.
    """

    def __init__(self, *, service: str, operation: str, code: str | None, message: str) -> None:
        self.service = service
        self.operation = operation
        self.code = code
        super().__init__(f"{service}.{operation} failed ({code or 'no error code'}): {message}")
