"""
function_deploy.pipeline — Deploy one function of an already deployed service.

    IDLE -> LOCATING_DEPLOYMENT -> FETCHING_TEMPLATE -> RESOLVING_ROLE
         -> RECONCILING_CONFIG -> SYNCING_ARTIFACT -> DONE

Any failure moves the run to FAILED and is re-raised.  Remote
changes already acknowledged (a configuration update) are not rolled back.

IDLE performs every local check (function declared, environment keys,
role specification shape, artifact present) so validation failures never
follow a remote call.  A run instance is single use and owns its deployment
record cache; create one per service/stage/function.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from aws_lambda_powertools import Logger

from function_deploy.artifact import PACKAGE_DIRECTORY_NAME, ArtifactSyncGate, resolve_artifact_path
from function_deploy.config import DeploySettings
from function_deploy.deployment import (
    DeploymentLocator,
    TemplateIntegrityFetcher,
    resolve_bucket_name,
    verify_deployment_bucket,
)
from function_deploy.exceptions import (
    FunctionDeployError,
    FunctionNotDeployed,
    FunctionNotFound,
    TransportError,
)
from function_deploy.models import (
    ArtifactDescriptor,
    CompiledTemplate,
    DeploymentRecord,
    EncryptionPolicy,
    FunctionConfigUpdate,
    ReconcileOutcome,
    RemoteFunctionDescriptor,
    RunState,
    SyncOutcome,
    deployment_prefix,
)
from function_deploy.reconcile import ConfigurationReconciler, DesiredConfiguration
from function_deploy.roles import RoleReferenceResolver
from function_deploy.transport import Provider

logger = Logger(service="function-deploy")


@dataclass(frozen=True)
class DeployOutcome:
    function_name: str
    deployment: DeploymentRecord
    template: CompiledTemplate
    update: FunctionConfigUpdate
    configuration: ReconcileOutcome
    code: SyncOutcome


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def service_name(service_config: Mapping[str, Any]) -> str:
    service = service_config.get("service")
    if isinstance(service, Mapping):
        service = service.get("name")
    if not isinstance(service, str) or not service:
        raise FunctionDeployError("Service configuration does not declare a service name")
    return service


class FunctionDeployRun:
    def __init__(
        self,
        provider: Provider,
        settings: DeploySettings,
        service_config: Mapping[str, Any],
        function_key: str,
        *,
        service_dir: str | Path = ".",
        package_dir: str | Path | None = None,
        force: bool = False,
    ) -> None:
        self._provider = provider
        self._settings = settings
        self._config = service_config
        self._function_key = function_key
        self._service_dir = Path(service_dir)
        self._package_dir = Path(package_dir or self._service_dir / PACKAGE_DIRECTORY_NAME)
        self._force = force

        self._service = service_name(service_config)
        self._provider_config = _mapping(service_config.get("provider"))
        self._deployment: DeploymentRecord | None = None

        self.state = RunState.IDLE
        self.failure: str | None = None

    @property
    def deployment(self) -> DeploymentRecord | None:
        return self._deployment

    def _transition(self, state: RunState) -> None:
        logger.debug("Deploy state change", previous=self.state.value, state=state.value)
        self.state = state

    def run(self) -> DeployOutcome:
        if self.state is not RunState.IDLE:
            raise FunctionDeployError(f"Deploy run already used (state: {self.state.value})")
        try:
            outcome = self._run()
        except Exception as exc:
            if isinstance(exc, FunctionDeployError):
                self.failure = str(exc)
            else:
                self.failure = f"{type(exc).__name__}: {exc}"
            logger.error(
                "Function deploy failed",
                function=self._function_key,
                failed_in=self.state.value,
                error=self.failure,
            )
            self.state = RunState.FAILED
            raise
        self._transition(RunState.DONE)
        return outcome

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _function_config(self) -> Mapping[str, Any]:
        functions = _mapping(self._config.get("functions"))
        if self._function_key not in functions:
            raise FunctionNotFound(self._function_key)
        return _mapping(functions[self._function_key])

    def _function_name(self, function: Mapping[str, Any]) -> str:
        name = function.get("name")
        if isinstance(name, str) and name:
            return name
        return f"{self._service}-{self._settings.stage}-{self._function_key}"

    def _remote_descriptor(self, function_name: str) -> RemoteFunctionDescriptor:
        try:
            response = self._provider.request(
                "lambda", "get_function", {"FunctionName": function_name}
            )
        except TransportError as exc:
            if exc.code == "ResourceNotFoundException":
                raise FunctionNotDeployed(function_name) from exc
            raise
        return RemoteFunctionDescriptor.from_configuration(response["Configuration"])

    def _encryption(self) -> EncryptionPolicy:
        bucket_object = self._provider_config.get("deploymentBucketObject")
        if bucket_object is None:
            bucket_object = _mapping(self._provider_config.get("deploymentBucket"))
        return EncryptionPolicy.from_bucket_object(_mapping(bucket_object))

    def locate_deployment(self, bucket: str) -> DeploymentRecord:
        if self._deployment is None:
            locator = DeploymentLocator(
                self._provider, bucket, page_size=self._settings.list_page_size
            )
            self._deployment = locator.locate(
                deployment_prefix(self._service, self._settings.stage)
            )
        return self._deployment

    def _run(self) -> DeployOutcome:
        function = self._function_config()
        desired = DesiredConfiguration.from_config(
            self._function_name(function),
            function,
            self._provider_config,
            _mapping(self._config.get("service")),
        )
        artifact = ArtifactDescriptor.from_path(
            resolve_artifact_path(
                self._function_key,
                function,
                _mapping(self._config.get("package")),
                self._package_dir,
                self._service_dir,
            )
        )
        encryption = self._encryption()

        self._transition(RunState.LOCATING_DEPLOYMENT)
        bucket = resolve_bucket_name(
            self._provider,
            service=self._service,
            stage=self._settings.stage,
            provider_config=self._provider_config,
        )
        verify_deployment_bucket(self._provider, bucket, self._settings.region)
        remote = self._remote_descriptor(desired.function_name)
        deployment = self.locate_deployment(bucket)

        self._transition(RunState.FETCHING_TEMPLATE)
        template = TemplateIntegrityFetcher(
            self._provider, bucket, encryption=encryption
        ).fetch(deployment.directory)

        self._transition(RunState.RESOLVING_ROLE)
        resolver = RoleReferenceResolver(
            self._provider,
            resources=_mapping(_mapping(self._config.get("resources")).get("Resources")),
            template=template,
        )
        reconciler = ConfigurationReconciler(self._provider, resolver)
        role_arn = reconciler.resolve_role(desired)

        self._transition(RunState.RECONCILING_CONFIG)
        update = reconciler.reconcile(desired, remote, role_arn=role_arn)
        configuration = reconciler.submit(update)

        self._transition(RunState.SYNCING_ARTIFACT)
        gate = ArtifactSyncGate(
            self._provider,
            bucket=bucket,
            staging_prefix=(
                f"{deployment_prefix(self._service, self._settings.stage)}"
                f"/function-artifacts/{self._function_key}"
            ),
            encryption=encryption,
            direct_upload_limit=self._settings.direct_upload_limit,
        )
        code = gate.sync(artifact, remote, self._force)

        return DeployOutcome(
            function_name=desired.function_name,
            deployment=deployment,
            template=template,
            update=update,
            configuration=configuration,
            code=code,
        )
