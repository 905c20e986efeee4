"""
tests/test_pipeline.py — FunctionDeployRun end to end against a scripted provider.

The provider is a MagicMock whose request() routes on (service, operation);
a routed Exception is raised instead of returned.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest
from function_deploy.config import DeploySettings
from function_deploy.exceptions import (
    ArtifactNotFound,
    DeploymentBucketError,
    FunctionDeployError,
    FunctionNotDeployed,
    FunctionNotFound,
    IntegrityError,
    InvalidEnvironmentKey,
    InvalidRoleReference,
    NoPriorDeployment,
    TransportError,
)
from function_deploy.models import ReconcileOutcome, RunState, SyncOutcome, content_hash
from function_deploy.pipeline import FunctionDeployRun, service_name

REGION = "eu-west-2"
ACCOUNT_ID = "123456789012"
BUCKET = "api-deploy-bucket"
FUNCTION_NAME = "api-dev-hello"
ROLE_ARN = f"arn:aws:iam::{ACCOUNT_ID}:role/api-dev-lambda"
DIRECTORY = "serverless/api/dev/1500000000000-2017-07-14T02:40:00.000Z"
CODE = b"PK\x03\x04 hello handler"

TEMPLATE = {
    "Resources": {
        "IamRoleLambdaExecution": {
            "Type": "AWS::IAM::Role",
            "Properties": {"RoleName": "api-dev-lambda"},
        }
    }
}
TEMPLATE_BYTES = json.dumps(TEMPLATE).encode("utf-8")


class _Router:
    def __init__(self, responses: dict[tuple[str, str], Any]) -> None:
        self.responses = responses
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def __call__(self, service: str, operation: str, params: dict[str, Any]) -> Any:
        self.calls.append((service, operation, dict(params)))
        response = self.responses[(service, operation)]
        if isinstance(response, Exception):
            raise response
        return response

    def operations(self) -> list[str]:
        return [operation for _, operation, _ in self.calls]

    def params(self, operation: str) -> dict[str, Any]:
        return next(params for _, op, params in self.calls if op == operation)


def _responses(**overrides: Any) -> dict[tuple[str, str], Any]:
    responses: dict[tuple[str, str], Any] = {
        ("s3", "get_bucket_location"): {"LocationConstraint": REGION},
        ("lambda", "get_function"): {
            "Configuration": {
                "FunctionName": FUNCTION_NAME,
                "CodeSha256": "previous-code",
                "MemorySize": 512,
                "Timeout": 6,
                "Role": ROLE_ARN,
            }
        },
        ("s3", "list_objects_v2"): {
            "Contents": [
                {"Key": "serverless/api/dev/1400000000000-2014-05-13T16:53:20.000Z/hello.zip"},
                {"Key": f"{DIRECTORY}/compiled-cloudformation-template.json"},
            ],
            "IsTruncated": False,
        },
        ("s3", "get_object"): {
            "ContentType": "application/json",
            "ContentLength": len(TEMPLATE_BYTES),
            "Body": TEMPLATE_BYTES,
            "Metadata": {"filesha256": "template-hash"},
        },
        ("lambda", "update_function_configuration"): {},
        ("lambda", "update_function_code"): {},
        ("cloudformation", "describe_stack_resource"): {
            "StackResourceDetail": {"PhysicalResourceId": "stack-bucket"}
        },
    }
    for name, value in overrides.items():
        service, operation = name.split("__")
        responses[(service, operation)] = value
    return responses


def _service_config(**function_overrides: Any) -> dict[str, Any]:
    return {
        "service": "api",
        "provider": {
            "name": "aws",
            "deploymentBucket": BUCKET,
            "memorySize": 512,
            "timeout": 6,
            "role": "IamRoleLambdaExecution",
        },
        "functions": {
            "hello": {
                "handler": "handler.hello",
                "timeout": 20,
                "environment": {"A": "1"},
                **function_overrides,
            }
        },
    }


@pytest.fixture
def package_dir(tmp_path: Path) -> Path:
    directory = tmp_path / ".serverless"
    directory.mkdir()
    (directory / "hello.zip").write_bytes(CODE)
    return directory


@pytest.fixture
def settings() -> DeploySettings:
    return DeploySettings(region=REGION, stage="dev")


def _provider(router: _Router) -> MagicMock:
    provider = MagicMock()
    provider.request.side_effect = router
    provider.get_account_id.return_value = ACCOUNT_ID
    return provider


def _run(
    config: dict[str, Any],
    router: _Router,
    settings: DeploySettings,
    package_dir: Path,
    **kwargs: Any,
) -> FunctionDeployRun:
    return FunctionDeployRun(
        _provider(router), settings, config, "hello", package_dir=package_dir, **kwargs
    )


# ===========================================================================
# Happy path
# ===========================================================================


class TestSuccessfulRun:
    def test_full_run_updates_config_and_code(
        self, settings: DeploySettings, package_dir: Path
    ) -> None:
        router = _Router(_responses())
        run = _run(_service_config(), router, settings, package_dir)

        outcome = run.run()

        assert run.state is RunState.DONE
        assert run.failure is None
        assert outcome.function_name == FUNCTION_NAME
        assert outcome.deployment.directory == DIRECTORY
        assert outcome.template.content_hash == "template-hash"
        assert outcome.configuration is ReconcileOutcome.UPDATED
        assert outcome.code is SyncOutcome.UPLOADED
        assert router.operations() == [
            "get_bucket_location",
            "get_function",
            "list_objects_v2",
            "get_object",
            "update_function_configuration",
            "update_function_code",
        ]
        # Role resolves to the remote value and memory size matches, so neither is sent.
        assert router.params("update_function_configuration") == {
            "FunctionName": FUNCTION_NAME,
            "Timeout": 20,
            "Environment": {"Variables": {"A": "1"}},
        }
        assert router.params("update_function_code") == {
            "FunctionName": FUNCTION_NAME,
            "ZipFile": CODE,
        }

    def test_unchanged_function_makes_no_updates(
        self, settings: DeploySettings, package_dir: Path
    ) -> None:
        router = _Router(
            _responses(
                lambda__get_function={
                    "Configuration": {
                        "FunctionName": FUNCTION_NAME,
                        "CodeSha256": content_hash(CODE),
                        "MemorySize": 512,
                        "Timeout": 20,
                        "Role": ROLE_ARN,
                        "Environment": {"Variables": {"A": "1"}},
                    }
                }
            )
        )

        outcome = _run(_service_config(), router, settings, package_dir).run()

        assert outcome.configuration is ReconcileOutcome.NOOP
        assert outcome.code is SyncOutcome.SKIPPED
        assert outcome.update.is_empty
        assert "update_function_configuration" not in router.operations()
        assert "update_function_code" not in router.operations()

    def test_force_uploads_unchanged_code(
        self, settings: DeploySettings, package_dir: Path
    ) -> None:
        router = _Router(
            _responses(
                lambda__get_function={
                    "Configuration": {"FunctionName": FUNCTION_NAME, "CodeSha256": content_hash(CODE)}
                }
            )
        )
        outcome = _run(_service_config(), router, settings, package_dir, force=True).run()
        assert outcome.code is SyncOutcome.UPLOADED

    def test_bucket_name_from_stack_when_not_declared(
        self, settings: DeploySettings, package_dir: Path
    ) -> None:
        config = _service_config()
        del config["provider"]["deploymentBucket"]
        router = _Router(_responses())

        _run(config, router, settings, package_dir).run()

        assert router.params("describe_stack_resource") == {
            "StackName": "api-dev",
            "LogicalResourceId": "ServerlessDeploymentBucket",
        }
        assert router.params("list_objects_v2")["Bucket"] == "stack-bucket"

    def test_explicit_function_name(self, settings: DeploySettings, package_dir: Path) -> None:
        router = _Router(_responses())
        outcome = _run(_service_config(name="custom-hello"), router, settings, package_dir).run()

        assert outcome.function_name == "custom-hello"
        assert router.params("get_function") == {"FunctionName": "custom-hello"}

    def test_deployment_is_listed_under_service_and_stage(
        self, package_dir: Path
    ) -> None:
        router = _Router(_responses())
        settings = DeploySettings(region=REGION, stage="dev", list_page_size=50)

        run = _run(_service_config(), router, settings, package_dir)
        run.run()

        assert router.params("list_objects_v2") == {
            "Bucket": BUCKET,
            "Prefix": "serverless/api/dev",
            "MaxKeys": 50,
        }
        assert run.deployment is not None
        assert run.deployment.timestamp == 1500000000000

    def test_bucket_encryption_is_applied_to_template_download(
        self, settings: DeploySettings, package_dir: Path
    ) -> None:
        config = _service_config()
        config["provider"]["deploymentBucketObject"] = {
            "serverSideEncryption": "aws:kms",
            "sseKMSKeyId": "key-id",
            "sseCustomerAlgorithim": "AES256",
            "sseCustomerKey": "secret",
        }
        router = _Router(_responses())

        _run(config, router, settings, package_dir).run()

        assert router.params("get_object") == {
            "Bucket": BUCKET,
            "Key": f"{DIRECTORY}/compiled-cloudformation-template.json",
            "SSECustomerAlgorithm": "AES256",
            "SSECustomerKey": "secret",
        }

    def test_run_is_single_use(self, settings: DeploySettings, package_dir: Path) -> None:
        run = _run(_service_config(), _Router(_responses()), settings, package_dir)
        run.run()
        with pytest.raises(FunctionDeployError, match="already used"):
            run.run()

    def test_relative_artifact_is_read_from_service_dir(
        self, settings: DeploySettings, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        service_dir = tmp_path / "svc"
        (service_dir / "dist").mkdir(parents=True)
        (service_dir / "dist" / "fn.zip").write_bytes(CODE)
        elsewhere = tmp_path / "elsewhere"
        elsewhere.mkdir()
        monkeypatch.chdir(elsewhere)
        router = _Router(_responses())
        config = _service_config(package={"artifact": "dist/fn.zip"})

        outcome = FunctionDeployRun(
            _provider(router), settings, config, "hello", service_dir=service_dir
        ).run()

        assert outcome.code is SyncOutcome.UPLOADED
        assert router.params("update_function_code")["ZipFile"] == CODE


# ===========================================================================
# Local validation happens before any remote call
# ===========================================================================


class TestLocalValidation:
    def test_unknown_function(self, settings: DeploySettings, package_dir: Path) -> None:
        router = _Router(_responses())
        config = _service_config()
        run = FunctionDeployRun(
            _provider(router), settings, config, "goodbye", package_dir=package_dir
        )

        with pytest.raises(FunctionNotFound):
            run.run()

        assert run.state is RunState.FAILED
        assert "goodbye" in (run.failure or "")
        assert router.calls == []

    def test_invalid_environment_key(self, settings: DeploySettings, package_dir: Path) -> None:
        router = _Router(_responses())
        run = _run(_service_config(environment={"1BAD": "x"}), router, settings, package_dir)

        with pytest.raises(InvalidEnvironmentKey):
            run.run()
        assert router.calls == []

    def test_invalid_role_shape(self, settings: DeploySettings, package_dir: Path) -> None:
        router = _Router(_responses())
        run = _run(
            _service_config(role={"Fn::GetAtt": ["Role", "RoleId"]}), router, settings, package_dir
        )

        with pytest.raises(InvalidRoleReference):
            run.run()
        assert router.calls == []

    def test_missing_artifact(self, settings: DeploySettings, tmp_path: Path) -> None:
        router = _Router(_responses())
        run = _run(_service_config(), router, settings, tmp_path / "empty")

        with pytest.raises(ArtifactNotFound):
            run.run()
        assert router.calls == []


# ===========================================================================
# Remote failures
# ===========================================================================


class TestRemoteFailures:
    def test_function_not_deployed(self, settings: DeploySettings, package_dir: Path) -> None:
        router = _Router(
            _responses(
                lambda__get_function=TransportError(
                    service="lambda",
                    operation="get_function",
                    code="ResourceNotFoundException",
                    message="Function not found",
                )
            )
        )
        run = _run(_service_config(), router, settings, package_dir)

        with pytest.raises(FunctionNotDeployed) as exc_info:
            run.run()

        assert exc_info.value.function_name == FUNCTION_NAME
        assert run.state is RunState.FAILED

    def test_other_lambda_errors_propagate(
        self, settings: DeploySettings, package_dir: Path
    ) -> None:
        router = _Router(
            _responses(
                lambda__get_function=TransportError(
                    service="lambda",
                    operation="get_function",
                    code="AccessDeniedException",
                    message="denied",
                )
            )
        )
        with pytest.raises(TransportError):
            _run(_service_config(), router, settings, package_dir).run()

    def test_bucket_in_other_region(self, settings: DeploySettings, package_dir: Path) -> None:
        router = _Router(_responses(s3__get_bucket_location={"LocationConstraint": "us-west-2"}))

        with pytest.raises(DeploymentBucketError, match="not in the same region"):
            _run(_service_config(), router, settings, package_dir).run()
        assert router.operations() == ["get_bucket_location"]

    def test_no_prior_deployment(self, settings: DeploySettings, package_dir: Path) -> None:
        router = _Router(_responses(s3__list_objects_v2={"Contents": [], "IsTruncated": False}))
        run = _run(_service_config(), router, settings, package_dir)

        with pytest.raises(NoPriorDeployment):
            run.run()

        assert run.state is RunState.FAILED
        assert "get_object" not in router.operations()

    def test_template_integrity_failure_stops_before_updates(
        self, settings: DeploySettings, package_dir: Path
    ) -> None:
        router = _Router(
            _responses(
                s3__get_object={
                    "ContentType": "text/plain",
                    "ContentLength": len(TEMPLATE_BYTES),
                    "Body": TEMPLATE_BYTES,
                }
            )
        )

        with pytest.raises(IntegrityError):
            _run(_service_config(), router, settings, package_dir).run()
        assert "update_function_configuration" not in router.operations()
        assert "update_function_code" not in router.operations()

    def test_code_upload_failure_keeps_config_update(
        self, settings: DeploySettings, package_dir: Path
    ) -> None:
        router = _Router(
            _responses(
                lambda__update_function_code=TransportError(
                    service="lambda",
                    operation="update_function_code",
                    code="CodeStorageExceededException",
                    message="storage exceeded",
                )
            )
        )
        run = _run(_service_config(), router, settings, package_dir)

        with pytest.raises(TransportError):
            run.run()

        assert run.state is RunState.FAILED
        assert "update_function_configuration" in router.operations()

    def test_malformed_response_marks_run_failed(
        self, settings: DeploySettings, package_dir: Path
    ) -> None:
        router = _Router(_responses(lambda__get_function={}))
        run = _run(_service_config(), router, settings, package_dir)

        with pytest.raises(KeyError):
            run.run()

        assert run.state is RunState.FAILED
        assert run.failure is not None
        assert run.failure.startswith("KeyError")
        assert "update_function_code" not in router.operations()


# ===========================================================================
# service_name
# ===========================================================================


class TestServiceName:
    def test_string(self) -> None:
        assert service_name({"service": "api"}) == "api"

    def test_mapping(self) -> None:
        assert service_name({"service": {"name": "api", "awsKmsKeyArn": "arn"}}) == "api"

    @pytest.mark.parametrize("config", [{}, {"service": ""}, {"service": {"name": 3}}])
    def test_missing(self, config: dict[str, Any]) -> None:
        with pytest.raises(FunctionDeployError):
            service_name(config)
