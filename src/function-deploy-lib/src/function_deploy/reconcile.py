"""
function_deploy.reconcile — Minimal UpdateFunctionConfiguration patch.

Field policy (function level wins over provider level):
    role, awsKmsKeyArn, description, memorySize, timeout
                    first concrete value of function, provider (and for
                    awsKmsKeyArn the service block)
    onError         function level only
    environment     provider map overlaid by function map; dropped entirely
                    if any merged value is structured; every key must be a
                    shell identifier
    vpc             function vpc, else provider vpc; sent only when both
                    securityGroupIds and subnetIds are plain lists

A field whose desired value equals the remote value is left out.  An empty
patch issues no API call.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from aws_lambda_powertools import Logger

from function_deploy.exceptions import InvalidEnvironmentKey
from function_deploy.models import (
    ABSENT,
    FunctionConfigUpdate,
    ReconcileOutcome,
    RemoteFunctionDescriptor,
    Setting,
    SettingKind,
    first_concrete,
    is_structured,
)
from function_deploy.roles import RoleReferenceResolver, is_role_attribute, parse_role_reference
from function_deploy.transport import Provider

logger = Logger(service="function-deploy")

# taken from the bash man page
ENVIRONMENT_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_environment_keys(variables: Mapping[str, Any]) -> None:
    for key in variables:
        if not isinstance(key, str) or not ENVIRONMENT_KEY_PATTERN.match(key):
            raise InvalidEnvironmentKey(str(key))


def _environment_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _role_setting(config: Mapping[str, Any] | None) -> Setting:
    setting = Setting.of(config, "role")
    # Fn::GetAtt is structured but resolvable, so it counts as a concrete role.
    if setting.kind is SettingKind.PLACEHOLDER and is_role_attribute(setting.value):
        return Setting(SettingKind.CONCRETE, setting.value)
    return setting


def _environment_setting(
    function: Mapping[str, Any], provider: Mapping[str, Any]
) -> Setting:
    function_env = function.get("environment")
    provider_env = provider.get("environment")
    if function_env is None and provider_env is None:
        return ABSENT
    if not isinstance(function_env or {}, Mapping) or not isinstance(provider_env or {}, Mapping):
        return Setting(SettingKind.PLACEHOLDER, function_env or provider_env)

    merged = {**(provider_env or {}), **(function_env or {})}
    if any(is_structured(value) for value in merged.values()):
        return Setting(SettingKind.PLACEHOLDER, merged)
    validate_environment_keys(merged)
    return Setting(
        SettingKind.CONCRETE, {key: _environment_value(value) for key, value in merged.items()}
    )


def _plain_list(value: Any) -> bool:
    return isinstance(value, list) and not any(is_structured(item) for item in value)


def _vpc_setting(function: Mapping[str, Any], provider: Mapping[str, Any]) -> Setting:
    vpc = function.get("vpc") or provider.get("vpc")
    if not vpc:
        return ABSENT
    if not isinstance(vpc, Mapping):
        return Setting(SettingKind.PLACEHOLDER, vpc)

    config: dict[str, list[str]] = {}
    if _plain_list(vpc.get("securityGroupIds")):
        config["SecurityGroupIds"] = list(vpc["securityGroupIds"])
    if _plain_list(vpc.get("subnetIds")):
        config["SubnetIds"] = list(vpc["subnetIds"])
    if len(config) != 2:
        return Setting(SettingKind.PLACEHOLDER, vpc)
    return Setting(SettingKind.CONCRETE, config)


@dataclass(frozen=True)
class DesiredConfiguration:
    """Desired function configuration with each field tagged Concrete/Placeholder/Absent."""

    function_name: str
    role: Setting = ABSENT
    kms_key_arn: Setting = ABSENT
    description: Setting = ABSENT
    memory_size: Setting = ABSENT
    timeout: Setting = ABSENT
    dead_letter_target: Setting = ABSENT
    environment: Setting = ABSENT
    vpc_config: Setting = ABSENT

    @classmethod
    def from_config(
        cls,
        function_name: str,
        function: Mapping[str, Any] | None,
        provider: Mapping[str, Any] | None,
        service: Mapping[str, Any] | None = None,
    ) -> DesiredConfiguration:
        """Build from the function, provider and service blocks of the service file.

        Local validation happens here, before any remote call:
        InvalidEnvironmentKey for bad variable names, InvalidRoleReference for
        role specifications that are neither a string nor Fn::GetAtt.
        """
        function = function or {}
        provider = provider or {}
        desired = cls(
            function_name=function_name,
            role=first_concrete(_role_setting(function), _role_setting(provider)),
            kms_key_arn=first_concrete(
                Setting.of(function, "awsKmsKeyArn"),
                Setting.of(provider, "awsKmsKeyArn"),
                Setting.of(service, "awsKmsKeyArn"),
            ),
            description=first_concrete(
                Setting.of(function, "description"), Setting.of(provider, "description")
            ),
            memory_size=first_concrete(
                Setting.of(function, "memorySize"), Setting.of(provider, "memorySize")
            ),
            timeout=first_concrete(Setting.of(function, "timeout"), Setting.of(provider, "timeout")),
            dead_letter_target=Setting.of(function, "onError"),
            environment=_environment_setting(function, provider),
            vpc_config=_vpc_setting(function, provider),
        )
        if desired.role.is_concrete:
            parse_role_reference(desired.role.value)
        return desired


def _same_vpc(desired: Mapping[str, list[str]], current: Mapping[str, list[str]]) -> bool:
    return all(sorted(desired[name]) == sorted(current.get(name, [])) for name in desired)


class ConfigurationReconciler:
    def __init__(self, provider: Provider, resolver: RoleReferenceResolver) -> None:
        self._provider = provider
        self._resolver = resolver

    def resolve_role(self, desired: DesiredConfiguration) -> str | None:
        """Resolve the desired role to an ARN; None when no concrete role is declared."""
        if not desired.role.is_concrete:
            return None
        return self._resolver.resolve(desired.role.value)

    def reconcile(
        self,
        desired: DesiredConfiguration,
        remote: RemoteFunctionDescriptor | None = None,
        *,
        role_arn: str | None = None,
    ) -> FunctionConfigUpdate:
        """Compute the patch; with no remote descriptor every concrete field is included."""
        if role_arn is None:
            role_arn = self.resolve_role(desired)

        def differs(value: Any, current: Any) -> bool:
            return remote is None or value != current

        fields: dict[str, Any] = {}
        if role_arn is not None and differs(role_arn, remote and remote.role):
            fields["role"] = role_arn

        scalars = (
            ("kms_key_arn", desired.kms_key_arn, remote and remote.kms_key_ref),
            ("description", desired.description, remote and remote.description),
            ("memory_size", desired.memory_size, remote and remote.memory_size),
            ("timeout", desired.timeout, remote and remote.timeout),
            ("dead_letter_target", desired.dead_letter_target, remote and remote.dead_letter_target),
        )
        for name, setting, current in scalars:
            if setting.is_concrete and differs(setting.value, current):
                fields[name] = setting.value

        if desired.environment.is_concrete and differs(
            desired.environment.value, remote and remote.environment
        ):
            fields["environment"] = desired.environment.value
        elif desired.environment.kind is SettingKind.PLACEHOLDER:
            logger.info(
                "Environment contains unresolved values; leaving it unchanged",
                function_name=desired.function_name,
            )

        if desired.vpc_config.is_concrete and (
            remote is None or not _same_vpc(desired.vpc_config.value, remote.vpc_config)
        ):
            fields["vpc_config"] = desired.vpc_config.value

        return FunctionConfigUpdate(function_name=desired.function_name, **fields)

    def submit(self, update: FunctionConfigUpdate) -> ReconcileOutcome:
        if update.is_empty:
            logger.info("Function configuration unchanged", function_name=update.function_name)
            return ReconcileOutcome.NOOP

        params = update.to_params()
        self._provider.request("lambda", "update_function_configuration", params)
        logger.info(
            "Successfully updated function configuration",
            function_name=update.function_name,
            fields=sorted(key for key in params if key != "FunctionName"),
        )
        return ReconcileOutcome.UPDATED
