"""
function_deploy.roles — Resolve a role specification to an IAM role ARN.

Accepted specifications:
    "arn:aws:iam::123456789012:role/x"   literal ARN, returned unchanged
    "MyRole"                             logical id of an AWS::IAM::Role resource
    {"Fn::GetAtt": ["MyRole", "Arn"]}    looked up live with iam:GetRole
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from aws_lambda_powertools import Logger

from function_deploy.exceptions import (
    InvalidRoleReference,
    NotAnIdentityResource,
    TransportError,
    UnresolvableReference,
)
from function_deploy.models import (
    IAM_ROLE_TYPE,
    CompiledTemplate,
    LiteralRole,
    LogicalRoleName,
    RoleAttribute,
    RoleReference,
)
from function_deploy.transport import Provider

logger = Logger(service="function-deploy")

GET_ATT = "Fn::GetAtt"


def is_role_attribute(spec: Any) -> bool:
    return isinstance(spec, Mapping) and list(spec) == [GET_ATT]


def parse_role_reference(spec: Any) -> RoleReference:
    """Classify a role specification without any network access.

    Raises InvalidRoleReference for anything that is not one of the three
    accepted forms.
    """
    if isinstance(spec, str) and spec:
        if ":" in spec:
            return LiteralRole(arn=spec)
        return LogicalRoleName(resource_id=spec)

    if is_role_attribute(spec):
        args = spec[GET_ATT]
        if isinstance(args, str):
            # short form "MyRole.Arn"
            args = args.split(".", 1)
        if (
            isinstance(args, list)
            and len(args) == 2
            and all(isinstance(a, str) and a for a in args)
            and args[1] == "Arn"
        ):
            return RoleAttribute(resource_id=args[0], attribute=args[1])

    raise InvalidRoleReference(spec)


class RoleReferenceResolver:
    """
    Resolves role references against the service's declared resources.

    Logical names are looked up in the service's own resources first, then in
    the compiled template of the last deployment.
    """

    def __init__(
        self,
        provider: Provider,
        *,
        resources: Mapping[str, Any] | None = None,
        template: CompiledTemplate | None = None,
    ) -> None:
        self._provider = provider
        self._resources: dict[str, Any] = dict(template.resources) if template else {}
        self._resources.update(resources or {})

    def resolve(self, spec: Any) -> str:
        if isinstance(spec, (LiteralRole, LogicalRoleName, RoleAttribute)):
            reference = spec
        else:
            reference = parse_role_reference(spec)
        if isinstance(reference, LiteralRole):
            return reference.arn
        if isinstance(reference, LogicalRoleName):
            return self._resolve_logical_name(reference)
        return self._resolve_attribute(reference)

    def _declared_role(self, resource_id: str) -> Mapping[str, Any] | None:
        resource = self._resources.get(resource_id)
        if resource is None:
            return None
        resource_type = resource.get("Type") if isinstance(resource, Mapping) else None
        if resource_type != IAM_ROLE_TYPE:
            raise NotAnIdentityResource(resource_id, resource_type)
        return resource.get("Properties") or {}

    def _resolve_logical_name(self, reference: LogicalRoleName) -> str:
        properties = self._declared_role(reference.resource_id)
        if properties is None:
            raise UnresolvableReference(reference.resource_id)

        role_name = properties.get("RoleName")
        path = properties.get("Path") or "/"
        if not isinstance(role_name, str) or not isinstance(path, str):
            raise UnresolvableReference(
                reference.resource_id, "RoleName and Path must be plain strings"
            )

        account_id = self._provider.get_account_id()
        arn = f"arn:aws:iam::{account_id}:role{path}{role_name}"
        logger.debug("Resolved logical role", resource_id=reference.resource_id, role_arn=arn)
        return arn

    def _resolve_attribute(self, reference: RoleAttribute) -> str:
        # GetRole needs the physical name; fall back to the logical id when none is declared.
        role_name = reference.resource_id
        properties = self._declared_role(reference.resource_id)
        if properties and isinstance(properties.get("RoleName"), str):
            role_name = properties["RoleName"]

        try:
            response = self._provider.request("iam", "get_role", {"RoleName": role_name})
        except TransportError as exc:
            if exc.code == "NoSuchEntity":
                raise UnresolvableReference(reference.resource_id) from exc
            raise

        arn = str(response["Role"]["Arn"])
        logger.debug("Resolved role attribute", resource_id=reference.resource_id, role_arn=arn)
        return arn
