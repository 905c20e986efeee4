"""
function_deploy.transport — The single remote capability the pipeline depends on.

    provider.request(service, operation, params) -> response dict

service is a boto3 service name ("s3", "lambda", "iam", "sts",
"cloudformation") and operation the boto3 client method name.  Every
botocore failure is re-raised as TransportError; nothing is retried here
(boto3's own retry configuration is the transport's policy).
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

from function_deploy.exceptions import TransportError

logger = Logger(service="function-deploy")


class Provider(Protocol):
    def request(self, service: str, operation: str, params: Mapping[str, Any]) -> dict[str, Any]:
        ...

    def get_account_id(self) -> str:
        ...


class AwsProvider:
    """boto3-backed Provider for one region.

    Clients are created lazily and cached per service.  A pre-built client can
    be injected per service (tests pass moto-backed or MagicMock clients).
    """

    def __init__(
        self,
        region: str,
        *,
        session: Any = None,
        clients: Mapping[str, Any] | None = None,
    ) -> None:
        self.region = region
        self._session: Any = session or boto3.Session(region_name=region)
        self._clients: dict[str, Any] = dict(clients or {})
        self._account_id: str | None = None

    def client(self, service: str) -> Any:
        if service not in self._clients:
            self._clients[service] = self._session.client(service, region_name=self.region)
        return self._clients[service]

    def request(self, service: str, operation: str, params: Mapping[str, Any]) -> dict[str, Any]:
        method = getattr(self.client(service), operation)
        try:
            return method(**params)
        except ClientError as exc:
            error = exc.response.get("Error", {})
            code = error.get("Code")
            logger.debug(
                "AWS request failed",
                service=service,
                operation=operation,
                error_code=code,
            )
            raise TransportError(
                service=service,
                operation=operation,
                code=code,
                message=error.get("Message") or str(exc),
            ) from exc
        except BotoCoreError as exc:
            raise TransportError(
                service=service, operation=operation, code=None, message=str(exc)
            ) from exc

    def get_account_id(self) -> str:
        """Account of the calling credentials; looked up once per provider."""
        if self._account_id is None:
            identity = self.request("sts", "get_caller_identity", {})
            self._account_id = str(identity["Account"])
        return self._account_id
