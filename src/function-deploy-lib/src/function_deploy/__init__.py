"""
function_deploy — Update a single function of a deployed serverless service.

Reconciles one function's configuration and code with AWS Lambda without a
full stack deploy: finds the last deployment in the deployment bucket,
fetches its compiled template, patches only changed configuration, and
uploads code only when its hash changed.
"""

from function_deploy.config import DeploySettings
from function_deploy.exceptions import FunctionDeployError, TransportError
from function_deploy.loader import ReferenceResolvingLoader
from function_deploy.models import ReconcileOutcome, RunState, SyncOutcome
from function_deploy.pipeline import DeployOutcome, FunctionDeployRun
from function_deploy.transport import AwsProvider

__all__ = [
    "AwsProvider",
    "DeployOutcome",
    "DeploySettings",
    "FunctionDeployError",
    "FunctionDeployRun",
    "ReconcileOutcome",
    "ReferenceResolvingLoader",
    "RunState",
    "SyncOutcome",
    "TransportError",
]
