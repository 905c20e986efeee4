#!/usr/bin/env python3
"""
deploy_function.py — Update one function of a deployed service without a stack deploy.

Loads serverless.yml (inlining $ref documents), locates the last full deploy
in the deployment bucket, downloads its compiled template, patches the
function configuration where it changed, and uploads the code artifact
when its SHA256 differs from the deployed CodeSha256.

Exit codes:
    0  Function deployed, or nothing to change
    1  Deploy failed (message logged)
    2  Invalid arguments

Usage:
    uv run python scripts/deploy_function.py <function> --stage <stage> [--region <region>]
        [--config serverless.yml] [--package .serverless] [--force]
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from function_deploy import (
    AwsProvider,
    DeployOutcome,
    DeploySettings,
    FunctionDeployError,
    FunctionDeployRun,
    ReferenceResolvingLoader,
)

logger = logging.getLogger("deploy_function")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

DEFAULT_CONFIG_FILE = "serverless.yml"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        description="Deploy a single function's configuration and code"
    )
    parser.add_argument("function", help="Function key as declared under 'functions:'")
    parser.add_argument("--stage", default=None, help="Stage (default FUNCTION_DEPLOY_STAGE or dev)")
    parser.add_argument("--region", default=None, help="AWS region (default AWS_REGION)")
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_FILE,
        help="Service configuration file (default serverless.yml)",
    )
    parser.add_argument(
        "--package",
        default=None,
        help="Directory holding packaged artifacts (default <service dir>/.serverless)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Upload code even when the deployed hash matches",
    )
    return parser.parse_args(argv)


def summarize(outcome: DeployOutcome) -> str:
    return (
        f"function={outcome.function_name} "
        f"configuration={outcome.configuration.value} "
        f"code={outcome.code.value} "
        f"deployment={outcome.deployment.directory}"
    )


def run(args: argparse.Namespace, provider: AwsProvider | None = None) -> int:
    settings = DeploySettings.from_env(region=args.region, stage=args.stage)
    config_path = Path(args.config)

    loader = ReferenceResolvingLoader(remote_timeout=settings.remote_fetch_timeout)
    service_config = loader.load(config_path)

    deploy = FunctionDeployRun(
        provider or AwsProvider(settings.region),
        settings,
        service_config,
        args.function,
        service_dir=config_path.resolve().parent,
        package_dir=args.package,
        force=args.force,
    )
    outcome = deploy.run()
    logger.info("Deploy complete: %s", summarize(outcome))
    print(f"DEPLOYED {summarize(outcome)}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""
    args = parse_args(argv)
    try:
        return run(args)
    except (FunctionDeployError, RuntimeError) as exc:
        logger.error("deploy_function failed: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
