"""
EKS environment - network, cluster and add-ons as separate stacks
Usage: python . <preview|apply|destroy|refresh> [--keep-going]
"""

import argparse
import logging
import sys
from typing import List, Optional

from modules import addons, eks, vpc
from nebula import NebulaError, PulumiBackend, RunCancelledError, Runner, get_config
from nebula.automation import OPERATIONS

logger = logging.getLogger("nebula")


def environment(config) -> List:
    """Modules of the environment; order comes from their capabilities"""
    cluster_name = f"{config.project}-{config.environment}"
    tags = config.common_tags

    return [
        addons({
            "releases": {
                "metrics-server": {
                    "chart": "metrics-server",
                    "repo": "https://kubernetes-sigs.github.io/metrics-server/",
                    "namespace": "kube-system",
                },
            },
        }),
        eks({
            "cluster_name": cluster_name,
            "cluster_version": "1.30",
            "node_instance_types": ["t4g.small", "t3.small"],
            "region": config.aws_region,
            "tags": tags,
        }),
        vpc({
            "cluster_name": cluster_name,
            "vpc_cidr": "10.0.0.0/16",
            "public_subnet_cidrs": ["10.0.1.0/24", "10.0.2.0/24"],
            "tags": tags,
        }),
    ]


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run an operation over the environment's stacks")
    parser.add_argument("operation", choices=OPERATIONS)
    parser.add_argument(
        "--keep-going",
        action="store_true",
        help="continue with modules that do not depend on a failed one",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_arguments(argv)
    config = get_config()
    logging.basicConfig(level=logging.DEBUG if config.debug else logging.INFO, format="%(levelname)s %(message)s")
    if not config.infra_stack:
        # add-ons read the kubeconfig exported by this environment's eks stack
        config.infra_stack = f"organization/{config.project}/{config.environment}-eks"

    runner = Runner(PulumiBackend(config), config)
    runner.install_signal_handlers()

    try:
        report = runner.run(environment(config), args.operation, keep_going=args.keep_going)
        report.raise_for_failures()
    except RunCancelledError as exc:
        logger.warning(f"[Main] {exc}")
        return 130
    except NebulaError as exc:
        logger.error(f"[Main] {exc}")
        return 1

    logger.info(f"[Main] {args.operation} finished: {', '.join(report.succeeded)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
