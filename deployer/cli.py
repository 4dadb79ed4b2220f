"""
Command-line entry point for CI systems.

    python -m deployer --branch main --no-push

Exit codes: 0 success, 1 failure, 2 aborted.
"""
import argparse
import asyncio
import logging
import sys
from typing import Optional, Sequence

from deployer.core.config import BRANCH_NAME
from deployer.models.run_config import RunConfig
from deployer.services.pipeline_factory import build_controller
from deployer.utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

EXIT_CODES = {"success": 0, "failure": 1, "aborted": 2}


def _tri_state(parser: argparse.ArgumentParser, name: str, help_text: str) -> None:
    group = parser.add_mutually_exclusive_group()
    group.add_argument(f"--{name}", dest=name.replace("-", "_"), action="store_true", default=None, help=help_text)
    group.add_argument(f"--no-{name}", dest=name.replace("-", "_"), action="store_false")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="deployer", description="Build, publish and deploy a container image.")
    parser.add_argument("--run-id", help="Run identifier (default: random)")
    parser.add_argument("--branch", default=BRANCH_NAME, help="Branch or ref being built")
    parser.add_argument("--repository", help="Image repository (overrides IMAGE_REPOSITORY)")
    parser.add_argument("--source-dir", help="Source tree (overrides SOURCE_DIR)")
    parser.add_argument("--manifest-dir", help="Kubernetes manifests (overrides MANIFEST_DIR)")
    _tri_state(parser, "push", "Force the publish gate on/off")
    _tri_state(parser, "deploy", "Force the deploy gate on/off")
    parser.add_argument("--require-convergence", action="store_true", default=None,
                        help="Fail the run when a rollout does not converge in time")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=logging.DEBUG if args.verbose else logging.INFO)

    config = RunConfig.from_env(
        image_repository=args.repository,
        source_dir=args.source_dir,
        manifest_dir=args.manifest_dir,
        push_enabled=args.push,
        deploy_enabled=args.deploy,
        require_convergence=args.require_convergence,
    )
    controller = build_controller(config)
    run = asyncio.run(controller.run(run_id=args.run_id, branch=args.branch))
    print(run.summary)
    return EXIT_CODES.get(run.final_result or "failure", 1)


if __name__ == "__main__":
    sys.exit(main())
