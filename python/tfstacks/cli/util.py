"""
tfstacks/cli/util.py

'tfstacks util' subcommands: helpers for deployment scripts that don't touch
stacks, so they run without a .tfstacks configuration.

  util aws ecs run   run one ECS task and wait for it to succeed
  util aws ecs wait  wait for an ECS cluster or service to settle

Usage Examples:
    tfstacks util aws ecs run --region us-east-1 --cluster jobs \
        --task-def migrate:12 -- ./manage.py migrate

    tfstacks util aws ecs wait --region us-east-1 --cluster web --service api
"""

from __future__ import annotations

import argparse
import logging
from typing import TYPE_CHECKING, List

from tfstacks.utils.aws.ecs import (
    run_task,
    wait_for_instances,
    wait_for_service,
)

if TYPE_CHECKING:
    from tfstacks.cli.tfstacks import CommandContext

logger = logging.getLogger(__name__)

# 'ecs wait' gives up after ten minutes unless --timeout says otherwise.
WAIT_TIMEOUT_SECONDS = 600.0


async def _run_ecs_run(
    args: argparse.Namespace, passthrough: List[str], ctx: CommandContext
) -> None:
    """Handle 'util aws ecs run'; a failed task's exit code becomes ours."""
    await run_task(
        ctx.aws_clients(args.region),
        args.cluster,
        args.task_def,
        passthrough,
        container_name=args.container,
    )


async def _run_ecs_wait(
    args: argparse.Namespace, passthrough: List[str], ctx: CommandContext
) -> None:
    """Handle 'util aws ecs wait'. Both waits run when both are asked for."""
    if args.instances is None and not args.service:
        raise RuntimeError("Must specify either --instances or --service.")
    clients = ctx.aws_clients(args.region)
    if args.instances is not None:
        await wait_for_instances(clients, args.cluster, args.instances)
    if args.service:
        await wait_for_service(clients, args.cluster, args.service)
    logger.info("Done.")


def add_util_parser(subparsers: argparse._SubParsersAction) -> None:
    """Attach 'util aws ecs run|wait' to the top-level subparsers."""
    util_parser = subparsers.add_parser(
        "util", help="General utilities to help deployment scripts."
    )
    util_sub = util_parser.add_subparsers(dest="util_command", required=True)
    aws_parser = util_sub.add_parser("aws", help="AWS-related utilities.")
    aws_sub = aws_parser.add_subparsers(dest="aws_command", required=True)
    ecs_parser = aws_sub.add_parser(
        "ecs", help="Utilities related to Elastic Container Service."
    )
    ecs_sub = ecs_parser.add_subparsers(dest="ecs_command", required=True)

    run_parser = ecs_sub.add_parser(
        "run",
        help=(
            "Run an ECS task with the command after '--' and wait for success. "
            "A non-zero task exit code is passed through as ours."
        ),
    )
    run_parser.add_argument("--region", required=True, help="AWS region of cluster.")
    run_parser.add_argument("--cluster", required=True, help="Name of ECS cluster.")
    run_parser.add_argument(
        "--task-def", required=True, help="ECS task definition ARN."
    )
    run_parser.add_argument(
        "--container",
        default=None,
        help="Container receiving the command (needed if the task has several).",
    )
    run_parser.set_defaults(
        func=_run_ecs_run, requires_passthrough=True, needs_config=False
    )

    wait_parser = ecs_sub.add_parser(
        "wait",
        help=(
            "Wait for a cluster to have exactly --instances instances, or for "
            "--service to run only its current task definition, healthy. "
            "Times out after 10 minutes unless --timeout is given."
        ),
    )
    wait_parser.add_argument("--region", required=True, help="AWS region of cluster.")
    wait_parser.add_argument("--cluster", required=True, help="Name of ECS cluster.")
    wait_parser.add_argument(
        "--instances", type=int, default=None, help="Number of instances to wait for."
    )
    wait_parser.add_argument(
        "--service", default=None, help="Name of ECS service to wait for."
    )
    wait_parser.set_defaults(
        func=_run_ecs_wait,
        requires_passthrough=False,
        needs_config=False,
        default_timeout=WAIT_TIMEOUT_SECONDS,
    )
