#!/usr/bin/env python3
"""
tfstacks/cli/tfstacks.py

CLI wrapping terraform to manage several versions of several stacks, each with
its own state file in one S3 bucket, and to feed the state of some stacks into
others as inputs:

  init     write the project configuration (.tfstacks)
  args     append persistent arguments for plan/apply/destroy
  plan     terraform plan for one stack
  apply    terraform apply for one stack
  test     plan one stack and fail if it would change anything
  output   print output values of one stack
  list     print every stack that has a state file
  next     print the next unused version number
  destroy  destroy stacks, verifying that nothing is left behind
  util     helpers for deployment scripts (util aws ecs run|wait)

Arguments after '--' are passed through to terraform.

Example:
    NEW_VERSION=$(tfstacks next)
    tfstacks apply -s main:$NEW_VERSION -I database
    tfstacks apply -S routing -i main:$NEW_VERSION
    tfstacks destroy -a main -e main:$NEW_VERSION
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any, Awaitable, Callable, List, Optional

from tfstacks.cli.stack_args import (
    add_input_stack_arguments,
    add_multiple_stack_arguments,
    add_single_stack_arguments,
    input_stacks,
    multiple_stacks,
    parse_stack_args,
    single_stack,
    split_passthrough,
)
from tfstacks.cli.util import add_util_parser
from tfstacks.models.config import (
    CONFIG_FILE,
    StacksConfig,
    StoreSettings,
    read_config,
    write_config,
)
from tfstacks.models.errors import ErrorKind, StackError, exit_with
from tfstacks.models.stack import LEGACY, Stack, subtract
from tfstacks.utils.aws.ecs import AwsClients
from tfstacks.utils.process_supervisor import ProcessSupervisor
from tfstacks.utils.terraform import (
    DestroyProtocol,
    StateFileStore,
    TerraformRunner,
    build_minio_client,
    names_losing_all_versions,
    raise_for_outcomes,
    require_confirmation,
)
from tfstacks.utils.terraform.destroy import AUTO_APPROVE

logger = logging.getLogger(__name__)


class CommandContext:
    """What a subcommand handler needs; the runner and store are built on first use.

    Tests pass their own runner, store, stdin reader or boto3 session.
    """

    def __init__(
        self,
        config: Optional[StacksConfig],
        supervisor: ProcessSupervisor,
        config_path: str = CONFIG_FILE,
        runner: Optional[TerraformRunner] = None,
        store: Optional[StateFileStore] = None,
        read_line: Optional[Callable[[], Awaitable[str]]] = None,
        aws_session: Optional[Any] = None,
    ) -> None:
        self._config = config
        self.supervisor = supervisor
        self.config_path = config_path
        self._runner = runner
        self._store = store
        self.read_line = read_line
        self.aws_session = aws_session

    @property
    def config(self) -> StacksConfig:
        if self._config is None:
            raise RuntimeError("No configuration loaded.")
        return self._config

    @property
    def runner(self) -> TerraformRunner:
        if self._runner is None:
            self._runner = TerraformRunner(self.config, self.supervisor)
        return self._runner

    @property
    def store(self) -> StateFileStore:
        if self._store is None:
            client = build_minio_client(self.config, StoreSettings())
            self._store = StateFileStore(self.config, client)
        return self._store

    def aws_clients(self, region: str) -> AwsClients:
        return AwsClients(region, self.aws_session)


async def _run_init(
    args: argparse.Namespace, passthrough: List[str], ctx: CommandContext
) -> None:
    """Handle 'init': replace the configuration with a fresh one."""
    config = StacksConfig(
        aws_region=args.region,
        state_file_base=args.key,
        state_file_bucket=args.bucket,
        init_args=passthrough,
    )
    write_config(config, ctx.config_path)
    logger.info("Wrote configuration to %s", ctx.config_path)


async def _run_args(
    args: argparse.Namespace, passthrough: List[str], ctx: CommandContext
) -> None:
    """Handle 'args': append terraform arguments used by plan/apply/destroy."""
    config = ctx.config.model_copy(
        update={"terraform_args": [*ctx.config.terraform_args, *passthrough]}
    )
    write_config(config, ctx.config_path)
    logger.info("Terraform arguments now: %s", config.terraform_args)


async def _run_plan(
    args: argparse.Namespace, passthrough: List[str], ctx: CommandContext
) -> None:
    run = ctx.runner.run_interactive_action if args.interactive else ctx.runner.run_action
    await run(single_stack(args), "plan", input_stacks(args), passthrough)


async def _run_apply(
    args: argparse.Namespace, passthrough: List[str], ctx: CommandContext
) -> None:
    """Handle 'apply'; with --interactive terraform asks for approval itself."""
    stack = single_stack(args)
    if args.interactive:
        await ctx.runner.run_interactive_action(
            stack, "apply", input_stacks(args), passthrough
        )
        return
    # Terraform refuses to apply without input unless approval is given up front.
    await ctx.runner.run_action(
        stack, "apply", input_stacks(args), [*passthrough, AUTO_APPROVE]
    )


async def _run_test(
    args: argparse.Namespace, passthrough: List[str], ctx: CommandContext
) -> None:
    """Handle 'test': plan the stack and fail if it has unexpected changes."""
    changes = await ctx.runner.plan_changes(
        single_stack(args), input_stacks(args), passthrough, args.ignore_update
    )
    if changes:
        raise StackError(
            ErrorKind.PLAN_HAS_CHANGES, "Would change: " + ", ".join(changes)
        )
    logger.info("Test plan successful.")


async def _run_output(
    args: argparse.Namespace, passthrough: List[str], ctx: CommandContext
) -> None:
    values = await ctx.runner.outputs(single_stack(args), args.names)
    print(" ".join(values))


async def _run_list(
    args: argparse.Namespace, passthrough: List[str], ctx: CommandContext
) -> None:
    for stack in await ctx.store.all(args.name or ""):
        print(stack)


async def _run_next(
    args: argparse.Namespace, passthrough: List[str], ctx: CommandContext
) -> None:
    print(await ctx.store.next_version(args.name or ""))


async def _gather_destroy_targets(
    args: argparse.Namespace, store: StateFileStore
) -> List[Stack]:
    requested = multiple_stacks(args)
    for name in args.all:
        requested.extend(await store.all(name))
    if args.legacy:
        if not args.force:
            raise RuntimeError("Must specify --force when destroying legacy stack.")
        requested.append(LEGACY)
    if args.everything:
        requested.extend(await store.all())

    skip = parse_stack_args(args.except_unversioned, args.except_versioned)
    if skip:
        logger.info("Requested stacks: %s", [str(s) for s in requested])
        logger.info("Skipping stacks: %s", [str(s) for s in skip])
        requested = subtract(requested, skip)

    # The same stack can be requested through several flags.
    return list(dict.fromkeys(requested))


async def _run_destroy(
    args: argparse.Namespace, passthrough: List[str], ctx: CommandContext
) -> None:
    """Handle 'destroy'.

    Asks for confirmation when every version of an existing stack would go,
    unless --skip-confirmation. Fails with INCOMPLETE_DESTRUCTION at the end
    if any stack still had resources after its retry.
    """
    inputs = input_stacks(args)
    targets = await _gather_destroy_targets(args, ctx.store)
    logger.info("Will destroy: %s", [str(s) for s in targets])

    existing = await ctx.store.all()
    logger.info(
        "Stacks that will be left: %s", [str(s) for s in subtract(existing, targets)]
    )
    if not args.skip_confirmation:
        doomed = names_losing_all_versions(existing, targets)
        if doomed:
            await require_confirmation(doomed, read_line=ctx.read_line)

    outcomes = await DestroyProtocol(ctx.runner, ctx.store).destroy_batch(
        targets,
        input_stacks=inputs,
        extra_args=passthrough,
        provider_definitions=args.force,
        leave=args.leave,
    )
    raise_for_outcomes(outcomes)


def _timeout_seconds(text: str) -> float:
    seconds = float(text)
    if seconds < 0:
        raise argparse.ArgumentTypeError("must not be negative")
    return seconds


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tfstacks",
        description=(
            "Deployment orchestration using terraform: manages multiple versions "
            "of terraform stacks and shares state between related stacks. "
            "Arguments after '--' are passed to terraform."
        ),
    )
    parser.add_argument(
        "--timeout",
        type=_timeout_seconds,
        default=None,
        help="Give up (and kill terraform) after this many seconds; 0 waits forever.",
    )
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help=f"Configuration file (default: {CONFIG_FILE}).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # "init" subcommand
    init_parser = subparsers.add_parser(
        "init",
        help="Set the state bucket and the args passed to 'terraform init'.",
    )
    init_parser.add_argument("--bucket", required=True, help="State file bucket.")
    init_parser.add_argument("--key", required=True, help="State file path/name.")
    init_parser.add_argument(
        "--region", required=True, help="Region to access bucket in."
    )
    init_parser.set_defaults(
        func=_run_init, requires_passthrough=False, needs_config=False
    )

    # "args" subcommand
    args_parser = subparsers.add_parser(
        "args",
        help="Append args passed to terraform for plan/apply/destroy (after '--').",
    )
    args_parser.set_defaults(func=_run_args, requires_passthrough=True)

    # "plan" / "apply" subcommands
    for action, func in (("plan", _run_plan), ("apply", _run_apply)):
        action_parser = subparsers.add_parser(
            action, help=f"Perform 'terraform {action}' on the specified stack."
        )
        add_single_stack_arguments(action_parser)
        add_input_stack_arguments(action_parser)
        action_parser.add_argument(
            "--interactive",
            action="store_true",
            default=False,
            help="Let terraform use the terminal and ask for input (and approval).",
        )
        action_parser.set_defaults(func=func, requires_passthrough=False)

    # "test" subcommand
    test_parser = subparsers.add_parser(
        "test",
        help=(
            "Check whether the stack would change. Use the same arguments as "
            "for apply. Exits 15 if the plan has changes."
        ),
    )
    add_single_stack_arguments(test_parser)
    add_input_stack_arguments(test_parser)
    test_parser.add_argument(
        "-u",
        "--ignore-update",
        action="append",
        default=[],
        help="Ignore in-place updates to the named resource; may repeat.",
    )
    test_parser.set_defaults(func=_run_test, requires_passthrough=False)

    # "output" subcommand
    output_parser = subparsers.add_parser(
        "output", help="Print output values of the specified stack, space separated."
    )
    add_single_stack_arguments(output_parser)
    output_parser.add_argument("names", nargs="+", help="Output names.")
    output_parser.set_defaults(func=_run_output, requires_passthrough=False)

    # "list" / "next" subcommands
    list_parser = subparsers.add_parser("list", help="List all stacks.")
    list_parser.add_argument(
        "--name", default=None, help="Only list versions of this stack."
    )
    list_parser.set_defaults(func=_run_list, requires_passthrough=False)

    next_parser = subparsers.add_parser(
        "next", help="Print next unused version number (across all stacks)."
    )
    next_parser.add_argument(
        "--name", default=None, help="Only consider versions of this stack."
    )
    next_parser.set_defaults(func=_run_next, requires_passthrough=False)

    # "destroy" subcommand
    destroy_parser = subparsers.add_parser(
        "destroy",
        help=(
            "Destroy one or more stacks. Succeeds only if everything requested "
            "was destroyed (or did not exist)."
        ),
    )
    add_multiple_stack_arguments(destroy_parser)
    add_input_stack_arguments(destroy_parser)
    destroy_parser.add_argument(
        "-a",
        "--all",
        action="append",
        default=[],
        help="Destroy all versions of the named stack; may repeat.",
    )
    destroy_parser.add_argument(
        "-A",
        "--everything",
        action="store_true",
        default=False,
        help="Destroy ALL stacks.",
    )
    destroy_parser.add_argument(
        "--legacy",
        action="store_true",
        default=False,
        help="Destroy the legacy stack (state at the base key itself).",
    )
    destroy_parser.add_argument(
        "-e",
        "--except-version",
        dest="except_versioned",
        action="append",
        default=[],
        help="Skip destroying the stack version <stack>:<version>; may repeat.",
    )
    destroy_parser.add_argument(
        "-E",
        "--except",
        dest="except_unversioned",
        action="append",
        default=[],
        help="Skip destroying the unversioned stack; may repeat.",
    )
    destroy_parser.add_argument(
        "-l",
        "--leave",
        action="append",
        default=[],
        help="Remove the resource from state instead of destroying it; may repeat.",
    )
    destroy_parser.add_argument(
        "-f",
        "--force",
        default=None,
        metavar="PROVIDERS_TF",
        help=(
            "Destroy using only this provider definitions file. "
            "BYPASSES prevent_destroy."
        ),
    )
    destroy_parser.add_argument(
        "--skip-confirmation",
        action="store_true",
        default=False,
        help="Don't ask before removing every version of an existing stack.",
    )
    destroy_parser.set_defaults(func=_run_destroy, requires_passthrough=False)

    # "util" subcommands
    add_util_parser(subparsers)

    return parser


async def _main(args: argparse.Namespace, passthrough: List[str]) -> None:
    supervisor = ProcessSupervisor()
    supervisor.install_signal_handlers()
    config = read_config(args.config) if getattr(args, "needs_config", True) else None
    ctx = CommandContext(config, supervisor, args.config)
    timeout = args.timeout
    if timeout is None:
        timeout = getattr(args, "default_timeout", None)
    await supervisor.supervise(args.func(args, passthrough, ctx), timeout=timeout)


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point for tfstacks."""
    own_args, passthrough = split_passthrough(
        sys.argv[1:] if argv is None else argv
    )
    parser = build_parser()
    args = parser.parse_args(own_args)
    if args.requires_passthrough and not passthrough:
        parser.error(f"'{args.command}' needs arguments after '--'")

    logging.basicConfig(
        stream=sys.stderr,
        level=logging.INFO,
        format="%(asctime)s %(message)s",
        datefmt="%Y/%m/%d %H:%M:%S",
    )
    try:
        asyncio.run(_main(args, passthrough))
    except Exception as exc:
        exit_with(exc)


if __name__ == "__main__":
    main()
