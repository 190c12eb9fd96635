"""
tfstacks/cli/stack_args.py

Shared argparse plumbing for selecting stacks on the command line:

  -S name                     unversioned stack
  -s name:version             versioned stack
  -I name                     unversioned input stack
  -i name:version[:alias]     versioned input stack, optionally aliased

plus splitting off the arguments after '--' that go straight to terraform.
"""

from __future__ import annotations

import argparse
from typing import Iterable, List, Optional, Tuple

from tfstacks.models.errors import ErrorKind, StackError
from tfstacks.models.stack import Stack, parse_stack

PASSTHROUGH_SEPARATOR = "--"


def split_passthrough(argv: List[str]) -> Tuple[List[str], List[str]]:
    """Split argv at the first '--' into (our arguments, terraform arguments)."""
    if PASSTHROUGH_SEPARATOR not in argv:
        return list(argv), []
    index = argv.index(PASSTHROUGH_SEPARATOR)
    return argv[:index], argv[index + 1 :]


def parse_versioned_stack(text: str) -> Stack:
    """Parse '<stack>:<version>[:<alias>]'."""
    parts = text.split(":")
    if len(parts) < 2 or len(parts) > 3:
        raise StackError(
            ErrorKind.INVALID_STACK,
            f"'{text}': versioned stack format is '<stack>:<version>[:<alias>]'.",
        )
    alias = parts[2] if len(parts) == 3 else None
    return parse_stack(parts[0], parts[1], input_alias=alias)


def parse_stack_args(
    unversioned: Optional[Iterable[str]], versioned: Optional[Iterable[str]]
) -> List[Stack]:
    """Turn -S/-s style values into stacks; empty values are ignored."""
    stacks = [parse_stack(name) for name in unversioned or () if name]
    stacks.extend(parse_versioned_stack(text) for text in versioned or () if text)
    return stacks


def single_stack(args: argparse.Namespace) -> Stack:
    """The one stack a single-stack command operates on.

    Raises:
        StackError: AMBIGUOUS_SELECTION unless exactly one of -S/-s was given.
    """
    stacks = parse_stack_args(
        [args.stack] if args.stack else [],
        [args.stack_version] if args.stack_version else [],
    )
    if len(stacks) != 1:
        raise StackError(
            ErrorKind.AMBIGUOUS_SELECTION,
            f"Command requires 1 stack argument, found {len(stacks)}",
        )
    return stacks[0]


def multiple_stacks(args: argparse.Namespace) -> List[Stack]:
    return parse_stack_args(args.stacks, args.stack_versions)


def input_stacks(args: argparse.Namespace) -> List[Stack]:
    return parse_stack_args(args.input_stacks, args.input_stack_versions)


def add_single_stack_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-S",
        "--stack",
        default=None,
        help="Name of unversioned stack to operate on.",
    )
    parser.add_argument(
        "-s",
        "--stack-version",
        default=None,
        help="Stack version to operate on, as <stack>:<version>.",
    )


def add_multiple_stack_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-S",
        "--stack",
        dest="stacks",
        action="append",
        default=[],
        help="Name of unversioned stack to operate on; may repeat.",
    )
    parser.add_argument(
        "-s",
        "--stack-version",
        dest="stack_versions",
        action="append",
        default=[],
        help="Stack version to operate on, as <stack>:<version>; may repeat.",
    )


def add_input_stack_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-I",
        "--input-stack",
        dest="input_stacks",
        action="append",
        default=[],
        help="Name of unversioned stack to provide state from as input; may repeat.",
    )
    parser.add_argument(
        "-i",
        "--input-stack-version",
        dest="input_stack_versions",
        action="append",
        default=[],
        help=(
            "Stack version to provide state from as input, as "
            "<stack>:<version>[:<alias>]; may repeat."
        ),
    )
