"""
tfstacks/utils/terraform/variables.py

Builds the terraform input variables that wire stacks together, and hands them
to terraform through an ephemeral .auto.tfvars.json file in /dev/shm (or the
system temp directory where /dev/shm does not exist).

For a target stack "main:5" with inputs "code:7:stable" and "database", the
variables are:

    {
      "stack_version": 5,
      "stable_stack_state": {"bucket": ..., "key": "<base>-code-7", "region": ...},
      "stable_stack_version": 7,
      "database_stack_state": {"bucket": ..., "key": "<base>-database", "region": ...},
      "database_stack_version": 0
    }

so the target's definitions can point a terraform_remote_state data source
straight at `var.database_stack_state`.
"""

from __future__ import annotations

import json
import os
import tempfile
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Optional, Sequence

import aiofiles

from tfstacks.models.config import StacksConfig
from tfstacks.models.errors import ErrorKind, StackError
from tfstacks.models.stack import Stack, state_file_name

_SHM_DIR = "/dev/shm"


def stack_variables(
    config: StacksConfig, stack: Stack, input_stacks: Sequence[Stack]
) -> Dict[str, Any]:
    """Return the variables passed to terraform when acting on `stack`.

    Args:
        config: Project configuration (bucket, region, variable names).
        stack: The stack being acted on.
        input_stacks: Stacks whose state is exposed to `stack`.

    Raises:
        StackError: INVALID_STACK for a legacy input, AMBIGUOUS_SELECTION when
            two inputs would produce the same variable names.
    """
    variables: Dict[str, Any] = {}
    if stack.version != 0:
        variables[config.stack_version_input] = stack.version

    seen: Dict[str, Stack] = {}
    for input_stack in input_stacks:
        if input_stack.is_legacy:
            raise StackError(
                ErrorKind.INVALID_STACK, "The legacy stack can't be used as an input."
            )
        prefix = input_stack.input_alias or input_stack.name
        if prefix in seen:
            raise StackError(
                ErrorKind.AMBIGUOUS_SELECTION,
                f"Input stacks {seen[prefix]} and {input_stack} both use the "
                f"variable prefix '{prefix}'; give one of them an alias.",
            )
        seen[prefix] = input_stack

        variables[prefix + config.state_input_postfix] = {
            "bucket": config.state_file_bucket,
            "key": state_file_name(config.state_file_base, input_stack),
            "region": config.aws_region,
        }
        variables[prefix + config.state_version_postfix] = input_stack.version
    return variables


def _ephemeral_dir() -> Optional[str]:
    return _SHM_DIR if os.path.isdir(_SHM_DIR) else None


@asynccontextmanager
async def tfvars_file(
    variables: Optional[Dict[str, Any]],
) -> AsyncGenerator[List[str], None]:
    """
    Writes `variables` to an ephemeral .auto.tfvars.json file and yields the
    `-var-file` arguments pointing at it. Yields an empty list when there is
    nothing to pass. The file is removed on exit.
    """
    if not variables:
        yield []
        return

    fd, path = tempfile.mkstemp(
        dir=_ephemeral_dir(), prefix="tfstacks-", suffix=".auto.tfvars.json"
    )
    os.close(fd)
    try:
        async with aiofiles.open(path, "w") as f:
            await f.write(json.dumps(variables, indent=2))
        yield ["-var-file", path]
    finally:
        if os.path.exists(path):
            os.remove(path)
