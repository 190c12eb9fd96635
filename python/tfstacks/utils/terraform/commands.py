"""
tfstacks/utils/terraform/commands.py

Implements terraform invocations for stacks:

  - TerraformCommand: describes one terraform invocation (stack, action, args,
    whether to init first, where output goes).
  - TerraformRunner: turns commands into supervised terraform processes in the
    right working directory, initializing the backend for the stack's state
    file first when asked to (memoized through an InitCache).

Higher-level helpers (state list/rm, outputs, plan inspection) are built on
TerraformRunner.run, so every terraform process goes through the same
ProcessSupervisor.
"""

from __future__ import annotations

import io
import json
import logging
import os
import sys
import tempfile
from typing import Any, Callable, Collection, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from tfstacks.models.config import StacksConfig
from tfstacks.models.errors import ErrorKind, StackError
from tfstacks.models.stack import Stack, state_file_name
from tfstacks.models.terraform import TerraformPlan
from tfstacks.utils.process_supervisor import ProcessSupervisor, write_stderr
from tfstacks.utils.terraform.init_cache import InitCache
from tfstacks.utils.terraform.variables import stack_variables, tfvars_file

logger = logging.getLogger(__name__)

# Actions that would prompt for input unless told not to.
_PROMPTING_ACTIONS = ("init", "plan", "apply", "destroy")
_SEPARATOR = "\n" + "=" * 70 + "\n\n"


class TerraformCommand(BaseModel):
    """One terraform invocation.

    Attributes:
        stack: The stack to act on; its working_directory overrides the subdir.
        action: Terraform subcommand, e.g. "apply" or "state".
        args: Arguments following the action.
        use_apply_args: Add the configured plan/apply/destroy arguments.
        init: Run 'terraform init' for the stack first (memoized).
        output_separators: Print ===== lines around the command on stderr.
        interactive: Let terraform read our stdin and prompt.
        stdout: Sink for terraform's stdout (default: our stderr).
        stderr: Sink for terraform's stderr (default: our stderr).
        variables: Input variables written to a temporary var file.
    """

    stack: Stack
    action: str
    args: List[str] = Field(default_factory=list)
    use_apply_args: bool = False
    init: bool = False
    output_separators: bool = False
    interactive: bool = False
    stdout: Optional[Callable[[str], Any]] = None
    stderr: Optional[Callable[[str], Any]] = None
    variables: Dict[str, Any] = Field(default_factory=dict)


class TerraformRunner:
    """Runs terraform for stacks under one project directory."""

    def __init__(
        self,
        config: StacksConfig,
        supervisor: ProcessSupervisor,
        init_cache: Optional[InitCache] = None,
        base_dir: Optional[str] = None,
        terraform_bin: str = "terraform",
    ) -> None:
        """
        Args:
            config: Project configuration.
            supervisor: Supervisor every terraform process is started through.
            init_cache: Init memo for this command; a fresh one if omitted.
            base_dir: Directory holding one subdirectory per stack (default: cwd).
            terraform_bin: Terraform executable.
        """
        self.config = config
        self.supervisor = supervisor
        self.init_cache = init_cache if init_cache is not None else InitCache()
        self.base_dir = base_dir or os.getcwd()
        self.terraform_bin = terraform_bin

    def working_directory(self, stack: Stack) -> str:
        if stack.working_directory is not None:
            return stack.working_directory
        return os.path.join(self.base_dir, stack.name)

    def _environment(self) -> Dict[str, str]:
        env = os.environ.copy()
        env["TF_IN_AUTOMATION"] = "true"
        return env

    def _build_args(self, command: TerraformCommand) -> List[str]:
        argv = [self.terraform_bin, command.action]
        if not command.interactive and command.action in _PROMPTING_ACTIONS:
            argv.append("-input=false")
        if command.use_apply_args:
            argv.extend(self.config.terraform_args)
        argv.extend(command.args)
        return argv

    async def run(self, command: TerraformCommand) -> None:
        """Run one terraform command.

        Raises:
            StackError: COMMAND_FAILED if terraform (or its init) exits non-zero.
        """
        if command.output_separators:
            write_stderr(_SEPARATOR)
        try:
            if command.init:
                await self.init_terraform(command)

            async with tfvars_file(command.variables) as var_args:
                return_code = await self.supervisor.run(
                    self._build_args(command) + var_args,
                    cwd=self.working_directory(command.stack),
                    env=self._environment(),
                    stdout=command.stdout,
                    stderr=command.stderr,
                    interactive=command.interactive,
                )
        finally:
            if command.output_separators:
                write_stderr(_SEPARATOR)

        if return_code != 0:
            raise StackError(
                ErrorKind.COMMAND_FAILED,
                f"'terraform {command.action}' for {command.stack} "
                f"exited with code {return_code}",
                return_code=return_code,
            )

    async def init_terraform(self, command: TerraformCommand) -> None:
        """Initialize the backend of the command's stack, unless already done.

        A working-directory override is a one-off context: it always
        initializes and never updates the cache.
        """
        stack = command.stack
        overridden = stack.working_directory is not None
        if not overridden and self.init_cache.is_initialized(stack):
            logger.info("Already initialized %s to version %d.", stack.name, stack.version)
            return

        # Stale local state makes terraform ask whether to copy it to a new backend.
        old_state = os.path.join(
            self.working_directory(stack), ".terraform", "terraform.tfstate"
        )
        try:
            os.remove(old_state)
        except FileNotFoundError:
            pass

        args = [
            *self.config.init_args,
            f"-backend-config=region={self.config.aws_region}",
            f"-backend-config=bucket={self.config.state_file_bucket}",
            f"-backend-config=key={state_file_name(self.config.state_file_base, stack)}",
        ]

        # Output isn't helpful unless init fails.
        buffer = io.StringIO()
        init_command = TerraformCommand(
            stack=stack,
            action="init",
            args=args,
            stdout=buffer.write,
            stderr=buffer.write,
        )
        try:
            await self.run(init_command)
        except StackError as exc:
            sys.stderr.write(buffer.getvalue())
            logger.error("Failed to initialize terraform: %s", exc)
            raise

        logger.info("Initialized %s to version %d.", stack.name, stack.version)
        if not overridden:
            self.init_cache.mark_initialized(stack)

    def action_command(
        self,
        stack: Stack,
        action: str,
        input_stacks: Sequence[Stack] = (),
        extra_args: Sequence[str] = (),
    ) -> TerraformCommand:
        """Build a plan/apply/destroy style command with cross-stack inputs wired in."""
        return TerraformCommand(
            stack=stack,
            action=action,
            args=list(extra_args),
            use_apply_args=True,
            init=True,
            output_separators=True,
            variables=stack_variables(self.config, stack, input_stacks),
        )

    async def run_action(
        self,
        stack: Stack,
        action: str,
        input_stacks: Sequence[Stack] = (),
        extra_args: Sequence[str] = (),
    ) -> None:
        await self.run(self.action_command(stack, action, input_stacks, extra_args))

    async def run_interactive_action(
        self,
        stack: Stack,
        action: str,
        input_stacks: Sequence[Stack] = (),
        extra_args: Sequence[str] = (),
    ) -> None:
        command = self.action_command(stack, action, input_stacks, extra_args)
        await self.run(command.model_copy(update={"interactive": True}))

    async def cmd_output(self, stack: Stack, action: str, *args: str) -> str:
        """Run an arbitrary terraform command and return its stripped stdout."""
        buffer = io.StringIO()
        await self.run(
            TerraformCommand(
                stack=stack,
                action=action,
                args=list(args),
                init=True,
                stdout=buffer.write,
            )
        )
        return buffer.getvalue().strip()

    async def state_list(self, stack: Stack) -> List[str]:
        """Addresses of every resource in the stack's state."""
        out = await self.cmd_output(stack, "state", "list")
        return [line.strip() for line in out.splitlines() if line.strip()]

    async def remove_from_state(self, stack: Stack, addresses: Sequence[str]) -> None:
        """Forget resources so that a following destroy leaves them alone."""
        if not addresses:
            return
        logger.info("Removing from state of %s: %s", stack, list(addresses))
        await self.run(
            TerraformCommand(
                stack=stack,
                action="state",
                args=["rm", *addresses],
                init=True,
            )
        )

    async def output(self, stack: Stack, name: str) -> str:
        """A single output value: strings as they are, anything else as JSON.

        'output -raw' refuses lists, maps and objects, so the value is read
        as JSON and only unwrapped when it is a string.
        """
        value = json.loads(await self.cmd_output(stack, "output", "-json", name))
        return value if isinstance(value, str) else json.dumps(value)

    async def outputs(self, stack: Stack, names: Sequence[str]) -> List[str]:
        """Several output values, in the order requested."""
        return [await self.output(stack, name) for name in names]

    async def generate_plan(
        self,
        stack: Stack,
        input_stacks: Sequence[Stack] = (),
        extra_args: Sequence[str] = (),
    ) -> TerraformPlan:
        """Plan the stack into a temporary file and return the parsed plan."""
        fd, plan_path = tempfile.mkstemp(prefix="tfstacks-plan-")
        os.close(fd)
        try:
            await self.run_action(
                stack, "plan", input_stacks, [*extra_args, "-out", plan_path]
            )
            raw = await self.cmd_output(stack, "show", "-json", plan_path)
        finally:
            os.remove(plan_path)
        return TerraformPlan.model_validate_json(raw)

    async def plan_changes(
        self,
        stack: Stack,
        input_stacks: Sequence[Stack] = (),
        extra_args: Sequence[str] = (),
        allowed_updates: Collection[str] = (),
    ) -> List[str]:
        """Addresses that applying the stack would change, minus allowed updates."""
        plan = await self.generate_plan(stack, input_stacks, extra_args)
        return plan.unexpected_changes(allowed_updates)
