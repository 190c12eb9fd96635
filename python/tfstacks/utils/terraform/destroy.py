"""
tfstacks/utils/terraform/destroy.py

Destroys stacks and checks that they are really gone.

Terraform sometimes reports failure when nothing is left, and sometimes leaves
resources behind (usually ordering problems on the first attempt). So the exit
status of 'terraform destroy' is not trusted: after every attempt the stack's
state is listed, and only an empty state counts as destroyed, at which point
the vestigial state object is removed.

  - DestroyProtocol.destroy: normal destroy with the stack's own definitions.
  - DestroyProtocol.force_destroy: destroy from a throwaway directory holding
    only provider definitions. THIS BYPASSES prevent_destroy.
  - DestroyProtocol.destroy_batch: destroy many stacks, retrying each
    incomplete destroy once and carrying on with the rest of the batch.
  - names_losing_all_versions / require_confirmation: interactive gate for
    destroys that would remove every version of an existing stack.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import sys
import tempfile
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Awaitable, Callable, Iterable, Iterator, List, Optional, Sequence

from pydantic import BaseModel, Field

from tfstacks.models.errors import ErrorKind, StackError
from tfstacks.models.stack import Stack, subtract
from tfstacks.utils.terraform.commands import TerraformCommand, TerraformRunner
from tfstacks.utils.terraform.storage import StateFileStore

logger = logging.getLogger(__name__)

AUTO_APPROVE = "-auto-approve"
DESTROY_ATTEMPTS = 2


class DestroyState(str, Enum):
    """Final state of one stack in a destroy batch."""

    DESTROYED = "destroyed"
    SKIPPED = "skipped"
    FAILED = "failed"


class DestroyOutcome(BaseModel):
    """What happened to one stack of a destroy batch.

    Attributes:
        stack: The stack.
        state: DESTROYED, SKIPPED (had no state) or FAILED (resources remain).
        attempts: Number of destroy attempts made.
        remaining: Resource addresses left after the last attempt.
    """

    stack: Stack
    state: DestroyState
    attempts: int = 0
    remaining: List[str] = Field(default_factory=list)


class DestroyProtocol:
    """Destroys stacks through a TerraformRunner and verifies the result."""

    def __init__(self, runner: TerraformRunner, store: StateFileStore) -> None:
        self.runner = runner
        self.store = store

    async def _check_exists(self, stack: Stack) -> None:
        if not await self.store.exists(stack):
            raise StackError(ErrorKind.NO_SUCH_STACK, str(stack))

    async def _verify_destroyed(self, stack: Stack) -> None:
        """Check that no resources remain, then remove the empty state object.

        Raises:
            StackError: INCOMPLETE_DESTRUCTION with the leftover addresses.
        """
        remaining = await self.runner.state_list(stack)
        if remaining:
            logger.warning("Remaining resources: %s", remaining)
            raise StackError(
                ErrorKind.INCOMPLETE_DESTRUCTION,
                f"stack: {stack} remaining: {remaining}",
                remaining=remaining,
            )
        # Without a state object, later runs know this stack no longer exists.
        await self.store.remove(stack)
        logger.info("Stack destroyed: %s", stack)

    async def _run_destroy(self, command: TerraformCommand) -> None:
        try:
            await self.runner.run(command)
        except StackError as exc:
            if exc.kind is not ErrorKind.COMMAND_FAILED:
                raise
            logger.warning("%s; checking what is left in state.", exc)

    @contextmanager
    def playground(self, stack: Stack, provider_definitions: str) -> Iterator[Stack]:
        """A throwaway working directory holding only provider definitions.

        Yields:
            Stack: `stack` with its working directory pointed at the playground.
        """
        logger.warning("Attempting to force destruction of %s using blank config.", stack)
        with tempfile.TemporaryDirectory(prefix="tfstacks-destroy-") as playground:
            # Without a provider, terraform skips the resources in state and
            # reports that it destroyed everything.
            shutil.copy(provider_definitions, playground)
            yield stack.model_copy(update={"working_directory": playground})

    async def _attempt(
        self,
        stack: Stack,
        input_stacks: Sequence[Stack],
        extra_args: Sequence[str],
        forced: bool = False,
    ) -> None:
        """One destroy run followed by the postcondition check."""
        if forced:
            # Provider-only definitions declare no inputs.
            command = TerraformCommand(
                stack=stack,
                action="destroy",
                args=[*extra_args, AUTO_APPROVE],
                use_apply_args=True,
                init=True,
                output_separators=True,
            )
        else:
            command = self.runner.action_command(
                stack, "destroy", input_stacks, [*extra_args, AUTO_APPROVE]
            )
        await self._run_destroy(command)
        await self._verify_destroyed(stack)

    async def destroy(
        self,
        stack: Stack,
        input_stacks: Sequence[Stack] = (),
        extra_args: Sequence[str] = (),
        leave: Sequence[str] = (),
    ) -> None:
        """Destroy a stack using its own definitions; no confirmation, no retry.

        Args:
            stack: The stack to destroy.
            input_stacks: Inputs its definitions need, as for apply.
            extra_args: Extra arguments for 'terraform destroy'.
            leave: Resource addresses to drop from state instead of destroying.

        Raises:
            StackError: NO_SUCH_STACK if it has no state,
                INCOMPLETE_DESTRUCTION if resources remain afterwards.
        """
        await self._check_exists(stack)
        await self.runner.remove_from_state(stack, leave)
        await self._attempt(stack, input_stacks, extra_args)

    async def force_destroy(
        self,
        stack: Stack,
        provider_definitions: str,
        leave: Sequence[str] = (),
        extra_args: Sequence[str] = (),
    ) -> None:
        """Destroy a stack from a blank config holding only provider definitions.

        Used when the stack's own definitions can't be evaluated any more.
        !!! THIS OVERRIDES prevent_destroy !!!

        Args:
            stack: The stack to destroy.
            provider_definitions: Path of a .tf file with the provider blocks.
            leave: Resource addresses to drop from state instead of destroying.
            extra_args: Extra arguments for 'terraform destroy'.
        """
        await self._check_exists(stack)
        with self.playground(stack, provider_definitions) as disposable:
            await self.runner.remove_from_state(disposable, leave)
            await self._attempt(disposable, (), extra_args, forced=True)

    async def destroy_with_retry(
        self, stack: Stack, attempt: Callable[[], Awaitable[None]]
    ) -> DestroyOutcome:
        """Run a destroy attempt, retrying once if resources are left over.

        Only INCOMPLETE_DESTRUCTION is retried; other errors propagate.
        """
        last_error: Optional[StackError] = None
        for attempt_number in range(1, DESTROY_ATTEMPTS + 1):
            if last_error is not None:
                logger.info("Retrying destroy of: %s", stack)
            try:
                await attempt()
            except StackError as exc:
                if exc.kind is not ErrorKind.INCOMPLETE_DESTRUCTION:
                    raise
                last_error = exc
                continue
            return DestroyOutcome(
                stack=stack, state=DestroyState.DESTROYED, attempts=attempt_number
            )

        assert last_error is not None, "destroy failed without an error"
        return DestroyOutcome(
            stack=stack,
            state=DestroyState.FAILED,
            attempts=DESTROY_ATTEMPTS,
            remaining=list(last_error.remaining),
        )

    async def _destroy_existing(
        self,
        stack: Stack,
        target: Stack,
        input_stacks: Sequence[Stack],
        extra_args: Sequence[str],
        leave: Sequence[str],
        forced: bool = False,
    ) -> DestroyOutcome:
        # Left resources are forgotten once; a retry must not try again.
        await self.runner.remove_from_state(target, leave)
        return await self.destroy_with_retry(
            stack, lambda: self._attempt(target, input_stacks, extra_args, forced)
        )

    async def destroy_batch(
        self,
        stacks: Iterable[Stack],
        input_stacks: Sequence[Stack] = (),
        extra_args: Sequence[str] = (),
        provider_definitions: Optional[str] = None,
        leave: Sequence[str] = (),
    ) -> List[DestroyOutcome]:
        """Destroy each stack in turn, continuing past incomplete destroys.

        Stacks without state are skipped. With `provider_definitions` every
        stack is force-destroyed, both attempts from the same playground.

        Returns:
            One DestroyOutcome per requested stack, in order.
        """
        outcomes: List[DestroyOutcome] = []
        for stack in stacks:
            if not await self.store.exists(stack):
                logger.info("Skipping nonexistent stack: %s", stack)
                outcomes.append(DestroyOutcome(stack=stack, state=DestroyState.SKIPPED))
                continue

            if provider_definitions:
                with self.playground(stack, provider_definitions) as disposable:
                    outcome = await self._destroy_existing(
                        stack, disposable, (), extra_args, leave, forced=True
                    )
            else:
                outcome = await self._destroy_existing(
                    stack, stack, input_stacks, extra_args, leave
                )
            outcomes.append(outcome)
        return outcomes


def raise_for_outcomes(outcomes: Sequence[DestroyOutcome]) -> None:
    """Raise INCOMPLETE_DESTRUCTION if any stack of a batch was left with resources."""
    failed = [o for o in outcomes if o.state is DestroyState.FAILED]
    if not failed:
        return
    remaining = [address for o in failed for address in o.remaining]
    raise StackError(
        ErrorKind.INCOMPLETE_DESTRUCTION,
        "; ".join(f"stack: {o.stack} remaining: {o.remaining}" for o in failed),
        remaining=remaining,
    )


def names_losing_all_versions(
    existing: Sequence[Stack], requested: Sequence[Stack]
) -> List[str]:
    """Names with at least one existing version and none left after the destroy.

    The legacy stack is reported under the empty name.
    """
    left = {stack.name for stack in subtract(existing, requested)}
    return sorted({stack.name for stack in existing if stack.name not in left})


async def read_stdin_line() -> str:
    """Read one line of stdin without blocking the event loop.

    The read happens in a daemon thread, so an interrupted prompt does not
    keep the process alive waiting for input.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[str] = loop.create_future()

    def resolve(line: str) -> None:
        if not future.done():
            future.set_result(line)

    def reader() -> None:
        line = sys.stdin.readline()
        if not loop.is_closed():
            loop.call_soon_threadsafe(resolve, line)

    threading.Thread(target=reader, name="tfstacks-confirm", daemon=True).start()
    return await future


async def require_confirmation(
    names: Sequence[str],
    read_line: Optional[Callable[[], Awaitable[str]]] = None,
) -> None:
    """Ask on stderr for a typed 'yes' before removing every version of `names`.

    Raises:
        RuntimeError: If anything other than 'yes' is entered.
    """
    read = read_line or read_stdin_line
    labels = ", ".join(name or "legacy" for name in names)
    sys.stderr.write(
        "WARNING! Some stacks will be completely destroyed (all versions) by this "
        f"action: {labels}. Are you sure?\n"
    )
    sys.stderr.write("Type 'yes' to continue: ")
    sys.stderr.flush()
    if (await read()).strip() != "yes":
        raise RuntimeError("Confirmation failed.")
