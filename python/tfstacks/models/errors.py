"""
tfstacks/models/errors.py

Defines the error taxonomy shared by every tfstacks command:
  - ErrorKind: each kind carries a fixed process exit code and description.
  - StackError: the single exception type raised for known failure kinds.
  - TaskFailed: a task run for the caller failed; its exit code is passed on.
  - exit_with / exit_code_for: report an error once on stderr and exit.

Automated callers branch on the exit codes, so they must never change.
"""

from __future__ import annotations

import logging
import sys
from enum import Enum
from typing import NoReturn, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

GENERIC_EXIT_CODE = 1


class ErrorKind(Enum):
    """Known failure kinds, as (exit_code, description) pairs."""

    COMMAND_FAILED = (GENERIC_EXIT_CODE, "Terraform command failed")
    INVALID_STACK = (11, "Invalid stack")
    AMBIGUOUS_SELECTION = (12, "Are you sure that's the stack you want?")
    INCOMPLETE_DESTRUCTION = (13, "Some resources left over after destroy")
    NO_SUCH_STACK = (14, "Stack does not exist")
    PLAN_HAS_CHANGES = (15, "Tested plan has changes")
    INTERRUPTED = (16, "Exited cleanly; interrupted by signal")
    KILLED = (17, "Killed terraform; interrupted by signal")
    TIMEOUT = (18, "Timed out")

    def __init__(self, exit_code: int, description: str) -> None:
        self.exit_code = exit_code
        self.description = description


class StackError(Exception):
    """A failure of a known kind.

    Attributes:
        kind (ErrorKind): What went wrong; callers match on this.
        detail (str): Free-form context for the message.
        remaining (Tuple[str, ...]): Resource addresses still in state, set for
            INCOMPLETE_DESTRUCTION.
        return_code (Optional[int]): Exit status of the terraform process, if any.
    """

    def __init__(
        self,
        kind: ErrorKind,
        detail: str = "",
        *,
        remaining: Sequence[str] = (),
        return_code: Optional[int] = None,
    ) -> None:
        self.kind = kind
        self.detail = detail
        self.remaining: Tuple[str, ...] = tuple(remaining)
        self.return_code = return_code
        super().__init__(str(self))

    def __str__(self) -> str:
        if not self.detail:
            return self.kind.description
        return f"{self.kind.description}: {self.detail}"

    @property
    def exit_code(self) -> int:
        return self.kind.exit_code


class TaskFailed(Exception):
    """A remote task exited unsuccessfully; tfstacks exits with the task's code.

    Callers that branch on task exit codes must keep them clear of the
    ErrorKind codes.
    """

    def __init__(self, exit_code: int, detail: str) -> None:
        self.exit_code = exit_code
        super().__init__(detail)


def exit_code_for(exc: BaseException) -> int:
    """Map any exception to the process exit code reported for it."""
    if isinstance(exc, StackError):
        return exc.exit_code
    if isinstance(exc, TaskFailed):
        return exc.exit_code
    return GENERIC_EXIT_CODE


def exit_with(exc: BaseException) -> NoReturn:
    """Log the full error description once on stderr, then exit with its code."""
    logger.error("Exited due to error:")
    logger.error("\t%s", exc)
    sys.exit(exit_code_for(exc))
