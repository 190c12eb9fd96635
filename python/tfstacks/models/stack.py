"""
tfstacks/models/stack.py

Defines the Stack identity model and the pure functions mapping a stack to and
from its remote state-file key:

    legacy stack          -> <base>
    unversioned "name"    -> <base>-name
    versioned "name" v5   -> <base>-name-5

Stack names are restricted to lowercase letters so that a name can never be
confused with the numeric version suffix when a key is parsed back.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, model_validator

from tfstacks.models.errors import ErrorKind, StackError

STACK_NAME_PATTERN = "[a-z]+"
_NAME_RE = re.compile(f"^{STACK_NAME_PATTERN}$")
_VERSION_RE = re.compile("^[0-9]+$")


class Stack(BaseModel):
    """A named, optionally versioned deployable unit with its own state file.

    Equality and hashing only consider (name, version, is_legacy); the input
    alias and working directory are execution hints, not identity.

    Attributes:
        name (str): Subdirectory holding the stack's terraform definitions.
        version (int): Version number; 0 means unversioned.
        input_alias (Optional[str]): Variable prefix used instead of the name
            when this stack is passed as an input to another stack.
        working_directory (Optional[str]): Run terraform here instead of in
            the stack's subdirectory (used for throwaway destroy contexts).
        is_legacy (bool): The nameless stack stored at the bare base key.
    """

    name: str = ""
    version: int = Field(0, ge=0)
    input_alias: Optional[str] = None
    working_directory: Optional[str] = None
    is_legacy: bool = False

    class Config:
        frozen = True

    @model_validator(mode="after")
    def check_identity(self) -> "Stack":
        """Exactly one of is_legacy / a non-empty name must hold."""
        if self.is_legacy:
            if self.name or self.version:
                raise ValueError("The legacy stack has no name or version.")
            return self
        if not _NAME_RE.match(self.name):
            raise ValueError(
                f"Stack name '{self.name}' must match {STACK_NAME_PATTERN}."
            )
        return self

    def _identity(self) -> Tuple[str, int, bool]:
        return (self.name, self.version, self.is_legacy)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, Stack):
            return NotImplemented
        return self._identity() == other._identity()

    def __hash__(self) -> int:
        return hash(self._identity())

    def __str__(self) -> str:
        if self.is_legacy:
            return "legacy"
        if self.version == 0:
            return self.name
        return f"{self.name}:{self.version}"


LEGACY = Stack(is_legacy=True)


def parse_stack(
    name: str, version_text: str = "", input_alias: Optional[str] = None
) -> Stack:
    """Build a Stack from user-supplied text.

    Args:
        name: Stack name; must be non-empty lowercase letters.
        version_text: Decimal version, or "" for an unversioned stack.
        input_alias: Optional variable prefix override.

    Raises:
        StackError: INVALID_STACK for an empty/illegal name or bad version text.
    """
    if name == "":
        raise StackError(ErrorKind.INVALID_STACK, "Can't parse stack with no name.")
    if version_text == "":
        version = 0
    elif _VERSION_RE.match(version_text):
        version = int(version_text)
    else:
        raise StackError(
            ErrorKind.INVALID_STACK,
            f"Error parsing stack version '{version_text}'",
        )
    try:
        return Stack(name=name, version=version, input_alias=input_alias or None)
    except ValidationError as exc:
        raise StackError(ErrorKind.INVALID_STACK, f"'{name}': {exc}") from exc


def state_file_name(base_key: str, stack: Stack) -> str:
    """Return the remote state key for a stack under base_key."""
    if stack.is_legacy:
        return base_key
    if stack.version == 0:
        return f"{base_key}-{stack.name}"
    return f"{base_key}-{stack.name}-{stack.version}"


def from_state_file_name(base_key: str, key: str) -> Stack:
    """Parse a remote state key back into the Stack it belongs to.

    Raises:
        ValueError: If the key does not follow the naming grammar.
    """
    pattern = re.compile(
        f"^{re.escape(base_key)}(-({STACK_NAME_PATTERN})(-([0-9]+))?)?$"
    )
    groups = pattern.match(key)
    if groups is None:
        raise ValueError(f"Filename '{key}' did not match pattern.")
    if groups.group(2) is None:
        return LEGACY
    return parse_stack(groups.group(2), groups.group(4) or "")


def subtract(a: Iterable[Stack], b: Iterable[Stack]) -> List[Stack]:
    """Return the stacks in a that do not appear in b, keeping a's order."""
    exclude = set(b)
    return [stack for stack in a if stack not in exclude]
