"""Shared pytest fixtures for tfstacks tests.

Terraform is never executed: TerraformRunner is given a FakeSupervisor that
records every argv and answers with scripted exit codes and output. The state
bucket is replaced by FakeStore, an in-memory set of stacks.
"""

import json
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import pytest
from pydantic import BaseModel, Field

from tfstacks.models.config import StacksConfig
from tfstacks.models.stack import Stack
from tfstacks.utils.terraform.commands import TerraformRunner


class RecordedCall(BaseModel):
    """One process start seen by FakeSupervisor."""

    argv: List[str]
    cwd: str
    interactive: bool = False
    variables: Dict[str, Any] = Field(default_factory=dict)

    @property
    def action(self) -> str:
        return self.argv[1]


Responder = Callable[[RecordedCall], Tuple[int, str]]


class FakeSupervisor:
    """Stands in for ProcessSupervisor; never starts a process."""

    def __init__(self, respond: Optional[Responder] = None) -> None:
        self.calls: List[RecordedCall] = []
        self.respond: Responder = respond or (lambda call: (0, ""))

    async def run(
        self,
        argv,
        *,
        cwd,
        env=None,
        stdout=None,
        stderr=None,
        interactive=False,
    ) -> int:
        variables: Dict[str, Any] = {}
        if "-var-file" in argv:
            # The file only exists while the command runs.
            with open(argv[argv.index("-var-file") + 1], "r", encoding="utf-8") as f:
                variables = json.load(f)
        call = RecordedCall(
            argv=list(argv), cwd=cwd, interactive=interactive, variables=variables
        )
        self.calls.append(call)
        code, out = self.respond(call)
        if out and stdout is not None:
            stdout(out)
        return code

    def actions(self) -> List[str]:
        return [call.action for call in self.calls]

    def calls_for(self, action: str) -> List[RecordedCall]:
        return [call for call in self.calls if call.action == action]


class FakeStore:
    """In-memory StateFileStore: the set of stacks that have a state object."""

    def __init__(self, config: StacksConfig, stacks: Iterable[Stack] = ()) -> None:
        self.config = config
        self.stacks: Set[Stack] = set(stacks)
        self.removed: List[Stack] = []

    async def exists(self, stack: Stack) -> bool:
        return stack in self.stacks

    async def remove(self, stack: Stack) -> None:
        self.stacks.discard(stack)
        self.removed.append(stack)

    async def all(self, name: str = "") -> List[Stack]:
        stacks = [s for s in self.stacks if not name or s.name == name]
        return sorted(stacks, key=lambda s: (s.version, s.name))

    async def next_version(self, name: str = "") -> int:
        stacks = await self.all(name)
        return stacks[-1].version + 1 if stacks else 1


@pytest.fixture
def config() -> StacksConfig:
    """Project configuration used throughout the tests."""
    return StacksConfig(
        aws_region="us-east-1",
        state_file_base="env/tfstate",
        state_file_bucket="state-bucket",
        init_args=["-upgrade"],
        terraform_args=["-lock-timeout=60s"],
    )


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def runner(
    config: StacksConfig, supervisor: FakeSupervisor, tmp_path: Path
) -> TerraformRunner:
    """A runner whose stacks live under tmp_path and whose terraform is faked."""
    return TerraformRunner(config, supervisor, base_dir=str(tmp_path))  # type: ignore[arg-type]
