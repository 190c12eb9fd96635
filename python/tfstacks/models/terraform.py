"""
tfstacks/models/terraform.py

Pydantic models for the parts of terraform's JSON plan output that tfstacks
reads ('terraform show -json <planfile>'):
 - ResourceChange / Change: one planned change to one resource address.
 - TerraformPlan: the whole plan, with a helper listing unexpected changes.
"""

from __future__ import annotations

from typing import Collection, List

from pydantic import BaseModel, Field

# Planned actions that don't change anything.
NO_CHANGE_ACTIONS = (["no-op"], ["read"])


class Change(BaseModel):
    """The 'change' block of a resource change; only the actions are needed."""

    actions: List[str] = Field(default_factory=list)


class ResourceChange(BaseModel):
    """One entry of 'resource_changes' in a JSON plan.

    Attributes:
        address: Full resource address, e.g. 'module.web.aws_instance.x'.
        change: The planned actions, e.g. ['update'] or ['delete', 'create'].
    """

    address: str
    change: Change

    def is_no_op(self) -> bool:
        return self.change.actions in NO_CHANGE_ACTIONS

    def is_update(self) -> bool:
        return self.change.actions == ["update"]


class TerraformPlan(BaseModel):
    """A parsed JSON plan."""

    format_version: str = ""
    resource_changes: List[ResourceChange] = Field(default_factory=list)

    def unexpected_changes(self, allowed_updates: Collection[str] = ()) -> List[str]:
        """Addresses that would change, ignoring in-place updates to allowed_updates."""
        return [
            rc.address
            for rc in self.resource_changes
            if not rc.is_no_op()
            and not (rc.is_update() and rc.address in allowed_updates)
        ]
