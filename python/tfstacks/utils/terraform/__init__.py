"""
tfstacks/utils/terraform/__init__.py

Provides a convenient import interface for the terraform submodules:

- commands.py for TerraformCommand / TerraformRunner
- init_cache.py for the per-command init memo
- variables.py for cross-stack input variables
- storage.py for the state-file bucket
- destroy.py for verified destruction
"""

from tfstacks.utils.terraform.commands import TerraformCommand, TerraformRunner
from tfstacks.utils.terraform.init_cache import InitCache, InitCacheEntry
from tfstacks.utils.terraform.variables import stack_variables, tfvars_file
from tfstacks.utils.terraform.storage import StateFileStore, build_minio_client
from tfstacks.utils.terraform.destroy import (
    DestroyOutcome,
    DestroyProtocol,
    DestroyState,
    names_losing_all_versions,
    raise_for_outcomes,
    read_stdin_line,
    require_confirmation,
)

__all__ = [
    "TerraformCommand",
    "TerraformRunner",
    "InitCache",
    "InitCacheEntry",
    "stack_variables",
    "tfvars_file",
    "StateFileStore",
    "build_minio_client",
    "DestroyOutcome",
    "DestroyProtocol",
    "DestroyState",
    "names_losing_all_versions",
    "raise_for_outcomes",
    "read_stdin_line",
    "require_confirmation",
]
