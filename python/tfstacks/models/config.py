"""
tfstacks/models/config.py

Configuration for tfstacks:
  - StacksConfig: persisted per project as JSON in '.tfstacks'; written by
    'tfstacks init' and 'tfstacks args', read by every other command.
  - StoreSettings: how to reach the S3-compatible state bucket, read from
    TFSTACKS_S3_* environment variables.
"""

from __future__ import annotations

import os
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings

CONFIG_FILE = ".tfstacks"


class StacksConfig(BaseModel):
    """Persistent project configuration.

    Attributes:
        aws_region (str): Region of the state bucket.
        state_file_base (str): Common key prefix of every stack's state file.
        state_file_bucket (str): Bucket holding the state files.
        init_args (List[str]): Extra arguments for every 'terraform init'.
        terraform_args (List[str]): Extra arguments for plan/apply/destroy.
        state_input_postfix (str): Suffix of the input-stack state variable.
        state_version_postfix (str): Suffix of the input-stack version variable.
        stack_version_input (str): Variable receiving a versioned stack's own version.
    """

    aws_region: str = ""
    state_file_base: str = ""
    state_file_bucket: str = ""
    init_args: List[str] = Field(default_factory=list)
    terraform_args: List[str] = Field(default_factory=list)

    state_input_postfix: str = "_stack_state"
    state_version_postfix: str = "_stack_version"
    stack_version_input: str = "stack_version"


class StoreSettings(BaseSettings):
    """
    Connection settings for the state bucket, e.g. TFSTACKS_S3_ENDPOINT.
    Credentials are not stored here; they come from the usual AWS
    environment variables, shared credentials file or instance role.
    """

    endpoint: str = "s3.amazonaws.com"
    secure: bool = True
    profile: Optional[str] = None

    class Config:
        env_prefix = "TFSTACKS_S3_"


def read_config(path: str = CONFIG_FILE) -> StacksConfig:
    """Load the project configuration.

    Raises:
        RuntimeError: If the file is missing or does not parse.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
    except FileNotFoundError as exc:
        raise RuntimeError(
            f"No configuration at '{path}'; run 'tfstacks init' first."
        ) from exc
    try:
        return StacksConfig.model_validate_json(raw)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration in '{path}': {exc}") from exc


def write_config(config: StacksConfig, path: str = CONFIG_FILE) -> None:
    """Write the project configuration, replacing any existing file."""
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        f.write(config.model_dump_json(indent=4))
        f.write("\n")
    os.replace(tmp_path, path)
