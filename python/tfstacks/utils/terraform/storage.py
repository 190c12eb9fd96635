"""
tfstacks/utils/terraform/storage.py

Access to the S3 bucket holding every stack's terraform state file, through
the minio client (which speaks to AWS S3 as well as to any S3-compatible
store):

  - StateFileStore.exists / remove: one stack's state object.
  - StateFileStore.all: every stack that currently has a state object.
  - StateFileStore.next_version: the lowest version not used yet.

The minio client is synchronous, so calls run in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List

from minio import Minio
from minio.credentials import (
    AWSConfigProvider,
    ChainedProvider,
    EnvAWSProvider,
    IamAwsProvider,
)
from minio.error import S3Error

from tfstacks.models.config import StacksConfig, StoreSettings
from tfstacks.models.stack import Stack, from_state_file_name, state_file_name
from tfstacks.utils.async_retry import async_retry

logger = logging.getLogger(__name__)

RETRIES = 3
_MISSING_CODES = ("NoSuchKey", "NoSuchObject", "ResourceNotFound")
# Lock objects written next to the state by terraform's S3 backend.
_LOCK_SUFFIX = ".tflock"


def build_minio_client(config: StacksConfig, settings: StoreSettings) -> Minio:
    """Create a client for the state bucket using the standard AWS credential chain."""
    return Minio(
        endpoint=settings.endpoint,
        region=config.aws_region or None,
        secure=settings.secure,
        credentials=ChainedProvider(
            [
                EnvAWSProvider(),
                AWSConfigProvider(profile=settings.profile),
                IamAwsProvider(),
            ]
        ),
    )


class StateFileStore:
    """The state objects of every stack under the configured base key."""

    def __init__(self, config: StacksConfig, client: Minio) -> None:
        self.config = config
        self._client = client

    @property
    def bucket(self) -> str:
        return self.config.state_file_bucket

    def key(self, stack: Stack) -> str:
        return state_file_name(self.config.state_file_base, stack)

    @async_retry(retries=RETRIES)
    async def exists(self, stack: Stack) -> bool:
        """Whether the stack has a state object."""
        key = self.key(stack)

        def do_stat() -> bool:
            try:
                self._client.stat_object(bucket_name=self.bucket, object_name=key)
                return True
            except S3Error as ex:
                if ex.code in _MISSING_CODES:
                    return False
                raise RuntimeError(
                    f"Error checking for statefile '{key}': {ex}"
                ) from ex

        return await asyncio.to_thread(do_stat)

    async def remove(self, stack: Stack) -> None:
        """Delete the stack's state object so the stack counts as gone."""
        key = self.key(stack)

        def do_remove() -> None:
            try:
                self._client.remove_object(bucket_name=self.bucket, object_name=key)
            except S3Error as ex:
                raise RuntimeError(f"Error removing statefile '{key}': {ex}") from ex

        await asyncio.to_thread(do_remove)
        logger.info("Removed statefile %s", key)

    @async_retry(retries=RETRIES)
    async def _list_keys(self) -> List[str]:
        def do_list() -> List[str]:
            try:
                return [
                    obj.object_name
                    for obj in self._client.list_objects(
                        bucket_name=self.bucket,
                        prefix=self.config.state_file_base,
                        recursive=True,
                    )
                    if obj.object_name is not None
                ]
            except S3Error as ex:
                raise RuntimeError(f"Error listing bucket {self.bucket}: {ex}") from ex

        return await asyncio.to_thread(do_list)

    async def all(self, name: str = "") -> List[Stack]:
        """Stacks that have state, sorted by version, optionally only one name.

        The legacy stack is included only when no name is given.

        Raises:
            ValueError: If a key under the base does not follow the naming grammar.
        """
        stacks = [
            from_state_file_name(self.config.state_file_base, key)
            for key in await self._list_keys()
            if not key.endswith(_LOCK_SUFFIX)
        ]
        if name:
            stacks = [s for s in stacks if s.name == name]
        return sorted(stacks, key=lambda s: s.version)

    async def next_version(self, name: str = "") -> int:
        """One more than the highest version in use (for `name`, or overall)."""
        stacks = await self.all(name)
        if not stacks:
            return 1
        return stacks[-1].version + 1
