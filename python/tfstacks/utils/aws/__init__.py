"""
tfstacks/utils/aws/__init__.py

Provides a convenient import interface for the AWS helpers:

- ecs.py for running one-off ECS tasks and waiting on clusters and services
"""

from tfstacks.utils.aws.ecs import (
    AwsClients,
    LogRelay,
    PollIntervals,
    run_task,
    select_container,
    wait_for_instances,
    wait_for_service,
)

__all__ = [
    "AwsClients",
    "LogRelay",
    "PollIntervals",
    "run_task",
    "select_container",
    "wait_for_instances",
    "wait_for_service",
]
