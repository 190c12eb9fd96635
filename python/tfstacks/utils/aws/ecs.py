"""
tfstacks/utils/aws/ecs.py

Elastic Container Service helpers for deployment scripts:

  - run_task: run a one-off task with its command overridden, relay the
    container's CloudWatch logs, and fail with the task's own exit code.
  - wait_for_instances: wait until a cluster has exactly N container instances.
  - wait_for_service: wait until a service runs only its current task
    definition at the desired count, and its instances are in service with
    the service's load balancers.

boto3 clients are synchronous, so every call runs in a worker thread. The
waits poll with asyncio.sleep, which lets the global --timeout cancel them.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import posixpath
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import boto3
from botocore.exceptions import ClientError
from pydantic import BaseModel

from tfstacks.models.errors import TaskFailed

logger = logging.getLogger(__name__)

_MISSING_LOG_STREAM = "ResourceNotFoundException"


class PollIntervals(BaseModel):
    """Seconds to sleep between checks.

    Attributes:
        task (float): Between checks on a running task.
        cluster (float): Between checks on a cluster or service.
        stability (float): Between the two task listings that must agree.
        health (float): Between load balancer health checks.
    """

    task: float = 1.0
    cluster: float = 3.0
    stability: float = 5.0
    health: float = 5.0

    class Config:
        frozen = True


class AwsClients:
    """boto3 clients sharing one session, defaulting to one region."""

    def __init__(self, region: str, session: Optional[Any] = None) -> None:
        self.region = region
        self._session = session if session is not None else boto3.Session(
            region_name=region
        )

    def client(self, service: str, region: Optional[str] = None) -> Any:
        return self._session.client(service, region_name=region or self.region)


async def _call(client: Any, method: str, **kwargs: Any) -> Dict[str, Any]:
    return await asyncio.to_thread(getattr(client, method), **kwargs)


def select_container(
    containers: Sequence[Dict[str, Any]], name: Optional[str] = None
) -> Dict[str, Any]:
    """Pick the container definition that receives the command.

    Without a name, the task definition must have exactly one container.

    Raises:
        RuntimeError: If no single container matches.
    """
    names = [c.get("name") for c in containers]
    if not name:
        if len(containers) != 1:
            raise RuntimeError(
                "Cannot infer container name from task definition; please "
                f"specify with --container. Found containers: {names}"
            )
        return containers[0]
    for container in containers:
        if container.get("name") == name:
            return container
    raise RuntimeError(
        f"Could not find container '{name}' in task definition. "
        f"Found containers: {names}"
    )


class LogRelay:
    """Copies new CloudWatch log events of one task's container into our log.

    Only containers using the awslogs driver have logs to relay; for the rest
    relay() does nothing.
    """

    def __init__(
        self, clients: AwsClients, container: Dict[str, Any], task_id: str
    ) -> None:
        self._client: Optional[Any] = None
        self._since = 0
        log_config = container.get("logConfiguration") or {}
        if log_config.get("logDriver") != "awslogs":
            logger.info("Container not using awslogs; won't output logs.")
            return

        options = log_config.get("options") or {}
        region = options.get("awslogs-region")
        self.group = options.get("awslogs-group")
        if not region:
            logger.info("Could not find awslogs region; won't output logs.")
            return
        if not self.group:
            logger.info("Could not find awslogs group; won't output logs.")
            return

        self.stream = posixpath.join(
            options.get("awslogs-stream-prefix", ""), container["name"], task_id
        )
        self._client = clients.client("logs", region)
        logger.info("Looking for logs at: %s", self.stream)

    async def relay(self) -> None:
        if self._client is None:
            return
        try:
            response = await _call(
                self._client,
                "get_log_events",
                logGroupName=self.group,
                logStreamName=self.stream,
                startTime=self._since,
                startFromHead=True,
            )
        except ClientError as exc:
            # The stream only appears once the container has started.
            if exc.response.get("Error", {}).get("Code") != _MISSING_LOG_STREAM:
                logger.warning("Error getting logs: %s", exc)
            return
        for event in response.get("events", []):
            stamp = datetime.datetime.fromtimestamp(
                event["timestamp"] / 1000, tz=datetime.timezone.utc
            )
            logger.info("%s %s", stamp.isoformat(), event["message"])
            self._since = event["timestamp"] + 1


def check_stopped_task(task: Dict[str, Any], container_name: str) -> None:
    """Turn a STOPPED task into success or TaskFailed with its exit code."""
    containers = task.get("containers") or [{}]
    container = next(
        (c for c in containers if c.get("name") == container_name), containers[0]
    )
    code = container.get("exitCode")
    if code is None:
        reason = container.get("reason") or task.get("stoppedReason")
        raise TaskFailed(1, f"Task exited without an exit code: {reason}")
    if code != 0:
        raise TaskFailed(code, f"Task container exited with code {code}")
    logger.info("Task succeeded.")


async def run_task(
    clients: AwsClients,
    cluster: str,
    task_definition: str,
    command: Sequence[str],
    container_name: Optional[str] = None,
    intervals: PollIntervals = PollIntervals(),
) -> None:
    """Run one task with `command` as its container command and wait for it.

    Args:
        clients: boto3 clients for the cluster's region.
        cluster: ECS cluster name.
        task_definition: Task definition ARN or family:revision.
        command: Overrides the container's docker CMD.
        container_name: Container receiving the command; inferred when the
            task definition has only one.
        intervals: Polling intervals.

    Raises:
        TaskFailed: If the task stops with a non-zero or missing exit code.
        RuntimeError: If the task can't be started or checked on.
    """
    ecs = clients.client("ecs")
    described = await _call(
        ecs, "describe_task_definition", taskDefinition=task_definition
    )
    container = select_container(
        described["taskDefinition"]["containerDefinitions"], container_name
    )

    logger.info("Starting task with command: %s", list(command))
    started = await _call(
        ecs,
        "run_task",
        cluster=cluster,
        taskDefinition=task_definition,
        count=1,
        overrides={
            "containerOverrides": [
                {"name": container["name"], "command": list(command)}
            ]
        },
    )
    if started.get("failures") or len(started.get("tasks", [])) != 1:
        raise RuntimeError(f"Error starting task: {started}")
    task_arn = started["tasks"][0]["taskArn"]
    logger.info("Started task: %s", task_arn)

    relay = LogRelay(clients, container, task_arn.rsplit("/", 1)[-1])
    while True:
        await asyncio.sleep(intervals.task)
        await relay.relay()

        response = await _call(ecs, "describe_tasks", cluster=cluster, tasks=[task_arn])
        failures = response.get("failures", [])
        tasks = response.get("tasks", [])
        if failures or len(tasks) != 1:
            if len(failures) == 1 and failures[0].get("reason") == "MISSING":
                logger.info("Task not ready; waiting for it to appear.")
                continue
            raise RuntimeError(f"Error checking on task: {response}")
        if tasks[0].get("lastStatus") == "STOPPED":
            # Pick up whatever the container logged on its way out.
            await relay.relay()
            check_stopped_task(tasks[0], container["name"])
            return


async def wait_for_instances(
    clients: AwsClients,
    cluster: str,
    instances: int,
    intervals: PollIntervals = PollIntervals(),
) -> None:
    """Wait until exactly `instances` container instances have joined `cluster`."""
    ecs = clients.client("ecs")
    logger.info(
        "Waiting for instance count to be exactly %d for cluster %s", instances, cluster
    )
    last_count = -1
    while True:
        response = await _call(ecs, "describe_clusters", clusters=[cluster])
        if response.get("failures") or len(response.get("clusters", [])) != 1:
            raise RuntimeError(f"Error describing cluster: {response}")
        count = response["clusters"][0]["registeredContainerInstancesCount"]
        if count != last_count:
            last_count = count
            logger.info("Instances: %d", count)
        if count == instances:
            return
        await asyncio.sleep(intervals.cluster)


async def _describe_service(ecs: Any, cluster: str, service: str) -> Dict[str, Any]:
    response = await _call(ecs, "describe_services", cluster=cluster, services=[service])
    if response.get("failures") or len(response.get("services", [])) != 1:
        raise RuntimeError(f"Error describing service: {response}")
    return response["services"][0]


async def _service_task_arns(ecs: Any, cluster: str, service: str) -> List[str]:
    response = await _call(ecs, "list_tasks", cluster=cluster, serviceName=service)
    return sorted(response.get("taskArns", []))


async def _instance_ids(ecs: Any, cluster: str, task_arns: List[str]) -> List[str]:
    """EC2 instance ids backing the given tasks."""
    tasks = await _call(ecs, "describe_tasks", cluster=cluster, tasks=task_arns)
    if tasks.get("failures"):
        raise RuntimeError(f"Error describing tasks: {tasks}")
    container_instances = [
        t["containerInstanceArn"]
        for t in tasks.get("tasks", [])
        if t.get("containerInstanceArn")
    ]
    if not container_instances:
        return []
    described = await _call(
        ecs,
        "describe_container_instances",
        cluster=cluster,
        containerInstances=container_instances,
    )
    if described.get("failures"):
        raise RuntimeError(f"Error describing container instances: {described}")
    return [ci["ec2InstanceId"] for ci in described.get("containerInstances", [])]


async def _wait_for_health(
    label: str,
    read_states: Callable[[], Awaitable[Dict[str, str]]],
    healthy: str,
    interval: float,
) -> None:
    last: Optional[Dict[str, str]] = None
    while True:
        states = await read_states()
        if states != last:
            logger.info("%s: %s", label, states)
            last = states
        if states and all(state == healthy for state in states.values()):
            return
        await asyncio.sleep(interval)


async def wait_for_service(
    clients: AwsClients,
    cluster: str,
    service: str,
    intervals: PollIntervals = PollIntervals(),
) -> None:
    """Wait for `service` to settle on its current configuration.

    Settled means the current task definition runs the desired count, other
    task definitions run nothing, the service's task list is the same on two
    checks `intervals.stability` apart, and the instances behind those tasks
    are in service with every load balancer of the service.
    """
    ecs = clients.client("ecs")
    current = await _describe_service(ecs, cluster, service)
    desired = current["desiredCount"]
    task_definition = current["taskDefinition"]
    logger.info(
        "Waiting for count to be exactly %d of task %s", desired, task_definition
    )

    last_counts = None
    while True:
        current = await _describe_service(ecs, cluster, service)
        old_count = new_count = 0
        for deployment in current.get("deployments", []):
            if deployment["taskDefinition"] == task_definition:
                new_count = deployment["runningCount"]
            else:
                old_count += deployment["runningCount"]
        if (old_count, new_count) != last_counts:
            logger.info("Old: %d\tCurrent: %d", old_count, new_count)
            last_counts = (old_count, new_count)

        if old_count == 0 and new_count == desired:
            first = await _service_task_arns(ecs, cluster, service)
            await asyncio.sleep(intervals.stability)
            second = await _service_task_arns(ecs, cluster, service)
            # The count can be right for a moment while tasks are still churning.
            if len(first) == desired and first == second:
                task_arns = second
                break
            logger.info(
                "Found %d tasks, but task list is not stable. First try: %s "
                "Second try: %s",
                new_count,
                first,
                second,
            )
        else:
            await asyncio.sleep(intervals.cluster)

    if not task_arns:
        return
    for balancer in current.get("loadBalancers", []):
        instance_ids = await _instance_ids(ecs, cluster, task_arns)
        if not instance_ids:
            logger.info("No EC2 instances behind the tasks; not checking health.")
            return

        name = balancer.get("loadBalancerName")
        if name:
            elb = clients.client("elb")

            async def classic_states() -> Dict[str, str]:
                response = await _call(
                    elb,
                    "describe_instance_health",
                    LoadBalancerName=name,
                    Instances=[{"InstanceId": i} for i in instance_ids],
                )
                return {
                    s["InstanceId"]: s["State"]
                    for s in response.get("InstanceStates", [])
                }

            await _wait_for_health(
                f"Instances in ELB {name}", classic_states, "InService", intervals.health
            )

        target_group = balancer.get("targetGroupArn")
        if target_group:
            elbv2 = clients.client("elbv2")

            async def target_states() -> Dict[str, str]:
                response = await _call(
                    elbv2,
                    "describe_target_health",
                    TargetGroupArn=target_group,
                    Targets=[{"Id": i} for i in instance_ids],
                )
                return {
                    f"{d['Target']['Id']}:{d['Target'].get('Port', '')}": d[
                        "TargetHealth"
                    ]["State"]
                    for d in response.get("TargetHealthDescriptions", [])
                }

            await _wait_for_health(
                f"Targets in {target_group}", target_states, "healthy", intervals.health
            )
