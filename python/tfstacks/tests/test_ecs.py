"""Tests for the ECS helpers behind 'tfstacks util aws ecs'.

boto3 is never reached: AwsClients is given a StubSession whose clients
answer each method from a scripted list of replies (the last reply repeats).
"""

import argparse
import logging
from typing import Any, Dict, List, Tuple

import pytest
from botocore.exceptions import ClientError

from tfstacks.cli.tfstacks import CommandContext, build_parser
from tfstacks.cli.util import _run_ecs_run, _run_ecs_wait
from tfstacks.models.errors import ErrorKind, StackError, TaskFailed, exit_code_for
from tfstacks.utils.aws.ecs import (
    AwsClients,
    PollIntervals,
    run_task,
    select_container,
    wait_for_instances,
    wait_for_service,
)
from tfstacks.utils.process_supervisor import ProcessSupervisor

FAST = PollIntervals(task=0, cluster=0, stability=0, health=0)
TASK_ARN = "arn:aws:ecs:us-east-1:123456789012:task/jobs/0f1e2d3c"


class StubClient:
    """A boto3 client answering from scripted replies; exceptions are raised."""

    def __init__(self, **replies: List[Any]) -> None:
        self.replies = {method: list(answers) for method, answers in replies.items()}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    def __getattr__(self, method: str):
        if method not in self.replies:
            raise AttributeError(method)

        def call(**kwargs: Any) -> Any:
            self.calls.append((method, kwargs))
            answers = self.replies[method]
            reply = answers.pop(0) if len(answers) > 1 else answers[0]
            if isinstance(reply, Exception):
                raise reply
            return reply

        return call

    def called(self, method: str) -> List[Dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]


class StubSession:
    def __init__(self, **clients: StubClient) -> None:
        self.clients = clients
        self.regions: Dict[str, str] = {}

    def client(self, service: str, region_name: str = "") -> StubClient:
        self.regions[service] = region_name
        return self.clients[service]


def task_definition(*containers: Dict[str, Any]) -> Dict[str, Any]:
    return {"taskDefinition": {"containerDefinitions": list(containers)}}


def stopped(**container: Any) -> Dict[str, Any]:
    return {
        "tasks": [
            {
                "lastStatus": "STOPPED",
                "stoppedReason": "Essential container in task exited",
                "containers": [{"name": "app", **container}],
            }
        ],
        "failures": [],
    }


AWSLOGS_APP = {
    "name": "app",
    "logConfiguration": {
        "logDriver": "awslogs",
        "options": {
            "awslogs-region": "us-west-2",
            "awslogs-group": "/ecs/jobs",
            "awslogs-stream-prefix": "jobs",
        },
    },
}
STARTED = {"tasks": [{"taskArn": TASK_ARN}], "failures": []}


def test_container_is_inferred_only_when_alone() -> None:
    app, worker = {"name": "app"}, {"name": "worker"}
    assert select_container([app]) is app
    assert select_container([app, worker], "worker") is worker
    with pytest.raises(RuntimeError, match="--container"):
        select_container([app, worker])
    with pytest.raises(RuntimeError, match="Could not find container 'db'"):
        select_container([app, worker], "db")


@pytest.mark.asyncio
async def test_run_task_relays_logs_until_success(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    ecs = StubClient(
        describe_task_definition=[task_definition(AWSLOGS_APP)],
        run_task=[STARTED],
        describe_tasks=[
            {"tasks": [], "failures": [{"arn": TASK_ARN, "reason": "MISSING"}]},
            {"tasks": [{"lastStatus": "RUNNING", "containers": []}], "failures": []},
            stopped(exitCode=0),
        ],
    )
    missing_stream = ClientError(
        {"Error": {"Code": "ResourceNotFoundException", "Message": "no stream"}},
        "GetLogEvents",
    )
    logs = StubClient(
        get_log_events=[
            missing_stream,
            {"events": [{"timestamp": 1000, "message": "migrating"}]},
            {"events": []},
        ]
    )
    session = StubSession(ecs=ecs, logs=logs)

    await run_task(
        AwsClients("us-east-1", session),
        "jobs",
        "migrate:12",
        ["./manage.py", "migrate"],
        intervals=FAST,
    )

    started = ecs.called("run_task")[0]
    assert started["count"] == 1
    assert started["overrides"] == {
        "containerOverrides": [{"name": "app", "command": ["./manage.py", "migrate"]}]
    }
    assert session.regions == {"ecs": "us-east-1", "logs": "us-west-2"}
    reads = logs.called("get_log_events")
    assert reads[0]["logStreamName"] == "jobs/app/0f1e2d3c"
    # The cursor moves past the last event seen.
    assert reads[-1]["startTime"] == 1001
    assert "migrating" in caplog.text
    assert "Task succeeded." in caplog.text


@pytest.mark.asyncio
async def test_failed_task_exit_code_is_passed_through() -> None:
    ecs = StubClient(
        describe_task_definition=[task_definition({"name": "app"})],
        run_task=[STARTED],
        describe_tasks=[stopped(exitCode=3)],
    )

    with pytest.raises(TaskFailed) as info:
        await run_task(
            AwsClients("us-east-1", StubSession(ecs=ecs)),
            "jobs",
            "migrate:12",
            ["false"],
            intervals=FAST,
        )

    assert exit_code_for(info.value) == 3


@pytest.mark.asyncio
async def test_task_stopped_without_exit_code_fails_generically() -> None:
    ecs = StubClient(
        describe_task_definition=[task_definition({"name": "app"})],
        run_task=[STARTED],
        describe_tasks=[stopped(reason="CannotPullContainerError")],
    )

    with pytest.raises(TaskFailed, match="CannotPullContainerError") as info:
        await run_task(
            AwsClients("us-east-1", StubSession(ecs=ecs)),
            "jobs",
            "migrate:12",
            ["true"],
            intervals=FAST,
        )

    assert info.value.exit_code == 1


@pytest.mark.asyncio
async def test_task_that_fails_to_start() -> None:
    ecs = StubClient(
        describe_task_definition=[task_definition({"name": "app"})],
        run_task=[{"tasks": [], "failures": [{"reason": "RESOURCE:MEMORY"}]}],
    )

    with pytest.raises(RuntimeError, match="Error starting task"):
        await run_task(
            AwsClients("us-east-1", StubSession(ecs=ecs)),
            "jobs",
            "migrate:12",
            ["true"],
            intervals=FAST,
        )


def cluster(count: int) -> Dict[str, Any]:
    return {"clusters": [{"registeredContainerInstancesCount": count}], "failures": []}


@pytest.mark.asyncio
async def test_wait_for_instances() -> None:
    ecs = StubClient(describe_clusters=[cluster(1), cluster(2), cluster(3), cluster(4)])

    await wait_for_instances(
        AwsClients("us-east-1", StubSession(ecs=ecs)), "web", 3, intervals=FAST
    )

    assert len(ecs.called("describe_clusters")) == 3


def service(deployments: List[Tuple[str, int]], **extra: Any) -> Dict[str, Any]:
    return {
        "services": [
            {
                "desiredCount": 2,
                "taskDefinition": "api:8",
                "deployments": [
                    {"taskDefinition": t, "runningCount": n} for t, n in deployments
                ],
                **extra,
            }
        ],
        "failures": [],
    }


@pytest.mark.asyncio
async def test_wait_for_service_rollout_and_target_health() -> None:
    balancer = {"loadBalancers": [{"targetGroupArn": "arn:tg/api"}]}
    ecs = StubClient(
        describe_services=[
            service([("api:8", 0), ("api:7", 2)], **balancer),
            service([("api:8", 1), ("api:7", 1)], **balancer),
            service([("api:8", 2)], **balancer),
            service([("api:8", 2)], **balancer),
        ],
        list_tasks=[
            {"taskArns": ["t2", "t1"]},
            {"taskArns": ["t2", "t3"]},
            {"taskArns": ["t1", "t2"]},
        ],
        describe_tasks=[
            {
                "tasks": [
                    {"containerInstanceArn": "ci-1"},
                    {"containerInstanceArn": "ci-2"},
                ],
                "failures": [],
            }
        ],
        describe_container_instances=[
            {
                "containerInstances": [
                    {"ec2InstanceId": "i-1"},
                    {"ec2InstanceId": "i-2"},
                ],
                "failures": [],
            }
        ],
    )

    def health(first: str, second: str) -> Dict[str, Any]:
        return {
            "TargetHealthDescriptions": [
                {"Target": {"Id": "i-1", "Port": 32768}, "TargetHealth": {"State": first}},
                {"Target": {"Id": "i-2", "Port": 32770}, "TargetHealth": {"State": second}},
            ]
        }

    elbv2 = StubClient(
        describe_target_health=[health("initial", "healthy"), health("healthy", "healthy")]
    )

    await wait_for_service(
        AwsClients("us-east-1", StubSession(ecs=ecs, elbv2=elbv2)),
        "web",
        "api",
        intervals=FAST,
    )

    # The first stable-looking listing changed in between, so it was checked again.
    assert ecs.called("list_tasks")[0] == {"cluster": "web", "serviceName": "api"}
    assert ecs.called("describe_tasks")[0]["tasks"] == ["t1", "t2"]
    checks = elbv2.called("describe_target_health")
    assert len(checks) == 2
    assert checks[0]["Targets"] == [{"Id": "i-1"}, {"Id": "i-2"}]


def parse(argv: List[str]) -> argparse.Namespace:
    return build_parser().parse_args(argv)


@pytest.mark.asyncio
async def test_ecs_wait_needs_instances_or_service() -> None:
    args = parse(["util", "aws", "ecs", "wait", "--region", "r", "--cluster", "c"])
    ctx = CommandContext(None, ProcessSupervisor(), aws_session=StubSession())

    with pytest.raises(RuntimeError, match="--instances or --service"):
        await _run_ecs_wait(args, [], ctx)


@pytest.mark.asyncio
async def test_ecs_wait_times_out() -> None:
    ecs = StubClient(describe_clusters=[cluster(1)])
    args = parse(
        ["util", "aws", "ecs", "wait", "--region", "r", "--cluster", "c", "--instances", "3"]
    )
    supervisor = ProcessSupervisor()
    ctx = CommandContext(None, supervisor, aws_session=StubSession(ecs=ecs))

    with pytest.raises(StackError) as info:
        await supervisor.supervise(_run_ecs_wait(args, [], ctx), timeout=0.2)

    assert info.value.kind is ErrorKind.TIMEOUT
    assert exit_code_for(info.value) == 18


@pytest.mark.asyncio
async def test_ecs_run_passes_command_after_separator() -> None:
    ecs = StubClient(
        describe_task_definition=[task_definition({"name": "app"})],
        run_task=[STARTED],
        describe_tasks=[stopped(exitCode=0)],
    )
    args = parse(
        ["util", "aws", "ecs", "run", "--region", "eu-west-1", "--cluster", "jobs", "--task-def", "migrate:12"]
    )
    session = StubSession(ecs=ecs)
    ctx = CommandContext(None, ProcessSupervisor(), aws_session=session)

    await _run_ecs_run(args, ["echo", "hi"], ctx)

    assert session.regions["ecs"] == "eu-west-1"
    assert ecs.called("run_task")[0]["cluster"] == "jobs"
    assert ecs.called("run_task")[0]["overrides"]["containerOverrides"][0]["command"] == [
        "echo",
        "hi",
    ]
