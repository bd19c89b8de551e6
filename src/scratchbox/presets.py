"""Ready-made instance specs for common backing services.

Each builder returns an InstanceSpec; pass it to Environment.with_instance
or Environment.instance. Credentials are fixed test values. Builders taking
``host_port`` publish the service on that host port instead of an allocated
one.
"""

from __future__ import annotations

import json
import os
import posixpath
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from scratchbox.executor import CommandExecutor
from scratchbox.infra.docker import HealthConfig
from scratchbox.lifecycle import FileInjection, Instance, InstanceSpec, SetupAction
from scratchbox.readiness import CommandProbe

INIT_SCRIPT_DIR = "/docker-entrypoint-initdb.d"

POSTGRES_PASSWORD = "pass"
MYSQL_ROOT_PASSWORD = "pass"
SQLSERVER_SA_PASSWORD = "Passpass_1"

AWS_REGION = "us-east-1"


def _read_sql(sql: str | None, sql_path: str | os.PathLike[str] | None) -> str:
    parts = []
    if sql_path is not None:
        parts.append(Path(sql_path).read_text())
    if sql:
        parts.append(sql)
    # the separator covers a file that does not end with a semicolon
    return "; ".join(parts)


# =============================================================================
# Databases
# =============================================================================


def postgres(
    name: str,
    sql: str | None = None,
    sql_path: str | os.PathLike[str] | None = None,
    host_port: int | None = None,
) -> InstanceSpec:
    """postgres:latest with optional startup SQL.

    A sentinel table is created after the startup SQL; the health check
    queries it, so the instance is only healthy once initialization is done.
    """
    script = _read_sql(sql, sql_path)
    sentinel = "CREATE TABLE postgres.public.z_z_(id integer);"
    script = f"{script};{sentinel}" if script else sentinel
    return InstanceSpec(
        name=f"postgres-{name}",
        image="postgres:latest",
        ports={"5432/tcp": host_port},
        env={"POSTGRES_PASSWORD": POSTGRES_PASSWORD},
        healthcheck=HealthConfig(
            test=[
                "CMD-SHELL",
                "psql -U postgres -h localhost -c 'select 1 from postgres.public.z_z_ limit 1'",
            ],
            interval=5.0,
            timeout=60.0,
        ),
        files=[
            FileInjection(
                dest=INIT_SCRIPT_DIR,
                data=script.encode(),
                filename="scratchbox-init.sql",
                mode=0o777,
            )
        ],
    )


_MYSQL_INIT_SUFFIXES = (".sh", ".sql", ".sql.gz")


def mysql(
    name: str,
    initialize_table: str,
    sql: str | None = None,
    sql_path: str | os.PathLike[str] | None = None,
    host_port: int | None = None,
) -> InstanceSpec:
    """mysql:latest; healthy once ``initialize_table`` can be queried.

    Raises:
        ValueError: ``sql_path`` has an extension the entrypoint ignores.
    """
    files = []
    if sql_path is not None:
        if not str(sql_path).endswith(_MYSQL_INIT_SUFFIXES):
            raise ValueError(
                "sql_path should have an extension of .sh, .sql, or .sql.gz "
                "or it won't be run during initialization"
            )
        files.append(FileInjection(dest=INIT_SCRIPT_DIR, source=Path(sql_path)))
    if sql:
        files.append(
            FileInjection(dest=INIT_SCRIPT_DIR, data=sql.encode(), filename="scratchbox-query.sql")
        )

    return InstanceSpec(
        name=f"mysql-{name}",
        image="mysql:latest",
        ports={"3306/tcp": host_port},
        env={"MYSQL_ROOT_PASSWORD": MYSQL_ROOT_PASSWORD},
        files=files,
        probe=CommandProbe.shell(
            f"mysql -uroot -p{MYSQL_ROOT_PASSWORD} -e 'select 1 from {initialize_table} limit 1'"
        ),
        readiness_timeout=120.0,
    )


def redis(name: str, host_port: int | None = None) -> InstanceSpec:
    return InstanceSpec(
        name=f"redis-{name}",
        image="redis:latest",
        ports={"6379/tcp": host_port},
        tty=True,
        probe=CommandProbe(["redis-cli", "ping"]),
    )


def sqlserver(
    name: str,
    sql: str | None = None,
    sql_path: str | os.PathLike[str] | None = None,
    host_port: int | None = None,
) -> InstanceSpec:
    """SQL Server 2017. Startup SQL runs through sqlcmd once the server has started."""
    script = _read_sql(sql, sql_path)
    # the health check queries temp_schema.zz, created ahead of the startup SQL
    script = "CREATE SCHEMA temp_schema\nGO\nCREATE TABLE temp_schema.zz(id int)\nGO\n" + script
    filename = "scratchbox-startup.sql"
    sqlcmd = "/opt/mssql-tools/bin/sqlcmd"

    return InstanceSpec(
        name=f"sqlserver-{name}",
        image="mcr.microsoft.com/mssql/server:2017-latest",
        ports={"1433/tcp": host_port},
        env={"SA_PASSWORD": SQLSERVER_SA_PASSWORD, "ACCEPT_EULA": "Y"},
        healthcheck=HealthConfig(
            test=[
                "CMD-SHELL",
                f"{sqlcmd} -U SA -P {SQLSERVER_SA_PASSWORD} -b "
                "-Q 'SELECT \"startup SQL initialized\" FROM master.temp_schema.zz'",
            ],
            interval=5.0,
            timeout=60.0,
        ),
        wait_started_before_setup=True,
        files=[FileInjection(dest="/tmp", data=script.encode(), filename=filename, mode=0o777)],
        setup=[
            [sqlcmd, "-b", "-U", "SA", "-P", SQLSERVER_SA_PASSWORD, "-i", f"/tmp/{filename}"]
        ],
        readiness_timeout=120.0,
    )


# =============================================================================
# RabbitMQ
# =============================================================================

RABBITMQADMIN = "rabbitmqadmin"

EXCHANGE_TYPE_DIRECT = "direct"
EXCHANGE_TYPE_FANOUT = "fanout"


def _admin(vhost: Vhost | None) -> list[str]:
    return [RABBITMQADMIN, "--vhost", vhost.name] if vhost else [RABBITMQADMIN]


@dataclass(frozen=True)
class Vhost:
    name: str

    def create_command(self) -> list[str]:
        return [RABBITMQADMIN, "declare", "vhost", f"name={self.name}"]


@dataclass(frozen=True)
class Exchange:
    name: str
    type: str = EXCHANGE_TYPE_DIRECT
    vhost: Vhost | None = None

    def create_command(self) -> list[str]:
        return _admin(self.vhost) + [
            "declare", "exchange", f"name={self.name}", f"type={self.type}"
        ]


@dataclass(frozen=True)
class Queue:
    name: str
    durable: bool = False
    vhost: Vhost | None = None

    def create_command(self) -> list[str]:
        return _admin(self.vhost) + [
            "declare", "queue", f"name={self.name}", f"durable={str(self.durable).lower()}"
        ]


@dataclass(frozen=True)
class QueueBinding:
    """Binding from an exchange (source) to a queue (destination)."""

    source: Exchange
    destination: Queue
    routing_key: str = ""
    vhost: Vhost | None = None

    def create_command(self) -> list[str]:
        return _admin(self.vhost) + [
            "declare",
            "binding",
            f"source={self.source.name}",
            "destination_type=queue",
            f"destination={self.destination.name}",
            f"routing_key={self.routing_key}",
        ]


def rabbitmq(
    name: str,
    vhosts: Sequence[Vhost] = (),
    exchanges: Sequence[Exchange] = (),
    queues: Sequence[Queue] = (),
    bindings: Sequence[QueueBinding] = (),
    host_port: int | None = None,
) -> InstanceSpec:
    """rabbitmq:management-alpine; declarations run once the broker is healthy.

    Order: vhosts -> exchanges -> queues -> bindings. ``host_port`` fixes the
    AMQP port; the management port is always allocated.
    """
    declarations = [*vhosts, *exchanges, *queues, *bindings]
    return InstanceSpec(
        name=f"rabbit-{name}",
        image="rabbitmq:management-alpine",
        ports={"5672/tcp": host_port, "15672/tcp": None},
        healthcheck=HealthConfig(
            test=["CMD-SHELL", f"{RABBITMQADMIN} -q list queues"],
            interval=5.0,
            timeout=60.0,
        ),
        post_ready_setup=[d.create_command() for d in declarations],
    )


# =============================================================================
# Localstack
# =============================================================================

SERVICE_SQS = "sqs"
SERVICE_API_GATEWAY = "apigateway"
SERVICE_KINESIS = "kinesis"
SERVICE_S3 = "s3"
SERVICE_DYNAMODB = "dynamodb"
SERVICE_DYNAMODB_STREAMS = "dynamodbstreams"
SERVICE_ELASTICSEARCH = "elasticsearch"
SERVICE_FIREHOSE = "firehose"
SERVICE_LAMBDA = "lambda"
SERVICE_SNS = "sns"
SERVICE_REDSHIFT = "redshift"
SERVICE_ES = "es"
SERVICE_SES = "ses"
SERVICE_ROUTE53 = "route53"
SERVICE_CLOUDFORMATION = "cloudformation"
SERVICE_CLOUDWATCH = "cloudwatch"
SERVICE_SSM = "ssm"
SERVICE_SECRETS_MANAGER = "secretsmanager"

LOCALSTACK_PORTS: dict[str, int] = {
    SERVICE_SQS: 4576,
    SERVICE_API_GATEWAY: 4567,
    SERVICE_KINESIS: 4568,
    SERVICE_S3: 4572,
    SERVICE_DYNAMODB: 4569,
    SERVICE_DYNAMODB_STREAMS: 4570,
    SERVICE_ELASTICSEARCH: 4571,
    SERVICE_FIREHOSE: 4573,
    SERVICE_LAMBDA: 4574,
    SERVICE_SNS: 4575,
    SERVICE_REDSHIFT: 4577,
    SERVICE_ES: 4578,
    SERVICE_SES: 4579,
    SERVICE_ROUTE53: 4580,
    SERVICE_CLOUDFORMATION: 4581,
    SERVICE_CLOUDWATCH: 4582,
    SERVICE_SSM: 4583,
    SERVICE_SECRETS_MANAGER: 4584,
}

# read-only call per service that succeeds once the service is up
LOCALSTACK_INIT_CHECKS: dict[str, str] = {
    SERVICE_SQS: "sqs list-queues",
    SERVICE_API_GATEWAY: "apigateway get-api-keys",
    SERVICE_KINESIS: "kinesis list-streams",
    SERVICE_S3: "s3 ls",
    SERVICE_DYNAMODB: "dynamodb list-tables",
    SERVICE_DYNAMODB_STREAMS: "dynamodbstreams list-streams",
    SERVICE_FIREHOSE: "firehose list-delivery-streams",
    SERVICE_LAMBDA: "lambda list-functions",
    SERVICE_SNS: "sns list-topics",
    SERVICE_REDSHIFT: "redshift describe-tags",
    SERVICE_ES: "es list-domain-names",
    SERVICE_SES: "ses list-identities",
    SERVICE_ROUTE53: "route53 list-health-checks",
    SERVICE_CLOUDFORMATION: "cloudformation describe-stacks",
    SERVICE_CLOUDWATCH: "cloudwatch describe-alarms",
    SERVICE_SSM: "ssm list-commands",
    SERVICE_SECRETS_MANAGER: "secretsmanager get-random-password",
}


def _aws(port: int) -> list[str]:
    return ["aws", "--region", AWS_REGION, f"--endpoint-url=http://localhost:{port}"]


@dataclass(frozen=True)
class SqsQueue:
    name: str

    def create_command(self) -> list[str]:
        port = LOCALSTACK_PORTS[SERVICE_SQS]
        return _aws(port) + ["sqs", "create-queue", "--queue-name", self.name]

    def send_message_command(self, message: str) -> list[str]:
        port = LOCALSTACK_PORTS[SERVICE_SQS]
        return _aws(port) + [
            "sqs",
            "send-message",
            "--queue-url",
            f"http://localhost:{port}/queue/{self.name}",
            "--message-body",
            message,
        ]

    async def send_message(
        self, executor: CommandExecutor, instance: Instance, message: str
    ) -> str:
        """Send ``message`` to the queue from inside the localstack instance."""
        assert instance.id is not None
        return await executor.run(instance.id, self.send_message_command(message))


@dataclass(frozen=True)
class LambdaFunction:
    """A function deployed from a zip archive once localstack is ready.

    The zip is copied to the container's root directory and registered with
    ``lambda create-function``.
    """

    name: str
    handler: str
    zip_path: str | os.PathLike[str]
    runtime: str = "go1.x"
    memory: int = 128

    @property
    def zip_name(self) -> str:
        return Path(self.zip_path).name

    def injection(self) -> FileInjection:
        return FileInjection(dest="/", source=Path(self.zip_path))

    def create_command(self) -> list[str]:
        return _aws(LOCALSTACK_PORTS[SERVICE_LAMBDA]) + [
            "lambda",
            "create-function",
            "--function-name",
            self.name,
            "--handler",
            self.handler,
            "--memory",
            str(self.memory),
            "--role",
            "r1",
            "--runtime",
            self.runtime,
            "--zip-file",
            f"fileb:///{self.zip_name}",
        ]

    def invoke_command(self, payload: dict[str, Any]) -> list[str]:
        return _aws(LOCALSTACK_PORTS[SERVICE_LAMBDA]) + [
            "lambda",
            "invoke",
            "--function-name",
            self.name,
            "output.out",
            "--payload",
            json.dumps(payload),
        ]

    async def invoke(
        self, executor: CommandExecutor, instance: Instance, payload: dict[str, Any]
    ) -> str:
        """Invoke the function with ``payload`` serialized as JSON."""
        assert instance.id is not None
        return await executor.run(instance.id, self.invoke_command(payload))


def _wait_for_service(service: str, timeout: float) -> SetupAction:
    argv = _aws(LOCALSTACK_PORTS[service]) + LOCALSTACK_INIT_CHECKS[service].split()

    async def wait(instance: Instance, executor: CommandExecutor) -> str:
        assert instance.id is not None
        return await executor.wait_until(
            instance.id, argv, timeout=timeout, label=f"localstack - {service}"
        )

    return wait


def localstack(
    name: str,
    services: list[str] | None = None,
    queues: Sequence[SqsQueue] = (),
    functions: Sequence[LambdaFunction] = (),
    service_timeout: float = 120.0,
    port_map: Mapping[str, int] | None = None,
) -> InstanceSpec:
    """localstack/localstack with one published port per service.

    Services without a known readiness call are started but not waited on.
    Every service is started when ``services`` is empty. ``port_map`` pins
    services to fixed host ports; the rest are allocated. Queues are created
    before functions.
    """
    services = list(services or LOCALSTACK_PORTS)
    port_map = port_map or {}
    unknown = [s for s in [*services, *port_map] if s not in LOCALSTACK_PORTS]
    if unknown:
        raise ValueError(f"Unknown localstack services: {', '.join(unknown)}")

    return InstanceSpec(
        name=f"localstack-{name}",
        image="localstack/localstack",
        ports={f"{LOCALSTACK_PORTS[s]}/tcp": port_map.get(s) for s in services},
        env={
            "SERVICES": ",".join(services),
            "AWS_SECRET_ACCESS_KEY": "guest",
            "AWS_ACCESS_KEY_ID": "guest",
            "LAMBDA_EXECUTOR": "docker",
        },
        # lambdas run in sibling containers
        binds=["/var/run/docker.sock:/var/run/docker.sock"],
        files=[f.injection() for f in functions],
        setup=[["pip", "install", "awscli", "--upgrade", "--user"]],
        concurrent_setup=[
            _wait_for_service(s, service_timeout)
            for s in services
            if s in LOCALSTACK_INIT_CHECKS
        ],
        post_ready_setup=[
            *(q.create_command() for q in queues),
            *(f.create_command() for f in functions),
        ],
    )


# =============================================================================
# Application build
# =============================================================================


def app_build(
    name: str,
    source_dir: str | os.PathLike[str],
    port: int,
    build_dir: str = ".",
    health_endpoint: str = "",
    app_dir: str = "/go/src/app",
    env: dict[str, str] | None = None,
    host_port: int | None = None,
) -> InstanceSpec:
    """Builds a Go application from ``source_dir`` inside golang:alpine and runs it.

    The binary is launched detached; the health check curls
    ``health_endpoint`` on ``port`` until it answers.
    """
    binary = f"/usr/local/bin/{name}"
    package_dir = posixpath.normpath(posixpath.join(app_dir, build_dir))
    return InstanceSpec(
        name=f"app-{name}",
        image="golang:alpine",
        ports={f"{port}/tcp": host_port},
        env=env or {},
        tty=True,
        healthcheck=HealthConfig(
            test=["CMD-SHELL", f"curl -fs http://localhost:{port}/{health_endpoint.lstrip('/')}"],
            interval=5.0,
            timeout=60.0,
        ),
        files=[FileInjection(dest=app_dir, source=Path(source_dir), create_dest=True)],
        setup=[
            ["apk", "update"],
            ["apk", "add", "curl"],
            ["/bin/sh", "-c", f"cd {package_dir} && go build -o {binary} ."],
        ],
        start_commands=[[binary]],
        readiness_timeout=180.0,
    )
