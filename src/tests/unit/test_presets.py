"""Tests for service presets."""

import io
import tarfile
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from scratchbox import presets
from scratchbox.lifecycle import Instance, LifecycleManager
from scratchbox.readiness import CommandProbe

from .fakes import FakeRuntime


def _exec_argvs(runtime: FakeRuntime) -> list[tuple[str, ...]]:
    return [c[1] for c in runtime.calls_named("exec")]


class TestDatabases:
    """Tests for database presets."""

    def test_postgres_sentinel_follows_startup_sql(self, tmp_path: Path) -> None:
        sql_file = tmp_path / "schema.sql"
        sql_file.write_text("CREATE TABLE users(id int)")

        spec = presets.postgres("main", sql="INSERT INTO users VALUES (1)", sql_path=sql_file)

        (injection,) = spec.files
        script = injection.data.decode()
        assert injection.dest == "/docker-entrypoint-initdb.d"
        assert injection.mode == 0o777
        assert script.startswith("CREATE TABLE users(id int); INSERT INTO users VALUES (1)")
        assert script.endswith("CREATE TABLE postgres.public.z_z_(id integer);")
        assert "z_z_" in spec.healthcheck.test[1]
        assert spec.ports == {"5432/tcp": None}

    def test_postgres_without_sql(self) -> None:
        spec = presets.postgres("main")

        assert spec.files[0].data == b"CREATE TABLE postgres.public.z_z_(id integer);"

    def test_mysql_rejects_unknown_extension(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match=".sql.gz"):
            presets.mysql("main", "users", sql_path=tmp_path / "schema.txt")

    def test_mysql_probe_queries_table(self, tmp_path: Path) -> None:
        spec = presets.mysql("main", "app.users", sql="select 1", sql_path=tmp_path / "a.sql")

        assert isinstance(spec.probe, CommandProbe)
        assert "select 1 from app.users limit 1" in spec.probe.argv[-1]
        assert [f.filename for f in spec.files] == [None, "scratchbox-query.sql"]
        assert spec.readiness_timeout == 120.0

    def test_sqlserver_runs_sqlcmd_after_start(self) -> None:
        spec = presets.sqlserver("main", sql="CREATE TABLE t(id int)")

        assert spec.wait_started_before_setup
        assert spec.files[0].dest == "/tmp"
        assert spec.files[0].data.decode().startswith("CREATE SCHEMA temp_schema")
        assert spec.setup[0][-1] == "/tmp/scratchbox-startup.sql"


class TestRabbitMQ:
    """Tests for the RabbitMQ preset."""

    async def test_declarations_run_after_ready_in_order(
        self, manager: LifecycleManager, fake_runtime: FakeRuntime
    ) -> None:
        vhost = presets.Vhost("tenant")
        exchange = presets.Exchange("events", presets.EXCHANGE_TYPE_FANOUT, vhost=vhost)
        queue = presets.Queue("jobs", durable=True, vhost=vhost)
        spec = presets.rabbitmq(
            "bus",
            vhosts=[vhost],
            exchanges=[exchange],
            queues=[queue],
            bindings=[presets.QueueBinding(exchange, queue, "jobs.*", vhost=vhost)],
        )

        await manager.with_instance(spec, lambda instance: None)

        assert _exec_argvs(fake_runtime) == [
            ("rabbitmqadmin", "declare", "vhost", "name=tenant"),
            (
                "rabbitmqadmin",
                "--vhost",
                "tenant",
                "declare",
                "exchange",
                "name=events",
                "type=fanout",
            ),
            ("rabbitmqadmin", "--vhost", "tenant", "declare", "queue", "name=jobs", "durable=true"),
            (
                "rabbitmqadmin",
                "--vhost",
                "tenant",
                "declare",
                "binding",
                "source=events",
                "destination_type=queue",
                "destination=jobs",
                "routing_key=jobs.*",
            ),
        ]


class TestLocalstack:
    """Tests for the localstack preset."""

    def test_unknown_service(self) -> None:
        with pytest.raises(ValueError, match="nosuch"):
            presets.localstack("aws", services=["sqs", "nosuch"])

    def test_publishes_one_port_per_service(self) -> None:
        spec = presets.localstack("aws", services=[presets.SERVICE_SQS, presets.SERVICE_S3])

        assert spec.ports == {"4576/tcp": None, "4572/tcp": None}
        assert spec.env["SERVICES"] == "sqs,s3"
        assert len(spec.concurrent_setup) == 2

    def test_all_services_by_default(self) -> None:
        spec = presets.localstack("aws")

        assert len(spec.ports) == len(presets.LOCALSTACK_PORTS)
        # elasticsearch has no readiness call
        assert len(spec.concurrent_setup) == len(presets.LOCALSTACK_PORTS) - 1

    async def test_services_awaited_before_queues(
        self, manager: LifecycleManager, fake_runtime: FakeRuntime
    ) -> None:
        spec = presets.localstack(
            "aws",
            services=[presets.SERVICE_SQS, presets.SERVICE_SNS],
            queues=[presets.SqsQueue("orders")],
        )

        await manager.with_instance(spec, lambda instance: None)

        argvs = _exec_argvs(fake_runtime)
        assert argvs[0] == ("pip", "install", "awscli", "--upgrade", "--user")
        assert {a[-2:] for a in argvs[1:3]} == {("sqs", "list-queues"), ("sns", "list-topics")}
        assert argvs[3][-3:] == ("create-queue", "--queue-name", "orders")

    def test_send_message_command(self) -> None:
        argv = presets.SqsQueue("orders").send_message_command("hello")

        assert "http://localhost:4576/queue/orders" in argv
        assert argv[-2:] == ["--message-body", "hello"]

    async def test_send_message_runs_in_container(
        self, manager: LifecycleManager, fake_runtime: FakeRuntime
    ) -> None:
        queue = presets.SqsQueue("orders")
        spec = presets.localstack("aws", services=[presets.SERVICE_SQS], queues=[queue])

        async def send(instance: Instance) -> None:
            await queue.send_message(manager.executor, instance, "hello")

        await manager.with_instance(spec, send)

        assert _exec_argvs(fake_runtime)[-1] == tuple(queue.send_message_command("hello"))

    async def test_functions_deployed_after_queues(
        self, manager: LifecycleManager, fake_runtime: FakeRuntime, tmp_path: Path
    ) -> None:
        zip_path = tmp_path / "handler.zip"
        zip_path.write_bytes(b"PK\x03\x04")
        spec = presets.localstack(
            "aws",
            services=[presets.SERVICE_SQS, presets.SERVICE_LAMBDA],
            queues=[presets.SqsQueue("orders")],
            functions=[presets.LambdaFunction("orders-handler", "main", zip_path)],
        )

        await manager.with_instance(spec, lambda instance: None)

        (copied,) = fake_runtime.copied
        assert copied[1] == "/"
        with tarfile.open(fileobj=io.BytesIO(copied[2]), mode="r:") as tar:
            assert tar.getnames() == ["handler.zip"]
        argvs = _exec_argvs(fake_runtime)
        assert argvs[-2][-3:] == ("create-queue", "--queue-name", "orders")
        assert "create-function" in argvs[-1]
        assert argvs[-1][-2:] == ("--zip-file", "fileb:///handler.zip")

    async def test_invoke_sends_json_payload(self) -> None:
        function = presets.LambdaFunction("orders-handler", "main", "/build/handler.zip")
        executor = AsyncMock()
        executor.run.return_value = '{"StatusCode": 200}'
        instance = Instance(
            name="scratchbox-localstack-aws-1", image="localstack/localstack", id="c1"
        )

        output = await function.invoke(executor, instance, {"order": 7})

        argv = executor.run.await_args.args[1]
        assert output == '{"StatusCode": 200}'
        assert "--endpoint-url=http://localhost:4574" in argv
        assert argv[-2:] == ["--payload", '{"order": 7}']

    def test_port_map_pins_services(self) -> None:
        spec = presets.localstack(
            "aws", services=[presets.SERVICE_SQS, presets.SERVICE_S3], port_map={"sqs": 14576}
        )

        assert spec.ports == {"4576/tcp": 14576, "4572/tcp": None}

    def test_port_map_rejects_unknown_service(self) -> None:
        with pytest.raises(ValueError, match="nosuch"):
            presets.localstack("aws", port_map={"nosuch": 1})


class TestAppBuild:
    """Tests for the application build preset."""

    async def test_build_and_launch(
        self, manager: LifecycleManager, fake_runtime: FakeRuntime, tmp_path: Path
    ) -> None:
        (tmp_path / "main.go").write_text("package main\n")
        spec = presets.app_build(
            "api", tmp_path, 8080, build_dir="cmd/api", health_endpoint="/healthz"
        )

        port = await manager.with_instance(spec, lambda instance: instance.port(8080))

        assert isinstance(port, int)
        assert spec.healthcheck.test[1] == "curl -fs http://localhost:8080/healthz"
        assert _exec_argvs(fake_runtime) == [
            ("mkdir", "-p", "/go/src/app"),
            ("apk", "update"),
            ("apk", "add", "curl"),
            ("/bin/sh", "-c", "cd /go/src/app/cmd/api && go build -o /usr/local/bin/api ."),
            ("/usr/local/bin/api",),
        ]
        assert ("exec", ("/usr/local/bin/api",), False) in fake_runtime.calls
        assert fake_runtime.copied[0][1] == "/go/src/app"


class TestRedis:
    """Tests for the redis preset."""

    async def test_probe_pings(self, manager: LifecycleManager, fake_runtime: FakeRuntime) -> None:
        fake_runtime.exec_handler = lambda argv: "PONG"

        seen: list[Instance] = []
        await manager.with_instance(presets.redis("cache"), seen.append)

        assert seen[0].name.startswith("scratchbox-redis-cache-")
        assert ("exec", ("redis-cli", "ping"), True) in fake_runtime.calls


class TestFixedPorts:
    """Tests for presets published on fixed host ports."""

    @pytest.mark.parametrize(
        ("spec", "expected"),
        [
            (presets.postgres("main", host_port=15432), {"5432/tcp": 15432}),
            (presets.redis("cache", host_port=16379), {"6379/tcp": 16379}),
            (presets.sqlserver("main", host_port=11433), {"1433/tcp": 11433}),
            (
                presets.rabbitmq("bus", host_port=15673),
                {"5672/tcp": 15673, "15672/tcp": None},
            ),
        ],
    )
    def test_host_port_is_kept(self, spec, expected: dict) -> None:
        assert spec.ports == expected

    def test_mysql_host_port(self) -> None:
        spec = presets.mysql("main", "users", host_port=13306)

        assert spec.ports == {"3306/tcp": 13306}

    async def test_fixed_port_reaches_instance(
        self, manager: LifecycleManager, fake_runtime: FakeRuntime
    ) -> None:
        port = await manager.with_instance(
            presets.redis("cache", host_port=16379), lambda instance: instance.port(6379)
        )

        assert port == 16379
