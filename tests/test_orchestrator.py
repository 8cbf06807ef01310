from unittest.mock import AsyncMock

import pytest

from models import ContainerConfig, ImageInfo, SubscribeRequest, Topic
from orchestrator import Orchestrator, normalize_image
from subscription_registry import PollKey
from utils import UnknownCommand

from conftest import FakeProcess, drain


def container_ids(message):
    return [container.id for container in message.data]


class TestSubscriptions:
    """Subscribe requests drive polling and pushes"""

    @pytest.mark.asyncio
    async def test_subscribe_publishes_containers_immediately(self, orchestrator, channel):
        result = await orchestrator.handle_subscribe("c1", SubscribeRequest(type="containers"))
        assert result.accepted
        assert result.heartbeat == 120000

        await drain(orchestrator.scheduler)
        [message] = channel.messages_for("c1", "containers")
        assert container_ids(message) == ["aaaaaaaaaaaa", "bbbbbbbbbbbb"]

    @pytest.mark.asyncio
    async def test_remove_republishes_without_waiting_for_poll(self, orchestrator, channel):
        """container:remove pushes the new listing to every containers subscriber"""
        await orchestrator.handle_subscribe("c1", SubscribeRequest(type="containers"))
        await drain(orchestrator.scheduler)

        result = await orchestrator.dispatch("container:remove", {"id": "bbbbbbbbbbbb"})
        assert result.stderr == ""

        messages = channel.messages_for("c1", "containers")
        assert len(messages) == 2
        assert "bbbbbbbbbbbb" not in container_ids(messages[-1])

    @pytest.mark.asyncio
    async def test_not_ready_rejects_subscribe(self, settings, backend, channel):
        orch = Orchestrator(settings, backend, channel=channel)
        result = await orch.handle_subscribe("c1", SubscribeRequest(type="images"))
        assert result.accepted is False
        assert orch.scheduler.keys == set()

    @pytest.mark.asyncio
    async def test_not_installed_publishes_error(self, orchestrator, backend, channel):
        backend.installed = False
        await orchestrator.handle_subscribe("c1", SubscribeRequest(type="images"))
        await drain(orchestrator.scheduler)

        [message] = channel.messages_for("c1", "images")
        assert message.error == "not installed"
        assert message.data is None
        assert ("image_list",) not in backend.calls

    @pytest.mark.asyncio
    async def test_info_topic(self, orchestrator, channel):
        await orchestrator.handle_subscribe("c1", SubscribeRequest(type="info"))
        await drain(orchestrator.scheduler)
        [message] = channel.messages_for("c1", "info")
        assert message.version == "27.3.1"
        assert message.data.images.total == 1

    @pytest.mark.asyncio
    async def test_container_watch_gets_inspect_data(self, orchestrator, channel):
        await orchestrator.handle_subscribe("c1", SubscribeRequest(type="containers", container="aaaaaaaaaaaa"))
        await drain(orchestrator.scheduler)

        assert orchestrator.scheduler.keys == {PollKey(Topic.CONTAINER, "aaaaaaaaaaaa")}
        [message] = channel.messages_for("c1", "container")
        assert message.container == "aaaaaaaaaaaa"
        assert message.data["Id"] == "aaaaaaaaaaaa"
        assert channel.messages_for("c1", "containers") == []

    @pytest.mark.asyncio
    async def test_failed_fetch_becomes_error_message(self, orchestrator, channel):
        await orchestrator.handle_subscribe("c1", SubscribeRequest(type="containers", container="missing"))
        await drain(orchestrator.scheduler)
        [message] = channel.messages_for("c1", "container")
        assert "No such container" in message.error

    @pytest.mark.asyncio
    async def test_unparseable_output_becomes_error_message(self, orchestrator, backend, channel):
        backend.image_list = AsyncMock(side_effect=ValueError("Expecting value: line 1 column 1"))
        await orchestrator.handle_subscribe("c1", SubscribeRequest(type="images"))
        await drain(orchestrator.scheduler)
        [message] = channel.messages_for("c1", "images")
        assert message.error == "Expecting value: line 1 column 1"

    @pytest.mark.asyncio
    async def test_topics_only_reach_their_subscribers(self, orchestrator, channel):
        await orchestrator.handle_subscribe("c1", SubscribeRequest(type="images"))
        await orchestrator.handle_subscribe("c2", SubscribeRequest(type="volumes"))
        await drain(orchestrator.scheduler)
        assert [m.command for m in channel.messages_for("c1")] == ["images"]
        assert [m.command for m in channel.messages_for("c2")] == ["volumes"]

    @pytest.mark.asyncio
    async def test_disconnect_releases_timer(self, orchestrator):
        await orchestrator.handle_subscribe("c1", SubscribeRequest(type="networks"))
        await orchestrator.handle_disconnect("c1")
        await orchestrator.handle_disconnect("c1")
        assert orchestrator.scheduler.keys == set()

    @pytest.mark.asyncio
    async def test_explicit_unsubscribe(self, orchestrator):
        await orchestrator.handle_subscribe("c1", SubscribeRequest(type="networks"))
        result = await orchestrator.handle_subscribe("c1", SubscribeRequest(type="unsubscribe"))
        assert result.accepted
        assert orchestrator.registry.client_ids() == []


class TestExecPiggyback:
    """Exec requests ride on the containers subscription"""

    @pytest.mark.asyncio
    async def test_command_starts_exec(self, orchestrator, backend, channel):
        process = FakeProcess()
        backend.exec_process = process
        await orchestrator.handle_subscribe(
            "c1", SubscribeRequest(type="containers", container="aaaaaaaaaaaa", command="uname -a")
        )
        assert ("container_exec", "aaaaaaaaaaaa", "uname -a") in backend.calls
        session = orchestrator.exec_sessions.get("c1")

        process.write_stdout(b"Linux\n")
        process.exit(0)
        await session.task

        outputs = [message.data for message in channel.messages_for("c1", "exec")]
        assert outputs[-1].stdout == "Linux\n"
        assert outputs[-1].code == 0

    @pytest.mark.asyncio
    async def test_terminate_request(self, orchestrator, backend):
        process = FakeProcess()
        backend.exec_process = process
        await orchestrator.handle_subscribe(
            "c1", SubscribeRequest(type="containers", container="aaaaaaaaaaaa", command="sleep 100")
        )
        await orchestrator.handle_subscribe(
            "c1", SubscribeRequest(type="containers", container="aaaaaaaaaaaa", command="", terminate=True)
        )
        assert process.signals == ["SIGTERM"]

    @pytest.mark.asyncio
    async def test_disconnect_terminates_quietly(self, orchestrator, backend, channel):
        process = FakeProcess()
        backend.exec_process = process
        await orchestrator.handle_subscribe(
            "c1", SubscribeRequest(type="containers", container="aaaaaaaaaaaa", command="sleep 100")
        )
        await orchestrator.handle_disconnect("c1")
        assert process.signals == ["SIGTERM"]
        session = orchestrator.exec_sessions.get("c1")

        process.exit(143)
        await session.task
        assert channel.messages_for("c1", "exec") == []
        assert "c1" not in orchestrator.exec_sessions


class TestDispatch:
    """One-shot RPC commands and their normalized results"""

    @pytest.mark.asyncio
    async def test_unknown_command(self, orchestrator):
        with pytest.raises(UnknownCommand):
            await orchestrator.dispatch("container:explode", {})

    @pytest.mark.asyncio
    async def test_invalid_payload_is_normalized(self, orchestrator):
        result = await orchestrator.dispatch("container:stop", {})
        assert result.stdout == ""
        assert "Invalid payload" in result.stderr

    @pytest.mark.asyncio
    async def test_missing_target_is_not_found(self, orchestrator, backend):
        result = await orchestrator.dispatch("container:stop", {"id": "nope"})
        assert result.stderr == "Container nope not found"
        assert ("container_stop", "nope") not in backend.calls

    @pytest.mark.asyncio
    async def test_stop_still_running_is_reported(self, orchestrator, backend, channel):
        await orchestrator.handle_subscribe("c1", SubscribeRequest(type="containers"))
        await drain(orchestrator.scheduler)
        backend.ignore_mutations = True

        result = await orchestrator.dispatch("container:stop", {"id": "web"})
        assert "still running" in result.stderr
        assert len(channel.messages_for("c1", "containers")) == 2

    @pytest.mark.asyncio
    async def test_remove_still_present_is_reported(self, orchestrator, backend):
        backend.ignore_mutations = True
        result = await orchestrator.dispatch("container:remove", {"id": "db"})
        assert "still found" in result.stderr

    @pytest.mark.asyncio
    async def test_start(self, orchestrator, backend):
        result = await orchestrator.dispatch("container:start", {"id": "db"})
        assert result.stderr == ""
        assert ("container_start", "db") in backend.calls

    @pytest.mark.asyncio
    async def test_run_validates_config(self, orchestrator, backend):
        result = await orchestrator.dispatch("container:run", {"name": "web2"})
        assert result.stderr == "Please select an image"
        assert not [call for call in backend.calls if call[0] == "container_run"]

    @pytest.mark.asyncio
    async def test_run(self, orchestrator, backend, channel):
        await orchestrator.handle_subscribe("c1", SubscribeRequest(type="containers"))
        await drain(orchestrator.scheduler)

        result = await orchestrator.dispatch("container:run", {"name": "cache", "image": "redis:7"})
        assert result.stdout == "eeeeeeeeeeee"
        assert "eeeeeeeeeeee" in container_ids(channel.messages_for("c1", "containers")[-1])

    @pytest.mark.asyncio
    async def test_image_pull(self, orchestrator, backend, channel):
        await orchestrator.handle_subscribe("c1", SubscribeRequest(type="images"))
        await drain(orchestrator.scheduler)

        result = await orchestrator.dispatch("image:pull", {"image": "redis:7"})
        assert result.stdout == "Pulled redis:7"
        references = [image.reference for image in channel.messages_for("c1", "images")[-1].data]
        assert "redis:7" in references

    @pytest.mark.asyncio
    async def test_image_pull_postcondition(self, orchestrator, backend):
        backend.image_pull = AsyncMock(return_value=None)
        result = await orchestrator.dispatch("image:pull", {"image": "redis:7"})
        assert "not found after pull" in result.stderr

    @pytest.mark.asyncio
    async def test_query_commands_return_result(self, orchestrator):
        result = await orchestrator.dispatch("container:logs", {"id": "web", "tail": 2})
        assert result.result == ["line 1", "line 2"]

        result = await orchestrator.dispatch("image:list")
        assert result.result[0]["repository"] == "nginx"
        assert result.result[0]["createdSince"] == ""

        result = await orchestrator.dispatch("volume:dir", {"id": "data"})
        assert result.result[0]["name"] == "app.log"
        assert result.result[0]["isDir"] is False

    @pytest.mark.asyncio
    async def test_backend_errors_never_escape(self, orchestrator, backend):
        backend.container_inspect = AsyncMock(side_effect=RuntimeError("socket closed"))
        result = await orchestrator.dispatch("container:inspect", {"id": "web"})
        assert result.stdout == ""
        assert result.stderr == "socket closed"

    @pytest.mark.asyncio
    async def test_info(self, orchestrator, backend):
        result = await orchestrator.dispatch("info")
        assert result.result["version"] == "27.3.1"

        backend.installed = False
        result = await orchestrator.dispatch("info")
        assert result.stderr == "not installed"

    @pytest.mark.asyncio
    async def test_docker_hub_lookups(self, orchestrator):
        orchestrator.hub.tags = AsyncMock(return_value=["7", "7-alpine"])
        orchestrator.hub.search = AsyncMock(return_value=["library/redis"])

        result = await orchestrator.dispatch("image:tags", {"image": "redis"})
        assert result.result == ["7", "7-alpine"]
        result = await orchestrator.dispatch("image:autocomplete", {"image": "red"})
        assert result.result == ["library/redis"]

    @pytest.mark.asyncio
    async def test_network_and_volume_create(self, orchestrator, backend):
        result = await orchestrator.dispatch("network:create", {"name": "backend", "driver": "bridge"})
        assert result.stdout == "ffffffffffff"
        result = await orchestrator.dispatch("volume:create", {"name": "logs", "path": "/srv/logs"})
        assert result.stdout == "logs"
        assert ("volume_create", "logs", None, "/srv/logs") in backend.calls


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_startup_starts_managed_containers(self, settings, backend, channel):
        settings.managed_containers = [
            ContainerConfig(name="db", image="postgres:16"),
            ContainerConfig(name="cache", image="redis:7"),
            ContainerConfig(name="off", image="busybox", enabled=False),
        ]
        backend.images.append(ImageInfo(repository="postgres", tag="16", id="0a0b0c0d0e0f"))
        orch = Orchestrator(settings, backend, channel=channel)

        await orch.startup()
        try:
            assert orch.registry.ready
            assert ("container_start", "bbbbbbbbbbbb") in backend.calls
            assert ("image_pull", "redis:7") in backend.calls
            assert ("container_run", "cache") in backend.calls
            assert not [call for call in backend.calls if call[-1] in ("off", "busybox")]
        finally:
            await orch.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_broadcasts_stopped(self, orchestrator, channel):
        await orchestrator.handle_subscribe("c1", SubscribeRequest(type="images"))
        await orchestrator.shutdown()
        assert channel.sent[-1][0] == "*"
        assert channel.sent[-1][1].command == "stopped"
        assert orchestrator.scheduler.keys == set()


def test_normalize_image():
    assert normalize_image("nginx") == "nginx:latest"
    assert normalize_image("docker.io/library/redis:7") == "redis:7"
    assert normalize_image("ghcr.io/org/app") == "ghcr.io/org/app:latest"
    assert normalize_image("localhost:5000/app:1.0") == "localhost:5000/app:1.0"
