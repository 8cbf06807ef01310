import asyncio
from typing import List, Optional

import pytest
import pytest_asyncio

from config import Settings
from docker_backend import DockerBackend
from models import (
    CommandResult,
    ContainerInfo,
    DiskUsage,
    DiskUsageEntry,
    ImageInfo,
    LsEntry,
    NetworkInfo,
    VolumeInfo,
)
from orchestrator import Orchestrator
from push_channel import ConnectionManager
from utils import BackendUnavailable, NotFound


class FakeProcess:
    """Stands in for asyncio.subprocess.Process"""

    def __init__(self, exit_on_terminate: bool = False):
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode = None
        self.signals: List[str] = []
        self.exit_on_terminate = exit_on_terminate
        self._exited = asyncio.Event()

    def write_stdout(self, data: bytes):
        self.stdout.feed_data(data)

    def write_stderr(self, data: bytes):
        self.stderr.feed_data(data)

    def terminate(self):
        self.signals.append("SIGTERM")
        if self.exit_on_terminate:
            self.exit(143)

    def kill(self):
        self.signals.append("SIGKILL")
        self.exit(-9)

    def exit(self, code: int = 0):
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self):
        await self._exited.wait()
        return self.returncode


class FakeBackend(DockerBackend):
    """In-memory Docker with a tiny bit of state"""

    def __init__(self):
        super().__init__()
        self.installed = True
        self.version = "27.3.1"
        self.images = [ImageInfo(repository="nginx", tag="latest", id="1a2b3c4d5e6f", size=187.0)]
        self.containers = [
            ContainerInfo(
                id="aaaaaaaaaaaa",
                names="web",
                image="nginx:latest",
                status="running",
                ports="0.0.0.0:8080->80/tcp",
            ),
            ContainerInfo(id="bbbbbbbbbbbb", names="db", image="postgres:16", status="exited"),
        ]
        self.networks = [NetworkInfo(id="cccccccccccc", name="bridge", driver="bridge", scope="local")]
        self.volumes = [VolumeInfo(name="data", driver="local", scope="local")]
        self.calls: List[tuple] = []
        self.exec_process: Optional[FakeProcess] = None
        self.exec_error: Optional[Exception] = None
        # when set, stop/remove pretend to succeed without changing anything
        self.ignore_mutations = False

    def _find(self, target: str) -> ContainerInfo:
        for container in self.containers:
            if container.id.startswith(target) or container.names == target:
                return container
        raise NotFound(f"No such container: {target}")

    async def init(self):
        self.calls.append(("init",))

    async def is_installed(self):
        return self.version if self.installed else False

    async def disk_usage(self):
        self.calls.append(("disk_usage",))
        return DiskUsage(images=DiskUsageEntry(total=len(self.images), active=1, size=187.0))

    async def image_list(self):
        self.calls.append(("image_list",))
        return [image.model_copy() for image in self.images]

    async def container_list(self, all_containers=True):
        self.calls.append(("container_list",))
        if not self.installed:
            raise BackendUnavailable()
        return [container.model_copy() for container in self.containers]

    async def network_list(self):
        self.calls.append(("network_list",))
        return [network.model_copy() for network in self.networks]

    async def volume_list(self):
        self.calls.append(("volume_list",))
        return [volume.model_copy() for volume in self.volumes]

    async def image_inspect(self, image):
        return {"RepoTags": [image]}

    async def container_inspect(self, container):
        self.calls.append(("container_inspect", container))
        found = self._find(container)
        return {"Id": found.id, "Name": f"/{found.names}", "State": {"Status": found.status}}

    async def container_logs(self, container, tail=None, follow=False):
        self.calls.append(("container_logs", container, tail, follow))
        return ["line 1", "line 2"]

    async def image_pull(self, image):
        self.calls.append(("image_pull", image))
        repository, _, tag = image.partition(":")
        self.images.append(ImageInfo(repository=repository, tag=tag or "latest", id="9f8e7d6c5b4a"))
        return CommandResult(stdout=f"Pulled {image}")

    async def image_remove(self, image):
        self.calls.append(("image_remove", image))
        self.images = [i for i in self.images if i.reference != image and not i.id.startswith(image)]
        return CommandResult(stdout=f"Untagged: {image}")

    async def image_build(self, dockerfile_path, tag, context="."):
        self.calls.append(("image_build", dockerfile_path, tag, context))
        return CommandResult(stdout="built")

    async def image_tag(self, image, tag):
        self.calls.append(("image_tag", image, tag))
        return CommandResult()

    async def image_prune(self):
        return CommandResult(stdout="Total reclaimed space: 0B")

    async def container_create(self, config):
        self.calls.append(("container_create", config.name))
        self.containers.append(
            ContainerInfo(id="dddddddddddd", names=config.name, image=config.image, status="created")
        )
        return CommandResult(stdout="dddddddddddd")

    async def container_run(self, config):
        self.calls.append(("container_run", config.name))
        self.containers.append(
            ContainerInfo(id="eeeeeeeeeeee", names=config.name, image=config.image, status="running")
        )
        return CommandResult(stdout="eeeeeeeeeeee")

    async def container_start(self, container):
        self.calls.append(("container_start", container))
        if not self.ignore_mutations:
            self._find(container).status = "running"
        return CommandResult(stdout=container)

    async def container_stop(self, container):
        self.calls.append(("container_stop", container))
        if not self.ignore_mutations:
            self._find(container).status = "exited"
        return CommandResult(stdout=container)

    async def container_restart(self, container, timeout=None):
        self.calls.append(("container_restart", container, timeout))
        return CommandResult(stdout=container)

    async def container_remove(self, container):
        self.calls.append(("container_remove", container))
        if not self.ignore_mutations:
            found = self._find(container)
            self.containers = [c for c in self.containers if c is not found]
        return CommandResult(stdout=container)

    async def container_prune(self):
        return CommandResult(stdout="Total reclaimed space: 0B")

    async def container_exec(self, container, command):
        self.calls.append(("container_exec", container, command))
        if self.exec_error:
            raise self.exec_error
        return self.exec_process

    async def network_create(self, name, driver=None):
        self.calls.append(("network_create", name, driver))
        self.networks.append(NetworkInfo(id="ffffffffffff", name=name, driver=driver or "bridge"))
        return CommandResult(stdout="ffffffffffff")

    async def network_remove(self, network):
        self.networks = [n for n in self.networks if n.name != network]
        return CommandResult(stdout=network)

    async def network_prune(self):
        return CommandResult()

    async def volume_create(self, name, driver=None, path=None):
        self.calls.append(("volume_create", name, driver, path))
        self.volumes.append(VolumeInfo(name=name, driver=driver or "local"))
        return CommandResult(stdout=name)

    async def volume_remove(self, volume):
        self.volumes = [v for v in self.volumes if v.name != volume]
        return CommandResult(stdout=volume)

    async def volume_prune(self):
        return CommandResult()

    async def volume_dir(self, volume, path="/"):
        return [LsEntry(name="app.log", permissions="-rw-r--r--", size=12)]

    async def volume_file(self, volume, file_name):
        return "hello"


class RecordingChannel(ConnectionManager):
    """Push channel that remembers what it would have sent"""

    def __init__(self):
        super().__init__()
        self.sent: List[tuple] = []

    async def send(self, client_id, message):
        self.sent.append((client_id, message))
        return True

    async def publish(self, client_ids, message):
        for client_id in client_ids:
            await self.send(client_id, message)

    async def broadcast(self, message):
        self.sent.append(("*", message))

    def messages_for(self, client_id, command=None):
        return [
            message
            for target, message in self.sent
            if target == client_id and (command is None or message.command == command)
        ]


class PushRecorder:
    def __init__(self):
        self.messages: List[tuple] = []

    async def __call__(self, client_id, message):
        self.messages.append((client_id, message))

    def outputs(self, client_id):
        return [message.data for target, message in self.messages if target == client_id]


async def drain(scheduler):
    """Wait until every refresh started by the scheduler has finished"""
    await asyncio.sleep(0)
    while scheduler._fires:
        await asyncio.gather(*list(scheduler._fires), return_exceptions=True)
        await asyncio.sleep(0)


@pytest.fixture
def settings():
    return Settings(
        poll_interval=10.0,
        refresh_debounce=0.05,
        exec_kill_timeout=0.1,
        heartbeat_interval=120000,
    )


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest_asyncio.fixture
async def orchestrator(settings, backend, channel):
    orch = Orchestrator(settings, backend, channel=channel)
    orch.registry.mark_ready()
    yield orch
    await orch.scheduler.stop()
    await orch.exec_sessions.shutdown()
