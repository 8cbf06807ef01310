"""
Orchestrator

Composition root of the engine: wires the subscription registry to the
polling scheduler, turns poll fires into pushes, dispatches one-shot RPC
commands and routes exec requests to the session manager.

Mutating Docker operations go through PushingOperations, which wraps the
backend and republishes the affected listing after every successful action,
so subscribers do not have to wait for the next poll.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError

from command_builder import validate_container_config
from docker_hub import DockerHubClient
from exec_sessions import ExecSessionManager
from http_links import HttpLinkProber
from models import (
    ActionResult,
    CommandResult,
    ContainerConfig,
    ContainerInfo,
    ContainerLogsRequest,
    ContainerMessage,
    ContainerRestartRequest,
    ContainersMessage,
    EmptyRequest,
    IdRequest,
    ImageBuildRequest,
    ImageInfo,
    ImageRequest,
    ImagesMessage,
    ImageTagRequest,
    InfoMessage,
    NetworkCreateRequest,
    NetworkInfo,
    NetworksMessage,
    StoppedMessage,
    SubscribeRequest,
    SubscribeResult,
    Topic,
    VolumeCreateRequest,
    VolumeDirRequest,
    VolumeFileRequest,
    VolumeInfo,
    VolumesMessage,
    WireModel,
)
from polling_scheduler import PollingScheduler
from push_channel import ConnectionManager
from subscription_registry import DemandSnapshot, PollKey, SubscriptionRegistry
from utils import (
    BackendUnavailable,
    DockerManagerException,
    InvalidConfig,
    NotFound,
    PostconditionFailed,
    StillActive,
    UnknownCommand,
    log_docker_operation,
    logger,
)

LISTING_MESSAGES = {
    Topic.IMAGES: ImagesMessage,
    Topic.CONTAINERS: ContainersMessage,
    Topic.NETWORKS: NetworksMessage,
    Topic.VOLUMES: VolumesMessage,
}

ListingPublisher = Callable[[Topic, list], Awaitable[None]]


def normalize_image(reference: str) -> str:
    """'nginx' -> 'nginx:latest', 'docker.io/library/redis:7' -> 'redis:7'"""
    name = reference.strip()
    for prefix in ("docker.io/library/", "docker.io/"):
        if name.startswith(prefix):
            name = name[len(prefix):]
            break
    if "@" not in name and ":" not in name.rsplit("/", 1)[-1]:
        name += ":latest"
    return name


def id_matches(object_id: str, target: str) -> bool:
    if target.startswith("sha256:"):
        target = target[len("sha256:"):]
    if not object_id or len(target) < 4:
        return False
    return object_id.startswith(target) or target.startswith(object_id)


def image_matches(image: ImageInfo, target: str) -> bool:
    return image.reference == normalize_image(target) or id_matches(image.id, target)


def container_matches(container: ContainerInfo, target: str) -> bool:
    return id_matches(container.id, target) or target.lstrip("/") in container.names.split(",")


def network_matches(network: NetworkInfo, target: str) -> bool:
    return network.name == target or id_matches(network.id, target)


def volume_matches(volume: VolumeInfo, target: str) -> bool:
    return volume.name == target


MATCHERS = {
    Topic.IMAGES: image_matches,
    Topic.CONTAINERS: container_matches,
    Topic.NETWORKS: network_matches,
    Topic.VOLUMES: volume_matches,
}
KINDS = {
    Topic.IMAGES: "Image",
    Topic.CONTAINERS: "Container",
    Topic.NETWORKS: "Network",
    Topic.VOLUMES: "Volume",
}


class PushingOperations:
    """Mutating backend operations that publish the fresh listing afterwards

    Targets are resolved against the current listing first (NotFound when
    absent). After the action the listing is fetched again, published to
    the topic's subscribers and checked for the expected state.
    """

    def __init__(self, backend, publish: ListingPublisher):
        self.backend = backend
        self.publish = publish

    async def listing(self, topic: Topic) -> list:
        if topic is Topic.IMAGES:
            return await self.backend.image_list()
        if topic is Topic.CONTAINERS:
            return await self.backend.container_list()
        if topic is Topic.NETWORKS:
            return await self.backend.network_list()
        if topic is Topic.VOLUMES:
            return await self.backend.volume_list()
        raise ValueError(f"No listing for {topic}")

    @staticmethod
    def find(topic: Topic, listing: list, target: str):
        matches = MATCHERS[topic]
        return next((entry for entry in listing if matches(entry, target)), None)

    async def resolve(self, topic: Topic, target: str):
        entry = self.find(topic, await self.listing(topic), target)
        if entry is None:
            raise NotFound(f"{KINDS[topic]} {target} not found")
        return entry

    async def _mutate(
        self,
        operation: str,
        topic: Topic,
        action: Callable[[], Awaitable[CommandResult]],
        target: Optional[str] = None,
        check: Optional[Callable[[list], None]] = None,
    ) -> CommandResult:
        if target is not None:
            await self.resolve(topic, target)

        try:
            result = await action()
        except DockerManagerException as e:
            log_docker_operation(operation, target or "", "failed", {"error": e.message})
            raise
        log_docker_operation(operation, target or "", "success")

        try:
            listing = await self.listing(topic)
        except DockerManagerException as e:
            logger.warning("Cannot refresh listing after operation", operation=operation, error=e.message)
            return result

        await self.publish(topic, listing)
        if check:
            check(listing)
        return result

    # --- images ---

    async def image_pull(self, image: str) -> CommandResult:
        def check(images):
            if self.find(Topic.IMAGES, images, image) is None:
                raise PostconditionFailed(f"Image {image} not found after pull")

        return await self._mutate(
            "image_pull", Topic.IMAGES, lambda: self.backend.image_pull(image), check=check
        )

    async def image_remove(self, image: str) -> CommandResult:
        def check(images):
            if self.find(Topic.IMAGES, images, image) is not None:
                raise PostconditionFailed(f"Image {image} still found after remove")

        return await self._mutate(
            "image_remove", Topic.IMAGES, lambda: self.backend.image_remove(image), target=image, check=check
        )

    async def image_build(self, dockerfile_path: str, tag: str, context: str = ".") -> CommandResult:
        return await self._mutate(
            "image_build", Topic.IMAGES, lambda: self.backend.image_build(dockerfile_path, tag, context)
        )

    async def image_tag(self, image: str, tag: str) -> CommandResult:
        return await self._mutate(
            "image_tag", Topic.IMAGES, lambda: self.backend.image_tag(image, tag), target=image
        )

    async def image_prune(self) -> CommandResult:
        return await self._mutate("image_prune", Topic.IMAGES, self.backend.image_prune)

    # --- containers ---

    async def container_run(self, config: ContainerConfig) -> CommandResult:
        validate_container_config(config)
        return await self._mutate(
            "container_run", Topic.CONTAINERS, lambda: self.backend.container_run(config)
        )

    async def container_create(self, config: ContainerConfig) -> CommandResult:
        validate_container_config(config)
        return await self._mutate(
            "container_create", Topic.CONTAINERS, lambda: self.backend.container_create(config)
        )

    async def container_start(self, container: str) -> CommandResult:
        def check(containers):
            found = self.find(Topic.CONTAINERS, containers, container)
            if found is None or found.status != "running":
                raise PostconditionFailed(f"Container {container} is not running after start")

        return await self._mutate(
            "container_start",
            Topic.CONTAINERS,
            lambda: self.backend.container_start(container),
            target=container,
            check=check,
        )

    async def container_stop(self, container: str) -> CommandResult:
        def check(containers):
            found = self.find(Topic.CONTAINERS, containers, container)
            if found is not None and found.status == "running":
                raise StillActive(f"Container {container} is still running after stop")

        return await self._mutate(
            "container_stop",
            Topic.CONTAINERS,
            lambda: self.backend.container_stop(container),
            target=container,
            check=check,
        )

    async def container_restart(self, container: str, timeout: Optional[int] = None) -> CommandResult:
        return await self._mutate(
            "container_restart",
            Topic.CONTAINERS,
            lambda: self.backend.container_restart(container, timeout),
            target=container,
        )

    async def container_remove(self, container: str) -> CommandResult:
        def check(containers):
            if self.find(Topic.CONTAINERS, containers, container) is not None:
                raise PostconditionFailed(f"Container {container} still found after remove")

        return await self._mutate(
            "container_remove",
            Topic.CONTAINERS,
            lambda: self.backend.container_remove(container),
            target=container,
            check=check,
        )

    async def container_prune(self) -> CommandResult:
        return await self._mutate("container_prune", Topic.CONTAINERS, self.backend.container_prune)

    # --- networks ---

    async def network_create(self, name: str, driver: Optional[str] = None) -> CommandResult:
        return await self._mutate(
            "network_create", Topic.NETWORKS, lambda: self.backend.network_create(name, driver)
        )

    async def network_remove(self, network: str) -> CommandResult:
        def check(networks):
            if self.find(Topic.NETWORKS, networks, network) is not None:
                raise PostconditionFailed(f"Network {network} still found after remove")

        return await self._mutate(
            "network_remove",
            Topic.NETWORKS,
            lambda: self.backend.network_remove(network),
            target=network,
            check=check,
        )

    async def network_prune(self) -> CommandResult:
        return await self._mutate("network_prune", Topic.NETWORKS, self.backend.network_prune)

    # --- volumes ---

    async def volume_create(
        self, name: str, driver: Optional[str] = None, path: Optional[str] = None
    ) -> CommandResult:
        return await self._mutate(
            "volume_create", Topic.VOLUMES, lambda: self.backend.volume_create(name, driver, path)
        )

    async def volume_remove(self, volume: str) -> CommandResult:
        def check(volumes):
            if self.find(Topic.VOLUMES, volumes, volume) is not None:
                raise PostconditionFailed(f"Volume {volume} still found after remove")

        return await self._mutate(
            "volume_remove",
            Topic.VOLUMES,
            lambda: self.backend.volume_remove(volume),
            target=volume,
            check=check,
        )

    async def volume_prune(self) -> CommandResult:
        return await self._mutate("volume_prune", Topic.VOLUMES, self.backend.volume_prune)


def to_result(value: Any) -> Any:
    if isinstance(value, WireModel):
        return value.to_wire()
    if isinstance(value, list):
        return [to_result(item) for item in value]
    return value


class Orchestrator:
    """Wires registry, scheduler, exec sessions and the push channel together"""

    def __init__(
        self,
        settings,
        backend,
        channel: Optional[ConnectionManager] = None,
        hub: Optional[DockerHubClient] = None,
        prober: Optional[HttpLinkProber] = None,
    ):
        self.settings = settings
        self.backend = backend
        self.channel = channel or ConnectionManager()
        self.hub = hub or DockerHubClient()
        api_host = settings.docker_api.host if settings.docker_api else None
        self.prober = prober or HttpLinkProber(api_host=api_host)

        self.registry = SubscriptionRegistry(
            heartbeat_interval=settings.heartbeat_interval, on_change=self._on_demand_change
        )
        self.scheduler = PollingScheduler(
            self.refresh, interval=settings.poll_interval, debounce=settings.refresh_debounce
        )
        self.exec_sessions = ExecSessionManager(
            backend, self.channel.send, kill_timeout=settings.exec_kill_timeout
        )
        self.operations = PushingOperations(backend, self.publish_listing)
        self.commands = self._command_table()
        self.channel.on_disconnect = self.handle_disconnect
        self._sweeper: Optional[asyncio.Task] = None

    def _command_table(self) -> Dict[str, Tuple[Type[BaseModel], Callable[[Any], Awaitable[Any]]]]:
        backend = self.backend
        ops = self.operations
        return {
            "info": (EmptyRequest, lambda req: self.info()),
            # images
            "image:pull": (ImageRequest, lambda req: ops.image_pull(req.image)),
            "image:inspect": (ImageRequest, lambda req: backend.image_inspect(req.image)),
            "image:remove": (ImageRequest, lambda req: ops.image_remove(req.image)),
            "image:list": (EmptyRequest, lambda req: backend.image_list()),
            "image:build": (
                ImageBuildRequest,
                lambda req: ops.image_build(req.dockerfile_path, req.tag, req.context),
            ),
            "image:tag": (ImageTagRequest, lambda req: ops.image_tag(req.image, req.tag)),
            "image:prune": (EmptyRequest, lambda req: ops.image_prune()),
            "image:tags": (ImageRequest, lambda req: self.hub.tags(req.image)),
            "image:autocomplete": (ImageRequest, lambda req: self.hub.search(req.image)),
            # containers
            "container:run": (ContainerConfig, ops.container_run),
            "container:create": (ContainerConfig, ops.container_create),
            "container:stop": (IdRequest, lambda req: ops.container_stop(req.id)),
            "container:start": (IdRequest, lambda req: ops.container_start(req.id)),
            "container:restart": (
                ContainerRestartRequest,
                lambda req: ops.container_restart(req.id, req.timeout),
            ),
            "container:remove": (IdRequest, lambda req: ops.container_remove(req.id)),
            "container:prune": (EmptyRequest, lambda req: ops.container_prune()),
            "container:inspect": (IdRequest, lambda req: backend.container_inspect(req.id)),
            "container:logs": (
                ContainerLogsRequest,
                lambda req: backend.container_logs(req.id, tail=req.tail, follow=req.follow),
            ),
            "container:list": (EmptyRequest, lambda req: backend.container_list()),
            # networks
            "network:create": (NetworkCreateRequest, lambda req: ops.network_create(req.name, req.driver)),
            "network:remove": (IdRequest, lambda req: ops.network_remove(req.id)),
            "network:prune": (EmptyRequest, lambda req: ops.network_prune()),
            "network:list": (EmptyRequest, lambda req: backend.network_list()),
            # volumes
            "volume:create": (
                VolumeCreateRequest,
                lambda req: ops.volume_create(req.name, req.driver, req.path),
            ),
            "volume:remove": (IdRequest, lambda req: ops.volume_remove(req.id)),
            "volume:prune": (EmptyRequest, lambda req: ops.volume_prune()),
            "volume:list": (EmptyRequest, lambda req: backend.volume_list()),
            "volume:dir": (VolumeDirRequest, lambda req: backend.volume_dir(req.id, req.path)),
            "volume:file": (VolumeFileRequest, lambda req: backend.volume_file(req.id, req.file)),
        }

    # --- RPC ---

    async def dispatch(self, command: str, payload: Optional[Dict[str, Any]] = None) -> ActionResult:
        """Run one RPC command; failures come back as stderr, never as exceptions

        Only an unknown command name raises (UnknownCommand).
        """
        entry = self.commands.get(command)
        if entry is None:
            raise UnknownCommand(command)
        request_model, handler = entry

        try:
            request = request_model.model_validate(payload or {})
        except ValidationError as e:
            message = "; ".join(
                f"{'.'.join(str(part) for part in error['loc']) or 'payload'}: {error['msg']}"
                for error in e.errors()
            )
            return self._failure(command, InvalidConfig(f"Invalid payload: {message}"))

        try:
            outcome = await handler(request)
        except DockerManagerException as e:
            return self._failure(command, e)
        except Exception as e:
            logger.error("Unexpected error in command", command=command, error=str(e), exc_info=True)
            return ActionResult(stdout="", stderr=str(e) or type(e).__name__)

        if isinstance(outcome, ActionResult):
            return outcome
        if isinstance(outcome, CommandResult):
            return ActionResult(stdout=outcome.stdout, stderr=outcome.stderr)
        return ActionResult(result=to_result(outcome))

    def _failure(self, command: str, error: DockerManagerException) -> ActionResult:
        logger.warning("Command failed", command=command, error_code=error.error_code, error=error.message)
        return ActionResult(stdout="", stderr=error.message)

    async def info(self) -> Dict[str, Any]:
        version = await self.backend.is_installed()
        if not version:
            raise BackendUnavailable()
        usage = await self.backend.disk_usage()
        return {"version": version, "diskUsage": usage.to_wire()}

    # --- subscriptions ---

    async def handle_subscribe(self, client_id: str, request: SubscribeRequest) -> SubscribeResult:
        if request.type == "unsubscribe":
            self.registry.unsubscribe(client_id)
            self.exec_sessions.terminate(client_id, suppress_output=True)
            return SubscribeResult(accepted=True)

        topic = Topic(request.type)
        container_id = None
        if topic is Topic.CONTAINERS and request.container:
            topic = Topic.CONTAINER
            container_id = request.container

        result = self.registry.subscribe(client_id, topic, container_id, request.ips)
        if not result.accepted or not request.container:
            return result

        if request.terminate or request.force:
            self.exec_sessions.terminate(client_id, force=request.force)
        elif request.command:
            await self.exec_sessions.start(client_id, request.container, request.command)
        return result

    async def handle_disconnect(self, client_id: str):
        self.registry.unsubscribe(client_id)
        self.exec_sessions.terminate(client_id, suppress_output=True)
        self.channel.disconnect(client_id)

    def _on_demand_change(self, snapshot: DemandSnapshot, changed: Optional[PollKey]):
        self.scheduler.apply_demand(snapshot, changed)

    # --- polling ---

    async def refresh(self, key: PollKey):
        """One poll fire: fetch the data for key and push it to its subscribers"""
        version = await self.backend.is_installed()
        if not version:
            message = self._error_message(key, BackendUnavailable().message)
        else:
            try:
                message = await self._fetch(key)
            except DockerManagerException as e:
                logger.warning("Poll fetch failed", key=str(key), error=e.message)
                message = self._error_message(key, e.message)
            except Exception as e:
                logger.error("Poll fetch failed", key=str(key), error=str(e))
                message = self._error_message(key, str(e))
        await self.channel.publish(self.registry.subscribers_for(key), message)

    async def _fetch(self, key: PollKey) -> WireModel:
        topic = key.topic
        if topic is Topic.INFO:
            return InfoMessage(data=await self.backend.disk_usage(), version=self.backend.version)
        if topic is Topic.CONTAINER:
            return ContainerMessage(
                container=key.container_id,
                data=await self.backend.container_inspect(key.container_id),
            )
        listing = await self.operations.listing(topic)
        if topic is Topic.CONTAINERS:
            await self.prober.attach(listing, self.registry.browser_ips(key))
        return LISTING_MESSAGES[topic](data=listing)

    @staticmethod
    def _error_message(key: PollKey, error: str) -> WireModel:
        if key.topic is Topic.INFO:
            return InfoMessage(error=error)
        if key.topic is Topic.CONTAINER:
            return ContainerMessage(container=key.container_id, error=error)
        return LISTING_MESSAGES[key.topic](error=error)

    async def publish_listing(self, topic: Topic, listing: list):
        key = PollKey(topic)
        subscribers = self.registry.subscribers_for(key)
        if not subscribers:
            return
        if topic is Topic.CONTAINERS:
            await self.prober.attach(listing, self.registry.browser_ips(key))
        await self.channel.publish(subscribers, LISTING_MESSAGES[topic](data=listing))

    # --- lifecycle ---

    async def start_managed_containers(self):
        """Make sure every enabled managed container exists and runs"""
        managed = [config for config in self.settings.managed_containers if config.enabled]
        if not managed:
            return
        images = await self.backend.image_list()
        containers = await self.backend.container_list()

        for config in managed:
            try:
                validate_container_config(config)
                if not any(image_matches(image, config.image) for image in images):
                    logger.info("Pulling image of managed container", name=config.name, image=config.image)
                    await self.backend.image_pull(config.image)
                existing = next((c for c in containers if container_matches(c, config.name)), None)
                if existing is None:
                    logger.info("Creating managed container", name=config.name)
                    await self.backend.container_run(config)
                elif existing.status != "running":
                    logger.info("Starting managed container", name=config.name, status=existing.status)
                    await self.backend.container_start(existing.id)
            except DockerManagerException as e:
                logger.error("Cannot start managed container", name=config.name, error=e.message)

    async def startup(self):
        await self.backend.init()
        if self.backend.installed:
            try:
                await self.start_managed_containers()
            except DockerManagerException as e:
                logger.error("Managed containers check failed", error=e.message)
        self.registry.mark_ready()
        self._sweeper = asyncio.create_task(self._sweep_heartbeats())
        logger.info("Orchestrator ready", docker=self.backend.version or "not installed")

    async def shutdown(self):
        logger.info("Stopping orchestrator")
        await self.channel.broadcast(StoppedMessage())
        if self._sweeper:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
        await self.scheduler.stop()
        await self.exec_sessions.shutdown()
        await self.prober.close()
        await self.backend.close()
        await self.channel.close_all()

    async def _sweep_heartbeats(self):
        period = max(self.settings.heartbeat_interval / 4000, 1.0)
        while True:
            await asyncio.sleep(period)
            for client_id in self.registry.expire():
                self.exec_sessions.terminate(client_id, suppress_output=True)
                self.channel.disconnect(client_id)

    def status(self) -> Dict[str, int]:
        return {
            "clients": len(self.registry.client_ids()),
            "pollers": len(self.scheduler.keys),
            "exec_sessions": len(self.exec_sessions),
        }
