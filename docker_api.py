"""
Docker Engine API Backend

Implements the DockerBackend contract against a remote Docker Engine API
using the docker SDK. The SDK is blocking, so every call runs in a worker
thread. Interactive exec sessions still need a real process with pipes, so
they are delegated to the docker CLI pointed at the same daemon.
"""

import asyncio
import json
from datetime import datetime
from operator import attrgetter
from typing import Any, Dict, List, Optional, Union

import docker
from docker.errors import APIError, ContainerError, DockerException
from docker.errors import NotFound as DockerNotFound
from docker.tls import TLSConfig
from docker.types import LogConfig, Mount

from docker_backend import (
    MAX_VIEWABLE_SIZE,
    VOLUME_MOUNT_POINT,
    DockerBackend,
    check_viewable,
    container_status,
    decode_file,
    parse_ls_output,
    volume_path,
)
from docker_cli import CliDockerBackend
from models import (
    CommandResult,
    ContainerConfig,
    ContainerInfo,
    DiskUsage,
    DiskUsageEntry,
    ImageInfo,
    LsEntry,
    NetworkInfo,
    VolumeInfo,
)
from utils import BackendUnavailable, DockerCommandError, InvalidConfig, NotFound, logger


def format_ports(ports: List[Dict[str, Any]]) -> str:
    """Render API port records like `docker ps` does: 0.0.0.0:8080->80/tcp"""
    rendered = []
    for port in ports or []:
        private = f"{port.get('PrivatePort')}/{port.get('Type', 'tcp')}"
        if port.get("PublicPort"):
            rendered.append(f"{port.get('IP', '0.0.0.0')}:{port['PublicPort']}->{private}")
        else:
            rendered.append(private)
    return ", ".join(rendered)


def container_kwargs(config: ContainerConfig) -> Dict[str, Any]:
    """Map a ContainerConfig to docker SDK `containers.create` keyword arguments"""
    if not config.image:
        raise InvalidConfig("ContainerConfig.image is required for docker run")

    kwargs: Dict[str, Any] = {
        "image": config.image,
        "detach": True,
        "tty": config.tty,
        "stdin_open": config.stdin_open,
        "auto_remove": config.remove_on_exit,
        "publish_all_ports": config.publish_all_ports,
    }
    optional = {
        "name": config.name,
        "command": config.command,
        "entrypoint": config.entrypoint,
        "user": config.user,
        "working_dir": config.workdir,
        "hostname": config.hostname,
        "domainname": config.domainname,
        "environment": config.environment,
        "labels": config.labels,
        "network_mode": config.network_mode,
        "dns": config.dns,
        "volumes": config.volumes,
        "sysctls": config.sysctls,
    }
    kwargs.update({key: value for key, value in optional.items() if value})

    if config.env_file:
        logger.warning("env files are not supported by the Engine API backend", files=config.env_file)

    if not config.publish_all_ports and config.ports:
        ports: Dict[str, Any] = {}
        for port in config.ports:
            key = f"{port.container_port}/{port.protocol or 'tcp'}"
            if port.host_ip:
                ports[key] = (port.host_ip, port.host_port)
            else:
                ports[key] = port.host_port
        kwargs["ports"] = ports

    if config.mounts:
        kwargs["mounts"] = [
            Mount(
                target=mount.target,
                source=mount.source or None,
                type=mount.type,
                read_only=mount.read_only,
            )
            for mount in config.mounts
        ]

    if config.restart and config.restart.policy:
        policy = {"Name": config.restart.policy}
        if config.restart.policy == "on-failure" and config.restart.max_retries:
            policy["MaximumRetryCount"] = config.restart.max_retries
        kwargs["restart_policy"] = policy

    if config.logging and config.logging.driver:
        kwargs["log_config"] = LogConfig(
            type=config.logging.driver, config=config.logging.options or {}
        )

    security = config.security
    if security:
        security_opt = []
        if security.no_new_privileges:
            security_opt.append("no-new-privileges")
        if security.seccomp_profile:
            security_opt.append(f"seccomp={security.seccomp_profile}")
        if security.apparmor_profile:
            security_opt.append(f"apparmor={security.apparmor_profile}")
        security_opt += [f"label={label}" for label in security.selinux_labels or []]
        optional = {
            "privileged": security.privileged,
            "cap_add": security.cap_add,
            "cap_drop": security.cap_drop,
            "security_opt": security_opt,
            "device_cgroup_rules": security.device_cgroup_rules,
            "group_add": security.group_add,
            "ipc_mode": security.ipc_mode,
            "pid_mode": security.pid_mode,
            "uts_mode": security.uts_mode,
            "userns_mode": security.userns_mode,
        }
        kwargs.update({key: value for key, value in optional.items() if value})

    if config.extra_hosts:
        hosts = {}
        for host in config.extra_hosts:
            if isinstance(host, str):
                name, _, ip = host.partition(":")
                hosts[name] = ip
            else:
                hosts[host.host] = host.ip
        kwargs["extra_hosts"] = hosts

    if config.stop:
        if config.stop.signal:
            kwargs["stop_signal"] = config.stop.signal
        if config.stop.grace_period_sec is not None:
            logger.warning(
                "stop grace period is not supported by the Engine API backend",
                grace_period_sec=config.stop.grace_period_sec,
            )

    if config.resources:
        if config.resources.cpus:
            kwargs["nano_cpus"] = int(config.resources.cpus * 1e9)
        if config.resources.memory:
            kwargs["mem_limit"] = config.resources.memory

    return kwargs


def _usage_entry(items: List[Dict[str, Any]], size_key: str, active) -> DiskUsageEntry:
    size = sum(item.get(size_key) or 0 for item in items)
    in_use = [item for item in items if active(item)]
    reclaimable = size - sum(item.get(size_key) or 0 for item in in_use)
    return DiskUsageEntry(total=len(items), active=len(in_use), size=size, reclaimable=reclaimable)


class ApiDockerBackend(DockerBackend):
    """Docker through the Engine HTTP API"""

    def __init__(self, api, docker_command: str = "docker", helper_image: str = "busybox:latest", timeout: float = 120.0):
        super().__init__()
        self.api = api
        self.helper_image = helper_image
        self.timeout = timeout
        self.tls = None
        global_args = ["--host", api.base_url]
        if api.protocol == "https":
            client_cert = (api.cert, api.key) if api.cert and api.key else None
            self.tls = TLSConfig(client_cert=client_cert, ca_cert=api.ca, verify=bool(api.ca))
            global_args.append("--tls")
            if api.ca:
                global_args += ["--tlsverify", "--tlscacert", api.ca]
            if client_cert:
                global_args += ["--tlscert", api.cert, "--tlskey", api.key]
        # connected lazily, the SDK negotiates the API version on construction
        self.client: Optional[docker.DockerClient] = None
        self.cli = CliDockerBackend(
            docker_command=docker_command,
            helper_image=helper_image,
            timeout=timeout,
            global_args=global_args,
        )

    def _connect(self) -> docker.DockerClient:
        return docker.DockerClient(base_url=self.api.base_url, tls=self.tls, timeout=int(self.timeout))

    async def _call(self, method: str, *args, **kwargs):
        """Run a client method such as "api.images" in a worker thread"""
        if not self.installed or self.client is None:
            raise BackendUnavailable()
        func = attrgetter(method)(self.client)
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except DockerNotFound as e:
            raise NotFound(str(e.explanation or e))
        except ContainerError as e:
            raise DockerCommandError(
                (e.stderr or b"").decode(errors="replace").strip() or str(e), e.exit_status
            )
        except APIError as e:
            raise DockerCommandError(str(e.explanation or e))
        except (DockerException, OSError) as e:
            self.installed = False
            raise BackendUnavailable(str(e))

    # --- detection ---

    async def init(self) -> None:
        version = await self.is_installed()
        if version:
            logger.info("Docker API reachable", url=self.api.base_url, version=version)
        else:
            logger.warning("Docker API is not reachable", url=self.api.base_url)

    async def is_installed(self) -> Union[str, bool]:
        try:
            if self.client is None:
                self.client = await asyncio.to_thread(self._connect)
            info = await asyncio.to_thread(self.client.version)
        except (DockerException, OSError) as e:
            logger.debug("Docker API check failed", url=self.api.base_url, error=str(e))
            self.installed = False
            return False
        self.version = info.get("Version", "")
        self.installed = True
        # the CLI is only used for exec and shares the detected state
        self.cli.installed = True
        self.cli.version = self.version
        return self.version

    async def close(self) -> None:
        if self.client is not None:
            await asyncio.to_thread(self.client.close)
            self.client = None

    # --- queries ---

    async def disk_usage(self) -> DiskUsage:
        df = await self._call("df")
        usage = DiskUsage(
            images=_usage_entry(df.get("Images") or [], "Size", lambda i: (i.get("Containers") or 0) > 0),
            containers=_usage_entry(
                df.get("Containers") or [], "SizeRw", lambda c: c.get("State") == "running"
            ),
            volumes=_usage_entry(
                [
                    {"Size": (v.get("UsageData") or {}).get("Size", 0), "RefCount": (v.get("UsageData") or {}).get("RefCount", 0)}
                    for v in df.get("Volumes") or []
                ],
                "Size",
                lambda v: v.get("RefCount", 0) > 0,
            ),
            build_cache=_usage_entry(df.get("BuildCache") or [], "Size", lambda b: b.get("InUse")),
        )
        for entry in (usage.images, usage.containers, usage.volumes, usage.build_cache):
            usage.total.size += entry.size
            usage.total.reclaimable += entry.reclaimable
        return usage

    async def image_list(self) -> List[ImageInfo]:
        images = await self._call("api.images")
        result = []
        for image in images:
            created = datetime.fromtimestamp(image.get("Created", 0)).isoformat()
            short_id = image.get("Id", "").split(":")[-1][:12]
            for repo_tag in image.get("RepoTags") or ["<none>:<none>"]:
                repository, _, tag = repo_tag.rpartition(":")
                result.append(
                    ImageInfo(
                        repository=repository,
                        tag=tag,
                        id=short_id,
                        created_since=created,
                        size=image.get("Size", 0),
                    )
                )
        return result

    async def container_list(self, all_containers: bool = True) -> List[ContainerInfo]:
        containers = await self._call("api.containers", all=all_containers)
        return [
            ContainerInfo(
                id=container.get("Id", "")[:12],
                names=",".join(name.lstrip("/") for name in container.get("Names") or []),
                image=container.get("Image", ""),
                command=container.get("Command", ""),
                created_at=datetime.fromtimestamp(container.get("Created", 0)).isoformat(),
                status=container_status(container.get("State", ""), container.get("Status", "")),
                uptime=container.get("Status", "").split(" ", 1)[1] if " " in container.get("Status", "") else "",
                ports=format_ports(container.get("Ports")),
            )
            for container in containers
        ]

    async def network_list(self) -> List[NetworkInfo]:
        networks = await self._call("api.networks")
        return [
            NetworkInfo(
                id=network.get("Id", "")[:12],
                name=network.get("Name", ""),
                driver=network.get("Driver", ""),
                scope=network.get("Scope", ""),
            )
            for network in networks
        ]

    async def volume_list(self) -> List[VolumeInfo]:
        response = await self._call("api.volumes")
        return [
            VolumeInfo(
                name=volume.get("Name", ""),
                driver=volume.get("Driver", ""),
                scope=volume.get("Scope", ""),
                mountpoint=volume.get("Mountpoint", ""),
            )
            for volume in response.get("Volumes") or []
        ]

    async def image_inspect(self, image: str) -> Dict[str, Any]:
        return await self._call("api.inspect_image", image)

    async def container_inspect(self, container: str) -> Dict[str, Any]:
        return await self._call("api.inspect_container", container)

    async def container_logs(
        self, container: str, tail: Optional[int] = None, follow: bool = False
    ) -> List[str]:
        if follow:
            return await self.cli.container_logs(container, tail=tail, follow=True)
        output = await self._call(
            "api.logs", container, tail=tail if tail is not None else "all"
        )
        return [line for line in output.decode(errors="replace").splitlines() if line.strip()]

    # --- images ---

    async def image_pull(self, image: str) -> CommandResult:
        repository, _, tag = image.rpartition(":") if ":" in image.split("/")[-1] else (image, "", "latest")
        output = await self._call("api.pull", repository, tag=tag)
        return CommandResult(stdout=output)

    async def image_remove(self, image: str) -> CommandResult:
        await self._call("api.remove_image", image)
        return CommandResult(stdout=f"Untagged: {image}")

    async def image_build(self, dockerfile_path: str, tag: str, context: str = ".") -> CommandResult:
        _, logs = await self._call("images.build", path=context, dockerfile=dockerfile_path, tag=tag)
        return CommandResult(stdout="".join(entry.get("stream", "") for entry in logs))

    async def image_tag(self, image: str, tag: str) -> CommandResult:
        repository, _, new_tag = tag.rpartition(":") if ":" in tag.split("/")[-1] else (tag, "", None)
        await self._call("api.tag", image, repository, tag=new_tag)
        return CommandResult()

    async def image_prune(self) -> CommandResult:
        return CommandResult(stdout=json.dumps(await self._call("api.prune_images")))

    # --- containers ---

    async def container_create(self, config: ContainerConfig) -> CommandResult:
        kwargs = container_kwargs(config)
        kwargs.pop("detach")
        container = await self._call("containers.create", **kwargs)
        return CommandResult(stdout=container.id)

    async def container_run(self, config: ContainerConfig) -> CommandResult:
        container = await self._call("containers.run", **container_kwargs(config))
        return CommandResult(stdout=container.id)

    async def container_start(self, container: str) -> CommandResult:
        await self._call("api.start", container)
        return CommandResult(stdout=container)

    async def container_stop(self, container: str) -> CommandResult:
        await self._call("api.stop", container)
        return CommandResult(stdout=container)

    async def container_restart(self, container: str, timeout: Optional[int] = None) -> CommandResult:
        await self._call("api.restart", container, timeout=timeout or 5)
        return CommandResult(stdout=container)

    async def container_remove(self, container: str) -> CommandResult:
        await self._call("api.remove_container", container)
        return CommandResult(stdout=container)

    async def container_prune(self) -> CommandResult:
        return CommandResult(stdout=json.dumps(await self._call("api.prune_containers")))

    async def container_exec(self, container: str, command: str) -> asyncio.subprocess.Process:
        if not self.installed:
            raise BackendUnavailable()
        return await self.cli.container_exec(container, command)

    # --- networks & volumes ---

    async def network_create(self, name: str, driver: Optional[str] = None) -> CommandResult:
        response = await self._call("api.create_network", name, driver=driver)
        return CommandResult(stdout=response.get("Id", ""))

    async def network_remove(self, network: str) -> CommandResult:
        await self._call("api.remove_network", network)
        return CommandResult(stdout=network)

    async def network_prune(self) -> CommandResult:
        return CommandResult(stdout=json.dumps(await self._call("api.prune_networks")))

    async def volume_create(
        self, name: str, driver: Optional[str] = None, path: Optional[str] = None
    ) -> CommandResult:
        driver_opts = {"type": "none", "o": "bind", "device": path} if path else None
        response = await self._call(
            "api.create_volume", name, driver=driver, driver_opts=driver_opts
        )
        return CommandResult(stdout=response.get("Name", name))

    async def volume_remove(self, volume: str) -> CommandResult:
        await self._call("api.remove_volume", volume)
        return CommandResult(stdout=volume)

    async def volume_prune(self) -> CommandResult:
        return CommandResult(stdout=json.dumps(await self._call("api.prune_volumes")))

    async def _helper(self, volume: str, command: List[str]) -> bytes:
        return await self._call(
            "containers.run",
            self.helper_image,
            command,
            volumes={volume: {"bind": VOLUME_MOUNT_POINT, "mode": "ro"}},
            network_mode="none",
            remove=True,
            stdout=True,
            stderr=False,
        )

    async def volume_dir(self, volume: str, path: str = "/") -> List[LsEntry]:
        output = await self._helper(volume, ["ls", "-la", volume_path(path)])
        return parse_ls_output(output.decode(errors="replace"))

    async def volume_file(self, volume: str, file_name: str) -> str:
        check_viewable(file_name)
        output = await self._helper(
            volume, ["head", "-c", str(MAX_VIEWABLE_SIZE + 1), volume_path(file_name)]
        )
        return decode_file(output, file_name)
