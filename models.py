from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for everything exchanged with the UI (camelCase on the wire)"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# --- Container configuration ---


class PortBinding(WireModel):
    container_port: Optional[int] = None
    host_port: Optional[int] = None
    host_ip: Optional[str] = None
    protocol: Optional[Literal["tcp", "udp", "sctp"]] = None


class VolumeMount(WireModel):
    type: Optional[str] = None  # bind, volume, tmpfs or npipe
    source: Optional[str] = None
    target: Optional[str] = None
    read_only: bool = False


class RestartPolicy(WireModel):
    policy: Optional[Literal["no", "always", "unless-stopped", "on-failure"]] = None
    max_retries: Optional[int] = None


class LoggingConfig(WireModel):
    driver: Optional[str] = None
    options: Optional[Dict[str, str]] = {}


class SecurityConfig(WireModel):
    privileged: bool = False
    cap_add: Optional[List[str]] = []
    cap_drop: Optional[List[str]] = []
    no_new_privileges: bool = False
    seccomp_profile: Optional[str] = None
    apparmor_profile: Optional[str] = None
    selinux_labels: Optional[List[str]] = []  # e.g. ["level:s0:c100,c200"]
    device_cgroup_rules: Optional[List[str]] = []
    group_add: Optional[List[str]] = []
    ipc_mode: Optional[str] = None
    pid_mode: Optional[str] = None
    uts_mode: Optional[str] = None
    userns_mode: Optional[str] = None


class ResourceLimits(WireModel):
    cpus: Optional[float] = None  # e.g., 0.5
    memory: Optional[str] = None  # e.g., "512m"


class StopConfig(WireModel):
    signal: Optional[str] = None
    grace_period_sec: Optional[int] = None


class ExtraHost(WireModel):
    host: str
    ip: str


class ContainerConfig(WireModel):
    name: Optional[str] = None
    image: Optional[str] = None
    command: Optional[Union[str, List[str]]] = None
    entrypoint: Optional[str] = None
    user: Optional[Union[str, int]] = None
    workdir: Optional[str] = None
    hostname: Optional[str] = None
    domainname: Optional[str] = None
    environment: Optional[Dict[str, str]] = {}
    env_file: Optional[List[str]] = []
    labels: Optional[Dict[str, str]] = {}

    ports: Optional[List[PortBinding]] = []
    publish_all_ports: bool = False
    network_mode: Optional[str] = None
    extra_hosts: Optional[List[Union[str, ExtraHost]]] = []
    dns: Optional[List[str]] = []

    volumes: Optional[List[str]] = []  # legacy "-v" strings, e.g. "/host:/data:ro"
    mounts: Optional[List[VolumeMount]] = []

    restart: Optional[RestartPolicy] = None
    resources: Optional[ResourceLimits] = None
    logging: Optional[LoggingConfig] = None
    security: Optional[SecurityConfig] = None
    sysctls: Optional[Dict[str, str]] = {}
    stop: Optional[StopConfig] = None

    detach: bool = True
    tty: bool = False
    stdin_open: bool = False
    remove_on_exit: bool = False

    # Only used for managed containers started at startup
    enabled: bool = True


# --- Listings ---


class ContainerInfo(WireModel):
    id: str
    names: str = ""
    image: str = ""
    command: str = ""
    created_at: str = ""
    status: str = ""  # running, exited, created, restarting, paused, dead, removing
    uptime: str = ""
    ports: str = ""
    http_links: Optional[Dict[str, List[str]]] = None


class ImageInfo(WireModel):
    repository: str
    tag: str
    id: str
    created_since: str = ""
    size: float = 0

    @property
    def reference(self) -> str:
        return f"{self.repository}:{self.tag}"


class NetworkInfo(WireModel):
    id: str
    name: str
    driver: str = ""
    scope: str = ""


class VolumeInfo(WireModel):
    name: str
    driver: str = ""
    scope: str = ""
    mountpoint: str = ""


class DiskUsageEntry(WireModel):
    total: int = 0
    active: int = 0
    size: float = 0
    reclaimable: float = 0


class DiskUsageTotal(WireModel):
    size: float = 0
    reclaimable: float = 0


class DiskUsage(WireModel):
    images: Optional[DiskUsageEntry] = None
    containers: Optional[DiskUsageEntry] = None
    volumes: Optional[DiskUsageEntry] = None
    build_cache: Optional[DiskUsageEntry] = None
    total: DiskUsageTotal = Field(default_factory=DiskUsageTotal)


class LsEntry(WireModel):
    name: str
    permissions: str
    links: Optional[int] = None
    owner: Optional[str] = None
    group: Optional[str] = None
    size: int = 0
    raw_date: str = ""  # e.g. "Oct 9 14:17" or "Oct 9 2024"
    is_dir: bool = False
    is_link: bool = False


class CommandResult(WireModel):
    stdout: str = ""
    stderr: str = ""


# --- Subscriptions ---


class Topic(str, Enum):
    INFO = "info"
    IMAGES = "images"
    CONTAINERS = "containers"
    CONTAINER = "container"
    NETWORKS = "networks"
    VOLUMES = "volumes"


class SubscribeRequest(WireModel):
    type: Literal["info", "images", "containers", "networks", "volumes", "unsubscribe"]
    container: Optional[str] = None
    command: Optional[str] = None
    terminate: bool = False
    force: bool = False
    ips: Optional[List[str]] = []  # addresses the browser reaches the host with


class SubscribeResult(WireModel):
    accepted: bool
    error: Optional[str] = None
    heartbeat: Optional[int] = None  # milliseconds


# --- Push messages ---


class InfoMessage(WireModel):
    command: Literal["info"] = "info"
    data: Optional[DiskUsage] = None
    version: Optional[str] = None
    error: Optional[str] = None


class ImagesMessage(WireModel):
    command: Literal["images"] = "images"
    data: Optional[List[ImageInfo]] = None
    error: Optional[str] = None


class ContainersMessage(WireModel):
    command: Literal["containers"] = "containers"
    data: Optional[List[ContainerInfo]] = None
    error: Optional[str] = None


class ContainerMessage(WireModel):
    command: Literal["container"] = "container"
    container: str
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class NetworksMessage(WireModel):
    command: Literal["networks"] = "networks"
    data: Optional[List[NetworkInfo]] = None
    error: Optional[str] = None


class VolumesMessage(WireModel):
    command: Literal["volumes"] = "volumes"
    data: Optional[List[VolumeInfo]] = None
    error: Optional[str] = None


class ExecOutput(WireModel):
    container_id: str
    stdout: str = ""
    stderr: str = ""
    code: Optional[int] = None


class ExecMessage(WireModel):
    command: Literal["exec"] = "exec"
    data: ExecOutput
    error: Optional[str] = None


class StoppedMessage(WireModel):
    command: Literal["stopped"] = "stopped"


PushMessage = Annotated[
    Union[
        InfoMessage,
        ImagesMessage,
        ContainersMessage,
        ContainerMessage,
        NetworksMessage,
        VolumesMessage,
        ExecMessage,
        StoppedMessage,
    ],
    Field(discriminator="command"),
]


# --- RPC payloads ---


class ActionResult(WireModel):
    """Normalized answer of every one-shot action"""

    stdout: str = ""
    stderr: str = ""
    result: Optional[Any] = None


class EmptyRequest(WireModel):
    pass


class ImageRequest(WireModel):
    image: str


class ImageBuildRequest(WireModel):
    dockerfile_path: str
    tag: str
    context: str = "."


class ImageTagRequest(WireModel):
    image: str
    tag: str


class IdRequest(WireModel):
    id: str


class ContainerRestartRequest(WireModel):
    id: str
    timeout: Optional[int] = None


class ContainerLogsRequest(WireModel):
    id: str
    tail: Optional[int] = None
    follow: bool = False


class NetworkCreateRequest(WireModel):
    name: str
    driver: Optional[str] = None  # bridge, host, overlay, macvlan, none


class VolumeCreateRequest(WireModel):
    name: str
    driver: Optional[str] = None
    path: Optional[str] = None  # host directory to bind for the local driver


class VolumeDirRequest(WireModel):
    id: str
    path: str = "/"


class VolumeFileRequest(WireModel):
    id: str
    file: str
