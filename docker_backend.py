"""
Docker Backend Module

The contract the orchestration engine uses to talk to Docker, plus the
parsing helpers shared by the CLI and the Engine API implementations.

Implementations:
- docker_cli.py: drives the docker binary with asyncio subprocesses
- docker_api.py: talks to a remote Engine API through the docker SDK
"""

import asyncio
import json
import posixpath
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union

from models import (
    CommandResult,
    ContainerConfig,
    ContainerInfo,
    DiskUsage,
    ImageInfo,
    LsEntry,
    NetworkInfo,
    VolumeInfo,
)
from utils import InvalidConfig

SIZE_UNITS = {
    "B": 1,
    "KB": 1024,
    "MB": 1024**2,
    "GB": 1024**3,
    "TB": 1024**4,
    "PB": 1024**5,
}
SIZE_RE = re.compile(r"^([\d.]+)\s*([KMGTP]?B)$", re.IGNORECASE)

# Text files the volume browser may open
VIEWABLE_EXTENSIONS = (
    ".log", ".txt", ".json", ".xml", ".ts", ".js", ".css", ".html", ".md",
    ".yml", ".yaml", ".conf", ".config", ".sh", ".bat", ".cmd", ".ps1",
    ".py", ".java", ".c", ".cpp", ".h", ".ini", ".env", ".csv",
)
MAX_VIEWABLE_SIZE = 512 * 1024
VOLUME_MOUNT_POINT = "/volume"


def parse_size(size_str: str) -> float:
    """Convert docker's human readable sizes ("2.715GB", "0B", "1.2kB") to bytes"""
    if not size_str:
        return 0
    match = SIZE_RE.match(size_str.strip())
    if not match:
        return 0
    return float(match.group(1)) * SIZE_UNITS.get(match.group(2).upper(), 1)


def parse_json_lines(output: str) -> List[Dict[str, Any]]:
    """Parse the output of `--format '{{json .}}'`, one object per line"""
    return [json.loads(line) for line in output.splitlines() if line.strip()]


def container_status(state: str, status: str) -> str:
    if state:
        return state.lower()
    word = status.split(" ", 1)[0].lower() if status else ""
    return "running" if word == "up" else word


def parse_ls_output(output: str) -> List[LsEntry]:
    """Parse `ls -la` output produced inside the volume helper container"""
    entries = []
    for line in output.splitlines():
        parts = line.split(None, 8)
        if len(parts) < 9 or line.startswith("total"):
            continue
        permissions, links, owner, group, size, month, day, time_or_year, name = parts
        is_link = permissions.startswith("l")
        if is_link and " -> " in name:
            name = name.split(" -> ", 1)[0]
        if name in (".", ".."):
            continue
        entries.append(
            LsEntry(
                name=name,
                permissions=permissions,
                links=int(links) if links.isdigit() else None,
                owner=owner,
                group=group,
                size=int(size) if size.isdigit() else 0,
                raw_date=f"{month} {day} {time_or_year}",
                is_dir=permissions.startswith("d"),
                is_link=is_link,
            )
        )
    return entries


def volume_path(path: str) -> str:
    """Map a path inside a volume to the helper container, never escaping the volume"""
    normalized = posixpath.normpath("/" + (path or "/").lstrip("/"))
    if normalized == "/":
        return VOLUME_MOUNT_POINT
    return VOLUME_MOUNT_POINT + normalized


def check_viewable(file_name: str):
    base = posixpath.basename(file_name or "")
    if not base:
        raise InvalidConfig("No file specified")
    if not base.lower().endswith(VIEWABLE_EXTENSIONS) and "." in base.lstrip("."):
        raise InvalidConfig(f"Files of this type cannot be viewed: {base}")


def decode_file(content: bytes, file_name: str) -> str:
    if len(content) > MAX_VIEWABLE_SIZE:
        raise InvalidConfig(f"File {file_name} is too large to be viewed")
    return content.decode("utf-8", errors="replace")


class DockerBackend(ABC):
    """Everything the engine needs from Docker

    Implementations raise BackendUnavailable when Docker cannot be used,
    DockerCommandError when Docker rejects an operation and NotFound when the
    target does not exist.
    """

    def __init__(self):
        self.installed = False
        self.version: Optional[str] = None

    @abstractmethod
    async def init(self) -> None:
        """Detect Docker; called once before any other method"""

    @abstractmethod
    async def is_installed(self) -> Union[str, bool]:
        """Docker version when reachable, else False"""

    async def needs_sudo(self) -> bool:
        return False

    async def close(self) -> None:
        pass

    # --- queries ---

    @abstractmethod
    async def disk_usage(self) -> DiskUsage: ...

    @abstractmethod
    async def image_list(self) -> List[ImageInfo]: ...

    @abstractmethod
    async def container_list(self, all_containers: bool = True) -> List[ContainerInfo]: ...

    @abstractmethod
    async def network_list(self) -> List[NetworkInfo]: ...

    @abstractmethod
    async def volume_list(self) -> List[VolumeInfo]: ...

    @abstractmethod
    async def image_inspect(self, image: str) -> Dict[str, Any]: ...

    @abstractmethod
    async def container_inspect(self, container: str) -> Dict[str, Any]: ...

    @abstractmethod
    async def container_logs(
        self, container: str, tail: Optional[int] = None, follow: bool = False
    ) -> List[str]: ...

    # --- images ---

    @abstractmethod
    async def image_pull(self, image: str) -> CommandResult: ...

    @abstractmethod
    async def image_remove(self, image: str) -> CommandResult: ...

    @abstractmethod
    async def image_build(self, dockerfile_path: str, tag: str, context: str = ".") -> CommandResult: ...

    @abstractmethod
    async def image_tag(self, image: str, tag: str) -> CommandResult: ...

    @abstractmethod
    async def image_prune(self) -> CommandResult: ...

    # --- containers ---

    @abstractmethod
    async def container_create(self, config: ContainerConfig) -> CommandResult: ...

    @abstractmethod
    async def container_run(self, config: ContainerConfig) -> CommandResult: ...

    @abstractmethod
    async def container_start(self, container: str) -> CommandResult: ...

    @abstractmethod
    async def container_stop(self, container: str) -> CommandResult: ...

    @abstractmethod
    async def container_restart(self, container: str, timeout: Optional[int] = None) -> CommandResult: ...

    @abstractmethod
    async def container_remove(self, container: str) -> CommandResult: ...

    @abstractmethod
    async def container_prune(self) -> CommandResult: ...

    @abstractmethod
    async def container_exec(self, container: str, command: str) -> asyncio.subprocess.Process:
        """Spawn an exec process with piped stdout/stderr"""

    # --- networks & volumes ---

    @abstractmethod
    async def network_create(self, name: str, driver: Optional[str] = None) -> CommandResult: ...

    @abstractmethod
    async def network_remove(self, network: str) -> CommandResult: ...

    @abstractmethod
    async def network_prune(self) -> CommandResult: ...

    @abstractmethod
    async def volume_create(
        self, name: str, driver: Optional[str] = None, path: Optional[str] = None
    ) -> CommandResult: ...

    @abstractmethod
    async def volume_remove(self, volume: str) -> CommandResult: ...

    @abstractmethod
    async def volume_prune(self) -> CommandResult: ...

    @abstractmethod
    async def volume_dir(self, volume: str, path: str = "/") -> List[LsEntry]: ...

    @abstractmethod
    async def volume_file(self, volume: str, file_name: str) -> str: ...


def create_backend(settings) -> DockerBackend:
    """CLI backend by default, Engine API backend when an API host is configured"""
    if settings.docker_api:
        from docker_api import ApiDockerBackend

        return ApiDockerBackend(
            settings.docker_api,
            docker_command=settings.docker_command,
            helper_image=settings.volume_helper_image,
            timeout=settings.command_timeout,
        )

    from docker_cli import CliDockerBackend

    return CliDockerBackend(
        docker_command=settings.docker_command,
        helper_image=settings.volume_helper_image,
        timeout=settings.command_timeout,
    )
