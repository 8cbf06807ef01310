"""
Docker CLI Backend

Implements the DockerBackend contract by running the docker binary.
Every invocation goes through create_subprocess_exec with an argument list,
so nothing is ever interpreted by a shell.
"""

import asyncio
import contextlib
import json
import re
import shlex
import sys
from asyncio.subprocess import PIPE
from typing import Any, Dict, List, Optional, Sequence, Union

from command_builder import build_run_args
from docker_backend import (
    MAX_VIEWABLE_SIZE,
    VOLUME_MOUNT_POINT,
    DockerBackend,
    check_viewable,
    container_status,
    decode_file,
    parse_json_lines,
    parse_ls_output,
    parse_size,
    volume_path,
)
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
from utils import BackendUnavailable, DockerCommandError, NotFound, ProcessSpawnFailure, logger

VERSION_RE = re.compile(r"version\s+([\w.\-+]+)", re.IGNORECASE)
FOLLOW_LOGS_SECONDS = 5


class CliDockerBackend(DockerBackend):
    """Docker through the command line client"""

    def __init__(
        self,
        docker_command: str = "docker",
        helper_image: str = "busybox:latest",
        timeout: float = 120.0,
        global_args: Sequence[str] = (),
    ):
        super().__init__()
        self.docker_command = docker_command
        self.helper_image = helper_image
        self.timeout = timeout
        # e.g. ["--host", "tcp://10.0.0.2:2375"] when talking to a remote daemon
        self.global_args = list(global_args)
        self.sudo = False

    def _command_line(self, args: Sequence[str]) -> List[str]:
        prefix = ["sudo"] if self.sudo else []
        return [*prefix, self.docker_command, *self.global_args, *args]

    async def _spawn(self, command_line: List[str], **kwargs) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(*command_line, **kwargs)
        except FileNotFoundError as e:
            raise BackendUnavailable(f"not installed: {e}")

    async def _communicate(self, command_line: List[str], timeout: Optional[float] = None):
        """Run to completion; returns (returncode, stdout, stderr) as bytes"""
        logger.debug("Executing docker command", command=" ".join(command_line))
        process = await self._spawn(command_line, stdout=PIPE, stderr=PIPE)
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=timeout or self.timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise DockerCommandError(f"Command timed out: {' '.join(command_line)}")
        return process.returncode, stdout, stderr

    async def _run(self, command_line: List[str], timeout: Optional[float] = None) -> CommandResult:
        returncode, stdout, stderr = await self._communicate(command_line, timeout=timeout)
        result = CommandResult(
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )
        if returncode != 0:
            raise DockerCommandError(
                result.stderr.strip() or f"docker exited with code {returncode}",
                returncode,
            )
        return result

    async def _docker(self, *args: str, timeout: Optional[float] = None) -> CommandResult:
        if not self.installed:
            raise BackendUnavailable()
        return await self._run(self._command_line(args), timeout=timeout)

    async def _inspect(self, kind: str, target: str) -> Dict[str, Any]:
        try:
            result = await self._docker(kind, "inspect", target)
        except DockerCommandError as e:
            if "no such" in e.message.lower():
                raise NotFound(e.message)
            raise
        data = json.loads(result.stdout or "[]")
        if not data:
            raise NotFound(f"{kind.capitalize()} {target} not found")
        return data[0]

    # --- detection ---

    async def init(self) -> None:
        version = await self.is_installed()
        if version:
            logger.info("Docker detected", version=version, sudo=self.sudo)
        else:
            logger.warning("Docker is not installed or not executable")

    async def is_installed(self) -> Union[str, bool]:
        if self.installed:
            return self.version
        try:
            result = await self._run([self.docker_command, "--version"])
        except (BackendUnavailable, DockerCommandError):
            return False
        match = VERSION_RE.search(result.stdout)
        self.version = match.group(1) if match else result.stdout.strip()
        self.installed = bool(self.version)
        if self.installed:
            self.sudo = await self.needs_sudo()
        return self.version if self.installed else False

    async def needs_sudo(self) -> bool:
        try:
            await self._run([self.docker_command, *self.global_args, "ps"])
            return False
        except (BackendUnavailable, DockerCommandError):
            return True

    # --- queries ---

    async def disk_usage(self) -> DiskUsage:
        result = await self._docker("system", "df", "--format", "{{json .}}")
        usage = DiskUsage()
        for row in parse_json_lines(result.stdout):
            size = parse_size(row.get("Size", ""))
            reclaimable = parse_size(str(row.get("Reclaimable", "")).split(" ")[0])
            usage.total.size += size
            usage.total.reclaimable += reclaimable
            entry = DiskUsageEntry(
                total=int(row.get("TotalCount") or 0),
                active=int(row.get("Active") or 0),
                size=size,
                reclaimable=reclaimable,
            )
            kind = row.get("Type")
            if kind == "Images":
                usage.images = entry
            elif kind == "Containers":
                usage.containers = entry
            elif kind == "Local Volumes":
                usage.volumes = entry
            elif kind == "Build Cache":
                usage.build_cache = entry
        return usage

    async def image_list(self) -> List[ImageInfo]:
        result = await self._docker("images", "--format", "{{json .}}")
        return [
            ImageInfo(
                repository=row.get("Repository", ""),
                tag=row.get("Tag", ""),
                id=row.get("ID", ""),
                created_since=row.get("CreatedSince") or row.get("CreatedAt", ""),
                size=parse_size(row.get("Size", "")),
            )
            for row in parse_json_lines(result.stdout)
        ]

    async def container_list(self, all_containers: bool = True) -> List[ContainerInfo]:
        args = ["ps", "--format", "{{json .}}"]
        if all_containers:
            args.insert(1, "-a")
        result = await self._docker(*args)
        containers = []
        for row in parse_json_lines(result.stdout):
            status_text = row.get("Status", "")
            containers.append(
                ContainerInfo(
                    id=row.get("ID", ""),
                    names=row.get("Names", ""),
                    image=row.get("Image", ""),
                    command=row.get("Command", "").strip('"'),
                    created_at=row.get("CreatedAt", ""),
                    status=container_status(row.get("State", ""), status_text),
                    uptime=status_text.split(" ", 1)[1] if " " in status_text else "",
                    ports=row.get("Ports", ""),
                )
            )
        return containers

    async def network_list(self) -> List[NetworkInfo]:
        result = await self._docker("network", "ls", "--format", "{{json .}}")
        return [
            NetworkInfo(
                id=row.get("ID", ""),
                name=row.get("Name", ""),
                driver=row.get("Driver", ""),
                scope=row.get("Scope", ""),
            )
            for row in parse_json_lines(result.stdout)
        ]

    async def volume_list(self) -> List[VolumeInfo]:
        result = await self._docker("volume", "ls", "--format", "{{json .}}")
        return [
            VolumeInfo(
                name=row.get("Name", ""),
                driver=row.get("Driver", ""),
                scope=row.get("Scope", ""),
                mountpoint=row.get("Mountpoint", ""),
            )
            for row in parse_json_lines(result.stdout)
        ]

    async def image_inspect(self, image: str) -> Dict[str, Any]:
        return await self._inspect("image", image)

    async def container_inspect(self, container: str) -> Dict[str, Any]:
        return await self._inspect("container", container)

    async def container_logs(
        self, container: str, tail: Optional[int] = None, follow: bool = False
    ) -> List[str]:
        args = ["logs"]
        if tail is not None:
            args += ["--tail", str(tail)]
        if follow:
            return await self._follow_logs([*args, "--follow", container])
        args.append(container)
        result = await self._docker(*args)
        # docker logs writes the container's stderr to its own stderr
        return [line for line in (result.stdout + result.stderr).splitlines() if line.strip()]

    async def _follow_logs(self, args: List[str]) -> List[str]:
        """Collect followed logs for a few seconds, then stop following"""
        if not self.installed:
            raise BackendUnavailable()
        process = await self._spawn(
            self._command_line(args), stdout=PIPE, stderr=asyncio.subprocess.STDOUT
        )
        lines: List[str] = []

        async def collect():
            async for line in process.stdout:
                text = line.decode(errors="replace").rstrip("\n")
                if text.strip():
                    lines.append(text)

        try:
            await asyncio.wait_for(collect(), timeout=FOLLOW_LOGS_SECONDS)
        except asyncio.TimeoutError:
            pass
        finally:
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
            await process.wait()
        return lines

    # --- images ---

    async def image_pull(self, image: str) -> CommandResult:
        return await self._docker("pull", image)

    async def image_remove(self, image: str) -> CommandResult:
        return await self._docker("rmi", image)

    async def image_build(self, dockerfile_path: str, tag: str, context: str = ".") -> CommandResult:
        return await self._docker("build", "-t", tag, "-f", dockerfile_path, context)

    async def image_tag(self, image: str, tag: str) -> CommandResult:
        return await self._docker("tag", image, tag)

    async def image_prune(self) -> CommandResult:
        return await self._docker("image", "prune", "-f")

    # --- containers ---

    async def container_create(self, config: ContainerConfig) -> CommandResult:
        return await self._docker("create", *build_run_args(config, for_create=True))

    async def container_run(self, config: ContainerConfig) -> CommandResult:
        return await self._docker("run", *build_run_args(config))

    async def container_start(self, container: str) -> CommandResult:
        return await self._docker("start", container)

    async def container_stop(self, container: str) -> CommandResult:
        return await self._docker("stop", container)

    async def container_restart(self, container: str, timeout: Optional[int] = None) -> CommandResult:
        return await self._docker("restart", "-t", str(timeout or 5), container)

    async def container_remove(self, container: str) -> CommandResult:
        return await self._docker("rm", container)

    async def container_prune(self) -> CommandResult:
        return await self._docker("container", "prune", "-f")

    async def container_exec(self, container: str, command: str) -> asyncio.subprocess.Process:
        if not self.installed:
            raise BackendUnavailable()
        args = ["exec"]
        # allocate a TTY only when this process has one
        if sys.stdin.isatty() and sys.stdout.isatty():
            args.append("-t")
        args.append(container)
        try:
            args += shlex.split(command)
        except ValueError as e:
            raise ProcessSpawnFailure(f"Cannot parse command: {e}")
        command_line = self._command_line(args)
        logger.debug("Spawning exec", command=" ".join(command_line))
        try:
            return await asyncio.create_subprocess_exec(
                *command_line, stdin=PIPE, stdout=PIPE, stderr=PIPE
            )
        except OSError as e:
            raise ProcessSpawnFailure(str(e))

    # --- networks & volumes ---

    async def network_create(self, name: str, driver: Optional[str] = None) -> CommandResult:
        args = ["network", "create"]
        if driver:
            args += ["--driver", driver]
        return await self._docker(*args, name)

    async def network_remove(self, network: str) -> CommandResult:
        return await self._docker("network", "rm", network)

    async def network_prune(self) -> CommandResult:
        return await self._docker("network", "prune", "-f")

    async def volume_create(
        self, name: str, driver: Optional[str] = None, path: Optional[str] = None
    ) -> CommandResult:
        args = ["volume", "create"]
        if driver:
            args += ["--driver", driver]
        if path:
            args += ["--opt", "type=none", "--opt", "o=bind", "--opt", f"device={path}"]
        return await self._docker(*args, name)

    async def volume_remove(self, volume: str) -> CommandResult:
        return await self._docker("volume", "rm", volume)

    async def volume_prune(self) -> CommandResult:
        return await self._docker("volume", "prune", "-f")

    def _helper_args(self, volume: str, *command: str) -> List[str]:
        return [
            "run",
            "--rm",
            "--network",
            "none",
            "-v",
            f"{volume}:{VOLUME_MOUNT_POINT}:ro",
            self.helper_image,
            *command,
        ]

    async def volume_dir(self, volume: str, path: str = "/") -> List[LsEntry]:
        result = await self._docker(*self._helper_args(volume, "ls", "-la", volume_path(path)))
        return parse_ls_output(result.stdout)

    async def volume_file(self, volume: str, file_name: str) -> str:
        check_viewable(file_name)
        if not self.installed:
            raise BackendUnavailable()
        # read one byte past the limit to detect oversized files
        command_line = self._command_line(
            self._helper_args(
                volume, "head", "-c", str(MAX_VIEWABLE_SIZE + 1), volume_path(file_name)
            )
        )
        returncode, stdout, stderr = await self._communicate(command_line)
        if returncode != 0:
            raise DockerCommandError(stderr.decode(errors="replace").strip(), returncode)
        return decode_file(stdout, file_name)
