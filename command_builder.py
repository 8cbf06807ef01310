"""
Command Line Builder Module

Turns a structured ContainerConfig into the argument list of a
`docker run` / `docker create` invocation, and validates a configuration
before anything is sent to Docker.

The argument list is meant for create_subprocess_exec, never for a shell,
so values are passed through verbatim as single arguments.
"""

import re
from typing import List

from models import ContainerConfig
from utils import InvalidConfig

MOUNT_TYPES = ("bind", "volume", "tmpfs", "npipe")
VOLUME_NAME_RE = re.compile(r"^[/a-zA-Z0-9_.-]+$")
NPIPE_RE = re.compile(r"^\\\\\.\\pipe\\[a-zA-Z0-9_.-]+$")


def _validate_mounts(config: ContainerConfig):
    for mount in config.mounts or []:
        if not mount.target:
            raise InvalidConfig("Please enter a container path for all mounts")
        if not mount.type:
            raise InvalidConfig("Please select a mount type for all mounts")
        if mount.type == "bind":
            if not mount.source:
                raise InvalidConfig("Please enter a host path for all bind mounts")
        elif mount.type == "volume":
            if not mount.source:
                raise InvalidConfig("Please enter a volume name for all volume mounts")
            if not VOLUME_NAME_RE.match(mount.source):
                raise InvalidConfig(
                    'Volume names may only contain alphanumeric characters, "-", "_" and "."'
                )
        elif mount.type == "tmpfs":
            if mount.source:
                raise InvalidConfig("Source must be empty for tmpfs mounts")
        elif mount.type == "npipe":
            if mount.source and not NPIPE_RE.match(mount.source):
                raise InvalidConfig(
                    "Please enter a valid Windows pipe path for all npipe mounts"
                )
        else:
            raise InvalidConfig(f"Invalid mount type: {mount.type}")


def _validate_ports(config: ContainerConfig):
    if config.publish_all_ports:
        return

    container_ports = set()
    host_ports = set()
    for port in config.ports or []:
        if not port.container_port:
            raise InvalidConfig(
                'Please enter a container port for all port mappings or enable "Publish all ports"'
            )
        if not 1 <= port.container_port <= 65535:
            raise InvalidConfig("Please enter a valid container port (1-65535)")
        if port.container_port in container_ports:
            raise InvalidConfig("Container ports must be unique")
        container_ports.add(port.container_port)

        if port.host_port:
            if not 1 <= port.host_port <= 65535:
                raise InvalidConfig("Please enter a valid host port (1-65535)")
            if port.host_port in host_ports:
                raise InvalidConfig("Host ports must be unique")
            host_ports.add(port.host_port)


def validate_container_config(config: ContainerConfig, require_name: bool = True):
    """Raise InvalidConfig for the first rule the configuration breaks"""
    if require_name and not config.name:
        raise InvalidConfig("Please enter a container name")
    if not config.image:
        raise InvalidConfig("Please select an image")
    for key in config.environment or {}:
        if not key or not key.strip():
            raise InvalidConfig("Environment variable names cannot be empty")
    _validate_mounts(config)
    _validate_ports(config)


def format_port(port) -> str:
    """[hostIP:][hostPort:]containerPort[/protocol]"""
    mapping = ""
    if port.host_ip:
        mapping += f"{port.host_ip}:"
    if port.host_port:
        mapping += f"{port.host_port}:"
    mapping += str(port.container_port)
    if port.protocol:
        mapping += f"/{port.protocol}"
    return mapping


def format_mount(mount) -> str:
    value = f"type={mount.type},target={mount.target}"
    if mount.source:
        value += f",source={mount.source}"
    if mount.read_only:
        value += ",readonly"
    return value


def build_run_args(config: ContainerConfig, for_create: bool = False) -> List[str]:
    """Map a ContainerConfig to docker run/create arguments

    The same configuration always produces the same list. Only a missing
    image is an error; every other unset field is simply left out.
    `docker create` has no detach flag, so it is dropped when for_create is set.
    """
    args: List[str] = []

    # run mode
    if config.detach and not for_create:
        args.append("-d")
    if config.tty:
        args.append("-t")
    if config.stdin_open:
        args.append("-i")
    if config.remove_on_exit:
        args.append("--rm")

    if config.name:
        args += ["--name", config.name]

    if config.hostname:
        args += ["--hostname", config.hostname]
    if config.domainname:
        args += ["--domainname", config.domainname]

    for key, value in (config.environment or {}).items():
        args += ["-e", f"{key}={value}"]
    for env_file in config.env_file or []:
        args += ["--env-file", env_file]

    for key, value in (config.labels or {}).items():
        args += ["--label", f"{key}={value}"]

    if config.publish_all_ports:
        args.append("-P")
    else:
        for port in config.ports or []:
            args += ["-p", format_port(port)]

    for volume in config.volumes or []:
        args += ["-v", volume]
    for mount in config.mounts or []:
        args += ["--mount", format_mount(mount)]

    if config.restart and config.restart.policy:
        policy = config.restart.policy
        if policy == "on-failure" and config.restart.max_retries:
            policy = f"on-failure:{config.restart.max_retries}"
        args += ["--restart", policy]

    if config.user is not None and config.user != "":
        args += ["--user", str(config.user)]
    if config.workdir:
        args += ["--workdir", config.workdir]

    if config.logging and config.logging.driver:
        args += ["--log-driver", config.logging.driver]
        for key, value in (config.logging.options or {}).items():
            args += ["--log-opt", f"{key}={value}"]

    security = config.security
    if security:
        if security.privileged:
            args.append("--privileged")
        for cap in security.cap_add or []:
            args += ["--cap-add", cap]
        for cap in security.cap_drop or []:
            args += ["--cap-drop", cap]
        if security.no_new_privileges:
            args += ["--security-opt", "no-new-privileges"]
        if security.seccomp_profile:
            args += ["--security-opt", f"seccomp={security.seccomp_profile}"]
        if security.apparmor_profile:
            args += ["--security-opt", f"apparmor={security.apparmor_profile}"]
        for label in security.selinux_labels or []:
            args += ["--security-opt", f"label={label}"]
        for rule in security.device_cgroup_rules or []:
            args += ["--device-cgroup-rule", rule]
        for group in security.group_add or []:
            args += ["--group-add", group]
        if security.ipc_mode:
            args += ["--ipc", security.ipc_mode]
        if security.pid_mode:
            args += ["--pid", security.pid_mode]
        if security.uts_mode:
            args += ["--uts", security.uts_mode]
        if security.userns_mode:
            args += ["--userns", security.userns_mode]

    if config.network_mode:
        args += ["--network", config.network_mode]
    for server in config.dns or []:
        args += ["--dns", server]

    for host in config.extra_hosts or []:
        if isinstance(host, str):
            args += ["--add-host", host]
        else:
            args += ["--add-host", f"{host.host}:{host.ip}"]

    for key, value in (config.sysctls or {}).items():
        args += ["--sysctl", f"{key}={value}"]

    if config.stop:
        if config.stop.signal:
            args += ["--stop-signal", config.stop.signal]
        if config.stop.grace_period_sec is not None:
            args += ["--stop-timeout", str(config.stop.grace_period_sec)]

    if config.resources:
        if config.resources.cpus:
            args += ["--cpus", str(config.resources.cpus)]
        if config.resources.memory:
            args += ["--memory", str(config.resources.memory)]

    if config.entrypoint:
        args += ["--entrypoint", config.entrypoint]

    if not config.image:
        raise InvalidConfig("ContainerConfig.image is required for docker run")
    args.append(config.image)

    if config.command:
        if isinstance(config.command, list):
            args += config.command
        else:
            args.append(config.command)

    return args
