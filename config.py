"""
Configuration Module

Collects the server settings from environment variables (a .env file is
honoured through python-dotenv) and loads the list of managed containers
that are started automatically when the server comes up.
"""

import json
import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError

from models import ContainerConfig
from utils import logger

load_dotenv()

MANAGED_CONTAINERS_FILE = "managed_containers.json"


class DockerApiSettings(BaseModel):
    """Connection to a remote Docker Engine API instead of the local CLI"""

    host: str
    port: int = 2375
    protocol: str = "http"  # http or https
    ca: Optional[str] = None
    cert: Optional[str] = None
    key: Optional[str] = None

    @property
    def base_url(self) -> str:
        return f"tcp://{self.host}:{self.port}"


class Settings(BaseModel):
    docker_command: str = "docker"
    docker_api: Optional[DockerApiSettings] = None
    managed_containers: List[ContainerConfig] = []

    poll_interval: float = 10.0  # seconds
    refresh_debounce: float = 1.0  # seconds
    exec_kill_timeout: float = 2.0  # seconds
    heartbeat_interval: int = 120000  # milliseconds
    command_timeout: float = 120.0  # seconds
    volume_helper_image: str = "busybox:latest"

    api_token: str = "default-secret-token"


def load_managed_containers(path: str = MANAGED_CONTAINERS_FILE) -> List[ContainerConfig]:
    """Load managed container definitions from a JSON file"""
    if not os.path.exists(path):
        return []
    try:
        with open(path, "r") as f:
            raw = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        logger.warning("Could not load managed containers", path=path, error=str(e))
        return []

    containers = []
    for entry in raw if isinstance(raw, list) else []:
        try:
            containers.append(ContainerConfig.model_validate(entry))
        except ValidationError as e:
            logger.warning("Skipping invalid managed container", path=path, error=str(e))
    return containers


def load_settings() -> Settings:
    """Build settings from the environment"""
    docker_api = None
    api_host = os.getenv("DOCKER_API_HOST")
    if api_host:
        if api_host == "localhost":
            api_host = "127.0.0.1"
        docker_api = DockerApiSettings(
            host=api_host,
            port=int(os.getenv("DOCKER_API_PORT", 2375)),
            protocol=os.getenv("DOCKER_API_PROTOCOL", "http"),
            ca=os.getenv("DOCKER_API_CA"),
            cert=os.getenv("DOCKER_API_CERT"),
            key=os.getenv("DOCKER_API_KEY"),
        )

    return Settings(
        docker_command=os.getenv("DOCKER_COMMAND", "docker"),
        docker_api=docker_api,
        managed_containers=load_managed_containers(
            os.getenv("MANAGED_CONTAINERS_FILE", MANAGED_CONTAINERS_FILE)
        ),
        poll_interval=float(os.getenv("POLL_INTERVAL", 10)),
        refresh_debounce=float(os.getenv("REFRESH_DEBOUNCE", 1)),
        exec_kill_timeout=float(os.getenv("EXEC_KILL_TIMEOUT", 2)),
        heartbeat_interval=int(os.getenv("HEARTBEAT_INTERVAL", 120000)),
        command_timeout=float(os.getenv("DOCKER_COMMAND_TIMEOUT", 120)),
        volume_helper_image=os.getenv("VOLUME_HELPER_IMAGE", "busybox:latest"),
        api_token=os.getenv("API_TOKEN", "default-secret-token"),
    )
