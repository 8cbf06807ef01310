"""
Docker Hub Lookups

Tag listing and repository search against the public Docker Hub API, used
by the image pull dialog for autocompletion.
"""

from typing import List, Optional

import httpx

from utils import DockerCommandError, NotFound, logger

DOCKER_HUB_URL = "https://hub.docker.com/v2"
HUB_TIMEOUT = 10.0


def split_repository(image: str):
    """('library', 'nginx') for 'nginx', ('grafana', 'grafana') for 'grafana/grafana:latest'"""
    name = image.split("@", 1)[0]
    last = name.rsplit("/", 1)[-1]
    if ":" in last:
        name = name[: name.rfind(":")]
    if name.startswith("docker.io/"):
        name = name[len("docker.io/"):]
    if "/" not in name:
        return "library", name
    namespace, repository = name.split("/", 1)
    return namespace, repository


class DockerHubClient:
    def __init__(self, base_url: str = DOCKER_HUB_URL, timeout: float = HUB_TIMEOUT):
        self.base_url = base_url
        self.timeout = timeout

    async def _get(self, path: str, params: Optional[dict] = None) -> dict:
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
            try:
                response = await client.get(path, params=params)
            except httpx.HTTPError as e:
                logger.error("Docker Hub request failed", path=path, error=str(e))
                raise DockerCommandError(f"Docker Hub is not reachable: {e}")
        if response.status_code == 404:
            raise NotFound(f"Not found on Docker Hub: {path}")
        if response.status_code >= 400:
            raise DockerCommandError(f"Docker Hub answered {response.status_code}")
        return response.json()

    async def tags(self, image: str, page_size: int = 100) -> List[str]:
        """Tag names of a repository, most recently pushed first"""
        namespace, repository = split_repository(image)
        data = await self._get(
            f"/repositories/{namespace}/{repository}/tags",
            params={"page_size": page_size, "ordering": "last_updated"},
        )
        return [tag["name"] for tag in data.get("results") or [] if tag.get("name")]

    async def search(self, query: str, page_size: int = 25) -> List[str]:
        """Repository names matching the query"""
        if not query or not query.strip():
            return []
        data = await self._get(
            "/search/repositories/", params={"query": query.strip(), "page_size": page_size}
        )
        names = []
        for entry in data.get("results") or []:
            name = entry.get("repo_name")
            if name and name not in names:
                names.append(name)
        return names
