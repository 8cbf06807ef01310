"""
HTTP Link Discovery

Finds which published TCP ports of running containers answer HTTP, so the
UI can offer direct links. Every candidate URL is probed once with a HEAD
request; results are cached except for timeouts, which are tried again on
the next poll.
"""

import asyncio
import ipaddress
import re
from typing import Dict, List, Optional

import httpx

from models import ContainerInfo
from utils import logger

# "0.0.0.0:8080->80/tcp" or "[::]:8080->80/tcp"
PUBLISHED_PORT_RE = re.compile(r"^(?P<host_ip>\[?[0-9a-fA-F:.]*\]?):(?P<port>\d+)->\d+/tcp$")
WILDCARD_HOSTS = ("0.0.0.0", "[::]", "::")
PROBE_TIMEOUT = 1.0


def published_ports(ports: str) -> List[tuple]:
    """(host_ip, host_port) pairs of the published tcp ports in a `docker ps` ports column"""
    published = []
    for entry in (ports or "").split(","):
        match = PUBLISHED_PORT_RE.match(entry.strip())
        if match:
            published.append((match.group("host_ip"), int(match.group("port"))))
    return published


def format_host(ip: str) -> str:
    try:
        if ipaddress.ip_address(ip).version == 6:
            return f"[{ip}]"
    except ValueError:
        pass
    return ip


class HttpLinkProber:
    """Attaches reachable http:// links to container listings"""

    def __init__(self, api_host: Optional[str] = None, timeout: float = PROBE_TIMEOUT):
        self.api_host = api_host
        self.timeout = timeout
        self._checked: Dict[str, bool] = {}
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=False)
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def is_http(self, url: str) -> bool:
        if url in self._checked:
            return self._checked[url]
        try:
            await self._get_client().head(url)
            reachable = True
        except httpx.TimeoutException:
            logger.debug("HTTP probe timed out", url=url)
            return False
        except (httpx.HTTPError, httpx.InvalidURL):
            reachable = False
        self._checked[url] = reachable
        return reachable

    def candidate_urls(self, container: ContainerInfo, browser_ips: List[str]) -> Dict[str, List[str]]:
        """URLs worth probing, keyed by the browser address they are meant for"""
        candidates: Dict[str, List[str]] = {}
        for host_ip, port in published_ports(container.ports):
            if host_ip not in WILDCARD_HOSTS:
                continue
            for browser_ip in browser_ips:
                host = self.api_host or browser_ip
                url = f"http://{format_host(host)}:{port}"
                urls = candidates.setdefault(browser_ip, [])
                if url not in urls:
                    urls.append(url)
        return candidates

    async def attach(self, containers: List[ContainerInfo], browser_ips: List[str]) -> List[ContainerInfo]:
        if not browser_ips:
            return containers

        for container in containers:
            if container.status != "running":
                continue
            candidates = self.candidate_urls(container, browser_ips)
            if not candidates:
                continue
            for browser_ip, urls in candidates.items():
                results = await asyncio.gather(*(self.is_http(url) for url in urls))
                links = [url for url, ok in zip(urls, results) if ok]
                if links:
                    container.http_links = container.http_links or {}
                    container.http_links[browser_ip] = links
        return containers
