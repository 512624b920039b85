"""In-memory reverse-proxy route registry.

Each session's exposed ports are reachable at
``http://<session_id>--<port>.<base_domain>``; the proxy in front of the
cluster resolves that host to the container alias of the same name on the
session network.
"""

from __future__ import annotations

from dataclasses import dataclass

from labsessions.logger import logger
from labsessions.naming import format_proxy_url
from labsessions.types import ClusterContainer, RouteInfo


@dataclass
class _ClusterRegistration:
    network_name: str
    routes: list[RouteInfo]


class ProxyManager:
    def __init__(self, base_domain: str) -> None:
        self._base_domain = base_domain
        self._clusters: dict[str, _ClusterRegistration] = {}

    async def register_cluster(
        self,
        session_id: str,
        network_name: str,
        containers: list[ClusterContainer],
    ) -> list[RouteInfo]:
        routes = [
            RouteInfo(
                container_port=port,
                url=format_proxy_url(session_id, port, self._base_domain),
            )
            for container in containers
            for port in container.ports
        ]
        self._clusters[session_id] = _ClusterRegistration(network_name=network_name, routes=routes)
        logger.info("Registered proxy cluster", session_id=session_id, routes=len(routes))
        return routes

    async def unregister_cluster(self, session_id: str) -> None:
        if self._clusters.pop(session_id, None) is not None:
            logger.info("Unregistered proxy cluster", session_id=session_id)

    def get_urls(self, session_id: str) -> list[RouteInfo]:
        registration = self._clusters.get(session_id)
        return list(registration.routes) if registration else []
