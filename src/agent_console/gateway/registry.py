"""Registry of live gateway connections keyed by instance id."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Iterable

from ..config import GatewayInstanceConfig
from .client import GatewayClient, GatewayConnection

logger = logging.getLogger(__name__)


ClientFactory = Callable[[str, str], GatewayClient]


class GatewayRegistry:
    """Owns one gateway connection per instance.

    The registry is created by the application factory and handed to the
    request handlers through ``app.state``; nothing reaches it through
    module globals.
    """

    def __init__(self, client_factory: ClientFactory | None = None) -> None:
        self._client_factory = client_factory or GatewayClient
        self._clients: dict[str, GatewayConnection] = {}

    def register(self, instance_id: str, client: GatewayConnection) -> None:
        """Attach an already constructed connection."""

        self._clients[instance_id] = client

    async def connect(self, instance_id: str, url: str, token: str) -> GatewayConnection:
        if instance_id in self._clients:
            await self.disconnect(instance_id)
        client = self._client_factory(url, token)
        self._clients[instance_id] = client
        await client.connect()
        return client

    async def connect_all(self, instances: Iterable[GatewayInstanceConfig]) -> None:
        """Connect every configured instance, logging the ones that fail."""

        configs = list(instances)
        if not configs:
            return
        results = await asyncio.gather(
            *(
                self.connect(config.id, config.url, config.token.get_secret_value())
                for config in configs
            ),
            return_exceptions=True,
        )
        for config, result in zip(configs, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Failed to connect gateway instance %s: %s", config.id, result
                )

    async def disconnect(self, instance_id: str) -> None:
        client = self._clients.pop(instance_id, None)
        close = getattr(client, "close", None)
        if close is not None:
            await close()

    async def disconnect_all(self) -> None:
        ids = list(self._clients)
        await asyncio.gather(
            *(self.disconnect(instance_id) for instance_id in ids),
            return_exceptions=True,
        )

    def get_client(self, instance_id: str) -> GatewayConnection | None:
        """Return the connection for ``instance_id`` if it is usable."""

        client = self._clients.get(instance_id)
        if client is None or not client.is_connected():
            return None
        return client

    def is_connected(self, instance_id: str) -> bool:
        return self.get_client(instance_id) is not None

    def connected_ids(self) -> list[str]:
        return [
            instance_id
            for instance_id, client in self._clients.items()
            if client.is_connected()
        ]


__all__ = ["ClientFactory", "GatewayRegistry"]
