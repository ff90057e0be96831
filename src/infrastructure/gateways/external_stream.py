import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Dict, Tuple
from urllib.parse import urlsplit

import socketio

from src.core.exceptions import UpstreamConnectionLost
from src.core.interfaces.datasource import IEventConnection, IEventSource

logger = logging.getLogger(__name__)

NEW_TRANSACTION_EVENT = "transactions:new"

_DISCONNECTED = object()


def split_namespace(url: str) -> Tuple[str, str]:
    """
    "https://host/events" -> ("https://host", "/events"). Socket.IO takes the
    namespace separately from the server URL.
    """
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}", parts.path.rstrip("/") or "/"


class ExternalStreamConnection(IEventConnection):
    """
    One Socket.IO session on the partner namespace. Handlers push into a
    queue that events() drains; a disconnect ends the iteration with
    UpstreamConnectionLost.
    """

    def __init__(self, client, namespace: str):
        self.client = client
        self.namespace = namespace
        self._queue: asyncio.Queue = asyncio.Queue()
        client.on("connect", self._on_connect, namespace=namespace)
        client.on(NEW_TRANSACTION_EVENT, self._on_transaction, namespace=namespace)
        client.on("disconnect", self._on_disconnect, namespace=namespace)

    async def _on_connect(self) -> None:
        logger.info(f"Connected to external stream namespace {self.namespace}")

    async def _on_transaction(self, tx: Any) -> None:
        self._queue.put_nowait(tx)

    async def _on_disconnect(self, *args) -> None:
        # Newer python-socketio passes a reason argument
        logger.warning(f"External stream disconnected {args[0] if args else ''}".rstrip())
        self._queue.put_nowait(_DISCONNECTED)

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            item = await self._queue.get()
            if item is _DISCONNECTED:
                raise UpstreamConnectionLost("External stream disconnected")
            if not isinstance(item, dict):
                logger.warning(f"Ignoring non-object {NEW_TRANSACTION_EVENT} payload: {item!r}")
                continue
            logger.info(f"Received external transaction: {item.get('hash')}")
            yield item

    async def close(self) -> None:
        await self.client.disconnect()


class ExternalTransactionSource(IEventSource):
    """
    Partner transaction feed over Socket.IO, websocket transport only.
    Reconnects are left to UpstreamSubscription, so the client's own
    reconnection is off.
    """

    def __init__(self, url: str, client_factory: Callable[[], Any] = None):
        self.url = url
        self.client_factory = client_factory or (lambda: socketio.AsyncClient(reconnection=False))

    async def connect(self) -> ExternalStreamConnection:
        server_url, namespace = split_namespace(self.url)
        client = self.client_factory()
        connection = ExternalStreamConnection(client, namespace)
        try:
            await client.connect(server_url, namespaces=[namespace], transports=["websocket"])
        except Exception as e:
            raise UpstreamConnectionLost(f"External stream connect failed: {e}") from e
        logger.info(f"Subscribed to {NEW_TRANSACTION_EVENT} on {self.url}")
        return connection
