import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from src.core.interfaces.datasource import IEventConnection, IEventSource

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAY = 3.0

EventHandler = Callable[[Any], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


class SubscriptionState(str, Enum):
    CONNECTING = "connecting"
    LIVE = "live"
    DISCONNECTED = "disconnected"  # waiting out the reconnect delay


class UpstreamSubscription:
    """
    Keeps one upstream source attached for the life of the process.

    CONNECTING -> LIVE on a successful connect, LIVE -> DISCONNECTED when the
    connection ends or fails, DISCONNECTED -> CONNECTING after a fixed delay
    with a brand-new connection. Retries are unbounded; only cancellation
    stops the loop.
    """

    def __init__(
        self,
        name: str,
        source: IEventSource,
        handler: EventHandler,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        sleep: Sleep = asyncio.sleep,
    ):
        self.name = name
        self.source = source
        self.handler = handler
        self.reconnect_delay = reconnect_delay
        self._sleep = sleep

        self.state = SubscriptionState.CONNECTING
        self.attempts = 0
        self.reconnects = 0
        self.events_seen = 0
        self.connection: Optional[IEventConnection] = None
        self._listeners = []

    def on_transition(self, listener: Callable[[SubscriptionState], None]) -> None:
        self._listeners.append(listener)

    def _set_state(self, state: SubscriptionState) -> None:
        self.state = state
        for listener in self._listeners:
            listener(state)

    async def run(self) -> None:
        while True:
            await self._connect_once()
            self._set_state(SubscriptionState.DISCONNECTED)
            logger.info(f"[{self.name}] Disconnected. Reconnecting in {self.reconnect_delay}s...")
            await self._sleep(self.reconnect_delay)
            self.reconnects += 1

    async def _connect_once(self) -> None:
        self._set_state(SubscriptionState.CONNECTING)
        self.attempts += 1
        try:
            connection = await self.source.connect()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"[{self.name}] Connect attempt {self.attempts} failed: {e}")
            return

        # Old connection objects are never reused
        self.connection = connection
        self._set_state(SubscriptionState.LIVE)
        logger.info(f"[{self.name}] Live (attempt {self.attempts})")
        try:
            async for raw in connection.events():
                self.events_seen += 1
                try:
                    await self.handler(raw)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"[{self.name}] Failed to handle event: {e}")
            logger.warning(f"[{self.name}] Connection closed by upstream")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"[{self.name}] Connection lost: {e}")
        finally:
            try:
                await connection.close()
            except Exception as e:
                logger.debug(f"[{self.name}] Error closing connection: {e}")
            self.connection = None
