from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, List, Sequence

from src.core.entities.raw_event import RawCurveEvent, RawSwapEvent
from src.core.entities.trade import Trade


class IEventConnection(ABC):
    """
    One live connection to an upstream source. Never reused after it closes.
    """

    @abstractmethod
    def events(self) -> AsyncIterator[Any]:
        """
        Yields raw events until the connection closes.
        Raises UpstreamConnectionLost on a transport failure.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class IEventSource(ABC):
    @abstractmethod
    async def connect(self) -> IEventConnection:
        """
        Opens a fresh connection with its subscription in place.
        """
        pass


class ILogArchive(ABC):
    @abstractmethod
    async def get_block_number(self) -> int:
        pass

    @abstractmethod
    async def get_swap_logs(self, from_block: int, to_block: int) -> List[RawSwapEvent]:
        pass

    @abstractmethod
    async def get_curve_logs(self, curve_address: str, from_block: int, to_block: int) -> List[RawCurveEvent]:
        pass


class ISnapshotStore(ABC):
    @abstractmethod
    def load(self) -> List[Trade]:
        pass

    @abstractmethod
    def save(self, trades: Sequence[Trade]) -> None:
        pass
