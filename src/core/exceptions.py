class SwapFeedError(Exception):
    """Base class for errors raised inside the ingestion/broadcast core."""


class UpstreamConnectionLost(SwapFeedError):
    """The live connection to an upstream source dropped or never came up."""


class BackfillQueryFailure(SwapFeedError):
    """The historical log query failed."""


class SubscriberRejected(SwapFeedError):
    """An attach was refused because the origin re-attached too quickly."""

    def __init__(self, origin: str, retry_after: float):
        super().__init__(f"Origin {origin} re-attached within debounce window; retry in {retry_after:.1f}s")
        self.origin = origin
        self.retry_after = retry_after


class SubscriberDeliveryFailure(SwapFeedError):
    """A subscriber could not keep up and was dropped."""
