"""Provider connectors built on the resilience gateway."""

from feedguard.connectors.newsdata import NewsDataClient
from feedguard.connectors.polymarket import ApiHealthStatus, PolymarketEventsClient
from feedguard.connectors.transport import HttpTransport

__all__ = [
    "ApiHealthStatus",
    "HttpTransport",
    "NewsDataClient",
    "PolymarketEventsClient",
]
