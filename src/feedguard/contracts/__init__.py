"""Data contracts shared between the gateway and its observers."""

from feedguard.contracts.events import DataFetchEvent, DataFetchSink, FetchOutcome

__all__ = [
    "DataFetchEvent",
    "DataFetchSink",
    "FetchOutcome",
]
