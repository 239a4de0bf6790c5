"""
Data-fetch outcome events.

One DataFetchEvent is emitted for every call that goes through the gateway:
live success, failure, fallback, or local rate-limit rejection. Sinks (the
Prometheus exporter, tests) receive them through record_fetch().
"""

from __future__ import annotations

from enum import Enum
from typing import Literal, Protocol

import orjson
from pydantic import BaseModel, ConfigDict, Field

# Prefix on DataFetchEvent.error for local limiter rejections
RATE_LIMITED_PREFIX = "rate_limited"


class FetchOutcome(str, Enum):
    """Coarse outcome used as a metric label."""

    SUCCESS = "success"
    FALLBACK = "fallback"
    FAILURE = "failure"
    RATE_LIMITED = "rate_limited"


class DataFetchEvent(BaseModel):
    """
    Outcome of one gateway call.

    Attributes:
        ts: Completion timestamp (epoch ms).
        source: Data source class ("news" or "market").
        provider: Provider identifier (e.g. "newsdata.io").
        operation: Operation name; also the fallback cache key.
        success: True if the caller received data.
        cached: True if the data came from the fallback path.
        stale: True if the data may be older than a live fetch.
        item_count: Number of items returned, when the payload is a list.
        error: Error description for failures and rejections.
        duration_ms: Wall time spent inside the gateway.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    ts: int = Field(..., ge=0, description="Completion timestamp (ms)")
    source: Literal["news", "market"] = Field(..., description="Data source class")
    provider: str = Field(..., min_length=1, description="Provider identifier")
    operation: str = Field(..., min_length=1, description="Operation name")
    success: bool = Field(..., description="Caller received data")
    cached: bool = Field(default=False, description="Served from fallback")
    stale: bool = Field(default=False, description="Possibly outdated data")
    item_count: int = Field(default=0, ge=0, description="Items in the payload")
    error: str | None = Field(default=None, description="Error description")
    duration_ms: int = Field(default=0, ge=0, description="Time spent in the gateway (ms)")

    @property
    def outcome(self) -> FetchOutcome:
        if self.success:
            return FetchOutcome.FALLBACK if self.cached else FetchOutcome.SUCCESS
        if self.error is not None and self.error.startswith(RATE_LIMITED_PREFIX):
            return FetchOutcome.RATE_LIMITED
        return FetchOutcome.FAILURE

    def to_json(self) -> bytes:
        """Serialize to JSON bytes using orjson."""
        return orjson.dumps(self.model_dump(mode="json"))

    @classmethod
    def from_json(cls, data: bytes | str) -> DataFetchEvent:
        """Deserialize from JSON."""
        if isinstance(data, str):
            data = data.encode()
        return cls.model_validate(orjson.loads(data))


class DataFetchSink(Protocol):
    """Anything that accepts data-fetch events."""

    def record_fetch(self, event: DataFetchEvent) -> None: ...
