"""
Price Oracle
============

Price-feed collaborator interface and the per-asset feed registry.

Features:
- ``PriceOracleAdapter`` abstract interface (``latest(asset)``)
- ``StaticPriceFeed`` in-memory adapter for tests and simulations
- ``PriceFeedRegistry`` mapping assets to feeds, with staleness and
  non-positive price checks on every read
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from risk_engine.authorization import AccessController, Role, requires_role
from risk_engine.config import OracleConfig
from risk_engine.event_bus import SignalBus
from risk_engine.events import PriceFeedUpdatedEvent
from risk_engine.exceptions import InvalidPriceFeedError, StalePriceError
from risk_engine.repository import Clock, utc_now


logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40


@dataclass(frozen=True)
class PriceQuote:
    """Last price (WAD) and the time it was published."""
    asset: str
    price: int
    updated_at: datetime

    def age_seconds(self, now: datetime) -> float:
        return (now - self.updated_at).total_seconds()


class PriceOracleAdapter(ABC):
    """A source of last prices. ``feed_id`` identifies the feed for audit."""

    feed_id: str = ""

    @abstractmethod
    def latest(self, asset: str) -> PriceQuote:
        """Most recent quote for an asset."""


class StaticPriceFeed(PriceOracleAdapter):
    """In-memory feed whose prices are pushed by the caller."""

    def __init__(self, feed_id: str, clock: Clock | None = None):
        self.feed_id = feed_id
        self._clock = clock or utc_now
        self._quotes: dict[str, PriceQuote] = {}
        self._lock = threading.Lock()

    def set_price(self, asset: str, price: int, updated_at: datetime | None = None) -> None:
        quote = PriceQuote(asset, price, updated_at or self._clock())
        with self._lock:
            self._quotes[asset] = quote

    def latest(self, asset: str) -> PriceQuote:
        with self._lock:
            quote = self._quotes.get(asset)
        if quote is None:
            raise InvalidPriceFeedError(
                f"Feed {self.feed_id} has no price for {asset}",
                asset=asset,
                feed=self.feed_id,
            )
        return quote


def _is_placeholder(feed_id: str) -> bool:
    return not feed_id or feed_id.lower() == ZERO_ADDRESS or set(feed_id) <= {"0", "x"}


class PriceFeedRegistry:
    """Assigns a price feed to each asset and validates every quote it serves."""

    def __init__(
        self,
        access: AccessController,
        bus: SignalBus,
        config: OracleConfig | None = None,
        clock: Clock | None = None,
    ):
        self.access = access
        self._bus = bus
        self._config = config or OracleConfig()
        self._clock = clock or utc_now
        self._feeds: dict[str, PriceOracleAdapter] = {}
        self._lock = threading.Lock()

    @property
    def stale_threshold(self) -> timedelta:
        return timedelta(seconds=self._config.stale_threshold_seconds)

    @requires_role(Role.RISK_MANAGER)
    def update_price_feed(self, caller: str, asset: str, feed: PriceOracleAdapter | None) -> None:
        """
        Assign a feed to an asset.

        Raises:
            InvalidPriceFeedError: Missing feed or placeholder feed id
        """
        if feed is None or _is_placeholder(getattr(feed, "feed_id", "")):
            raise InvalidPriceFeedError(
                f"Invalid price feed for {asset}",
                asset=asset,
            )
        if not asset:
            raise InvalidPriceFeedError("Asset must not be empty")

        with self._lock:
            self._feeds[asset] = feed

        logger.info(f"Price feed for {asset} set to {feed.feed_id} by {caller}")
        self._bus.publish(PriceFeedUpdatedEvent(asset=asset, feed=feed.feed_id))

    def has_feed(self, asset: str) -> bool:
        with self._lock:
            return asset in self._feeds

    def get_feed(self, asset: str) -> PriceOracleAdapter:
        with self._lock:
            feed = self._feeds.get(asset)
        if feed is None:
            raise InvalidPriceFeedError(f"No price feed for {asset}", asset=asset)
        return feed

    def get_price(self, asset: str) -> PriceQuote:
        """
        Latest validated quote for an asset.

        Raises:
            InvalidPriceFeedError: No feed, or a non-positive price
            StalePriceError: Quote older than the stale threshold
        """
        quote = self.get_feed(asset).latest(asset)

        if quote.price <= 0:
            raise InvalidPriceFeedError(
                f"Non-positive price for {asset}: {quote.price}",
                asset=asset,
                price=quote.price,
            )

        age = quote.age_seconds(self._clock())
        if age > self._config.stale_threshold_seconds:
            logger.warning(f"Stale price for {asset}: {age:.0f}s old")
            raise StalePriceError(
                f"Price for {asset} is stale ({age:.0f}s > {self._config.stale_threshold_seconds}s)",
                asset=asset,
                age_seconds=age,
            )

        return quote

    def get_prices(self, assets: list[str]) -> dict[str, PriceQuote]:
        """Validated quotes for several assets; any failure aborts the whole read."""
        return {asset: self.get_price(asset) for asset in assets}

    def get_status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "feeds": {asset: feed.feed_id for asset, feed in self._feeds.items()},
                "stale_threshold_seconds": self._config.stale_threshold_seconds,
            }
