"""
PerpVault oracle interface

The price feed itself is an external collaborator.  Operations receive an
already-resolved price through the ``PriceFeed`` protocol; the venue only
guards against obviously unusable values.

Also home to the minimum price-change gate, which compares a fresh oracle
price against the one stored on a position.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Protocol, runtime_checkable

from ..constants import BPS_SCALE
from ..exceptions import InvalidAmountError, StalePriceChangeError, UnknownProductError

logger = logging.getLogger(__name__)


@runtime_checkable
class PriceFeed(Protocol):
    """Resolved oracle prices, 1e8 scale."""

    def get_price(self, feed: str) -> int:
        ...


class StaticPriceFeed:
    """
    Settable in-memory feed.

    Prices are recorded by feed reference; ``get_price`` raises for a feed
    that has never been set.
    """

    def __init__(self, prices: Optional[Dict[str, int]] = None) -> None:
        self._prices: Dict[str, int] = {}
        for feed, price in (prices or {}).items():
            self.set_price(feed, price)

    def set_price(self, feed: str, price: int) -> None:
        if price <= 0:
            raise InvalidAmountError("Oracle price must be positive")
        self._prices[feed] = int(price)
        logger.debug("Oracle %s set to %d", feed, price)

    def get_price(self, feed: str) -> int:
        price = self._prices.get(feed)
        if price is None:
            raise UnknownProductError(f"No price for feed {feed}")
        return price


def read_price(feed: PriceFeed, reference: str) -> int:
    """Fetch and sanity-check an oracle price."""
    price = int(feed.get_price(reference))
    if price <= 0:
        raise InvalidAmountError(f"Oracle {reference} returned non-positive price {price}")
    return price


def price_change_bps_met(stored_price: int, oracle_price: int, min_change_bps: int) -> bool:
    """``|oracle - stored| / stored >= min_change_bps``, by cross-multiplication."""
    if stored_price <= 0:
        return True
    return abs(oracle_price - stored_price) * BPS_SCALE >= stored_price * min_change_bps


def check_price_change(stored_price: int, oracle_price: int, min_change_bps: int) -> None:
    """Reject when the oracle has not moved enough since *stored_price*."""
    if not price_change_bps_met(stored_price, oracle_price, min_change_bps):
        raise StalePriceChangeError(
            f"Oracle price {oracle_price} within {min_change_bps} bps of {stored_price}"
        )
