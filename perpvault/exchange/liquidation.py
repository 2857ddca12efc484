"""
PerpVault Liquidation Engine

A position is liquidatable when, at the raw oracle price,

    (margin + unrealized_pnl) * BPS <= notional * liquidation_threshold_bps

Liquidation forfeits the whole margin: the bounty (fixed amount, or a bps
share of the margin) goes to the caller and the rest to the vault.  The
close event reports ``pnl = -margin`` and ``is_liquidation = True``.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from ..constants import BPS_SCALE
from ..exceptions import PositionNotLiquidatableError
from .events import ClosePositionEvent
from .fixed_point import bps_of
from .oracle import PriceFeed, read_price
from .perpetual import position_pnl
from .state import OperationContext, Position, Product, VenueState, get_product
from .vault import VaultAccounting

logger = logging.getLogger(__name__)


def is_liquidatable(position: Position, product: Product, oracle_price: int) -> bool:
    upnl = position_pnl(position.is_long, position.price, oracle_price, position.margin, position.leverage)
    return (position.margin + upnl) * BPS_SCALE <= position.notional * product.liquidation_threshold_bps


class LiquidationEngine:

    def __init__(self, price_feed: PriceFeed, vault: VaultAccounting) -> None:
        self.price_feed = price_feed
        self.vault = vault

    def check(self, state: VenueState, key: str) -> bool:
        """True when *key* is an open position below its threshold."""
        position = state.positions.get(key)
        if position is None:
            return False
        product = get_product(state, position.product_id, require_active=False)
        return is_liquidatable(position, product, read_price(self.price_feed, product.oracle))

    def bounty_for(self, state: VenueState, product: Product, margin: int) -> int:
        fixed = state.settings.liquidation_bounty_fixed
        bounty = fixed if fixed > 0 else bps_of(margin, product.liquidation_bounty_bps)
        return min(bounty, margin)

    def liquidate(self, ctx: OperationContext, state: VenueState, liquidator: str, key: str) -> Optional[ClosePositionEvent]:
        """Liquidate *key* if it is below threshold; None when healthy or absent."""
        position = state.positions.get(key)
        if position is None:
            return None
        product = get_product(state, position.product_id, require_active=False)
        oracle_price = read_price(self.price_feed, product.oracle)
        if not is_liquidatable(position, product, oracle_price):
            return None

        margin = position.margin
        bounty = self.bounty_for(state, product, margin)
        self.vault.credit(state, margin - bounty)
        product.remove_open_interest(position.is_long, position.notional)
        del state.positions[key]

        ctx.transfers.push(state.collateral_asset, liquidator, bounty)

        logger.warning(
            "Position %s liquidated by %s: margin=%d bounty=%d price=%d",
            key[:16], liquidator, margin, bounty, oracle_price,
        )
        return ctx.emit(ClosePositionEvent(
            position_key=key,
            account=position.owner,
            product_id=position.product_id,
            price=oracle_price,
            entry_price=position.price,
            margin=0,
            leverage=position.leverage,
            fee=0,
            pnl=-margin,
            is_full_close=True,
            is_liquidation=True,
            timestamp=ctx.now,
            liquidator=liquidator,
        ))

    def liquidate_positions(
        self,
        ctx: OperationContext,
        state: VenueState,
        liquidator: str,
        keys: Iterable[str],
    ) -> List[ClosePositionEvent]:
        """
        Liquidate every eligible key, skipping healthy or unknown ones.

        Raises:
            PositionNotLiquidatableError: none of *keys* was liquidated
        """
        events = []
        for key in keys:
            event = self.liquidate(ctx, state, liquidator, key)
            if event is not None:
                events.append(event)
        if not events:
            raise PositionNotLiquidatableError("No liquidatable position in request")
        return events
