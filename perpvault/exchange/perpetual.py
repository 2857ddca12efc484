"""
PerpVault Perpetual Position Ledger

Leveraged perpetual positions underwritten by the vault:
  - One position per (account, product, direction), keyed by blake2b
  - Open / increase with notional-weighted entry price averaging
  - Partial and full close at a slippage-adjusted price
  - Annual interest accrued linearly since the last (re)price
  - Minimum-profit-time rule against oracle latency arbitrage
  - Vault absorbs trader PnL; profit is capped at the vault balance

Security features:
  - Margin, leverage and position-size bounds
  - Net exposure cap per product
  - Optional minimum price-change gate on increases
  - Fee routed to the distributor before the position mutates
  - Payout floored at zero (losses never create debt)
  - All value transfers deferred until accounting is complete
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from ..constants import BPS_SCALE, MIN_LEVERAGE, PRICE_SCALE, SECONDS_PER_YEAR
from ..exceptions import (
    InsufficientVaultLiquidityError,
    MarginOutOfBoundsError,
    PositionNotFoundError,
)
from .events import ClosePositionEvent, NewPositionEvent
from .fees import FeeDistributor
from .fixed_point import bps_of, checked, div_round, mul_div
from .oracle import PriceFeed, check_price_change, price_change_bps_met, read_price
from .pricing import PriceEngine
from .state import OperationContext, Position, Product, VenueState, get_product, position_key
from .vault import VaultAccounting

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Position maths
# ---------------------------------------------------------------------------

def position_pnl(is_long: bool, entry_price: int, price: int, margin: int, leverage: int) -> int:
    """
    PnL of *margin* at *leverage* moved from *entry_price* to *price*.

    Floor division makes both profits and losses round toward the vault.
    """
    move = price - entry_price if is_long else entry_price - price
    return checked(margin * leverage * move // (entry_price * PRICE_SCALE))


def interest_fee(margin: int, leverage: int, interest_bps: int, elapsed: int) -> int:
    """``margin * leverage * rate * elapsed / (SCALE * BPS * year)``."""
    if elapsed <= 0 or interest_bps <= 0:
        return 0
    return mul_div(margin * leverage, interest_bps * elapsed, PRICE_SCALE * BPS_SCALE * SECONDS_PER_YEAR)


def average_entry_price(old_notional: int, old_price: int, added_notional: int, added_price: int) -> int:
    """Notional-weighted entry price, rounded half up."""
    total = old_notional + added_notional
    return div_round(old_notional * old_price + added_notional * added_price, total)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class PositionLedger:
    """
    Opens, increases and closes positions against the vault.

    Every method takes the venue state explicitly and records value
    movements on the operation context; nothing is transferred here.
    """

    def __init__(
        self,
        price_feed: PriceFeed,
        pricing: PriceEngine,
        vault: VaultAccounting,
        fees: FeeDistributor,
    ) -> None:
        self.price_feed = price_feed
        self.pricing = pricing
        self.vault = vault
        self.fees = fees

    # -- Queries ------------------------------------------------------------

    @staticmethod
    def get_position(state: VenueState, key: str) -> Optional[Position]:
        return state.positions.get(key)

    # -- Validation ---------------------------------------------------------

    @staticmethod
    def _check_bounds(state: VenueState, product: Product, margin: int, leverage: int) -> int:
        settings = state.settings
        if margin <= 0:
            raise MarginOutOfBoundsError("Margin must be positive")
        if margin < settings.min_margin:
            raise MarginOutOfBoundsError(f"Margin {margin} below minimum {settings.min_margin}")
        if leverage < MIN_LEVERAGE or leverage > product.max_leverage:
            raise MarginOutOfBoundsError(
                f"Leverage {leverage} outside [{MIN_LEVERAGE}, {product.max_leverage}]"
            )
        notional = margin * leverage // PRICE_SCALE
        if notional < settings.min_position_size:
            raise MarginOutOfBoundsError(
                f"Position size {notional} below minimum {settings.min_position_size}"
            )
        if settings.max_position_size and notional > settings.max_position_size:
            raise MarginOutOfBoundsError(
                f"Position size {notional} above maximum {settings.max_position_size}"
            )
        return notional

    # -- Open / increase ----------------------------------------------------

    def open_position(
        self,
        ctx: OperationContext,
        state: VenueState,
        account: str,
        product_id: int,
        margin: int,
        is_long: bool,
        leverage: int,
    ) -> NewPositionEvent:
        """
        Open a position, or average into the existing one on the same side.

        The caller pays margin plus the trading fee (plus interest accrued on
        the existing position when increasing).

        Raises:
            UnknownProductError, MarginOutOfBoundsError,
            InsufficientVaultLiquidityError, ExposureExceededError,
            StalePriceChangeError
        """
        product = get_product(state, product_id)
        notional = self._check_bounds(state, product, margin, leverage)
        if state.vault.balance <= 0:
            raise InsufficientVaultLiquidityError("Vault has no liquidity to underwrite positions")

        oracle_price = read_price(self.price_feed, product.oracle)
        key = position_key(account, product_id, is_long)
        existing = state.positions.get(key)

        if existing is not None and state.settings.check_price_change:
            check_price_change(existing.oracle_price, oracle_price, product.min_price_change_bps)

        price = self.pricing.open_price(
            product, state.vault, oracle_price, is_long, notional, state.settings.max_shift,
        )
        fee = bps_of(notional, product.fee_bps)
        if existing is not None:
            fee += interest_fee(
                existing.margin, existing.leverage, product.interest_bps, ctx.now - existing.timestamp,
            )

        self.fees.distribute(ctx, state, fee)

        old_notional = 0 if existing is None else existing.notional
        if existing is None:
            position = Position(
                owner=account,
                product_id=product_id,
                is_long=is_long,
                margin=margin,
                leverage=leverage,
                price=price,
                oracle_price=oracle_price,
                timestamp=ctx.now,
            )
            state.positions[key] = position
        else:
            position = existing
            position.price = average_entry_price(old_notional, position.price, notional, price)
            position.margin += margin
            position.leverage = (old_notional + notional) * PRICE_SCALE // position.margin
            position.oracle_price = oracle_price
            position.timestamp = ctx.now

        # Re-derived leverage truncates, so book what the position actually holds
        product.add_open_interest(is_long, position.notional - old_notional)
        ctx.transfers.pull(state.collateral_asset, account, margin + fee)

        logger.debug(
            "Position %s %s product=%d margin=%d leverage=%d price=%d",
            key[:16], "long" if is_long else "short", product_id, margin, leverage, price,
        )
        return ctx.emit(NewPositionEvent(
            position_key=key,
            account=account,
            product_id=product_id,
            is_long=is_long,
            price=price,
            oracle_price=oracle_price,
            margin=margin,
            leverage=position.leverage,
            fee=fee,
            timestamp=ctx.now,
        ))

    # -- Close --------------------------------------------------------------

    def _apply_min_profit(self, state: VenueState, product: Product, position: Position,
                          price: int, pnl: int, elapsed: int) -> int:
        if pnl <= 0 or elapsed >= state.settings.min_profit_time:
            return pnl
        if price_change_bps_met(position.price, price, product.min_price_change_bps):
            return pnl
        return 0

    def _settle(self, state: VenueState, close_margin: int, pnl: int, total_fee: int) -> Tuple[int, int, int]:
        """
        Returns:
            (payout, fee_collected, pnl) with pnl capped at the vault balance
        """
        vault = state.vault
        if pnl > vault.balance:
            logger.warning(
                "Vault starvation: profit=%d capped at balance=%d", pnl, vault.balance,
            )
            pnl = vault.balance

        net = close_margin + pnl - total_fee
        if net >= 0:
            return net, total_fee, pnl
        fee_collected = min(total_fee, max(close_margin + pnl, 0))
        return 0, fee_collected, pnl

    def close_position(
        self,
        ctx: OperationContext,
        state: VenueState,
        account: str,
        product_id: int,
        close_margin: int,
        is_long: bool,
    ) -> ClosePositionEvent:
        """
        Close *close_margin* of the position, all of it when equal to its margin.

        Raises:
            PositionNotFoundError, MarginOutOfBoundsError, ExposureExceededError
        """
        key = position_key(account, product_id, is_long)
        position = state.positions.get(key)
        if position is None:
            raise PositionNotFoundError(f"No position {key}")
        if close_margin <= 0 or close_margin > position.margin:
            raise MarginOutOfBoundsError(
                f"Close margin {close_margin} outside (0, {position.margin}]"
            )

        product = get_product(state, product_id, require_active=False)
        oracle_price = read_price(self.price_feed, product.oracle)
        amount = close_margin * position.leverage // PRICE_SCALE
        price = self.pricing.close_price(
            product, state.vault, oracle_price, is_long, amount, state.settings.max_shift,
        )

        elapsed = ctx.now - position.timestamp
        pnl = position_pnl(is_long, position.price, price, close_margin, position.leverage)
        pnl = self._apply_min_profit(state, product, position, price, pnl, elapsed)

        total_fee = bps_of(amount, product.fee_bps) + interest_fee(
            close_margin, position.leverage, product.interest_bps, elapsed,
        )
        payout, fee_collected, pnl = self._settle(state, close_margin, pnl, total_fee)

        self.fees.distribute(ctx, state, fee_collected)
        # The vault keeps whatever margin is neither paid out nor taken as fee
        self.vault.absorb(state, payout + fee_collected - close_margin)

        entry_price = position.price
        held = position.notional
        position.margin -= close_margin
        product.remove_open_interest(is_long, held - position.notional)
        is_full_close = position.margin == 0
        if is_full_close:
            del state.positions[key]

        ctx.transfers.push(state.collateral_asset, account, payout)

        logger.debug(
            "Closed %s %s product=%d margin=%d pnl=%d fee=%d full=%s",
            key[:16], "long" if is_long else "short", product_id, close_margin, pnl,
            fee_collected, is_full_close,
        )
        return ctx.emit(ClosePositionEvent(
            position_key=key,
            account=account,
            product_id=product_id,
            price=price,
            entry_price=entry_price,
            margin=position.margin,
            leverage=position.leverage,
            fee=fee_collected,
            pnl=pnl,
            is_full_close=is_full_close,
            is_liquidation=False,
            timestamp=ctx.now,
        ))
