"""
PerpVault Price Engine

Execution price = oracle price x slippage factor, where the factor combines

  * price impact from a virtual constant-product reserve
        long:  ((reserve^2 / (reserve - amount) - reserve) * SCALE) / amount
        short: ((reserve - reserve^2 / (reserve + amount)) * SCALE) / amount
    truncated toward zero, and
  * a skew shift  (oi_long - oi_short) * max_shift / max_exposure,
    capped at +/- max_shift.  Growing the larger side pays the shift in
    full; shrinking it earns half.

Rounding always favours the vault: long-side prices round up, short-side
prices round down.  Trading fees are not part of the price.

Everything here is a pure function of its inputs.  Opens need a reserve
larger than the trade; closes fall back to the oracle price when the
reserve is too thin, so redeemed liquidity never traps a position.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..constants import MAX_SHIFT, PRICE_SCALE
from ..exceptions import ExposureExceededError, InsufficientVaultLiquidityError, InvalidAmountError
from .fixed_point import checked, clamp, div_trunc, mul_div, mul_div_up
from .state import Product, Vault

logger = logging.getLogger(__name__)


def price_impact(reserve: int, amount: int, is_long: bool) -> int:
    """Slippage factor (1e8 scale) for trading *amount* against *reserve*."""
    if amount <= 0:
        raise InvalidAmountError("Amount must be positive")
    if reserve <= 0:
        raise InsufficientVaultLiquidityError("Pricing reserve is empty")
    if amount >= reserve:
        raise ExposureExceededError(f"Amount {amount} exceeds reserve {reserve}")

    scaled = reserve * PRICE_SCALE
    if is_long:
        numerator = (reserve * scaled) // (reserve - amount) - scaled
    else:
        # ceil on the subtracted term keeps the numerator an exact floor
        numerator = scaled - -((-reserve * scaled) // (reserve + amount))
    return checked(numerator // amount)


def skew_shift(oi_long: int, oi_short: int, max_exposure: int, max_shift: int = MAX_SHIFT) -> int:
    """Signed shift; positive when longs dominate."""
    if max_exposure <= 0:
        return 0
    shift = div_trunc((oi_long - oi_short) * max_shift, max_exposure)
    return clamp(shift, -max_shift, max_shift)


def slippage_factor(impact: int, shift: int, is_long: bool) -> int:
    if is_long:
        return impact + shift if shift >= 0 else impact - (-shift) // 2
    return impact + shift // 2 if shift >= 0 else impact - (-shift)


def execution_price(
    oracle_price: int,
    is_long: bool,
    oi_long: int,
    oi_short: int,
    max_exposure: int,
    reserve: int,
    amount: int,
    max_shift: int = MAX_SHIFT,
) -> int:
    """
    Price for taking *amount* of notional on the long or short side.

    Args:
        oracle_price: resolved oracle mid price (1e8)
        is_long: side the taker is buying (True) or selling (False)
        oi_long / oi_short: current product open interest
        max_exposure: skew-shift denominator
        reserve: virtual liquidity for the impact curve
        amount: requested notional (1e8)
        max_shift: skew shift cap (1e8 scale)

    Returns:
        Execution price, 1e8 scale
    """
    impact = price_impact(reserve, amount, is_long)
    return apply_factor(oracle_price, impact, skew_shift(oi_long, oi_short, max_exposure, max_shift), is_long)


def apply_factor(oracle_price: int, impact: int, shift: int, is_long: bool) -> int:
    """Scale *oracle_price* by impact and shift, rounding toward the vault."""
    if oracle_price <= 0:
        raise InvalidAmountError("Oracle price must be positive")
    factor = slippage_factor(impact, shift, is_long)
    if factor <= 0:
        raise ExposureExceededError("Skew shift leaves no executable price")
    if is_long:
        return mul_div_up(oracle_price, factor, PRICE_SCALE)
    return mul_div(oracle_price, factor, PRICE_SCALE)


class PriceEngine:
    """Binds the price curve to product and vault state."""

    def __init__(self, max_shift: int = MAX_SHIFT) -> None:
        self.max_shift = max_shift

    @staticmethod
    def reserve_for(product: Product, vault: Vault) -> int:
        return product.reserve if product.reserve > 0 else vault.balance

    def quote(
        self,
        product: Product,
        vault: Vault,
        oracle_price: int,
        is_long: bool,
        amount: int,
        max_shift: Optional[int] = None,
    ) -> int:
        return execution_price(
            oracle_price,
            is_long,
            product.open_interest_long,
            product.open_interest_short,
            product.max_exposure,
            self.reserve_for(product, vault),
            amount,
            self.max_shift if max_shift is None else max_shift,
        )

    def open_price(self, product: Product, vault: Vault, oracle_price: int, is_long: bool,
                   amount: int, max_shift: Optional[int] = None) -> int:
        """Opening a long buys; opening a short sells."""
        self.check_exposure(product, is_long, amount)
        return self.quote(product, vault, oracle_price, is_long, amount, max_shift)

    def close_price(self, product: Product, vault: Vault, oracle_price: int, is_long: bool,
                    amount: int, max_shift: Optional[int] = None) -> int:
        """
        Closing takes the opposite side against current open interest.

        A reserve too thin to carry *amount* (an empty or mostly redeemed
        vault) never blocks an exit: the close is priced at the oracle with
        only the skew shift applied.
        """
        reserve = self.reserve_for(product, vault)
        if reserve > amount:
            return self.quote(product, vault, oracle_price, not is_long, amount, max_shift)

        logger.info(
            "Reserve %d below close amount %d on product %d, pricing at oracle",
            reserve, amount, product.product_id,
        )
        shift = skew_shift(
            product.open_interest_long,
            product.open_interest_short,
            product.max_exposure,
            self.max_shift if max_shift is None else max_shift,
        )
        return apply_factor(oracle_price, PRICE_SCALE, shift, not is_long)

    @staticmethod
    def check_exposure(product: Product, is_long: bool, amount: int) -> None:
        """Reject opens that push net skew on the growing side past max_exposure."""
        if is_long:
            net = product.open_interest_long + amount - product.open_interest_short
        else:
            net = product.open_interest_short + amount - product.open_interest_long
        if net > product.max_exposure:
            raise ExposureExceededError(
                f"Net exposure {net} would exceed max exposure {product.max_exposure}"
            )
