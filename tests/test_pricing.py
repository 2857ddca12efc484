"""
Test suite for the PerpVault price engine

Covers:
  - Reserve-curve price impact (long and short)
  - Open-interest skew shift and its asymmetric application
  - Execution price rounding toward the vault
  - Monotonicity in trade size
  - Net exposure cap
"""

import pytest

from perpvault.constants import MAX_SHIFT, PRICE_SCALE
from perpvault.exceptions import (
    ExposureExceededError,
    InsufficientVaultLiquidityError,
    InvalidAmountError,
)
from perpvault.exchange.fixed_point import mul_div_up
from perpvault.exchange.pricing import (
    PriceEngine,
    execution_price,
    price_impact,
    skew_shift,
    slippage_factor,
)
from perpvault.exchange.state import Product, Vault

E8 = PRICE_SCALE
MAX_EXPOSURE = 10**16


def _product(**overrides) -> Product:
    params = dict(
        product_id=1, oracle="ETH/USD", max_leverage=50 * E8, fee_bps=10,
        interest_bps=0, liquidation_threshold_bps=200, liquidation_bounty_bps=1000,
        min_price_change_bps=0, max_exposure=MAX_EXPOSURE, reserve=5000 * E8,
    )
    params.update(overrides)
    return Product(**params)


# ============================================================================
# 1. Price impact
# ============================================================================

class TestPriceImpact:
    """Virtual constant-product impact."""

    def test_long_open_reference_values(self):
        # 10 units of notional against a 5000 unit reserve
        assert price_impact(5000 * E8, 10 * E8, True) == 100200400
        price = execution_price(3000 * E8, True, 0, 0, MAX_EXPOSURE, 5000 * E8, 10 * E8)
        assert price == 300601200000

    def test_short_impact_below_scale(self):
        factor = price_impact(5000 * E8, 10 * E8, False)
        assert factor < E8
        assert 99_800_000 < factor < E8

    def test_zero_amount_rejected(self):
        with pytest.raises(InvalidAmountError):
            price_impact(5000 * E8, 0, True)

    def test_empty_reserve_rejected(self):
        with pytest.raises(InsufficientVaultLiquidityError):
            price_impact(0, 10 * E8, True)

    def test_amount_at_reserve_rejected(self):
        with pytest.raises(ExposureExceededError):
            price_impact(100 * E8, 100 * E8, True)
        with pytest.raises(ExposureExceededError):
            price_impact(100 * E8, 150 * E8, False)


# ============================================================================
# 2. Monotonicity
# ============================================================================

class TestMonotonicity:
    """Bigger trades never get a better price."""

    AMOUNTS = [1 * E8, 10 * E8, 100 * E8, 1000 * E8, 4000 * E8]

    def test_long_price_increases_with_size(self):
        prices = [
            execution_price(3000 * E8, True, 0, 0, MAX_EXPOSURE, 5000 * E8, a)
            for a in self.AMOUNTS
        ]
        assert prices == sorted(prices)
        assert len(set(prices)) == len(prices)
        assert prices[0] > 3000 * E8

    def test_short_price_decreases_with_size(self):
        prices = [
            execution_price(3000 * E8, False, 0, 0, MAX_EXPOSURE, 5000 * E8, a)
            for a in self.AMOUNTS
        ]
        assert prices == sorted(prices, reverse=True)
        assert len(set(prices)) == len(prices)
        assert prices[0] < 3000 * E8

    def test_smaller_reserve_means_more_slippage(self):
        deep = execution_price(3000 * E8, True, 0, 0, MAX_EXPOSURE, 50_000 * E8, 10 * E8)
        shallow = execution_price(3000 * E8, True, 0, 0, MAX_EXPOSURE, 500 * E8, 10 * E8)
        assert shallow > deep > 3000 * E8


# ============================================================================
# 3. Rounding
# ============================================================================

class TestRounding:
    """Long prices round up, short prices round down."""

    ORACLE = 123_456_789

    def test_long_rounds_up(self):
        factor = price_impact(5000 * E8, 10 * E8, True)
        floor = self.ORACLE * factor // E8
        price = execution_price(self.ORACLE, True, 0, 0, MAX_EXPOSURE, 5000 * E8, 10 * E8)
        assert price == mul_div_up(self.ORACLE, factor, E8)
        assert price == floor + 1

    def test_short_rounds_down(self):
        factor = price_impact(5000 * E8, 10 * E8, False)
        price = execution_price(self.ORACLE, False, 0, 0, MAX_EXPOSURE, 5000 * E8, 10 * E8)
        assert price == self.ORACLE * factor // E8

    def test_non_positive_oracle_rejected(self):
        with pytest.raises(InvalidAmountError):
            execution_price(0, True, 0, 0, MAX_EXPOSURE, 5000 * E8, 10 * E8)


# ============================================================================
# 4. Skew shift
# ============================================================================

class TestSkewShift:
    """Open-interest skew shift."""

    def test_balanced_book_has_no_shift(self):
        assert skew_shift(500, 500, 1000) == 0

    def test_full_skew_hits_cap(self):
        assert skew_shift(1000, 0, 1000) == MAX_SHIFT
        assert skew_shift(0, 1000, 1000) == -MAX_SHIFT

    def test_shift_is_capped(self):
        assert skew_shift(5000, 0, 1000) == MAX_SHIFT
        assert skew_shift(0, 5000, 1000) == -MAX_SHIFT

    def test_truncates_toward_zero(self):
        assert skew_shift(1, 0, 7) == MAX_SHIFT // 7
        assert skew_shift(0, 1, 7) == -(MAX_SHIFT // 7)

    def test_custom_cap(self):
        assert skew_shift(1000, 0, 1000, max_shift=0) == 0
        assert skew_shift(1000, 0, 2000, max_shift=100) == 50

    def test_growing_larger_side_pays_full_shift(self):
        assert slippage_factor(E8, 1000, True) == E8 + 1000
        assert slippage_factor(E8, -1000, False) == E8 - 1000

    def test_shrinking_larger_side_earns_half(self):
        assert slippage_factor(E8, -1000, True) == E8 - 500
        assert slippage_factor(E8, 1000, False) == E8 + 500

    def test_long_skew_raises_long_price(self):
        flat = execution_price(3000 * E8, True, 0, 0, 1000 * E8, 5000 * E8, 10 * E8)
        skewed = execution_price(3000 * E8, True, 500 * E8, 0, 1000 * E8, 5000 * E8, 10 * E8)
        assert skewed > flat


# ============================================================================
# 5. PriceEngine
# ============================================================================

class TestPriceEngine:
    """Binding to product and vault state."""

    def test_reserve_falls_back_to_vault_balance(self):
        vault = Vault(cap=0, stake_cooldown=0, balance=777 * E8)
        assert PriceEngine.reserve_for(_product(reserve=0), vault) == 777 * E8
        assert PriceEngine.reserve_for(_product(), vault) == 5000 * E8

    def test_open_price_matches_curve(self):
        engine = PriceEngine()
        vault = Vault(cap=0, stake_cooldown=0, balance=1)
        price = engine.open_price(_product(), vault, 3000 * E8, True, 10 * E8)
        assert price == 300601200000

    def test_close_takes_opposite_side(self):
        engine = PriceEngine()
        vault = Vault(cap=0, stake_cooldown=0, balance=1)
        product = _product()
        assert engine.close_price(product, vault, 3000 * E8, True, 10 * E8) == \
            engine.quote(product, vault, 3000 * E8, False, 10 * E8)

    def test_close_on_empty_reserve_prices_at_oracle(self):
        engine = PriceEngine()
        vault = Vault(cap=0, stake_cooldown=0, balance=0)
        product = _product(reserve=0)
        assert engine.close_price(product, vault, 3000 * E8, True, 10 * E8) == 3000 * E8
        with pytest.raises(InsufficientVaultLiquidityError):
            engine.open_price(product, vault, 3000 * E8, True, 10 * E8)

    def test_close_on_thin_reserve_keeps_skew_shift(self):
        engine = PriceEngine()
        vault = Vault(cap=0, stake_cooldown=0, balance=5 * E8)
        product = _product(reserve=0, max_exposure=1000 * E8)
        product.add_open_interest(True, 500 * E8)
        # closing a long sells into a long-heavy book and earns half the shift
        assert engine.close_price(product, vault, 3000 * E8, True, 10 * E8) == 300225000000
        with pytest.raises(ExposureExceededError):
            engine.open_price(product, vault, 3000 * E8, False, 10 * E8)

    def test_exposure_cap(self):
        engine = PriceEngine()
        vault = Vault(cap=0, stake_cooldown=0, balance=1)
        product = _product(max_exposure=100 * E8)
        with pytest.raises(ExposureExceededError):
            engine.open_price(product, vault, 3000 * E8, True, 101 * E8)

    def test_exposure_counts_net_skew(self):
        product = _product(max_exposure=100 * E8)
        product.add_open_interest(True, 100 * E8)
        # a short of 200 only flips the skew to -100
        PriceEngine.check_exposure(product, False, 200 * E8)
        with pytest.raises(ExposureExceededError):
            PriceEngine.check_exposure(product, False, 201 * E8)
        with pytest.raises(ExposureExceededError):
            PriceEngine.check_exposure(product, True, 1)
