"""
Shared fixtures for the PerpVault test suite.

Every venue is built on an InMemoryLedger and a StaticPriceFeed, starts at
block (1, T0) and is owned by ``OWNER``.
"""

import pytest

from perpvault.constants import (
    DEFAULT_REWARD_DURATION,
    DEFAULT_STAKE_COOLDOWN,
    PRICE_SCALE,
)
from perpvault.exchange import InMemoryLedger, Product, StaticPriceFeed, Venue
from perpvault.exchange.state_manager import VenueStateManager

E8 = PRICE_SCALE
T0 = 1_700_000_000
OWNER = "pv_owner_00000000000000000000000000000001"
ORACLE = "ETH/USD"

# Virtual reserve large enough that impact rounds away for test-sized trades
BIG_RESERVE = 10**20


@pytest.fixture(autouse=True)
def reset_state_manager():
    """Reset the singleton before every test."""
    VenueStateManager.reset_instance()
    yield
    VenueStateManager.reset_instance()


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def feed() -> StaticPriceFeed:
    return StaticPriceFeed({ORACLE: 1000 * E8})


@pytest.fixture
def make_product():
    """Builder for a product with test-friendly defaults."""
    def _make(product_id: int = 1, **overrides) -> Product:
        params = dict(
            product_id=product_id,
            oracle=ORACLE,
            max_leverage=50 * E8,
            fee_bps=10,
            interest_bps=0,
            liquidation_threshold_bps=200,
            liquidation_bounty_bps=1000,
            min_price_change_bps=0,
            max_exposure=10**16,
            reserve=BIG_RESERVE,
        )
        params.update(overrides)
        return Product(**params)
    return _make


@pytest.fixture
def make_venue(ledger, feed, make_product):
    """Builder for a venue at block (1, T0) with one product listed."""
    def _make(
        settings=None,
        vault_cap: int = 10**9 * E8,
        stake_cooldown: int = DEFAULT_STAKE_COOLDOWN,
        reward_duration: int = DEFAULT_REWARD_DURATION,
        products=None,
    ) -> Venue:
        venue = Venue(
            OWNER,
            ledger,
            feed,
            vault_cap=vault_cap,
            stake_cooldown=stake_cooldown,
            reward_duration=reward_duration,
            settings=settings,
        )
        venue.begin_block(1, T0)
        for product in (products if products is not None else [make_product()]):
            venue.add_product(OWNER, product)
        return venue
    return _make


@pytest.fixture
def venue(make_venue) -> Venue:
    return make_venue()
