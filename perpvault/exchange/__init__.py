"""
PerpVault Exchange Engine

Single-vault leveraged perpetual venue.

Components:
  - Price Engine (reserve-curve impact plus open-interest skew shift)
  - Vault Accounting (share-based counterparty pool)
  - Position Ledger (open, average in, partial and full close)
  - Fee Distributor (protocol / stakers / depositors / vault split)
  - Liquidation Engine (threshold check, bounty, batch liquidation)
  - Reward Accrual (one streaming engine, three reward pools)
  - Venue facade and block-level state manager
"""

from .fixed_point import (
    ceil_div,
    checked,
    div_round,
    div_trunc,
    mul_div,
    mul_div_up,
)
from .ledger import (
    AssetLedger,
    InMemoryLedger,
    Transfer,
    TransferQueue,
)
from .state import (
    FeeSplit,
    OperationContext,
    Position,
    Product,
    RewardPool,
    Settings,
    Stake,
    Vault,
    VenueState,
    position_key,
)
from .events import (
    ClosePositionEvent,
    ConfigChangedEvent,
    FeeDistributedEvent,
    NewPositionEvent,
    RedeemEvent,
    RewardAddedEvent,
    RewardPaidEvent,
    StakeEvent,
    TokenStakeEvent,
)
from .oracle import (
    PriceFeed,
    StaticPriceFeed,
)
from .pricing import (
    PriceEngine,
    execution_price,
    price_impact,
    skew_shift,
)
from .rewards import (
    TOKEN_STAKE_SOURCE,
    VAULT_SHARES_SOURCE,
    RewardAccrual,
    TokenStaking,
)
from .fees import FeeDistributor
from .vault import VaultAccounting
from .perpetual import (
    PositionLedger,
    interest_fee,
    position_pnl,
)
from .liquidation import (
    LiquidationEngine,
    is_liquidatable,
)
from .venue import Venue
from .transactions import (
    VENUE_GAS_COSTS,
    VenueOpType,
    VenueTransaction,
)
from .state_manager import (
    VenueExecResult,
    VenueStateManager,
)

__all__ = [
    # Fixed point
    "ceil_div", "checked", "div_round", "div_trunc", "mul_div", "mul_div_up",
    # Ledger
    "AssetLedger", "InMemoryLedger", "Transfer", "TransferQueue",
    # State
    "FeeSplit", "OperationContext", "Position", "Product", "RewardPool",
    "Settings", "Stake", "Vault", "VenueState", "position_key",
    # Events
    "ClosePositionEvent", "ConfigChangedEvent", "FeeDistributedEvent",
    "NewPositionEvent", "RedeemEvent", "RewardAddedEvent", "RewardPaidEvent",
    "StakeEvent", "TokenStakeEvent",
    # Pricing
    "PriceFeed", "StaticPriceFeed", "PriceEngine", "execution_price",
    "price_impact", "skew_shift",
    # Engines
    "TOKEN_STAKE_SOURCE", "VAULT_SHARES_SOURCE", "RewardAccrual", "TokenStaking",
    "FeeDistributor", "VaultAccounting", "PositionLedger", "interest_fee",
    "position_pnl", "LiquidationEngine", "is_liquidatable",
    # Venue
    "Venue", "VENUE_GAS_COSTS", "VenueOpType", "VenueTransaction",
    "VenueExecResult", "VenueStateManager",
]
