"""
PerpVault Venue State

Every piece of consensus-critical state lives in one explicit struct,
``VenueState``, that the engines receive by reference.  There is no module
level or class level mutable state.  The venue facade forks the struct per
operation (see ``VenueState.fork``) and merges the fork back only when the
operation succeeds.  Forking copies the small parts outright; the per-account
maps are wrapped in ``OverlayDict`` so an operation copies only the entries it
reads or writes.

Units:
  - prices, leverage, margins, balances, vault shares   -> PRICE_SCALE (1e8)
  - reward-per-share accumulators                       -> REWARD_SCALE (1e18)
  - fee / interest / threshold rates                    -> basis points
  - time                                                -> integer seconds (block time)
"""

from __future__ import annotations

import copy
import hashlib
from collections.abc import MutableMapping
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Iterator, List, Optional

from ..constants import (
    BPS_SCALE,
    DEFAULT_DEPOSITOR_FEE_BPS,
    DEFAULT_MIN_PROFIT_TIME,
    DEFAULT_PROTOCOL_FEE_BPS,
    DEFAULT_STAKER_FEE_BPS,
    DEFAULT_VAULT_FEE_BPS,
    MAX_SHIFT,
    MIN_LEVERAGE,
    PRICE_SCALE,
)
from ..exceptions import ArithmeticOverflowError, ConfigurationError, UnknownProductError
from ..governance.access import AccessControl
from .ledger import TransferQueue


def position_key(account: str, product_id: int, is_long: bool) -> str:
    """Deterministic position identity, addressable without a lookup table."""
    raw = f"{account}:{product_id}:{int(bool(is_long))}".encode()
    return hashlib.blake2b(raw, digest_size=32).hexdigest()


# ---------------------------------------------------------------------------
# Products and positions
# ---------------------------------------------------------------------------

@dataclass
class Product:
    """Configuration and open interest for a single tradable instrument."""
    product_id: int
    oracle: str                          # price feed reference
    max_leverage: int                    # 1e8 scale
    fee_bps: int
    interest_bps: int                    # annual
    liquidation_threshold_bps: int       # (margin + upnl) / notional floor
    liquidation_bounty_bps: int          # share of forfeited margin paid to liquidator
    min_price_change_bps: int
    max_exposure: int                    # skew-shift denominator and net exposure cap
    reserve: int = 0                     # slippage reserve, 0 = use vault balance
    is_active: bool = True
    open_interest_long: int = 0
    open_interest_short: int = 0

    def validate(self) -> None:
        if self.product_id <= 0:
            raise ConfigurationError("product_id must be positive")
        if not self.oracle:
            raise ConfigurationError("Product oracle required")
        if self.max_leverage < MIN_LEVERAGE:
            raise ConfigurationError("max_leverage must be at least 1x")
        for name in ("fee_bps", "interest_bps", "liquidation_threshold_bps",
                     "liquidation_bounty_bps", "min_price_change_bps"):
            value = getattr(self, name)
            if value < 0 or value > BPS_SCALE:
                raise ConfigurationError(f"{name} must be within [0, {BPS_SCALE}]")
        if self.max_exposure <= 0:
            raise ConfigurationError("max_exposure must be positive")
        if self.reserve < 0:
            raise ConfigurationError("reserve must be non-negative")

    def open_interest(self, is_long: bool) -> int:
        return self.open_interest_long if is_long else self.open_interest_short

    def add_open_interest(self, is_long: bool, amount: int) -> None:
        if is_long:
            self.open_interest_long += amount
        else:
            self.open_interest_short += amount

    def remove_open_interest(self, is_long: bool, amount: int) -> None:
        # Open interest on a side always equals the sum of its positions' notionals
        current = self.open_interest(is_long)
        if amount > current:
            raise ArithmeticOverflowError(
                f"Removing {amount} from open interest {current} on product {self.product_id}"
            )
        if is_long:
            self.open_interest_long = current - amount
        else:
            self.open_interest_short = current - amount


@dataclass
class Position:
    """One position per (owner, product, direction)."""
    owner: str
    product_id: int
    is_long: bool
    margin: int
    leverage: int
    price: int                           # notional-weighted entry price
    oracle_price: int                    # oracle at last (re)price
    timestamp: int                       # last (re)price

    @property
    def notional(self) -> int:
        return self.margin * self.leverage // PRICE_SCALE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "productId": self.product_id,
            "isLong": self.is_long,
            "margin": self.margin,
            "leverage": self.leverage,
            "price": self.price,
            "oraclePrice": self.oracle_price,
            "timestamp": self.timestamp,
        }


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------

@dataclass
class Vault:
    cap: int
    stake_cooldown: int
    balance: int = 0
    staked: int = 0                      # net principal deposited
    shares: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cap": self.cap,
            "balance": self.balance,
            "staked": self.staked,
            "shares": self.shares,
            "stakeCooldown": self.stake_cooldown,
        }


@dataclass
class Stake:
    owner: str
    shares: int = 0
    amount: int = 0                      # principal still attributed to these shares
    timestamp: int = 0                   # last deposit, gates redeem cooldown


# ---------------------------------------------------------------------------
# Rewards
# ---------------------------------------------------------------------------

@dataclass
class RewardPool:
    """Streaming reward accumulator for one reward stream."""
    pool_id: str
    share_source: str                    # ShareSource name, see rewards.py
    reward_asset: str
    duration: int
    reward_rate: int = 0
    period_finish: int = 0
    last_update_time: int = 0
    reward_per_share_stored: int = 0     # REWARD_SCALE
    funded: int = 0                      # reward units held for this pool
    queued: int = 0                      # funded but not yet streamed
    notified_total: int = 0
    reward_per_share_paid: Dict[str, int] = field(default_factory=dict)
    accrued: Dict[str, int] = field(default_factory=dict)
    claimed: Dict[str, int] = field(default_factory=dict)

    def is_active(self, now: int) -> bool:
        return now < self.period_finish

    def to_dict(self) -> Dict[str, Any]:
        return {
            "poolId": self.pool_id,
            "shareSource": self.share_source,
            "rewardAsset": self.reward_asset,
            "duration": self.duration,
            "rewardRate": self.reward_rate,
            "periodFinish": self.period_finish,
            "lastUpdateTime": self.last_update_time,
            "rewardPerShareStored": self.reward_per_share_stored,
            "funded": self.funded,
            "queued": self.queued,
        }


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@dataclass
class FeeSplit:
    """Basis-point split of every fee event."""
    protocol_bps: int = DEFAULT_PROTOCOL_FEE_BPS
    staker_bps: int = DEFAULT_STAKER_FEE_BPS
    depositor_bps: int = DEFAULT_DEPOSITOR_FEE_BPS
    vault_bps: int = DEFAULT_VAULT_FEE_BPS

    def validate(self) -> None:
        parts = (self.protocol_bps, self.staker_bps, self.depositor_bps, self.vault_bps)
        if any(p < 0 for p in parts):
            raise ConfigurationError("Fee split parts must be non-negative")
        if sum(parts) != BPS_SCALE:
            raise ConfigurationError(f"Fee split must sum to {BPS_SCALE}, got {sum(parts)}")


@dataclass
class Settings:
    min_margin: int = 0
    min_position_size: int = 0           # bounds on margin * leverage
    max_position_size: int = 0           # 0 = unbounded
    min_profit_time: int = DEFAULT_MIN_PROFIT_TIME
    check_price_change: bool = False
    max_shift: int = MAX_SHIFT
    allow_public_liquidation: bool = False
    can_user_stake: bool = True
    liquidation_bounty_fixed: int = 0    # 0 = use product bps
    fee_split: FeeSplit = field(default_factory=FeeSplit)


# ---------------------------------------------------------------------------
# Whole venue
# ---------------------------------------------------------------------------

class OverlayDict(MutableMapping):
    """
    Copy-on-access view over a committed dict.

    Reading a key copies its value into the overlay, so callers may mutate
    what they get back without touching *base*.  Writes and deletes stay in
    the overlay until ``apply`` folds them into *base*.
    """

    def __init__(self, base: Dict[Any, Any]) -> None:
        self._base = base
        self._changed: Dict[Any, Any] = {}
        self._deleted: set = set()

    def __getitem__(self, key: Any) -> Any:
        if key in self._changed:
            return self._changed[key]
        if key in self._deleted or key not in self._base:
            raise KeyError(key)
        value = copy.deepcopy(self._base[key])
        self._changed[key] = value
        return value

    def __setitem__(self, key: Any, value: Any) -> None:
        self._deleted.discard(key)
        self._changed[key] = value

    def __delitem__(self, key: Any) -> None:
        if key not in self:
            raise KeyError(key)
        self._changed.pop(key, None)
        if key in self._base:
            self._deleted.add(key)

    def __contains__(self, key: object) -> bool:
        if key in self._changed:
            return True
        return key in self._base and key not in self._deleted

    def __iter__(self) -> Iterator[Any]:
        for key in self._base:
            if key not in self._deleted:
                yield key
        for key in self._changed:
            if key not in self._base:
                yield key

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def apply(self) -> None:
        """Fold the overlay into the base dict."""
        for key in self._deleted:
            self._base.pop(key, None)
        self._base.update(self._changed)
        self._changed = {}
        self._deleted = set()


_POOL_MAPS = ("reward_per_share_paid", "accrued", "claimed")
_STATE_MAPS = ("positions", "stakes", "token_stakes")


@dataclass
class VenueState:
    access: AccessControl
    vault: Vault
    collateral_asset: str
    token_asset: str
    settings: Settings = field(default_factory=Settings)
    products: Dict[int, Product] = field(default_factory=dict)
    positions: Dict[str, Position] = field(default_factory=dict)
    stakes: Dict[str, Stake] = field(default_factory=dict)
    token_stakes: Dict[str, int] = field(default_factory=dict)
    total_token_staked: int = 0
    reward_pools: Dict[str, RewardPool] = field(default_factory=dict)
    protocol_reserve: int = 0

    def fork(self) -> "VenueState":
        """Working copy for one operation; pass it back to ``merge``."""
        pools = {
            pool_id: replace(pool, **{name: OverlayDict(getattr(pool, name)) for name in _POOL_MAPS})
            for pool_id, pool in self.reward_pools.items()
        }
        return VenueState(
            access=copy.deepcopy(self.access),
            vault=copy.deepcopy(self.vault),
            collateral_asset=self.collateral_asset,
            token_asset=self.token_asset,
            settings=copy.deepcopy(self.settings),
            products=copy.deepcopy(self.products),
            positions=OverlayDict(self.positions),
            stakes=OverlayDict(self.stakes),
            token_stakes=OverlayDict(self.token_stakes),
            total_token_staked=self.total_token_staked,
            reward_pools=pools,
            protocol_reserve=self.protocol_reserve,
        )

    def merge(self, working: "VenueState") -> None:
        """Commit a fork produced by ``fork``."""
        for name in _STATE_MAPS:
            getattr(working, name).apply()
        for pool_id, fork in working.reward_pools.items():
            pool = self.reward_pools.get(pool_id)
            if pool is None:
                # created inside the operation
                self.reward_pools[pool_id] = replace(
                    fork, **{name: dict(getattr(fork, name)) for name in _POOL_MAPS}
                )
                continue
            for f in fields(RewardPool):
                if f.name in _POOL_MAPS:
                    getattr(fork, f.name).apply()
                else:
                    setattr(pool, f.name, getattr(fork, f.name))

        self.access = working.access
        self.vault = working.vault
        self.settings = working.settings
        self.products = working.products
        self.total_token_staked = working.total_token_staked
        self.protocol_reserve = working.protocol_reserve


@dataclass
class OperationContext:
    """Per-operation inputs: the single clock read, queued transfers, events."""
    now: int
    transfers: TransferQueue
    events: List[Any] = field(default_factory=list)

    def emit(self, event: Any) -> Any:
        self.events.append(event)
        return event


def get_product(state: VenueState, product_id: int, require_active: bool = True) -> Product:
    product = state.products.get(product_id)
    if product is None:
        raise UnknownProductError(f"Product {product_id} not found")
    if require_active and not product.is_active:
        raise UnknownProductError(f"Product {product_id} is not active")
    return product


def find_position(state: VenueState, key: str) -> Optional[Position]:
    return state.positions.get(key)
