"""
PerpVault Venue

Facade over the engines.  Owns the single ``VenueState`` and is the only
place where state is committed.

Every public mutating method runs as one atomic operation:

    1. reentrancy guard (a nested call raises ReentrancyError)
    2. fork of the state (entries copied on access); the block timestamp is read once
    3. capability check, validation and internal accounting on the fork
    4. queued transfers settled against the asset ledger (pulls, then pushes)
    5. the fork is merged into the committed state and events are published

Any exception in 3 or 4 discards the fork, so a rejected operation leaves
no trace.  Time only moves through ``begin_block``.
"""

from __future__ import annotations

import copy
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from ..constants import (
    DEFAULT_COLLATERAL_ASSET,
    DEFAULT_INCENTIVE_ASSET,
    DEFAULT_REWARD_DURATION,
    DEFAULT_STAKE_COOLDOWN,
    DEFAULT_TOKEN_ASSET,
    DEPOSITOR_FEE_POOL,
    DEPOSITOR_INCENTIVE_POOL,
    STAKER_FEE_POOL,
    VENUE_ACCOUNT,
)
from ..exceptions import (
    ClockError,
    ConfigurationError,
    ReentrancyError,
)
from ..governance.access import AccessControl, Role
from ..logger import get_logger, set_level as set_log_level
from .events import (
    ClosePositionEvent,
    ConfigChangedEvent,
    NewPositionEvent,
    RedeemEvent,
    RewardAddedEvent,
    StakeEvent,
)
from .fees import FeeDistributor
from .ledger import AssetLedger, TransferQueue
from .liquidation import LiquidationEngine
from .oracle import PriceFeed
from .perpetual import PositionLedger
from .pricing import PriceEngine
from .rewards import (
    TOKEN_STAKE_SOURCE,
    VAULT_SHARES_SOURCE,
    RewardAccrual,
    TokenStaking,
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
    get_product,
    position_key,
)
from .vault import VaultAccounting

logger = get_logger(__name__)

PRODUCT_FIELDS = (
    "oracle",
    "max_leverage",
    "fee_bps",
    "interest_bps",
    "liquidation_threshold_bps",
    "liquidation_bounty_bps",
    "min_price_change_bps",
    "max_exposure",
    "reserve",
    "is_active",
)


class Venue:
    """
    Single-vault perpetual venue.

    Usage:

        venue = Venue(owner, ledger, feed, vault_cap=10_000 * 10**8)
        venue.begin_block(1, 1_700_000_000)
        venue.stake(lp, 1_000 * 10**8, lp)
        venue.add_product(owner, Product(...))
        event = venue.open_position(trader, 1, 10**8, True, 10 * 10**8)
    """

    def __init__(
        self,
        owner: str,
        ledger: AssetLedger,
        price_feed: PriceFeed,
        *,
        vault_cap: int,
        stake_cooldown: int = DEFAULT_STAKE_COOLDOWN,
        reward_duration: int = DEFAULT_REWARD_DURATION,
        collateral_asset: str = DEFAULT_COLLATERAL_ASSET,
        token_asset: str = DEFAULT_TOKEN_ASSET,
        incentive_asset: str = DEFAULT_INCENTIVE_ASSET,
        settings: Optional[Settings] = None,
        account: str = VENUE_ACCOUNT,
    ) -> None:
        if not owner:
            raise ConfigurationError("Owner required")
        if vault_cap < 0 or stake_cooldown < 0:
            raise ConfigurationError("Vault cap and cooldown must be non-negative")
        settings = copy.deepcopy(settings) if settings is not None else Settings()
        settings.fee_split.validate()

        self.ledger = ledger
        self.price_feed = price_feed
        self.account = account

        # --- Engines (stateless, operate on VenueState) ---
        self.rewards = RewardAccrual()
        self.pricing = PriceEngine(settings.max_shift)
        self.vault = VaultAccounting(self.rewards)
        self.fees = FeeDistributor(self.rewards)
        self.positions = PositionLedger(price_feed, self.pricing, self.vault, self.fees)
        self.liquidations = LiquidationEngine(price_feed, self.vault)
        self.token_staking = TokenStaking(self.rewards)

        # --- Consensus-critical state ---
        self._state = VenueState(
            access=AccessControl(owner=owner),
            vault=Vault(cap=vault_cap, stake_cooldown=stake_cooldown),
            collateral_asset=collateral_asset,
            token_asset=token_asset,
            settings=settings,
        )
        self.rewards.create_pool(self._state, STAKER_FEE_POOL, TOKEN_STAKE_SOURCE,
                                 collateral_asset, reward_duration)
        self.rewards.create_pool(self._state, DEPOSITOR_FEE_POOL, VAULT_SHARES_SOURCE,
                                 collateral_asset, reward_duration)
        self.rewards.create_pool(self._state, DEPOSITOR_INCENTIVE_POOL, VAULT_SHARES_SOURCE,
                                 incentive_asset, reward_duration)

        # --- Block clock ---
        self._height: int = 0
        self._timestamp: int = 0

        self._events: List[Any] = []
        self._in_operation: bool = False

        logger.info("Venue initialized: owner=%s collateral=%s", owner, collateral_asset)

    @classmethod
    def from_config(cls, config, owner: str, ledger: AssetLedger, price_feed: PriceFeed) -> "Venue":
        """Build a venue from a ``perpvault.config.VenueConfig``."""
        config.validate()
        set_log_level(config.venue.log_level)
        settings = Settings(
            min_margin=config.margin.min_margin,
            min_position_size=config.margin.min_position_size,
            max_position_size=config.margin.max_position_size,
            min_profit_time=config.margin.min_profit_time,
            check_price_change=config.margin.check_price_change,
            max_shift=config.pricing.max_shift,
            allow_public_liquidation=config.liquidation.allow_public_liquidation,
            can_user_stake=config.vault.can_user_stake,
            liquidation_bounty_fixed=config.liquidation.bounty_fixed,
            fee_split=FeeSplit(
                protocol_bps=config.fees.protocol_bps,
                staker_bps=config.fees.staker_bps,
                depositor_bps=config.fees.depositor_bps,
                vault_bps=config.fees.vault_bps,
            ),
        )
        venue = cls(
            owner,
            ledger,
            price_feed,
            vault_cap=config.vault.cap,
            stake_cooldown=config.vault.stake_cooldown,
            reward_duration=config.rewards.duration,
            collateral_asset=config.venue.collateral_asset,
            token_asset=config.venue.token_asset,
            incentive_asset=config.venue.incentive_asset,
            settings=settings,
        )
        for product_cfg in config.products:
            product = product_cfg.to_product()
            product.validate()
            venue._state.products[product.product_id] = product
        return venue

    # =====================================================================
    #  Clock and atomicity
    # =====================================================================

    def begin_block(self, height: int, timestamp: int) -> None:
        """Advance the operation clock.  Height and timestamp never go backwards."""
        if self._in_operation:
            raise ReentrancyError("Cannot change block during an operation")
        if height < self._height or timestamp < self._timestamp:
            raise ClockError(
                f"Block ({height}, {timestamp}) precedes ({self._height}, {self._timestamp})"
            )
        self._height = height
        self._timestamp = int(timestamp)

    @property
    def now(self) -> int:
        return self._timestamp

    @property
    def height(self) -> int:
        return self._height

    @property
    def events(self) -> List[Any]:
        return list(self._events)

    @contextmanager
    def _operation(self, name: str) -> Iterator[Tuple[VenueState, OperationContext]]:
        if self._in_operation:
            raise ReentrancyError(f"{name} entered while another operation is in flight")
        self._in_operation = True
        try:
            working = self._state.fork()
            ctx = OperationContext(now=self._timestamp, transfers=TransferQueue(self.account))
            yield working, ctx
            ctx.transfers.settle(self.ledger)
            self._state.merge(working)
            self._events.extend(ctx.events)
        finally:
            self._in_operation = False

    def export_state(self) -> VenueState:
        return copy.deepcopy(self._state)

    def import_state(self, state: VenueState) -> None:
        if self._in_operation:
            raise ReentrancyError("Cannot replace state during an operation")
        self._state = copy.deepcopy(state)

    # =====================================================================
    #  Trading
    # =====================================================================

    def open_position(self, account: str, product_id: int, margin: int, is_long: bool,
                      leverage: int) -> NewPositionEvent:
        with self._operation("open_position") as (state, ctx):
            return self.positions.open_position(ctx, state, account, product_id, margin, is_long, leverage)

    def close_position(self, account: str, product_id: int, close_margin: int,
                       is_long: bool) -> ClosePositionEvent:
        with self._operation("close_position") as (state, ctx):
            return self.positions.close_position(ctx, state, account, product_id, close_margin, is_long)

    def liquidate_positions(self, caller: str, keys: Sequence[str]) -> List[ClosePositionEvent]:
        with self._operation("liquidate_positions") as (state, ctx):
            state.access.require(
                caller, Role.PUBLIC_WHEN_FLAGGED,
                flag=state.settings.allow_public_liquidation, action="liquidate",
            )
            return self.liquidations.liquidate_positions(ctx, state, caller, keys)

    # =====================================================================
    #  Vault
    # =====================================================================

    def stake(self, account: str, amount: int, recipient: Optional[str] = None) -> StakeEvent:
        with self._operation("stake") as (state, ctx):
            return self.vault.stake(ctx, state, account, amount, recipient or account)

    def redeem(self, account: str, shares: int, recipient: Optional[str] = None) -> RedeemEvent:
        with self._operation("redeem") as (state, ctx):
            return self.vault.redeem(ctx, state, account, shares, recipient or account)

    # =====================================================================
    #  Token staking and rewards
    # =====================================================================

    def stake_token(self, account: str, amount: int) -> int:
        with self._operation("stake_token") as (state, ctx):
            return self.token_staking.stake(ctx, state, account, amount)

    def withdraw_token(self, account: str, amount: int) -> int:
        with self._operation("withdraw_token") as (state, ctx):
            return self.token_staking.withdraw(ctx, state, account, amount)

    def exit(self, account: str) -> Tuple[int, int]:
        with self._operation("exit") as (state, ctx):
            return self.token_staking.exit(ctx, state, account)

    def fund_reward(self, funder: str, pool_id: str, amount: int) -> int:
        """Move *amount* of the pool's reward asset from *funder* into the venue."""
        with self._operation("fund_reward") as (state, ctx):
            pool = self.rewards.fund(state, pool_id, amount)
            ctx.transfers.pull(pool.reward_asset, funder, amount)
            return pool.funded

    def notify_reward_amount(self, caller: str, pool_id: str, amount: int) -> RewardAddedEvent:
        with self._operation("notify_reward_amount") as (state, ctx):
            state.access.require(caller, Role.GOVERNOR, action="notify rewards")
            self.rewards.notify_reward_amount(ctx, state, pool_id, amount)
            return ctx.events[-1]

    def set_reward_duration(self, caller: str, pool_id: str, duration: int) -> None:
        with self._operation("set_reward_duration") as (state, ctx):
            state.access.require(caller, Role.GOVERNOR, action="set reward duration")
            self.rewards.set_duration(ctx, state, pool_id, duration)
            ctx.emit(ConfigChangedEvent(caller, f"reward_duration:{pool_id}", duration))

    def claim_reward(self, account: str, pool_id: str) -> int:
        with self._operation("claim_reward") as (state, ctx):
            return self.rewards.claim(ctx, state, pool_id, account)

    def get_all_rewards(self, account: str) -> Dict[str, int]:
        with self._operation("get_all_rewards") as (state, ctx):
            return self.rewards.claim_all(ctx, state, account)

    # =====================================================================
    #  Configuration (role-gated)
    # =====================================================================

    def add_product(self, caller: str, product: Product) -> Product:
        with self._operation("add_product") as (state, ctx):
            state.access.require(caller, Role.GOVERNOR, action="add product")
            if product.product_id in state.products:
                raise ConfigurationError(f"Product {product.product_id} already exists")
            product = copy.deepcopy(product)
            product.open_interest_long = 0
            product.open_interest_short = 0
            product.validate()
            state.products[product.product_id] = product
            ctx.emit(ConfigChangedEvent(caller, f"product:{product.product_id}", "added"))
            logger.info("Product added: %d oracle=%s", product.product_id, product.oracle)
            return copy.deepcopy(product)

    def update_product(self, caller: str, product_id: int, **changes: Any) -> Product:
        with self._operation("update_product") as (state, ctx):
            state.access.require(caller, Role.GOVERNOR, action="update product")
            product = get_product(state, product_id, require_active=False)
            for name, value in changes.items():
                if name not in PRODUCT_FIELDS:
                    raise ConfigurationError(f"Product field {name} cannot be updated")
                setattr(product, name, value)
            product.validate()
            ctx.emit(ConfigChangedEvent(caller, f"product:{product_id}", dict(changes)))
            logger.info("Product updated: %d %s", product_id, sorted(changes))
            return copy.deepcopy(product)

    def update_vault(self, caller: str, cap: int, stake_cooldown: int) -> Vault:
        with self._operation("update_vault") as (state, ctx):
            state.access.require(caller, Role.GOVERNOR, action="update vault")
            if cap < 0 or stake_cooldown < 0:
                raise ConfigurationError("Vault cap and cooldown must be non-negative")
            state.vault.cap = cap
            state.vault.stake_cooldown = stake_cooldown
            ctx.emit(ConfigChangedEvent(caller, "vault", {"cap": cap, "stakeCooldown": stake_cooldown}))
            return copy.deepcopy(state.vault)

    def set_margin_bounds(self, caller: str, min_margin: int, min_position_size: int,
                          max_position_size: int) -> None:
        with self._operation("set_margin_bounds") as (state, ctx):
            state.access.require(caller, Role.GOVERNOR, action="set margin bounds")
            if min(min_margin, min_position_size, max_position_size) < 0:
                raise ConfigurationError("Margin bounds must be non-negative")
            if max_position_size and max_position_size < min_position_size:
                raise ConfigurationError("max_position_size below min_position_size")
            settings = state.settings
            settings.min_margin = min_margin
            settings.min_position_size = min_position_size
            settings.max_position_size = max_position_size
            ctx.emit(ConfigChangedEvent(caller, "margin_bounds",
                                        [min_margin, min_position_size, max_position_size]))

    def set_fee_split(self, caller: str, protocol_bps: int, staker_bps: int,
                      depositor_bps: int, vault_bps: int = 0) -> FeeSplit:
        with self._operation("set_fee_split") as (state, ctx):
            state.access.require(caller, Role.GOVERNOR, action="set fee split")
            split = FeeSplit(protocol_bps, staker_bps, depositor_bps, vault_bps)
            split.validate()
            state.settings.fee_split = split
            ctx.emit(ConfigChangedEvent(caller, "fee_split",
                                        [protocol_bps, staker_bps, depositor_bps, vault_bps]))
            return copy.deepcopy(split)

    def _set_setting(self, caller: str, name: str, value: Any) -> None:
        with self._operation(name) as (state, ctx):
            state.access.require(caller, Role.GOVERNOR, action=f"set {name}")
            setattr(state.settings, name, value)
            ctx.emit(ConfigChangedEvent(caller, name, value))
        logger.info("Setting %s changed to %s", name, value)

    def set_allow_public_liquidation(self, caller: str, allowed: bool) -> None:
        self._set_setting(caller, "allow_public_liquidation", bool(allowed))

    def set_can_user_stake(self, caller: str, allowed: bool) -> None:
        self._set_setting(caller, "can_user_stake", bool(allowed))

    def set_check_price_change(self, caller: str, enabled: bool) -> None:
        self._set_setting(caller, "check_price_change", bool(enabled))

    def set_min_profit_time(self, caller: str, seconds: int) -> None:
        if seconds < 0:
            raise ConfigurationError("min_profit_time must be non-negative")
        self._set_setting(caller, "min_profit_time", seconds)

    def set_max_shift(self, caller: str, max_shift: int) -> None:
        if max_shift < 0:
            raise ConfigurationError("max_shift must be non-negative")
        self._set_setting(caller, "max_shift", max_shift)

    def set_liquidation_bounty_fixed(self, caller: str, amount: int) -> None:
        if amount < 0:
            raise ConfigurationError("Fixed bounty must be non-negative")
        self._set_setting(caller, "liquidation_bounty_fixed", amount)

    # -- Roles (owner only) -------------------------------------------------

    def grant_role(self, caller: str, role: Role, account: str) -> None:
        with self._operation("grant_role") as (state, ctx):
            state.access.require(caller, Role.OWNER, action="grant roles")
            state.access.grant(Role(role), account)
            ctx.emit(ConfigChangedEvent(caller, f"grant:{Role(role).name}", account))

    def revoke_role(self, caller: str, role: Role, account: str) -> None:
        with self._operation("revoke_role") as (state, ctx):
            state.access.require(caller, Role.OWNER, action="revoke roles")
            state.access.revoke(Role(role), account)
            ctx.emit(ConfigChangedEvent(caller, f"revoke:{Role(role).name}", account))

    def set_owner(self, caller: str, new_owner: str) -> None:
        with self._operation("set_owner") as (state, ctx):
            state.access.require(caller, Role.OWNER, action="transfer ownership")
            state.access.transfer_ownership(new_owner)
            ctx.emit(ConfigChangedEvent(caller, "owner", new_owner))

    def withdraw_protocol_reserve(self, caller: str, recipient: str, amount: int) -> int:
        with self._operation("withdraw_protocol_reserve") as (state, ctx):
            state.access.require(caller, Role.OWNER, action="withdraw protocol reserve")
            return self.fees.withdraw_reserve(ctx, state, recipient, amount)

    # =====================================================================
    #  Queries (read-only copies)
    # =====================================================================

    @staticmethod
    def position_key(account: str, product_id: int, is_long: bool) -> str:
        return position_key(account, product_id, is_long)

    def get_position(self, key: str) -> Optional[Position]:
        return copy.deepcopy(self._state.positions.get(key))

    def get_positions(self, keys: Sequence[str]) -> List[Optional[Position]]:
        return [self.get_position(key) for key in keys]

    def get_product(self, product_id: int) -> Optional[Product]:
        return copy.deepcopy(self._state.products.get(product_id))

    def get_vault(self) -> Vault:
        return copy.deepcopy(self._state.vault)

    def get_stake(self, account: str) -> Optional[Stake]:
        return copy.deepcopy(self._state.stakes.get(account))

    def get_stakes(self, accounts: Sequence[str]) -> List[Optional[Stake]]:
        return [self.get_stake(account) for account in accounts]

    def get_share_value(self, account: str) -> int:
        stake = self._state.stakes.get(account)
        return self.vault.share_value(self._state, stake.shares) if stake else 0

    def get_token_stake(self, account: str) -> int:
        return self._state.token_stakes.get(account, 0)

    def get_reward_pool(self, pool_id: str) -> RewardPool:
        return copy.deepcopy(self.rewards.get_pool(self._state, pool_id))

    def get_pending_reward(self, pool_id: str, account: str) -> int:
        return self.rewards.pending(self._state, pool_id, account, self._timestamp)

    def is_liquidatable(self, key: str) -> bool:
        return self.liquidations.check(self._state, key)

    @property
    def protocol_reserve(self) -> int:
        return self._state.protocol_reserve

    @property
    def settings(self) -> Settings:
        return copy.deepcopy(self._state.settings)

    @property
    def access(self) -> AccessControl:
        return copy.deepcopy(self._state.access)

    def accounted_collateral(self) -> int:
        """Collateral the venue should hold: vault, margins, fee pools and reserve."""
        state = self._state
        pools = sum(
            p.funded for p in state.reward_pools.values()
            if p.reward_asset == state.collateral_asset
        )
        margins = sum(p.margin for p in state.positions.values())
        return state.vault.balance + margins + pools + state.protocol_reserve
