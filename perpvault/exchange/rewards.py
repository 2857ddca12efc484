"""
PerpVault Reward Accrual

One streaming reward engine, reused for every reward pool.  A pool
distributes a funded amount linearly over ``duration`` seconds to the
holders of some share balance; which balance is decided by the pool's
``share_source``:

  - ``token_stake``   staked governance-token balances
  - ``vault_shares``  vault shares held by depositors

Accounting (reward-per-share accumulator, REWARD_SCALE):

    rps  += (min(now, period_finish) - last_update) * rate * SCALE / total_shares
    earned(a) = shares(a) * (rps - paid(a)) / SCALE + accrued(a)

Every change to an account's shares must call ``update_source`` first so
the account's accrued reward is settled against the old balance.

Pool lifecycle:
    Idle --notify--> Active --(now >= period_finish)--> Idle
    A notify while Active rolls the undistributed remainder into the new rate.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional, Protocol, Tuple

from ..constants import REWARD_SCALE
from ..exceptions import (
    ConfigurationError,
    InvalidAmountError,
    RewardAmountOutOfBoundsError,
    RewardPeriodNotFinishedError,
)
from .events import RewardAddedEvent, RewardPaidEvent, TokenStakeEvent
from .fixed_point import checked, mul_div
from .state import OperationContext, RewardPool, VenueState

logger = logging.getLogger(__name__)

TOKEN_STAKE_SOURCE = "token_stake"
VAULT_SHARES_SOURCE = "vault_shares"


# ---------------------------------------------------------------------------
# Share sources
# ---------------------------------------------------------------------------

class ShareSource(Protocol):
    name: str

    def total_shares(self, state: VenueState) -> int:
        ...

    def shares_of(self, state: VenueState, account: str) -> int:
        ...


class TokenStakeShares:
    name = TOKEN_STAKE_SOURCE

    def total_shares(self, state: VenueState) -> int:
        return state.total_token_staked

    def shares_of(self, state: VenueState, account: str) -> int:
        return state.token_stakes.get(account, 0)


class VaultShares:
    name = VAULT_SHARES_SOURCE

    def total_shares(self, state: VenueState) -> int:
        return state.vault.shares

    def shares_of(self, state: VenueState, account: str) -> int:
        stake = state.stakes.get(account)
        return stake.shares if stake is not None else 0


DEFAULT_SHARE_SOURCES = (TokenStakeShares(), VaultShares())


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class RewardAccrual:
    """Streaming reward engine shared by every reward pool."""

    def __init__(self, sources: Iterable[ShareSource] = DEFAULT_SHARE_SOURCES) -> None:
        self._sources: Dict[str, ShareSource] = {s.name: s for s in sources}

    # -- Pools --------------------------------------------------------------

    def create_pool(
        self,
        state: VenueState,
        pool_id: str,
        share_source: str,
        reward_asset: str,
        duration: int,
    ) -> RewardPool:
        if pool_id in state.reward_pools:
            raise ConfigurationError(f"Reward pool {pool_id} already exists")
        if share_source not in self._sources:
            raise ConfigurationError(f"Unknown share source {share_source}")
        if duration <= 0:
            raise ConfigurationError("Reward duration must be positive")
        pool = RewardPool(
            pool_id=pool_id,
            share_source=share_source,
            reward_asset=reward_asset,
            duration=duration,
        )
        state.reward_pools[pool_id] = pool
        logger.info("Reward pool created: %s (%s, %s)", pool_id, share_source, reward_asset)
        return pool

    @staticmethod
    def get_pool(state: VenueState, pool_id: str) -> RewardPool:
        pool = state.reward_pools.get(pool_id)
        if pool is None:
            raise ConfigurationError(f"Reward pool {pool_id} not found")
        return pool

    def source_for(self, pool: RewardPool) -> ShareSource:
        return self._sources[pool.share_source]

    # -- Views --------------------------------------------------------------

    @staticmethod
    def last_time_reward_applicable(pool: RewardPool, now: int) -> int:
        return min(now, pool.period_finish)

    def reward_per_share(self, state: VenueState, pool: RewardPool, now: int) -> int:
        total = self.source_for(pool).total_shares(state)
        if total == 0:
            return pool.reward_per_share_stored
        elapsed = max(0, self.last_time_reward_applicable(pool, now) - pool.last_update_time)
        return checked(
            pool.reward_per_share_stored
            + elapsed * pool.reward_rate * REWARD_SCALE // total
        )

    def earned(self, state: VenueState, pool: RewardPool, account: str, now: int) -> int:
        shares = self.source_for(pool).shares_of(state, account)
        rps = self.reward_per_share(state, pool, now)
        paid = pool.reward_per_share_paid.get(account, 0)
        return mul_div(shares, rps - paid, REWARD_SCALE) + pool.accrued.get(account, 0)

    def pending(self, state: VenueState, pool_id: str, account: str, now: int) -> int:
        return self.earned(state, self.get_pool(state, pool_id), account, now)

    # -- Updates ------------------------------------------------------------

    def update(self, state: VenueState, pool: RewardPool, now: int, account: Optional[str] = None) -> None:
        """Checkpoint the accumulator, and *account* if given."""
        pool.reward_per_share_stored = self.reward_per_share(state, pool, now)
        pool.last_update_time = self.last_time_reward_applicable(pool, now)
        if account:
            pool.accrued[account] = self.earned(state, pool, account, now)
            pool.reward_per_share_paid[account] = pool.reward_per_share_stored

    def update_source(self, state: VenueState, source: str, account: str, now: int) -> None:
        """Checkpoint *account* in every pool fed by *source* before its shares change."""
        for pool_id in sorted(state.reward_pools):
            pool = state.reward_pools[pool_id]
            if pool.share_source == source:
                self.update(state, pool, now, account)

    # -- Funding ------------------------------------------------------------

    @staticmethod
    def fund(state: VenueState, pool_id: str, amount: int) -> RewardPool:
        """Credit reward units the venue now holds for *pool_id*."""
        if amount <= 0:
            raise InvalidAmountError("Funding amount must be positive")
        pool = RewardAccrual.get_pool(state, pool_id)
        pool.funded += amount
        return pool

    def notify_reward_amount(self, ctx: OperationContext, state: VenueState, pool_id: str, amount: int) -> RewardPool:
        """
        Start or extend a reward period with *amount* more reward.

        Raises:
            RewardAmountOutOfBoundsError: rate would be zero, or exceed
                what the funded balance can pay over one duration
        """
        pool = self.get_pool(state, pool_id)
        now = ctx.now
        self.update(state, pool, now)

        if now >= pool.period_finish:
            rate = amount // pool.duration
        else:
            remaining = (pool.period_finish - now) * pool.reward_rate
            rate = (amount + remaining) // pool.duration

        if rate <= 0:
            raise RewardAmountOutOfBoundsError("Reward is too small")
        if rate > pool.funded // pool.duration:
            raise RewardAmountOutOfBoundsError("Reward is too big")

        pool.reward_rate = rate
        pool.last_update_time = now
        pool.period_finish = now + pool.duration
        pool.notified_total += amount
        ctx.emit(RewardAddedEvent(pool_id, amount, rate, pool.period_finish))
        logger.debug("Reward added to %s: amount=%d rate=%d", pool_id, amount, rate)
        return pool

    def stream_fee(self, ctx: OperationContext, state: VenueState, pool_id: str, amount: int) -> None:
        """Fund *pool_id* with a fee share and stream it once it can carry a non-zero rate."""
        if amount <= 0:
            return
        pool = self.fund(state, pool_id, amount)
        pool.queued += amount
        if pool.queued // pool.duration > 0:
            queued, pool.queued = pool.queued, 0
            self.notify_reward_amount(ctx, state, pool_id, queued)

    def set_duration(self, ctx: OperationContext, state: VenueState, pool_id: str, duration: int) -> RewardPool:
        pool = self.get_pool(state, pool_id)
        if pool.is_active(ctx.now):
            raise RewardPeriodNotFinishedError("Not finished yet")
        if duration <= 0:
            raise ConfigurationError("Reward duration must be positive")
        pool.duration = duration
        return pool

    # -- Claims -------------------------------------------------------------

    def claim(self, ctx: OperationContext, state: VenueState, pool_id: str, account: str) -> int:
        pool = self.get_pool(state, pool_id)
        self.update(state, pool, ctx.now, account)
        reward = pool.accrued.get(account, 0)
        if reward <= 0:
            return 0
        if reward > pool.funded:
            raise RewardAmountOutOfBoundsError(
                f"Pool {pool_id} owes {reward} but holds {pool.funded}"
            )
        pool.accrued[account] = 0
        pool.claimed[account] = pool.claimed.get(account, 0) + reward
        pool.funded -= reward
        ctx.transfers.push(pool.reward_asset, account, reward)
        ctx.emit(RewardPaidEvent(pool_id, account, pool.reward_asset, reward))
        return reward

    def claim_all(self, ctx: OperationContext, state: VenueState, account: str) -> Dict[str, int]:
        return {
            pool_id: self.claim(ctx, state, pool_id, account)
            for pool_id in sorted(state.reward_pools)
        }


# ---------------------------------------------------------------------------
# Governance-token staking (share source for the staker fee pool)
# ---------------------------------------------------------------------------

class TokenStaking:
    """Deposits of the governance token that earn the staker fee stream."""

    def __init__(self, rewards: RewardAccrual) -> None:
        self.rewards = rewards

    def stake(self, ctx: OperationContext, state: VenueState, account: str, amount: int) -> int:
        if amount <= 0:
            raise InvalidAmountError("Cannot stake 0")
        self.rewards.update_source(state, TOKEN_STAKE_SOURCE, account, ctx.now)
        balance = state.token_stakes.get(account, 0) + amount
        state.token_stakes[account] = balance
        state.total_token_staked += amount
        ctx.transfers.pull(state.token_asset, account, amount)
        ctx.emit(TokenStakeEvent(account, amount, balance, ctx.now))
        return balance

    def withdraw(self, ctx: OperationContext, state: VenueState, account: str, amount: int) -> int:
        held = state.token_stakes.get(account, 0)
        if amount <= 0:
            raise InvalidAmountError("Cannot withdraw 0")
        if amount > held:
            raise InvalidAmountError(f"Withdraw {amount} exceeds staked balance {held}")
        self.rewards.update_source(state, TOKEN_STAKE_SOURCE, account, ctx.now)
        balance = held - amount
        if balance:
            state.token_stakes[account] = balance
        else:
            del state.token_stakes[account]
        state.total_token_staked -= amount
        ctx.transfers.push(state.token_asset, account, amount)
        ctx.emit(TokenStakeEvent(account, -amount, balance, ctx.now))
        return balance

    def exit(self, ctx: OperationContext, state: VenueState, account: str) -> Tuple[int, int]:
        """Withdraw the whole staked balance and claim every reward pool."""
        withdrawn = state.token_stakes.get(account, 0)
        if withdrawn:
            self.withdraw(ctx, state, account, withdrawn)
        claimed = self.rewards.claim_all(ctx, state, account)
        return withdrawn, sum(claimed.values())
