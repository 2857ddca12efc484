"""
PerpVault Vault Accounting

Share-based pool that underwrites every position.

    deposit:  shares = amount                                  (first deposit)
              shares = amount * total_shares / balance         (otherwise)
    redeem:   payout = shares * balance / total_shares         (floored)

Security:
  - balance never goes negative; PnL that would overdraw it is rejected
    here and capped by the position ledger before it arrives
  - deposit cap and per-depositor redeem cooldown
  - vault-share reward pools checkpoint the account before shares move
"""

from __future__ import annotations

import logging
from typing import Optional

from ..exceptions import (
    AuthorizationError,
    CooldownNotElapsedError,
    InsufficientVaultLiquidityError,
    InvalidAmountError,
    VaultCapExceededError,
)
from .events import RedeemEvent, StakeEvent
from .fixed_point import mul_div
from .rewards import VAULT_SHARES_SOURCE, RewardAccrual
from .state import OperationContext, Stake, VenueState

logger = logging.getLogger(__name__)


class VaultAccounting:

    def __init__(self, rewards: RewardAccrual) -> None:
        self.rewards = rewards

    # -- Views --------------------------------------------------------------

    @staticmethod
    def share_value(state: VenueState, shares: int) -> int:
        vault = state.vault
        if vault.shares == 0:
            return 0
        return mul_div(shares, vault.balance, vault.shares)

    @staticmethod
    def get_stake(state: VenueState, account: str) -> Optional[Stake]:
        return state.stakes.get(account)

    # -- Deposits -----------------------------------------------------------

    def stake(self, ctx: OperationContext, state: VenueState, account: str, amount: int, recipient: str) -> StakeEvent:
        """
        Deposit *amount* of collateral from *account*, minting shares to *recipient*.

        Raises:
            InvalidAmountError: amount not positive, or too small to mint a share
            AuthorizationError: public staking closed and caller is not the owner
            VaultCapExceededError: balance + amount > cap
        """
        vault = state.vault
        if amount <= 0:
            raise InvalidAmountError("Stake amount must be positive")
        if not recipient:
            raise InvalidAmountError("Recipient required")
        if not state.settings.can_user_stake and account != state.access.owner:
            raise AuthorizationError("Vault staking is not open to users")
        if vault.balance + amount > vault.cap:
            raise VaultCapExceededError(
                f"Deposit {amount} would exceed cap {vault.cap} (balance {vault.balance})"
            )

        if vault.shares == 0:
            shares = amount
        elif vault.balance == 0:
            raise InsufficientVaultLiquidityError("Vault balance is zero with shares outstanding")
        else:
            shares = mul_div(amount, vault.shares, vault.balance)
        if shares == 0:
            raise InvalidAmountError("Stake amount too small to mint a share")

        self.rewards.update_source(state, VAULT_SHARES_SOURCE, recipient, ctx.now)

        stake = state.stakes.get(recipient)
        if stake is None:
            stake = Stake(owner=recipient)
            state.stakes[recipient] = stake
        stake.shares += shares
        stake.amount += amount
        stake.timestamp = ctx.now

        vault.balance += amount
        vault.staked += amount
        vault.shares += shares

        ctx.transfers.pull(state.collateral_asset, account, amount)
        logger.debug("Vault stake: %s -> %s amount=%d shares=%d", account, recipient, amount, shares)
        return ctx.emit(StakeEvent(account, recipient, amount, shares, ctx.now))

    # -- Withdrawals --------------------------------------------------------

    def redeem(self, ctx: OperationContext, state: VenueState, account: str, shares: int, recipient: str) -> RedeemEvent:
        """
        Burn *shares* held by *account* and pay their value to *recipient*.

        Raises:
            InvalidAmountError: shares not positive or more than held
            CooldownNotElapsedError: now < last deposit + cooldown
        """
        vault = state.vault
        stake = state.stakes.get(account)
        held = stake.shares if stake is not None else 0
        if shares <= 0 or shares > held:
            raise InvalidAmountError(f"Redeem {shares} shares outside (0, {held}]")
        if not recipient:
            raise InvalidAmountError("Recipient required")
        if ctx.now < stake.timestamp + vault.stake_cooldown:
            raise CooldownNotElapsedError(
                f"Cooldown ends at {stake.timestamp + vault.stake_cooldown}, now {ctx.now}"
            )

        self.rewards.update_source(state, VAULT_SHARES_SOURCE, account, ctx.now)

        payout = mul_div(shares, vault.balance, vault.shares)
        principal = mul_div(stake.amount, shares, stake.shares)

        stake.shares -= shares
        stake.amount -= principal
        if stake.shares == 0:
            del state.stakes[account]

        vault.shares -= shares
        vault.staked -= principal
        self.absorb(state, payout)

        ctx.transfers.push(state.collateral_asset, recipient, payout)
        logger.debug("Vault redeem: %s -> %s shares=%d payout=%d", account, recipient, shares, payout)
        return ctx.emit(RedeemEvent(account, recipient, payout, shares, ctx.now))

    # -- PnL ----------------------------------------------------------------

    @staticmethod
    def absorb(state: VenueState, amount: int) -> int:
        """Debit *amount* (credit when negative) from the vault balance."""
        vault = state.vault
        if amount > vault.balance:
            raise InsufficientVaultLiquidityError(
                f"Vault balance {vault.balance} cannot cover {amount}"
            )
        vault.balance -= amount
        return vault.balance

    @staticmethod
    def credit(state: VenueState, amount: int) -> int:
        if amount < 0:
            raise InvalidAmountError("Credit must be non-negative")
        state.vault.balance += amount
        return state.vault.balance
