"""
PerpVault Constants

This module consolidates the global constants and environment configuration
used throughout the codebase. Constants are organized by category for easy
reference and maintenance.
"""
import ast
from dotenv import dotenv_values

# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================
# Load environment variables once at module import
_config = dotenv_values(".env")

LOGGER_DEFAULTS = {
    'LOG_LEVEL':                       'INFO',
    'LOG_FORMAT':                      '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    'LOG_DATE_FORMAT':                 '%Y-%m-%dT%H:%M:%S',
    'LOG_CONSOLE_HIGHLIGHTING':        'True',
    'LOG_FILE_OUTPUT':                 'True',
}

LOG_MAX_FILE_SIZE = 10 * 1024 * 1024 # 10MB
LOG_BACKUP_COUNT = 5


# WARNING: THE FIXED-POINT SCALES BELOW ARE PART OF THE STATE ROOT. CHANGING THEM CHANGES EVERY
# PRICE, SHARE AND REWARD VALUE THE VENUE HAS EVER COMMITTED.

# ==================================================================================
# FIXED-POINT SCALES
# ==================================================================================
PRICE_SCALE = 10**8       # prices, leverage, margins, vault balance
REWARD_SCALE = 10**18     # reward-per-share accumulators
BPS_SCALE = 10_000        # fee, interest and threshold rates
MAX_UINT256 = 2**256 - 1  # upper bound for every stored quantity


# ==================================================================================
# MARKET PARAMETERS
# ==================================================================================
SECONDS_PER_YEAR = 365 * 24 * 3600
MAX_SHIFT = 300_000                 # 0.003e8, cap on the open-interest skew shift
MIN_LEVERAGE = PRICE_SCALE          # 1x
DEFAULT_REWARD_DURATION = 7 * 24 * 3600
DEFAULT_STAKE_COOLDOWN = 24 * 3600
DEFAULT_MIN_PROFIT_TIME = 6 * 3600


# ==================================================================================
# FEE SPLIT (basis points, must sum to BPS_SCALE)
# ==================================================================================
DEFAULT_PROTOCOL_FEE_BPS = 2000
DEFAULT_STAKER_FEE_BPS = 3000
DEFAULT_DEPOSITOR_FEE_BPS = 5000
DEFAULT_VAULT_FEE_BPS = 0


# ==================================================================================
# ASSETS AND ACCOUNTS
# ==================================================================================
VENUE_ACCOUNT = 'perpvault:venue'
DEFAULT_COLLATERAL_ASSET = 'USDC'
DEFAULT_TOKEN_ASSET = 'PIKA'
DEFAULT_INCENTIVE_ASSET = 'REWARD'

# Reward pool identifiers
STAKER_FEE_POOL = 'staker_fees'
DEPOSITOR_FEE_POOL = 'depositor_fees'
DEPOSITOR_INCENTIVE_POOL = 'depositor_incentives'


# ==================================================================================
# CONFIGURATION WRAPPERS
# ==================================================================================
class ConfigString(str):
    """
    String subclass that stores a default value.
    """
    def __new__(cls, value, default):
        obj = str.__new__(cls, value)
        obj._default = default
        return obj

    def default(self):
        return self._default

class ConfigBool(int):
    """
    Int subclass acting as a boolean that stores a default value.
    """
    def __new__(cls, value, default):
        obj = int.__new__(cls, bool(value))
        obj._default = default
        return obj

    def default(self):
        return self._default

    def __repr__(self):
        return str(bool(self))

    def __str__(self):
        return str(bool(self))

    def __eq__(self, other):
        return bool(self) == other

    __hash__ = int.__hash__


# ==================================================================================
# DYNAMIC CONFIGURATION LOADING
# ==================================================================================
namespace = globals()

def parse_bool(v):
    """
    Convert "True"/"False" (any casing, with surrounding whitespace) into bool.
    Only known literals reach ast.literal_eval.
    """
    if not isinstance(v, str):
        return v
    s = v.strip()
    if not s:
        return v
    if s.casefold() in {"true", "false"}:
        return ast.literal_eval(s.title())
    return v

for key, default_raw in LOGGER_DEFAULTS.items():
    # dotenv_values returns strings or None. None is treated as missing.
    raw = _config.get(key)
    value_raw = default_raw if raw is None else raw

    value = parse_bool(value_raw)
    default_val = parse_bool(default_raw)

    if isinstance(value, bool):
        namespace[key] = ConfigBool(value, default_val)
    else:
        namespace[key] = ConfigString(value_raw, default_val)
