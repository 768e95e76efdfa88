"""
Reward Ledger Constants

This module consolidates all global constants and environment configuration
used throughout the codebase. Constants are organized by category for easy
reference and maintenance.
"""
import ast
from decimal import Decimal
from dotenv import dotenv_values

# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================
# Load environment variables once at module import
_config = dotenv_values(".env")

NODE_DEFAULTS = {
    'REWARD_NODE_HOST':                '127.0.0.1',
    'REWARD_NODE_PORT':                '3010',
    'REWARD_DATABASE_PATH':            'data/reward.db',
    'REWARD_PRICE_FEED_URL':           '',
}

LOGGER_DEFAULTS = {
    'LOG_LEVEL':                       'INFO',
    'LOG_FORMAT':                      '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    'LOG_DATE_FORMAT':                 '%Y-%m-%dT%H:%M:%S',
    'LOG_CONSOLE_HIGHLIGHTING':        'True',
}

LOG_MAX_FILE_SIZE = 10 * 1024 * 1024 # 10MB
LOG_BACKUP_COUNT = 5


# ==================================================================================
# ACCOUNT PARAMETERS
# ==================================================================================
INITIAL_BALANCE = 1_000_000  # Play tokens granted on first contact
DEFAULT_DISPLAY_NAME = 'anonymous'
DEFAULT_AVATAR_REF = 'https://i.imgur.com/I2rEbPF.png'


# ==================================================================================
# TRADING PARAMETERS
# ==================================================================================
FEE_RATE = Decimal('0.01')                      # 1% of collateral at open, of profit at close
PRICE_DEVIATION_TOLERANCE = Decimal('0.005')    # 0.5% max client/server quote divergence
ALLOWED_LEVERAGES = (1, 2, 5, 10, 20, 50, 100)
PRICE_PRECISION = Decimal('0.00000001')


# ==================================================================================
# ORACLE PARAMETERS
# ==================================================================================
ORACLE_STALENESS_SECONDS = 120   # reject quotes older than 2 min
ORACLE_TIMEOUT = 10.0            # seconds per feed request
ORACLE_PRICE_FIELD = 'price'


# ==================================================================================
# WORKER PARAMETERS
# ==================================================================================
LIQUIDATION_SWEEP_INTERVAL = 5.0   # seconds between liquidation sweeps
REQUEST_POLL_INTERVAL = 1.0        # seconds between order request queue polls
OPEN_SLOT_CLAIM_GRACE = 30.0       # seconds before a slot with no order record counts as abandoned
REQUEST_RETENTION_SECONDS = 3600.0 # finished order requests kept this long


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

    def __hash__(self):
        return hash(bool(self))


# ==================================================================================
# DYNAMIC CONFIGURATION LOADING
# ==================================================================================
DEFAULTS = NODE_DEFAULTS | LOGGER_DEFAULTS
namespace = globals()

def parse_bool(v):
    """
    Convert "True"/"False" (any casing, with surrounding whitespace) into bool.
    Avoids exceptions by only calling ast.literal_eval for known literals.
    """
    if not isinstance(v, str):
        return v
    s = v.strip()
    if not s:
        return v
    # Case-insensitive membership check
    if s.casefold() in {"true", "false"}:
        # ast.literal_eval expects "True"/"False"
        return ast.literal_eval(s.title())
    return v

for key, default_raw in DEFAULTS.items():
    # dotenv_values returns strings or None. None is treated as missing.
    raw = _config.get(key)
    value_raw = default_raw if raw is None else raw

    # Parses only boolean-literals. Leaves other values untouched.
    value = parse_bool(value_raw)
    default_val = parse_bool(default_raw)

    # Wraps based on parsed value type.
    if isinstance(value, bool):
        namespace[key] = ConfigBool(value, default_val)
    else:
        # Preserves the original raw string for ConfigString storage.
        namespace[key] = ConfigString(value_raw, default_val)
