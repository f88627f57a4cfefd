import os
from pathlib import Path


_ROOT = Path(__file__).resolve().parents[2]
_TOKEN_PATH = _ROOT / "TOKEN"
TOKEN = os.environ.get("CHATSTOCK_TOKEN", "").strip() or (
    _TOKEN_PATH.read_text(encoding="utf-8").strip() if _TOKEN_PATH.exists() else ""
)
DB_PATH = Path(os.environ.get("CHATSTOCK_DB_PATH", _ROOT / "data" / "chatstock.db"))

# APP CONFIGS
DEFAULT_PRICE = 100.0                       # Price quoted for users with no record
DAY_TIMEZONE = "America/New_York"           # Calendar used for activity days and streaks
BASE_VALUE_PER_MESSAGE = 0.01               # Permanent base value growth per counted message
PRICE_LOG_EVERY = 10                        # Log a price history point every N counted messages
IMPACT_RETENTION_HOURS = 24                 # Fully applied price impacts older than this are deleted
MAINTENANCE_INTERVAL = 3600                 # Seconds between maintenance passes

# PRICING CONSTANTS
LEGACY_RATE_PER_MESSAGE = 0.002             # Flat activity mode: +0.2% per message in window
LEGACY_ACTIVITY_CAP = 0.60                  # Flat activity mode ceiling
STREAK_LOOKBACK_DAYS = 60
STREAK_TIERS = (                            # (min consecutive days, tier, bonus)
    (30, 3, 0.07),
    (14, 2, 0.04),
    (7, 1, 0.02),
)
STREAK_MAX_TIER_DAYS = 7                    # Max tier bonus expires after this many days
DECAY_GRACE_DAYS = 3
DECAY_PER_DAY = 0.03
DECAY_CAP = 0.30
DEMAND_PER_SHARE = 0.003
DEMAND_CAP = 0.30
