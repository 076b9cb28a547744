"""
Centralized Configuration
All tuning constants loaded from environment variables with sensible defaults.
Change behaviour without touching code, just update your .env file.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# =============================================================================
# Agent Settings (defaults for the persisted settings block)
# =============================================================================
MAX_MARKET_CAP = int(os.getenv("MAX_MARKET_CAP", "40000"))            # USD
MAX_BUY_AMOUNT = os.getenv("MAX_BUY_AMOUNT", "5")                     # USD per buy
TAKE_PROFIT_PCT = float(os.getenv("TAKE_PROFIT_PCT", "100"))
STOP_LOSS_PCT = float(os.getenv("STOP_LOSS_PCT", "30"))
SCAN_INTERVAL_MIN = int(os.getenv("SCAN_INTERVAL_MIN", "30"))
AUTO_TRADE_ENABLED = _env_bool("AUTO_TRADE")
MAX_OPEN_POSITIONS = int(os.getenv("MAX_OPEN_POSITIONS", "5"))

# =============================================================================
# Risk Guard
# =============================================================================
MAX_TRADES_PER_DAY = int(os.getenv("MAX_TRADES_PER_DAY", "100"))
MAX_DAILY_LOSS_USD = float(os.getenv("MAX_DAILY_LOSS_USD", "1000"))
COOLDOWN_MINUTES_AFTER_LOSS_STREAK = int(os.getenv("COOLDOWN_MINUTES_AFTER_LOSS_STREAK", "5"))
LOSS_STREAK_FOR_COOLDOWN = int(os.getenv("LOSS_STREAK_FOR_COOLDOWN", "3"))
MAX_POSITION_SIZE_PCT = float(os.getenv("MAX_POSITION_SIZE_PCT", "10"))
DRAWDOWN_KILL_SWITCH_PCT = float(os.getenv("DRAWDOWN_KILL_SWITCH_PCT", "50"))
PORTFOLIO_VALUE_USD = float(os.getenv("PORTFOLIO_VALUE_USD", "1000"))  # used when no balance known

# =============================================================================
# Candidate Scoring
# =============================================================================
VIABLE_SCORE = int(os.getenv("VIABLE_SCORE", "60"))
REPORT_TOP_N = int(os.getenv("REPORT_TOP_N", "5"))

# =============================================================================
# Loop Timing
# =============================================================================
MONITOR_INTERVAL_MIN = int(os.getenv("MONITOR_INTERVAL_MIN", "5"))
POLYMARKET_SCAN_INTERVAL_MIN = int(os.getenv("POLYMARKET_SCAN_INTERVAL_MIN", "15"))
POSITION_PAUSE_SECONDS = float(os.getenv("POSITION_PAUSE_SECONDS", "3"))
BALANCE_REFRESH_SECONDS = int(os.getenv("BALANCE_REFRESH_SECONDS", "300"))
BET_PLACEMENT_TIMEOUT_SECONDS = float(os.getenv("BET_PLACEMENT_TIMEOUT_SECONDS", "180"))

# =============================================================================
# Prediction-Market Sizing
# =============================================================================
MAX_BET_BALANCE_FRACTION = float(os.getenv("MAX_BET_BALANCE_FRACTION", "0.05"))
MIN_BET_USD = float(os.getenv("MIN_BET_USD", "1"))
LOSS_STREAK_PAUSE = int(os.getenv("LOSS_STREAK_PAUSE", "4"))     # skip the cycle
LOSS_STREAK_CAUTION = int(os.getenv("LOSS_STREAK_CAUTION", "2"))  # halve the bet
MAX_POLYMARKET_LEARNINGS = 20
MAX_LEARNINGS = 100

# =============================================================================
# External Execution API (Bankr)
# =============================================================================
BANKR_API_KEY = os.getenv("BANKR_API_KEY", "")
BANKR_API_URL = os.getenv("BANKR_API_URL", "https://api.bankr.bot")
BANKR_POLL_INTERVAL = float(os.getenv("BANKR_POLL_INTERVAL", "2"))
BANKR_MAX_POLLS = int(os.getenv("BANKR_MAX_POLLS", "60"))             # 60 x 2s = 120s
BANKR_TIMEOUT = float(os.getenv("BANKR_TIMEOUT", "30"))
SPOT_CHAIN = os.getenv("SPOT_CHAIN", "Base")
PREDICTION_SETTLEMENT_CHAIN = os.getenv("PREDICTION_SETTLEMENT_CHAIN", "Polygon")
AGENT_USER_ID = os.getenv("AGENT_USER_ID", "autotrader")

# =============================================================================
# Persistence
# =============================================================================
DATA_DIR = Path(os.getenv("DATA_DIR", "./data"))
MEMORY_FILE = DATA_DIR / "memory.json"

# =============================================================================
# Notifications (Telegram owner chat)
# =============================================================================
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID", "")

# =============================================================================
# Observability
# =============================================================================
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", "")
METRICS_PORT = int(os.getenv("METRICS_PORT", "0"))                     # 0 disables the exporter
LATENCY_WARNING_MS = 5000
LATENCY_ERROR_MS = 15000
