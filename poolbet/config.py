"""Configuration and settings for the resolution pipeline."""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> list:
    value = os.getenv(name) or default
    return [s.strip() for s in value.split(",") if s.strip()]


# Base paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = BASE_DIR / "data"
DB_PATH = Path(os.getenv("POOLBET_DB_PATH") or DATA_DIR / "poolbet.db")

# Scheduler intervals (seconds)
LOCK_INTERVAL_SECONDS = float(os.getenv("LOCK_INTERVAL_SECONDS", "10"))
CLOSE_INTERVAL_SECONDS = float(os.getenv("CLOSE_INTERVAL_SECONDS", "10"))
RESULT_INTERVAL_SECONDS = float(os.getenv("RESULT_INTERVAL_SECONDS", "10"))

# How many AWAITING_RESULTS / FINISHED events one resulting sweep looks at
RESULT_BATCH_LIMIT = int(os.getenv("RESULT_BATCH_LIMIT", "50"))

# Projected duration used to derive projected_end for new events
DEFAULT_MATCH_MINUTES = int(os.getenv("DEFAULT_MATCH_MINUTES", "120"))

# Data sources
ORACLE_SOURCES = _env_list("ORACLE_SOURCES", "flashscore,sofascore,livescore,bbc")
SOURCE_TIMEOUT_SECONDS = float(os.getenv("SOURCE_TIMEOUT_SECONDS", "45"))
PAGE_LOAD_TIMEOUT_SECONDS = float(os.getenv("PAGE_LOAD_TIMEOUT_SECONDS", "30"))
BROWSER_HEADLESS = _env_bool("BROWSER_HEADLESS", True)
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

FLASHSCORE_BASE_URL = "https://www.flashscore.com/"
SOFASCORE_BASE_URL = "https://www.sofascore.com"
LIVESCORE_BASE_URL = "https://www.livescores.com"
BBC_SEARCH_URL = "https://www.bbc.co.uk/search"

# Status text that marks a fixture as over. Matched case-insensitively
# against the free-text status each source reports.
FINISHED_MARKERS = [
    "FT",
    "Full Time",
    "Full-Time",
    "Fulltime",
    "AET",
    "After Extra Time",
    "After ET",
    "After Pen",
    "After Penalties",
    "Pen",
    "Pens",
    "Finished",
    "Ended",
]

# Consensus: "first_seen" keeps the earliest score among tied leaders,
# "reject" refuses to give a verdict on a tie.
CONSENSUS_TIE_BREAK = os.getenv("CONSENSUS_TIE_BREAK", "first_seen")

# Settlement policy
VOID_OUTCOME = "VOID"
VOID_REFUNDS_STAKES = _env_bool("VOID_REFUNDS_STAKES", True)
REFUND_WHEN_NO_WINNERS = _env_bool("REFUND_WHEN_NO_WINNERS", False)

# Outcome determination (LLM judge over OpenRouter)
OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY", "")
OPENROUTER_API_URL = os.getenv(
    "OPENROUTER_API_URL", "https://openrouter.ai/api/v1/chat/completions"
)
OPENROUTER_MODEL = os.getenv("OPENROUTER_MODEL", "xiaomi/mimo-v2-flash:free")
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))
APP_URL = "https://poolbet.local"  # Sent as HTTP-Referer to OpenRouter
