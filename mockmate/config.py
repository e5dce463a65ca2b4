import os
import logging

from dotenv import load_dotenv

# Load .env when present, but keep pytest runs deterministic
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    try:
        v = os.getenv(name, "1" if default else "0").strip().lower()
        return v in ("1", "true", "yes", "on")
    except Exception:
        return default


# Generation backend
AI_HTTP_TIMEOUT_SECONDS = _env_int("AI_HTTP_TIMEOUT_SECONDS", 30)
AI_GENERATION_MAX_TOKENS = _env_int("AI_GENERATION_MAX_TOKENS", 4000)
AI_GENERATION_TTFT_TIMEOUT_SECONDS = _env_float("AI_GENERATION_TTFT_TIMEOUT_SECONDS", 30.0)

# In-band tokens the interview prompt asks the model to emit
REFERENCE_ANSWER_MARKER = "[STANDARD_ANSWER]"
END_INTERVIEW_FLAG = "[END_INTERVIEW]"

# Streaming
STREAM_CHANNEL_SIZE = _env_int("STREAM_CHANNEL_SIZE", 256)
SSE_HEARTBEAT_SECONDS = _env_float("SSE_HEARTBEAT_SECONDS", 15.0)
OPENING_CHUNK_SIZE = _env_int("OPENING_CHUNK_SIZE", 5)
OPENING_CHUNK_DELAY_SECONDS = _env_float("OPENING_CHUNK_DELAY_SECONDS", 0.02)

# Session lifecycle
SESSION_EVICTION_GRACE_SECONDS = _env_float("SESSION_EVICTION_GRACE_SECONDS", 300.0)
SESSION_IDLE_TIMEOUT_SECONDS = _env_float("SESSION_IDLE_TIMEOUT_SECONDS", 3600.0)
SESSION_SWEEP_INTERVAL_SECONDS = _env_float("SESSION_SWEEP_INTERVAL_SECONDS", 60.0)

# Billing
FREE_CREDITS_DEFAULT = _env_int("FREE_CREDITS_DEFAULT", 3)

# Optional durable mirror for results (HTTP)
RESULTS_PERSIST_URL = _env_str("RESULTS_PERSIST_URL")
RESULTS_PERSIST_SECRET = _env_str("RESULTS_PERSIST_SECRET")
RESULTS_PERSIST_TIMEOUT_SECONDS = _env_float("RESULTS_PERSIST_TIMEOUT_SECONDS", 5.0)

# Out-of-band operator alerts (refund failures)
ALERT_WEBHOOK_URL = _env_str("ALERT_WEBHOOK_URL")

# Post-interview assessment report
ASSESSMENT_ENABLED = _env_bool("ASSESSMENT_ENABLED", True)


logger = logging.getLogger("mockmate")
# Ensure our application logger emits under Uvicorn:
# - honor LOG_LEVEL env (default INFO)
# - attach a StreamHandler if none present
# - disable propagate to avoid duplicate logs with Uvicorn root handlers
try:
    _lvl_name = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    _lvl = getattr(logging, _lvl_name, logging.INFO)
except Exception:
    _lvl = logging.INFO
logger.setLevel(_lvl)
if not logger.handlers:
    _h = logging.StreamHandler()
    _h.setLevel(_lvl)
    _h.setFormatter(logging.Formatter('%(message)s'))
    logger.addHandler(_h)
logger.propagate = False


def get_logger(name: str) -> logging.Logger:
    """Child of the ``mockmate`` logger, sharing its handler and level."""
    return logger.getChild(name)
