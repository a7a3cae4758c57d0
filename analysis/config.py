"""SuaTalk Analysis - Configuration constants.

No external config libraries. Every tunable has a default and can be
overridden through an environment variable read once at import time.
All paths are relative to the repository root by default.
"""

import os
from pathlib import Path

# Repository root (parent of analysis/)
REPO_ROOT = Path(__file__).parent.parent.resolve()


def _get_int_env(name: str, default: int) -> int:
    """Read a positive integer from the environment.

    Args:
        name: Environment variable name.
        default: Value used when the variable is unset or invalid.

    Returns:
        The parsed value, or default.
    """
    env_val = os.environ.get(name)
    if env_val:
        try:
            value = int(env_val)
            if value > 0:
                return value
        except ValueError:
            pass
    return default


def _get_float_env(name: str, default: float) -> float:
    env_val = os.environ.get(name)
    if env_val:
        try:
            value = float(env_val)
            if value > 0:
                return value
        except ValueError:
            pass
    return default


def _get_path_env(name: str, default: Path) -> Path:
    env_val = os.environ.get(name)
    return Path(env_val) if env_val else default


# Data directories
DATA_DIR = _get_path_env("ANALYSIS_DATA_DIR", REPO_ROOT / "data")
TEMP_DIR = _get_path_env("ANALYSIS_TEMP_DIR", DATA_DIR / "temp")

# Database path (Job Store + Recording Store share one SQLite file)
DB_PATH = _get_path_env("ANALYSIS_DB_PATH", DATA_DIR / "analysis.db")

# --- Scheduler ---

# Poll loop cadence
POLL_INTERVAL_SECONDS = _get_float_env("ANALYSIS_POLL_INTERVAL_SEC", 10.0)

# Lease lifetime for a dispatched job (~5 minutes)
LEASE_DURATION_SECONDS = _get_int_env("ANALYSIS_LEASE_SEC", 300)

# Global cap on simultaneously running handlers
MAX_CONCURRENCY = _get_int_env("ANALYSIS_MAX_CONCURRENCY", 3)

# Per-kind caps; kinds not listed default to 1
KIND_CONCURRENCY = {
    "analyze_audio": _get_int_env("ANALYSIS_ANALYZE_CONCURRENCY", 2),
}
DEFAULT_KIND_CONCURRENCY = 1

# Upper bound on candidate jobs loaded per poll cycle
POLL_BATCH_SIZE = _get_int_env("ANALYSIS_POLL_BATCH_SIZE", 50)

# --- Retry policy (LOCKED) ---

# delay(retry_count) = base * multiplier ** retry_count -> 30s, 120s, 480s
RETRY_BASE_DELAY_SECONDS = 30
RETRY_MULTIPLIER = 4
MAX_RETRIES = 3
# Total attempts = initial attempt + 3 retries = 4
MAX_ATTEMPTS_TOTAL = 1 + MAX_RETRIES
assert MAX_ATTEMPTS_TOTAL == 4, "Analysis policy requires exactly 4 total attempts"

# --- Maintenance cadences ---

CLEANUP_FAILED_INTERVAL_SECONDS = 24 * 60 * 60
CLEANUP_TEMP_INTERVAL_SECONDS = 24 * 60 * 60
HEALTH_CHECK_INTERVAL_SECONDS = 5 * 60

# A failed recording must sit this long after its last retry before it is cancelled
FAILED_RECORDING_MAX_AGE_SECONDS = 24 * 60 * 60

# Temp files older than this are reclaimed
TEMP_FILE_MAX_AGE_SECONDS = _get_int_env("ANALYSIS_TEMP_MAX_AGE_SEC", 24 * 60 * 60)

# --- Prediction service ---

ML_SERVICE_URL = os.environ.get("ML_SERVICE_URL", "http://localhost:8000")
ML_SERVICE_TIMEOUT_SECONDS = _get_float_env("ML_SERVICE_TIMEOUT_SEC", 30.0)
ML_PREDICT_TIMEOUT_SECONDS = _get_float_env("ML_PREDICT_TIMEOUT_SEC", 60.0)

# Circuit breaker: open after 5 failures, half-open after 60s, close after 2 successes
CIRCUIT_FAILURE_THRESHOLD = 5
CIRCUIT_SUCCESS_THRESHOLD = 2
CIRCUIT_RESET_TIMEOUT_SECONDS = 60.0

ALLOWED_AUDIO_EXTENSIONS = (".wav", ".mp3", ".m4a", ".flac")

# --- Alerting ---

ALERT_WEBHOOK_URL = os.environ.get("ALERT_WEBHOOK_URL") or None
ALERT_COOLDOWN_SECONDS = 5 * 60
