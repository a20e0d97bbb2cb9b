import os
from pathlib import Path
from dotenv import load_dotenv

_BACKEND_ROOT = Path(__file__).resolve().parents[1]
_BACKEND_ENV_PATH = _BACKEND_ROOT / ".env"
load_dotenv(dotenv_path=_BACKEND_ENV_PATH, override=True)


def _env_flag(name: str, default: str = "false") -> bool:
    return str(os.getenv(name, default)).strip().lower() in {"1", "true", "yes", "on"}


ENVIRONMENT = str(os.getenv("ENV") or "development").strip().lower()

# Session lifecycle
COPILOT_HEARTBEAT_TIMEOUT_SEC = max(5.0, float(os.getenv("COPILOT_HEARTBEAT_TIMEOUT_SEC", "60")))

# Streaming
COPILOT_STREAM_POLL_SEC = max(0.05, float(os.getenv("COPILOT_STREAM_POLL_SEC", "1.5")))
COPILOT_STREAM_EVENT_LIMIT = max(10, int(os.getenv("COPILOT_STREAM_EVENT_LIMIT", "300")))

# Suggestions / summaries
COPILOT_SUGGESTION_CONTEXT_EVENTS = max(1, int(os.getenv("COPILOT_SUGGESTION_CONTEXT_EVENTS", "16")))
COPILOT_SUMMARY_EVENT_LIMIT = max(10, int(os.getenv("COPILOT_SUMMARY_EVENT_LIMIT", "250")))

# LLM providers, tried in order
LLM_PROVIDER_CHAIN = [
    item.strip().lower()
    for item in str(os.getenv("LLM_PROVIDER_CHAIN") or "openai,anthropic,gemini").split(",")
    if item.strip()
]
LLM_TIMEOUT_SEC = max(1.0, float(os.getenv("LLM_TIMEOUT_SEC", "12")))
LLM_RETRIES = max(0, int(os.getenv("LLM_RETRIES", "1")))

OPENAI_API_KEY = str(os.getenv("OPENAI_API_KEY") or "").strip()
MODEL_NAME = str(os.getenv("MODEL_NAME") or "gpt-4o-mini").strip()  # accurate + affordable for live suggestions
ANTHROPIC_API_KEY = str(os.getenv("ANTHROPIC_API_KEY") or "").strip()
ANTHROPIC_MODEL = str(os.getenv("ANTHROPIC_MODEL") or "claude-3-5-haiku-latest").strip()
GEMINI_API_KEY = str(os.getenv("GEMINI_API_KEY") or "").strip()
GEMINI_MODEL = str(os.getenv("GEMINI_MODEL") or "gemini-1.5-flash").strip()

# Event store
COPILOT_STORE_BACKEND = str(os.getenv("COPILOT_STORE_BACKEND") or "local").strip().lower()
SUPABASE_URL = str(os.getenv("SUPABASE_URL") or "").strip()
SUPABASE_SERVICE_KEY = str(os.getenv("SUPABASE_SERVICE_KEY") or os.getenv("SUPABASE_KEY") or "").strip()
SUPABASE_TIMEOUT_SEC = max(1.0, float(os.getenv("SUPABASE_TIMEOUT_SEC", "6")))

# Rate limiting
RATE_LIMIT_ENABLED = _env_flag("RATE_LIMIT_ENABLED", "true")
USE_REDIS_RATE_LIMIT = _env_flag("USE_REDIS_RATE_LIMIT", "false")
REDIS_URL = str(os.getenv("REDIS_URL") or "").strip()

QA_MODE = _env_flag("QA_MODE", "false")

# Retention (days) and the optional in-process sweep
COPILOT_RETENTION_EVENTS_DAYS = max(1, int(os.getenv("COPILOT_RETENTION_EVENTS_DAYS", "30")))
COPILOT_RETENTION_SUMMARIES_DAYS = max(1, int(os.getenv("COPILOT_RETENTION_SUMMARIES_DAYS", "90")))
COPILOT_RETENTION_SESSIONS_DAYS = max(1, int(os.getenv("COPILOT_RETENTION_SESSIONS_DAYS", "90")))
COPILOT_RETENTION_SWEEP_ENABLED = _env_flag("COPILOT_RETENTION_SWEEP_ENABLED", "false")
COPILOT_RETENTION_SWEEP_INTERVAL_SEC = max(60, int(os.getenv("COPILOT_RETENTION_SWEEP_INTERVAL_SEC", "86400")))
COPILOT_CRON_SECRET = str(os.getenv("COPILOT_CRON_SECRET") or "").strip()
