"""
Application configuration (env, settings, constants).

Responsibility: Centralize config loading, environment variables, and app-wide
constants. Keeps the rest of the app decoupled from how config is sourced.
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


# Playbook documents (loaded by the directory repository)
PLAYBOOK_DIR: str = os.getenv("PLAYBOOK_DIR", "data/playbook").strip() or "data/playbook"
ALLOWED_EXTENSIONS: frozenset[str] = frozenset({".md", ".txt", ".pdf"})

# Document cache
ENABLE_DOCUMENT_CACHE: bool = _env_bool("ENABLE_DOCUMENT_CACHE", True)
DOCUMENT_CACHE_TTL_MINUTES: int = _env_int("DOCUMENT_CACHE_TTL_MINUTES", 60)
DOCUMENT_CACHE_AUTO_REFRESH: bool = _env_bool("DOCUMENT_CACHE_AUTO_REFRESH", False)
SUMMARY_MAX_CHARS: int = 500

# Parallel processing (query analysis runs alongside document pre-loading)
ENABLE_PARALLEL_PROCESSING: bool = _env_bool("ENABLE_PARALLEL_PROCESSING", True)
PARALLEL_TIMEOUT_MS: int = _env_int("PARALLEL_TIMEOUT_MS", 30_000)
MAX_PARALLEL_OPERATIONS: int = _env_int("MAX_PARALLEL_OPERATIONS", 3)

# Checkpointing
ENABLE_CHECKPOINTING: bool = _env_bool("ENABLE_CHECKPOINTING", True)
CHECKPOINT_STAGES: tuple[str, ...] = tuple(
    s.strip()
    for s in os.getenv("CHECKPOINT_STAGES", "coverage_evaluation,response_synthesis").split(",")
    if s.strip()
)
# Additionally checkpoint every N completed stages (0 = only CHECKPOINT_STAGES)
CHECKPOINT_INTERVAL: int = _env_int("CHECKPOINT_INTERVAL", 0)
CHECKPOINT_MAX_AGE_MINUTES: int = _env_int("CHECKPOINT_MAX_AGE_MINUTES", 60)
CHECKPOINT_DB_PATH: str = os.getenv("CHECKPOINT_DB_PATH", "data/checkpoints.db").strip() or "data/checkpoints.db"

# Routing thresholds at coverage evaluation
HIGH_CONFIDENCE_THRESHOLD: float = _env_float("HIGH_CONFIDENCE_THRESHOLD", 0.8)
MEDIUM_CONFIDENCE_THRESHOLD: float = _env_float("MEDIUM_CONFIDENCE_THRESHOLD", 0.5)

# Conversation context passed into the pipeline
MAX_CONTEXT_MESSAGES: int = _env_int("MAX_CONTEXT_MESSAGES", 10)

# API timeouts (seconds)
LLM_API_TIMEOUT: float = _env_float("LLM_API_TIMEOUT", 60.0)

# Hugging Face chat (fallback LLM)
HF_API_KEY: str = os.getenv("HF_API_KEY", "").strip()
HF_CHAT_URL: str = "https://router.huggingface.co/v1/chat/completions"
HF_LLM_MODEL: str = (
    os.getenv("HF_LLM_MODEL", "meta-llama/Llama-3.2-3B-Instruct").strip()
    or "meta-llama/Llama-3.2-3B-Instruct"
)

# OpenAI (primary LLM). When set, stages use OpenAI instead of Hugging Face.
OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "").strip()
OPENAI_LLM_MODEL: str = (
    os.getenv("OPENAI_LLM_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini"
)
