"""Centralized configuration — all env vars in one place."""
import os
import logging
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# --- Server ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "")
STATIC_DIR = os.getenv("STATIC_DIR", os.path.join(os.path.dirname(__file__), "public"))

# --- Storage ---
SCORES_FILE = os.getenv("SCORES_FILE", os.path.join(os.path.dirname(__file__), "scores.json"))
USERS_FILE = os.getenv("USERS_FILE", os.path.join(os.path.dirname(__file__), "users.json"))
QUESTIONS_FILE = os.getenv("QUESTIONS_FILE", "")  # empty = built-in bank
PERSIST_MAX_RETRIES = int(os.getenv("PERSIST_MAX_RETRIES", "3"))

# --- Round ---
QUESTION_DURATION_SEC = float(os.getenv("QUESTION_DURATION_SEC", "25"))

# --- Daily schedule (local time, HH:MM) ---
SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", "true")
SCHEDULER_TICK_SEC = int(os.getenv("SCHEDULER_TICK_SEC", "60"))
WRAPUP_TIME = os.getenv("WRAPUP_TIME", "23:50")
ROUND_START_TIME = os.getenv("ROUND_START_TIME", "00:00")

# --- Accounts ---
REQUIRE_LOGIN_TOKEN = _env_bool("REQUIRE_LOGIN_TOKEN", "true")
LOGIN_TOKEN_TTL_SEC = float(os.getenv("LOGIN_TOKEN_TTL_SEC", "43200"))
MAX_PSEUDO_LENGTH = 20
MAX_PASSWORD_LENGTH = 72  # bcrypt only uses the first 72 bytes
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "10"))

# --- WebSocket Security ---
WS_RATE_LIMIT_PER_SEC = 10  # max messages per second per client
MAX_WS_MESSAGE_SIZE = 4096  # bytes
MAX_CHAT_LENGTH = 500

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")  # empty = stdout only


def setup_logging():
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE))
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
