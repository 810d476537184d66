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
SERVER_NAME = "Party Hub"
SERVER_VERSION = "2.0"

# --- WebSocket Security ---
WS_RATE_LIMIT_PER_SEC = int(os.getenv("WS_RATE_LIMIT_PER_SEC", "20"))
MAX_WS_MESSAGE_SIZE = int(os.getenv("MAX_WS_MESSAGE_SIZE", "4096"))  # characters
STALE_SWEEP_SECONDS = int(os.getenv("STALE_SWEEP_SECONDS", "30"))

# --- Rooms & players ---
MAX_ROOM_ID_LENGTH = 32
MAX_NAME_LENGTH = 20
MAX_AVATAR_LENGTH = 10
MAX_ACTION_LENGTH = 32

# --- LED relay ---
HOST_ONLY_COMMANDS = _env_bool("HOST_ONLY_COMMANDS", "false")
WINNER_HIGHLIGHT_ACTION = "winner_highlight"

# --- Spinner ---
MIN_SPINNER_PLAYERS = 2
SPINNER_MIN_ROTATIONS = 3
SPINNER_MAX_ROTATIONS = 5
SPINNER_MIN_DELAY_MS = int(os.getenv("SPINNER_MIN_DELAY_MS", "100"))
SPINNER_MAX_DELAY_MS = int(os.getenv("SPINNER_MAX_DELAY_MS", "800"))
DEFAULT_WINNER_DURATION = 5  # seconds
MAX_WINNER_DURATION = 60  # seconds

# --- Bomb game ---
POINTS_FOR_BOMB = int(os.getenv("POINTS_FOR_BOMB", "15"))
BOMB_DAMAGE_PERCENT = int(os.getenv("BOMB_DAMAGE_PERCENT", "50"))
MAX_POINTS = int(os.getenv("MAX_POINTS", "100"))
WIN_CONDITION_ENABLED = _env_bool("WIN_CONDITION_ENABLED", "true")

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")


def setup_logging():
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE))
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
