"""
CentralHub Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# SQLite database file
_repo_default_db = BASE_DIR / "data" / "hub.db"
_user_default_db = Path.home() / ".centralhub" / "hub.db"

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}


def _setting(name: str, default: str) -> str:
    return os.getenv(f"CENTRALHUB_{name}", str(config_data.get(name, default)))


if os.getenv("CENTRALHUB_DB"):
    DB_PATH = os.getenv("CENTRALHUB_DB")
elif _repo_default_db.parent.exists():
    DB_PATH = str(_repo_default_db)
else:
    # Installed package mode normally runs outside repository checkout.
    DB_PATH = str(_user_default_db)

HUB_NAME = _setting("HUB_NAME", "CentralHub")
HUB_VERSION = "0.1.0"

# HTTP server - default to localhost only
HOST = _setting("HOST", "127.0.0.1")
PORT = int(_setting("PORT", "39780"))
LOG_LEVEL = _setting("LOG_LEVEL", "INFO").upper()

# Polling cycle interval (seconds). 0 disables the recurring timer; run-once still works.
POLL_INTERVAL = int(_setting("POLL_INTERVAL", "300"))
# How many of the most recent channel messages each cycle looks at
FETCH_LIMIT = int(_setting("FETCH_LIMIT", "100"))
# Message type that marks an item as ready for the workflow engine
READY_TYPE = _setting("READY_TYPE", "ITEM_READY").upper()
# Reaction used as the trigger annotation (and dedup marker) on ready messages
ANNOTATION_EMOJI = _setting("ANNOTATION_EMOJI", "\U0001F916")

# Terminal rows, orphaned pending requests and activity entries older than this are swept
RETENTION_HOURS = int(_setting("RETENTION_HOURS", "24"))
# Dead-letter a result after this many failed dispatches (0 = retry forever)
DISPATCH_MAX_ATTEMPTS = int(_setting("DISPATCH_MAX_ATTEMPTS", "0"))

# Timeouts (seconds) for every external call
CALLBACK_TIMEOUT = float(_setting("CALLBACK_TIMEOUT", "30"))
CHANNEL_TIMEOUT = float(_setting("CHANNEL_TIMEOUT", "30"))
DB_TIMEOUT = float(_setting("DB_TIMEOUT", "10"))
# A cycle lease older than this is considered abandoned by a crashed holder
LEASE_TIMEOUT = int(_setting("LEASE_TIMEOUT", "900"))

# Channel backend: "memory" (in-process, for local runs) or "chat" (Google Chat REST)
CHANNEL_BACKEND = _setting("CHANNEL_BACKEND", "memory").lower()
CHAT_API_BASE = _setting("CHAT_API_BASE", "https://chat.googleapis.com/v1")
CHAT_SPACE = _setting("CHAT_SPACE", "")
# Service-account key file for the Chat API; empty uses Application Default Credentials
CHAT_CREDENTIALS = _setting("CHAT_CREDENTIALS", "")
CHAT_SCOPES = tuple(
    s.strip() for s in _setting("CHAT_SCOPES", "https://www.googleapis.com/auth/chat.bot").split(",") if s.strip()
)


# Settings an operator may persist through the API; all others come from the environment
PERSISTED_KEYS = (
    "HOST", "PORT", "POLL_INTERVAL", "FETCH_LIMIT", "READY_TYPE", "RETENTION_HOURS",
    "DISPATCH_MAX_ATTEMPTS", "CHANNEL_BACKEND", "CHAT_SPACE", "CHAT_CREDENTIALS",
)


def get_config_dict() -> dict:
    """Effective values of the persisted settings in this process."""
    current = globals()
    return {key: current[key] for key in PERSISTED_KEYS}


def save_config_dict(new_data: dict) -> dict:
    """Merge ``new_data`` into data/config.json and return the file contents. Applied on restart."""
    unknown = sorted(set(new_data) - set(PERSISTED_KEYS))
    if unknown:
        raise ValueError(f"Unknown setting(s): {', '.join(unknown)}")

    config_file = BASE_DIR / "data" / "config.json"
    stored = {}
    if config_file.exists():
        stored = json.loads(config_file.read_text(encoding="utf-8"))
    stored.update(new_data)

    config_file.parent.mkdir(parents=True, exist_ok=True)
    tmp = config_file.with_suffix(".json.tmp")
    tmp.write_text(json.dumps(stored, indent=2, sort_keys=True), encoding="utf-8")
    tmp.replace(config_file)
    return stored
