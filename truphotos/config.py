from pathlib import Path
import json
import os

from loguru import logger

# === PATH CONFIGURATION ===
DATA_DIR = Path(os.environ.get("TRUPHOTOS_DATA_DIR", "data"))
CREDENTIALS_FILE = DATA_DIR / "credentials.json"
LOG_DIR = DATA_DIR / "logs"

CONFIG_FILE = Path(os.environ.get("TRUPHOTOS_CONFIG", "truphotos_config.json"))

# === CLIENT IDENTITY ===
APP_NAME = "Tru Photos"
APP_VERSION = "1.0.0"
DEVICE_NAME = "Mobile"

DEFAULTS = {
    "page_size": 1000,
    "request_timeout": 10.0,
    "connection_test_timeout": 5.0,
    "album_request_timeout": 30.0,
    "album_limit": 50,
    "log_level": "INFO",
}


def load_user_config(path: Path = None) -> dict:
    """
    Load the user's truphotos_config.json (page size, timeouts, log level)
    merged over DEFAULTS. Fallback to defaults if not found.
    """
    path = path or CONFIG_FILE
    config = dict(DEFAULTS)
    if path.exists():
        with open(path, "r") as f:
            config.update(json.load(f))
    else:
        logger.info("Config file '{}' not found. Using defaults.", path)
    return config
