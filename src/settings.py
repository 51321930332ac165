"""Filesystem locations for socialwatch.

Everything user-editable (platforms, destinations, throttle and backoff
settings, logging) lives in a single JSON config file; this module only
decides where that file and the daemon's state live. Each location can be
overridden from the environment (or ``.env``).
"""

import json
import os

from dotenv import load_dotenv

load_dotenv()

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

# The live config file, re-read by the daemon when it changes.
CONFIG_PATH = os.getenv("SOCIALWATCH_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))

# Everything the daemon writes goes under the state directory.
STATE_DIR = os.getenv("SOCIALWATCH_STATE_DIR", os.path.join(PROJECT_ROOT, "state"))

# Dedup ledger (SQLite).
DB_PATH = os.getenv("SOCIALWATCH_DB", os.path.join(STATE_DIR, "socialwatch.db"))

# Copy of the last config document that validated.
LAST_GOOD_CONFIG_PATH = os.path.join(STATE_DIR, "config.last-good.json")

# Health snapshot written by the daemon and read by `socialwatch health`.
HEALTH_PATH = os.path.join(STATE_DIR, "health.json")


def load_json_config(path: str = CONFIG_PATH) -> dict:
    """Load the raw config document (used before logging is configured)."""

    if not os.path.exists(path):
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)
