"""
config.py - runtime settings and logger setup

Settings come from environment variables and are read at call time so tests
(and Streamlit-style secret loaders) can set them after import:
  - FAIRSPLIT_DATA_FILE: path of the local JSON ledger file
  - FAIRSPLIT_DEFAULT_CURRENCY: currency used when an expense names none
  - GOOGLE_SHEET_ID / GOOGLE_SERVICE_ACCOUNT_JSON / GOOGLE_SERVICE_ACCOUNT_FILE:
    enable the Google Sheets backend of the ledger
"""

import logging
import os
import sys
import tempfile

# split shares must sum to 1.0 within this tolerance
SHARE_TOLERANCE = 0.01
# declared percentages are accepted when their sum falls inside this window
PERCENTAGE_TOTAL_MIN = 99.9
PERCENTAGE_TOTAL_MAX = 100.1

FALLBACK_CURRENCY = "EUR"

_default_data_file = os.path.join(os.path.dirname(__file__), "..", "data", "ledger_data.json")


def running_under_pytest() -> bool:
    return any("pytest" in p for p in sys.argv) or bool(os.getenv("PYTEST_CURRENT_TEST"))


def data_file() -> str:
    """
    Location of the JSON persistence file.
    Under pytest a temp file is used so tests never touch real user data.
    """
    configured = (os.getenv("FAIRSPLIT_DATA_FILE") or "").strip()
    if configured:
        return configured
    if running_under_pytest():
        return os.path.join(tempfile.gettempdir(), "tmp_fairsplit_test.json")
    return _default_data_file


def default_currency() -> str:
    return (os.getenv("FAIRSPLIT_DEFAULT_CURRENCY") or "").strip().upper() or FALLBACK_CURRENCY


def google_sheet_id() -> str:
    return (os.getenv("GOOGLE_SHEET_ID") or "").strip()


def get_logger(name: str) -> logging.Logger:
    """Return a module logger with a single stream handler attached."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
    return logger
