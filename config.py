"""
config.py
---------
Loads environment variables for the ledger, the crypto secrets and the
telephony/transcription providers.
"""

import os
from dotenv import load_dotenv
import logging

logger = logging.getLogger(__name__)


def _clean(name, default=""):
    """Read an env var and drop any inline '# comment' left in the .env file."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.split('#')[0].strip()


def load_clean_config():
    """
    Load environment variables from .env file and clean up any comments.
    Returns a clean configuration dictionary.

    Raises:
        ValueError: If ENCRYPTION_SECRET or HOSPITAL_KEY is missing.
    """
    # Load environment variables
    load_dotenv()

    config = {}

    # Secrets used by the crypto module
    config["ENCRYPTION_SECRET"] = os.getenv("ENCRYPTION_SECRET")
    config["HOSPITAL_KEY"] = os.getenv("HOSPITAL_KEY")

    if not config["ENCRYPTION_SECRET"]:
        raise ValueError("ENCRYPTION_SECRET is not set in the environment")
    if not config["HOSPITAL_KEY"]:
        raise ValueError("HOSPITAL_KEY is not set in the environment")

    # Ledger store
    config["LEDGER_BACKEND"] = _clean("LEDGER_BACKEND", "sqlite").lower()
    config["LEDGER_DB_PATH"] = _clean("LEDGER_DB_PATH", "data/ledger.sqlite")
    config["SQL_SERVER_DRIVER"] = _clean("SQL_SERVER_DRIVER")
    config["SQL_SERVER_SERVER"] = _clean("SQL_SERVER_SERVER")
    config["SQL_SERVER_DATABASE"] = _clean("SQL_SERVER_DATABASE")
    config["SQL_SERVER_TRUSTED_CONNECTION"] = _clean("SQL_SERVER_TRUSTED_CONNECTION")
    config["LEDGER_LOCK_TIMEOUT_SECONDS"] = float(_clean("LEDGER_LOCK_TIMEOUT_SECONDS", "10"))
    config["LEDGER_APPEND_RETRIES"] = int(_clean("LEDGER_APPEND_RETRIES", "3"))

    # Call sessions
    config["SESSION_TTL_SECONDS"] = int(_clean("SESSION_TTL_SECONDS", "900"))
    config["SESSION_SWEEP_INTERVAL_SECONDS"] = int(_clean("SESSION_SWEEP_INTERVAL_SECONDS", "60"))

    # API keys and other configuration
    config["TWILIO_ACCOUNT_SID"] = os.getenv("TWILIO_ACCOUNT_SID")
    config["TWILIO_AUTH_TOKEN"] = os.getenv("TWILIO_AUTH_TOKEN")
    config["TWILIO_PHONE_NUMBER"] = os.getenv("TWILIO_PHONE_NUMBER")
    config["DEEPGRAM_API_KEY"] = os.getenv("DEEPGRAM_API_KEY")
    config["SERVER_URL"] = _clean("SERVER_URL").rstrip("/")
    config["PORT"] = int(_clean("PORT", "3000"))

    # Log configuration (without sensitive values)
    logger.info("Loaded configuration:")
    logger.info(f"Ledger Backend: {config['LEDGER_BACKEND']}")
    if config["LEDGER_BACKEND"] == "sqlserver":
        logger.info(f"Database Server: {config['SQL_SERVER_SERVER']}")
        logger.info(f"Database Name: {config['SQL_SERVER_DATABASE']}")
    else:
        logger.info(f"Ledger Path: {config['LEDGER_DB_PATH']}")
    logger.info(f"Session TTL: {config['SESSION_TTL_SECONDS']}s")
    logger.info(f"Server URL: {config.get('SERVER_URL') or 'not set'}")
    logger.info(f"Port: {config['PORT']}")

    return config
