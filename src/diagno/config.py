"""Startup configuration.

Checks the environment before the server accepts connections so that a
missing key fails loudly at boot rather than on the first consultation.
"""

import logging
import os
import sys

logger = logging.getLogger(__name__)

REQUIRED_VARS = [
    "MISTRAL_API_KEY",
]

OPTIONAL_VARS = [
    "MISTRAL_MODEL",
    "ELEVENLABS_API_KEY",
    "ELEVENLABS_AGENT_ID",
    "DEEPGRAM_API_KEY",
    "DEEPGRAM_TTS_VOICE",
    "CONSULTATION_REPLY_MODE",
    "RELAY_URL",
    "LOG_LEVEL",
    "PORT",
]

MISTRAL_API_URL = "https://api.mistral.ai/v1"
DEFAULT_MISTRAL_MODEL = "mistral-large-latest"
ELEVENLABS_API_URL = "https://api.elevenlabs.io/v1"
DEFAULT_PORT = 8081


def validate_config() -> None:
    """Exit with a clear error if a required variable is missing or empty.

    Missing optional variables only produce warnings.
    """
    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]

    if missing:
        print(
            f"\nFATAL: Missing required environment variables:\n"
            f"  {', '.join(missing)}\n"
            f"\nSet them in your .env file.\n",
            file=sys.stderr,
        )
        sys.exit(1)

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            logger.warning("Optional env var %s is not set", var)


def configure_logging() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def get_port() -> int:
    try:
        return int(os.getenv("PORT", DEFAULT_PORT))
    except ValueError:
        logger.warning("Invalid PORT %r, using %d", os.getenv("PORT"), DEFAULT_PORT)
        return DEFAULT_PORT
