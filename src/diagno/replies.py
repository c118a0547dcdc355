"""Reply sources: where the voice controller gets its next line.

Exactly one source is used per call.  The local reasoner works offline with
English heuristics; the relay source sends each transcript to the session
relay, whose completion model and urgency scan are then authoritative.
"""

import logging
import os
from typing import Protocol

from diagno.reasoner import LocalReplySource
from diagno.relay_client import RelayClient, RelayReplySource

logger = logging.getLogger(__name__)


class ReplySource(Protocol):
    async def reply(self, transcript: str) -> str: ...

    async def close(self) -> None: ...


def build_reply_source() -> ReplySource:
    mode = os.getenv("CONSULTATION_REPLY_MODE", "local").strip().lower()
    relay_url = os.getenv("RELAY_URL", "")
    if mode == "relay":
        if relay_url:
            logger.info("Consultation replies via relay at %s", relay_url)
            return RelayReplySource(RelayClient(relay_url))
        logger.warning("CONSULTATION_REPLY_MODE=relay but RELAY_URL is not set, using local reasoner")
    return LocalReplySource()
