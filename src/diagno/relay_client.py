"""WebSocket client for the session relay.

Lets the voice controller use the relay as its reply source.  Requests on
one client are serialized with a lock, which keeps replies matched to the
user message that produced them.  A request that times out or is
cancelled drops the connection, so its late reply can never be read as the
answer to the next one; the next request opens a fresh relay session.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

import websockets
from pydantic import ValidationError

from diagno.errors import MalformedAnalysisReply, RemoteAPIError
from diagno.extraction import SymptomAnalysis
from diagno.states import UrgencyLevel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RelayReply:
    message: str
    urgency_level: Optional[UrgencyLevel] = None
    session_id: Optional[str] = None
    is_error: bool = False


def _urgency(value) -> Optional[UrgencyLevel]:
    try:
        return UrgencyLevel(value)
    except ValueError:
        return None


class RelayClient:
    def __init__(self, url: str, connection=None, timeout: float = 30.0):
        self.url = url
        self.timeout = timeout
        self.session_id: Optional[str] = None
        self.greeting: Optional[str] = None
        self._connection = connection
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._connection is not None and self.session_id is not None

    async def connect(self) -> Optional[str]:
        """Open the socket and read the greeting; returns the greeting text."""
        async with self._lock:
            await self._ensure_connected()
        return self.greeting

    async def close(self) -> None:
        connection, self._connection = self._connection, None
        self.session_id = None
        if connection is not None:
            await connection.close()

    async def send_user_message(self, text: str) -> RelayReply:
        event = await self._request({"type": "user_message", "message": text}, "ai_response")
        if event["type"] == "error":
            return RelayReply(message=event.get("message", ""), session_id=self.session_id, is_error=True)
        return RelayReply(
            message=event.get("message", ""),
            urgency_level=_urgency(event.get("urgencyLevel")),
            session_id=event.get("sessionId", self.session_id),
        )

    async def analyze_symptoms(self, symptoms: Any) -> SymptomAnalysis:
        event = await self._request({"type": "symptom_analysis", "symptoms": symptoms}, "symptom_analysis_result")
        if event["type"] == "error":
            raise RemoteAPIError(event.get("message", "symptom analysis failed"))
        try:
            return SymptomAnalysis.model_validate(event.get("analysis"))
        except ValidationError as e:
            raise MalformedAnalysisReply(str(e)) from e

    async def analyze_image(self, image_data: str, prompt: str = "") -> str:
        event = await self._request(
            {"type": "image_analysis", "imageData": image_data, "prompt": prompt},
            "image_analysis_result",
        )
        if event["type"] == "error":
            raise RemoteAPIError(event.get("message", "image analysis failed"))
        return event.get("message", "")

    async def _request(self, event: dict, expected: str) -> dict:
        async with self._lock:
            await self._ensure_connected()
            try:
                await self._connection.send(json.dumps(event, ensure_ascii=False))
            except websockets.ConnectionClosed as e:
                self._drop()
                raise RemoteAPIError(f"Relay connection closed: {e}") from e
            try:
                while True:
                    reply = await self._receive()
                    if reply.get("type") in (expected, "error"):
                        return reply
                    logger.debug("Skipping relay event %s while waiting for %s", reply.get("type"), expected)
            except asyncio.CancelledError:
                # An abandoned exchange would leave its reply queued for the next request.
                await self._discard()
                raise

    async def _ensure_connected(self) -> None:
        if self._connection is None:
            try:
                self._connection = await websockets.connect(self.url)
            except (OSError, websockets.WebSocketException) as e:
                raise RemoteAPIError(f"Relay unreachable at {self.url}: {e}") from e
            logger.info("Connected to relay %s", self.url)
        if self.session_id is None:
            greeting = await self._receive()
            self.session_id = greeting.get("sessionId")
            self.greeting = greeting.get("message")
            logger.info("Relay session %s opened", self.session_id)

    async def _receive(self) -> dict:
        try:
            raw = await asyncio.wait_for(self._connection.recv(), timeout=self.timeout)
        except websockets.ConnectionClosed as e:
            self._drop()
            raise RemoteAPIError(f"Relay connection closed: {e}") from e
        except asyncio.TimeoutError as e:
            # The late reply would be read as the answer to the next request.
            await self._discard()
            raise RemoteAPIError("Relay did not answer in time") from e
        try:
            event = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            raise RemoteAPIError("Malformed relay event") from e
        if not isinstance(event, dict):
            raise RemoteAPIError("Malformed relay event")
        return event

    async def _discard(self) -> None:
        connection = self._connection
        self._drop()
        if connection is not None:
            logger.warning("Dropping relay connection with an unanswered request")
            await connection.close()

    def _drop(self) -> None:
        # The relay discards history on close, so a reconnect starts a new session.
        self._connection = None
        self.session_id = None


class RelayReplySource:
    """Reply source that forwards each final transcript to the relay."""

    def __init__(self, client: RelayClient):
        self.client = client

    async def reply(self, transcript: str) -> str:
        reply = await self.client.send_user_message(transcript)
        if reply.is_error:
            logger.warning("Relay returned an error: %s", reply.message)
        return reply.message

    async def close(self) -> None:
        await self.client.close()
