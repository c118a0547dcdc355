"""Session relay: one JSON WebSocket conversation per connection.

Each connection owns its ``ConsultationSession`` as a local of the
connection task, so history is never shared between clients and is dropped
as soon as the socket closes.  Events from a client are handled strictly in
arrival order.

Client -> relay events::

    {"type": "user_message", "message": "..."}
    {"type": "symptom_analysis", "symptoms": [...]}
    {"type": "image_analysis", "imageData": "...", "prompt": "..."}

Relay -> client events: ``ai_response``, ``symptom_analysis_result``,
``image_analysis_result`` and ``error``.
"""

import json
import logging
import secrets
import string
import time
from typing import Any, Optional

from fastapi import WebSocket, WebSocketDisconnect

from diagno.classification import classify_urgency
from diagno.completion import CompletionClient
from diagno.errors import MalformedAnalysisReply, RemoteAPIError
from diagno.extraction import parse_symptom_analysis
from diagno.prompts import (
    ANALYSIS_ERROR_MESSAGE,
    EMPTY_MESSAGE_ERROR,
    IMAGE_NOT_SUPPORTED_MESSAGE,
    TECHNICAL_ERROR_MESSAGE,
    WELCOME_MESSAGE,
    build_analysis_prompt,
    build_relay_messages,
)
from diagno.session import ConsultationSession
from diagno.states import RelayPhase

logger = logging.getLogger(__name__)

RELAY_PATH = "/medical-chat"

_BASE36 = string.digits + string.ascii_lowercase


def generate_session_id() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"session_{int(time.time() * 1000)}_{suffix}"


def _error(message: str) -> dict:
    return {"type": "error", "message": message}


def decode_event(raw: str) -> Optional[dict]:
    """Parse a client frame; None for anything that is not a JSON object."""
    try:
        event = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Error parsing event from client: %.200s", raw)
        return None
    if not isinstance(event, dict):
        logger.warning("Ignoring non-object event from client: %.200s", raw)
        return None
    return event


class SessionRelay:
    def __init__(self, completion: CompletionClient):
        self.completion = completion

    async def handle_connection(self, websocket: WebSocket) -> None:
        await websocket.accept()
        session = ConsultationSession(session_id=generate_session_id())
        logger.info("New medical consultation session: %s", session.session_id)

        try:
            await self._send(websocket, {
                "type": "ai_response",
                "message": WELCOME_MESSAGE,
                "sessionId": session.session_id,
            })
            session.phase = RelayPhase.ACTIVE

            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    logger.warning("Ignoring binary frame on session %s", session.session_id)
                    continue
                event = decode_event(raw)
                if event is None:
                    continue
                reply = await self.handle_event(session, event)
                if reply is not None:
                    await self._send(websocket, reply)
        except WebSocketDisconnect:
            logger.info("Client disconnected from session %s", session.session_id)
        finally:
            session.close()
            logger.info("Session %s closed", session.session_id)

    async def handle_event(self, session: ConsultationSession, event: dict) -> Optional[dict]:
        kind = event.get("type")
        if kind == "user_message":
            return await self._user_message(session, event.get("message"))
        if kind == "symptom_analysis":
            return await self._symptom_analysis(session, event.get("symptoms"))
        if kind == "image_analysis":
            return self._image_analysis(session)
        logger.info("Unknown event type: %s", kind)
        return None

    async def _user_message(self, session: ConsultationSession, message: Any) -> dict:
        if not isinstance(message, str) or not message.strip():
            return _error(EMPTY_MESSAGE_ERROR)

        session.append("user", message)
        try:
            reply = await self.completion.complete(
                build_relay_messages(session.messages()),
                temperature=0.3,
                max_tokens=500,
                circuit=session.circuit,
            )
        except RemoteAPIError as e:
            # The user turn stays in history; the client decides whether to resend.
            logger.error("Error calling Mistral API: %s", e)
            return _error(TECHNICAL_ERROR_MESSAGE)

        urgency = classify_urgency(reply)
        session.append("assistant", reply, urgency)
        logger.info("Session %s turn %d: urgency=%s", session.session_id, session.turn_count, urgency.value)
        return {
            "type": "ai_response",
            "message": reply,
            "urgencyLevel": urgency.value,
            "sessionId": session.session_id,
        }

    async def _symptom_analysis(self, session: ConsultationSession, symptoms: Any) -> dict:
        try:
            content = await self.completion.complete(
                [{"role": "user", "content": build_analysis_prompt(symptoms)}],
                temperature=0.2,
                max_tokens=600,
                circuit=session.circuit,
            )
            analysis = parse_symptom_analysis(content)
        except (RemoteAPIError, MalformedAnalysisReply) as e:
            logger.error("Error analyzing symptoms: %s", e)
            return _error(ANALYSIS_ERROR_MESSAGE)
        return {
            "type": "symptom_analysis_result",
            "analysis": analysis.model_dump(),
            "sessionId": session.session_id,
        }

    def _image_analysis(self, session: ConsultationSession) -> dict:
        # Image payloads are never forwarded to the completion API.
        return {
            "type": "image_analysis_result",
            "message": IMAGE_NOT_SUPPORTED_MESSAGE,
            "sessionId": session.session_id,
        }

    @staticmethod
    async def _send(websocket: WebSocket, event: dict) -> None:
        await websocket.send_text(json.dumps(event, ensure_ascii=False))
