import json
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, File, Request, UploadFile, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from diagno.completion import CompletionClient
from diagno.config import configure_logging, get_port, validate_config
from diagno.errors import RemoteAPIError
from diagno.prompts import (
    CHAT_PROXY_ERROR,
    CHAT_PROXY_PROMPT,
    DEFAULT_TURN_DETECTION,
    DEFAULT_VOICE_SETTINGS,
    IMAGE_RECEIVED_MESSAGE,
    VOICE_AGENT_FIRST_MESSAGE,
    VOICE_AGENT_MODEL,
    VOICE_AGENT_PROMPT,
)
from diagno.relay import RELAY_PATH, SessionRelay
from diagno.voice_agent import VoiceAgentClient

load_dotenv()

logger = logging.getLogger(__name__)

SERVICE_NAME = "dIAgno Mistral Relay"
WS_POLICY_VIOLATION = 1008


def _voice_agent_error(e: RemoteAPIError) -> JSONResponse:
    if e.status_code == 401:
        return JSONResponse({"error": "Invalid API key"}, status_code=401)
    if e.status_code == 400:
        return JSONResponse({"error": "Bad request", "details": e.detail}, status_code=400)
    if e.status_code == 404:
        return JSONResponse({"error": "Agent not found. Please check your agent_id"}, status_code=404)
    return JSONResponse({"error": "Something went wrong", "details": str(e)}, status_code=500)


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def create_app(
    completion: Optional[CompletionClient] = None,
    voice_agent: Optional[VoiceAgentClient] = None,
) -> FastAPI:
    """Build the HTTP + WebSocket service.

    Clients passed in are owned by the caller; clients created here are
    closed on shutdown.
    """
    owned = []
    if completion is None:
        completion = CompletionClient(api_key=os.getenv("MISTRAL_API_KEY", ""))
        owned.append(completion)
    if voice_agent is None:
        voice_agent = VoiceAgentClient(api_key=os.getenv("ELEVENLABS_API_KEY", ""))
        owned.append(voice_agent)
    relay = SessionRelay(completion)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("WebSocket endpoint: %s", RELAY_PATH)
        yield
        for client in owned:
            await client.close()

    app = FastAPI(title="dIAgno Consultation Service", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.completion = completion
    app.state.voice_agent = voice_agent
    app.state.relay = relay

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.post("/api/medical-chat")
    async def medical_chat(request: Request):
        body = await _json_body(request)
        message = body.get("message")
        session_id = body.get("sessionId")
        if not isinstance(message, str) or not message.strip():
            return JSONResponse({"success": False, "error": "message is required"}, status_code=400)
        try:
            reply = await completion.complete(
                [
                    {"role": "system", "content": CHAT_PROXY_PROMPT},
                    {"role": "user", "content": message},
                ],
                temperature=0.3,
                max_tokens=400,
            )
        except RemoteAPIError as e:
            logger.error("Error in medical chat: %s", e)
            return JSONResponse({"success": False, "error": CHAT_PROXY_ERROR}, status_code=500)
        return {"success": True, "response": reply, "sessionId": session_id}

    @app.post("/api/upload-medical-image")
    async def upload_medical_image(file: Optional[UploadFile] = File(None)):
        if file is None:
            return JSONResponse({"error": "Aucun fichier uploadé"}, status_code=400)
        image_id = f"medical_image_{int(time.time() * 1000)}"
        # The image is acknowledged only; it is neither stored nor analysed yet.
        logger.info("Medical image received: %s (%s, %s)", image_id, file.filename, file.content_type)
        await file.close()
        return {"success": True, "message": IMAGE_RECEIVED_MESSAGE, "imageId": image_id}

    @app.post("/api/visio/conversation")
    async def visio_conversation(request: Request):
        body = await _json_body(request)
        audio = body.get("audio")
        text = body.get("text")
        if not audio and not text:
            return JSONResponse({"error": "Either 'audio' or 'text' is required"}, status_code=400)
        agent_id = body.get("agent_id") or os.getenv("ELEVENLABS_AGENT_ID")
        if not agent_id:
            return JSONResponse(
                {"error": "Please configure your agent_id in the code or send it in the request"},
                status_code=400,
            )

        payload = {
            "agent_id": agent_id,
            "voice_settings": body.get("voice_settings") or DEFAULT_VOICE_SETTINGS,
            "model_id": body.get("model_id") or VOICE_AGENT_MODEL,
            "conversation_config": {
                "agent_prompt": body.get("agent_prompt") or VOICE_AGENT_PROMPT,
                "first_message": body.get("first_message") or VOICE_AGENT_FIRST_MESSAGE,
                "language": body.get("language") or "en",
            },
        }
        if audio:
            payload["audio"] = audio
        else:
            payload["text"] = text

        try:
            reply = await voice_agent.converse(payload)
        except RemoteAPIError as e:
            return _voice_agent_error(e)
        if reply.is_audio:
            return Response(content=reply.content, media_type="audio/mpeg")
        try:
            return JSONResponse(json.loads(reply.content))
        except ValueError:
            logger.error("ElevenLabs returned a non-JSON, non-audio body")
            return JSONResponse({"error": "Something went wrong", "details": "unreadable upstream reply"}, status_code=500)

    @app.get("/api/visio/agents")
    async def list_agents():
        try:
            return await voice_agent.list_agents()
        except RemoteAPIError as e:
            return JSONResponse({"error": "Failed to fetch agents", "details": str(e)}, status_code=500)

    @app.post("/api/visio/agents")
    async def create_agent(request: Request):
        body = await _json_body(request)
        name, prompt, voice_id = body.get("name"), body.get("prompt"), body.get("voice_id")
        if not name or not prompt or not voice_id:
            return JSONResponse({"error": "name, prompt, and voice_id are required"}, status_code=400)
        config = {
            "name": name,
            "prompt": prompt,
            "voice_id": voice_id,
            "language": body.get("language") or "en",
            "conversation_config": {
                "turn_detection": body.get("turn_detection") or DEFAULT_TURN_DETECTION,
            },
        }
        try:
            created = await voice_agent.create_agent(config)
        except RemoteAPIError as e:
            return JSONResponse({"error": "Failed to create agent", "details": e.detail or str(e)}, status_code=500)
        return JSONResponse(created, status_code=201)

    @app.delete("/api/visio/agents")
    async def delete_agent(agent_id: Optional[str] = None):
        if not agent_id:
            return JSONResponse({"error": "agent_id is required"}, status_code=400)
        try:
            await voice_agent.delete_agent(agent_id)
        except RemoteAPIError as e:
            return JSONResponse({"error": "Failed to delete agent", "details": str(e)}, status_code=500)
        return {"message": "Agent deleted successfully"}

    @app.websocket(RELAY_PATH)
    async def medical_chat_websocket(websocket: WebSocket):
        await relay.handle_connection(websocket)

    @app.websocket("/ws/consultation")
    async def consultation_websocket(websocket: WebSocket):
        # pipecat, Silero and Deepgram load only when a voice call arrives.
        from diagno.pipeline import create_consultation_pipeline

        await websocket.accept()
        await create_consultation_pipeline(websocket)

    @app.websocket("/{path:path}")
    async def reject_websocket(websocket: WebSocket, path: str):
        logger.info("Invalid WebSocket path: /%s", path)
        await websocket.close(code=WS_POLICY_VIOLATION)

    return app


app = create_app()


if __name__ == "__main__":
    configure_logging()
    validate_config()
    uvicorn.run("diagno.bot:app", host="0.0.0.0", port=get_port())
