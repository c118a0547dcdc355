import logging
from dataclasses import dataclass

import httpx

from diagno.config import ELEVENLABS_API_URL
from diagno.errors import RemoteAPIError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VoiceAgentReply:
    content_type: str
    content: bytes

    @property
    def is_audio(self) -> bool:
        return "audio" in self.content_type


class VoiceAgentClient:
    """Thin client for ElevenLabs Conversational AI (convai) endpoints."""

    def __init__(
        self,
        api_key: str,
        base_url: str = ELEVENLABS_API_URL,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        if client is not None:
            self._client = client
        else:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"xi-api-key": api_key},
                timeout=self.timeout,
            )

    async def close(self):
        await self._client.aclose()

    async def converse(self, payload: dict) -> VoiceAgentReply:
        logger.info("Sending request to ElevenLabs Conversational AI")
        resp = await self._send("POST", "/convai/conversation", json=payload)
        return VoiceAgentReply(
            content_type=resp.headers.get("content-type", "application/json"),
            content=resp.content,
        )

    async def list_agents(self) -> dict:
        resp = await self._send("GET", "/convai/agents")
        return resp.json()

    async def create_agent(self, config: dict) -> dict:
        resp = await self._send("POST", "/convai/agents", json=config)
        return resp.json()

    async def delete_agent(self, agent_id: str) -> None:
        await self._send("DELETE", f"/convai/agents/{agent_id}")

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            detail = _error_detail(e.response)
            logger.error("ElevenLabs API error %d on %s %s: %s", e.response.status_code, method, path, detail)
            raise RemoteAPIError(
                f"ElevenLabs API error {e.response.status_code}",
                status_code=e.response.status_code,
                detail=detail,
            ) from e
        except httpx.HTTPError as e:
            logger.error("ElevenLabs request failed: %s", e)
            raise RemoteAPIError(f"ElevenLabs unreachable: {e}") from e
        return resp


def _error_detail(response: httpx.Response):
    try:
        return response.json()
    except ValueError:
        return response.text
