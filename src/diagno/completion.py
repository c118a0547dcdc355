import logging
import os

import httpx

from diagno.circuit_breaker import CircuitBreaker
from diagno.config import DEFAULT_MISTRAL_MODEL, MISTRAL_API_URL
from diagno.errors import RemoteAPIError

logger = logging.getLogger(__name__)


class CompletionClient:
    """Chat-completion client for the Mistral API.

    The HTTP connection pool is shared; failure tracking is not.  Callers
    that hold a conversation pass their own ``CircuitBreaker`` to
    ``complete`` so one session's failures never fail another fast.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = MISTRAL_API_URL,
        model: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model or os.getenv("MISTRAL_MODEL", DEFAULT_MISTRAL_MODEL)
        self.timeout = timeout
        if client is not None:
            self._client = client
        else:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {api_key}",
                },
                timeout=self.timeout,
            )

    async def close(self):
        await self._client.aclose()

    async def complete(
        self,
        messages: list[dict],
        temperature: float = 0.3,
        max_tokens: int = 500,
        circuit: CircuitBreaker | None = None,
    ) -> str:
        if circuit is not None and not circuit.allow_request():
            logger.warning("%s circuit breaker open, failing fast", circuit.label)
            raise RemoteAPIError("Completion API temporarily unavailable")

        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        try:
            resp = await self._client.post("/chat/completions", json=payload)
            resp.raise_for_status()
            content = resp.json()["choices"][0]["message"]["content"]
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if circuit is not None and is_outage(status):
                circuit.record_failure()
            logger.error("Mistral API returned %d", status)
            raise RemoteAPIError(
                f"Completion API error {status}",
                status_code=status,
                detail=e.response.text,
            ) from e
        except httpx.HTTPError as e:
            if circuit is not None:
                circuit.record_failure()
            logger.error("Mistral API request failed: %s", e)
            raise RemoteAPIError(f"Completion API unreachable: {e}") from e
        except (ValueError, KeyError, IndexError, TypeError) as e:
            if circuit is not None:
                circuit.record_failure()
            logger.error("Malformed Mistral response: %s", e)
            raise RemoteAPIError("Malformed completion response") from e

        if not isinstance(content, str):
            if circuit is not None:
                circuit.record_failure()
            raise RemoteAPIError("Completion response has no text content")
        if circuit is not None:
            circuit.record_success()
        return content


def is_outage(status_code: int) -> bool:
    """Statuses that say the API is unhealthy rather than the request wrong."""
    return status_code >= 500 or status_code in (408, 429)
