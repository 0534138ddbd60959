from __future__ import annotations

import re
from typing import Optional, Protocol

import httpx

from docshield.config import Settings
from docshield.logging import get_logger
from docshield.service.errors import UpstreamUnavailableError

logger = get_logger(__name__)

SYSTEM_PROMPT = (
    "You are a document analysis assistant. Analyze the following document "
    "and provide a structured analysis."
)

_WHITESPACE = re.compile(r"\s+")


class DocumentAnalyzer(Protocol):
    async def analyze(self, content: str, *, user_id: Optional[str] = None) -> str:
        ...

    async def close(self) -> None:
        ...


def prepare_content(content: str, max_chars: int) -> str:
    """Collapse runs of whitespace and cut the text to ``max_chars``."""
    return _WHITESPACE.sub(" ", content or "").strip()[:max_chars]


class HTTPDocumentAnalyzer:
    """Document analysis through an OpenAI-compatible chat completions endpoint.

    Falls back to a placeholder result when no API key is configured, so the
    credit flow can be exercised in development.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-3.5-turbo",
        max_chars: int = 4000,
        timeout_seconds: float = 30.0,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.max_chars = max_chars
        self.timeout_seconds = timeout_seconds
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "HTTPDocumentAnalyzer":
        return cls(
            api_key=settings.analyzer_api_key,
            base_url=settings.analyzer_base_url,
            model=settings.analyzer_model,
            max_chars=settings.analyzer_max_chars,
            timeout_seconds=settings.analyzer_timeout_seconds,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        return self._client

    async def analyze(self, content: str, *, user_id: Optional[str] = None) -> str:
        text = prepare_content(content, self.max_chars)
        if not self.is_configured:
            logger.warning("analyzer_no_api_key", user_id=user_id)
            return self._placeholder_analysis(text)

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": text},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        try:
            client = await self._get_client()
            response = await client.post(f"{self.base_url}/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
            analysis = data["choices"][0]["message"]["content"]
        except httpx.HTTPStatusError as e:
            logger.error(
                "analyzer_api_error",
                user_id=user_id,
                status_code=e.response.status_code,
                model=self.model,
            )
            raise UpstreamUnavailableError(
                "Failed to analyze document", detail={"status_code": e.response.status_code}
            ) from e
        except httpx.TimeoutException as e:
            logger.error("analyzer_timeout", user_id=user_id, model=self.model, error=str(e))
            raise UpstreamUnavailableError("Document analysis timed out") from e
        except httpx.HTTPError as e:
            logger.error("analyzer_connect_error", user_id=user_id, error=str(e))
            raise UpstreamUnavailableError("Failed to connect to analysis service") from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.error("analyzer_bad_response", user_id=user_id, error=str(e))
            raise UpstreamUnavailableError("Analysis service returned an invalid response") from e

        logger.info("analyzer_success", user_id=user_id, input_chars=len(text))
        return analysis or ""

    def _placeholder_analysis(self, text: str) -> str:
        words = text.split()
        return (
            "Analysis unavailable: no analysis service is configured. "
            f"Document length: {len(text)} characters, {len(words)} words."
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


__all__ = ["DocumentAnalyzer", "HTTPDocumentAnalyzer", "SYSTEM_PROMPT", "prepare_content"]
