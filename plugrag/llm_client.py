"""OpenAI-compatible LLM client wrapper with error handling."""
from typing import Any, Dict, List, Optional

import httpx
import structlog

from plugrag import config
from plugrag.exceptions import LLMError, NetworkError, RateLimitError, TransientError

logger = structlog.get_logger()

RETRYABLE_STATUS = {408, 409, 500, 502, 503, 504}


class OpenAIClient:
    """Async client for the OpenAI (or compatible) REST API.

    One instance carries one API key, so instances are cached per bot and
    never shared between tenants.
    """

    def __init__(self, api_key: str, base_url: str = None, timeout: float = 60.0):
        """Initialize the client.

        Args:
            api_key: Bearer token for the API
            base_url: API base URL (defaults to config.OPENAI_BASE_URL)
            timeout: Request timeout in seconds
        """
        self.api_key = api_key
        self.base_url = (base_url or config.OPENAI_BASE_URL).rstrip("/")
        self.timeout = timeout

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}{path}",
                    json=payload,
                    headers=self._headers,
                )
                response.raise_for_status()
                return response.json()

        except httpx.TimeoutException as e:
            logger.error("openai_timeout", path=path, timeout=self.timeout)
            raise TransientError(f"Request to {path} timed out after {self.timeout}s") from e
        except httpx.ConnectError as e:
            logger.error("openai_connection_error", error=str(e), base_url=self.base_url)
            raise NetworkError(f"Cannot reach {self.base_url}: {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            detail = _error_detail(e.response)
            logger.error("openai_http_error", path=path, status_code=status, error=detail)
            if status == 429:
                raise RateLimitError(f"Rate limited by API: {detail}") from e
            if status in RETRYABLE_STATUS:
                raise TransientError(f"API error {status}: {detail}") from e
            raise LLMError(f"API error {status}: {detail}") from e
        except httpx.HTTPError as e:
            logger.error("openai_http_error", path=path, error=str(e))
            raise NetworkError(str(e) or type(e).__name__) from e

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: str = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Send a chat completion request.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Model to use (defaults to config.CHAT_MODEL)
            temperature: Sampling temperature (0.0-2.0)
            max_tokens: Completion token limit

        Returns:
            Dict with 'content', 'model' and 'usage'

        Raises:
            TransientError: On timeouts, rate limits and server errors
            LLMError: On other API errors or an empty completion
        """
        model = model or config.CHAT_MODEL
        payload: Dict[str, Any] = {"model": model, "messages": messages}
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens

        logger.info("openai_chat_request", model=model, message_count=len(messages))
        data = await self._post("/chat/completions", payload)

        choices = data.get("choices") or []
        content = (choices[0].get("message", {}).get("content") if choices else None) or ""
        if not content.strip():
            raise LLMError("Empty completion returned by model")

        usage = data.get("usage") or {}
        logger.info(
            "openai_chat_response",
            model=data.get("model", model),
            response_length=len(content),
            total_tokens=usage.get("total_tokens"),
        )
        return {"content": content, "model": data.get("model", model), "usage": usage}

    async def embeddings(self, texts: List[str], model: str = None) -> Dict[str, Any]:
        """Generate embeddings for a batch of texts.

        Args:
            texts: Texts to embed
            model: Model to use (defaults to config.EMBEDDING_MODEL)

        Returns:
            Dict with 'embeddings' (one vector per text, in order) and 'usage'

        Raises:
            TransientError: On timeouts, rate limits and server errors
            LLMError: On other API errors or a malformed response
        """
        model = model or config.EMBEDDING_MODEL

        logger.debug("openai_embedding_request", model=model, batch_size=len(texts))
        data = await self._post("/embeddings", {"model": model, "input": texts})

        items = sorted(data.get("data") or [], key=lambda item: item.get("index", 0))
        embeddings = [item.get("embedding") or [] for item in items]
        if len(embeddings) != len(texts) or not all(embeddings):
            raise LLMError(
                f"Embedding response has {len(embeddings)} vectors for {len(texts)} inputs"
            )

        logger.debug(
            "openai_embedding_response",
            model=model,
            dimension=len(embeddings[0]),
        )
        return {"embeddings": embeddings, "usage": data.get("usage") or {}}

def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message") or str(error)
    return str(error or body)[:200]
