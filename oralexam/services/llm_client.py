"""
oralexam/services/llm_client.py
LLM client for code review and transcript grading

Talks to any OpenAI compatible /chat/completions endpoint.
A failed call is never retried here: the calling operation restores its
entity and the whole operation is re-run by the caller.
"""
import logging
from typing import NamedTuple, Optional

import httpx

from oralexam.config.settings import settings
from oralexam.exceptions import LLMProviderError, MalformedResponseError

logger = logging.getLogger(__name__)


class ChatCompletion(NamedTuple):
    content: str
    finish_reason: Optional[str]
    model: Optional[str]
    total_tokens: int

    @property
    def truncated(self) -> bool:
        """True when the provider stopped because it hit the token cap."""
        return self.finish_reason == "length"


class LLMClient:
    """
    Async chat completion client.

    Tracks total tokens used for cost monitoring.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.base_url = (base_url or settings.OPENAI_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.LLM_TIMEOUT_SECONDS
        self._transport = transport
        self.total_tokens_used = 0

    def is_configured(self) -> bool:
        """Check if an API key is configured."""
        return bool(self.api_key)

    async def chat(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str,
        max_completion_tokens: Optional[int] = None,
        json_mode: bool = False,
        temperature: Optional[float] = None,
    ) -> ChatCompletion:
        """
        Run one chat completion.

        Args:
            system_prompt: System message
            user_prompt: User message
            model: Model name
            max_completion_tokens: Output cap; hitting it yields finish_reason "length"
            json_mode: Ask the provider for a JSON object response
            temperature: Sampling temperature, provider default when None

        Returns:
            ChatCompletion with the message content and finish reason

        Raises:
            LLMProviderError: Not configured, unreachable, or non-2xx answer
            MalformedResponseError: 2xx answer without a usable message
        """
        if not self.is_configured():
            raise LLMProviderError("LLM provider is not configured (OPENAI_API_KEY missing)")

        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        if max_completion_tokens:
            payload["max_completion_tokens"] = max_completion_tokens
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        if temperature is not None:
            payload["temperature"] = temperature

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/chat/completions", headers=headers, json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"LLM API error: {e.response.status_code} {e.response.text[:200]}")
            raise LLMProviderError(f"LLM provider returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error(f"LLM request failed: {type(e).__name__}: {e}")
            raise LLMProviderError(f"LLM provider unreachable: {type(e).__name__}") from e
        except ValueError as e:
            raise MalformedResponseError("LLM provider returned a non-JSON body") from e

        try:
            choice = data["choices"][0]
            content = choice["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise MalformedResponseError("LLM response has no message content") from e

        tokens_used = (data.get("usage") or {}).get("total_tokens", 0)
        self.total_tokens_used += tokens_used
        logger.info(f"LLM call: model={model} tokens={tokens_used} (total: {self.total_tokens_used})")

        return ChatCompletion(
            content=content,
            finish_reason=choice.get("finish_reason"),
            model=data.get("model", model),
            total_tokens=tokens_used,
        )


_llm_client: Optional[LLMClient] = None


def get_llm_client() -> LLMClient:
    global _llm_client
    if _llm_client is None:
        _llm_client = LLMClient()
    return _llm_client
