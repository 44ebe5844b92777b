import logging
from typing import Any, Dict, List

from openai import APIError, AsyncOpenAI

from ..errors import ModelError
from ..settings import get_settings

logger = logging.getLogger(__name__)


def normalize_completion_text(response: Any) -> str:
    """Return the text of the first choice of a chat completion, or "" if there is none."""
    try:
        content = response.choices[0].message.content
    except (AttributeError, IndexError, TypeError):
        return ""
    return content if isinstance(content, str) else ""


class LanguageModelClient:
    """Chat-completion calls against an OpenAI-compatible endpoint."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        temperature: float = 0.2,
    ) -> None:
        self._client = client
        self.model = model
        self.temperature = temperature

    async def complete(self, messages: List[Dict[str, str]]) -> str:
        """Run one completion over role-tagged messages and return its text.

        Raises:
            ModelError: the request failed or the model returned no text.
        """
        logger.debug("LLM request model=%s messages=%d", self.model, len(messages))
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
            )
        except (APIError, TimeoutError, ConnectionError) as e:
            logger.error("LLM request failed: %s", e)
            raise ModelError(str(e)) from e

        text = normalize_completion_text(response)
        if not text.strip():
            raise ModelError("model returned an empty response")
        return text


def build_language_model_client() -> LanguageModelClient:
    """Construct the client from settings."""
    settings = get_settings()
    return LanguageModelClient(
        client=AsyncOpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout=settings.llm_request_timeout_seconds,
            max_retries=settings.llm_max_retries,
        ),
        model=settings.model,
        temperature=settings.temperature,
    )
