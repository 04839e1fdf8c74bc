# llm.py
# Completion client: one prompt in, one completion out.
#
# Wraps the OpenAI SDK pointed at an OpenAI-compatible chat-completions
# endpoint. The SDK's own retries are disabled: a failed call surfaces
# immediately and the orchestrator decides what happens next.

import logging

import httpx
import openai
from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

NO_CONTENT = "No response generated"


class CompletionError(Exception):
    """Raised when the completion endpoint fails or answers in an unexpected shape."""


class CompletionClient:
    """
    Thin async wrapper over a chat-completions endpoint.

    Example:
        client = CompletionClient(base_url="https://host/v1", api_key="token")
        text = await client.complete("Say hi", model="gpt-4o-mini")
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = AsyncOpenAI(
            base_url=base_url,
            api_key=api_key,
            max_retries=0,
            http_client=http_client,
        )

    async def complete(self, prompt: str, model: str) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=[{"role": "user", "content": prompt}],
                stream=False,
            )
        except openai.APIStatusError as exc:
            raise CompletionError(f"API call failed: {exc.status_code}") from exc
        except openai.APIError as exc:
            raise CompletionError(f"Failed to make API call: {exc}") from exc
        except ValueError as exc:
            # Malformed JSON body on a 2xx response.
            raise CompletionError(f"Unexpected completion response shape: {exc}") from exc

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as exc:
            raise CompletionError(f"Unexpected completion response shape: {exc}") from exc

        if content is None:
            logger.warning("Completion for model %s returned no content", model)
            return NO_CONTENT
        if not isinstance(content, str):
            raise CompletionError(
                f"Unexpected completion response shape: content is {type(content).__name__}"
            )
        return content

    async def aclose(self) -> None:
        await self._client.close()
