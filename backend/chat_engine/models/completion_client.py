"""
Completion client for OpenAI-compatible chat endpoints (OpenRouter by default),
built on LangChain's ChatOpenAI.

The client is immutable: model, temperature and token limits live in a frozen
CompletionOptions value, and with_options() returns a new client, so one
instance can be shared by concurrent requests.
"""
import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Sequence

import httpx
import openai
from langchain_core.messages import BaseMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ConfigDict

from ..errors import CompletionError

logger = logging.getLogger(__name__)


class CompletionOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    model: str
    temperature: float = 0.0
    max_tokens: int = 500


def to_completion_error(error: openai.APIError, retried: bool = False) -> CompletionError:
    """Provider status errors keep their status and body; connection failures have no status."""
    if isinstance(error, openai.APIStatusError):
        return CompletionError(error.status_code, error.response.text, retried=retried)
    return CompletionError(None, f"{error.__class__.__name__}: {error}", retried=retried)


class CompletionClient:
    """
    complete(messages, options) -> text, with a single delayed retry on HTTP 429.

    All other failures surface as CompletionError without retrying.
    """

    def __init__(
        self,
        api_key: str,
        options: CompletionOptions,
        base_url: str = "https://openrouter.ai/api/v1",
        timeout: float = 60.0,
        rate_limit_retry_delay: float = 60.0,
        app_title: str = "Thinking Chat",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        api_key = (api_key or "").strip()
        if not api_key:
            raise ValueError("A completion API key is required. Set OPENROUTER_API_KEY.")
        self._api_key = api_key
        self.options = options
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.rate_limit_retry_delay = rate_limit_retry_delay
        self.app_title = app_title
        self._transport = transport
        self._chat_model = self._build_chat_model(options)

    @property
    def model(self) -> str:
        return self.options.model

    def with_options(self, **overrides: Any) -> "CompletionClient":
        """A copy of this client with some options replaced; this client is unchanged."""
        overrides = {k: v for k, v in overrides.items() if v is not None}
        return CompletionClient(
            api_key=self._api_key,
            options=self.options.model_copy(update=overrides),
            base_url=self.base_url,
            timeout=self.timeout,
            rate_limit_retry_delay=self.rate_limit_retry_delay,
            app_title=self.app_title,
            transport=self._transport,
        )

    async def complete(
        self, messages: Sequence[BaseMessage], options: Optional[CompletionOptions] = None
    ) -> str:
        """Sends the messages and returns the reply text ('' when there is none)."""
        chat_model = self._model_for(options)
        logger.info(f"Completion request: {chat_model.model_name}, {len(messages)} messages")

        retried = False
        try:
            try:
                reply = await chat_model.ainvoke(list(messages))
            except openai.RateLimitError:
                retried = True
                await self._wait_for_rate_limit()
                reply = await chat_model.ainvoke(list(messages))
        except openai.APIError as e:
            raise to_completion_error(e, retried) from e

        return reply.content if isinstance(reply.content, str) else ""

    async def stream(
        self, messages: Sequence[BaseMessage], options: Optional[CompletionOptions] = None
    ) -> AsyncIterator[str]:
        """Yields content deltas as the provider streams them."""
        chat_model = self._model_for(options)
        logger.info(f"Streaming completion request: {chat_model.model_name}, {len(messages)} messages")

        retried = False
        while True:
            try:
                async for chunk in chat_model.astream(list(messages)):
                    if isinstance(chunk.content, str) and chunk.content:
                        yield chunk.content
                return
            except openai.RateLimitError as e:
                if retried:
                    raise to_completion_error(e, retried) from e
                retried = True
                await self._wait_for_rate_limit()
            except openai.APIError as e:
                raise to_completion_error(e, retried) from e

    # --- Internals --- #

    def _build_chat_model(self, options: CompletionOptions) -> ChatOpenAI:
        http_async_client = None
        if self._transport is not None:
            http_async_client = httpx.AsyncClient(transport=self._transport, timeout=self.timeout)
        return ChatOpenAI(
            model=options.model,
            temperature=options.temperature,
            max_tokens=options.max_tokens,
            api_key=self._api_key,
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=0, # 429 is retried here, once
            default_headers={"X-Title": self.app_title},
            http_async_client=http_async_client,
        )

    def _model_for(self, options: Optional[CompletionOptions]) -> ChatOpenAI:
        if options is None or options == self.options:
            return self._chat_model
        return self._build_chat_model(options)

    async def _wait_for_rate_limit(self) -> None:
        logger.warning(f"Rate limited, waiting {self.rate_limit_retry_delay} seconds before retry...")
        await asyncio.sleep(self.rate_limit_retry_delay)
