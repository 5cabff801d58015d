from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Optional, Protocol, Sequence

import httpx

from .errors import AnswerProviderError

logger = logging.getLogger(__name__)

MAX_IMAGE_URLS = 3


class AnswerProvider(Protocol):
    async def answer(self, question: str, *, image_urls: Sequence[str] = ()) -> str:
        """Return the Markdown answer for ``question``."""


def build_chat_request(question: str, image_urls: Sequence[str] = ()) -> dict:
    """FastGPT chat-completions payload; image URLs turn the content into a part list."""
    urls = [u for u in image_urls if u][:MAX_IMAGE_URLS]
    if urls:
        content: object = [{"type": "text", "text": question}] + [
            {"type": "image_url", "image_url": {"url": url}} for url in urls
        ]
    else:
        content = question
    return {
        "chatId": f"mdimg_{uuid.uuid4()}",
        "responseChatItemId": f"resp_{uuid.uuid4()}",
        "variables": {"uid": f"user_{uuid.uuid4()}", "name": "ChatUser"},
        "messages": [{"role": "user", "content": content}],
        "stream": False,
        "detail": False,
    }


class FastGPTClient:
    """Non-streaming client for a FastGPT (OpenAI-compatible) chat endpoint."""

    def __init__(
        self,
        api_url: str,
        auth_token: str,
        *,
        timeout: float = 300.0,
        max_concurrency: int = 5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = api_url
        self._client = httpx.AsyncClient(
            headers={"Authorization": f"Bearer {auth_token}"},
            timeout=timeout,
            transport=transport,
        )
        self._semaphore = asyncio.Semaphore(max_concurrency)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def answer(self, question: str, *, image_urls: Sequence[str] = ()) -> str:
        payload = build_chat_request(question, image_urls)
        logger.info("Sending answer request (%d chars, %d images)", len(question), len(image_urls))
        async with self._semaphore:
            try:
                response = await self._client.post(self.api_url, json=payload)
            except httpx.HTTPError as exc:
                raise AnswerProviderError(f"Answer request failed: {exc}") from exc

        if response.status_code >= 400:
            logger.error("Answer provider returned %s: %s", response.status_code, response.text[:500])
            raise AnswerProviderError(f"Answer provider returned HTTP {response.status_code}")

        try:
            data = response.json()
        except json.JSONDecodeError as exc:
            logger.error("Unparseable answer payload: %s", response.text[:500])
            raise AnswerProviderError("Answer provider returned invalid JSON") from exc

        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices:
            raise AnswerProviderError("Answer provider returned no choices")
        first = choices[0] if isinstance(choices[0], dict) else {}
        message = first.get("message") if isinstance(first.get("message"), dict) else {}
        content = message.get("content")
        if not isinstance(content, str):
            raise AnswerProviderError("Answer provider returned no message content")
        logger.info("Received answer (%d chars)", len(content))
        return content
