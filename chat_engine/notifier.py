"""
HTTP clients for the external bot-mention notifier and text generator.

Both services are optional: with no URL configured the notifier logs and
skips, and the text generator raises ServiceUnavailable.
"""

import logging
from typing import Optional

import httpx

from chat_engine.config import settings

logger = logging.getLogger(__name__)


class ServiceUnavailable(Exception):
    """The external service is not configured or did not answer."""


class BotNotifier:
    """Forwards messages that mention the bot to the bot service."""

    def __init__(self, url: Optional[str] = None, timeout: float = 10.0, trigger: str = "@Shark"):
        self._url = url
        self._timeout = timeout
        self.trigger = trigger
        self._client: Optional[httpx.AsyncClient] = None

    def matches(self, content: str) -> bool:
        return bool(self.trigger) and content.startswith(self.trigger)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def notify(self, content: str, channel_id: str, user_name: str) -> None:
        """
        Fire-and-forget delivery. Errors are logged and swallowed so the
        send response never depends on the bot service.
        """
        if not self._url:
            logger.debug(f"Bot notifier not configured, skipping mention in {channel_id}")
            return

        try:
            client = await self._get_client()
            response = await client.post(
                self._url,
                json={"content": content, "channel_id": channel_id, "user_name": user_name},
            )
            response.raise_for_status()
            logger.info(f"Bot notified: channel={channel_id}, status={response.status_code}")
        except httpx.TimeoutException:
            logger.error(f"Bot notifier timeout for channel {channel_id}")
        except Exception as e:
            logger.error(f"Bot notifier error for channel {channel_id}: {e}")


class TextGenerator:
    """Client for the external text generation service."""

    def __init__(self, url: Optional[str] = None, timeout: float = 10.0):
        self._url = url
        self._timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def generate(self, text: str) -> str:
        """
        Raises:
            ServiceUnavailable: not configured, or the upstream call failed
        """
        if not self._url:
            raise ServiceUnavailable("Text generation is not configured")

        try:
            client = await self._get_client()
            response = await client.post(self._url, json={"text": text})
            response.raise_for_status()
            return response.json()["text"]
        except httpx.TimeoutException as e:
            logger.error("Text generation timeout")
            raise ServiceUnavailable("Text generation timed out") from e
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error(f"Text generation error: {e}")
            raise ServiceUnavailable("Text generation failed") from e


_bot_notifier: Optional[BotNotifier] = None
_text_generator: Optional[TextGenerator] = None


def get_bot_notifier() -> BotNotifier:
    global _bot_notifier
    if _bot_notifier is None:
        _bot_notifier = BotNotifier(
            url=settings.BOT_NOTIFY_URL,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
            trigger=settings.BOT_MENTION_TRIGGER,
        )
    return _bot_notifier


def get_text_generator() -> TextGenerator:
    global _text_generator
    if _text_generator is None:
        _text_generator = TextGenerator(
            url=settings.TEXT_GENERATION_URL,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )
    return _text_generator


async def close_clients() -> None:
    if _bot_notifier is not None:
        await _bot_notifier.close()
    if _text_generator is not None:
        await _text_generator.close()
