# fetcher.py
# Paginated reads of channel message history under a fixed inter-request delay.

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, List, Optional

import discord
from loguru import logger

RATE_LIMIT_DELAY = 0.25
MESSAGE_BATCH_SIZE = 100


@dataclass
class Page:
    items: List[Any] = field(default_factory=list)
    next_cursor: Optional[int] = None
    has_more: bool = False


class RateLimitedFetcher:
    """
    Wraps `gateway.fetch_message_page` with a fixed delay before every request.

    A page that comes back shorter than the requested size means the channel is exhausted.
    A failed request is logged and treated as an empty, final page for that channel, so one
    unreadable channel never aborts the operation that is walking all of them.
    """

    def __init__(self, gateway: Any, delay: float = RATE_LIMIT_DELAY, page_size: int = MESSAGE_BATCH_SIZE,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
        self.gateway = gateway
        self.delay = delay
        self.page_size = page_size
        self._sleep = sleep
        self.requests_made = 0

    async def fetch_page(self, channel: Any, page_size: Optional[int] = None, cursor: Optional[int] = None) -> Page:
        size = page_size or self.page_size
        await self._sleep(self.delay)
        self.requests_made += 1
        try:
            items = await self.gateway.fetch_message_page(channel, size, cursor)
        except (discord.DiscordException, asyncio.TimeoutError) as e:
            logger.warning(f"Page fetch failed in #{getattr(channel, 'name', channel)} (before={cursor}): {e}")
            return Page()

        if not items:
            return Page()
        return Page(items=list(items), next_cursor=items[-1].id, has_more=len(items) >= size)

    async def iter_pages(self, channel: Any, stop: Optional[Callable[[Page], bool]] = None) -> AsyncIterator[Page]:
        cursor = None
        while True:
            page = await self.fetch_page(channel, cursor=cursor)
            if page.items:
                yield page
            if not page.has_more or (stop is not None and stop(page)):
                return
            cursor = page.next_cursor

    async def count_user_messages(self, channels: Iterable[Any], user_id: int) -> int:
        total = 0
        for channel in channels:
            channel_total = 0
            async for page in self.iter_pages(channel):
                channel_total += sum(1 for message in page.items if message.author.id == user_id)
            if channel_total:
                logger.debug(f"Channel #{getattr(channel, 'name', channel)}: {channel_total} messages by {user_id}")
            total += channel_total
        return total
