import asyncio
import logging
from typing import Awaitable, Callable, Set

import aiohttp
import discord

logger = logging.getLogger(__name__)

AuditSink = Callable[[str], Awaitable[None]]


class AuditChannel:
    """
    One-way channel for audit summaries.

    ``notify`` never waits for delivery and never raises; a sink that fails
    is logged and forgotten.
    """

    def __init__(self, *sinks: AuditSink):
        self.sinks = list(sinks)
        self._pending: Set[asyncio.Task] = set()

    def add_sink(self, sink: AuditSink) -> None:
        self.sinks.append(sink)

    def notify(self, message: str) -> None:
        logger.info(f"[audit] {message}")
        if not self.sinks:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop, audit message not delivered: {message}")
            return
        for sink in self.sinks:
            task = loop.create_task(self._deliver(sink, message))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, sink: AuditSink, message: str) -> None:
        try:
            await sink(message)
        except Exception as e:
            logger.warning(f"Audit delivery failed ({type(e).__name__}): {e}")

    async def drain(self) -> None:
        """Wait for deliveries that are still in flight."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class WebhookAuditSink:
    def __init__(self, webhook_url: str, username: str = "UOI Registry"):
        self.webhook_url = webhook_url
        self.username = username

    async def __call__(self, message: str) -> None:
        async with aiohttp.ClientSession() as session:
            webhook = discord.Webhook.from_url(self.webhook_url, session=session)
            await webhook.send(f"📘 {message}", username=self.username)
