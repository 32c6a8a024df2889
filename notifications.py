"""
Notification dispatcher for escrow events.

Notifications are fire-and-forget for the caller: ``dispatch`` only puts a
message on an in-process outbound queue. A background worker delivers each
message at least once to the in-app inbox (PostgreSQL) and, when the user
has linked a chat, to Telegram. Admin alerts go to the configured admin
chat.
"""

import asyncio
import html
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Tuple

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import TelegramError

logger = logging.getLogger(__name__)


class NotificationDeliveryError(Exception):
    """Raised when a channel did not accept a notification."""
    pass


@dataclass
class OutboundNotification:
    title: str
    body: str
    category: str
    recipient_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    to_admins: bool = False
    attempts: int = 0
    stored: bool = False


class NotificationDispatcher:
    """
    Queue-backed notification delivery.

    Attributes:
        store: Persistence with ``create_notification`` and ``get_user``
        bot: Telegram bot for push delivery (optional)
        admin_chat_id: Chat receiving admin alerts (optional)
        max_attempts: Delivery attempts before a message is dropped
    """

    def __init__(
        self,
        store,
        bot: Optional[Bot] = None,
        admin_chat_id: Optional[str] = None,
        max_attempts: int = 3,
        retry_delay: float = 2.0
    ):
        self.store = store
        self.bot = bot
        self.admin_chat_id = admin_chat_id
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._retries: Dict[int, Tuple[asyncio.TimerHandle, OutboundNotification]] = {}
        self.stats = {'delivered': 0, 'retried': 0, 'dropped': 0}

    # ==================== PRODUCERS ====================

    def dispatch(
        self,
        recipient_id: Optional[str],
        title: str,
        body: str,
        category: str = 'transaction',
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Queue a notification for a user. Never blocks or raises."""
        if not recipient_id:
            logger.debug(f"Notification '{title}' has no recipient, skipping")
            return
        self.queue.put_nowait(OutboundNotification(
            title=title,
            body=body,
            category=category,
            recipient_id=recipient_id,
            metadata=dict(metadata or {}),
        ))

    def notify_admins(
        self,
        title: str,
        body: str,
        category: str = 'admin',
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        self.queue.put_nowait(OutboundNotification(
            title=title,
            body=body,
            category=category,
            metadata=dict(metadata or {}),
            to_admins=True,
        ))

    # ==================== WORKER ====================

    async def start(self) -> None:
        if self._worker is not None and not self._worker.done():
            logger.warning("Notification worker already running")
            return
        self._worker = asyncio.create_task(self._run(), name='notification-worker')
        logger.info("Notification worker started")

    async def stop(self) -> None:
        """Deliver what is queued or waiting for a retry, then stop the worker."""
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        for handle, item in list(self._retries.values()):
            handle.cancel()
            self.queue.put_nowait(item)
        self._retries.clear()

        await self.drain()
        logger.info("Notification worker stopped")

    async def _run(self) -> None:
        while True:
            item = await self.queue.get()
            try:
                if not await self._process(item):
                    self._schedule_retry(item)
            except asyncio.CancelledError:
                # Interrupted mid-delivery; hand the message back for drain()
                self.queue.put_nowait(item)
                raise
            finally:
                self.queue.task_done()

    def _schedule_retry(self, item: OutboundNotification) -> None:
        delay = self.retry_delay * (2 ** (item.attempts - 1))
        handle = asyncio.get_running_loop().call_later(delay, self._requeue, item)
        self._retries[id(item)] = (handle, item)

    def _requeue(self, item: OutboundNotification) -> None:
        self._retries.pop(id(item), None)
        self.queue.put_nowait(item)

    async def drain(self) -> int:
        """
        Deliver everything currently queued, retrying immediately.

        Returns:
            Number of notifications delivered
        """
        delivered_before = self.stats['delivered']
        while not self.queue.empty():
            item = self.queue.get_nowait()
            try:
                if not await self._process(item):
                    self.queue.put_nowait(item)
            finally:
                self.queue.task_done()
        return self.stats['delivered'] - delivered_before

    async def _process(self, item: OutboundNotification) -> bool:
        """
        Attempt one delivery.

        Returns:
            True when delivered or dropped for good, False when a retry is due
        """
        item.attempts += 1
        try:
            await self._deliver(item)
        except Exception as e:
            if item.attempts >= self.max_attempts:
                self.stats['dropped'] += 1
                logger.error(
                    f"Dropping notification '{item.title}' for "
                    f"{item.recipient_id or 'admins'} after {item.attempts} attempts: {e}"
                )
                return True
            self.stats['retried'] += 1
            logger.warning(
                f"Notification '{item.title}' for {item.recipient_id or 'admins'} "
                f"failed (attempt {item.attempts}): {e}"
            )
            return False

        self.stats['delivered'] += 1
        return True

    # ==================== CHANNELS ====================

    async def _deliver(self, item: OutboundNotification) -> None:
        if item.to_admins:
            if self.bot and self.admin_chat_id:
                await self._send_telegram(self.admin_chat_id, item)
            else:
                logger.info(f"Admin notification: {item.title} - {item.body}")
            return

        if not item.stored:
            created = await self.store.create_notification(
                item.recipient_id, item.title, item.body, item.category, item.metadata
            )
            if not created:
                raise NotificationDeliveryError("in-app notification was not stored")
            item.stored = True

        if self.bot is None:
            return

        user = await self.store.get_user(item.recipient_id)
        if user is not None and user.telegram_chat_id:
            await self._send_telegram(user.telegram_chat_id, item)

    async def _send_telegram(self, chat_id, item: OutboundNotification) -> None:
        text = f"<b>{html.escape(item.title)}</b>\n\n{html.escape(item.body)}"
        try:
            await self.bot.send_message(chat_id=chat_id, text=text, parse_mode=ParseMode.HTML)
        except TelegramError as e:
            raise NotificationDeliveryError(f"Telegram send failed: {e}") from e
