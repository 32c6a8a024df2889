"""
Tests for the notification dispatcher.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram.error import TelegramError

from escrow_models import UserAccount
from notifications import NotificationDispatcher


@pytest.fixture
def bot():
    bot = MagicMock()
    bot.send_message = AsyncMock()
    return bot


@pytest.mark.asyncio
class TestNotificationDispatcher:

    async def test_dispatch_stores_in_app_notification(self, store):
        notifier = NotificationDispatcher(store, retry_delay=0)
        notifier.dispatch('buyer-1', 'Payment Successful', 'Funds are in escrow', 'payment', {'transaction_id': 't1'})

        assert await notifier.drain() == 1
        assert store.notifications == [{
            'recipient_id': 'buyer-1',
            'title': 'Payment Successful',
            'body': 'Funds are in escrow',
            'category': 'payment',
            'metadata': {'transaction_id': 't1'},
        }]

    async def test_missing_recipient_is_skipped(self, store):
        notifier = NotificationDispatcher(store, retry_delay=0)
        notifier.dispatch(None, 'New Transaction', 'Invited')
        assert notifier.queue.empty()

    async def test_failed_store_is_retried(self, store):
        store.fail_notifications = 1
        notifier = NotificationDispatcher(store, retry_delay=0)
        notifier.dispatch('buyer-1', 'Dispute Raised', 'Review needed')

        assert await notifier.drain() == 1
        assert len(store.notifications) == 1
        assert notifier.stats['retried'] == 1

    async def test_dropped_after_max_attempts(self, store):
        store.fail_notifications = 10
        notifier = NotificationDispatcher(store, max_attempts=3, retry_delay=0)
        notifier.dispatch('buyer-1', 'Dispute Raised', 'Review needed')

        assert await notifier.drain() == 0
        assert notifier.stats['dropped'] == 1
        assert store.fail_notifications == 7

    async def test_telegram_push_for_linked_users(self, store, bot):
        store.add_user(UserAccount(id='seller-1', email='s@example.com', telegram_chat_id=4242))
        notifier = NotificationDispatcher(store, bot=bot, retry_delay=0)
        notifier.dispatch('seller-1', 'Funds Released', 'NPR 975.00 <sent>')

        await notifier.drain()

        kwargs = bot.send_message.call_args.kwargs
        assert kwargs['chat_id'] == 4242
        assert kwargs['text'] == '<b>Funds Released</b>\n\nNPR 975.00 &lt;sent&gt;'

    async def test_telegram_failure_does_not_duplicate_inbox_entry(self, store, bot):
        store.add_user(UserAccount(id='seller-1', email='s@example.com', telegram_chat_id=4242))
        bot.send_message.side_effect = [TelegramError('flood'), None]
        notifier = NotificationDispatcher(store, bot=bot, retry_delay=0)
        notifier.dispatch('seller-1', 'Funds Released', 'Paid')

        assert await notifier.drain() == 1
        assert len(store.notifications) == 1
        assert bot.send_message.await_count == 2

    async def test_admin_alerts_go_to_admin_chat(self, store, bot):
        notifier = NotificationDispatcher(store, bot=bot, admin_chat_id='-100123', retry_delay=0)
        notifier.notify_admins('Reconciliation Conflict', 'Transaction t1 diverged')

        await notifier.drain()

        assert bot.send_message.call_args.kwargs['chat_id'] == '-100123'
        assert store.notifications == []

    async def test_worker_delivers_in_background(self, store):
        notifier = NotificationDispatcher(store, retry_delay=0)
        await notifier.start()
        notifier.dispatch('buyer-1', 'Auto-Release', 'Released')

        await notifier.queue.join()
        await notifier.stop()

        assert [n['title'] for n in store.notifications] == ['Auto-Release']

    async def test_stop_requeues_message_interrupted_mid_delivery(self, store, bot):
        store.add_user(UserAccount(id='seller-1', email='s@example.com', telegram_chat_id=4242))
        sending = asyncio.Event()
        chats = []

        async def send_message(**kwargs):
            chats.append(kwargs['chat_id'])
            if len(chats) == 1:
                sending.set()
                await asyncio.Event().wait()

        bot.send_message = AsyncMock(side_effect=send_message)
        notifier = NotificationDispatcher(store, bot=bot, retry_delay=0)
        await notifier.start()
        notifier.dispatch('seller-1', 'Funds Released', 'Paid')

        await sending.wait()
        await notifier.stop()

        assert chats == [4242, 4242]
        assert len(store.notifications) == 1
        assert notifier.stats['delivered'] == 1

    async def test_stop_flushes_scheduled_retries(self, store):
        store.fail_notifications = 1
        notifier = NotificationDispatcher(store, retry_delay=60)
        await notifier.start()
        notifier.dispatch('buyer-1', 'Dispute Raised', 'Review needed')

        await notifier.queue.join()
        assert notifier.stats['retried'] == 1
        assert store.notifications == []

        await notifier.stop()

        assert [n['title'] for n in store.notifications] == ['Dispute Raised']
        assert notifier.queue.empty()
