import unittest
from datetime import datetime, timezone
from unittest.mock import AsyncMock

from aiogram.types import CallbackQuery, Chat, Message, PhotoSize, Update, User

from groupsub.events import ButtonPress, MembershipChange, MessageEvent, to_inbound
from groupsub.main import build_dispatcher
from groupsub.middlewares import IdempotencyMiddleware, ProcessedUpdates
from groupsub.texts import ADMIN_WELCOME, GROUP_WELCOME, NO_GROUPS_AVAILABLE

from tests.support import ADMIN_ID, BOT_ID, GROUP_ID, TempDBMixin, make_services, sent_texts

DATE = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_message(message_id=1, chat_id=10, **kwargs) -> Message:
    return Message(
        message_id=message_id,
        date=DATE,
        chat=Chat(id=chat_id, type="private"),
        from_user=User(id=chat_id, is_bot=False, first_name="Pat", username="pat"),
        **kwargs,
    )


def make_callback(callback_id="q1", data="sub:back") -> CallbackQuery:
    return CallbackQuery(
        id=callback_id,
        from_user=User(id=10, is_bot=False, first_name="Pat"),
        chat_instance="ci",
        data=data,
    )


class ProcessedUpdatesTests(unittest.TestCase):
    def test_check_and_mark(self):
        ledger = ProcessedUpdates()
        self.assertTrue(ledger.check_and_mark("msg:1"))
        self.assertFalse(ledger.check_and_mark("msg:1"))
        self.assertTrue(ledger.is_processed("msg:1"))

    def test_capacity_is_bounded_and_evicts_oldest(self):
        ledger = ProcessedUpdates(capacity=3)
        for key in ("a", "b", "c"):
            ledger.mark_processed(key)
        ledger.check_and_mark("a")  # refresh a
        ledger.mark_processed("d")

        self.assertEqual(len(ledger), 3)
        self.assertTrue(ledger.is_processed("a"))
        self.assertFalse(ledger.is_processed("b"))
        self.assertTrue(ledger.is_processed("d"))


class EventConversionTests(unittest.TestCase):
    def test_message_key_combines_id_and_date(self):
        event = to_inbound(make_message(message_id=7, text="hello"))
        self.assertIsInstance(event, MessageEvent)
        self.assertEqual(event.key, f"msg:10:7:{int(DATE.timestamp())}")
        self.assertEqual(event.text, "hello")

    def test_photo_becomes_receipt_using_largest_size(self):
        photos = [
            PhotoSize(file_id="small", file_unique_id="s", width=10, height=10),
            PhotoSize(file_id="large", file_unique_id="l", width=100, height=100),
        ]
        event = to_inbound(make_message(photo=photos, caption="paid"))
        self.assertEqual(event.receipt.file_id, "large")
        self.assertEqual(event.receipt.kind, "photo")
        self.assertEqual(event.text, "paid")

    def test_service_message_becomes_membership_change(self):
        message = Message(
            message_id=3,
            date=DATE,
            chat=Chat(id=-100, type="supergroup", title="Club"),
            from_user=User(id=1, is_bot=False, first_name="Admin"),
            new_chat_members=[User(id=42, is_bot=True, first_name="Bot")],
        )
        event = to_inbound(message)
        self.assertIsInstance(event, MembershipChange)
        self.assertEqual(event.joined_user_ids, (42,))
        self.assertEqual(event.chat_title, "Club")

    def test_callback_key(self):
        event = to_inbound(make_callback("abc"))
        self.assertIsInstance(event, ButtonPress)
        self.assertEqual(event.key, "cb:abc")


class IdempotencyMiddlewareTests(unittest.IsolatedAsyncioTestCase):
    async def test_redelivered_message_reaches_handler_once(self):
        middleware = IdempotencyMiddleware()
        handler = AsyncMock()

        await middleware(handler, make_message(message_id=5, text="hi"), {})
        await middleware(handler, make_message(message_id=5, text="hi"), {})

        handler.assert_awaited_once()
        event, data = handler.await_args.args
        self.assertIsInstance(data["inbound"], MessageEvent)

    async def test_distinct_messages_are_both_handled(self):
        middleware = IdempotencyMiddleware()
        handler = AsyncMock()

        await middleware(handler, make_message(message_id=5, text="hi"), {})
        await middleware(handler, make_message(message_id=6, text="hi"), {})

        self.assertEqual(handler.await_count, 2)

    async def test_duplicate_button_press_is_acknowledged_but_not_handled(self):
        middleware = IdempotencyMiddleware()
        handler = AsyncMock()
        bot = AsyncMock()

        await middleware(handler, make_callback("q9"), {"bot": bot})
        await middleware(handler, make_callback("q9"), {"bot": bot})

        handler.assert_awaited_once()
        bot.answer_callback_query.assert_awaited_once_with("q9")


class DispatcherWiringTests(TempDBMixin, unittest.IsolatedAsyncioTestCase):
    async def test_redelivered_update_is_handled_once(self):
        services = make_services(self.make_db())
        dp = build_dispatcher(services)
        bot = AsyncMock()
        bot.id = 4242
        update = Update(update_id=1, message=make_message(message_id=11, text="/start"))

        await dp.feed_update(bot, update)
        await dp.feed_update(bot, update)

        services.transport.send_message.assert_awaited_once_with(10, NO_GROUPS_AVAILABLE)

    async def test_redelivered_bot_added_update_creates_group_once(self):
        services = make_services(self.make_db())
        dp = build_dispatcher(services)
        bot = AsyncMock()
        bot.id = BOT_ID
        message = Message(
            message_id=21,
            date=DATE,
            chat=Chat(id=GROUP_ID, type="supergroup", title="Paid Club"),
            from_user=User(id=ADMIN_ID, is_bot=False, first_name="Admin"),
            new_chat_members=[User(id=BOT_ID, is_bot=True, first_name="Bot")],
        )
        update = Update(update_id=2, message=message)

        await dp.feed_update(bot, update)
        await dp.feed_update(bot, update)

        self.assertEqual(services.db.get_group(GROUP_ID).admin_id, ADMIN_ID)
        self.assertEqual(sent_texts(services.transport, GROUP_ID), [GROUP_WELCOME])
        self.assertEqual(sent_texts(services.transport, ADMIN_ID).count(ADMIN_WELCOME), 1)


if __name__ == "__main__":
    unittest.main()
