import unittest
from unittest.mock import AsyncMock, MagicMock

from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError, TelegramNetworkError

from groupsub.errors import MemberNotFoundError, PermissionDeniedError, TransportError
from groupsub.transport import TelegramTransport, map_api_error


def bad_request(message: str) -> TelegramBadRequest:
    return TelegramBadRequest(method=MagicMock(), message=message)


class ErrorMappingTests(unittest.TestCase):
    def test_not_found_variants(self):
        for message in ("Bad Request: user not found", "Bad Request: chat not found", "Bad Request: USER_NOT_PARTICIPANT"):
            with self.subTest(message=message):
                self.assertIsInstance(map_api_error(bad_request(message)), MemberNotFoundError)

    def test_rights_errors(self):
        self.assertIsInstance(map_api_error(bad_request("Bad Request: not enough rights to restrict/unrestrict chat member")), PermissionDeniedError)
        forbidden = TelegramForbiddenError(method=MagicMock(), message="Forbidden: bot was blocked by the user")
        self.assertIsInstance(map_api_error(forbidden), PermissionDeniedError)

    def test_other_errors(self):
        error = map_api_error(bad_request("Bad Request: message text is empty"), "sendMessage")
        self.assertIs(type(error), TransportError)
        self.assertEqual(error.method, "sendMessage")


class TelegramTransportTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.bot = AsyncMock()
        self.bot.id = 4242
        self.transport = TelegramTransport(self.bot)

    async def test_kick_is_ban_then_unban(self):
        await self.transport.kick_member(-100, 7)

        self.bot.ban_chat_member.assert_awaited_once_with(chat_id=-100, user_id=7)
        self.bot.unban_chat_member.assert_awaited_once_with(chat_id=-100, user_id=7, only_if_banned=True)

    async def test_kick_maps_errors(self):
        self.bot.ban_chat_member.side_effect = bad_request("Bad Request: user is not a member of the chat")
        with self.assertRaises(MemberNotFoundError):
            await self.transport.kick_member(-100, 7)
        self.bot.unban_chat_member.assert_not_awaited()

    async def test_bot_can_remove_members(self):
        self.bot.get_chat_member.return_value = MagicMock(status="administrator", can_restrict_members=True)
        self.assertTrue(await self.transport.bot_can_remove_members(-100))
        self.bot.get_chat_member.assert_awaited_with(-100, 4242)

        self.bot.get_chat_member.return_value = MagicMock(status="administrator", can_restrict_members=False)
        self.assertFalse(await self.transport.bot_can_remove_members(-100))

        self.bot.get_chat_member.return_value = MagicMock(status="member")
        self.assertFalse(await self.transport.bot_can_remove_members(-100))

    async def test_permission_lookup_failure_counts_as_not_privileged(self):
        self.bot.get_chat_member.side_effect = bad_request("Bad Request: chat not found")
        self.assertFalse(await self.transport.bot_can_remove_members(-100))

    async def test_transient_permission_lookup_failure_raises(self):
        self.bot.get_chat_member.side_effect = TelegramNetworkError(method=MagicMock(), message="Request timeout error")
        with self.assertRaises(TransportError) as ctx:
            await self.transport.bot_can_remove_members(-100)
        self.assertEqual(ctx.exception.method, "getChatMember")

    async def test_edit_ignores_not_modified(self):
        self.bot.edit_message_text.side_effect = bad_request("Bad Request: message is not modified")
        await self.transport.edit_message(1, 2, "same")
        self.bot.send_message.assert_not_awaited()

    async def test_edit_falls_back_to_send(self):
        self.bot.edit_message_text.side_effect = bad_request("Bad Request: message to edit not found")
        await self.transport.edit_message(1, 2, "new text")
        self.bot.send_message.assert_awaited_once_with(chat_id=1, text="new text", reply_markup=None)

    async def test_get_profile(self):
        self.bot.get_chat.return_value = MagicMock(username=None, first_name="Jane", title=None)
        profile = await self.transport.get_profile(7)
        self.assertEqual(profile.display_name, "Jane")

        self.bot.get_chat.return_value = MagicMock(username="jane", first_name="Jane", title=None)
        self.assertEqual((await self.transport.get_profile(7)).display_name, "@jane")


if __name__ == "__main__":
    unittest.main()
