import unittest

from groupsub.routing import Command, Route, callback_data, classify_command, parse_callback


class CallbackRoutingTests(unittest.TestCase):
    def test_families(self):
        cases = {
            "setup:start:-100": (Route.ADMIN_SETUP, "start", ("-100",)),
            "setup:refresh": (Route.ADMIN_SETUP, "refresh", ()),
            "sub:select:-100": (Route.PAYMENT_SELECTION, "select", ("-100",)),
            "pay:confirm:-100": (Route.PAYMENT_CONFIRMATION, "confirm", ("-100",)),
            "member:added:7:-100": (Route.MEMBERSHIP_MANAGEMENT, "added", ("7", "-100")),
        }
        for data, (route, action, args) in cases.items():
            with self.subTest(data=data):
                parsed = parse_callback(data)
                self.assertEqual((parsed.route, parsed.action, parsed.args), (route, action, args))

    def test_legacy_confirm_payment_alias(self):
        parsed = parse_callback("confirm_payment")
        self.assertEqual(parsed.route, Route.PAYMENT_CONFIRMATION)
        self.assertEqual(parsed.action, "legacy")

    def test_unknown_data(self):
        for data in (None, "", "nope", "setup", "setup:", "confirm_payment_extra", "ga:menu"):
            with self.subTest(data=data):
                self.assertEqual(parse_callback(data).route, Route.UNKNOWN)

    def test_int_arg(self):
        parsed = parse_callback("member:added:7:abc")
        self.assertEqual(parsed.int_arg(0), 7)
        self.assertIsNone(parsed.int_arg(1))
        self.assertIsNone(parsed.int_arg(5))

    def test_callback_data_builder_round_trips(self):
        data = callback_data("member", "added", 7, -100)
        self.assertEqual(data, "member:added:7:-100")
        self.assertLessEqual(len(data.encode()), 64)


class CommandTests(unittest.TestCase):
    def test_commands_are_case_insensitive(self):
        self.assertEqual(classify_command("/START"), Command.START)
        self.assertEqual(classify_command("/Setup"), Command.SETUP)
        self.assertEqual(classify_command("/groups extra words"), Command.GROUPS)

    def test_bot_mention_suffix(self):
        self.assertEqual(classify_command("/start@GroupSubBot"), Command.START)

    def test_non_commands(self):
        for text in (None, "", "start", "/unknown", "/startnow", "hello /start"):
            with self.subTest(text=text):
                self.assertIsNone(classify_command(text))


if __name__ == "__main__":
    unittest.main()
