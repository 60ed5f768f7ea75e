import unittest
from datetime import timedelta

from groupsub.config import Settings

VALID = {"BOT_TOKEN": "123456:ABC-def_ghi", "WEBHOOK_URL": "https://bot.example.org"}


def make_settings(**overrides) -> Settings:
    values = dict(VALID)
    values.update(overrides)
    return Settings(_env_file=None, **values)


class SettingsTests(unittest.TestCase):
    def test_valid_configuration_has_no_problems(self):
        self.assertEqual(make_settings().startup_problems(), [])

    def test_missing_required_values(self):
        problems = make_settings(BOT_TOKEN="", WEBHOOK_URL="").startup_problems()
        self.assertIn("BOT_TOKEN is missing", problems)
        self.assertIn("WEBHOOK_URL is missing", problems)

    def test_token_format(self):
        self.assertFalse(make_settings(BOT_TOKEN="not-a-token").bot_token_valid)
        self.assertFalse(make_settings(BOT_TOKEN="123:CHANGE_ME").bot_token_valid)
        self.assertTrue(make_settings().bot_token_valid)

    def test_production_durations(self):
        config = make_settings(ENVIRONMENT="production", TEST_MODE=False)
        self.assertEqual(config.subscription_duration, timedelta(days=30))
        self.assertEqual(config.sweep_interval, timedelta(hours=1))

    def test_test_mode_durations(self):
        config = make_settings(TEST_MODE=True)
        self.assertEqual(config.subscription_duration, timedelta(minutes=2))
        self.assertEqual(config.sweep_interval, timedelta(minutes=1))

    def test_development_sweeps_fast_but_keeps_full_duration(self):
        config = make_settings(ENVIRONMENT="Development")
        self.assertTrue(config.is_development)
        self.assertEqual(config.sweep_interval, timedelta(minutes=1))
        self.assertEqual(config.subscription_duration, timedelta(days=30))

    def test_webhook_endpoint(self):
        config = make_settings(WEBHOOK_URL="https://bot.example.org/", WEBHOOK_PATH="hook")
        self.assertEqual(config.webhook_endpoint, "https://bot.example.org/hook")

    def test_invalid_log_level_falls_back(self):
        self.assertEqual(make_settings(LOG_LEVEL="chatty").log_level, "INFO")
        self.assertEqual(make_settings(LOG_LEVEL="debug").log_level, "DEBUG")


if __name__ == "__main__":
    unittest.main()
