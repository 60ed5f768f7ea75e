import unittest

from groupsub.errors import SetupBusyError
from groupsub.setup_flow import SetupMachine
from groupsub.states import SetupStep

from tests.support import ADMIN_ID, GROUP_ID, TempDBMixin

ANSWERS = ("Test Bank", "Jane Doe", "0123456789", "$10")


class SetupStepTests(unittest.TestCase):
    def test_order(self):
        self.assertEqual(SetupStep.BANK_NAME.next(), SetupStep.ACCOUNT_NAME)
        self.assertEqual(SetupStep.ACCOUNT_NAME.next(), SetupStep.ACCOUNT_NUMBER)
        self.assertEqual(SetupStep.ACCOUNT_NUMBER.next(), SetupStep.PRICE)
        self.assertIsNone(SetupStep.PRICE.next())

    def test_parse_unknown_value(self):
        self.assertIsNone(SetupStep.parse("complete"))
        self.assertIsNone(SetupStep.parse(None))
        self.assertEqual(SetupStep.parse("price"), SetupStep.PRICE)


class SetupMachineTests(TempDBMixin, unittest.TestCase):
    def setUp(self):
        self.db = self.make_db()
        self.db.create_group(GROUP_ID, ADMIN_ID, "Club")
        self.machine = SetupMachine(self.db)

    def test_steps_advance_in_order_and_complete_only_at_the_end(self):
        self.assertEqual(self.machine.begin(GROUP_ID, ADMIN_ID), SetupStep.BANK_NAME)

        seen = []
        for answer in ANSWERS:
            group = self.db.get_group(GROUP_ID)
            self.assertFalse(group.is_setup_complete)
            seen.append(group.setup_step)
            progress = self.machine.answer(GROUP_ID, answer)
            self.assertEqual(progress.answered, seen[-1])

        self.assertEqual(seen, list(SetupStep))
        self.assertTrue(progress.completed)
        group = self.db.get_group(GROUP_ID)
        self.assertTrue(group.is_configured)
        self.assertIsNone(group.setup_step)
        self.assertEqual(group.config.bank_name, "Test Bank")
        self.assertEqual(group.config.account_name, "Jane Doe")
        self.assertEqual(group.config.account_number, "0123456789")
        self.assertEqual(group.config.price, "$10")

    def test_answers_are_stripped(self):
        self.machine.begin(GROUP_ID, ADMIN_ID)
        self.machine.answer(GROUP_ID, "  Test Bank \n")
        self.assertEqual(self.db.get_group(GROUP_ID).config.bank_name, "Test Bank")

    def test_blank_answer_is_rejected(self):
        self.machine.begin(GROUP_ID, ADMIN_ID)
        with self.assertRaises(ValueError):
            self.machine.answer(GROUP_ID, "   ")
        self.assertEqual(self.db.get_group(GROUP_ID).setup_step, SetupStep.BANK_NAME)

    def test_answer_without_pending_setup_is_ignored(self):
        self.assertIsNone(self.machine.answer(GROUP_ID, "Test Bank"))
        self.assertEqual(self.db.get_group(GROUP_ID).config.bank_name, "")

    def test_unknown_step_is_ignored(self):
        with self.db._conn() as conn:
            conn.execute("UPDATE groups SET setup_step = 'complete' WHERE group_id = ?", (GROUP_ID,))
        self.assertIsNone(self.machine.answer(GROUP_ID, "anything"))

    def test_rerun_keeps_config_until_overwritten(self):
        self.machine.begin(GROUP_ID, ADMIN_ID)
        for answer in ANSWERS:
            self.machine.answer(GROUP_ID, answer)

        self.machine.begin(GROUP_ID, ADMIN_ID)
        self.machine.answer(GROUP_ID, "New Bank")

        group = self.db.get_group(GROUP_ID)
        self.assertFalse(group.is_configured)
        self.assertEqual(group.config.bank_name, "New Bank")
        self.assertEqual(group.config.price, "$10")

    def test_only_one_pending_setup_per_admin(self):
        self.db.create_group(-2002, ADMIN_ID, "Second")
        self.machine.begin(GROUP_ID, ADMIN_ID)

        with self.assertRaises(SetupBusyError) as ctx:
            self.machine.begin(-2002, ADMIN_ID)
        self.assertEqual(ctx.exception.pending_group.group_id, GROUP_ID)

        self.machine.begin(GROUP_ID, ADMIN_ID)
        self.assertEqual(self.machine.pending_for(ADMIN_ID).group_id, GROUP_ID)

    def test_cancel_frees_admin_for_another_group(self):
        self.db.create_group(-2002, ADMIN_ID, "Second")
        self.machine.begin(GROUP_ID, ADMIN_ID)
        self.machine.cancel(GROUP_ID)

        self.assertIsNone(self.machine.pending_for(ADMIN_ID))
        self.machine.begin(-2002, ADMIN_ID)
        self.assertEqual(self.machine.pending_for(ADMIN_ID).group_id, -2002)

    def test_begin_unknown_group(self):
        with self.assertRaises(LookupError):
            self.machine.begin(-9999, ADMIN_ID)


if __name__ == "__main__":
    unittest.main()
