import logging
from dataclasses import dataclass
from typing import Optional

from .db import DB
from .errors import SetupBusyError
from .models import Group
from .states import SetupStep

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SetupProgress:
    answered: SetupStep
    next_step: Optional[SetupStep]
    group: Group

    @property
    def completed(self) -> bool:
        return self.next_step is None


class SetupMachine:
    """Walks a group's payment configuration through its four ordered prompts."""

    def __init__(self, db: DB):
        self.db = db

    def pending_for(self, admin_id: int) -> Optional[Group]:
        pending = self.db.get_pending_setups(admin_id)
        if len(pending) > 1:
            logger.warning(
                "Admin %s has %s pending setups; using group %s",
                admin_id,
                len(pending),
                pending[0].group_id,
            )
        return pending[0] if pending else None

    def begin(self, group_id: int, admin_id: int) -> SetupStep:
        pending = self.pending_for(admin_id)
        if pending is not None and pending.group_id != group_id:
            raise SetupBusyError(pending)

        step = SetupStep.first()
        if not self.db.start_setup(group_id, step):
            raise LookupError(f"Group {group_id} does not exist")
        logger.info("Setup started for group %s by admin %s", group_id, admin_id)
        return step

    def answer(self, group_id: int, text: str) -> Optional[SetupProgress]:
        """Record the answer for the current step and advance.

        Returns None when the group is not waiting for an answer, including
        when the stored step is unrecognised.
        """
        value = (text or "").strip()
        if not value:
            raise ValueError("Setup answer must not be empty")

        group = self.db.get_group(group_id)
        if group is None or not group.in_setup:
            logger.warning("Setup answer for group %s with no pending step", group_id)
            return None

        step = group.setup_step
        if step is None:
            logger.warning(
                "Group %s has unknown setup step %r; ignoring answer",
                group_id,
                group.raw_setup_step,
            )
            return None

        next_step = step.next()
        if not self.db.apply_setup_answer(group_id, step, value, next_step):
            logger.warning("Setup step for group %s changed concurrently", group_id)
            return None

        if next_step is None:
            logger.info("Setup completed for group %s", group_id)
        else:
            logger.info("Group %s setup: %s -> %s", group_id, step.value, next_step.value)
        return SetupProgress(answered=step, next_step=next_step, group=self.db.get_group(group_id))

    def cancel(self, group_id: int) -> Optional[Group]:
        if not self.db.cancel_setup(group_id):
            return None
        logger.info("Setup cancelled for group %s", group_id)
        return self.db.get_group(group_id)
