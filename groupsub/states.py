import logging
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class SetupStep(str, Enum):
    BANK_NAME = "bank_name"
    ACCOUNT_NAME = "account_name"
    ACCOUNT_NUMBER = "account_number"
    PRICE = "price"

    @property
    def field(self) -> str:
        """Group config column filled in by this step."""
        return self.value

    def next(self) -> Optional["SetupStep"]:
        order = list(SetupStep)
        index = order.index(self)
        if index + 1 < len(order):
            return order[index + 1]
        return None

    @classmethod
    def first(cls) -> "SetupStep":
        return cls.BANK_NAME

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["SetupStep"]:
        if not value:
            return None
        try:
            return cls(value)
        except ValueError:
            logger.warning("Ignoring unknown setup step value: %r", value)
            return None
