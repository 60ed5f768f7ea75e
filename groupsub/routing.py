"""Callback data and command classification.

Callback data is ``<family>:<action>[:<arg>...]``. The family prefix selects
one of four handler families; anything unrecognised maps to ``Route.UNKNOWN``.
``confirm_payment`` is accepted as an exact alias from older keyboards.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

logger = logging.getLogger(__name__)


class Route(str, Enum):
    ADMIN_SETUP = "admin_setup"
    PAYMENT_SELECTION = "payment_selection"
    PAYMENT_CONFIRMATION = "payment_confirmation"
    MEMBERSHIP_MANAGEMENT = "membership_management"
    UNKNOWN = "unknown"


class Command(str, Enum):
    START = "start"
    SETUP = "setup"
    GROUPS = "groups"


ADMIN_COMMANDS = {Command.SETUP, Command.GROUPS}

CALLBACK_PREFIXES = {
    "setup": Route.ADMIN_SETUP,
    "sub": Route.PAYMENT_SELECTION,
    "pay": Route.PAYMENT_CONFIRMATION,
    "member": Route.MEMBERSHIP_MANAGEMENT,
}

LEGACY_CALLBACKS = {
    "confirm_payment": (Route.PAYMENT_CONFIRMATION, "legacy"),
}

_COMMAND_RE = re.compile(r"^/([A-Za-z0-9_]+)(?:@[A-Za-z0-9_]+)?(?:\s|$)")


@dataclass(frozen=True)
class CallbackRoute:
    route: Route
    action: str = ""
    args: Tuple[str, ...] = ()

    def int_arg(self, index: int) -> Optional[int]:
        try:
            return int(self.args[index])
        except (IndexError, ValueError):
            return None


def callback_data(family: str, action: str, *args) -> str:
    return ":".join([family, action, *(str(arg) for arg in args)])


def parse_callback(data: Optional[str]) -> CallbackRoute:
    if not data:
        return CallbackRoute(Route.UNKNOWN)

    if data in LEGACY_CALLBACKS:
        route, action = LEGACY_CALLBACKS[data]
        return CallbackRoute(route, action)

    parts = data.split(":")
    route = CALLBACK_PREFIXES.get(parts[0])
    if route is None or len(parts) < 2 or not parts[1]:
        logger.debug("Unrecognised callback data: %r", data)
        return CallbackRoute(Route.UNKNOWN)
    return CallbackRoute(route, parts[1], tuple(parts[2:]))


def classify_command(text: Optional[str]) -> Optional[Command]:
    if not text:
        return None
    match = _COMMAND_RE.match(text.strip())
    if not match:
        return None
    try:
        return Command(match.group(1).lower())
    except ValueError:
        return None


def is_command(text: Optional[str]) -> bool:
    return bool(text) and text.strip().startswith("/")
