"""Exception types shared across the bot."""


class GroupSubError(Exception):
    """Base class for all bot errors."""


class StoreError(GroupSubError):
    """The persistent store could not complete an operation."""


class TransportError(GroupSubError):
    """A Telegram API call failed."""

    def __init__(self, message: str, method: str = ""):
        super().__init__(message)
        self.method = method


class MemberNotFoundError(TransportError):
    """The target user or chat no longer exists from the bot's point of view."""


class PermissionDeniedError(TransportError):
    """The bot lacks the rights required for the call."""


class SetupBusyError(GroupSubError):
    """The admin already has another group mid-setup."""

    def __init__(self, pending_group):
        super().__init__(f"Setup already pending for group {pending_group.group_id}")
        self.pending_group = pending_group
