import html
from datetime import timedelta
from typing import Dict, Iterable

from .states import SetupStep

EMOJIS = {
    "bot": "🤖",
    "admin": "👋",
    "setup": "📝",
    "done": "✅",
    "warning": "⚠️",
    "money": "💰",
    "card": "💳",
    "party": "🎉",
    "clock": "⏰",
    "error": "❌",
    "group": "👥",
    "back": "↩️",
    "receipt": "🧾",
    "help": "🆘",
}


def escape(value) -> str:
    return html.escape(str(value), quote=False)


def format_duration(duration: timedelta) -> str:
    seconds = int(duration.total_seconds())
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds >= size and seconds % size == 0:
            count = seconds // size
            return f"{count} {unit}{'' if count == 1 else 's'}"
    return f"{seconds} second{'' if seconds == 1 else 's'}"


GROUP_WELCOME = (
    f"{EMOJIS['bot']} <b>Bot added successfully!</b>\n\n"
    f"{EMOJIS['setup']} <b>Setup required</b>\n"
    "The admin needs to configure payment details before users can subscribe.\n\n"
    "👤 Please send me a private message to complete the setup."
)

ADMIN_WELCOME = (
    f"{EMOJIS['admin']} <b>Welcome Admin!</b>\n\n"
    "Let's set up your subscription service. I'll need the following information:\n\n"
    "1️⃣ Bank Name\n"
    "2️⃣ Account Name\n"
    "3️⃣ Account Number\n"
    "4️⃣ Subscription Price\n\n"
    "Use /setup to configure a group and /groups to manage the groups you run."
)

ADMIN_DM_FALLBACK = (
    f"{EMOJIS['warning']} I couldn't message the admin privately.\n"
    "Admin: please open a private chat with me and send /setup."
)

SETUP_PROMPTS: Dict[SetupStep, str] = {
    SetupStep.BANK_NAME: f"{EMOJIS['setup']} <b>Step 1/4</b>\n\nPlease enter the <b>bank name</b>:",
    SetupStep.ACCOUNT_NAME: f"{EMOJIS['setup']} <b>Step 2/4</b>\n\nPlease enter the <b>account name</b>:",
    SetupStep.ACCOUNT_NUMBER: f"{EMOJIS['setup']} <b>Step 3/4</b>\n\nPlease enter the <b>account number</b>:",
    SetupStep.PRICE: f"{EMOJIS['setup']} <b>Step 4/4</b>\n\nPlease enter the <b>subscription price</b> (e.g. $10):",
}

SETUP_EMPTY_ANSWER = f"{EMOJIS['warning']} Please send a non-empty answer."

SETUP_COMPLETE = (
    f"{EMOJIS['done']} <b>Setup Complete!</b>\n\n"
    "Your bot is now configured and ready to accept subscriptions.\n\n"
    "Users can now message me to subscribe to your group."
)

SETUP_BUSY = (
    f"{EMOJIS['warning']} You are already setting up <b>{{group}}</b>.\n"
    "Finish or cancel that setup before starting another."
)

SETUP_DEFERRED = (
    f"{EMOJIS['warning']} I was added to <b>{{group}}</b>, but you are still setting up another group.\n"
    "Finish that first, then use /setup to configure this one."
)

SETUP_CANCELLED = f"{EMOJIS['back']} Setup cancelled."

EDIT_CONFIG_START = (
    f"{EMOJIS['warning']} <b>Edit configuration</b>\n\n"
    "This will walk you through all four payment details again. "
    "Existing members are not affected."
)

NO_GROUPS_FOUND = (
    f"{EMOJIS['group']} You don't manage any groups yet.\n\n"
    "Add me to a group as an administrator to get started."
)

GROUP_LIST_HEADER = f"{EMOJIS['group']} <b>Your groups</b>\n\nChoose a group to manage:"

USER_WELCOME = (
    f"{EMOJIS['money']} <b>Subscribe to a group</b>\n\n"
    "Choose the group you want to join:"
)

NO_GROUPS_AVAILABLE = (
    f"{EMOJIS['warning']} <b>No groups available</b>\n\n"
    "There are no groups accepting subscriptions right now. Please check back later."
)

GROUP_UNAVAILABLE = "This group is not accepting subscriptions yet."

SELECT_GROUP_FIRST = (
    f"{EMOJIS['warning']} Please choose a group first.\n\n"
    "Send /start to see the available groups."
)

RECEIPT_RECEIVED = (
    f"{EMOJIS['receipt']} <b>Receipt received</b>\n\n"
    "Tap the button below to submit your payment for verification."
)

PAYMENT_CONFIRMED = (
    f"{EMOJIS['done']} <b>Payment confirmation received</b>\n\n"
    "Your payment has been submitted for verification. "
    "The admin will add you to the group shortly.\n\n"
    "Please wait for confirmation."
)

NO_RECEIPT_WARNING = f"{EMOJIS['warning']} The user did not upload a receipt. Verify the payment manually."

RECEIPT_FORWARD_FAILED = f"{EMOJIS['warning']} The user uploaded a receipt but I couldn't forward it."

USER_EXPIRED = (
    f"{EMOJIS['clock']} <b>Subscription expired</b>\n\n"
    "Your subscription has ended and you have been removed from the group.\n\n"
    "Contact the admin to renew your subscription."
)

PAYMENT_REJECTED = (
    f"{EMOJIS['error']} <b>Payment not confirmed</b>\n\n"
    "The admin could not verify your payment. Please contact the admin if you think this is a mistake."
)

HELP_PROMPT = (
    f"{EMOJIS['help']} I can help you subscribe to a group.\n\n"
    "Send /start to see the available groups, or type <i>subscribe</i>."
)

ERROR_MESSAGES = {
    "generic": f"{EMOJIS['warning']} Something went wrong. Please try again later.",
    "access_denied": f"{EMOJIS['error']} Access denied.",
    "invalid_request": "Invalid request.",
    "unknown_action": "Unknown action.",
    "config_missing": (
        f"{EMOJIS['warning']} <b>Configuration error</b>\n"
        "BOT_TOKEN and WEBHOOK_URL must be set. Update your .env file."
    ),
}

BOT_COMMANDS = [
    ("start", "Subscribe to a group"),
    ("setup", "Configure payment details (admins)"),
    ("groups", "Manage your groups (admins)"),
]


def render_setup_busy(group_name: str) -> str:
    return SETUP_BUSY.format(group=escape(group_name))


def render_setup_deferred(group_name: str) -> str:
    return SETUP_DEFERRED.format(group=escape(group_name))


def render_setup_start(group_name: str) -> str:
    return (
        f"{EMOJIS['setup']} <b>Setting up {escape(group_name)}</b>\n\n"
        "Answer four quick questions. Send each answer as a normal message."
    )


def render_config(group) -> str:
    config = group.config
    return (
        f"{EMOJIS['card']} <b>{escape(group.display_name)}</b>\n\n"
        f"🏦 Bank: {escape(config.bank_name or '-')}\n"
        f"👤 Account name: {escape(config.account_name or '-')}\n"
        f"🔢 Account number: <code>{escape(config.account_number or '-')}</code>\n"
        f"💵 Price: {escape(config.price or '-')}"
    )


def render_group_status(group, member_count: int) -> str:
    if group.is_configured:
        status = f"{EMOJIS['done']} Ready"
    elif group.in_setup:
        status = f"{EMOJIS['setup']} Setup in progress"
    else:
        status = f"{EMOJIS['warning']} Setup required"
    return f"{render_config(group)}\n\nStatus: {status}\nActive members: {member_count}"


def render_payment_details(group, duration: timedelta) -> str:
    return (
        f"{EMOJIS['money']} <b>Subscription payment details</b>\n\n"
        f"{render_config(group)}\n\n"
        f"Access lasts <b>{format_duration(duration)}</b>.\n\n"
        "Make the payment, upload a photo or file of your receipt here, "
        "then tap <b>I have made payment</b>."
    )


def render_admin_payment_notification(sender, group, has_receipt: bool) -> str:
    full_name = escape(sender.full_name) if sender.full_name else "-"
    return (
        f"{EMOJIS['card']} <b>New payment received</b>\n\n"
        f"Group: <b>{escape(group.display_name)}</b>\n"
        f"User: {escape(sender.display_name)} ({full_name})\n"
        f"User ID: <code>{sender.user_id}</code>\n"
        f"Price: {escape(group.config.price)}\n"
        f"Receipt: {'attached below' if has_receipt else 'not provided'}\n\n"
        "Add the user to the group, then tap <b>User added</b>."
    )


def render_receipt_caption(sender, group) -> str:
    return f"{EMOJIS['receipt']} Receipt from {escape(sender.display_name)} for {escape(group.display_name)}"


def render_user_added(group, duration: timedelta) -> str:
    return (
        f"{EMOJIS['party']} <b>Welcome to {escape(group.display_name)}!</b>\n\n"
        f"Your {format_duration(duration)} subscription is now active. "
        f"You will be removed automatically after {format_duration(duration)}.\n\n"
        "Enjoy your access!"
    )


def render_admin_user_added(username: str, membership) -> str:
    return (
        f"{EMOJIS['done']} {escape(username)} has been granted access until "
        f"{membership.expiry_date.strftime('%Y-%m-%d %H:%M UTC')}."
    )


def render_admin_user_rejected(user_id: int) -> str:
    return f"{EMOJIS['error']} Payment from user <code>{user_id}</code> was rejected."


def render_member_list(group, members: Iterable) -> str:
    members = list(members)
    if not members:
        return f"{EMOJIS['group']} <b>{escape(group.display_name)}</b>\n\nNo active members."
    lines = [f"{EMOJIS['group']} <b>{escape(group.display_name)}</b> ({len(members)} members)\n"]
    for member in members:
        lines.append(
            f"• {escape(member.username)} <code>{member.user_id}</code> "
            f"until {member.expiry_date.strftime('%Y-%m-%d %H:%M')}"
        )
    return "\n".join(lines)
