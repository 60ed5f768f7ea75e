import logging
from typing import Iterable, Optional

from aiogram import Router
from aiogram.types import CallbackQuery, InlineKeyboardMarkup, Message
from aiogram.utils.keyboard import InlineKeyboardBuilder

from .errors import SetupBusyError, TransportError
from .events import (
    ButtonPress,
    InboundEvent,
    MembershipChange,
    MessageEvent,
    Receipt,
    from_callback,
    from_message,
)
from .models import Group, fallback_username
from .routing import (
    ADMIN_COMMANDS,
    CallbackRoute,
    Command,
    Route,
    callback_data,
    classify_command,
    is_command,
    parse_callback,
)
from .services import Services
from .states import SetupStep
from .texts import (
    ADMIN_DM_FALLBACK,
    ADMIN_WELCOME,
    EDIT_CONFIG_START,
    EMOJIS,
    ERROR_MESSAGES,
    GROUP_LIST_HEADER,
    GROUP_UNAVAILABLE,
    GROUP_WELCOME,
    HELP_PROMPT,
    NO_GROUPS_AVAILABLE,
    NO_GROUPS_FOUND,
    NO_RECEIPT_WARNING,
    PAYMENT_CONFIRMED,
    PAYMENT_REJECTED,
    RECEIPT_FORWARD_FAILED,
    RECEIPT_RECEIVED,
    SELECT_GROUP_FIRST,
    SETUP_CANCELLED,
    SETUP_COMPLETE,
    SETUP_EMPTY_ANSWER,
    SETUP_PROMPTS,
    USER_WELCOME,
    render_admin_payment_notification,
    render_admin_user_added,
    render_admin_user_rejected,
    render_config,
    render_group_status,
    render_member_list,
    render_payment_details,
    render_receipt_caption,
    render_setup_busy,
    render_setup_deferred,
    render_setup_start,
    render_user_added,
)

logger = logging.getLogger(__name__)

SUBSCRIBE_KEYWORDS = ("subscribe", "payment", "join")


# Keyboards


def kb_admin_groups(groups: Iterable[Group]) -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    for group in groups:
        marker = EMOJIS["done"] if group.is_configured else EMOJIS["setup"]
        b.button(text=f"{marker} {group.display_name}", callback_data=callback_data("setup", "view", group.group_id))
    b.button(text="🔄 Refresh", callback_data="setup:refresh")
    b.adjust(1)
    return b.as_markup()


def kb_group_manage(group: Group) -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    if group.is_configured:
        b.button(text="✏️ Edit configuration", callback_data=callback_data("setup", "edit", group.group_id))
    else:
        b.button(text="🚀 Start setup", callback_data=callback_data("setup", "start", group.group_id))
    if group.in_setup:
        b.button(text="✖️ Cancel setup", callback_data=callback_data("setup", "cancel", group.group_id))
    b.button(text=f"{EMOJIS['group']} Members", callback_data=callback_data("member", "list", group.group_id))
    b.button(text=f"{EMOJIS['back']} Back", callback_data="setup:groups")
    b.adjust(1)
    return b.as_markup()


def kb_confirm_edit(group_id: int) -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    b.button(text="✅ Yes, edit", callback_data=callback_data("setup", "edit_ok", group_id))
    b.button(text=f"{EMOJIS['back']} Back", callback_data=callback_data("setup", "view", group_id))
    b.adjust(2)
    return b.as_markup()


def kb_cancel_setup(group_id: int) -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    b.button(text="✖️ Cancel setup", callback_data=callback_data("setup", "cancel", group_id))
    return b.as_markup()


def kb_back_to_group(group_id: int) -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    b.button(text=f"{EMOJIS['back']} Back", callback_data=callback_data("setup", "view", group_id))
    return b.as_markup()


def kb_group_choices(groups: Iterable[Group]) -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    for group in groups:
        b.button(
            text=f"{group.display_name} ({group.config.price})",
            callback_data=callback_data("sub", "select", group.group_id),
        )
    b.adjust(1)
    return b.as_markup()


def kb_payment(group_id: int) -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    b.button(text="✅ I have made payment", callback_data=callback_data("pay", "confirm", group_id))
    b.button(text=f"{EMOJIS['back']} Back to groups", callback_data="sub:back")
    b.adjust(1)
    return b.as_markup()


def kb_admin_payment(user_id: int, group_id: int) -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    b.button(text="✅ User added", callback_data=callback_data("member", "added", user_id, group_id))
    b.button(text="❌ Reject", callback_data=callback_data("member", "rejected", user_id, group_id))
    b.adjust(2)
    return b.as_markup()


# Delivery helpers


async def _safe_send(services: Services, chat_id: int, text: str, reply_markup=None) -> bool:
    try:
        await services.transport.send_message(chat_id, text, reply_markup=reply_markup)
        return True
    except TransportError as exc:
        logger.warning("Failed to message %s: %s", chat_id, exc)
        return False


async def _answer(services: Services, event: ButtonPress, text: Optional[str] = None, show_alert: bool = False) -> None:
    try:
        await services.transport.answer_callback(event.callback_id, text, show_alert=show_alert)
    except TransportError as exc:
        logger.warning("Failed to answer callback %s: %s", event.callback_id, exc)


async def _edit(services: Services, event: ButtonPress, text: str, reply_markup=None) -> None:
    chat_id = event.chat_id if event.chat_id is not None else event.sender.user_id
    try:
        await services.transport.edit_message(chat_id, event.message_id, text, reply_markup=reply_markup)
    except TransportError as exc:
        logger.error("Failed to update message in %s: %s", chat_id, exc)


async def _send_prompt(services: Services, admin_id: int, group: Group, step: SetupStep) -> None:
    await services.transport.send_message(admin_id, SETUP_PROMPTS[step], reply_markup=kb_cancel_setup(group.group_id))


# Dispatch


async def handle_inbound(event: InboundEvent, services: Services) -> None:
    if isinstance(event, MessageEvent):
        await handle_message(event, services)
    elif isinstance(event, MembershipChange):
        await handle_membership_change(event, services)
    elif isinstance(event, ButtonPress):
        await handle_button(event, services)
    else:
        logger.warning("Ignoring unsupported inbound event: %r", event)


async def on_message(msg: Message, services: Services, inbound: Optional[InboundEvent] = None):
    await handle_inbound(inbound or from_message(msg), services)


async def on_callback(cb: CallbackQuery, services: Services, inbound: Optional[InboundEvent] = None):
    await handle_inbound(inbound or from_callback(cb), services)


def build_router() -> Router:
    """A router can join only one dispatcher, so each dispatcher gets its own."""
    fresh = Router()
    fresh.message.register(on_message)
    fresh.callback_query.register(on_callback)
    return fresh


router = build_router()


# Messages


async def handle_message(event: MessageEvent, services: Services) -> None:
    if not event.is_private or event.sender is None:
        return

    user_id = event.sender.user_id
    command = classify_command(event.text)

    if command in ADMIN_COMMANDS:
        if not services.db.is_admin(user_id):
            logger.info("Non-admin %s tried /%s", user_id, command.value)
            await services.transport.send_message(user_id, ERROR_MESSAGES["access_denied"])
            return
        if command is Command.SETUP:
            await cmd_setup(user_id, services)
        else:
            await show_admin_groups(user_id, services)
        return

    if command is Command.START:
        await cmd_start(user_id, services)
        return

    if is_command(event.text):
        await services.transport.send_message(user_id, HELP_PROMPT)
        return

    pending = services.setup.pending_for(user_id)
    if pending is not None:
        if event.receipt is not None:
            logger.info("Ignoring attachment from admin %s during setup of group %s", user_id, pending.group_id)
            return
        await handle_setup_reply(user_id, pending, event.text, services)
        return

    receipt = event.receipt
    if receipt is not None:
        await handle_receipt(user_id, receipt, services)
        return

    lowered = event.text.lower()
    if any(keyword in lowered for keyword in SUBSCRIBE_KEYWORDS):
        await show_subscription_options(user_id, services)
        return

    await services.transport.send_message(user_id, HELP_PROMPT)


async def cmd_start(user_id: int, services: Services) -> None:
    if services.db.is_admin(user_id):
        await services.transport.send_message(user_id, ADMIN_WELCOME)
        logger.info("Admin %s started the bot", user_id)
        return
    await show_subscription_options(user_id, services)
    logger.info("User %s started the bot", user_id)


async def cmd_setup(admin_id: int, services: Services) -> None:
    pending = services.setup.pending_for(admin_id)
    if pending is not None and pending.setup_step is not None:
        await services.transport.send_message(admin_id, render_setup_start(pending.display_name))
        await _send_prompt(services, admin_id, pending, pending.setup_step)
        return
    await show_admin_groups(admin_id, services)


async def show_admin_groups(admin_id: int, services: Services) -> None:
    groups = services.db.get_groups_by_admin(admin_id)
    if not groups:
        await services.transport.send_message(admin_id, NO_GROUPS_FOUND)
        return
    await services.transport.send_message(admin_id, GROUP_LIST_HEADER, reply_markup=kb_admin_groups(groups))


async def show_subscription_options(user_id: int, services: Services) -> None:
    groups = services.db.get_configured_groups()
    if not groups:
        await services.transport.send_message(user_id, NO_GROUPS_AVAILABLE)
        return
    await services.transport.send_message(user_id, USER_WELCOME, reply_markup=kb_group_choices(groups))


async def handle_setup_reply(admin_id: int, group: Group, text: str, services: Services) -> None:
    if group.setup_step is None:
        logger.warning(
            "Group %s has unknown setup step %r; ignoring reply from %s",
            group.group_id,
            group.raw_setup_step,
            admin_id,
        )
        return
    if not (text or "").strip():
        await services.transport.send_message(admin_id, SETUP_EMPTY_ANSWER)
        await _send_prompt(services, admin_id, group, group.setup_step)
        return

    progress = services.setup.answer(group.group_id, text)
    if progress is None:
        return
    if progress.completed:
        await services.transport.send_message(
            admin_id,
            f"{SETUP_COMPLETE}\n\n{render_config(progress.group)}",
            reply_markup=kb_group_manage(progress.group),
        )
        return
    await _send_prompt(services, admin_id, progress.group, progress.next_step)


async def handle_receipt(user_id: int, receipt: Receipt, services: Services) -> None:
    session = services.sessions.attach_receipt(user_id, receipt)
    if session is None:
        await services.transport.send_message(user_id, SELECT_GROUP_FIRST)
        return
    logger.info("Receipt (%s) stored for user %s, group %s", receipt.kind, user_id, session.selected_group_id)
    await services.transport.send_message(
        user_id,
        RECEIPT_RECEIVED,
        reply_markup=kb_payment(session.selected_group_id),
    )


# Group membership changes


async def handle_membership_change(event: MembershipChange, services: Services) -> None:
    if event.chat_type not in {"group", "supergroup"}:
        return
    bot_id = services.transport.bot_id
    if bot_id in event.joined_user_ids:
        await on_bot_added(event, services)
    elif event.left_user_id == bot_id:
        services.db.delete_group(event.chat_id)
        logger.info("Bot removed from group %s", event.chat_id)


async def on_bot_added(event: MembershipChange, services: Services) -> None:
    if event.actor is None:
        logger.warning("Bot added to %s by an unknown user; ignoring", event.chat_id)
        return

    group_id = event.chat_id
    if not services.db.create_group(group_id, event.actor.user_id, event.chat_title):
        services.db.set_group_name(group_id, event.chat_title)
        logger.info("Bot re-added to known group %s", group_id)
    group = services.db.get_group(group_id)
    admin_id = group.admin_id

    started = deferred = False
    if not group.is_configured and not group.in_setup:
        try:
            services.setup.begin(group_id, admin_id)
            started = True
        except SetupBusyError as exc:
            logger.info(
                "Admin %s busy with group %s; deferring setup of %s",
                admin_id,
                exc.pending_group.group_id,
                group_id,
            )
            deferred = True

    await _safe_send(services, group_id, GROUP_WELCOME)

    if not await _safe_send(services, admin_id, ADMIN_WELCOME):
        await _safe_send(services, group_id, ADMIN_DM_FALLBACK)
        return

    if deferred:
        await _safe_send(services, admin_id, render_setup_deferred(group.display_name))
    elif started:
        await _safe_send(services, admin_id, render_setup_start(group.display_name))
        await _safe_send(services, admin_id, SETUP_PROMPTS[SetupStep.first()], reply_markup=kb_cancel_setup(group_id))


# Buttons


async def handle_button(event: ButtonPress, services: Services) -> None:
    route = parse_callback(event.data)
    if route.route is Route.ADMIN_SETUP:
        await handle_setup_button(event, route, services)
    elif route.route is Route.PAYMENT_SELECTION:
        await handle_selection_button(event, route, services)
    elif route.route is Route.PAYMENT_CONFIRMATION:
        await handle_payment_confirmation(event, route, services)
    elif route.route is Route.MEMBERSHIP_MANAGEMENT:
        await handle_membership_button(event, route, services)
    else:
        logger.warning("Unhandled callback: %s", event.data)
        await _answer(services, event, ERROR_MESSAGES["unknown_action"])


async def _require_admin(event: ButtonPress, services: Services) -> bool:
    if services.db.is_admin(event.sender.user_id):
        return True
    logger.info("Non-admin %s pressed %s", event.sender.user_id, event.data)
    await _answer(services, event, ERROR_MESSAGES["access_denied"], show_alert=True)
    return False


async def _owned_group(event: ButtonPress, group_id: Optional[int], services: Services) -> Optional[Group]:
    if group_id is None:
        logger.warning("Malformed callback data: %s", event.data)
        await _answer(services, event, ERROR_MESSAGES["invalid_request"])
        return None
    group = services.db.get_group(group_id)
    if group is None or group.admin_id != event.sender.user_id:
        await _answer(services, event, ERROR_MESSAGES["access_denied"], show_alert=True)
        return None
    return group


async def _begin_setup(event: ButtonPress, group: Group, services: Services) -> None:
    admin_id = event.sender.user_id
    try:
        step = services.setup.begin(group.group_id, admin_id)
    except SetupBusyError as exc:
        await _answer(services, event)
        await services.transport.send_message(admin_id, render_setup_busy(exc.pending_group.display_name))
        return
    await _edit(services, event, render_setup_start(group.display_name))
    await _answer(services, event)
    await _send_prompt(services, admin_id, group, step)


async def handle_setup_button(event: ButtonPress, route: CallbackRoute, services: Services) -> None:
    if not await _require_admin(event, services):
        return

    admin_id = event.sender.user_id
    if route.action in {"groups", "refresh"}:
        groups = services.db.get_groups_by_admin(admin_id)
        if groups:
            await _edit(services, event, GROUP_LIST_HEADER, reply_markup=kb_admin_groups(groups))
        else:
            await _edit(services, event, NO_GROUPS_FOUND)
        await _answer(services, event, "Updated" if route.action == "refresh" else None)
        return

    group = await _owned_group(event, route.int_arg(0), services)
    if group is None:
        return

    if route.action in {"start", "edit_ok"}:
        await _begin_setup(event, group, services)
    elif route.action == "view":
        members = services.subscriptions.list_memberships(group.group_id)
        await _edit(services, event, render_group_status(group, len(members)), reply_markup=kb_group_manage(group))
        await _answer(services, event)
    elif route.action == "edit":
        await _edit(
            services,
            event,
            f"{EDIT_CONFIG_START}\n\n{render_config(group)}",
            reply_markup=kb_confirm_edit(group.group_id),
        )
        await _answer(services, event)
    elif route.action == "cancel":
        group = services.setup.cancel(group.group_id) or group
        members = services.subscriptions.list_memberships(group.group_id)
        await _edit(
            services,
            event,
            f"{SETUP_CANCELLED}\n\n{render_group_status(group, len(members))}",
            reply_markup=kb_group_manage(group),
        )
        await _answer(services, event)
    else:
        logger.warning("Unhandled setup action: %s", event.data)
        await _answer(services, event, ERROR_MESSAGES["unknown_action"])


async def handle_selection_button(event: ButtonPress, route: CallbackRoute, services: Services) -> None:
    user_id = event.sender.user_id

    if route.action == "back":
        services.sessions.clear(user_id)
        groups = services.db.get_configured_groups()
        if groups:
            await _edit(services, event, USER_WELCOME, reply_markup=kb_group_choices(groups))
        else:
            await _edit(services, event, NO_GROUPS_AVAILABLE)
        await _answer(services, event)
        return

    if route.action != "select":
        await _answer(services, event, ERROR_MESSAGES["unknown_action"])
        return

    group_id = route.int_arg(0)
    if group_id is None:
        await _answer(services, event, ERROR_MESSAGES["invalid_request"])
        return
    group = services.db.get_group(group_id)
    if group is None or not group.is_configured:
        await _answer(services, event, GROUP_UNAVAILABLE, show_alert=True)
        return

    services.sessions.select(user_id, group_id)
    await _edit(
        services,
        event,
        render_payment_details(group, services.duration),
        reply_markup=kb_payment(group_id),
    )
    await _answer(services, event)


async def handle_payment_confirmation(event: ButtonPress, route: CallbackRoute, services: Services) -> None:
    sender = event.sender
    session = services.sessions.get(sender.user_id)

    if route.action == "legacy":
        group_id = session.selected_group_id
    elif route.action == "confirm":
        group_id = route.int_arg(0)
    else:
        await _answer(services, event, ERROR_MESSAGES["unknown_action"])
        return

    if group_id is None:
        await _answer(services, event, "Please select a group first.", show_alert=True)
        return
    group = services.db.get_group(group_id)
    if group is None or not group.is_configured:
        await _answer(services, event, GROUP_UNAVAILABLE, show_alert=True)
        return

    receipt = session.receipt if session.selected_group_id == group_id else None

    try:
        await services.transport.send_message(
            group.admin_id,
            render_admin_payment_notification(sender, group, receipt is not None),
            reply_markup=kb_admin_payment(sender.user_id, group_id),
        )
    except TransportError as exc:
        logger.error("Could not notify admin %s of payment from %s: %s", group.admin_id, sender.user_id, exc)
        await _answer(services, event)
        await _safe_send(services, sender.user_id, ERROR_MESSAGES["generic"])
        return

    if receipt is None:
        await _safe_send(services, group.admin_id, NO_RECEIPT_WARNING)
    else:
        caption = render_receipt_caption(sender, group)
        try:
            if receipt.kind == "photo":
                await services.transport.send_photo(group.admin_id, receipt.file_id, caption)
            else:
                await services.transport.send_document(group.admin_id, receipt.file_id, caption)
        except TransportError as exc:
            logger.warning("Could not forward receipt from %s: %s", sender.user_id, exc)
            await _safe_send(services, group.admin_id, RECEIPT_FORWARD_FAILED)

    logger.info("Payment submitted: user=%s group=%s receipt=%s", sender.user_id, group_id, receipt is not None)
    await _edit(services, event, PAYMENT_CONFIRMED)
    await _answer(services, event)
    services.sessions.clear(sender.user_id)


async def handle_membership_button(event: ButtonPress, route: CallbackRoute, services: Services) -> None:
    if not await _require_admin(event, services):
        return

    if route.action == "list":
        group = await _owned_group(event, route.int_arg(0), services)
        if group is None:
            return
        members = services.subscriptions.list_memberships(group.group_id)
        await _edit(services, event, render_member_list(group, members), reply_markup=kb_back_to_group(group.group_id))
        await _answer(services, event)
        return

    if route.action not in {"added", "rejected"}:
        await _answer(services, event, ERROR_MESSAGES["unknown_action"])
        return

    user_id = route.int_arg(0)
    if user_id is None:
        await _answer(services, event, ERROR_MESSAGES["invalid_request"])
        return
    group = await _owned_group(event, route.int_arg(1), services)
    if group is None:
        return

    if route.action == "rejected":
        await _safe_send(services, user_id, PAYMENT_REJECTED)
        await _edit(services, event, render_admin_user_rejected(user_id))
        await _answer(services, event, "Rejected")
        logger.info("Payment rejected: user=%s group=%s", user_id, group.group_id)
        return

    try:
        username = (await services.transport.get_profile(user_id)).display_name
    except TransportError as exc:
        logger.warning("Could not look up user %s: %s", user_id, exc)
        username = fallback_username(user_id)

    membership = services.subscriptions.grant_membership(group.group_id, user_id, username)
    if membership is None:
        await _answer(services, event, GROUP_UNAVAILABLE, show_alert=True)
        return

    await _safe_send(services, user_id, render_user_added(group, services.duration))
    await _edit(services, event, render_admin_user_added(username, membership))
    await _answer(services, event, "User added")
