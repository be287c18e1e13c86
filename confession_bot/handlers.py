import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

from aiogram import Bot, Dispatcher, F, Router, types
from aiogram.dispatcher.middlewares.base import BaseMiddleware
from aiogram.enums import ChatType
from aiogram.filters import BaseFilter, Command, CommandObject

from .config import Settings
from .errors import BlockedUserError
from .keyboards import BTN_PROFILE, BTN_PROMOTE, BTN_RULES, BTN_SEND_CONFESSION, BTN_SETTINGS
from .workflow import ConfessionBot

logger = logging.getLogger(__name__)

BLOCKED_ALERT = "❌ Your account has been blocked by admin."


# --- Middleware ---
class BlockUserMiddleware(BaseMiddleware):
    """Registers first-time users and stops every update from a blocked one.

    The user document is handed to handlers as ``account``.
    """

    async def __call__(self, handler: Callable[[types.TelegramObject, Dict[str, Any]], Awaitable[Any]],
                       event: types.TelegramObject, data: Dict[str, Any]) -> Any:
        user = data.get('event_from_user')
        if not user:
            return await handler(event, data)

        relay: ConfessionBot = data['relay']
        try:
            data['account'] = await relay.users.ensure_active(user.id, user.first_name, user.last_name)
        except BlockedUserError as e:
            logger.info(f"Dropped update from blocked user {user.id}")
            if isinstance(event, types.CallbackQuery):
                await relay.transport.answer_callback(event.id, BLOCKED_ALERT, show_alert=True)
            elif isinstance(event, types.Message):
                await relay.send(event.chat.id, relay.block_notice(str(e)))
            return None

        if isinstance(event, types.CallbackQuery):
            logger.info(f"📨 Callback received: {event.data} from user {user.id}")
        return await handler(event, data)


# --- Filters ---
class HasPendingState(BaseFilter):
    """Matches while the sender has a stored conversation state, passing it on as ``conversation_state``."""

    async def __call__(self, message: types.Message, relay: ConfessionBot) -> Union[bool, Dict[str, Any]]:
        if message.from_user is None:
            return False
        state = await relay.states.get(message.from_user.id)
        if state is None:
            return False
        return {'conversation_state': state}


def _origin(callback_query: types.CallbackQuery) -> Tuple[int, Optional[int]]:
    message = callback_query.message
    if message is None:
        return callback_query.from_user.id, None
    return message.chat.id, message.message_id


def _suffix(callback_query: types.CallbackQuery, prefix: str) -> str:
    return callback_query.data[len(prefix):]


def create_router() -> Router:
    router = Router(name="confessions")
    router.message.filter(F.chat.type == ChatType.PRIVATE)
    router.message.middleware(BlockUserMiddleware())
    router.callback_query.middleware(BlockUserMiddleware())

    # --- Text ---
    # Registered first: a pending state takes any text, commands included
    @router.message(F.text, HasPendingState())
    async def on_pending_state(message: types.Message, relay: ConfessionBot, conversation_state):
        await relay.consume_state(message.chat.id, message.from_user.id, conversation_state, message.text)

    @router.message(Command("start"))
    async def on_start(message: types.Message, relay: ConfessionBot, account: dict, command: CommandObject):
        await relay.handle_start(message.chat.id, message.from_user.id, account, command.args or "")

    @router.message(Command("admin"))
    async def on_admin(message: types.Message, relay: ConfessionBot):
        await relay.admin_panel(message.chat.id, message.from_user.id)

    @router.message(Command("block"))
    async def on_block(message: types.Message, relay: ConfessionBot, command: CommandObject):
        await relay.block_user(message.chat.id, message.from_user.id, command.args or "", active=False)

    @router.message(Command("unblock"))
    async def on_unblock(message: types.Message, relay: ConfessionBot, command: CommandObject):
        await relay.block_user(message.chat.id, message.from_user.id, command.args or "", active=True)

    @router.message(F.text == BTN_SEND_CONFESSION)
    async def on_send_confession(message: types.Message, relay: ConfessionBot):
        await relay.start_confession(message.chat.id, message.from_user.id)

    @router.message(F.text == BTN_PROFILE)
    async def on_profile(message: types.Message, relay: ConfessionBot):
        await relay.show_profile(message.chat.id, message.from_user.id)

    @router.message(F.text == BTN_PROMOTE)
    async def on_promote(message: types.Message, relay: ConfessionBot):
        await relay.show_promote(message.chat.id)

    @router.message(F.text == BTN_SETTINGS)
    async def on_settings(message: types.Message, relay: ConfessionBot):
        await relay.show_settings(message.chat.id, message.from_user.id)

    @router.message(F.text == BTN_RULES)
    async def on_rules(message: types.Message, relay: ConfessionBot):
        await relay.show_rules(message.chat.id)

    @router.message(F.text)
    async def on_other_text(message: types.Message, relay: ConfessionBot):
        await relay.show_main_menu(message.chat.id, message.from_user.id)

    # --- Callbacks ---
    @router.callback_query(F.data.startswith("approve_"))
    async def on_approve(callback_query: types.CallbackQuery, relay: ConfessionBot):
        chat_id, message_id = _origin(callback_query)
        await relay.approve_from_review(callback_query.id, chat_id, callback_query.from_user.id,
                                        message_id, _suffix(callback_query, "approve_"))

    @router.callback_query(F.data.startswith("reject_"))
    async def on_reject(callback_query: types.CallbackQuery, relay: ConfessionBot):
        chat_id, _ = _origin(callback_query)
        await relay.begin_reject_from_review(callback_query.id, chat_id, callback_query.from_user.id,
                                             _suffix(callback_query, "reject_"))

    @router.callback_query(F.data.startswith("add_comment_"))
    async def on_add_comment(callback_query: types.CallbackQuery, relay: ConfessionBot):
        chat_id, _ = _origin(callback_query)
        await relay.begin_comment(callback_query.id, chat_id, callback_query.from_user.id,
                                  _suffix(callback_query, "add_comment_"))

    @router.callback_query(F.data.startswith("comments_page_"))
    async def on_comments_page(callback_query: types.CallbackQuery, relay: ConfessionBot):
        chat_id, _ = _origin(callback_query)
        await relay.show_comments_page_from_button(callback_query.id, chat_id,
                                                   _suffix(callback_query, "comments_page_"))

    @router.callback_query(F.data.startswith("toggle_notify_"))
    async def on_toggle_notify(callback_query: types.CallbackQuery, relay: ConfessionBot):
        chat_id, message_id = _origin(callback_query)
        await relay.toggle_notification(callback_query.id, chat_id, callback_query.from_user.id,
                                        message_id, _suffix(callback_query, "toggle_notify_"))

    @router.callback_query(F.data == "send_confession")
    async def on_send_confession_button(callback_query: types.CallbackQuery, relay: ConfessionBot):
        chat_id, _ = _origin(callback_query)
        await relay.start_confession(chat_id, callback_query.from_user.id)
        await relay.transport.answer_callback(callback_query.id)

    @router.callback_query(F.data == "back_to_menu")
    async def on_back_to_menu(callback_query: types.CallbackQuery, relay: ConfessionBot):
        chat_id, _ = _origin(callback_query)
        await relay.show_main_menu(chat_id, callback_query.from_user.id)
        await relay.transport.answer_callback(callback_query.id)

    @router.callback_query(F.data == "promote_bot")
    async def on_promote_button(callback_query: types.CallbackQuery, relay: ConfessionBot):
        chat_id, _ = _origin(callback_query)
        await relay.show_promote(chat_id)
        await relay.transport.answer_callback(callback_query.id)

    @router.callback_query(F.data == "change_username")
    async def on_change_username(callback_query: types.CallbackQuery, relay: ConfessionBot):
        chat_id, _ = _origin(callback_query)
        await relay.change_username(callback_query.id, chat_id, callback_query.from_user.id)

    # "current_page" and anything unknown just stop the button spinner
    @router.callback_query()
    async def on_other_callback(callback_query: types.CallbackQuery, relay: ConfessionBot):
        await relay.transport.answer_callback(callback_query.id)

    # --- Errors ---
    @router.errors()
    async def on_error(event: types.ErrorEvent, relay: ConfessionBot):
        update = event.update
        logger.error(f"Error handling update {update.update_id}: {event.exception}", exc_info=event.exception)
        if update.callback_query is not None:
            await relay.transport.answer_callback(update.callback_query.id, "❌ Error processing request")
        elif update.message is not None:
            await relay.send(update.message.chat.id, "❌ Something went wrong. Please try again.")

    return router


def create_dispatcher(relay: ConfessionBot) -> Dispatcher:
    dp = Dispatcher()
    dp["relay"] = relay
    dp.include_router(create_router())
    return dp


async def set_bot_commands(bot: Bot, settings: Settings):
    """Set bot commands for users and admins"""
    user_commands = [
        types.BotCommand(command="start", description="Start / set your display name"),
    ]
    admin_commands = user_commands + [
        types.BotCommand(command="admin", description="Admin panel"),
        types.BotCommand(command="block", description="Block a user"),
        types.BotCommand(command="unblock", description="Unblock a user"),
    ]

    await bot.set_my_commands(user_commands)
    for admin_id in settings.admin_ids:
        try:
            await bot.set_my_commands(
                admin_commands,
                scope=types.BotCommandScopeChat(chat_id=admin_id)
            )
        except Exception as e:
            logger.warning(f"Could not set admin commands for {admin_id}: {e}")
