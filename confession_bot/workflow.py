"""Operations behind the chat interface.

``handlers.py`` routes each Telegram update to one of these methods. Every
method takes plain ids and text, talks to the pipeline components and replies
through the transport, turning ``ConfessionBotError`` into a user message.
"""
import logging
from datetime import datetime
from typing import Optional

from aiogram import html

from .comments import CommentPage, CommentThreads
from .config import Settings
from .errors import (AlreadyModeratedError, BlockedUserError, ConfessionBotError, NotFoundError,
                     PermissionDenied, RateLimitError, ValidationError)
from .keyboards import (after_submission_keyboard, comment_entry_keyboard, comments_page_keyboard,
                        main_menu_keyboard, profile_keyboard, promote_keyboard, settings_keyboard)
from .models import STATUS_PENDING
from .moderation import CONFESSIONS, ModerationPipeline
from .notifications import Notifier
from .ratelimit import CONFESSION_ACTION, Clock, RateLimiter, now_ms
from .reputation import level_for
from .sanitize import preview
from .sequence import SequenceGenerator
from .states import (AwaitingComment, AwaitingConfession, AwaitingRejectionReason, AwaitingUsername,
                     ConversationState, StateStore)
from .storage import DocumentStore
from .transport import Transport
from .users import NOTIFICATION_CATEGORIES, UserDirectory, has_display_name

logger = logging.getLogger(__name__)

USERNAME_PROMPT = "Enter your desired name (3-20 characters, letters/numbers/underscores only):"
CONFESSION_PROMPT = (
    "✍️ <b>Send Your Confession</b>\n\n"
    "Type your confession below (max 1000 characters):\n\n"
    "You can add hashtags like #love #study #funny"
)
RULES_TEXT = (
    "<b>📌 Rules</b>\n\n"
    "1. <b>Stay Relevant:</b> This space is for confessions, experiences and thoughts.\n"
    "2. <b>Be Respectful:</b> Sensitive topics are allowed but must be discussed with respect.\n"
    "3. <b>Privacy:</b> Do not share personal identifying information about yourself or others.\n"
    "4. <b>No Spam:</b> Avoid trolling or repeated submissions.\n\n"
    "<i>Every confession is reviewed by an admin before it is posted.</i>"
)
ENTRY_PREVIEW_LENGTH = 200
PAGE_PREVIEW_LENGTH = 150
COMMENT_DISPLAY_LENGTH = 500
ENTRY_COMMENT_COUNT = 3


class ConfessionBot:
    """Turns inbound chat events into pipeline operations and replies."""

    def __init__(self, settings: Settings, store: DocumentStore, transport: Transport,
                 clock: Clock = now_ms):
        self.settings = settings
        self.store = store
        self.transport = transport
        self.users = UserDirectory(store)
        self.states = StateStore(store)
        self.notifier = Notifier(transport, self.users)
        self.rate_limiter = RateLimiter(store, clock)
        self.sequence = SequenceGenerator(store)
        self.moderation = ModerationPipeline(
            store, settings, transport, self.users, self.notifier, self.states,
            self.sequence, self.rate_limiter, clock
        )
        self.comments = CommentThreads(store, self.users, self.notifier, clock)

    async def send(self, chat_id: int, text: str, reply_markup=None) -> Optional[int]:
        return await self.transport.send_message(chat_id, text, reply_markup=reply_markup)

    # --- Pending conversation state ---
    async def consume_state(self, chat_id: int, user_id: int, state: ConversationState, text: str) -> None:
        """Hand ``text`` to whatever the user's pending state is waiting for."""
        if isinstance(state, AwaitingUsername):
            # The only state that survives invalid input
            await self._receive_username(chat_id, user_id, text)
            return

        try:
            if isinstance(state, AwaitingConfession):
                await self._receive_confession(chat_id, user_id, text)
            elif isinstance(state, AwaitingComment):
                await self._receive_comment(chat_id, user_id, state.confession_id, text)
            elif isinstance(state, AwaitingRejectionReason):
                await self._receive_rejection_reason(chat_id, user_id, state.confession_id, text)
            else:
                raise TypeError(f"Unhandled conversation state: {state!r}")
        finally:
            await self.states.clear(user_id)

    async def _receive_username(self, chat_id: int, user_id: int, text: str) -> None:
        try:
            name = await self.users.set_username(user_id, text)
        except ValidationError as e:
            await self.send(chat_id, f"❌ {e}\n\n{USERNAME_PROMPT}")
            return
        except Exception as e:
            logger.error(f"Error setting display name for {user_id}: {e}", exc_info=True)
            await self.send(chat_id, f"❌ Error saving display name. Please try again.\n\n{USERNAME_PROMPT}")
            return

        await self.states.clear(user_id)
        await self.send(chat_id, f"✅ Display name updated to <b>{html.quote(name)}</b>!")
        await self.show_main_menu(chat_id, user_id)

    async def _receive_confession(self, chat_id: int, user_id: int, text: str) -> None:
        try:
            await self.moderation.submit(user_id, text)
        except ConfessionBotError as e:
            await self._report(chat_id, e)
            return
        except Exception as e:
            logger.error(f"Submission error for user {user_id}: {e}", exc_info=True)
            await self.send(chat_id, "❌ Error submitting confession. Please try again.")
            return

        await self.send(
            chat_id,
            "✅ <b>Confession Submitted!</b>\n\nYour confession is under review. You'll be notified when approved.",
            reply_markup=after_submission_keyboard()
        )

    async def _receive_comment(self, chat_id: int, user_id: int, confession_id: str, text: str) -> None:
        try:
            await self.comments.append(confession_id, user_id, text)
        except ConfessionBotError as e:
            await self._report(chat_id, e)
            return
        except Exception as e:
            logger.error(f"Error adding comment to confession {confession_id}: {e}", exc_info=True)
            await self.send(chat_id, "❌ Error posting comment. Please try again.")
            return

        await self.send(chat_id, "✅ Comment added successfully!")
        await self.show_comments_page(chat_id, confession_id, 1)

    async def _receive_rejection_reason(self, chat_id: int, user_id: int, confession_id: str, text: str) -> None:
        try:
            confession = await self.moderation.reject(user_id, confession_id, text)
        except ConfessionBotError as e:
            await self._report(chat_id, e)
            return
        except Exception as e:
            logger.error(f"Error rejecting confession {confession_id}: {e}", exc_info=True)
            await self.send(chat_id, "❌ Error rejecting confession.")
            return

        if confession is not None:
            await self.send(chat_id, f"✅ Confession #{confession.confession_number} rejected.")

    # --- Commands and menu ---
    async def handle_start(self, chat_id: int, user_id: int, user: dict, args: str = "") -> None:
        if args.startswith("comment_"):
            confession_id = args[len("comment_"):]
            logger.info(f"User {user_id} started via deep link for {confession_id}")
            await self.show_comment_entry(chat_id, confession_id)
            return

        if not has_display_name(user):
            await self.states.set(user_id, AwaitingUsername())
            await self.send(
                chat_id,
                f"🤫 <b>Welcome to the Confession Bot!</b>\n\n"
                f"First, please set your display name:\n\n{USERNAME_PROMPT}"
            )
            return

        await self.send(
            chat_id,
            f"🤫 <b>Welcome back, {html.quote(user['username'])}!</b>\n\n"
            f"Send me your confession and it will be submitted anonymously for admin approval.\n\n"
            f"Your identity will never be revealed!"
        )
        await self.show_main_menu(chat_id, user_id)

    async def show_main_menu(self, chat_id: int, user_id: int) -> None:
        user = await self.users.get_or_create(user_id)
        comment_count = user.get("total_comments", 0)
        level = level_for(comment_count)
        await self.send(
            chat_id,
            f"🤫 <b>Confession Bot</b>\n\n"
            f"👤 Profile: {html.quote(user.get('username') or 'Not set')}\n"
            f"⭐ Reputation: {user.get('reputation', 0)}\n"
            f"🏆 Level: {level} ({comment_count} comments)\n\n"
            f"Choose an option below:",
            reply_markup=main_menu_keyboard()
        )

    async def start_confession(self, chat_id: int, user_id: int) -> None:
        remaining = await self.rate_limiter.remaining_ms(
            user_id, CONFESSION_ACTION, self.settings.confession_cooldown_ms
        )
        if remaining:
            await self._report(chat_id, RateLimitError(remaining))
            return
        await self.states.set(user_id, AwaitingConfession())
        await self.send(chat_id, CONFESSION_PROMPT)

    async def show_profile(self, chat_id: int, user_id: int) -> None:
        user = await self.users.get_or_create(user_id)
        comment_count = user.get("total_comments", 0)
        joined = user.get("joined_at")
        member_since = datetime.fromisoformat(joined).strftime("%d/%m/%Y") if joined else "-"
        await self.send(
            chat_id,
            f"👤 <b>My Profile</b>\n\n"
            f"<b>Display Name:</b> {html.quote(user.get('username') or 'Anonymous')}\n"
            f"<b>Level:</b> {level_for(comment_count)} ({comment_count} comments)\n"
            f"<b>Reputation:</b> {user.get('reputation', 0)}⭐\n"
            f"<b>Confessions:</b> {user.get('total_confessions', 0)}\n"
            f"<b>Member Since:</b> {member_since}",
            reply_markup=profile_keyboard()
        )

    async def show_promote(self, chat_id: int) -> None:
        username = self.settings.bot_username
        await self.send(
            chat_id,
            f"📢 <b>Help Us Grow!</b>\n\nShare our bot with friends:\nhttps://t.me/{username}\n\n"
            f"Join our channel for confessions:",
            reply_markup=promote_keyboard(username, self.settings.channel_id)
        )

    async def show_settings(self, chat_id: int, user_id: int) -> None:
        user = await self.users.get_or_create(user_id)
        await self.send(
            chat_id,
            "⚙️ <b>Notification Settings</b>\n\nTap a setting to turn it on or off:",
            reply_markup=settings_keyboard(user.get("notifications") or {})
        )

    async def show_rules(self, chat_id: int) -> None:
        await self.send(chat_id, RULES_TEXT)

    async def admin_panel(self, chat_id: int, user_id: int) -> None:
        if not self.settings.is_admin(user_id):
            await self._report(chat_id, PermissionDenied(user_id, "open the admin panel"))
            return
        pending = await self.store.find(CONFESSIONS, "status", STATUS_PENDING, limit=100)
        pending_count = f"{len(pending)}+" if len(pending) >= 100 else str(len(pending))
        last_number = await self.sequence.current()
        await self.send(
            chat_id,
            f"🔐 <b>Admin Panel</b>\n\n"
            f"📝 Pending confessions: {pending_count}\n"
            f"#️⃣ Last confession number: {last_number}\n\n"
            f"<b>Commands:</b>\n"
            f"/block &lt;user_id&gt; [reason] - Block a user\n"
            f"/unblock &lt;user_id&gt; - Unblock a user"
        )

    async def block_user(self, chat_id: int, admin_id: int, args: str, active: bool) -> None:
        action = "unblock" if active else "block"
        if not self.settings.is_admin(admin_id):
            await self._report(chat_id, PermissionDenied(admin_id, f"{action} users"))
            return

        parts = args.split(maxsplit=1)
        try:
            target_id = int(parts[0])
        except (ValueError, IndexError):
            await self.send(chat_id, f"Usage: /{action} &lt;user_id&gt;" + ("" if active else " [reason]"))
            return

        if not active and self.settings.is_admin(target_id):
            await self.send(chat_id, "❌ Admins cannot be blocked.")
            return

        reason = parts[1].strip() if len(parts) > 1 else None
        await self.users.set_active(target_id, active, reason)
        if not active:
            await self.states.clear(target_id)
        await self.send(chat_id, f"✅ User <code>{target_id}</code> {action}ed.")

    # --- Comment views ---
    async def show_comment_entry(self, chat_id: int, confession_id: str) -> None:
        try:
            confession = await self.moderation.get(confession_id)
            thread = await self.comments.get_thread(confession_id)
        except NotFoundError as e:
            await self._report(chat_id, e)
            return

        text = f"💬 <b>Comments for Confession #{confession.confession_number}</b>\n\n"
        text += f"<b>Confession:</b>\n{html.quote(preview(confession.text, ENTRY_PREVIEW_LENGTH))}\n\n"

        if not thread.comments:
            text += "No comments yet. Be the first to comment!\n\n"
        else:
            text += f"<b>Recent Comments ({len(thread.comments)} total):</b>\n\n"
            for number, comment in enumerate(thread.comments[:ENTRY_COMMENT_COUNT], start=1):
                name = await self.users.display_name(comment.user_id)
                text += f"{number}. {html.quote(preview(comment.text, COMMENT_DISPLAY_LENGTH))}\n"
                text += f"   - {html.quote(name)}\n\n"

        await self.send(chat_id, text, reply_markup=comment_entry_keyboard(confession_id))

    async def show_comments_page(self, chat_id: int, confession_id: str, page: int = 1) -> None:
        try:
            comment_page = await self.comments.page(confession_id, page, self.settings.comments_page_size)
        except NotFoundError as e:
            await self._report(chat_id, e)
            return

        await self.send(
            chat_id,
            render_comment_page(comment_page),
            reply_markup=comments_page_keyboard(confession_id, page, comment_page.total_pages)
        )

    # --- Callbacks ---
    async def show_comments_page_from_button(self, callback_id: str, chat_id: int, payload: str) -> None:
        """``payload`` is ``<confession_id>_<page>``; confession ids contain underscores themselves."""
        confession_id, _, page_str = payload.rpartition("_")
        try:
            page = int(page_str)
        except ValueError:
            await self.transport.answer_callback(callback_id, "Invalid page.", show_alert=True)
            return
        await self.show_comments_page(chat_id, confession_id, page)
        await self.transport.answer_callback(callback_id)

    async def change_username(self, callback_id: str, chat_id: int, user_id: int) -> None:
        await self.states.set(user_id, AwaitingUsername())
        await self.send(chat_id, f"✏️ <b>Change Display Name</b>\n\n{USERNAME_PROMPT}")
        await self.transport.answer_callback(callback_id)

    async def approve_from_review(self, callback_id: str, chat_id: int, user_id: int,
                                  message_id: Optional[int], confession_id: str) -> None:
        try:
            confession = await self.moderation.approve(user_id, confession_id)
        except PermissionDenied:
            await self.transport.answer_callback(callback_id, "❌ Access denied")
            return
        except NotFoundError:
            await self.transport.answer_callback(callback_id, "❌ Confession not found")
            return
        except AlreadyModeratedError as e:
            await self.transport.answer_callback(callback_id, f"Already {e.status}.", show_alert=True)
            return
        except Exception as e:
            logger.error(f"Error approving confession {confession_id}: {e}", exc_info=True)
            await self.transport.answer_callback(callback_id, "❌ Error approving confession")
            return

        await self.transport.answer_callback(callback_id, f"✅ Confession #{confession.confession_number} approved!")
        if message_id is not None:
            try:
                await self.transport.edit_message_buttons(chat_id, message_id, None)
            except Exception as e:
                logger.warning(f"Could not remove review buttons for {confession_id}: {e}")

    async def begin_reject_from_review(self, callback_id: str, chat_id: int, user_id: int, confession_id: str) -> None:
        try:
            confession = await self.moderation.begin_reject(user_id, confession_id)
        except PermissionDenied:
            await self.transport.answer_callback(callback_id, "❌ Access denied")
            return
        except NotFoundError:
            await self.transport.answer_callback(callback_id, "❌ Confession not found")
            return
        except AlreadyModeratedError as e:
            await self.transport.answer_callback(callback_id, f"Already {e.status}.", show_alert=True)
            return

        await self.send(
            chat_id,
            f"❌ <b>Rejecting Confession #{confession.confession_number}</b>\n\nPlease provide rejection reason:"
        )
        await self.transport.answer_callback(callback_id, "Please provide rejection reason")

    async def begin_comment(self, callback_id: str, chat_id: int, user_id: int, confession_id: str) -> None:
        try:
            thread = await self.comments.get_thread(confession_id)
        except NotFoundError:
            await self.transport.answer_callback(
                callback_id, "This confession is not available for comments.", show_alert=True)
            return

        await self.states.set(user_id, AwaitingComment(confession_id))
        await self.send(
            chat_id,
            f"📝 <b>Add Comment</b>\n\nType your comment for confession #{thread.confession_number}:"
        )
        await self.transport.answer_callback(callback_id)

    async def toggle_notification(self, callback_id: str, chat_id: int, user_id: int,
                                  message_id: Optional[int], category: str) -> None:
        if category not in NOTIFICATION_CATEGORIES:
            await self.transport.answer_callback(callback_id, "Unknown setting.", show_alert=True)
            return
        enabled = await self.notifier.toggle(user_id, category)
        user = await self.users.get_or_create(user_id)
        if message_id is not None:
            await self.transport.edit_message_buttons(
                chat_id, message_id, settings_keyboard(user.get("notifications") or {}))
        await self.transport.answer_callback(
            callback_id, f"{NOTIFICATION_CATEGORIES[category]}: {'on' if enabled else 'off'}")

    # --- Error reporting ---
    async def _report(self, chat_id: int, error: ConfessionBotError) -> None:
        if isinstance(error, RateLimitError):
            await self.send(
                chat_id,
                f"⏳ Please wait {error.retry_after_seconds} seconds before submitting another confession."
            )
        elif isinstance(error, NotFoundError):
            await self.send(chat_id, "❌ Confession not found or may have been deleted.")
            await self.show_main_menu(chat_id, chat_id)
        elif isinstance(error, PermissionDenied):
            logger.warning(f"Refused to let user {error.user_id} {error.action}")
            await self.send(chat_id, "❌ Access denied. Admin only command.")
        elif isinstance(error, AlreadyModeratedError):
            await self.send(chat_id, f"ℹ️ This confession is already {error.status}.")
        elif isinstance(error, BlockedUserError):
            await self.send(chat_id, self.block_notice(str(error)))
        else:
            await self.send(chat_id, f"❌ {html.quote(str(error))}")

    @staticmethod
    def block_notice(reason: str) -> str:
        notice = "❌ Your account has been blocked by admin."
        if reason:
            notice += f"\nReason: <i>{html.quote(reason)}</i>"
        return notice


def render_comment_page(comment_page: CommentPage) -> str:
    text = f"💬 <b>Comments for Confession #{comment_page.confession_number}</b>\n\n"
    text += (f"<b>Confession Preview:</b>\n"
             f"{html.quote(preview(comment_page.confession_text, PAGE_PREVIEW_LENGTH))}\n\n")

    if not comment_page.entries:
        if comment_page.total_comments == 0:
            text += "No comments yet. Be the first to comment!\n\n"
        else:
            text += f"<i>No comments on page {comment_page.page}.</i>\n\n"
        return text

    last_number = comment_page.entries[-1].number
    text += (f"<b>Comments ({comment_page.first_number}-{last_number} "
             f"of {comment_page.total_comments}):</b>\n\n")
    for entry in comment_page.entries:
        text += f"{entry.number}. {html.quote(preview(entry.comment.text, COMMENT_DISPLAY_LENGTH))}\n"
        text += f"   - {entry.level.symbol} {html.quote(entry.display_name)}\n"
        text += f"   📅 {entry.comment.timestamp}\n\n"
    return text
