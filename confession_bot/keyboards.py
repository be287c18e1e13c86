from typing import Dict, Optional

from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup, KeyboardButton, ReplyKeyboardMarkup
from aiogram.utils.keyboard import InlineKeyboardBuilder

from .users import NOTIFICATION_CATEGORIES

BTN_SEND_CONFESSION = "📝 Send Confession"
BTN_PROFILE = "👤 My Profile"
BTN_PROMOTE = "📢 Promote Bot"
BTN_SETTINGS = "⚙️ Settings"
BTN_RULES = "📌 Rules"


def main_menu_keyboard() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        keyboard=[
            [KeyboardButton(text=BTN_SEND_CONFESSION), KeyboardButton(text=BTN_PROFILE)],
            [KeyboardButton(text=BTN_PROMOTE), KeyboardButton(text=BTN_SETTINGS)],
            [KeyboardButton(text=BTN_RULES)],
        ],
        resize_keyboard=True
    )


def admin_review_keyboard(confession_id: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="✅ Approve", callback_data=f"approve_{confession_id}"),
         InlineKeyboardButton(text="❌ Reject", callback_data=f"reject_{confession_id}")]
    ])


def channel_post_keyboard(bot_username: str, confession_id: str) -> InlineKeyboardMarkup:
    link = comment_deep_link(bot_username, confession_id)
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="👁️‍🗨️ View/Add Comments", url=link)]
    ])


def comment_deep_link(bot_username: str, confession_id: str) -> str:
    return f"https://t.me/{bot_username}?start=comment_{confession_id}"


def after_submission_keyboard() -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    builder.button(text="📝 Send Another", callback_data="send_confession")
    builder.button(text="📢 Promote Bot", callback_data="promote_bot")
    builder.button(text="🔙 Back to Menu", callback_data="back_to_menu")
    builder.adjust(2, 1)
    return builder.as_markup()


def comment_entry_keyboard(confession_id: str) -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    builder.button(text="📝 Add Comment", callback_data=f"add_comment_{confession_id}")
    builder.button(text="👁️ View All Comments", callback_data=f"comments_page_{confession_id}_1")
    builder.button(text="📝 Send Your Confession", callback_data="send_confession")
    builder.button(text="🔙 Main Menu", callback_data="back_to_menu")
    builder.adjust(2, 2)
    return builder.as_markup()


def comments_page_keyboard(confession_id: str, page: int, total_pages: int) -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    builder.row(InlineKeyboardButton(text="📝 Add Comment", callback_data=f"add_comment_{confession_id}"))

    if total_pages > 1:
        nav_row = []
        if page > 1:
            nav_row.append(InlineKeyboardButton(
                text="⬅️ Previous", callback_data=f"comments_page_{confession_id}_{page - 1}"))
        nav_row.append(InlineKeyboardButton(text=f"{page}/{total_pages}", callback_data="current_page"))
        if page < total_pages:
            nav_row.append(InlineKeyboardButton(
                text="Next ➡️", callback_data=f"comments_page_{confession_id}_{page + 1}"))
        builder.row(*nav_row)

    builder.row(
        InlineKeyboardButton(text="📝 Send Confession", callback_data="send_confession"),
        InlineKeyboardButton(text="🔙 Main Menu", callback_data="back_to_menu")
    )
    return builder.as_markup()


def promote_keyboard(bot_username: str, channel_id: Optional[str]) -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    builder.button(
        text="📤 Share Bot",
        url=f"https://t.me/share/url?url=https://t.me/{bot_username}"
            f"&text=Check%20out%20this%20anonymous%20confession%20bot!"
    )
    if channel_id and channel_id.startswith("@"):
        builder.button(text="📢 Join Channel", url=f"https://t.me/{channel_id[1:]}")
    builder.adjust(1)
    return builder.as_markup()


def profile_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="✏️ Change Display Name", callback_data="change_username")],
        [InlineKeyboardButton(text="🔙 Main Menu", callback_data="back_to_menu")]
    ])


def settings_keyboard(notifications: Dict[str, bool]) -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    for category, label in NOTIFICATION_CATEGORIES.items():
        prefix = "🔔" if notifications.get(category, True) else "🔕"
        builder.button(text=f"{prefix} {label}", callback_data=f"toggle_notify_{category}")
    builder.button(text="🔙 Main Menu", callback_data="back_to_menu")
    builder.adjust(1)
    return builder.as_markup()
